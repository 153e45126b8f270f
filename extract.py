"""
extract.py - Evidence extraction boundary for the review pipeline.

Turns OCR text into structured evidence:

    extract_documents(llm, documents)      -> list[DocumentFacts]
    extract_ledger(llm, document, context) -> list[Transaction]
    fetch_readings(llm, names)             -> {name: [katakana reading]}

Pipeline role:
- It is the only module that prompts the LLM for document content.
- Downstream modules never see raw OCR text or LLM payloads; they only
  consume DocumentFacts, Transaction and Counterparty aliases.

Failure policy:
- One document failing never aborts its siblings. A document whose facts
  cannot be extracted is kept as document_type="unclassifiable".
- A statement whose ledger cannot be extracted raises; the caller turns
  that into an "analysis unavailable" marker for reconciliation.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from config import RunContext
from errors import ReviewError, UpstreamUnavailableError
from llm import StructuredLLM
from logging_config import get_logger
from models import UNCLASSIFIABLE, Counterparty, DocumentFacts, OcrDocument, Transaction
from normalize import normalize_amount, normalize_date

logger = get_logger(__name__)

# Characters of OCR text sent per document.
MAX_DOCUMENT_CHARS = 12000
MAX_LEDGER_CHARS = 40000

FACTS_SYSTEM_PROMPT = """\
You read OCR text of documents submitted with a Japanese invoice-factoring
application (invoices, contracts, corporate registry extracts, business
cards, driver's licenses, bank passbooks, ...).

Name the document type freely in kebab-case (e.g. "invoice",
"corporate-registry", "business-card", "drivers-license"). Put every fact
you can read into `facts`, using these keys where they apply:

- invoices / contracts: debtor_company (the company that owes the money),
  amount (number, yen), issuer, issue_date
- registry extracts: company_name, representatives (list), capital,
  established, address, registration_number, business_type
- identity documents: person_name, birth_date (YYYY-MM-DD), address

Add any other useful facts under descriptive snake_case keys. Never guess
values that are not in the text."""

LEDGER_SYSTEM_PROMPT = """\
You read OCR text of a Japanese bank passbook / account statement and list
every transaction row in printed order.

For each row return:
- date: as printed (e.g. "2025-07-31", "R7.7.31", "07-31")
- amount: signed number; deposits (お預り / 入金) positive, withdrawals
  (お支払 / 出金 / 振込出金) negative
- counterparty_name: the payer/payee name column exactly as printed
  (e.g. "カ)ヤマダケンセツ"); empty if none
- description: the memo/摘要 column, if separate from the name

Skip balance-only lines, carried-forward lines and page headers."""

READINGS_SYSTEM_PROMPT = """\
For each Japanese company name, give the full-width katakana reading a
bank would print for it on a statement, without the legal-entity form
(株式会社 etc.). Example: 山田建設株式会社 -> ヤマダケンセツ."""


class FactExtraction(BaseModel):
    document_type: str = Field(default=UNCLASSIFIABLE)
    facts: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class LedgerRow(BaseModel):
    date: str
    amount: Union[float, str]
    counterparty_name: str = ""
    description: Optional[str] = None


class LedgerExtraction(BaseModel):
    rows: list[LedgerRow] = Field(default_factory=list)


class NameReading(BaseModel):
    name: str
    reading: str = ""


class ReadingList(BaseModel):
    readings: list[NameReading] = Field(default_factory=list)


def _unclassifiable(document: OcrDocument, error: str) -> DocumentFacts:
    return DocumentFacts(
        file_name=document.file_name,
        category=document.category,
        document_type=UNCLASSIFIABLE,
        facts={},
        confidence=0.0,
        page_count=document.page_count,
        error=error,
    )


async def extract_document_facts(llm: StructuredLLM, document: OcrDocument) -> DocumentFacts:
    """Extract the fact bag of one document. Raises on collaborator failure."""
    prompt = (
        f"File name: {document.file_name}\n"
        f"Submitted as: {document.category.value}\n\n"
        f"OCR text:\n{document.text[:MAX_DOCUMENT_CHARS]}"
    )
    result = await llm.complete(prompt, FactExtraction, system=FACTS_SYSTEM_PROMPT)
    document_type = result.document_type.strip() or UNCLASSIFIABLE
    return DocumentFacts(
        file_name=document.file_name,
        category=document.category,
        document_type=document_type,
        facts={key: value for key, value in result.facts.items() if value not in (None, "", [])},
        confidence=result.confidence,
        page_count=document.page_count,
    )


async def extract_documents(llm: StructuredLLM, documents: list[OcrDocument]) -> list[DocumentFacts]:
    """Extract facts for every document concurrently.

    Documents without OCR text, and documents whose extraction call fails
    or returns a malformed structure, come back as "unclassifiable" with
    the reason in `error`. Output order follows the input.
    """
    started = time.perf_counter()

    async def _one(document: OcrDocument) -> DocumentFacts:
        if document.error:
            return _unclassifiable(document, f"OCR failed: {document.error}")
        if not document.text.strip():
            return _unclassifiable(document, "OCR returned no text")
        try:
            return await extract_document_facts(llm, document)
        except ReviewError as exc:
            logger.warning(
                "fact_extraction_failed | file=%r | error=%s | fallback=unclassifiable",
                document.file_name,
                exc,
            )
            return _unclassifiable(document, str(exc))

    results = list(await asyncio.gather(*(_one(document) for document in documents)))
    logger.info(
        "fact_extraction_complete | documents=%s | classified=%s | duration_s=%.2f",
        len(results),
        sum(1 for result in results if result.is_classified),
        time.perf_counter() - started,
    )
    return results


async def extract_ledger(llm: StructuredLLM, document: OcrDocument, context: RunContext) -> list[Transaction]:
    """Extract the transaction rows of one bank statement, in printed order.

    Dates without a year are placed in context.as_of's year, or the year
    before when that would put them after as_of. Rows with an unreadable
    date or a zero amount are dropped.

    Raises:
        UpstreamUnavailableError: the statement has no OCR text, or the LLM failed.
        MalformedOutputError: the LLM answer failed validation twice.
    """
    if document.error or not document.text.strip():
        raise UpstreamUnavailableError(
            "ocr", f"no text for statement {document.file_name}: {document.error or 'empty'}"
        )

    prompt = f"Statement file: {document.file_name}\n\nOCR text:\n{document.text[:MAX_LEDGER_CHARS]}"
    result = await llm.complete(prompt, LedgerExtraction, system=LEDGER_SYSTEM_PROMPT)

    transactions: list[Transaction] = []
    dropped = 0
    for row in result.rows:
        day = normalize_date(row.date, reference=context.as_of)
        amount = normalize_amount(row.amount)
        if day is None or amount == 0:
            dropped += 1
            logger.debug("ledger_row_dropped | file=%r | row=%s", document.file_name, row.model_dump())
            continue
        transactions.append(
            Transaction(
                date=day,
                amount=amount,
                counterparty_name_raw=row.counterparty_name.strip(),
                source_document=document.file_name,
                description=row.description,
                sequence=len(transactions),
            )
        )

    if dropped:
        logger.warning(
            "ledger_rows_dropped | file=%r | dropped=%s | kept=%s | fallback=skip_row",
            document.file_name,
            dropped,
            len(transactions),
        )
    logger.info("ledger_extracted | file=%r | transactions=%s", document.file_name, len(transactions))
    return transactions


async def fetch_readings(llm: StructuredLLM, names: list[str]) -> dict[str, list[str]]:
    """Katakana readings for CRM company names. Failure yields no readings."""
    unique = [name for name in dict.fromkeys(names) if name]
    if not unique:
        return {}
    prompt = "Company names:\n" + "\n".join(f"- {name}" for name in unique)
    try:
        result = await llm.complete(prompt, ReadingList, system=READINGS_SYSTEM_PROMPT)
    except ReviewError as exc:
        logger.warning("reading_lookup_failed | names=%s | error=%s | fallback=no_aliases", len(unique), exc)
        return {}

    readings: dict[str, list[str]] = {}
    for item in result.readings:
        if item.name in unique and item.reading.strip():
            readings.setdefault(item.name, []).append(item.reading.strip())
    return readings


def apply_readings(counterparties: list[Counterparty], readings: dict[str, list[str]]) -> list[Counterparty]:
    """Copies of `counterparties` with readings appended to their aliases."""
    updated = []
    for counterparty in counterparties:
        extra = [alias for alias in readings.get(counterparty.name, []) if alias not in counterparty.all_names]
        updated.append(counterparty.model_copy(update={"aliases": [*counterparty.aliases, *extra]}))
    return updated
