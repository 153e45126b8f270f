"""
test_extract.py - Document fact, ledger and reading extraction.

Usage: pytest test_extract.py
"""

from __future__ import annotations

import asyncio
import datetime as dt
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from config import RunContext
from errors import MalformedOutputError, UpstreamUnavailableError
from extract import apply_readings, extract_documents, extract_ledger, fetch_readings
from fakes import FakeLLM
from models import UNCLASSIFIABLE, Counterparty, DocumentCategory, OcrDocument


@pytest.fixture
def context() -> RunContext:
    return RunContext(as_of=dt.date(2025, 10, 15))


def _document(name: str, text: str = "請求書 鈴木商事 御中 金額 ¥1,200,000", **kwargs) -> OcrDocument:
    return OcrDocument(file_name=name, category=DocumentCategory.PURCHASE, text=text, page_count=1, **kwargs)


def test_document_facts_are_extracted_and_empty_values_dropped():
    llm = FakeLLM(
        {
            "FactExtraction": {
                "document_type": "invoice",
                "facts": {"debtor_company": "鈴木商事", "amount": 1200000, "issuer": "", "notes": None},
                "confidence": 0.9,
            }
        }
    )
    facts = asyncio.run(extract_documents(llm, [_document("invoice.pdf")]))[0]
    assert facts.document_type == "invoice"
    assert facts.facts == {"debtor_company": "鈴木商事", "amount": 1200000}
    assert facts.invoice().amount == 1_200_000.0


def test_failures_become_unclassifiable_without_stopping_siblings():
    def respond(prompt: str):
        if "broken.pdf" in prompt:
            return MalformedOutputError("llm", "schema mismatch")
        return {"document_type": "contract", "facts": {"debtor_company": "佐藤工業"}}

    documents = [
        _document("broken.pdf"),
        _document("ok.pdf"),
        _document("blank.pdf", text="   "),
        _document("failed.pdf", text="", error="vision unavailable"),
    ]
    results = asyncio.run(extract_documents(FakeLLM({"FactExtraction": respond}), documents))

    assert [result.file_name for result in results] == ["broken.pdf", "ok.pdf", "blank.pdf", "failed.pdf"]
    assert results[0].document_type == UNCLASSIFIABLE
    assert "malformed" in results[0].error
    assert results[1].document_type == "contract"
    assert results[2].error == "OCR returned no text"
    assert results[3].error.startswith("OCR failed")


def test_ledger_rows_are_normalized(context):
    llm = FakeLLM(
        {
            "LedgerExtraction": {
                "rows": [
                    {"date": "07-31", "amount": "5,000,000", "counterparty_name": " カ)ヤマダケンセツ "},
                    {"date": "R7.8.20", "amount": 1500000, "counterparty_name": "カ)ヤマダケンセツ"},
                    {"date": "2025-08-25", "amount": "△30,000", "counterparty_name": "ATM", "description": "カード"},
                    {"date": "残高", "amount": 0, "counterparty_name": ""},
                ]
            }
        }
    )
    statement = OcrDocument(file_name="main.pdf", category=DocumentCategory.MAIN_STATEMENT, text="...")

    ledger = asyncio.run(extract_ledger(llm, statement, context))

    assert [txn.date for txn in ledger] == [dt.date(2025, 7, 31), dt.date(2025, 8, 20), dt.date(2025, 8, 25)]
    assert [txn.amount for txn in ledger] == [5_000_000, 1_500_000, -30_000]
    assert ledger[0].counterparty_name_raw == "カ)ヤマダケンセツ"
    assert [txn.sequence for txn in ledger] == [0, 1, 2]
    assert {txn.source_document for txn in ledger} == {"main.pdf"}


def test_ledger_without_text_is_unavailable(context):
    statement = OcrDocument(file_name="main.pdf", category=DocumentCategory.MAIN_STATEMENT, error="timeout")
    with pytest.raises(UpstreamUnavailableError):
        asyncio.run(extract_ledger(FakeLLM(), statement, context))


def test_readings_become_aliases():
    llm = FakeLLM({"ReadingList": {"readings": [{"name": "山田建設株式会社", "reading": "ヤマダケンセツ"}]}})
    readings = asyncio.run(fetch_readings(llm, ["山田建設株式会社", "山田建設株式会社", ""]))
    assert readings == {"山田建設株式会社": ["ヤマダケンセツ"]}

    counterparty = Counterparty(key="山田建設", name="山田建設株式会社")
    updated = apply_readings([counterparty], readings)[0]
    assert updated.aliases == ["ヤマダケンセツ"]
    assert counterparty.aliases == []


def test_reading_failure_yields_no_aliases():
    llm = FakeLLM({"ReadingList": UpstreamUnavailableError("llm", "down")})
    assert asyncio.run(fetch_readings(llm, ["山田建設株式会社"])) == {}
