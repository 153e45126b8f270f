"""
crosscheck.py - Document-vs-CRM cross-checks.

    verify_purchases(...)      invoices vs CRM purchase rows
    verify_identity(...)       identity documents vs CRM applicant
    collateral_findings(...)   registry facts from collateral documents
"""

from __future__ import annotations

import datetime as dt
from typing import Optional

from config import RunContext
from logging_config import get_logger
from models import (
    AnalysisStatus,
    CollateralFindings,
    DocumentCategory,
    DocumentFacts,
    IdentityVerification,
    InvoiceFacts,
    PersonCheck,
    PurchaseMatch,
    PurchaseRow,
    PurchaseVerification,
)
from normalize import names_match, normalize_date, person_names_equal

logger = get_logger(__name__)


def _of_category(documents: list[DocumentFacts], category: DocumentCategory) -> list[DocumentFacts]:
    return [document for document in documents if document.category == category]


def _invoice_matches(row: PurchaseRow, invoice: InvoiceFacts, context: RunContext) -> bool:
    company_ok, _, _ = names_match(
        invoice.debtor_company,
        [row.company],
        threshold=context.name_match_threshold,
        min_prefix_chars=context.min_prefix_chars,
    )
    if not company_ok or invoice.amount is None:
        return False
    return abs(invoice.amount - row.amount) <= context.amount_tolerance


def verify_purchases(
    documents: list[DocumentFacts],
    purchases: list[PurchaseRow],
    applicant_company: str,
    context: RunContext,
) -> PurchaseVerification:
    """Compare invoice facts from purchase documents with the CRM purchase rows.

    Invoices addressed to the applicant's own company are the applicant's
    payables, not receivables, and are ignored.
    """
    purchase_documents = _of_category(documents, DocumentCategory.PURCHASE)
    if not purchase_documents:
        return PurchaseVerification(
            crm_purchases=purchases,
            status=AnalysisStatus.not_performed("no purchase documents attached"),
        )
    if not purchases:
        return PurchaseVerification(status=AnalysisStatus.not_performed("no purchase rows in CRM"))

    invoices = []
    for document in purchase_documents:
        invoice = document.invoice()
        if invoice is None:
            continue
        if applicant_company:
            own_company, _, _ = names_match(invoice.debtor_company, [applicant_company], threshold=95.0)
            if own_company:
                logger.debug("invoice_excluded | file=%r | reason=applicant_company", document.file_name)
                continue
        invoices.append(invoice)

    matched, unmatched = [], []
    for row in purchases:
        if any(_invoice_matches(row, invoice, context) for invoice in invoices):
            matched.append(row.company)
        else:
            unmatched.append(row.company)

    if invoices and not unmatched:
        result = PurchaseMatch.MATCH
    elif matched:
        result = PurchaseMatch.PARTIAL
    else:
        result = PurchaseMatch.MISMATCH

    logger.info(
        "purchase_verification | rows=%s | invoices=%s | matched=%s | result=%s",
        len(purchases),
        len(invoices),
        len(matched),
        result.value,
    )
    return PurchaseVerification(
        result=result,
        crm_purchases=purchases,
        invoices=invoices,
        matched_companies=matched,
        unmatched_companies=unmatched,
    )


def verify_identity(
    documents: list[DocumentFacts],
    applicant_name: str,
    birth_date: Optional[dt.date],
) -> IdentityVerification:
    identity_documents = _of_category(documents, DocumentCategory.IDENTITY)
    if not identity_documents:
        return IdentityVerification(status=AnalysisStatus.not_performed("no identity documents attached"))

    persons = []
    for document in identity_documents:
        facts = document.identity()
        if facts is None:
            continue
        persons.append(
            PersonCheck(
                name=facts.name,
                birth_date=facts.birth_date,
                address=facts.address,
                name_match=person_names_equal(facts.name, applicant_name),
                birth_date_match=birth_date is not None and normalize_date(facts.birth_date) == birth_date,
            )
        )

    matched_person = next((person for person in persons if person.matched), None)
    status = AnalysisStatus.completed()
    if not persons:
        status = AnalysisStatus.malformed("no person could be read from the identity documents")
    logger.info(
        "identity_verification | documents=%s | persons=%s | verified=%s",
        len(identity_documents),
        len(persons),
        matched_person is not None,
    )
    return IdentityVerification(
        document_types=[document.document_type for document in identity_documents],
        persons=persons,
        matched_person=matched_person,
        status=status,
    )


def collateral_findings(documents: list[DocumentFacts]) -> CollateralFindings:
    collateral_documents = _of_category(documents, DocumentCategory.COLLATERAL)
    if not collateral_documents:
        return CollateralFindings(status=AnalysisStatus.not_performed("no collateral documents attached"))
    companies = []
    for document in collateral_documents:
        registry = document.registry()
        if registry is not None:
            companies.append(registry)
    findings = [f"{document.file_name}: {document.document_type}" for document in collateral_documents]
    return CollateralFindings(companies=companies, findings=findings)
