"""
test_crosscheck.py - Purchase, identity and collateral document cross-checks.

Usage: pytest test_crosscheck.py
"""

from __future__ import annotations

import datetime as dt
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from config import RunContext
from crosscheck import collateral_findings, verify_identity, verify_purchases
from models import AnalysisState, DocumentCategory, DocumentFacts, PurchaseMatch, PurchaseRow


@pytest.fixture
def context() -> RunContext:
    return RunContext(as_of=dt.date(2025, 10, 15))


def _invoice(file_name: str, debtor: str, amount) -> DocumentFacts:
    return DocumentFacts(
        file_name=file_name,
        category=DocumentCategory.PURCHASE,
        document_type="invoice",
        facts={"debtor_company": debtor, "amount": amount},
    )


def test_all_rows_matched(context):
    documents = [_invoice("a.pdf", "株式会社鈴木商事", 1_200_000)]
    rows = [PurchaseRow(company="鈴木商事", amount=1_200_500)]
    result = verify_purchases(documents, rows, "山田建設", context)
    assert result.result == PurchaseMatch.MATCH
    assert result.matched_companies == ["鈴木商事"]


def test_partial_and_mismatch(context):
    documents = [_invoice("a.pdf", "鈴木商事", 1_200_000)]
    rows = [PurchaseRow(company="鈴木商事", amount=1_200_000), PurchaseRow(company="佐藤工業", amount=800_000)]
    result = verify_purchases(documents, rows, "山田建設", context)
    assert result.result == PurchaseMatch.PARTIAL
    assert result.unmatched_companies == ["佐藤工業"]

    wrong_amount = verify_purchases([_invoice("a.pdf", "鈴木商事", 900_000)], rows[:1], "山田建設", context)
    assert wrong_amount.result == PurchaseMatch.MISMATCH


def test_invoices_to_the_applicant_are_ignored(context):
    documents = [_invoice("own.pdf", "山田建設株式会社", 1_000_000)]
    rows = [PurchaseRow(company="山田建設", amount=1_000_000)]
    result = verify_purchases(documents, rows, "山田建設", context)
    assert result.invoices == []
    assert result.result == PurchaseMatch.MISMATCH


def test_purchase_check_not_performed(context):
    rows = [PurchaseRow(company="鈴木商事", amount=1_000_000)]
    assert verify_purchases([], rows, "山田建設", context).status.state == AnalysisState.NOT_PERFORMED
    documents = [_invoice("a.pdf", "鈴木商事", 1_000_000)]
    assert verify_purchases(documents, [], "山田建設", context).status.state == AnalysisState.NOT_PERFORMED


def test_identity_verified_by_name_and_birth_date():
    documents = [
        DocumentFacts(
            file_name="license.jpg",
            category=DocumentCategory.IDENTITY,
            document_type="drivers-license",
            facts={"person_name": "山田 太郎", "birth_date": "昭和55年4月1日"},
        )
    ]
    result = verify_identity(documents, "山田太郎", dt.date(1980, 4, 1))
    assert result.verified
    assert result.document_types == ["drivers-license"]

    wrong_birth = verify_identity(documents, "山田太郎", dt.date(1981, 4, 1))
    assert not wrong_birth.verified
    assert wrong_birth.persons[0].name_match


def test_identity_without_readable_person_is_malformed():
    documents = [DocumentFacts(file_name="blur.jpg", category=DocumentCategory.IDENTITY, error="OCR failed")]
    result = verify_identity(documents, "山田太郎", None)
    assert result.status.state == AnalysisState.MALFORMED
    assert verify_identity([], "山田太郎", None).status.state == AnalysisState.NOT_PERFORMED


def test_collateral_findings_collect_registry_facts():
    documents = [
        DocumentFacts(
            file_name="registry.pdf",
            category=DocumentCategory.COLLATERAL,
            document_type="corporate-registry",
            facts={"company_name": "佐藤工業株式会社", "representatives": "佐藤花子", "capital": "500万円"},
        ),
        DocumentFacts(file_name="contract.pdf", category=DocumentCategory.COLLATERAL, document_type="contract"),
    ]
    findings = collateral_findings(documents)
    assert [company.company_name for company in findings.companies] == ["佐藤工業株式会社"]
    assert findings.companies[0].representatives == ["佐藤花子"]
    assert findings.findings == ["registry.pdf: corporate-registry", "contract.pdf: contract"]
