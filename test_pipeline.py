"""
test_pipeline.py - End-to-end case review over in-memory collaborators.

Usage: pytest test_pipeline.py
"""

from __future__ import annotations

import asyncio
import datetime as dt
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from aggregate import DETAIL_FIELD, SUMMARY_FIELD
from config import RunContext
from errors import CaseNotFoundError, UpstreamUnavailableError
from fakes import FakeFetcher, FakeLLM, FakeOcr, FakeSearch, FakeStore, attachment
from models import (
    AnalysisState,
    CaseRecord,
    Counterparty,
    DocumentCategory,
    ExpectedAmount,
    PurchaseMatch,
    PurchaseRow,
    SubjectRole,
)
from pipeline import ReviewServices, _guarded, company_queries, review_case, screening_subjects

AS_OF = dt.date(2025, 10, 15)
RENDERED = "<h2>総合評価</h2><p>リスク: 低</p><h2>1. 買取企業分析</h2><p>一致</p>"

CASE = CaseRecord(
    case_id="4821",
    applicant_company="田中工務店",
    applicant_name="田中一郎",
    birth_date=dt.date(1980, 4, 1),
    location="東京都",
    counterparties=[Counterparty(key="山田建設", name="山田建設株式会社")],
    expectations=[
        ExpectedAmount(counterparty_key="山田建設", period="2025-08", amount=1_000_000),
        ExpectedAmount(counterparty_key="山田建設", period="2025-09", amount=6_500_000),
        ExpectedAmount(counterparty_key="山田建設", period="2025-10", amount=1_600_000),
    ],
    purchases=[PurchaseRow(company="鈴木商事", amount=1_200_000)],
    attachments=[
        attachment("inv", DocumentCategory.PURCHASE),
        attachment("reg", DocumentCategory.COLLATERAL),
        attachment("main", DocumentCategory.MAIN_STATEMENT),
        attachment("id", DocumentCategory.IDENTITY, mime_type="image/jpeg"),
    ],
)
FILES = {
    "inv": "請求書 鈴木商事 御中".encode("utf-8"),
    "reg": "履歴事項全部証明書".encode("utf-8"),
    "main": "普通預金 入出金明細".encode("utf-8"),
    "id": "運転免許証".encode("utf-8"),
}
LEDGER = {
    "rows": [
        {"date": "2025-07-04", "amount": 1_000_000, "counterparty_name": "カ)ヤマダケンセツ"},
        {"date": "2025-07-31", "amount": 5_000_000, "counterparty_name": "カ)ヤマダケンセツ"},
        {"date": "2025-08-20", "amount": 1_500_000, "counterparty_name": "カ)ヤマダケンセツ"},
        {"date": "2025-09-04", "amount": 1_600_000, "counterparty_name": "カ)ヤマダケンセツ"},
    ]
}


def _facts(prompt: str) -> dict:
    if "inv.pdf" in prompt:
        return {"document_type": "invoice", "facts": {"debtor_company": "鈴木商事", "amount": 1_200_000}}
    if "reg.pdf" in prompt:
        return {
            "document_type": "corporate-registry",
            "facts": {"company_name": "山田建設株式会社", "representatives": ["山田花子"]},
        }
    return {
        "document_type": "drivers-license",
        "facts": {"person_name": "田中 一郎", "birth_date": "1980年4月1日"},
    }


def _llm(**overrides) -> FakeLLM:
    responses = {
        "FactExtraction": _facts,
        "LedgerExtraction": LEDGER,
        "ReadingList": {"readings": [{"name": "山田建設株式会社", "reading": "ヤマダケンセツ"}]},
    }
    responses.update(overrides)
    return FakeLLM(responses, text=RENDERED)


def _services(store: FakeStore = None, llm: FakeLLM = None) -> ReviewServices:
    return ReviewServices(
        store=store or FakeStore(CASE, FILES),
        ocr=FakeOcr(),
        llm=llm or _llm(),
        search=FakeSearch(),
        fetcher=FakeFetcher(),
    )


@pytest.fixture
def context() -> RunContext:
    return RunContext(as_of=AS_OF)


def test_full_review(context):
    report = asyncio.run(review_case("4821", _services(), context))
    data = report.report_input

    purchase = data.purchase_collateral
    assert purchase.purchase.result == PurchaseMatch.MATCH
    assert [company.company_name for company in purchase.collateral.companies] == ["山田建設株式会社"]

    bank = data.bank_statement
    assert bank.statement_files == ["main.pdf"]
    assert bank.transaction_count == 4
    (reconciliation,) = bank.reconciliations
    assert reconciliation.all_matched
    assert reconciliation.has_prior_history
    assert bank.debt_cycles.records == []

    verification = data.verification
    assert verification.identity.verified
    assert verification.applicant_screening.subject_name == "田中一郎"
    assert verification.applicant_screening.subject_age == 45
    assert [result.subject_name for result in verification.representative_screenings] == ["山田花子"]
    assert len(verification.companies.results) == 3

    assert data.skipped_sections == {}
    assert report.render_status.ok
    assert report.risk_summary_html == "<h2>総合評価</h2><p>リスク: 低</p>"


def test_ledger_failure_marks_verdicts_unavailable(context):
    llm = _llm(LedgerExtraction=UpstreamUnavailableError("llm", "timeout"))
    report = asyncio.run(review_case("4821", _services(llm=llm), context))

    bank = report.report_input.bank_statement
    assert bank.status.state == AnalysisState.UNAVAILABLE
    (reconciliation,) = bank.reconciliations
    assert reconciliation.analysis_unavailable
    assert all(verdict.analysis_unavailable and not verdict.matched for verdict in reconciliation.verdicts)
    assert bank.debt_cycles.status.state == AnalysisState.UNAVAILABLE
    assert "bank_statement" in report.report_input.skipped_sections
    # The other phases still ran.
    assert report.report_input.purchase_collateral.purchase.result == PurchaseMatch.MATCH



def test_unreadable_statement_keeps_findings_from_readable_one(context):
    case = CASE.model_copy(update={"attachments": [*CASE.attachments, attachment("sub", DocumentCategory.SUB_STATEMENT)]})
    files = {**FILES, "sub": b"broken"}
    ledger = {
        "rows": [
            *LEDGER["rows"],
            {"date": "2025-09-01", "amount": 500_000, "counterparty_name": "OLTA"},
            {"date": "2025-09-12", "amount": -30_000, "counterparty_name": "マルハン"},
        ]
    }
    services = ReviewServices(
        store=FakeStore(case, files),
        ocr=FakeOcr(failing={b"broken": UpstreamUnavailableError("vision", "HTTP 503")}),
        llm=_llm(LedgerExtraction=ledger),
        search=FakeSearch(),
        fetcher=FakeFetcher(),
    )

    report = asyncio.run(review_case("4821", services, context))

    bank = report.report_input.bank_statement
    assert bank.status.state == AnalysisState.UNAVAILABLE
    assert bank.reconciliations[0].analysis_unavailable
    assert bank.debt_cycles.status.ok
    assert [record.counterparty_name for record in bank.debt_cycles.records] == ["OLTAクラウドファクタリング"]
    assert bank.debt_cycles.failed_statements == ["sub.pdf"]
    assert bank.risk_scan.status.ok
    assert [hit.keyword for hit in bank.risk_scan.gambling] == ["マルハン"]
    assert bank.risk_scan.failed_statements == ["sub.pdf"]
    assert "bank_statement" in report.report_input.skipped_sections
    assert "risk_scan" not in report.report_input.skipped_sections

def test_missing_case_aborts(context):
    with pytest.raises(CaseNotFoundError):
        asyncio.run(review_case("9999", _services(), context))

    store = FakeStore(error=UpstreamUnavailableError("kintone", "HTTP 503"))
    with pytest.raises(UpstreamUnavailableError):
        asyncio.run(review_case("4821", _services(store=store), context))


def test_write_back(context):
    store = FakeStore(CASE, FILES)
    report = asyncio.run(review_case("4821", _services(store=store), context, write_back_report=True))
    assert store.updates == [
        ("4821", {SUMMARY_FIELD: report.risk_summary_html, DETAIL_FIELD: report.detailed_analysis_html})
    ]


class FailingUpdateStore(FakeStore):
    async def update_case(self, case_id, fields):
        raise UpstreamUnavailableError("kintone", "HTTP 409")


def test_write_back_failure_still_returns_report(context):
    store = FailingUpdateStore(CASE, FILES)
    report = asyncio.run(review_case("4821", _services(store=store), context, write_back_report=True))
    assert report.render_status.ok


def test_guarded_phase_failure_becomes_placeholder_reason():
    async def failing():
        raise UpstreamUnavailableError("vision", "quota exceeded")

    errors: dict[str, str] = {}
    assert asyncio.run(_guarded("bank_statement", failing(), errors)) is None
    assert errors == {"bank_statement": "UpstreamUnavailableError: vision unavailable: quota exceeded"}


def test_subjects_and_company_queries(context):
    subjects = screening_subjects(CASE, context, None)
    assert [(subject.name, subject.role, subject.age) for subject in subjects] == [
        ("田中一郎", SubjectRole.APPLICANT, 45)
    ]
    assert [(query.name, query.company_type.value) for query in company_queries(CASE)] == [
        ("田中工務店", "applicant"),
        ("鈴木商事", "purchaser"),
        ("山田建設株式会社", "collateral_provider"),
    ]
