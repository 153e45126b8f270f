"""
test_company_verify.py - Company existence verification.

Usage: pytest test_company_verify.py
"""

from __future__ import annotations

import asyncio
import datetime as dt
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from company_verify import (
    CompanyAssessment,
    CompanyQuery,
    build_company_queries,
    dedupe_companies,
    finalize_assessment,
    verify_companies,
)
from config import RunContext
from errors import UpstreamUnavailableError
from fakes import FakeLLM, FakeSearch
from models import AnalysisState, CompanyType, SearchHit, VerificationSource

APPLICANT = CompanyQuery(name="山田建設株式会社", company_type=CompanyType.APPLICANT, location="東京都")
HITS = [
    SearchHit(title="山田建設 | 会社概要", url="https://www.yamada-kensetsu.co.jp/", snippet="東京都の総合建設業"),
    SearchHit(title="山田建設 - 企業情報", url="https://directory.example.jp/c/123", snippet="資本金1000万円"),
]


@pytest.fixture
def context() -> RunContext:
    return RunContext(as_of=dt.date(2025, 10, 15))


def test_confidence_below_threshold_is_unverified(context):
    result = finalize_assessment(APPLICANT, CompanyAssessment(index=0, confidence=69.9), HITS, context)
    assert not result.verified
    assert result.verification_source == VerificationSource.UNVERIFIED
    assert result.evidence_url is None


def test_official_url_must_appear_in_results(context):
    invented = CompanyAssessment(index=0, confidence=95, official_url="https://yamada.example.com/")
    result = finalize_assessment(APPLICANT, invented, HITS, context)
    assert result.verified
    assert result.official_url is None
    assert result.verification_source == VerificationSource.THIRD_PARTY_SITE
    assert result.evidence_url == HITS[0].url

    listed = CompanyAssessment(index=0, confidence=95, official_url="http://yamada-kensetsu.co.jp")
    result = finalize_assessment(APPLICANT, listed, HITS, context)
    assert result.verification_source == VerificationSource.OFFICIAL_SITE
    assert result.official_url == HITS[0].url


def test_confidence_is_clamped(context):
    result = finalize_assessment(APPLICANT, CompanyAssessment(index=0, confidence=140), HITS, context)
    assert result.confidence == 100.0


def test_queries_and_dedupe():
    assert build_company_queries("山田建設", "東京都") == ["山田建設 東京都", "山田建設 東京都 建設業", "山田建設 東京都 建設"]
    assert build_company_queries("山田建設", None) == ["山田建設", "山田建設 建設業"]

    companies = dedupe_companies(
        [
            APPLICANT,
            CompanyQuery(name="(株)山田建設", company_type=CompanyType.APPLICANT),
            CompanyQuery(name="山田建設", company_type=CompanyType.PURCHASER),
            CompanyQuery(name="  ", company_type=CompanyType.PURCHASER),
        ]
    )
    assert [(company.name, company.company_type) for company in companies] == [
        ("山田建設株式会社", CompanyType.APPLICANT),
        ("山田建設", CompanyType.PURCHASER),
    ]


def test_verify_companies_batches_one_scoring_call(context):
    search = FakeSearch({"山田建設株式会社 東京都": HITS})
    llm = FakeLLM(
        {
            "CompanyAssessmentBatch": {
                "results": [
                    {"index": 0, "confidence": 92, "official_url": "https://www.yamada-kensetsu.co.jp/"},
                    {"index": 1, "confidence": 20, "reason": "no evidence"},
                ]
            }
        }
    )
    companies = [APPLICANT, CompanyQuery(name="鈴木商事", company_type=CompanyType.PURCHASER)]

    report = asyncio.run(verify_companies(companies, search, llm, context))

    assert len(llm.calls_for("CompanyAssessmentBatch")) == 1
    assert report.status.ok
    applicant, purchaser = report.results
    assert applicant.verification_source == VerificationSource.OFFICIAL_SITE
    assert not purchaser.verified
    assert report.of_type(CompanyType.PURCHASER) == [purchaser]


def test_scoring_failure_leaves_everything_unverified(context):
    llm = FakeLLM({"CompanyAssessmentBatch": UpstreamUnavailableError("llm", "timeout")})
    report = asyncio.run(verify_companies([APPLICANT], FakeSearch(), llm, context))
    assert report.status.state == AnalysisState.UNAVAILABLE
    assert [result.verified for result in report.results] == [False]
    assert report.results[0].confidence == 0.0


def test_no_companies_is_not_performed(context):
    report = asyncio.run(verify_companies([], FakeSearch(), FakeLLM(), context))
    assert report.status.state == AnalysisState.NOT_PERFORMED
