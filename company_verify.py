"""
company_verify.py - Company existence verification.

Searches the web for every company named in a case (applicant, purchasers,
collateral providers) and scores all of them in one LLM call. The scores
are re-checked in code: confidence is clamped to 0-100, `verified` is
recomputed from company_verified_threshold, and an official URL only
counts when it actually appeared in the search results.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional

from pydantic import BaseModel, Field

from config import RunContext
from errors import ReviewError
from llm import StructuredLLM
from logging_config import get_logger
from models import (
    AnalysisStatus,
    CompanyType,
    CompanyVerificationReport,
    CompanyVerificationResult,
    SearchHit,
    VerificationSource,
)
from normalize import normalize_company_name
from search import WebSearch

logger = get_logger(__name__)

SNIPPETS_PER_COMPANY = 12


class CompanyQuery(BaseModel):
    name: str
    company_type: CompanyType
    location: Optional[str] = None


class CompanyAssessment(BaseModel):
    index: int = Field(..., ge=0)
    confidence: float = 0.0
    official_url: Optional[str] = None
    business_description: Optional[str] = None
    capital: Optional[str] = None
    established: Optional[str] = None
    reason: str = ""


class CompanyAssessmentBatch(BaseModel):
    results: list[CompanyAssessment] = Field(default_factory=list)


SYSTEM_PROMPT = """\
You verify that Japanese companies exist, using only the web search results
given for each company. For each company give confidence 0-100:

  90-100  an official website or registry entry clearly matches
  70-89   several independent third-party sources (directories, job
          boards, news) match name and location
  40-69   weak or partial evidence
  0-39    no matching evidence

official_url: the company's own website, only if it appears in the
results. Also report business description, capital and established date
when stated."""


def build_company_queries(name: str, location: Optional[str]) -> list[str]:
    if location:
        return [f"{name} {location}", f"{name} {location} 建設業", f"{name} {location} 建設"]
    return [name, f"{name} 建設業"]


def dedupe_companies(companies: list[CompanyQuery]) -> list[CompanyQuery]:
    """Drop repeats of the same normalized name within one company type."""
    seen: set[tuple[CompanyType, str]] = set()
    unique = []
    for company in companies:
        key = (company.company_type, normalize_company_name(company.name) or company.name)
        if not company.name.strip() or key in seen:
            continue
        seen.add(key)
        unique.append(company)
    return unique


def _url_key(url: str) -> str:
    return url.strip().rstrip("/").lower().removeprefix("https://").removeprefix("http://").removeprefix("www.")


def finalize_assessment(
    company: CompanyQuery,
    assessment: Optional[CompanyAssessment],
    hits: list[SearchHit],
    context: RunContext,
) -> CompanyVerificationResult:
    """Apply the verification rules in code to one LLM assessment."""
    if assessment is None:
        return CompanyVerificationResult(
            company_name=company.name,
            company_type=company.company_type,
            reason="no assessment returned",
        )

    confidence = min(max(float(assessment.confidence), 0.0), 100.0)
    verified = confidence >= context.company_verified_threshold
    result_urls = {_url_key(hit.url): hit.url for hit in hits if hit.url}

    official_url = None
    if assessment.official_url and _url_key(assessment.official_url) in result_urls:
        official_url = result_urls[_url_key(assessment.official_url)]
    elif assessment.official_url:
        logger.debug(
            "official_url_not_in_results | company=%r | url=%s | fallback=ignore",
            company.name,
            assessment.official_url,
        )

    if verified and official_url:
        source = VerificationSource.OFFICIAL_SITE
        evidence_url = official_url
    elif verified:
        source = VerificationSource.THIRD_PARTY_SITE
        evidence_url = hits[0].url if hits else None
    else:
        source = VerificationSource.UNVERIFIED
        evidence_url = None

    return CompanyVerificationResult(
        company_name=company.name,
        company_type=company.company_type,
        verified=verified,
        confidence=confidence,
        verification_source=source,
        official_url=official_url,
        evidence_url=evidence_url,
        business_description=assessment.business_description,
        capital=assessment.capital,
        established=assessment.established,
        reason=assessment.reason or None,
    )


async def _search_all(search: WebSearch, queries: list[str], context: RunContext) -> list[SearchHit]:
    async def _one(query: str) -> list[SearchHit]:
        try:
            return await search.search(query, num=context.max_search_results)
        except ReviewError as exc:
            logger.warning("company_search_failed | query=%r | error=%s | fallback=no_hits", query, exc)
            return []

    hits: list[SearchHit] = []
    seen: set[str] = set()
    for batch in await asyncio.gather(*(_one(query) for query in queries)):
        for hit in batch:
            if hit.url and hit.url not in seen:
                seen.add(hit.url)
                hits.append(hit)
    return hits


def _unverified_report(companies: list[CompanyQuery], status: AnalysisStatus) -> CompanyVerificationReport:
    return CompanyVerificationReport(
        results=[
            CompanyVerificationResult(
                company_name=company.name,
                company_type=company.company_type,
                reason=status.reason,
            )
            for company in companies
        ],
        status=status,
    )


async def verify_companies(
    companies: list[CompanyQuery],
    search: WebSearch,
    llm: StructuredLLM,
    context: RunContext,
) -> CompanyVerificationReport:
    """Verify every distinct company with one batched scoring call.

    On scoring failure every company comes back unverified with confidence
    0 and the report status carries the error.
    """
    companies = dedupe_companies(companies)
    if not companies:
        return CompanyVerificationReport(status=AnalysisStatus.not_performed("no companies to verify"))

    started = time.perf_counter()
    hit_lists = await asyncio.gather(
        *(_search_all(search, build_company_queries(company.name, company.location), context) for company in companies)
    )
    if not any(hit_lists):
        logger.warning("company_search_empty | companies=%s | fallback=unverified", len(companies))

    sections = []
    for index, (company, hits) in enumerate(zip(companies, hit_lists)):
        lines = "\n".join(f"  - {hit.title} | {hit.url} | {hit.snippet}" for hit in hits[:SNIPPETS_PER_COMPANY])
        sections.append(
            f"[{index}] {company.name} ({company.company_type.value}, location: {company.location or 'unknown'})\n"
            f"{lines or '  (no results)'}"
        )
    prompt = "Companies and their search results:\n\n" + "\n\n".join(sections)

    try:
        batch = await llm.complete(prompt, CompanyAssessmentBatch, system=SYSTEM_PROMPT)
    except ReviewError as exc:
        logger.warning("company_scoring_failed | companies=%s | error=%s | fallback=unverified", len(companies), exc)
        return _unverified_report(companies, AnalysisStatus.from_error(exc))

    assessments = {assessment.index: assessment for assessment in batch.results}
    results = [
        finalize_assessment(company, assessments.get(index), hits, context)
        for index, (company, hits) in enumerate(zip(companies, hit_lists))
    ]
    logger.info(
        "company_verification_complete | companies=%s | verified=%s | official=%s | duration_s=%.2f",
        len(results),
        sum(1 for result in results if result.verified),
        sum(1 for result in results if result.verification_source == VerificationSource.OFFICIAL_SITE),
        time.perf_counter() - started,
    )
    return CompanyVerificationReport(results=results)
