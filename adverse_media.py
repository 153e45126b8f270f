"""
adverse_media.py - Two-stage adverse-media filter and fraud-site lookup.

Per subject, four web searches ("{name} 詐欺", "{name} 逮捕", ...) produce
candidate hits. Each hit moves through:

    triaged --needs_full_check=False--> rejected          (no fetch)
    triaged --needs_full_check=True---> fetched -> confirmed | rejected

Stage 1 (snippet triage) is one cheap LLM call per query. Stage 2 fetches
the article and extracts the person it is about; the decision itself is
made here in code:

    name      person_name_key(extracted) == person_name_key(subject)
              (script variants only - a different kanji never matches)
    role      suspect / defendant / convict
    crime     the article is about a crime or illegality
    age       within age_tolerance_years, checked only when both the
              stated age and the article year are known

Errors are fail-safe-true: a triage error sends every hit of that query to
stage 2, a stage-2 classifier error confirms the hit for manual review,
and a failed fetch falls back to the snippet.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Optional
from urllib.parse import quote, urlparse

from pydantic import BaseModel, Field

from config import FraudSite, RunContext
from errors import ReviewError
from llm import StructuredLLM
from logging_config import get_logger
from models import (
    AdverseMediaCandidate,
    AnalysisStatus,
    CandidateStage,
    FraudSiteResult,
    ScreeningResult,
    SearchHit,
    SubjectRole,
)
from normalize import person_name_key, person_names_equal
from search import ArticleFetcher, WebSearch, html_to_text

logger = get_logger(__name__)

CONVICTED_ROLES = {"suspect", "defendant", "convict", "容疑者", "被告", "被告人", "受刑者"}
MANUAL_REVIEW_RATIONALE = "classification unavailable, manual review required"


class RejectionBasis(str, Enum):
    NONE = "none"
    NO_CRIME_CONTEXT = "no_crime_context"
    NAME_ABSENT = "name_absent"
    AGE_CONTRADICTION = "age_contradiction"
    MISSING_ATTRIBUTE = "missing_attribute"


class TriageVerdict(BaseModel):
    index: int = Field(..., ge=0, description="Position of the hit in the list given.")
    needs_full_check: bool
    rejection_basis: RejectionBasis = RejectionBasis.NONE
    stated_age: Optional[int] = Field(default=None, description="Age stated in the snippet, if any.")
    reason: str = ""


class TriageBatch(BaseModel):
    results: list[TriageVerdict] = Field(default_factory=list)


class ArticleClassification(BaseModel):
    extracted_name: Optional[str] = Field(default=None, description="Full name of the main person, as written.")
    role: Optional[str] = Field(
        default=None,
        description="suspect, defendant, convict, victim, commentator, officer, other",
    )
    is_crime_related: bool = False
    stated_age: Optional[int] = None
    article_year: Optional[int] = None
    rationale: str = ""


class ScreeningSubject(BaseModel):
    name: str
    age: Optional[int] = None
    role: SubjectRole = SubjectRole.APPLICANT
    company: Optional[str] = None


TRIAGE_SYSTEM_PROMPT = """\
You screen Japanese web search results for a person's involvement in
crime. For every hit decide needs_full_check:

true  when the snippet plausibly involves the person in a crime or
      illegality context (arrest, fraud, indictment, regulatory action,
      wanted notice) AND the name or a strong proxy (employer, title,
      location) is present.
false only with one of these rejection_basis values:
      no_crime_context   nothing about crime or illegality
      name_absent        the person is not mentioned at all
      age_contradiction  a stated age differs from the subject's by more
                         than 10 years (put that age in stated_age)
Missing or ambiguous attributes are never a reason to reject."""

ARTICLE_SYSTEM_PROMPT = """\
You read a Japanese news article or web page. Report the full name of the
person the article is mainly about exactly as written (do not correct or
normalize kanji), how the article portrays them (role), whether it is
about a crime or illegality, the age stated for them and the year of the
article if either is given."""


def is_social_media(url: str, context: RunContext) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return any(host == domain or host.endswith("." + domain) for domain in context.social_media_domains)


def build_queries(name: str, context: RunContext) -> list[str]:
    return [f"{name} {term}" for term in context.adverse_query_terms]


def enforce_triage(
    verdict: TriageVerdict,
    subject_age: Optional[int],
    context: RunContext,
) -> tuple[bool, str]:
    """Apply the bias-toward-checking policy to one classifier verdict."""
    if verdict.needs_full_check:
        return True, verdict.reason or "possible crime context"
    basis = verdict.rejection_basis
    if basis in (RejectionBasis.NO_CRIME_CONTEXT, RejectionBasis.NAME_ABSENT):
        return False, f"{basis.value}: {verdict.reason}".rstrip(": ")
    if basis == RejectionBasis.AGE_CONTRADICTION:
        if (
            subject_age is not None
            and verdict.stated_age is not None
            and abs(verdict.stated_age - subject_age) > context.triage_age_contradiction_years
        ):
            return False, f"age_contradiction: stated {verdict.stated_age}, subject {subject_age}"
        return True, "age contradiction not established, checking"
    return True, f"rejection overridden ({basis.value}), checking"


def age_consistent(
    subject_age: Optional[int],
    stated_age: Optional[int],
    article_year: Optional[int],
    current_year: int,
    tolerance: int,
) -> bool:
    """True unless both ages are known and differ by more than tolerance."""
    if subject_age is None or stated_age is None or article_year is None:
        return True
    inferred_age = stated_age + (current_year - article_year)
    return abs(inferred_age - subject_age) <= tolerance


def decide_candidate(
    candidate: AdverseMediaCandidate,
    classification: ArticleClassification,
    context: RunContext,
) -> AdverseMediaCandidate:
    """Turn a stage-2 classification into confirmed/rejected."""
    name_matches = bool(classification.extracted_name) and person_names_equal(
        classification.extracted_name, candidate.subject_name
    )
    role = (classification.role or "").strip().lower() or None
    role_ok = role in CONVICTED_ROLES
    age_ok = age_consistent(
        candidate.subject_age,
        classification.stated_age,
        classification.article_year,
        context.as_of.year,
        context.age_tolerance_years,
    )
    confirmed = name_matches and classification.is_crime_related is True and role_ok and age_ok

    reasons = []
    if not name_matches:
        reasons.append(
            f"name differs ({person_name_key(classification.extracted_name)!r} vs "
            f"{person_name_key(candidate.subject_name)!r})"
        )
    if not classification.is_crime_related:
        reasons.append("not crime related")
    if not role_ok:
        reasons.append(f"role {role or 'unknown'}")
    if not age_ok:
        reasons.append("age inconsistent")

    return candidate.model_copy(
        update={
            "extracted_name": classification.extracted_name,
            "name_matches": name_matches,
            "is_crime_related": classification.is_crime_related,
            "role": role,
            "rationale": classification.rationale if confirmed else "; ".join(reasons),
            "stage": CandidateStage.CONFIRMED if confirmed else CandidateStage.REJECTED,
        }
    )


async def triage_query(
    llm: StructuredLLM,
    subject: ScreeningSubject,
    query: str,
    hits: list[SearchHit],
    context: RunContext,
) -> list[AdverseMediaCandidate]:
    """Stage 1 for one query: one classifier call covering all its hits."""
    candidates = [
        AdverseMediaCandidate(
            subject_name=subject.name,
            subject_age=subject.age,
            query=query,
            title=hit.title,
            url=hit.url,
            snippet=hit.snippet,
        )
        for hit in hits
    ]
    if not candidates:
        return []

    listing = "\n".join(
        f"[{index}] {candidate.title}\n    {candidate.url}\n    {candidate.snippet}"
        for index, candidate in enumerate(candidates)
    )
    prompt = (
        f"Subject: {subject.name}\n"
        f"Age: {subject.age if subject.age is not None else 'unknown'}\n"
        f"Company: {subject.company or 'unknown'}\n"
        f"Query: {query}\n\nHits:\n{listing}"
    )
    try:
        batch = await llm.complete(prompt, TriageBatch, system=TRIAGE_SYSTEM_PROMPT)
    except ReviewError as exc:
        logger.warning(
            "triage_failed | subject=%r | query=%r | hits=%s | error=%s | fallback=needs_full_check",
            subject.name,
            query,
            len(candidates),
            exc,
        )
        return [
            candidate.model_copy(update={"needs_full_check": True, "triage_reason": f"triage unavailable: {exc}"})
            for candidate in candidates
        ]

    verdicts = {verdict.index: verdict for verdict in batch.results}
    triaged = []
    for index, candidate in enumerate(candidates):
        verdict = verdicts.get(index)
        if verdict is None:
            needs_check, reason = True, "no triage verdict returned, checking"
        else:
            needs_check, reason = enforce_triage(verdict, subject.age, context)
        update = {"needs_full_check": needs_check, "triage_reason": reason}
        if not needs_check:
            update["stage"] = CandidateStage.REJECTED
        triaged.append(candidate.model_copy(update=update))
    return triaged


async def review_candidate(
    llm: StructuredLLM,
    fetcher: ArticleFetcher,
    candidate: AdverseMediaCandidate,
    context: RunContext,
) -> AdverseMediaCandidate:
    """Stage 2: fetch, classify, decide. Never raises for collaborator errors."""
    html = await fetcher.fetch(candidate.url)
    text = html_to_text(html, max_chars=context.article_text_chars) if html else ""
    if not text:
        logger.warning("article_unavailable | url=%s | fallback=snippet", candidate.url)
        text = f"{candidate.title}\n{candidate.snippet}"
    candidate = candidate.model_copy(update={"fetched_article_text": text})

    prompt = f"Title: {candidate.title}\nURL: {candidate.url}\n\nText:\n{text}"
    try:
        classification = await llm.complete(prompt, ArticleClassification, system=ARTICLE_SYSTEM_PROMPT)
    except ReviewError as exc:
        logger.warning(
            "article_classification_failed | subject=%r | url=%s | error=%s | fallback=confirmed_manual_review",
            candidate.subject_name,
            candidate.url,
            exc,
        )
        return candidate.model_copy(
            update={
                "manual_review": True,
                "rationale": MANUAL_REVIEW_RATIONALE,
                "stage": CandidateStage.CONFIRMED,
            }
        )
    return decide_candidate(candidate, classification, context)


def _page_mentions(text: str, name: str) -> bool:
    variations = {name, name.replace(" ", ""), name.replace(" ", "").replace("　", "")}
    return any(variation and variation in text for variation in variations)


async def check_fraud_site(fetcher: ArticleFetcher, site: FraudSite, name: str, context: RunContext) -> FraudSiteResult:
    url = site.search_url.format(query=quote(name))
    html = await fetcher.fetch(url)
    if html is None:
        return FraudSiteResult(site_name=site.name, url=site.url, found=False, error="site unavailable")

    text = html_to_text(html)
    lowered = text.lower()
    if any(pattern.lower() in lowered for pattern in context.no_result_patterns):
        return FraudSiteResult(site_name=site.name, url=site.url, found=False)

    found = _page_mentions(text, name)
    return FraudSiteResult(
        site_name=site.name,
        url=site.url,
        found=found,
        details=f"{name} appears on {site.name}" if found else None,
    )


async def check_fraud_sites(fetcher: ArticleFetcher, name: str, context: RunContext) -> list[FraudSiteResult]:
    return list(await asyncio.gather(*(check_fraud_site(fetcher, site, name, context) for site in context.fraud_sites)))


async def _search_query(search: WebSearch, query: str, context: RunContext) -> Optional[list[SearchHit]]:
    try:
        return await search.search(query, num=context.max_search_results)
    except ReviewError as exc:
        logger.warning("adverse_search_failed | query=%r | error=%s | fallback=failed_query", query, exc)
        return None


async def screen_subjects(
    subjects: list[ScreeningSubject],
    search: WebSearch,
    fetcher: ArticleFetcher,
    llm: StructuredLLM,
    context: RunContext,
) -> list[ScreeningResult]:
    """Screen every subject. Triage for all subjects finishes before any fetch.

    Returns one ScreeningResult per subject, in input order. A subject
    whose every search failed is marked unavailable rather than clean.
    """
    started = time.perf_counter()
    plan = [(index, query) for index, subject in enumerate(subjects) for query in build_queries(subject.name, context)]
    search_results = await asyncio.gather(*(_search_query(search, query, context) for _, query in plan))

    failed_queries: list[list[str]] = [[] for _ in subjects]
    triage_jobs = []
    seen_urls: list[set[str]] = [set() for _ in subjects]
    excluded = 0
    for (index, query), hits in zip(plan, search_results):
        if hits is None:
            failed_queries[index].append(query)
            continue
        kept = []
        for hit in hits:
            if not hit.url or hit.url in seen_urls[index]:
                continue
            if is_social_media(hit.url, context):
                excluded += 1
                continue
            seen_urls[index].add(hit.url)
            kept.append(hit)
        triage_jobs.append((index, triage_query(llm, subjects[index], query, kept, context)))

    triaged_lists = await asyncio.gather(*(job for _, job in triage_jobs))
    triaged_by_subject: list[list[AdverseMediaCandidate]] = [[] for _ in subjects]
    for (index, _), candidates in zip(triage_jobs, triaged_lists):
        triaged_by_subject[index].extend(candidates)

    flagged = [
        (index, candidate)
        for index, candidates in enumerate(triaged_by_subject)
        for candidate in candidates
        if candidate.needs_full_check
    ]
    logger.info(
        "adverse_triage_complete | subjects=%s | candidates=%s | flagged=%s | social_excluded=%s | failed_queries=%s",
        len(subjects),
        sum(len(candidates) for candidates in triaged_by_subject),
        len(flagged),
        excluded,
        sum(len(queries) for queries in failed_queries),
    )

    reviewed, fraud_results = await asyncio.gather(
        asyncio.gather(*(review_candidate(llm, fetcher, candidate, context) for _, candidate in flagged)),
        asyncio.gather(*(check_fraud_sites(fetcher, subject.name, context) for subject in subjects)),
    )

    confirmed: list[list[AdverseMediaCandidate]] = [[] for _ in subjects]
    for (index, _), candidate in zip(flagged, reviewed):
        if candidate.stage == CandidateStage.CONFIRMED:
            confirmed[index].append(candidate)

    results = []
    for index, subject in enumerate(subjects):
        queries = build_queries(subject.name, context)
        if queries and len(failed_queries[index]) == len(queries):
            status = AnalysisStatus.unavailable("all adverse-media searches failed")
        else:
            status = AnalysisStatus.completed()
        result = ScreeningResult(
            subject_name=subject.name,
            subject_age=subject.age,
            role=subject.role,
            company=subject.company,
            confirmed=confirmed[index],
            fraud_site_results=fraud_results[index],
            failed_queries=failed_queries[index],
            candidates_seen=len(triaged_by_subject[index]),
            status=status,
        )
        results.append(result)
        logger.info(
            "screening_complete | subject=%r | role=%s | candidates=%s | confirmed=%s | manual_review=%s | fraud_hits=%s",
            subject.name,
            subject.role.value,
            result.candidates_seen,
            result.adverse_hit_count,
            sum(1 for candidate in result.confirmed if candidate.manual_review),
            result.fraud_site_hits,
        )

    logger.info("adverse_media_complete | subjects=%s | duration_s=%.2f", len(subjects), time.perf_counter() - started)
    return results
