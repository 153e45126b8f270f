"""
pipeline.py - End-to-end case review.

    review_case(case_id, services, context) -> UnderwritingReport

1. Fetch the case record (failure aborts the run).
2. Run the three phases concurrently:
       purchase/collateral   OCR -> facts -> purchase check, registry findings
       bank statement        OCR -> ledger -> reconciliation, debt cycles, risk scan
       verification          identity check, adverse media, company verification
3. Join, build the report input (missing phases become placeholders),
   render, and optionally write the HTML back to the record.

The verification phase reads collateral representatives from the
purchase/collateral phase's result; it waits for that task only right
before adverse-media screening.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional

from adverse_media import ScreeningSubject, screen_subjects
from aggregate import (
    BANK_STATEMENT,
    PURCHASE_COLLATERAL,
    VERIFICATION,
    build_report_input,
    render_report,
    write_back,
)
from company_verify import CompanyQuery, verify_companies
from config import RunContext, Settings
from crosscheck import collateral_findings, verify_identity, verify_purchases
from debt_cycle import analyze_debt_cycles
from errors import ReviewError
from extract import apply_readings, extract_documents, extract_ledger, fetch_readings
from kintone import KintoneRecordStore, RecordStore
from llm import OpenAIStructuredLLM, StructuredLLM
from logging_config import get_logger
from models import (
    AnalysisStatus,
    BankStatementPhase,
    CaseRecord,
    CompanyType,
    DocumentCategory,
    IdentityVerification,
    OcrDocument,
    PurchaseCollateralPhase,
    ScreeningResult,
    SubjectRole,
    Transaction,
    UnderwritingReport,
    VerificationPhase,
)
from normalize import person_name_key
from ocr import OcrBackend, VisionOcrBackend, ocr_attachments
from reconcile import reconcile
from risk_scan import scan_statements
from search import ArticleFetcher, HttpArticleFetcher, SerperSearch, WebSearch

logger = get_logger(__name__)


class ReviewServices:
    """The external collaborators one review talks to."""

    def __init__(
        self,
        store: RecordStore,
        ocr: OcrBackend,
        llm: StructuredLLM,
        search: WebSearch,
        fetcher: ArticleFetcher,
        report_llm: Optional[StructuredLLM] = None,
    ) -> None:
        self.store = store
        self.ocr = ocr
        self.llm = llm
        self.search = search
        self.fetcher = fetcher
        self.report_llm = report_llm or llm

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReviewServices":
        timeout = settings.http_timeout_seconds
        llm = OpenAIStructuredLLM(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            text_model=settings.report_model,
        )
        return cls(
            store=KintoneRecordStore(
                domain=settings.kintone_domain,
                api_token=settings.kintone_api_token,
                app_id=settings.kintone_app_id,
                timeout=timeout,
            ),
            ocr=VisionOcrBackend(api_key=settings.google_vision_api_key, timeout=max(timeout, 60.0)),
            llm=llm,
            search=SerperSearch(api_key=settings.serper_api_key, timeout=timeout),
            fetcher=HttpArticleFetcher(timeout=min(timeout, 15.0)),
        )


async def _ocr_categories(
    case: CaseRecord,
    services: ReviewServices,
    context: RunContext,
    *categories: DocumentCategory,
) -> list[OcrDocument]:
    refs = [ref for category in categories for ref in services.store.list_attachments(case, category)]
    if not refs:
        return []
    return await ocr_attachments(services.store, services.ocr, refs, context)


# -- Phase 1 --


async def run_purchase_collateral_phase(
    case: CaseRecord,
    services: ReviewServices,
    context: RunContext,
) -> PurchaseCollateralPhase:
    started = time.perf_counter()
    documents = await _ocr_categories(case, services, context, DocumentCategory.PURCHASE, DocumentCategory.COLLATERAL)
    if not documents:
        status = AnalysisStatus.not_performed("no purchase or collateral documents attached")
        return PurchaseCollateralPhase(
            purchase=verify_purchases([], case.purchases, case.applicant_company, context),
            collateral=collateral_findings([]),
            status=status,
        )

    facts = await extract_documents(services.llm, documents)
    phase = PurchaseCollateralPhase(
        documents=facts,
        purchase=verify_purchases(facts, case.purchases, case.applicant_company, context),
        collateral=collateral_findings(facts),
    )
    logger.info(
        "phase_complete | phase=%s | documents=%s | purchase=%s | duration_s=%.2f",
        PURCHASE_COLLATERAL,
        len(facts),
        phase.purchase.result.value,
        time.perf_counter() - started,
    )
    return phase


# -- Phase 2 --


async def _statement_ledgers(
    documents: list[OcrDocument],
    services: ReviewServices,
    context: RunContext,
) -> tuple[list[list[Transaction]], list[str]]:
    async def _one(document: OcrDocument) -> Optional[list[Transaction]]:
        try:
            return await extract_ledger(services.llm, document, context)
        except ReviewError as exc:
            logger.warning(
                "ledger_unavailable | file=%r | error=%s | fallback=analysis_unavailable",
                document.file_name,
                exc,
            )
            return None

    ledgers = await asyncio.gather(*(_one(document) for document in documents))
    failures = [document.file_name for document, ledger in zip(documents, ledgers) if ledger is None]
    return [ledger or [] for ledger in ledgers], failures


async def run_bank_statement_phase(
    case: CaseRecord,
    services: ReviewServices,
    context: RunContext,
) -> BankStatementPhase:
    started = time.perf_counter()
    (main_docs, sub_docs), readings = await asyncio.gather(
        asyncio.gather(
            _ocr_categories(case, services, context, DocumentCategory.MAIN_STATEMENT),
            _ocr_categories(case, services, context, DocumentCategory.SUB_STATEMENT),
        ),
        fetch_readings(services.llm, [counterparty.name for counterparty in case.counterparties]),
    )
    counterparties = apply_readings(case.counterparties, readings)

    if not main_docs and not sub_docs:
        status = AnalysisStatus.not_performed("no bank statement attached")
        return BankStatementPhase(
            reconciliations=reconcile(counterparties, case.expectations, [], context, ledger_status=status),
            debt_cycles=analyze_debt_cycles([], context, ledger_status=status),
            risk_scan=scan_statements([], [], context, ledger_status=status),
            status=status,
        )

    (main_ledgers, main_failures), (sub_ledgers, sub_failures) = await asyncio.gather(
        _statement_ledgers(main_docs, services, context),
        _statement_ledgers(sub_docs, services, context),
    )
    main_ledger = [txn for ledger in main_ledgers for txn in ledger]
    sub_ledger = [txn for ledger in sub_ledgers for txn in ledger]
    ledger = main_ledger + sub_ledger

    failures = main_failures + sub_failures
    ledger_status = AnalysisStatus.completed()
    if failures:
        ledger_status = AnalysisStatus.unavailable(f"ledger extraction failed for: {', '.join(failures)}")
    # Reconciliation needs every statement; the scans report what was read.
    scan_status = ledger_status
    if failures and len(failures) < len(main_docs) + len(sub_docs):
        scan_status = AnalysisStatus.completed()

    phase = BankStatementPhase(
        reconciliations=reconcile(counterparties, case.expectations, ledger, context, ledger_status=ledger_status),
        debt_cycles=analyze_debt_cycles(ledger, context, ledger_status=scan_status, failed_statements=failures),
        risk_scan=scan_statements(
            main_ledger, sub_ledger, context, ledger_status=scan_status, failed_statements=failures
        ),
        statement_files=[document.file_name for document in main_docs + sub_docs],
        transaction_count=len(ledger),
        status=ledger_status,
    )
    logger.info(
        "phase_complete | phase=%s | statements=%s | transactions=%s | failed=%s | duration_s=%.2f",
        BANK_STATEMENT,
        len(phase.statement_files),
        len(ledger),
        len(failures),
        time.perf_counter() - started,
    )
    return phase


# -- Phase 3 --


def screening_subjects(
    case: CaseRecord,
    context: RunContext,
    purchase_collateral: Optional[PurchaseCollateralPhase],
) -> list[ScreeningSubject]:
    """Applicant first, then the first representative of each collateral company."""
    subjects = []
    seen: set[str] = set()
    if case.applicant_name:
        subjects.append(
            ScreeningSubject(
                name=case.applicant_name,
                age=case.applicant_age(context.as_of),
                role=SubjectRole.APPLICANT,
                company=case.applicant_company or None,
            )
        )
        seen.add(person_name_key(case.applicant_name))

    if purchase_collateral is not None:
        for registry in purchase_collateral.collateral.companies:
            if not registry.representatives:
                continue
            name = registry.representatives[0]
            key = person_name_key(name)
            if not key or key in seen:
                continue
            seen.add(key)
            subjects.append(
                ScreeningSubject(name=name, role=SubjectRole.REPRESENTATIVE, company=registry.company_name)
            )
    return subjects


def company_queries(case: CaseRecord) -> list[CompanyQuery]:
    companies = []
    if case.applicant_company:
        companies.append(
            CompanyQuery(name=case.applicant_company, company_type=CompanyType.APPLICANT, location=case.location)
        )
    companies.extend(CompanyQuery(name=row.company, company_type=CompanyType.PURCHASER) for row in case.purchases)
    companies.extend(
        CompanyQuery(name=counterparty.name, company_type=CompanyType.COLLATERAL_PROVIDER)
        for counterparty in case.counterparties
    )
    return companies


async def _identity(case: CaseRecord, services: ReviewServices, context: RunContext) -> IdentityVerification:
    documents = await _ocr_categories(case, services, context, DocumentCategory.IDENTITY)
    facts = await extract_documents(services.llm, documents) if documents else []
    return verify_identity(facts, case.applicant_name, case.birth_date)


async def _screenings(
    case: CaseRecord,
    services: ReviewServices,
    context: RunContext,
    purchase_task: Optional["asyncio.Task[PurchaseCollateralPhase]"],
) -> list[ScreeningResult]:
    purchase_collateral = None
    if purchase_task is not None:
        try:
            purchase_collateral = await purchase_task
        except ReviewError as exc:
            logger.warning("representatives_unavailable | error=%s | fallback=applicant_only", exc)
    subjects = screening_subjects(case, context, purchase_collateral)
    if not subjects:
        return []
    return await screen_subjects(subjects, services.search, services.fetcher, services.llm, context)


async def run_verification_phase(
    case: CaseRecord,
    services: ReviewServices,
    context: RunContext,
    purchase_task: Optional["asyncio.Task[PurchaseCollateralPhase]"] = None,
) -> VerificationPhase:
    started = time.perf_counter()
    identity, screenings, companies = await asyncio.gather(
        _identity(case, services, context),
        _screenings(case, services, context, purchase_task),
        verify_companies(company_queries(case), services.search, services.llm, context),
    )

    applicant = next((result for result in screenings if result.role == SubjectRole.APPLICANT), None)
    representatives = [result for result in screenings if result.role == SubjectRole.REPRESENTATIVE]
    status = AnalysisStatus.completed()
    if applicant is None:
        status = AnalysisStatus.not_performed("no applicant name in the record")
    elif not applicant.status.ok:
        status = applicant.status

    phase = VerificationPhase(
        identity=identity,
        applicant_screening=applicant,
        representative_screenings=representatives,
        companies=companies,
        status=status,
    )
    logger.info(
        "phase_complete | phase=%s | identity_verified=%s | subjects=%s | adverse_hits=%s | companies=%s | duration_s=%.2f",
        VERIFICATION,
        identity.verified,
        len(screenings),
        sum(result.adverse_hit_count for result in screenings),
        len(companies.results),
        time.perf_counter() - started,
    )
    return phase


# -- Orchestration --


async def _guarded(name: str, coroutine, phase_errors: dict[str, str]):
    """Await one phase. A collaborator failure drops the phase, not the run."""
    try:
        return await coroutine
    except ReviewError as exc:
        logger.error("phase_failed | phase=%s | error=%s | fallback=placeholder", name, exc, exc_info=True)
        phase_errors[name] = f"{type(exc).__name__}: {exc}"
        return None


async def review_case(
    case_id: str,
    services: ReviewServices,
    context: RunContext,
    write_back_report: bool = False,
) -> UnderwritingReport:
    """Run the full review for one case.

    Raises:
        CaseNotFoundError: the record store has no such case.
        UpstreamUnavailableError: the record store could not be read.
    """
    started = time.perf_counter()
    logger.info("review_start | case_id=%s | as_of=%s", case_id, context.as_of)
    case = await services.store.get_case(case_id, as_of=context.as_of)

    phase_errors: dict[str, str] = {}
    purchase_task = asyncio.create_task(run_purchase_collateral_phase(case, services, context))
    purchase_collateral, bank_statement, verification = await asyncio.gather(
        _guarded(PURCHASE_COLLATERAL, purchase_task, phase_errors),
        _guarded(BANK_STATEMENT, run_bank_statement_phase(case, services, context), phase_errors),
        _guarded(VERIFICATION, run_verification_phase(case, services, context, purchase_task), phase_errors),
    )

    report_input = build_report_input(case, purchase_collateral, bank_statement, verification, phase_errors)
    report = await render_report(services.report_llm, report_input)

    if write_back_report:
        try:
            await write_back(services.store, report)
        except ReviewError as exc:
            logger.error("write_back_failed | case_id=%s | error=%s", case_id, exc, exc_info=True)

    report = report.model_copy(update={"duration_s": round(time.perf_counter() - started, 2)})
    logger.info(
        "review_complete | case_id=%s | skipped=%s | rendered=%s | duration_s=%.2f",
        case_id,
        len(report_input.skipped_sections),
        report.render_status.ok,
        report.duration_s,
    )
    return report
