"""
aggregate.py - Report aggregation, rendering and formatting.

    build_report_input(...)     merge phase outputs; missing phases become
                                not_performed placeholders
    render_report(llm, input)   LLM template filling -> UnderwritingReport
    split_report_html(html)     risk summary / detailed analysis parts
    write_back(store, report)   optional record-store update
    format_report_text(report)  terminal summary for the CLI
"""

from __future__ import annotations

import json
import re
import time
from typing import Any, Optional, Protocol

from errors import ReviewError
from llm import StructuredLLM
from logging_config import get_logger
from models import (
    AnalysisStatus,
    BankStatementPhase,
    CaseRecord,
    CollateralFindings,
    CompanyVerificationReport,
    DebtCycleReport,
    IdentityVerification,
    PurchaseCollateralPhase,
    PurchaseVerification,
    ReportInput,
    RiskScanReport,
    UnderwritingReport,
    VerificationPhase,
)

logger = get_logger(__name__)

PURCHASE_COLLATERAL = "purchase_collateral"
BANK_STATEMENT = "bank_statement"
VERIFICATION = "verification"

DETAIL_HEADING = "<h2>1. 買取企業分析</h2>"
SUMMARY_HEADING = "<h2>総合評価</h2>"
DETAIL_HEADING_RE = re.compile(r"<h2>\s*1\.\s*買取企業分析\s*</h2>")
HR_RE = re.compile(r"<hr\s*/?>", re.IGNORECASE)

SUMMARY_FIELD = "AI審査_リスク評価"
DETAIL_FIELD = "AI審査_分析詳細"

OUTPUT_WIDTH = 60
SEPARATOR = "=" * OUTPUT_WIDTH

# Bulky fields that add nothing to the rendered report.
RENDER_EXCLUDED_KEYS = {"fetched_article_text", "raw_fields"}

REPORT_SYSTEM_PROMPT = f"""\
You write the underwriting review report for a Japanese invoice-factoring
application as HTML for a rich-text field. Use exactly this structure:

{SUMMARY_HEADING}   overall risk rating (低/中/高) and a short verdict
{DETAIL_HEADING}
<h2>2. 担保企業分析</h2>   collateral verdicts per month, with the matched
                        transactions ("¥amount ← payer") as evidence
<h2>3. 通帳分析</h2>     other factoring lenders, open debts, alerts,
                        gambling, large cash withdrawals, transfers
<h2>4. 本人確認・代表者リスク</h2>  identity check and adverse media
<h2>5. 企業実在性</h2>   company verification with URLs

Rules:
- Use only the data given. Do not invent findings.
- A section whose status is not "completed", or that is listed in
  skipped_sections, must say that it was not checked and why. Never
  describe an unchecked section as clean.
- A collateral month with analysis_unavailable=true is "未確認", not "未入金".
- Hits with manual_review=true must be marked 要手動確認.
Return HTML only."""


class ReportStore(Protocol):
    async def update_case(self, case_id: str, fields: dict[str, Any]) -> None: ...


def placeholder_purchase_collateral(reason: str) -> PurchaseCollateralPhase:
    status = AnalysisStatus.not_performed(reason)
    return PurchaseCollateralPhase(
        purchase=PurchaseVerification(status=status),
        collateral=CollateralFindings(status=status),
        status=status,
    )


def placeholder_bank_statement(reason: str) -> BankStatementPhase:
    status = AnalysisStatus.not_performed(reason)
    return BankStatementPhase(
        debt_cycles=DebtCycleReport(status=status),
        risk_scan=RiskScanReport(status=status),
        status=status,
    )


def placeholder_verification(reason: str) -> VerificationPhase:
    status = AnalysisStatus.not_performed(reason)
    return VerificationPhase(
        identity=IdentityVerification(status=status),
        companies=CompanyVerificationReport(status=status),
        status=status,
    )


def build_report_input(
    case: CaseRecord,
    purchase_collateral: Optional[PurchaseCollateralPhase] = None,
    bank_statement: Optional[BankStatementPhase] = None,
    verification: Optional[VerificationPhase] = None,
    phase_errors: Optional[dict[str, str]] = None,
) -> ReportInput:
    """Merge phase outputs into the complete renderer input.

    A phase passed as None is replaced by its placeholder with
    status=not_performed; the reason comes from `phase_errors` when given.
    Phases that ran but are not completed are also listed in
    skipped_sections.
    """
    phase_errors = phase_errors or {}
    skipped: dict[str, str] = {}

    if purchase_collateral is None:
        reason = phase_errors.get(PURCHASE_COLLATERAL, "phase did not run")
        purchase_collateral = placeholder_purchase_collateral(reason)
    if bank_statement is None:
        reason = phase_errors.get(BANK_STATEMENT, "phase did not run")
        bank_statement = placeholder_bank_statement(reason)
    if verification is None:
        reason = phase_errors.get(VERIFICATION, "phase did not run")
        verification = placeholder_verification(reason)

    sections = {
        PURCHASE_COLLATERAL: purchase_collateral.status,
        "purchase_verification": purchase_collateral.purchase.status,
        "collateral_findings": purchase_collateral.collateral.status,
        BANK_STATEMENT: bank_statement.status,
        "debt_cycles": bank_statement.debt_cycles.status,
        "risk_scan": bank_statement.risk_scan.status,
        VERIFICATION: verification.status,
        "identity": verification.identity.status,
        "company_verification": verification.companies.status,
    }
    for name, status in sections.items():
        if not status.ok:
            skipped[name] = f"{status.state.value}: {status.reason or 'no reason given'}"

    report_input = ReportInput(
        case_id=case.case_id,
        crm=case.raw_fields,
        purchase_collateral=purchase_collateral,
        bank_statement=bank_statement,
        verification=verification,
        skipped_sections=skipped,
    )
    if skipped:
        logger.warning("report_sections_skipped | case_id=%s | sections=%s", case.case_id, sorted(skipped))
    return report_input


def split_report_html(html: str) -> tuple[str, str]:
    """Split rendered HTML into (risk summary, detailed analysis).

    Split at the first detailed-analysis heading. Without that heading the
    summary is everything before the first <hr> and the detail is the
    whole document.
    """
    match = DETAIL_HEADING_RE.search(html)
    if match:
        return html[: match.start()].strip(), html[match.start() :].strip()
    summary = HR_RE.split(html, maxsplit=1)[0]
    return summary.strip(), html.strip()


def _strip_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _strip_keys(item) for key, item in value.items() if key not in RENDER_EXCLUDED_KEYS}
    if isinstance(value, list):
        return [_strip_keys(item) for item in value]
    return value


def render_prompt(report_input: ReportInput) -> str:
    payload = _strip_keys(report_input.model_dump(mode="json"))
    payload["crm"] = report_input.crm
    return "Review data (JSON):\n" + json.dumps(payload, ensure_ascii=False, indent=1, default=str)


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


async def render_report(llm: StructuredLLM, report_input: ReportInput) -> UnderwritingReport:
    """Render the report. A renderer failure still returns the report input."""
    started = time.perf_counter()
    try:
        html = _strip_code_fence(await llm.complete_text(render_prompt(report_input), system=REPORT_SYSTEM_PROMPT))
    except ReviewError as exc:
        logger.warning("report_render_failed | case_id=%s | error=%s | fallback=empty_html", report_input.case_id, exc)
        return UnderwritingReport(
            case_id=report_input.case_id,
            report_input=report_input,
            render_status=AnalysisStatus.from_error(exc),
            duration_s=round(time.perf_counter() - started, 2),
        )

    summary, detail = split_report_html(html)
    logger.info(
        "report_rendered | case_id=%s | html_chars=%s | summary_chars=%s | detail_chars=%s",
        report_input.case_id,
        len(html),
        len(summary),
        len(detail),
    )
    return UnderwritingReport(
        case_id=report_input.case_id,
        report_input=report_input,
        html=html,
        risk_summary_html=summary,
        detailed_analysis_html=detail,
        duration_s=round(time.perf_counter() - started, 2),
    )


async def write_back(
    store: ReportStore,
    report: UnderwritingReport,
    summary_field: str = SUMMARY_FIELD,
    detail_field: str = DETAIL_FIELD,
) -> bool:
    """Write both HTML parts to the record. Skipped when rendering failed."""
    if not report.render_status.ok or not report.html:
        logger.warning("write_back_skipped | case_id=%s | reason=no_rendered_html", report.case_id)
        return False
    await store.update_case(
        report.case_id,
        {summary_field: report.risk_summary_html, detail_field: report.detailed_analysis_html},
    )
    return True


def _status_label(status: AnalysisStatus) -> str:
    if status.ok:
        return "checked"
    return f"NOT CHECKED ({status.state.value}: {status.reason})"


def format_report_text(report: UnderwritingReport) -> str:
    """Terminal-friendly summary of the review findings."""
    data = report.report_input
    bank = data.bank_statement
    verification = data.verification
    lines = ["", SEPARATOR, f"  Underwriting review - case {report.case_id}", SEPARATOR, ""]

    lines.append(f"  Purchase check:  {data.purchase_collateral.purchase.result.value}  "
                 f"[{_status_label(data.purchase_collateral.purchase.status)}]")

    lines.append("")
    lines.append(f"  Collateral:      [{_status_label(bank.status)}]")
    for reconciliation in bank.reconciliations:
        lines.append(
            f"    {reconciliation.counterparty_name}  history={'yes' if reconciliation.has_prior_history else 'NO'}"
        )
        for verdict in reconciliation.verdicts:
            mark = "OK " if verdict.matched else "-- "
            lines.append(
                f"      {mark}{verdict.period}  expected ¥{verdict.expected_amount:,.0f}  "
                f"{verdict.match_kind.value}  {verdict.source_summary}"
            )

    lines.append("")
    lines.append(f"  Other lenders:   [{_status_label(bank.debt_cycles.status)}]")
    for record in bank.debt_cycles.records:
        lines.append(
            f"    {record.counterparty_name}: {record.status.value} ({record.note}), "
            f"{len(record.paired_cycles)} settled cycle(s)"
        )
    for alert in bank.debt_cycles.alerts:
        lines.append(f"    ALERT {alert.kind.value}: {alert.message}")

    risk = bank.risk_scan
    lines.append(
        f"  Risk scan:       gambling={len(risk.gambling)} cash={len(risk.large_cash_withdrawals)} "
        f"transfers={len(risk.cross_account_transfers)}  [{_status_label(risk.status)}]"
    )
    if risk.failed_statements:
        lines.append(f"    unread statements: {', '.join(risk.failed_statements)}")

    lines.append("")
    lines.append(
        f"  Identity:        {'verified' if verification.identity.verified else 'not verified'}  "
        f"[{_status_label(verification.identity.status)}]"
    )
    screenings = [verification.applicant_screening, *verification.representative_screenings]
    for screening in screenings:
        if screening is None:
            continue
        lines.append(
            f"  Adverse media:   {screening.subject_name} ({screening.role.value}) "
            f"hits={screening.adverse_hit_count} fraud_sites={screening.fraud_site_hits}  "
            f"[{_status_label(screening.status)}]"
        )
        for candidate in screening.confirmed:
            flag = " [manual review]" if candidate.manual_review else ""
            lines.append(f"    - {candidate.url}{flag}")

    lines.append("")
    lines.append(f"  Companies:       [{_status_label(verification.companies.status)}]")
    for result in verification.companies.results:
        lines.append(
            f"    {result.company_name} ({result.company_type.value}): "
            f"{result.verification_source.value} {result.confidence:.0f}"
        )

    if data.skipped_sections:
        lines.append("")
        lines.append("  Skipped sections:")
        for name, reason in sorted(data.skipped_sections.items()):
            lines.append(f"    {name}: {reason}")

    lines.append("")
    lines.append(f"  Report rendered: {'yes' if report.render_status.ok else _status_label(report.render_status)}")
    lines.append(SEPARATOR)
    return "\n".join(lines)
