"""
models.py - Data Models for the Underwriting Review Pipeline

This file defines ALL data structures used across the review pipeline.
Every module communicates exclusively through these models:

    kintone.py        ->  CaseRecord, AttachmentRef
    ocr.py            ->  OcrDocument
    extract.py        ->  DocumentFacts, list[Transaction]
    reconcile.py      ->  list[CounterpartyReconciliation]
    debt_cycle.py     ->  DebtCycleReport
    risk_scan.py      ->  RiskScanReport
    adverse_media.py  ->  ScreeningResult
    company_verify.py ->  CompanyVerificationReport
    crosscheck.py     ->  PurchaseVerification, IdentityVerification,
                          CollateralFindings
    aggregate.py      ->  ReportInput, UnderwritingReport

Design principles:
1. Every analysis section carries an AnalysisStatus so the report can
   tell "checked, clean" apart from "not checked"
2. Models carry the transactions/URLs that justify a verdict so the
   reasoning is traceable end-to-end
3. Extracted facts stay an open-world bag; typed accessors exist only for
   the consumers that need them (invoice, registry, identity)
"""

from __future__ import annotations

import datetime as dt
import re
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from errors import MalformedOutputError

PERIOD_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


# -- Status markers --


class AnalysisState(str, Enum):
    """Outcome of one unit of analysis (document, query, counterparty, phase)."""

    COMPLETED = "completed"
    # Collaborator error: record store / OCR / LLM / search failed.
    UNAVAILABLE = "unavailable"
    # Collaborator answered with a structure that failed validation.
    MALFORMED = "malformed"
    # No input for this analysis (e.g. no bank statement attached).
    NOT_PERFORMED = "not_performed"


class AnalysisStatus(BaseModel):
    """Explicit marker attached to every analysis section.

    A section with state=unavailable must never be read as a clean result:
    the renderer shows the reason instead of the (empty) findings.
    """

    state: AnalysisState = Field(
        default=AnalysisState.COMPLETED,
        description="Outcome of the analysis unit.",
    )
    reason: Optional[str] = Field(
        default=None,
        description=(
            "Human-readable reason for any state other than completed. "
            "Shown verbatim in the report next to the skipped section."
        ),
    )

    @property
    def ok(self) -> bool:
        return self.state == AnalysisState.COMPLETED

    @classmethod
    def completed(cls) -> "AnalysisStatus":
        return cls()

    @classmethod
    def unavailable(cls, reason: str) -> "AnalysisStatus":
        return cls(state=AnalysisState.UNAVAILABLE, reason=reason)

    @classmethod
    def malformed(cls, reason: str) -> "AnalysisStatus":
        return cls(state=AnalysisState.MALFORMED, reason=reason)

    @classmethod
    def not_performed(cls, reason: str) -> "AnalysisStatus":
        return cls(state=AnalysisState.NOT_PERFORMED, reason=reason)

    @classmethod
    def from_error(cls, exc: Exception) -> "AnalysisStatus":
        """Map an exception onto the taxonomy (malformed vs unavailable)."""
        if isinstance(exc, MalformedOutputError):
            return cls.malformed(str(exc))
        return cls.unavailable(f"{type(exc).__name__}: {exc}")


# -- Ledger --


class Transaction(BaseModel):
    """Single row of a bank statement, as extracted from OCR text.

    Immutable once extracted. Both reconciliation components consume
    transactions read-only; (source_document, sequence) identifies a row
    within a run so the same transaction is never counted twice.
    """

    date: dt.date = Field(..., description="Posting date of the row.")
    amount: float = Field(
        ...,
        description=(
            "Signed amount. Inflows (deposits) are positive, outflows "
            "(withdrawals, transfers out) are negative."
        ),
    )
    counterparty_name_raw: str = Field(
        default="",
        description=(
            "Payer/payee name exactly as printed on the statement, e.g. "
            "'カ)ヤマダケンセツ' or 'ﾌﾘｺﾐ ｵﾙﾀ'. Counterparty attribution and "
            "lender detection look at this field only, never at the memo."
        ),
    )
    source_document: str = Field(
        default="",
        description="File name of the statement the row came from.",
    )
    description: Optional[str] = Field(
        default=None,
        description="Free-text memo (摘要) column, if present.",
    )
    sequence: int = Field(
        default=0,
        ge=0,
        description="Position of the row in its source ledger (0-based).",
    )

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "examples": [
                {
                    "date": "2025-07-31",
                    "amount": 5000000,
                    "counterparty_name_raw": "カ)ヤマダケンセツ",
                    "source_document": "main_2025.pdf",
                    "description": "振込",
                    "sequence": 12,
                }
            ]
        },
    )

    @property
    def key(self) -> tuple[str, int]:
        return (self.source_document, self.sequence)

    @property
    def is_inflow(self) -> bool:
        return self.amount > 0

    @property
    def is_outflow(self) -> bool:
        return self.amount < 0

    @property
    def magnitude(self) -> float:
        return abs(self.amount)


class Counterparty(BaseModel):
    """A collateral debtor listed in the CRM collateral table."""

    key: str
    name: str
    aliases: list[str] = Field(
        default_factory=list,
        description=(
            "Alternative spellings used for attribution, typically the "
            "katakana reading printed on bank statements."
        ),
    )

    @property
    def all_names(self) -> list[str]:
        return [self.name, *self.aliases]


class ExpectedAmount(BaseModel):
    """Ground-truth expected collateral payment for one month.

    Sourced from the record store, not from OCR. Zero is a valid
    "no payment expected" state, not a missing value.
    """

    counterparty_key: str
    period: str = Field(..., description="Expected month as YYYY-MM.")
    amount: float = Field(..., ge=0)

    @field_validator("period")
    @classmethod
    def _check_period(cls, value: str) -> str:
        value = value.strip()
        if not PERIOD_PATTERN.match(value):
            raise ValueError(f"period must be YYYY-MM, got {value!r}")
        return value


# -- Collateral reconciliation --


class MatchKind(str, Enum):
    """How a period's expected amount was satisfied."""

    # One transaction inside the home month (or the boundary window).
    SINGLE = "single"
    # Several transactions, all inside the home month.
    INTRA_MONTH_SPLIT = "intra_month_split"
    # Several transactions straddling a month edge within the boundary window.
    CROSS_MONTH_SPLIT = "cross_month_split"
    # Transactions spread over more than the home month plus boundary.
    MULTI_MONTH_SPLIT = "multi_month_split"
    # Everything arrived in the month before the home month.
    PREPAID = "prepaid"
    # Everything arrived in the month after the home month.
    POSTPAID = "postpaid"
    UNMATCHED = "unmatched"


class MonthlyVerdict(BaseModel):
    """Reconciliation verdict for one (counterparty, period) pair.

    matched and has_prior_history are deliberately separate signals:
    an expected 0 with nothing received is matched=True for reconciliation
    but contributes nothing to the counterparty's history flag.
    """

    counterparty_key: str
    period: str
    expected_amount: float = Field(..., ge=0)
    matched_amount: float = Field(default=0.0, ge=0)
    matched: bool = False
    match_kind: MatchKind = MatchKind.UNMATCHED
    matched_transactions: list[Transaction] = Field(
        default_factory=list,
        description=(
            "Transactions assigned to this period. A transaction appears "
            "here for at most one verdict across the run."
        ),
    )
    unmatched_transactions: list[Transaction] = Field(
        default_factory=list,
        description=(
            "Near misses: attributed transactions inside this period's "
            "eligible window that no period used. May repeat across "
            "neighbouring verdicts."
        ),
    )
    has_prior_history: bool = Field(
        default=False,
        description=(
            "Counterparty-level flag copied onto each verdict: True iff any "
            "period in the trailing window has a nonzero matched amount."
        ),
    )
    analysis_unavailable: bool = Field(
        default=False,
        description=(
            "True when the ledger could not be extracted. Such a verdict is "
            "unmatched because nothing was checked, not because of a mismatch."
        ),
    )
    unavailable_reason: Optional[str] = None

    @property
    def difference(self) -> float:
        return round(self.matched_amount - self.expected_amount, 2)

    @property
    def contributes_history(self) -> bool:
        return self.matched_amount > 0

    @property
    def no_payment_expected(self) -> bool:
        return self.expected_amount == 0

    @property
    def source_summary(self) -> str:
        """'¥5,000,000 ← カ)ヤマダ + ¥1,500,000 ← カ)ヤマダ' style evidence line."""
        if self.analysis_unavailable:
            return "analysis unavailable"
        if not self.matched_transactions:
            return "no payment expected" if self.matched else "not detected"
        return " + ".join(
            f"¥{txn.amount:,.0f} ← {txn.counterparty_name_raw}"
            for txn in self.matched_transactions
        )


class CounterpartyReconciliation(BaseModel):
    """All verdicts for one collateral counterparty."""

    counterparty_key: str
    counterparty_name: str
    transactions: list[Transaction] = Field(
        default_factory=list,
        description="Attributed inflows in ledger (chronological) order.",
    )
    verdicts: list[MonthlyVerdict] = Field(default_factory=list)
    has_prior_history: bool = False
    analysis_unavailable: bool = False
    unavailable_reason: Optional[str] = None

    @property
    def all_matched(self) -> bool:
        return bool(self.verdicts) and all(verdict.matched for verdict in self.verdicts)


# -- Debt cycles --


class DebtStatus(str, Enum):
    SETTLED = "settled"
    # Unpaired inflow older than the open-debt age: confirm with applicant.
    POSSIBLY_OPEN = "possibly_open"
    # Unpaired inflow younger than the open-debt age: may be pre-maturity.
    NEEDS_REVIEW = "needs_review"


class CycleStatus(str, Enum):
    SETTLED = "settled"
    PARTIAL_REPAYMENT = "partial_repayment"


class PairedCycle(BaseModel):
    inbound: Transaction
    outbound: Transaction
    status: CycleStatus
    repayment_ratio: float = Field(
        ...,
        description="abs(outbound) / inbound, e.g. 1.08 for a 8% fee.",
    )


class CounterpartyDebtRecord(BaseModel):
    """Inflow/outflow pairing for one known third-party financier."""

    counterparty_name: str = Field(
        ..., description="Canonical lender name from the registry."
    )
    inbound: list[Transaction] = Field(default_factory=list)
    outbound: list[Transaction] = Field(default_factory=list)
    paired_cycles: list[PairedCycle] = Field(default_factory=list)
    unpaired_inbound: list[Transaction] = Field(default_factory=list)
    unpaired_outbound: list[Transaction] = Field(
        default_factory=list,
        description=(
            "Repayments whose inflow lies before the statement window. "
            "Counted as settled evidence, never as a new liability."
        ),
    )
    status: DebtStatus = DebtStatus.SETTLED
    oldest_open_days: Optional[int] = Field(
        default=None,
        description="Age in days of the oldest unpaired inflow, if any.",
    )

    @property
    def is_open(self) -> bool:
        return self.status in (DebtStatus.POSSIBLY_OPEN, DebtStatus.NEEDS_REVIEW)

    @property
    def note(self) -> str:
        if self.status == DebtStatus.POSSIBLY_OPEN:
            return "confirm with applicant"
        if self.status == DebtStatus.NEEDS_REVIEW:
            return "may be pre-maturity"
        return "settled"


class AlertKind(str, Enum):
    SIMULTANEOUS_USAGE = "simultaneous_usage"
    MULTIPLE_OPEN_CONTRACTS = "multiple_open_contracts"


class PortfolioAlert(BaseModel):
    """Advisory annotation across lenders. Never fails the run."""

    kind: AlertKind
    counterparties: list[str]
    message: str


class DebtCycleReport(BaseModel):
    records: list[CounterpartyDebtRecord] = Field(default_factory=list)
    alerts: list[PortfolioAlert] = Field(default_factory=list)
    status: AnalysisStatus = Field(default_factory=AnalysisStatus.completed)
    failed_statements: list[str] = Field(
        default_factory=list,
        description="Statement files whose ledger could not be read; findings cover the rest.",
    )

    @property
    def open_records(self) -> list[CounterpartyDebtRecord]:
        return [record for record in self.records if record.is_open]


# -- Statement risk scan --


class GamblingHit(BaseModel):
    transaction: Transaction
    keyword: str


class CashWithdrawal(BaseModel):
    transaction: Transaction
    marker: str


class CrossAccountTransfer(BaseModel):
    outflow: Transaction
    inflow: Transaction
    days_apart: int
    amount_diff: float


class LenderHit(BaseModel):
    lender: str
    transaction: Transaction


class RiskScanReport(BaseModel):
    gambling: list[GamblingHit] = Field(default_factory=list)
    large_cash_withdrawals: list[CashWithdrawal] = Field(default_factory=list)
    cross_account_transfers: list[CrossAccountTransfer] = Field(default_factory=list)
    lender_transactions: list[LenderHit] = Field(default_factory=list)
    status: AnalysisStatus = Field(default_factory=AnalysisStatus.completed)
    failed_statements: list[str] = Field(default_factory=list)


# -- Adverse media --


class SearchHit(BaseModel):
    title: str = ""
    url: str = ""
    snippet: str = ""


class CandidateStage(str, Enum):
    TRIAGED = "triaged"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class AdverseMediaCandidate(BaseModel):
    """One search hit moving through the two-stage filter.

    Stage 1 (snippet triage) sets needs_full_check. Only flagged hits get
    fetched and classified; they end as confirmed or rejected. confirmed
    requires name_matches and is_crime_related to be strictly True, except
    for the classifier-error fail-safe which confirms with manual_review.
    """

    subject_name: str
    subject_age: Optional[int] = None
    query: str
    title: str = ""
    url: str = ""
    snippet: str = ""
    needs_full_check: Optional[bool] = None
    triage_reason: Optional[str] = None
    fetched_article_text: Optional[str] = None
    extracted_name: Optional[str] = None
    name_matches: Optional[bool] = None
    is_crime_related: Optional[bool] = None
    role: Optional[str] = Field(
        default=None,
        description="How the article portrays the person: suspect, defendant, victim, ...",
    )
    rationale: Optional[str] = None
    manual_review: bool = Field(
        default=False,
        description="Set when a classifier error forced the fail-safe confirmation.",
    )
    stage: CandidateStage = CandidateStage.TRIAGED


class FraudSiteResult(BaseModel):
    site_name: str
    url: str
    found: bool = False
    details: Optional[str] = None
    error: Optional[str] = None


class SubjectRole(str, Enum):
    APPLICANT = "applicant"
    REPRESENTATIVE = "representative"


class ScreeningResult(BaseModel):
    """Adverse-media outcome for one person."""

    subject_name: str
    subject_age: Optional[int] = None
    role: SubjectRole = SubjectRole.APPLICANT
    company: Optional[str] = None
    confirmed: list[AdverseMediaCandidate] = Field(default_factory=list)
    fraud_site_results: list[FraudSiteResult] = Field(default_factory=list)
    failed_queries: list[str] = Field(default_factory=list)
    candidates_seen: int = 0
    status: AnalysisStatus = Field(default_factory=AnalysisStatus.completed)

    @property
    def adverse_hit_count(self) -> int:
        return len(self.confirmed)

    @property
    def fraud_site_hits(self) -> int:
        return sum(1 for result in self.fraud_site_results if result.found)

    @property
    def has_negative_info(self) -> bool:
        return self.adverse_hit_count > 0 or self.fraud_site_hits > 0


# -- Company verification --


class CompanyType(str, Enum):
    APPLICANT = "applicant"
    PURCHASER = "purchaser"
    COLLATERAL_PROVIDER = "collateral_provider"


class VerificationSource(str, Enum):
    OFFICIAL_SITE = "official_site"
    THIRD_PARTY_SITE = "third_party_site"
    UNVERIFIED = "unverified"


class CompanyVerificationResult(BaseModel):
    company_name: str
    company_type: CompanyType
    verified: bool = False
    confidence: float = Field(default=0.0, ge=0, le=100)
    verification_source: VerificationSource = VerificationSource.UNVERIFIED
    official_url: Optional[str] = None
    evidence_url: Optional[str] = None
    business_description: Optional[str] = None
    capital: Optional[str] = None
    established: Optional[str] = None
    reason: Optional[str] = None


class CompanyVerificationReport(BaseModel):
    results: list[CompanyVerificationResult] = Field(default_factory=list)
    status: AnalysisStatus = Field(default_factory=AnalysisStatus.completed)

    def of_type(self, company_type: CompanyType) -> list[CompanyVerificationResult]:
        return [result for result in self.results if result.company_type == company_type]


# -- Documents and extracted facts --


class DocumentCategory(str, Enum):
    PURCHASE = "purchase"
    COLLATERAL = "collateral"
    MAIN_STATEMENT = "main_statement"
    SUB_STATEMENT = "sub_statement"
    IDENTITY = "identity"


class AttachmentRef(BaseModel):
    file_key: str
    name: str
    mime_type: str = "application/octet-stream"
    size: int = 0
    category: DocumentCategory


class OcrDocument(BaseModel):
    """OCR output for one attachment."""

    file_name: str
    category: DocumentCategory
    mime_type: str = "application/pdf"
    text: str = ""
    page_count: int = Field(default=0, ge=0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    error: Optional[str] = Field(
        default=None,
        description="Set when OCR failed for this file; text is then empty.",
    )


class InvoiceFacts(BaseModel):
    debtor_company: str
    amount: Optional[float] = None
    issuer: Optional[str] = None
    issue_date: Optional[str] = None


class RegistryFacts(BaseModel):
    company_name: str
    representatives: list[str] = Field(default_factory=list)
    capital: Optional[str] = None
    established: Optional[str] = None
    address: Optional[str] = None
    registration_number: Optional[str] = None
    business_type: Optional[str] = None


class IdentityFacts(BaseModel):
    name: str
    birth_date: Optional[str] = None
    address: Optional[str] = None


UNCLASSIFIABLE = "unclassifiable"


class DocumentFacts(BaseModel):
    """Open-world fact bag for one document, with provenance.

    document_type is whatever the extractor called the document
    ("invoice", "corporate-registry", "business-card", ...). The typed
    accessors only look at the keys their consumer needs and return None
    when those keys are absent, so unknown document types pass through
    untouched.
    """

    file_name: str
    category: DocumentCategory
    document_type: str = UNCLASSIFIABLE
    facts: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    page_count: int = 0
    error: Optional[str] = None

    @property
    def is_classified(self) -> bool:
        return self.document_type != UNCLASSIFIABLE

    def invoice(self) -> Optional[InvoiceFacts]:
        debtor = self.facts.get("debtor_company")
        if not debtor:
            return None
        amount = self.facts.get("amount")
        try:
            amount_value = float(amount) if amount is not None else None
        except (TypeError, ValueError):
            amount_value = None
        return InvoiceFacts(
            debtor_company=str(debtor),
            amount=amount_value,
            issuer=_optional_str(self.facts.get("issuer")),
            issue_date=_optional_str(self.facts.get("issue_date")),
        )

    def registry(self) -> Optional[RegistryFacts]:
        company = self.facts.get("company_name")
        if not company:
            return None
        representatives = self.facts.get("representatives") or []
        if isinstance(representatives, str):
            representatives = [representatives]
        return RegistryFacts(
            company_name=str(company),
            representatives=[str(name) for name in representatives if name],
            capital=_optional_str(self.facts.get("capital")),
            established=_optional_str(self.facts.get("established")),
            address=_optional_str(self.facts.get("address")),
            registration_number=_optional_str(self.facts.get("registration_number")),
            business_type=_optional_str(self.facts.get("business_type")),
        )

    def identity(self) -> Optional[IdentityFacts]:
        name = self.facts.get("person_name")
        if not name:
            return None
        return IdentityFacts(
            name=str(name),
            birth_date=_optional_str(self.facts.get("birth_date")),
            address=_optional_str(self.facts.get("address")),
        )


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


# -- Cross-checks --


class PurchaseMatch(str, Enum):
    MATCH = "match"
    PARTIAL = "partial"
    MISMATCH = "mismatch"


class PurchaseRow(BaseModel):
    company: str
    amount: float = Field(default=0.0, ge=0)


class PurchaseVerification(BaseModel):
    result: PurchaseMatch = PurchaseMatch.MISMATCH
    crm_purchases: list[PurchaseRow] = Field(default_factory=list)
    invoices: list[InvoiceFacts] = Field(default_factory=list)
    matched_companies: list[str] = Field(default_factory=list)
    unmatched_companies: list[str] = Field(default_factory=list)
    status: AnalysisStatus = Field(default_factory=AnalysisStatus.completed)


class PersonCheck(BaseModel):
    name: str
    birth_date: Optional[str] = None
    address: Optional[str] = None
    name_match: bool = False
    birth_date_match: bool = False

    @property
    def matched(self) -> bool:
        return self.name_match and self.birth_date_match


class IdentityVerification(BaseModel):
    document_types: list[str] = Field(default_factory=list)
    persons: list[PersonCheck] = Field(default_factory=list)
    matched_person: Optional[PersonCheck] = None
    status: AnalysisStatus = Field(default_factory=AnalysisStatus.completed)

    @property
    def verified(self) -> bool:
        return self.matched_person is not None


class CollateralFindings(BaseModel):
    companies: list[RegistryFacts] = Field(default_factory=list)
    findings: list[str] = Field(default_factory=list)
    status: AnalysisStatus = Field(default_factory=AnalysisStatus.completed)


# -- Case record --


class CaseRecord(BaseModel):
    """Structured view of one applicant record from the record store."""

    case_id: str
    applicant_company: str = ""
    applicant_name: str = ""
    representative_name: str = ""
    birth_date: Optional[dt.date] = None
    location: Optional[str] = None
    counterparties: list[Counterparty] = Field(default_factory=list)
    expectations: list[ExpectedAmount] = Field(default_factory=list)
    purchases: list[PurchaseRow] = Field(default_factory=list)
    attachments: list[AttachmentRef] = Field(default_factory=list)
    raw_fields: dict[str, Any] = Field(
        default_factory=dict,
        description="Flattened scalar CRM fields, passed to the report as reference data.",
    )

    def attachments_for(self, category: DocumentCategory) -> list[AttachmentRef]:
        return [ref for ref in self.attachments if ref.category == category]

    def applicant_age(self, as_of: dt.date) -> Optional[int]:
        if self.birth_date is None:
            return None
        years = as_of.year - self.birth_date.year
        if (as_of.month, as_of.day) < (self.birth_date.month, self.birth_date.day):
            years -= 1
        return years


# -- Phase outputs --


class PurchaseCollateralPhase(BaseModel):
    documents: list[DocumentFacts] = Field(default_factory=list)
    purchase: PurchaseVerification = Field(default_factory=PurchaseVerification)
    collateral: CollateralFindings = Field(default_factory=CollateralFindings)
    status: AnalysisStatus = Field(default_factory=AnalysisStatus.completed)


class BankStatementPhase(BaseModel):
    reconciliations: list[CounterpartyReconciliation] = Field(default_factory=list)
    debt_cycles: DebtCycleReport = Field(default_factory=DebtCycleReport)
    risk_scan: RiskScanReport = Field(default_factory=RiskScanReport)
    statement_files: list[str] = Field(default_factory=list)
    transaction_count: int = 0
    status: AnalysisStatus = Field(default_factory=AnalysisStatus.completed)


class VerificationPhase(BaseModel):
    identity: IdentityVerification = Field(default_factory=IdentityVerification)
    applicant_screening: Optional[ScreeningResult] = None
    representative_screenings: list[ScreeningResult] = Field(default_factory=list)
    companies: CompanyVerificationReport = Field(default_factory=CompanyVerificationReport)
    status: AnalysisStatus = Field(default_factory=AnalysisStatus.completed)


# -- Report --


class ReportInput(BaseModel):
    """Complete, typed shape handed to the template renderer.

    Every section is always present. A phase that did not run is replaced
    by its placeholder with status=not_performed, and listed in
    skipped_sections together with the reason.
    """

    case_id: str
    crm: dict[str, Any] = Field(default_factory=dict)
    purchase_collateral: PurchaseCollateralPhase
    bank_statement: BankStatementPhase
    verification: VerificationPhase
    skipped_sections: dict[str, str] = Field(default_factory=dict)


class UnderwritingReport(BaseModel):
    case_id: str
    report_input: ReportInput
    html: str = ""
    risk_summary_html: str = ""
    detailed_analysis_html: str = ""
    render_status: AnalysisStatus = Field(default_factory=AnalysisStatus.completed)
    duration_s: float = 0.0
