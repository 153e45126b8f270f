"""
debt_cycle.py - Counterparty debt-cycle analyzer.

Finds statement activity with known third-party short-term financiers
(factoring companies), pairs each advance with its repayment and flags
advances that look unrepaid.

Pairing rule: an inflow pairs with the earliest later outflow to the same
lender whose amount is pairing_min_ratio..pairing_max_ratio of the inflow
(financing fee included). Inflows are taken earliest first.
"""

from __future__ import annotations

import re
import time
from typing import Optional

from config import RunContext
from logging_config import get_logger
from models import (
    AlertKind,
    AnalysisStatus,
    CounterpartyDebtRecord,
    CycleStatus,
    DebtCycleReport,
    DebtStatus,
    PairedCycle,
    PortfolioAlert,
    Transaction,
)
from normalize import fold_text, normalize_company_name

logger = get_logger(__name__)

TOKEN_SPLIT_RE = re.compile(r"[\s　・,，、/]+")


def _name_tokens(raw_name: str) -> set[str]:
    tokens = set()
    for token in TOKEN_SPLIT_RE.split(fold_text(raw_name)):
        key = normalize_company_name(token)
        if key:
            tokens.add(key)
    return tokens


def match_lender(raw_name: str, context: RunContext) -> Optional[str]:
    """Canonical lender name for a statement payer/payee name, or None.

    Long lender names match by containment of the normalized name. Names
    shorter than context.short_lender_name_chars ("SYS", "TRY") must equal
    the normalized name or one of its whitespace-separated tokens.
    The longest matching alias wins.
    """
    name_key = normalize_company_name(raw_name)
    if not name_key:
        return None
    tokens: Optional[set[str]] = None

    best: Optional[tuple[int, str]] = None
    for entry in context.lenders:
        canonical = entry[0]
        for alias in entry:
            alias_key = normalize_company_name(alias)
            if not alias_key:
                continue
            if len(alias_key) < context.short_lender_name_chars:
                if tokens is None:
                    tokens = _name_tokens(raw_name)
                hit = alias_key == name_key or alias_key in tokens
            else:
                hit = alias_key in name_key
            if hit and (best is None or len(alias_key) > best[0]):
                best = (len(alias_key), canonical)
    return best[1] if best else None


def _chronological(transactions: list[Transaction]) -> list[Transaction]:
    # Stable: same-day rows keep their statement order.
    return sorted(transactions, key=lambda txn: txn.date)


def pair_cycles(
    inbound: list[Transaction],
    outbound: list[Transaction],
    context: RunContext,
) -> tuple[list[PairedCycle], list[Transaction], list[Transaction]]:
    """Greedy chronological pairing. Returns (pairs, unpaired_in, unpaired_out)."""
    outflows = _chronological(outbound)
    taken = [False] * len(outflows)
    pairs: list[PairedCycle] = []
    unpaired_inbound: list[Transaction] = []

    for inflow in _chronological(inbound):
        partner = None
        for index, outflow in enumerate(outflows):
            if taken[index] or outflow.date <= inflow.date:
                continue
            ratio = outflow.magnitude / inflow.magnitude
            if context.pairing_min_ratio <= ratio <= context.pairing_max_ratio:
                partner = index
                break
        if partner is None:
            unpaired_inbound.append(inflow)
            continue
        taken[partner] = True
        outflow = outflows[partner]
        ratio = round(outflow.magnitude / inflow.magnitude, 4)
        pairs.append(
            PairedCycle(
                inbound=inflow,
                outbound=outflow,
                status=CycleStatus.SETTLED if ratio >= 1.0 else CycleStatus.PARTIAL_REPAYMENT,
                repayment_ratio=ratio,
            )
        )

    unpaired_outbound = [outflow for index, outflow in enumerate(outflows) if not taken[index]]
    return pairs, unpaired_inbound, unpaired_outbound


def _portfolio_alerts(records: list[CounterpartyDebtRecord], context: RunContext) -> list[PortfolioAlert]:
    alerts: list[PortfolioAlert] = []

    involved: list[str] = []
    closest: Optional[tuple[int, str, str]] = None
    for left_index, left in enumerate(records):
        for right in records[left_index + 1 :]:
            for left_txn in left.inbound:
                for right_txn in right.inbound:
                    gap = abs((left_txn.date - right_txn.date).days)
                    if gap > context.simultaneous_usage_days:
                        continue
                    for name in (left.counterparty_name, right.counterparty_name):
                        if name not in involved:
                            involved.append(name)
                    if closest is None or gap < closest[0]:
                        closest = (gap, left.counterparty_name, right.counterparty_name)
    if len(involved) >= 2 and closest is not None:
        alerts.append(
            PortfolioAlert(
                kind=AlertKind.SIMULTANEOUS_USAGE,
                counterparties=involved,
                message=(
                    f"Advances from {len(involved)} lenders within {context.simultaneous_usage_days} days "
                    f"of each other (closest: {closest[1]} / {closest[2]}, {closest[0]} days apart)"
                ),
            )
        )

    open_names = [record.counterparty_name for record in records if record.is_open]
    if len(open_names) >= 2:
        alerts.append(
            PortfolioAlert(
                kind=AlertKind.MULTIPLE_OPEN_CONTRACTS,
                counterparties=open_names,
                message=f"{len(open_names)} lenders show advances without a matching repayment",
            )
        )
    return alerts


def analyze_debt_cycles(
    ledger: list[Transaction],
    context: RunContext,
    ledger_status: Optional[AnalysisStatus] = None,
    failed_statements: Optional[list[str]] = None,
) -> DebtCycleReport:
    """Build per-lender debt records and portfolio alerts for one ledger.

    Args:
        ledger: Statement transactions, all accounts, in statement order.
        context: Run context; supplies the lender registry, pairing ratios
            and as_of for age computation.
        ledger_status: Status of ledger extraction. When not ok, the report
            carries that status instead of (empty) findings.
        failed_statements: Files whose ledger could not be read. The
            findings cover the readable ones and name these.

    Returns:
        DebtCycleReport. Alerts never fail the run.
    """
    if ledger_status is not None and not ledger_status.ok:
        logger.warning("debt_cycles_skipped | reason=%s | fallback=status_only", ledger_status.reason)
        return DebtCycleReport(status=ledger_status)

    started = time.perf_counter()
    by_lender: dict[str, list[Transaction]] = {}
    for txn in ledger:
        lender = match_lender(txn.counterparty_name_raw, context)
        if lender:
            by_lender.setdefault(lender, []).append(txn)

    records: list[CounterpartyDebtRecord] = []
    for lender, transactions in by_lender.items():
        inbound = [txn for txn in transactions if txn.is_inflow]
        outbound = [txn for txn in transactions if txn.is_outflow]
        pairs, unpaired_inbound, unpaired_outbound = pair_cycles(inbound, outbound, context)

        status = DebtStatus.SETTLED
        oldest_open_days = None
        if unpaired_inbound:
            oldest_open_days = max((context.as_of - txn.date).days for txn in unpaired_inbound)
            if oldest_open_days >= context.open_debt_age_days:
                status = DebtStatus.POSSIBLY_OPEN
            else:
                status = DebtStatus.NEEDS_REVIEW

        record = CounterpartyDebtRecord(
            counterparty_name=lender,
            inbound=inbound,
            outbound=outbound,
            paired_cycles=pairs,
            unpaired_inbound=unpaired_inbound,
            unpaired_outbound=unpaired_outbound,
            status=status,
            oldest_open_days=oldest_open_days,
        )
        records.append(record)
        logger.debug(
            "debt_record | lender=%r | inbound=%s | outbound=%s | pairs=%s | status=%s",
            lender,
            len(inbound),
            len(outbound),
            len(pairs),
            status.value,
        )

    alerts = _portfolio_alerts(records, context)
    for alert in alerts:
        logger.warning("portfolio_alert | kind=%s | lenders=%s", alert.kind.value, alert.counterparties)

    logger.info(
        "debt_cycles_complete | lenders=%s | open=%s | alerts=%s | duration_s=%.3f",
        len(records),
        sum(1 for record in records if record.is_open),
        len(alerts),
        time.perf_counter() - started,
    )
    return DebtCycleReport(records=records, alerts=alerts, failed_statements=list(failed_statements or []))
