"""
risk_scan.py - Statement risk scan.

Flat findings over the whole ledger:
    gambling spend               payee/memo contains a gambling keyword
    large cash withdrawals       outflow >= large_cash_threshold with a cash marker
    cross-account transfers      main-account outflow <-> sub-account inflow (or reverse)
    other-lender transactions    any row whose payer/payee is a known financier
"""

from __future__ import annotations

from typing import Optional

from config import RunContext
from debt_cycle import match_lender
from logging_config import get_logger
from models import (
    AnalysisStatus,
    CashWithdrawal,
    CrossAccountTransfer,
    GamblingHit,
    LenderHit,
    RiskScanReport,
    Transaction,
)
from normalize import fold_text

logger = get_logger(__name__)


def _searchable(txn: Transaction) -> str:
    return fold_text(f"{txn.counterparty_name_raw} {txn.description or ''}")


def find_keyword(txn: Transaction, keywords: tuple[str, ...]) -> Optional[str]:
    text = _searchable(txn)
    for keyword in keywords:
        if fold_text(keyword) in text:
            return keyword
    return None


def scan_gambling(ledger: list[Transaction], context: RunContext) -> list[GamblingHit]:
    hits = []
    for txn in ledger:
        if not txn.is_outflow:
            continue
        keyword = find_keyword(txn, context.gambling_keywords)
        if keyword:
            hits.append(GamblingHit(transaction=txn, keyword=keyword))
    return hits


def scan_cash_withdrawals(ledger: list[Transaction], context: RunContext) -> list[CashWithdrawal]:
    hits = []
    for txn in ledger:
        if not txn.is_outflow or txn.magnitude < context.large_cash_threshold:
            continue
        marker = find_keyword(txn, context.cash_markers)
        if marker:
            hits.append(CashWithdrawal(transaction=txn, marker=marker))
    return hits


def scan_cross_account(
    main_ledger: list[Transaction],
    sub_ledger: list[Transaction],
    context: RunContext,
) -> list[CrossAccountTransfer]:
    """Pair money leaving one account with money arriving in the other.

    Candidates are taken earliest outflow first; each transaction is used
    at most once.
    """
    outflows = [txn for txn in main_ledger + sub_ledger if txn.is_outflow]
    main_keys = {txn.key for txn in main_ledger}
    used: set[tuple[str, int]] = set()
    transfers = []

    for outflow in sorted(outflows, key=lambda txn: txn.date):
        from_main = outflow.key in main_keys
        counterpart_ledger = sub_ledger if from_main else main_ledger
        best = None
        for inflow in sorted(counterpart_ledger, key=lambda txn: txn.date):
            if not inflow.is_inflow or inflow.key in used:
                continue
            days_apart = abs((inflow.date - outflow.date).days)
            amount_diff = abs(inflow.magnitude - outflow.magnitude)
            if days_apart <= context.cross_bank_days and amount_diff <= context.cross_bank_amount_tolerance:
                best = (inflow, days_apart, amount_diff)
                break
        if best is None:
            continue
        inflow, days_apart, amount_diff = best
        used.add(inflow.key)
        transfers.append(
            CrossAccountTransfer(
                outflow=outflow,
                inflow=inflow,
                days_apart=days_apart,
                amount_diff=round(amount_diff, 2),
            )
        )
    return transfers


def scan_lenders(ledger: list[Transaction], context: RunContext) -> list[LenderHit]:
    hits = []
    for txn in ledger:
        lender = match_lender(txn.counterparty_name_raw, context)
        if lender:
            hits.append(LenderHit(lender=lender, transaction=txn))
    return hits


def scan_statements(
    main_ledger: list[Transaction],
    sub_ledger: list[Transaction],
    context: RunContext,
    ledger_status: Optional[AnalysisStatus] = None,
    failed_statements: Optional[list[str]] = None,
) -> RiskScanReport:
    if ledger_status is not None and not ledger_status.ok:
        logger.warning("risk_scan_skipped | reason=%s | fallback=status_only", ledger_status.reason)
        return RiskScanReport(status=ledger_status)

    ledger = main_ledger + sub_ledger
    report = RiskScanReport(
        gambling=scan_gambling(ledger, context),
        large_cash_withdrawals=scan_cash_withdrawals(ledger, context),
        cross_account_transfers=scan_cross_account(main_ledger, sub_ledger, context) if sub_ledger else [],
        lender_transactions=scan_lenders(ledger, context),
        failed_statements=list(failed_statements or []),
    )
    logger.info(
        "risk_scan_complete | transactions=%s | gambling=%s | cash=%s | transfers=%s | lender_rows=%s",
        len(ledger),
        len(report.gambling),
        len(report.large_cash_withdrawals),
        len(report.cross_account_transfers),
        len(report.lender_transactions),
    )
    return report
