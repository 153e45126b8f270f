"""
reconcile.py - Collateral reconciliation engine.

For each collateral counterparty, decides whether the bank ledger satisfies
the expected monthly amounts recorded in the CRM.

Flow per counterparty:
1. Attribute inflows to the counterparty by payer name (normalize.names_match).
2. Build, per expected period, every subset of up to max_split_parts
   eligible transactions whose sum is within amount_tolerance.
3. Search all periods together for the best assignment (each transaction
   used at most once), ranked by:
       satisfied nonzero periods (more is better)
       placement cost (home month 0, boundary window 1, adjacent month 2)
       transactions used (fewer is better)
       earliest transactions
4. Classify each satisfied period by where its transactions fall.

An expectation for period P is collected during its home month,
P - payment_lag_months.
"""

from __future__ import annotations

import datetime as dt
import time
from collections import defaultdict
from typing import Optional

from config import RunContext
from logging_config import get_logger
from models import (
    AnalysisStatus,
    Counterparty,
    CounterpartyReconciliation,
    ExpectedAmount,
    MatchKind,
    MonthlyVerdict,
    Transaction,
)
from normalize import names_match, period_bounds, shift_period

logger = get_logger(__name__)

HOME_COST = 0
BOUNDARY_COST = 1
ADJACENT_COST = 2

# Placement labels
HOME = "home"
BOUNDARY = "boundary"
PREVIOUS = "previous"
NEXT = "next"


class PeriodWindow:
    """Date geometry of one expected period."""

    def __init__(self, period: str, context: RunContext) -> None:
        self.period = period
        self.home = shift_period(period, -context.payment_lag_months)
        self.home_start, self.home_end = period_bounds(self.home)
        self.previous_start, _ = period_bounds(shift_period(self.home, -1))
        _, self.next_end = period_bounds(shift_period(self.home, 1))
        boundary = dt.timedelta(days=context.boundary_window_days)
        self.boundary_start = self.home_start - boundary
        self.boundary_end = self.home_end + boundary

    def placement(self, day: dt.date) -> Optional[str]:
        if self.home_start <= day <= self.home_end:
            return HOME
        if self.boundary_start <= day <= self.boundary_end:
            return BOUNDARY
        if self.previous_start <= day < self.home_start:
            return PREVIOUS
        if self.home_end < day <= self.next_end:
            return NEXT
        return None

    def cost(self, day: dt.date) -> Optional[int]:
        placement = self.placement(day)
        if placement == HOME:
            return HOME_COST
        if placement == BOUNDARY:
            return BOUNDARY_COST
        if placement in (PREVIOUS, NEXT):
            return ADJACENT_COST
        return None

    def contains(self, day: dt.date) -> bool:
        return self.placement(day) is not None


def classify_match(window: PeriodWindow, transactions: list[Transaction]) -> MatchKind:
    """Name how a satisfied period's transactions are spread over the calendar."""
    if not transactions:
        return MatchKind.SINGLE
    placements = [window.placement(txn.date) for txn in transactions]
    if all(placement == HOME for placement in placements):
        return MatchKind.SINGLE if len(transactions) == 1 else MatchKind.INTRA_MONTH_SPLIT
    if all(placement in (HOME, BOUNDARY) for placement in placements):
        return MatchKind.SINGLE if len(transactions) == 1 else MatchKind.CROSS_MONTH_SPLIT
    if all(txn.date < window.home_start for txn in transactions):
        return MatchKind.PREPAID
    if all(txn.date > window.home_end for txn in transactions):
        return MatchKind.POSTPAID
    return MatchKind.MULTI_MONTH_SPLIT


def attribute_transactions(
    counterparty: Counterparty,
    ledger: list[Transaction],
    context: RunContext,
) -> list[Transaction]:
    """Inflows whose payer name matches the counterparty, in ledger order."""
    attributed = []
    for txn in ledger:
        if not txn.is_inflow:
            continue
        matched, score, evidence = names_match(
            txn.counterparty_name_raw,
            counterparty.all_names,
            threshold=context.name_match_threshold,
            min_prefix_chars=context.min_prefix_chars,
        )
        if matched:
            logger.debug(
                "attribution | counterparty=%r | payer=%r | score=%.1f | evidence=%s",
                counterparty.name,
                txn.counterparty_name_raw,
                score,
                evidence,
            )
            attributed.append(txn)
    return attributed


class _Option:
    __slots__ = ("positions", "cost")

    def __init__(self, positions: tuple[int, ...], cost: int) -> None:
        self.positions = positions
        self.cost = cost


class _AssignmentSearch:
    """Branch-and-bound over per-period subset options."""

    def __init__(self, options: list[list[_Option]], zero_periods: list[bool], max_nodes: int) -> None:
        self.options = options
        self.zero_periods = zero_periods
        self.max_nodes = max_nodes
        self.nodes = 0
        self.truncated = False
        self.best_key: Optional[tuple] = None
        self.best_choice: list[Optional[_Option]] = [None] * len(options)
        # remaining[i]: nonzero periods from i onwards that have any option at all
        self.remaining = [0] * (len(options) + 1)
        for index in range(len(options) - 1, -1, -1):
            satisfiable = not zero_periods[index] and bool(options[index])
            self.remaining[index] = self.remaining[index + 1] + int(satisfiable)

    def run(self) -> list[Optional[_Option]]:
        self._visit(0, set(), [], 0, 0)
        return self.best_choice

    def _visit(self, index: int, used: set[int], choice: list[Optional[_Option]], satisfied: int, cost: int) -> None:
        if self.nodes >= self.max_nodes:
            self.truncated = True
            return
        self.nodes += 1

        if self.best_key is not None:
            best_satisfied, best_cost = -self.best_key[0], self.best_key[1]
            potential = satisfied + self.remaining[index]
            if potential < best_satisfied or (potential == best_satisfied and cost > best_cost):
                return

        if index == len(self.options):
            key = (-satisfied, cost, len(used), tuple(sorted(used)))
            if self.best_key is None or key < self.best_key:
                self.best_key = key
                self.best_choice = list(choice)
            return

        if self.zero_periods[index]:
            self._visit(index + 1, used, choice + [None], satisfied, cost)
            return

        for option in self.options[index]:
            if used.intersection(option.positions):
                continue
            self._visit(
                index + 1,
                used | set(option.positions),
                choice + [option],
                satisfied + 1,
                cost + option.cost,
            )
        self._visit(index + 1, used, choice + [None], satisfied, cost)


def _period_options(
    window: PeriodWindow,
    expected: float,
    transactions: list[Transaction],
    context: RunContext,
) -> list[_Option]:
    """Subsets of up to max_split_parts attributed inflows that sum to expected.

    Inflows are positive, so candidates are walked in ascending amount
    order and a branch stops as soon as its sum passes expected plus the
    tolerance. The walk is capped at context.max_search_nodes.
    """
    eligible = sorted(
        (
            (position, txn, window.cost(txn.date))
            for position, txn in enumerate(transactions)
            if window.cost(txn.date) is not None
        ),
        key=lambda item: (item[1].amount, item[0]),
    )
    upper = expected + context.amount_tolerance
    options: list[_Option] = []
    nodes = 0
    truncated = False

    def _walk(start: int, chosen: list[tuple[int, Transaction, int]], total: float) -> None:
        nonlocal nodes, truncated
        if chosen and abs(total - expected) <= context.amount_tolerance:
            options.append(
                _Option(
                    positions=tuple(sorted(position for position, _, _ in chosen)),
                    cost=sum(cost for _, _, cost in chosen),
                )
            )
        if len(chosen) == context.max_split_parts:
            return
        for index in range(start, len(eligible)):
            item = eligible[index]
            if total + item[1].amount > upper:
                break
            if nodes >= context.max_search_nodes:
                truncated = True
                return
            nodes += 1
            chosen.append(item)
            _walk(index + 1, chosen, total + item[1].amount)
            chosen.pop()

    _walk(0, [], 0.0)
    if truncated:
        logger.warning(
            "reconcile_options_truncated | period=%s | candidates=%s | nodes=%s | fallback=options_so_far",
            window.period,
            len(eligible),
            nodes,
        )
    options.sort(key=lambda option: (option.cost, len(option.positions), option.positions))
    return options


def _unavailable_verdicts(
    counterparty: Counterparty,
    expected_by_period: dict[str, float],
    reason: str,
) -> list[MonthlyVerdict]:
    return [
        MonthlyVerdict(
            counterparty_key=counterparty.key,
            period=period,
            expected_amount=amount,
            matched=False,
            match_kind=MatchKind.UNMATCHED,
            analysis_unavailable=True,
            unavailable_reason=reason,
        )
        for period, amount in expected_by_period.items()
    ]


def reconcile_counterparty(
    counterparty: Counterparty,
    expectations: list[ExpectedAmount],
    ledger: list[Transaction],
    context: RunContext,
    unavailable_reason: Optional[str] = None,
) -> CounterpartyReconciliation:
    """Reconcile one counterparty's expected amounts against the ledger.

    When `unavailable_reason` is set (the ledger could not be extracted),
    every period is reported unmatched with analysis_unavailable=True so
    the report never mistakes "not checked" for "not paid".
    """
    started = time.perf_counter()
    expected_by_period: dict[str, float] = defaultdict(float)
    for expectation in expectations:
        if expectation.counterparty_key == counterparty.key:
            expected_by_period[expectation.period] += expectation.amount
    expected_by_period = dict(sorted(expected_by_period.items()))

    if unavailable_reason is not None:
        logger.warning(
            "reconcile_unavailable | counterparty=%r | periods=%s | reason=%s | fallback=unmatched_unavailable",
            counterparty.name,
            len(expected_by_period),
            unavailable_reason,
        )
        return CounterpartyReconciliation(
            counterparty_key=counterparty.key,
            counterparty_name=counterparty.name,
            verdicts=_unavailable_verdicts(counterparty, expected_by_period, unavailable_reason),
            analysis_unavailable=True,
            unavailable_reason=unavailable_reason,
        )

    transactions = attribute_transactions(counterparty, ledger, context)
    periods = list(expected_by_period)
    windows = [PeriodWindow(period, context) for period in periods]
    zero_periods = [expected_by_period[period] <= 0 for period in periods]
    options = [
        [] if is_zero else _period_options(window, expected_by_period[period], transactions, context)
        for period, window, is_zero in zip(periods, windows, zero_periods)
    ]

    search = _AssignmentSearch(options, zero_periods, context.max_search_nodes)
    choice = search.run()
    if search.truncated:
        logger.warning(
            "reconcile_search_truncated | counterparty=%r | nodes=%s | fallback=best_so_far",
            counterparty.name,
            search.nodes,
        )

    used_positions = {position for option in choice if option for position in option.positions}

    verdicts = []
    for period, window, is_zero, option in zip(periods, windows, zero_periods, choice):
        expected = expected_by_period[period]
        near_misses = [
            txn
            for position, txn in enumerate(transactions)
            if position not in used_positions and window.contains(txn.date)
        ]
        if is_zero:
            verdicts.append(
                MonthlyVerdict(
                    counterparty_key=counterparty.key,
                    period=period,
                    expected_amount=0.0,
                    matched_amount=0.0,
                    matched=True,
                    match_kind=MatchKind.SINGLE,
                    unmatched_transactions=near_misses,
                )
            )
            continue
        if option is None:
            verdicts.append(
                MonthlyVerdict(
                    counterparty_key=counterparty.key,
                    period=period,
                    expected_amount=expected,
                    matched=False,
                    match_kind=MatchKind.UNMATCHED,
                    unmatched_transactions=near_misses,
                )
            )
            continue
        matched = [transactions[position] for position in sorted(option.positions)]
        verdicts.append(
            MonthlyVerdict(
                counterparty_key=counterparty.key,
                period=period,
                expected_amount=expected,
                matched_amount=round(sum(txn.amount for txn in matched), 2),
                matched=True,
                match_kind=classify_match(window, matched),
                matched_transactions=matched,
                unmatched_transactions=near_misses,
            )
        )

    has_prior_history = any(verdict.contributes_history for verdict in verdicts)
    verdicts = [verdict.model_copy(update={"has_prior_history": has_prior_history}) for verdict in verdicts]

    logger.info(
        "reconcile_complete | counterparty=%r | attributed=%s | periods=%s | matched=%s | history=%s | nodes=%s | duration_s=%.3f",
        counterparty.name,
        len(transactions),
        len(verdicts),
        sum(1 for verdict in verdicts if verdict.matched),
        has_prior_history,
        search.nodes,
        time.perf_counter() - started,
    )
    return CounterpartyReconciliation(
        counterparty_key=counterparty.key,
        counterparty_name=counterparty.name,
        transactions=transactions,
        verdicts=verdicts,
        has_prior_history=has_prior_history,
    )


def reconcile(
    counterparties: list[Counterparty],
    expectations: list[ExpectedAmount],
    ledger: list[Transaction],
    context: RunContext,
    ledger_status: Optional[AnalysisStatus] = None,
) -> list[CounterpartyReconciliation]:
    """Reconcile every counterparty. A failed ledger status marks all of them unavailable."""
    unavailable_reason = None
    if ledger_status is not None and not ledger_status.ok:
        unavailable_reason = ledger_status.reason or ledger_status.state.value
    return [
        reconcile_counterparty(counterparty, expectations, ledger, context, unavailable_reason)
        for counterparty in counterparties
    ]
