"""
test_reconcile.py - Collateral reconciliation tests.

Covers the standard lag-1 schedule, split and cross-month payments,
zero expectations, tolerance, single use of each transaction and the
"analysis unavailable" path.

Usage: pytest test_reconcile.py
"""

from __future__ import annotations

import datetime as dt
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from config import RunContext
from models import AnalysisStatus, Counterparty, ExpectedAmount, MatchKind, Transaction
from reconcile import PeriodWindow, classify_match, reconcile, reconcile_counterparty

AS_OF = dt.date(2025, 10, 15)
YAMADA = Counterparty(key="山田建設", name="山田建設株式会社", aliases=["ヤマダケンセツ"])


@pytest.fixture
def context() -> RunContext:
    return RunContext(as_of=AS_OF)


def _txn(day: str, amount: float, name: str = "カ)ヤマダケンセツ", sequence: int = 0) -> Transaction:
    return Transaction(
        date=dt.date.fromisoformat(day),
        amount=amount,
        counterparty_name_raw=name,
        source_document="main.pdf",
        sequence=sequence,
    )


def _ledger(*rows: tuple[str, float]) -> list[Transaction]:
    return [_txn(day, amount, sequence=index) for index, (day, amount) in enumerate(rows)]


def _expect(*rows: tuple[str, float], key: str = YAMADA.key) -> list[ExpectedAmount]:
    return [ExpectedAmount(counterparty_key=key, period=period, amount=amount) for period, amount in rows]


def test_lag_one_schedule_with_cross_month_split(context):
    expectations = _expect(("2025-08", 1_000_000), ("2025-09", 6_500_000), ("2025-10", 1_600_000))
    ledger = _ledger(
        ("2025-07-04", 1_000_000),
        ("2025-07-31", 5_000_000),
        ("2025-08-20", 1_500_000),
        ("2025-09-04", 1_600_000),
    )

    result = reconcile_counterparty(YAMADA, expectations, ledger, context)
    verdicts = {verdict.period: verdict for verdict in result.verdicts}

    assert all(verdict.matched for verdict in result.verdicts)
    assert verdicts["2025-08"].match_kind == MatchKind.SINGLE
    assert [txn.date for txn in verdicts["2025-08"].matched_transactions] == [dt.date(2025, 7, 4)]

    assert verdicts["2025-09"].match_kind == MatchKind.CROSS_MONTH_SPLIT
    assert [txn.date for txn in verdicts["2025-09"].matched_transactions] == [
        dt.date(2025, 7, 31),
        dt.date(2025, 8, 20),
    ]
    assert verdicts["2025-09"].matched_amount == 6_500_000

    assert verdicts["2025-10"].match_kind == MatchKind.SINGLE
    assert [txn.date for txn in verdicts["2025-10"].matched_transactions] == [dt.date(2025, 9, 4)]
    assert result.has_prior_history
    assert all(verdict.has_prior_history for verdict in result.verdicts)


def test_zero_expectation_is_matched_without_history(context):
    result = reconcile_counterparty(YAMADA, _expect(("2025-10", 0)), [], context)

    verdict = result.verdicts[0]
    assert verdict.matched
    assert verdict.matched_transactions == []
    assert not verdict.contributes_history
    assert not result.has_prior_history
    assert verdict.source_summary == "no payment expected"


def test_amount_tolerance(context):
    expectations = _expect(("2025-10", 1_000_000))

    within = reconcile_counterparty(YAMADA, expectations, _ledger(("2025-09-10", 999_200)), context)
    assert within.verdicts[0].matched

    outside = reconcile_counterparty(YAMADA, expectations, _ledger(("2025-09-10", 998_000)), context)
    verdict = outside.verdicts[0]
    assert not verdict.matched
    assert verdict.match_kind == MatchKind.UNMATCHED
    assert [txn.amount for txn in verdict.unmatched_transactions] == [998_000]


def test_intra_month_split(context):
    ledger = _ledger(("2025-09-05", 600_000), ("2025-09-25", 400_000))
    result = reconcile_counterparty(YAMADA, _expect(("2025-10", 1_000_000)), ledger, context)
    assert result.verdicts[0].match_kind == MatchKind.INTRA_MONTH_SPLIT


def test_prepaid_and_postpaid(context):
    prepaid = reconcile_counterparty(YAMADA, _expect(("2025-10", 700_000)), _ledger(("2025-08-10", 700_000)), context)
    assert prepaid.verdicts[0].match_kind == MatchKind.PREPAID

    postpaid = reconcile_counterparty(YAMADA, _expect(("2025-09", 700_000)), _ledger(("2025-09-20", 700_000)), context)
    assert postpaid.verdicts[0].match_kind == MatchKind.POSTPAID


def test_transaction_used_at_most_once(context):
    # One payment of 1,000,000 cannot satisfy two months of 1,000,000.
    expectations = _expect(("2025-09", 1_000_000), ("2025-10", 1_000_000))
    result = reconcile_counterparty(YAMADA, expectations, _ledger(("2025-08-31", 1_000_000)), context)

    matched = [verdict for verdict in result.verdicts if verdict.matched]
    assert len(matched) == 1
    used = [txn.key for verdict in result.verdicts for txn in verdict.matched_transactions]
    assert len(used) == len(set(used))


def test_home_month_preferred_over_adjacent(context):
    # 2025-09-10 is home for 2025-10; 2025-08-10 is only adjacent.
    ledger = _ledger(("2025-08-10", 500_000), ("2025-09-10", 500_000))
    result = reconcile_counterparty(YAMADA, _expect(("2025-10", 500_000)), ledger, context)
    verdict = result.verdicts[0]
    assert [txn.date for txn in verdict.matched_transactions] == [dt.date(2025, 9, 10)]
    assert verdict.match_kind == MatchKind.SINGLE


def test_other_payers_and_outflows_are_ignored(context):
    ledger = [
        _txn("2025-09-10", 500_000, name="カ)スズキシヨウジ", sequence=0),
        _txn("2025-09-11", -500_000, sequence=1),
    ]
    result = reconcile_counterparty(YAMADA, _expect(("2025-10", 500_000)), ledger, context)
    assert result.transactions == []
    assert not result.verdicts[0].matched


def test_same_period_expectations_are_summed(context):
    expectations = _expect(("2025-10", 300_000), ("2025-10", 200_000))
    result = reconcile_counterparty(YAMADA, expectations, _ledger(("2025-09-15", 500_000)), context)
    assert len(result.verdicts) == 1
    assert result.verdicts[0].expected_amount == 500_000
    assert result.verdicts[0].matched


def test_unavailable_ledger_marks_every_verdict(context):
    expectations = _expect(("2025-09", 1_000_000), ("2025-10", 0))
    status = AnalysisStatus.unavailable("ledger extraction failed for: main.pdf")

    results = reconcile([YAMADA], expectations, [], context, ledger_status=status)

    result = results[0]
    assert result.analysis_unavailable
    assert all(verdict.analysis_unavailable for verdict in result.verdicts)
    assert all(not verdict.matched for verdict in result.verdicts)
    assert result.verdicts[0].source_summary == "analysis unavailable"
    assert "main.pdf" in result.unavailable_reason


def test_period_window_geometry(context):
    window = PeriodWindow("2025-09", context)
    assert window.home == "2025-08"
    assert window.placement(dt.date(2025, 8, 15)) == "home"
    assert window.placement(dt.date(2025, 7, 28)) == "boundary"
    assert window.placement(dt.date(2025, 7, 10)) == "previous"
    assert window.placement(dt.date(2025, 9, 20)) == "next"
    assert window.placement(dt.date(2025, 11, 1)) is None
    assert classify_match(window, []) == MatchKind.SINGLE


def test_search_is_deterministic(context):
    expectations = _expect(("2025-09", 1_000_000), ("2025-10", 1_000_000))
    ledger = _ledger(("2025-08-05", 1_000_000), ("2025-08-25", 1_000_000), ("2025-09-05", 1_000_000))
    first = reconcile_counterparty(YAMADA, expectations, ledger, context)
    second = reconcile_counterparty(YAMADA, expectations, ledger, context)
    assert first.model_dump() == second.model_dump()
    dates = {verdict.period: [txn.date for txn in verdict.matched_transactions] for verdict in first.verdicts}
    assert dates["2025-09"] == [dt.date(2025, 8, 5)]
    assert dates["2025-10"] == [dt.date(2025, 9, 5)]


def test_inflows_above_the_expected_amount_are_never_combined(context, caplog):
    rows = [(f"2025-07-{day % 30 + 1:02d}", 2_000_000) for day in range(90)]
    ledger = _ledger(*rows, ("2025-07-15", 1_000_000))

    result = reconcile_counterparty(YAMADA, _expect(("2025-08", 1_000_000)), ledger, context)

    verdict = result.verdicts[0]
    assert verdict.matched
    assert verdict.match_kind == MatchKind.SINGLE
    assert [txn.sequence for txn in verdict.matched_transactions] == [90]
    assert "reconcile_options_truncated" not in caplog.text


def test_candidate_walk_is_capped_by_node_budget(caplog):
    context = RunContext(as_of=AS_OF, max_search_nodes=50)
    ledger = _ledger(*[(f"2025-07-{day % 30 + 1:02d}", 10_000) for day in range(90)])

    result = reconcile_counterparty(YAMADA, _expect(("2025-08", 40_000)), ledger, context)

    verdict = result.verdicts[0]
    assert verdict.matched
    assert len(verdict.matched_transactions) == 4
    assert "reconcile_options_truncated" in caplog.text
