"""
test_normalize.py - Name, date, amount and period normalization tests.

Usage: pytest test_normalize.py
"""

from __future__ import annotations

import datetime as dt
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from normalize import (
    fold_text,
    names_match,
    normalize_amount,
    normalize_company_name,
    normalize_date,
    period_bounds,
    person_names_equal,
    shift_period,
    trailing_periods,
)


def test_company_legal_forms_are_removed():
    assert normalize_company_name("株式会社山田建設") == "山田建設"
    assert normalize_company_name("山田建設(株)") == "山田建設"
    assert normalize_company_name("㈱山田建設") == "山田建設"
    assert normalize_company_name("Yamada Construction Co., Ltd.") == normalize_company_name("YAMADA CONSTRUCTION")


def test_bank_statement_notation():
    assert normalize_company_name("カ)ヤマダケンセツ") == "ヤマダケンセツ"
    assert normalize_company_name("ヤマダケンセツ(カ") == "ヤマダケンセツ"
    # Half-width katakana as printed by many banks.
    assert normalize_company_name("ｶ)ﾔﾏﾀﾞｹﾝｾﾂ") == "ヤマダケンセツ"


def test_small_kana_and_hiragana_fold():
    assert normalize_company_name("シャトル") == normalize_company_name("シヤトル")
    assert normalize_company_name("やまだ") == normalize_company_name("ヤマダ")


def test_empty_company_name():
    assert normalize_company_name(None) == ""
    assert normalize_company_name("   ") == ""


def test_names_match_exact_and_truncated():
    matched, score, evidence = names_match("カ)ヤマダケンセツ", ["ヤマダケンセツ"])
    assert matched and score == 100.0
    assert "exactly" in evidence

    matched, score, _ = names_match("ヤマダケン", ["山田建設", "ヤマダケンセツ"])
    assert matched and score == 95.0


def test_names_match_rejects_short_prefix_and_unrelated():
    matched, _, _ = names_match("ヤマ", ["ヤマダケンセツ"])
    assert not matched
    matched, _, evidence = names_match("スズキショウジ", ["ヤマダケンセツ"])
    assert not matched
    assert "differ" in evidence


def test_names_match_empty_statement_name():
    matched, score, _ = names_match("", ["ヤマダケンセツ"])
    assert not matched and score == 0.0


def test_person_names_compare_script_variants_only():
    assert person_names_equal("高橋 一郎", "高橋一郎")
    assert person_names_equal("たかはし いちろう", "タカハシイチロウ")
    assert not person_names_equal("高橋一郎", "髙橋一郎")
    assert not person_names_equal("", "")


def test_dates_in_japanese_formats():
    assert normalize_date("令和7年8月20日") == dt.date(2025, 8, 20)
    assert normalize_date("R7.8.20") == dt.date(2025, 8, 20)
    assert normalize_date("平成元年1月8日") == dt.date(1989, 1, 8)
    assert normalize_date("2025年8月20日") == dt.date(2025, 8, 20)
    assert normalize_date("2025-08-20") == dt.date(2025, 8, 20)
    assert normalize_date("2025/08/20") == dt.date(2025, 8, 20)


def test_month_day_rows_use_reference_year():
    reference = dt.date(2025, 10, 15)
    assert normalize_date("08-20", reference=reference) == dt.date(2025, 8, 20)
    assert normalize_date("12/20", reference=reference) == dt.date(2024, 12, 20)
    assert normalize_date("8月20日", reference=reference) == dt.date(2025, 8, 20)


def test_unparseable_dates():
    assert normalize_date(None) is None
    assert normalize_date("") is None
    assert normalize_date("n/a") is None
    assert normalize_date("不明") is None


def test_amounts():
    assert normalize_amount("¥1,000,000") == 1_000_000.0
    assert normalize_amount("△5,000") == -5000.0
    assert normalize_amount("▲5,000") == -5000.0
    assert normalize_amount("(3,000)") == -3000.0
    assert normalize_amount("１２０円") == 120.0
    assert normalize_amount(1500) == 1500.0
    assert normalize_amount("abc") == 0.0
    assert normalize_amount(None) == 0.0
    assert normalize_amount(float("nan")) == 0.0


def test_periods():
    assert shift_period("2025-01", -1) == "2024-12"
    assert shift_period("2024-12", 1) == "2025-01"
    assert period_bounds("2024-02") == (dt.date(2024, 2, 1), dt.date(2024, 2, 29))
    assert trailing_periods(dt.date(2025, 10, 15), 3) == ["2025-08", "2025-09", "2025-10"]


def test_fold_text():
    assert fold_text("ｱﾄﾑ atm") == "アトム ATM"
    assert fold_text(None) == ""
