"""
test_main.py - CLI: CSV loading and the offline statement analysis.

Usage: pytest test_main.py
"""

from __future__ import annotations

import datetime as dt
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from config import RunContext, Settings
from main import load_expected, load_ledger, main, run_case, run_offline

AS_OF = dt.date(2025, 10, 15)

LEDGER_CSV = """date,amount,counterparty_name,description
2025-07-04,"1,000,000",カ)ヤマダケンセツ,振込
2025-08-20,1500000,カ)ヤマダケンセツ,振込
09-01,500000,ペイトナー(カ,
09-10,-540000,ペイトナー(カ,
残高,0,,
"""

EXPECTED_CSV = """Counterparty,Period,Amount,Aliases
山田建設株式会社,2025-08,1000000,ヤマダケンセツ
山田建設株式会社,2025-09,"1,500,000",ヤマダケンセツ
"""


@pytest.fixture
def csv_files(tmp_path):
    ledger = tmp_path / "statement.csv"
    expected = tmp_path / "collateral.csv"
    ledger.write_text(LEDGER_CSV, encoding="utf-8")
    expected.write_text(EXPECTED_CSV, encoding="utf-8")
    return str(ledger), str(expected)


def test_load_ledger(csv_files):
    ledger = load_ledger(csv_files[0], AS_OF)
    assert [txn.date for txn in ledger] == [
        dt.date(2025, 7, 4),
        dt.date(2025, 8, 20),
        dt.date(2025, 9, 1),
        dt.date(2025, 9, 10),
    ]
    assert [txn.amount for txn in ledger] == [1_000_000, 1_500_000, 500_000, -540_000]
    assert ledger[0].description == "振込"
    assert ledger[2].description is None
    assert [txn.sequence for txn in ledger] == [0, 1, 2, 3]
    assert {txn.source_document for txn in ledger} == {"statement.csv"}


def test_load_expected(csv_files):
    counterparties, expectations = load_expected(csv_files[1])
    assert [(cp.key, cp.aliases) for cp in counterparties] == [("山田建設", ["ヤマダケンセツ"])]
    assert [(e.period, e.amount) for e in expectations] == [("2025-08", 1_000_000), ("2025-09", 1_500_000)]


def test_missing_columns_and_files(tmp_path):
    bad = tmp_path / "bad.csv"
    bad.write_text("day,value\n2025-01-01,1\n", encoding="utf-8")
    with pytest.raises(ValueError, match="missing required columns"):
        load_ledger(str(bad), AS_OF)
    with pytest.raises(FileNotFoundError):
        load_ledger(str(tmp_path / "absent.csv"), AS_OF)


def test_run_offline(csv_files):
    reconciliations, debt_cycles, risk_scan = run_offline(csv_files[0], csv_files[1], RunContext(as_of=AS_OF))

    (reconciliation,) = reconciliations
    assert reconciliation.all_matched
    assert [record.counterparty_name for record in debt_cycles.records] == ["ペイトナー"]
    assert risk_scan.status.ok


def test_cli_offline_json(csv_files, tmp_path):
    output = tmp_path / "result.json"
    main(["--ledger", csv_files[0], "--expected", csv_files[1], "--as-of", "2025-10-15", "--json", "-o", str(output)])

    payload = json.loads(output.read_text(encoding="utf-8"))
    assert payload["as_of"] == "2025-10-15"
    assert payload["reconciliations"][0]["verdicts"][1]["matched"] is True
    assert payload["debt_cycles"]["records"][0]["status"] == "settled"


def test_cli_rejects_conflicting_modes(csv_files):
    with pytest.raises(SystemExit):
        main(["--case", "1", "--ledger", csv_files[0]])
    with pytest.raises(SystemExit):
        main([])


def test_cli_missing_ledger_exits_with_error(tmp_path):
    with pytest.raises(SystemExit) as exit_info:
        main(["--ledger", str(tmp_path / "absent.csv")])
    assert exit_info.value.code == 1


def test_case_mode_requires_configuration():
    with pytest.raises(ValueError, match="KINTONE_DOMAIN"):
        run_case("1", Settings(), RunContext(as_of=AS_OF), write_back_report=False, as_json=False)
