"""
main.py - CLI for the factoring underwriting review.

Two modes:
1. case     fetch a case from the record store and run the full review
2. offline  reconcile a statement CSV against expected collateral
            payments (plus debt cycles and risk scan) without any
            external service
"""

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import json
import logging
import os
import sys
from typing import Optional

import pandas as pd

from aggregate import SEPARATOR, format_report_text
from config import RunContext, Settings
from debt_cycle import analyze_debt_cycles
from errors import CaseNotFoundError, ReviewError
from logging_config import get_logger, setup_logging
from models import Counterparty, CounterpartyReconciliation, DebtCycleReport, ExpectedAmount, RiskScanReport, Transaction
from normalize import normalize_amount, normalize_company_name, normalize_date
from pipeline import ReviewServices, review_case
from reconcile import reconcile
from risk_scan import scan_statements

logger = get_logger("factoring-review")

LEDGER_COLUMNS = ["date", "amount", "counterparty_name"]
EXPECTED_COLUMNS = ["counterparty", "period", "amount"]


def _configure_output() -> None:
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    except (AttributeError, ValueError):
        pass


def _read_csv(csv_path: str, required: list[str], label: str) -> pd.DataFrame:
    """Load a CSV, lower-case its headers and check required columns."""
    csv_path = str(csv_path or "").strip()
    if not csv_path:
        raise ValueError(f"{label} CSV path cannot be empty")
    if not os.path.exists(csv_path):
        raise FileNotFoundError(f"{label} CSV not found: {csv_path}")

    try:
        df = pd.read_csv(csv_path, encoding="utf-8-sig", dtype=str)
    except UnicodeDecodeError:
        logger.warning("csv_encoding_warning | path=%s | reason='utf-8 decode failed' | fallback=cp932", csv_path)
        df = pd.read_csv(csv_path, encoding="cp932", dtype=str)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise ValueError(f"Failed to read CSV '{csv_path}': {exc}") from exc

    df.columns = [str(column).strip().lower() for column in df.columns]
    df = df.dropna(how="all").fillna("")
    if df.empty:
        raise ValueError(f"{label} CSV is empty: {csv_path}")

    missing = [column for column in required if column not in df.columns]
    if missing:
        raise ValueError(
            f"{label} CSV missing required columns: {missing}\n"
            f"Required: {required}\n"
            f"Found: {list(df.columns)}"
        )
    logger.info("csv_loaded | label=%s | path=%s | rows=%s", label, csv_path, len(df))
    return df


def load_ledger(csv_path: str, as_of: dt.date) -> list[Transaction]:
    """Statement CSV -> transactions. Rows without a date or amount are dropped."""
    df = _read_csv(csv_path, LEDGER_COLUMNS, "Ledger")
    source = os.path.basename(csv_path)
    transactions: list[Transaction] = []
    dropped = 0
    for row in df.to_dict(orient="records"):
        day = normalize_date(row["date"], reference=as_of)
        amount = normalize_amount(row["amount"])
        if day is None or amount == 0:
            dropped += 1
            continue
        transactions.append(
            Transaction(
                date=day,
                amount=amount,
                counterparty_name_raw=str(row["counterparty_name"]).strip(),
                description=str(row.get("description", "")).strip() or None,
                source_document=source,
                sequence=len(transactions),
            )
        )
    if dropped:
        logger.warning("ledger_rows_dropped | path=%s | dropped=%s | reason='bad date or zero amount'", csv_path, dropped)
    return transactions


def load_expected(csv_path: str) -> tuple[list[Counterparty], list[ExpectedAmount]]:
    """Expected-payments CSV -> (counterparties, expectations).

    An optional `aliases` column holds extra spellings separated by '|'.
    """
    df = _read_csv(csv_path, EXPECTED_COLUMNS, "Expected")
    counterparties: dict[str, Counterparty] = {}
    expectations: list[ExpectedAmount] = []
    for row in df.to_dict(orient="records"):
        name = str(row["counterparty"]).strip()
        if not name:
            continue
        key = normalize_company_name(name) or name
        if key not in counterparties:
            aliases = [alias.strip() for alias in str(row.get("aliases", "")).split("|") if alias.strip()]
            counterparties[key] = Counterparty(key=key, name=name, aliases=aliases)
        amount = normalize_amount(row["amount"])
        if amount < 0:
            logger.warning("expected_amount_negative | counterparty=%r | amount=%s | fallback=0", name, amount)
            amount = 0.0
        expectations.append(ExpectedAmount(counterparty_key=key, period=str(row["period"]).strip(), amount=amount))
    return list(counterparties.values()), expectations


def run_offline(
    ledger_path: str,
    expected_path: Optional[str],
    context: RunContext,
    sub_ledger_path: Optional[str] = None,
) -> tuple[list[CounterpartyReconciliation], DebtCycleReport, RiskScanReport]:
    ledger = load_ledger(ledger_path, context.as_of)
    sub_ledger = load_ledger(sub_ledger_path, context.as_of) if sub_ledger_path else []

    reconciliations: list[CounterpartyReconciliation] = []
    if expected_path:
        counterparties, expectations = load_expected(expected_path)
        reconciliations = reconcile(counterparties, expectations, ledger, context)
    debt_cycles = analyze_debt_cycles(ledger + sub_ledger, context)
    risk_scan = scan_statements(ledger, sub_ledger, context)
    return reconciliations, debt_cycles, risk_scan


def format_offline_text(
    reconciliations: list[CounterpartyReconciliation],
    debt_cycles: DebtCycleReport,
    risk_scan: RiskScanReport,
) -> str:
    lines = ["", SEPARATOR, "  Statement analysis", SEPARATOR, ""]
    for reconciliation in reconciliations:
        lines.append(
            f"  {reconciliation.counterparty_name}  history={'yes' if reconciliation.has_prior_history else 'NO'}"
        )
        for verdict in reconciliation.verdicts:
            mark = "OK " if verdict.matched else "-- "
            lines.append(
                f"    {mark}{verdict.period}  expected ¥{verdict.expected_amount:,.0f}  "
                f"{verdict.match_kind.value}  {verdict.source_summary}"
            )
    if not reconciliations:
        lines.append("  No expected payments given.")

    lines.append("")
    lines.append(f"  Other lenders: {len(debt_cycles.records)}")
    for record in debt_cycles.records:
        lines.append(f"    {record.counterparty_name}: {record.status.value} ({record.note})")
    for alert in debt_cycles.alerts:
        lines.append(f"    ALERT {alert.kind.value}: {alert.message}")

    lines.append("")
    lines.append(
        f"  Risk scan: gambling={len(risk_scan.gambling)} cash={len(risk_scan.large_cash_withdrawals)} "
        f"transfers={len(risk_scan.cross_account_transfers)}"
    )
    lines.append(SEPARATOR)
    return "\n".join(lines)


def run_case(case_id: str, settings: Settings, context: RunContext, write_back_report: bool, as_json: bool) -> str:
    missing = settings.missing()
    if missing:
        raise ValueError(f"Missing configuration: {', '.join(missing)} (set them in the environment or .env)")
    services = ReviewServices.from_settings(settings)
    report = asyncio.run(review_case(case_id, services, context, write_back_report=write_back_report))
    if as_json:
        return report.model_dump_json(indent=2)
    return format_report_text(report)


def _parse_as_of(value: Optional[str]) -> Optional[dt.date]:
    if not value:
        return None
    try:
        return dt.date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"--as-of must be YYYY-MM-DD, got {value!r}") from exc


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="factoring-review",
        description=(
            "Underwriting review for invoice-factoring applications.\n"
            "Reconciles collateral payments, detects other lenders and screens the applicant."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s --case 1234\n"
            "  %(prog)s --case 1234 --write-back --json\n"
            "  %(prog)s --ledger statement.csv --expected collateral.csv --as-of 2025-10-15\n"
        ),
    )
    parser.add_argument("--case", type=str, help="Record id of the case to review")
    parser.add_argument("--ledger", type=str, help="Statement CSV (date, amount, counterparty_name[, description])")
    parser.add_argument("--sub-ledger", type=str, help="Second-account statement CSV for transfer detection")
    parser.add_argument("--expected", type=str, help="Expected payments CSV (counterparty, period, amount[, aliases])")
    parser.add_argument("--as-of", type=_parse_as_of, default=None, help="Review date (YYYY-MM-DD, default today)")
    parser.add_argument("--write-back", action="store_true", help="Write the rendered report to the record")
    parser.add_argument("--json", action="store_true", help="Output results as JSON")
    parser.add_argument("--output", "-o", type=str, help="Write the output to this file instead of stdout")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose (DEBUG-level) logging")
    parser.add_argument("--log-json", action="store_true", help="Output logs as JSON lines")

    args = parser.parse_args(argv)
    setup_logging(level=logging.DEBUG if args.verbose else logging.INFO, json_format=args.log_json)
    _configure_output()

    if not args.case and not args.ledger:
        parser.error("Provide either --case ID or --ledger PATH")
    if args.case and args.ledger:
        parser.error("Use --case OR --ledger, not both")

    try:
        if args.case:
            logger.info("cli_mode | mode=case | case_id=%s | write_back=%s", args.case, args.write_back)
            settings = Settings.from_env()
            context = RunContext.from_settings(settings, as_of=args.as_of)
            output = run_case(args.case, settings, context, args.write_back, args.json)
        else:
            logger.info("cli_mode | mode=offline | ledger=%s | expected=%s", args.ledger, args.expected)
            context = RunContext.from_settings(Settings.from_env(), as_of=args.as_of)
            reconciliations, debt_cycles, risk_scan = run_offline(
                args.ledger, args.expected, context, sub_ledger_path=args.sub_ledger
            )
            if args.json:
                output = json.dumps(
                    {
                        "as_of": context.as_of.isoformat(),
                        "reconciliations": [item.model_dump(mode="json") for item in reconciliations],
                        "debt_cycles": debt_cycles.model_dump(mode="json"),
                        "risk_scan": risk_scan.model_dump(mode="json"),
                    },
                    ensure_ascii=False,
                    indent=2,
                )
            else:
                output = format_offline_text(reconciliations, debt_cycles, risk_scan)

        if args.output:
            with open(args.output, "w", encoding="utf-8") as handle:
                handle.write(output)
            logger.info("cli_output_written | path=%s | chars=%s", args.output, len(output))
        else:
            print(output)
    except CaseNotFoundError as exc:
        logger.error("cli_error | type=CaseNotFoundError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except (FileNotFoundError, ValueError) as exc:
        logger.error("cli_error | type=%s | error=%s", type(exc).__name__, exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except ReviewError as exc:
        logger.error("cli_error | type=%s | error=%s", type(exc).__name__, exc, exc_info=True)
        print(f"\nReview failed: {exc}")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)
    except Exception as exc:
        logger.error("cli_error | type=%s | error=%s", type(exc).__name__, exc, exc_info=True)
        print(f"\nUnexpected error: {exc}")
        print("Run with --verbose for full traceback.")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
