"""
normalize.py - Name, date and amount normalization.

Core normalizers:
    normalize_company_name(name)   -> comparison key for company names
    person_name_key(name)          -> comparison key for person names
    normalize_date(value, ref)     -> datetime.date or None
    normalize_amount(value)        -> signed float (yen)

Matching helpers:
    names_match(raw, candidates)   -> (matched, score, evidence)
    fold_text(text)                -> width/case/kana-folded text for keyword search

Period helpers:
    period_of(date) / shift_period(period, n) / period_bounds(period)

Design principles:
    - SAME normalization on BOTH sides of every comparison
    - Pure transformations, no external API calls
    - Invalid input degrades to neutral values (None / 0.0) with a warning
"""

from __future__ import annotations

import calendar
import datetime as dt
import math
import re
import unicodedata
from typing import Any, Iterable

from dateutil import parser as dateparser
from rapidfuzz import fuzz

from logging_config import get_logger

logger = get_logger(__name__)

# Legal-entity forms as written in CRM records and on registries.
LEGAL_FORMS: list[str] = [
    "株式会社",
    "有限会社",
    "合同会社",
    "合資会社",
    "合名会社",
    "一般社団法人",
    "一般財団法人",
    "公益社団法人",
    "公益財団法人",
    "社会福祉法人",
    "医療法人社団",
    "医療法人",
    "特定非営利活動法人",
    "NPO法人",
]

# Parenthesised forms after NFKC: (株) ㈱ -> (株)
LEGAL_ABBREVIATIONS: list[str] = ["(株)", "(有)", "(同)", "(資)", "(名)", "(社)", "(財)", "(医)"]

# Bank-statement notation: "カ)ヤマダケンセツ" / "ヤマダケンセツ(カ".
BANK_LEGAL_MARKERS: list[str] = ["シヤ", "ザイ", "フク", "カ", "ユ", "ド", "メ", "シ", "イ"]

ENGLISH_SUFFIXES: list[str] = [
    "co.,ltd.",
    "co.,ltd",
    "co., ltd.",
    "co. ltd.",
    "corporation",
    "company",
    "corp.",
    "corp",
    "inc.",
    "inc",
    "ltd.",
    "ltd",
    "llc",
    "k.k.",
    "kk",
    "co.",
    "co",
]

SMALL_KANA = str.maketrans("ァィゥェォッャュョヮヵヶ", "アイウエオツヤユヨワカケ")

PUNCTUATION_RE = re.compile(r"[\s　・･\-‐ー―－_.,，、。'\"“”‘’()（）\[\]{}「」『』/\\&＆*＋+:：;；!?！？]")

ERA_OFFSETS: dict[str, int] = {
    "令和": 2018,
    "R": 2018,
    "平成": 1988,
    "H": 1988,
    "昭和": 1925,
    "S": 1925,
}

ERA_RE = re.compile(
    r"^(令和|平成|昭和|R|H|S)\s*(\d{1,2}|元)\s*[年./-]\s*(\d{1,2})\s*[月./-]\s*(\d{1,2})\s*日?$",
    re.IGNORECASE,
)
KANJI_DATE_RE = re.compile(r"^(\d{4})\s*年\s*(\d{1,2})\s*月\s*(\d{1,2})\s*日?$")
MONTH_DAY_RE = re.compile(r"^(\d{1,2})\s*(?:[-/.]|月)\s*(\d{1,2})\s*日?$")

NEGATIVE_MARKERS = ("-", "△", "▲", "−")


def hiragana_to_katakana(text: str) -> str:
    return "".join(
        chr(ord(char) + 0x60) if "ぁ" <= char <= "ゖ" else char for char in text
    )


def fold_text(text: str | None) -> str:
    """Width-, case- and kana-fold text for containment checks."""
    if not text:
        return ""
    folded = unicodedata.normalize("NFKC", str(text))
    folded = hiragana_to_katakana(folded)
    return folded.upper()


def normalize_company_name(name: Any) -> str:
    """Normalize a company name into a comparison key.

    Removes legal-entity forms (株式会社, (株), カ), Inc, ...), folds width
    and hiragana/katakana, enlarges small kana (statements print ヤ for ャ),
    and drops spaces and punctuation.
    """
    if name is None:
        return ""
    text = str(name).strip()
    if not text:
        return ""

    key = fold_text(text)

    for form in LEGAL_FORMS:
        key = key.replace(form.upper(), " ")
    for abbreviation in LEGAL_ABBREVIATIONS:
        key = key.replace(abbreviation, " ")
    key = key.replace("㈱", " ").replace("㈲", " ")

    stripped = key.strip()
    for marker in BANK_LEGAL_MARKERS:
        if stripped.startswith(marker + ")"):
            stripped = stripped[len(marker) + 1 :]
            break
    for marker in BANK_LEGAL_MARKERS:
        if stripped.endswith("(" + marker):
            stripped = stripped[: -(len(marker) + 1)]
            break
    key = stripped

    lowered = key.lower().strip()
    for suffix in ENGLISH_SUFFIXES:
        if lowered.endswith(" " + suffix) or lowered.endswith("," + suffix):
            key = key[: len(key) - len(suffix)]
            break

    key = key.translate(SMALL_KANA)
    key = PUNCTUATION_RE.sub("", key)
    logger.debug("normalize_company_name | raw=%r | normalized=%r", text, key)
    return key


def person_name_key(name: Any) -> str:
    """Comparison key for person names.

    Only script variants are folded: width, hiragana/katakana and
    whitespace. Kanji are compared as-is - 高 and 髙 are different names.
    """
    if name is None:
        return ""
    key = unicodedata.normalize("NFKC", str(name))
    key = hiragana_to_katakana(key)
    key = re.sub(r"[\s・･]", "", key)
    return key.upper()


def person_names_equal(left: Any, right: Any) -> bool:
    left_key = person_name_key(left)
    return bool(left_key) and left_key == person_name_key(right)


def names_match(
    raw_name: Any,
    candidates: Iterable[str],
    threshold: float = 85.0,
    min_prefix_chars: int = 4,
) -> tuple[bool, float, str]:
    """Decide whether a statement name refers to any of the candidate names.

    Matches on (1) equal keys, (2) one key being a prefix of the other
    with at least min_prefix_chars characters (OCR/bank truncation), or
    (3) RapidFuzz ratio >= threshold.
    """
    raw_key = normalize_company_name(raw_name)
    if not raw_key:
        return False, 0.0, "Statement name is empty - cannot compare"

    best_score = 0.0
    best_name = ""
    for candidate in candidates:
        candidate_key = normalize_company_name(candidate)
        if not candidate_key:
            continue

        if raw_key == candidate_key:
            return True, 100.0, f"Names match exactly: '{raw_key}'"

        shorter, longer = sorted((raw_key, candidate_key), key=len)
        if len(shorter) >= min_prefix_chars and longer.startswith(shorter):
            return (
                True,
                95.0,
                f"Truncated name matches: '{raw_key}' ~ '{candidate_key}'",
            )

        score = round(float(fuzz.ratio(raw_key, candidate_key)), 1)
        if score > best_score:
            best_score = score
            best_name = candidate_key

    if best_score >= threshold:
        return True, best_score, f"Names similar: '{raw_key}' ~ '{best_name}' (score: {best_score})"

    logger.debug(
        "names_match | raw=%r | best=%r | score=%.1f | threshold=%.1f",
        raw_name,
        best_name,
        best_score,
        threshold,
    )
    return False, best_score, f"Names differ: '{raw_key}' vs '{best_name}' (score: {best_score})"


def normalize_date(value: Any, reference: dt.date | None = None) -> dt.date | None:
    """Parse statement/CRM date text into a date.

    Accepts ISO and slash formats, 2025年8月20日, Japanese eras
    (令和7年8月20日, R7.8.20) and month-day only rows (08-20), whose year
    is taken from `reference` - or the year before when that would put
    the row after the reference date.
    """
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value

    text = unicodedata.normalize("NFKC", str(value)).strip()
    if not text or not any(char.isdigit() for char in text):
        return None
    if text.lower() in {"n/a", "na", "none", "null", "unknown"}:
        return None

    try:
        era_match = ERA_RE.match(text)
        if era_match:
            era, year_text, month, day = era_match.groups()
            era_year = 1 if year_text == "元" else int(year_text)
            return dt.date(ERA_OFFSETS[era.upper() if len(era) == 1 else era] + era_year, int(month), int(day))

        kanji_match = KANJI_DATE_RE.match(text)
        if kanji_match:
            year, month, day = (int(part) for part in kanji_match.groups())
            return dt.date(year, month, day)

        month_day = MONTH_DAY_RE.match(text)
        if month_day:
            reference = reference or dt.date.today()
            month, day = (int(part) for part in month_day.groups())
            candidate = dt.date(reference.year, month, day)
            if candidate > reference:
                candidate = dt.date(reference.year - 1, month, day)
            return candidate

        parsed = dateparser.parse(text, yearfirst=True, dayfirst=False)
    except (ValueError, TypeError, OverflowError) as exc:
        logger.warning(
            "normalize_date | parse_error=%s | raw=%r | fallback=None",
            type(exc).__name__,
            value,
        )
        return None

    if parsed is None:
        logger.warning("normalize_date | parse_failed | raw=%r | fallback=None", value)
        return None
    return parsed.date()


def normalize_amount(value: Any) -> float:
    """Normalize a yen amount into a signed float.

    '¥1,000,000' -> 1000000.0, '△5,000' -> -5000.0, '(3,000)' -> -3000.0,
    '１２０円' -> 120.0. Unparseable input degrades to 0.0.
    """
    if value is None:
        return 0.0

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        number = float(value)
        if not math.isfinite(number):
            logger.warning("normalize_amount | non_finite=%r | fallback=0.0", value)
            return 0.0
        return round(number, 2)

    text = unicodedata.normalize("NFKC", str(value)).strip()
    if not text or text.lower() in {"n/a", "na", "none", "null", "unknown", "nan"}:
        return 0.0

    negative = text.startswith(NEGATIVE_MARKERS) or (text.startswith("(") and text.endswith(")"))
    cleaned = re.sub(r"[¥￥$,円\s()+]", "", text)
    for marker in NEGATIVE_MARKERS:
        cleaned = cleaned.replace(marker, "")

    if not cleaned:
        return 0.0

    try:
        number = float(cleaned)
    except ValueError:
        logger.warning("normalize_amount | parse_failed | raw=%r | fallback=0.0", value)
        return 0.0

    if not math.isfinite(number):
        logger.warning("normalize_amount | non_finite_parsed=%r | fallback=0.0", value)
        return 0.0

    return round(-number if negative else number, 2)


def period_of(day: dt.date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def shift_period(period: str, months: int) -> str:
    year, month = (int(part) for part in period.split("-"))
    index = year * 12 + (month - 1) + months
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def period_bounds(period: str) -> tuple[dt.date, dt.date]:
    year, month = (int(part) for part in period.split("-"))
    last_day = calendar.monthrange(year, month)[1]
    return dt.date(year, month, 1), dt.date(year, month, last_day)


def trailing_periods(as_of: dt.date, count: int) -> list[str]:
    """Oldest-first list of the `count` months ending with as_of's month."""
    current = period_of(as_of)
    return [shift_period(current, -offset) for offset in range(count - 1, -1, -1)]
