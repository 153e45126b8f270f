"""
config.py - Process settings and the immutable per-run context.

Two layers:

    Settings    credentials and endpoints read from the environment
                (.env is loaded with python-dotenv at import time)
    RunContext  every tunable constant and lookup table used by the
                matching/pairing/filtering code, frozen for the duration
                of one case review and passed explicitly to each component

RunContext.from_settings() starts from the defaults below and applies the
JSON overrides named by FACTORING_REVIEW_CONTEXT_FILE, if any.
"""

from __future__ import annotations

import datetime as dt
import json
import os
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from logging_config import get_logger

logger = get_logger(__name__)

try:
    load_dotenv()
except UnicodeDecodeError:
    # Legacy Windows-encoded .env files.
    load_dotenv(encoding="cp1252")


# -- Lookup tables --

# Known third-party factoring companies. Each entry is
# (canonical name, *aliases as they may appear on statements).
DEFAULT_LENDERS: tuple[tuple[str, ...], ...] = (
    ("デュアルライフパートナーズ", "Dual Life Partners"),
    ("GMOクリエイターズネットワーク",),
    ("Payサポート", "ペイサポート"),
    ("フリーナンス", "FREENANCE"),
    ("グッドプラス",),
    ("ベルトラ",),
    ("NECキャピタルソリューション",),
    ("OLTAクラウドファクタリング", "OLTA", "オルタ"),
    ("エスワイエス", "SYS"),
    ("アクセルファクター", "ACCEL FACTOR"),
    ("エージーピージャパン", "AGP JAPAN"),
    ("日本中小企業金融サポート機構",),
    ("エムエスエフジェイ", "MSFJ"),
    ("EMV",),
    ("FFG",),
    ("JTC",),
    ("No.1", "ナンバーワン"),
    ("SEICOサービス",),
    ("PROTECT ONE",),
    ("TRY",),
    ("UPSIDER",),
    ("インフォマート", "INFOMART"),
    ("EVISTA",),
    ("ケアプル", "CAREPL"),
    ("セッション・アップ",),
    ("アウタープル", "OUTERPULL"),
    ("アクティブサポート",),
    ("アクリ", "ACRI"),
    ("アップス・エンド", "UPS END"),
    ("アレシア",),
    ("アンカーガーディアン",),
    ("ウィット", "WIT"),
    ("ウイング",),
    ("エスコム", "ESCOM"),
    ("エムエスライズ",),
    ("オッティ", "OTTI"),
    ("カイト", "KITE"),
    ("シレイタ", "SIREITA"),
    ("トライスゲートウェイ",),
    ("トラストゲートウェイ", "TRUST GATEWAY"),
    ("ネクストワン",),
    ("ハイフィール",),
    ("バイカン", "BAIKAN"),
    ("ビートレーディング", "BUY TRADING", "ビートレ"),
    ("ペイトナー", "PAYTONAR"),
    ("マネーフォワードケッサイ",),
    ("メンターキャピタル",),
    ("ライジングインノベーション", "RISING INNOVATION"),
    ("ライトマネジメント",),
    ("Wエンタープライズ",),
    ("グローバルキャピタル",),
    ("三共サービス", "SANKYO SERVICE"),
    ("日本ネクストキャピタル",),
    ("ビーエムシー", "BMC"),
    ("ピーエムジー", "PMG"),
    ("マイルド", "MILD"),
    ("ラボル", "labol"),
    ("西日本ファクター",),
    ("ANEW",),
    ("FundingCloud",),
    ("GMOペイメントゲートウェイ",),
    ("Ganx",),
    ("ティーアンドエス", "T&S"),
    ("ディーエムシー", "DMC"),
    ("ファクタリングジャパン",),
    ("ファンドワン", "FUND ONE"),
    ("フィーディクス", "FEEDIX"),
    ("三菱HCキャピタル",),
    ("五常", "GOJYO"),
    ("中小企業再生支援",),
    ("事業資金エージェント",),
    ("日本ビジネスリンクス",),
    ("資金調達本舗",),
    ("QuQuMo", "ククモ"),
    ("アースファクター",),
    ("エヌファクター", "N-FACTOR"),
    ("コバンザメ",),
    ("トップマネジメント",),
    ("ハンズトレード",),
    ("ベストファクター", "BEST FACTOR"),
    ("ユアファクター",),
    ("Hondaa",),
    ("PROTECTER ONE",),
    ("オーティーアイ", "OTI"),
    ("ライズ", "RISE"),
    ("ANIHEN LINK",),
    ("エスアール", "SR"),
    ("トラップコミュニケーション",),
    ("各務資財リサイクル",),
    ("LM9",),
    ("LUMIA",),
    ("Soluno",),
    ("ワークルズ", "WORKLES"),
    ("BUSINESSPARTNER",),
    ("エコテックポリマー",),
    ("サークルシップホールディングス",),
)

DEFAULT_GAMBLING_KEYWORDS: tuple[str, ...] = (
    # pachinko / slots
    "パチンコ", "スロット", "マルハン", "ダイナム", "ガイア", "GAIA", "エスパス",
    # horse racing
    "競馬", "ウィンチケット", "WINTICKET", "SPAT4", "スパット", "楽天競馬",
    "オッズパーク", "JRA", "地方競馬", "中央競馬",
    # keirin / boat / auto racing
    "競輪", "競艇", "ボートレース", "テレボート", "オートレース", "BOAT RACE",
    # casino
    "カジノ", "ベラジョン", "カジ旅", "エルドアカジノ", "ビットカジノ",
    # lottery
    "宝くじ", "ロト", "LOTO", "ナンバーズ", "NUMBERS", "ジャンボ",
    "賭博", "賭け事", "ギャンブル",
)

DEFAULT_CASH_MARKERS: tuple[str, ...] = (
    "ATM", "カード", "現金", "引出", "引き出し", "CD", "出金",
)

DEFAULT_SOCIAL_MEDIA_DOMAINS: tuple[str, ...] = (
    "twitter.com", "x.com", "facebook.com", "instagram.com", "tiktok.com",
    "youtube.com", "linkedin.com", "note.com", "ameblo.jp", "threads.net",
    "line.me", "pinterest.com", "reddit.com",
)

DEFAULT_ADVERSE_QUERY_TERMS: tuple[str, ...] = ("詐欺", "逮捕", "容疑", "被害")

DEFAULT_NO_RESULT_PATTERNS: tuple[str, ...] = (
    "no results found",
    "ご指定の検索条件に該当する投稿がありませんでした",
    "見つかりませんでした",
    "該当する記事はありません",
    "0件",
    "検索結果はありません",
    "nothing found",
    "no posts found",
    "検索結果が見つかりませんでした",
)


class FraudSite(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    url: str
    search_url: str = Field(..., description="Search URL template with a {query} placeholder.")


DEFAULT_FRAUD_SITES: tuple[FraudSite, ...] = (
    FraudSite(
        name="eradicationofblackmoney",
        url="https://eradicationofblackmoneyscammers.com/",
        search_url="https://eradicationofblackmoneyscammers.com/?s={query}",
    ),
)


# -- Settings --


class Settings(BaseModel):
    """Credentials and endpoints for the external collaborators."""

    kintone_domain: str = ""
    kintone_api_token: str = ""
    kintone_app_id: str = "37"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    report_model: str = "gpt-4.1"
    serper_api_key: str = ""
    google_vision_api_key: str = ""
    http_timeout_seconds: float = 30.0
    context_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            kintone_domain=os.getenv("KINTONE_DOMAIN", "").strip(),
            kintone_api_token=os.getenv("KINTONE_API_TOKEN", "").strip(),
            kintone_app_id=os.getenv("KINTONE_APP_ID", "37").strip() or "37",
            openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o").strip() or "gpt-4o",
            report_model=os.getenv("REPORT_MODEL", "gpt-4.1").strip() or "gpt-4.1",
            serper_api_key=os.getenv("SERPER_API_KEY", "").strip(),
            google_vision_api_key=os.getenv("GOOGLE_VISION_API_KEY", "").strip(),
            http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "30") or 30),
            context_file=os.getenv("FACTORING_REVIEW_CONTEXT_FILE") or None,
        )

    def missing(self) -> list[str]:
        """Names of the environment variables a full case review needs but lacks."""
        required = {
            "KINTONE_DOMAIN": self.kintone_domain,
            "KINTONE_API_TOKEN": self.kintone_api_token,
            "OPENAI_API_KEY": self.openai_api_key,
            "SERPER_API_KEY": self.serper_api_key,
            "GOOGLE_VISION_API_KEY": self.google_vision_api_key,
        }
        return [name for name, value in required.items() if not value]


# -- Run context --


class RunContext(BaseModel):
    """Immutable per-run constants and lookup tables.

    The numeric defaults are empirically tuned values; treat them as
    knobs, not as facts about the domain.
    """

    model_config = ConfigDict(frozen=True)

    as_of: dt.date = Field(default_factory=dt.date.today)

    # Collateral reconciliation
    review_months: int = Field(default=3, ge=1)
    amount_tolerance: float = Field(default=1000.0, ge=0)
    boundary_window_days: int = Field(default=7, ge=0)
    payment_lag_months: int = Field(
        default=1,
        ge=0,
        description="An expectation for month M is normally paid during month M - lag.",
    )
    max_split_parts: int = Field(default=4, ge=1)
    max_search_nodes: int = Field(default=200_000, ge=1)
    name_match_threshold: float = Field(default=85.0, ge=0, le=100)
    min_prefix_chars: int = Field(default=4, ge=1)

    # Debt cycles
    pairing_min_ratio: float = Field(default=0.90, gt=0)
    pairing_max_ratio: float = Field(default=1.15, gt=0)
    open_debt_age_days: int = Field(default=60, ge=0)
    simultaneous_usage_days: int = Field(default=15, ge=0)
    short_lender_name_chars: int = Field(default=4, ge=1)

    # Statement risk scan
    large_cash_threshold: float = Field(default=500_000.0, ge=0)
    cross_bank_days: int = Field(default=1, ge=0)
    cross_bank_amount_tolerance: float = Field(default=1000.0, ge=0)

    # Adverse media
    age_tolerance_years: int = Field(default=5, ge=0)
    triage_age_contradiction_years: int = Field(default=10, ge=0)
    max_search_results: int = Field(default=6, ge=1)
    article_text_chars: int = Field(default=6000, ge=500)

    # Company verification
    company_verified_threshold: float = Field(default=70.0, ge=0, le=100)

    # OCR
    ocr_batch_pages: int = Field(default=5, ge=1)
    max_pages_per_file: int = Field(default=20, ge=1)

    lenders: tuple[tuple[str, ...], ...] = DEFAULT_LENDERS
    gambling_keywords: tuple[str, ...] = DEFAULT_GAMBLING_KEYWORDS
    cash_markers: tuple[str, ...] = DEFAULT_CASH_MARKERS
    social_media_domains: tuple[str, ...] = DEFAULT_SOCIAL_MEDIA_DOMAINS
    adverse_query_terms: tuple[str, ...] = DEFAULT_ADVERSE_QUERY_TERMS
    fraud_sites: tuple[FraudSite, ...] = DEFAULT_FRAUD_SITES
    no_result_patterns: tuple[str, ...] = DEFAULT_NO_RESULT_PATTERNS

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        as_of: dt.date | None = None,
        **overrides: Any,
    ) -> "RunContext":
        """Build the context once per run: defaults < context file < overrides."""
        values: dict[str, Any] = {}
        context_file = settings.context_file if settings else None
        if context_file:
            values.update(load_context_file(context_file))
        values.update(overrides)
        if as_of is not None:
            values["as_of"] = as_of
        context = cls(**values)
        logger.info(
            "run_context | as_of=%s | tolerance=%.0f | boundary_days=%s | lag_months=%s | lenders=%s | context_file=%s",
            context.as_of,
            context.amount_tolerance,
            context.boundary_window_days,
            context.payment_lag_months,
            len(context.lenders),
            context_file or "-",
        )
        return context


def load_context_file(path: str) -> dict[str, Any]:
    """Read RunContext overrides from a JSON object file."""
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Run context file not found: {path}")
    try:
        data = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Run context file is not valid JSON: {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Run context file must hold a JSON object: {path}")
    if "lenders" in data:
        data["lenders"] = tuple(
            tuple(entry) if isinstance(entry, (list, tuple)) else (str(entry),)
            for entry in data["lenders"]
        )
    return data
