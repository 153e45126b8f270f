"""
kintone.py - Record store adapter (kintone REST API).

Reads one applicant record and maps its fields onto CaseRecord:

    担保情報 (collateral table)   -> counterparties + expected monthly amounts
    買取情報 (purchase table)     -> purchase rows
    *＿添付ファイル fields         -> attachment refs by document category
    scalar fields                 -> applicant/representative/birth date/location

The collateral table's three "past payment" columns are the trailing three
periods relative to the run's as_of date (先々月, 先月, 今月).
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Optional, Protocol

import httpx

from errors import CaseNotFoundError, MalformedOutputError, UpstreamUnavailableError, json_object
from logging_config import get_logger
from models import (
    AttachmentRef,
    CaseRecord,
    Counterparty,
    DocumentCategory,
    ExpectedAmount,
    PurchaseRow,
)
from normalize import normalize_amount, normalize_company_name, normalize_date, trailing_periods

logger = get_logger(__name__)

SERVICE = "kintone"

COLLATERAL_TABLE = "担保情報"
COLLATERAL_COMPANY = "会社名_第三債務者_担保"
# Oldest first: two months ago, last month, this month.
COLLATERAL_PAYMENT_COLUMNS = ("過去の入金_先々月", "過去の入金_先月", "過去の入金_今月")

PURCHASE_TABLE = "買取情報"
PURCHASE_COMPANY = "会社名_第三債務者_買取"
PURCHASE_AMOUNT = "総債権額"

ATTACHMENT_FIELDS: dict[DocumentCategory, str] = {
    DocumentCategory.PURCHASE: "成因証書＿添付ファイル",
    DocumentCategory.COLLATERAL: "担保情報＿添付ファイル",
    DocumentCategory.MAIN_STATEMENT: "メイン通帳＿添付ファイル",
    DocumentCategory.SUB_STATEMENT: "その他通帳＿添付ファイル",
    DocumentCategory.IDENTITY: "顧客情報＿添付ファイル",
}

# Field types that are not plain reference values.
STRUCTURED_FIELD_TYPES = {"SUBTABLE", "FILE", "REFERENCE_TABLE", "GROUP", "CATEGORY", "STATUS_ASSIGNEE"}


class RecordStore(Protocol):
    async def get_case(self, case_id: str, as_of: Optional[dt.date] = None) -> CaseRecord: ...

    def list_attachments(self, record: CaseRecord, category: DocumentCategory) -> list[AttachmentRef]: ...

    async def download_attachment(self, ref: AttachmentRef) -> bytes: ...

    async def update_case(self, case_id: str, fields: dict[str, Any]) -> None: ...


def _value(record: dict[str, Any], code: str) -> Any:
    field = record.get(code)
    if isinstance(field, dict):
        return field.get("value")
    return None


def _text(record: dict[str, Any], *codes: str) -> str:
    for code in codes:
        value = _value(record, code)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _rows(record: dict[str, Any], code: str) -> list[dict[str, Any]]:
    rows = _value(record, code) or []
    return [row.get("value", {}) for row in rows if isinstance(row, dict)]


def parse_case_record(case_id: str, record: dict[str, Any], as_of: dt.date) -> CaseRecord:
    """Map a raw kintone record (field code -> {type, value}) onto CaseRecord."""
    periods = trailing_periods(as_of, len(COLLATERAL_PAYMENT_COLUMNS))

    counterparties: dict[str, Counterparty] = {}
    expectations: list[ExpectedAmount] = []
    for row in _rows(record, COLLATERAL_TABLE):
        name = _text(row, COLLATERAL_COMPANY)
        if not name:
            continue
        key = normalize_company_name(name) or name
        if key not in counterparties:
            counterparties[key] = Counterparty(key=key, name=name)
        for column, period in zip(COLLATERAL_PAYMENT_COLUMNS, periods):
            amount = normalize_amount(_value(row, column))
            if amount < 0:
                logger.warning(
                    "collateral_amount_negative | company=%r | column=%s | amount=%s | fallback=0",
                    name,
                    column,
                    amount,
                )
                amount = 0.0
            expectations.append(ExpectedAmount(counterparty_key=key, period=period, amount=amount))

    purchases = [
        PurchaseRow(
            company=_text(row, PURCHASE_COMPANY),
            amount=max(0.0, normalize_amount(_value(row, PURCHASE_AMOUNT))),
        )
        for row in _rows(record, PURCHASE_TABLE)
        if _text(row, PURCHASE_COMPANY)
    ]

    attachments: list[AttachmentRef] = []
    for category, code in ATTACHMENT_FIELDS.items():
        for item in _value(record, code) or []:
            if not isinstance(item, dict) or not item.get("fileKey"):
                continue
            attachments.append(
                AttachmentRef(
                    file_key=str(item["fileKey"]),
                    name=str(item.get("name") or item["fileKey"]),
                    mime_type=str(item.get("contentType") or "application/octet-stream"),
                    size=int(item.get("size") or 0),
                    category=category,
                )
            )

    raw_fields = {
        code: field.get("value")
        for code, field in record.items()
        if isinstance(field, dict) and field.get("type") not in STRUCTURED_FIELD_TYPES
    }

    case = CaseRecord(
        case_id=case_id,
        applicant_company=_text(record, "屋号", "会社名"),
        applicant_name=_text(record, "顧客情報＿氏名", "代表者名"),
        representative_name=_text(record, "代表者名"),
        birth_date=normalize_date(_value(record, "生年月日")),
        location=_text(record, "本社所在地", "会社所在地", "自宅所在地") or None,
        counterparties=list(counterparties.values()),
        expectations=expectations,
        purchases=purchases,
        attachments=attachments,
        raw_fields=raw_fields,
    )
    logger.info(
        "case_parsed | case_id=%s | counterparties=%s | expectations=%s | purchases=%s | attachments=%s",
        case_id,
        len(case.counterparties),
        len(case.expectations),
        len(case.purchases),
        len(case.attachments),
    )
    return case


class KintoneRecordStore:
    """RecordStore over the kintone REST API (API-token auth)."""

    def __init__(
        self,
        domain: str,
        api_token: str,
        app_id: str = "37",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = f"https://{domain}"
        self.api_token = api_token
        self.app_id = app_id
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"X-Cybozu-API-Token": self.api_token},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(SERVICE, f"{method} {path}: {type(exc).__name__}: {exc}") from exc
        if response.status_code >= 400:
            raise UpstreamUnavailableError(
                SERVICE, f"{method} {path}: HTTP {response.status_code}: {response.text[:200]}"
            )
        return response

    async def get_case(self, case_id: str, as_of: Optional[dt.date] = None) -> CaseRecord:
        response = await self._request(
            "GET",
            "/k/v1/records.json",
            params={"app": self.app_id, "query": f'$id="{case_id}"'},
        )
        records = json_object(SERVICE, response).get("records") or []
        if not isinstance(records, list):
            raise MalformedOutputError(SERVICE, f"records is {type(records).__name__}", raw=response.text[:500])
        if not records:
            raise CaseNotFoundError(case_id)
        if not isinstance(records[0], dict):
            raise MalformedOutputError(SERVICE, "record is not an object", raw=response.text[:500])
        return parse_case_record(case_id, records[0], as_of or dt.date.today())

    def list_attachments(self, record: CaseRecord, category: DocumentCategory) -> list[AttachmentRef]:
        return record.attachments_for(category)

    async def download_attachment(self, ref: AttachmentRef) -> bytes:
        response = await self._request("GET", "/k/v1/file.json", params={"fileKey": ref.file_key})
        logger.debug("attachment_downloaded | name=%r | bytes=%s", ref.name, len(response.content))
        return response.content

    async def update_case(self, case_id: str, fields: dict[str, Any]) -> None:
        body = {
            "app": self.app_id,
            "id": case_id,
            "record": {code: {"value": value} for code, value in fields.items()},
        }
        await self._request("PUT", "/k/v1/record.json", json=body)
        logger.info("case_updated | case_id=%s | fields=%s", case_id, sorted(fields))
