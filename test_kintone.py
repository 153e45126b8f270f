"""
test_kintone.py - kintone record mapping and REST adapter.

Usage: pytest test_kintone.py
"""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import httpx
import pytest

from errors import CaseNotFoundError, MalformedOutputError, UpstreamUnavailableError
from kintone import KintoneRecordStore, parse_case_record
from models import AttachmentRef, DocumentCategory

AS_OF = dt.date(2025, 10, 15)


def _row(**fields) -> dict:
    return {"id": "1", "value": {code: {"type": "SINGLE_LINE_TEXT", "value": value} for code, value in fields.items()}}


RECORD = {
    "$id": {"type": "__ID__", "value": "4821"},
    "屋号": {"type": "SINGLE_LINE_TEXT", "value": "山田建設"},
    "代表者名": {"type": "SINGLE_LINE_TEXT", "value": "山田 太郎"},
    "生年月日": {"type": "DATE", "value": "1980-04-01"},
    "本社所在地": {"type": "SINGLE_LINE_TEXT", "value": "東京都千代田区"},
    "担保情報": {
        "type": "SUBTABLE",
        "value": [
            _row(
                会社名_第三債務者_担保="株式会社鈴木商事",
                過去の入金_先々月="1,000,000",
                過去の入金_先月="0",
                過去の入金_今月="-500",
            ),
            _row(会社名_第三債務者_担保=""),
        ],
    },
    "買取情報": {
        "type": "SUBTABLE",
        "value": [
            _row(会社名_第三債務者_買取="佐藤工業", 総債権額="800,000"),
            _row(会社名_第三債務者_買取="", 総債権額="100"),
        ],
    },
    "成因証書＿添付ファイル": {
        "type": "FILE",
        "value": [{"fileKey": "f-1", "name": "invoice.pdf", "contentType": "application/pdf", "size": "2048"}],
    },
    "メイン通帳＿添付ファイル": {
        "type": "FILE",
        "value": [{"fileKey": "f-2", "name": "main.png", "contentType": "image/png", "size": "512"}, {"name": "no-key"}],
    },
}


def test_collateral_table_maps_to_trailing_periods():
    case = parse_case_record("4821", RECORD, AS_OF)

    assert [(cp.key, cp.name) for cp in case.counterparties] == [("鈴木商事", "株式会社鈴木商事")]
    assert [(e.period, e.amount) for e in case.expectations] == [
        ("2025-08", 1_000_000.0),
        ("2025-09", 0.0),
        ("2025-10", 0.0),
    ]
    assert {e.counterparty_key for e in case.expectations} == {"鈴木商事"}


def test_scalar_fields_purchases_and_attachments():
    case = parse_case_record("4821", RECORD, AS_OF)

    assert case.applicant_company == "山田建設"
    assert case.applicant_name == "山田 太郎"
    assert case.birth_date == dt.date(1980, 4, 1)
    assert case.location == "東京都千代田区"
    assert case.applicant_age(AS_OF) == 45
    assert [(row.company, row.amount) for row in case.purchases] == [("佐藤工業", 800_000.0)]

    assert [(ref.file_key, ref.category) for ref in case.attachments] == [
        ("f-1", DocumentCategory.PURCHASE),
        ("f-2", DocumentCategory.MAIN_STATEMENT),
    ]
    assert case.attachments[0].size == 2048
    assert case.raw_fields["屋号"] == "山田建設"
    assert "担保情報" not in case.raw_fields


def test_empty_record_parses_to_empty_case():
    case = parse_case_record("1", {}, AS_OF)
    assert case.counterparties == []
    assert case.expectations == []
    assert case.birth_date is None


def _store(handler) -> KintoneRecordStore:
    return KintoneRecordStore("example.cybozu.com", "token", app_id="37", transport=httpx.MockTransport(handler))


def test_get_case_queries_by_record_id():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["token"] = request.headers["X-Cybozu-API-Token"]
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"records": [RECORD]})

    case = asyncio.run(_store(handler).get_case("4821", AS_OF))

    assert seen["token"] == "token"
    assert seen["params"] == {"app": "37", "query": '$id="4821"'}
    assert case.case_id == "4821"
    assert len(case.expectations) == 3


def test_missing_case_and_server_errors():
    with pytest.raises(CaseNotFoundError):
        asyncio.run(_store(lambda request: httpx.Response(200, json={"records": []})).get_case("9", AS_OF))

    with pytest.raises(UpstreamUnavailableError):
        asyncio.run(_store(lambda request: httpx.Response(500, text="oops")).get_case("9", AS_OF))


def test_download_and_update():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/k/v1/file.json":
            return httpx.Response(200, content=b"%PDF-1.7")
        return httpx.Response(200, json={"revision": "2"})

    store = _store(handler)
    ref = AttachmentRef(file_key="f-1", name="invoice.pdf", category=DocumentCategory.PURCHASE)
    assert asyncio.run(store.download_attachment(ref)) == b"%PDF-1.7"

    asyncio.run(store.update_case("4821", {"AI審査_リスク評価": "<p>ok</p>"}))
    update = requests[-1]
    assert update.method == "PUT"
    assert json.loads(update.content)["record"] == {"AI審査_リスク評価": {"value": "<p>ok</p>"}}


def test_non_json_reply_is_malformed():
    with pytest.raises(MalformedOutputError) as error:
        asyncio.run(_store(lambda request: httpx.Response(200, text="<html>maintenance</html>")).get_case("9", AS_OF))
    assert error.value.service == "kintone"

    with pytest.raises(MalformedOutputError):
        asyncio.run(_store(lambda request: httpx.Response(200, json={"records": "none"})).get_case("9", AS_OF))
