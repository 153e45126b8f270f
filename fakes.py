"""
fakes.py - In-memory collaborators for the test suite.

Each fake implements one of the collaborator protocols (RecordStore,
OcrBackend, StructuredLLM, WebSearch, ArticleFetcher) and records its
calls, so tests run without network access.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel

from errors import CaseNotFoundError
from models import AttachmentRef, CaseRecord, DocumentCategory, SearchHit
from ocr import OcrPage

Response = Union[BaseModel, dict, Exception, Callable[[str], Any]]


class FakeLLM:
    """StructuredLLM answering per output schema name.

    A response may be a model instance, a dict (validated against the
    schema), an exception (raised) or a callable taking the prompt and
    returning any of those. Schemas without a response get their empty
    default instance.
    """

    def __init__(self, responses: Optional[dict[str, Response]] = None, text: Union[str, Exception] = "") -> None:
        self.responses = responses or {}
        self.text = text
        self.calls: list[tuple[str, str]] = []

    async def complete(self, prompt: str, output_schema, system: Optional[str] = None):
        self.calls.append((output_schema.__name__, prompt))
        response = self.responses.get(output_schema.__name__)
        if callable(response) and not isinstance(response, type):
            response = response(prompt)
        if response is None:
            return output_schema()
        if isinstance(response, Exception):
            raise response
        if isinstance(response, dict):
            return output_schema.model_validate(response)
        return response

    async def complete_text(self, prompt: str, system: Optional[str] = None) -> str:
        self.calls.append(("text", prompt))
        if isinstance(self.text, Exception):
            raise self.text
        return self.text

    def calls_for(self, schema_name: str) -> list[str]:
        return [prompt for name, prompt in self.calls if name == schema_name]


class FakeSearch:
    """WebSearch returning canned hits per query; unknown queries return nothing."""

    def __init__(self, results: Optional[dict[str, Union[list[SearchHit], Exception]]] = None) -> None:
        self.results = results or {}
        self.queries: list[str] = []

    async def search(self, query: str, num: int = 6) -> list[SearchHit]:
        self.queries.append(query)
        result = self.results.get(query, [])
        if isinstance(result, Exception):
            raise result
        return result[:num]


class FakeFetcher:
    """ArticleFetcher over a url -> html mapping; unknown urls are unavailable."""

    def __init__(self, pages: Optional[dict[str, Optional[str]]] = None, default: Optional[str] = None) -> None:
        self.pages = pages or {}
        self.default = default
        self.fetched: list[str] = []

    async def fetch(self, url: str) -> Optional[str]:
        self.fetched.append(url)
        return self.pages.get(url, self.default)


class FakeOcr:
    """OcrBackend whose 'document' bytes are the UTF-8 text itself, one page long."""

    def __init__(self, failing: Optional[dict[bytes, Exception]] = None) -> None:
        self.failing = failing or {}
        self.calls: list[Optional[list[int]]] = []

    async def extract_text(self, data: bytes, mime_type: str, pages: Optional[list[int]] = None) -> OcrPage:
        self.calls.append(pages)
        if data in self.failing:
            raise self.failing[data]
        return OcrPage(text=data.decode("utf-8"), confidence=0.9, page_count=len(pages or [1]), total_pages=1)


class FakeStore:
    """RecordStore holding one case and its attachment bytes."""

    def __init__(
        self,
        case: Optional[CaseRecord] = None,
        files: Optional[dict[str, bytes]] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.case = case
        self.files = files or {}
        self.error = error
        self.updates: list[tuple[str, dict[str, Any]]] = []

    async def get_case(self, case_id: str, as_of: Optional[dt.date] = None) -> CaseRecord:
        if self.error is not None:
            raise self.error
        if self.case is None or self.case.case_id != case_id:
            raise CaseNotFoundError(case_id)
        return self.case

    def list_attachments(self, record: CaseRecord, category: DocumentCategory) -> list[AttachmentRef]:
        return record.attachments_for(category)

    async def download_attachment(self, ref: AttachmentRef) -> bytes:
        return self.files[ref.file_key]

    async def update_case(self, case_id: str, fields: dict[str, Any]) -> None:
        self.updates.append((case_id, fields))


def attachment(file_key: str, category: DocumentCategory, mime_type: str = "application/pdf") -> AttachmentRef:
    return AttachmentRef(file_key=file_key, name=f"{file_key}.pdf", mime_type=mime_type, category=category)
