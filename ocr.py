"""
ocr.py - OCR backend adapter (Google Cloud Vision REST) and document OCR.

    VisionOcrBackend.extract_text(data, mime_type, pages)  one Vision call
    ocr_document(backend, data, ...)                       whole file, batched
    ocr_attachments(store, backend, refs, context)         download + OCR, concurrent

Multi-page files go through files:annotate in windows of
context.ocr_batch_pages pages. When Vision does not report totalPages the
page count is probed: single pages 1, 11, 21, ... until the backend rejects
the window, then page by page from the last good one.
"""

from __future__ import annotations

import asyncio
import base64
import time
from typing import Any, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from config import RunContext
from errors import InvalidPageRangeError, MalformedOutputError, ReviewError, UpstreamUnavailableError, json_object
from logging_config import get_logger
from models import AttachmentRef, DocumentCategory, OcrDocument

logger = get_logger(__name__)

SERVICE = "vision"
VISION_URL = "https://vision.googleapis.com/v1"
INVALID_PAGES_MARKER = "Invalid pages"
COARSE_PROBE_STEP = 10


class OcrPage(BaseModel):
    """Text of one Vision call (one image, or one page window of a file)."""

    text: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    page_count: int = Field(default=0, ge=0, description="Pages returned by this call.")
    total_pages: Optional[int] = Field(
        default=None,
        description="Length of the whole document, when the backend reports it.",
    )


class OcrBackend(Protocol):
    async def extract_text(
        self,
        data: bytes,
        mime_type: str,
        pages: Optional[list[int]] = None,
    ) -> OcrPage: ...


class AttachmentSource(Protocol):
    async def download_attachment(self, ref: AttachmentRef) -> bytes: ...


def is_image(mime_type: str) -> bool:
    return mime_type.lower().startswith("image/")


def _annotation_text(response: dict[str, Any]) -> tuple[str, float]:
    annotation = response.get("fullTextAnnotation") or {}
    text = annotation.get("text") or ""
    if not text:
        blocks = response.get("textAnnotations") or []
        text = blocks[0].get("description", "") if blocks else ""
    pages = annotation.get("pages") or []
    confidence = float(pages[0].get("confidence") or 0.0) if pages else 0.0
    return text, min(max(confidence, 0.0), 1.0)


class VisionOcrBackend:
    """OcrBackend over Vision images:annotate / files:annotate with an API key."""

    def __init__(
        self,
        api_key: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def _annotate(self, endpoint: str, body: dict[str, Any], pages: Optional[list[int]]) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{VISION_URL}/{endpoint}",
                    params={"key": self.api_key},
                    json=body,
                )
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(SERVICE, f"{endpoint}: {type(exc).__name__}: {exc}") from exc

        if response.status_code >= 400:
            if INVALID_PAGES_MARKER in response.text:
                raise InvalidPageRangeError(pages or [])
            raise UpstreamUnavailableError(
                SERVICE, f"{endpoint}: HTTP {response.status_code}: {response.text[:200]}"
            )

        responses = json_object(SERVICE, response).get("responses") or [{}]
        if not isinstance(responses, list) or not isinstance(responses[0], dict):
            raise MalformedOutputError(
                SERVICE, f"{endpoint}: responses is not a list of objects", raw=response.text[:500]
            )
        first = responses[0]
        error = first.get("error")
        if error:
            message = str(error.get("message", error))
            if INVALID_PAGES_MARKER in message:
                raise InvalidPageRangeError(pages or [])
            raise UpstreamUnavailableError(SERVICE, f"{endpoint}: {message}")
        return first

    async def extract_text(
        self,
        data: bytes,
        mime_type: str,
        pages: Optional[list[int]] = None,
    ) -> OcrPage:
        content = base64.b64encode(data).decode("ascii")
        features = [{"type": "DOCUMENT_TEXT_DETECTION"}]
        image_context = {"languageHints": ["ja"]}

        if is_image(mime_type):
            body = {
                "requests": [
                    {"image": {"content": content}, "features": features, "imageContext": image_context}
                ]
            }
            result = await self._annotate("images:annotate", body, pages)
            text, confidence = _annotation_text(result)
            return OcrPage(text=text, confidence=confidence, page_count=1, total_pages=1)

        request: dict[str, Any] = {
            "inputConfig": {"content": content, "mimeType": mime_type},
            "features": features,
            "imageContext": image_context,
        }
        if pages:
            request["pages"] = pages
        result = await self._annotate("files:annotate", {"requests": [request]}, pages)

        texts: list[str] = []
        confidence = 0.0
        page_responses = result.get("responses") or []
        if not isinstance(page_responses, list):
            raise MalformedOutputError(SERVICE, "files:annotate: page responses is not a list")
        for index, page_response in enumerate(page_responses):
            if not isinstance(page_response, dict):
                logger.warning("ocr_page_malformed | page_index=%s | fallback=skip_page", index)
                continue
            page_error = page_response.get("error")
            if page_error:
                message = str(page_error.get("message", page_error))
                if INVALID_PAGES_MARKER in message:
                    raise InvalidPageRangeError(pages or [])
                logger.warning("ocr_page_error | page_index=%s | error=%s | fallback=skip_page", index, message)
                continue
            text, page_confidence = _annotation_text(page_response)
            if text:
                texts.append(text)
            if index == 0:
                confidence = page_confidence

        total_pages = result.get("totalPages")
        return OcrPage(
            text="\n".join(texts),
            confidence=confidence,
            page_count=len(page_responses),
            total_pages=int(total_pages) if total_pages else None,
        )


async def probe_page_count(backend: OcrBackend, data: bytes, mime_type: str, max_pages: int) -> int:
    """Find the document length, capped at max_pages.

    Uses totalPages when the backend reports it; otherwise a coarse scan in
    steps of ten followed by a page-by-page scan, both stopped by
    InvalidPageRangeError.
    """
    try:
        first = await backend.extract_text(data, mime_type, [1])
    except InvalidPageRangeError:
        return 0
    if first.total_pages:
        return min(first.total_pages, max_pages)

    last_good = 1
    for page in range(1 + COARSE_PROBE_STEP, max_pages + 1, COARSE_PROBE_STEP):
        try:
            await backend.extract_text(data, mime_type, [page])
        except InvalidPageRangeError:
            break
        last_good = page

    for page in range(last_good + 1, min(last_good + COARSE_PROBE_STEP, max_pages + 1)):
        try:
            await backend.extract_text(data, mime_type, [page])
        except InvalidPageRangeError:
            break
        last_good = page

    logger.debug("page_count_probed | pages=%s | max_pages=%s", last_good, max_pages)
    return last_good


async def ocr_document(
    backend: OcrBackend,
    data: bytes,
    file_name: str,
    mime_type: str,
    category: DocumentCategory,
    context: RunContext,
) -> OcrDocument:
    """OCR a whole attachment into one OcrDocument.

    A failure after at least one successful window keeps the text read so
    far and records the error; a failure before that propagates.
    """
    if is_image(mime_type):
        page = await backend.extract_text(data, mime_type)
        return OcrDocument(
            file_name=file_name,
            category=category,
            mime_type=mime_type,
            text=page.text,
            page_count=1,
            confidence=page.confidence,
        )

    try:
        total = await probe_page_count(backend, data, mime_type, context.max_pages_per_file)
    except (UpstreamUnavailableError, MalformedOutputError) as exc:
        logger.warning(
            "page_count_probe_failed | file=%r | error=%s | fallback=max_pages_per_file",
            file_name,
            exc,
        )
        total = context.max_pages_per_file

    texts: list[str] = []
    confidence = 0.0
    processed = 0
    error: Optional[str] = None
    for start in range(1, total + 1, context.ocr_batch_pages):
        window = list(range(start, min(start + context.ocr_batch_pages, total + 1)))
        try:
            page = await backend.extract_text(data, mime_type, window)
        except InvalidPageRangeError:
            break
        except (UpstreamUnavailableError, MalformedOutputError) as exc:
            if not texts:
                raise
            logger.warning(
                "ocr_window_failed | file=%r | pages=%s-%s | error=%s | fallback=partial_text",
                file_name,
                window[0],
                window[-1],
                exc,
            )
            error = str(exc)
            break
        if page.text:
            texts.append(page.text)
        if start == 1:
            confidence = page.confidence
        processed += page.page_count or len(window)

    return OcrDocument(
        file_name=file_name,
        category=category,
        mime_type=mime_type,
        text="\n".join(texts),
        page_count=processed,
        confidence=confidence,
        error=error,
    )


async def ocr_attachments(
    store: AttachmentSource,
    backend: OcrBackend,
    refs: list[AttachmentRef],
    context: RunContext,
) -> list[OcrDocument]:
    """Download and OCR every attachment concurrently.

    One failing file becomes an OcrDocument with `error` set; its siblings
    are unaffected. Output order follows `refs`.
    """

    async def _one(ref: AttachmentRef) -> OcrDocument:
        started = time.perf_counter()
        try:
            data = await store.download_attachment(ref)
            document = await ocr_document(backend, data, ref.name, ref.mime_type, ref.category, context)
        except ReviewError as exc:
            logger.warning("ocr_failed | file=%r | error=%s | fallback=empty_text", ref.name, exc)
            return OcrDocument(
                file_name=ref.name,
                category=ref.category,
                mime_type=ref.mime_type,
                error=str(exc),
            )
        logger.info(
            "ocr_complete | file=%r | category=%s | pages=%s | chars=%s | duration_s=%.2f",
            ref.name,
            ref.category.value,
            document.page_count,
            len(document.text),
            time.perf_counter() - started,
        )
        return document

    return list(await asyncio.gather(*(_one(ref) for ref in refs)))
