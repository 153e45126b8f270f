"""
errors.py - Exception taxonomy for the review pipeline.

Three kinds of trouble reach the pipeline:

    UpstreamUnavailableError  a collaborator (record store, OCR, LLM,
                              search, article fetch) could not be reached
                              or answered with an error status
    MalformedOutputError      a collaborator answered, but the answer
                              does not fit the expected structure
    (no data)                 not an exception at all - see
                              models.AnalysisStatus.not_performed

Unit-level failures (one document, one query, one counterparty) are
caught where they happen and turned into AnalysisStatus markers. Only
phase-level failures (record store down, case missing) propagate out of
pipeline.review_case().
"""

from __future__ import annotations

from typing import Any


class ReviewError(Exception):
    """Base class for every error raised by the review pipeline."""


class UpstreamUnavailableError(ReviewError):
    """An external collaborator failed (transport error or non-2xx status)."""

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service} unavailable: {message}")
        self.service = service


class MalformedOutputError(ReviewError):
    """A collaborator returned output that failed schema validation."""

    def __init__(self, service: str, message: str, raw: str | None = None) -> None:
        super().__init__(f"{service} returned malformed output: {message}")
        self.service = service
        self.raw = raw


class CaseNotFoundError(ReviewError):
    """The record store has no case with the requested id."""

    def __init__(self, case_id: str) -> None:
        super().__init__(f"Case not found: {case_id}")
        self.case_id = case_id


class InvalidPageRangeError(ReviewError):
    """The OCR backend rejected a page window outside the document.

    Raised separately from UpstreamUnavailableError so callers can probe
    the length of a document whose page count the backend does not report.
    """

    def __init__(self, pages: list[int]) -> None:
        super().__init__(f"Invalid page range requested: {pages}")
        self.pages = pages


def json_object(service: str, response: Any) -> dict[str, Any]:
    """Decode an HTTP response body that must be a JSON object.

    A 200 with an HTML body (proxy or rate-limit page) or a JSON array
    raises MalformedOutputError instead of leaking JSONDecodeError.
    """
    try:
        body = response.json()
    except ValueError as exc:
        raise MalformedOutputError(service, f"response is not JSON: {exc}", raw=response.text[:500]) from exc
    if not isinstance(body, dict):
        raise MalformedOutputError(
            service, f"expected a JSON object, got {type(body).__name__}", raw=response.text[:500]
        )
    return body
