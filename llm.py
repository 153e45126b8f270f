"""
llm.py - Structured-completion backend (OpenAI chat completions, JSON mode).

Every structured call is validated against a pydantic model at the
boundary. Retry policy lives here and nowhere else:

    malformed JSON / schema mismatch  -> one retry, then MalformedOutputError
    API / transport error             -> UpstreamUnavailableError (no retry)
"""

from __future__ import annotations

import json
from typing import Optional, Protocol, TypeVar

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ValidationError

from errors import MalformedOutputError, UpstreamUnavailableError
from logging_config import get_logger

logger = get_logger(__name__)

SERVICE = "llm"
MAX_ATTEMPTS = 2

T = TypeVar("T", bound=BaseModel)


class StructuredLLM(Protocol):
    async def complete(self, prompt: str, output_schema: type[T], system: Optional[str] = None) -> T: ...

    async def complete_text(self, prompt: str, system: Optional[str] = None) -> str: ...


def strip_json_code_fences(text: str) -> str:
    """Remove ```json fences some models wrap around JSON output."""
    text = text.strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        if first_newline != -1:
            text = text[first_newline + 1 :]
        if text.endswith("```"):
            text = text[:-3].strip()
    return text


def parse_structured(raw: str, output_schema: type[T]) -> T:
    """Decode and validate one JSON answer. Raises MalformedOutputError."""
    try:
        payload = json.loads(strip_json_code_fences(raw))
    except json.JSONDecodeError as exc:
        raise MalformedOutputError(SERVICE, f"invalid JSON: {exc}", raw=raw) from exc
    try:
        return output_schema.model_validate(payload)
    except ValidationError as exc:
        raise MalformedOutputError(
            SERVICE,
            f"{output_schema.__name__} validation failed: {exc.error_count()} error(s)",
            raw=raw,
        ) from exc


def schema_instructions(output_schema: type[BaseModel]) -> str:
    schema = json.dumps(output_schema.model_json_schema(), ensure_ascii=False)
    return (
        "Return a single JSON object only. No prose, no code fences.\n"
        f"The object must validate against this JSON schema:\n{schema}"
    )


class OpenAIStructuredLLM:
    """StructuredLLM over the OpenAI async client."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        text_model: Optional[str] = None,
        timeout: float = 120.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.text_model = text_model or model
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=timeout)

    async def _chat(self, model: str, system: str, prompt: str, json_mode: bool) -> str:
        kwargs = {"response_format": {"type": "json_object"}} if json_mode else {}
        try:
            response = await self.client.chat.completions.create(
                model=model,
                temperature=0,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                **kwargs,
            )
        except OpenAIError as exc:
            raise UpstreamUnavailableError(SERVICE, f"{type(exc).__name__}: {exc}") from exc
        return response.choices[0].message.content or ""

    async def complete(self, prompt: str, output_schema: type[T], system: Optional[str] = None) -> T:
        system_text = "\n\n".join(part for part in (system, schema_instructions(output_schema)) if part)
        attempt = 1
        while True:
            raw = await self._chat(self.model, system_text, prompt, json_mode=True)
            try:
                return parse_structured(raw, output_schema)
            except MalformedOutputError as exc:
                logger.warning(
                    "llm_malformed_output | schema=%s | attempt=%s/%s | error=%s | fallback=%s",
                    output_schema.__name__,
                    attempt,
                    MAX_ATTEMPTS,
                    exc,
                    "retry" if attempt < MAX_ATTEMPTS else "raise",
                )
                if attempt >= MAX_ATTEMPTS:
                    raise
            attempt += 1

    async def complete_text(self, prompt: str, system: Optional[str] = None) -> str:
        return await self._chat(self.text_model, system or "", prompt, json_mode=False)
