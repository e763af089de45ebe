"""
Generative backend client (Gemini REST ``generateContent`` over aiohttp).

The rest of the pipeline only depends on the contract
``generate(model, contents, response_schema, generation_config, timeout_ms) -> str``
and on ``BackendError`` carrying an inspectable status/code/message.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from core.config import Settings

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Backend call failure with the HTTP status and API error code when known."""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code

    def __str__(self) -> str:
        parts = [self.message]
        if self.status is not None:
            parts.append(f"status={self.status}")
        if self.code:
            parts.append(f"code={self.code}")
        return " | ".join(parts)


def inline_part(data_b64: str, mime_type: str) -> Dict[str, Any]:
    return {"inlineData": {"data": data_b64, "mimeType": mime_type}}


def text_part(text: str) -> Dict[str, Any]:
    return {"text": text}


def error_from_payload(status: int, payload: Any) -> BackendError:
    err = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(err, dict):
        message = str(err.get("message") or f"HTTP {status}")
        code = err.get("status")
        return BackendError(message, status=status, code=str(code) if code else None)
    return BackendError(f"HTTP {status}", status=status)


def extract_text(payload: Any) -> str:
    """Concatenate the text parts of the first candidate; empty string when absent."""
    if not isinstance(payload, dict):
        return ""
    candidates = payload.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        return ""
    content = candidates[0].get("content")
    parts = (content.get("parts") or []) if isinstance(content, dict) else []
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


class GeminiClient:
    """Lazily opens one aiohttp session and reuses it for every call."""

    def __init__(self, settings: Settings, session: Optional[aiohttp.ClientSession] = None):
        self.s = settings
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def generate(
        self,
        model: str,
        contents: List[Dict[str, Any]],
        response_schema: Dict[str, Any],
        generation_config: Dict[str, Any],
        timeout_ms: int,
    ) -> str:
        if not self.s.GEMINI_API_KEY:
            raise BackendError("GEMINI_API_KEY is not set", code="NO_API_KEY")

        url = f"{self.s.GEMINI_BASE_URL}/models/{model}:generateContent"
        body = {
            "contents": [{"role": "user", "parts": contents}],
            "generationConfig": {
                **generation_config,
                "responseMimeType": "application/json",
                "responseSchema": response_schema,
            },
        }
        timeout = aiohttp.ClientTimeout(total=max(0.001, timeout_ms / 1000.0))
        logger.debug(f"[backend] generateContent model={model} timeout_ms={timeout_ms}")
        async with self._get_session().post(
            url,
            params={"key": self.s.GEMINI_API_KEY},
            json=body,
            timeout=timeout,
        ) as resp:
            try:
                payload = await resp.json(content_type=None)
            except ValueError:
                payload = None
            if resp.status != 200:
                raise error_from_payload(resp.status, payload)
        return extract_text(payload)
