"""Client helpers for a Gemini-compatible ``generateContent`` endpoint."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import RemoteServiceError

DEFAULT_API_BASE = "https://generativelanguage.googleapis.com"
IMAGE_MODEL = "gemini-3-pro-image-preview"
TEXT_MODEL = "gemini-3-pro-preview"


def endpoint_url(api_base: str, model: str) -> str:
    return f"{api_base.rstrip('/')}/v1beta/models/{model}:generateContent"


def _headers(api_key: str) -> Dict[str, str]:
    return {"x-goog-api-key": api_key, "Content-Type": "application/json"}


def _body(parts: List[dict], generation_config: Optional[dict], system_instruction: Optional[str]) -> dict:
    body: Dict[str, Any] = {"contents": [{"parts": parts}]}
    if generation_config:
        body["generationConfig"] = generation_config
    if system_instruction:
        body["systemInstruction"] = {"parts": [{"text": system_instruction}]}
    return body


def error_from_payload(status: int, reason: str, payload: Any, text: str = "") -> RemoteServiceError:
    """Build a :class:`RemoteServiceError` from a service error body.

    The service wraps failures as ``{"error": {"code", "status", "message"}}``;
    anything else falls back to the raw text.
    """
    err = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(err, dict):
        return RemoteServiceError(
            status,
            err.get("message") or reason,
            reason=err.get("status") or reason,
            body=payload,
        )
    return RemoteServiceError(status, text[:400] or reason, reason=reason, body=payload)


class GenAIClient:
    """Async client owning one ``aiohttp`` session.

    Args:
        api_key (str): Key sent in the ``x-goog-api-key`` header.
        api_base (str): Service root without the ``/v1beta`` suffix.
        timeout (float): Total seconds allowed per request.
        session (Optional[aiohttp.ClientSession]): Externally managed session.
    """

    def __init__(
        self,
        api_key: str,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 120.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.api_key = api_key
        self.api_base = api_base
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "GenAIClient":
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self

    async def __aexit__(self, *_exc) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def generate_content(
        self,
        model: str,
        parts: List[dict],
        generation_config: Optional[dict] = None,
        system_instruction: Optional[str] = None,
    ) -> dict:
        """POST one ``generateContent`` request and return the parsed JSON.

        Raises:
            RemoteServiceError: On HTTP >= 400 or transport failure.
        """
        if self._session is None:
            raise RuntimeError("GenAIClient must be used as an async context manager")
        url = endpoint_url(self.api_base, model)
        body = _body(parts, generation_config, system_instruction)
        try:
            async with self._session.post(url, headers=_headers(self.api_key), json=body) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    try:
                        payload = json.loads(text)
                    except ValueError:
                        payload = None
                    raise error_from_payload(resp.status, resp.reason or "", payload, text)
                return await resp.json()
        except aiohttp.ClientError as exc:
            raise RemoteServiceError(None, str(exc)) from exc


def inline_part(data_b64: str, mime: str = "image/jpeg") -> dict:
    return {"inlineData": {"mimeType": mime, "data": data_b64}}


def text_part(text: str) -> dict:
    return {"text": text}


def image_config(image_size: str, aspect_ratio: str) -> dict:
    return {
        "responseModalities": ["IMAGE"],
        "imageConfig": {"imageSize": image_size, "aspectRatio": aspect_ratio},
    }


def _parts(resp: dict) -> List[dict]:
    candidate = (resp.get("candidates") or [{}])[0]
    return (candidate.get("content") or {}).get("parts") or []


def extract_text(resp: dict) -> str:
    return "".join(part.get("text", "") for part in _parts(resp) if "text" in part)


def extract_image(resp: dict) -> Optional[str]:
    """Return the first inline image of a response as a ``data:`` URL."""

    for part in _parts(resp):
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            mime = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            return f"data:{mime};base64,{inline['data']}"
    return None
