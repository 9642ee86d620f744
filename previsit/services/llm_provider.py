"""LLM provider abstraction for the external reasoning service.

The pipeline needs two capabilities from the provider:
* plain text generation (clinical summary), and
* document/image understanding (file extraction): inline data for images,
  resumable upload + poll + generate for PDFs.

``GeminiProvider`` implements both against the Gemini REST API.  Blocking
``urllib`` calls run in a worker thread (``asyncio.to_thread``) so the event
loop is never blocked.
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from previsit.worker.errors import AIServiceError

logger = logging.getLogger(__name__)

FILE_STATE_ACTIVE = "ACTIVE"
FILE_STATE_PROCESSING = "PROCESSING"
FILE_STATE_FAILED = "FAILED"


@dataclass
class RemoteFile:
    """A file uploaded to the provider (``name`` is the provider resource id, e.g. ``files/abc``)."""

    name: str
    uri: str
    mime_type: str
    state: str = FILE_STATE_PROCESSING


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate complete response text."""

    @abstractmethod
    async def generate_with_inline_data(self, prompt: str, data: bytes, mime_type: str, **kwargs) -> str:
        """Generate from a prompt plus inline (base64) binary content."""

    @abstractmethod
    async def upload_file(self, data: bytes, mime_type: str, display_name: str) -> RemoteFile:
        """Upload binary content and return the remote asset handle."""

    @abstractmethod
    async def get_file_state(self, name: str) -> str:
        """Return the remote asset's processing state."""

    @abstractmethod
    async def delete_file(self, name: str) -> None:
        """Delete a remote asset."""

    @abstractmethod
    async def generate_with_file(self, prompt: str, remote: RemoteFile, **kwargs) -> str:
        """Generate from a prompt plus a previously uploaded remote asset."""


def _http_request(
    url: str,
    *,
    method: str = "GET",
    body: bytes | None = None,
    headers: dict[str, str] | None = None,
    timeout: float = 300,
) -> tuple[int, dict[str, str], bytes]:
    """Blocking HTTP request. Returns (status, headers, body); raises AIServiceError on failure."""
    req = urllib.request.Request(url, data=body, headers=headers or {}, method=method)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.status, dict(resp.headers.items()), resp.read()
    except urllib.error.HTTPError as e:
        try:
            err_body = e.read().decode("utf-8", errors="replace")
        except Exception:
            err_body = ""
        raise AIServiceError(f"Gemini API error: {e.code} - {err_body[:500]}") from e
    except (urllib.error.URLError, TimeoutError, OSError) as e:
        raise AIServiceError(f"Gemini API unreachable: {e}") from e


def response_text(result: Any) -> str:
    """Pull ``candidates[0].content.parts[*].text`` out of a generateContent response."""
    try:
        parts = result["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError):
        raise AIServiceError("Invalid response from Gemini: missing candidates") from None
    text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
    if not text.strip():
        raise AIServiceError("Gemini response missing text content")
    return text.strip()


class GeminiProvider(LLMProvider):
    """Gemini REST provider (generateContent + Files API)."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gemini-2.5-pro",
        extraction_model: str | None = None,
        base_url: str = "https://generativelanguage.googleapis.com",
        timeout: float = 300,
    ):
        if not api_key:
            raise ValueError("GEMINI_API_KEY is not set")
        self.api_key = api_key
        self.model = model
        self.extraction_model = extraction_model or model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    # ------------------------------------------------------------------ urls
    def _generate_url(self, model: str) -> str:
        return f"{self.base_url}/v1beta/models/{model}:generateContent?key={self.api_key}"

    def _file_url(self, name: str) -> str:
        return f"{self.base_url}/v1beta/{name}?key={self.api_key}"

    def _upload_url(self) -> str:
        return f"{self.base_url}/upload/v1beta/files?key={self.api_key}"

    # ------------------------------------------------------------ generation
    async def _generate_content(self, model: str, parts: list[dict], generation_config: dict) -> str:
        payload = json.dumps({
            "contents": [{"parts": parts}],
            "generationConfig": generation_config,
        }).encode("utf-8")
        _status, _headers, raw = await asyncio.to_thread(
            _http_request,
            self._generate_url(model),
            method="POST",
            body=payload,
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )
        try:
            result = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise AIServiceError(f"Gemini returned a non-JSON body: {e}") from e
        return response_text(result)

    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate complete response from Gemini (JSON output mode by default)."""
        config = {
            "temperature": kwargs.get("temperature", 0.1),
            "maxOutputTokens": kwargs.get("max_output_tokens", 8192),
            "responseMimeType": kwargs.get("response_mime_type", "application/json"),
        }
        return await self._generate_content(self.model, [{"text": prompt}], config)

    def _extraction_config(self, max_output_tokens: int) -> dict:
        return {"temperature": 0.1, "topK": 32, "topP": 0.8, "maxOutputTokens": max_output_tokens}

    async def generate_with_inline_data(self, prompt: str, data: bytes, mime_type: str, **kwargs) -> str:
        parts = [
            {"inlineData": {"mimeType": mime_type, "data": base64.b64encode(data).decode("ascii")}},
            {"text": prompt},
        ]
        return await self._generate_content(
            self.extraction_model, parts, self._extraction_config(kwargs.get("max_output_tokens", 4096)),
        )

    async def generate_with_file(self, prompt: str, remote: RemoteFile, **kwargs) -> str:
        parts = [
            {"fileData": {"mimeType": remote.mime_type, "fileUri": remote.uri}},
            {"text": prompt},
        ]
        return await self._generate_content(
            self.extraction_model, parts, self._extraction_config(kwargs.get("max_output_tokens", 8192)),
        )

    # ------------------------------------------------------------- files api
    async def upload_file(self, data: bytes, mime_type: str, display_name: str) -> RemoteFile:
        """Resumable upload: ``start`` returns an upload URL, then ``upload, finalize`` pushes the bytes."""
        _status, headers, _raw = await asyncio.to_thread(
            _http_request,
            self._upload_url(),
            method="POST",
            body=json.dumps({"file": {"displayName": display_name}}).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(len(data)),
                "X-Goog-Upload-Header-Content-Type": mime_type,
            },
            timeout=self.timeout,
        )
        upload_url = next((v for k, v in headers.items() if k.lower() == "x-goog-upload-url"), None)
        if not upload_url:
            raise AIServiceError("Gemini upload start failed: no upload URL returned")

        _status, _headers, raw = await asyncio.to_thread(
            _http_request,
            upload_url,
            method="POST",
            body=data,
            headers={
                "Content-Type": mime_type,
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "upload, finalize",
                "X-Goog-Upload-Offset": "0",
                "Content-Length": str(len(data)),
            },
            timeout=self.timeout,
        )
        try:
            info = json.loads(raw.decode("utf-8"))["file"]
            return RemoteFile(
                name=info["name"],
                uri=info["uri"],
                mime_type=info.get("mimeType") or mime_type,
                state=info.get("state") or FILE_STATE_PROCESSING,
            )
        except (KeyError, TypeError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise AIServiceError(f"Gemini file upload returned an unexpected body: {e}") from e

    async def get_file_state(self, name: str) -> str:
        _status, _headers, raw = await asyncio.to_thread(
            _http_request, self._file_url(name), method="GET", timeout=self.timeout,
        )
        try:
            return str(json.loads(raw.decode("utf-8")).get("state") or FILE_STATE_PROCESSING)
        except (UnicodeDecodeError, json.JSONDecodeError, AttributeError):
            return FILE_STATE_PROCESSING

    async def delete_file(self, name: str) -> None:
        await asyncio.to_thread(_http_request, self._file_url(name), method="DELETE", timeout=self.timeout)


def get_llm_provider() -> LLMProvider:
    """Get the LLM provider based on environment configuration (config.py)."""
    from previsit.config import (
        GEMINI_API_BASE,
        GEMINI_API_KEY,
        GEMINI_EXTRACTION_MODEL,
        GEMINI_MODEL,
    )
    return GeminiProvider(
        GEMINI_API_KEY or "",
        model=GEMINI_MODEL,
        extraction_model=GEMINI_EXTRACTION_MODEL,
        base_url=GEMINI_API_BASE,
    )
