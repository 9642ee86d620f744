"""Unit tests for previsit.services.llm_provider (HTTP layer mocked)."""
from __future__ import annotations

import base64
import json
from unittest.mock import patch

import pytest

from previsit.services.llm_provider import GeminiProvider, RemoteFile, get_llm_provider, response_text
from previsit.worker.errors import AIServiceError

_HTTP = "previsit.services.llm_provider._http_request"


def _ok(body: dict, headers: dict | None = None):
    return 200, headers or {}, json.dumps(body).encode("utf-8")


def _candidate(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def test_response_text_extracts_parts():
    assert response_text(_candidate('  {"a": 1}  ')) == '{"a": 1}'


@pytest.mark.parametrize("body", [{}, {"candidates": []}, {"candidates": [{"content": {}}]}, None])
def test_response_text_missing_candidates(body):
    with pytest.raises(AIServiceError):
        response_text(body)


def test_response_text_empty_text():
    with pytest.raises(AIServiceError, match="missing text"):
        response_text(_candidate("   "))


def test_provider_requires_api_key():
    with pytest.raises(ValueError):
        GeminiProvider("")


def test_get_llm_provider_without_key_raises():
    with patch("previsit.config.GEMINI_API_KEY", None):
        with pytest.raises(ValueError):
            get_llm_provider()


@pytest.mark.asyncio
async def test_generate_uses_json_mode():
    provider = GeminiProvider("k", model="gemini-test")
    with patch(_HTTP, return_value=_ok(_candidate('{"x": 1}'))) as http:
        assert await provider.generate("prompt") == '{"x": 1}'
    url = http.call_args[0][0]
    payload = json.loads(http.call_args[1]["body"])
    assert "/v1beta/models/gemini-test:generateContent?key=k" in url
    assert payload["generationConfig"]["responseMimeType"] == "application/json"
    assert payload["generationConfig"]["temperature"] == 0.1
    assert payload["contents"][0]["parts"][0]["text"] == "prompt"


@pytest.mark.asyncio
async def test_generate_with_inline_data_encodes_bytes():
    provider = GeminiProvider("k", extraction_model="flash")
    with patch(_HTTP, return_value=_ok(_candidate("description"))) as http:
        await provider.generate_with_inline_data("describe", b"\x89PNG", "image/png")
    payload = json.loads(http.call_args[1]["body"])
    inline = payload["contents"][0]["parts"][0]["inlineData"]
    assert inline == {"mimeType": "image/png", "data": base64.b64encode(b"\x89PNG").decode("ascii")}
    assert payload["generationConfig"]["maxOutputTokens"] == 4096
    assert payload["generationConfig"]["topK"] == 32


@pytest.mark.asyncio
async def test_upload_file_resumable_protocol():
    provider = GeminiProvider("k", base_url="https://api.test")
    start = (200, {"X-Goog-Upload-URL": "https://upload.test/session"}, b"")
    finish = _ok({"file": {"name": "files/abc", "uri": "https://api.test/files/abc",
                           "mimeType": "application/pdf", "state": "PROCESSING"}})
    with patch(_HTTP, side_effect=[start, finish]) as http:
        remote = await provider.upload_file(b"%PDF", "application/pdf", "report.pdf")

    assert remote == RemoteFile(name="files/abc", uri="https://api.test/files/abc",
                                mime_type="application/pdf", state="PROCESSING")
    first, second = http.call_args_list
    assert first[0][0] == "https://api.test/upload/v1beta/files?key=k"
    assert first[1]["headers"]["X-Goog-Upload-Command"] == "start"
    assert first[1]["headers"]["X-Goog-Upload-Header-Content-Length"] == "4"
    assert second[0][0] == "https://upload.test/session"
    assert second[1]["headers"]["X-Goog-Upload-Command"] == "upload, finalize"
    assert second[1]["headers"]["X-Goog-Upload-Offset"] == "0"
    assert second[1]["body"] == b"%PDF"


@pytest.mark.asyncio
async def test_upload_without_session_url_fails():
    provider = GeminiProvider("k")
    with patch(_HTTP, return_value=(200, {}, b"")):
        with pytest.raises(AIServiceError, match="no upload URL"):
            await provider.upload_file(b"%PDF", "application/pdf", "report.pdf")


@pytest.mark.asyncio
async def test_get_file_state_and_delete():
    provider = GeminiProvider("k", base_url="https://api.test")
    with patch(_HTTP, return_value=_ok({"name": "files/abc", "state": "ACTIVE"})) as http:
        assert await provider.get_file_state("files/abc") == "ACTIVE"
    assert http.call_args[0][0] == "https://api.test/v1beta/files/abc?key=k"

    with patch(_HTTP, return_value=(200, {}, b"{}")) as http:
        await provider.delete_file("files/abc")
    assert http.call_args[1]["method"] == "DELETE"
