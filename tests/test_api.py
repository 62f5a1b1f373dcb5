from __future__ import annotations

import asyncio
import json

import pytest

from gemstudio import api
from gemstudio.errors import RemoteServiceError, is_transient_error


def test_extract_text_joins_text_parts():
    resp = {"candidates": [{"content": {"parts": [{"text": '{"a": '}, {"text": "1}"}]}}]}
    assert api.extract_text(resp) == '{"a": 1}'


def test_extract_text_handles_empty_response():
    assert api.extract_text({}) == ""


def test_extract_image_returns_first_inline_part():
    resp = {
        "candidates": [
            {
                "content": {
                    "parts": [
                        {"text": "here you go"},
                        {"inlineData": {"mimeType": "image/png", "data": "AAA"}},
                        {"inlineData": {"mimeType": "image/png", "data": "BBB"}},
                    ]
                }
            }
        ]
    }
    assert api.extract_image(resp) == "data:image/png;base64,AAA"


def test_extract_image_none_without_inline_data():
    resp = {"candidates": [{"content": {"parts": [{"text": "I cannot draw that"}]}}]}
    assert api.extract_image(resp) is None


def test_error_from_payload_reads_service_status():
    payload = {"error": {"code": 503, "message": "The model is overloaded.", "status": "UNAVAILABLE"}}
    exc = api.error_from_payload(503, "Service Unavailable", payload)
    assert exc.status == 503
    assert exc.reason == "UNAVAILABLE"
    assert exc.message == "The model is overloaded."
    assert is_transient_error(exc)


class _DummyResponse:
    def __init__(self, status, payload, reason="OK"):
        self.status = status
        self.reason = reason
        self._payload = payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *_):
        return False

    async def json(self):
        return self._payload

    async def text(self):
        return json.dumps(self._payload)


class _DummySession:
    def __init__(self, response):
        self.response = response
        self.posts = []

    def post(self, url, headers=None, json=None):
        self.posts.append({"url": url, "headers": headers, "json": json})
        return self.response


def _generate(session):
    async def _run():
        async with api.GenAIClient("key", api_base="https://example.test", session=session) as client:
            return await client.generate_content(api.IMAGE_MODEL, [api.text_part("ring")], api.image_config("2K", "1:1"))

    return asyncio.run(_run())


def test_async_client_returns_json():
    session = _DummySession(_DummyResponse(200, {"candidates": []}))
    assert _generate(session) == {"candidates": []}
    sent = session.posts[0]
    assert sent["url"].endswith(f"/v1beta/models/{api.IMAGE_MODEL}:generateContent")
    assert sent["json"]["generationConfig"]["imageConfig"] == {"imageSize": "2K", "aspectRatio": "1:1"}


def test_async_client_maps_overload_to_transient_error():
    payload = {"error": {"code": 503, "message": "overloaded", "status": "UNAVAILABLE"}}
    session = _DummySession(_DummyResponse(503, payload, "Service Unavailable"))
    with pytest.raises(RemoteServiceError) as excinfo:
        _generate(session)
    assert excinfo.value.status == 503
    assert is_transient_error(excinfo.value)


def test_async_client_requires_context_manager():
    client = api.GenAIClient("key")
    with pytest.raises(RuntimeError):
        asyncio.run(client.generate_content("m", []))


def test_async_client_sends_key_and_system_instruction():
    session = _DummySession(_DummyResponse(200, {"candidates": []}))

    async def _run():
        async with api.GenAIClient("secret", api_base="https://example.test/", session=session) as client:
            return await client.generate_content(
                "some-model", [api.text_part("hello")],
                generation_config={"responseMimeType": "application/json"},
                system_instruction="be brief",
            )

    asyncio.run(_run())
    sent = session.posts[0]
    assert sent["url"] == "https://example.test/v1beta/models/some-model:generateContent"
    assert sent["headers"]["x-goog-api-key"] == "secret"
    assert sent["json"]["contents"] == [{"parts": [{"text": "hello"}]}]
    assert sent["json"]["systemInstruction"] == {"parts": [{"text": "be brief"}]}


def test_async_client_keeps_permission_reason():
    payload = {"error": {"code": 403, "message": "denied", "status": "PERMISSION_DENIED"}}
    session = _DummySession(_DummyResponse(403, payload, "Forbidden"))
    with pytest.raises(RemoteServiceError) as excinfo:
        _generate(session)
    assert excinfo.value.status == 403
    assert excinfo.value.reason == "PERMISSION_DENIED"
    assert not is_transient_error(excinfo.value)
