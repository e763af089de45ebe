import asyncio

import pytest

from core.backend import BackendError, GeminiClient, error_from_payload, extract_text, inline_part
from core.config import Settings


def test_extract_text():
    payload = {"candidates": [{"content": {"parts": [{"text": '{"a":'}, {"text": " 1}"}]}}]}
    assert extract_text(payload) == '{"a": 1}'
    assert extract_text({}) == ""
    assert extract_text({"candidates": [{"content": None}]}) == ""
    assert extract_text(None) == ""


def test_error_from_payload():
    e = error_from_payload(404, {"error": {"message": "models/x is not found", "status": "NOT_FOUND"}})
    assert (e.status, e.code, e.message) == (404, "NOT_FOUND", "models/x is not found")
    assert "status=404" in str(e)
    assert error_from_payload(502, None).message == "HTTP 502"


def test_inline_part():
    assert inline_part("abc", "image/jpeg") == {"inlineData": {"data": "abc", "mimeType": "image/jpeg"}}


def test_generate_requires_api_key():
    client = GeminiClient(Settings(GEMINI_API_KEY=""))
    with pytest.raises(BackendError) as exc:
        asyncio.run(client.generate("m", [], {}, {}, 1000))
    assert exc.value.code == "NO_API_KEY"


class FakeResponse:
    def __init__(self, status, payload):
        self.status = status
        self._payload = payload

    async def json(self, content_type=None):
        return self._payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *a):
        return False


class FakeSession:
    closed = False

    def __init__(self, status, payload):
        self.response = FakeResponse(status, payload)
        self.requests = []

    def post(self, url, **kwargs):
        self.requests.append((url, kwargs))
        return self.response


def test_generate_posts_generate_content():
    ok = {"candidates": [{"content": {"parts": [{"text": "{}"}]}}]}
    session = FakeSession(200, ok)
    client = GeminiClient(Settings(GEMINI_API_KEY="k", GEMINI_BASE_URL="https://api.test/v1beta/"), session=session)

    text = asyncio.run(client.generate("gemini-x", [{"text": "hi"}], {"type": "OBJECT"}, {"temperature": 0.1}, 5000))
    assert text == "{}"
    url, kwargs = session.requests[0]
    assert url == "https://api.test/v1beta/models/gemini-x:generateContent"
    assert kwargs["params"] == {"key": "k"}
    cfg = kwargs["json"]["generationConfig"]
    assert cfg["responseMimeType"] == "application/json"
    assert cfg["responseSchema"] == {"type": "OBJECT"}
    assert cfg["temperature"] == 0.1
    assert kwargs["json"]["contents"][0]["parts"] == [{"text": "hi"}]


def test_generate_raises_backend_error_on_http_error():
    session = FakeSession(429, {"error": {"message": "Quota exceeded", "status": "RESOURCE_EXHAUSTED"}})
    client = GeminiClient(Settings(GEMINI_API_KEY="k"), session=session)
    with pytest.raises(BackendError) as exc:
        asyncio.run(client.generate("m", [], {}, {}, 1000))
    assert exc.value.status == 429
