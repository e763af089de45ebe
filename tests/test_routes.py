import asyncio
import time
import types

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from api.main import create_app
from api.routes import _unless_disconnected
from core.config import Settings
from core.models import DepthAnalysisResult, FastAnalysisResult, LiteAnalysisResult


class FakeAnalyzer:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def analyze_lite(self, image, frame_id, captured_at):
        if self.fail:
            raise RuntimeError("boom")
        self.calls.append(("lite", frame_id))
        return LiteAnalysisResult(model="lite-m", frame_id=frame_id, captured_at=captured_at,
                                  face_detected=True, primary_emotion="happy")

    async def analyze_flash(self, image, frame_id, captured_at):
        self.calls.append(("flash", frame_id))
        return FastAnalysisResult(model="flash-m", frame_id=frame_id, captured_at=captured_at)

    async def analyze_depth(self, image, frame_id, captured_at, video_clip_b64=None, video_mime_type=None):
        self.calls.append(("pro", video_mime_type))
        return DepthAnalysisResult(model="pro-m", frame_id=frame_id, captured_at=captured_at)

    async def analyze_all(self, image, frame_id, captured_at):
        return (
            await self.analyze_lite(image, frame_id, captured_at),
            await self.analyze_flash(image, frame_id, captured_at),
            await self.analyze_depth(image, frame_id, captured_at),
        )


def _client(analyzer=None):
    analyzer = analyzer or FakeAnalyzer()
    return TestClient(create_app(Settings(GEMINI_API_KEY="k"), analyzer=analyzer)), analyzer


def _body(**extra):
    body = {"image": "A" * 500, "frameId": 7, "capturedAt": int(time.time() * 1000), "width": 640, "height": 360}
    body.update(extra)
    return body


def test_health():
    client, _ = _client()
    r = client.get("/health")
    assert r.status_code == 200 and r.json() == {"status": "ok"}


def test_lite_envelope_is_camel_case():
    client, analyzer = _client()
    r = client.post("/analyze/lite", json=_body())
    assert r.status_code == 200
    j = r.json()
    assert j["frameId"] == 7
    assert {"capturedAt", "serverAt", "latencyMs"} <= set(j)
    assert j["result"]["primaryEmotion"] == "happy"
    assert j["result"]["faceDetected"] is True
    assert analyzer.calls == [("lite", 7)]


def test_fast_and_depth_routes():
    client, analyzer = _client()
    assert client.post("/analyze/fast", json=_body()).json()["result"]["model"] == "flash-m"
    clip = {"videoClipBase64": "V" * 400, "videoMimeType": "video/webm;codecs=vp8", "videoDurationMs": 5000}
    r = client.post("/analyze/depth", json=_body(**clip))
    assert r.status_code == 200
    assert analyzer.calls[-1] == ("pro", "video/webm;codecs=vp8")


@pytest.mark.parametrize("body,status", [
    ({"image": ""}, 400),
    ({"image": "A" * 10}, 400),
    ({"image": "A" * 4_000_001}, 413),
    ({"width": 1280}, 400),
    ({"capturedAt": 1000}, 409),
])
def test_lane_payload_rejections(body, status):
    client, analyzer = _client()
    r = client.post("/analyze/lite", json=_body(**body))
    assert r.status_code == status
    assert analyzer.calls == []


@pytest.mark.parametrize("clip,status", [
    ({"videoClipBase64": "V" * 10, "videoMimeType": "video/webm", "videoDurationMs": 1000}, 400),
    ({"videoClipBase64": "V" * 400, "videoMimeType": "video/mp4", "videoDurationMs": 1000}, 400),
    ({"videoClipBase64": "V" * 400, "videoMimeType": "video/webm"}, 400),
    ({"videoClipBase64": "V" * 400, "videoMimeType": "video/webm", "videoDurationMs": 9000}, 400),
])
def test_depth_clip_rejections(clip, status):
    client, _ = _client()
    assert client.post("/analyze/depth", json=_body(**clip)).status_code == status


def test_body_must_be_json_object():
    client, _ = _client()
    assert client.post("/analyze/lite", json=[1, 2]).status_code == 400
    r = client.post("/analyze/lite", content=b"{not json", headers={"content-type": "application/json"})
    assert r.status_code == 400


def test_combined_route_allows_larger_input():
    client, _ = _client()
    assert client.post("/analyze/lite", json=_body(width=900)).status_code == 400
    r = client.post("/analyze", json=_body(width=900))
    assert r.status_code == 200
    j = r.json()
    assert j["lite"]["model"] == "lite-m"
    assert j["fast"]["model"] == "flash-m"
    assert j["depth"]["model"] == "pro-m"


def test_analyzer_failure_is_500():
    client, _ = _client(FakeAnalyzer(fail=True))
    r = client.post("/analyze/lite", json=_body())
    assert r.status_code == 500
    assert "boom" in r.json()["detail"]


def test_client_disconnect_aborts_work():
    async def disconnected():
        return True

    request = types.SimpleNamespace(url=types.SimpleNamespace(path="/analyze/depth"), is_disconnected=disconnected)

    async def scenario():
        work = asyncio.ensure_future(asyncio.sleep(10))
        with pytest.raises(HTTPException) as exc:
            await _unless_disconnected(request, work)
        await asyncio.gather(work, return_exceptions=True)
        return exc.value.status_code, work.cancelled()

    assert asyncio.run(scenario()) == (499, True)
