import asyncio

from core.backend import BackendError
from core.lanes import LaneAnalyzer
from core.orchestrator import FallbackOrchestrator
from conftest import FakeBackend


def _analyzer(settings, clock, backend):
    return LaneAnalyzer(settings, FallbackOrchestrator(settings, backend, clock=clock, sleep=clock.sleep))


def test_analyze_lite_sanitizes(fast_settings, clock, image_b64):
    backend = FakeBackend(script={fast_settings.LITE_MODEL: [{"faceDetected": True, "primaryEmotion": "happy",
                                                              "primaryConfidence": 0.9}]})
    r = asyncio.run(_analyzer(fast_settings, clock, backend).analyze_lite(image_b64, frame_id=4, captured_at=10))
    assert r.primary_emotion == "happy"
    assert r.model == fast_settings.LITE_MODEL
    assert r.frame_id == 4
    parts = backend.calls[0]["contents"]
    assert parts[0]["inlineData"]["mimeType"] == "image/jpeg"
    assert "text" in parts[1]


def test_lane_failure_returns_default(fast_settings, clock, image_b64):
    quota = BackendError("Quota exceeded", status=429)
    backend = FakeBackend(script={fast_settings.FLASH_MODEL: [quota]})
    r = asyncio.run(_analyzer(fast_settings, clock, backend).analyze_flash(image_b64, frame_id=2))
    assert r.face_detected is False
    assert r.emotions == []
    assert r.model == fast_settings.FLASH_MODEL
    assert r.frame_id == 2


def test_garbage_output_is_absorbed(fast_settings, clock, image_b64):
    backend = FakeBackend(default="definitely not json")
    r = asyncio.run(_analyzer(fast_settings, clock, backend).analyze_depth(image_b64))
    assert r.insights == [] and r.semantic_anchors == []


def test_depth_with_video_clip(fast_settings, clock, image_b64):
    backend = FakeBackend(default={"insights": [{"keyword": "fatigue", "rationale": "dark circles",
                                                 "facialPart": "leftEye", "point": [380, 330]}]})
    analyzer = _analyzer(fast_settings, clock, backend)
    r = asyncio.run(analyzer.analyze_depth(image_b64, video_clip_b64="V" * 400, video_mime_type="video/webm"))
    assert r.insights[0].keyword == "fatigue"

    call = backend.calls[0]
    mimes = [p["inlineData"]["mimeType"] for p in call["contents"] if "inlineData" in p]
    assert mimes == ["image/jpeg", "video/webm"]
    assert call["timeout_ms"] == fast_settings.PRO_TIMEOUT_MS + fast_settings.PRO_VIDEO_EXTRA_MS
    assert "video clip" in call["contents"][-1]["text"]


def test_analyze_all_runs_three_lanes(fast_settings, clock, image_b64):
    backend = FakeBackend(default="{}")
    lite, flash, depth = asyncio.run(_analyzer(fast_settings, clock, backend).analyze_all(image_b64, 1, 0))
    assert {c["model"] for c in backend.calls} == {
        fast_settings.LITE_MODEL, fast_settings.FLASH_MODEL, fast_settings.PRO_MODEL
    }
    assert lite.frame_id == flash.frame_id == depth.frame_id == 1
