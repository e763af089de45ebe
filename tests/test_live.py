import asyncio

import numpy as np

from core.config import Settings
from core.live import LiveOverlaySession, LocalLaneClient, dedupe_emotions
from core.models import FusedAnchor, LiteAnalysisResult
from core.sanitizer import sanitize_depth_result, sanitize_flash_result, sanitize_lite_result
from conftest import FakeClock, make_frame


class FakeLaneClient:
    def __init__(self, results):
        self.results = results
        self.requests = []

    async def analyze(self, lane, request):
        self.requests.append((lane, request))
        return self.results[lane]

    async def close(self):
        pass


def _flash(emotions):
    return sanitize_flash_result({"faceDetected": True, "emotions": emotions}, "flash-m")


def _depth(insights):
    return sanitize_depth_result({"insights": insights}, "pro-m")


def _lite(frame_id=0, face=True):
    return LiteAnalysisResult(model="lite-m", frame_id=frame_id, face_detected=face)


def _tracked():
    return make_frame(
        {13: (705, 498), 33: (400, 350), 263: (400, 650), 1: (550, 500)},
        parts={"mouth": (705, 498), "leftEye": (400, 350), "rightEye": (400, 650), "faceCenter": (550, 500)},
    )


def _session(**overrides):
    s = Settings(GEMINI_API_KEY="k", **overrides)
    clock = FakeClock()
    return LiveOverlaySession(s, FakeLaneClient({}), clock=clock, sleep=clock.sleep), clock


def test_out_of_order_results_are_dropped():
    session, _ = _session()
    assert session.apply_result("lite", 2, _lite(2), 0)
    assert session.apply_result("lite", 1, _lite(1), 10) is False
    assert session.lite.frame_id == 2
    assert session.applied_ids["lite"] == 2


def test_unusable_flash_and_depth_keep_previous_set():
    session, _ = _session()
    good = _flash([{"emotion": "happy", "confidence": 0.8, "facialPart": "mouth", "point": [700, 500]}])
    assert session.apply_result("flash", 1, good, 0)
    empty = sanitize_flash_result({"faceDetected": True, "faceBox": [100, 120, 400, 380], "emotions": []},
                                  "flash-m", frame_id=2)
    assert session.apply_result("flash", 2, empty, 10) is False
    assert session.flash.emotions == good.emotions
    assert session.flash.semantic_anchors == good.semantic_anchors
    assert session.flash.face_box == (100, 120, 400, 380)
    assert session.flash.frame_id == 2
    assert session.applied_ids["flash"] == 2

    insight = _depth([{"keyword": "fatigue", "rationale": "dark circles", "confidence": 0.7,
                       "facialPart": "leftEye", "point": [380, 330]}])
    assert session.apply_result("pro", 1, insight, 0)
    assert session.apply_result("pro", 2, _depth([{"keyword": "x", "confidence": 0.05}]), 10) is False
    assert session.depth is insight


def test_lite_results_do_not_keep_flash_and_depth_anchors_alive():
    session, _ = _session()
    flash = _flash([{"emotion": "happy", "confidence": 0.8, "facialPart": "mouth", "point": [700, 500]}])
    depth = _depth([{"keyword": "fatigue", "rationale": "dark circles", "confidence": 0.7,
                     "facialPart": "leftEye", "point": [380, 330]}])
    assert session.apply_result("flash", 1, flash, 0)
    assert session.apply_result("pro", 1, depth, 0)
    expected = {a.id for a in flash.semantic_anchors} | {a.id for a in depth.semantic_anchors}

    lite = sanitize_lite_result({"faceDetected": True, "primaryEmotion": "calm", "primaryConfidence": 0.9}, "lite-m")
    assert lite.semantic_anchors
    frame_id = 0
    for now in range(1200, 3601, 1200):
        frame_id += 1
        assert session.apply_result("lite", frame_id, lite, now)

    fused = session.fusion.project(None, 3600)
    assert {a.id for a in fused} == expected
    assert all(a.stale for a in fused)

    for now in range(4800, 39601, 1200):
        frame_id += 1
        session.apply_result("lite", frame_id, lite, now)
    assert session.fusion.project(None, 40000, preserve_stale=True) == []


def test_lite_anchor_stands_in_until_flash_has_emotions():
    session, _ = _session()
    lite = sanitize_lite_result({"faceDetected": True, "primaryEmotion": "calm", "primaryConfidence": 0.9}, "lite-m")
    assert session.apply_result("lite", 1, lite, 0)
    assert [a.id for a in session.fusion.project(None, 10)] == [lite.semantic_anchors[0].id]

    assert session.lane_anchors("lite") == lite.semantic_anchors
    flash = _flash([{"emotion": "happy", "confidence": 0.8, "facialPart": "mouth", "point": [700, 500]}])
    session.apply_result("flash", 1, flash, 20)
    assert session.lane_anchors("lite") == []
    assert session.lane_anchors("flash") == flash.semantic_anchors


def test_lane_intervals_follow_quality_profile():
    session, _ = _session()
    assert session.lane_interval_ms("lite") == 1200
    assert session.lane_interval_ms("flash") == 2800
    assert session.lane_interval_ms("pro") == 50000
    assert session.next_delay_ms("lite", 1500) == 150

    for _ in range(24):
        session.quality.report_fast_rtt(1900)  # low tier
    assert session.lane_interval_ms("lite") == 4500


def test_run_lane_once_sends_latest_frame():
    s = Settings(GEMINI_API_KEY="k")
    clock = FakeClock()
    client = FakeLaneClient({"lite": _lite(), "pro": _depth([])})
    session = LiveOverlaySession(s, client, clock=clock, sleep=clock.sleep)

    assert asyncio.run(session.run_lane_once("lite")) is False  # no frame yet
    assert client.requests == []

    session.update_frame(np.zeros((720, 1280, 3), dtype=np.uint8), now_ms=0)
    assert asyncio.run(session.run_lane_once("lite")) is True
    lane, req = client.requests[-1]
    assert lane == "lite" and req.frame_id == 1
    assert max(req.width, req.height) <= s.LANE_MAX_SIDE
    assert session.pending["lite"] is False


def test_pro_lane_waits_for_face():
    s = Settings(GEMINI_API_KEY="k")
    clock = FakeClock()
    client = FakeLaneClient({"pro": _depth([])})
    session = LiveOverlaySession(s, client, clock=clock, sleep=clock.sleep)
    session.update_frame(np.zeros((100, 100, 3), dtype=np.uint8), now_ms=0)

    assert asyncio.run(session.run_lane_once("pro")) is False
    assert client.requests == []

    session.apply_result("lite", 1, _lite(1), 0)
    asyncio.run(session.run_lane_once("pro"))
    assert [lane for lane, _ in client.requests] == ["pro"]


def test_compose_filters_dedupes_and_places_labels():
    session, _ = _session()
    session.tracked = _tracked()
    flash = _flash([
        {"emotion": "happy", "intensity": "high", "confidence": 0.8, "facialPart": "mouth", "point": [700, 500]},
        {"emotion": "Happy", "confidence": 0.5, "facialPart": "leftEye", "point": [400, 350]},
        {"emotion": "sad", "confidence": 0.1, "facialPart": "rightEye", "point": [400, 650]},
    ])
    depth = _depth([{"keyword": "fatigue", "rationale": "dark circles", "confidence": 0.7,
                     "facialPart": "leftEye", "point": [380, 330]}])
    session.apply_result("flash", 1, flash, 0)
    session.apply_result("pro", 1, depth, 0)

    comp = session.compose(640, 360, now_ms=100)
    texts = sorted(label.text for label in comp.labels)
    assert texts == ["fatigue", "happy (high)"]
    for label in comp.labels:
        assert 0 <= label.x and label.x + label.width <= 640
        assert 0 <= label.y and label.y + label.height <= 360
    assert not comp.stale_ids

    out = session.render(np.zeros((360, 640, 3), dtype=np.uint8), now_ms=120)
    assert out.shape == (360, 640, 3)


def test_dedupe_prefers_fresh_on_near_tie():
    def anchor(i, conf, stale):
        return FusedAnchor(id=f"e{i}", label="Happy", kind="emotion", point=(0, 0), confidence=conf,
                           projected_point=(0, 0), stale=stale)

    kept = dedupe_emotions([anchor(1, 0.61, True), anchor(2, 0.6, False)])
    assert [a.id for a in kept] == ["e2"]


def test_start_and_stop_cancel_lane_loops():
    session = LiveOverlaySession(Settings(GEMINI_API_KEY="k", WARMUP_MS=60000), FakeLaneClient({}))

    async def scenario():
        session.start()
        tasks = list(session._tasks)
        await asyncio.sleep(0)
        await session.stop()
        return tasks

    tasks = asyncio.run(scenario())
    assert len(tasks) == 3 and all(t.done() for t in tasks)
    assert session.running is False and session._tasks == []
    assert session.client.requests == []


def test_local_lane_client_dispatch():
    calls = []

    class FakeAnalyzer:
        async def analyze_lite(self, image, frame_id, captured_at):
            calls.append("lite")
            return _lite(frame_id)

        async def analyze_flash(self, image, frame_id, captured_at):
            calls.append("flash")

        async def analyze_depth(self, image, frame_id, captured_at, video_clip_b64=None, video_mime_type=None):
            calls.append(("pro", video_mime_type))

    from core.models import AnalyzeRequest
    req = AnalyzeRequest(image="A", frame_id=3, captured_at=0, width=10, height=10,
                         video_clip_base64="V", video_mime_type="video/webm")
    client = LocalLaneClient(FakeAnalyzer())
    r = asyncio.run(client.analyze("lite", req))
    asyncio.run(client.analyze("flash", req))
    asyncio.run(client.analyze("pro", req))
    assert r.frame_id == 3
    assert calls == ["lite", "flash", ("pro", "video/webm")]
