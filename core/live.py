# core/live.py
"""
Live (real-time) overlay session.

Three self-rescheduling lane loops (lite, flash, pro) run on one asyncio event
loop, each capturing the latest camera frame, calling its lane and applying
the result to shared state:

- lite: primary emotion every ~1.2 s
- flash: emotions pinned to facial parts every ~2.8 s
- pro: in-depth insights every ~50 s, with a short webm clip, once a face is seen

The render path (update_frame + render) is synchronous and cheap: project the
fused anchors onto the live tracking frame, smooth, lay out, draw.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Protocol, Set, Tuple

import aiohttp
import numpy as np

from core.capture import CapturePayload, ClipPayload, encode_clip, encode_frame
from core.config import Settings
from core.fusion import AnchorFusionEngine
from core.gate import monotonic_ms
from core.layout import Bounds, LabelInput, PlacedLabel, layout_labels
from core.models import (
    AnalyzeRequest,
    DepthAnalysisResult,
    FastAnalysisResult,
    FusedAnchor,
    LiteAnalysisResult,
    SemanticAnchor,
)
from core.quality import AdaptiveQualityManager
from core.smoothing import PointSmoother
from core.telemetry import PerfTelemetry
from core.tracking import TrackedFrame
from core.visual import DEPTH_COLOR, EMOTION_COLOR, draw_overlays, label_size

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Tuning knobs
# -----------------------------------------------------------------------------
MIN_LANE_DELAY_MS = {"lite": 150, "flash": 300, "pro": 1000}
MIN_EMOTION_CONFIDENCE = 0.2     # emotion anchors below this are not drawn
USABLE_FLASH_CONFIDENCE = 0.08   # flash emotions below this do not replace the last set
USABLE_DEPTH_CONFIDENCE = 0.12   # pro insights below this do not replace the last set
STALE_DEDUPE_PENALTY = 0.03
EMOTION_PRIORITY_BOOST = 0.2
CLIP_FPS = 10.0

LANE_ENDPOINTS = {"lite": "/analyze/lite", "flash": "/analyze/fast", "pro": "/analyze/depth"}
LANE_RESULT_MODELS = {"lite": LiteAnalysisResult, "flash": FastAnalysisResult, "pro": DepthAnalysisResult}
LANES = ("lite", "flash", "pro")


# -----------------------------------------------------------------------------
# Lane clients
# -----------------------------------------------------------------------------
class LaneClient(Protocol):
    async def analyze(self, lane: str, request: AnalyzeRequest) -> Any: ...


class LaneRequestError(Exception):
    def __init__(self, lane: str, status: int, detail: str):
        super().__init__(f"{lane} lane request failed status={status} detail={detail}")
        self.lane = lane
        self.status = status
        self.detail = detail


class HttpLaneClient:
    """Calls the lane endpoints of a running API over aiohttp."""

    def __init__(self, settings: Settings, session: Optional[aiohttp.ClientSession] = None):
        self.s = settings
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _timeout_s(self, lane: str) -> float:
        cap = {
            "lite": self.s.LITE_TIMEOUT_CAP_MS,
            "flash": self.s.FLASH_TIMEOUT_CAP_MS,
            "pro": self.s.PRO_TIMEOUT_CAP_MS + self.s.PRO_VIDEO_EXTRA_MS,
        }[lane]
        # room for the server-side gate wait on top of the backend budget
        return (cap + self.s.GATE_MAX_WAIT_MS) / 1000.0

    async def analyze(self, lane: str, request: AnalyzeRequest) -> Any:
        url = f"{self.s.API_BASE_URL}{LANE_ENDPOINTS[lane]}"
        body = request.model_dump(by_alias=True, exclude_none=True)
        async with self._get_session().post(
            url, json=body, timeout=aiohttp.ClientTimeout(total=self._timeout_s(lane))
        ) as resp:
            payload = await resp.json(content_type=None)
            if resp.status != 200:
                detail = payload.get("detail") if isinstance(payload, dict) else None
                raise LaneRequestError(lane, resp.status, str(detail or ""))
        return LANE_RESULT_MODELS[lane].model_validate(payload["result"])

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None


class LocalLaneClient:
    """Runs lanes in-process through a LaneAnalyzer (no API hop)."""

    def __init__(self, analyzer):
        self.analyzer = analyzer

    async def analyze(self, lane: str, request: AnalyzeRequest) -> Any:
        if lane == "lite":
            return await self.analyzer.analyze_lite(request.image, request.frame_id, request.captured_at)
        if lane == "flash":
            return await self.analyzer.analyze_flash(request.image, request.frame_id, request.captured_at)
        if lane == "pro":
            return await self.analyzer.analyze_depth(
                request.image,
                request.frame_id,
                request.captured_at,
                video_clip_b64=request.video_clip_base64,
                video_mime_type=request.video_mime_type,
            )
        raise ValueError(f"Unknown lane: {lane}")

    async def close(self) -> None:
        return None


# -----------------------------------------------------------------------------
# Session
# -----------------------------------------------------------------------------
@dataclass
class OverlayComposition:
    labels: List[PlacedLabel] = field(default_factory=list)
    stale_ids: Set[str] = field(default_factory=set)
    colors: Dict[str, Tuple[int, int, int]] = field(default_factory=dict)


def is_usable_flash(result: FastAnalysisResult) -> bool:
    return any(e.confidence >= USABLE_FLASH_CONFIDENCE for e in result.emotions)


def is_usable_depth(result: DepthAnalysisResult) -> bool:
    return any(
        i.keyword.strip()
        and i.confidence >= USABLE_DEPTH_CONFIDENCE
        and (i.rationale.strip() or i.medical_interpretation.strip())
        for i in result.insights
    )


def merge_flash(previous: FastAnalysisResult, latest: FastAnalysisResult) -> FastAnalysisResult:
    """Keep the previous emotions/landmarks/anchors, take face geometry and metadata from latest."""
    return previous.model_copy(update={
        "model": latest.model or previous.model,
        "frame_id": latest.frame_id or previous.frame_id,
        "captured_at": latest.captured_at or previous.captured_at,
        "face_detected": latest.face_detected or previous.face_detected,
        "confidence": max(previous.confidence, latest.confidence),
        "face_box": latest.face_box if latest.face_box is not None else previous.face_box,
        "head_pose": latest.head_pose if latest.head_pose is not None else previous.head_pose,
    })


def dedupe_emotions(anchors: List[FusedAnchor]) -> List[FusedAnchor]:
    """One emotion anchor per label (case-insensitive); fresher wins near-ties."""
    best: Dict[str, Tuple[float, FusedAnchor]] = {}
    for a in anchors:
        key = a.label.strip().lower()
        score = a.confidence - (STALE_DEDUPE_PENALTY if a.stale else 0.0)
        if key not in best or score > best[key][0]:
            best[key] = (score, a)
    keep = {id(v[1]) for v in best.values()}
    return [a for a in anchors if id(a) in keep]


class LiveOverlaySession:
    """Lane scheduling, result ordering and overlay composition for one camera feed."""

    def __init__(self, settings: Settings, client: LaneClient, tracker=None,
                 clock: Callable[[], float] = monotonic_ms,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        self.s = settings
        self.client = client
        self.tracker = tracker
        self._clock = clock
        self._sleep = sleep or asyncio.sleep

        self.fusion = AnchorFusionEngine(
            max_stale_ms=settings.FUSION_MAX_STALE_MS,
            hard_max_stale_ms=settings.FUSION_HARD_MAX_STALE_MS,
            reacquire_distance=settings.FUSION_REACQUIRE_DISTANCE,
        )
        self.smoother = PointSmoother(
            attack_ms=settings.SMOOTH_ATTACK_MS,
            release_ms=settings.SMOOTH_RELEASE_MS,
            max_state_age_ms=settings.SMOOTH_MAX_AGE_MS,
        )
        self.quality = AdaptiveQualityManager()
        self.telemetry = PerfTelemetry()

        self.frame_ids: Dict[str, int] = {lane: 0 for lane in LANES}
        self.applied_ids: Dict[str, int] = {lane: -1 for lane in LANES}
        self.pending: Dict[str, bool] = {lane: False for lane in LANES}

        self.lite: Optional[LiteAnalysisResult] = None
        self.flash: Optional[FastAnalysisResult] = None
        self.depth: Optional[DepthAnalysisResult] = None

        self.latest_frame: Optional[np.ndarray] = None
        self.tracked: Optional[TrackedFrame] = None
        clip_len = max(1, int(settings.PRO_VIDEO_CLIP_MS / 1000.0 * CLIP_FPS))
        self._clip_frames: Deque[np.ndarray] = deque(maxlen=clip_len)
        self._last_clip_append = float("-inf")
        self._last_render_at: Optional[float] = None

        self._tasks: List[asyncio.Task] = []
        self.running = False

    # ---- frames ----
    def update_frame(self, frame: np.ndarray, now_ms: Optional[float] = None) -> Optional[TrackedFrame]:
        now = self._clock() if now_ms is None else now_ms
        self.latest_frame = frame
        if now - self._last_clip_append >= 1000.0 / CLIP_FPS:
            self._clip_frames.append(frame)
            self._last_clip_append = now
        if self.tracker is not None:
            self.tracked = self.tracker.track(frame, now)
        return self.tracked

    def face_detected(self) -> bool:
        if self.tracked is not None:
            return True
        return bool((self.lite and self.lite.face_detected) or (self.flash and self.flash.face_detected))

    # ---- scheduling ----
    def lane_interval_ms(self, lane: str) -> int:
        profile = self.quality.profile()
        if lane == "lite":
            return max(self.s.LITE_INTERVAL_MS, profile.fast_interval_ms)
        if lane == "flash":
            return max(self.s.FLASH_INTERVAL_MS, profile.fast_interval_ms)
        return max(self.s.PRO_INTERVAL_MS, profile.depth_interval_ms)

    def next_delay_ms(self, lane: str, elapsed_ms: float) -> float:
        return max(self.lane_interval_ms(lane) - elapsed_ms, MIN_LANE_DELAY_MS[lane])

    # ---- lane calls ----
    async def _build_request(self, lane: str) -> Optional[AnalyzeRequest]:
        frame = self.latest_frame
        if frame is None:
            return None
        profile = self.quality.profile()
        capture: CapturePayload = await asyncio.to_thread(
            encode_frame, frame, min(profile.max_capture_side, self.s.LANE_MAX_SIDE), profile.jpeg_quality
        )
        clip: Optional[ClipPayload] = None
        if lane == "pro" and self.s.PRO_VIDEO_CLIP_MS > 0 and len(self._clip_frames) > 1:
            clip = await asyncio.to_thread(encode_clip, list(self._clip_frames), CLIP_FPS)

        self.frame_ids[lane] += 1
        return AnalyzeRequest(
            image=capture.image,
            frame_id=self.frame_ids[lane],
            captured_at=capture.captured_at,
            width=capture.width,
            height=capture.height,
            video_clip_base64=clip.data if clip else None,
            video_mime_type=clip.mime_type if clip else None,
            video_duration_ms=clip.duration_ms if clip else None,
        )

    async def run_lane_once(self, lane: str) -> bool:
        """One round trip for a lane. Returns True when a usable result was applied."""
        if lane == "pro" and not self.face_detected():
            logger.debug("[live] pro lane waiting for a face")
            return False
        request = await self._build_request(lane)
        if request is None:
            return False

        started = self._clock()
        self.pending[lane] = True
        try:
            result = await self.client.analyze(lane, request)
        finally:
            self.pending[lane] = False
        rtt = self._clock() - started
        if lane == "pro":
            self.quality.report_depth_rtt(rtt)
            self.telemetry.report_depth_rtt(rtt)
        else:
            self.quality.report_fast_rtt(rtt)
            self.telemetry.report_fast_rtt(rtt)
        logger.debug(f"[live] {lane} frame_id={request.frame_id} rtt_ms={int(rtt)} tier={self.quality.tier}")
        return self.apply_result(lane, request.frame_id, result, self._clock())

    def apply_result(self, lane: str, frame_id: int, result, now_ms: float) -> bool:
        """
        Apply a lane result if it is not older than the last applied one for that lane.

        Unusable flash/pro results keep the previous emotion / insight set; an
        unusable flash result still updates face box and head pose. Only the
        anchors of a usable result are refreshed in fusion, so findings that
        are not reconfirmed go stale and expire.
        """
        if frame_id < self.applied_ids[lane]:
            logger.debug(f"[live] {lane} dropped out-of-order frame_id={frame_id} last={self.applied_ids[lane]}")
            return False
        self.applied_ids[lane] = frame_id

        if lane == "lite":
            self.lite = result
            usable = result.face_detected
        elif lane == "flash":
            usable = is_usable_flash(result)
            if usable or self.flash is None:
                self.flash = result
            else:
                self.flash = merge_flash(self.flash, result)
        elif lane == "pro":
            usable = is_usable_depth(result)
            if usable or self.depth is None:
                self.depth = result
        else:
            raise ValueError(f"Unknown lane: {lane}")

        if usable:
            self.refresh_fusion(lane, now_ms)
        return usable

    def lane_anchors(self, lane: str) -> List[SemanticAnchor]:
        """Anchors a lane contributes; the lite anchor only stands in while flash has no emotions."""
        flash_emotions = [a for a in self.flash.semantic_anchors if a.kind == "emotion"] if self.flash else []
        if lane == "lite":
            return [] if flash_emotions or self.lite is None else list(self.lite.semantic_anchors)
        if lane == "flash":
            if flash_emotions:
                return flash_emotions
            return list(self.lite.semantic_anchors) if self.lite is not None else []
        if lane == "pro":
            return list(self.depth.semantic_anchors) if self.depth is not None else []
        raise ValueError(f"Unknown lane: {lane}")

    def refresh_fusion(self, lane: str, now_ms: float) -> None:
        anchors = self.lane_anchors(lane)
        if anchors:
            self.fusion.update_anchors(anchors, self.tracked, now_ms)

    # ---- composition ----
    def _face_center_px(self, width: int, height: int) -> Tuple[Optional[float], Optional[float]]:
        if self.tracked is None:
            return None, None
        center = self.tracked.part("faceCenter")
        if center is None and self.tracked.face_box is not None:
            ymin, xmin, ymax, xmax = self.tracked.face_box
            center = ((ymin + ymax) / 2, (xmin + xmax) / 2)
        if center is None:
            return None, None
        return center[1] / 1000.0 * width, center[0] / 1000.0 * height

    def compose(self, width: int, height: int, now_ms: Optional[float] = None) -> OverlayComposition:
        now = self._clock() if now_ms is None else now_ms
        fused = self.fusion.project(self.tracked, now, preserve_stale=self.pending["flash"])

        emotions = [a for a in fused if a.kind == "emotion" and a.confidence >= MIN_EMOTION_CONFIDENCE]
        depth = [a for a in fused if a.kind == "depth"]
        visible = dedupe_emotions(emotions) + depth

        inputs: List[LabelInput] = []
        comp = OverlayComposition()
        for a in visible:
            y, x = self.smoother.smooth(a.id, a.projected_point, now)
            text = a.label if a.kind == "depth" or not a.intensity else f"{a.label} ({a.intensity})"
            w, h = label_size(text)
            is_emotion = a.kind == "emotion"
            inputs.append(LabelInput(
                id=a.id,
                text=text,
                anchor_x=x / 1000.0 * width,
                anchor_y=y / 1000.0 * height,
                width=w,
                height=h,
                priority=a.confidence + (EMOTION_PRIORITY_BOOST if is_emotion else 0.0),
                prefer_distance=is_emotion,
            ))
            comp.colors[a.id] = EMOTION_COLOR if is_emotion else DEPTH_COLOR
            if a.stale:
                comp.stale_ids.add(a.id)

        cx, cy = self._face_center_px(width, height)
        bounds = Bounds(width=width, height=height, face_center_x=cx, face_center_y=cy)
        comp.labels = layout_labels(inputs, bounds, self.quality.profile().max_visible_tags)
        self.smoother.prune(now)
        return comp

    def render(self, frame: np.ndarray, now_ms: Optional[float] = None) -> np.ndarray:
        now = self._clock() if now_ms is None else now_ms
        h, w = frame.shape[:2]
        comp = self.compose(w, h, now)

        face_box = None
        if self.tracked is not None and self.tracked.face_box is not None:
            ymin, xmin, ymax, xmax = self.tracked.face_box
            face_box = (
                xmin / 1000.0 * w,
                ymin / 1000.0 * h,
                (xmax - xmin) / 1000.0 * w,
                (ymax - ymin) / 1000.0 * h,
            )
        out = draw_overlays(frame, comp.labels, face_box=face_box, colors=comp.colors, stale_ids=comp.stale_ids)

        frame_time = self._clock() - now
        self.quality.report_frame_time(frame_time)
        self.telemetry.report_frame_time(frame_time)
        if self._last_render_at is not None and now > self._last_render_at:
            self.telemetry.report_overlay_fps(1000.0 / (now - self._last_render_at))
        self._last_render_at = now
        return out

    # ---- lifecycle ----
    async def _lane_loop(self, lane: str) -> None:
        await self._sleep(self.s.WARMUP_MS / 1000.0)
        while self.running:
            started = self._clock()
            try:
                usable = await self.run_lane_once(lane)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"[live] {lane} lane call failed")
                usable = False
            delay = self.next_delay_ms(lane, self._clock() - started)
            if lane == "pro" and not usable:
                delay = self.s.PRO_EMPTY_RETRY_MS
            await self._sleep(delay / 1000.0)

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._tasks = [asyncio.create_task(self._lane_loop(lane), name=f"lane-{lane}") for lane in LANES]

    async def stop(self) -> None:
        """Cancel all lane loops; in-flight responses are discarded."""
        self.running = False
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
