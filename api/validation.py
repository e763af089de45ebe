"""
Request validation for the lane endpoints.

Bodies are parsed leniently (missing width/height/frameId get defaults) but
anything that would waste a backend call is rejected here with a specific
status before it reaches the core.
"""
from __future__ import annotations
import math
import re
import time
from typing import Any, Optional

from core.config import Settings
from core.models import AnalyzeRequest

_WEBM_RE = re.compile(r"^video/webm", re.IGNORECASE)


class PayloadError(Exception):
    """Invalid request payload; carries the HTTP status to answer with."""

    def __init__(self, status: int, detail: str):
        super().__init__(detail)
        self.status = status
        self.detail = detail


def _finite(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def _positive_int(value: Any) -> Optional[int]:
    parsed = _finite(value)
    if parsed is None:
        return None
    rounded = int(round(parsed))
    return rounded if rounded > 0 else None


def parse_analyze_payload(body: Any, settings: Settings, max_side: int,
                          now_ms: Optional[int] = None) -> AnalyzeRequest:
    """
    Validate a lane request body.

    Raises:
        PayloadError: 400 malformed / too small / wrong format, 409 stale frame, 413 too large.
    """
    if not isinstance(body, dict):
        raise PayloadError(400, "Request body must be a JSON object")
    now = int(time.time() * 1000) if now_ms is None else now_ms

    image = body.get("image") if isinstance(body.get("image"), str) else ""
    if len(image) < settings.MIN_IMAGE_BASE64_LENGTH:
        raise PayloadError(400, "No image provided")
    if len(image) > settings.MAX_IMAGE_BASE64_LENGTH:
        raise PayloadError(413, "Image payload too large")

    width = _positive_int(body.get("width")) or 640
    height = _positive_int(body.get("height")) or 360
    if width > max_side or height > max_side:
        raise PayloadError(400, f"Input must be downscaled to <= {max_side}px")

    frame_id = _positive_int(body.get("frameId")) or 1
    raw_captured_at = _finite(body.get("capturedAt"))
    # clients cannot send future timestamps
    captured_at = int(min(raw_captured_at if raw_captured_at is not None else now, now))
    if now - captured_at > settings.MAX_FRAME_AGE_MS:
        raise PayloadError(409, "Stale frame rejected")

    clip = body.get("videoClipBase64") if isinstance(body.get("videoClipBase64"), str) else ""
    mime = body.get("videoMimeType").strip() if isinstance(body.get("videoMimeType"), str) else ""
    duration = _positive_int(body.get("videoDurationMs"))
    if clip:
        if len(clip) < settings.MIN_VIDEO_BASE64_LENGTH:
            raise PayloadError(400, "Video payload too short")
        if len(clip) > settings.MAX_VIDEO_BASE64_LENGTH:
            raise PayloadError(413, "Video payload too large")
        if not mime or not _WEBM_RE.match(mime):
            raise PayloadError(400, "Unsupported video format; use video/webm")
        if not duration or duration > settings.MAX_VIDEO_DURATION_MS:
            raise PayloadError(400, "Video duration is invalid or too long")

    return AnalyzeRequest(
        image=image,
        frame_id=frame_id,
        captured_at=captured_at,
        width=width,
        height=height,
        video_clip_base64=clip or None,
        video_mime_type=mime or None,
        video_duration_ms=duration if clip else None,
    )
