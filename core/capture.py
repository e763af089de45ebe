"""
Frame capture payloads: downscaled JPEG for every lane, short webm clip for the deep lane.
"""
from __future__ import annotations
import base64
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from typing import Optional, Sequence

import cv2
import numpy as np

logger = logging.getLogger(__name__)

CLIP_MIME_TYPE = "video/webm"
MAX_CLIP_BASE64_LENGTH = 8_000_000
CLIP_MAX_SIDE = 480


@dataclass
class CapturePayload:
    image: str
    width: int
    height: int
    captured_at: int


@dataclass
class ClipPayload:
    data: str
    mime_type: str
    duration_ms: int


def _fit(frame: np.ndarray, max_side: int) -> np.ndarray:
    h, w = frame.shape[:2]
    scale = min(1.0, float(max_side) / float(max(h, w)))
    if scale >= 1.0:
        return frame
    size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))
    return cv2.resize(frame, size, interpolation=cv2.INTER_AREA)


def encode_frame(frame: np.ndarray, max_side: int, jpeg_quality: float,
                 captured_at: Optional[int] = None) -> CapturePayload:
    """
    Downscale (aspect preserved) so the longest side is <= max_side, then JPEG-encode.

    jpeg_quality is 0..1 as in the quality profiles.
    """
    if frame is None or frame.size == 0:
        raise ValueError("Empty frame")
    small = _fit(frame, max_side)
    quality = int(min(100, max(1, round(jpeg_quality * 100))))
    ok, buf = cv2.imencode(".jpg", small, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        raise RuntimeError("JPEG encoding failed")
    h, w = small.shape[:2]
    return CapturePayload(
        image=base64.b64encode(buf.tobytes()).decode("ascii"),
        width=w,
        height=h,
        captured_at=captured_at if captured_at is not None else int(time.time() * 1000),
    )


def encode_clip(frames: Sequence[np.ndarray], fps: float, max_side: int = CLIP_MAX_SIDE) -> Optional[ClipPayload]:
    """
    Write frames to a VP8 webm and return it base64-encoded.

    Returns None when there are no frames, the codec is unavailable in this
    OpenCV build, or the clip would exceed the API's size limit.
    """
    if not frames or fps <= 0:
        return None
    first = _fit(frames[0], max_side)
    h, w = first.shape[:2]

    fd, path = tempfile.mkstemp(suffix=".webm")
    os.close(fd)
    try:
        writer = cv2.VideoWriter(path, cv2.VideoWriter_fourcc(*"VP80"), fps, (w, h))
        if not writer.isOpened():
            logger.warning("[capture] VP80 webm writer unavailable; skipping clip")
            return None
        try:
            for f in frames:
                f = _fit(f, max_side)
                if f.shape[:2] != (h, w):
                    f = cv2.resize(f, (w, h), interpolation=cv2.INTER_AREA)
                writer.write(f)
        finally:
            writer.release()

        with open(path, "rb") as fh:
            data = base64.b64encode(fh.read()).decode("ascii")
    finally:
        try:
            os.unlink(path)
        except OSError:
            logger.warning(f"[capture] failed to cleanup tmp clip: {path}")

    if not data or len(data) > MAX_CLIP_BASE64_LENGTH:
        logger.debug(f"[capture] clip dropped length={len(data)}")
        return None
    return ClipPayload(data=data, mime_type=CLIP_MIME_TYPE, duration_ms=int(round(len(frames) / fps * 1000)))
