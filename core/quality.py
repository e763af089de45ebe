"""
Adaptive quality tiers driven by rolling lane RTTs and overlay frame time.
"""
from __future__ import annotations
import math
from collections import deque
from typing import Deque, Dict

import numpy as np

from core.models import QualityProfile, QualityTelemetry, QualityTier

FAST_WINDOW = 24
DEPTH_WINDOW = 24
FRAME_WINDOW = 60

# (fast RTT, deep RTT, frame time) averages above which a tier is selected
LOW_THRESHOLDS = (900.0, 3500.0, 26.0)
BALANCED_THRESHOLDS = (520.0, 2100.0, 19.0)

PROFILES: Dict[str, QualityProfile] = {
    "high": QualityProfile(
        tier="high", max_capture_side=800, jpeg_quality=0.78,
        fast_interval_ms=500, depth_interval_ms=30000, max_visible_tags=12,
    ),
    "balanced": QualityProfile(
        tier="balanced", max_capture_side=640, jpeg_quality=0.72,
        fast_interval_ms=3500, depth_interval_ms=35000, max_visible_tags=8,
    ),
    "low": QualityProfile(
        tier="low", max_capture_side=480, jpeg_quality=0.65,
        fast_interval_ms=4500, depth_interval_ms=45000, max_visible_tags=4,
    ),
}


def _valid(sample: float) -> bool:
    return isinstance(sample, (int, float)) and math.isfinite(sample) and sample > 0


def _avg(window: Deque[float]) -> float:
    return float(np.mean(window)) if window else 0.0


class AdaptiveQualityManager:
    """No hysteresis: the averaging windows are the only damping."""

    def __init__(self):
        self.fast_rtts: Deque[float] = deque(maxlen=FAST_WINDOW)
        self.depth_rtts: Deque[float] = deque(maxlen=DEPTH_WINDOW)
        self.frame_times: Deque[float] = deque(maxlen=FRAME_WINDOW)
        self.tier: QualityTier = "high"

    def report_fast_rtt(self, rtt_ms: float) -> None:
        if _valid(rtt_ms):
            self.fast_rtts.append(float(rtt_ms))
            self._recompute()

    def report_depth_rtt(self, rtt_ms: float) -> None:
        if _valid(rtt_ms):
            self.depth_rtts.append(float(rtt_ms))
            self._recompute()

    def report_frame_time(self, frame_time_ms: float) -> None:
        if _valid(frame_time_ms):
            self.frame_times.append(float(frame_time_ms))
            self._recompute()

    def profile(self) -> QualityProfile:
        return PROFILES[self.tier].model_copy()

    def telemetry(self) -> QualityTelemetry:
        return QualityTelemetry(
            fast_rtt_ms=_avg(self.fast_rtts),
            depth_rtt_ms=_avg(self.depth_rtts),
            frame_time_ms=_avg(self.frame_times),
            tier=self.tier,
        )

    def _recompute(self) -> None:
        averages = (_avg(self.fast_rtts), _avg(self.depth_rtts), _avg(self.frame_times))
        if any(a > t for a, t in zip(averages, LOW_THRESHOLDS)):
            self.tier = "low"
        elif any(a > t for a, t in zip(averages, BALANCED_THRESHOLDS)):
            self.tier = "balanced"
        else:
            self.tier = "high"
