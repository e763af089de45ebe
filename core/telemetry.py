"""Rolling performance telemetry with p50 snapshots and acceptance checks."""
from __future__ import annotations
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict

import numpy as np

DROPPED_FRAME_MS = 34.0


@dataclass
class PerfSnapshot:
    overlay_fps: float
    fast_rtt_p50: float
    depth_rtt_p50: float
    dropped_frame_ratio: float


@dataclass
class PerfAcceptance:
    overlay_fps_min: float = 24.0
    fast_rtt_p50_max: float = 550.0
    depth_rtt_p50_max: float = 3200.0
    dropped_frame_ratio_max: float = 0.18


@dataclass
class PerfAcceptanceResult:
    snapshot: PerfSnapshot
    acceptance: PerfAcceptance
    passes: Dict[str, bool] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(self.passes.values())


def percentile(values, p: float) -> float:
    """Lower nearest-rank percentile; 0 for an empty window."""
    if not values:
        return 0.0
    ordered = np.sort(np.asarray(values, dtype=np.float64))
    index = min(len(ordered) - 1, max(0, int(math.floor((len(ordered) - 1) * p))))
    return float(ordered[index])


def _valid(sample: float) -> bool:
    return isinstance(sample, (int, float)) and math.isfinite(sample) and sample > 0


class PerfTelemetry:
    def __init__(self):
        self.overlay_fps: Deque[float] = deque(maxlen=120)
        self.fast_rtts: Deque[float] = deque(maxlen=240)
        self.depth_rtts: Deque[float] = deque(maxlen=120)
        self.rendered_frames = 0
        self.dropped_frames = 0

    def report_overlay_fps(self, fps: float) -> None:
        if _valid(fps):
            self.overlay_fps.append(float(fps))

    def report_frame_time(self, frame_time_ms: float) -> None:
        if not _valid(frame_time_ms):
            return
        self.rendered_frames += 1
        if frame_time_ms > DROPPED_FRAME_MS:
            self.dropped_frames += 1

    def report_fast_rtt(self, rtt_ms: float) -> None:
        if _valid(rtt_ms):
            self.fast_rtts.append(float(rtt_ms))

    def report_depth_rtt(self, rtt_ms: float) -> None:
        if _valid(rtt_ms):
            self.depth_rtts.append(float(rtt_ms))

    def snapshot(self) -> PerfSnapshot:
        return PerfSnapshot(
            overlay_fps=percentile(self.overlay_fps, 0.5),
            fast_rtt_p50=percentile(self.fast_rtts, 0.5),
            depth_rtt_p50=percentile(self.depth_rtts, 0.5),
            dropped_frame_ratio=(self.dropped_frames / self.rendered_frames) if self.rendered_frames else 0.0,
        )

    def evaluate(self, acceptance: PerfAcceptance | None = None) -> PerfAcceptanceResult:
        acceptance = acceptance or PerfAcceptance()
        snap = self.snapshot()
        return PerfAcceptanceResult(
            snapshot=snap,
            acceptance=acceptance,
            passes={
                "overlay_fps": snap.overlay_fps >= acceptance.overlay_fps_min,
                "fast_rtt": snap.fast_rtt_p50 <= acceptance.fast_rtt_p50_max,
                "depth_rtt": snap.depth_rtt_p50 <= acceptance.depth_rtt_p50_max,
                "dropped_frames": snap.dropped_frame_ratio <= acceptance.dropped_frame_ratio_max,
            },
        )
