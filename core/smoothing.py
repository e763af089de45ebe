"""Per-label exponential point smoothing with fast attack / slow release."""
from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Dict

from core.models import Point


@dataclass
class SmoothingState:
    point: Point
    last_updated_at: float


def _clamp(v: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, v))


class PointSmoother:
    def __init__(self, attack_ms: float = 65, release_ms: float = 130,
                 max_state_age_ms: float = 6000, jump_threshold: float = 26):
        self.attack_ms = attack_ms
        self.release_ms = release_ms
        self.max_state_age_ms = max_state_age_ms
        self.jump_threshold = jump_threshold
        self.states: Dict[str, SmoothingState] = {}

    def smooth(self, label_id: str, point: Point, now_ms: float) -> Point:
        existing = self.states.get(label_id)
        if existing is None:
            self.states[label_id] = SmoothingState(point, now_ms)
            return point

        dt = max(1.0, now_ms - existing.last_updated_at)
        dy = point[0] - existing.point[0]
        dx = point[1] - existing.point[1]
        # big moves snap quickly, jitter settles slowly
        tau = self.attack_ms if math.hypot(dy, dx) > self.jump_threshold else self.release_ms
        alpha = _clamp(1.0 - math.exp(-dt / tau), 0.1, 0.95)

        smoothed = (
            int(_clamp(round(existing.point[0] + dy * alpha), 0, 1000)),
            int(_clamp(round(existing.point[1] + dx * alpha), 0, 1000)),
        )
        self.states[label_id] = SmoothingState(smoothed, now_ms)
        return smoothed

    def prune(self, now_ms: float) -> None:
        for label_id in [k for k, s in self.states.items() if now_ms - s.last_updated_at > self.max_state_age_ms]:
            del self.states[label_id]
