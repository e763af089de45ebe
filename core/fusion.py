"""
Anchor fusion: pin slow, lagging AI findings to live tracked landmarks.

A binding associates an anchor id with either a named facial part (tracked
exactly, zero offset) or a landmark index plus the offset measured at bind
time, so ad hoc coordinates still ride along with head motion.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from core.models import UNKNOWN_PART, FusedAnchor, Point, SemanticAnchor
from core.tracking import TrackedFrame


@dataclass
class AnchorBinding:
    anchor: SemanticAnchor
    landmark_index: Optional[int]
    offset: Optional[Point]
    last_seen_at: float


def _clamp_grid(v: float) -> int:
    return int(min(1000, max(0, v)))


def squared_distance(a: Point, b: Point) -> float:
    dy = a[0] - b[0]
    dx = a[1] - b[1]
    return dy * dy + dx * dx


def add_offset(point: Point, offset: Point) -> Point:
    return (_clamp_grid(point[0] + offset[0]), _clamp_grid(point[1] + offset[1]))


def _named_part_point(anchor: SemanticAnchor, frame: Optional[TrackedFrame]) -> Optional[Point]:
    if frame is None or anchor.facial_part == UNKNOWN_PART:
        return None
    return frame.part(anchor.facial_part)


class AnchorFusionEngine:
    def __init__(self, max_stale_ms: float = 4500, hard_max_stale_ms: float = 30000,
                 reacquire_distance: float = 130):
        self.max_stale_ms = max_stale_ms
        self.hard_max_stale_ms = max(max_stale_ms, hard_max_stale_ms)
        self.reacquire_distance_sq = reacquire_distance * reacquire_distance
        self.bindings: Dict[str, AnchorBinding] = {}

    def update_anchors(self, anchors: Iterable[SemanticAnchor], frame: Optional[TrackedFrame],
                       now_ms: float) -> None:
        anchors = list(anchors)
        incoming = {a.id for a in anchors}
        for anchor_id in list(self.bindings):
            if anchor_id not in incoming and now_ms - self.bindings[anchor_id].last_seen_at > self.max_stale_ms:
                del self.bindings[anchor_id]

        for anchor in anchors:
            previous = self.bindings.get(anchor.id)
            part_point = _named_part_point(anchor, frame)

            if part_point is not None:
                # named part: always re-resolved from the live part map
                self.bindings[anchor.id] = AnchorBinding(anchor, None, (0, 0), now_ms)
                continue

            landmark_index = previous.landmark_index if previous else None
            offset = previous.offset if previous else None
            reacquired = False
            if frame is not None and previous is not None and landmark_index is not None:
                prev_point = frame.landmark(landmark_index)
                reacquired = (
                    prev_point is not None
                    and offset is not None
                    and squared_distance(anchor.point, prev_point) < self.reacquire_distance_sq
                )

            if frame is None and previous is not None:
                # nothing to search; keep the existing landmark and offset
                reacquired = True

            if not reacquired:
                landmark_index = frame.nearest_index(anchor.point) if frame is not None else None
                tracked = frame.landmark(landmark_index) if frame is not None else None
                if tracked is None:
                    tracked = anchor.point
                offset = (anchor.point[0] - tracked[0], anchor.point[1] - tracked[1])

            self.bindings[anchor.id] = AnchorBinding(anchor, landmark_index, offset, now_ms)

    def project(self, frame: Optional[TrackedFrame], now_ms: float,
                preserve_stale: bool = False) -> List[FusedAnchor]:
        max_age = self.hard_max_stale_ms if preserve_stale else self.max_stale_ms
        projected: List[FusedAnchor] = []

        for anchor_id in list(self.bindings):
            binding = self.bindings[anchor_id]
            age = now_ms - binding.last_seen_at
            if age > max_age:
                del self.bindings[anchor_id]
                continue

            anchor = binding.anchor
            point = anchor.point
            part_point = _named_part_point(anchor, frame)
            tracked = frame.landmark(binding.landmark_index) if frame is not None else None
            if part_point is not None:
                point = part_point
            elif tracked is not None and binding.offset is not None:
                point = add_offset(tracked, binding.offset)
            elif frame is not None:
                fallback = frame.landmark(frame.nearest_index(anchor.point))
                if fallback is not None:
                    point = fallback

            projected.append(FusedAnchor(
                **anchor.model_dump(),
                projected_point=point,
                stale=age > self.max_stale_ms * 0.5,
            ))

        # sorted() is stable, so equal confidences keep binding order
        return sorted(projected, key=lambda a: -a.confidence)

    def clear(self) -> None:
        self.bindings.clear()
