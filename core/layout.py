"""
Overlay label placement.

Labels are placed greedily in priority order around their anchor pixel,
trying a fixed offset sequence and rejecting candidates that overlap labels
already placed. Emotion labels (prefer_distance) use a wider radial sequence,
rotated per id and ordered to point away from the face center.
"""
from __future__ import annotations
import math
from dataclasses import dataclass, replace
from functools import cmp_to_key
from typing import List, Optional, Tuple

# (dx, dy) pixel offsets from the anchor
OFFSETS: List[Tuple[int, int]] = [
    (14, -18),
    (16, 16),
    (-16, -18),
    (-16, 18),
    (24, 0),
    (-24, 0),
    (0, -24),
    (0, 24),
]

# Emotion cards: right first, then left, then above/below.
EMOTION_OFFSETS: List[Tuple[int, int]] = [
    (112, -88),
    (118, -42),
    (124, 10),
    (114, 62),
    (98, 102),
    (70, 122),
    (30, 134),
    (-30, 134),
    (-70, 122),
    (-98, 102),
    (-114, 62),
    (-124, 10),
    (-118, -42),
    (-112, -88),
    (-94, -118),
    (-56, -136),
    (0, -144),
    (56, -136),
    (94, -118),
    (132, -4),
    (132, 52),
    (132, -56),
    (-132, -4),
    (-132, 52),
    (-132, -56),
]

PRIORITY_EPSILON = 0.03
DISTANCE_GAP = 10
RETRY_GAP = 6
RADIAL_FALLBACK_DISTANCE = 118
DEFAULT_PADDING = 8


@dataclass
class LabelInput:
    id: str
    text: str
    anchor_x: float
    anchor_y: float
    width: float
    height: float
    priority: float
    prefer_distance: bool = False


@dataclass
class PlacedLabel:
    id: str
    text: str
    anchor_x: float
    anchor_y: float
    width: float
    height: float
    priority: float
    x: float
    y: float
    prefer_distance: bool = False


@dataclass
class Bounds:
    width: float
    height: float
    padding: float = DEFAULT_PADDING
    face_center_x: Optional[float] = None
    face_center_y: Optional[float] = None


def hash_text(value: str) -> int:
    h = 0
    for ch in value:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return h


def rotate_offsets(offsets: List[Tuple[int, int]], start: int) -> List[Tuple[int, int]]:
    if not offsets:
        return offsets
    n = start % len(offsets)
    return offsets[n:] + offsets[:n]


def intersects(a: PlacedLabel, b: PlacedLabel, gap: float = 0) -> bool:
    return (
        a.x - gap < b.x + b.width + gap
        and a.x + a.width + gap > b.x - gap
        and a.y - gap < b.y + b.height + gap
        and a.y + a.height + gap > b.y - gap
    )


def keep_in_bounds(label: PlacedLabel, bounds: Bounds) -> PlacedLabel:
    p = bounds.padding
    # max() first so an oversized label still lands at the padding edge
    x = max(p, min(label.x, bounds.width - label.width - p))
    y = max(p, min(label.y, bounds.height - label.height - p))
    return replace(label, x=x, y=y)


def outward_direction(anchor_x: float, anchor_y: float, bounds: Bounds) -> Optional[Tuple[float, float]]:
    if bounds.face_center_x is None or bounds.face_center_y is None:
        return None
    ox = anchor_x - bounds.face_center_x
    oy = anchor_y - bounds.face_center_y
    length = math.hypot(ox, oy)
    if length < 0.001:
        return None
    return ox / length, oy / length


def is_outward(anchor_x: float, anchor_y: float, label: PlacedLabel, direction: Tuple[float, float]) -> bool:
    vx = label.x + label.width / 2 - anchor_x
    vy = label.y + label.height / 2 - anchor_y
    return vx * direction[0] + vy * direction[1] > 0


def prioritize_outward(offsets: List[Tuple[int, int]], anchor_x: float, anchor_y: float,
                       bounds: Bounds) -> List[Tuple[int, int]]:
    direction = outward_direction(anchor_x, anchor_y, bounds)
    if direction is None:
        return offsets

    def score(o: Tuple[int, int]) -> Tuple[float, float]:
        length = math.hypot(o[0], o[1]) or 1.0
        return (o[0] / length) * direction[0] + (o[1] / length) * direction[1], length

    def compare(a, b) -> float:
        sa, la = score(a)
        sb, lb = score(b)
        if abs(sb - sa) > 0.0001:
            return sb - sa
        return lb - la

    return sorted(offsets, key=cmp_to_key(compare))


def _by_priority(a: LabelInput, b: LabelInput) -> float:
    diff = b.priority - a.priority
    # near-equal priorities order by id hash so labels do not swap every frame
    if abs(diff) > PRIORITY_EPSILON:
        return diff
    return hash_text(a.id) - hash_text(b.id)


def _at(label: LabelInput, x: float, y: float) -> PlacedLabel:
    return PlacedLabel(
        id=label.id,
        text=label.text,
        anchor_x=label.anchor_x,
        anchor_y=label.anchor_y,
        width=label.width,
        height=label.height,
        priority=label.priority,
        x=x,
        y=y,
        prefer_distance=label.prefer_distance,
    )


def layout_labels(inputs: List[LabelInput], bounds: Bounds, max_labels: int) -> List[PlacedLabel]:
    ordered = sorted(inputs, key=cmp_to_key(_by_priority))[:max(0, max_labels)]
    placed: List[PlacedLabel] = []

    for label in ordered:
        if label.prefer_distance:
            offsets = prioritize_outward(
                rotate_offsets(EMOTION_OFFSETS, hash_text(label.id)), label.anchor_x, label.anchor_y, bounds
            )
            direction = outward_direction(label.anchor_x, label.anchor_y, bounds)
            gap = DISTANCE_GAP
        else:
            offsets = OFFSETS
            direction = None
            gap = 0

        candidate: Optional[PlacedLabel] = None
        for dx, dy in offsets:
            attempt = keep_in_bounds(_at(label, label.anchor_x + dx, label.anchor_y + dy), bounds)
            if direction is not None and not is_outward(label.anchor_x, label.anchor_y, attempt, direction):
                continue
            if not any(intersects(p, attempt, gap) for p in placed):
                candidate = attempt
                break

        if candidate is None and direction is not None:
            for dx, dy in offsets:
                attempt = keep_in_bounds(_at(label, label.anchor_x + dx, label.anchor_y + dy), bounds)
                if not any(intersects(p, attempt, RETRY_GAP) for p in placed):
                    candidate = attempt
                    break

        if candidate is None:
            if label.prefer_distance and direction is not None:
                x = label.anchor_x + direction[0] * RADIAL_FALLBACK_DISTANCE - label.width / 2
                y = label.anchor_y + direction[1] * RADIAL_FALLBACK_DISTANCE - label.height / 2
            else:
                fx, fy = (52, 0) if label.prefer_distance else (14, 14)
                x, y = label.anchor_x + fx, label.anchor_y + fy
            candidate = keep_in_bounds(_at(label, x, y), bounds)

        placed.append(candidate)

    return placed
