"""
On-device face tracking adapter.

TrackedFrame is the only thing fusion consumes: landmark points on the 0..1000
grid keyed by mesh index, plus the named facial parts resolved from them.
MediaPipe is imported lazily so the rest of the pipeline (and the tests) run
without it.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from core.models import FaceBox, Point

# Face-mesh landmark indices used for each named facial part.
FACIAL_PART_INDICES: Dict[str, List[int]] = {
    "leftEye": [33],
    "rightEye": [263],
    "leftEyeInner": [133],
    "rightEyeInner": [362],
    "leftBrow": [70],
    "rightBrow": [300],
    "leftBrowInner": [52],
    "rightBrowInner": [282],
    "nose": [1],
    "leftNoseHole": [44],
    "rightNoseHole": [274],
    "mouth": [13],
    "mouthLeft": [61],
    "mouthRight": [291],
    "mouthUpper": [0],
    "mouthLower": [17],
    "chin": [152],
    "forehead": [10],
    "leftCheek": [234],
    "rightCheek": [454],
    "faceCenter": [1],
}

DISPLAY_LANDMARK_INDICES = frozenset(i for idx in FACIAL_PART_INDICES.values() for i in idx)


@dataclass(frozen=True)
class TrackedLandmark:
    index: int
    point: Point


@dataclass(frozen=True)
class TrackedFrame:
    timestamp_ms: float
    points: Tuple[TrackedLandmark, ...]
    parts: Dict[str, Point] = field(default_factory=dict)
    face_box: Optional[FaceBox] = None
    confidence: float = 1.0

    def __post_init__(self):
        by_index = {p.index: p.point for p in self.points}
        coords = np.array([p.point for p in self.points], dtype=np.float64).reshape(-1, 2)
        object.__setattr__(self, "_by_index", by_index)
        object.__setattr__(self, "_coords", coords)

    def landmark(self, index: Optional[int]) -> Optional[Point]:
        if index is None:
            return None
        return self._by_index.get(index)

    def part(self, name: str) -> Optional[Point]:
        return self.parts.get(name)

    def nearest_index(self, target: Point) -> Optional[int]:
        """Index of the landmark closest to target (squared planar distance); first wins on ties."""
        if not self.points:
            return None
        d = ((self._coords - np.asarray(target, dtype=np.float64)) ** 2).sum(axis=1)
        return self.points[int(np.argmin(d))].index


def to_grid_point(x: float, y: float) -> Point:
    """Normalized (x, y) in 0..1 -> (y, x) on the 0..1000 grid."""
    return (
        int(min(1000, max(0, round(y * 1000)))),
        int(min(1000, max(0, round(x * 1000)))),
    )


def compute_face_box(points: Sequence[TrackedLandmark]) -> Optional[FaceBox]:
    if not points:
        return None
    arr = np.array([p.point for p in points])
    ymin, xmin = arr.min(axis=0)
    ymax, xmax = arr.max(axis=0)
    if ymax <= ymin or xmax <= xmin:
        return None
    return (int(ymin), int(xmin), int(ymax), int(xmax))


def frame_from_landmarks(xy: Sequence[Tuple[float, float]], timestamp_ms: float,
                         confidence: float = 1.0) -> Optional[TrackedFrame]:
    """Build a TrackedFrame from normalized (x, y) landmarks in mesh order."""
    if not xy:
        return None
    points = tuple(TrackedLandmark(index=i, point=to_grid_point(x, y)) for i, (x, y) in enumerate(xy))

    parts: Dict[str, Point] = {}
    for part, indices in FACIAL_PART_INDICES.items():
        hits = [xy[i] for i in indices if i < len(xy)]
        if not hits:
            continue
        ax, ay = np.mean(np.asarray(hits, dtype=np.float64), axis=0)
        parts[part] = to_grid_point(float(ax), float(ay))

    return TrackedFrame(
        timestamp_ms=timestamp_ms,
        points=points,
        parts=parts,
        face_box=compute_face_box(points),
        confidence=confidence,
    )


class MediaPipeTracker:
    """Single-face mesh tracker; `track` returns None when no face is resolvable."""

    def __init__(self, min_detection_confidence: float = 0.5, min_tracking_confidence: float = 0.5):
        self.min_detection_confidence = min_detection_confidence
        self.min_tracking_confidence = min_tracking_confidence
        self._mesh = None

    @property
    def ready(self) -> bool:
        return self._mesh is not None

    def init(self) -> None:
        if self._mesh is not None:
            return
        try:
            import mediapipe as mp
        except Exception as e:
            raise RuntimeError("mediapipe import failed. Install mediapipe to enable on-device tracking.") from e
        self._mesh = mp.solutions.face_mesh.FaceMesh(
            static_image_mode=False,
            max_num_faces=1,
            refine_landmarks=True,
            min_detection_confidence=self.min_detection_confidence,
            min_tracking_confidence=self.min_tracking_confidence,
        )

    def track(self, frame_bgr: np.ndarray, timestamp_ms: float) -> Optional[TrackedFrame]:
        if self._mesh is None or frame_bgr is None or frame_bgr.size == 0:
            return None
        import cv2
        rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
        result = self._mesh.process(rgb)
        faces = getattr(result, "multi_face_landmarks", None)
        if not faces:
            return None
        xy = [(lm.x, lm.y) for lm in faces[0].landmark]
        return frame_from_landmarks(xy, timestamp_ms)

    def close(self) -> None:
        if self._mesh is not None:
            self._mesh.close()
            self._mesh = None
