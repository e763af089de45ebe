"""
Sanitizers turning arbitrary model JSON into strict lane results.

Nothing in here raises on bad input: every field is clamped, capped or
replaced by a default so downstream fusion/layout only ever sees valid shapes.
"""
from __future__ import annotations
import json
import math
import re
import time
from typing import Any, Dict, List, Optional

from core.models import (
    FACIAL_PARTS,
    UNKNOWN_PART,
    DepthAnalysisResult,
    DepthInsight,
    EmotionCandidate,
    FaceBox,
    FastAnalysisResult,
    FastEmotion,
    FastLandmark,
    HeadPose,
    LiteAnalysisResult,
    Point,
    SemanticAnchor,
)

PRIMARY_EMOTION_MAX_CHARS = 64
MOOD_SENTENCE_MAX_CHARS = 180
EXPLANATION_MAX_CHARS = 120
MAX_LITE_CANDIDATES = 6
MAX_FLASH_EMOTIONS = 6
MAX_FLASH_LANDMARKS = 12
MAX_LANDMARK_ANCHORS = 8
MAX_DEPTH_INSIGHTS = 10

FACIAL_PART_DEFAULT_POINTS: Dict[str, Point] = {
    "leftEye": (370, 330),
    "rightEye": (370, 670),
    "leftEyeInner": (375, 430),
    "rightEyeInner": (375, 570),
    "nose": (520, 500),
    "leftNoseHole": (555, 460),
    "rightNoseHole": (555, 540),
    "mouth": (700, 500),
    "mouthLeft": (705, 410),
    "mouthRight": (705, 590),
    "mouthUpper": (680, 500),
    "mouthLower": (735, 500),
    "leftBrow": (300, 320),
    "rightBrow": (300, 680),
    "leftBrowInner": (315, 430),
    "rightBrowInner": (315, 570),
    "chin": (880, 500),
    "forehead": (165, 500),
    "leftCheek": (560, 290),
    "rightCheek": (560, 710),
    # slightly above the nose bridge so defaults do not sit on the nose tip
    "faceCenter": (470, 500),
}


def now_ms() -> int:
    return int(time.time() * 1000)


def clamp(value: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, value))


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def safe_json_parse(text: Optional[str]) -> Any:
    if not text:
        return {}
    try:
        return json.loads(text)
    except (ValueError, TypeError, RecursionError):
        return {}


def slugify(label: str) -> str:
    return re.sub(r"\s+", "-", label.strip().lower())


def to_confidence(value: Any, fallback: float = 0.0) -> float:
    if is_number(value):
        return clamp(float(value), 0.0, 1.0)
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return fallback
        if math.isfinite(parsed):
            return clamp(parsed, 0.0, 1.0)
    return fallback


def to_point(value: Any, fallback: Point = (500, 500)) -> Point:
    if not isinstance(value, (list, tuple)) or len(value) < 2:
        return fallback
    y = int(clamp(round(value[0]), 0, 1000)) if is_number(value[0]) else fallback[0]
    x = int(clamp(round(value[1]), 0, 1000)) if is_number(value[1]) else fallback[1]
    return (y, x)


def to_face_box(value: Any) -> Optional[FaceBox]:
    if not isinstance(value, (list, tuple)) or len(value) < 4:
        return None
    defaults = (0, 0, 1000, 1000)
    ymin, xmin, ymax, xmax = (
        int(clamp(round(v), 0, 1000)) if is_number(v) else d for v, d in zip(value[:4], defaults)
    )
    if ymax <= ymin or xmax <= xmin:
        return None
    return (ymin, xmin, ymax, xmax)


def to_text(value: Any, fallback: str) -> str:
    return value.strip() if isinstance(value, str) and value.strip() else fallback


def to_facial_part(value: Any) -> str:
    normalized = value.strip() if isinstance(value, str) else ""
    return normalized if normalized in FACIAL_PARTS else UNKNOWN_PART


def to_head_pose(value: Any) -> Optional[HeadPose]:
    if not isinstance(value, dict):
        return None

    def angle(key: str) -> float:
        v = value.get(key)
        return clamp(float(v), -90.0, 90.0) if is_number(v) else 0.0

    return HeadPose(pitch=angle("pitch"), yaw=angle("yaw"), roll=angle("roll"))


def default_point_for_part(part: str) -> Point:
    return FACIAL_PART_DEFAULT_POINTS.get(part, FACIAL_PART_DEFAULT_POINTS["faceCenter"])


def nearest_landmark_part(point: Point, landmarks: List[FastLandmark]) -> str:
    best_part = UNKNOWN_PART
    best = math.inf
    for lm in landmarks:
        dy = point[0] - lm.point[0]
        dx = point[1] - lm.point[1]
        d = dy * dy + dx * dx
        if d < best:
            best = d
            best_part = lm.facial_part
    return best_part


def _items(source: Dict[str, Any], key: str, limit: int) -> List[Dict[str, Any]]:
    raw = source.get(key)
    if not isinstance(raw, list):
        return []
    return [item if isinstance(item, dict) else {} for item in raw[:limit]]


# -----------------------------------------------------------------------------
# Semantic anchors
# -----------------------------------------------------------------------------
class AnchorIdAllocator:
    """Stable ids ``{prefix}-{slug}-{part}-{n}``; n counts repeats inside one response."""

    def __init__(self):
        self._seen: Dict[str, int] = {}

    def next(self, prefix: str, label: str, part: str) -> str:
        base = f"{prefix}-{slugify(label)}-{part}"
        n = self._seen.get(base, 0) + 1
        self._seen[base] = n
        return f"{base}-{n}"


def build_fast_anchors(emotions: List[FastEmotion], landmarks: List[FastLandmark]) -> List[SemanticAnchor]:
    ids = AnchorIdAllocator()
    anchors: List[SemanticAnchor] = []
    for emo in emotions:
        part = emo.facial_part
        if part == UNKNOWN_PART:
            part = nearest_landmark_part(emo.point, landmarks)
        anchors.append(SemanticAnchor(
            id=ids.next("emo", emo.emotion, part),
            label=emo.emotion,
            kind="emotion",
            facial_part=part,
            point=emo.point,
            confidence=emo.confidence,
            intensity=emo.intensity,
            explanation=emo.explanation,
        ))
    for lm in landmarks[:MAX_LANDMARK_ANCHORS]:
        anchors.append(SemanticAnchor(
            id=ids.next("lm", lm.name, lm.facial_part),
            label=lm.name,
            kind="landmark",
            facial_part=lm.facial_part,
            point=lm.point,
            confidence=lm.confidence,
        ))
    return anchors


def build_depth_anchors(insights: List[DepthInsight]) -> List[SemanticAnchor]:
    ids = AnchorIdAllocator()
    return [
        SemanticAnchor(
            id=ids.next("depth", ins.keyword, ins.facial_part),
            label=ins.keyword,
            kind="depth",
            facial_part=ins.facial_part,
            point=ins.point,
            confidence=ins.confidence,
        )
        for ins in insights
    ]


def build_lite_anchors(result: LiteAnalysisResult) -> List[SemanticAnchor]:
    if not result.face_detected or not result.primary_emotion:
        return []
    if result.face_box:
        ymin, xmin, ymax, xmax = result.face_box
        point: Point = ((ymin + ymax) // 2, (xmin + xmax) // 2)
    else:
        point = default_point_for_part("faceCenter")
    return [SemanticAnchor(
        id=AnchorIdAllocator().next("emo", result.primary_emotion, "faceCenter"),
        label=result.primary_emotion,
        kind="emotion",
        facial_part="faceCenter",
        point=point,
        confidence=result.primary_confidence,
    )]


# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
def default_lite_result(model: str, frame_id: int = 0, captured_at: Optional[int] = None) -> LiteAnalysisResult:
    return LiteAnalysisResult(
        model=model,
        frame_id=frame_id,
        captured_at=captured_at if captured_at is not None else now_ms(),
        face_detected=False,
        confidence=0.0,
        primary_emotion="neutral",
        primary_confidence=0.0,
        mood_sentence="The observed mood appears neutral with low confidence.",
    )


def default_flash_result(model: str, frame_id: int = 0, captured_at: Optional[int] = None) -> FastAnalysisResult:
    return FastAnalysisResult(
        model=model,
        frame_id=frame_id,
        captured_at=captured_at if captured_at is not None else now_ms(),
    )


def default_depth_result(model: str, frame_id: int = 0, captured_at: Optional[int] = None) -> DepthAnalysisResult:
    return DepthAnalysisResult(
        model=model,
        frame_id=frame_id,
        captured_at=captured_at if captured_at is not None else now_ms(),
    )


# -----------------------------------------------------------------------------
# Lane sanitizers
# -----------------------------------------------------------------------------
def sanitize_lite_result(raw: Any, model: str, frame_id: int = 0, captured_at: Optional[int] = None) -> LiteAnalysisResult:
    if not isinstance(raw, dict):
        return default_lite_result(model, frame_id, captured_at)

    face_box = to_face_box(raw.get("faceBox"))
    face_detected = bool(raw.get("faceDetected")) or face_box is not None
    frame_confidence = to_confidence(raw.get("confidence"), 0.7 if face_detected else 0.1)
    candidates = [
        EmotionCandidate(
            emotion=to_text(item.get("emotion"), "neutral"),
            confidence=to_confidence(item.get("confidence"), 0.45),
        )
        for item in _items(raw, "candidates", MAX_LITE_CANDIDATES)
    ]

    primary = (
        to_text(raw.get("primaryEmotion"), "")
        or (candidates[0].emotion if candidates else "")
        or "neutral"
    )[:PRIMARY_EMOTION_MAX_CHARS]
    match = next(
        (c for c in candidates if c.emotion.strip().lower() == primary.strip().lower()),
        None,
    )
    if match is not None:
        fallback_conf = match.confidence
    elif candidates:
        fallback_conf = candidates[0].confidence
    else:
        fallback_conf = frame_confidence
    primary_confidence = to_confidence(raw.get("primaryConfidence"), fallback_conf)
    mood = to_text(raw.get("moodSentence"), "")[:MOOD_SENTENCE_MAX_CHARS] or (
        f"The observed mood appears {primary} with {round(primary_confidence * 100)}% confidence."
    )

    result = LiteAnalysisResult(
        model=model,
        frame_id=frame_id,
        captured_at=captured_at if captured_at is not None else now_ms(),
        face_detected=face_detected,
        confidence=frame_confidence,
        primary_emotion=primary,
        primary_confidence=primary_confidence,
        mood_sentence=mood,
        candidates=candidates,
        face_box=face_box,
        head_pose=to_head_pose(raw.get("headPose")),
    )
    result.semantic_anchors = build_lite_anchors(result)
    return result


def sanitize_flash_result(raw: Any, model: str, frame_id: int = 0, captured_at: Optional[int] = None) -> FastAnalysisResult:
    if not isinstance(raw, dict):
        return default_flash_result(model, frame_id, captured_at)

    landmarks: List[FastLandmark] = []
    for item in _items(raw, "landmarks", MAX_FLASH_LANDMARKS):
        part = to_facial_part(item.get("facialPart"))
        landmarks.append(FastLandmark(
            name=to_text(item.get("name"), part if part != UNKNOWN_PART else "landmark"),
            point=to_point(item.get("point"), default_point_for_part(part)),
            confidence=to_confidence(item.get("confidence"), 0.5),
            facial_part=part,
        ))

    emotions: List[FastEmotion] = []
    for item in _items(raw, "emotions", MAX_FLASH_EMOTIONS):
        part = to_facial_part(item.get("facialPart"))
        raw_point = item.get("point")
        has_point = to_point(raw_point, (-1, -1)) != (-1, -1)
        if part == UNKNOWN_PART and has_point and landmarks:
            part = nearest_landmark_part(to_point(raw_point), landmarks)
        if part == UNKNOWN_PART:
            part = "faceCenter"
        emotions.append(FastEmotion(
            emotion=to_text(item.get("emotion"), "neutral"),
            intensity=to_text(item.get("intensity"), "low"),
            confidence=to_confidence(item.get("confidence"), 0.4),
            point=to_point(raw_point, default_point_for_part(part)),
            facial_part=part,
            explanation=to_text(item.get("explanation"), "")[:EXPLANATION_MAX_CHARS] or None,
        ))

    face_box = to_face_box(raw.get("faceBox"))
    face_detected = bool(raw.get("faceDetected")) or face_box is not None or bool(landmarks)
    result = FastAnalysisResult(
        model=model,
        frame_id=frame_id,
        captured_at=captured_at if captured_at is not None else now_ms(),
        face_detected=face_detected,
        confidence=to_confidence(raw.get("confidence"), 0.6 if face_detected else 0.1),
        face_box=face_box,
        head_pose=to_head_pose(raw.get("headPose")),
        emotions=emotions,
        landmarks=landmarks,
    )
    result.semantic_anchors = build_fast_anchors(result.emotions, result.landmarks)
    return result


def dedupe_insights(insights: List[DepthInsight]) -> List[DepthInsight]:
    """One insight per keyword (case-insensitive), highest confidence wins; sorted by confidence."""
    best: Dict[str, DepthInsight] = {}
    for ins in insights:
        key = ins.keyword.strip().lower()
        if key not in best or ins.confidence > best[key].confidence:
            best[key] = ins
    return sorted(best.values(), key=lambda i: -i.confidence)


def sanitize_depth_result(raw: Any, model: str, frame_id: int = 0, captured_at: Optional[int] = None) -> DepthAnalysisResult:
    if not isinstance(raw, dict):
        return default_depth_result(model, frame_id, captured_at)

    insights = [
        DepthInsight(
            keyword=to_text(item.get("keyword"), "neutral"),
            rationale=to_text(item.get("rationale"), ""),
            medical_interpretation=to_text(item.get("medicalInterpretation"), ""),
            confidence=to_confidence(item.get("confidence"), 0.34),
            facial_part=to_facial_part(item.get("facialPart")),
            point=to_point(item.get("point")),
        )
        for item in _items(raw, "insights", MAX_DEPTH_INSIGHTS)
    ]
    insights = dedupe_insights(insights)
    result = DepthAnalysisResult(
        model=model,
        frame_id=frame_id,
        captured_at=captured_at if captured_at is not None else now_ms(),
        confidence=to_confidence(raw.get("confidence"), 0.56 if insights else 0.1),
        summary=to_text(raw.get("summary"), ""),
        insights=insights,
    )
    result.semantic_anchors = build_depth_anchors(result.insights)
    return result
