"""
Pydantic data models for lane results, anchors and API IO.

Points are (y, x) pairs on the normalized 0..1000 image grid; face boxes are
(ymin, xmin, ymax, xmax) on the same grid. Field names are snake_case in
Python and camelCase on the wire.
"""
from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional, Literal, Tuple

Point = Tuple[int, int]
FaceBox = Tuple[int, int, int, int]

AnchorKind = Literal["emotion", "depth", "landmark"]
Lane = Literal["lite", "flash", "pro"]
QualityTier = Literal["high", "balanced", "low"]

FACIAL_PARTS: Tuple[str, ...] = (
    "leftEye",
    "rightEye",
    "leftEyeInner",
    "rightEyeInner",
    "nose",
    "leftNoseHole",
    "rightNoseHole",
    "mouth",
    "mouthLeft",
    "mouthRight",
    "mouthUpper",
    "mouthLower",
    "leftBrow",
    "rightBrow",
    "leftBrowInner",
    "rightBrowInner",
    "chin",
    "forehead",
    "leftCheek",
    "rightCheek",
    "faceCenter",
)
UNKNOWN_PART = "unknown"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HeadPose(WireModel):
    pitch: float = 0.0
    yaw: float = 0.0
    roll: float = 0.0


class EmotionCandidate(WireModel):
    emotion: str
    confidence: float


class SemanticAnchor(WireModel):
    id: str
    label: str
    kind: AnchorKind
    facial_part: str = UNKNOWN_PART
    point: Point
    confidence: float
    intensity: Optional[str] = None
    explanation: Optional[str] = None


class FusedAnchor(SemanticAnchor):
    projected_point: Point
    stale: bool = False


class LiteAnalysisResult(WireModel):
    model: str
    frame_id: int = 0
    captured_at: int = 0
    face_detected: bool = False
    confidence: float = 0.0
    primary_emotion: str = "neutral"
    primary_confidence: float = 0.0
    mood_sentence: Optional[str] = None
    candidates: List[EmotionCandidate] = Field(default_factory=list)
    face_box: Optional[FaceBox] = None
    head_pose: Optional[HeadPose] = None
    semantic_anchors: List[SemanticAnchor] = Field(default_factory=list)


class FastEmotion(WireModel):
    emotion: str
    intensity: str
    confidence: float
    point: Point
    facial_part: str
    explanation: Optional[str] = None


class FastLandmark(WireModel):
    name: str
    point: Point
    confidence: float
    facial_part: str


class FastAnalysisResult(WireModel):
    model: str
    frame_id: int = 0
    captured_at: int = 0
    face_detected: bool = False
    confidence: float = 0.0
    face_box: Optional[FaceBox] = None
    head_pose: Optional[HeadPose] = None
    emotions: List[FastEmotion] = Field(default_factory=list)
    landmarks: List[FastLandmark] = Field(default_factory=list)
    semantic_anchors: List[SemanticAnchor] = Field(default_factory=list)


class DepthInsight(WireModel):
    keyword: str
    rationale: str = ""
    medical_interpretation: str = ""
    confidence: float
    facial_part: str
    point: Point


class DepthAnalysisResult(WireModel):
    model: str
    frame_id: int = 0
    captured_at: int = 0
    confidence: float = 0.0
    summary: str = ""
    insights: List[DepthInsight] = Field(default_factory=list)
    semantic_anchors: List[SemanticAnchor] = Field(default_factory=list)


# request / response envelopes


class AnalyzeRequest(WireModel):
    image: str
    frame_id: int
    captured_at: int
    width: int
    height: int
    video_clip_base64: Optional[str] = None
    video_mime_type: Optional[str] = None
    video_duration_ms: Optional[int] = None


class AnalysisEnvelope(WireModel):
    frame_id: int
    captured_at: int
    server_at: int
    latency_ms: int
    result: dict


class CombinedEnvelope(WireModel):
    frame_id: int
    captured_at: int
    server_at: int
    latency_ms: int
    lite: Optional[LiteAnalysisResult] = None
    fast: Optional[FastAnalysisResult] = None
    depth: Optional[DepthAnalysisResult] = None


# quality


class QualityProfile(WireModel):
    tier: QualityTier
    max_capture_side: int
    jpeg_quality: float
    fast_interval_ms: int
    depth_interval_ms: int
    max_visible_tags: int


class QualityTelemetry(WireModel):
    fast_rtt_ms: float
    depth_rtt_ms: float
    frame_time_ms: float
    tier: QualityTier
