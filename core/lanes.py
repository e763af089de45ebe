"""
Lane analysis: build the multimodal request for each lane, run it through the
fallback orchestrator, and sanitize the answer.

Lane calls never raise for backend trouble. Any failure is logged and the
lane's default result is returned instead, so one slow or broken lane never
blocks the others. Cancellation still propagates.
"""
from __future__ import annotations
import asyncio
import logging
from typing import Any, Dict, Optional

from core.backend import inline_part, text_part
from core.config import Settings
from core.models import DepthAnalysisResult, FastAnalysisResult, LiteAnalysisResult, FACIAL_PARTS
from core.orchestrator import FallbackOrchestrator, compute_timeout_ms, log_api_error
from core.sanitizer import (
    default_depth_result,
    default_flash_result,
    default_lite_result,
    safe_json_parse,
    sanitize_depth_result,
    sanitize_flash_result,
    sanitize_lite_result,
)

logger = logging.getLogger(__name__)

LITE_PROMPT = """Classify the primary emotional expression for the main face.
Return only JSON with:
- faceDetected: boolean
- confidence: number 0..1
- faceBox: [ymin, xmin, ymax, xmax] in 0..1000
- headPose: { pitch, yaw, roll } in degrees
- primaryEmotion: one of happy, sad, neutral, angry, surprised, fearful, disgusted, tired, stressed, focused
- primaryConfidence: number 0..1
- moodSentence: one concise sentence that describes the visible mood in plain language
- candidates: up to 4 items with { emotion, confidence }.
Keep it concise and do not output markdown."""

FLASH_PROMPT = f"""Provide basic facial insight analysis for one primary face.
Focus on practical emotional and fatigue-related cues with low-latency output.
Return only JSON with:
- faceDetected, confidence, faceBox, headPose
- emotions: up to 6 items with {{ emotion, intensity low|medium|high, confidence, facialPart, explanation }}
- landmarks: up to 12 items with {{ name, point [y, x] in 0..1000, confidence, facialPart }}
- facialPart must be one of: {','.join(FACIAL_PARTS)}
The explanation must be short (max 10 words)."""

PRO_PROMPT = """Provide an in-depth facial interpretation for one primary face.
Try to infer medically relevant possibilities from visible facial cues only.
Return only JSON with:
{
  "confidence": number,
  "summary": "2-4 sentence overall summary",
  "insights": [
    {
      "keyword": "...",
      "rationale": "3-6 sentences describing concrete observed visual clues and why they matter",
      "medicalInterpretation": "5-10 sentences: what the pattern is, why it can happen, why this face could match, key uncertainty or alternative explanation",
      "confidence": number,
      "facialPart": "leftEye|rightEye|nose|mouth|leftBrow|rightBrow|chin|forehead|faceCenter",
      "point": [y, x]
    }
  ]
}
Weigh how clear each clue is against how rare the condition is; in case of doubt do not mention the condition.
Common associations: puffy eyes or dark circles -> fatigue; pale skin or lips -> anemia;
persistent redness -> rosacea; furrowed brow -> chronic stress; dry lips -> dehydration;
unilateral droop or asymmetric smile -> Bell's palsy or stroke (rare).
Limit to up to 8 insights.
Important:
- Be specific, clinically descriptive, and cautious.
- Do not claim diagnosis certainty.
- Keep output JSON only, but do not compress explanations into short phrases."""

VIDEO_PROMPT_SUFFIX = (
    "\nUse both the still image and the short webcam video clip. "
    "Use motion and temporal cues from the clip when useful."
)

_HEAD_POSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "pitch": {"type": "NUMBER"},
        "yaw": {"type": "NUMBER"},
        "roll": {"type": "NUMBER"},
    },
}
_BOX_SCHEMA = {"type": "ARRAY", "items": {"type": "INTEGER"}}

LITE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "faceDetected": {"type": "BOOLEAN"},
        "confidence": {"type": "NUMBER"},
        "faceBox": _BOX_SCHEMA,
        "headPose": _HEAD_POSE_SCHEMA,
        "primaryEmotion": {"type": "STRING"},
        "primaryConfidence": {"type": "NUMBER"},
        "moodSentence": {"type": "STRING"},
        "candidates": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "emotion": {"type": "STRING"},
                    "confidence": {"type": "NUMBER"},
                },
            },
        },
    },
}

FLASH_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "faceDetected": {"type": "BOOLEAN"},
        "confidence": {"type": "NUMBER"},
        "faceBox": _BOX_SCHEMA,
        "headPose": _HEAD_POSE_SCHEMA,
        "emotions": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "emotion": {"type": "STRING"},
                    "intensity": {"type": "STRING"},
                    "confidence": {"type": "NUMBER"},
                    "facialPart": {"type": "STRING"},
                    "explanation": {"type": "STRING"},
                },
            },
        },
        "landmarks": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "name": {"type": "STRING"},
                    "point": _BOX_SCHEMA,
                    "confidence": {"type": "NUMBER"},
                    "facialPart": {"type": "STRING"},
                },
            },
        },
    },
}

PRO_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "confidence": {"type": "NUMBER"},
        "summary": {"type": "STRING"},
        "insights": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "keyword": {"type": "STRING"},
                    "rationale": {"type": "STRING"},
                    "medicalInterpretation": {"type": "STRING"},
                    "confidence": {"type": "NUMBER"},
                    "facialPart": {"type": "STRING"},
                    "point": _BOX_SCHEMA,
                },
            },
        },
    },
}

LITE_GENERATION_CONFIG = {
    "candidateCount": 1,
    "temperature": 0.1,
    "topP": 0.72,
    "maxOutputTokens": 240,
    "thinkingConfig": {"thinkingBudget": 0},
}
FLASH_GENERATION_CONFIG = {
    "candidateCount": 1,
    "temperature": 0.08,
    "topP": 0.68,
    "maxOutputTokens": 480,
    "thinkingConfig": {"thinkingBudget": 0},
}
PRO_GENERATION_CONFIG = {
    "candidateCount": 1,
    "temperature": 0.22,
    "topP": 0.86,
    "maxOutputTokens": 2600,
}


class LaneAnalyzer:
    def __init__(self, settings: Settings, orchestrator: FallbackOrchestrator):
        self.s = settings
        self.orchestrator = orchestrator

    def _model_for(self, lane: str, preferred: str) -> str:
        return self.orchestrator.sticky.get(lane) or preferred

    async def analyze_lite(self, image_b64: str, frame_id: int = 0, captured_at: Optional[int] = None,
                           timeout_ms: Optional[float] = None) -> LiteAnalysisResult:
        label = "Lite primary emotion"
        budget = compute_timeout_ms(timeout_ms, self.s.LITE_TIMEOUT_MS, image_b64, self.s.LITE_TIMEOUT_CAP_MS)
        try:
            text, model = await self.orchestrator.generate(
                lane="lite",
                label=label,
                preferred_model=self.s.LITE_MODEL,
                fallback_models=self.s.LITE_FALLBACK_MODELS,
                contents=[inline_part(image_b64, "image/jpeg"), text_part(LITE_PROMPT)],
                response_schema=LITE_SCHEMA,
                generation_config=LITE_GENERATION_CONFIG,
                timeout_ms=budget,
                context={"frame_id": frame_id},
            )
            return sanitize_lite_result(safe_json_parse(text), model, frame_id, captured_at)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_api_error(label, e, {"frame_id": frame_id})
            return default_lite_result(self._model_for("lite", self.s.LITE_MODEL), frame_id, captured_at)

    async def analyze_flash(self, image_b64: str, frame_id: int = 0, captured_at: Optional[int] = None,
                            timeout_ms: Optional[float] = None) -> FastAnalysisResult:
        label = "Flash insights"
        budget = compute_timeout_ms(timeout_ms, self.s.FLASH_TIMEOUT_MS, image_b64, self.s.FLASH_TIMEOUT_CAP_MS)
        try:
            text, model = await self.orchestrator.generate(
                lane="flash",
                label=label,
                preferred_model=self.s.FLASH_MODEL,
                fallback_models=self.s.FLASH_FALLBACK_MODELS,
                contents=[inline_part(image_b64, "image/jpeg"), text_part(FLASH_PROMPT)],
                response_schema=FLASH_SCHEMA,
                generation_config=FLASH_GENERATION_CONFIG,
                timeout_ms=budget,
                context={"frame_id": frame_id},
            )
            return sanitize_flash_result(safe_json_parse(text), model, frame_id, captured_at)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_api_error(label, e, {"frame_id": frame_id})
            return default_flash_result(self._model_for("flash", self.s.FLASH_MODEL), frame_id, captured_at)

    async def analyze_depth(self, image_b64: str, frame_id: int = 0, captured_at: Optional[int] = None,
                            timeout_ms: Optional[float] = None,
                            video_clip_b64: Optional[str] = None,
                            video_mime_type: Optional[str] = None) -> DepthAnalysisResult:
        """Deep lane; an attached webm clip adds temporal context and extra time budget."""
        label = "Pro medical interpretation"
        budget = compute_timeout_ms(timeout_ms, self.s.PRO_TIMEOUT_MS, image_b64, self.s.PRO_TIMEOUT_CAP_MS)
        has_video = bool(video_clip_b64 and video_mime_type)
        if has_video:
            budget = min(budget + self.s.PRO_VIDEO_EXTRA_MS, self.s.PRO_TIMEOUT_CAP_MS + self.s.PRO_VIDEO_EXTRA_MS)

        contents = [inline_part(image_b64, "image/jpeg")]
        if has_video:
            contents.append(inline_part(video_clip_b64, video_mime_type))
        contents.append(text_part(PRO_PROMPT + VIDEO_PROMPT_SUFFIX if has_video else PRO_PROMPT))

        try:
            text, model = await self.orchestrator.generate(
                lane="pro",
                label=label,
                preferred_model=self.s.PRO_MODEL,
                fallback_models=self.s.PRO_FALLBACK_MODELS,
                contents=contents,
                response_schema=PRO_SCHEMA,
                generation_config=PRO_GENERATION_CONFIG,
                timeout_ms=budget,
                context={"frame_id": frame_id, "has_video": has_video},
            )
            return sanitize_depth_result(safe_json_parse(text), model, frame_id, captured_at)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_api_error(label, e, {"frame_id": frame_id})
            return default_depth_result(self._model_for("pro", self.s.PRO_MODEL), frame_id, captured_at)

    async def analyze_all(self, image_b64: str, frame_id: int = 0, captured_at: Optional[int] = None):
        """Run the three lanes concurrently on one frame -> (lite, flash, depth)."""
        logger.debug(f"[lanes] analyze_all frame_id={frame_id}")
        lite, flash, depth = await asyncio.gather(
            self.analyze_lite(image_b64, frame_id, captured_at),
            self.analyze_flash(image_b64, frame_id, captured_at),
            self.analyze_depth(image_b64, frame_id, captured_at),
        )
        return lite, flash, depth
