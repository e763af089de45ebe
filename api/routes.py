"""
REST endpoints for lane analysis.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable

from fastapi import APIRouter, HTTPException, Request

from api.validation import PayloadError, parse_analyze_payload
from core.models import AnalysisEnvelope, AnalyzeRequest, CombinedEnvelope

router = APIRouter()
logger = logging.getLogger(__name__)

DISCONNECT_POLL_S = 0.1
CLIENT_CLOSED_REQUEST = 499


def _now_ms() -> int:
    return int(time.time() * 1000)


async def _read_payload(request: Request, max_side: int) -> AnalyzeRequest:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be valid JSON")
    try:
        return parse_analyze_payload(body, request.app.state.settings, max_side)
    except PayloadError as e:
        logger.debug(f"[api] rejected payload status={e.status} detail={e.detail}")
        raise HTTPException(status_code=e.status, detail=e.detail)


async def _unless_disconnected(request: Request, work: Awaitable[Any]) -> Any:
    """Await work, cancelling it and answering 499 if the client goes away first."""
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_S)
            if done:
                return task.result()
            if await request.is_disconnected():
                task.cancel()
                logger.debug(f"[api] client disconnected path={request.url.path}")
                raise HTTPException(status_code=CLIENT_CLOSED_REQUEST, detail="Request aborted by client")
    except asyncio.CancelledError:
        task.cancel()
        raise


async def _run_lane(request: Request, max_side: int, lane_call) -> dict:
    payload = await _read_payload(request, max_side)
    started_at = _now_ms()
    try:
        result = await _unless_disconnected(request, lane_call(payload))
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"[api] {request.url.path} failed")
        raise HTTPException(status_code=500, detail=str(e))
    envelope = AnalysisEnvelope(
        frame_id=payload.frame_id,
        captured_at=payload.captured_at,
        server_at=_now_ms(),
        latency_ms=_now_ms() - started_at,
        result=result.model_dump(by_alias=True),
    )
    return envelope.model_dump(by_alias=True)


@router.post("/analyze/lite")
async def analyze_lite(request: Request):
    """Primary emotion for the main face (fast lane)."""
    analyzer = request.app.state.analyzer
    return await _run_lane(
        request,
        request.app.state.settings.LANE_MAX_SIDE,
        lambda p: analyzer.analyze_lite(p.image, p.frame_id, p.captured_at),
    )


@router.post("/analyze/fast")
async def analyze_fast(request: Request):
    """Emotions with facial parts and landmarks (mid lane)."""
    analyzer = request.app.state.analyzer
    return await _run_lane(
        request,
        request.app.state.settings.LANE_MAX_SIDE,
        lambda p: analyzer.analyze_flash(p.image, p.frame_id, p.captured_at),
    )


@router.post("/analyze/depth")
async def analyze_depth(request: Request):
    """
    In-depth interpretation (deep lane).

    Accepts an optional short webm clip (videoClipBase64, videoMimeType,
    videoDurationMs) for temporal context.
    """
    analyzer = request.app.state.analyzer
    return await _run_lane(
        request,
        request.app.state.settings.LANE_MAX_SIDE,
        lambda p: analyzer.analyze_depth(
            p.image,
            p.frame_id,
            p.captured_at,
            video_clip_b64=p.video_clip_base64,
            video_mime_type=p.video_mime_type,
        ),
    )


@router.post("/analyze")
async def analyze_all(request: Request):
    """All three lanes on one frame."""
    analyzer = request.app.state.analyzer
    payload = await _read_payload(request, request.app.state.settings.COMBINED_MAX_SIDE)
    started_at = _now_ms()
    try:
        lite, fast, depth = await _unless_disconnected(
            request, analyzer.analyze_all(payload.image, payload.frame_id, payload.captured_at)
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("[api] /analyze failed")
        raise HTTPException(status_code=500, detail=str(e))
    envelope = CombinedEnvelope(
        frame_id=payload.frame_id,
        captured_at=payload.captured_at,
        server_at=_now_ms(),
        latency_ms=_now_ms() - started_at,
        lite=lite,
        fast=fast,
        depth=depth,
    )
    return envelope.model_dump(by_alias=True)
