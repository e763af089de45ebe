"""Run live camera overlay.

Usage:
    uvicorn api.main:app --reload  # (separate, for API)
    python scripts/live_overlay.py  # (to see camera overlay window)
    python scripts/live_overlay.py --local  # (call the backend in-process, no API)

Press 'q' to quit the window.
"""
from __future__ import annotations
import argparse
import asyncio
import logging

import cv2

from core.config import Settings
from core.live import HttpLaneClient, LiveOverlaySession, LocalLaneClient
from core.tracking import MediaPipeTracker

logger = logging.getLogger("live_overlay")


def build_client(settings: Settings, local: bool):
    if not local:
        return HttpLaneClient(settings), None
    from core.backend import GeminiClient
    from core.lanes import LaneAnalyzer
    from core.orchestrator import FallbackOrchestrator

    backend = GeminiClient(settings)
    return LocalLaneClient(LaneAnalyzer(settings, FallbackOrchestrator(settings, backend))), backend


async def run(settings: Settings, camera_index: int, local: bool) -> None:
    cap = cv2.VideoCapture(camera_index)
    if not cap.isOpened():
        raise RuntimeError(f"Could not open camera index {camera_index}")

    tracker = MediaPipeTracker()
    tracker.init()
    client, backend = build_client(settings, local)
    session = LiveOverlaySession(settings, client, tracker=tracker)
    session.start()
    try:
        while True:
            ok, frame = await asyncio.to_thread(cap.read)
            if not ok:
                await asyncio.sleep(0.05)
                continue
            session.update_frame(frame)
            cv2.imshow("Live Face Overlay", session.render(frame))
            if cv2.waitKey(1) & 0xFF == ord("q"):
                break
            # let lane loops run between frames
            await asyncio.sleep(0)
    finally:
        await session.stop()
        await client.close()
        if backend is not None:
            await backend.close()
        tracker.close()
        cap.release()
        cv2.destroyAllWindows()
        result = session.telemetry.evaluate()
        logger.info(f"[live] perf snapshot={result.snapshot} passes={result.passes}")


def main():
    p = argparse.ArgumentParser()
    p.add_argument("--camera", type=int, default=None, help="Camera index (default: CAMERA_INDEX)")
    p.add_argument("--local", action="store_true", help="Run lanes in-process instead of calling the API")
    args = p.parse_args()

    s = Settings()
    logging.basicConfig(level=getattr(logging, s.LOG_LEVEL))
    asyncio.run(run(s, s.CAMERA_INDEX if args.camera is None else args.camera, args.local))


if __name__ == '__main__':
    main()
