"""
CLI to analyze a single image with all three lanes -> JSON.
"""
from __future__ import annotations
import argparse, asyncio, json, logging, os

import cv2

from core.backend import GeminiClient
from core.capture import encode_frame
from core.config import Settings
from core.lanes import LaneAnalyzer
from core.orchestrator import FallbackOrchestrator


async def analyze_image(path: str, settings: Settings) -> dict:
    frame = cv2.imread(path)
    if frame is None:
        raise FileNotFoundError(f"Image not found or unreadable: {path}")
    capture = encode_frame(frame, settings.COMBINED_MAX_SIDE, 0.8)

    backend = GeminiClient(settings)
    try:
        analyzer = LaneAnalyzer(settings, FallbackOrchestrator(settings, backend))
        lite, flash, depth = await analyzer.analyze_all(capture.image, 1, capture.captured_at)
    finally:
        await backend.close()
    return {
        "lite": lite.model_dump(by_alias=True),
        "fast": flash.model_dump(by_alias=True),
        "depth": depth.model_dump(by_alias=True),
    }


def main():
    p = argparse.ArgumentParser()
    p.add_argument("--image", required=True, help="Path to input image")
    p.add_argument("--out", default="output/analysis.json", help="Path to output JSON")
    args = p.parse_args()

    settings = Settings()
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL))
    result = asyncio.run(analyze_image(args.image, settings))
    print(json.dumps(result, indent=2, ensure_ascii=False))

    # Also write to file
    os.makedirs(os.path.dirname(args.out) or ".", exist_ok=True)
    with open(args.out, "w", encoding="utf-8") as f:
        json.dump(result, f, indent=2, ensure_ascii=False)
    print(f"Analysis written to {args.out}")

if __name__ == "__main__":
    main()
