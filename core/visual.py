"""Overlay rendering helpers.

- draw_overlays: draw the tracked face box, connector lines from each anchor to
  its placed label, and the label cards themselves
- label_size: measure a label card so layout can reserve space for it

Layout decides where labels go; this module only draws them.
"""
from __future__ import annotations
import cv2
import numpy as np
from typing import Dict, List, Optional, Tuple

from core.layout import PlacedLabel

FONT = cv2.FONT_HERSHEY_SIMPLEX
FONT_SCALE = 0.5
FONT_THICKNESS = 1
CARD_PAD_X = 6
CARD_PAD_Y = 5

EMOTION_COLOR = (80, 200, 255)
DEPTH_COLOR = (255, 170, 90)
DEFAULT_COLOR = (0, 255, 0)


def label_size(text: str) -> Tuple[int, int]:
    """(width, height) in pixels of a label card for text."""
    (tw, th), baseline = cv2.getTextSize(text, FONT, FONT_SCALE, FONT_THICKNESS)
    return tw + 2 * CARD_PAD_X, th + baseline + 2 * CARD_PAD_Y


def draw_overlays(frame: np.ndarray,
                  labels: List[PlacedLabel] | None = None,
                  face_box: Optional[Tuple[int, int, int, int]] = None,
                  colors: Optional[Dict[str, Tuple[int, int, int]]] = None,
                  stale_ids: Optional[set] = None) -> np.ndarray:
    """Draw face box, connectors and label cards on a copy of frame.

    Args:
        frame: BGR image
        labels: placed labels in pixel space (from layout_labels)
        face_box: optional (x, y, w, h) in pixels
        colors: optional BGR color per label id
        stale_ids: label ids drawn dimmed

    Returns:
        Annotated copy of the frame
    """
    out = frame.copy()
    h, w = out.shape[:2]
    colors = colors or {}
    stale_ids = stale_ids or set()

    if face_box is not None:
        x, y, fw, fh = (int(v) for v in face_box)
        # clamp to image bounds
        x = max(0, min(x, w - 1)); y = max(0, min(y, h - 1))
        fw = max(0, min(fw, w - x)); fh = max(0, min(fh, h - y))
        cv2.rectangle(out, (x, y), (x + fw, y + fh), DEFAULT_COLOR, 1)

    for label in labels or []:
        color = colors.get(label.id, DEFAULT_COLOR)
        if label.id in stale_ids:
            color = tuple(int(c * 0.55) for c in color)
        x0, y0 = int(round(label.x)), int(round(label.y))
        x1, y1 = int(round(label.x + label.width)), int(round(label.y + label.height))
        ax, ay = int(round(label.anchor_x)), int(round(label.anchor_y))

        # connector to the nearest card edge center
        cx = min(max(ax, x0), x1)
        cy = min(max(ay, y0), y1)
        cv2.line(out, (ax, ay), (cx, cy), color, 1, cv2.LINE_AA)
        cv2.circle(out, (ax, ay), 3, color, -1, cv2.LINE_AA)

        cv2.rectangle(out, (x0, y0), (x1, y1), (20, 20, 20), -1)
        cv2.rectangle(out, (x0, y0), (x1, y1), color, 1)
        cv2.putText(out, label.text, (x0 + CARD_PAD_X, y1 - CARD_PAD_Y - 2),
                    FONT, FONT_SCALE, color, FONT_THICKNESS, cv2.LINE_AA)

    return out
