import numpy as np

from core.layout import PlacedLabel
from core.visual import DEPTH_COLOR, draw_overlays, label_size


def test_label_size():
    w, h = label_size("happy (high)")
    assert w > 0 and h > 0
    assert label_size("a much longer label text")[0] > w


def test_draw_overlays_returns_annotated_copy():
    frame = np.zeros((120, 200, 3), dtype=np.uint8)
    w, h = label_size("fatigue")
    labels = [PlacedLabel(id="d1", text="fatigue", anchor_x=60, anchor_y=60, width=w, height=h,
                          priority=0.7, x=100, y=20)]
    out = draw_overlays(frame, labels, face_box=(40, 30, 60, 70), colors={"d1": DEPTH_COLOR})
    assert out.shape == frame.shape
    assert out.any()
    assert not frame.any()


def test_draw_overlays_tolerates_empty_and_out_of_range():
    frame = np.zeros((40, 40, 3), dtype=np.uint8)
    assert draw_overlays(frame).shape == frame.shape
    out = draw_overlays(frame, [], face_box=(-10, -10, 500, 500), stale_ids={"x"})
    assert out.shape == frame.shape
