import sys, types

import numpy as np

from core.tracking import FACIAL_PART_INDICES, MediaPipeTracker, frame_from_landmarks, to_grid_point


def _mesh_xy(n=478):
    # deterministic spread of normalized points
    return [((i % 20) / 20.0 + 0.01, (i // 20) / 25.0 + 0.01) for i in range(n)]


def test_to_grid_point_is_y_x():
    assert to_grid_point(0.25, 0.75) == (750, 250)
    assert to_grid_point(-1, 2) == (1000, 0)


def test_frame_from_landmarks():
    xy = _mesh_xy()
    frame = frame_from_landmarks(xy, timestamp_ms=42)
    assert frame.timestamp_ms == 42
    assert len(frame.points) == len(xy)
    assert frame.parts["mouth"] == to_grid_point(*xy[13])
    assert frame.parts["faceCenter"] == frame.parts["nose"]
    assert set(frame.parts) == set(FACIAL_PART_INDICES)
    ymin, xmin, ymax, xmax = frame.face_box
    assert ymin < ymax and xmin < xmax


def test_landmark_lookup_and_nearest_index():
    xy = _mesh_xy()
    frame = frame_from_landmarks(xy, 0)
    assert frame.landmark(13) == to_grid_point(*xy[13])
    assert frame.landmark(9999) is None
    assert frame.landmark(None) is None
    assert frame.nearest_index(to_grid_point(*xy[152])) == 152


def test_empty_landmarks():
    assert frame_from_landmarks([], 0) is None


class FakeFaceMesh:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.closed = False

    def process(self, rgb):
        lms = [types.SimpleNamespace(x=x, y=y) for x, y in _mesh_xy()]
        return types.SimpleNamespace(multi_face_landmarks=[types.SimpleNamespace(landmark=lms)])

    def close(self):
        self.closed = True


def test_mediapipe_tracker_with_fake_module(monkeypatch):
    fake_mp = types.SimpleNamespace(solutions=types.SimpleNamespace(face_mesh=types.SimpleNamespace(FaceMesh=FakeFaceMesh)))
    monkeypatch.setitem(sys.modules, "mediapipe", fake_mp)

    tracker = MediaPipeTracker()
    assert tracker.track(np.zeros((10, 10, 3), dtype=np.uint8), 0) is None  # not initialised
    tracker.init()
    assert tracker.ready
    assert tracker._mesh.kwargs["max_num_faces"] == 1

    frame = tracker.track(np.zeros((48, 64, 3), dtype=np.uint8), 7)
    assert frame is not None and frame.timestamp_ms == 7
    assert "leftEye" in frame.parts
    tracker.close()
    assert not tracker.ready
