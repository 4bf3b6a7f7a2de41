"""Shared fixtures: a pinhole camera, a gradient frame and fake capture devices"""

import numpy as np
import pytest

from pointscan.reconstruction import (
    CameraIntrinsics,
    CameraPose,
    DepthSource,
    FrameSnapshot,
    FrameSource,
)

FRAME_SIZE = 100


def make_gradient_frame(size: int = FRAME_SIZE) -> np.ndarray:
    """RGB frame where red = column, green = row, blue = 200"""
    frame = np.zeros((size, size, 3), dtype=np.uint8)
    cols, rows = np.meshgrid(np.arange(size), np.arange(size))
    frame[..., 0] = cols
    frame[..., 1] = rows
    frame[..., 2] = 200
    return frame


class FakeFrameSource(FrameSource):
    """Camera one unit behind the origin, looking down +z"""

    def __init__(self, frame=None, pose=None, intrinsics=None, on_capture=None):
        self.frame = frame
        self.pose = pose or CameraPose(rotation=np.eye(3), position=np.array([0.0, 0.0, -1.0]))
        self.intrinsics = intrinsics or CameraIntrinsics.from_pinhole(
            100.0, 100.0, 50.0, 50.0, (FRAME_SIZE, FRAME_SIZE)
        )
        self.on_capture = on_capture
        self.capture_count = 0

    def capture_frame(self):
        self.capture_count += 1
        if self.on_capture is not None:
            self.on_capture()
        if self.frame is None:
            return None
        height, width = self.frame.shape[:2]
        return FrameSnapshot(self.frame.tobytes(), width, height, pixel_format='rgb')

    def camera_pose(self):
        return self.pose

    def camera_intrinsics(self):
        return self.intrinsics


class FakeDepthSource(DepthSource):
    """Depth map of a fixed size answering with distance_fn(nx, ny)"""

    def __init__(self, size=(8, 8), distance_fn=None):
        self.size = size
        self.distance_fn = distance_fn or (lambda nx, ny: 1.0)
        self.best_mode_requests = 0
        self.queries = []

    def request_best_mode(self):
        self.best_mode_requests += 1

    def depth_map_size(self):
        return self.size

    def query_distance(self, normalized_x, normalized_y):
        self.queries.append((normalized_x, normalized_y))
        return self.distance_fn(normalized_x, normalized_y)


@pytest.fixture
def gradient_frame():
    return make_gradient_frame()


@pytest.fixture
def intrinsics():
    return CameraIntrinsics.from_pinhole(100.0, 100.0, 50.0, 50.0, (FRAME_SIZE, FRAME_SIZE))


@pytest.fixture
def frame_source(gradient_frame):
    return FakeFrameSource(frame=gradient_frame)
