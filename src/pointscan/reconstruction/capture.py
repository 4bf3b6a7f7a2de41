"""
Capture Collaborators

Interfaces for the device-side inputs the fusion engine consumes:
- tracked feature-point clouds and detected planes (event streams)
- depth-distance queries against the device's depth map
- a reference video frame and the active camera

Also provides RecordedCapture, which replays a session saved as JSON
through the same interfaces.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import cv2
import numpy as np

from .camera import CameraIntrinsics, CameraPose

logger = logging.getLogger(__name__)

PIXEL_FORMATS = {
    # format -> (channels, cv2 conversion to RGB or None)
    'rgb': (3, None),
    'bgr': (3, cv2.COLOR_BGR2RGB),
    'rgba': (4, cv2.COLOR_RGBA2RGB),
    'bgra': (4, cv2.COLOR_BGRA2RGB),
    'gray': (1, cv2.COLOR_GRAY2RGB),
}


@dataclass
class TrackedPointCloud:
    """Feature points reported by the tracker under one stable identifier"""
    trackable_id: str
    positions: Optional[np.ndarray]  # Nx3, None when the tracker has no data yet


@dataclass
class SurfacePatch:
    """
    Detected flat region

    The patch's local frame has its plane spanned by local x and z (y is the
    normal). center and boundary are expressed in that plane.
    """
    trackable_id: str
    position: np.ndarray       # origin of the local frame in world coordinates
    rotation: np.ndarray       # 3x3 local-to-world rotation
    center: np.ndarray         # (x, z) center of the rectangle in the local plane
    half_extents: np.ndarray   # (x, z) half-size of the rectangle
    boundary: np.ndarray       # Mx2 polygon (x, z) in the local plane

    def local_to_world(self, local_points: np.ndarray) -> np.ndarray:
        local_points = np.asarray(local_points, dtype=np.float64).reshape(-1, 3)
        return (np.asarray(self.rotation, dtype=np.float64) @ local_points.T).T + self.position

    def world_to_local(self, world_points: np.ndarray) -> np.ndarray:
        world_points = np.asarray(world_points, dtype=np.float64).reshape(-1, 3)
        return (np.asarray(self.rotation, dtype=np.float64).T @ (world_points - self.position).T).T

    @classmethod
    def from_dict(cls, data: dict) -> 'SurfacePatch':
        return cls(
            trackable_id=str(data['id']),
            position=np.array(data.get('position', [0.0, 0.0, 0.0]), dtype=np.float64),
            rotation=np.array(data.get('rotation', np.eye(3)), dtype=np.float64),
            center=np.array(data.get('center', [0.0, 0.0]), dtype=np.float64),
            half_extents=np.array(data['half_extents'], dtype=np.float64),
            boundary=np.array(data['boundary'], dtype=np.float64).reshape(-1, 2),
        )


@dataclass
class PointCloudsChanged:
    added: List[TrackedPointCloud] = field(default_factory=list)
    updated: List[TrackedPointCloud] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)


@dataclass
class PlanesChanged:
    added: List[SurfacePatch] = field(default_factory=list)
    updated: List[SurfacePatch] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)


class EventStream:
    """Single producer notification stream with explicit subscription"""

    def __init__(self, name: str = ""):
        self.name = name
        self._handlers: List[Callable] = []

    def subscribe(self, handler: Callable):
        if handler not in self._handlers:
            self._handlers.append(handler)

    def unsubscribe(self, handler: Callable):
        if handler in self._handlers:
            self._handlers.remove(handler)

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def emit(self, event):
        for handler in list(self._handlers):
            handler(event)


@dataclass
class FrameSnapshot:
    """Raw video frame as delivered by the device"""
    data: Union[bytes, np.ndarray]
    width: int
    height: int
    pixel_format: str = 'rgba'
    mirror_y: bool = False  # rows stored bottom-up

    def to_rgb(self) -> Optional[np.ndarray]:
        """
        Convert to an HxWx3 uint8 RGB buffer with row 0 at the top

        Returns:
            Pixel buffer, or None if the raw data does not match the declared layout
        """
        if self.pixel_format not in PIXEL_FORMATS:
            logger.warning(f"Unsupported pixel format: {self.pixel_format}")
            return None
        channels, conversion = PIXEL_FORMATS[self.pixel_format]

        if isinstance(self.data, (bytes, bytearray)):
            raw = np.frombuffer(self.data, dtype=np.uint8).copy()
        else:
            raw = np.asarray(self.data, dtype=np.uint8)
        expected = self.width * self.height * channels
        if self.width <= 0 or self.height <= 0 or raw.size != expected:
            logger.warning(
                f"Frame buffer size {raw.size} does not match "
                f"{self.width}x{self.height}x{channels}"
            )
            return None

        image = raw.reshape(self.height, self.width, channels) if channels > 1 \
            else raw.reshape(self.height, self.width)
        if conversion is not None:
            image = cv2.cvtColor(image, conversion)
        if self.mirror_y:
            image = cv2.flip(image, 0)
        return np.ascontiguousarray(image)


class FrameSource(ABC):
    """Supplies the current video frame and the camera that captured it"""

    @abstractmethod
    def capture_frame(self) -> Optional[FrameSnapshot]:
        """Latest frame, or None if no frame is available"""

    @abstractmethod
    def camera_pose(self) -> CameraPose:
        """Active camera pose in world coordinates"""

    @abstractmethod
    def camera_intrinsics(self) -> CameraIntrinsics:
        """Active camera intrinsics (image_size is the screen size)"""


class DepthSource(ABC):
    """Device depth map with the device's own ray/surface distance query"""

    def request_best_mode(self):
        """Ask the device for its most accurate depth mode"""

    @abstractmethod
    def depth_map_size(self) -> Optional[Tuple[int, int]]:
        """(width, height) of the current depth map, None if unavailable"""

    @abstractmethod
    def query_distance(self, normalized_x: float, normalized_y: float) -> Optional[float]:
        """Distance along the screen ray to the sensed surface, None on a miss"""


class RecordedCapture(FrameSource, DepthSource):
    """
    Capture session replayed from disk

    JSON layout:
        {
          "camera": {"pose": {...}, "intrinsics": {...}},
          "frame": "frame.png",                  (relative to the JSON file)
          "point_cloud_events": [{"added": [...], "updated": [...], "removed": [...]}],
          "plane_events": [{"added": [...], "updated": [...], "removed": [...]}],
          "depth": {"distances": [[...], ...]}   (row-major, null = miss)
        }
    """

    def __init__(
        self,
        pose: CameraPose,
        intrinsics: CameraIntrinsics,
        frame: Optional[np.ndarray] = None,
        depth: Optional[np.ndarray] = None,
        point_cloud_events: Optional[List[PointCloudsChanged]] = None,
        plane_events: Optional[List[PlanesChanged]] = None
    ):
        self.pose = pose
        self.intrinsics = intrinsics
        self.frame = frame
        self.depth = depth
        self.point_cloud_events = point_cloud_events or []
        self.plane_events = plane_events or []
        self.requested_best_mode = False

        self.point_cloud_stream = EventStream('point_clouds')
        self.plane_stream = EventStream('planes')

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> 'RecordedCapture':
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Session file not found: {path}")

        with open(path, 'r') as f:
            data = json.load(f)

        camera = data['camera']
        frame = None
        if data.get('frame'):
            frame_path = path.parent / data['frame']
            image = cv2.imread(str(frame_path), cv2.IMREAD_COLOR)
            if image is None:
                logger.warning(f"Could not read frame image: {frame_path}")
            else:
                frame = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

        depth = None
        if data.get('depth'):
            depth = np.array(
                [[np.nan if d is None else d for d in row] for row in data['depth']['distances']],
                dtype=np.float64
            )

        point_events = [
            PointCloudsChanged(
                added=[_tracked_from_dict(p) for p in event.get('added', [])],
                updated=[_tracked_from_dict(p) for p in event.get('updated', [])],
                removed=[str(i) for i in event.get('removed', [])],
            )
            for event in data.get('point_cloud_events', [])
        ]
        plane_events = [
            PlanesChanged(
                added=[SurfacePatch.from_dict(p) for p in event.get('added', [])],
                updated=[SurfacePatch.from_dict(p) for p in event.get('updated', [])],
                removed=[str(i) for i in event.get('removed', [])],
            )
            for event in data.get('plane_events', [])
        ]

        logger.info(
            f"Loaded session {path.name}: {len(point_events)} point events, "
            f"{len(plane_events)} plane events, depth={'yes' if depth is not None else 'no'}"
        )
        return cls(
            pose=CameraPose.from_dict(camera['pose']),
            intrinsics=CameraIntrinsics.from_dict(camera['intrinsics']),
            frame=frame,
            depth=depth,
            point_cloud_events=point_events,
            plane_events=plane_events,
        )

    def replay(self):
        """Emit every recorded event on the streams, in recorded order"""
        for event in self.point_cloud_events:
            self.point_cloud_stream.emit(event)
        for event in self.plane_events:
            self.plane_stream.emit(event)

    # FrameSource

    def capture_frame(self) -> Optional[FrameSnapshot]:
        if self.frame is None:
            return None
        height, width = self.frame.shape[:2]
        return FrameSnapshot(self.frame.tobytes(), width, height, pixel_format='rgb')

    def camera_pose(self) -> CameraPose:
        return self.pose

    def camera_intrinsics(self) -> CameraIntrinsics:
        return self.intrinsics

    # DepthSource

    def request_best_mode(self):
        self.requested_best_mode = True

    def depth_map_size(self) -> Optional[Tuple[int, int]]:
        if self.depth is None:
            return None
        return (self.depth.shape[1], self.depth.shape[0])

    def query_distance(self, normalized_x: float, normalized_y: float) -> Optional[float]:
        if self.depth is None:
            return None
        height, width = self.depth.shape
        x = min(int(normalized_x * width), width - 1)
        y = min(int(normalized_y * height), height - 1)
        distance = self.depth[y, x]
        if np.isnan(distance):
            return None
        return float(distance)


def _tracked_from_dict(data: dict) -> TrackedPointCloud:
    positions = data.get('positions')
    return TrackedPointCloud(
        trackable_id=str(data['id']),
        positions=None if positions is None else np.array(positions, dtype=np.float64).reshape(-1, 3),
    )
