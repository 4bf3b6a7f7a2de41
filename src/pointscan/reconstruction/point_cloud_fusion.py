"""
Point Cloud Fusion Engine

Merges three capture sources into one deduplicated, colorized point set:

1. Tracked feature points:
   - Replaced wholesale per tracking identifier on every update
   - Trusted as-is, never deduplicated

2. Plane sampling:
   - Each detected plane is sampled on a regular grid in its local plane
   - Samples outside the plane's boundary polygon are rejected (even-odd rule)
   - Accepted samples are snapped to the fine grid and stored once

3. Depth reprojection (at stop only):
   - A regular subsample of depth-map pixels is cast into the scene
   - Distances outside (0, max_depth) are sensor noise
   - Points are snapped to a grid twice as coarse and skipped when the cell
     is already occupied

Session protocol:
    engine = PointCloudFusion(settings, frame_source=camera, depth_source=lidar)
    engine.subscribe(point_cloud_stream, plane_stream)
    engine.start()
    ...                      # events arrive on the streams
    status = engine.stop()   # captures one frame and builds the cloud
    engine.positions, engine.colors
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from .camera import ColorBackProjector, UNKNOWN_COLOR, screen_point_to_ray
from .capture import (
    DepthSource,
    EventStream,
    FrameSource,
    PlanesChanged,
    PointCloudsChanged,
    SurfacePatch,
    TrackedPointCloud,
)
from .spatial_hash import SpatialHashGrid

logger = logging.getLogger(__name__)


class FinalizeStatus(Enum):
    """Outcome of stop()"""
    COMPLETED = 'completed'
    NO_FRAME = 'no_frame'      # no reference frame could be captured; cloud is empty
    CANCELLED = 'cancelled'    # cancel() during finalize; cloud is empty
    IDLE = 'idle'              # stop() while not scanning; nothing happened


@dataclass
class FusionSettings:
    """Fusion engine parameters"""
    use_feature_points: bool = True
    use_plane_mesh: bool = True
    use_depth_data: bool = True
    depth_sampling_step: int = 4        # depth-map pixels between samples
    plane_mesh_resolution: float = 0.05  # plane sampling step and fine grid cell
    depth_cell_multiple: int = 2         # depth grid cell = multiple * fine cell
    max_depth: float = 20.0
    unknown_color: Tuple[int, int, int] = UNKNOWN_COLOR

    @classmethod
    def from_config(cls, cfg) -> 'FusionSettings':
        """Build from a ScanConfig"""
        return cls(
            use_feature_points=cfg.use_feature_points,
            use_plane_mesh=cfg.use_plane_mesh,
            use_depth_data=cfg.use_depth_data,
            depth_sampling_step=cfg.depth_sampling_step,
            plane_mesh_resolution=cfg.plane_mesh_resolution,
            max_depth=cfg.max_depth,
            unknown_color=cfg.unknown_color,
        )


@dataclass
class FusedCloud:
    """Final output of one scan session"""
    positions: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.float64))
    colors: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.uint8))
    num_tracked: int = 0
    num_plane: int = 0
    num_depth: int = 0

    def __len__(self) -> int:
        return len(self.positions)


def points_in_polygon(points: np.ndarray, polygon: np.ndarray) -> np.ndarray:
    """
    Even-odd (crossing number) point-in-polygon test

    Args:
        points: Nx2 query points
        polygon: Mx2 polygon vertices (closed implicitly)

    Returns:
        N boolean mask
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    polygon = np.asarray(polygon, dtype=np.float64).reshape(-1, 2)
    px = points[:, 0]
    py = points[:, 1]
    inside = np.zeros(len(points), dtype=bool)

    j = len(polygon) - 1
    for i in range(len(polygon)):
        xi, yi = polygon[i]
        xj, yj = polygon[j]
        straddles = (yi > py) != (yj > py)
        if np.any(straddles):
            # yi != yj wherever straddles holds
            x_cross = (xj - xi) * (py[straddles] - yi) / (yj - yi) + xi
            crossing = np.zeros_like(inside)
            crossing[straddles] = px[straddles] < x_cross
            inside ^= crossing
        j = i

    return inside


def sample_surface_patch(patch: SurfacePatch, step: float) -> np.ndarray:
    """
    Sample a plane on a regular grid, keeping samples inside its boundary

    Args:
        patch: Detected plane
        step: Target spacing between samples

    Returns:
        Kx3 world positions of the accepted samples
    """
    boundary = np.asarray(patch.boundary, dtype=np.float64).reshape(-1, 2)
    if len(boundary) < 3:
        return np.zeros((0, 3), dtype=np.float64)

    size_x, size_z = 2.0 * np.asarray(patch.half_extents, dtype=np.float64)
    steps_x = max(1, int(size_x / step))
    steps_z = max(1, int(size_z / step))

    fx = np.arange(steps_x + 1) / float(steps_x) - 0.5
    fz = np.arange(steps_z + 1) / float(steps_z) - 0.5
    gx, gz = np.meshgrid(fx * size_x, fz * size_z, indexing='ij')

    local = np.zeros((gx.size, 3), dtype=np.float64)
    local[:, 0] = gx.ravel() + patch.center[0]
    local[:, 2] = gz.ravel() + patch.center[1]
    world = patch.local_to_world(local)

    # membership is tested in the plane's own frame
    in_plane = patch.world_to_local(world)[:, [0, 2]]
    mask = points_in_polygon(in_plane, boundary)
    return world[mask]


class PointCloudFusion:
    """
    Scan session state machine (Idle -> Scanning -> Idle)

    Event handlers and stop() share one lock, so an update is never observed
    half-applied. stop() is not meant to be called concurrently by several
    controllers; concurrent calls are serialized by the lock.
    """

    def __init__(
        self,
        settings: Optional[FusionSettings] = None,
        frame_source: Optional[FrameSource] = None,
        depth_source: Optional[DepthSource] = None,
        back_projector: Optional[ColorBackProjector] = None
    ):
        """
        Initialize fusion engine

        Args:
            settings: Engine parameters (default: FusionSettings())
            frame_source: Reference frame + camera; without it stop() yields NO_FRAME
            depth_source: Device depth query; optional
            back_projector: Color lookup (default: gray for unknown)
        """
        self.settings = settings or FusionSettings()
        self.frame_source = frame_source
        self.depth_source = depth_source
        self.back_projector = back_projector or ColorBackProjector(self.settings.unknown_color)

        self._lock = threading.RLock()
        self._cancel = threading.Event()
        self._scanning = False
        self._on_scan_complete: Optional[Callable] = None

        self._tracked: Dict[str, np.ndarray] = {}
        self._accepted = SpatialHashGrid(self.settings.plane_mesh_resolution)
        self._cloud = FusedCloud()
        self.last_status: Optional[FinalizeStatus] = None

        self._point_stream: Optional[EventStream] = None
        self._plane_stream: Optional[EventStream] = None

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def subscribe(
        self,
        point_cloud_stream: Optional[EventStream] = None,
        plane_stream: Optional[EventStream] = None
    ):
        """Register the engine's handlers on the enabled capture streams"""
        self.unsubscribe()
        if point_cloud_stream is not None and self.settings.use_feature_points:
            point_cloud_stream.subscribe(self.on_point_clouds_changed)
            self._point_stream = point_cloud_stream
        if plane_stream is not None and self.settings.use_plane_mesh:
            plane_stream.subscribe(self.on_planes_changed)
            self._plane_stream = plane_stream

        if self._plane_stream is None and self.settings.use_plane_mesh:
            logger.info("No plane stream; plane sampling contributes no points")

    def unsubscribe(self):
        if self._point_stream is not None:
            self._point_stream.unsubscribe(self.on_point_clouds_changed)
            self._point_stream = None
        if self._plane_stream is not None:
            self._plane_stream.unsubscribe(self.on_planes_changed)
            self._plane_stream = None

    # ------------------------------------------------------------------
    # Session API
    # ------------------------------------------------------------------

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    @property
    def cloud(self) -> FusedCloud:
        return self._cloud

    @property
    def positions(self) -> np.ndarray:
        return self._cloud.positions.copy()

    @property
    def colors(self) -> np.ndarray:
        return self._cloud.colors.copy()

    @property
    def tracked_groups(self) -> Dict[str, np.ndarray]:
        with self._lock:
            return {k: v.copy() for k, v in self._tracked.items()}

    @property
    def accepted_keys(self) -> List[Tuple[int, int, int]]:
        with self._lock:
            return self._accepted.keys()

    def start(self, on_complete: Optional[Callable] = None):
        """
        Begin a scan, discarding the previous session's data

        No-op while already scanning.
        """
        with self._lock:
            if self._scanning:
                return

            self._cloud = FusedCloud()
            self._tracked.clear()
            self._accepted.clear()
            self._cancel.clear()
            self.last_status = None

            self._scanning = True
            self._on_scan_complete = on_complete

            if self.depth_source is not None and self.settings.use_depth_data:
                self.depth_source.request_best_mode()

        logger.info(
            f"Scan started - feature: {self.settings.use_feature_points}, "
            f"plane: {self.settings.use_plane_mesh}, depth: {self.settings.use_depth_data}"
        )

    def stop(self, on_complete: Optional[Callable] = None) -> FinalizeStatus:
        """
        End the scan and build the fused cloud

        Callbacks (the one given to start(), then this one) run once the cloud is
        published; they are skipped when stop() is a no-op or was cancelled.

        Returns:
            FinalizeStatus of this call
        """
        with self._lock:
            if not self._scanning:
                return FinalizeStatus.IDLE

            self._scanning = False
            self._cancel.clear()
            status, cloud = self._finalize()
            if status is not FinalizeStatus.CANCELLED:
                self._cloud = cloud
            self.last_status = status
            session_callback = self._on_scan_complete
            self._on_scan_complete = None

        if status is FinalizeStatus.NO_FRAME:
            logger.warning("Scan stopped without a reference frame; no points collected")
        elif status is FinalizeStatus.CANCELLED:
            logger.info("Scan finalize cancelled; no points collected")
            return status
        else:
            logger.info(
                f"Scan stopped. Total points: {len(cloud)} "
                f"(tracked {cloud.num_tracked}, plane {cloud.num_plane}, depth {cloud.num_depth})"
            )

        if session_callback is not None:
            session_callback()
        if on_complete is not None:
            on_complete()
        return status

    def cancel(self):
        """Abandon an in-flight finalize; the cloud stays empty"""
        self._cancel.set()

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def on_point_clouds_changed(self, event: PointCloudsChanged):
        with self._lock:
            if not self._scanning:
                return
            for point_cloud in event.added:
                self._update_tracked_points(point_cloud)
            for point_cloud in event.updated:
                self._update_tracked_points(point_cloud)
            for trackable_id in event.removed:
                self._tracked.pop(trackable_id, None)

    def on_planes_changed(self, event: PlanesChanged):
        with self._lock:
            if not self._scanning or not self.settings.use_plane_mesh:
                return
            for patch in event.added:
                self._collect_plane_points(patch)
            for patch in event.updated:
                self._collect_plane_points(patch)

    def _update_tracked_points(self, point_cloud: TrackedPointCloud):
        if point_cloud.positions is None:
            return
        positions = np.array(point_cloud.positions, dtype=np.float64).reshape(-1, 3)
        self._tracked[point_cloud.trackable_id] = positions

    def _collect_plane_points(self, patch: SurfacePatch) -> int:
        samples = sample_surface_patch(patch, self.settings.plane_mesh_resolution)
        added = 0
        for point in samples:
            if self._accepted.insert(self._accepted.quantize(point)):
                added += 1
        logger.debug(f"Plane {patch.trackable_id}: {len(samples)} samples, {added} new cells")
        return added

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    def _finalize(self) -> Tuple[FinalizeStatus, FusedCloud]:
        if self.frame_source is None:
            logger.warning("No frame source configured")
            return FinalizeStatus.NO_FRAME, FusedCloud()

        try:
            snapshot = self.frame_source.capture_frame()
        except Exception as e:
            logger.error(f"Frame capture failed: {e}")
            return FinalizeStatus.NO_FRAME, FusedCloud()
        frame = snapshot.to_rgb() if snapshot is not None else None
        if frame is None:
            return FinalizeStatus.NO_FRAME, FusedCloud()
        if self._cancel.is_set():
            return FinalizeStatus.CANCELLED, FusedCloud()

        pose = self.frame_source.camera_pose()
        intrinsics = self.frame_source.camera_intrinsics()

        def colorize(points: np.ndarray) -> np.ndarray:
            return self.back_projector.project_many(points, pose, intrinsics, frame)

        position_parts = []
        color_parts = []

        # 1. Tracked feature points
        num_tracked = 0
        if self.settings.use_feature_points and self._tracked:
            tracked = np.vstack(list(self._tracked.values()))
            position_parts.append(tracked)
            color_parts.append(colorize(tracked))
            num_tracked = len(tracked)

        # 2. Plane samples
        num_plane = 0
        if self.settings.use_plane_mesh and len(self._accepted) > 0:
            plane_points = self._accepted.positions()
            position_parts.append(plane_points)
            color_parts.append(colorize(plane_points))
            num_plane = len(plane_points)

        if self._cancel.is_set():
            return FinalizeStatus.CANCELLED, FusedCloud()

        # 3. Depth reprojection fills the gaps
        num_depth = 0
        depth_keys = []
        if self.settings.use_depth_data and self.depth_source is not None:
            collected = self._collect_depth_points(pose, intrinsics)
            if collected is None:
                return FinalizeStatus.CANCELLED, FusedCloud()
            depth_points, depth_keys = collected
            if len(depth_points) > 0:
                position_parts.append(depth_points)
                color_parts.append(colorize(depth_points))
                num_depth = len(depth_points)

        for key in depth_keys:
            self._accepted.insert(key)

        if not position_parts:
            return FinalizeStatus.COMPLETED, FusedCloud()

        cloud = FusedCloud(
            positions=np.vstack(position_parts),
            colors=np.vstack(color_parts).astype(np.uint8),
            num_tracked=num_tracked,
            num_plane=num_plane,
            num_depth=num_depth,
        )
        return FinalizeStatus.COMPLETED, cloud

    def _collect_depth_points(self, pose, intrinsics):
        """
        Reproject a subsample of the depth map into world space

        Cells are checked against the accepted set and against cells taken by
        earlier depth samples of this pass; the caller commits the new keys.

        Returns:
            (Kx3 newly accepted world points, their grid keys), or None if cancelled
        """
        size = self.depth_source.depth_map_size()
        if size is None:
            logger.info("No depth map available; depth contributes no points")
            return np.zeros((0, 3), dtype=np.float64), []

        depth_width, depth_height = size
        step = max(1, int(self.settings.depth_sampling_step))
        multiple = self.settings.depth_cell_multiple
        accepted = []
        new_keys: Dict[Tuple[int, int, int], None] = {}
        rejected = 0

        for y in range(0, depth_height, step):
            if self._cancel.is_set():
                return None
            for x in range(0, depth_width, step):
                normalized_x = x / float(depth_width)
                normalized_y = y / float(depth_height)

                try:
                    distance = self.depth_source.query_distance(normalized_x, normalized_y)
                except Exception as e:
                    logger.debug(
                        f"Depth query failed at ({normalized_x:.3f}, {normalized_y:.3f}): {e}"
                    )
                    distance = None
                if distance is None or not (0.0 < distance < self.settings.max_depth):
                    rejected += 1
                    continue

                origin, direction = screen_point_to_ray(normalized_x, normalized_y, pose, intrinsics)
                world_point = origin + direction * distance

                key = self._accepted.quantize(world_point, multiple=multiple)
                if key in self._accepted or key in new_keys:
                    continue
                new_keys[key] = None
                accepted.append(world_point)

        logger.debug(f"Depth: {len(accepted)} accepted, {rejected} rejected samples")
        if not accepted:
            return np.zeros((0, 3), dtype=np.float64), []
        return np.array(accepted, dtype=np.float64), list(new_keys)
