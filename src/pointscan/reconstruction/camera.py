"""
Camera Model and Color Back-Projection

Provides:
- Pinhole intrinsics and world pose of the capture camera
- World -> pixel projection (OpenCV convention: x right, y down, z forward)
- Pixel -> world ray casting for depth reprojection
- Color lookup of 3D points in a reference video frame

Points that fall behind the camera or outside the frame receive a neutral
gray instead of failing, so partial visibility never aborts a scan.
"""

import numpy as np
import cv2
import logging
from dataclasses import dataclass, field
from typing import Tuple, Optional

logger = logging.getLogger(__name__)

Color = Tuple[int, int, int]

UNKNOWN_COLOR: Color = (127, 127, 127)


@dataclass
class CameraIntrinsics:
    """Camera intrinsic parameters"""
    camera_matrix: np.ndarray    # 3x3 intrinsic matrix (K)
    image_size: Tuple[int, int]  # (width, height) of the screen the matrix refers to
    dist_coeffs: np.ndarray = field(default_factory=lambda: np.zeros(5))

    @classmethod
    def from_pinhole(
        cls,
        fx: float,
        fy: float,
        cx: float,
        cy: float,
        image_size: Tuple[int, int]
    ) -> 'CameraIntrinsics':
        K = np.array([
            [fx, 0.0, cx],
            [0.0, fy, cy],
            [0.0, 0.0, 1.0],
        ])
        return cls(camera_matrix=K, image_size=(int(image_size[0]), int(image_size[1])))

    def scaled_to(self, width: int, height: int) -> 'CameraIntrinsics':
        """Same camera expressed in a frame of a different resolution"""
        sx = width / float(self.image_size[0])
        sy = height / float(self.image_size[1])
        K = self.camera_matrix.astype(np.float64).copy()
        K[0, :] *= sx
        K[1, :] *= sy
        return CameraIntrinsics(K, (int(width), int(height)), self.dist_coeffs.copy())

    def to_dict(self) -> dict:
        return {
            'camera_matrix': np.asarray(self.camera_matrix).tolist(),
            'image_size': list(self.image_size),
            'dist_coeffs': np.asarray(self.dist_coeffs).tolist(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CameraIntrinsics':
        return cls(
            camera_matrix=np.array(data['camera_matrix'], dtype=np.float64),
            image_size=tuple(data['image_size']),
            dist_coeffs=np.array(data.get('dist_coeffs', np.zeros(5)), dtype=np.float64),
        )


@dataclass
class CameraPose:
    """Camera pose in world coordinates"""
    rotation: np.ndarray  # 3x3 camera-to-world rotation
    position: np.ndarray  # camera center in world coordinates

    @classmethod
    def identity(cls) -> 'CameraPose':
        return cls(rotation=np.eye(3), position=np.zeros(3))

    @property
    def world_to_camera(self) -> Tuple[np.ndarray, np.ndarray]:
        """(R, t) such that x_cam = R @ x_world + t"""
        R = np.asarray(self.rotation, dtype=np.float64).T
        t = -R @ np.asarray(self.position, dtype=np.float64)
        return R, t

    def to_camera(self, points: np.ndarray) -> np.ndarray:
        R, t = self.world_to_camera
        return (R @ np.asarray(points, dtype=np.float64).reshape(-1, 3).T).T + t

    def to_dict(self) -> dict:
        return {
            'rotation': np.asarray(self.rotation).tolist(),
            'position': np.asarray(self.position).tolist(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CameraPose':
        return cls(
            rotation=np.array(data['rotation'], dtype=np.float64),
            position=np.array(data['position'], dtype=np.float64),
        )


def project_to_screen(
    points_3d: np.ndarray,
    pose: CameraPose,
    intrinsics: CameraIntrinsics
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Project world points to pixel coordinates

    Args:
        points_3d: Nx3 world points
        pose: Camera pose
        intrinsics: Camera intrinsics

    Returns:
        (Nx2 pixel coordinates, N camera-space depths)
    """
    points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    if len(points_3d) == 0:
        return np.zeros((0, 2)), np.zeros(0)

    depths = pose.to_camera(points_3d)[:, 2]

    R, t = pose.world_to_camera
    rvec, _ = cv2.Rodrigues(R)
    points_2d, _ = cv2.projectPoints(
        points_3d,
        rvec,
        t,
        np.asarray(intrinsics.camera_matrix, dtype=np.float64),
        np.asarray(intrinsics.dist_coeffs, dtype=np.float64)
    )
    return points_2d.reshape(-1, 2), depths


def screen_point_to_ray(
    normalized_x: float,
    normalized_y: float,
    pose: CameraPose,
    intrinsics: CameraIntrinsics
) -> Tuple[np.ndarray, np.ndarray]:
    """
    World-space ray through a normalized screen coordinate

    Args:
        normalized_x, normalized_y: Screen position in [0, 1)
        pose: Camera pose
        intrinsics: Camera intrinsics (image_size defines the screen)

    Returns:
        (origin, unit direction) in world coordinates
    """
    width, height = intrinsics.image_size
    pixel = np.array([normalized_x * width, normalized_y * height, 1.0])
    direction_cam = np.linalg.solve(np.asarray(intrinsics.camera_matrix, dtype=np.float64), pixel)
    direction = np.asarray(pose.rotation, dtype=np.float64) @ direction_cam
    direction /= np.linalg.norm(direction)
    return np.asarray(pose.position, dtype=np.float64).copy(), direction


class ColorBackProjector:
    """
    Samples the color of world points from one captured RGB frame

    The frame's resolution may differ from the resolution the intrinsics were
    calibrated at; the intrinsics are rescaled to the frame.
    """

    def __init__(self, unknown_color: Color = UNKNOWN_COLOR):
        self.unknown_color = tuple(int(c) for c in unknown_color)

    def project(
        self,
        position,
        pose: CameraPose,
        intrinsics: CameraIntrinsics,
        frame: np.ndarray,
        frame_width: Optional[int] = None,
        frame_height: Optional[int] = None
    ) -> Color:
        """Color of a single world position"""
        colors = self.project_many(
            np.asarray(position, dtype=np.float64).reshape(1, 3),
            pose, intrinsics, frame, frame_width, frame_height
        )
        return tuple(int(c) for c in colors[0])

    def project_many(
        self,
        positions: np.ndarray,
        pose: CameraPose,
        intrinsics: CameraIntrinsics,
        frame: np.ndarray,
        frame_width: Optional[int] = None,
        frame_height: Optional[int] = None
    ) -> np.ndarray:
        """
        Colors of world positions

        Args:
            positions: Nx3 world positions
            pose: Camera pose at capture time
            intrinsics: Camera intrinsics
            frame: HxWx3 uint8 RGB pixel buffer (row 0 is the top of the image)
            frame_width, frame_height: Frame bounds (default: frame shape)

        Returns:
            Nx3 uint8 colors; unknown_color where the point is not visible
        """
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        height = frame.shape[0] if frame_height is None else int(frame_height)
        width = frame.shape[1] if frame_width is None else int(frame_width)

        colors = np.empty((len(positions), 3), dtype=np.uint8)
        colors[:] = self.unknown_color
        if len(positions) == 0:
            return colors

        if tuple(intrinsics.image_size) != (width, height):
            intrinsics = intrinsics.scaled_to(width, height)

        screen, depths = project_to_screen(positions, pose, intrinsics)
        u = screen[:, 0]
        v = screen[:, 1]

        # declared bounds larger than the buffer leave the excess unknown
        bound_w = min(width, frame.shape[1])
        bound_h = min(height, frame.shape[0])
        visible = (
            (depths > 0)
            & (u >= 0) & (u < bound_w)
            & (v >= 0) & (v < bound_h)
        )
        if not np.any(visible):
            return colors

        px = np.clip(u[visible].astype(np.int64), 0, bound_w - 1)
        py = np.clip(v[visible].astype(np.int64), 0, bound_h - 1)
        colors[visible] = frame[py, px, :3]
        return colors
