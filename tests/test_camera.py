"""Tests for projection, ray casting and color back-projection"""

import numpy as np

from pointscan.reconstruction import (
    UNKNOWN_COLOR,
    CameraIntrinsics,
    CameraPose,
    ColorBackProjector,
    project_to_screen,
    screen_point_to_ray,
)

# Camera one unit behind the origin looking down +z
POSE = CameraPose(rotation=np.eye(3), position=np.array([0.0, 0.0, -1.0]))


def test_project_to_screen_center(intrinsics):
    """A point on the optical axis lands on the principal point"""
    screen, depths = project_to_screen(np.array([[0.0, 0.0, 0.0]]), POSE, intrinsics)
    np.testing.assert_allclose(screen[0], [50.0, 50.0], atol=1e-9)
    np.testing.assert_allclose(depths, [1.0])


def test_project_to_screen_offset(intrinsics):
    screen, _ = project_to_screen(np.array([[0.05, 0.1, 0.0]]), POSE, intrinsics)
    np.testing.assert_allclose(screen[0], [55.0, 60.0], atol=1e-9)


def test_back_projection_samples_frame(intrinsics, gradient_frame):
    """Visible points take the color of the pixel they project to"""
    projector = ColorBackProjector()
    assert projector.project((0.0, 0.0, 0.0), POSE, intrinsics, gradient_frame) == (50, 50, 200)
    assert projector.project((0.05, 0.1, 0.0), POSE, intrinsics, gradient_frame) == (55, 60, 200)


def test_point_behind_camera_is_gray(intrinsics, gradient_frame):
    projector = ColorBackProjector()
    assert projector.project((0.0, 0.0, -2.0), POSE, intrinsics, gradient_frame) == UNKNOWN_COLOR


def test_point_outside_frame_is_gray(intrinsics, gradient_frame):
    """Negative or beyond-bounds screen coordinates fall back to gray"""
    projector = ColorBackProjector()
    positions = np.array([
        [-0.6, 0.0, 0.0],   # u = -10
        [0.0, -0.6, 0.0],   # v = -10
        [0.5, 0.0, 0.0],    # u = 100 (== width)
        [0.0, 0.6, 0.0],    # v = 110
    ])
    colors = projector.project_many(positions, POSE, intrinsics, gradient_frame)
    assert colors.dtype == np.uint8
    assert (colors == np.array(UNKNOWN_COLOR, dtype=np.uint8)).all()


def test_declared_bounds_beyond_buffer_are_gray(intrinsics, gradient_frame):
    """Frame bounds larger than the pixel buffer never index past it"""
    projector = ColorBackProjector()
    positions = np.array([
        [0.2, 0.0, 0.0],     # u = 140 at 200x200 bounds, past the 100-wide buffer
        [-0.3, -0.3, 0.0],   # u = v = 40, inside the buffer
    ])
    colors = projector.project_many(
        positions, POSE, intrinsics, gradient_frame, frame_width=200, frame_height=200
    )
    assert tuple(colors[0]) == UNKNOWN_COLOR
    assert colors[1].tolist() == [40, 40, 200]


def test_custom_unknown_color(intrinsics, gradient_frame):
    projector = ColorBackProjector(unknown_color=(0, 0, 0))
    assert projector.project((0.0, 0.0, -5.0), POSE, intrinsics, gradient_frame) == (0, 0, 0)


def test_intrinsics_rescaled_to_frame(intrinsics):
    """A frame twice the calibrated size maps the axis to its own center"""
    frame = np.zeros((200, 200, 3), dtype=np.uint8)
    frame[100, 100] = (1, 2, 3)
    projector = ColorBackProjector()
    assert projector.project((0.0, 0.0, 0.0), POSE, intrinsics, frame) == (1, 2, 3)


def test_rotated_camera_sees_points_in_front():
    """Camera at z=+1 turned to look down -z"""
    pose = CameraPose(rotation=np.diag([-1.0, 1.0, -1.0]), position=np.array([0.0, 0.0, 1.0]))
    intrinsics = CameraIntrinsics.from_pinhole(100.0, 100.0, 50.0, 50.0, (100, 100))
    frame = np.full((100, 100, 3), 9, dtype=np.uint8)
    projector = ColorBackProjector()

    assert projector.project((0.0, 0.0, 0.0), pose, intrinsics, frame) == (9, 9, 9)
    assert projector.project((0.0, 0.0, 2.0), pose, intrinsics, frame) == UNKNOWN_COLOR


def test_empty_positions(intrinsics, gradient_frame):
    colors = ColorBackProjector().project_many(np.zeros((0, 3)), POSE, intrinsics, gradient_frame)
    assert colors.shape == (0, 3)


def test_screen_point_to_ray(intrinsics):
    """The screen center casts along the viewing direction"""
    origin, direction = screen_point_to_ray(0.5, 0.5, POSE, intrinsics)
    np.testing.assert_allclose(origin, [0.0, 0.0, -1.0])
    np.testing.assert_allclose(direction, [0.0, 0.0, 1.0], atol=1e-12)

    _, corner = screen_point_to_ray(0.0, 0.0, POSE, intrinsics)
    np.testing.assert_allclose(np.linalg.norm(corner), 1.0)
    np.testing.assert_allclose(corner, np.array([-0.5, -0.5, 1.0]) / np.sqrt(1.5))


def test_camera_dict_round_trip(intrinsics):
    restored = CameraIntrinsics.from_dict(intrinsics.to_dict())
    np.testing.assert_allclose(restored.camera_matrix, intrinsics.camera_matrix)
    assert restored.image_size == (100, 100)

    pose = CameraPose.from_dict(POSE.to_dict())
    np.testing.assert_allclose(pose.position, POSE.position)
