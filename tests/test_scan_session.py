"""Tests for the start/stop scan controller"""

import re
from datetime import datetime

import numpy as np

from conftest import FakeFrameSource
from pointscan.mesh_io import read_ply
from pointscan.reconstruction import (
    EventStream,
    FinalizeStatus,
    FusionSettings,
    PointCloudFusion,
    PointCloudsChanged,
    ScanSession,
    TrackedPointCloud,
    scan_filename,
)


def make_session(frame_source, output_dir, **kwargs):
    engine = PointCloudFusion(FusionSettings(use_depth_data=False), frame_source=frame_source)
    points = EventStream('points')
    engine.subscribe(point_cloud_stream=points)
    return ScanSession(engine, output_dir=output_dir, **kwargs), points


def test_scan_filename():
    assert scan_filename(when=datetime(2024, 3, 5, 14, 7, 9)) == "scan_20240305_140709.ply"
    assert scan_filename("room-{timestamp}.ply", datetime(2024, 1, 1)) == "room-20240101_000000.ply"


def test_toggle_saves_scan(frame_source, tmp_path):
    """Second toggle stops, finalizes and writes a timestamped file"""
    saved = []
    session, points = make_session(frame_source, tmp_path / "scans", on_saved=saved.append)

    assert session.toggle() is None
    assert session.is_scanning
    points.emit(PointCloudsChanged(added=[TrackedPointCloud('a', np.array([[0.0, 0.0, 0.0]]))]))

    assert session.toggle() is FinalizeStatus.COMPLETED
    assert not session.is_scanning

    path = session.last_saved_path
    assert path is not None and path.exists()
    assert re.fullmatch(r"scan_\d{8}_\d{6}\.ply", path.name)
    assert saved == [path]

    document = read_ply(path)
    assert document.vertex_count == 1
    assert document.colors.tolist() == [[50, 50, 200]]


def test_empty_scan_saves_nothing(frame_source, tmp_path):
    session, _ = make_session(frame_source, tmp_path)
    session.toggle()
    assert session.toggle() is FinalizeStatus.COMPLETED
    assert session.last_saved_path is None
    assert list(tmp_path.iterdir()) == []


def test_no_frame_saves_nothing(tmp_path):
    session, points = make_session(FakeFrameSource(frame=None), tmp_path)
    session.start()
    points.emit(PointCloudsChanged(added=[TrackedPointCloud('a', np.zeros((1, 3)))]))

    assert session.stop() is FinalizeStatus.NO_FRAME
    assert session.last_status is FinalizeStatus.NO_FRAME
    assert session.last_saved_path is None
