"""
Scan Reconstruction Module

This module provides tools for:
1. Spatial hashing of positions for deduplication
2. Camera model and color back-projection
3. Capture collaborator interfaces (event streams, frame/depth sources)
4. Point cloud fusion of tracked points, planes and depth
5. Scan session control (start/stop, save to PLY)

Usage:
    from pointscan.reconstruction import (
        PointCloudFusion,
        FusionSettings,
        ScanSession,
    )

    engine = PointCloudFusion(FusionSettings(), frame_source=camera, depth_source=lidar)
    engine.subscribe(point_cloud_stream, plane_stream)
    session = ScanSession(engine, output_dir="outputs/scans")
    session.toggle()   # start
    session.toggle()   # stop + save
"""

# Spatial hashing
from .spatial_hash import (
    GridKey,
    SpatialHashGrid,
    quantize,
)

# Camera model
from .camera import (
    UNKNOWN_COLOR,
    CameraIntrinsics,
    CameraPose,
    ColorBackProjector,
    project_to_screen,
    screen_point_to_ray,
)

# Capture collaborators
from .capture import (
    DepthSource,
    EventStream,
    FrameSnapshot,
    FrameSource,
    PlanesChanged,
    PointCloudsChanged,
    RecordedCapture,
    SurfacePatch,
    TrackedPointCloud,
)

# Fusion
from .point_cloud_fusion import (
    FinalizeStatus,
    FusedCloud,
    FusionSettings,
    PointCloudFusion,
    points_in_polygon,
    sample_surface_patch,
)

# Session control
from .scan_session import (
    ScanSession,
    scan_filename,
)

__all__ = [
    # Spatial hashing
    'GridKey',
    'SpatialHashGrid',
    'quantize',
    # Camera model
    'UNKNOWN_COLOR',
    'CameraIntrinsics',
    'CameraPose',
    'ColorBackProjector',
    'project_to_screen',
    'screen_point_to_ray',
    # Capture collaborators
    'DepthSource',
    'EventStream',
    'FrameSnapshot',
    'FrameSource',
    'PlanesChanged',
    'PointCloudsChanged',
    'RecordedCapture',
    'SurfacePatch',
    'TrackedPointCloud',
    # Fusion
    'FinalizeStatus',
    'FusedCloud',
    'FusionSettings',
    'PointCloudFusion',
    'points_in_polygon',
    'sample_surface_patch',
    # Session control
    'ScanSession',
    'scan_filename',
]
