"""
pointscan - point cloud fusion and PLY interchange for AR scans
"""

from .mesh_io import (
    MeshDocument,
    PLYFormatError,
    PLYValidationError,
    load_all_ply_from_folder,
    read_ply,
    write_mesh_document,
    write_ply,
)

__all__ = [
    'MeshDocument',
    'PLYFormatError',
    'PLYValidationError',
    'load_all_ply_from_folder',
    'read_ply',
    'write_mesh_document',
    'write_ply',
]

__version__ = '0.1.0'
