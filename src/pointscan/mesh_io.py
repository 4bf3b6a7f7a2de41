"""
PLY Mesh I/O
ASCII PLY 읽기/쓰기 (header-driven vertex layout, triangle faces)

Reader:
- Vertex properties are located by name, so any property order and any
  extra properties are accepted
- Colors are present iff the vertex element declares `red`
- Only triangle faces are kept; other polygons are skipped
- Faces are stored clockwise: file order (a, b, c) becomes (a, c, b)

Writer:
- `ply` / `format ascii 1.0` / `comment` signature, x y z [red green blue]
- Positions with 6 fractional digits, colors as 0..255 integers
- Optional triangles, written back in counter-clockwise file order
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import numpy as np

try:
    import trimesh
    HAS_TRIMESH = True
except ImportError:
    HAS_TRIMESH = False

logger = logging.getLogger(__name__)

PLY_SIGNATURE = ("ply", "format ascii 1.0", "comment pointscan")

VERTEX_PROPERTIES = ("x", "y", "z", "red", "green", "blue")

# Vertex counts above this need 32-bit triangle indices
MAX_UINT16_VERTICES = 65535


class PLYFormatError(ValueError):
    """Malformed PLY file"""

    def __init__(self, message: str, path=None, line_number: Optional[int] = None):
        self.path = None if path is None else str(path)
        self.line_number = line_number
        location = ""
        if self.path is not None:
            location = f"{self.path}"
            if line_number is not None:
                location += f":{line_number}"
            location += ": "
        super().__init__(f"{location}{message}")


class PLYValidationError(ValueError):
    """Writer input rejected before any I/O"""


def index_dtype_for(vertex_count: int) -> np.dtype:
    """Smallest index type able to address vertex_count vertices"""
    return np.dtype(np.uint16) if vertex_count <= MAX_UINT16_VERTICES else np.dtype(np.uint32)


@dataclass
class MeshDocument:
    """Vertices with optional per-vertex colors and triangles"""
    vertices: np.ndarray                      # Nx3 float
    colors: Optional[np.ndarray] = None       # Nx3 uint8, parallel to vertices
    triangles: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.uint16))
    name: str = ""

    def __post_init__(self):
        self.vertices = np.asarray(self.vertices, dtype=np.float64).reshape(-1, 3)
        if self.colors is not None:
            self.colors = np.asarray(self.colors).reshape(-1, 3)
            if len(self.colors) != len(self.vertices):
                raise PLYValidationError(
                    f"Color count ({len(self.colors)}) != vertex count ({len(self.vertices)})"
                )
            self.colors = self.colors.astype(np.uint8)

        triangles = np.asarray(self.triangles, dtype=np.int64).reshape(-1, 3)
        bad = triangles[(triangles < 0) | (triangles >= len(self.vertices))]
        if len(bad) > 0:
            raise PLYValidationError(
                f"Triangle index {int(bad[0])} out of range "
                f"for {len(self.vertices)} vertices"
            )
        self.triangles = triangles.astype(self.index_dtype)

    @property
    def has_colors(self) -> bool:
        return self.colors is not None

    @property
    def vertex_count(self) -> int:
        return len(self.vertices)

    @property
    def triangle_count(self) -> int:
        return len(self.triangles)

    @property
    def index_dtype(self) -> np.dtype:
        return index_dtype_for(len(self.vertices))

    @property
    def is_point_cloud(self) -> bool:
        return len(self.triangles) == 0

    def point_indices(self) -> np.ndarray:
        """Point topology (0..N-1) for clouds without faces"""
        return np.arange(len(self.vertices), dtype=self.index_dtype)

    def to_mesh(self):
        """
        Materialize as a trimesh object

        Returns:
            trimesh.PointCloud when there are no triangles, else trimesh.Trimesh
            (faces flipped back to trimesh's counter-clockwise convention)
        """
        if not HAS_TRIMESH:
            raise ImportError("trimesh required")

        colors = None
        if self.colors is not None:
            alpha = np.full((len(self.colors), 1), 255, dtype=np.uint8)
            colors = np.hstack([self.colors, alpha])

        if self.is_point_cloud:
            return trimesh.PointCloud(self.vertices, colors=colors)
        return trimesh.Trimesh(
            vertices=self.vertices,
            faces=self.triangles[:, [0, 2, 1]].astype(np.int64),
            vertex_colors=colors,
            process=False
        )


@dataclass
class PLYHeader:
    """Parsed header of an ASCII PLY file"""
    vertex_count: int = 0
    face_count: int = 0
    vertex_start: int = 0   # line index of the first vertex record
    face_start: int = 0     # line index of the first face record
    # vertex property name -> column in a vertex record
    property_index: Dict[str, int] = field(default_factory=OrderedDict)
    vertex_property_count: int = 0

    @property
    def has_colors(self) -> bool:
        return "red" in self.property_index

    def column(self, name: str) -> int:
        return self.property_index[name]


def parse_ply_header(lines: List[str], path=None) -> PLYHeader:
    """
    Parse the header section

    Args:
        lines: File content split into lines
        path: Source path (for error messages)

    Returns:
        PLYHeader with the vertex property layout and data offsets
    """
    if not lines or lines[0].strip() != "ply":
        raise PLYFormatError("missing 'ply' signature", path, 1)

    header = PLYHeader()
    elements: List[Tuple[str, int]] = []
    current_element = None
    property_index = 0

    for i, raw in enumerate(lines):
        parts = raw.split()
        if not parts:
            continue
        keyword = parts[0]

        if keyword == "format":
            if len(parts) < 2 or parts[1] != "ascii":
                raise PLYFormatError(
                    f"unsupported format '{' '.join(parts[1:])}' (ASCII only)", path, i + 1
                )
        elif keyword == "element":
            if len(parts) < 3:
                raise PLYFormatError("incomplete element declaration", path, i + 1)
            try:
                count = int(parts[2])
            except ValueError:
                raise PLYFormatError(f"invalid element count '{parts[2]}'", path, i + 1)
            if count < 0:
                raise PLYFormatError(f"negative element count {count}", path, i + 1)

            current_element = parts[1]
            elements.append((current_element, count))
            if current_element == "vertex":
                header.vertex_count = count
                property_index = 0
            elif current_element == "face":
                header.face_count = count
        elif keyword == "property":
            if current_element == "vertex":
                name = parts[-1]
                if name in VERTEX_PROPERTIES:
                    header.property_index[name] = property_index
                property_index += 1
                header.vertex_property_count = property_index
        elif keyword == "end_header":
            _resolve_offsets(header, elements, i + 1)
            _check_layout(header, path, i + 1)
            return header
        # comment / obj_info and unknown keywords carry no layout

    raise PLYFormatError("missing 'end_header'", path)


def _resolve_offsets(header: PLYHeader, elements: List[Tuple[str, int]], data_start: int):
    """Line offsets of the vertex and face blocks (elements are stored in declaration order)"""
    offset = data_start
    for name, count in elements:
        if name == "vertex":
            header.vertex_start = offset
        elif name == "face":
            header.face_start = offset
        offset += count


def _check_layout(header: PLYHeader, path, line_number: int):
    if header.vertex_count <= 0:
        raise PLYFormatError("no vertices declared", path, line_number)
    for name in ("x", "y", "z"):
        if name not in header.property_index:
            raise PLYFormatError(f"vertex property '{name}' not declared", path, line_number)
    if header.has_colors:
        for name in ("green", "blue"):
            if name not in header.property_index:
                raise PLYFormatError(
                    f"'red' declared without '{name}'", path, line_number
                )


def _check_record_counts(header: PLYHeader, line_count: int, path):
    """Declared counts must fit in the file before any buffer is sized from them"""
    available = max(0, line_count - header.vertex_start)
    if header.vertex_count > available:
        raise PLYFormatError(
            f"expected {header.vertex_count} vertices, file ends after {available}", path
        )
    if header.face_count > 0:
        available = max(0, line_count - header.face_start)
        if header.face_count > available:
            raise PLYFormatError(
                f"expected {header.face_count} faces, file ends after {available}", path
            )


def read_ply(path: Union[str, Path]) -> MeshDocument:
    """
    Read an ASCII PLY file

    Args:
        path: PLY file path

    Returns:
        MeshDocument (triangles in clockwise order)

    Raises:
        FileNotFoundError: path does not exist
        PLYFormatError: the file is malformed
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"PLY file not found: {path}")

    with open(path, 'r', encoding='ascii', errors='replace') as f:
        lines = f.read().splitlines()

    header = parse_ply_header(lines, path)
    _check_record_counts(header, len(lines), path)

    x_col, y_col, z_col = header.column("x"), header.column("y"), header.column("z")
    if header.has_colors:
        r_col, g_col, b_col = header.column("red"), header.column("green"), header.column("blue")
    needed = max(header.property_index.values()) + 1

    vertices = np.empty((header.vertex_count, 3), dtype=np.float64)
    colors = np.empty((header.vertex_count, 3), dtype=np.int64) if header.has_colors else None

    for i in range(header.vertex_count):
        line_idx = header.vertex_start + i
        values = lines[line_idx].split()
        if len(values) < needed:
            raise PLYFormatError(
                f"vertex record has {len(values)} fields, expected at least {needed}",
                path, line_idx + 1
            )
        try:
            vertices[i] = (float(values[x_col]), float(values[y_col]), float(values[z_col]))
            if colors is not None:
                colors[i] = (int(values[r_col]), int(values[g_col]), int(values[b_col]))
        except ValueError as e:
            raise PLYFormatError(f"invalid vertex record: {e}", path, line_idx + 1) from e

    if colors is not None and (colors.min() < 0 or colors.max() > 255):
        raise PLYFormatError("vertex color outside 0..255", path)

    triangles = []
    skipped = 0
    for i in range(header.face_count):
        line_idx = header.face_start + i
        values = lines[line_idx].split()
        if not values or values[0] != "3":
            skipped += 1
            continue
        if len(values) < 4:
            raise PLYFormatError("truncated triangle record", path, line_idx + 1)
        try:
            a, b, c = int(values[1]), int(values[2]), int(values[3])
        except ValueError as e:
            raise PLYFormatError(f"invalid face record: {e}", path, line_idx + 1) from e
        if min(a, b, c) < 0 or max(a, b, c) >= header.vertex_count:
            raise PLYFormatError(
                f"face index out of range for {header.vertex_count} vertices", path, line_idx + 1
            )
        # counter-clockwise (file) -> clockwise (stored)
        triangles.append((a, c, b))

    if skipped:
        logger.warning(f"{path.name}: skipped {skipped} non-triangle faces")

    index_dtype = index_dtype_for(header.vertex_count)
    document = MeshDocument(
        vertices=vertices,
        colors=None if colors is None else colors.astype(np.uint8),
        triangles=np.array(triangles, dtype=index_dtype).reshape(-1, 3),
        name=path.stem,
    )
    logger.debug(
        f"Read {path.name}: {document.vertex_count} vertices, "
        f"{document.triangle_count} triangles, colors={document.has_colors}"
    )
    return document


def write_ply(
    path: Union[str, Path],
    positions: np.ndarray,
    colors: Optional[np.ndarray] = None,
    triangles: Optional[np.ndarray] = None
) -> Optional[Path]:
    """
    Write an ASCII PLY file

    Args:
        path: Output path
        positions: Nx3 vertex positions
        colors: Optional Nx3 colors (0..255)
        triangles: Optional Mx3 clockwise triangles

    Returns:
        Written path, or None when there is nothing to write

    Raises:
        PLYValidationError: shapes or counts do not match (nothing is written)
    """
    positions = np.asarray(positions, dtype=np.float64)
    if positions.size == 0:
        logger.warning("No points to save")
        return None
    if positions.ndim != 2 or positions.shape[1] != 3:
        raise PLYValidationError(f"positions must be Nx3, got shape {positions.shape}")

    if colors is not None:
        colors = np.asarray(colors)
        if colors.ndim != 2 or colors.shape[1] < 3:
            raise PLYValidationError(f"colors must be Nx3, got shape {colors.shape}")
        if len(colors) != len(positions):
            raise PLYValidationError(
                f"Point count ({len(positions)}) != color count ({len(colors)})"
            )
        if colors.min() < 0 or colors.max() > 255:
            raise PLYValidationError("colors must be within 0..255")
        if not np.issubdtype(colors.dtype, np.integer) and np.any(colors != np.round(colors)):
            raise PLYValidationError("colors must be whole numbers in 0..255")
        colors = colors[:, :3].astype(np.uint8)

    if triangles is None:
        triangles = np.zeros((0, 3), dtype=np.int64)
    triangles = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
    if len(triangles) > 0 and (triangles.min() < 0 or triangles.max() >= len(positions)):
        raise PLYValidationError("triangle index out of range")

    path = Path(path)
    lines = list(PLY_SIGNATURE)
    lines.append(f"element vertex {len(positions)}")
    lines.extend(["property float x", "property float y", "property float z"])
    if colors is not None:
        lines.extend(["property uchar red", "property uchar green", "property uchar blue"])
    if len(triangles) > 0:
        lines.append(f"element face {len(triangles)}")
        lines.append("property list uchar int vertex_indices")
    lines.append("end_header")

    if colors is not None:
        for p, c in zip(positions, colors):
            lines.append(f"{p[0]:.6f} {p[1]:.6f} {p[2]:.6f} {c[0]} {c[1]} {c[2]}")
    else:
        for p in positions:
            lines.append(f"{p[0]:.6f} {p[1]:.6f} {p[2]:.6f}")

    # clockwise (stored) -> counter-clockwise (file)
    for a, b, c in triangles:
        lines.append(f"3 {a} {c} {b}")

    with open(path, 'w', encoding='ascii', newline='\n') as f:
        f.write("\n".join(lines))
        f.write("\n")

    logger.info(f"Saved {len(positions)} points to {path}")
    return path


def write_mesh_document(path: Union[str, Path], document: MeshDocument) -> Optional[Path]:
    return write_ply(path, document.vertices, document.colors, document.triangles)


def load_all_ply_from_folder(folder: Union[str, Path]) -> Dict[str, MeshDocument]:
    """
    Read every .ply file below folder (recursive)

    Malformed files are logged and skipped.

    Returns:
        Ordered mapping of path relative to folder -> MeshDocument
    """
    folder = Path(folder)
    documents: Dict[str, MeshDocument] = OrderedDict()
    if not folder.is_dir():
        logger.error(f"Folder not found: {folder}")
        return documents

    ply_files = sorted(p for p in folder.rglob("*.ply") if p.is_file())
    logger.info(f"Found {len(ply_files)} PLY files in {folder}")

    for ply_path in ply_files:
        try:
            documents[ply_path.relative_to(folder).as_posix()] = read_ply(ply_path)
        except PLYFormatError as e:
            logger.error(f"Skipping malformed PLY: {e}")
        except OSError as e:
            logger.error(f"Skipping unreadable PLY {ply_path}: {e}")

    return documents
