"""
Spatial Hash Grid

Quantizes 3D positions to integer grid cells for approximate-position
deduplication. Keys are integer triples so membership never relies on
floating-point equality.

Keys are always expressed in units of the grid's base cell size. A coarser
lookup (``multiple=2``) snaps to every second cell and returns the key of that
cell in base units, so fine and coarse samples share one key space.
"""

from typing import Dict, Iterator, Tuple

import numpy as np

GridKey = Tuple[int, int, int]


def quantize(position, cell_size: float) -> GridKey:
    """
    Round each coordinate to the nearest multiple of cell_size

    Args:
        position: (x, y, z) in world units
        cell_size: Grid resolution

    Returns:
        Integer cell index triple (position / cell_size, rounded half-to-even)
    """
    if cell_size <= 0:
        raise ValueError(f"cell_size must be positive, got {cell_size}")
    scaled = np.rint(np.asarray(position, dtype=np.float64) / cell_size)
    return (int(scaled[0]), int(scaled[1]), int(scaled[2]))


class SpatialHashGrid:
    """Ordered set of grid keys at a fixed base resolution"""

    def __init__(self, cell_size: float):
        if cell_size <= 0:
            raise ValueError(f"cell_size must be positive, got {cell_size}")
        self.cell_size = float(cell_size)
        # dict keeps insertion order, so snapshots are deterministic
        self._keys: Dict[GridKey, None] = {}

    def quantize(self, position, multiple: int = 1) -> GridKey:
        """Key of the cell containing position, snapped at multiple * cell_size"""
        kx, ky, kz = quantize(position, self.cell_size * multiple)
        return (kx * multiple, ky * multiple, kz * multiple)

    def key_to_position(self, key: GridKey) -> np.ndarray:
        return np.array(key, dtype=np.float64) * self.cell_size

    def contains(self, key: GridKey) -> bool:
        return key in self._keys

    def insert(self, key: GridKey) -> bool:
        """Insert key; returns False if it was already present"""
        if key in self._keys:
            return False
        self._keys[key] = None
        return True

    def clear(self):
        self._keys.clear()

    def keys(self):
        return list(self._keys)

    def positions(self) -> np.ndarray:
        """Snapped world positions of all keys, in insertion order (Nx3)"""
        if not self._keys:
            return np.zeros((0, 3), dtype=np.float64)
        return np.array(list(self._keys), dtype=np.float64) * self.cell_size

    def __contains__(self, key) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[GridKey]:
        return iter(self._keys)
