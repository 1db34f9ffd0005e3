from dataclasses import dataclass
from enum import Enum
import numpy as np
from .errors import RoiBoundsError

### Value types passed between pipeline stages: units, regions, normal maps and height maps.


class Unit(Enum):
    MM = "mm"
    UM = "um"
    M = "m"

    def to_mm(self) -> float:
        return {Unit.MM: 1.0, Unit.UM: 1e-3, Unit.M: 1e3}[self]


@dataclass(frozen=True)
class RegionOfInterest:
    """Axis-aligned pixel rectangle (x, y, width, height)."""
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def full(cls, width: int, height: int) -> "RegionOfInterest":
        return cls(0, 0, width, height)

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def slices(self) -> tuple[slice, slice]:
        """Numpy (row, col) slices selecting the region."""
        return slice(self.y, self.bottom), slice(self.x, self.right)

    def inside(self, width: int, height: int) -> bool:
        return (self.width > 0 and self.height > 0 and self.x >= 0 and self.y >= 0
                and self.right <= width and self.bottom <= height)

    def check_bounds(self, width: int, height: int):
        if not self.inside(width, height):
            raise RoiBoundsError(f"ROI {self.as_tuple()} is not inside a {width}x{height} image")

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.x, self.y, self.width, self.height)


@dataclass
class NormalMap:
    """
    Unit surface normals for every pixel of a region, shape (h, w, 3).

    Components are (nx, ny, nz) with x along image columns and y along image
    rows. Unresolved pixels hold NaN in all three components.
    """
    normals: np.ndarray
    roi: RegionOfInterest

    @property
    def valid(self) -> np.ndarray:
        return np.all(np.isfinite(self.normals), axis=-1)

    @property
    def width(self) -> int:
        return self.normals.shape[1]

    @property
    def height(self) -> int:
        return self.normals.shape[0]


@dataclass
class HeightMap:
    """Elevations in physical units on a regular grid of ``resolution`` spacing."""
    data: np.ndarray
    resolution: float
    unit: Unit = Unit.MM
    x_offset: float = 0.0
    y_offset: float = 0.0

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def height(self) -> int:
        return self.data.shape[0]


def normals_from_height(height: np.ndarray, resolution: float) -> np.ndarray:
    """Unit normals (h, w, 3) of a height field sampled with the given spacing."""
    p = np.gradient(height, axis=1) / resolution
    q = np.gradient(height, axis=0) / resolution
    n = np.stack([-p, -q, np.ones_like(height)], axis=-1)
    n /= np.linalg.norm(n, axis=-1, keepdims=True)
    return n
