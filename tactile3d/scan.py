import logging
from pathlib import Path
from typing import Optional
import numpy as np
import yaml
from .config import Config
from .errors import DimensionMismatchError, SerializationError
from .geometry import Unit
from .image import ImageBuffer
from .image_io import list_scan_images, load_images

logger = logging.getLogger(__name__)


class Scan:
    """
    Ordered set of same-sized images, one per illumination direction.

    The position of an image in the sequence is its light index and must match
    the light index used at calibration. Images are either given directly or
    loaded from ``image_paths`` on first access.
    """

    def __init__(self, images: Optional[list[ImageBuffer]] = None,
                 image_paths: Optional[list[str]] = None,
                 resolution: Optional[float] = None, unit: Unit = Unit.MM):
        self._images = None
        self._image_paths = [str(p) for p in image_paths] if image_paths else []
        self.resolution = resolution
        self.unit = Unit(unit)
        self.calib_dimensions = None  # (pitch, radius) of a BGA target
        if images is not None:
            self._set_images(list(images))

    def _set_images(self, images: list[ImageBuffer]):
        shapes = {im.shape for im in images}
        if len(shapes) > 1:
            raise DimensionMismatchError(f"All images of a scan must share dimensions, got {sorted(shapes)}")
        self._images = [im if im.frozen else im.freeze() for im in images]

    @property
    def images(self) -> list[ImageBuffer]:
        if self._images is None:
            self._set_images(load_images(self._image_paths))
            logger.debug("Loaded %d images for scan", len(self._images))
        return self._images

    @property
    def image_paths(self) -> list[str]:
        return list(self._image_paths)

    @property
    def light_count(self) -> int:
        if self._images is None:
            return len(self._image_paths)
        return len(self._images)

    @property
    def image_size(self) -> tuple[int, int]:
        """(width, height) of every image, (0, 0) for an empty scan."""
        if not self.images:
            return (0, 0)
        return (self.images[0].width, self.images[0].height)

    def set_resolution(self, resolution: float, unit: Unit = Unit.MM):
        if resolution <= 0:
            raise ValueError(f"Resolution must be positive, got {resolution}")
        self.resolution = float(resolution)
        self.unit = Unit(unit)

    def set_calib_dimensions(self, pitch: float, radius: float):
        if pitch <= 0 or radius <= 0 or 2 * radius > pitch:
            raise ValueError(f"Invalid BGA dimensions pitch={pitch} radius={radius}")
        self.calib_dimensions = (float(pitch), float(radius))

    def stack(self) -> np.ndarray:
        """Intensities as an (H, W, K) float64 array."""
        if not self.images:
            raise DimensionMismatchError("Scan has no images")
        return np.stack([im.to_intensity() for im in self.images], axis=-1)

    def save(self, path: str):
        """Write the scan description as YAML; image paths are stored relative to it when possible."""
        base = Path(path).resolve().parent
        paths = []
        for p in self._image_paths:
            p = Path(p).resolve()
            try:
                paths.append(str(p.relative_to(base)))
            except ValueError:
                paths.append(str(p))
        doc = {
            "images": paths,
            "resolution": self.resolution,
            "unit": self.unit.value,
        }
        if self.calib_dimensions is not None:
            doc["calib"] = {"pitch": self.calib_dimensions[0], "radius": self.calib_dimensions[1]}
        with open(path, "w") as f:
            yaml.safe_dump(doc, f, sort_keys=False)


def create_scan(paths: list[str]) -> Scan:
    return Scan(image_paths=paths)


def load_scan_yaml(path: str) -> Scan:
    path = Path(path)
    try:
        with open(path) as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise SerializationError(f"Cannot read scan file {path}: {e}") from e
    if not isinstance(doc, dict) or "images" not in doc:
        raise SerializationError(f"Scan file {path} has no image list")
    paths = [str(p if Path(p).is_absolute() else path.parent / p) for p in doc["images"]]
    scan = Scan(image_paths=paths, unit=Unit(doc.get("unit", Config.DEFAULT_UNIT)))
    if doc.get("resolution") is not None:
        scan.set_resolution(doc["resolution"], scan.unit)
    calib = doc.get("calib")
    if calib:
        scan.set_calib_dimensions(calib["pitch"], calib["radius"])
    return scan


def load_scan_folder(folder: str) -> Scan:
    """Scan of a target folder: its scan.yaml if present, else its image*.png files."""
    scan_file = Path(folder) / Config.SCAN_FILE
    if scan_file.is_file():
        return load_scan_yaml(str(scan_file))
    return create_scan(list_scan_images(folder))
