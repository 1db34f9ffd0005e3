import logging
from dataclasses import dataclass, field
from typing import Optional, Union
import numpy as np
import cv2
from .config import Config
from .errors import GeometryNotFoundError, InsufficientDataError
from .geometry import RegionOfInterest
from .preprocessing import fill_blobs, otsu_mask, shading_contrast
from .scan import Scan, load_scan_folder

### Calibration targets: scans of objects with known shape that yield (pixel, intensities, true normal) samples.

logger = logging.getLogger(__name__)

ZENITH = np.array([0.0, 0.0, 1.0])


@dataclass(frozen=True)
class Correspondences:
    """Samples pooled by the calibrator. Pixels are (x, y); intensities follow the scan's light order."""
    kind: str
    pixels: np.ndarray
    normals: np.ndarray
    intensities: np.ndarray
    image_size: tuple[int, int]
    weights: Optional[np.ndarray] = None

    def __post_init__(self):
        if self.weights is None:
            object.__setattr__(self, "weights", np.ones(len(self.pixels)))

    def __len__(self):
        return len(self.pixels)

    @property
    def light_count(self) -> int:
        return self.intensities.shape[1]


def _stack_or_fail(scan: Scan, kind: str) -> np.ndarray:
    if scan.light_count == 0:
        raise InsufficientDataError(f"{kind} target scan has no images")
    return scan.stack()


def _strided_grid(roi: RegionOfInterest, stride: int) -> tuple[np.ndarray, np.ndarray]:
    ys, xs = np.mgrid[roi.y:roi.bottom:stride, roi.x:roi.right:stride]
    return xs.ravel(), ys.ravel()


def refine_center(contrast: np.ndarray, center, window_px: float,
                  iterations: int = Config.REFINE_ITERATIONS) -> tuple[float, float]:
    """Sub-pixel bump centre as the contrast-weighted centroid inside a circular window."""
    H, W = contrast.shape
    cx, cy = float(center[0]), float(center[1])
    r = int(np.ceil(window_px)) + 1
    for _ in range(iterations):
        x0, x1 = max(int(round(cx)) - r, 0), min(int(round(cx)) + r + 1, W)
        y0, y1 = max(int(round(cy)) - r, 0), min(int(round(cy)) + r + 1, H)
        if x1 <= x0 or y1 <= y0:
            break
        ys, xs = np.mgrid[y0:y1, x0:x1]
        inside = (xs - cx) ** 2 + (ys - cy) ** 2 <= window_px ** 2
        w = contrast[y0:y1, x0:x1] * inside
        total = w.sum()
        if total <= 0:
            break
        nx, ny = (w * xs).sum() / total, (w * ys).sum() / total
        done = abs(nx - cx) < 1e-3 and abs(ny - cy) < 1e-3
        cx, cy = nx, ny
        if done:
            break
    return cx, cy


def check_pitch(centers: np.ndarray, pitch_px: float, tolerance: float = Config.PITCH_TOLERANCE) -> np.ndarray:
    """Keep bumps whose nearest neighbour sits one pitch away. Needs three bumps to say anything."""
    if len(centers) < 3:
        return centers
    d = np.linalg.norm(centers[:, None, :] - centers[None, :, :], axis=-1)
    np.fill_diagonal(d, np.inf)
    nearest = d.min(axis=1)
    ok = np.abs(nearest - pitch_px) <= tolerance * pitch_px
    if ok.sum() < 0.5 * len(centers):
        raise GeometryNotFoundError(
            f"Only {ok.sum()} of {len(centers)} bumps agree with a pitch of {pitch_px:.1f}px")
    return centers[ok]


def locate_bumps(I: np.ndarray, radius_px: float, pitch_px: float) -> tuple[np.ndarray, np.ndarray]:
    """
    Find bump centres in a multi-light stack (H, W, K).

    Returns the refined centres (M, 2) in (x, y) order and the filled blob mask.
    """
    contrast = shading_contrast(I)
    if not np.isfinite(contrast).all() or contrast.max() < Config.MIN_CONTRAST:
        raise GeometryNotFoundError("Scan shows no shading contrast, no bump pattern to locate")
    blobs = fill_blobs(otsu_mask(contrast))
    n, _, stats, centroids = cv2.connectedComponentsWithStats(blobs, connectivity=8)
    disc = np.pi * radius_px ** 2
    lo, hi = Config.BUMP_AREA_RANGE
    candidates = [centroids[i] for i in range(1, n)
                  if lo * disc <= stats[i, cv2.CC_STAT_AREA] <= hi * disc]
    logger.debug("%d blobs, %d with a bump-sized area", n - 1, len(candidates))
    if not candidates:
        raise GeometryNotFoundError(f"No bump of radius {radius_px:.1f}px found")
    window = min(1.2 * radius_px, pitch_px - radius_px - 1.0)
    window = max(window, radius_px)
    centers = np.array([refine_center(contrast, c, window) for c in candidates])
    return check_pitch(centers, pitch_px), blobs


@dataclass(frozen=True)
class BgaTarget:
    """
    Scan of a ball-grid-array target: a regular grid of hemispherical bumps.

    ``pitch`` and ``radius`` are in the scan's unit; when not given they come
    from the scan's calib dimensions, then from the configured defaults.
    Bumps whose footprint plus ``margin`` pixels leaves ``roi`` (the whole
    image by default) are rejected.
    """
    scan: Scan
    pitch: Optional[float] = None
    radius: Optional[float] = None
    roi: Optional[RegionOfInterest] = None
    margin: int = Config.BUMP_MARGIN
    stride: int = Config.SAMPLE_STRIDE
    footprint_fraction: float = Config.FOOTPRINT_FRACTION
    include_background: bool = True
    kind: str = field(default="bga", init=False)

    @classmethod
    def from_folder(cls, folder: str, **kwargs) -> "BgaTarget":
        return cls(load_scan_folder(folder), **kwargs)

    def dimensions(self) -> tuple[float, float]:
        pitch, radius = self.scan.calib_dimensions or (Config.DEFAULT_BGA_PITCH, Config.DEFAULT_BGA_RADIUS)
        return (self.pitch or pitch, self.radius or radius)

    def correspondences(self, resolution: Optional[float] = None) -> Correspondences:
        I = _stack_or_fail(self.scan, "BGA")
        H, W, K = I.shape
        res = resolution or self.scan.resolution
        if res is None:
            res = Config.DEFAULT_RESOLUTION
            logger.warning("BGA scan has no resolution, assuming %g", res)
        pitch, radius = self.dimensions()
        radius_px, pitch_px = radius / res, pitch / res
        roi = self.roi or RegionOfInterest.full(W, H)
        roi.check_bounds(W, H)

        located, blobs = locate_bumps(I, radius_px, pitch_px)
        reach = radius_px + self.margin
        cx, cy = located[:, 0], located[:, 1]
        keep = ((cx - reach >= roi.x) & (cx + reach <= roi.right - 1)
                & (cy - reach >= roi.y) & (cy + reach <= roi.bottom - 1))
        centers = located[keep]
        if len(centers) == 0:
            raise GeometryNotFoundError(f"All {len(located)} bumps fall outside the usable region")
        logger.info("BGA target: %d bumps used (%d located), radius %.1fpx", len(centers), len(located), radius_px)

        xs, ys = _strided_grid(roi, self.stride)
        pix, nrm = [], []
        foot = self.footprint_fraction * radius_px
        for x0, y0 in centers:
            dx, dy = xs - x0, ys - y0
            d2 = dx ** 2 + dy ** 2
            inside = d2 < foot ** 2
            h = np.sqrt(radius_px ** 2 - d2[inside])
            pix.append(np.stack([xs[inside], ys[inside]], axis=1))
            nrm.append(np.stack([dx[inside], dy[inside], h], axis=1) / radius_px)

        if self.include_background:
            band = Config.BACKGROUND_FRACTION * radius_px
            k = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (7, 7))
            grown = cv2.dilate(blobs, k)
            far = np.ones(xs.shape, dtype=bool)
            for x0, y0 in located:
                far &= (xs - x0) ** 2 + (ys - y0) ** 2 > band ** 2
            far &= grown[ys, xs] == 0
            far &= (xs >= roi.x + band) & (xs < roi.right - band) & (ys >= roi.y + band) & (ys < roi.bottom - band)
            pix.append(np.stack([xs[far], ys[far]], axis=1))
            nrm.append(np.tile(ZENITH, (int(far.sum()), 1)))

        pixels = np.concatenate(pix).astype(np.int64)
        normals = np.concatenate(nrm)
        return Correspondences(kind=self.kind, pixels=pixels, normals=normals,
                               intensities=I[pixels[:, 1], pixels[:, 0], :], image_size=(W, H))


@dataclass(frozen=True)
class FlatTarget:
    """Scan of a flat plate: every pixel looks straight up."""
    scan: Scan
    roi: Optional[RegionOfInterest] = None
    stride: int = Config.SAMPLE_STRIDE
    kind: str = field(default="flat", init=False)

    @classmethod
    def from_folder(cls, folder: str, **kwargs) -> "FlatTarget":
        return cls(load_scan_folder(folder), **kwargs)

    def correspondences(self, resolution: Optional[float] = None) -> Correspondences:
        I = _stack_or_fail(self.scan, "Flat")
        H, W, K = I.shape
        roi = self.roi or RegionOfInterest.full(W, H)
        roi.check_bounds(W, H)
        xs, ys = _strided_grid(roi, self.stride)
        pixels = np.stack([xs, ys], axis=1).astype(np.int64)
        normals = np.tile(ZENITH, (len(pixels), 1))
        return Correspondences(kind=self.kind, pixels=pixels, normals=normals,
                               intensities=I[ys, xs, :], image_size=(W, H))


CalibrationTarget = Union[BgaTarget, FlatTarget]
