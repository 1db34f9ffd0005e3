import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Sequence
import numpy as np
from .config import Config
from .errors import DimensionMismatchError, InsufficientDataError, SingularFitError
from .flatfield import FlatFieldModel
from .geometry import RegionOfInterest
from .photometric_stereo import PhotometricStereo, basis_size, response_basis
from .targets import BgaTarget, CalibrationTarget, Correspondences, FlatTarget
from .version import version

### Fits a photometric stereo model from pooled target correspondences.

logger = logging.getLogger(__name__)


def weighted_fit(basis: np.ndarray, intensities: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """Weighted least squares coefficients (B, K) of intensities on the basis; fails on rank deficiency."""
    sw = np.sqrt(weights)[:, None]
    A = basis * sw
    coef, _, rank, sv = np.linalg.lstsq(A, intensities * sw, rcond=None)
    if rank < basis.shape[1] or sv[-1] <= sv[0] / Config.MAX_CONDITION:
        raise SingularFitError(
            f"Calibration system is rank deficient (rank {rank} of {basis.shape[1]}), "
            "targets do not cover enough surface orientations")
    if not np.all(np.isfinite(coef)):
        raise SingularFitError("Calibration fit is not finite")
    return coef


def zone_fit(basis: np.ndarray, intensities: np.ndarray, weights: np.ndarray,
             prior: np.ndarray, lam: float) -> np.ndarray:
    """Least squares pulled toward ``prior`` with ridge weight ``lam``; a zone without samples returns the prior."""
    A = basis * weights[:, None]
    G = basis.T @ A + lam * np.eye(basis.shape[1])
    R = A.T @ intensities + lam * prior
    return np.linalg.solve(G, R)


def zone_index(pixels: np.ndarray, image_size: tuple[int, int], zones: tuple[int, int]) -> np.ndarray:
    """Flat zone index of each (x, y) pixel."""
    W, H = image_size
    zy, zx = zones
    iy = np.minimum(pixels[:, 1] * zy // H, zy - 1)
    ix = np.minimum(pixels[:, 0] * zx // W, zx - 1)
    return iy * zx + ix


def _fit_tables(normals, intensities, weights, pixels, image_size, zones, order, regularization):
    basis = response_basis(normals, order)
    global_coef = weighted_fit(basis, intensities, weights)
    residual = intensities - basis @ global_coef
    logger.info("Order %d global fit: rms residual %.5f", order, float(np.sqrt(np.mean(residual ** 2))))

    zy, zx = zones
    gram_trace = float(np.sum(weights[:, None] * basis ** 2))
    lam = regularization * gram_trace / (basis.shape[1] * zy * zx)
    index = zone_index(pixels, image_size, zones)
    table = np.empty((zy, zx, intensities.shape[1], basis.shape[1]))
    for z in range(zy * zx):
        sel = index == z
        coef = zone_fit(basis[sel], intensities[sel], weights[sel], global_coef, lam)
        table[z // zx, z % zx] = coef.T
    if not np.all(np.isfinite(table)):
        raise SingularFitError("Zone fit is not finite")
    return table


def _pool(sets: list[Correspondences], flatfield: Optional[FlatFieldModel]):
    bga_weight = sum(float(c.weights.sum()) for c in sets if c.kind != "flat")
    flat_count = sum(len(c) for c in sets if c.kind == "flat")
    flat_scale = 1.0
    if bga_weight > 0 and flat_count > 0:
        frac = Config.FLAT_ANCHOR_FRACTION
        flat_scale = frac / (1.0 - frac) * bga_weight / flat_count

    pixels, normals, intensities, weights = [], [], [], []
    for c in sets:
        I = c.intensities
        if flatfield is not None:
            I = I / flatfield.gain[c.pixels[:, 1], c.pixels[:, 0], :]
        pixels.append(c.pixels)
        normals.append(c.normals)
        intensities.append(I)
        weights.append(c.weights * (flat_scale if c.kind == "flat" else 1.0))
    return (np.concatenate(pixels), np.concatenate(normals),
            np.concatenate(intensities), np.concatenate(weights))


def calibrate_photometric_stereo(targets: Sequence[CalibrationTarget], resolution: Optional[float] = None,
                                 context=None, model_order: int = Config.MODEL_ORDER,
                                 zones: tuple[int, int] = Config.ZONES,
                                 regularization: float = Config.ZONE_REGULARIZATION,
                                 roi: Optional[RegionOfInterest] = None,
                                 flatfield_sigma: float = Config.FLATFIELD_SIGMA,
                                 workers: Optional[int] = None) -> PhotometricStereo:
    """
    Fit a photometric stereo model from one or more calibration targets.

    Several BGA targets at different positions plus one flat target give the
    best conditioned fit; a single BGA target still works. Targets are only
    read. Raises a CalibrationError subclass on any failure.
    """
    targets = list(targets)
    if not targets:
        raise InsufficientDataError("No calibration targets given")
    basis_size(model_order)
    if workers is None and context is not None:
        workers = context.workers
    start = time.perf_counter()

    with ThreadPoolExecutor(max_workers=workers) as pool:
        sets = list(pool.map(lambda t: t.correspondences(resolution), targets))

    sizes = {c.image_size for c in sets}
    counts = {c.light_count for c in sets}
    if len(sizes) > 1:
        raise DimensionMismatchError(f"Calibration targets have different image sizes: {sorted(sizes)}")
    if len(counts) > 1:
        raise DimensionMismatchError(f"Calibration targets have different light counts: {sorted(counts)}")
    image_size = sizes.pop()
    if sum(len(c) for c in sets) == 0:
        raise InsufficientDataError("Calibration targets produced no correspondences")

    flats = [t for t in targets if isinstance(t, FlatTarget)]
    flatfield = FlatFieldModel.from_scan(flats[0].scan, sigma=flatfield_sigma) if flats else None
    if len(flats) > 1:
        logger.info("%d flat targets given, flat field taken from the first", len(flats))

    pixels, normals, intensities, weights = _pool(sets, flatfield)
    lights = _fit_tables(normals, intensities, weights, pixels, image_size, zones, 1, regularization)
    response = lights if model_order == 1 else _fit_tables(
        normals, intensities, weights, pixels, image_size, zones, model_order, regularization)

    envelope = np.stack([intensities.min(axis=0), intensities.max(axis=0)])
    max_slope = float(np.max(np.hypot(normals[:, 0], normals[:, 1]) / normals[:, 2]))

    bgas = [t for t in targets if isinstance(t, BgaTarget)]
    if resolution is None:
        resolution = next((t.scan.resolution for t in targets if t.scan.resolution), None)
    if resolution is None:
        resolution = Config.DEFAULT_RESOLUTION
        logger.warning("No resolution given or found in the scans, assuming %g", resolution)
    unit = next((t.scan.unit for t in targets if t.scan.resolution), targets[0].scan.unit)

    model = PhotometricStereo(
        lights=lights, response=response, envelope=envelope, max_slope=max_slope,
        resolution=resolution, image_size=image_size, unit=unit, roi=roi,
        model_order=model_order, version_tag=context.version if context is not None else version(),
        flatfield=flatfield, calib_dimensions=bgas[0].dimensions() if bgas else None)
    logger.info("Calibrated %d lights from %d targets (%d samples) in %.2fs",
                model.light_count, len(targets), len(pixels), time.perf_counter() - start)
    return model
