import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Sequence, Union
import numpy as np
from .config import Config
from .errors import DimensionMismatchError, EstimationError
from .flatfield import FlatFieldModel, apply_flat_field
from .geometry import NormalMap, RegionOfInterest, Unit
from .image import ImageBuffer
from .scan import Scan
from .version import version

### Core logic for turning a multi-light scan into a normal map with a calibrated model.

logger = logging.getLogger(__name__)

Images = Union[Scan, Sequence[ImageBuffer], np.ndarray]


def basis_size(order: int) -> int:
    return {1: 3, 2: 7}[order]


def response_basis(n: np.ndarray, order: int) -> np.ndarray:
    """
    Reflectance basis of unit normals (..., 3) -> (..., B).

    Order 1 is the Lambertian term [nx, ny, nz]; order 2 adds a constant
    (ambient) term and the quadratic terms nx^2, ny^2, nx*ny.
    """
    nx, ny, nz = n[..., 0], n[..., 1], n[..., 2]
    terms = [nx, ny, nz]
    if order >= 2:
        terms += [np.ones_like(nx), nx * nx, ny * ny, nx * ny]
    if order > 2:
        raise ValueError(f"Unsupported model order {order}")
    return np.stack(terms, axis=-1)


def slopes_to_normals(p: np.ndarray, q: np.ndarray) -> np.ndarray:
    """Unit normals of a surface with dh/dx = p and dh/dy = q."""
    s = np.sqrt(1.0 + p * p + q * q)
    return np.stack([-p / s, -q / s, 1.0 / s], axis=-1)


def interpolation_weights(coords: np.ndarray, length: int, count: int) -> np.ndarray:
    """Linear interpolation weights (len(coords), count) between zone centres along one axis."""
    coords = np.asarray(coords, dtype=np.float64)
    t = np.clip((coords + 0.5) * count / length - 0.5, 0, count - 1)
    i0 = np.floor(t).astype(int)
    i1 = np.minimum(i0 + 1, count - 1)
    f = t - i0
    w = np.zeros((len(coords), count))
    idx = np.arange(len(coords))
    np.add.at(w, (idx, i0), 1.0 - f)
    np.add.at(w, (idx, i1), f)
    return w


def _readonly(a: np.ndarray) -> np.ndarray:
    a = np.array(a, dtype=np.float64)
    a.flags.writeable = False
    return a


class PhotometricStereo:
    """
    Calibrated light/reflectance model of one sensor.

    ``lights`` (Zy, Zx, K, 3) holds the per-zone Lambertian light matrices used
    by linear estimation; ``response`` (Zy, Zx, K, B) the per-zone reflectance
    response used by nonlinear estimation. Both are interpolated bilinearly
    between zone centres. ``envelope`` (2, K) is the per-light intensity range
    seen at calibration; inputs are clamped to it. The model is read-only and
    can be shared between threads.
    """

    def __init__(self, lights: np.ndarray, response: np.ndarray, envelope: np.ndarray,
                 max_slope: float, resolution: float, image_size: tuple[int, int],
                 unit: Unit = Unit.MM, roi: Optional[RegionOfInterest] = None,
                 model_order: int = Config.MODEL_ORDER, version_tag: Optional[str] = None,
                 flatfield: Optional[FlatFieldModel] = None,
                 calib_dimensions: Optional[tuple[float, float]] = None):
        self._lights = _readonly(lights)
        self._response = _readonly(response)
        self._envelope = _readonly(envelope)
        zy, zx, K, B = self._response.shape
        if self._lights.shape != (zy, zx, K, 3):
            raise DimensionMismatchError(f"Light tables {self._lights.shape} do not match response {self._response.shape}")
        if B != basis_size(model_order):
            raise DimensionMismatchError(f"Order {model_order} response needs {basis_size(model_order)} terms, got {B}")
        if self._envelope.shape != (2, K):
            raise DimensionMismatchError(f"Envelope must be (2, {K}), got {self._envelope.shape}")
        if flatfield is not None and (flatfield.light_count != K or flatfield.image_size != tuple(image_size)):
            raise DimensionMismatchError("Flat field does not match the model")
        self._pinv = _readonly(np.linalg.pinv(self._lights))  # (Zy, Zx, 3, K)
        self.max_slope = float(max_slope)
        self.resolution = float(resolution)
        self.unit = Unit(unit)
        self.image_size = (int(image_size[0]), int(image_size[1]))
        self.roi = roi or RegionOfInterest.full(*self.image_size)
        self.roi.check_bounds(*self.image_size)
        self.model_order = int(model_order)
        self.version = version_tag or version()
        self.flatfield = flatfield
        self.calib_dimensions = calib_dimensions

    @property
    def lights(self) -> np.ndarray:
        return self._lights

    @property
    def response(self) -> np.ndarray:
        return self._response

    @property
    def envelope(self) -> np.ndarray:
        return self._envelope

    @property
    def light_count(self) -> int:
        return self._response.shape[2]

    @property
    def zones(self) -> tuple[int, int]:
        return self._response.shape[:2]

    def save(self, path: str):
        """Write the model as a YAML document plus an .npz sidecar."""
        from .serialization import save_photometric_stereo
        save_photometric_stereo(self, path)

    # --- estimation ---

    def linear_normal_map(self, images: Images, roi: Optional[RegionOfInterest] = None,
                          exposure: float = 1.0, workers: Optional[int] = Config.WORKERS) -> NormalMap:
        """Normals from the per-pixel linear system g = pinv(L) I, n = g/|g|."""
        return self._estimate(images, roi, exposure, workers, self._linear_band)

    def nonlinear_normal_map(self, images: Images, roi: Optional[RegionOfInterest] = None,
                             exposure: float = 1.0, workers: Optional[int] = Config.WORKERS,
                             iterations: int = Config.NONLINEAR_ITERATIONS,
                             tolerance: float = Config.NONLINEAR_TOLERANCE) -> NormalMap:
        """Linear estimate refined per pixel against the full reflectance response (Levenberg-Marquardt on the slopes)."""
        def band(I, rows, cols):
            return self._nonlinear_band(I, rows, cols, iterations, tolerance)
        return self._estimate(images, roi, exposure, workers, band)

    def _estimate(self, images: Images, roi, exposure, workers, band_fn) -> NormalMap:
        I, roi, dark = self._prepare(images, roi, exposure)
        h, w, _ = I.shape
        out = np.full((h, w, 3), np.nan)
        cols = np.arange(roi.x, roi.right)
        bands = [(r0, min(r0 + Config.ROW_BAND, h)) for r0 in range(0, h, Config.ROW_BAND)]

        def work(band):
            r0, r1 = band
            out[r0:r1] = band_fn(I[r0:r1], np.arange(roi.y + r0, roi.y + r1), cols)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            list(pool.map(work, bands))
        out[dark] = np.nan

        valid = np.all(np.isfinite(out), axis=-1)
        if not valid.any():
            raise EstimationError(f"No pixel of ROI {roi.as_tuple()} could be resolved")
        unresolved = valid.size - int(valid.sum())
        if unresolved:
            logger.warning("%d of %d pixels unresolved", unresolved, valid.size)
        return NormalMap(normals=out, roi=roi)

    def _prepare(self, images: Images, roi: Optional[RegionOfInterest], exposure: float):
        count = images.light_count if isinstance(images, Scan) else (
            images.shape[-1] if isinstance(images, np.ndarray) else len(images))
        if count != self.light_count:
            raise DimensionMismatchError(f"Model is calibrated for {self.light_count} lights, got {count} images")
        if isinstance(images, Scan):
            I = images.stack()
        elif isinstance(images, np.ndarray):
            I = np.asarray(images, dtype=np.float64)
        else:
            I = Scan(images=list(images)).stack()
        W, H = self.image_size
        if I.shape[:2] != (H, W):
            raise DimensionMismatchError(f"Images are {I.shape[1]}x{I.shape[0]}, model expects {W}x{H}")
        roi = roi or self.roi
        roi.check_bounds(W, H)
        I = apply_flat_field(self.flatfield, I[roi.slices], exposure, region=roi.slices)
        lo, hi = self._envelope
        # Pixels below the calibrated range under every light carry no shading to invert
        dark = ~np.all(np.isfinite(I), axis=-1) | np.all(I < lo, axis=-1)
        I = np.where(dark[..., None], lo, np.clip(I, lo, hi))
        return I, roi, dark

    def _interpolate(self, table: np.ndarray, rows: np.ndarray, cols: np.ndarray) -> np.ndarray:
        zy, zx = table.shape[:2]
        W, H = self.image_size
        wy = interpolation_weights(rows, H, zy)
        wx = interpolation_weights(cols, W, zx)
        return np.einsum("yi,xj,ij...->yx...", wy, wx, table)

    def _linear_band(self, I: np.ndarray, rows: np.ndarray, cols: np.ndarray) -> np.ndarray:
        P = self._interpolate(self._pinv, rows, cols)
        g = np.einsum("yxck,yxk->yxc", P, I)
        albedo = np.linalg.norm(g, axis=-1)
        ok = np.isfinite(albedo) & (albedo > Config.MIN_ALBEDO) & (g[..., 2] > 0)
        n = np.full(g.shape, np.nan)
        n[ok] = g[ok] / albedo[ok, None]
        return n

    def _predict(self, C: np.ndarray, p: np.ndarray, q: np.ndarray) -> np.ndarray:
        basis = response_basis(slopes_to_normals(p, q), self.model_order)
        return np.einsum("mkb,mb->mk", C, basis)

    def _clamp_slopes(self, p: np.ndarray, q: np.ndarray):
        s = np.sqrt(p * p + q * q)
        scale = np.where(s > self.max_slope, self.max_slope / np.maximum(s, 1e-12), 1.0)
        return p * scale, q * scale

    def _nonlinear_band(self, I: np.ndarray, rows: np.ndarray, cols: np.ndarray,
                        iterations: int, tolerance: float) -> np.ndarray:
        h, w, K = I.shape
        n0 = self._linear_band(I, rows, cols).reshape(-1, 3)
        C = self._interpolate(self._response, rows, cols).reshape(-1, K, self._response.shape[-1])
        Im = I.reshape(-1, K)

        # Unresolved linear pixels start from the zenith
        start = np.all(np.isfinite(n0), axis=-1)
        p = np.zeros(len(Im))
        q = np.zeros(len(Im))
        p[start] = -n0[start, 0] / n0[start, 2]
        q[start] = -n0[start, 1] / n0[start, 2]
        p, q = self._clamp_slopes(p, q)

        cost = np.sum((Im - self._predict(C, p, q)) ** 2, axis=-1)
        mu = np.full(len(Im), 1e-3)
        active = np.flatnonzero(np.isfinite(cost))
        step = Config.NONLINEAR_STEP
        for _ in range(iterations):
            if active.size == 0:
                break
            Ca, Ia, pa, qa = C[active], Im[active], p[active], q[active]
            r = Ia - self._predict(Ca, pa, qa)
            fp = (self._predict(Ca, pa + step, qa) - self._predict(Ca, pa - step, qa)) / (2 * step)
            fq = (self._predict(Ca, pa, qa + step) - self._predict(Ca, pa, qa - step)) / (2 * step)
            a = np.sum(fp * fp, axis=-1)
            b = np.sum(fp * fq, axis=-1)
            c = np.sum(fq * fq, axis=-1)
            g1 = np.sum(fp * r, axis=-1)
            g2 = np.sum(fq * r, axis=-1)
            damp = mu[active] * 0.5 * (a + c) + 1e-12
            det = (a + damp) * (c + damp) - b * b
            good = det > 0
            det = np.where(good, det, 1.0)
            dp = np.where(good, ((c + damp) * g1 - b * g2) / det, 0.0)
            dq = np.where(good, ((a + damp) * g2 - b * g1) / det, 0.0)
            pn, qn = self._clamp_slopes(pa + dp, qa + dq)
            new_cost = np.sum((Ia - self._predict(Ca, pn, qn)) ** 2, axis=-1)
            better = np.isfinite(new_cost) & (new_cost <= cost[active])
            idx = active[better]
            p[idx], q[idx], cost[idx] = pn[better], qn[better], new_cost[better]
            mu[idx] *= 0.3
            mu[active[~better]] *= 10.0
            moved = np.abs(pn - pa) + np.abs(qn - qa)
            done = (better & (moved < tolerance)) | (mu[active] > 1e12)
            active = active[~done]

        n = slopes_to_normals(p, q)
        signal = np.linalg.norm(Im, axis=-1)
        n[~(np.sqrt(cost) <= Config.MAX_RELATIVE_RESIDUAL * signal)] = np.nan
        return n.reshape(h, w, 3)


def load_photometric_stereo(path: str) -> PhotometricStereo:
    from .serialization import load_photometric_stereo as _load
    return _load(path)
