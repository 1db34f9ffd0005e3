from typing import Optional
import numpy as np
from .config import Config
from .geometry import Unit
from .image import ImageBuffer
from .scan import Scan

### Simulated capture: ring lights, analytic BGA normals and Lambertian rendering into a Scan.

def build_light_dirs(angles_deg: list = Config.LIGHT_ANGLES, z_tilt: float = Config.Z_TILT) -> np.ndarray:
    """Build light directions for a ring around the camera."""
    angles = np.deg2rad(angles_deg)
    xy = np.stack([np.cos(angles), np.sin(angles)], axis=1)
    z = np.ones((len(angles), 1)) * z_tilt
    L = np.concatenate([xy, z], axis=1)
    L /= np.linalg.norm(L, axis=1, keepdims=True) + 1e-12
    return L

def bga_centers(shape: tuple[int, int], pitch_px: float, origin=(0.0, 0.0)) -> np.ndarray:
    """Lattice nodes (x, y) covering an image of shape (H, W), one pitch beyond every border."""
    H, W = shape
    ox, oy = origin
    i = np.arange(-1, int(W / pitch_px) + 2)
    j = np.arange(-1, int(H / pitch_px) + 2)
    X, Y = np.meshgrid(ox + i * pitch_px, oy + j * pitch_px)
    return np.stack([X.ravel(), Y.ravel()], axis=1)

def bga_normals(shape: tuple[int, int], resolution: float, pitch: float = Config.DEFAULT_BGA_PITCH,
                radius: float = Config.DEFAULT_BGA_RADIUS, origin=(0.0, 0.0)) -> np.ndarray:
    """Analytic normals (H, W, 3) of hemispheres of ``radius`` on a square lattice of ``pitch``."""
    H, W = shape
    pitch_px, radius_px = pitch / resolution, radius / resolution
    n = np.zeros((H, W, 3))
    n[..., 2] = 1.0
    Y, X = np.mgrid[0:H, 0:W].astype(np.float64)
    for cx, cy in bga_centers(shape, pitch_px, origin):
        dx, dy = X - cx, Y - cy
        d2 = dx ** 2 + dy ** 2
        inside = d2 < radius_px ** 2
        h = np.sqrt(radius_px ** 2 - d2[inside])
        n[inside] = np.stack([dx[inside], dy[inside], h], axis=1) / radius_px
    return n

def render_images(normals: np.ndarray, lights: np.ndarray, gain: Optional[np.ndarray] = None,
                  albedo: float = 1.0, ambient: float = 0.0, noise_std: float = 0.0, seed: int = 0) -> np.ndarray:
    """Lambertian rendering, (H, W, K) intensities; ``gain`` (H, W) or (H, W, K) models vignetting."""
    I = albedo * np.clip(np.einsum("hwc,kc->hwk", normals, lights), 0, None)
    if gain is not None:
        I = I * (gain[..., None] if gain.ndim == 2 else gain)
    I = I + ambient
    if noise_std > 0:
        I = I + np.random.default_rng(seed).normal(0, noise_std, size=I.shape)
    return I

def render_scan(normals: np.ndarray, lights: np.ndarray, resolution: float, unit: Unit = Unit.MM,
                **kwargs) -> Scan:
    """Scan of FLOAT32 images rendered from a normal map."""
    I = render_images(normals, lights, **kwargs).astype(np.float32)
    images = [ImageBuffer.from_array(I[..., k]) for k in range(I.shape[-1])]
    return Scan(images=images, resolution=resolution, unit=unit)
