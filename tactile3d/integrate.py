import logging
from typing import Optional
import numpy as np
import cv2
from scipy import sparse
from scipy.fft import dctn, idctn
from scipy.sparse.linalg import cg
from .config import Config
from .errors import IntegrationDomainError
from .geometry import HeightMap, NormalMap, Unit
from .version import version

### The purpose of this script is to handle height estimation from normals (Poisson integration).

logger = logging.getLogger(__name__)


def frankot_chellappa(p: np.ndarray, q: np.ndarray) -> np.ndarray:
    """Integrate gradients p=dz/dx, q=dz/dy into a surface z (periodic boundaries)."""
    H, W = p.shape
    wx = np.fft.fftfreq(W) * 2 * np.pi
    wy = np.fft.fftfreq(H) * 2 * np.pi
    WX, WY = np.meshgrid(wx, wy)
    denom = WX**2 + WY**2
    denom[0, 0] = 1.0
    P = np.fft.fft2(p)
    Q = np.fft.fft2(q)
    Z = (-1j * WX * P - 1j * WY * Q) / denom
    Z[0, 0] = 0.0
    z = np.real(np.fft.ifft2(Z))
    return z - z.mean()


def normals_to_slopes(normals: np.ndarray, min_nz: float = Config.MIN_NZ):
    """Slopes p = -nx/nz, q = -ny/nz and the mask of pixels where they are defined."""
    nz = normals[..., 2]
    valid = np.all(np.isfinite(normals), axis=-1) & (nz > min_nz)
    safe = np.where(valid, nz, 1.0)
    p = np.where(valid, -normals[..., 0] / safe, 0.0)
    q = np.where(valid, -normals[..., 1] / safe, 0.0)
    return p, q, valid


def edge_gradients(p: np.ndarray, q: np.ndarray, valid: np.ndarray):
    """Height steps between horizontal (gx) and vertical (gy) neighbours; an edge exists only between two valid pixels."""
    ex = valid[:, :-1] & valid[:, 1:]
    ey = valid[:-1, :] & valid[1:, :]
    gx = np.where(ex, 0.5 * (p[:, :-1] + p[:, 1:]), 0.0)
    gy = np.where(ey, 0.5 * (q[:-1, :] + q[1:, :]), 0.0)
    return gx, gy, ex, ey


def divergence(gx: np.ndarray, gy: np.ndarray) -> np.ndarray:
    H, W = gy.shape[0] + 1, gx.shape[1] + 1
    d = np.zeros((H, W))
    d[:, :-1] += gx
    d[:, 1:] -= gx
    d[:-1, :] += gy
    d[1:, :] -= gy
    return d


def solve_poisson_dct(d: np.ndarray) -> np.ndarray:
    """Solve the grid Laplacian (Neumann boundaries) L z = d with a cosine transform; zero mean."""
    H, W = d.shape
    ky = 2.0 * np.cos(np.pi * np.arange(H) / H) - 2.0
    kx = 2.0 * np.cos(np.pi * np.arange(W) / W) - 2.0
    lam = ky[:, None] + kx[None, :]
    lam[0, 0] = 1.0
    z_hat = dctn(d, type=2, norm="ortho") / lam
    z_hat[0, 0] = 0.0
    return idctn(z_hat, type=2, norm="ortho")


def _edge_operator(ex: np.ndarray, ey: np.ndarray, node: np.ndarray, n: int):
    """Sparse difference operator (edges x nodes) over the valid pixels."""
    ry, rx = np.nonzero(ex)
    cy, cx = np.nonzero(ey)
    left, right = node[ry, rx], node[ry, rx + 1]
    up, down = node[cy, cx], node[cy + 1, cx]
    m = len(left) + len(up)
    rows = np.concatenate([np.arange(m), np.arange(m)])
    cols = np.concatenate([right, down, left, up])
    vals = np.concatenate([np.ones(m), -np.ones(m)])
    return sparse.csr_matrix((vals, (rows, cols)), shape=(m, n))


def valid_domain(valid: np.ndarray, min_component_fraction: float) -> np.ndarray:
    """
    Single connected region to integrate over.

    Islands smaller than ``min_component_fraction`` of the valid pixels are
    dropped; two substantial regions have no common height reference.
    """
    total = int(valid.sum())
    if total == 0:
        raise IntegrationDomainError("Normal map has no valid pixel")
    count, labels, stats, _ = cv2.connectedComponentsWithStats(valid.astype(np.uint8), connectivity=4)
    areas = stats[1:, cv2.CC_STAT_AREA]
    big = np.flatnonzero(areas >= min_component_fraction * total) + 1
    if len(big) == 0:
        raise IntegrationDomainError(f"Valid region is fragmented into {count - 1} small pieces")
    if len(big) > 1:
        raise IntegrationDomainError(f"Valid region is split into {len(big)} disconnected parts")
    if count - 1 > 1:
        logger.debug("Dropped %d small islands", count - 2)
    return labels == big[0]


class Integrator:
    """
    Normal map to height map by least-squares integration of the slopes.

    ``method`` "poisson" solves the grid Poisson equation with free (Neumann)
    boundaries; "fft" is the periodic Frankot-Chellappa projection and needs
    a fully valid map.
    """

    def __init__(self, version_tag: Optional[str] = None, method: str = "poisson",
                 tolerance: float = Config.POISSON_TOLERANCE,
                 max_iterations: int = Config.POISSON_MAX_ITER,
                 min_component_fraction: float = Config.MIN_COMPONENT_FRACTION):
        if method not in ("poisson", "fft"):
            raise ValueError(f"Unknown integration method {method}")
        self.version = version_tag or version()
        self.method = method
        self.tolerance = tolerance
        self.max_iterations = max_iterations
        self.min_component_fraction = min_component_fraction

    def integrate_normal_map(self, normal_map: NormalMap, resolution: float,
                             offsets: tuple[float, float] = (0.0, 0.0), flatten: bool = False,
                             unit: Unit = Unit.MM) -> HeightMap:
        if resolution <= 0:
            raise ValueError(f"Resolution must be positive, got {resolution}")
        p, q, valid = normals_to_slopes(normal_map.normals)
        domain = valid_domain(valid, self.min_component_fraction)
        p, q = p * resolution, q * resolution  # height step per pixel

        if domain.all():
            z = self._integrate_full(p, q)
        elif self.method == "fft":
            raise IntegrationDomainError("FFT integration needs a fully valid normal map")
        else:
            z = self._integrate_masked(p, q, domain)

        z -= z[domain].mean()
        if flatten:
            z = remove_plane(z, domain)
        return HeightMap(data=z, resolution=resolution, unit=unit,
                         x_offset=offsets[0], y_offset=offsets[1])

    def _integrate_full(self, p: np.ndarray, q: np.ndarray) -> np.ndarray:
        if self.method == "fft":
            return frankot_chellappa(p, q)
        gx, gy, _, _ = edge_gradients(p, q, np.ones(p.shape, dtype=bool))
        return solve_poisson_dct(divergence(gx, gy))

    def _integrate_masked(self, p: np.ndarray, q: np.ndarray, domain: np.ndarray) -> np.ndarray:
        gx, gy, ex, ey = edge_gradients(p, q, domain)
        n = int(domain.sum())
        node = np.full(domain.shape, -1, dtype=np.int64)
        node[domain] = np.arange(n)

        A = _edge_operator(ex, ey, node, n)
        b = np.concatenate([gx[ex], gy[ey]])
        L = (A.T @ A).tocsr()
        rhs = A.T @ b
        degree = L.diagonal()
        M = sparse.diags(1.0 / np.where(degree > 0, degree, 1.0))
        x0 = solve_poisson_dct(divergence(gx, gy))[domain]
        x, info = cg(L, rhs, x0=x0, rtol=self.tolerance, maxiter=self.max_iterations, M=M)
        if info > 0:
            logger.warning("Poisson solve stopped after %d iterations without reaching %g", info, self.tolerance)

        z = np.zeros(domain.shape, dtype=np.float32)
        z[domain] = x - x.mean()
        hole = (~domain).astype(np.uint8)
        logger.info("Integrated %d pixels, filling %d", n, int(hole.sum()))
        return cv2.inpaint(z, hole, Config.INPAINT_RADIUS, cv2.INPAINT_TELEA).astype(np.float64)


def remove_plane(z: np.ndarray, domain: np.ndarray) -> np.ndarray:
    """Subtract the least-squares plane fitted over the domain."""
    ys, xs = np.nonzero(domain)
    A = np.stack([xs, ys, np.ones_like(xs)], axis=1).astype(np.float64)
    coef, *_ = np.linalg.lstsq(A, z[domain], rcond=None)
    Y, X = np.mgrid[0:z.shape[0], 0:z.shape[1]]
    return z - (coef[0] * X + coef[1] * Y + coef[2])


def create_integrator(version_tag: Optional[str] = None, **kwargs) -> Integrator:
    return Integrator(version_tag, **kwargs)
