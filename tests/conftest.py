import numpy as np
import pytest

from tactile3d.calibrate import calibrate_photometric_stereo
from tactile3d.simulate import bga_normals, build_light_dirs, render_scan
from tactile3d.targets import BgaTarget, FlatTarget

RES = 0.01  # mm per pixel
PITCH = 0.4  # 40 px
RADIUS = 0.12  # 12 px
SHAPE = (160, 200)  # (H, W)


def make_bga_scan(lights, origin, **kwargs):
    scan = render_scan(bga_normals(SHAPE, RES, PITCH, RADIUS, origin), lights, RES, **kwargs)
    scan.set_calib_dimensions(PITCH, RADIUS)
    return scan


def make_flat_scan(lights, **kwargs):
    normals = np.zeros(SHAPE + (3,))
    normals[..., 2] = 1.0
    return render_scan(normals, lights, RES, **kwargs)


def angular_error_deg(n, truth):
    dot = np.clip(np.sum(n * truth, axis=-1), -1.0, 1.0)
    return np.degrees(np.arccos(dot))


@pytest.fixture(scope="session")
def lights():
    return build_light_dirs()


@pytest.fixture(scope="session")
def bga_scans(lights):
    return [make_bga_scan(lights, (20.0, 20.0)), make_bga_scan(lights, (33.5, 27.25))]


@pytest.fixture(scope="session")
def flat_scan(lights):
    return make_flat_scan(lights)


@pytest.fixture(scope="session")
def test_normals():
    return bga_normals(SHAPE, RES, PITCH, RADIUS, (26.0, 31.0))


@pytest.fixture(scope="session")
def test_scan(lights, test_normals):
    return render_scan(test_normals, lights, RES)


@pytest.fixture(scope="session")
def trusted(test_normals):
    """Pixels whose tilt lies inside the calibrated range."""
    return test_normals[..., 2] > np.cos(np.radians(55.0))


@pytest.fixture(scope="session")
def targets(bga_scans, flat_scan):
    return [BgaTarget(s) for s in bga_scans] + [FlatTarget(flat_scan)]


@pytest.fixture(scope="session")
def model(targets):
    return calibrate_photometric_stereo(targets, RES)
