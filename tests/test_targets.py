import numpy as np
import pytest

from tactile3d.errors import GeometryNotFoundError, InsufficientDataError, RoiBoundsError
from tactile3d.geometry import RegionOfInterest
from tactile3d.scan import Scan
from tactile3d.targets import BgaTarget, FlatTarget, locate_bumps, refine_center

from conftest import PITCH, RADIUS, RES


def test_locates_every_bump_inside_the_image(bga_scans):
    centers, _ = locate_bumps(bga_scans[0].stack(), RADIUS / RES, PITCH / RES)
    expected = {(x, y) for x in (20, 60, 100, 140, 180) for y in (20, 60, 100, 140)}
    found = {(int(round(x)), int(round(y))) for x, y in centers}
    assert expected <= found
    for x, y in centers:
        assert abs(x - round(x)) < 0.05 and abs(y - round(y)) < 0.05


def test_bga_normals_are_sphere_normals(bga_scans):
    c = BgaTarget(bga_scans[0]).correspondences()
    assert c.kind == "bga"
    assert len(c) > 0
    np.testing.assert_allclose(np.linalg.norm(c.normals, axis=1), 1.0, atol=1e-9)
    tilted = c.normals[:, 2] < 0.999
    assert tilted.sum() > 100
    assert (~tilted).sum() > 100  # flat background between the bumps
    # Rendered intensities follow the ground truth exactly
    from tactile3d.simulate import build_light_dirs
    predicted = np.clip(c.normals @ build_light_dirs().T, 0, None)
    np.testing.assert_allclose(c.intensities, predicted, atol=2e-3)


def test_bumps_near_the_border_are_rejected(bga_scans):
    c = BgaTarget(bga_scans[1]).correspondences()
    x, y = c.pixels[:, 0], c.pixels[:, 1]
    tilted = c.normals[:, 2] < 0.999
    # Usable bumps sit at x in 33.5..153.5 and y in 27.25..107.25; the cut ones do not contribute
    assert x[tilted].min() > 22 and x[tilted].max() < 170
    assert y[tilted].min() > 16 and y[tilted].max() < 125


def test_roi_margin_limits_bumps(bga_scans):
    roi = RegionOfInterest(0, 0, 120, 160)
    c = BgaTarget(bga_scans[0], roi=roi).correspondences()
    assert c.pixels[:, 0].max() < 120


def test_dimensions_fall_back_to_scan(bga_scans):
    assert BgaTarget(bga_scans[0]).dimensions() == (PITCH, RADIUS)
    assert BgaTarget(bga_scans[0], pitch=0.5, radius=0.2).dimensions() == (0.5, 0.2)


def test_wrong_radius_finds_no_geometry(bga_scans):
    with pytest.raises(GeometryNotFoundError):
        BgaTarget(bga_scans[0], radius=0.3, pitch=0.9).correspondences()


def test_flat_scan_has_no_bga_geometry(flat_scan):
    with pytest.raises(GeometryNotFoundError):
        BgaTarget(flat_scan).correspondences()


def test_empty_scan_is_insufficient():
    with pytest.raises(InsufficientDataError):
        BgaTarget(Scan(images=[])).correspondences()
    with pytest.raises(InsufficientDataError):
        FlatTarget(Scan(images=[])).correspondences()


def test_flat_target_points_up(flat_scan):
    c = FlatTarget(flat_scan, stride=4).correspondences()
    assert c.kind == "flat"
    assert len(c) == 40 * 50
    np.testing.assert_array_equal(c.normals, np.tile([0.0, 0.0, 1.0], (len(c), 1)))


def test_flat_target_roi_bounds(flat_scan):
    with pytest.raises(RoiBoundsError):
        FlatTarget(flat_scan, roi=RegionOfInterest(150, 0, 100, 10)).correspondences()


def test_targets_are_immutable(flat_scan):
    t = FlatTarget(flat_scan)
    with pytest.raises(AttributeError):
        t.stride = 1


def test_refine_center_moves_to_the_weighted_centre():
    Y, X = np.mgrid[0:41, 0:41]
    contrast = np.exp(-((X - 21.3) ** 2 + (Y - 18.6) ** 2) / 8.0)
    cx, cy = refine_center(contrast, (20, 20), window_px=10.0, iterations=10)
    assert abs(cx - 21.3) < 0.05 and abs(cy - 18.6) < 0.05
