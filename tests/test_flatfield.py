import numpy as np
import pytest

from tactile3d.errors import DimensionMismatchError, InsufficientDataError
from tactile3d.flatfield import FlatFieldModel, apply_flat_field
from tactile3d.scan import Scan

from conftest import SHAPE, make_flat_scan


def _ramp():
    Y, X = np.mgrid[0:SHAPE[0], 0:SHAPE[1]]
    return 0.8 + 0.4 * X / SHAPE[1]


def test_gain_follows_vignetting(lights):
    ff = FlatFieldModel.from_scan(make_flat_scan(lights, gain=_ramp()), sigma=0)
    assert ff.light_count == 6
    assert ff.image_size == (SHAPE[1], SHAPE[0])
    np.testing.assert_allclose(ff.gain.mean(axis=(0, 1)), 1.0, rtol=1e-5)
    assert ff.gain[0, 0, 0] < ff.gain[0, -1, 0]


def test_corrected_flat_scan_is_uniform(lights):
    scan = make_flat_scan(lights, gain=_ramp())
    ff = FlatFieldModel.from_scan(scan, sigma=3)
    I = ff.adjust(scan)
    interior = I[20:-20, 20:-20]
    spread = interior.std(axis=(0, 1)) / interior.mean(axis=(0, 1))
    assert np.all(spread < 1e-3)


def test_adjust_returns_a_copy(lights):
    scan = make_flat_scan(lights)
    ff = FlatFieldModel.from_scan(scan, sigma=0)
    I = scan.stack()
    before = I.copy()
    ff.adjust(I, exposure=2.0)
    np.testing.assert_array_equal(I, before)
    with pytest.raises(ValueError):
        ff.gain[0, 0, 0] = 2.0


def test_region_selects_gain(lights):
    scan = make_flat_scan(lights, gain=_ramp())
    ff = FlatFieldModel.from_scan(scan, sigma=0)
    region = (slice(10, 30), slice(40, 90))
    np.testing.assert_allclose(ff.adjust(scan.stack()[region], region=region), ff.adjust(scan)[region])


def test_shape_mismatch(lights):
    ff = FlatFieldModel.from_scan(make_flat_scan(lights), sigma=0)
    with pytest.raises(DimensionMismatchError):
        ff.adjust(np.ones((10, 10, 6)))


def test_without_model_only_exposure_applies():
    I = np.full((4, 4, 3), 0.5)
    np.testing.assert_allclose(apply_flat_field(None, I, exposure=0.5), 1.0)
    np.testing.assert_allclose(I, 0.5)
    with pytest.raises(ValueError):
        apply_flat_field(None, I, exposure=0.0)


def test_empty_or_black_flat_scan(lights):
    with pytest.raises(InsufficientDataError):
        FlatFieldModel.from_scan(Scan(images=[]))
    with pytest.raises(InsufficientDataError):
        FlatFieldModel.from_scan(make_flat_scan(lights, albedo=0.0), sigma=0)
