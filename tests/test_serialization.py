import numpy as np
import pytest

from tactile3d.calibrate import calibrate_photometric_stereo
from tactile3d.errors import SerializationError
from tactile3d.geometry import RegionOfInterest
from tactile3d.photometric_stereo import load_photometric_stereo
from tactile3d.serialization import sidecar_path

from conftest import RES


def test_round_trip(model, test_scan, tmp_path):
    path = tmp_path / "model.yaml"
    model.save(str(path))
    assert sidecar_path(str(path)).is_file()

    loaded = load_photometric_stereo(str(path))
    assert loaded.version == model.version
    assert loaded.resolution == model.resolution
    assert loaded.image_size == model.image_size
    assert loaded.roi == model.roi
    assert loaded.model_order == model.model_order
    assert loaded.calib_dimensions == model.calib_dimensions
    np.testing.assert_array_equal(loaded.lights, model.lights)
    np.testing.assert_array_equal(loaded.response, model.response)
    np.testing.assert_array_equal(loaded.flatfield.gain, model.flatfield.gain)

    a = model.nonlinear_normal_map(test_scan)
    b = loaded.nonlinear_normal_map(test_scan)
    np.testing.assert_array_equal(a.normals, b.normals)


def test_missing_sidecar(model, tmp_path):
    path = tmp_path / "model.yaml"
    model.save(str(path))
    sidecar_path(str(path)).unlink()
    with pytest.raises(SerializationError):
        load_photometric_stereo(str(path))


def test_corrupt_sidecar(model, tmp_path):
    path = tmp_path / "model.yaml"
    model.save(str(path))
    sidecar_path(str(path)).write_bytes(b"not a zip archive")
    with pytest.raises(SerializationError):
        load_photometric_stereo(str(path))


def test_not_a_model_document(tmp_path):
    path = tmp_path / "scan.yaml"
    path.write_text("images: [image01.png]\n")
    with pytest.raises(SerializationError):
        load_photometric_stereo(str(path))
    with pytest.raises(SerializationError):
        load_photometric_stereo(str(tmp_path / "missing.yaml"))


def test_roi_with_numpy_ints(targets, tmp_path):
    roi = RegionOfInterest(*np.array([10, 5, 120, 100]))
    path = tmp_path / "model.yaml"
    calibrate_photometric_stereo(targets, RES, model_order=1, roi=roi).save(str(path))
    loaded = load_photometric_stereo(str(path))
    assert loaded.roi == RegionOfInterest(10, 5, 120, 100)
    assert all(type(v) is int for v in loaded.roi.as_tuple())
