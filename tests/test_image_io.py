import struct

import cv2
import numpy as np
import pytest

from tactile3d.geometry import HeightMap, NormalMap, RegionOfInterest, Unit
from tactile3d.image import ImageBuffer, PixelType
from tactile3d.image_io import (TMD_HEADER, encode_normals, load_image, read_tmd, save_buffer,
                                write_normal_map, write_tmd)


def test_tmd_layout_and_round_trip(tmp_path):
    data = np.arange(12, dtype=np.float64).reshape(3, 4) * 0.001
    path = tmp_path / "out.tmd"
    write_tmd(str(path), HeightMap(data, resolution=0.01, x_offset=0.5, y_offset=-0.25))

    raw = path.read_bytes()
    assert raw.startswith(TMD_HEADER)
    pos = raw.index(b"\x00", len(TMD_HEADER)) + 1
    assert struct.unpack_from("<II", raw, pos) == (4, 3)
    assert len(raw) == pos + 8 + 16 + 12 * 4

    hm = read_tmd(str(path))
    np.testing.assert_allclose(hm.data, data, rtol=1e-6)
    assert hm.resolution == pytest.approx(0.01)
    assert (hm.x_offset, hm.y_offset) == pytest.approx((0.5, -0.25))


def test_tmd_is_written_in_millimetres(tmp_path):
    path = tmp_path / "um.tmd"
    write_tmd(str(path), HeightMap(np.full((2, 2), 5.0), resolution=10.0, unit=Unit.UM))
    hm = read_tmd(str(path))
    np.testing.assert_allclose(hm.data, 0.005)
    assert hm.resolution == pytest.approx(0.01)


def test_read_rejects_other_files(tmp_path):
    path = tmp_path / "bad.tmd"
    path.write_bytes(b"hello")
    with pytest.raises(ValueError):
        read_tmd(str(path))


def test_normal_map_png_is_16_bit(tmp_path):
    normals = np.zeros((2, 3, 3))
    normals[..., 2] = 1.0
    normals[0, 0] = [1.0, 0.0, 0.0]
    normals[1, 2] = np.nan
    nrm = NormalMap(normals, RegionOfInterest.full(3, 2))
    path = tmp_path / "out_nrm.png"
    write_normal_map(str(path), nrm)

    img = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    assert img.dtype == np.uint16
    rgb = img[..., ::-1]
    assert tuple(rgb[0, 0]) == (65535, 32768, 32768)
    assert tuple(rgb[0, 1]) == (32768, 32768, 65535)
    assert tuple(rgb[1, 2]) == (0, 0, 0)
    assert encode_normals(nrm, bits=8).dtype == np.uint8


def test_buffer_round_trip(tmp_path):
    gray = ImageBuffer.from_array(np.linspace(0, 1, 20, dtype=np.float32).reshape(4, 5))
    save_buffer(gray, str(tmp_path / "g.png"))
    back = load_image(str(tmp_path / "g.png"))
    assert back.pixel_type is PixelType.FLOAT32
    np.testing.assert_allclose(back.array, gray.array, atol=1e-4)

    rgb = np.zeros((2, 2, 3), dtype=np.uint8)
    rgb[..., 0] = 200
    save_buffer(ImageBuffer.from_array(rgb), str(tmp_path / "c.png"))
    assert load_image(str(tmp_path / "c.png")).array[0, 0, 0] == 200


def test_missing_image(tmp_path):
    with pytest.raises(ValueError):
        load_image(str(tmp_path / "nope.png"))
