import pytest

from tactile3d.config import Config
from tactile3d.errors import RoiBoundsError
from tactile3d.geometry import RegionOfInterest, Unit


def test_roi_inside_and_bounds():
    roi = RegionOfInterest(10, 5, 30, 20)
    assert (roi.right, roi.bottom) == (40, 25)
    assert roi.inside(40, 25)
    assert not roi.inside(39, 25)
    assert not RegionOfInterest(0, 0, 0, 5).inside(10, 10)
    assert not RegionOfInterest(-1, 0, 5, 5).inside(10, 10)
    with pytest.raises(RoiBoundsError):
        roi.check_bounds(30, 30)


def test_units_convert_to_millimetres():
    assert Unit.UM.to_mm() == pytest.approx(1e-3)
    assert Unit.M.to_mm() == 1e3


def test_ensure_dir(tmp_path):
    target = tmp_path / "a" / "b"
    Config.ensure_dir(str(target))
    Config.ensure_dir(str(target))
    assert target.is_dir()
