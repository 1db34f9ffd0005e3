import numpy as np
import pytest

from tactile3d.image_io import read_tmd, save_buffer
from tactile3d.main import main
from tactile3d.scan import create_scan

from conftest import RES, SHAPE


def _write_scan(scan, folder):
    folder.mkdir()
    paths = []
    for k, im in enumerate(scan.images):
        p = folder / f"image{k + 1:02d}.png"
        save_buffer(im, str(p))
        paths.append(str(p))
    saved = create_scan(paths)
    saved.set_resolution(RES)
    if scan.calib_dimensions is not None:
        saved.set_calib_dimensions(*scan.calib_dimensions)
    saved.save(str(folder / "scan.yaml"))
    return str(folder)


@pytest.fixture(scope="module")
def workspace(tmp_path_factory, bga_scans, flat_scan, test_scan):
    root = tmp_path_factory.mktemp("cli")
    dirs = {
        "bga": [_write_scan(s, root / f"bga{i}") for i, s in enumerate(bga_scans)],
        "flat": _write_scan(flat_scan, root / "flat"),
        "scan": _write_scan(test_scan, root / "scan"),
        "model": str(root / "calibration.yaml"),
    }
    assert main(["calibrate", "--bga", *dirs["bga"], "--flat", dirs["flat"], "--output", dirs["model"]]) == 0
    return root, dirs


def test_calibrate_writes_model(workspace):
    root, dirs = workspace
    assert (root / "calibration.yaml").is_file()
    assert (root / "calibration.npz").is_file()


def test_reconstruct_writes_outputs(workspace):
    root, dirs = workspace
    out = root / "out"
    assert main(["--workers", "2", "reconstruct", "--model", dirs["model"], "--scan", dirs["scan"],
                 "--output-dir", str(out)]) == 0
    hm = read_tmd(str(out / "output.tmd"))
    assert hm.data.shape == SHAPE
    assert hm.resolution == pytest.approx(RES)
    assert np.all(np.isfinite(hm.data))
    # Bumps stand out of the plate
    assert np.ptp(hm.data) > 0.3 * 0.12
    assert (out / "output_nrm.png").is_file()


def test_reconstruct_roi_with_plots(workspace):
    root, dirs = workspace
    out = root / "roi"
    assert main(["reconstruct", "--model", dirs["model"], "--scan", dirs["scan"] + "/scan.yaml",
                 "--roi", "10", "20", "80", "60", "--linear", "--plot", "--output-dir", str(out)]) == 0
    assert read_tmd(str(out / "output.tmd")).data.shape == (60, 80)
    assert (out / "normals_rgb.png").is_file()
    assert (out / "height_3d.png").is_file()


def test_errors_return_nonzero(workspace, capsys):
    root, dirs = workspace
    assert main(["reconstruct", "--model", str(root / "missing.yaml"), "--scan", dirs["scan"],
                 "--output-dir", str(root / "err")]) == 1
    assert "Exception" in capsys.readouterr().out
    assert main(["reconstruct", "--model", dirs["model"], "--scan", dirs["scan"],
                 "--roi", "150", "100", "100", "100", "--output-dir", str(root / "err")]) == 1
