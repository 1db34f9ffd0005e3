import argparse
import time
from pathlib import Path

from .config import Config
from .context import SdkContext
from .errors import Tactile3DError
from .geometry import RegionOfInterest
from .image_io import write_normal_map, write_tmd
from .photometric_stereo import load_photometric_stereo
from .scan import load_scan_folder, load_scan_yaml
from .targets import BgaTarget, FlatTarget
from .visualization import save_height_plot, save_normals_rgb


def run_calibration(ctx: SdkContext, bga_dirs: list[str], flat_dir: str = None,
                    resolution: float = None, output: str = "calibration.yaml", model_order: int = Config.MODEL_ORDER):
    """Calibrate from one or more BGA scan folders and an optional flat plate folder."""
    targets = [BgaTarget.from_folder(d) for d in bga_dirs]
    if flat_dir:
        targets.append(FlatTarget.from_folder(flat_dir))

    print(f"Running calibration algorithm on {len(targets)} targets...")
    start = time.perf_counter()
    pstereo = ctx.calibrate(targets, resolution, model_order=model_order)
    print(f"calibration took {time.perf_counter() - start:.2f} seconds")

    pstereo.save(output)
    print(f"Saved calibration: {output}")
    return pstereo


def run_reconstruction(ctx: SdkContext, model_file: str, scan_path: str, output_dir: str,
                       roi: RegionOfInterest = None, linear: bool = False, exposure: float = 1.0,
                       plot: bool = False):
    """Normal map and height map of one scan with a saved calibration."""
    print(f"Loading saved calibration data: {model_file}")
    pstereo = load_photometric_stereo(model_file)

    print(f"Running photometric stereo algorithm on {scan_path}")
    scan = load_scan_folder(scan_path) if Path(scan_path).is_dir() else load_scan_yaml(scan_path)
    print(f"Loaded {scan.light_count} images")

    if linear:
        nrm = pstereo.linear_normal_map(scan, roi, exposure=exposure, workers=ctx.workers)
    else:
        nrm = pstereo.nonlinear_normal_map(scan, roi, exposure=exposure, workers=ctx.workers)

    print("Integrating surface normals...")
    poisson = ctx.create_integrator()
    heightmap = poisson.integrate_normal_map(nrm, pstereo.resolution, unit=pstereo.unit)

    Config.ensure_dir(output_dir)
    out1 = str(Path(output_dir) / "output.tmd")
    print(f"Saving heightmap: {out1}")
    write_tmd(out1, heightmap, pstereo.resolution, 0.0, 0.0)

    out2 = str(Path(output_dir) / "output_nrm.png")
    print(f"Saving normal map: {out2}")
    write_normal_map(out2, nrm, 16)

    if plot:
        save_normals_rgb(nrm, str(Path(output_dir) / "normals_rgb.png"))
        save_height_plot(heightmap, str(Path(output_dir) / "height_3d.png"),
                         stride=max(1, max(heightmap.data.shape) // 200))
    return heightmap


def main(argv=None):
    parser = argparse.ArgumentParser(description="Photometric stereo calibration and 3D reconstruction")
    parser.add_argument("--workers", type=int, default=Config.WORKERS, help="Worker threads")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    cal = sub.add_parser("calibrate", help="Calibrate from BGA (and flat) target scans")
    cal.add_argument("--bga", nargs="+", required=True, help="BGA target scan folders")
    cal.add_argument("--flat", default=None, help="Flat target scan folder")
    cal.add_argument("--resolution", type=float, default=None, help="Pixel size, overrides the scans")
    cal.add_argument("--order", type=int, choices=(1, 2), default=Config.MODEL_ORDER, help="Reflectance model order")
    cal.add_argument("--output", default="calibration.yaml", help="Model document to write")

    rec = sub.add_parser("reconstruct", help="Compute normal map and height map of a scan")
    rec.add_argument("--model", required=True, help="Model document")
    rec.add_argument("--scan", required=True, help="Scan folder or scan.yaml")
    rec.add_argument("--roi", type=int, nargs=4, metavar=("X", "Y", "W", "H"), default=None, help="Crop region")
    rec.add_argument("--linear", action="store_true", help="Linear instead of nonlinear normal estimation")
    rec.add_argument("--exposure", type=float, default=1.0, help="Illumination scale relative to calibration")
    rec.add_argument("--output-dir", default=Config.DEFAULT_OUTPUT_DIR, help="Output directory")
    rec.add_argument("--plot", action="store_true", help="Also save RGB normals and a 3D plot")
    args = parser.parse_args(argv)

    ctx = SdkContext(workers=args.workers, log_level=10 if args.verbose else 20).initialize()
    try:
        if args.command == "calibrate":
            run_calibration(ctx, args.bga, args.flat, args.resolution, args.output, args.order)
        else:
            roi = RegionOfInterest(*args.roi) if args.roi else None
            run_reconstruction(ctx, args.model, args.scan, args.output_dir, roi,
                               args.linear, args.exposure, args.plot)
    except Tactile3DError as e:
        print(f"Exception: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
