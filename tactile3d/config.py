from pathlib import Path

class Config:
    # --- Project root resolution ---
    # One up from the package folder
    PROJECT_ROOT = Path(__file__).resolve().parent.parent

    # --- Directory conventions ---
    DEFAULT_OUTPUT_DIR = str(PROJECT_ROOT / "Output")
    SCAN_FILE = "scan.yaml"  # Scan description inside a target folder
    IMAGE_PATTERN = "image*.png"  # Fallback when a folder has no scan.yaml, one file per light
    SIDECAR_SUFFIX = ".npz"  # Dense calibration tables next to the model document

    # --- Scan / target defaults ---
    DEFAULT_RESOLUTION = 0.0078125  # mm per pixel
    DEFAULT_UNIT = "mm"
    DEFAULT_BGA_PITCH = 0.4  # mm, centre to centre
    DEFAULT_BGA_RADIUS = 0.15625  # mm
    FOOTPRINT_FRACTION = 0.85  # Only pixels inside this fraction of the bump radius are trusted
    BACKGROUND_FRACTION = 1.25  # Flat background starts this many radii away from every bump
    BUMP_MARGIN = 2  # px kept free between a bump footprint and the image / ROI border
    SAMPLE_STRIDE = 2  # Correspondences are taken on a regular pixel stride
    MIN_CONTRAST = 0.02  # Below this the contrast image holds no bump pattern
    OTSU_SCALE = 0.5  # Multiplier on the Otsu threshold, lower keeps more of the bump shoulders
    BUMP_AREA_RANGE = (0.35, 2.0)  # Accepted blob area relative to pi*r^2
    PITCH_TOLERANCE = 0.25  # Relative tolerance on nearest-neighbour spacing
    REFINE_ITERATIONS = 3

    # --- Model fitting ---
    MODEL_ORDER = 2  # 1 -> Lambertian light matrix only, 2 -> quadratic reflectance response
    ZONES = (4, 4)  # Zone grid (rows, cols) over the sensor image
    ZONE_REGULARIZATION = 0.1  # Ridge weight pulling each zone toward the global fit
    FLAT_ANCHOR_FRACTION = 0.25  # Share of the total weight carried by the flat target
    MAX_CONDITION = 1e10

    # --- Normal estimation ---
    ROW_BAND = 64  # Rows per worker task
    WORKERS = None  # None lets the thread pool decide
    MIN_ALBEDO = 1e-6
    NONLINEAR_ITERATIONS = 30
    NONLINEAR_TOLERANCE = 1e-7
    NONLINEAR_STEP = 1e-4  # Finite difference step on the slopes
    MAX_RELATIVE_RESIDUAL = 1.0  # Nonlinear fits whose residual exceeds this fraction of the signal are unresolved

    # --- Flat field ---
    FLATFIELD_SIGMA = 25.0  # px
    MIN_GAIN = 0.05

    # --- Integration ---
    POISSON_TOLERANCE = 1e-8
    POISSON_MAX_ITER = 5000
    MIN_COMPONENT_FRACTION = 0.01
    MIN_NZ = 1e-3
    INPAINT_RADIUS = 3

    # --- Simulated capture ---
    LIGHT_ANGLES = [0, 60, 120, 180, 240, 300]  # Degrees for light directions
    Z_TILT = 2  # Height of the LED ring / radius of the ring

    @staticmethod
    def ensure_dir(path: str):
        """Create directory if it doesn't exist."""
        Path(path).mkdir(parents=True, exist_ok=True)
