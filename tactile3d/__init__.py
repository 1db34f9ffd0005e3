from .version import __version__, version
from .config import Config
from .errors import (Tactile3DError, CalibrationError, CalibrationTargetError, GeometryNotFoundError,
                     InsufficientDataError, SingularFitError, DimensionMismatchError, RoiBoundsError,
                     EstimationError, IntegrationError, IntegrationDomainError, SerializationError)
from .image import ImageBuffer, PixelType
from .geometry import Unit, RegionOfInterest, NormalMap, HeightMap
from .scan import Scan, create_scan, load_scan_yaml, load_scan_folder
from .targets import BgaTarget, FlatTarget, CalibrationTarget, Correspondences
from .flatfield import FlatFieldModel, apply_flat_field
from .photometric_stereo import PhotometricStereo, load_photometric_stereo
from .calibrate import calibrate_photometric_stereo
from .integrate import Integrator, create_integrator
from .serialization import save_photometric_stereo
from .context import SdkContext
from .image_io import load_images, write_normal_map, write_tmd, read_tmd
