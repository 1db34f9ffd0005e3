import logging
from typing import Optional, Union
import numpy as np
import cv2
from .config import Config
from .errors import DimensionMismatchError, InsufficientDataError
from .scan import Scan

### Per-pixel, per-light correction of the illumination non-uniformity of the sensor.

logger = logging.getLogger(__name__)


class FlatFieldModel:
    """
    Gain map (H, W, K) measured on a flat plate, normalised to mean 1 per light.

    Read-only once built; ``adjust`` never touches the model or its input.
    """

    def __init__(self, gain: np.ndarray):
        gain = np.array(gain, dtype=np.float32)
        if gain.ndim != 3:
            raise ValueError(f"Flat-field gain must be (H, W, K), got {gain.shape}")
        gain.flags.writeable = False
        self._gain = gain

    @classmethod
    def from_scan(cls, scan: Scan, sigma: float = Config.FLATFIELD_SIGMA,
                  min_gain: float = Config.MIN_GAIN) -> "FlatFieldModel":
        if scan.light_count == 0:
            raise InsufficientDataError("Flat scan has no images")
        I = scan.stack()
        gains = []
        for k in range(I.shape[-1]):
            smooth = cv2.GaussianBlur(I[..., k].astype(np.float32), (0, 0), sigma) if sigma > 0 else I[..., k]
            mean = float(np.mean(smooth))
            if mean <= 0:
                raise InsufficientDataError(f"Flat scan image {k} is black")
            gains.append(np.maximum(smooth / mean, min_gain))
        model = cls(np.stack(gains, axis=-1))
        logger.info("Flat field from %d images, gain range %.3f-%.3f",
                    I.shape[-1], float(model.gain.min()), float(model.gain.max()))
        return model

    @property
    def gain(self) -> np.ndarray:
        return self._gain

    @property
    def light_count(self) -> int:
        return self._gain.shape[-1]

    @property
    def image_size(self) -> tuple[int, int]:
        return (self._gain.shape[1], self._gain.shape[0])

    def adjust(self, images: Union[Scan, np.ndarray], exposure: float = 1.0,
               region: Optional[tuple[slice, slice]] = None) -> np.ndarray:
        """
        Corrected working copy of the scan intensities: I / gain / exposure.

        ``region`` selects rows/cols of the gain map when ``images`` is already
        cropped to a region of the sensor.
        """
        I = images.stack() if isinstance(images, Scan) else np.array(images, dtype=np.float64)
        gain = self._gain if region is None else self._gain[region]
        if I.shape != gain.shape:
            raise DimensionMismatchError(f"Images {I.shape} do not match flat field {gain.shape}")
        I /= gain
        I /= exposure
        return I


def apply_flat_field(flatfield: Optional[FlatFieldModel], images: Union[Scan, np.ndarray],
                     exposure: float = 1.0, region: Optional[tuple[slice, slice]] = None) -> np.ndarray:
    """Flat-field correction where a model exists; otherwise only the exposure scaling."""
    if exposure <= 0:
        raise ValueError(f"Exposure must be positive, got {exposure}")
    if flatfield is not None:
        return flatfield.adjust(images, exposure, region)
    I = images.stack() if isinstance(images, Scan) else np.array(images, dtype=np.float64)
    I /= exposure
    return I
