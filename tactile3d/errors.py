### Error kinds raised by the calibration and reconstruction engine.
### Every failure surfaces as one of these; nothing is swallowed inside the core.


class Tactile3DError(Exception):
    """Base class for every error raised by tactile3d."""


class CalibrationError(Tactile3DError):
    """Calibration aborted; no model is returned."""


class CalibrationTargetError(CalibrationError):
    """A calibration target could not produce correspondences."""


class GeometryNotFoundError(CalibrationTargetError):
    """The expected target pattern was not located in the scan."""


class InsufficientDataError(CalibrationTargetError):
    """Too few images, targets or correspondences."""


class SingularFitError(CalibrationError):
    """The calibration system is rank deficient or not finite."""


class DimensionMismatchError(Tactile3DError, ValueError):
    """Light count or image size disagrees with what is expected."""


class RoiBoundsError(DimensionMismatchError):
    """Region of interest is not inside the image."""


class EstimationError(Tactile3DError):
    """No pixel of the region could be resolved into a normal."""


class IntegrationError(Tactile3DError):
    """Normal map could not be integrated; no height map is returned."""


class IntegrationDomainError(IntegrationError):
    """Valid region is empty or split into disconnected parts."""


class SerializationError(Tactile3DError):
    """Model document or its sidecar asset is missing or corrupt."""
