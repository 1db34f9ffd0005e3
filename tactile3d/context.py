import logging
from dataclasses import dataclass, field
from typing import Optional
from .calibrate import calibrate_photometric_stereo
from .config import Config
from .integrate import create_integrator
from .version import version

### Explicit initialization context. Nothing here is process-wide: each context
### carries its own version tag and worker count into the calls it makes.


@dataclass
class SdkContext:
    version: str = field(default_factory=version)
    workers: Optional[int] = Config.WORKERS
    log_level: int = logging.INFO

    def initialize(self) -> "SdkContext":
        """Attach a stream handler to the package logger, once."""
        log = logging.getLogger("tactile3d")
        if not any(getattr(h, "_tactile3d", False) for h in log.handlers):
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s: %(message)s"))
            handler._tactile3d = True
            log.addHandler(handler)
        log.setLevel(self.log_level)
        log.info("tactile3d %s", self.version)
        return self

    def calibrate(self, targets, resolution: Optional[float] = None, **kwargs):
        return calibrate_photometric_stereo(targets, resolution, context=self, **kwargs)

    def create_integrator(self, **kwargs):
        return create_integrator(self.version, **kwargs)
