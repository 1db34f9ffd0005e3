import logging
import zipfile
from pathlib import Path
import numpy as np
import yaml
from .config import Config
from .errors import SerializationError
from .flatfield import FlatFieldModel
from .geometry import RegionOfInterest, Unit
from .photometric_stereo import PhotometricStereo

### Model document (YAML) + sidecar (.npz) holding the dense calibration tables.

logger = logging.getLogger(__name__)

DOCUMENT_KIND = "photometric_stereo"


def sidecar_path(path: str) -> Path:
    return Path(path).with_suffix(Config.SIDECAR_SUFFIX)


def save_photometric_stereo(model: PhotometricStereo, path: str):
    """Write ``path`` (YAML) and its sidecar next to it."""
    path = Path(path)
    sidecar = sidecar_path(path)
    tables = {"lights": model.lights, "response": model.response, "envelope": model.envelope}
    if model.flatfield is not None:
        tables["flatfield"] = model.flatfield.gain
    np.savez(sidecar, **tables)

    doc = {
        "model": DOCUMENT_KIND,
        "version": model.version,
        "resolution": model.resolution,
        "unit": model.unit.value,
        "image_size": list(model.image_size),
        "roi": [int(v) for v in model.roi.as_tuple()],
        "light_count": model.light_count,
        "model_order": model.model_order,
        "zones": list(model.zones),
        "max_slope": model.max_slope,
        "flatfield": model.flatfield is not None,
        "tables": sidecar.name,
    }
    if model.calib_dimensions is not None:
        doc["calib"] = {"pitch": float(model.calib_dimensions[0]), "radius": float(model.calib_dimensions[1])}
    with open(path, "w") as f:
        yaml.safe_dump(doc, f, sort_keys=False)
    logger.info("Saved model to %s (+ %s)", path, sidecar.name)


def load_photometric_stereo(path: str) -> PhotometricStereo:
    path = Path(path)
    try:
        with open(path) as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise SerializationError(f"Cannot read model document {path}: {e}") from e
    if not isinstance(doc, dict) or doc.get("model") != DOCUMENT_KIND:
        raise SerializationError(f"{path} is not a photometric stereo model document")

    sidecar = path.parent / doc.get("tables", sidecar_path(path).name)
    if not sidecar.is_file():
        raise SerializationError(f"Sidecar asset {sidecar} of model {path} is missing")
    try:
        with np.load(sidecar) as data:
            tables = {k: data[k] for k in data.files}
        lights, response, envelope = tables["lights"], tables["response"], tables["envelope"]
        flatfield = FlatFieldModel(tables["flatfield"]) if doc.get("flatfield") else None
        if response.shape[2] != doc["light_count"] or list(response.shape[:2]) != list(doc["zones"]):
            raise SerializationError(f"Sidecar {sidecar} does not match the document")
        calib = doc.get("calib")
        return PhotometricStereo(
            lights=lights, response=response, envelope=envelope,
            max_slope=doc["max_slope"], resolution=doc["resolution"],
            image_size=tuple(doc["image_size"]), unit=Unit(doc["unit"]),
            roi=RegionOfInterest(*doc["roi"]), model_order=doc["model_order"],
            version_tag=str(doc["version"]), flatfield=flatfield,
            calib_dimensions=(calib["pitch"], calib["radius"]) if calib else None)
    except SerializationError:
        raise
    except (KeyError, ValueError, TypeError, OSError, zipfile.BadZipFile) as e:
        raise SerializationError(f"Corrupt model {path}: {e}") from e
