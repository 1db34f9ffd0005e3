from pathlib import Path
import struct
import numpy as np
import cv2
from .config import Config
from .geometry import HeightMap, NormalMap, Unit
from .image import ImageBuffer

### This script handles image and surface container I/O to isolate the file formats from the rest of the program
###
TMD_HEADER = b"Binary TrueMap Data File v2.0\r\n\x00"
TMD_COMMENT = b"tactile3d\x00"


def list_scan_images(folder: str) -> list[str]:
    """Image files of a scan folder, sorted by name (= illumination order)."""
    return sorted(str(f) for f in Path(folder).glob(Config.IMAGE_PATTERN))


def load_image(path: str) -> ImageBuffer:
    """Read 8-bit gray/colour or 16-bit gray as an ImageBuffer (16-bit becomes float in [0,1])."""
    im = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    if im is None:
        raise ValueError(f"Failed to read: {path}")
    if im.ndim == 3 and im.shape[2] == 4:
        im = cv2.cvtColor(im, cv2.COLOR_BGRA2BGR)
    if im.ndim == 3:
        if im.dtype != np.uint8:
            im = cv2.cvtColor(im, cv2.COLOR_BGR2GRAY)
        else:
            im = cv2.cvtColor(im, cv2.COLOR_BGR2RGB)
    if im.dtype == np.uint16:
        im = im.astype(np.float32) / 65535.0
    return ImageBuffer.from_array(im)


def load_images(paths: list[str]) -> list[ImageBuffer]:
    return [load_image(p) for p in paths]


def save_image(img: np.ndarray, path: str, convert_bgr: bool = False):
    """Save image to disk, optionally converting RGB to BGR."""
    if convert_bgr:
        img = cv2.cvtColor(img, cv2.COLOR_RGB2BGR)
    if not cv2.imwrite(str(path), img):
        raise ValueError(f"Failed to write: {path}")


def save_buffer(buffer: ImageBuffer, path: str):
    """Save an ImageBuffer; float data is stored as 16-bit."""
    data = buffer.array
    if buffer.pixel_type.channels == 1 and data.dtype != np.uint8:
        data = np.clip(np.round(data * 65535.0), 0, 65535).astype(np.uint16)
    save_image(np.ascontiguousarray(data), path, convert_bgr=buffer.channels == 3)


def encode_normals(normal_map: NormalMap, bits: int = 16) -> np.ndarray:
    """RGB encoding (n+1)/2 of a normal map; unresolved pixels become 0."""
    if bits not in (8, 16):
        raise ValueError(f"Normal maps are written with 8 or 16 bits, got {bits}")
    top = 255.0 if bits == 8 else 65535.0
    n = np.nan_to_num(normal_map.normals, nan=-1.0)
    img = np.clip(np.round((n + 1.0) * 0.5 * top), 0, top)
    return img.astype(np.uint8 if bits == 8 else np.uint16)


def write_normal_map(path: str, normal_map: NormalMap, bits: int = 16):
    save_image(encode_normals(normal_map, bits), path, convert_bgr=True)


def write_tmd(path: str, height_map: HeightMap, resolution: float = None,
              x_offset: float = None, y_offset: float = None):
    """
    Write a height map as a TrueMap v2 binary file.

    Lengths and offsets are stored in millimetres. Missing arguments fall back
    to the values carried by the height map.
    """
    resolution = height_map.resolution if resolution is None else resolution
    x_offset = height_map.x_offset if x_offset is None else x_offset
    y_offset = height_map.y_offset if y_offset is None else y_offset
    to_mm = height_map.unit.to_mm()
    z = np.nan_to_num(height_map.data, nan=0.0).astype("<f4") * np.float32(to_mm)
    rows, cols = z.shape
    with open(path, "wb") as f:
        f.write(TMD_HEADER)
        f.write(TMD_COMMENT)
        f.write(struct.pack("<II", cols, rows))
        f.write(struct.pack("<ffff", cols * resolution * to_mm, rows * resolution * to_mm,
                            x_offset * to_mm, y_offset * to_mm))
        f.write(np.ascontiguousarray(z).tobytes())


def read_tmd(path: str) -> HeightMap:
    """Read a TrueMap v2 file back into a HeightMap in millimetres."""
    raw = Path(path).read_bytes()
    if not raw.startswith(TMD_HEADER[:29]):
        raise ValueError(f"Not a TrueMap v2 file: {path}")
    end = raw.index(b"\x00", len(TMD_HEADER))  # end of comment
    pos = end + 1
    cols, rows = struct.unpack_from("<II", raw, pos)
    pos += 8
    x_length, y_length, x_offset, y_offset = struct.unpack_from("<ffff", raw, pos)
    pos += 16
    expected = pos + rows * cols * 4
    if len(raw) < expected:
        raise ValueError(f"Truncated TrueMap file: {path}")
    z = np.frombuffer(raw, dtype="<f4", count=rows * cols, offset=pos).reshape(rows, cols)
    return HeightMap(data=z.astype(np.float64), resolution=x_length / cols, unit=Unit.MM,
                     x_offset=x_offset, y_offset=y_offset)
