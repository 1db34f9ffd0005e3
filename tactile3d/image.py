from enum import Enum
import numpy as np
import cv2

### Typed 2D pixel grid every other component is built on.


class PixelType(Enum):
    RGB8 = "rgb8"
    GRAY8 = "gray8"
    FLOAT32 = "float32"

    @property
    def channels(self) -> int:
        return 3 if self is PixelType.RGB8 else 1

    @property
    def dtype(self):
        return np.float32 if self is PixelType.FLOAT32 else np.uint8


class ImageBuffer:
    """
    Width x height grid of pixels that owns its storage.

    Pixels can be written with ``set_pixel`` while the buffer is being built;
    after ``freeze()`` (or when created through ``from_array``) the buffer is
    immutable and ``array`` is a read-only view.
    """

    def __init__(self, width: int, height: int, pixel_type: PixelType = PixelType.FLOAT32):
        if width <= 0 or height <= 0:
            raise ValueError(f"Image dimensions must be positive, got {width}x{height}")
        shape = (height, width) if pixel_type.channels == 1 else (height, width, pixel_type.channels)
        self._data = np.zeros(shape, dtype=pixel_type.dtype)
        self._pixel_type = pixel_type
        self._frozen = False

    @classmethod
    def from_array(cls, array: np.ndarray) -> "ImageBuffer":
        """Copy an OpenCV-style array (HxW or HxWx3, uint8 or float) into a frozen buffer."""
        array = np.asarray(array)
        if array.ndim == 3 and array.shape[2] == 1:
            array = array[..., 0]
        if array.ndim == 3 and array.shape[2] == 3:
            if array.dtype != np.uint8:
                raise ValueError(f"Colour images must be 8-bit, got {array.dtype}")
            pixel_type = PixelType.RGB8
        elif array.ndim == 2:
            pixel_type = PixelType.GRAY8 if array.dtype == np.uint8 else PixelType.FLOAT32
        else:
            raise ValueError(f"Unsupported image shape {array.shape}")
        img = cls(array.shape[1], array.shape[0], pixel_type)
        img._data[...] = array.astype(pixel_type.dtype)
        return img.freeze()

    def set_pixel(self, x: int, y: int, value):
        if self._frozen:
            raise RuntimeError("ImageBuffer is frozen")
        self._data[y, x] = value

    def freeze(self) -> "ImageBuffer":
        self._frozen = True
        self._data.flags.writeable = False
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def width(self) -> int:
        return self._data.shape[1]

    @property
    def height(self) -> int:
        return self._data.shape[0]

    @property
    def shape(self) -> tuple[int, int]:
        """(height, width), numpy order."""
        return self._data.shape[:2]

    @property
    def channels(self) -> int:
        return self._pixel_type.channels

    @property
    def pixel_type(self) -> PixelType:
        return self._pixel_type

    @property
    def array(self) -> np.ndarray:
        view = self._data.view()
        view.flags.writeable = False
        return view

    def to_intensity(self) -> np.ndarray:
        """Grayscale float64 intensities, 8-bit data scaled into [0,1]."""
        if self._pixel_type is PixelType.RGB8:
            gray = cv2.cvtColor(np.ascontiguousarray(self._data), cv2.COLOR_RGB2GRAY)
            return gray.astype(np.float64) / 255.0
        if self._pixel_type is PixelType.GRAY8:
            return self._data.astype(np.float64) / 255.0
        return self._data.astype(np.float64)

    def __repr__(self):
        return f"ImageBuffer({self.width}x{self.height}, {self._pixel_type.value})"
