import numpy as np
import cv2
from .config import Config

### The purpose of this script is to handle image preprocessing, including normalization and mask generation.
###
def normalize_uint8(img: np.ndarray) -> np.ndarray:
    """Normalize an image to [0,255] uint8 for visualization (ignores NaNs)."""
    m = np.isfinite(img)
    if not np.any(m):
        return np.zeros_like(img, dtype=np.uint8)
    a, b = img[m].min(), img[m].max()
    if b <= a + 1e-12:
        return np.zeros_like(img, dtype=np.uint8)
    out = np.zeros_like(img, dtype=np.float32)
    out[m] = (img[m] - a) / (b - a)
    return np.clip(out * 255.0, 0, 255).astype(np.uint8)

def shading_contrast(I: np.ndarray) -> np.ndarray:
    """Per-pixel spread of the light images after normalising each by its median. Flat pixels give 0."""
    med = np.median(I.reshape(-1, I.shape[-1]), axis=0)
    med = np.where(med > 1e-12, med, 1.0)
    return np.std(I / med[None, None, :], axis=-1)

def otsu_mask(img: np.ndarray, scale: float = Config.OTSU_SCALE, morph_open_ksize: int = 3) -> np.ndarray:
    """Foreground mask from a scaled Otsu threshold."""
    I8 = normalize_uint8(img)
    thr, _ = cv2.threshold(I8, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    mask = (I8 > int(thr * scale)).astype(np.uint8)
    if morph_open_ksize > 0:
        k = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (morph_open_ksize, morph_open_ksize))
        mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN, k, iterations=1)
    return mask

def fill_blobs(mask: np.ndarray) -> np.ndarray:
    """Fill every external contour so ring-shaped blobs become discs."""
    contours, _ = cv2.findContours(mask.astype(np.uint8), cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE)
    filled = np.zeros(mask.shape, dtype=np.uint8)
    cv2.drawContours(filled, contours, -1, 1, thickness=cv2.FILLED)
    return filled
