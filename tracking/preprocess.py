from __future__ import annotations
"""
Patch preparation for the tracker:
- Grey float32 conversion
- Window bounds checks
- Sub-pixel patch extraction with an interpolation margin
- Bicubic supersampling
"""

from typing import Tuple

import cv2
import numpy as np

# Extra pixels kept around each window so bicubic upsampling has real
# neighbours at the edges; cropped off after resizing.
MARGIN = 2


def to_gray_f32(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        g = img
    elif img.shape[2] == 4:
        g = cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    else:
        g = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    if g.dtype != np.float32:
        g = g.astype(np.float32)
    return g


def window_fits(shape: Tuple[int, ...], center: Tuple[float, float], half: int, margin: int = MARGIN) -> bool:
    """True when the window plus margin lies on real pixels (no border fill)."""
    h, w = shape[:2]
    cx, cy = float(center[0]), float(center[1])
    if not (np.isfinite(cx) and np.isfinite(cy)):
        return False
    reach = half + margin
    return (
        np.floor(cx - reach) >= 0
        and np.floor(cy - reach) >= 0
        and np.ceil(cx + reach) <= w - 1
        and np.ceil(cy + reach) <= h - 1
    )


def extract_patch(img: np.ndarray, center: Tuple[float, float], half: int, margin: int = MARGIN) -> np.ndarray:
    """
    (2*(half+margin)+1)^2 patch centred on `center`; integer centres are
    an exact copy, fractional ones are sampled bilinearly.
    """
    size = 2 * (half + margin) + 1
    return cv2.getRectSubPix(img, (size, size), (float(center[0]), float(center[1])))


def upsample(patch: np.ndarray, factor: int, margin: int = MARGIN) -> np.ndarray:
    """
    Bicubic resize by an integer factor, then drop the margin. Patches of
    different size resized this way share one sample grid relative to their
    centres.
    """
    if factor == 1:
        up = patch
    else:
        h, w = patch.shape[:2]
        up = cv2.resize(patch, (w * factor, h * factor), interpolation=cv2.INTER_CUBIC)
    m = margin * factor
    return up[m : up.shape[0] - m, m : up.shape[1] - m]


def prepare_patch(img: np.ndarray, center: Tuple[float, float], half: int, factor: int) -> Tuple[np.ndarray, float]:
    """
    Upsampled, zero-mean patch and the standard deviation of the original
    (not upsampled) window.
    """
    raw = extract_patch(img, center, half)
    core = raw[MARGIN:-MARGIN, MARGIN:-MARGIN]
    std = float(core.std())
    up = upsample(raw, factor)
    return up - np.float32(up.mean()), std
