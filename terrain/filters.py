from __future__ import annotations

import cv2
import numpy as np

from common.logging_setup import get_logger
from terrain.dem import DEMSurface

log = get_logger("terrain.filters")


def disk_kernel(radius: int) -> np.ndarray:
    """Normalised circular averaging kernel of the given radius (cells)."""
    r = max(0, int(round(radius)))
    yy, xx = np.mgrid[-r : r + 1, -r : r + 1]
    k = (xx ** 2 + yy ** 2 <= r ** 2).astype(np.float64)
    return k / k.sum()


def gaussian_smooth(z: np.ndarray, sigma: float) -> np.ndarray:
    """Gaussian filter with a 3-sigma wide kernel and replicated edges."""
    ksize = 2 * int(round(1.5 * sigma)) + 1
    return cv2.GaussianBlur(z, (ksize, ksize), sigma, borderType=cv2.BORDER_REPLICATE)


def disk_average(z: np.ndarray, radius: int, border: int = cv2.BORDER_REPLICATE) -> np.ndarray:
    return cv2.filter2D(z, cv2.CV_64F, disk_kernel(radius), borderType=border)


def fill_crevasses(dem: DEMSurface, sigma: float = 10.0, extreme_weight: float = 1.1) -> DEMSurface:
    """
    Smooth surface running over crevasse tops rather than through them.

    Visual features tracked on ice are mostly crevasse edges, which sit on
    the crevasse tops. The residual from a Gaussian smooth is averaged over a
    disk with exponential weighting so the maxima dominate, post-smoothed and
    added back. Non-glaciated cells keep their original elevation.

    Args:
        sigma: smoothing scale in DEM cells; must bridge the widest crevasse.
        extreme_weight: exponent weight; larger pulls harder towards the tops.
    """
    z = dem.z.astype(np.float64)
    nodata = ~np.isfinite(z)
    work = np.where(nodata, np.nanmean(z), z) if nodata.any() else z

    smoothed = gaussian_smooth(work, sigma)
    resid = (work - smoothed) * extreme_weight
    shift = float(resid.max())
    # log-mean-exp, shifted so exp() cannot overflow
    tops = (np.log(disk_average(np.exp(resid - shift), int(round(sigma)))) + shift) / extreme_weight
    filled = gaussian_smooth(tops, sigma) + smoothed

    filled[~dem.glaciated] = z[~dem.glaciated]
    filled[nodata] = np.nan
    log.debug(
        "Crevasses filled",
        extra={"extra": {"sigma": sigma, "mean_raise_m": float(np.nanmean(filled - z)) if (~nodata).any() else None}},
    )
    return dem.replace(z=filled)
