from __future__ import annotations

import os
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from common.errors import DegenerateTemplate, InvalidWindow, OutOfFrame
from common.logging_setup import get_logger
from common.types import MatchResult
from tracking.preprocess import prepare_patch, to_gray_f32, window_fits

log = get_logger("tracking.correlate")

DEFAULT_EXCLUSION_RADIUS = 3.0
DEFAULT_MIN_STD = 1e-6


def _check_window(template_radius: int, search_radius: int, supersample: int) -> None:
    if int(template_radius) != template_radius or int(search_radius) != search_radius:
        raise InvalidWindow("window radii must be whole pixels")
    if template_radius < 1:
        raise InvalidWindow(f"template_radius must be >= 1, got {template_radius}")
    if search_radius <= template_radius:
        raise InvalidWindow(f"search_radius ({search_radius}) must exceed template_radius ({template_radius})")
    if int(supersample) != supersample or supersample < 1:
        raise InvalidWindow(f"supersample must be an integer >= 1, got {supersample}")


def _secondary_peak(surface: np.ndarray, peak_rc: Tuple[int, int], radius_px: float) -> float:
    """
    Highest local maximum of the surface outside a disk around the primary
    peak (NaN if there is none). Only distinct maxima count, so the flank of
    the primary peak just beyond the disk is never reported.
    """
    rows, cols = np.ogrid[: surface.shape[0], : surface.shape[1]]
    outside = (rows - peak_rc[0]) ** 2 + (cols - peak_rc[1]) ** 2 > radius_px ** 2
    local_max = surface >= cv2.dilate(surface, np.ones((3, 3), np.uint8))
    candidates = outside & local_max
    if not candidates.any():
        return float("nan")
    return float(surface[candidates].max())


def _match(
    A: np.ndarray,
    B: np.ndarray,
    point: Tuple[int, int],
    r: int,
    R: int,
    s: int,
    prior: Tuple[float, float],
    exclusion_radius: float,
    min_std: float,
) -> MatchResult:
    """Single match on prepared float32 images; windows already validated."""
    u, v = int(point[0]), int(point[1])
    if not (np.isfinite(prior[0]) and np.isfinite(prior[1])):
        raise OutOfFrame(f"search seed at {(u, v)} has no finite prior {tuple(prior)}")
    # search window on whole pixels; the rounding is added back to the offset
    center_b = (int(np.round(u + prior[0])), int(np.round(v + prior[1])))
    seed_u, seed_v = center_b[0] - u, center_b[1] - v

    # 1) bounds (window + interpolation margin)
    if not window_fits(A.shape, (u, v), r):
        raise OutOfFrame(f"template at {(u, v)} leaves image A")
    if not window_fits(B.shape, center_b, R):
        raise OutOfFrame(f"search window at {center_b} leaves image B")

    # 2) patches, supersampled on a shared grid
    tmpl, t_std = prepare_patch(A, (u, v), r, s)
    if t_std < min_std:
        raise DegenerateTemplate(f"template at {(u, v)} has no texture (std={t_std:.3g})")
    search, s_std = prepare_patch(B, center_b, R, s)
    if s_std < min_std:
        raise DegenerateTemplate(f"search window at {center_b} has no texture (std={s_std:.3g})")

    # 3) correlation surface over every valid alignment
    surface = cv2.matchTemplate(search, tmpl, cv2.TM_CCOEFF_NORMED)
    surface = np.nan_to_num(surface, nan=-1.0, posinf=-1.0, neginf=-1.0)

    # 4) peaks
    _, peak, _, (pc, pr) = cv2.minMaxLoc(surface)
    secondary = _secondary_peak(surface, (pr, pc), exclusion_radius * s)

    # 5) offset from the zero-shift alignment, back in original pixels
    zero = (R - r) * s
    du = (pc - zero) / s + seed_u
    dv = (pr - zero) / s + seed_v
    return MatchResult(ok=True, displacement=(du, dv), peak=float(peak), secondary_peak=secondary)


def match_point(
    A: np.ndarray,
    B: np.ndarray,
    point: Sequence[float],
    template_radius: int,
    search_radius: int,
    supersample: int = 1,
    prior_shift: Sequence[float] = (0.0, 0.0),
    *,
    exclusion_radius: float = DEFAULT_EXCLUSION_RADIUS,
    min_std: float = DEFAULT_MIN_STD,
) -> MatchResult:
    """
    Displacement of the patch around `point` from image A to image B.

    Args:
        A, B: images (grey or BGR, any numeric dtype).
        point: (u, v) pixel in A; rounded to whole pixels.
        template_radius: half-size r of the (2r+1)^2 template.
        search_radius: half-size R > r of the search window in B.
        supersample: integer upsampling factor; sets sub-pixel resolution 1/s.
        prior_shift: expected displacement; the search window is centred on
            the whole pixel nearest point + prior_shift. The result does not
            depend on the seed as long as the match stays inside the window.
        exclusion_radius: radius (original pixels) around the primary peak
            ignored when looking for the secondary peak.

    Raises:
        InvalidWindow: bad radii or supersample factor.
        OutOfFrame: template or search window (plus margin) leaves the image.
        DegenerateTemplate: template or search window has no texture.
    """
    _check_window(template_radius, search_radius, supersample)
    pt = (int(round(float(point[0]))), int(round(float(point[1]))))
    return _match(
        to_gray_f32(A),
        to_gray_f32(B),
        pt,
        int(template_radius),
        int(search_radius),
        int(supersample),
        (float(prior_shift[0]), float(prior_shift[1])),
        exclusion_radius,
        min_std,
    )


def match_points(
    A: np.ndarray,
    B: np.ndarray,
    points,
    template_radius: int,
    search_radius: int,
    supersample: int = 1,
    prior_shift=None,
    *,
    exclusion_radius: float = DEFAULT_EXCLUSION_RADIUS,
    min_std: float = DEFAULT_MIN_STD,
    workers: Optional[int] = None,
) -> List[MatchResult]:
    """
    Batch form of match_point. Results come back in input order.

    `prior_shift` is None, one (du, dv) for all points, or one row per point.
    Points whose windows leave the images or lack texture come back as failed
    results (`ok=False`, `error` set); invalid windows abort the whole call.
    """
    _check_window(template_radius, search_radius, supersample)
    pts = np.asarray(points, dtype=float).reshape(-1, 2)
    n = len(pts)
    if prior_shift is None:
        priors = np.zeros((n, 2))
    else:
        priors = np.broadcast_to(np.asarray(prior_shift, dtype=float), (n, 2))

    A32 = to_gray_f32(A)
    B32 = to_gray_f32(B)
    r, R, s = int(template_radius), int(search_radius), int(supersample)

    def one(i: int) -> MatchResult:
        pt = (int(round(pts[i, 0])), int(round(pts[i, 1])))
        try:
            return _match(A32, B32, pt, r, R, s, tuple(priors[i]), exclusion_radius, min_std)
        except (OutOfFrame, DegenerateTemplate) as e:
            return MatchResult.failed(type(e).__name__)

    t0 = time.perf_counter()
    workers = workers or os.cpu_count() or 1
    if workers == 1 or n < 2:
        results = [one(i) for i in range(n)]
    else:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(one, range(n)))

    n_ok = sum(1 for m in results if m.ok)
    log.info(
        "Tracked points",
        extra={
            "extra": {
                "n": n,
                "ok": n_ok,
                "failed": n - n_ok,
                "r": r,
                "R": R,
                "supersample": s,
                "elapsed_ms": int(1000.0 * (time.perf_counter() - t0)),
            }
        },
    )
    return results
