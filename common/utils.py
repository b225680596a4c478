from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Iterator, Optional

import numpy as np


def as_points(x, ncols: int) -> np.ndarray:
    """
    Coerce a single point or a list of points into a float (N, ncols) array.
    """
    a = np.asarray(x, dtype=float)
    if a.ndim == 1:
        a = a.reshape(1, -1)
    if a.ndim != 2 or a.shape[1] != ncols:
        raise ValueError(f"Expected points with {ncols} columns, got shape {np.shape(x)}")
    return a


def deg(rad) -> np.ndarray:
    return np.degrees(np.asarray(rad, dtype=float))


@contextmanager
def stage_timer(log: logging.Logger, stage: str, **fields) -> Iterator[dict]:
    """
    Log the wall time of a block as one INFO record.

    The yielded dict can be filled with extra fields inside the block; they are
    merged into the record:

        with stage_timer(log, "grid_shift") as info:
            ...
            info["n_points"] = 24
    """
    info: dict = dict(fields)
    t0 = time.perf_counter()
    try:
        yield info
    finally:
        info["stage"] = stage
        info["elapsed_ms"] = int(1000.0 * (time.perf_counter() - t0))
        log.info(f"Stage {stage} finished", extra={"extra": info})


def median_or_nan(values, mask: Optional[np.ndarray] = None) -> float:
    a = np.asarray(values, dtype=float)
    if mask is not None:
        a = a[np.asarray(mask, dtype=bool)]
    a = a[np.isfinite(a)]
    return float(np.median(a)) if a.size else float("nan")
