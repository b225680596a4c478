from __future__ import annotations

from typing import Sequence

import numpy as np

from common.logging_setup import get_logger
from terrain.dem import DEMSurface

log = get_logger("terrain.viewshed")


def viewshed(dem: DEMSurface, observer: Sequence[float], chunk_rows: int = 4, clearance: float = 0.0) -> np.ndarray:
    """
    Cells of `dem` visible from `observer` (x, y, z).

    Each line of sight is sampled every half cell; a cell is hidden when any
    sample strictly between the observer and the cell's last half-cell lies
    above the line. Rows are processed in chunks to bound memory. NaN cells are
    never visible.

    Returns:
        (ny, nx) bool array.
    """
    o = np.asarray(observer, dtype=float).reshape(3)
    X, Y = np.meshgrid(dem.x, dem.y)
    step = 0.5 * dem.cell_size
    out = np.zeros(dem.shape, dtype=bool)

    for r0 in range(0, dem.shape[0], chunk_rows):
        cx = X[r0 : r0 + chunk_rows].ravel()
        cy = Y[r0 : r0 + chunk_rows].ravel()
        cz = dem.z[r0 : r0 + chunk_rows].ravel()
        dist = np.hypot(cx - o[0], cy - o[1])
        n = max(2, int(np.ceil(np.nanmax(dist) / step)))
        t = (np.arange(1, n) / n)[None, :]

        sx = o[0] + t * (cx - o[0])[:, None]
        sy = o[1] + t * (cy - o[1])[:, None]
        line = o[2] + t * (cz - o[2])[:, None]
        ground = dem.elevation(sx, sy)

        # outside the grid nothing blocks; skip the cell's own neighbourhood
        near_target = t * dist[:, None] > dist[:, None] - step
        blocked = (ground > line + clearance) & ~near_target
        vis = ~np.any(blocked, axis=1) & np.isfinite(cz)
        out[r0 : r0 + chunk_rows] = vis.reshape(-1, dem.shape[1])

    log.info(
        "Viewshed computed",
        extra={"extra": {"observer": o.tolist(), "visible_fraction": float(out.mean())}},
    )
    return out
