from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple

import numpy as np
import rasterio
from scipy.interpolate import RegularGridInterpolator

from common.logging_setup import get_logger
from common.utils import as_points

log = get_logger("terrain.dem")

# Vertical padding of the ray clipping box (metres).
BOX_PAD_Z = 1.0
INTERSECT_TOL = 1e-6
MAX_BISECTIONS = 64


class DEMSurface:
    """
    Regular-grid height field with glacier and visibility masks.

    - x (nx,), y (ny,) cell-centre coordinates, stored ascending
    - z (ny, nx) elevation, NaN for nodata
    - glaciated (ny, nx) bool, True on ice
    - visible (ny, nx) bool or None when the source supplied no viewshed
    """

    def __init__(
        self,
        x,
        y,
        z,
        glaciated: Optional[np.ndarray] = None,
        visible: Optional[np.ndarray] = None,
    ):
        x = np.asarray(x, dtype=float).reshape(-1)
        y = np.asarray(y, dtype=float).reshape(-1)
        z = np.asarray(z, dtype=float)
        if z.shape != (y.size, x.size):
            raise ValueError(f"z has shape {z.shape}, expected {(y.size, x.size)}")
        if x.size < 2 or y.size < 2:
            raise ValueError("DEM needs at least 2x2 cells")
        glaciated = np.ones(z.shape, dtype=bool) if glaciated is None else np.asarray(glaciated, dtype=bool)
        if glaciated.shape != z.shape:
            raise ValueError("glaciated mask must match z")
        if visible is not None:
            visible = np.asarray(visible, dtype=bool)
            if visible.shape != z.shape:
                raise ValueError("visible mask must match z")

        # north-up rasters arrive with descending y
        if y[0] > y[-1]:
            y, z, glaciated = y[::-1], z[::-1], glaciated[::-1]
            visible = None if visible is None else visible[::-1]
        if x[0] > x[-1]:
            x, z, glaciated = x[::-1], z[:, ::-1], glaciated[:, ::-1]
            visible = None if visible is None else visible[:, ::-1]

        self.x = np.ascontiguousarray(x)
        self.y = np.ascontiguousarray(y)
        self.z = np.ascontiguousarray(z)
        self.glaciated = np.ascontiguousarray(glaciated)
        self.visible = None if visible is None else np.ascontiguousarray(visible)
        self._interp = RegularGridInterpolator(
            (self.y, self.x), self.z, method="linear", bounds_error=False, fill_value=np.nan
        )

    # ------------------------------------------------------------------
    # loaders
    # ------------------------------------------------------------------

    @classmethod
    def from_npz(cls, path: str) -> "DEMSurface":
        """
        Arrays `x`/`y` (vectors) or `X`/`Y` (meshgrids), `Z`, and optionally
        `mask` (glaciated) and `visible`.
        """
        with np.load(path) as d:
            if "x" in d and "y" in d:
                x, y = d["x"], d["y"]
            else:
                x, y = d["X"][0, :], d["Y"][:, 0]
            z = d["Z"] if "Z" in d else d["z"]
            mask = d["mask"] if "mask" in d else None
            visible = d["visible"] if "visible" in d else None
        return cls(x, y, z, glaciated=mask, visible=visible)

    @classmethod
    def from_geotiff(cls, path: str, mask_path: Optional[str] = None) -> "DEMSurface":
        """
        Band 1 of a projected GeoTIFF (nodata -> NaN). An optional second raster
        on the same grid marks glaciated cells with non-zero values.
        """
        with rasterio.open(path) as ds:
            z = ds.read(1).astype(float)
            if ds.nodata is not None:
                z[z == ds.nodata] = np.nan
            t = ds.transform
            x = t.c + t.a * (np.arange(ds.width) + 0.5)
            y = t.f + t.e * (np.arange(ds.height) + 0.5)
        glaciated = None
        if mask_path is not None:
            with rasterio.open(mask_path) as ms:
                glaciated = ms.read(1) > 0
        log.info("DEM loaded", extra={"extra": {"path": str(Path(path)), "shape": list(z.shape)}})
        return cls(x, y, z, glaciated=glaciated)

    # ------------------------------------------------------------------

    @property
    def shape(self) -> Tuple[int, int]:
        return self.z.shape  # type: ignore[return-value]

    @property
    def cell_size(self) -> float:
        return float(min(abs(self.x[1] - self.x[0]), abs(self.y[1] - self.y[0])))

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """(xmin, xmax, ymin, ymax)"""
        return float(self.x[0]), float(self.x[-1]), float(self.y[0]), float(self.y[-1])

    def replace(self, **changes) -> "DEMSurface":
        fields = {"x": self.x, "y": self.y, "z": self.z, "glaciated": self.glaciated, "visible": self.visible}
        fields.update(changes)
        return DEMSurface(**fields)

    def elevation(self, x, y) -> np.ndarray:
        """Bilinear elevation at (x, y); NaN outside the grid."""
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float)
        pts = np.stack(np.broadcast_arrays(y, x), axis=-1)
        return self._interp(pts)

    def sample_grid(self, grid: np.ndarray, x, y) -> np.ndarray:
        """Bilinear sample of any (ny, nx) array on this DEM's grid."""
        interp = RegularGridInterpolator(
            (self.y, self.x), np.asarray(grid, dtype=float), bounds_error=False, fill_value=np.nan
        )
        pts = np.stack(np.broadcast_arrays(np.asarray(y, float), np.asarray(x, float)), axis=-1)
        return interp(pts)

    def lowered(self, amount: float) -> "DEMSurface":
        """Copy with glaciated cells lowered by `amount` metres (surface thinning)."""
        z = self.z.copy()
        z[self.glaciated] -= float(amount)
        return self.replace(z=z)

    def downslope(self, x, y) -> np.ndarray:
        """
        Unit horizontal downhill direction (N,2) at (x, y). NaN where the
        surface is flat or outside the grid.
        """
        gy, gx = np.gradient(self.z, self.y, self.x)
        dx = self.sample_grid(gx, x, y)
        dy = self.sample_grid(gy, x, y)
        g = np.column_stack([-np.ravel(dx), -np.ravel(dy)])
        n = np.linalg.norm(g, axis=1, keepdims=True)
        with np.errstate(invalid="ignore", divide="ignore"):
            return np.where(n > 0, g / n, np.nan)

    # ------------------------------------------------------------------
    # ray intersection
    # ------------------------------------------------------------------

    def _clip(self, origin: np.ndarray, dirs: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Slab test against the DEM box; returns (t_enter, t_exit) per ray."""
        xmin, xmax, ymin, ymax = self.bounds
        lo = np.array([xmin, ymin, np.nanmin(self.z) - BOX_PAD_Z])
        hi = np.array([xmax, ymax, np.nanmax(self.z) + BOX_PAD_Z])
        with np.errstate(divide="ignore", invalid="ignore"):
            t1 = (lo - origin) / dirs
            t2 = (hi - origin) / dirs
        tmin = np.fmin(t1, t2)
        tmax = np.fmax(t1, t2)
        # axis-parallel rays: unbounded inside the slab, empty outside
        flat = dirs == 0
        inside = (origin >= lo) & (origin <= hi)
        tmin = np.where(flat, np.where(inside, -np.inf, np.inf), tmin)
        tmax = np.where(flat, np.where(inside, np.inf, -np.inf), tmax)
        t_enter = np.maximum(tmin.max(axis=1), 0.0)
        t_exit = tmax.min(axis=1)
        return t_enter, t_exit

    def _height_above(self, origin: np.ndarray, d: np.ndarray, t) -> np.ndarray:
        p = origin + np.multiply.outer(t, d)
        return p[..., 2] - self.elevation(p[..., 0], p[..., 1])

    def intersect(self, origin, directions) -> Tuple[np.ndarray, np.ndarray]:
        """
        First crossing of each ray from above to below the surface.

        Rays are clipped to the DEM box, marched at half a cell and the
        bracketing step is bisected down to INTERSECT_TOL.

        Returns:
            xyz (N,3): intersection points, NaN rows for misses.
            hit (N,): bool.
        """
        origin = np.asarray(origin, dtype=float).reshape(3)
        dirs = as_points(directions, 3)
        out = np.full((len(dirs), 3), np.nan)
        hit = np.zeros(len(dirs), dtype=bool)
        if not np.any(np.isfinite(self.z)):
            return out, hit

        t_enter, t_exit = self._clip(origin, dirs)
        step = 0.5 * self.cell_size
        for i in np.flatnonzero(t_exit > t_enter):
            d = dirs[i]
            t = np.append(np.arange(t_enter[i], t_exit[i], step), t_exit[i])
            h = self._height_above(origin, d, t)
            cross = np.flatnonzero((h[:-1] >= 0) & (h[1:] < 0))
            if cross.size == 0:
                continue
            a, b = t[cross[0]], t[cross[0] + 1]
            for _ in range(MAX_BISECTIONS):
                if b - a <= INTERSECT_TOL:
                    break
                m = 0.5 * (a + b)
                if self._height_above(origin, d, np.array([m]))[0] >= 0:
                    a = m
                else:
                    b = m
            out[i] = origin + 0.5 * (a + b) * d
            hit[i] = True
        return out, hit
