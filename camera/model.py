"""
Pinhole camera with a radial lens-distortion polynomial.

World frame: x east, y north, z up (metres). Camera frame: x right, y down,
z along the optical axis. Pixels are 0-based with pixel centres on integer
coordinates, u along columns and v along rows.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Optional, Sequence, Tuple

import numpy as np

from common.errors import NoIntersection
from common.utils import as_points
from camera.mask import N_FIXED

if TYPE_CHECKING:  # pragma: no cover
    from camera.calibrate import CalibrationResult
    from camera.mask import FreeParameterMask
    from terrain.dem import DEMSurface

# r^2 is clamped here before the distortion polynomial is evaluated; far
# outside the frame the polynomial would otherwise fold back into the image.
MAX_R2 = 4.0
UNDISTORT_MAX_ITER = 50
UNDISTORT_TOL = 1e-12


def _frozen(a, n: Optional[int], name: str) -> np.ndarray:
    arr = np.array(a, dtype=float).reshape(-1)
    if n is not None and arr.size != n:
        raise ValueError(f"{name} must have {n} values, got {arr.size}")
    arr.setflags(write=False)
    return arr


def rotation_matrix(viewdir: Sequence[float]) -> np.ndarray:
    """
    World-to-camera rotation for (yaw, pitch, roll) in radians.

    yaw is counter-clockwise from world +x, pitch is positive looking up, roll
    spins the image about the optical axis. Rows are the camera
    x (right), y (down) and z (forward) axes expressed in world coordinates.
    """
    yaw, pitch, roll = (float(a) for a in viewdir)
    cy, sy = np.cos(yaw), np.sin(yaw)
    cp, sp = np.cos(pitch), np.sin(pitch)
    cr, sr = np.cos(roll), np.sin(roll)
    forward = np.array([cp * cy, cp * sy, sp])
    right = np.array([sy, -cy, 0.0])
    down = np.cross(forward, right)
    x_axis = cr * right + sr * down
    y_axis = -sr * right + cr * down
    return np.vstack([x_axis, y_axis, forward])


@dataclass(frozen=True, eq=False)
class Camera:
    """
    Camera parameters plus the projection operations that use them.

    Attributes:
        location: (x, y, z) of the projection centre; never calibrated.
        image_size: (width, height) in pixels.
        viewdir: (yaw, pitch, roll) in radians.
        focal_length: (fu, fv) in pixels; defaults to the image width.
        principal_point: (cu, cv) in pixels; defaults to the image centre.
        radial_distortion: (k1, k2, ...) for 1 + k1 r^2 + k2 r^4 + ...
    """
    location: np.ndarray
    image_size: Tuple[int, int]
    viewdir: np.ndarray = (0.0, 0.0, 0.0)  # type: ignore[assignment]
    focal_length: Optional[np.ndarray] = None
    principal_point: Optional[np.ndarray] = None
    radial_distortion: np.ndarray = (0.0,)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        w, h = (int(v) for v in self.image_size)
        if w <= 0 or h <= 0:
            raise ValueError("image_size must be positive (width, height)")
        object.__setattr__(self, "image_size", (w, h))
        object.__setattr__(self, "location", _frozen(self.location, 3, "location"))
        object.__setattr__(self, "viewdir", _frozen(self.viewdir, 3, "viewdir"))
        f = (float(w), float(w)) if self.focal_length is None else self.focal_length
        f = np.broadcast_to(np.asarray(f, dtype=float), (2,))
        object.__setattr__(self, "focal_length", _frozen(f, 2, "focal_length"))
        c = ((w - 1) / 2.0, (h - 1) / 2.0) if self.principal_point is None else self.principal_point
        object.__setattr__(self, "principal_point", _frozen(c, 2, "principal_point"))
        object.__setattr__(self, "radial_distortion", _frozen(self.radial_distortion, None, "radial_distortion"))

    @classmethod
    def from_sensor(
        cls,
        location: Sequence[float],
        image_size: Tuple[int, int],
        viewdir: Sequence[float],
        focal_mm: float,
        sensor_mm: Tuple[float, float],
        n_distortion: int = 1,
    ) -> "Camera":
        """Initial guess from lens focal length and sensor size (both in mm)."""
        w, h = image_size
        f = (w * focal_mm / float(sensor_mm[0]), h * focal_mm / float(sensor_mm[1]))
        return cls(
            location=location,
            image_size=image_size,
            viewdir=viewdir,
            focal_length=f,
            radial_distortion=(0.0,) * n_distortion,
        )

    # ------------------------------------------------------------------
    # parameter vector
    # ------------------------------------------------------------------

    @property
    def n_distortion(self) -> int:
        return int(self.radial_distortion.size)

    @property
    def R(self) -> np.ndarray:
        return rotation_matrix(self.viewdir)

    def to_vector(self) -> np.ndarray:
        """location[3], viewdir[3], focal_length[2], principal_point[2], distortion[k]."""
        return np.concatenate(
            [self.location, self.viewdir, self.focal_length, self.principal_point, self.radial_distortion]
        )

    def from_vector(self, vec) -> "Camera":
        v = np.asarray(vec, dtype=float).reshape(-1)
        if v.size != N_FIXED + self.n_distortion:
            raise ValueError(f"parameter vector must have {N_FIXED + self.n_distortion} entries")
        return replace(
            self,
            location=v[0:3],
            viewdir=v[3:6],
            focal_length=v[6:8],
            principal_point=v[8:10],
            radial_distortion=v[10:],
        )

    # ------------------------------------------------------------------
    # lens
    # ------------------------------------------------------------------

    def _radial_scale(self, r2: np.ndarray) -> np.ndarray:
        r2 = np.minimum(r2, MAX_R2)
        scale = np.ones_like(r2)
        rp = np.ones_like(r2)
        for k in self.radial_distortion:
            rp = rp * r2
            scale = scale + k * rp
        return scale

    def distort(self, xy: np.ndarray) -> np.ndarray:
        """Normalised ideal coordinates -> normalised distorted coordinates."""
        if not np.any(self.radial_distortion):
            return xy
        return xy * self._radial_scale(np.sum(xy ** 2, axis=1))[:, None]

    def undistort(self, xy_d: np.ndarray) -> np.ndarray:
        """Invert `distort` by fixed-point iteration."""
        if not np.any(self.radial_distortion):
            return xy_d
        xy = xy_d.copy()
        for _ in range(UNDISTORT_MAX_ITER):
            nxt = xy_d / self._radial_scale(np.sum(xy ** 2, axis=1))[:, None]
            done = not np.any(np.abs(nxt - xy) > UNDISTORT_TOL)
            xy = nxt
            if done:
                break
        return xy

    # ------------------------------------------------------------------
    # projection
    # ------------------------------------------------------------------

    def _project_raw(self, xyz: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        cam = (xyz - self.location) @ self.R.T
        depth = cam[:, 2]
        with np.errstate(divide="ignore", invalid="ignore"):
            xy = cam[:, :2] / depth[:, None]
        xy = self.distort(xy)
        uv = xy * self.focal_length + self.principal_point
        return uv, depth

    def in_frame(self, uv) -> np.ndarray:
        uv = as_points(uv, 2)
        w, h = self.image_size
        return (uv[:, 0] >= -0.5) & (uv[:, 0] <= w - 0.5) & (uv[:, 1] >= -0.5) & (uv[:, 1] <= h - 0.5)

    def project(self, xyz) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        World points -> pixels.

        Returns:
            uv (N,2): pixel coordinates, NaN for points behind the camera.
            depth (N,): distance along the optical axis.
            inframe (N,): in front of the camera and inside the image.
        """
        xyz = as_points(xyz, 3)
        uv, depth = self._project_raw(xyz)
        uv[~(depth > 0)] = np.nan
        inframe = (depth > 0) & self.in_frame(uv)
        return uv, depth, inframe

    def rays(self, uv) -> np.ndarray:
        """Unit world-frame ray directions through pixels."""
        uv = as_points(uv, 2)
        xy = self.undistort((uv - self.principal_point) / self.focal_length)
        cam = np.column_stack([xy, np.ones(len(xy))])
        d = cam @ self.R
        return d / np.linalg.norm(d, axis=1, keepdims=True)

    def invproject(self, uv, dem: Optional["DEMSurface"] = None, *, strict: bool = False) -> np.ndarray:
        """
        Pixels -> world.

        Without a DEM the unit ray directions are returned. With a DEM each ray
        is intersected with the surface; misses come back as NaN rows, or raise
        NoIntersection when `strict` is set.
        """
        dirs = self.rays(uv)
        if dem is None:
            return dirs
        xyz, hit = dem.intersect(self.location, dirs)
        if strict and not np.all(hit):
            raise NoIntersection(f"{int((~hit).sum())} of {hit.size} rays did not hit the DEM")
        return xyz

    # ------------------------------------------------------------------

    def optimizecam(self, xyz, uv, mask: "FreeParameterMask", **kwargs) -> "CalibrationResult":
        """Calibrate the parameters selected by `mask`; see camera.calibrate.optimize_camera."""
        from camera.calibrate import optimize_camera

        return optimize_camera(self, xyz, uv, mask, **kwargs)

    def describe(self) -> dict:
        """Loggable summary (angles in degrees)."""
        return {
            "location": self.location.tolist(),
            "viewdir_deg": np.degrees(self.viewdir).round(4).tolist(),
            "focal_length": self.focal_length.round(2).tolist(),
            "principal_point": self.principal_point.round(2).tolist(),
            "radial_distortion": self.radial_distortion.tolist(),
            "image_size": list(self.image_size),
        }
