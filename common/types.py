from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np


def _as_float_tuple(x, n: int) -> Tuple[float, ...]:
    a = np.asarray(x, dtype=float).reshape(-1)
    if a.size != n:
        raise ValueError(f"expected {n} values, got {a.size}")
    return tuple(float(v) for v in a)


@dataclass(slots=True)
class Correspondence:
    """
    A world point and the pixel where it was observed; the unit of evidence
    for camera calibration.

    Attributes:
        xyz: world coordinates (x, y, z) in metres.
        uv: observed pixel (u = column, v = row).
    """
    xyz: Tuple[float, float, float]
    uv: Tuple[float, float]

    def __post_init__(self) -> None:
        self.xyz = _as_float_tuple(self.xyz, 3)  # type: ignore[assignment]
        self.uv = _as_float_tuple(self.uv, 2)  # type: ignore[assignment]

    @staticmethod
    def stack(items: Sequence["Correspondence"]) -> Tuple[np.ndarray, np.ndarray]:
        """Return (xyz (N,3), uv (N,2)) arrays."""
        xyz = np.array([c.xyz for c in items], dtype=float).reshape(-1, 3)
        uv = np.array([c.uv for c in items], dtype=float).reshape(-1, 2)
        return xyz, uv

    @classmethod
    def from_arrays(cls, xyz, uv) -> List["Correspondence"]:
        xyz = np.asarray(xyz, dtype=float).reshape(-1, 3)
        uv = np.asarray(uv, dtype=float).reshape(-1, 2)
        if len(xyz) != len(uv):
            raise ValueError("xyz and uv must have the same number of rows")
        return [cls(xyz=p, uv=q) for p, q in zip(xyz, uv)]


@dataclass(slots=True)
class MatchResult:
    """
    Outcome of one template match.

    Attributes:
        ok: False when the point failed (see `error`).
        displacement: (du, dv) from image A to image B in pixels, prior included.
        peak: primary correlation peak (NCC, <= 1).
        secondary_peak: best correlation outside the exclusion disk around the
            primary peak (NaN when the surface has nothing outside it).
        error: error-kind name for failed points, e.g. "OutOfFrame".
    """
    ok: bool
    displacement: Tuple[float, float]
    peak: float
    secondary_peak: float
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str) -> "MatchResult":
        nan = float("nan")
        return cls(ok=False, displacement=(nan, nan), peak=nan, secondary_peak=nan, error=error)

    @property
    def snr(self) -> float:
        """Primary / secondary peak ratio."""
        if not self.ok:
            return float("nan")
        # no competing peak at all
        if not np.isfinite(self.secondary_peak) or self.secondary_peak <= 0:
            return float("inf")
        return float(self.peak / self.secondary_peak)

    def trusted(self, snr_threshold: float, min_peak: float) -> bool:
        return bool(self.ok and self.snr > snr_threshold and self.peak > min_peak)


@dataclass(slots=True)
class TrackPoint:
    """
    A pixel in image A to be followed into image B.

    Attributes:
        uv: integer pixel (u, v); patch extraction anchors on whole pixels.
        prior: expected displacement (camera-shake prediction), or None.
        result: MatchResult once tracked.
        is_control: True for the fixed non-glaciated point that monitors
            residual camera motion.
    """
    uv: Tuple[int, int]
    prior: Optional[Tuple[float, float]] = None
    result: Optional[MatchResult] = None
    is_control: bool = False

    def __post_init__(self) -> None:
        self.uv = (int(round(float(self.uv[0]))), int(round(float(self.uv[1]))))


@dataclass(slots=True)
class PointVelocity:
    """
    Georeferenced velocity of one tracked point.

    Attributes:
        uv_a, uv_b: pixel in image A and matched pixel in image B.
        xyz_a, xyz_b: DEM intersections of the two pixels (metres).
        velocity: (xyz_b - xyz_a) / dt, metres per day.
        peak, secondary_peak, snr: tracker quality.
        trusted: snr and peak above the configured thresholds.
        downslope_speed: velocity component along the downhill direction.
        is_control: the non-glaciated control point.
    """
    uv_a: Tuple[float, float]
    uv_b: Tuple[float, float]
    xyz_a: np.ndarray = field(repr=False)
    xyz_b: np.ndarray = field(repr=False)
    velocity: np.ndarray
    peak: float
    secondary_peak: float
    snr: float
    trusted: bool
    downslope_speed: float = float("nan")
    is_control: bool = False

    def __post_init__(self) -> None:
        for name in ("xyz_a", "xyz_b", "velocity"):
            a = np.asarray(getattr(self, name), dtype=float)
            if a.shape != (3,):
                raise ValueError(f"{name} must have 3 components")
            setattr(self, name, a)

    @property
    def speed(self) -> float:
        return float(np.linalg.norm(self.velocity))

    def to_dict(self) -> Dict[str, Any]:
        """Plain-JSON row (NaN/inf become None)."""

        def clean(v):
            v = float(v)
            return v if np.isfinite(v) else None

        return {
            "uv_a": [clean(v) for v in self.uv_a],
            "uv_b": [clean(v) for v in self.uv_b],
            "xyz_a": [clean(v) for v in self.xyz_a],
            "xyz_b": [clean(v) for v in self.xyz_b],
            "velocity": [clean(v) for v in self.velocity],
            "speed": clean(self.speed),
            "peak": clean(self.peak),
            "secondary_peak": clean(self.secondary_peak),
            "snr": clean(self.snr),
            "trusted": bool(self.trusted),
            "downslope_speed": clean(self.downslope_speed),
            "is_control": bool(self.is_control),
        }
