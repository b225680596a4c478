from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

from camera import CalibrationResult, Camera
from common.types import MatchResult, PointVelocity, TrackPoint
from terrain import DEMSurface


@dataclass(frozen=True, eq=False)
class PipelineContext:
    """
    Everything the stages read and write. Stages never mutate a context;
    each returns a new one with its outputs filled in.

    Inputs:
        image_a, image_b: grey float32 images.
        gcp_xyz, gcp_uv: ground control points for image A.
        dem: terrain; replaced by the crevasse-filled surface in prepare_terrain.
        dt_days: time between the two images.
        camera_initial: crude starting camera for image A.
    """
    image_a: np.ndarray = field(repr=False)
    image_b: np.ndarray = field(repr=False)
    gcp_xyz: np.ndarray = field(repr=False)
    gcp_uv: np.ndarray = field(repr=False)
    dem: DEMSurface = field(repr=False)
    dt_days: float
    camera_initial: Camera

    slope_dem: Optional[DEMSurface] = field(default=None, repr=False)
    calibration_a: Optional[CalibrationResult] = None
    coarse_match: Optional[MatchResult] = None
    grid_points: Optional[np.ndarray] = field(default=None, repr=False)
    grid_results: Optional[Tuple[MatchResult, ...]] = field(default=None, repr=False)
    calibration_b: Optional[CalibrationResult] = None
    points: Optional[Tuple[TrackPoint, ...]] = field(default=None, repr=False)
    velocities: Optional[Tuple[PointVelocity, ...]] = field(default=None, repr=False)

    @property
    def camera_a(self) -> Optional[Camera]:
        return None if self.calibration_a is None else self.calibration_a.camera

    @property
    def camera_b(self) -> Optional[Camera]:
        return None if self.calibration_b is None else self.calibration_b.camera

    @property
    def coarse_shift(self) -> Optional[np.ndarray]:
        return None if self.coarse_match is None else np.asarray(self.coarse_match.displacement, dtype=float)

    def require(self, stage: str, *names: str) -> None:
        missing = [n for n in names if getattr(self, n) is None]
        if missing:
            raise RuntimeError(f"stage {stage} needs {', '.join(missing)}; run the earlier stages first")
