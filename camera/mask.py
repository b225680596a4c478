from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np

# Canonical flat layout of a camera parameter vector:
#   location[3], viewdir[3], focal_length[2], principal_point[2], radial_distortion[k]
N_FIXED = 10


def _flags(values, n: int, name: str) -> Tuple[bool, ...]:
    t = tuple(bool(v) for v in values)
    if len(t) != n:
        raise ValueError(f"{name} needs {n} flags, got {len(t)}")
    return t


@dataclass(frozen=True)
class FreeParameterMask:
    """
    Which scalar camera parameters the calibration may move.

    Unflagged scalars keep their current value. Location is known a priori and
    can never be freed.
    """
    location: Tuple[bool, bool, bool] = (False, False, False)
    viewdir: Tuple[bool, bool, bool] = (False, False, False)
    focal_length: Tuple[bool, bool] = (False, False)
    principal_point: Tuple[bool, bool] = (False, False)
    radial_distortion: Tuple[bool, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "location", _flags(self.location, 3, "location"))
        object.__setattr__(self, "viewdir", _flags(self.viewdir, 3, "viewdir"))
        object.__setattr__(self, "focal_length", _flags(self.focal_length, 2, "focal_length"))
        object.__setattr__(self, "principal_point", _flags(self.principal_point, 2, "principal_point"))
        object.__setattr__(self, "radial_distortion", tuple(bool(v) for v in self.radial_distortion))
        if any(self.location):
            raise ValueError("camera location is fixed and cannot be calibrated")

    # presets -------------------------------------------------------------

    @classmethod
    def rotation_only(cls) -> "FreeParameterMask":
        return cls(viewdir=(True, True, True))

    @classmethod
    def viewdir_focal_k1(cls) -> "FreeParameterMask":
        """View direction, both focal lengths and the first radial term (GCP calibration)."""
        return cls(viewdir=(True, True, True), focal_length=(True, True), radial_distortion=(True,))

    @classmethod
    def all_intrinsics(cls, n_distortion: int = 1) -> "FreeParameterMask":
        """Everything except location."""
        return cls(
            viewdir=(True, True, True),
            focal_length=(True, True),
            principal_point=(True, True),
            radial_distortion=(True,) * n_distortion,
        )

    # ---------------------------------------------------------------------

    def flags(self, n_distortion: int) -> np.ndarray:
        """
        Boolean vector in canonical order, N_FIXED + n_distortion long.
        Distortion flags beyond the ones given are False.
        """
        if len(self.radial_distortion) > n_distortion:
            raise ValueError(
                f"mask frees {len(self.radial_distortion)} distortion terms but the camera has {n_distortion}"
            )
        k = self.radial_distortion + (False,) * (n_distortion - len(self.radial_distortion))
        return np.array(
            self.location + self.viewdir + self.focal_length + self.principal_point + k,
            dtype=bool,
        )

    @property
    def n_free(self) -> int:
        return int(sum(self.viewdir) + sum(self.focal_length) + sum(self.principal_point) + sum(self.radial_distortion))
