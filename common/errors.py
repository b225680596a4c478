"""
Error kinds shared by the camera, terrain and tracking packages.

Per-point kinds (DegenerateTemplate, OutOfFrame, NoIntersection) are recorded
on the affected element of a batch. Configuration kinds (InvalidWindow,
InsufficientCorrespondences) abort the call that raised them.
"""
from __future__ import annotations

from typing import Any, Optional


class TrackingError(Exception):
    """Base class for all errors raised by this project."""


class InvalidWindow(TrackingError, ValueError):
    """Search window not larger than the template window, or bad supersample factor."""


class DegenerateTemplate(TrackingError):
    """Patch with (near) zero variance; normalised correlation is undefined."""


class OutOfFrame(TrackingError):
    """A point or an extraction window falls outside the image."""


class NoIntersection(TrackingError):
    """A camera ray leaves the DEM without hitting the surface."""


class InsufficientCorrespondences(TrackingError, ValueError):
    """Fewer correspondences than free camera parameters."""


class CalibrationNonconvergent(TrackingError):
    """
    The solver hit its evaluation cap before meeting its tolerances.
    `result` holds the best estimate found so far.
    """

    def __init__(self, message: str, result: Optional[Any] = None):
        super().__init__(message)
        self.result = result
