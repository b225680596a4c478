"""
Camera model & calibration

- Camera: pinhole projection with a radial distortion polynomial, forward
  projection (world -> pixel) and inverse projection (pixel -> ray or DEM point)
- FreeParameterMask: which scalar parameters a calibration may move
- optimize_camera: masked Levenberg-Marquardt fit reporting RMSE and AIC
"""
from .mask import FreeParameterMask
from .model import Camera, rotation_matrix
from .calibrate import CalibrationResult, optimize_camera, reprojection_residuals

__all__ = [
    "Camera",
    "rotation_matrix",
    "FreeParameterMask",
    "CalibrationResult",
    "optimize_camera",
    "reprojection_residuals",
]
