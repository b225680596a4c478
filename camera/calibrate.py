from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from scipy.optimize import least_squares

from common.errors import CalibrationNonconvergent, InsufficientCorrespondences
from common.logging_setup import get_logger
from common.utils import as_points
from camera.mask import FreeParameterMask
from camera.model import Camera

log = get_logger("camera.calibrate")

DEFAULT_MAX_NFEV = 4000
DEFAULT_XTOL = 1e-10
DEFAULT_FTOL = 1e-12
# Residual substituted for points behind the camera or projecting to inf/NaN.
_PENALTY_PX = 1e6


@dataclass(frozen=True, eq=False)
class CalibrationResult:
    """
    Outcome of one calibration call.

    Attributes:
        camera: optimised camera (location unchanged).
        rmse: sqrt(mean(du^2 + dv^2)) over all correspondences, pixels.
        aic: n*ln(SSE/n) + 2k, n correspondences, k free parameters.
        converged: False when the evaluation cap was hit first.
        n_free: k.
        residuals: (N,2) final pixel residuals, projected - observed.
    """
    camera: Camera
    rmse: float
    aic: float
    converged: bool
    n_free: int
    residuals: np.ndarray = field(repr=False)
    nfev: int = 0
    message: str = ""


def reprojection_residuals(camera: Camera, xyz, uv) -> np.ndarray:
    """(N,2) projected minus observed pixels (NaN for points behind the camera)."""
    uv_hat, _, _ = camera.project(xyz)
    return uv_hat - as_points(uv, 2)


def akaike(sse: float, n: int, k: int) -> float:
    sse = max(float(sse), np.finfo(float).tiny)
    return float(n * np.log(sse / n) + 2 * k)


def optimize_camera(
    camera: Camera,
    xyz,
    uv,
    mask: FreeParameterMask,
    *,
    max_nfev: int = DEFAULT_MAX_NFEV,
    xtol: float = DEFAULT_XTOL,
    ftol: float = DEFAULT_FTOL,
    loss: str = "linear",
    f_scale: float = 1.0,
    strict: bool = False,
) -> CalibrationResult:
    """
    Fit the parameters freed by `mask` to observed pixels of known world points.

    Levenberg-Marquardt with a finite-difference Jacobian; a robust `loss`
    other than "linear" switches to the trust-region solver, which supports it.
    Hitting `max_nfev` is not an error: the best estimate is returned with
    converged=False, unless `strict` is set, in which case
    CalibrationNonconvergent is raised with the result attached.

    Raises:
        InsufficientCorrespondences: fewer correspondences than free parameters.
    """
    xyz = as_points(xyz, 3)
    uv = as_points(uv, 2)
    if len(xyz) != len(uv):
        raise ValueError("xyz and uv must have the same number of rows")

    free = mask.flags(camera.n_distortion)
    k = int(free.sum())
    n = len(xyz)
    if n == 0 or n < k:
        raise InsufficientCorrespondences(f"{n} correspondences for {k} free parameters")

    x0 = camera.to_vector()

    def residuals(p: np.ndarray) -> np.ndarray:
        v = x0.copy()
        v[free] = p
        uv_hat, depth = camera.from_vector(v)._project_raw(xyz)
        r = uv_hat - uv
        # points behind the camera would otherwise project mirrored
        r[~(depth > 0)] = _PENALTY_PX
        return np.nan_to_num(r.ravel(), nan=_PENALTY_PX, posinf=_PENALTY_PX, neginf=-_PENALTY_PX)

    if k == 0:
        best = camera
        converged, nfev, message = True, 0, "no free parameters"
    else:
        method = "lm" if loss == "linear" else "trf"
        sol = least_squares(
            residuals,
            x0[free],
            method=method,
            loss=loss,
            f_scale=f_scale,
            x_scale="jac",
            xtol=xtol,
            ftol=ftol,
            max_nfev=max_nfev,
        )
        v = x0.copy()
        v[free] = sol.x
        best = camera.from_vector(v)
        converged, nfev, message = bool(sol.status > 0), int(sol.nfev), str(sol.message)

    res = residuals(best.to_vector()[free]).reshape(-1, 2)
    sse = float(np.sum(res ** 2))
    result = CalibrationResult(
        camera=best,
        rmse=float(np.sqrt(sse / n)),
        aic=akaike(sse, n, k),
        converged=converged,
        n_free=k,
        residuals=res,
        nfev=nfev,
        message=message,
    )

    info = {"n": n, "k": k, "rmse_px": result.rmse, "aic": result.aic, "nfev": nfev}
    if converged:
        log.info("Camera calibrated", extra={"extra": info})
    else:
        log.warning("Camera calibration hit the evaluation cap", extra={"extra": {**info, "message": message}})
        if strict:
            raise CalibrationNonconvergent(f"calibration did not converge after {nfev} evaluations", result)
    return result
