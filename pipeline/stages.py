"""
Velocity-tracking stages.

Each stage is `stage(ctx, cfg) -> ctx`, reads what earlier stages left in the
context and returns a new context with its own outputs added:

  prepare_terrain -> calibrate_a -> coarse_shift -> grid_shift -> calibrate_b
  -> generate_candidates -> camera_shake -> track_candidates -> georeference
"""
from __future__ import annotations

from dataclasses import replace
from typing import Callable, List, Tuple

import cv2
import numpy as np

from camera import FreeParameterMask, optimize_camera
from common.logging_setup import get_logger
from common.types import PointVelocity, TrackPoint
from common.utils import deg, stage_timer
from pipeline.config import PipelineConfig
from pipeline.context import PipelineContext
from terrain import fill_crevasses, viewshed
from terrain.filters import disk_average, gaussian_smooth
from tracking import match_point, match_points

log = get_logger("pipeline.stages")

Stage = Callable[[PipelineContext, PipelineConfig], PipelineContext]


def _inclusive_range(start: float, stop: float, step: float) -> np.ndarray:
    if step <= 0:
        raise ValueError(f"grid step must be positive, got {step}")
    return start + step * np.arange(int(np.floor((stop - start) / step + 1e-9)) + 1)


# ----------------------------------------------------------------------
# terrain
# ----------------------------------------------------------------------

def prepare_terrain(ctx: PipelineContext, cfg: PipelineConfig) -> PipelineContext:
    """Crevasse-filled surface, slope surface and viewshed from the camera."""
    dem = ctx.dem
    slope = dem.replace(z=gaussian_smooth(dem.z, cfg.dem.crevasse_sigma))
    if cfg.dem.fill_crevasses:
        dem = fill_crevasses(dem, sigma=cfg.dem.crevasse_sigma, extreme_weight=cfg.dem.extreme_weight)
    if dem.visible is None:
        dem = dem.replace(visible=viewshed(dem, ctx.camera_initial.location))
    log.info(
        "Terrain prepared",
        extra={"extra": {"shape": list(dem.shape), "filled": cfg.dem.fill_crevasses, "visible": float(dem.visible.mean())}},
    )
    return replace(ctx, dem=dem, slope_dem=slope)


# ----------------------------------------------------------------------
# cameras
# ----------------------------------------------------------------------

def calibrate_a(ctx: PipelineContext, cfg: PipelineConfig) -> PipelineContext:
    """Fit view direction, focal lengths and k1 of camera A to the GCPs."""
    result = optimize_camera(
        ctx.camera_initial,
        ctx.gcp_xyz,
        ctx.gcp_uv,
        FreeParameterMask.viewdir_focal_k1(),
        **cfg.calibration.solver_kwargs(),
    )
    log.info(
        "Camera A calibrated",
        extra={"extra": {"rmse_px": result.rmse, "aic": result.aic, "n_gcp": len(ctx.gcp_uv), **result.camera.describe()}},
    )
    return replace(ctx, calibration_a=result)


def coarse_shift(ctx: PipelineContext, cfg: PipelineConfig) -> PipelineContext:
    """Global image shift from one large template."""
    c = cfg.coarse
    h, w = ctx.image_a.shape[:2]
    point = c.point if c.point is not None else ((w - 1) / 2.0, (h - 1) / 2.0)
    m = match_point(
        ctx.image_a,
        ctx.image_b,
        point,
        c.window.template_radius,
        c.window.search_radius,
        c.window.supersample,
    )
    log.info(
        "Coarse shift",
        extra={"extra": {"point": list(point), "shift": list(m.displacement), "peak": m.peak, "snr": m.snr}},
    )
    return replace(ctx, coarse_match=m)


def grid_points(cfg: PipelineConfig) -> np.ndarray:
    """Integer sample grid; rows tilted by v_slope * u."""
    g = cfg.grid
    pu, pv = np.meshgrid(_inclusive_range(*g.u), _inclusive_range(*g.v))
    pu, pv = pu.ravel(), pv.ravel()
    return np.round(np.column_stack([pu, pv + g.v_slope * pu])).astype(int)


def grid_shift(ctx: PipelineContext, cfg: PipelineConfig) -> PipelineContext:
    """Shift estimates on the sample grid, seeded with the coarse shift."""
    ctx.require("grid_shift", "coarse_match")
    pts = grid_points(cfg)
    w = cfg.grid.window
    results = match_points(
        ctx.image_a,
        ctx.image_b,
        pts,
        w.template_radius,
        w.search_radius,
        w.supersample,
        prior_shift=ctx.coarse_shift,
        workers=cfg.candidates.workers,
    )
    return replace(ctx, grid_points=pts, grid_results=tuple(results))


def calibrate_b(ctx: PipelineContext, cfg: PipelineConfig) -> PipelineContext:
    """
    Camera B = camera A rotated so that A's rays through the grid points land
    on the shifted grid points in B.
    """
    ctx.require("calibrate_b", "calibration_a", "grid_results")
    cam_a = ctx.camera_a
    ok = np.array([m.ok for m in ctx.grid_results], dtype=bool)
    uv = ctx.grid_points[ok].astype(float)
    shift = np.array([m.displacement for m in ctx.grid_results], dtype=float)[ok]
    xyz = cam_a.location + cam_a.invproject(uv)

    result = optimize_camera(cam_a, xyz, uv + shift, FreeParameterMask.rotation_only(), **cfg.calibration.solver_kwargs())
    dview = deg(result.camera.viewdir - cam_a.viewdir)
    log.info(
        "Camera B calibrated",
        extra={"extra": {"rmse_px": result.rmse, "n_grid": int(ok.sum()), "delta_viewdir_deg": dview.round(4).tolist()}},
    )
    return replace(ctx, calibration_b=result)


# ----------------------------------------------------------------------
# candidates & tracking
# ----------------------------------------------------------------------

def generate_candidates(ctx: PipelineContext, cfg: PipelineConfig) -> PipelineContext:
    """
    World grid over the DEM, kept where visible and glaciated well inside the
    edges of both masks, projected into image A and rounded to whole pixels.
    """
    ctx.require("generate_candidates", "calibration_a")
    c = cfg.candidates
    dem = ctx.dem
    visible = dem.visible if dem.visible is not None else np.ones(dem.shape, dtype=bool)

    cover = disk_average((visible & dem.glaciated).astype(np.float64), c.edge_margin, border=cv2.BORDER_CONSTANT)
    xmin, xmax, ymin, ymax = dem.bounds
    X, Y = np.meshgrid(_inclusive_range(xmin, xmax, c.spacing), _inclusive_range(ymin, ymax, c.spacing))
    X, Y = X.ravel(), Y.ravel()
    keep = dem.sample_grid(cover, X, Y) > c.min_cover

    xyz = np.zeros((0, 3))
    if keep.any():
        xyz = np.column_stack([X[keep], Y[keep], dem.elevation(X[keep], Y[keep])])
    xyz = xyz[np.isfinite(xyz[:, 2])]
    uv, _, inframe = ctx.camera_a.project(xyz)
    points: List[TrackPoint] = [TrackPoint(uv=tuple(p)) for p in np.round(uv[inframe])]
    if c.control_point is not None:
        points.append(TrackPoint(uv=c.control_point, is_control=True))

    log.info(
        "Candidates generated",
        extra={"extra": {"grid": int(X.size), "on_ice": int(keep.sum()), "in_frame": int(inframe.sum()), "points": len(points)}},
    )
    return replace(ctx, points=tuple(points))


def camera_shake(ctx: PipelineContext, cfg: PipelineConfig) -> PipelineContext:
    """Prior displacement of every point if nothing but the camera had moved."""
    ctx.require("camera_shake", "calibration_a", "calibration_b", "points")
    if not ctx.points:
        return ctx
    cam_a, cam_b = ctx.camera_a, ctx.camera_b
    uv = np.array([p.uv for p in ctx.points], dtype=float)
    predicted, _, _ = cam_b.project(cam_a.location + cam_a.invproject(uv))
    prior = predicted - uv
    points = tuple(replace(p, prior=(float(d[0]), float(d[1]))) for p, d in zip(ctx.points, prior))
    return replace(ctx, points=points)


def track_candidates(ctx: PipelineContext, cfg: PipelineConfig) -> PipelineContext:
    ctx.require("track_candidates", "points")
    if not ctx.points:
        return ctx
    w = cfg.candidates.window
    uv = np.array([p.uv for p in ctx.points], dtype=float)
    prior = np.array([p.prior if p.prior is not None else (0.0, 0.0) for p in ctx.points], dtype=float)
    results = match_points(
        ctx.image_a,
        ctx.image_b,
        uv,
        w.template_radius,
        w.search_radius,
        w.supersample,
        prior_shift=prior,
        workers=cfg.candidates.workers,
    )
    points = tuple(replace(p, result=m) for p, m in zip(ctx.points, results))
    return replace(ctx, points=points)


# ----------------------------------------------------------------------
# georeferencing
# ----------------------------------------------------------------------

def georeference(ctx: PipelineContext, cfg: PipelineConfig) -> PipelineContext:
    """
    Tracked pixel pairs -> DEM points -> velocity in metres per day. Image B
    pixels are intersected with the surface thinned over the interval.
    Failed matches and rays missing the DEM are dropped.
    """
    ctx.require("georeference", "calibration_a", "calibration_b", "points")
    if not ctx.dt_days > 0:
        raise ValueError(f"time between images must be positive, got {ctx.dt_days}")
    tracked = [p for p in (ctx.points or ()) if p.result is not None and p.result.ok]
    if not tracked:
        log.warning("No tracked points to georeference")
        return replace(ctx, velocities=())

    uv_a = np.array([p.uv for p in tracked], dtype=float)
    uv_b = uv_a + np.array([p.result.displacement for p in tracked], dtype=float)
    dem_b = ctx.dem.lowered(cfg.dem.thinning_m_per_year * ctx.dt_days / 365.0)
    xyz_a = ctx.camera_a.invproject(uv_a, ctx.dem)
    xyz_b = ctx.camera_b.invproject(uv_b, dem_b)
    velocity = (xyz_b - xyz_a) / ctx.dt_days

    slope = ctx.slope_dem if ctx.slope_dem is not None else ctx.dem
    downhill = slope.downslope(xyz_a[:, 0], xyz_a[:, 1])
    downslope_speed = np.sum(velocity[:, :2] * downhill, axis=1)

    good = np.all(np.isfinite(xyz_a), axis=1) & np.all(np.isfinite(xyz_b), axis=1)
    c = cfg.candidates
    rows = tuple(
        PointVelocity(
            uv_a=tuple(uv_a[i]),
            uv_b=tuple(uv_b[i]),
            xyz_a=xyz_a[i],
            xyz_b=xyz_b[i],
            velocity=velocity[i],
            peak=p.result.peak,
            secondary_peak=p.result.secondary_peak,
            snr=p.result.snr,
            trusted=p.result.trusted(c.snr_threshold, c.min_peak),
            downslope_speed=float(downslope_speed[i]),
            is_control=p.is_control,
        )
        for i, p in enumerate(tracked)
        if good[i]
    )
    log.info(
        "Velocities georeferenced",
        extra={"extra": {"tracked": len(tracked), "kept": len(rows), "missed_dem": int((~good).sum()), "dt_days": ctx.dt_days}},
    )
    return replace(ctx, velocities=rows)


STAGES: Tuple[Stage, ...] = (
    prepare_terrain,
    calibrate_a,
    coarse_shift,
    grid_shift,
    calibrate_b,
    generate_candidates,
    camera_shake,
    track_candidates,
    georeference,
)


def run_stages(ctx: PipelineContext, cfg: PipelineConfig, stages: Tuple[Stage, ...] = STAGES) -> PipelineContext:
    for stage in stages:
        with stage_timer(log, stage.__name__):
            ctx = stage(ctx, cfg)
    return ctx
