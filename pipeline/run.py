from __future__ import annotations

import argparse
from typing import Dict, List, Optional

import numpy as np

from camera import Camera
from common.logging_setup import get_logger, setup_logging
from common.types import Correspondence
from common.utils import deg, median_or_nan
from pipeline.config import PipelineConfig, load_config
from pipeline.context import PipelineContext
from pipeline.io import acquisition_time, load_dem, load_gcps, load_image, load_photodates, write_results
from pipeline.stages import run_stages

log = get_logger("pipeline")


def _need(value, key: str):
    if value is None:
        raise ValueError(f"config key inputs.{key} is required")
    return value


def interval_days(cfg: PipelineConfig) -> float:
    """dt from the config, or from the photo-date table and the two image ids."""
    inp = cfg.inputs
    if inp.dt_days is not None:
        return float(inp.dt_days)
    table = load_photodates(_need(inp.photodates, "photodates"))
    return acquisition_time(table, _need(inp.id_b, "id_b")) - acquisition_time(table, _need(inp.id_a, "id_a"))


def initial_camera(cfg: PipelineConfig, image: np.ndarray) -> Camera:
    c = cfg.camera
    size = c.image_size or (image.shape[1], image.shape[0])
    return Camera.from_sensor(
        location=c.location,
        image_size=size,
        viewdir=np.radians(c.viewdir_deg),
        focal_mm=c.focal_mm,
        sensor_mm=c.sensor_mm,
        n_distortion=c.n_distortion,
    )


def load_context(cfg: PipelineConfig) -> PipelineContext:
    inp = cfg.inputs
    A = load_image(_need(inp.image_a, "image_a"))
    B = load_image(_need(inp.image_b, "image_b"))
    gcps = load_gcps(_need(inp.gcp_a, "gcp_a"), pixel_origin=inp.gcp_pixel_origin)
    gcp_xyz, gcp_uv = Correspondence.stack(gcps)
    dem = load_dem(_need(inp.dem, "dem"), mask_path=inp.dem_mask)
    ctx = PipelineContext(
        image_a=A,
        image_b=B,
        gcp_xyz=gcp_xyz,
        gcp_uv=gcp_uv,
        dem=dem,
        dt_days=interval_days(cfg),
        camera_initial=initial_camera(cfg, A),
    )
    log.info(
        "Inputs loaded",
        extra={"extra": {"image_a": inp.image_a, "image_b": inp.image_b, "n_gcp": len(gcp_uv), "dt_days": ctx.dt_days}},
    )
    return ctx


def summarize(ctx: PipelineContext) -> Dict:
    rows = ctx.velocities or ()
    trusted = [v for v in rows if v.trusted and not v.is_control]
    control: List = [p.result for p in (ctx.points or ()) if p.is_control and p.result is not None]
    out = {
        "rmse_a_px": ctx.calibration_a.rmse if ctx.calibration_a else None,
        "aic_a": ctx.calibration_a.aic if ctx.calibration_a else None,
        "rmse_b_px": ctx.calibration_b.rmse if ctx.calibration_b else None,
        "delta_viewdir_deg": (
            deg(ctx.camera_b.viewdir - ctx.camera_a.viewdir).round(4).tolist() if ctx.calibration_b else None
        ),
        "coarse_shift": ctx.coarse_shift.tolist() if ctx.coarse_match else None,
        "n_candidates": len(ctx.points or ()),
        "n_velocities": len(rows),
        "n_trusted": len(trusted),
        "median_trusted_speed_m_per_day": median_or_nan([v.speed for v in trusted]),
    }
    if control and control[0].ok:
        out["control_residual_px"] = list(control[0].displacement)
    return out


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Glacier velocities from an oblique image pair")
    ap.add_argument("--config", default="config/params.yaml")
    ap.add_argument("--log-level", default=None, help="Override logging.level")
    ap.add_argument("--output", default=None, help="Override output.results_file")
    args = ap.parse_args(argv)

    cfg = load_config(args.config)
    setup_logging(args.log_level or cfg.log_level, cfg.log_file)

    ctx = run_stages(load_context(cfg), cfg)
    write_results(args.output or cfg.output.results_file, ctx.velocities or (), append=cfg.output.append)
    log.info("Run summary", extra={"extra": summarize(ctx)})


if __name__ == "__main__":
    main()
