from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import yaml


@dataclass
class WindowConfig:
    template_radius: int
    search_radius: int
    supersample: int = 1

    @classmethod
    def from_dict(cls, d: Dict[str, Any], default: "WindowConfig") -> "WindowConfig":
        return cls(
            template_radius=int(d.get("template_radius", default.template_radius)),
            search_radius=int(d.get("search_radius", default.search_radius)),
            supersample=int(d.get("supersample", default.supersample)),
        )


@dataclass
class InputsConfig:
    image_a: Optional[str] = None
    image_b: Optional[str] = None
    gcp_a: Optional[str] = None
    # 1 for tables written with 1-based pixel coordinates
    gcp_pixel_origin: float = 0.0
    dem: Optional[str] = None
    dem_mask: Optional[str] = None
    photodates: Optional[str] = None
    id_a: Optional[float] = None
    id_b: Optional[float] = None
    dt_days: Optional[float] = None


@dataclass
class CameraConfig:
    location: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    viewdir_deg: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    focal_mm: float = 30.0
    sensor_mm: Tuple[float, float] = (22.0, 14.8)
    n_distortion: int = 1
    image_size: Optional[Tuple[int, int]] = None


@dataclass
class CalibrationConfig:
    max_nfev: int = 4000
    xtol: float = 1e-10
    ftol: float = 1e-12
    loss: str = "linear"
    strict: bool = False

    def solver_kwargs(self) -> Dict[str, Any]:
        return {"max_nfev": self.max_nfev, "xtol": self.xtol, "ftol": self.ftol, "loss": self.loss, "strict": self.strict}


@dataclass
class CoarseConfig:
    window: WindowConfig = field(default_factory=lambda: WindowConfig(200, 260, 1))
    # None -> image centre
    point: Optional[Tuple[float, float]] = None


@dataclass
class GridConfig:
    window: WindowConfig = field(default_factory=lambda: WindowConfig(30, 40, 3))
    u: Tuple[float, float, float] = (200.0, 4000.0, 700.0)  # start, stop, step
    v: Tuple[float, float, float] = (100.0, 1000.0, 400.0)
    # row offset per column, keeps the grid parallel to a tilted horizon
    v_slope: float = 0.1


@dataclass
class CandidatesConfig:
    window: WindowConfig = field(default_factory=lambda: WindowConfig(10, 40, 5))
    spacing: float = 50.0
    edge_margin: int = 11
    min_cover: float = 0.99
    control_point: Optional[Tuple[float, float]] = None
    snr_threshold: float = 2.0
    min_peak: float = 0.8
    workers: Optional[int] = None


@dataclass
class DEMConfig:
    fill_crevasses: bool = True
    crevasse_sigma: float = 10.0
    extreme_weight: float = 1.1
    thinning_m_per_year: float = 0.0


@dataclass
class OutputConfig:
    results_file: str = "logs/velocities.jsonl"
    append: bool = False


@dataclass
class PipelineConfig:
    log_level: str = "INFO"
    log_file: Optional[str] = None
    inputs: InputsConfig = field(default_factory=InputsConfig)
    camera: CameraConfig = field(default_factory=CameraConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    coarse: CoarseConfig = field(default_factory=CoarseConfig)
    grid: GridConfig = field(default_factory=GridConfig)
    candidates: CandidatesConfig = field(default_factory=CandidatesConfig)
    dem: DEMConfig = field(default_factory=DEMConfig)
    output: OutputConfig = field(default_factory=OutputConfig)


def _tuple(v, n: int, cast=float) -> Optional[tuple]:
    if v is None:
        return None
    t = tuple(cast(x) for x in v)
    if len(t) != n:
        raise ValueError(f"expected {n} values, got {len(t)}: {v}")
    return t


def _opt(v, cast):
    return None if v is None else cast(v)


def config_from_dict(P: Optional[Dict[str, Any]]) -> PipelineConfig:
    """Map a parsed params.yaml onto PipelineConfig; every key is optional."""
    P = P or {}
    lg = P.get("logging", {}) or {}
    inp = P.get("inputs", {}) or {}
    cam = P.get("camera", {}) or {}
    cal = P.get("calibration", {}) or {}
    trk = P.get("tracking", {}) or {}
    cand = P.get("candidates", {}) or {}
    dem = P.get("dem", {}) or {}
    out = P.get("output", {}) or {}

    d_cam, d_cal = CameraConfig(), CalibrationConfig()
    d_coarse, d_grid, d_cand = CoarseConfig(), GridConfig(), CandidatesConfig()
    d_dem, d_out = DEMConfig(), OutputConfig()

    coarse = trk.get("coarse", {}) or {}
    grid = trk.get("grid", {}) or {}
    tcand = trk.get("candidates", {}) or {}

    return PipelineConfig(
        log_level=str(lg.get("level", "INFO")),
        log_file=_opt(lg.get("file"), str),
        inputs=InputsConfig(
            image_a=_opt(inp.get("image_a"), str),
            image_b=_opt(inp.get("image_b"), str),
            gcp_a=_opt(inp.get("gcp_a"), str),
            gcp_pixel_origin=float(inp.get("gcp_pixel_origin", 0.0)),
            dem=_opt(inp.get("dem"), str),
            dem_mask=_opt(inp.get("dem_mask"), str),
            photodates=_opt(inp.get("photodates"), str),
            id_a=_opt(inp.get("id_a"), float),
            id_b=_opt(inp.get("id_b"), float),
            dt_days=_opt(inp.get("dt_days"), float),
        ),
        camera=CameraConfig(
            location=_tuple(cam.get("location", d_cam.location), 3),
            viewdir_deg=_tuple(cam.get("viewdir_deg", d_cam.viewdir_deg), 3),
            focal_mm=float(cam.get("focal_mm", d_cam.focal_mm)),
            sensor_mm=_tuple(cam.get("sensor_mm", d_cam.sensor_mm), 2),
            n_distortion=int(cam.get("n_distortion", d_cam.n_distortion)),
            image_size=_tuple(cam.get("image_size"), 2, int),
        ),
        calibration=CalibrationConfig(
            max_nfev=int(cal.get("max_nfev", d_cal.max_nfev)),
            xtol=float(cal.get("xtol", d_cal.xtol)),
            ftol=float(cal.get("ftol", d_cal.ftol)),
            loss=str(cal.get("loss", d_cal.loss)),
            strict=bool(cal.get("strict", d_cal.strict)),
        ),
        coarse=CoarseConfig(
            window=WindowConfig.from_dict(coarse, d_coarse.window),
            point=_tuple(coarse.get("point"), 2),
        ),
        grid=GridConfig(
            window=WindowConfig.from_dict(grid, d_grid.window),
            u=_tuple(grid.get("u", d_grid.u), 3),
            v=_tuple(grid.get("v", d_grid.v), 3),
            v_slope=float(grid.get("v_slope", d_grid.v_slope)),
        ),
        candidates=CandidatesConfig(
            window=WindowConfig.from_dict(tcand, d_cand.window),
            spacing=float(cand.get("spacing", d_cand.spacing)),
            edge_margin=int(cand.get("edge_margin", d_cand.edge_margin)),
            min_cover=float(cand.get("min_cover", d_cand.min_cover)),
            control_point=_tuple(cand.get("control_point"), 2),
            snr_threshold=float(cand.get("snr_threshold", d_cand.snr_threshold)),
            min_peak=float(cand.get("min_peak", d_cand.min_peak)),
            workers=_opt(tcand.get("workers"), int),
        ),
        dem=DEMConfig(
            fill_crevasses=bool(dem.get("fill_crevasses", d_dem.fill_crevasses)),
            crevasse_sigma=float(dem.get("crevasse_sigma", d_dem.crevasse_sigma)),
            extreme_weight=float(dem.get("extreme_weight", d_dem.extreme_weight)),
            thinning_m_per_year=float(dem.get("thinning_m_per_year", d_dem.thinning_m_per_year)),
        ),
        output=OutputConfig(
            results_file=str(out.get("results_file", d_out.results_file)),
            append=bool(out.get("append", d_out.append)),
        ),
    )


def load_config(path: str) -> PipelineConfig:
    with open(path, "r") as f:
        return config_from_dict(yaml.safe_load(f))
