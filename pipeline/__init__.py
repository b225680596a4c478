"""
Velocity pipeline

Calibrates the two cameras of an oblique image pair, tracks surface features
between the images and georeferences the displacements onto the DEM.
Run with `python -m pipeline.run --config config/params.yaml`.
"""
from .config import PipelineConfig, load_config
from .context import PipelineContext
from .stages import STAGES, run_stages

__all__ = ["PipelineConfig", "PipelineContext", "STAGES", "load_config", "run_stages"]
