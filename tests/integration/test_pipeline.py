"""
Integration tests: the full stage sequence on a synthetic image pair
"""

import json
import os
import sys

import cv2
import numpy as np
import pytest
import yaml

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from pipeline import PipelineContext, run_stages
from pipeline.config import CandidatesConfig, CoarseConfig, DEMConfig, GridConfig, PipelineConfig, WindowConfig
from pipeline.run import main, summarize
from tests.synthetic import static_scene


def small_config():
    return PipelineConfig(
        coarse=CoarseConfig(window=WindowConfig(60, 80, 1)),
        grid=GridConfig(window=WindowConfig(15, 25, 4), u=(100, 540, 110), v=(80, 400, 80), v_slope=0.0),
        candidates=CandidatesConfig(window=WindowConfig(8, 20, 4), spacing=50.0, edge_margin=2, workers=2),
        dem=DEMConfig(crevasse_sigma=3.0),
    )


class TestStaticScene:
    """A motionless surface seen through a shaken camera gives near-zero velocities"""

    @pytest.fixture(scope="class")
    def result(self):
        s = static_scene(dyaw_deg=0.3, dpitch_deg=0.1)
        ctx = PipelineContext(
            image_a=s["image_a"],
            image_b=s["image_b"],
            gcp_xyz=s["gcp_xyz"],
            gcp_uv=s["gcp_uv"],
            dem=s["dem"],
            dt_days=30.0,
            camera_initial=s["camera_initial"],
        )
        return s, run_stages(ctx, small_config())

    def test_camera_a_calibrated(self, result):
        s, ctx = result
        assert ctx.calibration_a.rmse < 0.01
        assert np.allclose(ctx.camera_a.viewdir, s["camera_a"].viewdir, atol=1e-5)

    def test_camera_shake_recovered(self, result):
        """Camera B differs from camera A by the applied rotation"""
        s, ctx = result
        dview = np.degrees(ctx.camera_b.viewdir - ctx.camera_a.viewdir)
        assert dview == pytest.approx([0.3, 0.1, 0.0], abs=0.02)

    def test_coarse_shift(self, result):
        """Yawing left moves the scene right in the second image"""
        _, ctx = result
        assert ctx.coarse_match.ok
        assert 2.0 < ctx.coarse_shift[0] < 4.5

    def test_velocities_near_zero(self, result):
        _, ctx = result
        assert len(ctx.velocities) > 50
        speeds = np.array([v.speed for v in ctx.velocities])
        assert np.median(speeds) < 0.5

    def test_summary(self, result):
        _, ctx = result
        summary = summarize(ctx)
        assert summary["n_velocities"] == len(ctx.velocities)
        assert summary["n_candidates"] == len(ctx.points)
        assert 0 <= summary["n_trusted"] <= summary["n_velocities"]
        json.dumps(summary)


class TestCommandLine:
    """Test cases for running the pipeline from a params.yaml"""

    def write_inputs(self, tmp_path):
        s = static_scene()
        for name in ("image_a", "image_b"):
            img = np.clip(np.round(s[name]), 0, 255).astype(np.uint8)
            cv2.imwrite(str(tmp_path / f"{name}.png"), img)
        np.savetxt(tmp_path / "gcp.txt", np.column_stack([s["gcp_xyz"], s["gcp_uv"]]))
        dem = s["dem"]
        np.savez(tmp_path / "dem.npz", x=dem.x, y=dem.y, Z=dem.z, visible=dem.visible)
        (tmp_path / "photodates.csv").write_text("id,t\n1,0.0\n2,30.0\n")

        cam = s["camera_a"]
        params = {
            "inputs": {
                "image_a": str(tmp_path / "image_a.png"),
                "image_b": str(tmp_path / "image_b.png"),
                "gcp_a": str(tmp_path / "gcp.txt"),
                "dem": str(tmp_path / "dem.npz"),
                "photodates": str(tmp_path / "photodates.csv"),
                "id_a": 1,
                "id_b": 2,
            },
            "camera": {
                "location": [float(v) for v in cam.location],
                "viewdir_deg": [91.0, -24.2, 0.0],
                "focal_mm": 19.6,
                "sensor_mm": [22.0, 16.5],
            },
            "tracking": {
                "coarse": {"template_radius": 60, "search_radius": 80},
                "grid": {
                    "u": [100, 540, 110],
                    "v": [80, 400, 80],
                    "v_slope": 0.0,
                    "template_radius": 15,
                    "search_radius": 25,
                    "supersample": 4,
                },
                "candidates": {"template_radius": 8, "search_radius": 20, "supersample": 4, "workers": 2},
            },
            "candidates": {"spacing": 100.0, "edge_margin": 2},
            "dem": {"crevasse_sigma": 3.0},
            "output": {"results_file": str(tmp_path / "logs" / "velocities.jsonl")},
        }
        path = tmp_path / "params.yaml"
        path.write_text(yaml.safe_dump(params))
        return path

    def test_main_writes_results(self, tmp_path):
        params = self.write_inputs(tmp_path)
        main(["--config", str(params), "--log-level", "WARNING"])

        out = tmp_path / "logs" / "velocities.jsonl"
        rows = [json.loads(line) for line in out.read_text().splitlines()]
        assert len(rows) > 10
        speeds = [r["speed"] for r in rows]
        assert np.median(speeds) < 0.5

    def test_output_override(self, tmp_path):
        params = self.write_inputs(tmp_path)
        target = tmp_path / "other.jsonl"
        main(["--config", str(params), "--output", str(target), "--log-level", "WARNING"])
        assert target.exists()
        assert not (tmp_path / "logs" / "velocities.jsonl").exists()

    def test_missing_input(self, tmp_path):
        path = tmp_path / "params.yaml"
        path.write_text("inputs:\n  dt_days: 5\n")
        with pytest.raises(ValueError):
            main(["--config", str(path)])
