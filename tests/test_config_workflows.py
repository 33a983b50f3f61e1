"""
Configuration loading and workflows
===================================

Workflows run with reduced settings (few rays, small images, tiny ADMM
problems) and are checked for the files they write and the values they
return.

Run with:
    pytest tests/test_config_workflows.py -v
"""

from pathlib import Path

import numpy as np
import pytest

from aberration_pipeline.calibration.dispersion_model import PolynomialDispersion
from aberration_pipeline.config import (
    WORKFLOW_CONFIGS,
    DiskDispersionSimConfig,
    GridSearchConfig,
    RawDiskDispersionConfig,
    RaytracePsfConfig,
    RunDatasetConfig,
    SensorMapConfig,
    SyntheticDatasetConfig,
    load_config,
)
from aberration_pipeline.evaluation.dataset_runner import DatasetDescription
from aberration_pipeline.optics.lens_model import SceneParams
from aberration_pipeline.reconstruction.admm_solver import AdmmOptions
from aberration_pipeline.reconstruction.patches import PatchOptions
from aberration_pipeline.reconstruction.weight_search import RegularizationOptions
from aberration_pipeline.sensor.color_map import SamplingOptions
from aberration_pipeline.utils.image_io import load_spectral_image
from aberration_pipeline.utils.metrics_module import read_table
from aberration_pipeline.workflows import (
    WORKFLOWS,
    disk_dispersion_sim,
    grid_search,
    raw_disk_dispersion,
    raytrace_psf,
    run_dataset,
    sensor_map,
    synthetic_dataset,
)

CONFIG_DIR = Path(__file__).resolve().parent.parent / "configs"


def _write(tmp_path, text, name="config.yaml"):
    path = tmp_path / name
    path.write_text(text)
    return path


# ============================================================
# 1. Configuration
# ============================================================

class TestLoadConfig:
    """YAML → dataclasses, starting from the defaults."""

    def test_defaults_without_file(self):
        cfg = load_config(None, "grid-search")
        assert isinstance(cfg, GridSearchConfig)
        assert cfg.sampling.n_bands == 5

    def test_unknown_workflow(self):
        with pytest.raises(ValueError):
            load_config(None, "calibrate-everything")

    def test_every_workflow_has_a_runner(self):
        assert set(WORKFLOW_CONFIGS) == set(WORKFLOWS)

    def test_nested_override_keeps_defaults(self, tmp_path):
        path = _write(tmp_path, "admm: {max_iter: 7}\npatches: {patch_size: [8, 8], padding: 0}\n")
        cfg = load_config(path, "grid-search")
        assert cfg.admm.max_iter == 7
        assert tuple(cfg.admm.norms) == (True, True, False)
        assert cfg.patches.patch_size == (8, 8)
        assert cfg.patches.padding == 0

    def test_unknown_nested_key(self, tmp_path):
        with pytest.raises(ValueError, match="admm"):
            load_config(_write(tmp_path, "admm: {max_iterations: 7}\n"), "grid-search")

    def test_scalar_section(self, tmp_path):
        with pytest.raises(ValueError, match="mapping"):
            load_config(_write(tmp_path, "admm: 7\n"), "grid-search")

    def test_invalid_value(self, tmp_path):
        with pytest.raises(ValueError):
            load_config(_write(tmp_path, "admm: {solver: lu}\n"), "grid-search")

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "none.yaml", "sensor-map")

    def test_empty_file(self, tmp_path):
        assert isinstance(load_config(_write(tmp_path, ""), "sensor-map"), SensorMapConfig)

    def test_relative_paths(self, tmp_path):
        cfg = load_config(_write(tmp_path, "raw_image: frames/raw.tif\n"), "raw-disk-dispersion")
        assert cfg.raw_image == str(tmp_path.resolve() / "frames" / "raw.tif")
        assert cfg.mask_image is None

    def test_dataset_paths(self, tmp_path):
        absolute = str(tmp_path.resolve() / "b.png")
        text = f"dataset:\n  images: [a.npz, {absolute}]\n  dispersion_rgb: models/rgb.npz\n"
        cfg = load_config(_write(tmp_path, text), "run-dataset")
        root = tmp_path.resolve()
        assert cfg.dataset.images == [str(root / "a.npz"), absolute]
        assert cfg.dataset.dispersion_rgb == str(root / "models" / "rgb.npz")
        assert cfg.dataset.dispersion_spectral is None

    def test_dataset_entry_paths(self, tmp_path):
        text = ("dataset:\n  images:\n    - {name: lab, spectral: s.npz, raw: raw/frame.tif}\n"
                "  spectral_reflectances: true\n  illuminant: lights/led.npz\n")
        cfg = load_config(_write(tmp_path, text), "run-dataset")
        root = tmp_path.resolve()
        assert cfg.dataset.images == [{"name": "lab", "spectral": str(root / "s.npz"),
                                       "raw": str(root / "raw" / "frame.tif")}]
        assert cfg.dataset.illuminant == str(root / "lights" / "led.npz")

    @pytest.mark.parametrize("path", sorted(CONFIG_DIR.glob("*.yaml")), ids=lambda p: p.stem)
    def test_shipped_configs_load(self, path):
        workflow = path.stem.replace("_", "-")
        assert isinstance(load_config(path, workflow), WORKFLOW_CONFIGS[workflow])


# ============================================================
# 2. Fast workflows
# ============================================================

class TestSensorAndDataWorkflows:

    def test_sensor_map(self, tmp_path):
        cfg = SensorMapConfig(sampling=SamplingOptions(n_bands=4), bands_gt=(420.0, 680.0, 14))
        out = sensor_map(cfg, tmp_path)
        assert out["n_bands"] == 4
        assert (tmp_path / "quantum_efficiency.png").exists()
        with np.load(tmp_path / "sampling_weights.npz") as data:
            assert data["color_weights"].shape == (3, 4)
            assert data["spectral_weights"].shape == (4, 14)

    def test_synthetic_dataset(self, tmp_path):
        cfg = SyntheticDatasetConfig(size=(16, 16), bands=(420.0, 680.0, 5), patterns=["checker", "gradient"])
        out = synthetic_dataset(cfg, tmp_path)
        assert out == {"n_images": 4, "bands": 5}
        image, bands = load_spectral_image(tmp_path / "scene_1.npz")
        assert image.shape == (16, 16, 5) and bands.size == 5
        assert (tmp_path / "scene_0_rgb.png").exists()

    def test_synthetic_dataset_without_rgb(self, tmp_path):
        out = synthetic_dataset(SyntheticDatasetConfig(size=(8, 8), patterns=["checker"], rgb=False), tmp_path)
        assert out["n_images"] == 1


class TestRawDiskDispersion:

    def test_synthetic_chart(self, tmp_path):
        cfg = RawDiskDispersionConfig(chart_size=(96, 96), chart_disks=(3, 3), chart_radius=6.0)
        out = raw_disk_dispersion(cfg, tmp_path)
        assert out["n_disks"] == 9
        assert out["disparity_error_rms"] < 0.4
        model = PolynomialDispersion.load(out["model"])
        assert model.channel_mode and model.model_space.image_size == (96, 96)
        assert len(read_table(tmp_path / "disk_centers.csv")) == 9
        for name in ("raw.tif", "disparity_r.png", "disparity_b.png"):
            assert (tmp_path / name).exists()

    def test_raw_must_be_2d(self, tmp_path):
        np.save(tmp_path / "rgb.npy", np.zeros((8, 8, 3)))
        with pytest.raises(ValueError):
            raw_disk_dispersion(RawDiskDispersionConfig(raw_image=str(tmp_path / "rgb.npy")), tmp_path)


class TestRayTracingWorkflows:

    def test_raytrace_psf(self, tmp_path):
        cfg = RaytracePsfConfig(n_incident_rays=2000, image_sampling=(32, 32), max_lights=1)
        out = raytrace_psf(cfg, tmp_path)
        assert out["n_lights"] == 1
        with np.load(tmp_path / "psf_light0.npz") as data:
            assert data["psf"].shape == (3, 32, 32)
            assert data["image_bounds"].shape == (4,)
        assert len(read_table(tmp_path / "psf_peaks.csv")) == 3

    def test_disk_dispersion_sim(self, tmp_path):
        cfg = DiskDispersionSimConfig(
            scene=SceneParams(n_lights=(3, 3)), wavelengths=[450.0, 550.0, 650.0],
            n_incident_rays=2000, image_sampling=(32, 32), max_degree_xy=1, max_degree_lambda=1, n_folds=3,
        )
        out = disk_dispersion_sim(cfg, tmp_path)
        assert out["n_lights"] == 5
        assert np.isfinite(out["rms"])
        model = PolynomialDispersion.load(out["model"])
        assert not model.channel_mode
        assert model.model_space.image_bounds is not None
        with np.load(tmp_path / "disk_centers.npz") as data:
            assert data["centers"].shape == (5, 3, 2)


class TestGridSearchWorkflow:

    def test_tiny_search(self, tmp_path):
        cfg = GridSearchConfig(
            scene={"size": [8, 8], "pattern": "checker", "square_px": 4},
            bands=(420.0, 680.0, 4),
            sampling=SamplingOptions(n_bands=3),
            admm=AdmmOptions(norms=(False, False, False), solver="direct"),
            regularization=RegularizationOptions(n_grid=2, max_iter=2),
            patches=PatchOptions((8, 8), 0),
            grid_samples=2,
        )
        out = grid_search(cfg, tmp_path)
        assert out["selected"].shape == (3,)
        assert out["selected"][2] == 0.0
        assert np.isfinite(out["rmse"])
        assert len(read_table(tmp_path / "l_hypersurface.csv")) == 4
        for name in ("search_path.csv", "l_hypersurface.png", "reconstruction.png", "grid_search.npz"):
            assert (tmp_path / name).exists()


# ============================================================
# 3. Calibration → evaluation
# ============================================================

class TestRunDatasetWorkflow:
    """Synthetic ground truth corrected with a model calibrated on a RAW chart."""

    def test_chain(self, tmp_path):
        data = tmp_path / "data"
        synthetic_dataset(SyntheticDatasetConfig(size=(16, 16), bands=(420.0, 680.0, 5)), data)
        calib = raw_disk_dispersion(
            RawDiskDispersionConfig(chart_size=(96, 96), chart_disks=(3, 3), chart_radius=6.0), tmp_path / "calib")

        description = DatasetDescription(
            name="chain", images=[str(data / "scene_0.npz"), str(data / "scene_1_rgb.png")],
            dispersion_rgb=str(calib["model"]), weights=[[1e-3, 0.0, 0.0]],
            sampling=SamplingOptions(n_bands=3), admm=AdmmOptions(max_iter=10, solver="direct"),
            patches=PatchOptions((16, 16), 0), save_images=False,
        )
        out = run_dataset(RunDatasetConfig(dataset=description), tmp_path / "eval")
        assert out["rgb_rows"] > 0 and out["spectral_rows"] == 1
        assert (tmp_path / "eval" / "chain_evaluateRGB.csv").exists()
