"""
workflows.py — the script-level experiments behind `main.py`

Each workflow takes its config dataclass (see `config.py`) and an output
directory, writes arrays / tables / figures there, and returns a small dict
summarizing what it produced.

  raytrace-psf         PSFs of point lights through a thick lens, per wavelength
  disk-dispersion-sim  spectral dispersion model from ray-traced PSF centres
  raw-disk-dispersion  colour-channel dispersion model from a RAW disk chart
  sensor-map           Sony ICX655 colour map and latent-band sampling weights
  grid-search          regularization weight search + L-hypersurface on one patch
  synthetic-dataset    spectral and colour ground-truth images for run-dataset
  run-dataset          batch evaluation (`evaluation.dataset_runner`)

© 2025 Ali Pouya — Aberration Pipeline
"""

from __future__ import annotations
from dataclasses import replace
import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple
import numpy as np

from .calibration.disk_fitting import DiskFitOptions, find_and_fit_disks
from .calibration.dispersion_model import (
    ModelSpace,
    PolynomialDispersion,
    dispersion_rms,
    dispersion_to_matrix,
    make_dispersion_for_image,
    match_centers,
    stats_to_disparity,
    xy_polyfit_channels,
    xylambda_polyfit,
)
from .config import (
    DiskDispersionSimConfig,
    GridSearchConfig,
    RawDiskDispersionConfig,
    RaytracePsfConfig,
    RunDatasetConfig,
    SensorMapConfig,
    SyntheticDatasetConfig,
)
from .evaluation.dataset_runner import run_on_dataset
from .optics.lens_model import (
    RayParams,
    imaging_scenario,
    lens_params_to_ray_params,
    sellmeier_dispersion,
)
from .optics.ray_tracing import auto_image_bounds, densify_rays, double_spherical_lens, peak_irradiance
from .reconstruction.admm_solver import AdmmProblem
from .reconstruction.image_formation import forward_operator, image_formation
from .reconstruction.patches import patch_boundaries
from .reconstruction.weight_search import pareto_front, sample_l_hypersurface, sample_weights_grid, select_weights
from .scenes.scene_generator import generate_disk_chart, generate_scene
from .sensor.color_map import SamplingOptions, SensorMap, channel_conversion, sampling_weights
from .sensor.sensor_model import add_raw_noise, bilinear_demosaic, offset_bayer_pattern
from .utils import plotting
from .utils.image_io import load_image, load_mask, save_image, save_spectral_image
from .utils.metrics_module import evaluate_spectral, write_table

logger = logging.getLogger(__name__)


def _outdir(outdir: str | Path) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)
    return outdir


def _linspace(band_range) -> np.ndarray:
    start, stop, count = band_range
    if int(count) < 1:
        raise ValueError("A band specification needs a positive count.")
    return np.linspace(float(start), float(stop), int(count))


# -----------------------------------------------------------------------------
# Ray tracing
# -----------------------------------------------------------------------------
def _lens_setup(cfg) -> Tuple[RayParams, np.ndarray, np.ndarray, np.ndarray]:
    """Ray parameters, lights in the field, their depth factors and the lens index per wavelength."""
    wavelengths = np.asarray(cfg.wavelengths, dtype=np.float64)
    ior = sellmeier_dispersion(wavelengths)
    ior_reference = float(sellmeier_dispersion(cfg.reference_wavelength))
    lens = replace(cfg.lens, ior_lens=ior, wavelengths=wavelengths)

    X_lights, z_film, lights_filter, depth_factors = imaging_scenario(
        replace(lens, ior_lens=ior_reference), cfg.ior_environment, cfg.scene)
    ray_params = RayParams(
        n_incident_rays=cfg.n_incident_rays,
        sample_random=cfg.sample_random,
        ior_environment=cfg.ior_environment,
        seed=cfg.seed,
    )
    ray_params = lens_params_to_ray_params(ray_params, lens, z_film)
    logger.info("Film at z = %.4g; %d of %d lights in the field.", z_film, lights_filter.sum(), lights_filter.size)
    return ray_params, X_lights[lights_filter], depth_factors[lights_filter], ior


def raytrace_psf(cfg: RaytracePsfConfig, outdir: str | Path) -> Dict[str, Any]:
    """
    Trace each light at each wavelength and bin the rays on a grid shared by
    the wavelengths of that light.
    """
    outdir = _outdir(outdir)
    ray_params, lights, depths, ior = _lens_setup(cfg)
    if cfg.max_lights is not None:
        lights, depths = lights[:cfg.max_lights], depths[:cfg.max_lights]

    rows = []
    for i, light in enumerate(lights):
        traces = [double_spherical_lens(replace(ray_params, source_position=light, ior_lens=float(n)))
                  for n in ior]
        bounds = auto_image_bounds(np.vstack([t.image_position for t in traces]))
        psfs = []
        for k, (wl, t) in enumerate(zip(cfg.wavelengths, traces)):
            I, _, _ = densify_rays(t.image_position, t.ray_irradiance, bounds, cfg.image_sampling)
            psfs.append(I)
            peak_xy, peak = peak_irradiance(I, bounds)
            rows.append({
                "light": i, "x": light[0], "y": light[1], "z": light[2], "depth_factor": depths[i],
                "wavelength_nm": wl, "ior_lens": float(ior[k]), "n_rays": t.image_position.shape[0],
                "peak_x": peak_xy[0], "peak_y": peak_xy[1], "peak_irradiance": peak,
            })
            plotting.plot_irradiance(I, bounds, outdir / f"psf_light{i}_{wl:g}nm.png",
                                     title=f"Light {i}, {wl:g} nm (IOR {ior[k]:.4f})")
        np.savez(outdir / f"psf_light{i}.npz", psf=np.stack(psfs), image_bounds=bounds,
                 wavelengths=np.asarray(cfg.wavelengths, dtype=np.float64), source_position=light)

    table = write_table(rows, outdir / "psf_peaks.csv")
    return {"n_lights": len(lights), "table": table}


def disk_dispersion_sim(cfg: DiskDispersionSimConfig, outdir: str | Path) -> Dict[str, Any]:
    """
    Fit a spectral dispersion model to the centres of ray-traced PSFs.

    Each PSF is binned on its own grid; its centre comes from
    `find_and_fit_disks` in world (film-plane) coordinates.
    """
    outdir = _outdir(outdir)
    ray_params, lights, depths, ior = _lens_setup(cfg)
    wavelengths = np.asarray(cfg.wavelengths, dtype=np.float64)
    centers = np.full((lights.shape[0], wavelengths.size, 2), np.nan)

    for i, light in enumerate(lights):
        for k, n in enumerate(ior):
            t = double_spherical_lens(replace(ray_params, source_position=light, ior_lens=float(n)))
            if t.image_position.shape[0] == 0:
                logger.warning("Light %d, %g nm: no rays reached the film.", i, wavelengths[k])
                continue
            I, mask, bounds = densify_rays(t.image_position, t.ray_irradiance, None, cfg.image_sampling)
            fit = find_and_fit_disks(I, mask, None, bounds, cfg.cleanup_radius, cfg.disk_fit)
            if fit.centers.shape[0] == 0:
                logger.warning("Light %d, %g nm: no blob found.", i, wavelengths[k])
                continue
            if fit.centers.shape[0] > 1:
                logger.debug("Light %d, %g nm: %d blobs, keeping the largest.", i, wavelengths[k], fit.centers.shape[0])
            largest = int(np.argmax(fit.ellipses[:, 2] * fit.ellipses[:, 3]))
            centers[i, k] = fit.centers[largest, 0]
        logger.info("Light %d/%d done.", i + 1, lights.shape[0])

    reference_index = int(np.argmin(np.abs(wavelengths - cfg.reference_wavelength)))
    X, disparity = stats_to_disparity(centers, reference_index, cfg.from_reference)
    finite = centers[np.all(np.isfinite(centers), axis=2)]
    model_space = ModelSpace(tuple(cfg.image_sampling), tuple(auto_image_bounds(finite)))
    model = xylambda_polyfit(
        X, wavelengths, disparity, cfg.max_degree_xy, cfg.max_degree_lambda,
        reference_index=reference_index, from_reference=cfg.from_reference,
        n_folds=cfg.n_folds, model_space=model_space,
    )
    rms = dispersion_rms(model, X, wavelengths, disparity)
    model_path = model.save(outdir / "dispersion_spectral.npz")
    np.savez(outdir / "disk_centers.npz", centers=centers, wavelengths=wavelengths, lights=lights, depth_factors=depths)

    for k in (0, wavelengths.size - 1):
        if k != reference_index:
            plotting.plot_disparity(X[:, k], disparity[:, k], outdir / f"disparity_{wavelengths[k]:g}nm.png",
                                    scale=10.0, title=f"Disparity at {wavelengths[k]:g} nm")
    logger.info("Spectral dispersion model: RMS residual %.4g.", rms)
    return {"model": model_path, "rms": rms, "n_lights": lights.shape[0]}


# -----------------------------------------------------------------------------
# RAW disk chart
# -----------------------------------------------------------------------------
def raw_disk_dispersion(cfg: RawDiskDispersionConfig, outdir: str | Path) -> Dict[str, Any]:
    """Colour-channel dispersion model from the per-channel centres of disks in a RAW image."""
    outdir = _outdir(outdir)
    true_centers = None
    if cfg.raw_image is None:
        raw, true_centers = generate_disk_chart(
            size=cfg.chart_size, n_disks=cfg.chart_disks, radius=cfg.chart_radius,
            bright=cfg.bright_disks, channel_shifts=cfg.chart_channel_shifts, align=cfg.align,
        )
    else:
        raw = load_image(cfg.raw_image)
        if raw.ndim != 2:
            raise ValueError(f"Expected a 2-D RAW image, got shape {raw.shape}.")
    raw = add_raw_noise(raw, cfg.noise)
    mask = None if cfg.mask_image is None else load_mask(cfg.mask_image)
    if mask is not None and mask.shape != raw.shape:
        raise ValueError("The mask image does not match the RAW image size.")

    options = DiskFitOptions(bright_disks=cfg.bright_disks, group_channels=False)
    fit = find_and_fit_disks(raw, mask, cfg.align, None, cfg.cleanup_radius, options)
    if fit.centers.shape[0] == 0:
        raise ValueError("No disks were found in the RAW image.")

    X, disparity = stats_to_disparity(fit.centers, cfg.reference_channel, cfg.from_reference)
    model = xy_polyfit_channels(
        X, disparity, cfg.max_degree_xy, reference_index=cfg.reference_channel,
        from_reference=cfg.from_reference, n_folds=cfg.n_folds, model_space=ModelSpace(raw.shape),
    )
    channels = np.arange(fit.centers.shape[1], dtype=np.float64)
    rms = dispersion_rms(model, X, channels, disparity)
    model_path = model.save(outdir / "dispersion_rgb.npz")
    save_image(outdir / "raw.tif", raw)

    rows = []
    for n in range(fit.centers.shape[0]):
        row = {"disk": n}
        for c, name in enumerate("rgb"):
            row[f"{name}_x"], row[f"{name}_y"] = fit.centers[n, c]
        rows.append(row)
    write_table(rows, outdir / "disk_centers.csv")

    out = {"model": model_path, "rms": rms, "n_disks": fit.centers.shape[0]}
    if true_centers is not None:
        # Error of the measured disparity against the rendered channel shifts
        matched = np.stack([
            match_centers(fit.centers[:, c], true_centers[:, c], cfg.chart_radius)
            for c in range(fit.centers.shape[1])
        ], axis=1)
        _, true_disparity = stats_to_disparity(matched, cfg.reference_channel, cfg.from_reference)
        err = disparity - true_disparity
        out["disparity_error_rms"] = float(np.sqrt(np.nanmean(np.sum(err**2, axis=2))))
        logger.info("Disparity error against the rendered shifts: %.4g px RMS.", out["disparity_error_rms"])

    for c in range(fit.centers.shape[1]):
        if c != cfg.reference_channel:
            plotting.plot_disparity(X[:, c], disparity[:, c], outdir / f"disparity_{'rgb'[c]}.png",
                                    scale=10.0, title=f"Disparity, {'RGB'[c]} channel")
    return out


# -----------------------------------------------------------------------------
# Sensor map
# -----------------------------------------------------------------------------
def sensor_map(cfg: SensorMapConfig, outdir: str | Path) -> Dict[str, Any]:
    outdir = _outdir(outdir)
    bands = _linspace(cfg.bands)
    sm = SensorMap.sony_icx655(bands)
    path = sm.save(outdir / "sensor_map.npz")
    plotting.plot_quantum_efficiency(bands, sm.sensor_map.T, outdir / "quantum_efficiency.png")

    bands_gt = None if cfg.bands_gt is None else _linspace(cfg.bands_gt)
    color_weights, spectral_weights, latent_bands, color_weights_reference = sampling_weights(
        sm, None, bands_gt, cfg.sampling)
    arrays = {"color_weights": color_weights, "bands": latent_bands}
    if bands_gt is not None:
        arrays.update(spectral_weights=spectral_weights, color_weights_reference=color_weights_reference,
                      bands_gt=bands_gt)
    np.savez(outdir / "sampling_weights.npz", **arrays)
    return {"sensor_map": path, "n_bands": latent_bands.size}


# -----------------------------------------------------------------------------
# Regularization weights
# -----------------------------------------------------------------------------
def grid_search(cfg: GridSearchConfig, outdir: str | Path) -> Dict[str, Any]:
    """
    Select regularization weights for one patch of a simulated spectral scene
    and sample the L-hypersurface around them.
    """
    outdir = _outdir(outdir)
    scene_kwargs = dict(cfg.scene)
    size = tuple(int(v) for v in scene_kwargs.pop("size", (24, 24)))
    bands_scene = _linspace(cfg.bands)
    scene = generate_scene("spectral", size, bands=bands_scene, **scene_kwargs)

    color_weights, spectral_weights, bands, _ = sampling_weights(
        SensorMap.sony_icx655(), None, bands_scene, cfg.sampling)
    latent_gt = channel_conversion(scene, spectral_weights)

    df = None
    if cfg.dispersion is not None:
        model = PolynomialDispersion.load(cfg.dispersion)
        if model.model_space is None:
            df, _ = make_dispersion_for_image(model)
        else:
            df, latent_gt = make_dispersion_for_image(model, latent_gt, model.model_space)
    _, _, raw, _ = image_formation(latent_gt, color_weights, df, bands, cfg.align)
    raw = add_raw_noise(raw, cfg.noise)

    corner = cfg.patches.target_patch or (0, 0)
    pb = patch_boundaries(raw.shape, cfg.patches.patch_size, cfg.patches.padding, corner)
    r0, r1, c0, c1 = pb.padded
    shape = (r1 - r0, c1 - c0)
    align = offset_bayer_pattern((r0, c0), cfg.align)
    Phi = None if df is None else dispersion_to_matrix(df, bands, shape, offset=(r0, c0))
    A = forward_operator(shape, align, Phi, color_weights)
    problem = AdmmProblem(A, raw[r0:r1, c0:c1], shape + (bands.size,), cfg.admm, color_weights=color_weights)
    truth = latent_gt[r0:r1, c0:c1]

    reg = cfg.regularization
    if reg.method == "true":
        reference = truth
    elif reg.method == "demosaic":
        reference = bilinear_demosaic(raw[r0:r1, c0:c1], align, reg.demosaic_channels)
    else:
        reference = None
    search = select_weights(problem, reg, reference=reference)

    grid = sample_weights_grid(reg.minimum_weights, reg.maximum_weights, cfg.grid_samples, reg.enabled)
    err, mse = sample_l_hypersurface(problem, grid, reference=truth)
    dims = np.concatenate([[0], reg.active + 1])
    pareto = pareto_front(err[:, dims])

    rows: List[Dict[str, Any]] = []
    for s in range(grid.shape[0]):
        rows.append({
            **{f"weight{k}": grid[s, k] for k in range(grid.shape[1])},
            **{f"err{k}": err[s, k] for k in range(err.shape[1])},
            "mse": mse[s], "pareto": bool(pareto[s]),
        })
    write_table(rows, outdir / "l_hypersurface.csv")
    write_table([
        {**{f"weight{k}": w[k] for k in range(w.size)}, "criterion": c}
        for w, c in zip(search.weights, search.criterion)
    ], outdir / "search_path.csv")

    if dims.size >= 2:
        plotting.plot_search_path(err[:, dims], pareto, search.err[:, dims], search.origin[dims],
                                  outdir / "l_hypersurface.png", dims=(1, 0))
    else:
        logger.warning("No active weights to plot.")

    result = problem.solve(search.selected)
    metrics = evaluate_spectral(result.latent, truth)
    rgb_truth = channel_conversion(truth, color_weights)
    rgb = channel_conversion(result.latent, color_weights)
    scale = max(float(rgb_truth.max()), 1e-12)
    plotting.plot_image_montage([rgb_truth / scale, rgb / scale], ["Ground truth", "Reconstruction"],
                                outdir / "reconstruction.png")
    np.savez(outdir / "grid_search.npz", weights=grid, err=err, mse=mse, pareto=pareto,
             path_weights=search.weights, path_err=search.err, selected=search.selected,
             origin=search.origin, err_max=search.err_max, latent=result.latent, bands=bands)
    return {"selected": search.selected, "iterations": search.iterations,
            "converged": search.converged, **metrics}


# -----------------------------------------------------------------------------
# Dataset evaluation
# -----------------------------------------------------------------------------
def synthetic_dataset(cfg: SyntheticDatasetConfig, outdir: str | Path) -> Dict[str, Any]:
    """Write `scene_<i>.npz` spectral images and `scene_<i>_rgb.png` colour renderings."""
    outdir = _outdir(outdir)
    bands = _linspace(cfg.bands)
    color_weights_reference = None
    if cfg.rgb:
        _, _, _, color_weights_reference = sampling_weights(SensorMap.sony_icx655(), None, bands, SamplingOptions())

    images = []
    for i, pattern in enumerate(cfg.patterns):
        scene = generate_scene("spectral", cfg.size, bands=bands, pattern=pattern)
        images.append(save_spectral_image(outdir / f"scene_{i}.npz", scene, bands))
        if color_weights_reference is not None:
            rgb = np.clip(channel_conversion(scene, color_weights_reference), 0.0, 1.0)
            images.append(save_image(outdir / f"scene_{i}_rgb.png", rgb))
    logger.info("Wrote %d images to %s.", len(images), outdir)
    return {"n_images": len(images), "bands": bands.size}


def run_dataset(cfg: RunDatasetConfig, outdir: str | Path) -> Dict[str, Any]:
    summary = run_on_dataset(cfg.dataset, _outdir(outdir))
    return {"rgb_rows": len(summary["rgb"]), "spectral_rows": len(summary["spectral"])}


WORKFLOWS = {
    "raytrace-psf": raytrace_psf,
    "disk-dispersion-sim": disk_dispersion_sim,
    "raw-disk-dispersion": raw_disk_dispersion,
    "sensor-map": sensor_map,
    "grid-search": grid_search,
    "synthetic-dataset": synthetic_dataset,
    "run-dataset": run_dataset,
}
