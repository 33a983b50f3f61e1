"""
dataset_runner.py — evaluate correction algorithms over a dataset of images

WHAT THIS MODULE DOES
---------------------
For every entry of a dataset:
  1) Load its ground truth (spectral `.npz` and / or colour TIFF / PNG) and,
     if given, a captured RAW frame of the same scene; crop them to the
     region covered by the dispersion models and, optionally, to a smaller
     window. Spectral reflectances are lit by an illuminant first.
  2) Without a captured RAW frame, simulate one: apply dispersion (unless
     the ground truth was itself captured through the lens), convert to
     the sensor channels, mosaic, and optionally add noise seeded per image.
  3) Evaluate the aberrated colour (and spectral) image as a baseline.
  4) Run each enabled ADMM algorithm for each row of regularization
     weights (or with weights selected per patch), in spectral and / or
     colour mode, and evaluate the results.
  5) Demosaic the RAW frame with each enabled demosaicking algorithm and
     evaluate it with and without warping the colour channels back into
     register.

Per-image tables are written as `<image>_evaluateRGB.csv` /
`<image>_evaluateSpectral.csv`, dataset summaries (means per algorithm) as
`<dataset>_evaluateRGB.csv` / `<dataset>_evaluateSpectral.csv`, and the
parameters as `RunOnDataset_<dataset>.json`.

ALGORITHMS
----------
`set_algorithms()` returns the registry. ADMM algorithms differ in their
norms, their non-negativity constraint and which priors they use; the
spectral variants reconstruct latent spectral bands, the colour variants
reconstruct RGB directly.

REFERENCES (short list)
-----------------------
• Baek, S.-H. et al. (2017). Compact single-shot hyperspectral imaging
  using a prism. ACM TOG 36(6).
• Song, Y., Brie, D., Djermoune, E.-H. & Henrot, S. (2016). Regularization
  parameter estimation for non-negative hyperspectral image deconvolution.
  IEEE TIP 25(11).

© 2025 Ali Pouya — Aberration Pipeline
"""

from __future__ import annotations
from dataclasses import asdict, dataclass, field, replace
import json
import logging
from pathlib import Path
from typing import Callable, Dict, List, Sequence, Tuple
import numpy as np

from ..calibration.dispersion_model import (
    DispersionFunction,
    PolynomialDispersion,
    make_dispersion_for_image,
    model_space_transform,
    warp_image,
)
from ..reconstruction.admm_solver import N_PRIORS, AdmmOptions
from ..reconstruction.image_formation import image_formation
from ..reconstruction.patches import PatchOptions, solve_patches_admm
from ..reconstruction.weight_search import RegularizationOptions
from ..sensor.color_map import (
    SamplingOptions,
    SensorMap,
    channel_conversion,
    illuminant_weights,
    sampling_weights,
)
from ..sensor.sensor_model import NoiseParams, add_raw_noise, bilinear_demosaic, mosaic
from ..utils.image_io import load_image, load_spectral_image, save_image, save_spectral_image
from ..utils.metrics_module import evaluate_rgb, evaluate_spectral, merge_tables, write_table

logger = logging.getLogger(__name__)

RGB_BANDS = np.arange(3, dtype=np.float64)


# -----------------------------------------------------------------------------
# Algorithm registry
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class AdmmAlgorithm:
    """
    name : label used in tables
    file : short name used in filenames
    spectral : reconstruct spectral bands (else colour channels)
    priors : which regularization weights are used (others forced to 0)
    norms : AdmmOptions.norms for this algorithm
    nonneg : AdmmOptions.nonneg for this algorithm
    enabled : run by default
    """
    name: str
    file: str
    spectral: bool
    priors: Tuple[bool, bool, bool]
    norms: Tuple[bool, bool, bool]
    nonneg: bool
    enabled: bool = False


@dataclass(frozen=True)
class DemosaicAlgorithm:
    name: str
    file: str
    fn: Callable[[np.ndarray, str], np.ndarray]
    enabled: bool = True


def set_algorithms(
    admm_enabled: Sequence[str] | None = None,
    demosaic_enabled: Sequence[str] | None = None,
) -> Tuple[Dict[str, AdmmAlgorithm], Dict[str, DemosaicAlgorithm]]:
    """
    Registry of ADMM and demosaicking algorithms.

    Parameters
    ----------
    admm_enabled, demosaic_enabled : keys to enable; None keeps the defaults
        (the L2NonNeg variants and bilinear demosaicking).

    Returns
    -------
    (admm_algorithms, demosaic_algorithms), each keyed by algorithm id.
    """
    l1l1 = dict(priors=(True, True, False), norms=(True, True, False))
    l2 = dict(priors=(True, False, False), norms=(False, False, False))
    admm = {}
    for mode, spectral in (("spectral", True), ("color", False)):
        label = "Spectral" if spectral else "Color"
        admm[f"{mode}L1L1"] = AdmmAlgorithm(f"{label} L1L1", "L1L1", spectral, nonneg=False, **l1l1)
        admm[f"{mode}L1L1NonNeg"] = AdmmAlgorithm(f"{label} L1L1NonNeg", "L1L1NonNeg", spectral, nonneg=True, **l1l1)
        admm[f"{mode}L2NonNeg"] = AdmmAlgorithm(f"{label} L2NonNeg", "L2NonNeg", spectral, nonneg=True,
                                                enabled=True, **l2)
        admm[f"{mode}L2"] = AdmmAlgorithm(f"{label} L2", "L2", spectral, nonneg=False, **l2)

    demosaic = {
        "bilinear": DemosaicAlgorithm("Bilinear demosaicking", "bilinear", bilinear_demosaic, enabled=True),
    }

    if admm_enabled is not None:
        unknown = set(admm_enabled) - set(admm)
        if unknown:
            raise ValueError(f"Unknown ADMM algorithm(s) {sorted(unknown)}; choose from {sorted(admm)}.")
        admm = {k: replace(a, enabled=k in admm_enabled) for k, a in admm.items()}
    if demosaic_enabled is not None:
        unknown = set(demosaic_enabled) - set(demosaic)
        if unknown:
            raise ValueError(f"Unrecognized demosaicking algorithm(s) {sorted(unknown)}; choose from {sorted(demosaic)}.")
        demosaic = {k: replace(a, enabled=k in demosaic_enabled) for k, a in demosaic.items()}
    return admm, demosaic


# -----------------------------------------------------------------------------
# Dataset description
# -----------------------------------------------------------------------------
@dataclass
class DatasetImage:
    """
    One dataset entry.

    name : label used in tables and filenames
    spectral : spectral ground truth `.npz`
    rgb : colour ground truth; with `spectral` it replaces the simulated
        colour rendering and must have the same size
    raw : captured RAW frame (2D) used instead of a simulated one
    """
    name: str
    spectral: str | None = None
    rgb: str | None = None
    raw: str | None = None

    def __post_init__(self):
        if self.spectral is None and self.rgb is None:
            raise ValueError(f"{self.name}: a dataset entry needs spectral or colour ground truth.")


ENTRY_KEYS = ("name", "spectral", "rgb", "raw")


def dataset_image(entry: str | Path | Dict[str, str] | DatasetImage) -> DatasetImage:
    """
    DatasetImage from a path (`.npz`: spectral, else colour ground truth) or a
    mapping with the keys of `ENTRY_KEYS`.
    """
    if isinstance(entry, DatasetImage):
        return entry
    if isinstance(entry, (str, Path)):
        path = Path(entry)
        key = "spectral" if path.suffix.lower() == ".npz" else "rgb"
        return DatasetImage(name=path.stem, **{key: str(path)})
    if isinstance(entry, dict):
        unknown = sorted(set(entry) - set(ENTRY_KEYS))
        if unknown:
            raise ValueError(f"Unknown key(s) {unknown} in a dataset entry; use {list(ENTRY_KEYS)}.")
        paths = {k: None if entry.get(k) is None else str(entry[k]) for k in ENTRY_KEYS[1:]}
        name = entry.get("name")
        if name is None:
            first = paths["spectral"] or paths["rgb"] or paths["raw"]
            name = "image" if first is None else Path(first).stem
        return DatasetImage(name=str(name), **paths)
    raise ValueError(f"A dataset entry must be a path or a mapping, not {type(entry).__name__}.")


@dataclass
class DatasetDescription:
    """
    name : dataset name used for summary filenames
    images : entries, each a ground-truth path (spectral `.npz` or colour
        image) or a mapping with `name`, `spectral`, `rgb` and `raw` paths
    is_aberrated : the ground truth was captured through the lens, so no
        dispersion is simulated and there is no aberrated baseline
    spectral_reflectances : spectral ground truth holds reflectances, lit by
        `illuminant` (`.npz` with `bands` and `spd`) or, without one, by a
        black body at `illuminant_temperature` K
    align : Bayer pattern of the RAW frames
    sensor_map : `.npz` SensorMap path; None uses the Sony ICX655 curves
    dispersion_spectral, dispersion_rgb : `.npz` PolynomialDispersion paths
    fill : keep the whole image instead of cropping to the model domain
    crop : (row_start, row_end, col_start, col_end) window, after the model crop
    weights : rows of fixed regularization weights; empty selects them per patch
    admm_algorithms, demosaic_algorithms : enabled algorithm ids (None: defaults)
    save_images : write the reconstructed images next to the tables
    noise : applied to simulated RAW frames, with the seed offset by the
        image index
    """
    name: str = "dataset"
    images: List[str | Dict[str, str]] = field(default_factory=list)
    is_aberrated: bool = False
    spectral_reflectances: bool = False
    illuminant: str | None = None
    illuminant_temperature: float = 6504.0
    align: str = "gbrg"
    sensor_map: str | None = None
    dispersion_spectral: str | None = None
    dispersion_rgb: str | None = None
    fill: bool = False
    crop: Tuple[int, int, int, int] | None = None
    weights: List[List[float]] = field(default_factory=list)
    admm_algorithms: List[str] | None = None
    demosaic_algorithms: List[str] | None = None
    save_images: bool = True
    sampling: SamplingOptions = field(default_factory=lambda: SamplingOptions(n_bands=6))
    noise: NoiseParams = field(default_factory=NoiseParams)
    admm: AdmmOptions = field(default_factory=AdmmOptions)
    regularization: RegularizationOptions = field(default_factory=RegularizationOptions)
    patches: PatchOptions = field(default_factory=PatchOptions)


@dataclass
class LoadedImage:
    """One dataset image prepared for evaluation."""
    name: str
    I_raw: np.ndarray
    I_rgb_gt: np.ndarray
    I_rgb_warped: np.ndarray | None
    I_latent_gt: np.ndarray | None = None
    I_latent_warped: np.ndarray | None = None
    df_spectral: DispersionFunction | None = None
    df_rgb: DispersionFunction | None = None


# -----------------------------------------------------------------------------
# Loading
# -----------------------------------------------------------------------------
def _dispersion_for_image(
    model: PolynomialDispersion | None,
    image: np.ndarray,
    fill: bool,
) -> Tuple[DispersionFunction | None, Tuple[int, int, int, int] | None]:
    if model is None:
        return None, None
    if model.model_space is None:
        df, _ = make_dispersion_for_image(model)
        return df, None
    roi, _ = model_space_transform(image.shape[:2], model.model_space, fill)
    df, _ = make_dispersion_for_image(model, image, model.model_space, fill)
    return df, roi


def _shift_dispersion(df: DispersionFunction | None, corner: Sequence[int]) -> DispersionFunction | None:
    """Dispersion function for a window whose top-left pixel is `corner` (row, col)."""
    if df is None or (corner[0] == 0 and corner[1] == 0):
        return df
    shift = np.array([corner[1], corner[0], 0.0])

    def shifted(xyl: np.ndarray) -> np.ndarray:
        return df(np.atleast_2d(np.asarray(xyl, dtype=np.float64)) + shift)

    return shifted


def _crop(image: np.ndarray | None, window: Sequence[int] | None) -> np.ndarray | None:
    if image is None or window is None:
        return image
    r0, r1, c0, c1 = window
    return image[r0:r1, c0:c1, ...]


def _check_window(window: Sequence[int], shape: Sequence[int]) -> Tuple[int, int, int, int]:
    r0, r1, c0, c1 = (int(v) for v in window)
    if not (0 <= r0 < r1 <= shape[0] and 0 <= c0 < c1 <= shape[1]):
        raise ValueError(f"Crop window {tuple(window)} does not fit a {shape[0]}x{shape[1]} image.")
    return r0, r1, c0, c1


def image_noise(noise: NoiseParams, index: int) -> NoiseParams:
    """Noise parameters of the `index`-th image: the seed is offset by the index."""
    if noise.seed is None:
        return noise
    return replace(noise, seed=int(noise.seed) + int(index))


def load_and_convert_image(
    entry: str | Path | Dict[str, str] | DatasetImage,
    description: DatasetDescription,
    models: Dict[str, PolynomialDispersion | None],
    sensor_map: SensorMap,
    index: int = 0,
) -> Tuple[LoadedImage, Dict[str, np.ndarray] | None]:
    """
    Load one dataset entry and, unless a captured RAW frame is given,
    simulate its RAW capture.

    Parameters
    ----------
    entry : path or mapping, see `dataset_image`
    description : DatasetDescription
    models : {'spectral': ..., 'rgb': ...} dispersion models (or None)
    sensor_map : SensorMap
    index : position of the entry in the dataset, offsets the noise seed

    Returns
    -------
    image : LoadedImage
    sampling : with spectral ground truth, dict with `bands`, `color_weights`
        and `spectral_weights` of the latent bands; None otherwise
    """
    entry = dataset_image(entry)
    name = entry.name
    spectral = entry.spectral is not None
    simulate_dispersion = not description.is_aberrated

    gt_s = bands_gt = gt_rgb = raw = None
    if spectral:
        gt_s, bands_gt = load_spectral_image(entry.spectral)
        if description.spectral_reflectances:
            illuminant = illuminant_weights(bands_gt, description.illuminant_temperature, description.illuminant)
            gt_s = gt_s * illuminant
    if entry.rgb is not None:
        gt_rgb = load_image(entry.rgb)
        if gt_rgb.ndim != 3 or gt_rgb.shape[2] != 3:
            raise ValueError(f"{name}: colour ground truth must have shape (H, W, 3), got {gt_rgb.shape}.")
    if entry.raw is not None:
        raw = load_image(entry.raw)
        if raw.ndim != 2:
            raise ValueError(f"{name}: a RAW frame must be a 2D array, got shape {raw.shape}.")

    versions = {k: im for k, im in (("spectral", gt_s), ("rgb", gt_rgb), ("raw", raw)) if im is not None}
    sizes = {k: im.shape[:2] for k, im in versions.items()}
    if len(set(sizes.values())) > 1:
        raise ValueError(f"{name}: the versions of the image differ in size: {sizes}.")
    first = next(iter(versions.values()))

    if not spectral and models["spectral"] is not None:
        logger.warning("%s: colour image, the spectral dispersion model is not used.", name)
    df_s, roi_s = _dispersion_for_image(models["spectral"] if spectral else None, first, description.fill)
    df_rgb, roi_rgb = _dispersion_for_image(models["rgb"], first, description.fill)
    if roi_s is not None and roi_rgb is not None and roi_s != roi_rgb:
        raise ValueError(f"{name}: the spectral and colour dispersion models cover different image regions.")
    roi = roi_s if roi_s is not None else roi_rgb
    gt_s, gt_rgb, raw = (_crop(im, roi) for im in (gt_s, gt_rgb, raw))

    if description.crop is not None:
        shape = next(im.shape for im in (gt_s, gt_rgb, raw) if im is not None)
        window = _check_window(description.crop, shape)
        gt_s, gt_rgb, raw = (_crop(im, window) for im in (gt_s, gt_rgb, raw))
        df_s = _shift_dispersion(df_s, window[::2])
        df_rgb = _shift_dispersion(df_rgb, window[::2])

    sampling = None
    I_rgb_warped = I_latent_gt = I_latent_warped = None
    if spectral:
        color_weights, spectral_weights, bands, color_weights_reference = sampling_weights(
            sensor_map, None, bands_gt, description.sampling)
        df_formation = df_s if simulate_dispersion else None
        I_rgb_sim, I_rgb_formed, I_raw, I_spectral_warped = image_formation(
            gt_s, color_weights_reference, df_formation, bands_gt, description.align)
        if df_formation is not None:
            I_rgb_warped = I_rgb_formed
            I_latent_warped = channel_conversion(I_spectral_warped, spectral_weights)
        elif simulate_dispersion and df_rgb is not None:
            I_rgb_warped = warp_image(I_rgb_sim, df_rgb, RGB_BANDS)
            I_raw = mosaic(I_rgb_warped, description.align)
        I_rgb_gt = I_rgb_sim if gt_rgb is None else gt_rgb
        I_latent_gt = channel_conversion(gt_s, spectral_weights)
        sampling = {"bands": bands, "color_weights": color_weights, "spectral_weights": spectral_weights}
    else:
        I_rgb_gt = gt_rgb
        if simulate_dispersion and df_rgb is not None:
            I_rgb_warped = warp_image(gt_rgb, df_rgb, RGB_BANDS)
        I_raw = mosaic(gt_rgb if I_rgb_warped is None else I_rgb_warped, description.align)

    if raw is not None:
        # No simulated aberrated baseline for a captured frame
        I_raw = raw
        I_rgb_warped = I_latent_warped = None
    else:
        I_raw = add_raw_noise(I_raw, image_noise(description.noise, index))

    loaded = LoadedImage(
        name=name, I_raw=I_raw, I_rgb_gt=I_rgb_gt, I_rgb_warped=I_rgb_warped,
        I_latent_gt=I_latent_gt, I_latent_warped=I_latent_warped,
        df_spectral=df_s, df_rgb=df_rgb,
    )
    logger.info("Loaded %s: %dx%d, %s ground truth, %s RAW.", name, *loaded.I_raw.shape,
                "spectral" if spectral else "colour", "captured" if raw is not None else "simulated")
    return loaded, sampling


# -----------------------------------------------------------------------------
# Evaluation helpers
# -----------------------------------------------------------------------------
def _row(image: str, algorithm: str, metrics: Dict[str, float]) -> Dict[str, object]:
    return {"image": image, "algorithm": algorithm, **metrics}


def _weights_label(weights: np.ndarray | None) -> str:
    if weights is None:
        return "selected weights"
    return "weights ({:g}, {:g}, {:g})".format(*weights)


def _weights_file(weights: np.ndarray | None) -> str:
    if weights is None:
        return "selected"
    return "weights{:e}w{:e}w{:e}".format(*weights)


def _jsonable(value):
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, (np.floating, np.integer, np.bool_)):
        return value.item()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _load_models(description: DatasetDescription) -> Dict[str, PolynomialDispersion | None]:
    models = {
        "spectral": None if description.dispersion_spectral is None
        else PolynomialDispersion.load(description.dispersion_spectral),
        "rgb": None if description.dispersion_rgb is None
        else PolynomialDispersion.load(description.dispersion_rgb),
    }
    if models["spectral"] is not None and models["spectral"].channel_mode:
        raise ValueError("dispersion_spectral must be a spectral (x, y, λ) model.")
    if models["rgb"] is not None and not models["rgb"].channel_mode:
        raise ValueError("dispersion_rgb must be a colour-channel model.")
    return models


# -----------------------------------------------------------------------------
# Dataset loop
# -----------------------------------------------------------------------------
def run_on_dataset(description: DatasetDescription, output_directory: str | Path) -> Dict[str, List[Dict[str, object]]]:
    """
    Evaluate the enabled algorithms on every image of `description`.

    Parameters
    ----------
    description : DatasetDescription
    output_directory : directory for tables, images and the parameter record

    Returns
    -------
    dict with the summary tables, keys 'rgb' and 'spectral' (possibly empty)
    """
    if not description.images:
        raise ValueError("The dataset description lists no images.")
    weights_rows = np.asarray(description.weights, dtype=np.float64).reshape(-1, N_PRIORS) \
        if len(description.weights) else None
    if weights_rows is not None and np.any(weights_rows < 0):
        raise ValueError("Regularization weights must be non-negative.")

    outdir = Path(output_directory)
    outdir.mkdir(parents=True, exist_ok=True)
    admm_algorithms, demosaic_algorithms = set_algorithms(description.admm_algorithms, description.demosaic_algorithms)
    models = _load_models(description)
    sensor_map = SensorMap.sony_icx655() if description.sensor_map is None else SensorMap.load(description.sensor_map)
    patch = description.patches
    weight_list = [None] if weights_rows is None else list(weights_rows)

    rgb_tables, spectral_tables = [], []
    bands_used = None
    for i, entry in enumerate(description.images):
        entry = dataset_image(entry)
        logger.info("[image %d/%d] Starting %s", i + 1, len(description.images), entry.name)
        img, sampling = load_and_convert_image(entry, description, models, sensor_map, index=i)
        name = img.name
        rgb_rows: List[Dict[str, object]] = []
        spectral_rows: List[Dict[str, object]] = []
        if description.save_images:
            save_image(outdir / f"{name}_roi_raw.tif", img.I_raw)

        if img.I_rgb_warped is not None:
            rgb_rows.append(_row(name, "Aberrated", evaluate_rgb(img.I_rgb_warped, img.I_rgb_gt)))
        if img.I_latent_warped is not None:
            spectral_rows.append(_row(name, "Aberrated", evaluate_spectral(img.I_latent_warped, img.I_latent_gt)))

        for weights in weight_list:
            for alg in admm_algorithms.values():
                if not alg.enabled:
                    continue
                if alg.spectral and sampling is None:
                    logger.info("%s: skipping %s, no spectral ground truth.", name, alg.name)
                    continue
                priors = np.asarray(alg.priors, dtype=bool)
                admm_options = replace(description.admm, norms=alg.norms, nonneg=alg.nonneg)
                reg_options = replace(
                    description.regularization,
                    enabled=tuple(bool(e and p) for e, p in zip(description.regularization.enabled, priors)),
                )
                weights_f = None if weights is None else np.where(priors, weights, 0.0)
                label = f"{alg.file}, patch {patch.patch_size[0]} x {patch.patch_size[1]}, " \
                        f"padding {patch.padding}, {_weights_label(weights_f)}"
                file_stem = f"{alg.file}_patch{patch.patch_size[0]}x{patch.patch_size[1]}_" \
                            f"pad{patch.padding}_{_weights_file(weights_f)}"

                if alg.spectral:
                    bands = sampling["bands"]
                    bands_used = bands
                    solution = solve_patches_admm(
                        img.I_raw, description.align, img.df_spectral, sampling["color_weights"], bands,
                        admm_options, reg_options, patch, weights=weights_f, reference=img.I_latent_gt,
                    )
                    label += f", {len(bands)} bands"
                    file_stem = f"{name}_bands{len(bands)}_{file_stem}"
                    spectral_rows.append(_row(name, label, evaluate_spectral(
                        solution.latent, _crop(img.I_latent_gt, solution.roi))))
                    rgb = channel_conversion(solution.latent, sampling["color_weights"])
                    if description.save_images:
                        save_spectral_image(outdir / f"{file_stem}_latent.npz", solution.latent, bands)
                else:
                    solution = solve_patches_admm(
                        img.I_raw, description.align, img.df_rgb, np.eye(3), RGB_BANDS,
                        admm_options, reg_options, patch, weights=weights_f, reference=img.I_rgb_gt,
                    )
                    label += ", RGB"
                    file_stem = f"{name}_RGB_{file_stem}"
                    rgb = solution.latent
                rgb_rows.append(_row(name, label, evaluate_rgb(
                    np.clip(rgb, 0.0, 1.0), _crop(img.I_rgb_gt, solution.roi))))
                if description.save_images:
                    save_image(outdir / f"{file_stem}_rgb.tif", rgb)

        for alg in demosaic_algorithms.values():
            if not alg.enabled:
                continue
            I_rgb_warped = alg.fn(img.I_raw, description.align)
            rgb_rows.append(_row(name, alg.name, evaluate_rgb(np.clip(I_rgb_warped, 0.0, 1.0), img.I_rgb_gt)))
            if description.save_images:
                save_image(outdir / f"{name}_{alg.file}.tif", I_rgb_warped)
            if img.df_rgb is not None:
                I_rgb = warp_image(I_rgb_warped, img.df_rgb, RGB_BANDS, negate=True)
                rgb_rows.append(_row(name, f"{alg.name}, warp-corrected",
                                     evaluate_rgb(np.clip(I_rgb, 0.0, 1.0), img.I_rgb_gt)))
                if description.save_images:
                    save_image(outdir / f"{name}_{alg.file}_channelWarp.tif", I_rgb)

        if rgb_rows:
            write_table(rgb_rows, outdir / f"{name}_evaluateRGB.csv")
            rgb_tables.append(rgb_rows)
        if spectral_rows:
            write_table(spectral_rows, outdir / f"{name}_evaluateSpectral.csv")
            spectral_tables.append(spectral_rows)
        logger.info("[image %d/%d] Finished %s", i + 1, len(description.images), name)

    summary = {"rgb": [], "spectral": []}
    if rgb_tables:
        summary["rgb"] = merge_tables(rgb_tables)
        write_table(summary["rgb"], outdir / f"{description.name}_evaluateRGB.csv")
    if spectral_tables:
        summary["spectral"] = merge_tables(spectral_tables)
        write_table(summary["spectral"], outdir / f"{description.name}_evaluateSpectral.csv")

    record = {
        "description": _jsonable(asdict(description)),
        "bands": None if bands_used is None else _jsonable(bands_used),
        "admm_algorithms": {k: _jsonable({f: v for f, v in asdict(a).items()}) for k, a in admm_algorithms.items()},
        "demosaic_algorithms": {k: {"name": a.name, "file": a.file, "enabled": a.enabled}
                                for k, a in demosaic_algorithms.items()},
        "sensor_map_bands": _jsonable(sensor_map.bands[[0, -1]]),
    }
    with (outdir / f"RunOnDataset_{description.name}.json").open("w") as f:
        json.dump(record, f, indent=2)
    return summary
