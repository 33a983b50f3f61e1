"""
config.py — YAML configuration files → parameter dataclasses

Each workflow reads one YAML file. Top-level keys map onto the fields of the
workflow's config dataclass; nested mappings fill nested parameter groups
(LensParams, AdmmOptions, ...) starting from their defaults, so a file only
needs the values it changes. Unknown keys raise ValueError.

Example (grid-search):

    scene: {pattern: checker, size: [24, 24]}
    admm: {max_iter: 200, norms: [true, true, false]}
    regularization: {n_grid: 5}
"""

from __future__ import annotations
from dataclasses import MISSING, dataclass, field, fields, is_dataclass, replace
import logging
from pathlib import Path
import typing
from typing import Any, Dict, List, Tuple
import yaml

from .calibration.disk_fitting import DiskFitOptions
from .evaluation.dataset_runner import ENTRY_KEYS, DatasetDescription
from .optics.lens_model import LensParams, SceneParams
from .reconstruction.admm_solver import AdmmOptions
from .reconstruction.patches import PatchOptions
from .reconstruction.weight_search import RegularizationOptions
from .sensor.color_map import SamplingOptions
from .sensor.sensor_model import NoiseParams

logger = logging.getLogger(__name__)


def _default_lens() -> LensParams:
    return LensParams(lens_radius=1.5, axial_thickness=2.0, radius_front=4.29, radius_back=4.29)


# -----------------------------------------------------------------------------
# Workflow configurations
# -----------------------------------------------------------------------------
@dataclass
class RaytracePsfConfig:
    """
    PSFs of point lights through a thick lens at a few wavelengths.

    wavelengths : nm; the lens index follows the Sellmeier N-BK7 curve
    reference_wavelength : nm, wavelength the image plane is focused for
    max_lights : number of lights traced (None: all lights in the field)
    """
    lens: LensParams = field(default_factory=_default_lens)
    scene: SceneParams = field(default_factory=lambda: SceneParams(n_lights=(3, 3)))
    ior_environment: float = 1.0
    wavelengths: List[float] = field(default_factory=lambda: [450.0, 550.0, 650.0])
    reference_wavelength: float = 587.6
    n_incident_rays: int = 20000
    sample_random: bool = False
    seed: int | None = 1234
    image_sampling: Tuple[int, int] = (64, 64)
    max_lights: int | None = 1


@dataclass
class DiskDispersionSimConfig:
    """
    Spectral dispersion model of a simulated thick lens, from the centres of
    its point-light PSFs.
    """
    lens: LensParams = field(default_factory=_default_lens)
    scene: SceneParams = field(default_factory=lambda: SceneParams(n_lights=(5, 5)))
    ior_environment: float = 1.0
    wavelengths: List[float] = field(default_factory=lambda: [450.0, 500.0, 550.0, 600.0, 650.0])
    reference_wavelength: float = 587.6
    n_incident_rays: int = 20000
    sample_random: bool = True
    seed: int | None = 1234
    image_sampling: Tuple[int, int] = (64, 64)
    cleanup_radius: int = 0
    disk_fit: DiskFitOptions = field(default_factory=lambda: DiskFitOptions(mask_as_threshold=True))
    max_degree_xy: int = 4
    max_degree_lambda: int = 3
    n_folds: int = 5
    from_reference: bool = True


@dataclass
class RawDiskDispersionConfig:
    """
    Colour-channel dispersion model from a RAW image of a disk chart.

    raw_image : RAW image path; None renders a synthetic chart with the
        `chart_*` settings
    mask_image : optional mask image path (thresholded at 0.5)
    """
    raw_image: str | None = None
    mask_image: str | None = None
    align: str = "gbrg"
    chart_size: Tuple[int, int] = (160, 160)
    chart_disks: Tuple[int, int] = (4, 4)
    chart_radius: float = 7.0
    chart_channel_shifts: List[List[float]] = field(default_factory=lambda: [[0.6, -0.4], [0.0, 0.0], [-0.5, 0.7]])
    bright_disks: bool = True
    noise: NoiseParams = field(default_factory=NoiseParams)
    cleanup_radius: int = 2
    max_degree_xy: int = 2
    n_folds: int = 5
    reference_channel: int = 1
    from_reference: bool = True


@dataclass
class SensorMapConfig:
    """Sony ICX655 colour map sampled at `bands` (start, stop, count)."""
    bands: Tuple[float, float, int] = (400.0, 700.0, 31)
    sampling: SamplingOptions = field(default_factory=SamplingOptions)
    bands_gt: Tuple[float, float, int] | None = None


@dataclass
class GridSearchConfig:
    """
    Regularization weight search on one simulated patch.

    scene : keyword arguments for `generate_scene('spectral', ...)`
    dispersion : spectral `.npz` model path, or None
    grid_samples : samples per active weight for the L-hypersurface plot
    patches.target_patch : (row, col) of the patch searched; None uses (0, 0)
    """
    scene: Dict[str, Any] = field(default_factory=lambda: {"size": [24, 24], "pattern": "siemens_star"})
    bands: Tuple[float, float, int] = (420.0, 680.0, 5)
    align: str = "gbrg"
    dispersion: str | None = None
    noise: NoiseParams = field(default_factory=NoiseParams)
    sampling: SamplingOptions = field(default_factory=lambda: SamplingOptions(n_bands=5))
    admm: AdmmOptions = field(default_factory=lambda: AdmmOptions(max_iter=100))
    regularization: RegularizationOptions = field(default_factory=RegularizationOptions)
    patches: PatchOptions = field(default_factory=lambda: PatchOptions(patch_size=(24, 24), padding=0))
    grid_samples: int = 4


@dataclass
class SyntheticDatasetConfig:
    """
    Synthetic ground truth for `run-dataset`: one spectral `.npz` per pattern
    and, with `rgb`, a PNG colour rendering of it through the ICX655 curves.
    """
    size: Tuple[int, int] = (48, 48)
    bands: Tuple[float, float, int] = (420.0, 680.0, 14)
    patterns: List[str] = field(default_factory=lambda: ["siemens_star", "checker"])
    rgb: bool = True


@dataclass
class RunDatasetConfig:
    dataset: DatasetDescription = field(default_factory=DatasetDescription)


WORKFLOW_CONFIGS = {
    "raytrace-psf": RaytracePsfConfig,
    "disk-dispersion-sim": DiskDispersionSimConfig,
    "raw-disk-dispersion": RawDiskDispersionConfig,
    "sensor-map": SensorMapConfig,
    "grid-search": GridSearchConfig,
    "synthetic-dataset": SyntheticDatasetConfig,
    "run-dataset": RunDatasetConfig,
}


# -----------------------------------------------------------------------------
# Loading
# -----------------------------------------------------------------------------
def _nested_dataclass(hint) -> type | None:
    if is_dataclass(hint):
        return hint
    for arg in typing.get_args(hint):
        if is_dataclass(arg):
            return arg
    return None


def _field_default(f):
    if f.default is not MISSING:
        return f.default
    if f.default_factory is not MISSING:
        return f.default_factory()
    return None


def from_dict(cls, data: Dict[str, Any] | None, base=None, context: str = ""):
    """
    Build a `cls` instance from a mapping, recursing into nested dataclasses.

    Values not given come from `base` (or the field defaults). Lists are
    converted to tuples where the default is a tuple.
    """
    data = {} if data is None else data
    if not isinstance(data, dict):
        raise ValueError(f"Section '{context or cls.__name__}' must be a mapping, not {type(data).__name__}.")
    hints = typing.get_type_hints(cls)
    by_name = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(by_name))
    if unknown:
        raise ValueError(f"Unknown key(s) {unknown} in '{context or cls.__name__}'.")

    kwargs = {}
    for key, value in data.items():
        default = getattr(base, key) if base is not None else _field_default(by_name[key])
        sub = _nested_dataclass(hints[key])
        where = f"{context}.{key}" if context else key
        if sub is not None and value is not None:
            kwargs[key] = from_dict(sub, value, base=default if is_dataclass(default) else None, context=where)
        elif isinstance(value, list) and isinstance(default, tuple):
            kwargs[key] = tuple(value)
        else:
            kwargs[key] = value

    try:
        if base is not None:
            return replace(base, **kwargs)
        return cls(**kwargs)
    except TypeError as e:
        raise ValueError(f"Invalid '{context or cls.__name__}' section: {e}") from e


def load_yaml(path: str | Path) -> Dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open() as f:
        data = yaml.safe_load(f)
    return {} if data is None else data


def load_config(path: str | Path | None, workflow: str):
    """
    Config dataclass of `workflow` from a YAML file (None: all defaults).

    Relative input paths in the file are taken relative to the file's
    directory.
    """
    if workflow not in WORKFLOW_CONFIGS:
        raise ValueError(f"Unknown workflow {workflow!r}; choose from {sorted(WORKFLOW_CONFIGS)}.")
    cls = WORKFLOW_CONFIGS[workflow]
    if path is None:
        return cls()
    data = load_yaml(path)
    config = from_dict(cls, data)
    _resolve_paths(config, Path(path).resolve().parent)
    logger.debug("Loaded %s config from %s: %s", workflow, path, config)
    return config


_PATH_FIELDS = (
    "raw_image", "mask_image", "dispersion", "sensor_map", "dispersion_spectral", "dispersion_rgb", "illuminant",
)


def _resolve(value: str | None, root: Path) -> str | None:
    if value is None:
        return None
    p = Path(value).expanduser()
    return str(p if p.is_absolute() else root / p)


def _resolve_entry(entry, root: Path):
    if isinstance(entry, dict):
        return {k: _resolve(v, root) if k in ENTRY_KEYS[1:] else v for k, v in entry.items()}
    return _resolve(entry, root)


def _resolve_paths(config, root: Path) -> None:
    for name in _PATH_FIELDS:
        if hasattr(config, name):
            setattr(config, name, _resolve(getattr(config, name), root))
    if isinstance(config, RunDatasetConfig):
        d = config.dataset
        for name in _PATH_FIELDS:
            if hasattr(d, name):
                setattr(d, name, _resolve(getattr(d, name), root))
        d.images = [_resolve_entry(e, root) for e in d.images]
