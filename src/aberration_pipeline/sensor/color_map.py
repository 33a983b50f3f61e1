"""
color_map.py — spectral response of the sensor and latent-band sampling.

WHAT THIS MODULE DOES
---------------------
  • Approximate RGB quantum-efficiency curves of the Sony ICX655 sensor.
  • `SensorMap`: a (channels × bands) response matrix with its wavelengths,
    stored as `.npz`.
  • `sampling_weights`: chooses the latent spectral bands to reconstruct and
    returns the matrices that map
        latent bands   → sensor channels  (color_weights)
        ground truth   → latent bands     (spectral_weights)
        ground truth   → sensor channels  (color_weights_reference)
  • `channel_conversion`: apply such a matrix along one axis of an image.
  • `illuminant_weights`: a black body or a tabulated illuminant at given
    bands, for turning spectral reflectances into radiances.

NOTES
-----
The manufacturer publishes the ICX655 curves only as a plot, so the curves
here are a smooth sum-of-Gaussians fit (visible peak plus a near-infrared
shoulder per channel). Calibrate the actual camera for quantitative work.

REFERENCES (short list)
-----------------------
• FLIR Flea3 GigE (FL3-GE-50S5C) Imaging Performance Specification,
  quantum efficiency of the Sony ICX655.
• Baek, S.-H. et al. (2017). Compact single-shot hyperspectral imaging using
  a prism. ACM TOG 36(6).
"""

from __future__ import annotations
from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Tuple
import numpy as np

logger = logging.getLogger(__name__)

INT_METHODS = ("trap", "rect", "none")

# (amplitude, centre nm, sigma nm) per Gaussian, per channel R, G, B
_ICX655_TERMS = (
    ((0.40, 605.0, 42.0), (0.13, 790.0, 95.0)),
    ((0.46, 530.0, 38.0), (0.11, 805.0, 95.0)),
    ((0.42, 462.0, 33.0), (0.09, 815.0, 95.0)),
)
_SILICON_RANGE_NM = (350.0, 1100.0)


# -----------------------------------------------------------------------------
# Quantum efficiency
# -----------------------------------------------------------------------------
def sony_quantum_efficiency(wavelengths_nm) -> np.ndarray:
    """
    Approximate Sony ICX655 quantum efficiency (fraction, not percent).

    Returns
    -------
    qe : (n, 3) ndarray, columns R, G, B
    """
    lam = np.atleast_1d(np.asarray(wavelengths_nm, dtype=np.float64))
    qe = np.zeros((lam.size, 3))
    for c, terms in enumerate(_ICX655_TERMS):
        for amp, mu, sigma in terms:
            qe[:, c] += amp * np.exp(-0.5 * ((lam - mu) / sigma) ** 2)
    lo, hi = _SILICON_RANGE_NM
    qe[(lam < lo) | (lam > hi), :] = 0.0
    return qe


@dataclass
class SensorMap:
    """
    sensor_map : (n_channels, n_bands) response of each channel to each band
    bands : (n_bands,) wavelengths in nm
    channel_mode : True when rows are colour channels rather than spectral bands
    """
    sensor_map: np.ndarray
    bands: np.ndarray
    channel_mode: bool = False

    def __post_init__(self):
        self.sensor_map = np.atleast_2d(np.asarray(self.sensor_map, dtype=np.float64))
        self.bands = np.asarray(self.bands, dtype=np.float64).ravel()
        if self.sensor_map.shape[1] != self.bands.size:
            raise ValueError(
                f"sensor_map has {self.sensor_map.shape[1]} columns but there are {self.bands.size} bands."
            )

    @classmethod
    def sony_icx655(cls, bands=None) -> "SensorMap":
        bands = np.linspace(200.0, 1200.0, 1000) if bands is None else np.asarray(bands, dtype=np.float64)
        return cls(sony_quantum_efficiency(bands).T, bands, channel_mode=False)

    def save(self, path: str | Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        np.savez(path, sensor_map=self.sensor_map, bands=self.bands, channel_mode=self.channel_mode)
        return path

    @classmethod
    def load(cls, path: str | Path) -> "SensorMap":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Sensor map file not found: {path}")
        with np.load(path) as data:
            return cls(data["sensor_map"], data["bands"], bool(data["channel_mode"]))


# -----------------------------------------------------------------------------
# Sampling weights
# -----------------------------------------------------------------------------
@dataclass
class SamplingOptions:
    """
    int_method : 'trap' (trapezoidal), 'rect' (rectangular) or 'none'
    n_bands : number of latent bands; None keeps the sensor bands in support
    support_threshold : fraction of the peak response defining the support
    normalize : scale the colour weights so that a flat unit spectrum gives
        at most 1 in every channel (keeps RAW values in [0, 1])
    """
    int_method: str = "trap"
    n_bands: int | None = None
    support_threshold: float = 0.05
    normalize: bool = True


def integration_weights(bands: np.ndarray, int_method: str) -> np.ndarray:
    """Quadrature weights over (sorted) `bands` for the given rule."""
    bands = np.asarray(bands, dtype=np.float64).ravel()
    if int_method not in INT_METHODS:
        raise ValueError(f"int_method must be one of {INT_METHODS}, not {int_method!r}.")
    n = bands.size
    if int_method == "none" or n == 1:
        return np.ones(n)
    if int_method == "rect":
        return np.full(n, (bands[-1] - bands[0]) / (n - 1))
    d = np.diff(bands)
    w = np.zeros(n)
    w[:-1] += d / 2
    w[1:] += d / 2
    return w


def interpolation_matrix(bands_from: np.ndarray, bands_to: np.ndarray) -> np.ndarray:
    """
    (len(bands_to), len(bands_from)) matrix of linear interpolation weights;
    values outside the range of `bands_from` are zero.
    """
    bands_from = np.asarray(bands_from, dtype=np.float64).ravel()
    bands_to = np.asarray(bands_to, dtype=np.float64).ravel()
    W = np.zeros((bands_to.size, bands_from.size))
    for j in range(bands_from.size):
        e = np.zeros(bands_from.size)
        e[j] = 1.0
        W[:, j] = np.interp(bands_to, bands_from, e, left=0.0, right=0.0)
    return W


def sampling_weights(
    sensor_map: SensorMap,
    bands_color: np.ndarray | None,
    bands_gt: np.ndarray | None,
    options: SamplingOptions,
) -> Tuple[np.ndarray, np.ndarray | None, np.ndarray, np.ndarray | None]:
    """
    Choose latent bands and build the conversion matrices between them, the
    sensor channels and the ground-truth bands.

    Parameters
    ----------
    sensor_map : SensorMap
    bands_color : (n,) ndarray or None
        Wavelengths of the sensor map columns (defaults to `sensor_map.bands`).
    bands_gt : (m,) ndarray or None
        Wavelengths of the ground-truth spectral images, if any.
    options : SamplingOptions

    Returns
    -------
    color_weights : (n_channels, n_bands) ndarray
    spectral_weights : (n_bands, m) ndarray or None
    bands : (n_bands,) ndarray
    color_weights_reference : (n_channels, m) ndarray or None
    """
    bands_color = sensor_map.bands if bands_color is None else np.asarray(bands_color, dtype=np.float64)
    if bands_color.size != sensor_map.sensor_map.shape[1]:
        raise ValueError("bands_color does not match the number of sensor map columns.")

    response = sensor_map.sensor_map.max(axis=0)
    if not np.any(response > 0):
        raise ValueError("The sensor map has no positive response.")
    support = response >= options.support_threshold * response.max()
    lo, hi = bands_color[support].min(), bands_color[support].max()
    if bands_gt is not None:
        bands_gt = np.asarray(bands_gt, dtype=np.float64).ravel()
        lo, hi = max(lo, bands_gt.min()), min(hi, bands_gt.max())
        if lo > hi:
            raise ValueError("The ground-truth bands do not overlap the sensor support.")

    if options.n_bands is None:
        bands = bands_color[(bands_color >= lo) & (bands_color <= hi)]
    else:
        if int(options.n_bands) < 1:
            raise ValueError("n_bands must be positive.")
        bands = np.linspace(lo, hi, int(options.n_bands))

    color_weights = interpolation_matrix(bands_color, bands) @ sensor_map.sensor_map.T
    color_weights = (color_weights * integration_weights(bands, options.int_method)[:, None]).T

    spectral_weights = None
    color_weights_reference = None
    if bands_gt is not None:
        spectral_weights = interpolation_matrix(bands_gt, bands)
        ref = interpolation_matrix(bands_color, bands_gt) @ sensor_map.sensor_map.T
        color_weights_reference = (ref * integration_weights(bands_gt, options.int_method)[:, None]).T

    if options.normalize:
        color_weights = color_weights / color_weights.sum(axis=1).max()
        if color_weights_reference is not None:
            color_weights_reference = color_weights_reference / color_weights_reference.sum(axis=1).max()

    logger.info("Sampling %d latent bands in [%.1f, %.1f] nm (%s).", bands.size, bands[0], bands[-1], options.int_method)
    return color_weights, spectral_weights, bands, color_weights_reference


def channel_conversion(image: np.ndarray, weights: np.ndarray, axis: int = -1) -> np.ndarray:
    """
    Convert the channels of `image` along `axis` with an (n_out, n_in) matrix.
    """
    weights = np.atleast_2d(weights)
    if image.shape[axis] != weights.shape[1]:
        raise ValueError(
            f"Image has {image.shape[axis]} channels along axis {axis}, weights expect {weights.shape[1]}."
        )
    moved = np.moveaxis(image, axis, -1)
    out = moved @ weights.T
    return np.moveaxis(out, -1, axis)


# -----------------------------------------------------------------------------
# Illuminants
# -----------------------------------------------------------------------------
_PLANCK_H = 6.62607015e-34     # J s
_LIGHT_C = 2.99792458e8        # m / s
_BOLTZMANN_K = 1.380649e-23    # J / K


def blackbody_spectrum(wavelengths_nm, temperature: float) -> np.ndarray:
    """
    Planck spectral radiance at `temperature` (K), scaled to a maximum of 1
    over `wavelengths_nm`.
    """
    if temperature <= 0:
        raise ValueError("The colour temperature must be positive.")
    lam = np.atleast_1d(np.asarray(wavelengths_nm, dtype=np.float64))
    if np.any(lam <= 0):
        raise ValueError("Wavelengths must be positive.")
    lam = lam * 1e-9
    spd = 1.0 / (lam**5 * np.expm1(_PLANCK_H * _LIGHT_C / (lam * _BOLTZMANN_K * temperature)))
    return spd / spd.max()


def illuminant_weights(
    bands: np.ndarray,
    temperature: float = 6504.0,
    path: str | Path | None = None,
) -> np.ndarray:
    """
    Relative illuminant power at `bands`, scaled to a maximum of 1.

    Parameters
    ----------
    bands : (n,) wavelengths in nm
    temperature : black-body colour temperature (K), used when `path` is None
    path : `.npz` with `bands` (nm) and `spd` arrays; linearly interpolated,
        and it must cover `bands`

    Returns
    -------
    (n,) ndarray
    """
    bands = np.asarray(bands, dtype=np.float64).ravel()
    if path is None:
        return blackbody_spectrum(bands, temperature)

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Illuminant file not found: {path}")
    with np.load(path) as data:
        spd_bands = np.asarray(data["bands"], dtype=np.float64).ravel()
        spd = np.asarray(data["spd"], dtype=np.float64).ravel()
    if spd_bands.size != spd.size or spd.size < 2:
        raise ValueError(f"{path}: 'bands' and 'spd' need the same length (at least 2).")
    order = np.argsort(spd_bands)
    spd_bands, spd = spd_bands[order], spd[order]
    if bands.min() < spd_bands[0] or bands.max() > spd_bands[-1]:
        raise ValueError(
            f"{path} covers [{spd_bands[0]:g}, {spd_bands[-1]:g}] nm, "
            f"not the image bands [{bands.min():g}, {bands.max():g}] nm."
        )
    weights = np.interp(bands, spd_bands, spd)
    if weights.max() <= 0:
        raise ValueError(f"{path}: the illuminant has no power over the image bands.")
    return weights / weights.max()
