"""
sensor_model.py — Bayer colour filter array, demosaicking and RAW noise.

WHAT THIS MODULE DOES
---------------------
Models the colour-sampling part of a single-sensor camera:
  1) Bayer masks for any 2×2 pattern given as four letters ('gbrg', 'rggb', ...)
  2) Mosaicking of an RGB image into a single-channel RAW frame
  3) The Bayer pattern seen by a sub-image (patch) starting at an offset
  4) Bilinear demosaicking by normalized convolution
  5) Optional RAW noise: shot (Poisson), read (Gaussian), full-well clipping
     and ADC quantization on a normalized [0, 1] RAW image

CONVENTIONS
-----------
• Pattern letters are read row-major over the top-left 2×2 block:
  'gbrg' means row 0 = (G, B), row 1 = (R, G).
• Channel order everywhere is (R, G, B) → indices (0, 1, 2).

REFERENCES (short list)
-----------------------
• Bayer, B. E. (1976). Color imaging array. US Patent 3,971,065.
• Knutsson, H. & Westin, C.-F. (1993). Normalized and differential convolution.
• Janesick, J. R. (2007). Photon Transfer: DN → λ. SPIE Press.
  (Shot/read noise, full-well, linear ADC)
  © 2025 Ali Pouya — Aberration Pipeline
"""


from __future__ import annotations
from dataclasses import dataclass
import logging
from typing import Sequence
import numpy as np
from scipy import ndimage

logger = logging.getLogger(__name__)

CHANNEL_INDEX = {"r": 0, "g": 1, "b": 2}

# Normalized-convolution kernels: the cross suits the quincunx green lattice,
# the full 3×3 suits the rectangular red/blue lattices.
_KERNEL_GREEN = np.array([[0.0, 1.0, 0.0], [1.0, 4.0, 1.0], [0.0, 1.0, 0.0]])
_KERNEL_RB = np.array([[1.0, 2.0, 1.0], [2.0, 4.0, 2.0], [1.0, 2.0, 1.0]])


# -----------------------------------------------------------------------------
# Bayer patterns
# -----------------------------------------------------------------------------
def validate_align(align: str) -> str:
    """Lower-case `align`, checking it is a Bayer pattern with R, G, G, B."""
    a = str(align).lower()
    if len(a) != 4 or sorted(a) != ["b", "g", "g", "r"]:
        raise ValueError(f"Invalid Bayer pattern {align!r}; expected e.g. 'gbrg' or 'rggb'.")
    return a


def bayer_mask(height: int, width: int, align: str) -> np.ndarray:
    """
    Boolean (height, width, 3) mask; mask[..., c] marks pixels of channel c.
    """
    a = validate_align(align)
    mask = np.zeros((int(height), int(width), 3), dtype=bool)
    for k, letter in enumerate(a):
        r0, c0 = divmod(k, 2)
        mask[r0::2, c0::2, CHANNEL_INDEX[letter]] = True
    return mask


def offset_bayer_pattern(offset: Sequence[int], align: str) -> str:
    """
    Pattern of the sub-image whose top-left pixel is at `offset` = (row, col)
    in an image with pattern `align`.
    """
    a = validate_align(align)
    r, c = int(offset[0]) % 2, int(offset[1]) % 2
    return "".join(a[2 * ((i + r) % 2) + (j + c) % 2] for i in range(2) for j in range(2))


def mosaic(image: np.ndarray, align: str) -> np.ndarray:
    """
    Sample an (H, W, 3) RGB image through a Bayer filter.

    Returns
    -------
    raw : (H, W) array, same dtype as `image`
    """
    if image.ndim != 3 or image.shape[2] != 3:
        raise ValueError("mosaic() expects an (H, W, 3) RGB image.")
    mask = bayer_mask(image.shape[0], image.shape[1], align)
    return np.sum(np.where(mask, image, 0), axis=2).astype(image.dtype, copy=False)


def bilinear_demosaic(raw: np.ndarray, align: str, channels: Sequence[int] | None = None) -> np.ndarray:
    """
    Bilinear demosaicking by normalized convolution.

    Each channel's known samples are convolved with a small tent kernel and
    divided by the convolved sampling mask, so image borders need no special
    handling and known samples keep their value.

    Parameters
    ----------
    raw : (H, W) array
    align : str
        Bayer pattern of `raw`.
    channels : sequence of int, optional
        Channels to return (default: all three).

    Returns
    -------
    rgb : (H, W, len(channels)) float64 array
    """
    if raw.ndim != 2:
        raise ValueError("bilinear_demosaic() expects a 2-D RAW image.")
    channels = list(range(3)) if channels is None else [int(c) for c in channels]
    mask = bayer_mask(raw.shape[0], raw.shape[1], align)
    raw = raw.astype(np.float64, copy=False)

    out = np.empty(raw.shape + (len(channels),), dtype=np.float64)
    for k, c in enumerate(channels):
        if c not in (0, 1, 2):
            raise ValueError(f"Channel index {c} is not one of 0, 1, 2.")
        m = mask[..., c].astype(np.float64)
        kernel = _KERNEL_GREEN if c == 1 else _KERNEL_RB
        num = ndimage.convolve(raw * m, kernel, mode="constant", cval=0.0)
        den = ndimage.convolve(m, kernel, mode="constant", cval=0.0)
        out[..., k] = num / np.maximum(den, 1e-12)
    return out


# -----------------------------------------------------------------------------
# RAW noise
# -----------------------------------------------------------------------------
@dataclass
class NoiseParams:
    """
    Noise applied to a normalized RAW image (1.0 = full well).

    enabled : apply noise at all
    full_well_e : electrons at RAW value 1.0 (sets the shot-noise level)
    read_noise_e_rms : read noise RMS (electrons)
    bit_depth : ADC bits; 0 disables quantization
    seed : RNG seed (int or None)
    """
    enabled: bool = False
    full_well_e: float = 20000.0
    read_noise_e_rms: float = 1.5
    bit_depth: int = 12
    seed: int | None = 1234


def add_raw_noise(raw: np.ndarray, p: NoiseParams) -> np.ndarray:
    """
    Shot + read noise, full-well clipping and quantization, back in [0, 1].

    Steps
    -----
    1) RAW → mean electrons (raw * full_well_e, clamped >= 0)
    2) Shot noise: Poisson around the mean
    3) Read noise: additive Gaussian
    4) Full-well clipping
    5) ADC quantization to `bit_depth` levels over [0, 1]
    """
    if not p.enabled:
        return raw
    if p.full_well_e <= 0:
        raise ValueError("full_well_e must be positive.")
    rng = np.random.default_rng(p.seed)

    mean_e = np.clip(raw.astype(np.float64) * p.full_well_e, 0.0, None)
    electrons = rng.poisson(mean_e).astype(np.float64)
    if p.read_noise_e_rms > 0.0:
        electrons += rng.normal(0.0, p.read_noise_e_rms, size=electrons.shape)
    electrons = np.clip(electrons, 0.0, p.full_well_e)

    out = electrons / p.full_well_e
    if p.bit_depth > 0:
        levels = (1 << int(p.bit_depth)) - 1
        out = np.round(out * levels) / levels
    logger.debug("Added RAW noise (full well %.0f e-, read %.2f e-).", p.full_well_e, p.read_noise_e_rms)
    return out

