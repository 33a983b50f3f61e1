"""
scene_generator.py — synthetic calibration and test scenes (float64 [0..1])

WHAT THIS MODULE PROVIDES
-------------------------
Lightweight generators for the targets used in aberration experiments:
  • Disk chart          — grid of bright (or dark) disks for dispersion
                          calibration; each colour channel can be shifted
                          to emulate lateral chromatic aberration
  • Spectral scene      — (H, W, bands) image mixing two reflectance-like
                          spectra through a spatial pattern
  • Spatial patterns    — Siemens star, checkerboard, slanted edge and
                          gradient, used as mixing maps for spectral scenes

RETURNS
-------
Generators return float64 arrays in [0, 1]. The disk chart also returns the
true disk centres in image coordinates: x = column + 0.5, y = row + 0.5
(pixel centres), i.e. y grows downwards.

REFERENCES (short list)
-----------------------
• Mannan, F. & Langer, M. S. (2016). Blur calibration for depth from defocus.
  (Disk targets for sub-pixel centre estimation.)
• ISO 12233:2017 — slanted-edge and Siemens-star test primitives.

© 2025 Ali Pouya — Aberration Pipeline
"""

from __future__ import annotations
from typing import Sequence, Tuple
import numpy as np

from ..sensor.sensor_model import mosaic


# -----------------------------------------------------------------------------
# Utilities
# -----------------------------------------------------------------------------
def _normalize(img: np.ndarray) -> np.ndarray:
    """Convert to float64 and clamp to [0, 1]."""
    return np.clip(img.astype(np.float64, copy=False), 0.0, 1.0)


def _soft_disk(h: int, w: int, cx: float, cy: float, radius: float) -> np.ndarray:
    # Coverage approximated by a one-pixel linear ramp across the boundary
    y, x = np.indices((h, w), dtype=np.float64)
    d = np.hypot(x + 0.5 - cx, y + 0.5 - cy)
    return np.clip(radius + 0.5 - d, 0.0, 1.0)


# -----------------------------------------------------------------------------
# Spatial patterns
# -----------------------------------------------------------------------------
def generate_siemens_star(size: Tuple[int, int], spokes: int = 24) -> np.ndarray:
    """Alternating wedges radiating from the image centre."""
    h, w = (int(s) for s in size)
    y, x = np.indices((h, w))
    theta = np.arctan2(y - (h - 1) / 2.0, x - (w - 1) / 2.0)
    return _normalize(0.5 * (1.0 + np.sign(np.cos(float(spokes) * theta))))


def generate_checker(size: Tuple[int, int], square_px: int = 16, invert: bool = False) -> np.ndarray:
    """Checkerboard with `square_px` tiles."""
    h, w = (int(s) for s in size)
    y, x = np.indices((h, w))
    s = max(int(square_px), 1)
    tiles = ((x // s) + (y // s)) % 2
    return _normalize(1.0 - tiles if invert else tiles)


def generate_slanted_edge(size: Tuple[int, int], angle_deg: float = 5.0) -> np.ndarray:
    """Half-plane edge through the centre, tilted `angle_deg` from vertical."""
    h, w = (int(s) for s in size)
    y, x = np.indices((h, w))
    a = np.deg2rad(angle_deg)
    ramp = (x - w / 2.0) * np.cos(a) + (y - h / 2.0) * np.sin(a)
    return _normalize((ramp > 0).astype(np.float64))


def generate_gradient(size: Tuple[int, int], horizontal: bool = True) -> np.ndarray:
    """Unit ramp along x (or y)."""
    h, w = (int(s) for s in size)
    if horizontal:
        return np.tile(np.linspace(0.0, 1.0, w), (h, 1))
    return np.tile(np.linspace(0.0, 1.0, h)[:, None], (1, w))


# -----------------------------------------------------------------------------
# Disk chart
# -----------------------------------------------------------------------------
def generate_disk_chart(
    size: Tuple[int, int] = (128, 128),
    n_disks: Tuple[int, int] = (3, 3),
    radius: float = 6.0,
    bright: bool = True,
    channel_shifts: Sequence[Sequence[float]] | None = None,
    align: str | None = None,
    background: float = 0.1,
    foreground: float = 0.9,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Grid of disks for dispersion calibration.

    Parameters
    ----------
    size : (rows, cols)
    n_disks : (rows, cols) of the disk grid
    radius : disk radius in pixels
    bright : bright disks on a dark background (True) or the reverse
    channel_shifts : (3, 2) per-channel (dx, dy) displacement in pixels,
        default no shift
    align : Bayer pattern; when given the chart is mosaicked to a RAW image
    background, foreground : intensities

    Returns
    -------
    image : (rows, cols, 3) or (rows, cols) RAW if `align` is given
    centers : (n, 3, 2) true disk centres per channel, (x, y) image coordinates
    """
    h, w = (int(s) for s in size)
    ny, nx = (int(n) for n in n_disks)
    if ny < 1 or nx < 1:
        raise ValueError("n_disks must be positive.")
    if radius <= 0:
        raise ValueError("Disk radius must be positive.")
    shifts = np.zeros((3, 2)) if channel_shifts is None else np.asarray(channel_shifts, dtype=np.float64)
    if shifts.shape != (3, 2):
        raise ValueError("channel_shifts must have shape (3, 2).")

    step_x, step_y = w / nx, h / ny
    if 2 * (radius + np.abs(shifts).max() + 1) > min(step_x, step_y):
        raise ValueError("Disks would overlap or touch: reduce the radius or the number of disks.")
    gx = (np.arange(nx) + 0.5) * step_x
    gy = (np.arange(ny) + 0.5) * step_y
    xx, yy = np.meshgrid(gx, gy, indexing="xy")
    base = np.stack([xx.ravel(), yy.ravel()], axis=1)

    centers = base[:, None, :] + shifts[None, :, :]
    image = np.empty((h, w, 3))
    for c in range(3):
        coverage = np.zeros((h, w))
        for cx, cy in centers[:, c, :]:
            coverage = np.maximum(coverage, _soft_disk(h, w, cx, cy, radius))
        if bright:
            image[..., c] = background + (foreground - background) * coverage
        else:
            image[..., c] = foreground - (foreground - background) * coverage

    image = _normalize(image)
    if align is not None:
        image = mosaic(image, align)
    return image, centers


# -----------------------------------------------------------------------------
# Spectral scene
# -----------------------------------------------------------------------------
def _spectrum(bands: np.ndarray, centre: float, width: float, floor: float) -> np.ndarray:
    return floor + (1.0 - floor) * np.exp(-0.5 * ((bands - centre) / width) ** 2)


def generate_spectral_scene(
    size: Tuple[int, int],
    bands: Sequence[float],
    pattern: str = "siemens_star",
    spectra: Tuple[Tuple[float, float], Tuple[float, float]] = ((470.0, 60.0), (620.0, 70.0)),
    **kwargs,
) -> np.ndarray:
    """
    Two spectra mixed pixel-wise by a spatial pattern.

    Parameters
    ----------
    size : (rows, cols)
    bands : wavelengths (nm)
    pattern : name accepted by `spatial_pattern`
    spectra : two (centre nm, width nm) Gaussian spectra
    **kwargs : forwarded to the pattern generator

    Returns
    -------
    scene : (rows, cols, len(bands)) float64 in [0, 1]
    """
    bands = np.asarray(bands, dtype=np.float64).ravel()
    if bands.size == 0:
        raise ValueError("At least one band is required.")
    alpha = spatial_pattern(pattern, size, **kwargs)
    s0 = _spectrum(bands, *spectra[0], floor=0.05)
    s1 = _spectrum(bands, *spectra[1], floor=0.05)
    scene = (1.0 - alpha)[..., None] * s0 + alpha[..., None] * s1
    # Slow illumination falloff so flat regions are not perfectly constant
    falloff = 0.8 + 0.2 * generate_gradient(size, horizontal=False)
    return _normalize(scene * falloff[..., None])


# -----------------------------------------------------------------------------
# Dispatchers (public API)
# -----------------------------------------------------------------------------
def spatial_pattern(kind: str, size: Tuple[int, int], **kwargs) -> np.ndarray:
    """
    Single-channel pattern by name: 'siemens_star' | 'checker' |
    'slanted_edge' | 'gradient' (aliases 'siemens', 'checkerboard', 'edge').
    """
    k = (kind or "").lower().strip()
    if k in ("siemens_star", "siemens"):
        return generate_siemens_star(size, spokes=int(kwargs.get("spokes", 24)))
    if k in ("checker", "checkerboard"):
        return generate_checker(size, square_px=int(kwargs.get("square_px", 16)),
                                invert=bool(kwargs.get("invert", False)))
    if k in ("slanted_edge", "edge"):
        return generate_slanted_edge(size, angle_deg=float(kwargs.get("angle_deg", 5.0)))
    if k == "gradient":
        return generate_gradient(size, horizontal=bool(kwargs.get("horizontal", True)))
    raise ValueError(f"Unknown pattern {kind!r}.")


def generate_scene(kind: str, size: Tuple[int, int], **kwargs):
    """
    Dispatch scene generation by name.

    'disk_chart' (alias 'disks') → (image, centers) from `generate_disk_chart`;
    'spectral' → `generate_spectral_scene` (requires `bands`);
    any `spatial_pattern` name → a single-channel pattern.
    """
    k = (kind or "").lower().strip()
    if k in ("disk_chart", "disks"):
        return generate_disk_chart(size=size, **kwargs)
    if k == "spectral":
        if "bands" not in kwargs:
            raise ValueError("A spectral scene needs `bands`.")
        return generate_spectral_scene(size, **kwargs)
    return spatial_pattern(k, size, **kwargs)
