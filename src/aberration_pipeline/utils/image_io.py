"""
image_io.py — reading and writing images and arrays.

TIFF goes through tifffile, PNG and other formats through imageio; both are
scaled to float64 in [0, 1] by their integer type. `.npy` / `.npz` arrays are
loaded as they are. Spectral images are stored as `.npz` with an `image`
(H, W, bands) and a `bands` array.
"""

from __future__ import annotations
import logging
from pathlib import Path
from typing import Tuple
import imageio.v2 as imageio
import numpy as np
import tifffile

logger = logging.getLogger(__name__)

ARRAY_SUFFIXES = (".npy", ".npz")


def im2double(image: np.ndarray) -> np.ndarray:
    """Integer images → [0, 1] by their type's maximum; floats unchanged."""
    if np.issubdtype(image.dtype, np.integer):
        return image.astype(np.float64) / np.iinfo(image.dtype).max
    if image.dtype == bool:
        return image.astype(np.float64)
    return image.astype(np.float64, copy=False)


def _existing(path: str | Path) -> Path:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    return path


def load_image(path: str | Path) -> np.ndarray:
    """Image or array file as float64."""
    path = _existing(path)
    suffix = path.suffix.lower()
    if suffix == ".npy":
        return np.load(path).astype(np.float64)
    if suffix == ".npz":
        with np.load(path) as data:
            return data["image"].astype(np.float64)
    if suffix in (".tif", ".tiff"):
        return im2double(tifffile.imread(path))
    return im2double(np.asarray(imageio.imread(path)))


def load_spectral_image(path: str | Path) -> Tuple[np.ndarray, np.ndarray]:
    """(image (H, W, bands), bands) from an `.npz` spectral image."""
    path = _existing(path)
    if path.suffix.lower() != ".npz":
        raise ValueError(f"Spectral images are stored as .npz, not {path.suffix!r}.")
    with np.load(path) as data:
        if "bands" not in data:
            raise ValueError(f"{path} has no 'bands' array.")
        image = data["image"].astype(np.float64)
        bands = data["bands"].astype(np.float64)
    if image.ndim != 3 or image.shape[2] != bands.size:
        raise ValueError(f"{path}: image shape {image.shape} does not match {bands.size} bands.")
    return image, bands


def save_spectral_image(path: str | Path, image: np.ndarray, bands: np.ndarray) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(path, image=image, bands=np.asarray(bands, dtype=np.float64))
    return path


def load_mask(path: str | Path, threshold: float = 0.5) -> np.ndarray:
    """Binary mask: pixels (of the first channel) above `threshold` in [0, 1]."""
    mask = load_image(path)
    if mask.ndim == 3:
        mask = mask[..., 0]
    return mask > threshold


def save_image(path: str | Path, image: np.ndarray) -> Path:
    """
    Save a [0, 1] image: `.npy` as is, `.tif` / `.tiff` as 16-bit, anything
    else (PNG, ...) as 8-bit.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    suffix = path.suffix.lower()
    if suffix == ".npy":
        np.save(path, image)
        return path
    clipped = np.clip(np.nan_to_num(image), 0.0, 1.0)
    if suffix in (".tif", ".tiff"):
        data = np.round(clipped * 65535).astype(np.uint16)
        tifffile.imwrite(path, data, photometric="rgb" if data.ndim == 3 and data.shape[2] == 3 else "minisblack")
    else:
        imageio.imwrite(path, np.round(clipped * 255).astype(np.uint8))
    logger.debug("Saved %s", path)
    return path
