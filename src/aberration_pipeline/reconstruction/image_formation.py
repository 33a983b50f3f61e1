"""
image_formation.py — latent image → aberrated colour image → RAW frame.

WHAT THIS MODULE DOES
---------------------
Vectors are C-order ravels of (H, W, bands) arrays, so element
(r, c, b) sits at index (r * W + c) * bands + b.

  A = M Ω Φ
    Φ : dispersion warp of every latent band (sparse bilinear matrix)
    Ω : per-pixel conversion of latent bands to colour channels
        (kron(I, color_weights))
    M : Bayer selection of one colour channel per pixel

`forward_operator` builds M Ω directly (it is as sparse as Ω restricted to
one row per pixel) and multiplies by Φ when given. `image_formation` runs the
same model densely on a full image.
"""

from __future__ import annotations
from typing import Sequence, Tuple
import numpy as np
from scipy import sparse

from ..calibration.dispersion_model import DispersionFunction, warp_image
from ..sensor.color_map import channel_conversion
from ..sensor.sensor_model import bayer_mask, mosaic


def image_to_vector(image: np.ndarray) -> np.ndarray:
    return np.ascontiguousarray(image, dtype=np.float64).ravel()


def vector_to_image(vector: np.ndarray, image_shape: Sequence[int]) -> np.ndarray:
    return np.reshape(vector, tuple(int(s) for s in image_shape))


def mosaic_operator(image_shape: Sequence[int], align: str, color_weights: np.ndarray) -> sparse.csr_matrix:
    """M Ω: (H*W, H*W*n_bands), one colour-channel response per pixel."""
    h, w = int(image_shape[0]), int(image_shape[1])
    color_weights = np.atleast_2d(np.asarray(color_weights, dtype=np.float64))
    if color_weights.shape[0] != 3:
        raise ValueError("color_weights must have one row per colour channel (3).")
    nb = color_weights.shape[1]
    channel = np.argmax(bayer_mask(h, w, align), axis=2).ravel()
    n_px = h * w
    rows = np.repeat(np.arange(n_px), nb)
    cols = (np.arange(n_px)[:, None] * nb + np.arange(nb)[None, :]).ravel()
    data = color_weights[channel, :].ravel()
    return sparse.csr_matrix((data, (rows, cols)), shape=(n_px, n_px * nb))


def forward_operator(
    image_shape: Sequence[int],
    align: str,
    dispersion_matrix: sparse.spmatrix | None,
    color_weights: np.ndarray,
) -> sparse.csr_matrix:
    """
    Sparse image-formation matrix A = M Ω Φ.

    Parameters
    ----------
    image_shape : (H, W)
    align : Bayer pattern
    dispersion_matrix : (H*W*n_bands)² warp, or None for no aberration
    color_weights : (3, n_bands)

    Returns
    -------
    (H*W, H*W*n_bands) csr_matrix
    """
    MO = mosaic_operator(image_shape, align, color_weights)
    if dispersion_matrix is None:
        return MO
    if dispersion_matrix.shape != (MO.shape[1], MO.shape[1]):
        raise ValueError(
            f"Dispersion matrix shape {dispersion_matrix.shape} does not match "
            f"{MO.shape[1]} latent values."
        )
    return (MO @ dispersion_matrix).tocsr()


def image_formation(
    latent: np.ndarray,
    color_weights: np.ndarray,
    dispersionfun: DispersionFunction | None,
    bands: Sequence[float],
    align: str,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Simulate capture of a latent (H, W, n_bands) image.

    Returns
    -------
    I_rgb : colour image without aberration
    I_rgb_warped : colour image with aberration
    I_raw : RAW frame of `I_rgb_warped`
    I_latent_warped : latent image with aberration
    """
    if latent.ndim != 3 or latent.shape[2] != len(bands):
        raise ValueError("The latent image must have shape (H, W, len(bands)).")
    latent = latent.astype(np.float64, copy=False)
    I_latent_warped = latent if dispersionfun is None else warp_image(latent, dispersionfun, bands)
    I_rgb = channel_conversion(latent, color_weights)
    I_rgb_warped = channel_conversion(I_latent_warped, color_weights)
    I_raw = mosaic(I_rgb_warped, align)
    return I_rgb, I_rgb_warped, I_raw, I_latent_warped
