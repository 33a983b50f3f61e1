"""
patches.py — solve a whole image as independent, padded patches.

Each patch is reconstructed from the RAW data of its padded region, with the
Bayer pattern and dispersion warp offset to the patch position; the padding
is then trimmed off and the interior written into the output image.
"""

from __future__ import annotations
from dataclasses import dataclass, field
import logging
from typing import List, Sequence, Tuple
import numpy as np

from ..calibration.dispersion_model import DispersionFunction, dispersion_to_matrix
from ..sensor.color_map import channel_conversion
from ..sensor.sensor_model import bilinear_demosaic, offset_bayer_pattern
from .admm_solver import N_PRIORS, AdmmOptions, AdmmProblem
from .image_formation import forward_operator
from .weight_search import RegularizationOptions, WeightsSearch, select_weights

logger = logging.getLogger(__name__)


@dataclass
class PatchOptions:
    """
    patch_size : (rows, cols) of the patch interiors
    padding : pixels of context added on each side
    target_patch : (row, col) top-left corner of the only patch to solve, or None
    """
    patch_size: Tuple[int, int] = (100, 100)
    padding: int = 10
    target_patch: Tuple[int, int] | None = None


@dataclass
class PatchBoundaries:
    """
    Half-open limits (row_start, row_end, col_start, col_end) of a patch
    interior and of its padded region, plus the interior's position inside
    the padded region (`trim`, same layout).
    """
    interior: Tuple[int, int, int, int]
    padded: Tuple[int, int, int, int]
    trim: Tuple[int, int, int, int]


@dataclass
class PatchSolution:
    """
    latent : (h, w, n_bands) reconstruction of `roi`
    rgb : (h, w, 3) colour conversion of `latent`
    weights_image : (h, w, 3) regularization weights used at each pixel
    weights_search : weight searches, one per patch (empty with fixed weights)
    roi : (row_start, row_end, col_start, col_end) region of the input covered
    """
    latent: np.ndarray
    rgb: np.ndarray
    weights_image: np.ndarray
    weights_search: List[WeightsSearch] = field(default_factory=list)
    roi: Tuple[int, int, int, int] = (0, 0, 0, 0)


def patch_boundaries(
    image_shape: Sequence[int],
    patch_size: Sequence[int],
    padding: int,
    corner: Sequence[int],
) -> PatchBoundaries:
    """Limits of the patch whose interior's top-left pixel is `corner`."""
    h, w = int(image_shape[0]), int(image_shape[1])
    ph, pw = int(patch_size[0]), int(patch_size[1])
    r, c = int(corner[0]), int(corner[1])
    if ph < 1 or pw < 1 or padding < 0:
        raise ValueError("Patch size must be positive and padding non-negative.")
    if not (0 <= r < h and 0 <= c < w):
        raise ValueError(f"Patch corner {(r, c)} lies outside the {h}x{w} image.")
    interior = (r, min(r + ph, h), c, min(c + pw, w))
    padded = (max(r - padding, 0), min(interior[1] + padding, h),
              max(c - padding, 0), min(interior[3] + padding, w))
    trim = (interior[0] - padded[0], interior[1] - padded[0],
            interior[2] - padded[2], interior[3] - padded[2])
    return PatchBoundaries(interior, padded, trim)


def patch_corners(image_shape: Sequence[int], patch_size: Sequence[int]) -> List[Tuple[int, int]]:
    h, w = int(image_shape[0]), int(image_shape[1])
    return [(r, c) for r in range(0, h, int(patch_size[0])) for c in range(0, w, int(patch_size[1]))]


def solve_patches_admm(
    I_raw: np.ndarray,
    align: str,
    dispersionfun: DispersionFunction | None,
    color_weights: np.ndarray,
    bands: Sequence[float],
    admm_options: AdmmOptions,
    reg_options: RegularizationOptions,
    patch_options: PatchOptions,
    weights: Sequence[float] | None = None,
    reference: np.ndarray | None = None,
) -> PatchSolution:
    """
    Patch-wise latent image reconstruction.

    Parameters
    ----------
    I_raw : (H, W) RAW image
    align : Bayer pattern of `I_raw`
    dispersionfun : from `make_dispersion_for_image`, or None
    color_weights : (3, n_bands)
    bands : latent wavelengths (or channel indices)
    admm_options, reg_options, patch_options : solver settings
    weights : fixed regularization weights; None selects them per patch
    reference : (H, W, n_bands) true latent image for the 'true' criterion

    Returns
    -------
    PatchSolution
    """
    if I_raw.ndim != 2:
        raise ValueError("solve_patches_admm() expects a 2-D RAW image.")
    color_weights = np.atleast_2d(np.asarray(color_weights, dtype=np.float64))
    nb = len(bands)
    if color_weights.shape[1] != nb:
        raise ValueError(f"color_weights has {color_weights.shape[1]} columns for {nb} bands.")
    if weights is not None and len(weights) != N_PRIORS:
        raise ValueError(f"Expected {N_PRIORS} regularization weights.")
    if weights is None and reg_options.method == "true":
        if reference is None or reference.shape != I_raw.shape + (nb,):
            raise ValueError("The 'true' criterion needs a reference image of shape (H, W, n_bands).")

    h, w = I_raw.shape
    if patch_options.target_patch is None:
        corners = patch_corners((h, w), patch_options.patch_size)
        roi = (0, h, 0, w)
    else:
        bounds = patch_boundaries((h, w), patch_options.patch_size, patch_options.padding,
                                  patch_options.target_patch)
        corners = [tuple(patch_options.target_patch)]
        roi = bounds.interior

    out_h, out_w = roi[1] - roi[0], roi[3] - roi[2]
    latent = np.zeros((out_h, out_w, nb))
    weights_image = np.zeros((out_h, out_w, N_PRIORS))
    searches = []

    for n, corner in enumerate(corners):
        pb = patch_boundaries((h, w), patch_options.patch_size, patch_options.padding, corner)
        r0, r1, c0, c1 = pb.padded
        raw_p = I_raw[r0:r1, c0:c1]
        align_p = offset_bayer_pattern((r0, c0), align)
        shape_p = (r1 - r0, c1 - c0)
        Phi = None if dispersionfun is None else dispersion_to_matrix(
            dispersionfun, bands, shape_p, negate=False, offset=(r0, c0))
        A = forward_operator(shape_p, align_p, Phi, color_weights)
        problem = AdmmProblem(A, raw_p, shape_p + (nb,), admm_options, color_weights=color_weights)

        if weights is None:
            if reg_options.method == "true":
                target = reference[r0:r1, c0:c1, :]
            elif reg_options.method == "demosaic":
                target = bilinear_demosaic(raw_p, align_p, reg_options.demosaic_channels)
            else:
                target = None
            search = select_weights(problem, reg_options, reference=target)
            searches.append(search)
            w_p = search.selected
        else:
            w_p = np.asarray(weights, dtype=np.float64)

        result = problem.solve(w_p)
        t = pb.trim
        ir0, ir1, ic0, ic1 = pb.interior
        latent[ir0 - roi[0]:ir1 - roi[0], ic0 - roi[2]:ic1 - roi[2]] = result.latent[t[0]:t[1], t[2]:t[3]]
        weights_image[ir0 - roi[0]:ir1 - roi[0], ic0 - roi[2]:ic1 - roi[2]] = w_p
        logger.info("Patch %d/%d at %s: %d iterations, converged=%s.",
                    n + 1, len(corners), corner, result.iterations, result.converged)

    rgb = channel_conversion(latent, color_weights)
    return PatchSolution(latent=latent, rgb=rgb, weights_image=weights_image, weights_search=searches, roi=roi)
