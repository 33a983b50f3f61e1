"""
disk_fitting.py — find disks (blobs) in an image and estimate their centres.

WHAT THIS MODULE DOES
---------------------
  1) Binarize the region of interest with an Otsu threshold, separately for
     each Bayer colour channel of a RAW image (or use the mask itself as the
     binary image).
  2) Fuse the channel binary images and clean them with a morphological
     opening followed by a closing (disk structuring element).
  3) Label connected components and fit ellipses with
     `skimage.measure.regionprops`.
  4) Report one centre per blob, or one per colour channel when channels are
     split, so that displacements between channels can be measured.

COORDINATES
-----------
Pixel coordinates are x = column + 0.5, y = row + 0.5. With `image_bounds`
= [x, y, width, height] (bottom-left corner, y up) centres are converted to
world coordinates.

REFERENCES (short list)
-----------------------
• Otsu, N. (1979). A threshold selection method from gray-level histograms.
• Mannan, F. & Langer, M. S. (2016). Blur calibration for depth from defocus.
"""

from __future__ import annotations
from dataclasses import dataclass
import logging
from typing import Sequence
import numpy as np
from scipy import ndimage
from skimage.filters import threshold_otsu
from skimage.measure import label, regionprops
from skimage.morphology import disk

from ..sensor.sensor_model import bayer_mask

logger = logging.getLogger(__name__)


@dataclass
class DiskFitOptions:
    """
    mask_as_threshold : use `mask` as the binary image of the disks
    bright_disks : bright disks on a dark background (else the reverse)
    group_channels : one centre per disk for a RAW image (else one per channel)
    """
    mask_as_threshold: bool = False
    bright_disks: bool = True
    group_channels: bool = True


@dataclass
class DiskFitResult:
    """
    centers : (n, m, 2) disk centres, m = 1 or 3 (split colour channels)
    ellipses : (n, 5) ellipse fits in pixel coordinates:
        centre x, centre y, semi-major axis, semi-minor axis, orientation (rad)
    """
    centers: np.ndarray
    ellipses: np.ndarray


def pixel_to_world(xy: np.ndarray, image_shape: Sequence[int], image_bounds: Sequence[float]) -> np.ndarray:
    """Pixel coordinates (x right, y down) → world coordinates (y up)."""
    h, w = int(image_shape[0]), int(image_shape[1])
    pw = image_bounds[2] / w
    ph = image_bounds[3] / h
    out = np.empty_like(np.asarray(xy, dtype=np.float64))
    out[..., 0] = image_bounds[0] + pw * xy[..., 0]
    out[..., 1] = image_bounds[1] + ph * (h - xy[..., 1])
    return out


def _weighted_centroid(weights: np.ndarray, rows: np.ndarray, cols: np.ndarray):
    total = weights.sum()
    if total <= 0:
        return None
    return np.array([np.sum(weights * (cols + 0.5)), np.sum(weights * (rows + 0.5))]) / total


def find_and_fit_disks(
    image: np.ndarray,
    mask: np.ndarray | None,
    align: str | None,
    image_bounds: Sequence[float] | None,
    radius: int,
    options: DiskFitOptions,
) -> DiskFitResult:
    """
    Centres of ellipses fit to blobs in a RAW or greyscale image.

    Parameters
    ----------
    image : (H, W) ndarray
        RAW image (with `align`) or single-channel image (`align` None).
    mask : (H, W) bool ndarray or None
        Region in which to look for blobs (None: whole image).
    align : str or None
        Bayer pattern of a RAW image.
    image_bounds : [x, y, width, height] or None
        World-coordinate domain of the image; None keeps pixel coordinates.
    radius : int
        Radius of the structuring element for cleanup (0 disables cleanup).
    options : DiskFitOptions

    Returns
    -------
    DiskFitResult
    """
    if image.ndim != 2:
        raise ValueError("find_and_fit_disks() processes RAW or greyscale images only, not demosaicked images.")
    h, w = image.shape
    if mask is not None and mask.shape != image.shape:
        raise ValueError("The mask must have the same size as the image.")
    if mask is None and options.mask_as_threshold:
        raise ValueError("`mask_as_threshold` is set but no mask was given.")
    image = image.astype(np.float64, copy=False)

    single_channel = align is None
    channel_mask = np.ones((h, w, 1), dtype=bool) if single_channel else bayer_mask(h, w, align)
    n_channels = channel_mask.shape[2]

    # 1) Binarize each channel
    bw = np.zeros((h, w, n_channels), dtype=bool)
    thresholds = np.zeros(n_channels)
    for c in range(n_channels):
        mask_c = channel_mask[..., c] if mask is None else (mask & channel_mask[..., c])
        if options.mask_as_threshold:
            bw[..., c] = mask_c
            continue
        values = image[mask_c]
        if values.size == 0 or values.min() == values.max():
            logger.warning("Channel %d has no contrast inside the mask; no blobs from it.", c)
            thresholds[c] = np.inf if options.bright_disks else -np.inf
            continue
        thresholds[c] = threshold_otsu(values)
        above = image > thresholds[c]
        bw[..., c] = (above if options.bright_disks else ~above) & mask_c

    # 2) Fuse and clean up
    bw_fused = bw.any(axis=2)
    if radius > 0:
        footprint = disk(int(radius))
        bw_fused = ndimage.binary_opening(bw_fused, structure=footprint)
        bw_fused = ndimage.binary_closing(bw_fused, structure=footprint)

    # 3) Blobs and ellipses
    regions = regionprops(label(bw_fused, connectivity=2))
    n = len(regions)
    logger.info("Found %d blobs.", n)

    split_channels = not single_channel and not options.group_channels
    n_out = n_channels if split_channels else 1
    centers = np.full((n, n_out, 2), np.nan)
    ellipses = np.zeros((n, 5))
    grow = np.ones((3, 3), dtype=bool)

    for i, region in enumerate(regions):
        cy, cx = region.centroid
        ellipses[i] = [cx + 0.5, cy + 0.5, region.axis_major_length / 2,
                       region.axis_minor_length / 2, region.orientation]
        if not split_channels:
            centers[i, 0] = [cx + 0.5, cy + 0.5]
            continue

        # Intensity-weighted centroid of each channel over a slightly grown blob
        blob = np.zeros((h, w), dtype=bool)
        blob[region.coords[:, 0], region.coords[:, 1]] = True
        blob = ndimage.binary_dilation(blob, structure=grow, iterations=2)
        for c in range(n_channels):
            rows, cols = np.nonzero(blob & channel_mask[..., c])
            if rows.size == 0:
                centers[i, c] = [cx + 0.5, cy + 0.5]
                continue
            vals = image[rows, cols]
            if np.isfinite(thresholds[c]) and not options.mask_as_threshold:
                weights = np.maximum(vals - thresholds[c], 0.0) if options.bright_disks \
                    else np.maximum(thresholds[c] - vals, 0.0)
            else:
                weights = vals if options.bright_disks else vals.max() - vals
            centroid = _weighted_centroid(weights, rows, cols)
            centers[i, c] = [cx + 0.5, cy + 0.5] if centroid is None else centroid

    if image_bounds is not None:
        centers = pixel_to_world(centers, image.shape, image_bounds)
    return DiskFitResult(centers=centers, ellipses=ellipses)
