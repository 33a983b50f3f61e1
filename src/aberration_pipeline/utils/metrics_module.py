"""
metrics_module.py — image quality metrics and evaluation tables

WHAT THIS MODULE PROVIDES
-------------------------
• compute_snr(img_noisy, img_ref)
    Frame-level signal-to-noise ratio against a clean reference, reported
    by both `evaluate_rgb` and `evaluate_spectral`.

• Colour image metrics (images in [0, 1], shape (H, W, 3))
    mse, psnr, ssim (skimage.metrics) and mean CIEDE2000 colour difference
    (skimage.color), bundled by `evaluate_rgb`.

• Spectral image metrics (shape (H, W, bands))
    RMSE, PSNR, GOF (goodness-of-fit coefficient), MRAE (mean relative
    absolute error) and SAM (spectral angle, degrees), bundled by
    `evaluate_spectral`.

• Tables
    `write_table` writes evaluation rows (dicts) as CSV; `merge_tables`
    averages the numeric columns of several tables per algorithm.

LEARNING NOTES
--------------
• PSNR is only comparable across images with the same peak; everything
  here assumes a peak of 1.0.
• GOF is the cosine similarity of spectra: it ignores overall brightness,
  as does SAM, which reports the same quantity as an angle.

REFERENCES (short list)
-----------------------
• Wang, Z. et al. (2004). Image quality assessment: from error visibility to
  structural similarity. IEEE TIP 13(4).
• Sharma, G., Wu, W. & Dalal, E. N. (2005). The CIEDE2000 color-difference
  formula. Color Research & Application 30(1).
• Romero, J. et al. (1997). Linear bases for representation of natural and
  artificial illuminants (GFC).

© 2025 Ali Pouya — Aberration Pipeline
"""

from __future__ import annotations
import csv
from collections import defaultdict
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Sequence
import numpy as np
from skimage.color import deltaE_ciede2000, rgb2lab
from skimage.metrics import structural_similarity

logger = logging.getLogger(__name__)

_EPS = 1e-12


# -----------------------------------------------------------------------------
# Simple SNR (frame-level)
# -----------------------------------------------------------------------------
def compute_snr(img_noisy: np.ndarray, img_ref: np.ndarray) -> float:
    """
    SNR = 20 * log10( ||ref||_2 / ||ref - noisy||_2 ), in dB; inf for identical images.
    """
    _check_pair(img_noisy, img_ref)
    ref = img_ref.astype(np.float64, copy=False)
    y = img_noisy.astype(np.float64, copy=False)
    num = np.linalg.norm(ref.ravel())
    den = np.linalg.norm((ref - y).ravel())
    if den == 0:
        return float("inf")
    return float(20.0 * np.log10(max(num, _EPS) / den))


# -----------------------------------------------------------------------------
# Colour images
# -----------------------------------------------------------------------------
def _check_pair(image: np.ndarray, reference: np.ndarray) -> None:
    if image.shape != reference.shape:
        raise ValueError(f"Image shape {image.shape} does not match reference shape {reference.shape}.")


def mse(image: np.ndarray, reference: np.ndarray) -> float:
    _check_pair(image, reference)
    return float(np.mean((image.astype(np.float64) - reference.astype(np.float64)) ** 2))


def psnr(image: np.ndarray, reference: np.ndarray, peak: float = 1.0) -> float:
    e = mse(image, reference)
    return float("inf") if e == 0 else float(10.0 * np.log10(peak**2 / e))


def ssim(image: np.ndarray, reference: np.ndarray) -> float:
    """Mean SSIM over channels, data range 1."""
    _check_pair(image, reference)
    channel_axis = -1 if image.ndim == 3 else None
    win = min(7, *image.shape[:2])
    win -= (win + 1) % 2
    return float(structural_similarity(
        image.astype(np.float64), reference.astype(np.float64),
        data_range=1.0, channel_axis=channel_axis, win_size=max(win, 3),
    ))


def ciede2000(image: np.ndarray, reference: np.ndarray) -> float:
    """Mean CIEDE2000 difference between two sRGB images in [0, 1]."""
    _check_pair(image, reference)
    if image.ndim != 3 or image.shape[2] != 3:
        raise ValueError("CIEDE2000 needs (H, W, 3) colour images.")
    lab_a = rgb2lab(np.clip(image, 0.0, 1.0))
    lab_b = rgb2lab(np.clip(reference, 0.0, 1.0))
    return float(np.mean(deltaE_ciede2000(lab_b, lab_a)))


def evaluate_rgb(image: np.ndarray, reference: np.ndarray) -> Dict[str, float]:
    """MSE, PSNR, SNR, SSIM and CIEDE2000 of a colour image."""
    return {
        "mse": mse(image, reference),
        "psnr": psnr(image, reference),
        "snr": compute_snr(image, reference),
        "ssim": ssim(image, reference),
        "ciede2000": ciede2000(image, reference),
    }


# -----------------------------------------------------------------------------
# Spectral images
# -----------------------------------------------------------------------------
def gof(image: np.ndarray, reference: np.ndarray) -> float:
    """Mean goodness-of-fit coefficient of per-pixel spectra (1 is perfect)."""
    _check_pair(image, reference)
    a = image.reshape(-1, image.shape[-1]).astype(np.float64)
    b = reference.reshape(-1, reference.shape[-1]).astype(np.float64)
    num = np.abs(np.sum(a * b, axis=1))
    den = np.linalg.norm(a, axis=1) * np.linalg.norm(b, axis=1)
    return float(np.mean(num / np.maximum(den, _EPS)))


def mrae(image: np.ndarray, reference: np.ndarray) -> float:
    """Mean relative absolute error over reference values above zero."""
    _check_pair(image, reference)
    valid = reference > _EPS
    if not np.any(valid):
        raise ValueError("MRAE is undefined for an all-zero reference.")
    return float(np.mean(np.abs(image[valid] - reference[valid]) / reference[valid]))


def sam(image: np.ndarray, reference: np.ndarray) -> float:
    """Mean spectral angle in degrees."""
    _check_pair(image, reference)
    a = image.reshape(-1, image.shape[-1]).astype(np.float64)
    b = reference.reshape(-1, reference.shape[-1]).astype(np.float64)
    cos = np.sum(a * b, axis=1) / np.maximum(np.linalg.norm(a, axis=1) * np.linalg.norm(b, axis=1), _EPS)
    return float(np.degrees(np.mean(np.arccos(np.clip(cos, -1.0, 1.0)))))


def evaluate_spectral(image: np.ndarray, reference: np.ndarray) -> Dict[str, float]:
    """RMSE, PSNR, SNR, GOF, MRAE and SAM of a spectral image."""
    return {
        "rmse": float(np.sqrt(mse(image, reference))),
        "psnr": psnr(image, reference),
        "snr": compute_snr(image, reference),
        "gof": gof(image, reference),
        "mrae": mrae(image, reference),
        "sam": sam(image, reference),
    }


# -----------------------------------------------------------------------------
# Tables
# -----------------------------------------------------------------------------
def write_table(rows: Sequence[Dict[str, object]], path: str | Path) -> Path:
    """Write evaluation rows as CSV, columns in first-seen order."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fieldnames: List[str] = []
    for row in rows:
        for k in row:
            if k not in fieldnames:
                fieldnames.append(k)
    with path.open("w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(rows)
    logger.info("Wrote %d rows to %s", len(rows), path)
    return path


def read_table(path: str | Path) -> List[Dict[str, str]]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Table not found: {path}")
    with path.open(newline="") as f:
        return list(csv.DictReader(f))


def merge_tables(
    tables: Iterable[Sequence[Dict[str, object]]],
    key: str = "algorithm",
) -> List[Dict[str, object]]:
    """
    Average the numeric columns of several tables per value of `key`.

    Non-numeric columns other than `key` are dropped; an `n_images` column
    counts the rows averaged.
    """
    groups: Dict[str, List[Dict[str, object]]] = defaultdict(list)
    order: List[str] = []
    for table in tables:
        for row in table:
            if key not in row:
                raise ValueError(f"Row without a '{key}' column: {row}")
            name = str(row[key])
            if name not in groups:
                order.append(name)
            groups[name].append(row)

    merged = []
    for name in order:
        rows = groups[name]
        out: Dict[str, object] = {key: name, "n_images": len(rows)}
        for col in rows[0]:
            if col == key:
                continue
            try:
                values = [float(r[col]) for r in rows if col in r and r[col] not in ("", None)]
            except (TypeError, ValueError):
                continue
            if values:
                out[col] = float(np.mean(values))
        merged.append(out)
    return merged
