"""
dispersion_model.py — polynomial models of lateral chromatic aberration.

WHAT THIS MODULE DOES
---------------------
  1) Disparity statistics: displacement of every disk centre relative to the
     reference band (or colour channel), in either direction.
  2) Polynomial regression of disparity over normalized (x, y, λ), with the
     spatial and spectral degrees chosen by K-fold cross-validation. In RGB
     mode one (x, y) polynomial is fit per colour channel instead.
  3) `PolynomialDispersion`: the fitted model, callable and storable (.npz).
  4) Model space: maps pixel coordinates of an image of any size (and an
     optional crop) to the coordinates the model was fit in, and selects the
     region of the image covered by the calibration data.
  5) Warps: a sparse bilinear warp matrix over vectorized (H, W, bands)
     images, and the equivalent dense warp with `scipy.ndimage`.

DISPERSION FUNCTIONS
--------------------
`make_dispersion_for_image` returns `dispersionfun(xyl)` where `xyl` is an
(n, 3) array of image x, y (pixel units, x = column + 0.5, y = row + 0.5)
and band (wavelength, or channel index in RGB mode). It returns the (n, 2)
displacement v such that the aberrated image satisfies

    aberrated(x, band) = latent(x + v(x, band))

so warping a latent image by +v simulates aberration and warping an
aberrated image by -v approximately corrects it.

REFERENCES (short list)
-----------------------
• Rudakova, V. & Monasse, P. (2013). Precise correction of lateral chromatic
  aberration in images. PSIVT.
• Hastie, Tibshirani & Friedman (2009). *The Elements of Statistical
  Learning*, §7.10 (cross-validation).
"""

from __future__ import annotations
from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
from typing import Callable, List, Sequence, Tuple
import numpy as np
from scipy import ndimage, sparse

logger = logging.getLogger(__name__)

DispersionFunction = Callable[[np.ndarray], np.ndarray]


# -----------------------------------------------------------------------------
# Disparity statistics
# -----------------------------------------------------------------------------
def match_centers(reference: np.ndarray, other: np.ndarray, max_distance: float = np.inf) -> np.ndarray:
    """
    Reorder `other` (k, 2) to follow `reference` (n, 2) by nearest neighbour;
    unmatched rows are NaN.
    """
    out = np.full(reference.shape, np.nan)
    if other.size == 0:
        return out
    d = np.linalg.norm(reference[:, None, :] - other[None, :, :], axis=2)
    nearest = np.argmin(d, axis=1)
    ok = d[np.arange(reference.shape[0]), nearest] <= max_distance
    out[ok] = other[nearest[ok]]
    return out


def stats_to_disparity(
    centers: np.ndarray,
    reference_index: int,
    from_reference: bool = True,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Control points and disparity vectors relative to a reference band.

    Parameters
    ----------
    centers : (n, m, 2) ndarray
        Centre of disk i in band (or channel) j.
    reference_index : int
    from_reference : bool
        True: control points are the reference-band centres and disparities
        point from the reference band to band j. False: control points are the
        band-j centres and disparities point back to the reference band.

    Returns
    -------
    X : (n, m, 2) ndarray
    disparity : (n, m, 2) ndarray
        NaN where a centre is missing.
    """
    centers = np.asarray(centers, dtype=np.float64)
    if centers.ndim != 3 or centers.shape[2] != 2:
        raise ValueError("centers must have shape (n, m, 2).")
    m = centers.shape[1]
    if not 0 <= reference_index < m:
        raise ValueError(f"reference_index {reference_index} is out of range for {m} bands.")
    ref = centers[:, reference_index:reference_index + 1, :]
    if from_reference:
        X = np.broadcast_to(ref, centers.shape).copy()
        disparity = centers - ref
    else:
        X = centers.copy()
        disparity = ref - centers
    return X, disparity


# -----------------------------------------------------------------------------
# Polynomials
# -----------------------------------------------------------------------------
def polynomial_exponents(degree_xy: int, degree_lambda: int) -> np.ndarray:
    """(t, 3) exponents of x, y, λ with total x-y degree ≤ degree_xy."""
    terms = [
        (i, j, k)
        for k in range(degree_lambda + 1)
        for total in range(degree_xy + 1)
        for i in range(total, -1, -1)
        for j in [total - i]
    ]
    return np.array(terms, dtype=np.int64).reshape(-1, 3)


def _design_matrix(u: np.ndarray, exponents: np.ndarray) -> np.ndarray:
    return np.prod(u[:, None, :] ** exponents[None, :, :], axis=2)


@dataclass
class PolynomialFit:
    """One scalar polynomial in normalized (x, y, λ)."""
    exponents: np.ndarray
    coefficients: np.ndarray
    degree_xy: int
    degree_lambda: int

    def __call__(self, u: np.ndarray) -> np.ndarray:
        return _design_matrix(u, self.exponents) @ self.coefficients

    def to_dict(self) -> dict:
        return {
            "exponents": self.exponents.tolist(),
            "coefficients": self.coefficients.tolist(),
            "degree_xy": self.degree_xy,
            "degree_lambda": self.degree_lambda,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "PolynomialFit":
        return cls(
            np.asarray(d["exponents"], dtype=np.int64).reshape(-1, 3),
            np.asarray(d["coefficients"], dtype=np.float64),
            int(d["degree_xy"]),
            int(d["degree_lambda"]),
        )


def _kfold_indices(n: int, n_folds: int, rng: np.random.Generator) -> List[np.ndarray]:
    return np.array_split(rng.permutation(n), n_folds)


def _fit_with_cv(
    u: np.ndarray,
    y: np.ndarray,
    max_degree_xy: int,
    max_degree_lambda: int,
    n_folds: int,
    rng: np.random.Generator,
) -> Tuple[PolynomialFit, float]:
    n = u.shape[0]
    folds = _kfold_indices(n, min(n_folds, n), rng)
    smallest_train = n - max(len(f) for f in folds)

    best = None
    for d_lam in range(max_degree_lambda + 1):
        for d_xy in range(max_degree_xy + 1):
            exps = polynomial_exponents(d_xy, d_lam)
            if exps.shape[0] > smallest_train:
                continue
            err = 0.0
            for test in folds:
                train = np.setdiff1d(np.arange(n), test, assume_unique=True)
                coef, *_ = np.linalg.lstsq(_design_matrix(u[train], exps), y[train], rcond=None)
                err += np.sum((_design_matrix(u[test], exps) @ coef - y[test]) ** 2)
            err /= n
            logger.debug("CV degree (xy=%d, lambda=%d): mse %.4g", d_xy, d_lam, err)
            if best is None or err < best[0]:
                best = (err, d_xy, d_lam, exps)

    if best is None:
        raise ValueError("Too few control points to fit even a constant polynomial.")
    err, d_xy, d_lam, exps = best
    coef, *_ = np.linalg.lstsq(_design_matrix(u, exps), y, rcond=None)
    return PolynomialFit(exps, coef, d_xy, d_lam), float(err)


# -----------------------------------------------------------------------------
# Model space
# -----------------------------------------------------------------------------
@dataclass
class ModelSpace:
    """
    Coordinate frame a dispersion model was fit in.

    image_size : (rows, cols) of the calibration images
    image_bounds : [x, y, width, height] world domain of the calibration
        images, or None when the model is in pixel coordinates (y down)
    domain : (x_min, y_min, x_max, y_max) of the control points, model units
    """
    image_size: Tuple[int, int]
    image_bounds: Tuple[float, float, float, float] | None = None
    domain: Tuple[float, float, float, float] | None = None

    def to_dict(self) -> dict:
        return {
            "image_size": [int(v) for v in self.image_size],
            "image_bounds": None if self.image_bounds is None else [float(v) for v in self.image_bounds],
            "domain": None if self.domain is None else [float(v) for v in self.domain],
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ModelSpace":
        return cls(
            tuple(d["image_size"]),
            None if d.get("image_bounds") is None else tuple(d["image_bounds"]),
            None if d.get("domain") is None else tuple(d["domain"]),
        )


@dataclass
class ModelTransform:
    """
    Affine, axis-aligned map from image pixel coordinates to model coordinates:

        model = origin + scale * (xy + offset)
    """
    origin: np.ndarray = field(default_factory=lambda: np.zeros(2))
    scale: np.ndarray = field(default_factory=lambda: np.ones(2))
    offset: np.ndarray = field(default_factory=lambda: np.zeros(2))

    def to_model(self, xy: np.ndarray) -> np.ndarray:
        return self.origin + self.scale * (xy + self.offset)

    def to_image(self, model_xy: np.ndarray) -> np.ndarray:
        return (model_xy - self.origin) / self.scale - self.offset

    def disparity_to_image(self, d: np.ndarray) -> np.ndarray:
        return d / self.scale


def model_space_transform(
    image_size: Sequence[int],
    model_space: ModelSpace,
    fill: bool = False,
) -> Tuple[Tuple[int, int, int, int] | None, ModelTransform]:
    """
    Region of interest and coordinate transform for an image.

    The image is assumed to cover the same field of view as the calibration
    images, possibly at a different resolution.

    Parameters
    ----------
    image_size : (rows, cols)
    model_space : ModelSpace
    fill : bool
        Keep the whole image instead of cropping to the model domain.

    Returns
    -------
    roi : (row_start, row_end, col_start, col_end), half-open, or None when
        the whole image is kept
    transform : ModelTransform for pixel coordinates of the cropped image
    """
    h, w = (int(v) for v in image_size[:2])
    h_cal, w_cal = (int(v) for v in model_space.image_size[:2])
    sx, sy = w_cal / w, h_cal / h
    if model_space.image_bounds is None:
        origin = np.zeros(2)
        scale = np.array([sx, sy])
    else:
        bx, by, bw, bh = (float(v) for v in model_space.image_bounds)
        origin = np.array([bx, by + bh])
        scale = np.array([sx * bw / w_cal, -sy * bh / h_cal])
    full = ModelTransform(origin=origin, scale=scale)

    if fill or model_space.domain is None:
        return None, full

    x0, y0, x1, y1 = model_space.domain
    corners = full.to_image(np.array([[x0, y0], [x1, y1]], dtype=np.float64))
    lo = corners.min(axis=0)
    hi = corners.max(axis=0)
    col_start = max(0, int(np.ceil(lo[0] - 0.5)))
    col_end = min(w, int(np.floor(hi[0] - 0.5)) + 1)
    row_start = max(0, int(np.ceil(lo[1] - 0.5)))
    row_end = min(h, int(np.floor(hi[1] - 0.5)) + 1)
    if row_end <= row_start or col_end <= col_start:
        raise ValueError("The dispersion model domain does not overlap the image.")

    roi = (row_start, row_end, col_start, col_end)
    return roi, ModelTransform(origin=origin, scale=scale, offset=np.array([col_start, row_start], dtype=np.float64))


# -----------------------------------------------------------------------------
# Dispersion model
# -----------------------------------------------------------------------------
@dataclass
class PolynomialDispersion:
    """
    Fitted dispersion model.

    fits : one [x-component, y-component] pair per colour channel (RGB mode),
        or a single pair over (x, y, λ) (spectral mode)
    offset, scale : normalization u = (v - offset) / scale for (x, y, λ)
    channel_mode : RGB mode (band = channel index)
    reference_index : reference band / channel
    from_reference : direction of the disparity vectors (`stats_to_disparity`)
    bands : wavelengths of the calibration bands (spectral mode)
    model_space : frame of the control points
    cv_error : cross-validation mean squared error per component
    """
    fits: List[List[PolynomialFit]]
    offset: np.ndarray
    scale: np.ndarray
    channel_mode: bool
    reference_index: int
    from_reference: bool = True
    bands: np.ndarray | None = None
    model_space: ModelSpace | None = None
    cv_error: List[List[float]] = field(default_factory=list)

    def __call__(self, xy: np.ndarray, band) -> np.ndarray:
        """
        Disparity (n, 2) at model coordinates `xy` (n, 2) for `band`, a scalar
        or an (n,) array (wavelengths, or channel indices in RGB mode).
        """
        xy = np.atleast_2d(np.asarray(xy, dtype=np.float64))
        band = np.broadcast_to(np.asarray(band, dtype=np.float64), (xy.shape[0],))
        u = np.empty((xy.shape[0], 3))
        u[:, :2] = (xy - self.offset[:2]) / self.scale[:2]
        u[:, 2] = (band - self.offset[2]) / self.scale[2]
        out = np.empty((xy.shape[0], 2))
        if not self.channel_mode:
            out[:, 0] = self.fits[0][0](u)
            out[:, 1] = self.fits[0][1](u)
            return out

        channels = band.astype(np.int64)
        if np.any((channels < 0) | (channels >= len(self.fits))):
            raise ValueError(f"Channel indices must lie in [0, {len(self.fits) - 1}].")
        u[:, 2] = 0.0
        for c in np.unique(channels):
            sel = channels == c
            out[sel, 0] = self.fits[c][0](u[sel])
            out[sel, 1] = self.fits[c][1](u[sel])
        return out

    # ------------------------------------------------------------------ I/O
    def save(self, path: str | Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        metadata = {
            "fits": [[f.to_dict() for f in pair] for pair in self.fits],
            "channel_mode": self.channel_mode,
            "reference_index": self.reference_index,
            "from_reference": self.from_reference,
            "model_space": None if self.model_space is None else self.model_space.to_dict(),
            "cv_error": self.cv_error,
        }
        np.savez(
            path,
            metadata=np.array(json.dumps(metadata)),
            offset=self.offset,
            scale=self.scale,
            bands=np.zeros(0) if self.bands is None else self.bands,
        )
        return path

    @classmethod
    def load(cls, path: str | Path) -> "PolynomialDispersion":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Dispersion model not found: {path}")
        with np.load(path) as data:
            metadata = json.loads(str(data["metadata"]))
            offset, scale, bands = data["offset"], data["scale"], data["bands"]
        return cls(
            fits=[[PolynomialFit.from_dict(d) for d in pair] for pair in metadata["fits"]],
            offset=offset,
            scale=scale,
            channel_mode=bool(metadata["channel_mode"]),
            reference_index=int(metadata["reference_index"]),
            from_reference=bool(metadata["from_reference"]),
            bands=bands if bands.size else None,
            model_space=None if metadata["model_space"] is None else ModelSpace.from_dict(metadata["model_space"]),
            cv_error=metadata.get("cv_error", []),
        )


def _normalization(values: np.ndarray) -> Tuple[float, float]:
    lo, hi = float(np.min(values)), float(np.max(values))
    half = (hi - lo) / 2
    return (lo + hi) / 2, half if half > 0 else 1.0


def _domain(X: np.ndarray) -> Tuple[float, float, float, float]:
    return (float(X[:, 0].min()), float(X[:, 1].min()), float(X[:, 0].max()), float(X[:, 1].max()))


def xylambda_polyfit(
    X: np.ndarray,
    bands: np.ndarray,
    disparity: np.ndarray,
    max_degree_xy: int,
    max_degree_lambda: int,
    reference_index: int = 0,
    from_reference: bool = True,
    n_folds: int = 10,
    seed: int | None = 0,
    model_space: ModelSpace | None = None,
) -> PolynomialDispersion:
    """
    Fit disparity as polynomials in (x, y, λ).

    Parameters
    ----------
    X : (n, m, 2) control points (from `stats_to_disparity`)
    bands : (m,) wavelengths
    disparity : (n, m, 2)
    max_degree_xy, max_degree_lambda : upper bounds on the degrees tried
    reference_index, from_reference : recorded with the model
    n_folds : cross-validation folds
    seed : fold shuffling seed
    model_space : frame of `X`; its domain is filled in from `X` when unset

    Returns
    -------
    PolynomialDispersion (spectral mode)
    """
    X = np.asarray(X, dtype=np.float64)
    disparity = np.asarray(disparity, dtype=np.float64)
    bands = np.asarray(bands, dtype=np.float64).ravel()
    if X.shape != disparity.shape or X.ndim != 3 or X.shape[1] != bands.size:
        raise ValueError("X and disparity must both have shape (n, len(bands), 2).")
    if max_degree_xy < 0 or max_degree_lambda < 0:
        raise ValueError("Polynomial degrees must be non-negative.")

    lam = np.broadcast_to(bands[None, :], X.shape[:2])
    pts = X.reshape(-1, 2)
    lam = lam.reshape(-1)
    d = disparity.reshape(-1, 2)
    valid = np.all(np.isfinite(pts), axis=1) & np.all(np.isfinite(d), axis=1)
    pts, lam, d = pts[valid], lam[valid], d[valid]
    if pts.shape[0] == 0:
        raise ValueError("No valid control points.")

    norm = [_normalization(pts[:, 0]), _normalization(pts[:, 1]), _normalization(lam)]
    offset = np.array([v[0] for v in norm])
    scale = np.array([v[1] for v in norm])
    u = np.column_stack([pts, lam])
    u = (u - offset) / scale

    rng = np.random.default_rng(seed)
    max_degree_lambda = min(max_degree_lambda, np.unique(lam).size - 1)
    pair, errors = [], []
    for k in range(2):
        fit, err = _fit_with_cv(u, d[:, k], max_degree_xy, max_degree_lambda, n_folds, rng)
        logger.info("Component %s: degree xy=%d, lambda=%d (CV mse %.4g).",
                    "xy"[k], fit.degree_xy, fit.degree_lambda, err)
        pair.append(fit)
        errors.append(err)

    if model_space is not None and model_space.domain is None:
        model_space = ModelSpace(model_space.image_size, model_space.image_bounds, _domain(pts))
    return PolynomialDispersion(
        fits=[pair], offset=offset, scale=scale, channel_mode=False,
        reference_index=int(reference_index), from_reference=from_reference,
        bands=bands, model_space=model_space, cv_error=[errors],
    )


def xy_polyfit_channels(
    X: np.ndarray,
    disparity: np.ndarray,
    max_degree_xy: int,
    reference_index: int = 1,
    from_reference: bool = True,
    n_folds: int = 10,
    seed: int | None = 0,
    model_space: ModelSpace | None = None,
) -> PolynomialDispersion:
    """
    Fit one (x, y) polynomial per colour channel (RGB mode).

    `X` and `disparity` are (n, n_channels, 2); the band passed to the model
    is the channel index.
    """
    X = np.asarray(X, dtype=np.float64)
    disparity = np.asarray(disparity, dtype=np.float64)
    if X.shape != disparity.shape or X.ndim != 3:
        raise ValueError("X and disparity must both have shape (n, n_channels, 2).")

    pts_all = X.reshape(-1, 2)
    pts_all = pts_all[np.all(np.isfinite(pts_all), axis=1)]
    if pts_all.shape[0] == 0:
        raise ValueError("No valid control points.")
    norm = [_normalization(pts_all[:, 0]), _normalization(pts_all[:, 1])]
    offset = np.array([norm[0][0], norm[1][0], 0.0])
    scale = np.array([norm[0][1], norm[1][1], 1.0])

    rng = np.random.default_rng(seed)
    fits, errors = [], []
    for c in range(X.shape[1]):
        pts, d = X[:, c, :], disparity[:, c, :]
        valid = np.all(np.isfinite(pts), axis=1) & np.all(np.isfinite(d), axis=1)
        u = np.column_stack([(pts[valid] - offset[:2]) / scale[:2], np.zeros(valid.sum())])
        pair, errs = [], []
        for k in range(2):
            fit, err = _fit_with_cv(u, d[valid, k], max_degree_xy, 0, n_folds, rng)
            pair.append(fit)
            errs.append(err)
        logger.info("Channel %d: degrees xy=(%d, %d).", c, pair[0].degree_xy, pair[1].degree_xy)
        fits.append(pair)
        errors.append(errs)

    if model_space is not None and model_space.domain is None:
        model_space = ModelSpace(model_space.image_size, model_space.image_bounds, _domain(pts_all))
    return PolynomialDispersion(
        fits=fits, offset=offset, scale=scale, channel_mode=True,
        reference_index=int(reference_index), from_reference=from_reference,
        bands=None, model_space=model_space, cv_error=errors,
    )


def dispersion_rms(model: PolynomialDispersion, X: np.ndarray, bands: Sequence[float], disparity: np.ndarray) -> float:
    """Root-mean-square residual of `model` over (n, m, 2) control points."""
    X = np.asarray(X, dtype=np.float64)
    lam = np.broadcast_to(np.asarray(bands, dtype=np.float64)[None, :], X.shape[:2]).reshape(-1)
    pts = X.reshape(-1, 2)
    d = np.asarray(disparity, dtype=np.float64).reshape(-1, 2)
    valid = np.all(np.isfinite(pts), axis=1) & np.all(np.isfinite(d), axis=1)
    res = model(pts[valid], lam[valid]) - d[valid]
    return float(np.sqrt(np.mean(np.sum(res**2, axis=1))))


# -----------------------------------------------------------------------------
# Dispersion on images
# -----------------------------------------------------------------------------
def make_dispersion_for_image(
    model: PolynomialDispersion,
    image: np.ndarray | None = None,
    model_space: ModelSpace | None = None,
    fill: bool = False,
    n_inverse_iterations: int = 3,
) -> Tuple[DispersionFunction, np.ndarray | None]:
    """
    Dispersion function in the pixel coordinates of `image`.

    Parameters
    ----------
    model : PolynomialDispersion
    image : ndarray, optional
        Image to be corrected; it is cropped to the model domain unless
        `fill` is set.
    model_space : ModelSpace, optional
        Frame of the model. Give both `image` and `model_space`, or neither
        (the model is then used directly in pixel coordinates).
    fill : bool
    n_inverse_iterations : int
        Fixed-point iterations inverting models fit from the reference band.

    Returns
    -------
    dispersionfun : callable, (n, 3) → (n, 2), see the module notes
    image_roi : the cropped image, or None when no image was given
    """
    if (image is None) != (model_space is None):
        raise ValueError("Provide both an image and a model space, or neither.")

    if image is None:
        transform = ModelTransform()
        image_roi = None
    else:
        roi, transform = model_space_transform(image.shape[:2], model_space, fill)
        image_roi = image if roi is None else image[roi[0]:roi[1], roi[2]:roi[3], ...]

    def disparity_image(xy: np.ndarray, band: np.ndarray) -> np.ndarray:
        return transform.disparity_to_image(model(transform.to_model(xy), band))

    def dispersionfun(xyl: np.ndarray) -> np.ndarray:
        xyl = np.atleast_2d(np.asarray(xyl, dtype=np.float64))
        xy, band = xyl[:, :2], xyl[:, 2]
        if not model.from_reference:
            return disparity_image(xy, band)
        # Solve x_ref + d(x_ref) = x for the reference-band position
        x_ref = xy.copy()
        for _ in range(n_inverse_iterations):
            x_ref = xy - disparity_image(x_ref, band)
        return x_ref - xy

    return dispersionfun, image_roi


def _sample_positions(
    dispersionfun: DispersionFunction,
    bands: Sequence[float],
    image_shape: Sequence[int],
    negate: bool,
    offset: Sequence[int],
) -> Tuple[np.ndarray, np.ndarray]:
    """(rows, cols) continuous sample indices of shape (H, W, n_bands), clamped."""
    h, w = int(image_shape[0]), int(image_shape[1])
    bands = np.asarray(bands, dtype=np.float64).ravel()
    nb = bands.size
    rr, cc = np.meshgrid(np.arange(h), np.arange(w), indexing="ij")
    x = (cc + offset[1] + 0.5).ravel()
    y = (rr + offset[0] + 0.5).ravel()
    rows = np.empty((h * w, nb))
    cols = np.empty((h * w, nb))
    sign = -1.0 if negate else 1.0
    for b, lam in enumerate(bands):
        v = dispersionfun(np.column_stack([x, y, np.full(x.size, lam)]))
        cols[:, b] = x + sign * v[:, 0] - 0.5 - offset[1]
        rows[:, b] = y + sign * v[:, 1] - 0.5 - offset[0]
    rows = np.clip(rows, 0.0, h - 1).reshape(h, w, nb)
    cols = np.clip(cols, 0.0, w - 1).reshape(h, w, nb)
    return rows, cols


def dispersion_to_matrix(
    dispersionfun: DispersionFunction,
    bands: Sequence[float],
    image_shape: Sequence[int],
    negate: bool = False,
    offset: Sequence[int] = (0, 0),
) -> sparse.csr_matrix:
    """
    Sparse bilinear warp over C-order vectorized (H, W, n_bands) images.

    Parameters
    ----------
    dispersionfun : callable from `make_dispersion_for_image`
    bands : wavelengths, or channel indices in RGB mode
    image_shape : (H, W) of the (sub-)image
    negate : False: latent → aberrated; True: aberrated → latent (approximate)
    offset : (row, col) of the sub-image in the image `dispersionfun` expects

    Returns
    -------
    (H*W*n_bands, H*W*n_bands) csr_matrix
    """
    h, w = int(image_shape[0]), int(image_shape[1])
    nb = len(bands)
    rows, cols = _sample_positions(dispersionfun, bands, (h, w), negate, offset)

    r0 = np.floor(rows).astype(np.int64)
    c0 = np.floor(cols).astype(np.int64)
    r1 = np.minimum(r0 + 1, h - 1)
    c1 = np.minimum(c0 + 1, w - 1)
    wr = rows - r0
    wc = cols - c0

    out_index = np.arange(h * w * nb)
    b = np.broadcast_to(np.arange(nb), (h, w, nb))

    def idx(r, c):
        return ((r * w + c) * nb + b).ravel()

    data = np.concatenate([
        ((1 - wr) * (1 - wc)).ravel(), ((1 - wr) * wc).ravel(),
        (wr * (1 - wc)).ravel(), (wr * wc).ravel(),
    ])
    col_index = np.concatenate([idx(r0, c0), idx(r0, c1), idx(r1, c0), idx(r1, c1)])
    row_index = np.tile(out_index, 4)
    n = h * w * nb
    return sparse.csr_matrix((data, (row_index, col_index)), shape=(n, n))


def warp_image(
    image: np.ndarray,
    dispersionfun: DispersionFunction,
    bands: Sequence[float],
    negate: bool = False,
    offset: Sequence[int] = (0, 0),
) -> np.ndarray:
    """
    Dense equivalent of `dispersion_to_matrix` for an (H, W, n_bands) image.
    """
    if image.ndim != 3 or image.shape[2] != len(bands):
        raise ValueError("The image must have shape (H, W, len(bands)).")
    rows, cols = _sample_positions(dispersionfun, bands, image.shape[:2], negate, offset)
    out = np.empty(image.shape, dtype=np.float64)
    for b in range(image.shape[2]):
        out[..., b] = ndimage.map_coordinates(
            image[..., b].astype(np.float64), [rows[..., b], cols[..., b]], order=1, mode="nearest",
        )
    return out
