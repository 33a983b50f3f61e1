"""
weight_search.py — choosing regularization weights.

WHAT THIS MODULE DOES
---------------------
  • Minimum distance criterion (MDC) of Song et al. (2016): each solution
    maps to a point on the L-hypersurface (data fidelity, penalty_1, ...).
    The search minimizes the normalized distance of that point from an
    "origin" built from the extreme weights:

        origin[0]   = ‖Ai − j‖²  with all weights at their minimum
        origin[k]   = penalty_k  with weight k at its maximum, others minimum
        err_max[0]  = ‖Ai − j‖²  with all weights at their maximum
        err_max[k]  = penalty_k  with all weights at their minimum

        distance = sqrt( Σ ((err − origin) / (err_max − origin))² )

    An iterative grid search in log10-space narrows around the best point.
  • The same grid search with other criteria: mean squared error against a
    known latent image ('true'), or against a bilinear demosaic of the RAW
    data in the colour channels the sensor samples densely ('demosaic').
  • Sampling of the whole L-hypersurface and its Pareto front.

REFERENCES (short list)
-----------------------
• Song, Y., Brie, D., Djermoune, E.-H. & Henrot, S. (2016). Regularization
  parameter estimation for non-negative hyperspectral image deconvolution.
  IEEE TIP 25(11).
• Belge, M., Kilmer, M. E. & Miller, E. L. (2002). Efficient determination
  of multiple regularization parameters in a generalized L-curve framework.
"""

from __future__ import annotations
from dataclasses import dataclass
import itertools
import logging
from typing import Sequence, Tuple
import numpy as np

from .admm_solver import N_PRIORS, AdmmProblem

logger = logging.getLogger(__name__)

METHODS = ("mdc", "true", "demosaic")


@dataclass
class RegularizationOptions:
    """
    enabled : which of the three weights are searched (others stay 0)
    minimum_weights, maximum_weights : search range per weight
    method : 'mdc', 'true' or 'demosaic'
    n_grid : grid points per active weight in each iteration
    shrink : factor applied to the log-space search window per iteration
    max_iter : iteration limit
    tol : stop when the best log10 weights move less than this
    demosaic_channels : colour channels compared by the 'demosaic' criterion
    """
    enabled: Sequence[bool] = (True, True, False)
    minimum_weights: Sequence[float] = (1e-10, 1e-10, 1e-10)
    maximum_weights: Sequence[float] = (1e2, 1e2, 1e2)
    method: str = "mdc"
    n_grid: int = 6
    shrink: float = 0.5
    max_iter: int = 12
    tol: float = 1e-2
    demosaic_channels: Sequence[int] = (1,)

    def __post_init__(self):
        if not (len(self.enabled) == len(self.minimum_weights) == len(self.maximum_weights) == N_PRIORS):
            raise ValueError(f"enabled, minimum_weights and maximum_weights need {N_PRIORS} values each.")
        lo = np.asarray(self.minimum_weights, dtype=np.float64)
        hi = np.asarray(self.maximum_weights, dtype=np.float64)
        active = np.asarray(self.enabled, dtype=bool)
        if np.any(lo[active] <= 0) or np.any(hi[active] < lo[active]):
            raise ValueError("Active weights need 0 < minimum_weights <= maximum_weights.")
        if self.method not in METHODS:
            raise ValueError(f"method must be one of {METHODS}, not {self.method!r}.")
        if self.n_grid < 2:
            raise ValueError("n_grid must be at least 2.")
        if not 0 < self.shrink < 1:
            raise ValueError("shrink must lie in (0, 1).")
        if self.max_iter < 1:
            raise ValueError("max_iter must be at least 1.")
        if self.tol < 0:
            raise ValueError("tol must be non-negative.")

    @property
    def active(self) -> np.ndarray:
        return np.flatnonzero(np.asarray(self.enabled, dtype=bool))


@dataclass
class WeightsSearch:
    """
    Search path of `select_weights`, one row per iteration.

    weights : (n_iter, 3) best weights of each iteration
    err : (n_iter, 4) fidelity and penalties at those weights
    criterion : (n_iter,) criterion value at those weights
    origin, err_max : MDC normalization (4,), NaN for other methods
    selected : (3,) final weights
    """
    weights: np.ndarray
    err: np.ndarray
    criterion: np.ndarray
    origin: np.ndarray
    err_max: np.ndarray
    selected: np.ndarray
    iterations: int = 0
    converged: bool = False


# -----------------------------------------------------------------------------
# Sampling and analysis helpers
# -----------------------------------------------------------------------------
def sample_weights_grid(
    minimum_weights: Sequence[float],
    maximum_weights: Sequence[float],
    n_samples,
    enabled: Sequence[bool] | None = None,
) -> np.ndarray:
    """
    Log-spaced combinations of weights; the first active weight varies slowest.

    Parameters
    ----------
    minimum_weights, maximum_weights : per-weight range
    n_samples : int, or one count per weight
    enabled : weights to vary (others are 0), default all

    Returns
    -------
    (prod(n_samples over active weights), n_weights) ndarray
    """
    lo = np.asarray(minimum_weights, dtype=np.float64)
    hi = np.asarray(maximum_weights, dtype=np.float64)
    n_w = lo.size
    enabled = np.ones(n_w, dtype=bool) if enabled is None else np.asarray(enabled, dtype=bool)
    counts = np.broadcast_to(np.asarray(n_samples, dtype=np.int64), (n_w,))
    active = np.flatnonzero(enabled)
    if active.size == 0:
        return np.zeros((1, n_w))
    axes = [np.logspace(np.log10(lo[k]), np.log10(hi[k]), int(counts[k])) for k in active]
    combos = np.array(list(itertools.product(*axes)))
    out = np.zeros((combos.shape[0], n_w))
    out[:, active] = combos
    return out


def pareto_front(err: np.ndarray) -> np.ndarray:
    """Boolean mask of the rows of `err` (n, d) that no other row dominates."""
    err = np.asarray(err, dtype=np.float64)
    le = np.all(err[None, :, :] <= err[:, None, :], axis=2)
    lt = np.any(err[None, :, :] < err[:, None, :], axis=2)
    return ~np.any(le & lt, axis=1)


def minimum_distance(err: np.ndarray, origin: np.ndarray, err_max: np.ndarray) -> np.ndarray:
    """Normalized distance of each row of `err` from `origin`."""
    span = np.asarray(err_max, dtype=np.float64) - np.asarray(origin, dtype=np.float64)
    span = np.where(np.abs(span) > 0, span, 1.0)
    return np.sqrt(np.sum(((np.atleast_2d(err) - origin) / span) ** 2, axis=1))


def sample_l_hypersurface(
    problem: AdmmProblem,
    weights: np.ndarray,
    reference: np.ndarray | None = None,
) -> Tuple[np.ndarray, np.ndarray | None]:
    """
    Penalties at each row of `weights` and, if a reference latent image is
    given, the mean squared error of each solution.

    Returns
    -------
    err : (n, 4) ndarray
    mse : (n,) ndarray or None
    """
    weights = np.atleast_2d(weights)
    err = np.empty((weights.shape[0], N_PRIORS + 1))
    mse = None if reference is None else np.empty(weights.shape[0])
    latent = None
    for s, w in enumerate(weights):
        result = problem.solve(w, init=latent)
        latent = result.latent
        err[s] = problem.penalties(latent)
        if reference is not None:
            mse[s] = float(np.mean((latent - reference) ** 2))
        logger.debug("L-hypersurface sample %d/%d", s + 1, weights.shape[0])
    return err, mse


# -----------------------------------------------------------------------------
# Weight selection
# -----------------------------------------------------------------------------
def mdc_normalization(problem: AdmmProblem, options: RegularizationOptions) -> Tuple[np.ndarray, np.ndarray]:
    """`origin` and `err_max` of the minimum distance criterion."""
    lo = np.where(options.enabled, options.minimum_weights, 0.0).astype(np.float64)
    hi = np.where(options.enabled, options.maximum_weights, 0.0).astype(np.float64)
    origin = np.full(N_PRIORS + 1, np.nan)
    err_max = np.full(N_PRIORS + 1, np.nan)

    err_lo = problem.penalties(problem.solve(lo).latent)
    err_hi = problem.penalties(problem.solve(hi).latent)
    origin[0] = err_lo[0]
    err_max[0] = err_hi[0]
    for k in options.active:
        w = lo.copy()
        w[k] = hi[k]
        origin[k + 1] = problem.penalties(problem.solve(w).latent)[k + 1]
        err_max[k + 1] = err_lo[k + 1]
    return origin, err_max


def select_weights(
    problem: AdmmProblem,
    options: RegularizationOptions,
    reference: np.ndarray | None = None,
) -> WeightsSearch:
    """
    Iterative log-space grid search for regularization weights.

    Parameters
    ----------
    problem : AdmmProblem
    options : RegularizationOptions
    reference : ndarray, optional
        'true': the latent image (H, W, n_bands) to compare against;
        'demosaic': the demosaicked image (H, W, len(demosaic_channels)).

    Returns
    -------
    WeightsSearch
    """
    active = options.active
    n_w = N_PRIORS
    if active.size == 0:
        raise ValueError("No regularization weights are enabled for selection.")
    if options.method in ("true", "demosaic") and reference is None:
        raise ValueError(f"The '{options.method}' criterion needs a reference image.")
    if options.method == "demosaic" and problem.color_weights is None:
        raise ValueError("The 'demosaic' criterion needs the problem's color_weights.")

    if options.method == "mdc":
        origin, err_max = mdc_normalization(problem, options)
        dims = np.concatenate([[0], active + 1])
    else:
        origin = err_max = np.full(n_w + 1, np.nan)
        dims = None

    channels = list(options.demosaic_channels)
    cache = {}

    def evaluate(w: np.ndarray) -> Tuple[float, np.ndarray]:
        key = tuple(np.round(np.log10(np.where(w > 0, w, 1.0)), 12))
        if key in cache:
            return cache[key]
        latent = problem.solve(w).latent
        err = problem.penalties(latent)
        if options.method == "mdc":
            crit = float(minimum_distance(err[dims], origin[dims], err_max[dims])[0])
        elif options.method == "true":
            crit = float(np.mean((latent - reference) ** 2))
        else:
            rgb = latent @ np.asarray(problem.color_weights)[channels, :].T
            crit = float(np.mean((rgb - reference) ** 2))
        cache[key] = (crit, err)
        return crit, err

    log_lo = np.log10(np.asarray(options.minimum_weights, dtype=np.float64)[active])
    log_hi = np.log10(np.asarray(options.maximum_weights, dtype=np.float64)[active])
    centre = (log_lo + log_hi) / 2
    half = (log_hi - log_lo) / 2

    path_w, path_err, path_crit = [], [], []
    converged = False
    it = 0
    best_log = centre
    for it in range(1, options.max_iter + 1):
        axes = [
            np.unique(np.clip(np.linspace(c - h, c + h, options.n_grid), lo, hi))
            for c, h, lo, hi in zip(centre, half, log_lo, log_hi)
        ]
        best = None
        for point in itertools.product(*axes):
            w = np.zeros(n_w)
            w[active] = 10.0 ** np.asarray(point)
            crit, err = evaluate(w)
            if best is None or crit < best[0]:
                best = (crit, err, w, np.asarray(point))
        crit, err, w, point = best
        path_w.append(w)
        path_err.append(err)
        path_crit.append(crit)
        logger.debug("Weight search iter %d: weights %s, criterion %.4g", it, w[active], crit)

        moved = np.max(np.abs(point - best_log))
        best_log = point
        if it > 1 and moved < options.tol:
            converged = True
            break
        centre = point
        half = half * options.shrink

    selected = path_w[-1]
    logger.info("Selected weights %s after %d iterations (%s).", selected.tolist(), it, options.method)
    return WeightsSearch(
        weights=np.array(path_w),
        err=np.array(path_err),
        criterion=np.array(path_crit),
        origin=origin,
        err_max=err_max,
        selected=selected,
        iterations=it,
        converged=converged,
    )
