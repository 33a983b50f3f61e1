"""
admm_solver.py — latent image reconstruction by ADMM.

WHAT THIS MODULE DOES
---------------------
Solves

    minimize_i  ½‖A i − j‖²  +  Σ_k w_k R_k(G_k i)   [ subject to i ≥ 0 ]

for a latent image i (C-order vector of an (H, W, n_bands) array) given RAW
data j and the image-formation matrix A, with three priors:

    G_0 : spatial gradient (forward differences, zero at the far boundary)
    G_1 : spectral difference of the spatial gradient
    G_2 : spatial Laplacian (5-point, reflecting boundaries)

R_k is ‖·‖₁ or ½‖·‖² (as chosen by `AdmmOptions.norms`). Squared-L2 terms are
folded into the linear system of the i-update; L1 terms and the
non-negativity constraint are split off as z_k = G_k i (z = i) with scaled
dual variables u_k, so each iteration is

    i   ← argmin ½‖Ai − j‖² + Σ_L2 (w/2)‖G i‖² + Σ_split (ρ/2)‖G i − z + u‖²
    z_k ← soft_threshold(G_k i + u_k, w_k / ρ_k)      (L1)
    z   ← max(i + u, 0)                                (non-negativity)
    u_k ← u_k + G_k i − z_k

stopping on the primal / dual residual criteria of Boyd et al., with
optional residual balancing of the penalty parameters.

REFERENCES (short list)
-----------------------
• Boyd, S. et al. (2011). Distributed optimization and statistical learning
  via the alternating direction method of multipliers. §3.3, §3.4.1.
• Baek, S.-H. et al. (2017). Compact single-shot hyperspectral imaging using
  a prism. ACM TOG 36(6), Algorithm 2.

© 2025 Ali Pouya — Aberration Pipeline
"""

from __future__ import annotations
from dataclasses import dataclass, field
import logging
from typing import List, Sequence, Tuple
import numpy as np
from scipy import sparse
from scipy.sparse.linalg import cg, factorized

from .image_formation import image_to_vector, vector_to_image

logger = logging.getLogger(__name__)

N_PRIORS = 3
SOLVERS = ("cg", "direct")


# -----------------------------------------------------------------------------
# Parameters
# -----------------------------------------------------------------------------
@dataclass
class AdmmOptions:
    """
    rho : penalty parameters, one per prior and a fourth for non-negativity
    norms : True for an L1 prior, False for squared L2, one per prior
    nonneg : constrain the latent image to be non-negative
    max_iter : iteration limit
    tol_abs, tol_rel : absolute / relative stopping tolerances
    varying_penalty : residual balancing of `rho`
    tau_incr, tau_decr, mu : residual balancing factors and ratio
    solver : 'cg' (warm-started conjugate gradients) or 'direct' (sparse LU)
    cg_tol, cg_maxiter : conjugate gradient settings
    """
    rho: Sequence[float] = (1.0, 1.0, 1.0, 1.0)
    norms: Sequence[bool] = (True, True, False)
    nonneg: bool = False
    max_iter: int = 500
    tol_abs: float = 1e-5
    tol_rel: float = 1e-4
    varying_penalty: bool = False
    tau_incr: float = 2.0
    tau_decr: float = 2.0
    mu: float = 10.0
    solver: str = "cg"
    cg_tol: float = 1e-6
    cg_maxiter: int = 200

    def __post_init__(self):
        if len(self.rho) != N_PRIORS + 1:
            raise ValueError(f"rho needs {N_PRIORS + 1} values (one per prior and one for non-negativity).")
        if len(self.norms) != N_PRIORS:
            raise ValueError(f"norms needs {N_PRIORS} values.")
        if any(r <= 0 for r in self.rho):
            raise ValueError("Penalty parameters must be positive.")
        if self.max_iter < 1:
            raise ValueError("max_iter must be at least 1.")
        if self.solver not in SOLVERS:
            raise ValueError(f"solver must be one of {SOLVERS}, not {self.solver!r}.")


@dataclass
class AdmmResult:
    latent: np.ndarray
    iterations: int
    converged: bool
    primal_residual: float = np.nan
    dual_residual: float = np.nan
    history: List[Tuple[float, float]] = field(default_factory=list)


# -----------------------------------------------------------------------------
# Prior operators
# -----------------------------------------------------------------------------
def _forward_difference(n: int) -> sparse.csr_matrix:
    """n×n forward difference with a zero last row."""
    if n < 2:
        return sparse.csr_matrix((n, n))
    d = sparse.diags([-np.ones(n), np.ones(n - 1)], [0, 1], shape=(n, n), format="lil")
    d[n - 1, n - 1] = 0.0
    return d.tocsr()


def spatial_gradient(image_shape: Sequence[int]) -> sparse.csr_matrix:
    """[Dx; Dy] on (H, W, n_bands) vectors."""
    h, w, nb = (int(s) for s in image_shape)
    I_b, I_w, I_h = sparse.identity(nb), sparse.identity(w), sparse.identity(h)
    Dx = sparse.kron(I_h, sparse.kron(_forward_difference(w), I_b))
    Dy = sparse.kron(_forward_difference(h), sparse.kron(I_w, I_b))
    return sparse.vstack([Dx, Dy]).tocsr()


def spectral_gradient(image_shape: Sequence[int]) -> sparse.csr_matrix:
    """Forward difference across bands on (H, W, n_bands) vectors."""
    h, w, nb = (int(s) for s in image_shape)
    return sparse.kron(sparse.identity(h * w), _forward_difference(nb)).tocsr()


def prior_operators(image_shape: Sequence[int]) -> List[sparse.csr_matrix]:
    """[G_0, G_1, G_2] for an (H, W, n_bands) latent image."""
    G0 = spatial_gradient(image_shape)
    Dl = spectral_gradient(image_shape)
    G1 = sparse.kron(sparse.identity(2), Dl) @ G0
    G2 = -(G0.T @ G0)
    return [G0, G1.tocsr(), G2.tocsr()]


def soft_threshold(v: np.ndarray, t: float) -> np.ndarray:
    return np.sign(v) * np.maximum(np.abs(v) - t, 0.0)


# -----------------------------------------------------------------------------
# Problem
# -----------------------------------------------------------------------------
class AdmmProblem:
    """
    Operators of one reconstruction problem, precomputed for repeated solves
    with different regularization weights.

    Parameters
    ----------
    A : (m, n) sparse matrix
    j : (m,) RAW data
    image_shape : (H, W, n_bands) of the latent image
    options : AdmmOptions
    color_weights : (3, n_bands), kept for criteria evaluated in colour space
    """

    def __init__(self, A, j: np.ndarray, image_shape: Sequence[int], options: AdmmOptions,
                 color_weights: np.ndarray | None = None):
        self.image_shape = tuple(int(s) for s in image_shape)
        n = int(np.prod(self.image_shape))
        j = image_to_vector(j)
        if A.shape[1] != n:
            raise ValueError(f"A has {A.shape[1]} columns but the latent image has {n} values.")
        if A.shape[0] != j.size:
            raise ValueError(f"A has {A.shape[0]} rows but there are {j.size} measurements.")
        self.A = sparse.csr_matrix(A)
        self.j = j
        self.options = options
        self.color_weights = color_weights
        self.G = prior_operators(self.image_shape)
        self.GtG = [(G.T @ G).tocsr() for G in self.G]
        self.AtA = (self.A.T @ self.A).tocsr()
        self.Atj = self.A.T @ j
        self.n = n
        self._ridge = 1e-10 * sparse.identity(n, format="csr")

    # ---------------------------------------------------------------- helpers
    def _check_weights(self, weights) -> np.ndarray:
        w = np.asarray(weights, dtype=np.float64).ravel()
        if w.size != N_PRIORS:
            raise ValueError(f"Expected {N_PRIORS} regularization weights, got {w.size}.")
        if np.any(w < 0):
            raise ValueError("Regularization weights must be non-negative.")
        return w

    def penalties(self, i: np.ndarray) -> np.ndarray:
        """
        Terms of the objective at `i`: [½‖Ai − j‖², R_0(G_0 i), R_1(G_1 i), R_2(G_2 i)],
        with R_k = ‖·‖₁ or ½‖·‖² as in the linear system of the i-update.
        """
        i = image_to_vector(i)
        out = np.empty(N_PRIORS + 1)
        out[0] = 0.5 * np.sum((self.A @ i - self.j) ** 2)
        for k, G in enumerate(self.G):
            g = G @ i
            out[k + 1] = np.sum(np.abs(g)) if self.options.norms[k] else 0.5 * np.sum(g**2)
        return out

    def _system(self, w: np.ndarray, split: List[int], rho: np.ndarray):
        S = self.AtA + self._ridge
        for k in range(N_PRIORS):
            if w[k] > 0 and not self.options.norms[k]:
                S = S + w[k] * self.GtG[k]
        for k in split:
            S = S + rho[k] * (self.GtG[k] if k < N_PRIORS else sparse.identity(self.n, format="csr"))
        return S.tocsc() if self.options.solver == "direct" else S.tocsr()

    def _linear_solver(self, S):
        if self.options.solver == "direct":
            solve = factorized(S)
            return lambda b, x0: solve(b)

        def solve_cg(b, x0):
            x, info = cg(S, b, x0=x0, rtol=self.options.cg_tol, maxiter=self.options.cg_maxiter)
            if info > 0:
                logger.debug("CG stopped at its iteration limit (%d).", info)
            elif info < 0:
                raise ValueError("Conjugate gradients failed: the system is not positive definite.")
            return x
        return solve_cg

    # ------------------------------------------------------------------ solve
    def solve(self, weights, init: np.ndarray | None = None) -> AdmmResult:
        """
        Reconstruct the latent image for one set of regularization weights.

        Parameters
        ----------
        weights : three non-negative weights, one per prior
        init : initial latent image (vector or (H, W, n_bands)), default zeros

        Returns
        -------
        AdmmResult with `latent` shaped (H, W, n_bands)
        """
        opt = self.options
        w = self._check_weights(weights)
        rho = np.asarray(opt.rho, dtype=np.float64).copy()
        split = [k for k in range(N_PRIORS) if w[k] > 0 and opt.norms[k]]
        if opt.nonneg:
            split.append(N_PRIORS)
        ops = {k: (self.G[k] if k < N_PRIORS else None) for k in split}

        def apply(k, x):
            return x if ops[k] is None else ops[k] @ x

        def apply_t(k, x):
            return x if ops[k] is None else ops[k].T @ x

        i = np.zeros(self.n) if init is None else image_to_vector(init).copy()
        if i.size != self.n:
            raise ValueError("The initial latent image has the wrong size.")

        S = self._system(w, split, rho)
        linsolve = self._linear_solver(S)

        if not split:
            i = linsolve(self.Atj, i)
            return AdmmResult(vector_to_image(i, self.image_shape), iterations=1, converged=True)

        z = {k: apply(k, i) for k in split}
        if N_PRIORS in z:
            z[N_PRIORS] = np.maximum(z[N_PRIORS], 0.0)
        u = {k: np.zeros_like(z[k]) for k in split}
        history = []
        converged = False
        r_norm = s_norm = np.nan

        for it in range(1, opt.max_iter + 1):
            rhs = self.Atj.copy()
            for k in split:
                rhs += rho[k] * apply_t(k, z[k] - u[k])
            i = linsolve(rhs, i)

            r_sq, s_sq, Gi_sq, z_sq, dual_sq = 0.0, 0.0, 0.0, 0.0, 0.0
            r_k, s_k = {}, {}
            for k in split:
                Gi = apply(k, i)
                z_old = z[k]
                v = Gi + u[k]
                z[k] = np.maximum(v, 0.0) if k == N_PRIORS else soft_threshold(v, w[k] / rho[k])
                u[k] += Gi - z[k]
                r = Gi - z[k]
                s = rho[k] * apply_t(k, z[k] - z_old)
                r_k[k], s_k[k] = np.linalg.norm(r), np.linalg.norm(s)
                r_sq += r_k[k] ** 2
                s_sq += s_k[k] ** 2
                Gi_sq += np.sum(Gi**2)
                z_sq += np.sum(z[k] ** 2)
                dual_sq += np.sum((rho[k] * apply_t(k, u[k])) ** 2)

            p = sum(z[k].size for k in split)
            r_norm, s_norm = np.sqrt(r_sq), np.sqrt(s_sq)
            eps_pri = np.sqrt(p) * opt.tol_abs + opt.tol_rel * max(np.sqrt(Gi_sq), np.sqrt(z_sq))
            eps_dual = np.sqrt(self.n) * opt.tol_abs + opt.tol_rel * np.sqrt(dual_sq)
            history.append((float(r_norm), float(s_norm)))
            logger.debug("ADMM iter %d: r=%.3e (eps %.3e), s=%.3e (eps %.3e)", it, r_norm, eps_pri, s_norm, eps_dual)
            if r_norm <= eps_pri and s_norm <= eps_dual:
                converged = True
                break

            if opt.varying_penalty:
                changed = False
                for k in split:
                    if r_k[k] > opt.mu * s_k[k]:
                        rho[k] *= opt.tau_incr
                        u[k] /= opt.tau_incr
                        changed = True
                    elif s_k[k] > opt.mu * r_k[k]:
                        rho[k] /= opt.tau_decr
                        u[k] *= opt.tau_decr
                        changed = True
                if changed:
                    S = self._system(w, split, rho)
                    linsolve = self._linear_solver(S)

        if not converged:
            logger.debug("ADMM reached max_iter=%d without converging.", opt.max_iter)
        return AdmmResult(
            vector_to_image(i, self.image_shape), iterations=it, converged=converged,
            primal_residual=float(r_norm), dual_residual=float(s_norm), history=history,
        )


def baek2017_algorithm2(
    A,
    j: np.ndarray,
    image_shape: Sequence[int],
    weights: Sequence[float],
    options: AdmmOptions,
    init: np.ndarray | None = None,
    color_weights: np.ndarray | None = None,
) -> AdmmResult:
    """
    One-shot reconstruction: build an `AdmmProblem` and solve it.

    Parameters
    ----------
    A : (H*W, H*W*n_bands) image-formation matrix (`forward_operator`)
    j : RAW data, (H, W) or (H*W,)
    image_shape : (H, W, n_bands)
    weights : three regularization weights
    options : AdmmOptions
    init : optional initial latent image
    """
    problem = AdmmProblem(A, j, image_shape, options, color_weights=color_weights)
    return problem.solve(weights, init=init)
