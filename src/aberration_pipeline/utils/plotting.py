"""
plotting.py — figures saved by the workflows (matplotlib, Agg backend).

Every function draws one figure, saves it as PNG and closes it.
"""

from __future__ import annotations
from pathlib import Path
from typing import Sequence
import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402


def _save(fig, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(path, dpi=150)
    plt.close(fig)
    return path


def plot_irradiance(I: np.ndarray, image_bounds: Sequence[float], path: str | Path, title: str = "Irradiance") -> Path:
    """Irradiance image in world coordinates."""
    fig, ax = plt.subplots(figsize=(5, 4))
    x, y, w, h = image_bounds
    im = ax.imshow(I, cmap="magma", extent=(x, x + w, y, y + h))
    fig.colorbar(im, ax=ax)
    ax.set_title(title)
    ax.set_xlabel("x")
    ax.set_ylabel("y")
    return _save(fig, path)


def plot_quantum_efficiency(bands: np.ndarray, qe: np.ndarray, path: str | Path) -> Path:
    """(n, 3) RGB quantum efficiency curves, in percent."""
    fig, ax = plt.subplots(figsize=(6, 4))
    for c, color in enumerate(("r", "g", "b")):
        ax.plot(bands, 100 * qe[:, c], color, label=("Red", "Green", "Blue")[c])
    ax.set_xlabel("Wavelength [nm]")
    ax.set_ylabel("Quantum efficiency [%]")
    ax.legend()
    ax.grid(True, alpha=0.3)
    return _save(fig, path)


def plot_disparity(X: np.ndarray, disparity: np.ndarray, path: str | Path, scale: float = 1.0,
                   title: str = "Disparity") -> Path:
    """Quiver plot of (n, 2) disparity vectors at (n, 2) control points."""
    fig, ax = plt.subplots(figsize=(5, 5))
    ok = np.all(np.isfinite(X), axis=1) & np.all(np.isfinite(disparity), axis=1)
    ax.quiver(X[ok, 0], X[ok, 1], scale * disparity[ok, 0], scale * disparity[ok, 1],
              angles="xy", scale_units="xy", scale=1.0)
    ax.set_aspect("equal")
    ax.set_title(f"{title} (×{scale:g})")
    return _save(fig, path)


def plot_search_path(err: np.ndarray, pareto: np.ndarray, path_err: np.ndarray, origin: np.ndarray,
                     path: str | Path, dims: Sequence[int] = (1, 0)) -> Path:
    """
    Two dimensions of the sampled L-hypersurface (log scale), its Pareto
    front, the weight-search path and the MDC origin.
    """
    a, b = dims
    fig, ax = plt.subplots(figsize=(6, 5))
    ax.loglog(err[~pareto, a], err[~pareto, b], ".", color="0.6", label="Samples")
    ax.loglog(err[pareto, a], err[pareto, b], "o", mfc="none", label="Pareto front")
    ax.loglog(path_err[:, a], path_err[:, b], "-x", label="Search path")
    if np.all(np.isfinite(origin[[a, b]])) and np.all(origin[[a, b]] > 0):
        ax.loglog(origin[a], origin[b], "k*", ms=10, label="MDC origin")
    ax.set_xlabel(f"penalty {a}" if a else "residual")
    ax.set_ylabel(f"penalty {b}" if b else "residual")
    ax.legend()
    ax.grid(True, which="both", alpha=0.3)
    return _save(fig, path)


def plot_image_montage(images: Sequence[np.ndarray], titles: Sequence[str], path: str | Path) -> Path:
    """Side-by-side [0, 1] images (greyscale or RGB)."""
    fig = plt.figure(figsize=(4 * len(images), 4))
    for i, (im, title) in enumerate(zip(images, titles), start=1):
        ax = fig.add_subplot(1, len(images), i)
        ax.imshow(np.clip(im, 0, 1), cmap="gray" if im.ndim == 2 else None, vmin=0, vmax=1)
        ax.set_title(title)
        ax.axis("off")
    return _save(fig, path)
