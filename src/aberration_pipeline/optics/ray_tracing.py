"""
ray_tracing.py - point source → thick biconvex lens → film, as irradiance

WHAT THIS MODULE DOES
---------------------
  1) Sample the front spherical cap of the lens uniformly by area
     (random, or stratified in (cos θ, φ) for reproducible grids).
  2) Trace each ray from the point source to its sample point, refract with
     the vector form of Snell's law, intersect the back sphere, refract out,
     and intersect the film plane.
  3) Give each ray the flux it carries from an isotropic unit-intensity
     source: cos(incidence) / r^2 · dA.
  4) Densify the scattered film hits into an irradiance image by flux
     binning (irradiance = flux per unit area).

Rays are dropped when they hit the front surface from behind, leave the lens
through its edge instead of the back cap, undergo total internal reflection,
or never reach the film.

REFERENCES (short list)
-----------------------
• Line-sphere intersection: https://en.wikipedia.org/wiki/Line%E2%80%93sphere_intersection
• Sphere point picking: http://mathworld.wolfram.com/SpherePointPicking.html
• Pharr, Jakob & Humphreys (2016). *Physically Based Rendering* (3rd ed.),
  vector refraction.
"""

from __future__ import annotations
from dataclasses import dataclass
import logging
from typing import Sequence, Tuple
import numpy as np

from .lens_model import RayParams

logger = logging.getLogger(__name__)


@dataclass
class RayTraceResult:
    """
    image_position : (n, 2) film-plane (x, y) of each surviving ray
    ray_irradiance : (n,) flux carried by each ray
    incident_position_polar : (n, 2) (θ, φ) of each ray on the front cap
    incident_position_cartesian : (n, 3) entry point on the front cap
    """
    image_position: np.ndarray
    ray_irradiance: np.ndarray
    incident_position_polar: np.ndarray
    incident_position_cartesian: np.ndarray


# -----------------------------------------------------------------------------
# Geometry helpers
# -----------------------------------------------------------------------------
def sample_spherical_cap(
    radius: float,
    theta_max: float,
    n: int,
    random: bool = False,
    rng: np.random.Generator | None = None,
) -> Tuple[np.ndarray, np.ndarray, float]:
    """
    Uniform-by-area samples on the cap {θ <= theta_max} of a sphere about +z.

    Returns
    -------
    points : (n, 3) ndarray
    polar : (n, 2) ndarray of (θ, φ)
    dA : float, area represented by each sample
    """
    n = int(n)
    if n < 1:
        raise ValueError("At least one incident ray is required.")
    cos_min = np.cos(theta_max)
    if random:
        rng = rng or np.random.default_rng()
        u = rng.uniform(cos_min, 1.0, n)
        phi = rng.uniform(0.0, 2.0 * np.pi, n)
    else:
        # Stratified grid, cell centres in (cos θ, φ)
        n_u = max(1, int(np.ceil(np.sqrt(n))))
        n_phi = max(1, int(np.ceil(n / n_u)))
        u_c = cos_min + (np.arange(n_u) + 0.5) * (1.0 - cos_min) / n_u
        phi_c = (np.arange(n_phi) + 0.5) * 2.0 * np.pi / n_phi
        uu, pp = np.meshgrid(u_c, phi_c, indexing="ij")
        u, phi = uu.ravel(), pp.ravel()

    theta = np.arccos(np.clip(u, -1.0, 1.0))
    sin_t = np.sin(theta)
    points = radius * np.stack([sin_t * np.cos(phi), sin_t * np.sin(phi), np.cos(theta)], axis=1)
    cap_area = 2.0 * np.pi * radius**2 * (1.0 - cos_min)
    return points, np.stack([theta, phi], axis=1), cap_area / u.size


def refract(directions: np.ndarray, normals: np.ndarray, eta: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Vector Snell refraction.

    `normals` must face against the incoming `directions` (n·d < 0);
    `eta` = n_incident / n_transmitted. Returns (transmitted directions,
    valid mask); invalid rows are totally internally reflected.
    """
    cos_i = -np.einsum("ij,ij->i", normals, directions)
    k = 1.0 - eta**2 * (1.0 - cos_i**2)
    valid = k >= 0.0
    root = np.sqrt(np.where(valid, k, 0.0))
    t = eta * directions + (eta * cos_i - root)[:, None] * normals
    t /= np.linalg.norm(t, axis=1, keepdims=True)
    return t, valid


def _far_sphere_intersection(origins: np.ndarray, directions: np.ndarray, center, radius: float) -> np.ndarray:
    """Distance along each ray to the larger root of the ray-sphere equation (NaN if none)."""
    oc = origins - np.asarray(center, dtype=np.float64)
    b = np.einsum("ij,ij->i", directions, oc)
    c = np.einsum("ij,ij->i", oc, oc) - radius**2
    disc = b**2 - c
    s = -b + np.sqrt(np.where(disc >= 0.0, disc, np.nan))
    return s


# -----------------------------------------------------------------------------
# Ray tracing
# -----------------------------------------------------------------------------
def double_spherical_lens(ray_params: RayParams) -> RayTraceResult:
    """
    Trace rays from a point source through a double spherical lens onto film.

    Parameters
    ----------
    ray_params : RayParams

    Returns
    -------
    RayTraceResult
    """
    src = np.asarray(ray_params.source_position, dtype=np.float64).reshape(3)
    Rf = float(ray_params.radius_front)
    Rb = float(ray_params.radius_back)
    c_back = np.array([0.0, 0.0, float(ray_params.d_lens)])
    n_env = float(ray_params.ior_environment)
    n_lens = float(ray_params.ior_lens)
    if np.linalg.norm(src) <= Rf:
        raise ValueError("The light source lies inside the front lens sphere.")
    if ray_params.z_film >= c_back[2] - Rb:
        raise ValueError("The film must lie behind the back vertex of the lens.")

    rng = np.random.default_rng(ray_params.seed)
    points, polar, dA = sample_spherical_cap(
        Rf, ray_params.theta_aperture_front, ray_params.n_incident_rays,
        random=ray_params.sample_random, rng=rng,
    )

    # 1) Source → front surface
    to_pt = points - src
    r = np.linalg.norm(to_pt, axis=1)
    d_in = to_pt / r[:, None]
    normals_front = points / Rf
    cos_inc = -np.einsum("ij,ij->i", normals_front, d_in)
    keep = cos_inc > 0.0
    flux = np.where(keep, cos_inc / np.maximum(r, 1e-300) ** 2 * dA, 0.0)

    # 2) Refraction into the lens
    d_lens, ok = refract(d_in, normals_front, n_env / n_lens)
    keep &= ok

    # 3) Exit through the back cap, not the front sphere
    s_back = _far_sphere_intersection(points, d_lens, c_back, Rb)
    s_front = -2.0 * np.einsum("ij,ij->i", d_lens, points)
    keep &= np.isfinite(s_back) & (s_back > 0.0)
    keep &= ~((s_front > 1e-12) & (s_front < s_back))
    s_back = np.where(keep, s_back, 0.0)
    q = points + s_back[:, None] * d_lens
    cos_back = (c_back[2] - q[:, 2]) / Rb
    keep &= cos_back >= np.cos(ray_params.theta_aperture_back) - 1e-12

    # 4) Refraction out of the lens
    normals_back = (c_back - q) / Rb
    d_out, ok = refract(d_lens, normals_back, n_lens / n_env)
    keep &= ok

    # 5) Film plane
    keep &= d_out[:, 2] < 0.0
    s_film = np.where(keep, (ray_params.z_film - q[:, 2]) / np.where(keep, d_out[:, 2], -1.0), 0.0)
    hits = q + s_film[:, None] * d_out

    n_kept = int(keep.sum())
    logger.debug("Traced %d rays, %d reached the film.", points.shape[0], n_kept)
    if n_kept == 0:
        logger.warning("No rays reached the film for source %s.", src.tolist())

    return RayTraceResult(
        image_position=hits[keep, :2],
        ray_irradiance=flux[keep],
        incident_position_polar=polar[keep],
        incident_position_cartesian=points[keep],
    )


# -----------------------------------------------------------------------------
# Irradiance density estimation
# -----------------------------------------------------------------------------
def auto_image_bounds(image_position: np.ndarray, margin: float = 0.1) -> np.ndarray:
    """
    Square bounds [x, y, width, height] enclosing all positions plus a margin
    (fraction of the span on each side).
    """
    if image_position.size == 0:
        raise ValueError("Cannot determine image bounds without any rays.")
    lo = image_position.min(axis=0)
    hi = image_position.max(axis=0)
    span = float(max(hi[0] - lo[0], hi[1] - lo[1]))
    if span <= 0.0:
        span = max(1e-6, 1e-6 * float(np.abs(lo).max()))
    centre = 0.5 * (lo + hi)
    side = span * (1.0 + 2.0 * margin)
    return np.array([centre[0] - side / 2, centre[1] - side / 2, side, side])


def densify_rays(
    image_position: np.ndarray,
    ray_irradiance: np.ndarray,
    image_bounds: Sequence[float] | None,
    image_sampling: Sequence[int],
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Bin ray flux into an irradiance image.

    Parameters
    ----------
    image_position : (n, 2) ndarray
    ray_irradiance : (n,) ndarray
    image_bounds : [x, y, width, height] or None
        Bottom-left corner and size in world units. None → `auto_image_bounds`.
    image_sampling : (rows, cols)

    Returns
    -------
    I : (rows, cols) float ndarray
        Irradiance; row 0 is the top of the image (largest y).
    mask : (rows, cols) bool ndarray
        Pixels that received at least one ray.
    image_bounds : (4,) ndarray
    """
    rows, cols = (int(v) for v in image_sampling)
    if rows < 1 or cols < 1:
        raise ValueError("image_sampling must be positive.")
    if image_position.shape[0] != ray_irradiance.shape[0]:
        raise ValueError("Each ray needs one position and one irradiance value.")
    bounds = auto_image_bounds(image_position) if image_bounds is None else np.asarray(image_bounds, dtype=np.float64)

    x_edges = np.linspace(bounds[0], bounds[0] + bounds[2], cols + 1)
    y_edges = np.linspace(bounds[1], bounds[1] + bounds[3], rows + 1)
    flux, _, _ = np.histogram2d(
        image_position[:, 1], image_position[:, 0],
        bins=[y_edges, x_edges], weights=ray_irradiance,
    )
    counts, _, _ = np.histogram2d(image_position[:, 1], image_position[:, 0], bins=[y_edges, x_edges])

    pixel_area = (bounds[2] / cols) * (bounds[3] / rows)
    I = np.flipud(flux) / pixel_area
    mask = np.flipud(counts) > 0
    return I, mask, bounds


def peak_irradiance(I: np.ndarray, image_bounds: Sequence[float]) -> Tuple[np.ndarray, float]:
    """World (x, y) of the brightest pixel centre, and its irradiance."""
    rows, cols = I.shape
    r, c = np.unravel_index(int(np.argmax(I)), I.shape)
    x = image_bounds[0] + (c + 0.5) * image_bounds[2] / cols
    y = image_bounds[1] + (rows - r - 0.5) * image_bounds[3] / rows
    return np.array([x, y]), float(I[r, c])
