"""
lens_model.py - thick biconvex lens: dispersion, paraxial optics, scene layout

WHAT THIS MODULE DOES
---------------------
  • Sellmeier dispersion n(λ) for optical glasses (SCHOTT N-BK7 provided).
  • Paraxial thick-lens properties (focal lengths, image distance and
    magnification for an object distance) from reduced ray-transfer matrices.
  • Conversion of physical lens parameters (aperture radius, axial thickness,
    surface radii) into the sphere geometry used by the ray tracer.
  • A calibration "scene": a grid of point lights at one or more depths,
    with the image plane placed to focus one of those depths.

COORDINATES
-----------
The optical axis is z. Light travels from +z towards -z. The front sphere is
centred at the origin, so the front vertex sits at z = radius_front. The back
sphere is centred at z = d_lens and its vertex faces -z. The film is the
plane z = z_film (negative, behind the lens).

REFERENCES (short list)
-----------------------
• Hecht, E. (2017). *Optics* (5th ed.). Thick lenses, ray-transfer matrices.
• SCHOTT optical glass datasheet, N-BK7 Sellmeier coefficients.
• Smith, W. J. (2007). *Modern Optical Engineering* (4th ed.).

© 2025 Ali Pouya - Aberration Pipeline
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Callable, Sequence, Tuple
import numpy as np


# -----------------------------------------------------------------------------
# Glass dispersion
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class SellmeierConstants:
    """Three-term Sellmeier coefficients (C terms in µm²)."""
    B_1: float
    B_2: float
    B_3: float
    C_1: float
    C_2: float
    C_3: float


SCHOTT_N_BK7 = SellmeierConstants(
    B_1=1.03961212,
    B_2=0.231792344,
    B_3=1.01046945,
    C_1=0.00600069867,
    C_2=0.0200179144,
    C_3=103.560653,
)


def sellmeier_dispersion(wavelengths_nm, constants: SellmeierConstants = SCHOTT_N_BK7) -> np.ndarray:
    """
    Index of refraction from the Sellmeier equation:

        n(λ)^2 = 1 + Σ_i B_i λ^2 / (λ^2 - C_i),   λ in micrometres

    Parameters
    ----------
    wavelengths_nm : array_like
        Wavelengths in nanometres.
    constants : SellmeierConstants

    Returns
    -------
    n : ndarray, same shape as `wavelengths_nm`
    """
    lam = np.asarray(wavelengths_nm, dtype=np.float64)
    if np.any(lam <= 0):
        raise ValueError("Wavelengths must be positive.")
    lam2 = (lam * 1e-3) ** 2
    n2 = 1.0
    for B, C in ((constants.B_1, constants.C_1),
                 (constants.B_2, constants.C_2),
                 (constants.B_3, constants.C_3)):
        n2 = n2 + B * lam2 / (lam2 - C)
    return np.sqrt(n2)


# -----------------------------------------------------------------------------
# Paraxial thick-lens optics
# -----------------------------------------------------------------------------
# Reduced ray-transfer matrices act on (height y, reduced angle n·u):
#   refraction by a surface of power P : [[1, 0], [-P, 1]]
#   transfer over distance d in index n : [[1, d/n], [0, 1]]
# For a biconvex lens the front radius is positive and the back radius is
# negative in the usual sign convention, so with magnitudes R_f, R_b:
#   P_1 = (n_lens - n_front) / R_f,   P_2 = (n_lens - n_back) / R_b


def optics_from_lens(
    n_front: float,
    n_lens: float,
    n_back: float,
    radius_front: float,
    radius_back: float,
    thickness: float,
) -> Tuple[Callable[[float], Tuple[float, float]], float, float]:
    """
    Paraxial imaging properties of a thick biconvex lens.

    Parameters
    ----------
    n_front, n_lens, n_back : float
        Indices of refraction of object space, the lens, and image space.
    radius_front, radius_back : float
        Surface radii of curvature (positive magnitudes).
    thickness : float
        Axial thickness of the lens.

    Returns
    -------
    image_fn : callable
        image_fn(object_distance) -> (image_distance, magnification).
        The object distance is measured in front of the front vertex, the
        image distance behind the back vertex.
    f, f_prime : float
        Object-space and image-space effective focal lengths.
    """
    if radius_front <= 0 or radius_back <= 0:
        raise ValueError("Lens radii must be positive magnitudes for a biconvex lens.")
    if thickness < 0:
        raise ValueError("Lens thickness must be non-negative.")

    P1 = (n_lens - n_front) / radius_front
    P2 = (n_lens - n_back) / radius_back
    M = (
        np.array([[1.0, 0.0], [-P2, 1.0]])
        @ np.array([[1.0, thickness / n_lens], [0.0, 1.0]])
        @ np.array([[1.0, 0.0], [-P1, 1.0]])
    )
    A, B = M[0]
    C, D = M[1]
    power = -C
    if power == 0:
        raise ValueError("The lens has zero optical power.")
    f = n_front / power
    f_prime = n_back / power

    def image_fn(object_distance: float) -> Tuple[float, float]:
        s_o = float(object_distance)
        if np.isinf(s_o):
            return float(n_back * A / power), 0.0
        denom = C * s_o / n_front + D
        s_i = -n_back * (A * s_o / n_front + B) / denom
        magnification = A + s_i * C / n_back
        return float(s_i), float(magnification)

    return image_fn, float(f), float(f_prime)


# -----------------------------------------------------------------------------
# Parameters
# -----------------------------------------------------------------------------
@dataclass
class LensParams:
    """
    Physical description of a double-convex lens.

    lens_radius : radius of the lens aperture (same length unit as the radii)
    axial_thickness : thickness along the optical axis
    radius_front, radius_back : surface radii of curvature (magnitudes)
    ior_lens : index of refraction, scalar or one value per wavelength
    wavelengths : optional wavelengths (nm) matching `ior_lens`
    wavelengths_to_rgb : optional (n_wavelengths, 3) colours for display
    """
    lens_radius: float
    axial_thickness: float
    radius_front: float
    radius_back: float
    ior_lens: float | np.ndarray = 1.52
    wavelengths: np.ndarray | None = None
    wavelengths_to_rgb: np.ndarray | None = None


@dataclass
class RayParams:
    """
    Geometry and sampling for `double_spherical_lens`.

    source_position : (x, y, z) of the point light (z > front vertex)
    radius_front : radius of the front sphere (centred at the origin)
    theta_aperture_front : half-angle of the front cap about +z (radians)
    radius_back : radius of the back sphere (centred at (0, 0, d_lens))
    theta_aperture_back : half-angle of the back cap about -z (radians)
    d_lens : z-coordinate of the back sphere centre
    n_incident_rays : number of rays sampled on the front cap
    sample_random : random (True) or stratified (False) cap sampling
    ior_environment, ior_lens : indices of refraction
    z_film : z-coordinate of the image plane
    seed : RNG seed for random sampling
    """
    source_position: Sequence[float] = (0.0, 0.0, 10.0)
    radius_front: float = 2.0
    theta_aperture_front: float = np.pi / 6
    radius_back: float = 3.0
    theta_aperture_back: float = np.pi / 9
    d_lens: float = 2.5
    n_incident_rays: int = 10000
    sample_random: bool = False
    ior_environment: float = 1.0
    ior_lens: float = 1.52
    z_film: float = -10.0
    seed: int | None = 1234


@dataclass
class SceneParams:
    """
    Layout of point lights for dispersion calibration.

    theta_min, theta_max : range of field angles (radians) kept in the grid
    n_lights : grid size (nx, ny) at the focused depth
    light_distance_factor_focused : focused depth, in focal lengths
    light_distance_factor_larger : [factor, count] extra depths farther away
    light_distance_factor_smaller : [factor, count] extra depths closer
    preserve_angle_over_depths : keep field angles (scale x, y with depth)
    """
    theta_min: float = 0.0
    theta_max: float = np.deg2rad(20.0)
    n_lights: Tuple[int, int] = (5, 5)
    light_distance_factor_focused: float = 2.0
    light_distance_factor_larger: Tuple[float, int] = (4.0, 0)
    light_distance_factor_smaller: Tuple[float, int] = (1.5, 0)
    preserve_angle_over_depths: bool = True


# -----------------------------------------------------------------------------
# Lens → ray-tracing geometry
# -----------------------------------------------------------------------------
def lens_params_to_ray_params(ray_params: RayParams, lens_params: LensParams, z_film: float) -> RayParams:
    """
    Fill the sphere geometry of `ray_params` from physical lens parameters.

    The front vertex sits at z = radius_front; the back vertex at
    z = radius_front - axial_thickness. Raises ValueError if the aperture
    does not fit on either surface, or if the lens would have a negative
    edge thickness.
    """
    a = float(lens_params.lens_radius)
    Rf = float(lens_params.radius_front)
    Rb = float(lens_params.radius_back)
    t = float(lens_params.axial_thickness)
    if a <= 0 or t <= 0:
        raise ValueError("Lens radius and axial thickness must be positive.")
    if a > Rf or a > Rb:
        raise ValueError("The lens aperture radius exceeds a surface radius of curvature.")

    sag_front = Rf - np.sqrt(Rf**2 - a**2)
    sag_back = Rb - np.sqrt(Rb**2 - a**2)
    if sag_front + sag_back > t:
        raise ValueError(
            f"Negative edge thickness: sags {sag_front:.4g} + {sag_back:.4g} exceed "
            f"the axial thickness {t:.4g}."
        )

    return replace(
        ray_params,
        radius_front=Rf,
        theta_aperture_front=float(np.arcsin(a / Rf)),
        radius_back=Rb,
        theta_aperture_back=float(np.arcsin(a / Rb)),
        d_lens=Rf - t + Rb,
        z_film=float(z_film),
    )


def front_vertex_z(lens_params: LensParams) -> float:
    return float(lens_params.radius_front)


def back_vertex_z(lens_params: LensParams) -> float:
    return float(lens_params.radius_front - lens_params.axial_thickness)


# -----------------------------------------------------------------------------
# Calibration scene
# -----------------------------------------------------------------------------
def _extra_depths(focused: float, extra: Sequence[float]) -> np.ndarray:
    factor, count = float(extra[0]), int(extra[1])
    if count <= 0:
        return np.zeros(0)
    return np.linspace(focused, factor, count + 1)[1:]


def imaging_scenario(
    lens_params: LensParams,
    ior_environment: float,
    scene_params: SceneParams,
) -> Tuple[np.ndarray, float, np.ndarray, np.ndarray]:
    """
    Point lights and image plane for a calibration simulation.

    Parameters
    ----------
    lens_params : LensParams
        `ior_lens` must be a scalar (the reference wavelength).
    ior_environment : float
    scene_params : SceneParams

    Returns
    -------
    X_lights : (n, 3) ndarray
        Positions of all grid lights, at every depth.
    z_film : float
        Image plane focusing the lights at the focused depth.
    lights_filter : (n,) bool ndarray
        Lights whose field angle lies in [theta_min, theta_max].
    depth_factors : (n,) ndarray
        Depth of each light in focal lengths.
    """
    ior_lens = np.asarray(lens_params.ior_lens, dtype=np.float64)
    if ior_lens.size != 1:
        raise ValueError("imaging_scenario() expects a single lens index of refraction.")
    image_fn, f, _ = optics_from_lens(
        ior_environment, float(ior_lens), ior_environment,
        lens_params.radius_front, lens_params.radius_back, lens_params.axial_thickness,
    )
    if f <= 0:
        raise ValueError("The lens does not converge light.")

    focused = float(scene_params.light_distance_factor_focused)
    depth_list = np.concatenate([
        [focused],
        _extra_depths(focused, scene_params.light_distance_factor_larger),
        _extra_depths(focused, scene_params.light_distance_factor_smaller),
    ])

    # Image plane focuses the on-axis point at the focused depth
    s_i, _ = image_fn(focused * f)
    z_film = back_vertex_z(lens_params) - s_i

    nx, ny = (int(n) for n in scene_params.n_lights)
    D_focus = focused * f
    half_w = D_focus * np.tan(scene_params.theta_max)
    gx = np.linspace(-half_w, half_w, nx) if nx > 1 else np.zeros(1)
    gy = np.linspace(-half_w, half_w, ny) if ny > 1 else np.zeros(1)
    xx, yy = np.meshgrid(gx, gy, indexing="xy")
    xy_focus = np.stack([xx.ravel(), yy.ravel()], axis=1)

    angles = np.arctan2(np.hypot(xy_focus[:, 0], xy_focus[:, 1]), D_focus)
    in_field = (angles >= scene_params.theta_min - 1e-12) & (angles <= scene_params.theta_max + 1e-12)

    z0 = front_vertex_z(lens_params)
    X_parts, filt_parts, depth_parts = [], [], []
    for factor in depth_list:
        scale = factor / focused if scene_params.preserve_angle_over_depths else 1.0
        xy = xy_focus * scale
        z = np.full((xy.shape[0], 1), z0 + factor * f)
        X_parts.append(np.hstack([xy, z]))
        filt_parts.append(in_field)
        depth_parts.append(np.full(xy.shape[0], factor))

    return (
        np.vstack(X_parts),
        float(z_film),
        np.concatenate(filt_parts),
        np.concatenate(depth_parts),
    )
