"""
Optics — lens model and ray tracer
==================================

Paraxial thick-lens values are checked against hand-computed ray-transfer
matrices; the ray tracer against energy conservation, symmetry and focus.

Run with:
    pytest tests/test_optics.py -v
"""

from dataclasses import replace

import numpy as np
import pytest

from aberration_pipeline.optics.lens_model import (
    LensParams,
    RayParams,
    SceneParams,
    back_vertex_z,
    imaging_scenario,
    lens_params_to_ray_params,
    optics_from_lens,
    sellmeier_dispersion,
)
from aberration_pipeline.optics.ray_tracing import (
    auto_image_bounds,
    densify_rays,
    double_spherical_lens,
    peak_irradiance,
    refract,
    sample_spherical_cap,
)


def _weighted_rms_radius(positions, weights):
    centre = np.average(positions, axis=0, weights=weights)
    r2 = np.sum((positions - centre) ** 2, axis=1)
    return float(np.sqrt(np.average(r2, weights=weights)))


# ============================================================
# 1. Glass dispersion
# ============================================================

class TestSellmeier:
    """SCHOTT N-BK7 catalogue values."""

    def test_nd_587nm(self):
        """n_d = 1.5168 at the helium d-line."""
        n = sellmeier_dispersion(587.6)
        assert abs(float(n) - 1.5168) < 5e-4

    def test_abbe_number(self):
        """V_d = (n_d - 1) / (n_F - n_C) = 64.17."""
        n_d, n_F, n_C = sellmeier_dispersion([587.6, 486.1, 656.3])
        assert abs((n_d - 1) / (n_F - n_C) - 64.17) < 0.5

    def test_normal_dispersion(self):
        n = sellmeier_dispersion(np.linspace(400, 700, 31))
        assert np.all(np.diff(n) < 0)

    def test_scalar_input(self):
        n = sellmeier_dispersion(550.0)
        assert n.shape == ()
        assert float(n) == pytest.approx(float(sellmeier_dispersion([550.0])[0]))

    def test_shape_preserved(self):
        assert sellmeier_dispersion(np.ones((2, 3)) * 550).shape == (2, 3)

    def test_rejects_non_positive_wavelength(self):
        with pytest.raises(ValueError):
            sellmeier_dispersion([500.0, 0.0])


# ============================================================
# 2. Paraxial optics
# ============================================================

class TestParaxialOptics:
    """Thin limit: t = 0, n = 1.5, R = 100 → f = 100."""

    def test_thin_lens_focal_length(self):
        _, f, f_prime = optics_from_lens(1.0, 1.5, 1.0, 100.0, 100.0, 0.0)
        assert f == pytest.approx(100.0)
        assert f_prime == pytest.approx(100.0)

    def test_thin_lens_2f_imaging(self):
        image_fn, _, _ = optics_from_lens(1.0, 1.5, 1.0, 100.0, 100.0, 0.0)
        s_i, m = image_fn(200.0)
        assert s_i == pytest.approx(200.0)
        assert m == pytest.approx(-1.0)

    def test_object_at_infinity(self):
        image_fn, _, _ = optics_from_lens(1.0, 1.5, 1.0, 100.0, 100.0, 0.0)
        s_i, m = image_fn(np.inf)
        assert s_i == pytest.approx(100.0)
        assert m == 0.0

    def test_thickness_lengthens_focal_length(self):
        """Separating the surfaces of a biconvex lens lowers its power: P = P1 + P2 - P1 P2 t / n."""
        _, f_thin, _ = optics_from_lens(1.0, 1.5, 1.0, 10.0, 10.0, 0.0)
        _, f_thick, _ = optics_from_lens(1.0, 1.5, 1.0, 10.0, 10.0, 2.0)
        assert f_thick > f_thin

    def test_rejects_bad_geometry(self):
        with pytest.raises(ValueError):
            optics_from_lens(1.0, 1.5, 1.0, -10.0, 10.0, 1.0)
        with pytest.raises(ValueError):
            optics_from_lens(1.0, 1.5, 1.0, 10.0, 10.0, -1.0)


# ============================================================
# 3. Lens geometry and calibration scene
# ============================================================

class TestLensGeometry:
    """Conversion of physical lens parameters to ray-tracer spheres."""

    def test_sphere_layout(self):
        lens = LensParams(lens_radius=1.5, axial_thickness=2.0, radius_front=4.29, radius_back=4.29)
        rp = lens_params_to_ray_params(RayParams(), lens, z_film=-5.0)
        assert rp.d_lens == pytest.approx(4.29 - 2.0 + 4.29)
        assert rp.theta_aperture_front == pytest.approx(np.arcsin(1.5 / 4.29))
        assert rp.z_film == -5.0
        assert back_vertex_z(lens) == pytest.approx(rp.d_lens - rp.radius_back)

    def test_negative_edge_thickness(self):
        lens = LensParams(lens_radius=3.0, axial_thickness=0.5, radius_front=4.0, radius_back=4.0)
        with pytest.raises(ValueError, match="edge thickness"):
            lens_params_to_ray_params(RayParams(), lens, z_film=-5.0)

    def test_aperture_larger_than_radius(self):
        lens = LensParams(lens_radius=5.0, axial_thickness=8.0, radius_front=4.0, radius_back=40.0)
        with pytest.raises(ValueError):
            lens_params_to_ray_params(RayParams(), lens, z_film=-5.0)


class TestImagingScenario:
    """Grid of point lights and the image plane."""

    lens = LensParams(lens_radius=1.5, axial_thickness=2.0, radius_front=4.29, radius_back=4.29, ior_lens=1.5168)

    def test_field_angle_filter(self):
        """In a 3x3 grid reaching theta_max at the edge midpoints, the corners fall outside."""
        X, _, keep, _ = imaging_scenario(self.lens, 1.0, SceneParams(n_lights=(3, 3)))
        assert X.shape == (9, 3)
        assert keep.sum() == 5

    def test_extra_depths(self):
        scene = SceneParams(n_lights=(3, 3), light_distance_factor_larger=(4.0, 2))
        X, _, keep, depths = imaging_scenario(self.lens, 1.0, scene)
        assert X.shape == (27, 3)
        assert sorted(np.unique(depths)) == [2.0, 3.0, 4.0]
        assert keep.sum() == 15

    def test_film_behind_lens(self):
        _, z_film, _, _ = imaging_scenario(self.lens, 1.0, SceneParams(n_lights=(1, 1)))
        assert z_film < back_vertex_z(self.lens)

    def test_rejects_multiple_indices(self):
        lens = replace(self.lens, ior_lens=np.array([1.51, 1.52]))
        with pytest.raises(ValueError):
            imaging_scenario(lens, 1.0, SceneParams())


# ============================================================
# 4. Ray-tracing primitives
# ============================================================

class TestCapSampling:
    """Uniform-by-area samples on a spherical cap."""

    def test_stratified_on_cap(self):
        pts, polar, dA = sample_spherical_cap(2.0, np.pi / 6, 100)
        assert pts.shape == (100, 3)
        assert np.allclose(np.linalg.norm(pts, axis=1), 2.0)
        assert np.all(polar[:, 0] <= np.pi / 6 + 1e-12)
        assert dA * 100 == pytest.approx(2 * np.pi * 4.0 * (1 - np.cos(np.pi / 6)))

    def test_random_reproducible(self):
        a, _, _ = sample_spherical_cap(1.0, 0.3, 50, random=True, rng=np.random.default_rng(3))
        b, _, _ = sample_spherical_cap(1.0, 0.3, 50, random=True, rng=np.random.default_rng(3))
        assert np.array_equal(a, b)

    def test_rejects_zero_rays(self):
        with pytest.raises(ValueError):
            sample_spherical_cap(1.0, 0.3, 0)


class TestRefraction:
    """Vector Snell's law."""

    def test_normal_incidence(self):
        d = np.array([[0.0, 0.0, -1.0]])
        n = np.array([[0.0, 0.0, 1.0]])
        t, ok = refract(d, n, 1.0 / 1.5)
        assert ok[0]
        assert np.allclose(t, d)

    def test_snell_angle(self):
        a = np.deg2rad(30.0)
        d = np.array([[np.sin(a), 0.0, -np.cos(a)]])
        n = np.array([[0.0, 0.0, 1.0]])
        t, ok = refract(d, n, 1.0 / 1.5)
        assert ok[0]
        assert t[0, 0] == pytest.approx(np.sin(a) / 1.5)
        assert np.linalg.norm(t[0]) == pytest.approx(1.0)

    def test_total_internal_reflection(self):
        a = np.deg2rad(60.0)
        d = np.array([[np.sin(a), 0.0, -np.cos(a)]])
        n = np.array([[0.0, 0.0, 1.0]])
        _, ok = refract(d, n, 1.5)
        assert not ok[0]


# ============================================================
# 5. Tracing through the lens
# ============================================================

class TestDoubleSphericalLens:
    """End-to-end traces with the default and a small-aperture lens."""

    def test_on_axis_psf_centred(self):
        res = double_spherical_lens(RayParams(n_incident_rays=2500))
        assert res.image_position.shape[0] > 0
        centre = np.average(res.image_position, axis=0, weights=res.ray_irradiance)
        assert np.allclose(centre, 0.0, atol=1e-9)

    def test_positive_flux(self):
        res = double_spherical_lens(RayParams(n_incident_rays=400))
        assert np.all(res.ray_irradiance > 0)
        assert res.incident_position_cartesian.shape == (res.image_position.shape[0], 3)

    def test_focus_at_paraxial_image_plane(self):
        """The spot is much smaller on the computed film plane than 1 unit behind it."""
        n_d = float(sellmeier_dispersion(587.6))
        lens = LensParams(lens_radius=0.5, axial_thickness=2.0, radius_front=4.29, radius_back=4.29, ior_lens=n_d)
        X, z_film, _, _ = imaging_scenario(lens, 1.0, SceneParams(n_lights=(1, 1)))
        rp = lens_params_to_ray_params(
            RayParams(source_position=X[0], n_incident_rays=2000, ior_lens=n_d), lens, z_film)

        focused = double_spherical_lens(rp)
        defocused = double_spherical_lens(replace(rp, z_film=z_film - 1.0))
        r_focus = _weighted_rms_radius(focused.image_position, focused.ray_irradiance)
        r_defocus = _weighted_rms_radius(defocused.image_position, defocused.ray_irradiance)
        assert r_focus < 0.3 * r_defocus

    def test_source_inside_lens(self):
        with pytest.raises(ValueError):
            double_spherical_lens(RayParams(source_position=(0.0, 0.0, 1.0)))

    def test_film_in_front_of_back_vertex(self):
        with pytest.raises(ValueError):
            double_spherical_lens(RayParams(z_film=0.0))


# ============================================================
# 6. Irradiance images
# ============================================================

class TestDensifyRays:
    """Flux binning into an irradiance image."""

    def test_flux_conserved(self):
        res = double_spherical_lens(RayParams(n_incident_rays=2500))
        I, mask, bounds = densify_rays(res.image_position, res.ray_irradiance, None, (32, 32))
        pixel_area = bounds[2] / 32 * bounds[3] / 32
        assert I.sum() * pixel_area == pytest.approx(res.ray_irradiance.sum(), rel=1e-9)
        assert np.array_equal(mask, I > 0)

    def test_row_zero_is_top(self):
        I, _, _ = densify_rays(np.array([[0.1, 0.9]]), np.array([1.0]), [0.0, 0.0, 1.0, 1.0], (2, 2))
        assert I[0, 0] == pytest.approx(4.0)
        assert I.sum() == pytest.approx(4.0)

    def test_peak_position(self):
        I, _, bounds = densify_rays(np.array([[0.1, 0.9]]), np.array([1.0]), [0.0, 0.0, 1.0, 1.0], (2, 2))
        xy, value = peak_irradiance(I, bounds)
        assert np.allclose(xy, [0.25, 0.75])
        assert value == pytest.approx(4.0)

    def test_auto_bounds_enclose_rays(self):
        pos = np.array([[0.0, 0.0], [2.0, 1.0]])
        b = auto_image_bounds(pos)
        assert b[0] < 0.0 and b[1] < 0.0
        assert b[0] + b[2] > 2.0 and b[1] + b[3] > 1.0
        assert b[2] == b[3]

    def test_no_rays(self):
        with pytest.raises(ValueError):
            auto_image_bounds(np.zeros((0, 2)))
