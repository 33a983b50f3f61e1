"""
Calibration — disk centres, polynomial dispersion models and warps
==================================================================

Run with:
    pytest tests/test_calibration.py -v
"""

import numpy as np
import pytest

from aberration_pipeline.calibration.disk_fitting import (
    DiskFitOptions,
    find_and_fit_disks,
    pixel_to_world,
)
from aberration_pipeline.calibration.dispersion_model import (
    ModelSpace,
    PolynomialDispersion,
    dispersion_rms,
    dispersion_to_matrix,
    make_dispersion_for_image,
    match_centers,
    model_space_transform,
    polynomial_exponents,
    stats_to_disparity,
    warp_image,
    xy_polyfit_channels,
    xylambda_polyfit,
)
from aberration_pipeline.scenes.scene_generator import generate_disk_chart


def _grid_points(n=4, lo=0.0, hi=60.0):
    g = np.linspace(lo, hi, n)
    xx, yy = np.meshgrid(g, g)
    return np.column_stack([xx.ravel(), yy.ravel()])


def _constant_shift_model(shifts, from_reference=False, model_space=None):
    """RGB model whose channel c is displaced by shifts[c] everywhere."""
    shifts = np.asarray(shifts, dtype=float)
    pts = _grid_points()
    X = np.repeat(pts[:, None, :], shifts.shape[0], axis=1)
    disparity = np.broadcast_to(shifts[None, :, :], X.shape).copy()
    return xy_polyfit_channels(X, disparity, max_degree_xy=1, from_reference=from_reference,
                               n_folds=4, model_space=model_space)


# ============================================================
# 1. Disk fitting
# ============================================================

class TestFindAndFitDisks:
    """Blob centres on synthetic charts with known geometry."""

    def test_greyscale_centres(self):
        chart, truth = generate_disk_chart(size=(96, 96), n_disks=(3, 3), radius=6.0)
        res = find_and_fit_disks(chart[..., 1], None, None, None, 0, DiskFitOptions())
        assert res.centers.shape == (9, 1, 2)
        found = match_centers(truth[:, 1], res.centers[:, 0])
        assert np.all(np.abs(found - truth[:, 1]) < 0.05)
        assert np.allclose(res.ellipses[:, 2], res.ellipses[:, 3], rtol=0.05)

    def test_dark_disks(self):
        chart, truth = generate_disk_chart(size=(96, 96), n_disks=(3, 3), radius=6.0, bright=False)
        res = find_and_fit_disks(chart[..., 0], None, None, None, 0, DiskFitOptions(bright_disks=False))
        found = match_centers(truth[:, 0], res.centers[:, 0])
        assert np.all(np.abs(found - truth[:, 0]) < 0.05)

    def test_raw_channel_disparity(self):
        """Per-channel centroids on Bayer samples recover the channel shifts."""
        shifts = np.array([[1.0, 0.0], [0.0, 0.0], [0.0, -1.0]])
        raw, truth = generate_disk_chart(size=(96, 96), n_disks=(3, 3), radius=6.0,
                                         channel_shifts=shifts, align="gbrg")
        res = find_and_fit_disks(raw, None, "gbrg", None, 2, DiskFitOptions(group_channels=False))
        assert res.centers.shape == (9, 3, 2)
        disparity = res.centers - res.centers[:, 1:2]
        expected = truth - truth[:, 1:2]
        assert np.max(np.abs(disparity - expected)) < 0.4

    def test_mask_as_threshold(self):
        chart, truth = generate_disk_chart(size=(64, 64), n_disks=(2, 2), radius=5.0)
        mask = chart[..., 1] > 0.5
        res = find_and_fit_disks(chart[..., 1], mask, None, None, 0, DiskFitOptions(mask_as_threshold=True))
        assert res.centers.shape[0] == 4

    def test_world_coordinates(self):
        chart, _ = generate_disk_chart(size=(64, 64), n_disks=(2, 2), radius=5.0)
        res = find_and_fit_disks(chart[..., 1], None, None, [0.0, 0.0, 1.0, 1.0], 0, DiskFitOptions())
        assert np.all((res.centers >= 0.0) & (res.centers <= 1.0))

    def test_rejects_colour_image(self):
        with pytest.raises(ValueError):
            find_and_fit_disks(np.zeros((8, 8, 3)), None, None, None, 0, DiskFitOptions())

    def test_rejects_mask_shape(self):
        with pytest.raises(ValueError):
            find_and_fit_disks(np.zeros((8, 8)), np.ones((4, 4), dtype=bool), None, None, 0, DiskFitOptions())

    def test_mask_as_threshold_needs_mask(self):
        with pytest.raises(ValueError):
            find_and_fit_disks(np.zeros((8, 8)), None, None, None, 0, DiskFitOptions(mask_as_threshold=True))


class TestPixelToWorld:

    def test_corners(self):
        xy = np.array([[0.0, 0.0], [20.0, 10.0]])
        out = pixel_to_world(xy, (10, 20), [0.0, 0.0, 2.0, 1.0])
        assert np.allclose(out, [[0.0, 1.0], [2.0, 0.0]])


# ============================================================
# 2. Disparity statistics
# ============================================================

class TestDisparity:

    centers = np.array([[[0.0, 0.0], [1.0, 2.0]]])

    def test_from_reference(self):
        X, d = stats_to_disparity(self.centers, 0, from_reference=True)
        assert np.allclose(X, [[[0.0, 0.0], [0.0, 0.0]]])
        assert np.allclose(d, [[[0.0, 0.0], [1.0, 2.0]]])

    def test_to_reference(self):
        X, d = stats_to_disparity(self.centers, 0, from_reference=False)
        assert np.allclose(X, self.centers)
        assert np.allclose(d, [[[0.0, 0.0], [-1.0, -2.0]]])

    def test_bad_reference(self):
        with pytest.raises(ValueError):
            stats_to_disparity(self.centers, 2)

    def test_match_centers(self):
        ref = np.array([[0.0, 0.0], [10.0, 10.0]])
        other = np.array([[10.2, 9.9], [0.1, 0.0]])
        assert np.allclose(match_centers(ref, other), [[0.1, 0.0], [10.2, 9.9]])
        far = match_centers(ref, np.array([[10.2, 9.9]]), max_distance=1.0)
        assert np.all(np.isnan(far[0])) and np.allclose(far[1], [10.2, 9.9])

    def test_matched_channels_give_true_disparity(self):
        """Centres matched channel by channel, a missing centre stays NaN."""
        found = np.array([[[5.0, 5.0], [5.5, 5.0]], [[np.nan, np.nan], [20.4, 20.0]]])
        truth = np.array([[[20.0, 20.0], [20.5, 20.0]], [[5.0, 5.0], [5.5, 5.0]]])
        matched = np.stack([match_centers(found[:, c], truth[:, c], 3.0) for c in range(2)], axis=1)
        assert np.all(np.isnan(matched[1, 0]))
        _, d_found = stats_to_disparity(found, 0)
        _, d_true = stats_to_disparity(matched, 0)
        assert np.allclose(d_found[0], d_true[0])
        assert np.all(np.isnan(d_true[1, 1]))


# ============================================================
# 3. Polynomial fits
# ============================================================

class TestPolynomialFits:

    def test_exponent_counts(self):
        assert polynomial_exponents(1, 0).shape == (3, 3)
        assert polynomial_exponents(2, 1).shape == (12, 3)

    def test_constant_channel_shifts(self):
        shifts = [[0.5, -0.2], [0.0, 0.0], [-0.3, 0.4]]
        model = _constant_shift_model(shifts)
        assert model.channel_mode
        pts = np.array([[5.0, 7.0], [33.0, 51.0]])
        for c, s in enumerate(shifts):
            assert np.allclose(model(pts, c), s, atol=1e-8)

    def test_channel_out_of_range(self):
        model = _constant_shift_model([[0.5, 0.0], [0.0, 0.0]])
        with pytest.raises(ValueError):
            model(np.zeros((1, 2)), 2)

    def test_spectral_linear_in_lambda(self):
        bands = np.array([450.0, 500.0, 550.0, 600.0, 650.0])
        pts = _grid_points(5)
        X = np.repeat(pts[:, None, :], bands.size, axis=1)
        lam = np.broadcast_to(bands[None, :], X.shape[:2])
        disparity = np.stack([0.01 * (lam - 550.0) + 0.002 * X[..., 0], -0.005 * (lam - 550.0)], axis=2)
        model = xylambda_polyfit(X, bands, disparity, max_degree_xy=2, max_degree_lambda=2,
                                 reference_index=2, n_folds=5)
        assert not model.channel_mode
        assert dispersion_rms(model, X, bands, disparity) < 1e-8

    def test_spectral_shape_mismatch(self):
        with pytest.raises(ValueError):
            xylambda_polyfit(np.zeros((4, 2, 2)), [500.0, 600.0, 700.0], np.zeros((4, 2, 2)), 1, 1)

    def test_save_load(self, tmp_path):
        model = _constant_shift_model([[0.5, -0.2], [0.0, 0.0], [-0.3, 0.4]],
                                      model_space=ModelSpace((64, 64)))
        path = model.save(tmp_path / "model.npz")
        back = PolynomialDispersion.load(path)
        pts = np.array([[1.0, 2.0], [30.0, 40.0]])
        for c in range(3):
            assert np.allclose(back(pts, c), model(pts, c))
        assert back.model_space.image_size == (64, 64)
        assert back.model_space.domain == model.model_space.domain
        assert back.bands is None

    def test_load_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            PolynomialDispersion.load(tmp_path / "none.npz")


# ============================================================
# 4. Model space
# ============================================================

class TestModelSpaceTransform:
    """Region of interest of an image inside the calibrated domain."""

    space = ModelSpace((100, 100), None, (10.0, 20.0, 90.0, 80.0))

    def test_same_resolution(self):
        roi, t = model_space_transform((100, 100), self.space)
        assert roi == (20, 80, 10, 90)
        assert np.allclose(t.to_model(np.array([0.5, 0.5])), [10.5, 20.5])

    def test_half_resolution(self):
        roi, t = model_space_transform((50, 50), self.space)
        assert roi == (10, 40, 5, 45)
        assert np.allclose(t.disparity_to_image(np.array([2.0, 2.0])), [1.0, 1.0])

    def test_fill(self):
        roi, _ = model_space_transform((100, 100), self.space, fill=True)
        assert roi is None

    def test_domain_outside_image(self):
        with pytest.raises(ValueError):
            model_space_transform((100, 100), ModelSpace((100, 100), None, (200.0, 200.0, 300.0, 300.0)))

    def test_world_bounds(self):
        roi, t = model_space_transform((10, 10), ModelSpace((10, 10), (0.0, 0.0, 1.0, 1.0)))
        assert roi is None
        assert np.allclose(t.to_model(np.array([5.0, 5.0])), [0.5, 0.5])
        assert np.allclose(t.to_image(np.array([0.5, 0.5])), [5.0, 5.0])


# ============================================================
# 5. Dispersion on images
# ============================================================

class TestDispersionFunction:
    """Direction conventions of `dispersionfun`."""

    xyl = np.array([[3.5, 4.5, 0.0], [10.5, 2.5, 0.0]])

    def test_to_reference_model(self):
        f, roi = make_dispersion_for_image(_constant_shift_model([[0.5, -0.25]], from_reference=False))
        assert roi is None
        assert np.allclose(f(self.xyl), [0.5, -0.25], atol=1e-8)

    def test_from_reference_model_is_inverted(self):
        f, _ = make_dispersion_for_image(_constant_shift_model([[0.5, -0.25]], from_reference=True))
        assert np.allclose(f(self.xyl), [-0.5, 0.25], atol=1e-8)

    def test_image_is_cropped(self):
        model = _constant_shift_model([[0.5, -0.25]], model_space=ModelSpace((64, 64)))
        _, roi = make_dispersion_for_image(model, np.zeros((64, 64, 1)), model.model_space)
        assert roi.shape == (60, 60, 1)

    def test_image_without_model_space(self):
        model = _constant_shift_model([[0.5, -0.25]])
        with pytest.raises(ValueError):
            make_dispersion_for_image(model, np.zeros((4, 4, 1)))


class TestWarp:
    """Sparse warp matrix against the dense warp."""

    @staticmethod
    def _dispersion(xyl):
        return np.column_stack([0.3 + 0.05 * xyl[:, 0] * (1 + xyl[:, 2]), -0.2 * xyl[:, 2] + 0.03 * xyl[:, 1]])

    def test_matrix_matches_dense_warp(self):
        rng = np.random.default_rng(0)
        img = rng.random((6, 7, 2))
        for negate in (False, True):
            A = dispersion_to_matrix(self._dispersion, [0.0, 1.0], (6, 7), negate=negate)
            dense = warp_image(img, self._dispersion, [0.0, 1.0], negate=negate)
            assert np.allclose((A @ img.ravel()).reshape(img.shape), dense, atol=1e-10)

    def test_rows_sum_to_one(self):
        A = dispersion_to_matrix(self._dispersion, [0.0, 1.0], (5, 5))
        assert A.shape == (50, 50)
        assert np.allclose(np.asarray(A.sum(axis=1)).ravel(), 1.0)

    def test_integer_shift(self):
        img = np.arange(12.0).reshape(3, 4, 1)
        A = dispersion_to_matrix(lambda xyl: np.tile([1.0, 0.0], (xyl.shape[0], 1)), [0.0], (3, 4))
        out = (A @ img.ravel()).reshape(img.shape)
        assert np.allclose(out[:, :-1], img[:, 1:])
        assert np.allclose(out[:, -1], img[:, -1])

    def test_offset_sub_image(self):
        """A sub-image sees the dispersion of its position in the full image."""
        img = np.random.default_rng(1).random((8, 8, 2))
        full = warp_image(img, self._dispersion, [0.0, 1.0])
        sub = warp_image(img[2:, 3:], self._dispersion, [0.0, 1.0], offset=(2, 3))
        assert np.allclose(sub[2:-2, 2:-2], full[4:-2, 5:-2], atol=1e-10)

    def test_band_count_mismatch(self):
        with pytest.raises(ValueError):
            warp_image(np.zeros((3, 3, 2)), self._dispersion, [0.0])
