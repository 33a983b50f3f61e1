"""
Sensor — Bayer patterns, demosaicking, RAW noise and the colour map
===================================================================

Run with:
    pytest tests/test_sensor.py -v
"""

import numpy as np
import pytest

from aberration_pipeline.sensor.color_map import (
    SamplingOptions,
    SensorMap,
    blackbody_spectrum,
    channel_conversion,
    illuminant_weights,
    integration_weights,
    interpolation_matrix,
    sampling_weights,
    sony_quantum_efficiency,
)
from aberration_pipeline.sensor.sensor_model import (
    NoiseParams,
    add_raw_noise,
    bayer_mask,
    bilinear_demosaic,
    mosaic,
    offset_bayer_pattern,
    validate_align,
)


# ============================================================
# 1. Bayer patterns
# ============================================================

class TestBayerMask:
    """Row-major reading of the 2x2 pattern letters."""

    def test_gbrg_layout(self):
        m = bayer_mask(4, 4, "gbrg")
        assert m[0, 0, 1] and m[0, 1, 2] and m[1, 0, 0] and m[1, 1, 1]

    def test_one_channel_per_pixel(self):
        m = bayer_mask(5, 7, "rggb")
        assert np.all(m.sum(axis=2) == 1)

    def test_case_insensitive(self):
        assert validate_align("GBRG") == "gbrg"

    @pytest.mark.parametrize("align", ["gbrx", "ggbb", "rgb", "rggbg"])
    def test_invalid_patterns(self, align):
        with pytest.raises(ValueError):
            validate_align(align)


class TestOffsetPattern:
    """Pattern seen by a sub-image."""

    def test_known_offsets(self):
        assert offset_bayer_pattern((0, 0), "gbrg") == "gbrg"
        assert offset_bayer_pattern((0, 1), "gbrg") == "bggr"
        assert offset_bayer_pattern((1, 0), "gbrg") == "rggb"
        assert offset_bayer_pattern((1, 1), "gbrg") == "grbg"
        assert offset_bayer_pattern((2, 4), "gbrg") == "gbrg"

    def test_matches_sub_mask(self):
        full = bayer_mask(9, 9, "gbrg")
        for r, c in [(1, 2), (3, 3), (2, 5)]:
            sub = bayer_mask(9 - r, 9 - c, offset_bayer_pattern((r, c), "gbrg"))
            assert np.array_equal(full[r:, c:], sub)


# ============================================================
# 2. Mosaicking and demosaicking
# ============================================================

class TestMosaic:

    def test_selects_channel(self):
        rng = np.random.default_rng(0)
        rgb = rng.random((6, 6, 3))
        raw = mosaic(rgb, "gbrg")
        m = bayer_mask(6, 6, "gbrg")
        assert raw.shape == (6, 6)
        assert np.allclose(raw, np.sum(rgb * m, axis=2))

    def test_rejects_grey(self):
        with pytest.raises(ValueError):
            mosaic(np.zeros((4, 4)), "gbrg")


class TestBilinearDemosaic:
    """Normalized convolution keeps samples and reproduces flat fields."""

    def test_constant_image(self):
        rgb = np.ones((8, 10, 3)) * np.array([0.2, 0.5, 0.8])
        out = bilinear_demosaic(mosaic(rgb, "rggb"), "rggb")
        assert np.allclose(out, rgb)

    def test_known_samples_kept(self):
        rng = np.random.default_rng(1)
        rgb = rng.random((8, 8, 3))
        m = bayer_mask(8, 8, "gbrg")
        out = bilinear_demosaic(mosaic(rgb, "gbrg"), "gbrg")
        assert np.allclose(out[m], rgb[m])

    def test_channel_subset(self):
        out = bilinear_demosaic(np.ones((4, 4)), "gbrg", channels=[1])
        assert out.shape == (4, 4, 1)

    def test_bad_input(self):
        with pytest.raises(ValueError):
            bilinear_demosaic(np.ones((4, 4, 3)), "gbrg")
        with pytest.raises(ValueError):
            bilinear_demosaic(np.ones((4, 4)), "gbrg", channels=[3])


# ============================================================
# 3. RAW noise
# ============================================================

class TestRawNoise:

    def test_disabled_is_identity(self):
        raw = np.full((4, 4), 0.3)
        assert add_raw_noise(raw, NoiseParams(enabled=False)) is raw

    def test_range_and_quantization(self):
        raw = np.full((64, 64), 0.5)
        out = add_raw_noise(raw, NoiseParams(enabled=True, bit_depth=12))
        assert out.min() >= 0.0 and out.max() <= 1.0
        assert np.allclose(out * 4095, np.round(out * 4095))
        assert abs(out.mean() - 0.5) < 0.01

    def test_seeded(self):
        raw = np.full((16, 16), 0.2)
        p = NoiseParams(enabled=True, seed=7)
        assert np.array_equal(add_raw_noise(raw, p), add_raw_noise(raw, p))

    def test_full_well_clipping(self):
        out = add_raw_noise(np.full((8, 8), 2.0), NoiseParams(enabled=True, bit_depth=0))
        assert np.all(out <= 1.0)

    def test_bad_full_well(self):
        with pytest.raises(ValueError):
            add_raw_noise(np.zeros((2, 2)), NoiseParams(enabled=True, full_well_e=0.0))


# ============================================================
# 4. Colour map
# ============================================================

class TestQuantumEfficiency:
    """Sony ICX655 approximation."""

    def test_shape_and_range(self):
        qe = sony_quantum_efficiency(np.linspace(200, 1200, 101))
        assert qe.shape == (101, 3)
        assert np.all(qe >= 0) and np.all(qe < 1)

    def test_zero_outside_silicon(self):
        qe = sony_quantum_efficiency([300.0, 1150.0])
        assert np.all(qe == 0)

    def test_channel_peaks_ordered(self):
        """Blue peaks before green, green before red."""
        bands = np.linspace(400, 700, 301)
        qe = sony_quantum_efficiency(bands)
        peaks = bands[np.argmax(qe, axis=0)]
        assert peaks[2] < peaks[1] < peaks[0]
        assert 520 < peaks[1] < 540


class TestSensorMap:

    def test_default_bands(self):
        sm = SensorMap.sony_icx655()
        assert sm.sensor_map.shape == (3, 1000)
        assert sm.bands[0] == 200.0 and sm.bands[-1] == 1200.0

    def test_column_mismatch(self):
        with pytest.raises(ValueError):
            SensorMap(np.ones((3, 4)), np.arange(5))

    def test_save_load(self, tmp_path):
        sm = SensorMap.sony_icx655(np.linspace(400, 700, 7))
        path = sm.save(tmp_path / "sm.npz")
        back = SensorMap.load(path)
        assert np.allclose(back.sensor_map, sm.sensor_map)
        assert np.allclose(back.bands, sm.bands)
        assert back.channel_mode is False

    def test_load_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            SensorMap.load(tmp_path / "missing.npz")


class TestIntegrationWeights:

    def test_rules(self):
        bands = np.array([0.0, 1.0, 2.0])
        assert np.allclose(integration_weights(bands, "trap"), [0.5, 1.0, 0.5])
        assert np.allclose(integration_weights(bands, "rect"), [1.0, 1.0, 1.0])
        assert np.allclose(integration_weights(bands, "none"), [1.0, 1.0, 1.0])

    def test_unknown_rule(self):
        with pytest.raises(ValueError):
            integration_weights(np.arange(3.0), "simpson")

    def test_interpolation_matrix(self):
        W = interpolation_matrix([0.0, 10.0], [5.0, 20.0])
        assert np.allclose(W, [[0.5, 0.5], [0.0, 0.0]])


class TestSamplingWeights:
    """Latent bands and conversion matrices."""

    sm = SensorMap.sony_icx655()

    def test_shapes(self):
        bands_gt = np.linspace(400, 700, 31)
        cw, sw, bands, cwr = sampling_weights(self.sm, None, bands_gt, SamplingOptions(n_bands=5))
        assert cw.shape == (3, 5)
        assert sw.shape == (5, 31)
        assert cwr.shape == (3, 31)
        assert bands[0] >= 400 and bands[-1] <= 700

    def test_normalized_white(self):
        bands_gt = np.linspace(400, 700, 31)
        cw, _, _, cwr = sampling_weights(self.sm, None, bands_gt, SamplingOptions(n_bands=8))
        assert cw.sum(axis=1).max() == pytest.approx(1.0)
        assert cwr.sum(axis=1).max() == pytest.approx(1.0)

    def test_without_ground_truth(self):
        cw, sw, bands, cwr = sampling_weights(self.sm, None, None, SamplingOptions(n_bands=4))
        assert sw is None and cwr is None
        assert cw.shape == (3, 4)

    def test_spectral_weights_interpolate(self):
        """A flat ground-truth spectrum stays flat on the latent bands."""
        bands_gt = np.linspace(420, 680, 14)
        _, sw, _, _ = sampling_weights(self.sm, None, bands_gt, SamplingOptions(n_bands=6))
        assert np.allclose(sw @ np.ones(14), 1.0)

    def test_no_overlap(self):
        with pytest.raises(ValueError):
            sampling_weights(self.sm, None, np.linspace(1150, 1190, 5), SamplingOptions())


class TestChannelConversion:

    def test_last_axis(self):
        img = np.ones((2, 3, 4))
        out = channel_conversion(img, np.ones((2, 4)))
        assert out.shape == (2, 3, 2)
        assert np.allclose(out, 4.0)

    def test_other_axis(self):
        img = np.ones((4, 2, 3))
        assert channel_conversion(img, np.eye(4)[:3], axis=0).shape == (3, 2, 3)

    def test_mismatch(self):
        with pytest.raises(ValueError):
            channel_conversion(np.ones((2, 2, 3)), np.ones((3, 4)))


# ============================================================
# 5. Illuminants
# ============================================================

class TestIlluminants:

    def test_blackbody_peak(self):
        """Wien's law: the 6504 K peak lies near 446 nm."""
        lam = np.arange(380.0, 781.0)
        spd = blackbody_spectrum(lam, 6504.0)
        assert spd.max() == pytest.approx(1.0)
        assert abs(lam[np.argmax(spd)] - 445.6) <= 2.0

    def test_warm_blackbody_rises(self):
        spd = blackbody_spectrum(np.linspace(400, 700, 7), 3000.0)
        assert np.all(np.diff(spd) > 0)
        assert spd[-1] == pytest.approx(1.0)

    def test_blackbody_checks(self):
        with pytest.raises(ValueError):
            blackbody_spectrum([500.0], 0.0)
        with pytest.raises(ValueError):
            blackbody_spectrum([0.0, 500.0], 5000.0)

    def test_default_is_blackbody(self):
        bands = np.linspace(420, 680, 5)
        assert np.allclose(illuminant_weights(bands, 5000.0), blackbody_spectrum(bands, 5000.0))

    def test_tabulated(self, tmp_path):
        path = tmp_path / "led.npz"
        np.savez(path, bands=np.array([700.0, 400.0]), spd=np.array([4.0, 1.0]))
        w = illuminant_weights([400.0, 550.0, 700.0], path=path)
        assert np.allclose(w, [0.25, 0.625, 1.0])

    def test_tabulated_checks(self, tmp_path):
        path = tmp_path / "narrow.npz"
        np.savez(path, bands=np.array([450.0, 650.0]), spd=np.array([1.0, 1.0]))
        with pytest.raises(ValueError):
            illuminant_weights([400.0, 500.0], path=path)
        with pytest.raises(FileNotFoundError):
            illuminant_weights([500.0], path=tmp_path / "none.npz")
