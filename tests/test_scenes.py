"""
Scenes — spatial patterns, disk charts and spectral scenes
==========================================================

Run with:
    pytest tests/test_scenes.py -v
"""

import numpy as np
import pytest

from aberration_pipeline.scenes.scene_generator import (
    generate_disk_chart,
    generate_scene,
    generate_spectral_scene,
    spatial_pattern,
)


class TestSpatialPatterns:
    """Single-channel patterns in [0, 1]."""

    @pytest.mark.parametrize("kind", ["siemens_star", "checker", "slanted_edge", "gradient", "edge"])
    def test_range(self, kind):
        img = spatial_pattern(kind, (20, 30))
        assert img.shape == (20, 30)
        assert img.min() >= 0.0 and img.max() <= 1.0

    def test_checker_tiles(self):
        img = spatial_pattern("checker", (8, 8), square_px=4)
        assert img[0, 0] == 0.0 and img[0, 4] == 1.0 and img[4, 4] == 0.0

    def test_unknown(self):
        with pytest.raises(ValueError):
            spatial_pattern("zebra", (8, 8))


class TestDiskChart:
    """Disk grid with per-channel shifts."""

    def test_centres_and_intensity(self):
        img, centers = generate_disk_chart(size=(96, 96), n_disks=(3, 3), radius=6.0)
        assert img.shape == (96, 96, 3)
        assert centers.shape == (9, 3, 2)
        assert np.allclose(centers[0, 0], [16.0, 16.0])
        assert img[15, 15, 1] == pytest.approx(0.9)
        assert img[0, 0, 1] == pytest.approx(0.1)

    def test_channel_shifts(self):
        shifts = [[1.0, 0.0], [0.0, 0.0], [0.0, -1.0]]
        _, centers = generate_disk_chart(size=(96, 96), n_disks=(3, 3), channel_shifts=shifts)
        assert np.allclose(centers[:, 0] - centers[:, 1], [1.0, 0.0])
        assert np.allclose(centers[:, 2] - centers[:, 1], [0.0, -1.0])

    def test_dark_disks(self):
        img, _ = generate_disk_chart(size=(64, 64), n_disks=(2, 2), radius=5.0, bright=False)
        assert img[15, 15, 0] == pytest.approx(0.1)
        assert img[0, 0, 0] == pytest.approx(0.9)

    def test_mosaicked(self):
        raw, _ = generate_disk_chart(size=(64, 64), n_disks=(2, 2), radius=5.0, align="gbrg")
        assert raw.shape == (64, 64)

    def test_overlapping_disks(self):
        with pytest.raises(ValueError):
            generate_disk_chart(size=(64, 64), n_disks=(3, 3), radius=12.0)

    def test_bad_shifts(self):
        with pytest.raises(ValueError):
            generate_disk_chart(channel_shifts=[[0.0, 0.0]])


class TestSpectralScene:

    def test_shape_and_range(self):
        bands = np.linspace(420, 680, 7)
        scene = generate_spectral_scene((12, 10), bands, pattern="checker", square_px=3)
        assert scene.shape == (12, 10, 7)
        assert scene.min() >= 0.0 and scene.max() <= 1.0

    def test_two_spectra(self):
        """Dark tiles follow the blue spectrum, bright tiles the red one."""
        bands = np.array([470.0, 620.0])
        scene = generate_spectral_scene((8, 8), bands, pattern="checker", square_px=4)
        assert scene[0, 0, 0] > scene[0, 0, 1]
        assert scene[0, 4, 1] > scene[0, 4, 0]

    def test_dispatcher(self):
        scene = generate_scene("spectral", (6, 6), bands=[500.0, 600.0])
        assert scene.shape == (6, 6, 2)
        img, centers = generate_scene("disks", (64, 64), n_disks=(2, 2), radius=5.0)
        assert centers.shape == (4, 3, 2)

    def test_spectral_needs_bands(self):
        with pytest.raises(ValueError):
            generate_scene("spectral", (6, 6))
