"""
Unit tests for the patch tracker
"""

import os
import sys

import cv2
import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import DegenerateTemplate, InvalidWindow, OutOfFrame
from common.types import MatchResult
from tracking import match_point, match_points
from tracking.correlate import _secondary_peak
from tracking.preprocess import MARGIN, to_gray_f32, upsample, window_fits
from tests.synthetic import smooth_noise


def speckle_pair(shift=(2.0, 0.0), size=(1000, 4000), centre=(2000.0, 500.0)):
    """
    One bright Gaussian speckle on a gentle ramp; image B is image A moved by
    `shift` pixels.
    """
    h, w = size
    yy, xx = np.mgrid[0:h, 0:w].astype(np.float64)

    def scene(x, y):
        blob = 200.0 * np.exp(-((x - centre[0]) ** 2 + (y - centre[1]) ** 2) / 2.0)
        return (0.05 * x + 0.02 * y + blob).astype(np.float32)

    return scene(xx, yy), scene(xx - shift[0], yy - shift[1])


def shifted(img, du, dv):
    """img moved by (du, dv) pixels with bicubic resampling"""
    M = np.float32([[1, 0, du], [0, 1, dv]])
    h, w = img.shape
    return cv2.warpAffine(img, M, (w, h), flags=cv2.INTER_CUBIC, borderMode=cv2.BORDER_REFLECT)


class TestMatchPoint:
    """Test cases for match_point"""

    def test_end_to_end_two_pixel_shift(self):
        """Known 2 px horizontal shift in a 4000x1000 pair, r=10, R=40, s=5"""
        A, B = speckle_pair()
        m = match_point(A, B, (2000, 500), template_radius=10, search_radius=40, supersample=5, prior_shift=(0, 0))
        assert m.ok
        assert abs(m.displacement[0] - 2.0) < 0.1
        assert abs(m.displacement[1]) < 0.1
        assert m.snr > 5

    def test_self_match(self):
        """An image matched against itself peaks at zero shift with NCC 1"""
        img = smooth_noise((200, 200), seed=2)
        for pt in [(100, 100), (40, 150), (160, 60)]:
            m = match_point(img, img, pt, 8, 16, supersample=4)
            assert m.displacement == pytest.approx((0.0, 0.0), abs=1e-9)
            assert m.peak == pytest.approx(1.0, abs=1e-4)

    def test_integer_shift(self):
        A = smooth_noise((300, 300), seed=4)
        B = np.roll(A, shift=(1, 3), axis=(0, 1))
        m = match_point(A, B, (150, 150), 8, 20, supersample=2)
        assert m.displacement == pytest.approx((3.0, 1.0), abs=1e-9)

    def test_subpixel_shift(self):
        """Supersampling resolves a fractional shift"""
        A = smooth_noise((300, 300), sigma=3.0, seed=6)
        B = shifted(A, 1.4, -0.6)
        m = match_point(A, B, (150, 150), 12, 24, supersample=5)
        assert m.displacement[0] == pytest.approx(1.4, abs=0.15)
        assert m.displacement[1] == pytest.approx(-0.6, abs=0.15)

    def test_seed_invariance(self):
        """Moving the search seed within the window does not change the answer"""
        A = smooth_noise((300, 300), seed=7)
        B = np.roll(A, shift=(1, 3), axis=(0, 1))
        for prior in [(0, 0), (2, 2), (-2, 3), (6, -4)]:
            m = match_point(A, B, (150, 150), 8, 20, supersample=2, prior_shift=prior)
            assert m.displacement == pytest.approx((3.0, 1.0), abs=1e-9)

    def test_fractional_seed(self):
        """Fractional seeds return the zero-seed displacement"""
        A = smooth_noise((300, 300), sigma=3.0, seed=8)
        B = shifted(A, 2.0, 0.0)
        base = match_point(A, B, (150, 150), 10, 40, supersample=5)
        assert base.displacement[0] == pytest.approx(2.0, abs=0.1)
        for prior in [(0.1, 0.0), (1.3, 0.0), (-2.7, 0.4), (0.5, -0.5)]:
            m = match_point(A, B, (150, 150), 10, 40, supersample=5, prior_shift=prior)
            assert m.displacement == pytest.approx(base.displacement, abs=1e-12)
            assert m.peak == pytest.approx(base.peak, abs=1e-4)

    def test_fractional_seed_batch(self):
        """Fractional camera-shake priors in a batch keep the displacement grid"""
        A = smooth_noise((300, 300), seed=15)
        B = np.roll(A, shift=(1, 3), axis=(0, 1))
        results = match_points(A, B, [(100, 100), (150, 150)], 8, 20, supersample=2, prior_shift=[(2.6, 0.7), (-1.2, 1.4)])
        for m in results:
            assert m.displacement == pytest.approx((3.0, 1.0), abs=1e-9)

    def test_colour_input(self):
        """BGR uint8 input is converted to grey"""
        grey = np.clip(smooth_noise((200, 200), seed=9), 0, 255).astype(np.uint8)
        bgr = cv2.cvtColor(grey, cv2.COLOR_GRAY2BGR)
        m = match_point(bgr, bgr, (100, 100), 8, 16)
        assert m.displacement == pytest.approx((0.0, 0.0))

    def test_secondary_peak_without_room(self):
        """A surface smaller than the exclusion disk has no secondary peak"""
        img = smooth_noise((100, 100), seed=10)
        m = match_point(img, img, (50, 50), 10, 11, supersample=1)
        assert np.isnan(m.secondary_peak)
        assert m.snr == float("inf")


class TestSecondaryPeak:
    """Test cases for the secondary correlation peak"""

    def surface(self):
        rows, cols = np.mgrid[0:41, 0:41].astype(np.float32)
        broad = np.exp(-((rows - 20) ** 2 + (cols - 20) ** 2) / 72.0)
        bump = 0.3 * np.exp(-((rows - 5) ** 2 + (cols - 35) ** 2) / 2.0)
        return (broad + bump).astype(np.float32)

    def test_flank_of_primary_is_ignored(self):
        """A broad primary peak still high outside the disk is not a second peak"""
        value = _secondary_peak(self.surface(), (20, 20), 4.0)
        assert value == pytest.approx(0.3, abs=0.01)

    def test_no_distinct_maximum(self):
        rows, cols = np.mgrid[0:21, 0:21].astype(np.float32)
        single = np.exp(-((rows - 10) ** 2 + (cols - 10) ** 2) / 50.0).astype(np.float32)
        assert np.isnan(_secondary_peak(single, (10, 10), 3.0))


class TestMatchPointErrors:
    """Test cases for match_point failure modes"""

    def test_search_not_larger_than_template(self):
        img = smooth_noise((100, 100))
        with pytest.raises(InvalidWindow):
            match_point(img, img, (50, 50), 10, 10)

    def test_bad_supersample(self):
        img = smooth_noise((100, 100))
        with pytest.raises(InvalidWindow):
            match_point(img, img, (50, 50), 5, 10, supersample=0)
        with pytest.raises(InvalidWindow):
            match_point(img, img, (50, 50), 5, 10, supersample=1.5)

    def test_invalid_window_is_value_error(self):
        assert issubclass(InvalidWindow, ValueError)

    def test_out_of_frame(self):
        """Windows whose interpolation margin leaves the image are rejected"""
        img = smooth_noise((100, 100))
        with pytest.raises(OutOfFrame):
            match_point(img, img, (5, 50), 3, 8)
        with pytest.raises(OutOfFrame):
            match_point(img, img, (50, 50), 3, 8, prior_shift=(45, 0))

    def test_flat_template(self):
        img = np.full((100, 100), 7.0, dtype=np.float32)
        with pytest.raises(DegenerateTemplate):
            match_point(img, img, (50, 50), 5, 10)

    def test_flat_search_window(self):
        A = smooth_noise((100, 100))
        B = np.full((100, 100), 7.0, dtype=np.float32)
        with pytest.raises(DegenerateTemplate):
            match_point(A, B, (50, 50), 5, 10)


class TestMatchPoints:
    """Test cases for the batch tracker"""

    def test_order_and_failures(self):
        """Results follow input order; bad points fail without aborting the batch"""
        A = smooth_noise((300, 300), seed=12)
        B = np.roll(A, shift=(1, 3), axis=(0, 1))
        A[200:260, 200:260] = 50.0
        points = [(100, 100), (3, 3), (230, 230), (150, 120)]

        results = match_points(A, B, points, 8, 20, supersample=2, workers=3)

        assert [m.ok for m in results] == [True, False, False, True]
        assert results[1].error == "OutOfFrame"
        assert results[2].error == "DegenerateTemplate"
        assert np.isnan(results[1].displacement[0])
        for m in (results[0], results[3]):
            assert m.displacement == pytest.approx((3.0, 1.0), abs=1e-9)

    def test_per_point_priors(self):
        A = smooth_noise((300, 300), seed=13)
        B = np.roll(A, shift=(1, 3), axis=(0, 1))
        points = [(100, 100), (150, 150)]
        results = match_points(A, B, points, 8, 20, supersample=2, prior_shift=[(0, 0), (4, -2)], workers=1)
        for m in results:
            assert m.displacement == pytest.approx((3.0, 1.0), abs=1e-9)

    def test_nan_prior_fails_point(self):
        A = smooth_noise((300, 300), seed=14)
        results = match_points(A, A, [(100, 100)], 8, 20, prior_shift=[(np.nan, 0.0)])
        assert not results[0].ok
        assert results[0].error == "OutOfFrame"

    def test_invalid_window_aborts_batch(self):
        A = smooth_noise((100, 100))
        with pytest.raises(InvalidWindow):
            match_points(A, A, [(50, 50)], 10, 5)

    def test_empty_batch(self):
        A = smooth_noise((100, 100))
        assert match_points(A, A, np.zeros((0, 2)), 5, 10) == []


class TestMatchResult:
    """Test cases for MatchResult quality measures"""

    def test_snr_and_trust(self):
        m = MatchResult(ok=True, displacement=(1.0, 0.0), peak=0.9, secondary_peak=0.3)
        assert m.snr == pytest.approx(3.0)
        assert m.trusted(snr_threshold=2.0, min_peak=0.8)
        assert not m.trusted(snr_threshold=4.0, min_peak=0.8)
        assert not m.trusted(snr_threshold=2.0, min_peak=0.95)

    def test_failed(self):
        m = MatchResult.failed("OutOfFrame")
        assert not m.ok
        assert np.isnan(m.snr)
        assert not m.trusted(0.0, 0.0)


class TestPreprocess:
    """Test cases for patch preparation helpers"""

    def test_window_fits(self):
        shape = (100, 100)
        assert window_fits(shape, (50, 50), 10)
        assert window_fits(shape, (10 + MARGIN, 50), 10)
        assert not window_fits(shape, (9 + MARGIN, 50), 10)
        assert not window_fits(shape, (50.5, 99 - 10 - MARGIN + 0.5), 10)
        assert not window_fits(shape, (np.nan, 50), 10)

    def test_upsample_shape(self):
        patch = np.random.rand(2 * (5 + MARGIN) + 1, 2 * (5 + MARGIN) + 1).astype(np.float32)
        assert upsample(patch, 3).shape == (33, 33)
        assert upsample(patch, 1).shape == (11, 11)

    def test_to_gray_f32(self):
        g = to_gray_f32(np.zeros((4, 5, 3), dtype=np.uint8))
        assert g.shape == (4, 5)
        assert g.dtype == np.float32
