"""
Tests for autocalib.features.target.
"""

from dataclasses import replace

import numpy as np
import pytest

from autocalib.features.target import (
    DetectorStatus,
    DotsCalculator,
    RectCalculator,
    find_target_dots,
    find_target_rectangle,
    undistort_image,
)
from autocalib.types import DistortionModel
from conftest import distort_image, dots_image, rectangle_image

WIDE_DOTS = [(80, 60), (240, 60), (80, 180), (240, 180)]


@pytest.fixture
def barrel_intrinsics(sample_intrinsics):
    return replace(
        sample_intrinsics,
        model=DistortionModel.BROWN_CONRADY,
        coeffs=(-0.3, 0.0, 0.0, 0.0, 0.0),
    )


class TestRectangle:
    def test_corners_ordered(self):
        corners = find_target_rectangle(rectangle_image())
        np.testing.assert_allclose(
            corners, [[100, 80], [219, 80], [100, 159], [219, 159]], atol=2.0
        )

    def test_blank_image(self):
        assert find_target_rectangle(np.full((240, 320), 200, dtype=np.uint8)) is None

    def test_calculator_averages_sides(self):
        calculator = RectCalculator()
        statuses = [calculator.calculate(rectangle_image()) for _ in range(RectCalculator.FRAME_NUM)]
        assert statuses[0] == DetectorStatus.PROGRESS
        assert statuses[-1] == DetectorStatus.DONE
        assert calculator.sides.top == pytest.approx(119.0, abs=2.0)
        assert calculator.sides.left == pytest.approx(79.0, abs=2.0)


class TestDots:
    def test_centers_ordered(self):
        centers = find_target_dots(dots_image(WIDE_DOTS))
        np.testing.assert_allclose(centers, WIDE_DOTS, atol=0.5)

    def test_color_image(self):
        centers = find_target_dots(dots_image(WIDE_DOTS, color=True))
        np.testing.assert_allclose(centers, WIDE_DOTS, atol=0.5)

    def test_too_few_dots(self):
        assert find_target_dots(dots_image(WIDE_DOTS[:3])) is None
        assert DotsCalculator().calculate(dots_image(WIDE_DOTS[:3])) == DetectorStatus.MORE_FRAMES_NEEDED


class TestUndistort:
    def test_no_distortion_is_passthrough(self, sample_intrinsics):
        image = dots_image(WIDE_DOTS)
        assert undistort_image(image, sample_intrinsics) is image
        assert undistort_image(image, None) is image

    def test_zero_coefficients_is_passthrough(self, sample_intrinsics):
        image = dots_image(WIDE_DOTS)
        intrinsics = replace(sample_intrinsics, model=DistortionModel.BROWN_CONRADY)
        assert undistort_image(image, intrinsics) is image

    def test_restores_dot_centers(self, barrel_intrinsics):
        distorted = distort_image(dots_image(WIDE_DOTS), barrel_intrinsics)

        shifted = find_target_dots(distorted)
        assert np.abs(shifted - np.array(WIDE_DOTS)).max() > 1.5

        centers = find_target_dots(undistort_image(distorted, barrel_intrinsics))
        np.testing.assert_allclose(centers, WIDE_DOTS, atol=0.75)
