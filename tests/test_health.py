"""
Tests for autocalib.health.
"""

import pytest

from autocalib.health import (
    CAN_BE_IMPROVED,
    GOOD,
    REQUIRES_CALIBRATION,
    classify_health,
    decode_packed_health,
    health_report,
    health_thresholds,
    recommend_keep,
)
from autocalib.types import CalibrationAction


class TestDecodePackedHealth:
    def test_unsigned(self):
        code = (250 << 12) | 100
        assert decode_packed_health(code) == pytest.approx((0.1, 0.25))

    def test_sign_bits(self):
        code = (3 << 24) | (250 << 12) | 100
        assert decode_packed_health(code) == pytest.approx((-0.1, -0.25))

    def test_second_sign_only(self):
        code = (2 << 24) | (1 << 12) | 4095
        assert decode_packed_health(code) == pytest.approx((4.095, -0.001))

    def test_float_code(self):
        assert decode_packed_health(float(100)) == pytest.approx((0.1, 0.0))


class TestClassifyHealth:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (0.1, GOOD),
            (-0.24, GOOD),
            (0.25, CAN_BE_IMPROVED),
            (-0.5, CAN_BE_IMPROVED),
            (0.75, REQUIRES_CALIBRATION),
            (-2.0, REQUIRES_CALIBRATION),
        ],
    )
    def test_occ_threshold(self, value, expected):
        assert classify_health(value, 0.25) == expected


class TestRecommendKeep:
    def test_thresholds_per_action(self):
        assert health_thresholds(CalibrationAction.ON_CHIP_CALIB) == (0.25,)
        assert health_thresholds(CalibrationAction.ON_CHIP_FL_CALIB) == (0.15,)
        assert health_thresholds(CalibrationAction.ON_CHIP_OB_CALIB) == (0.25, 0.15)
        assert health_thresholds(CalibrationAction.TARE_CALIB) == ()

    def test_combined_needs_both(self):
        action = CalibrationAction.ON_CHIP_OB_CALIB
        assert recommend_keep(action, (0.2, 0.1))
        assert not recommend_keep(action, (0.2, 0.2))
        assert not recommend_keep(action, (0.2,))

    def test_ungraded_action(self):
        assert not recommend_keep(CalibrationAction.TARE_CALIB, (1.0, 2.0))

    def test_report_labels(self):
        report = health_report(CalibrationAction.ON_CHIP_OB_CALIB, (0.1, -0.5))
        assert report == [(0.1, GOOD), (-0.5, CAN_BE_IMPROVED)]
