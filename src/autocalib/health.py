"""
Health score decoding and interpretation.
"""

from __future__ import annotations

from .types import CalibrationAction

OCC_THRESHOLD = 0.25
FL_THRESHOLD = 0.15
IMPROVABLE_LIMIT = 0.75

GOOD = "Good"
CAN_BE_IMPROVED = "Can be Improved"
REQUIRES_CALIBRATION = "Requires Calibration"


def decode_packed_health(code: float) -> tuple[float, float]:
    """
    Split the packed health code returned by the combined on-chip routine.

    Bits 0-11 hold the first magnitude, bits 12-23 the second and bits
    24-27 the sign flags (bit 0 negates the first, bit 1 the second).
    Magnitudes are scaled by 1/1000.
    """
    packed = int(code)
    h1 = (packed & 0x00000FFF) / 1000.0
    h2 = ((packed & 0x00FFF000) >> 12) / 1000.0
    sign = (packed & 0x0F000000) >> 24

    if sign & 1:
        h1 = -h1
    if sign & 2:
        h2 = -h2
    return h1, h2


def health_thresholds(action: CalibrationAction) -> tuple[float, ...]:
    """Per-score 'Good' thresholds for an action (empty if not graded)."""
    if action == CalibrationAction.ON_CHIP_CALIB:
        return (OCC_THRESHOLD,)
    if action == CalibrationAction.ON_CHIP_FL_CALIB:
        return (FL_THRESHOLD,)
    if action == CalibrationAction.ON_CHIP_OB_CALIB:
        return (OCC_THRESHOLD, FL_THRESHOLD)
    return ()


def classify_health(value: float, threshold: float) -> str:
    magnitude = abs(value)
    if magnitude < threshold:
        return GOOD
    if magnitude < IMPROVABLE_LIMIT:
        return CAN_BE_IMPROVED
    return REQUIRES_CALIBRATION


def recommend_keep(action: CalibrationAction, health: tuple[float, ...]) -> bool:
    """True if every graded score of the action is within its threshold."""
    thresholds = health_thresholds(action)
    if not thresholds or len(health) < len(thresholds):
        return False
    return all(abs(value) < limit for value, limit in zip(health, thresholds))


def health_report(action: CalibrationAction, health: tuple[float, ...]) -> list[tuple[float, str]]:
    """Each graded score with its label, in threshold order."""
    return [
        (value, classify_health(value, limit))
        for value, limit in zip(health, health_thresholds(action))
    ]
