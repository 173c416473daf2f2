"""
JSON parameter documents sent to the firmware calibration routines.

The firmware parses these by key name, so the keys (including the
"sucessful" spelling) and the exact layout are reproduced verbatim.
"""

from __future__ import annotations

from typing import Sequence

from .session import CalibrationParams
from .types import CalibrationAction

CALIB_TYPE_OCC = 0
CALIB_TYPE_FL = 1
CALIB_TYPE_OB = 2

HOST_ASSIST_FILL_FACTOR = 2
HOST_ASSIST_FL_FILL_FACTOR = 3


def format_payload(fields: Sequence[tuple[str, int]]) -> str:
    """Render key/value pairs the way the firmware parser expects."""
    body = ",\n".join(f' "{key}":{value}' for key, value in fields)
    return "{\n" + body + "}"


def _fl_fields(params: CalibrationParams) -> list[tuple[str, int]]:
    return [
        ("fl step count", params.fl_step_count),
        ("fy scan range", params.fy_scan_range),
        ("keep new value after sucessful scan", params.keep_new_value_after_successful_scan),
        ("fl data sampling", params.fl_data_sampling),
        ("adjust both sides", params.adjust_both_sides),
        ("fl scan location", params.fl_scan_location),
        ("fy scan direction", params.fy_scan_direction),
        ("white wall mode", params.white_wall_mode),
    ]


def _occ_fields(params: CalibrationParams) -> list[tuple[str, int]]:
    return [
        ("speed", params.speed),
        ("average step count", params.average_step_count),
        ("scan parameter", 0 if params.intrinsic_scan else 1),
        ("step count", params.step_count),
        ("apply preset", 1 if params.apply_preset else 0),
        ("accuracy", params.accuracy),
    ]


def calibration_payload(
    action: CalibrationAction, params: CalibrationParams, host_assistance: bool
) -> str:
    """
    Parameter document for the first firmware call of an action.

    On-chip calibration sends the OCC fields, focal-length calibration the
    FL fields, and the combined and tare routines both sets plus a zero
    depth.
    """
    host = 1 if host_assistance else 0
    closing = [("scan only", host), ("interactive scan", 0)]

    if action == CalibrationAction.ON_CHIP_CALIB:
        fields = [("calib type", CALIB_TYPE_OCC), ("host assistance", host)]
        fields += _occ_fields(params) + closing
    elif action == CalibrationAction.ON_CHIP_FL_CALIB:
        fields = [("calib type", CALIB_TYPE_FL), ("host assistance", host)]
        fields += _fl_fields(params) + closing
    else:
        fields = [("calib type", CALIB_TYPE_OB), ("host assistance", host)]
        fields += _fl_fields(params) + _occ_fields(params) + closing + [("depth", 0)]

    return format_payload(fields)


def fill_factor_payload(calib_type: int, host_assistance: int, fill_factors: Sequence[int]) -> str:
    """Host-assisted statistics: one `fill factor N` key per frame."""
    fields = [
        ("calib type", calib_type),
        ("host assistance", host_assistance),
        ("step count v3", len(fill_factors)),
    ]
    fields += [(f"fill factor {i}", int(value)) for i, value in enumerate(fill_factors)]
    return format_payload(fields)


def tare_depth_payload(depth: int) -> str:
    """Incremental tare depth (-1 commits the calibration)."""
    return format_payload([("depth", depth)])
