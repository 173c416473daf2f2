"""
Calibration session state.

A CalibrationSession is created per user-initiated run and passed to
every phase explicitly. Progress is published through a lock-protected
ProgressChannel so a control thread can poll it while the worker writes.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Callable

from .types import CalibrationAction, CalibrationState, DepthMetrics

logger = logging.getLogger(__name__)

# Firmware frame count per on-chip speed setting
TOTAL_FRAMES_BY_SPEED = {0: 60, 1: 120, 2: 256, 3: 256, 4: 120}

# speed_fl -> (speed, fl_step_count, fy_scan_range, white_wall_mode)
SPEED_FL_PRESETS = {
    0: (1, 41, 30, 0),
    1: (3, 51, 40, 0),
    2: (4, 41, 30, 1),
}


# ============================================================================
# Parameters
# ============================================================================


@dataclass(frozen=True, slots=True)
class CalibrationParams:
    """
    Tunables of a calibration run.
    Corresponds to the TOML [calibration] section.
    """

    speed: int = 3
    average_step_count: int = 20
    step_count: int = 20
    accuracy: int = 2
    intrinsic_scan: bool = True
    apply_preset: bool = True
    fl_step_count: int = 51
    fy_scan_range: int = 40
    keep_new_value_after_successful_scan: int = 1
    fl_data_sampling: int = 1
    adjust_both_sides: int = 0
    fl_scan_location: int = 0
    fy_scan_direction: int = 0
    white_wall_mode: int = 0
    ground_truth_mm: float = 1200.0
    target_width_mm: float = 175.0
    target_height_mm: float = 100.0
    correction_factor: float = 0.5
    py_px_only: bool = True  # UV-map: refine principal point only
    use_device_routine: bool = False  # FL / ground truth via firmware routines

    @property
    def total_frames(self) -> int:
        return TOTAL_FRAMES_BY_SPEED.get(self.speed, 256)


def apply_speed_fl(params: CalibrationParams, speed_fl: int) -> CalibrationParams:
    """Params with the speed/focal-length preset for `speed_fl` applied."""
    if speed_fl not in SPEED_FL_PRESETS:
        return params
    speed, fl_step_count, fy_scan_range, white_wall_mode = SPEED_FL_PRESETS[speed_fl]
    return replace(
        params,
        speed=speed,
        fl_step_count=fl_step_count,
        fy_scan_range=fy_scan_range,
        white_wall_mode=white_wall_mode,
    )


# ============================================================================
# Progress Channel
# ============================================================================


class ProgressChannel:
    """
    Single-writer progress value in [0, 100] that never decreases.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._value = 0.0
        self.listener: Callable[[float], None] | None = None

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def advance(self, value: float) -> float:
        """Move progress to `value` unless that would move it backwards."""
        with self._lock:
            self._value = min(100.0, max(self._value, float(value)))
            current = self._value
        self._notify(current)
        return current

    def step(self, delta: float, cap: float) -> float:
        """Add `delta` while progress is still below `cap`."""
        with self._lock:
            if self._value < cap:
                self._value = min(100.0, self._value + delta)
            current = self._value
        self._notify(current)
        return current

    def reset(self) -> None:
        with self._lock:
            self._value = 0.0
        self._notify(0.0)

    def _notify(self, value: float) -> None:
        if self.listener is not None:
            self.listener(value)

    def phase_callback(self, start: float, end: float = 100.0) -> Callable[[float], None]:
        """
        Callback mapping firmware progress (0-100) into [start, end].
        """
        span = end - start

        def report(firmware_progress: float) -> None:
            fraction = min(max(float(firmware_progress), 0.0), 100.0) / 100.0
            self.advance(start + span * fraction)

        return report


# ============================================================================
# Session
# ============================================================================


@dataclass(frozen=True, slots=True)
class CalibrationOutcome:
    """Result of one orchestrator run."""

    ok: bool
    message: str = ""
    error: Exception | None = None


@dataclass
class CalibrationSession:
    """Everything one calibration run reads and produces."""

    action: CalibrationAction
    params: CalibrationParams = field(default_factory=CalibrationParams)
    host_assistance: bool = False
    speed_fl: int = 1
    toggle: bool = False
    retry_times: int = 0

    progress: ProgressChannel = field(default_factory=ProgressChannel)
    state: CalibrationState = CalibrationState.IDLE
    error_message: str = ""
    log: list[str] = field(default_factory=list)

    old_table: bytes = b""
    new_table: bytes = b""
    health_metrics: tuple[float, ...] = ()
    metrics_before: DepthMetrics | None = None
    metrics_after: DepthMetrics | None = None

    # Focal length results (percent for ratio/align, degrees for tilt)
    ratio: float = 0.0
    corrected_ratio: float = 0.0
    align: float = 0.0
    tilt_angle: float = 0.0

    measured_ground_truth_mm: float | None = None
    uv_health: list[float] = field(default_factory=list)
    uv_result: object | None = None
    on_log: Callable[[str], None] | None = field(default=None, repr=False, compare=False)

    @property
    def done(self) -> bool:
        return self.state == CalibrationState.DONE

    @property
    def failed(self) -> bool:
        return self.state == CalibrationState.FAILED

    def add_log(self, message: str) -> None:
        self.log.append(message)
        logger.info(message)
        if self.on_log is not None:
            self.on_log(message)

    def fail(self, message: str) -> None:
        self.error_message = message
        self.state = CalibrationState.FAILED
        logger.error(message)

    def reset(self) -> None:
        """Return to IDLE for another attempt; parameters and retry state survive."""
        self.progress.reset()
        self.state = CalibrationState.IDLE
        self.error_message = ""
        self.old_table = b""
        self.new_table = b""
        self.health_metrics = ()
        self.metrics_before = None
        self.metrics_after = None
        self.ratio = self.corrected_ratio = self.align = self.tilt_angle = 0.0
        self.measured_ground_truth_mm = None
        self.uv_health = []
        self.uv_result = None
