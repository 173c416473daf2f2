"""
Core data structures for autocalib.

Frozen dataclasses with slots wherever the value is immutable once built.
Logic lives in separate modules - these are data containers only.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np


# ============================================================================
# Pixel Formats, Options and Camera Info Keys
# ============================================================================

Y8_FORMAT = "Y8"
Z16_FORMAT = "Z16"
RGB8_FORMAT = "RGB8"

OPTION_EMITTER_ENABLED = "emitter_enabled"
OPTION_THERMAL_COMPENSATION = "thermal_compensation"
OPTION_STEREO_BASELINE = "stereo_baseline"  # millimeters

INFO_SERIAL_NUMBER = "serial_number"
INFO_PRODUCT_ID = "product_id"
INFO_USB_TYPE_DESCRIPTOR = "usb_type_descriptor"


# ============================================================================
# Actions and States
# ============================================================================


class CalibrationAction(Enum):
    """Calibration workflow variants."""

    ON_CHIP_CALIB = "on_chip_calib"
    ON_CHIP_FL_CALIB = "on_chip_fl_calib"
    ON_CHIP_OB_CALIB = "on_chip_ob_calib"
    TARE_CALIB = "tare_calib"
    TARE_GROUND_TRUTH = "tare_ground_truth"
    FL_CALIB = "fl_calib"
    UVMAPPING_CALIB = "uvmapping_calib"
    UVMAPPING = "uvmapping"


class CalibrationState(Enum):
    """Orchestrator state machine positions."""

    IDLE = "idle"
    STREAM_SETUP = "stream_setup"
    WARMUP = "warmup"
    HOST_ASSISTED_SAMPLING = "host_assisted_sampling"
    FIRMWARE_CALIBRATE = "firmware_calibrate"
    HEALTH_EVALUATION = "health_evaluation"
    DONE = "done"
    FAILED = "failed"


ON_CHIP_ACTIONS = frozenset(
    {
        CalibrationAction.ON_CHIP_CALIB,
        CalibrationAction.ON_CHIP_FL_CALIB,
        CalibrationAction.ON_CHIP_OB_CALIB,
    }
)


# ============================================================================
# Camera Geometry
# ============================================================================


class DistortionModel(Enum):
    """Lens distortion model reported with a stream's intrinsics."""

    NONE = "none"
    BROWN_CONRADY = "brown_conrady"
    INVERSE_BROWN_CONRADY = "inverse_brown_conrady"


@dataclass(frozen=True, slots=True)
class Intrinsics:
    """
    Pinhole intrinsics of one stream (pixels).

    `coeffs` are (k1, k2, p1, p2, k3) in OpenCV order.
    """

    width: int
    height: int
    fx: float
    fy: float
    ppx: float
    ppy: float
    model: DistortionModel = DistortionModel.NONE
    coeffs: tuple[float, float, float, float, float] = (0.0, 0.0, 0.0, 0.0, 0.0)

    @property
    def distorted(self) -> bool:
        return self.model != DistortionModel.NONE and any(self.coeffs)

    def camera_matrix(self) -> np.ndarray:
        return np.array(
            [[self.fx, 0.0, self.ppx], [0.0, self.fy, self.ppy], [0.0, 0.0, 1.0]]
        )


@dataclass(frozen=True, slots=True)
class Extrinsics:
    """
    Rigid transform from one camera frame to another.
    """

    rotation: np.ndarray  # 3x3 rotation matrix
    translation: np.ndarray  # (3,) translation vector in meters


@dataclass(frozen=True, slots=True)
class RoiWindow:
    """Axis-aligned pixel window: columns [x, x+width), rows [y, y+height)."""

    x: int
    y: int
    width: int
    height: int

    @property
    def size(self) -> int:
        return self.width * self.height


# ============================================================================
# Frames and Streams
# ============================================================================


@dataclass(frozen=True, slots=True)
class Frame:
    """
    A single decoded frame as delivered by the streaming runtime.

    For depth frames `data` is a (H, W) uint16 array of depth units;
    for IR frames a (H, W) uint8 array; for color frames (H, W, 3) uint8 RGB.
    """

    data: np.ndarray
    stream_id: int
    frame_counter: int  # Firmware per-frame counter metadata
    timestamp: float  # Arrival time, seconds on the acquisition clock
    intrinsics: Intrinsics | None = None
    depth_units: float = 0.001  # Meters per depth unit

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def height(self) -> int:
        return int(self.data.shape[0])


@dataclass(frozen=True, slots=True)
class StreamSelection:
    """
    Streams chosen on one sensor and the shared resolution/FPS they run at.

    `format_indices[i]` is the index into the pixel-format list of
    `stream_ids[i]` on the sensor.
    """

    stream_ids: tuple[int, ...]
    format_indices: tuple[int, ...]
    resolution: tuple[int, int]  # (width, height)
    fps: int


# ============================================================================
# Measurements
# ============================================================================


@dataclass(frozen=True, slots=True)
class DepthMetrics:
    """Depth quality summary: ROI fill rate (%) and plane-fit RMS (% of distance)."""

    fill_rate: float
    rms: float


@dataclass(frozen=True, slots=True)
class TargetSides:
    """
    Averaged target rectangle side lengths in pixels.
    Top/bottom run along the target width, left/right along its height.
    """

    top: float
    bottom: float
    left: float
    right: float

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.top, self.bottom, self.left, self.right)
