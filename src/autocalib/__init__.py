# autocalib - Depth camera self-calibration workflows

__version__ = "0.1.0"

# Core types
from autocalib.types import (
    CalibrationAction,
    CalibrationState,
    DepthMetrics,
    DistortionModel,
    Extrinsics,
    Frame,
    Intrinsics,
    RoiWindow,
    StreamSelection,
    TargetSides,
)

# Errors
from autocalib.errors import (
    CalibrationError,
    DegenerateInputError,
    FirmwareError,
    FrameTimeoutError,
    InsufficientDataError,
    StartupTimeoutError,
    StreamStartError,
)

# Session
from autocalib.session import (
    CalibrationOutcome,
    CalibrationParams,
    CalibrationSession,
    ProgressChannel,
)

# Configuration
from autocalib.config import (
    TomlConfigStore,
    load_calibration_settings,
    save_calibration_settings,
)

# Workflow
from autocalib.orchestrator import ACTION_PLANS, CalibrationOrchestrator
from autocalib.runner import SessionRunner

# Table codec and solvers
from autocalib.table import patch_focal_length, table_crc32
from autocalib.uvmapping import UVMappingCalib, UVMappingResult

__all__ = [
    # Core types
    "CalibrationAction",
    "CalibrationState",
    "DepthMetrics",
    "DistortionModel",
    "Extrinsics",
    "Frame",
    "Intrinsics",
    "RoiWindow",
    "StreamSelection",
    "TargetSides",
    # Errors
    "CalibrationError",
    "DegenerateInputError",
    "FirmwareError",
    "FrameTimeoutError",
    "InsufficientDataError",
    "StartupTimeoutError",
    "StreamStartError",
    # Session
    "CalibrationOutcome",
    "CalibrationParams",
    "CalibrationSession",
    "ProgressChannel",
    # Configuration
    "TomlConfigStore",
    "load_calibration_settings",
    "save_calibration_settings",
    # Workflow
    "ACTION_PLANS",
    "CalibrationOrchestrator",
    "SessionRunner",
    # Table codec and solvers
    "patch_focal_length",
    "table_crc32",
    "UVMappingCalib",
    "UVMappingResult",
]
