"""
Configuration loading/saving.

Pure functions plus a small TOML-backed key/value store.
- viewer.* keys persist target dimensions, the measured ground truth and
  the last calibration time per device serial
- [calibration] holds the default CalibrationParams
"""

from __future__ import annotations

import logging
from dataclasses import asdict, fields, replace
from pathlib import Path

import rtoml

from .session import CalibrationParams
from .types import INFO_PRODUCT_ID

logger = logging.getLogger(__name__)

KEY_TARGET_WIDTH = "viewer.target_width_r"
KEY_TARGET_HEIGHT = "viewer.target_height_r"
KEY_GROUND_TRUTH = "viewer.ground_truth_r"
KEY_LAST_CALIB_NOTICE = "viewer.last_calib_notice"

WHITE_WALL_PRODUCT_IDS = ("0AD3",)


# ============================================================================
# Key/Value Store
# ============================================================================


class TomlConfigStore:
    """
    Persisted configuration with dotted keys.

    "viewer.ground_truth_r" is stored as `ground_truth_r` inside the
    [viewer] table. Every `set` writes the file.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.data: dict = rtoml.load(self.path) if self.path.exists() else {}

    def get(self, key: str, default: object = None) -> object:
        node: object = self.data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: object) -> None:
        *parents, leaf = key.split(".")
        node = self.data
        for part in parents:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[leaf] = value
        self.save()

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        rtoml.dump(self.data, self.path)


# ============================================================================
# Calibration Settings
# ============================================================================


def load_calibration_settings(path: Path) -> CalibrationParams:
    """
    Load CalibrationParams from the [calibration] table of a TOML file.

    Missing keys keep their defaults; unknown keys are ignored.

    Args:
        path: Path to the settings file

    Returns:
        CalibrationParams dataclass
    """
    path = Path(path)
    if not path.exists():
        return CalibrationParams()

    section = rtoml.load(path).get("calibration", {})
    known = {f.name for f in fields(CalibrationParams)}
    unknown = set(section) - known
    if unknown:
        logger.warning("Ignoring unknown calibration settings: %s", ", ".join(sorted(unknown)))

    return CalibrationParams(**{k: v for k, v in section.items() if k in known})


def save_calibration_settings(params: CalibrationParams, path: Path) -> None:
    """
    Save CalibrationParams to the [calibration] table, keeping other tables.
    """
    path = Path(path)
    data = rtoml.load(path) if path.exists() else {}
    data["calibration"] = asdict(params)
    path.parent.mkdir(parents=True, exist_ok=True)
    rtoml.dump(data, path)


def default_params_for_device(params: CalibrationParams, device) -> CalibrationParams:
    """White-wall capable products default to speed 4."""
    product_id = device.get_camera_info(INFO_PRODUCT_ID)
    if product_id in WHITE_WALL_PRODUCT_IDS:
        return replace(params, speed=4)
    return params
