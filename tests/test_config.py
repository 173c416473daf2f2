"""
Tests for autocalib.config (TOML).
"""

import logging
from dataclasses import replace

import rtoml

from autocalib.config import (
    KEY_GROUND_TRUTH,
    TomlConfigStore,
    default_params_for_device,
    load_calibration_settings,
    save_calibration_settings,
)
from autocalib.session import CalibrationParams


class TestTomlConfigStore:
    def test_set_persists_nested_key(self, temp_dir):
        path = temp_dir / "viewer.toml"
        store = TomlConfigStore(path)
        store.set(KEY_GROUND_TRUTH, 1234.5)

        assert rtoml.load(path) == {"viewer": {"ground_truth_r": 1234.5}}
        assert TomlConfigStore(path).get(KEY_GROUND_TRUTH) == 1234.5

    def test_missing_key_default(self, temp_dir):
        store = TomlConfigStore(temp_dir / "viewer.toml")
        assert store.get("viewer.target_width_r", 175) == 175
        assert store.get("nothing.here") is None

    def test_per_serial_key(self, temp_dir):
        store = TomlConfigStore(temp_dir / "viewer.toml")
        store.set("viewer.last_calib_notice.849112", 1700000000)
        store.set("viewer.last_calib_notice.111", 1600000000)
        assert store.get("viewer.last_calib_notice") == {
            "849112": 1700000000,
            "111": 1600000000,
        }

    def test_leaf_replaced_by_table(self, temp_dir):
        store = TomlConfigStore(temp_dir / "viewer.toml")
        store.set("viewer", 1)
        store.set("viewer.ground_truth_r", 2)
        assert store.get("viewer.ground_truth_r") == 2


class TestCalibrationSettings:
    def test_missing_file_gives_defaults(self, temp_dir):
        assert load_calibration_settings(temp_dir / "none.toml") == CalibrationParams()

    def test_save_and_load_roundtrip(self, temp_dir):
        path = temp_dir / "settings.toml"
        params = replace(CalibrationParams(), speed=1, ground_truth_mm=987.0, py_px_only=False)
        save_calibration_settings(params, path)
        assert load_calibration_settings(path) == params

    def test_other_tables_kept(self, temp_dir):
        path = temp_dir / "settings.toml"
        rtoml.dump({"viewer": {"ground_truth_r": 1.0}}, path)
        save_calibration_settings(CalibrationParams(), path)
        assert rtoml.load(path)["viewer"] == {"ground_truth_r": 1.0}

    def test_unknown_keys_ignored(self, temp_dir, caplog):
        path = temp_dir / "settings.toml"
        path.write_text("[calibration]\nspeed = 2\nlaser = 9\n")
        with caplog.at_level(logging.WARNING):
            params = load_calibration_settings(path)
        assert params.speed == 2
        assert "laser" in caplog.text


class TestDeviceDefaults:
    class Device:
        def __init__(self, product_id):
            self.product_id = product_id

        def get_camera_info(self, key):
            return self.product_id

    def test_white_wall_product(self):
        params = default_params_for_device(CalibrationParams(), self.Device("0AD3"))
        assert params.speed == 4

    def test_other_product(self):
        params = default_params_for_device(CalibrationParams(), self.Device("0B07"))
        assert params.speed == 3
