"""
Pytest configuration and shared fixtures.

The fakes below stand in for the device runtime, the streaming viewer and
the configuration store. Time is simulated by FakeClock, so every poll
and settle delay finishes instantly.
"""

import itertools
import struct
import tempfile
from pathlib import Path

import cv2
import numpy as np
import pytest


# ============================================================================
# Fakes
# ============================================================================


class FakeClock:
    """Simulated monotonic clock; sleeping just moves time forward."""

    def __init__(self, start=1000.0):
        self.t = start
        self.slept = 0.0

    def now(self):
        return self.t

    def sleep(self, seconds):
        self.t += seconds
        self.slept += seconds


class FakeSensor:
    """
    Depth/IR sensor whose streams deliver a fixed image per stream id.

    Frame counters come from `counter_source`; once it is exhausted the
    last counter value repeats.
    """

    def __init__(self, clock, formats=None, images=None, intrinsics=None, supported=None):
        self.clock = clock
        self.formats = formats if formats is not None else {0: ["Z16"], 1: ["Y8"], 2: ["Y8"]}
        self.resolutions = [(640, 480), (1280, 720), (848, 480), (256, 144)]
        self.fps_values = [30, 90, 5]
        self.selection = None
        self.streaming = False
        self.post_processing_enabled = True
        self.options = {
            "thermal_compensation": 1.0,
            "emitter_enabled": 1.0,
            "stereo_baseline": 50.0,
        }
        self.supported = supported
        self.images = images or {}
        self.depth = np.full((48, 64), 1000, dtype=np.uint16)
        self.intrinsics = intrinsics
        self.counter_source = itertools.count()
        self.last_counter = 0
        self.deliver = True
        self.fail_play = 0
        self.play_calls = []
        self.stop_calls = 0
        self.active_ids = ()

    # Options
    def supports_option(self, option):
        return option in self.options

    def get_option(self, option):
        return self.options[option]

    def set_option(self, option, value):
        self.options[option] = value

    # Streaming
    def is_supported(self, selection):
        return self.supported(selection) if self.supported is not None else True

    def play(self, selection, syncer):
        self.play_calls.append(selection)
        if self.fail_play > 0:
            self.fail_play -= 1
            raise RuntimeError("Device busy")
        self.selection = selection
        self.streaming = True
        self.active_ids = selection.stream_ids

    def stop(self):
        self.stop_calls += 1
        self.streaming = False
        self.active_ids = ()

    def start_scan(self, frames, repeat=1):
        """Firmware restarted its counter: 0, 1, ... frames, each delivered `repeat` times."""
        self.counter_source = (c for c in range(frames + 1) for _ in range(repeat))

    def _next_counter(self):
        self.last_counter = next(self.counter_source, self.last_counter)
        return self.last_counter

    def _frame(self, stream_id):
        from autocalib.types import Frame

        return Frame(
            data=self.images.get(stream_id, self.depth),
            stream_id=stream_id,
            frame_counter=self._next_counter(),
            timestamp=self.clock.now(),
            intrinsics=self.intrinsics,
        )

    def last_frame_time(self, stream_id):
        if self.streaming and self.deliver and stream_id in self.active_ids:
            return self.clock.now()
        return None

    def last_frame(self, stream_id):
        return self._frame(stream_id)

    def wait_for_frame(self, stream_id):
        if not self.streaming:
            return None
        return self._frame(stream_id)


class FakeViewer:
    def __init__(self):
        self.is_3d_view = False
        self.synchronization_enabled = True
        self.syncers = 0

    def create_syncer(self):
        self.syncers += 1
        return object()


class FakeDevice:
    """
    Calibration device recording every firmware call.

    `failures` calls of the on-chip routine raise FirmwareError before it
    starts succeeding. `on_calibration` is called with each payload.
    """

    def __init__(self, old_table, new_table, health=0.1):
        self.info = {
            "serial_number": "849112",
            "product_id": "0B07",
            "usb_type_descriptor": "3.2",
        }
        self.table = old_table
        self.new_table = new_table
        self.health = health
        self.tare_health = (0.1, -0.2)
        self.failures = 0
        self.on_calibration = None
        self.calls = []
        self.tables_set = []
        self.writes = 0
        self.extrinsics = None
        self.fl_result = (new_table, 0.5, 1.5)
        self.uv_map_result = (new_table, [0.3, 0.2])
        self.target_z = 412.0

    def get_camera_info(self, key):
        return self.info.get(key)

    def get_calibration_table(self):
        return self.table

    def set_calibration_table(self, table):
        self.tables_set.append(table)

    def get_extrinsics(self, from_stream, to_stream):
        return self.extrinsics

    def write_calibration(self):
        self.writes += 1

    def run_on_chip_calibration(self, json, progress, timeout_ms):
        from autocalib.errors import FirmwareError

        self.calls.append(json)
        if self.failures > 0:
            self.failures -= 1
            raise FirmwareError(-3, "run_on_chip_calibration")
        if self.on_calibration is not None:
            self.on_calibration(json)
        progress(50)
        progress(100)
        return self.new_table, self.health

    def run_tare_calibration(self, ground_truth_mm, json, progress, timeout_ms):
        self.calls.append(json)
        if self.on_calibration is not None:
            self.on_calibration(json)
        progress(100)
        return self.new_table, self.tare_health

    def run_focal_length_calibration(
        self, left, right, target_width_mm, target_height_mm, adjust_both_sides, progress
    ):
        self.calls.append(("focal_length", left, right, target_width_mm, target_height_mm))
        progress(100)
        return self.fl_result

    def run_uv_map_calibration(self, left, color, depth, py_px_only, progress):
        self.calls.append(("uv_map", left, color, depth, py_px_only))
        progress(100)
        return self.uv_map_result

    def calculate_target_z(self, frames, target_width_mm, target_height_mm, progress):
        self.calls.append(("target_z", frames, target_width_mm, target_height_mm))
        progress(100)
        return self.target_z


class FakeConfig:
    def __init__(self, values=None):
        self.values = dict(values or {})

    def get(self, key, default=None):
        return self.values.get(key, default)

    def set(self, key, value):
        self.values[key] = value


def build_table(fx=1.0, fy=1.0, size=256):
    """Calibration table with identity-like intrinsic blocks and a valid CRC."""
    from autocalib.table import with_crc

    table = bytearray(size)
    struct.pack_into("<HHIII", table, 0, 0x0200, 0x0019, size - 16, 0, 0)
    left = [1.0, 1.0, 0.5, 0.5, 0.0, 0.0, 0.0, 0.0, 1.0]
    struct.pack_into("<9f", table, 16, *left)
    struct.pack_into("<f", table, 52, fx)
    struct.pack_into("<f", table, 56, fy)
    return with_crc(bytes(table))


def rectangle_image(x0=100, y0=80, x1=219, y1=159, shape=(240, 320)):
    image = np.full(shape, 200, dtype=np.uint8)
    cv2.rectangle(image, (x0, y0), (x1, y1), 0, thickness=-1)
    return image


def dots_image(centers, radius=6, shape=(240, 320), color=False):
    image = np.full(shape, 200, dtype=np.uint8)
    for x, y in centers:
        cv2.circle(image, (int(x), int(y)), radius, 0, thickness=-1)
    if color:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
    return image


def distort_image(image, intrinsics):
    """Warp an ideal pinhole image through the lens distortion of `intrinsics`."""
    h, w = image.shape[:2]
    xs, ys = np.meshgrid(np.arange(w, dtype=np.float32), np.arange(h, dtype=np.float32))
    pixels = np.stack([xs.ravel(), ys.ravel()], axis=1).reshape(-1, 1, 2)
    K = intrinsics.camera_matrix()
    ideal = cv2.undistortPoints(pixels, K, np.array(intrinsics.coeffs), P=K).reshape(h, w, 2)
    return cv2.remap(
        image,
        ideal[..., 0].astype(np.float32),
        ideal[..., 1].astype(np.float32),
        cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_REPLICATE,
    )


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that's cleaned up after test."""
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sample_intrinsics():
    """IR/color intrinsics matching the 320x240 synthetic images."""
    from autocalib.types import Intrinsics

    return Intrinsics(width=320, height=240, fx=300.0, fy=300.0, ppx=160.0, ppy=120.0)


@pytest.fixture
def sensor(clock, sample_intrinsics):
    return FakeSensor(clock, intrinsics=sample_intrinsics)


@pytest.fixture
def viewer():
    return FakeViewer()


@pytest.fixture
def config():
    return FakeConfig()


@pytest.fixture
def old_table():
    return build_table(fx=1.0, fy=1.0)


@pytest.fixture
def new_table():
    return build_table(fx=1.01, fy=1.02)


@pytest.fixture
def device(old_table, new_table):
    return FakeDevice(old_table, new_table)


@pytest.fixture
def flat_analyzer():
    """Depth analyzer reporting 80% fill and 2% RMS for every frame."""
    return lambda frame: (80.0, 2.0)


@pytest.fixture
def make_orchestrator(device, sensor, viewer, config, clock, flat_analyzer):
    """Factory building an orchestrator over the shared fakes."""
    from autocalib.orchestrator import CalibrationOrchestrator

    def make(session, **kwargs):
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("analyze", flat_analyzer)
        return CalibrationOrchestrator(session, device, sensor, viewer, config, **kwargs)

    return make
