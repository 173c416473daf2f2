"""
Collaborator interfaces consumed by the calibration engine.

The device runtime, the streaming viewer and the persisted configuration
store live outside this package. They are described here as typing
Protocols so that real bindings and test fakes can be swapped freely.
"""

from __future__ import annotations

from typing import Callable, Protocol, Sequence

from .types import Extrinsics, Frame, StreamSelection

ProgressCallback = Callable[[float], None]
Invoker = Callable[[Callable[[], None]], None]


def direct_invoke(action: Callable[[], None]) -> None:
    """Run `action` on the calling thread."""
    action()


# ============================================================================
# Sensors and Viewer
# ============================================================================


class OptionSensor(Protocol):
    def supports_option(self, option: str) -> bool: ...

    def get_option(self, option: str) -> float: ...

    def set_option(self, option: str, value: float) -> None: ...


class StreamSensor(OptionSensor, Protocol):
    """
    One physical sensor as exposed by the streaming runtime.

    `formats` maps stream id to its list of pixel-format tags.
    `selection` is the sensor's current stream selection (None before
    anything was ever selected); assigning it changes what a later
    default start picks up.
    """

    formats: dict[int, list[str]]
    resolutions: list[tuple[int, int]]
    fps_values: list[int]
    selection: StreamSelection | None
    streaming: bool
    post_processing_enabled: bool

    def is_supported(self, selection: StreamSelection) -> bool: ...

    def play(self, selection: StreamSelection, syncer: object) -> None: ...

    def stop(self) -> None: ...

    def last_frame_time(self, stream_id: int) -> float | None: ...

    def last_frame(self, stream_id: int) -> Frame | None: ...

    def wait_for_frame(self, stream_id: int) -> Frame | None: ...


class Viewer(Protocol):
    is_3d_view: bool
    synchronization_enabled: bool

    def create_syncer(self) -> object: ...


# ============================================================================
# Calibration Device Protocol
# ============================================================================


class CalibrationDevice(Protocol):
    def get_camera_info(self, key: str) -> str | None: ...

    def get_calibration_table(self) -> bytes: ...

    def set_calibration_table(self, table: bytes) -> None: ...

    def get_extrinsics(self, from_stream: int, to_stream: int) -> Extrinsics: ...

    def write_calibration(self) -> None: ...

    def run_on_chip_calibration(
        self, json: str, progress: ProgressCallback, timeout_ms: int
    ) -> tuple[bytes, float]: ...

    def run_tare_calibration(
        self,
        ground_truth_mm: float,
        json: str,
        progress: ProgressCallback,
        timeout_ms: int,
    ) -> tuple[bytes, tuple[float, float]]: ...

    def run_focal_length_calibration(
        self,
        left: Sequence[Frame],
        right: Sequence[Frame],
        target_width_mm: float,
        target_height_mm: float,
        adjust_both_sides: int,
        progress: ProgressCallback,
    ) -> tuple[bytes, float, float]: ...

    def run_uv_map_calibration(
        self,
        left: Sequence[Frame],
        color: Sequence[Frame],
        depth: Sequence[Frame],
        py_px_only: bool,
        progress: ProgressCallback,
    ) -> tuple[bytes, list[float]]: ...

    def calculate_target_z(
        self,
        frames: Sequence[Frame],
        target_width_mm: float,
        target_height_mm: float,
        progress: ProgressCallback,
    ) -> float: ...


class ConfigStore(Protocol):
    def get(self, key: str, default: object = None) -> object: ...

    def set(self, key: str, value: object) -> None: ...
