"""
Stream configuration for calibration actions.

`select_streams` computes which streams, resolution and FPS an action
needs, negotiating a supported combination. `StreamController` hands the
selection to the streaming runtime and waits for frames.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from .acquisition import Clock, frames_arriving, poll_until, wait_for_streams_stopped
from .device import Invoker, OptionSensor, StreamSensor, Viewer, direct_invoke
from .errors import StreamStartError
from .types import (
    RGB8_FORMAT,
    Y8_FORMAT,
    Z16_FORMAT,
    CalibrationAction,
    StreamSelection,
)

logger = logging.getLogger(__name__)

START_POLL_ATTEMPTS = 200
SETTLE_DELAY_S = 0.6
FALLBACK_RESOLUTION = (640, 480)

TARGET_RESOLUTION = (1280, 720)
FAST_DEPTH_PROFILE = (256, 144, 90)

UV_ACTIONS = (CalibrationAction.UVMAPPING_CALIB, CalibrationAction.UVMAPPING)


# ============================================================================
# Selection
# ============================================================================


def _first_stream_with(formats: dict[int, list[str]], tag: str) -> int | None:
    for stream_id, pixel_formats in formats.items():
        if pixel_formats and pixel_formats[0] == tag:
            return stream_id
    return None


def _stream_ids_for(
    action: CalibrationAction, formats: dict[int, list[str]], resolution: tuple[int, int]
) -> tuple[int, ...]:
    """Pick stream ids by pixel-format tag in the action's priority order."""
    if action == CalibrationAction.TARE_GROUND_TRUTH:
        left = _first_stream_with(formats, Y8_FORMAT)
        return (left if left is not None else 1,)

    if action in UV_ACTIONS:
        left = _first_stream_with(formats, Y8_FORMAT)
        depth = _first_stream_with(formats, Z16_FORMAT)
        return (
            left if left is not None else 1,
            depth if depth is not None else 0,
        )

    if action == CalibrationAction.FL_CALIB and resolution == TARGET_RESOLUTION:
        mono = [sid for sid, fmts in formats.items() if fmts and fmts[0] == Y8_FORMAT]
        left = mono[0] if mono else 1
        right = mono[1] if len(mono) > 1 else 2
        return (left, right)

    depth = _first_stream_with(formats, Z16_FORMAT)
    return (depth if depth is not None else 0,)


def _pick_resolution_and_fps(
    sensor: StreamSensor, width: int, height: int, fps: int
) -> tuple[tuple[int, int], int]:
    """Requested values when the sensor lists them, otherwise the current ones."""
    current = sensor.selection
    if (width, height) in sensor.resolutions:
        resolution = (width, height)
    elif current is not None:
        resolution = current.resolution
    else:
        resolution = sensor.resolutions[0]

    if fps in sensor.fps_values:
        chosen_fps = fps
    elif current is not None:
        chosen_fps = current.fps
    else:
        chosen_fps = sensor.fps_values[0]

    return resolution, chosen_fps


def negotiate(sensor: StreamSensor, selection: StreamSelection) -> StreamSelection:
    """
    Make `selection` supported by the sensor.

    First sweeps the FPS values at the requested resolution, then falls
    back to 640x480 and sweeps again. If nothing works the 640x480
    selection at the requested FPS is returned and the start will fail.
    """
    if sensor.is_supported(selection):
        return selection

    for fps in sensor.fps_values:
        candidate = replace(selection, fps=fps)
        if sensor.is_supported(candidate):
            logger.info("Falling back to %d fps at %dx%d", fps, *selection.resolution)
            return candidate

    fallback = replace(selection, resolution=FALLBACK_RESOLUTION)
    if sensor.is_supported(fallback):
        logger.info("Falling back to 640x480 at %d fps", fallback.fps)
        return fallback

    for fps in sensor.fps_values:
        candidate = replace(fallback, fps=fps)
        if sensor.is_supported(candidate):
            logger.info("Falling back to 640x480 at %d fps", fps)
            return candidate

    logger.warning("No supported stream combination found")
    return fallback


def select_streams(
    action: CalibrationAction, sensor: StreamSensor, width: int, height: int, fps: int
) -> StreamSelection:
    """
    Compute the depth-sensor selection an action needs.

    Args:
        action: Calibration action being run
        sensor: Depth/IR sensor
        width, height, fps: Requested profile; 0 keeps the current value

    Returns:
        A StreamSelection the sensor supports, if one could be found
    """
    resolution, chosen_fps = _pick_resolution_and_fps(sensor, width, height, fps)
    stream_ids = _stream_ids_for(action, sensor.formats, (width, height))
    selection = StreamSelection(
        stream_ids=stream_ids,
        format_indices=(0,) * len(stream_ids),
        resolution=resolution,
        fps=chosen_fps,
    )
    return negotiate(sensor, selection)


def select_color_streams(
    color_sensor: StreamSensor, width: int, height: int, fps: int
) -> StreamSelection:
    """Select the first color stream that offers RGB8, at the requested profile."""
    stream_id = next(iter(color_sensor.formats), 0)
    format_index = 0
    for sid, pixel_formats in color_sensor.formats.items():
        if RGB8_FORMAT in pixel_formats:
            stream_id = sid
            format_index = pixel_formats.index(RGB8_FORMAT)
            break

    resolution, chosen_fps = _pick_resolution_and_fps(color_sensor, width, height, fps)
    return StreamSelection(
        stream_ids=(stream_id,),
        format_indices=(format_index,),
        resolution=resolution,
        fps=chosen_fps,
    )


# ============================================================================
# Device Options
# ============================================================================


class DeviceOptionGuard:
    """
    Records sensor options before they are overridden and puts them back.

    Each option is recorded the first time it is overridden only, so
    repeated overrides never capture an already-modified value. `restore`
    runs at most once.
    """

    def __init__(self, sensor: OptionSensor):
        self.sensor = sensor
        self.saved: dict[str, float] = {}
        self.restored = False

    def override(self, option: str, value: float) -> None:
        if not self.sensor.supports_option(option):
            return
        if option not in self.saved:
            self.saved[option] = self.sensor.get_option(option)
        self.sensor.set_option(option, value)

    def restore(self) -> None:
        if self.restored:
            return
        self.restored = True
        for option, value in self.saved.items():
            self.sensor.set_option(option, value)
            logger.debug("Restored %s = %s", option, value)


# ============================================================================
# Stream Controller
# ============================================================================


class StreamController:
    """
    Starts and stops calibration streams through the invoker.

    Play/stop calls touch the shared streaming context and are always
    funneled through `invoke`; waiting for frames happens on the caller.
    """

    def __init__(
        self,
        sensor: StreamSensor,
        viewer: Viewer,
        clock: Clock,
        invoke: Invoker = direct_invoke,
        color_sensor: StreamSensor | None = None,
    ):
        self.sensor = sensor
        self.viewer = viewer
        self.clock = clock
        self.invoke = invoke
        self.color_sensor = color_sensor
        self.syncer: object | None = None
        self.active: StreamSelection | None = None
        self.active_color: StreamSelection | None = None

    @property
    def stream_ids(self) -> tuple[int, ...]:
        return self.active.stream_ids if self.active else ()

    @property
    def color_stream_id(self) -> int | None:
        return self.active_color.stream_ids[0] if self.active_color else None

    def adopt(self, selection: StreamSelection | None) -> None:
        """Track streams that were started outside the controller."""
        self.active = selection

    def start(self, action: CalibrationAction, width: int, height: int, fps: int) -> bool:
        """Configure and play the streams; True once frames are arriving."""
        selection = select_streams(action, self.sensor, width, height, fps)
        color_selection = None
        if action in UV_ACTIONS and self.color_sensor is not None:
            color_selection = select_color_streams(self.color_sensor, width, height, fps)
        return self._play(selection, color_selection)

    def resume(
        self, selection: StreamSelection, color_selection: StreamSelection | None = None
    ) -> bool:
        """Play a previously saved selection unchanged; True once frames are arriving."""
        if self.color_sensor is None:
            color_selection = None
        return self._play(selection, color_selection)

    def _play(self, selection: StreamSelection, color_selection: StreamSelection | None) -> bool:
        def play() -> None:
            if self.syncer is None:
                self.syncer = self.viewer.create_syncer()
            self.sensor.play(selection, self.syncer)
            if color_selection is not None:
                self.color_sensor.play(color_selection, self.syncer)

        try:
            self.invoke(play)
        except Exception:
            logger.exception("Starting streams %s failed", selection)
            return False

        self.active = selection
        self.active_color = color_selection

        arrived = poll_until(
            lambda: frames_arriving(self.sensor, selection.stream_ids, self.clock),
            clock=self.clock,
            attempts=START_POLL_ATTEMPTS,
        )
        return bool(arrived)

    def try_start(self, action: CalibrationAction, width: int, height: int, fps: int) -> None:
        """
        Start streams, retrying once after a settle delay.

        Raises:
            StreamStartError: If frames never arrive on either attempt
        """
        if self.start(action, width, height, fps):
            return

        self.clock.sleep(SETTLE_DELAY_S)
        if self.start(action, width, height, fps):
            return

        self.stop()
        logger.error("Failed to start streaming")
        raise StreamStartError(f"Failed to start streaming ({width}, {height}, {fps})!")

    def stop(self) -> None:
        """Stop every stream on both sensors and wait for frames to cease."""
        stream_ids = self.stream_ids

        def halt() -> None:
            self.sensor.stop()
            if self.color_sensor is not None:
                self.color_sensor.stop()

        self.invoke(halt)
        if stream_ids and not wait_for_streams_stopped(self.sensor, stream_ids, self.clock):
            logger.warning("Frames still arriving after stop on streams %s", stream_ids)

        self.active = None
        self.active_color = None
