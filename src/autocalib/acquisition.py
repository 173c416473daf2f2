"""
Frame acquisition with bounded polling.

Every wait in the calibration engine goes through `poll_until`, which
takes an injectable clock so the timing logic can be exercised without
real sleeps.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Protocol, Sequence, TypeVar

from .device import StreamSensor
from .errors import FrameTimeoutError, InsufficientDataError
from .types import Frame

logger = logging.getLogger(__name__)

T = TypeVar("T")

POLL_INTERVAL_S = 0.010
FRESH_FRAME_AGE_S = 0.100
STOPPED_FRAME_AGE_S = 0.200
DEFAULT_FETCH_TIMEOUT_MS = 3000


# ============================================================================
# Clock
# ============================================================================


class Clock(Protocol):
    def now(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Monotonic wall clock."""

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


def poll_until(
    check: Callable[[], T | None],
    *,
    clock: Clock,
    interval: float = POLL_INTERVAL_S,
    timeout: float | None = None,
    attempts: int | None = None,
) -> T | None:
    """
    Call `check` until it returns a truthy value or the budget runs out.

    Args:
        check: Zero-argument callable, polled once per interval
        clock: Time source used for sleeping and the timeout
        interval: Seconds between checks
        timeout: Give up after this many seconds (None for no time limit)
        attempts: Give up after this many checks (None for no count limit)

    Returns:
        The first truthy result, or None if the budget was exhausted
    """
    if timeout is None and attempts is None:
        raise ValueError("poll_until needs a timeout or an attempt budget")

    start = clock.now()
    count = 0
    while True:
        result = check()
        if result:
            return result

        count += 1
        if attempts is not None and count >= attempts:
            return None
        if timeout is not None and clock.now() - start > timeout:
            return None

        clock.sleep(interval)


# ============================================================================
# Frame Fetching
# ============================================================================


def fetch_depth_frame(
    sensor: StreamSensor,
    stream_ids: Sequence[int],
    clock: Clock,
    timeout_ms: int = DEFAULT_FETCH_TIMEOUT_MS,
) -> Frame:
    """
    Return the latest frame of the first stream that delivered recently.

    Polls the runtime's last-frame cache every 10 ms and accepts a frame
    only if it arrived within the last 100 ms.

    Raises:
        FrameTimeoutError: If no fresh frame shows up within `timeout_ms`
    """

    def fresh_frame() -> Frame | None:
        now = clock.now()
        for stream_id in stream_ids:
            arrived = sensor.last_frame_time(stream_id)
            if arrived is None or now - arrived >= FRESH_FRAME_AGE_S:
                continue
            frame = sensor.last_frame(stream_id)
            if frame is not None:
                return frame
        return None

    frame = poll_until(fresh_frame, clock=clock, timeout=timeout_ms / 1000.0)
    if frame is None:
        raise FrameTimeoutError(f"Failed to fetch depth frame within {timeout_ms}ms")
    return frame


def frames_arriving(sensor: StreamSensor, stream_ids: Sequence[int], clock: Clock) -> bool:
    """True if any of the streams delivered a frame within the last 100 ms."""
    now = clock.now()
    for stream_id in stream_ids:
        arrived = sensor.last_frame_time(stream_id)
        if arrived is not None and now - arrived < FRESH_FRAME_AGE_S:
            return True
    return False


def wait_for_streams_stopped(
    sensor: StreamSensor,
    stream_ids: Sequence[int],
    clock: Clock,
    timeout: float = 2.0,
) -> bool:
    """Wait until none of the streams delivered a frame in the last 200 ms."""

    def stopped() -> bool:
        now = clock.now()
        for stream_id in stream_ids:
            arrived = sensor.last_frame_time(stream_id)
            if arrived is not None and now - arrived <= STOPPED_FRAME_AGE_S:
                return False
        return True

    return bool(poll_until(stopped, clock=clock, timeout=timeout))


def gather_matched_frames(
    sensor: StreamSensor,
    stream_ids: Sequence[int],
    count: int,
    max_attempts: int | None = None,
    on_match: Callable[[int], None] | None = None,
) -> list[tuple[Frame, ...]]:
    """
    Pull `count` tuples holding one frame per stream.

    A `None` from the queue means the producer shut down for that read;
    the whole tuple is dropped and the read retried.

    Args:
        sensor: Sensor owning the frame queues
        stream_ids: Streams to read, in tuple order
        count: Number of matched tuples required
        max_attempts: Read budget (defaults to 4 * count)
        on_match: Called with the number of tuples gathered so far

    Raises:
        InsufficientDataError: If the read budget runs out first
    """
    max_attempts = max_attempts if max_attempts is not None else 4 * count
    matched: list[tuple[Frame, ...]] = []

    for _ in range(max_attempts):
        frames = tuple(sensor.wait_for_frame(stream_id) for stream_id in stream_ids)
        if any(frame is None for frame in frames):
            continue

        matched.append(frames)
        if on_match is not None:
            on_match(len(matched))
        if len(matched) >= count:
            return matched

    logger.warning("Gathered %d of %d matched frame sets", len(matched), count)
    raise InsufficientDataError(
        f"Failed to capture enough frames ({len(matched)} of {count})!"
    )
