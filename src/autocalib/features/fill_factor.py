"""
Fill-factor sampling for host-assisted on-chip calibration.

The host counts valid depth pixels inside a window for every firmware
frame-counter tick and sends the resulting table to the firmware.
"""

from __future__ import annotations

import numpy as np
from numba import jit

from ..errors import InsufficientDataError
from ..types import RoiWindow

FILL_FACTOR_SLOTS = 256
FILL_FACTOR_SCALE = 10000
FL_STRIP_ROWS = 5


# ============================================================================
# Numba Helpers
# ============================================================================


@jit(nopython=True, cache=True)
def _count_valid(depth: np.ndarray, x: int, y: int, width: int, height: int) -> int:
    count = 0
    for row in range(y, y + height):
        for col in range(x, x + width):
            if depth[row, col] != 0:
                count += 1
    return count


@jit(nopython=True, cache=True)
def _sum_valid(
    depth: np.ndarray, x: int, y: int, width: int, height: int
) -> tuple[int, float]:
    count = 0
    total = 0.0
    for row in range(y, y + height):
        for col in range(x, x + width):
            value = depth[row, col]
            if value != 0:
                count += 1
                total += value
    return count, total


# ============================================================================
# ROI Windows
# ============================================================================


def roi_windows(width: int, height: int, fl_scan_location: int = 0) -> tuple[RoiWindow, RoiWindow]:
    """
    Windows sampled by host assistance.

    The full window is the central fifth of the image. The focal-length
    strip is 5 rows of the same columns, at the top of the full window or,
    with `fl_scan_location == 1`, at its bottom.

    Returns:
        (full_window, fl_strip)
    """
    roi_w = width // 5
    roi_h = height // 5
    full = RoiWindow(x=2 * roi_w, y=2 * roi_h, width=roi_w, height=roi_h)

    strip_y = full.y
    if fl_scan_location == 1:
        strip_y += roi_h - FL_STRIP_ROWS
    strip = RoiWindow(x=full.x, y=strip_y, width=roi_w, height=FL_STRIP_ROWS)
    return full, strip


def _check_window(depth: np.ndarray, window: RoiWindow) -> None:
    rows, cols = depth.shape[:2]
    if window.x < 0 or window.y < 0 or window.x + window.width > cols or window.y + window.height > rows:
        raise ValueError(f"ROI {window} does not fit a {cols}x{rows} depth image")


def sample_fill_factor(depth: np.ndarray, window: RoiWindow) -> int:
    """Valid-pixel share of `window`, scaled to 0..10000 and rounded."""
    _check_window(depth, window)
    count = _count_valid(np.ascontiguousarray(depth), window.x, window.y, window.width, window.height)
    return int(count / window.size * FILL_FACTOR_SCALE + 0.5)


def roi_mean_depth(depth: np.ndarray, window: RoiWindow) -> tuple[int, float]:
    """
    Valid-pixel count and depth sum inside `window`.

    Returns:
        (count, total) in raw depth units
    """
    _check_window(depth, window)
    count, total = _sum_valid(np.ascontiguousarray(depth), window.x, window.y, window.width, window.height)
    return int(count), float(total)


# ============================================================================
# Fill-Factor Table
# ============================================================================


def fill_missing_data(data: np.ndarray, size: int) -> np.ndarray:
    """
    Repair zero entries in the first `size` slots of a fill-factor table.

    Leading gaps take the first valid value, trailing gaps the last one,
    inner gaps are linearly interpolated between their neighbours and
    rounded. Non-zero entries are left untouched.

    Args:
        data: Fill-factor table (any integer dtype)
        size: Number of leading slots in use

    Returns:
        New uint16 array of length `size` without zero entries

    Raises:
        InsufficientDataError: If every used slot is zero
    """
    values = np.asarray(data[:size], dtype=np.float64)
    valid = np.flatnonzero(values)
    if valid.size == 0:
        raise InsufficientDataError("There is not enough valid data in the fill-factor table!")

    filled = np.interp(np.arange(size), valid, values[valid])
    repaired = np.floor(filled + 0.5).astype(np.uint16)
    repaired[valid] = values[valid].astype(np.uint16)
    return repaired


class FillFactorTable:
    """Per-frame-counter fill factors, one slot per firmware tick."""

    def __init__(self, slots: int = FILL_FACTOR_SLOTS):
        self.values = np.zeros(slots, dtype=np.uint16)

    def record(self, frame_counter: int, value: int) -> None:
        if 0 <= frame_counter < len(self.values):
            self.values[frame_counter] = value

    def clear(self) -> None:
        self.values[:] = 0

    def repaired(self, size: int) -> list[int]:
        """Gap-free values of the first `size` slots, ready for the payload."""
        return [int(v) for v in fill_missing_data(self.values, size)]
