"""
Host-side UV-mapping refinement.

Four target dots seen by the left IR camera (with depth) and by the color
camera give four correspondences. Each left dot is lifted to 3D, moved
into the color camera frame and normalized; a per-axis line
`pixel = f * normalized + pp` is then fitted against the color detections.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .errors import DegenerateInputError, InsufficientDataError
from .types import Extrinsics, Intrinsics

logger = logging.getLogger(__name__)

MAX_CHANGE = 16.0
MIN_DENOMINATOR = 0.01
CORNER_WINDOW = 2  # half-size of the depth window sampled around each dot


# ============================================================================
# Geometry Helpers
# ============================================================================


def deproject_pixel_to_point(intrinsics: Intrinsics, pixel: np.ndarray, depth: np.ndarray) -> np.ndarray:
    """
    Lift pixels to 3D points in the camera frame.

    Args:
        intrinsics: Camera intrinsics
        pixel: (N, 2) pixel coordinates
        depth: (N,) depth along the optical axis

    Returns:
        (N, 3) points
    """
    pixel = np.asarray(pixel, dtype=np.float64).reshape(-1, 2)
    depth = np.asarray(depth, dtype=np.float64).reshape(-1)
    x = (pixel[:, 0] - intrinsics.ppx) / intrinsics.fx * depth
    y = (pixel[:, 1] - intrinsics.ppy) / intrinsics.fy * depth
    return np.column_stack([x, y, depth])


def transform_points(extrinsics: Extrinsics, points: np.ndarray) -> np.ndarray:
    """Apply a rigid transform to (N, 3) points."""
    return points @ np.asarray(extrinsics.rotation).T + np.asarray(extrinsics.translation).reshape(1, 3)


def normalize_points(points: np.ndarray) -> np.ndarray:
    """Perspective division: (N, 3) -> (N, 2)."""
    return points[:, :2] / points[:, 2:3]


def project_normalized(normalized: np.ndarray, fx: float, fy: float, ppx: float, ppy: float) -> np.ndarray:
    return np.column_stack([normalized[:, 0] * fx + ppx, normalized[:, 1] * fy + ppy])


def find_z_at_corners(
    pixels: np.ndarray,
    depth_frames: Sequence[np.ndarray],
    depth_units: float,
) -> np.ndarray:
    """
    Mean valid depth (meters) around each pixel across the depth frames.

    Raises:
        InsufficientDataError: If a pixel has no valid depth in any frame
    """
    pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
    z = np.zeros(len(pixels))
    for i, (px, py) in enumerate(pixels):
        col, row = int(round(px)), int(round(py))
        samples = []
        for depth in depth_frames:
            window = depth[
                max(row - CORNER_WINDOW, 0) : row + CORNER_WINDOW + 1,
                max(col - CORNER_WINDOW, 0) : col + CORNER_WINDOW + 1,
            ]
            samples.append(window[window > 0])
        values = np.concatenate(samples) if samples else np.empty(0)
        if values.size == 0:
            raise InsufficientDataError(f"No valid depth around dot ({px:.1f}, {py:.1f})")
        z[i] = float(values.mean()) * depth_units
    return z


def _fit_axis(normalized: np.ndarray, observed: np.ndarray) -> tuple[float, float]:
    """
    Closed-form least-squares line `observed = scale * normalized + offset`.

    Raises:
        DegenerateInputError: If the normal-equation denominator is too small
    """
    n = len(normalized)
    sum_x = float(normalized.sum())
    sum_xx = float((normalized * normalized).sum())
    sum_u = float(observed.sum())
    sum_xu = float((normalized * observed).sum())

    denominator = n * sum_xx - sum_x * sum_x
    if denominator <= MIN_DENOMINATOR:
        raise DegenerateInputError(f"Axis fit denominator {denominator:.4g} too small")

    scale = (n * sum_xu - sum_x * sum_u) / denominator
    offset = (sum_u - scale * sum_x) / n
    return scale, offset


def _mean_pixel_error(projected: np.ndarray, observed: np.ndarray) -> float:
    return float(np.linalg.norm(projected - observed, axis=1).mean())


# ============================================================================
# Solver
# ============================================================================


@dataclass(frozen=True, slots=True)
class UVMappingResult:
    accepted: bool
    err_before: float
    err_after: float
    ppx: float
    ppy: float
    fx: float
    fy: float


@dataclass(frozen=True)
class UVMappingCalib:
    """
    Correspondences between left-IR dots (with depth) and color dots.
    """

    left_pixels: np.ndarray  # (N, 2)
    left_z: np.ndarray  # (N,) meters
    color_pixels: np.ndarray  # (N, 2)
    left_intrinsics: Intrinsics
    color_intrinsics: Intrinsics
    extrinsics: Extrinsics  # left -> color
    max_change: float = MAX_CHANGE

    def normalized_color_points(self) -> np.ndarray:
        points = deproject_pixel_to_point(self.left_intrinsics, self.left_pixels, self.left_z)
        return normalize_points(transform_points(self.extrinsics, points))

    def calibrate(self) -> UVMappingResult:
        """
        Fit color fx/ppx and fy/ppy independently.

        An axis whose fit is degenerate keeps the current intrinsics. The
        result is accepted only if every fitted parameter moved by less
        than `max_change` pixels.
        """
        current = self.color_intrinsics
        observed = np.asarray(self.color_pixels, dtype=np.float64).reshape(-1, 2)
        normalized = self.normalized_color_points()

        err_before = _mean_pixel_error(
            project_normalized(normalized, current.fx, current.fy, current.ppx, current.ppy),
            observed,
        )

        fx, ppx = current.fx, current.ppx
        fy, ppy = current.fy, current.ppy
        try:
            fx, ppx = _fit_axis(normalized[:, 0], observed[:, 0])
        except DegenerateInputError as e:
            logger.warning("Skipping x axis: %s", e)
        try:
            fy, ppy = _fit_axis(normalized[:, 1], observed[:, 1])
        except DegenerateInputError as e:
            logger.warning("Skipping y axis: %s", e)

        err_after = _mean_pixel_error(project_normalized(normalized, fx, fy, ppx, ppy), observed)

        accepted = (
            abs(fx - current.fx) < self.max_change
            and abs(fy - current.fy) < self.max_change
            and abs(ppx - current.ppx) < self.max_change
            and abs(ppy - current.ppy) < self.max_change
        )
        logger.info(
            "UV-mapping fit: error %.3f -> %.3f px, accepted=%s", err_before, err_after, accepted
        )
        return UVMappingResult(
            accepted=accepted,
            err_before=err_before,
            err_after=err_after,
            ppx=ppx,
            ppy=ppy,
            fx=fx,
            fy=fy,
        )
