"""
Depth quality metrics: ROI fill rate and plane-fit RMS.

Used to measure the depth image before and after a calibration so the
user can compare the two.
"""

from __future__ import annotations

import logging
import math
from typing import Callable

import numpy as np

from ..types import DepthMetrics, Frame, Intrinsics, RoiWindow

logger = logging.getLogger(__name__)

BUNDLE_SIZE = 31
MAX_EXTRA_BUNDLES = 10
RMS_IMPROVEMENT = 0.8
RMS_FLOOR = 10.0

FrameAnalyzer = Callable[[Frame], "tuple[float, float | None]"]


def central_roi(width: int, height: int) -> RoiWindow:
    """The 45%..55% box in the middle of the image."""
    x0, y0 = int(width * 0.45), int(height * 0.45)
    x1, y1 = int(width * 0.55), int(height * 0.55)
    return RoiWindow(x=x0, y=y0, width=x1 - x0, height=y1 - y0)


def deproject_roi(depth: np.ndarray, intrinsics: Intrinsics, depth_units: float, roi: RoiWindow) -> np.ndarray:
    """
    3D points (meters) of the valid depth pixels inside the ROI.

    Returns:
        (N, 3) float64 array
    """
    patch = depth[roi.y : roi.y + roi.height, roi.x : roi.x + roi.width]
    rows, cols = np.nonzero(patch)
    z = patch[rows, cols].astype(np.float64) * depth_units
    u = cols + roi.x
    v = rows + roi.y
    x = (u - intrinsics.ppx) / intrinsics.fx * z
    y = (v - intrinsics.ppy) / intrinsics.fy * z
    return np.column_stack([x, y, z])


def fit_plane(points: np.ndarray) -> tuple[np.ndarray, float]:
    """
    Least-squares plane through 3D points.

    Returns:
        (unit normal, d) such that normal . p + d = 0 on the plane
    """
    centroid = points.mean(axis=0)
    _, _, vt = np.linalg.svd(points - centroid, full_matrices=False)
    normal = vt[-1]
    if normal[2] < 0:
        normal = -normal
    d = -float(normal @ centroid)
    return normal, d


def analyze_depth_frame(frame: Frame, roi: RoiWindow | None = None) -> tuple[float, float | None]:
    """
    Fill rate and plane-fit RMS of one depth frame.

    The lowest and highest 2% of points by depth are dropped before the
    RMS is computed. RMS is reported as a percentage of the plane's
    distance from the camera.

    Returns:
        (fill_rate %, rms %) - rms is None when no plane could be fitted
    """
    if frame.intrinsics is None:
        raise ValueError("Depth frame carries no intrinsics")

    roi = roi or central_roi(frame.width, frame.height)
    points = deproject_roi(frame.data, frame.intrinsics, frame.depth_units, roi)
    fill_rate = len(points) / float(roi.size) * 100.0

    if len(points) < 3:
        return fill_rate, None

    points = points[np.argsort(points[:, 2], kind="stable")]
    outliers = len(points) // 50
    if outliers:
        points = points[outliers : len(points) - outliers]

    normal, d = fit_plane(points)
    distance_mm = abs(d) * 1000.0
    if distance_mm <= 0.0:
        return fill_rate, None

    distances_mm = (points @ normal + d) * 1000.0
    rms_mm = math.sqrt(float(np.mean(distances_mm**2)))
    return fill_rate, 100.0 * rms_mm / distance_mm


def _median(values: list[float]) -> float:
    if not values:
        return 0.0
    return sorted(values)[len(values) // 2]


def get_depth_metrics(
    fetch: Callable[[], Frame],
    analyze: FrameAnalyzer = analyze_depth_frame,
) -> DepthMetrics:
    """
    Median fill rate and RMS over bundles of 31 frames.

    Another bundle is captured (at most 10 more) while the RMS-of-RMS of
    the latest bundle keeps dropping below 80% of the previous one and
    stays above 10%. Both medians are taken over every sampled frame.

    Args:
        fetch: Returns the next depth frame
        analyze: Per-frame (fill_rate, rms) analyzer

    Returns:
        DepthMetrics of the medians
    """
    fill_rates: list[float] = []
    rmses: list[float] = []
    new_rms_std = 1000.0
    extra_bundles = 0

    while True:
        rms_std = new_rms_std
        bundle: list[float] = []

        for _ in range(BUNDLE_SIZE):
            fill_rate, rms = analyze(fetch())
            fill_rates.append(fill_rate)
            if rms is not None:
                bundle.append(rms)

        new_rms_std = math.sqrt(sum(r * r for r in bundle) / len(bundle)) if bundle else 0.0
        rmses.extend(bundle)

        keep_sampling = RMS_FLOOR < new_rms_std < rms_std * RMS_IMPROVEMENT
        if not keep_sampling or extra_bundles >= MAX_EXTRA_BUNDLES:
            break
        extra_bundles += 1

    metrics = DepthMetrics(fill_rate=_median(fill_rates), rms=_median(rmses))
    logger.info("Depth metrics: fill rate %.1f%%, rms %.2f%%", metrics.fill_rate, metrics.rms)
    return metrics
