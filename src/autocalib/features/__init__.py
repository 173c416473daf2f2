"""Feature extraction: depth quality, target detection, fill factors."""

from .depth_quality import analyze_depth_frame, central_roi, get_depth_metrics
from .fill_factor import (
    FillFactorTable,
    fill_missing_data,
    roi_mean_depth,
    roi_windows,
    sample_fill_factor,
)
from .target import DetectorStatus, DotsCalculator, RectCalculator

__all__ = [
    "analyze_depth_frame",
    "central_roi",
    "get_depth_metrics",
    "FillFactorTable",
    "fill_missing_data",
    "roi_mean_depth",
    "roi_windows",
    "sample_fill_factor",
    "DetectorStatus",
    "DotsCalculator",
    "RectCalculator",
]
