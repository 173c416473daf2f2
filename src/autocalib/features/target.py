"""
Calibration target detection.

RectCalculator measures the side lengths of the dark target rectangle;
DotsCalculator locates the four dark dots of the UV-mapping target.
Both accumulate detections over a bounded number of frames and report
per call whether more frames are needed.
"""

from __future__ import annotations

import logging
from enum import IntEnum

import cv2
import numpy as np

from ..types import Intrinsics, TargetSides

logger = logging.getLogger(__name__)

# Fractions (x0, y0, x1, y1) of the image searched for the target
ALGO_ROI = (0.2, 0.2, 0.8, 0.8)
MIN_TARGET_AREA = 400.0
MIN_DOT_AREA = 12.0
MIN_CIRCULARITY = 0.6


class DetectorStatus(IntEnum):
    MORE_FRAMES_NEEDED = 0  # Frame rejected
    PROGRESS = 1  # Detection accumulated
    DONE = 2  # Enough detections, result available


def _to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 3:
        return cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    if image.dtype != np.uint8:
        return cv2.normalize(image, None, 0, 255, cv2.NORM_MINMAX, dtype=cv2.CV_8U)
    return image


def _crop_roi(gray: np.ndarray) -> tuple[np.ndarray, tuple[int, int]]:
    h, w = gray.shape[:2]
    x0, y0 = int(w * ALGO_ROI[0]), int(h * ALGO_ROI[1])
    x1, y1 = int(w * ALGO_ROI[2]), int(h * ALGO_ROI[3])
    return gray[y0:y1, x0:x1], (x0, y0)


def _dark_mask(gray: np.ndarray) -> np.ndarray:
    blurred = cv2.GaussianBlur(gray, (5, 5), 0)
    _, mask = cv2.threshold(blurred, 0, 255, cv2.THRESH_BINARY_INV + cv2.THRESH_OTSU)
    return mask


def undistort_image(image: np.ndarray, intrinsics: Intrinsics | None) -> np.ndarray:
    """Remove lens distortion so detected centers follow the pinhole model."""
    if intrinsics is None or not intrinsics.distorted:
        return image
    coeffs = np.array(intrinsics.coeffs, dtype=np.float64)
    return cv2.undistort(image, intrinsics.camera_matrix(), coeffs)


def _touches_border(contour: np.ndarray, shape: tuple[int, ...]) -> bool:
    x, y, w, h = cv2.boundingRect(contour)
    return x <= 0 or y <= 0 or x + w >= shape[1] or y + h >= shape[0]


def order_corners(corners: np.ndarray) -> np.ndarray:
    """Order four (x, y) corners as top-left, top-right, bottom-left, bottom-right."""
    pts = np.asarray(corners, dtype=np.float64).reshape(4, 2)
    sums = pts.sum(axis=1)
    diffs = pts[:, 1] - pts[:, 0]
    return np.array(
        [
            pts[np.argmin(sums)],
            pts[np.argmin(diffs)],
            pts[np.argmax(diffs)],
            pts[np.argmax(sums)],
        ]
    )


# ============================================================================
# Rectangle Target
# ============================================================================


def find_target_rectangle(image: np.ndarray) -> np.ndarray | None:
    """
    Corners of the largest dark quadrilateral in the algorithm ROI.

    Returns:
        (4, 2) corners in image pixels (TL, TR, BL, BR), or None
    """
    roi, (ox, oy) = _crop_roi(_to_gray(image))
    contours, _ = cv2.findContours(_dark_mask(roi), cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

    best = None
    best_area = MIN_TARGET_AREA
    for contour in contours:
        area = cv2.contourArea(contour)
        if area <= best_area or _touches_border(contour, roi.shape):
            continue
        approx = cv2.approxPolyDP(contour, 0.02 * cv2.arcLength(contour, True), True)
        if len(approx) != 4 or not cv2.isContourConvex(approx):
            continue
        best, best_area = approx, area

    if best is None:
        return None
    return order_corners(best.reshape(4, 2) + np.array([ox, oy]))


class RectCalculator:
    """Average the target rectangle sides over FRAME_NUM detections."""

    FRAME_NUM = 25

    def __init__(self):
        self._sides: list[tuple[float, float, float, float]] = []

    @property
    def detections(self) -> int:
        return len(self._sides)

    @property
    def sides(self) -> TargetSides | None:
        if len(self._sides) < self.FRAME_NUM:
            return None
        top, bottom, left, right = np.mean(np.array(self._sides), axis=0)
        return TargetSides(float(top), float(bottom), float(left), float(right))

    def calculate(self, image: np.ndarray) -> DetectorStatus:
        if len(self._sides) >= self.FRAME_NUM:
            return DetectorStatus.DONE

        corners = find_target_rectangle(image)
        if corners is None:
            return DetectorStatus.MORE_FRAMES_NEEDED

        tl, tr, bl, br = corners
        self._sides.append(
            (
                float(np.linalg.norm(tr - tl)),
                float(np.linalg.norm(br - bl)),
                float(np.linalg.norm(bl - tl)),
                float(np.linalg.norm(br - tr)),
            )
        )
        if len(self._sides) >= self.FRAME_NUM:
            return DetectorStatus.DONE
        return DetectorStatus.PROGRESS


# ============================================================================
# Dot Target
# ============================================================================


def find_target_dots(image: np.ndarray) -> np.ndarray | None:
    """
    Centers of the four largest round dark blobs in the algorithm ROI.

    Returns:
        (4, 2) centers in image pixels (TL, TR, BL, BR), or None
    """
    roi, (ox, oy) = _crop_roi(_to_gray(image))
    contours, _ = cv2.findContours(_dark_mask(roi), cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE)

    blobs = []
    for contour in contours:
        area = cv2.contourArea(contour)
        perimeter = cv2.arcLength(contour, True)
        if area < MIN_DOT_AREA or perimeter <= 0 or _touches_border(contour, roi.shape):
            continue
        if 4.0 * np.pi * area / (perimeter * perimeter) < MIN_CIRCULARITY:
            continue
        m = cv2.moments(contour)
        if m["m00"] == 0:
            continue
        blobs.append((area, m["m10"] / m["m00"], m["m01"] / m["m00"]))

    if len(blobs) < 4:
        return None

    blobs.sort(reverse=True)
    centers = np.array([[x, y] for _, x, y in blobs[:4]]) + np.array([ox, oy])
    return order_corners(centers)


class DotsCalculator:
    """Average the four dot centers over FRAME_NUM detections."""

    FRAME_NUM = 25

    def __init__(self):
        self._dots: list[np.ndarray] = []

    @property
    def dots(self) -> np.ndarray | None:
        if len(self._dots) < self.FRAME_NUM:
            return None
        return np.mean(np.stack(self._dots), axis=0)

    def calculate(self, image: np.ndarray) -> DetectorStatus:
        if len(self._dots) >= self.FRAME_NUM:
            return DetectorStatus.DONE

        centers = find_target_dots(image)
        if centers is None:
            return DetectorStatus.MORE_FRAMES_NEEDED

        self._dots.append(centers)
        if len(self._dots) >= self.FRAME_NUM:
            return DetectorStatus.DONE
        return DetectorStatus.PROGRESS
