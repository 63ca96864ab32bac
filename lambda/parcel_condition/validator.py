"""
Photo validation - format, size, resolution, and quality scoring.

All per-photo checks in a single module. Ensures the front/side pair
meets the photo contract before it reaches the dimension engine, and
produces the 0-100 blur and exposure scores the quality gate consumes.
"""

import io
import logging

import cv2
import numpy as np
from PIL import Image

from parcel_condition.models import (
    ValidationResult,
    PhotoScores,
    PhotoAnalysis,
    FrontPhotoQuality,
    SidePhotoQuality,
    RulerDetection,
    PhotoValidationError,
)
from parcel_condition.config import (
    MAX_FILE_SIZE_MB,
    MIN_RESOLUTION,
    ALLOWED_FORMATS,
    SHARPNESS_CEILING,
    SCALE_REFERENCE_MIN_CONFIDENCE,
)

logger = logging.getLogger(__name__)


def validate_photo(image_bytes: bytes) -> ValidationResult:
    """
    Validates photo format, size and resolution.

    Performs checks in order:
    1. File size
    2. Format
    3. Resolution

    Returns ValidationResult with is_valid=False for rejections.
    """
    size_bytes = len(image_bytes)
    size_mb = size_bytes / (1024 * 1024)

    if size_mb > MAX_FILE_SIZE_MB:
        return ValidationResult(
            is_valid=False,
            error_message=f"Image too large: {size_mb:.1f}MB (max {MAX_FILE_SIZE_MB}MB)",
            size_bytes=size_bytes,
        )

    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.verify()
        img = Image.open(io.BytesIO(image_bytes))
    except Exception:
        return ValidationResult(
            is_valid=False,
            error_message="Invalid image - file is corrupted or not an image",
        )

    if img.format not in ALLOWED_FORMATS:
        return ValidationResult(
            is_valid=False,
            error_message=f"Unsupported format: {img.format} (only {', '.join(sorted(ALLOWED_FORMATS))} allowed)",
            format=img.format,
            size_bytes=size_bytes,
        )

    width, height = img.size
    if width < MIN_RESOLUTION or height < MIN_RESOLUTION:
        return ValidationResult(
            is_valid=False,
            error_message=f"Resolution too low: {width}x{height} (minimum {MIN_RESOLUTION}x{MIN_RESOLUTION})",
            format=img.format,
            size_bytes=size_bytes,
            resolution=(width, height),
        )

    return ValidationResult(
        is_valid=True,
        format=img.format,
        size_bytes=size_bytes,
        resolution=(width, height),
    )


def require_valid_photo(image_bytes: bytes, label: str = "photo") -> ValidationResult:
    """
    Like validate_photo, but raises on rejection.

    Raises:
        PhotoValidationError: If the photo breaks the photo contract.
    """
    result = validate_photo(image_bytes)
    if not result.is_valid:
        raise PhotoValidationError(f"{label}: {result.error_message}")
    return result


def decode_image(image_bytes: bytes, flags: int = cv2.IMREAD_COLOR) -> np.ndarray | None:
    """Decodes bytes with OpenCV. Returns None for undecodable data."""
    if not image_bytes:
        return None
    nparr = np.frombuffer(image_bytes, np.uint8)
    return cv2.imdecode(nparr, flags)


def score_photo(image_bytes: bytes) -> PhotoScores:
    """
    Measures technical photo quality using OpenCV.

    Blur:     Laplacian variance, normalized against SHARPNESS_CEILING
    Exposure: Mean luminance distance from the mid-grey optimum

    Undecodable data scores zero on both axes instead of raising.
    """
    gray = decode_image(image_bytes, cv2.IMREAD_GRAYSCALE)
    if gray is None:
        logger.warning("Photo could not be decoded for scoring")
        return PhotoScores(blur_score=0.0, exposure_score=0.0)

    try:
        variance = float(cv2.Laplacian(gray, cv2.CV_64F).var())
        blur = min(variance / SHARPNESS_CEILING, 1.0) * 100.0

        mean_brightness = float(np.mean(gray)) / 255.0
        exposure = (1.0 - abs(mean_brightness - 0.5) * 2) * 100.0
    finally:
        del gray

    return PhotoScores(
        blur_score=round(_clamp(blur, 0.0, 100.0), 2),
        exposure_score=round(_clamp(exposure, 0.0, 100.0), 2),
    )


def has_scale_reference(ruler: RulerDetection) -> bool:
    """A marker counts as present only when it beat the fallback confidence."""
    return ruler.confidence > SCALE_REFERENCE_MIN_CONFIDENCE


def build_photo_analysis(
    front: PhotoScores,
    side: PhotoScores,
    ruler: RulerDetection,
) -> PhotoAnalysis:
    """Combines per-photo scores with the ruler detection result."""
    return PhotoAnalysis(
        front=FrontPhotoQuality(
            blur_score=front.blur_score,
            exposure_score=front.exposure_score,
            has_scale_reference=has_scale_reference(ruler),
            ruler_confidence=ruler.confidence,
        ),
        side=SidePhotoQuality(
            blur_score=side.blur_score,
            exposure_score=side.exposure_score,
        ),
    )


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
