"""
Quality gate - decides whether a captured photo pair may be finalized.

Pure function of the per-photo scores. The gate controls only whether
capture can be confirmed; it never blocks measurement computation.
"""

from parcel_condition.models import PhotoAnalysis, QualityGateResult
from parcel_condition.config import (
    MIN_BLUR_SCORE,
    MIN_EXPOSURE_SCORE,
    DEFICIENCY_MISSING_SCALE,
    DEFICIENCY_FRONT_BLUR,
    DEFICIENCY_SIDE_BLUR,
    DEFICIENCY_FRONT_EXPOSURE,
    DEFICIENCY_SIDE_EXPOSURE,
    DEFICIENCY_FEEDBACK,
)


def evaluate_quality(analysis: PhotoAnalysis) -> QualityGateResult:
    """
    Evaluates the photo pair.

    quality_passed = has_scale_reference and both blur scores >= MIN_BLUR_SCORE.
    Exposure deficiencies are reported but do not block.
    """
    blocking: list[str] = []
    advisory: list[str] = []

    if not analysis.front.has_scale_reference:
        blocking.append(DEFICIENCY_MISSING_SCALE)
    if analysis.front.blur_score < MIN_BLUR_SCORE:
        blocking.append(DEFICIENCY_FRONT_BLUR)
    if analysis.side.blur_score < MIN_BLUR_SCORE:
        blocking.append(DEFICIENCY_SIDE_BLUR)

    if analysis.front.exposure_score < MIN_EXPOSURE_SCORE:
        advisory.append(DEFICIENCY_FRONT_EXPOSURE)
    if analysis.side.exposure_score < MIN_EXPOSURE_SCORE:
        advisory.append(DEFICIENCY_SIDE_EXPOSURE)

    return QualityGateResult(
        quality_passed=not blocking,
        deficiencies=blocking + advisory,
        blocking=blocking,
    )


def get_quality_feedback(result: QualityGateResult) -> list[str]:
    """Human-readable retake hints, one per deficiency."""
    return [DEFICIENCY_FEEDBACK.get(d, d) for d in result.deficiencies]
