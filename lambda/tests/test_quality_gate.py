"""
Unit tests for the quality gate
"""
import itertools

import pytest

from parcel_condition.quality_gate import evaluate_quality, get_quality_feedback
from parcel_condition.models import (
    PhotoAnalysis,
    FrontPhotoQuality,
    SidePhotoQuality,
    QualityGateResult,
)
from parcel_condition.config import (
    MIN_BLUR_SCORE,
    DEFICIENCY_MISSING_SCALE,
    DEFICIENCY_FRONT_BLUR,
    DEFICIENCY_SIDE_BLUR,
    DEFICIENCY_FRONT_EXPOSURE,
    DEFICIENCY_SIDE_EXPOSURE,
)


def make_analysis(
    front_blur=80.0,
    front_exposure=70.0,
    has_scale=True,
    ruler_confidence=0.9,
    side_blur=80.0,
    side_exposure=70.0,
):
    return PhotoAnalysis(
        front=FrontPhotoQuality(
            blur_score=front_blur,
            exposure_score=front_exposure,
            has_scale_reference=has_scale,
            ruler_confidence=ruler_confidence,
        ),
        side=SidePhotoQuality(blur_score=side_blur, exposure_score=side_exposure),
    )


# ============================================================================
# SCENARIOS
# ============================================================================

class TestQualityScenarios:

    def test_sharp_pair_with_marker_passes(self):
        result = evaluate_quality(make_analysis(front_blur=75, ruler_confidence=0.8, side_blur=70))

        assert isinstance(result, QualityGateResult)
        assert result.quality_passed is True
        assert result.blocking == []

    def test_missing_marker_fails(self):
        result = evaluate_quality(make_analysis(has_scale=False, ruler_confidence=0.3))

        assert result.quality_passed is False
        assert DEFICIENCY_MISSING_SCALE in result.deficiencies
        assert result.deficiencies == ["missing scale reference"]

    def test_blurry_front_fails(self):
        result = evaluate_quality(make_analysis(front_blur=40))

        assert result.quality_passed is False
        assert result.blocking == [DEFICIENCY_FRONT_BLUR]

    def test_blurry_side_fails(self):
        result = evaluate_quality(make_analysis(side_blur=59.99))

        assert result.quality_passed is False
        assert result.blocking == [DEFICIENCY_SIDE_BLUR]

    def test_blur_threshold_inclusive(self):
        result = evaluate_quality(make_analysis(front_blur=MIN_BLUR_SCORE, side_blur=MIN_BLUR_SCORE))
        assert result.quality_passed is True

    def test_poor_exposure_is_advisory(self):
        result = evaluate_quality(make_analysis(front_exposure=10, side_exposure=20))

        assert result.quality_passed is True
        assert result.blocking == []
        assert DEFICIENCY_FRONT_EXPOSURE in result.deficiencies
        assert DEFICIENCY_SIDE_EXPOSURE in result.deficiencies

    def test_all_deficiencies_reported(self):
        result = evaluate_quality(make_analysis(
            front_blur=0, front_exposure=0, has_scale=False, ruler_confidence=0.3,
            side_blur=0, side_exposure=0,
        ))

        assert result.deficiencies == [
            "missing scale reference",
            "front blur too low",
            "side blur too low",
            "front exposure too low",
            "side exposure too low",
        ]


# ============================================================================
# GATE RULE OVER THE SCORE DOMAIN
# ============================================================================

class TestGateRule:

    BLUR_VALUES = [0.0, 30.0, 59.9, 60.0, 75.0, 100.0]
    EXPOSURE_VALUES = [0.0, 49.9, 50.0, 100.0]

    def test_passes_iff_scale_and_both_blurs(self):
        for front_blur, side_blur, has_scale, exposure in itertools.product(
            self.BLUR_VALUES, self.BLUR_VALUES, [True, False], self.EXPOSURE_VALUES
        ):
            analysis = make_analysis(
                front_blur=front_blur,
                side_blur=side_blur,
                has_scale=has_scale,
                front_exposure=exposure,
                side_exposure=exposure,
            )
            result = evaluate_quality(analysis)

            expected = has_scale and front_blur >= MIN_BLUR_SCORE and side_blur >= MIN_BLUR_SCORE
            assert result.quality_passed == expected, (front_blur, side_blur, has_scale, exposure)
            assert set(result.blocking) <= set(result.deficiencies)


# ============================================================================
# FEEDBACK
# ============================================================================

class TestQualityFeedback:

    def test_no_feedback_when_clean(self):
        assert get_quality_feedback(evaluate_quality(make_analysis())) == []

    def test_one_hint_per_deficiency(self):
        result = evaluate_quality(make_analysis(has_scale=False, ruler_confidence=0.3, side_blur=10))
        feedback = get_quality_feedback(result)

        assert len(feedback) == 2
        assert all(isinstance(f, str) and f for f in feedback)

    def test_unknown_deficiency_passes_through(self):
        result = QualityGateResult(quality_passed=False, deficiencies=["lens cap on"], blocking=["lens cap on"])
        assert get_quality_feedback(result) == ["lens cap on"]
