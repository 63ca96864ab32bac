"""
Unit tests for handler module (lambda entry point)

Tests cover:
- Route dispatching (analyze, order conditions, review queue, damage, review)
- Error mapping (Exception types -> HTTP status codes)
- Response formatting
- Edge cases and missing fields
"""

import base64
import io
import json

import pytest
from unittest.mock import patch
from PIL import Image

from conftest import render_front, render_side
from parcel_condition.handler import lambda_handler, clear_backend_cache, _record_summary
from parcel_condition.dimensions import VisionBackend
from parcel_condition.models import (
    ConditionRecord,
    DamageAssessment,
    DamageLevel,
    DamageSuggestions,
    AiDamageTag,
    EventType,
    FrontPhotoQuality,
    PhotoAnalysis,
    ReviewOutcome,
    ReviewResolution,
    SidePhotoQuality,
    ConditionNotFoundError,
    StorageError,
)


# ============================================================================
# FIXTURES
# ============================================================================

def make_event(method, path, body=None, query=None):
    event = {
        "requestContext": {"http": {"method": method, "path": path}},
        "body": json.dumps(body) if isinstance(body, dict) else body,
    }
    if query is not None:
        event["queryStringParameters"] = query
    return event


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def make_record(event_type=EventType.ARRIVAL, **overrides):
    data = dict(
        order_id="ORD-1",
        event_type=event_type,
        front_photo_ref="conditions/f",
        side_photo_ref="conditions/s",
        photo_analysis=PhotoAnalysis(
            front=FrontPhotoQuality(blur_score=80, exposure_score=60, has_scale_reference=True, ruler_confidence=0.9),
            side=SidePhotoQuality(blur_score=75, exposure_score=60),
        ),
        actual_weight_kg=1.2,
        staff_id="STAFF-7",
        warehouse_id="WH-1",
    )
    data.update(overrides)
    return ConditionRecord(**data)


def body_of(response):
    return json.loads(response["body"])


@pytest.fixture(autouse=True)
def ready_backend():
    with patch("parcel_condition.handler._get_backend", return_value=VisionBackend.available()):
        yield
    clear_backend_cache()


@pytest.fixture
def analyze_event():
    return make_event("POST", "/v1/parcels/analyze", {
        "front_image": b64(render_front()),
        "side_image": b64(render_side()),
    })


# ============================================================================
# ROUTING
# ============================================================================

class TestRouting:

    def test_unknown_route(self):
        response = lambda_handler(make_event("GET", "/v1/unknown"), None)

        assert response["statusCode"] == 404
        assert body_of(response)["error"]["code"] == "NOT_FOUND"

    def test_malformed_event_is_internal_error(self):
        response = lambda_handler({}, None)

        assert response["statusCode"] == 500
        assert body_of(response)["error"]["code"] == "INTERNAL_ERROR"

    def test_cors_headers(self):
        response = lambda_handler(make_event("GET", "/v1/unknown"), None)
        assert response["headers"]["Access-Control-Allow-Origin"] == "*"
        assert response["headers"]["Content-Type"] == "application/json"


# ============================================================================
# POST /parcels/analyze
# ============================================================================

class TestAnalyze:

    def test_analyze_success(self, analyze_event):
        response = lambda_handler(analyze_event, None)

        assert response["statusCode"] == 200
        body = body_of(response)
        assert body["quality"]["quality_passed"] is True
        assert body["quality"]["blocking"] == []
        assert len(body["quality"]["feedback"]) == len(body["quality"]["deficiencies"])
        assert body["ruler"]["pixels_per_mm"] == pytest.approx(2.0, rel=0.10)
        assert body["measurement"]["source"] == "vision"
        assert body["is_authoritative"] is True
        assert body["photo_analysis"]["front"]["has_scale_reference"] is True

    def test_analyze_estimated_when_backend_unavailable(self, analyze_event):
        with patch("parcel_condition.handler._get_backend", return_value=VisionBackend.unavailable("off")):
            response = lambda_handler(analyze_event, None)

        body = body_of(response)
        assert response["statusCode"] == 200
        assert body["measurement"]["source"] == "estimated"
        assert body["is_authoritative"] is False

    def test_missing_marker_reports_feedback(self):
        event = make_event("POST", "/v1/parcels/analyze", {
            "front_image": b64(render_front(marker=False)),
            "side_image": b64(render_side()),
        })
        body = body_of(lambda_handler(event, None))

        assert body["quality"]["quality_passed"] is False
        assert "missing scale reference" in body["quality"]["blocking"]
        assert body["quality"]["feedback"]

    def test_missing_side_image(self):
        event = make_event("POST", "/v1/parcels/analyze", {"front_image": b64(render_front())})
        response = lambda_handler(event, None)

        assert response["statusCode"] == 400
        assert body_of(response)["error"]["code"] == "VALIDATION_ERROR"
        assert "side_image" in body_of(response)["error"]["message"]

    def test_invalid_base64(self):
        event = make_event("POST", "/v1/parcels/analyze", {"front_image": "%%%not-base64%%%", "side_image": "x"})
        response = lambda_handler(event, None)

        assert response["statusCode"] == 400
        assert body_of(response)["error"]["code"] == "INVALID_IMAGE"

    def test_image_too_small(self):
        img = Image.new("RGB", (100, 100), color="white")
        buf = io.BytesIO()
        img.save(buf, format="JPEG")
        event = make_event("POST", "/v1/parcels/analyze", {
            "front_image": b64(buf.getvalue()),
            "side_image": b64(render_side()),
        })
        response = lambda_handler(event, None)

        assert response["statusCode"] == 400
        assert body_of(response)["error"]["code"] == "INVALID_IMAGE_FORMAT"
        assert body_of(response)["error"]["message"].startswith("front_image:")

    def test_invalid_json(self):
        response = lambda_handler(make_event("POST", "/v1/parcels/analyze", "{not json"), None)

        assert response["statusCode"] == 400
        assert body_of(response)["error"]["code"] == "VALIDATION_ERROR"

    def test_unexpected_failure(self, analyze_event):
        with patch("parcel_condition.handler.analyze_photos", side_effect=RuntimeError("boom")):
            response = lambda_handler(analyze_event, None)

        assert response["statusCode"] == 500
        assert body_of(response)["error"]["code"] == "INTERNAL_ERROR"


# ============================================================================
# GET routes
# ============================================================================

class TestQueries:

    def test_order_conditions(self):
        records = [make_record(event_type=EventType.HANDOVER), make_record()]
        with patch("parcel_condition.storage.get_order_conditions", return_value=records) as mock_get:
            response = lambda_handler(make_event("GET", "/v1/orders/ORD-1/conditions"), None)

        assert response["statusCode"] == 200
        body = body_of(response)
        assert body["order_id"] == "ORD-1"
        assert [c["condition_id"] for c in body["conditions"]] == ["ORD-1:handover", "ORD-1:arrival"]
        mock_get.assert_called_once_with("ORD-1")

    def test_order_conditions_storage_error(self):
        with patch("parcel_condition.storage.get_order_conditions", side_effect=StorageError("down")):
            response = lambda_handler(make_event("GET", "/v1/orders/ORD-1/conditions"), None)

        assert response["statusCode"] == 500
        assert body_of(response)["error"]["code"] == "STORAGE_ERROR"

    def test_review_queue_with_warehouse(self):
        flagged = make_record(event_type=EventType.HANDOVER, requires_review=True)
        with patch("parcel_condition.storage.get_conditions_requiring_review", return_value=[flagged]) as mock_get:
            response = lambda_handler(
                make_event("GET", "/v1/conditions/review", query={"warehouse_id": "WH-1"}), None
            )

        body = body_of(response)
        assert response["statusCode"] == 200
        assert body["count"] == 1
        assert body["conditions"][0]["requires_review"] is True
        mock_get.assert_called_once_with("WH-1")

    def test_review_queue_without_filter(self):
        with patch("parcel_condition.storage.get_conditions_requiring_review", return_value=[]) as mock_get:
            response = lambda_handler(make_event("GET", "/v1/conditions/review"), None)

        assert body_of(response)["count"] == 0
        mock_get.assert_called_once_with(None)


# ============================================================================
# PUT /conditions/{id}/damage
# ============================================================================

class TestConfirmDamage:

    def test_confirm_success(self):
        record = make_record(damage_suggestions=DamageSuggestions(
            tags=[AiDamageTag(type="dent", confidence=0.8)], overall_confidence=0.8, flagged_for_review=True,
        ))
        with patch("parcel_condition.storage.get_condition", return_value=record), \
             patch("parcel_condition.storage.confirm_damage", return_value=record) as mock_confirm:
            response = lambda_handler(make_event("PUT", "/v1/conditions/ORD-1:arrival/damage", {
                "final_assessment": "minor",
                "confirmed_tags": ["dent"],
                "notes": "left corner",
            }), None)

        assert response["statusCode"] == 200
        body = body_of(response)
        assert body["condition_id"] == "ORD-1:arrival"
        assert body["damage_assessment"]["confirmed_tags"] == ["dent"]
        assert body["damage_assessment"]["ai_suggested_tags"][0]["type"] == "dent"
        condition_id, assessment = mock_confirm.call_args[0]
        assert condition_id == "ORD-1:arrival"
        assert isinstance(assessment, DamageAssessment)
        assert assessment.final_assessment == DamageLevel.MINOR

    def test_url_encoded_condition_id(self):
        record = make_record()
        with patch("parcel_condition.storage.get_condition", return_value=record) as mock_get, \
             patch("parcel_condition.storage.confirm_damage", return_value=record):
            lambda_handler(make_event("PUT", "/v1/conditions/ORD-1%3Aarrival/damage", {
                "final_assessment": "none",
            }), None)

        mock_get.assert_called_once_with("ORD-1:arrival")

    def test_missing_condition_is_validation_error(self):
        with patch("parcel_condition.storage.get_condition", return_value=make_record()), \
             patch("parcel_condition.storage.confirm_damage") as mock_confirm:
            response = lambda_handler(make_event("PUT", "/v1/conditions/ORD-1:arrival/damage", {}), None)

        assert response["statusCode"] == 400
        assert body_of(response)["error"]["code"] == "VALIDATION_ERROR"
        mock_confirm.assert_not_called()

    def test_unknown_tag(self):
        with patch("parcel_condition.storage.get_condition", return_value=make_record()):
            response = lambda_handler(make_event("PUT", "/v1/conditions/ORD-1:arrival/damage", {
                "final_assessment": "major", "confirmed_tags": ["melted"],
            }), None)

        assert response["statusCode"] == 400

    def test_record_not_found(self):
        with patch("parcel_condition.storage.get_condition", return_value=None):
            response = lambda_handler(make_event("PUT", "/v1/conditions/ORD-9:arrival/damage", {
                "final_assessment": "none",
            }), None)

        assert response["statusCode"] == 404
        assert body_of(response)["error"]["code"] == "CONDITION_NOT_FOUND"

    def test_record_removed_during_update(self):
        with patch("parcel_condition.storage.get_condition", return_value=make_record()), \
             patch("parcel_condition.storage.confirm_damage", side_effect=ConditionNotFoundError("gone")):
            response = lambda_handler(make_event("PUT", "/v1/conditions/ORD-1:arrival/damage", {
                "final_assessment": "none",
            }), None)

        assert response["statusCode"] == 404

    def test_storage_failure(self):
        with patch("parcel_condition.storage.get_condition", side_effect=StorageError("down")):
            response = lambda_handler(make_event("PUT", "/v1/conditions/ORD-1:arrival/damage", {
                "final_assessment": "none",
            }), None)

        assert response["statusCode"] == 500
        assert body_of(response)["error"]["code"] == "STORAGE_ERROR"


# ============================================================================
# PUT /conditions/{id}/review
# ============================================================================

class TestResolveReview:

    def test_resolve_success(self):
        flagged = make_record(event_type=EventType.HANDOVER, requires_review=True)
        resolved = flagged.model_copy(update={"requires_review": False})
        with patch("parcel_condition.storage.get_condition", return_value=flagged), \
             patch("parcel_condition.storage.resolve_review", return_value=resolved) as mock_resolve:
            response = lambda_handler(make_event("PUT", "/v1/conditions/ORD-1:handover/review", {
                "resolved_by": "STAFF-9", "outcome": "disputed", "note": "courier denies",
            }), None)

        assert response["statusCode"] == 200
        body = body_of(response)
        assert body["requires_review"] is False
        assert body["review_resolution"]["outcome"] == "disputed"
        resolution = mock_resolve.call_args[0][1]
        assert isinstance(resolution, ReviewResolution)
        assert resolution.outcome == ReviewOutcome.DISPUTED

    def test_not_flagged(self):
        with patch("parcel_condition.storage.get_condition", return_value=make_record()):
            response = lambda_handler(make_event("PUT", "/v1/conditions/ORD-1:arrival/review", {
                "resolved_by": "STAFF-9", "outcome": "accepted",
            }), None)

        assert response["statusCode"] == 409
        assert body_of(response)["error"]["code"] == "NOT_FLAGGED"

    def test_invalid_outcome(self):
        flagged = make_record(event_type=EventType.HANDOVER, requires_review=True)
        with patch("parcel_condition.storage.get_condition", return_value=flagged):
            response = lambda_handler(make_event("PUT", "/v1/conditions/ORD-1:handover/review", {
                "resolved_by": "STAFF-9", "outcome": "maybe",
            }), None)

        assert response["statusCode"] == 400
        assert "outcome" in body_of(response)["error"]["details"]

    def test_not_found(self):
        with patch("parcel_condition.storage.get_condition", return_value=None):
            response = lambda_handler(make_event("PUT", "/v1/conditions/ORD-1:handover/review", {
                "resolved_by": "STAFF-9", "outcome": "accepted",
            }), None)

        assert response["statusCode"] == 404


# ============================================================================
# RESPONSE HELPERS
# ============================================================================

class TestRecordSummary:

    def test_summary_of_plain_record(self):
        summary = _record_summary(make_record())

        assert summary["condition_id"] == "ORD-1:arrival"
        assert summary["event_type"] == "arrival"
        assert "measurement" not in summary
        assert "final_assessment" not in summary

    def test_summary_includes_assessment(self):
        record = make_record(damage_assessment=DamageAssessment(final_assessment=DamageLevel.MAJOR))
        assert _record_summary(record)["final_assessment"] == "major"
