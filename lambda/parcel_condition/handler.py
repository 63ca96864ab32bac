"""
Lambda entry point - exposes the condition pipeline over API Gateway.

Parses API Gateway events, coordinates contexts (validation, analysis,
storage), and formats HTTP responses.

No business logic lives here beyond request parsing and response formatting.
"""

import base64
import json
import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import unquote

from pydantic import ValidationError as PydanticValidationError

from parcel_condition import storage
from parcel_condition.capture import analyze_photos
from parcel_condition.damage import build_assessment
from parcel_condition.dimensions import VisionBackend, probe_vision_backend
from parcel_condition.quality_gate import get_quality_feedback
from parcel_condition.validator import validate_photo
from parcel_condition.models import (
    ConditionRecord,
    ReviewResolution,
    AssessmentValidationError,
    ConditionNotFoundError,
    StorageError,
)
from parcel_condition.config import LOG_LEVEL

logger = logging.getLogger(__name__)
logging.getLogger().setLevel(LOG_LEVEL)


# --- Vision backend cache ---
# Probed once per container, on first analyze request.

_backend: VisionBackend | None = None


def _get_backend() -> VisionBackend:
    global _backend
    if _backend is None:
        _backend = probe_vision_backend()
    return _backend


def clear_backend_cache() -> None:
    """Clears cached vision backend. Testing only."""
    global _backend
    _backend = None


# --- Lambda Entry Point ---

def lambda_handler(event: dict, context: Any) -> dict:
    """
    AWS Lambda handler for API Gateway HTTP API (v2).

    Routes:
    - POST /parcels/analyze
    - GET  /orders/{order_id}/conditions
    - GET  /conditions/review
    - PUT  /conditions/{condition_id}/damage
    - PUT  /conditions/{condition_id}/review

    Never raises exceptions - all errors converted to HTTP responses.
    """
    try:
        http_method = event["requestContext"]["http"]["method"]
        path = event["requestContext"]["http"]["path"]
        parts = [unquote(p) for p in path.strip("/").split("/")]

        if http_method == "POST" and path.rstrip("/").endswith("/parcels/analyze"):
            return _handle_analyze(event)

        if http_method == "GET" and path.rstrip("/").endswith("/conditions/review"):
            return _handle_review_queue(event)

        if http_method == "GET" and len(parts) >= 3 and parts[-1] == "conditions" and parts[-3] == "orders":
            return _handle_order_conditions(parts[-2])

        if http_method == "PUT" and len(parts) >= 3 and parts[-3] == "conditions":
            if parts[-1] == "damage":
                return _handle_confirm_damage(event, parts[-2])
            if parts[-1] == "review":
                return _handle_resolve_review(event, parts[-2])

        return _error_response(404, "NOT_FOUND", "Route not found")

    except Exception:
        logger.exception("Unhandled error")
        return _error_response(500, "INTERNAL_ERROR", "An unexpected error occurred")


# --- Route Handlers ---

def _handle_analyze(event: dict) -> dict:
    """POST /parcels/analyze - score photos, calibrate scale, measure package."""
    try:
        body = json.loads(event.get("body") or "{}")

        images = {}
        for field in ("front_image", "side_image"):
            encoded = body.get(field)
            if not encoded:
                return _error_response(400, "VALIDATION_ERROR", f"Missing required field: {field}")
            try:
                images[field] = base64.b64decode(encoded, validate=True)
            except Exception:
                return _error_response(400, "INVALID_IMAGE", f"{field} must be valid base64-encoded data")

            validation = validate_photo(images[field])
            if not validation.is_valid:
                return _error_response(
                    400,
                    "INVALID_IMAGE_FORMAT",
                    f"{field}: {validation.error_message or 'Image validation failed'}",
                )

        outcome = analyze_photos(images["front_image"], images["side_image"], _get_backend())

        return _success_response(200, {
            "photo_analysis": outcome.analysis.model_dump(mode="json"),
            "quality": {
                **outcome.quality.model_dump(mode="json"),
                "feedback": get_quality_feedback(outcome.quality),
            },
            "ruler": outcome.dimensions.ruler.model_dump(mode="json"),
            "measurement": outcome.dimensions.measurement.model_dump(mode="json"),
            "area_consistency_ratio": outcome.dimensions.area_consistency_ratio,
            "is_authoritative": outcome.dimensions.is_authoritative,
            "processing_time_ms": outcome.dimensions.processing_time_ms,
        })

    except json.JSONDecodeError:
        return _error_response(400, "VALIDATION_ERROR", "Request body must be valid JSON")

    except Exception:
        logger.exception("Analyze request failed")
        return _error_response(500, "INTERNAL_ERROR", "Unexpected error during analysis")


def _handle_order_conditions(order_id: str) -> dict:
    """GET /orders/{order_id}/conditions - arrival and handover records."""
    try:
        records = storage.get_order_conditions(order_id)
        return _success_response(200, {
            "order_id": order_id,
            "conditions": [_record_summary(r) for r in records],
        })
    except StorageError:
        return _error_response(500, "STORAGE_ERROR", "Failed to retrieve conditions")


def _handle_review_queue(event: dict) -> dict:
    """GET /conditions/review - records flagged for review."""
    try:
        params = event.get("queryStringParameters") or {}
        records = storage.get_conditions_requiring_review(params.get("warehouse_id"))
        return _success_response(200, {
            "count": len(records),
            "conditions": [_record_summary(r) for r in records],
        })
    except StorageError:
        return _error_response(500, "STORAGE_ERROR", "Failed to retrieve review queue")


def _handle_confirm_damage(event: dict, condition_id: str) -> dict:
    """PUT /conditions/{condition_id}/damage - human damage confirmation."""
    try:
        body = json.loads(event.get("body") or "{}")

        record = storage.get_condition(condition_id)
        if record is None:
            return _error_response(404, "CONDITION_NOT_FOUND", f"No condition found with ID: {condition_id}")

        assessment = build_assessment(
            body.get("final_assessment"),
            tags=body.get("confirmed_tags"),
            notes=body.get("notes"),
            suggestions=record.damage_suggestions,
        )
        updated = storage.confirm_damage(condition_id, assessment)

        return _success_response(200, {
            "condition_id": updated.condition_id,
            "damage_assessment": assessment.model_dump(mode="json"),
            "message": "Damage assessment confirmed.",
        })

    except json.JSONDecodeError:
        return _error_response(400, "VALIDATION_ERROR", "Request body must be valid JSON")
    except AssessmentValidationError as e:
        return _error_response(400, "VALIDATION_ERROR", str(e))
    except ConditionNotFoundError as e:
        return _error_response(404, "CONDITION_NOT_FOUND", str(e))
    except StorageError:
        return _error_response(500, "STORAGE_ERROR", "Failed to save assessment")


def _handle_resolve_review(event: dict, condition_id: str) -> dict:
    """PUT /conditions/{condition_id}/review - clear a change-detection flag."""
    try:
        body = json.loads(event.get("body") or "{}")

        record = storage.get_condition(condition_id)
        if record is None:
            return _error_response(404, "CONDITION_NOT_FOUND", f"No condition found with ID: {condition_id}")
        if not record.requires_review:
            return _error_response(409, "NOT_FLAGGED", "Condition is not flagged for review")

        resolution = ReviewResolution(
            resolved_by=body.get("resolved_by"),
            outcome=body.get("outcome"),
            note=body.get("note"),
        )
        updated = storage.resolve_review(condition_id, resolution)

        return _success_response(200, {
            "condition_id": updated.condition_id,
            "requires_review": updated.requires_review,
            "review_resolution": resolution.model_dump(mode="json"),
        })

    except json.JSONDecodeError:
        return _error_response(400, "VALIDATION_ERROR", "Request body must be valid JSON")
    except PydanticValidationError as e:
        return _error_response(400, "VALIDATION_ERROR", "Invalid review resolution", details=_first_error(e))
    except ConditionNotFoundError as e:
        return _error_response(404, "CONDITION_NOT_FOUND", str(e))
    except StorageError:
        return _error_response(500, "STORAGE_ERROR", "Failed to resolve review")


# --- Response Helpers ---

def _record_summary(record: ConditionRecord) -> dict:
    data = {
        "condition_id": record.condition_id,
        "event_type": record.event_type.value,
        "timestamp": record.timestamp.isoformat(),
        "actual_weight_kg": record.actual_weight_kg,
        "warehouse_id": record.warehouse_id,
        "requires_review": record.requires_review,
    }
    if record.dimension_result is not None:
        data["measurement"] = record.dimension_result.measurement.model_dump(mode="json")
    if record.damage_assessment is not None:
        data["final_assessment"] = record.damage_assessment.final_assessment.value
    if record.comparison is not None:
        data["change_detected"] = record.comparison.change_detected
    return data


def _first_error(error: PydanticValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(p) for p in first.get("loc", ()))
    return f"{location}: {first.get('msg')}"


def _success_response(status_code: int, data: dict) -> dict:
    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            "Access-Control-Allow-Origin": "*",
        },
        "body": json.dumps(data),
    }


def _error_response(
    status_code: int,
    code: str,
    message: str,
    details: dict | str | None = None,
) -> dict:
    error_body: dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if details is not None:
        error_body["error"]["details"] = details

    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            "Access-Control-Allow-Origin": "*",
        },
        "body": json.dumps(error_body),
    }
