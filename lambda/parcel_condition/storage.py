"""
Storage layer - DynamoDB operations for condition record persistence.

Handles record creation, later attachments (measurement, suggestions,
damage confirmation, handover comparison, review resolution) and lookups.
All database interaction is isolated here.

Records are keyed by condition_id = "{order_id}:{event_type}", so an
insert-if-absent write is enough to keep one record per order event.
"""

import json
import logging
from decimal import Decimal

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from parcel_condition.models import (
    ConditionRecord,
    DimensionResult,
    DamageSuggestions,
    DamageAssessment,
    ComparisonResult,
    HandoverDetails,
    ReviewResolution,
    EventType,
    condition_id_for,
    StorageError,
    ConditionNotFoundError,
    DuplicateConditionError,
)
from parcel_condition.config import CONDITIONS_TABLE

logger = logging.getLogger(__name__)

ORDER_INDEX = "by_order"


# --- DynamoDB client cache ---
# Initialized once per Lambda container, reused across invocations.

_dynamodb = None
_table = None


def _get_table():
    """Lazy-initialized DynamoDB table with caching."""
    global _dynamodb, _table

    if _table is not None:
        return _table

    _dynamodb = boto3.resource("dynamodb")
    _table = _dynamodb.Table(CONDITIONS_TABLE)
    return _table


# --- Public API ---

def create(record: ConditionRecord) -> ConditionRecord:
    """
    Persists a new condition record if none exists for its order event.

    Raises:
        DuplicateConditionError: If the (order, event type) already has a record.
        StorageError: If DynamoDB write fails.
    """
    try:
        table = _get_table()
        table.put_item(
            Item=_to_dynamodb(record.model_dump(mode="json")),
            ConditionExpression="attribute_not_exists(condition_id)",
        )
        logger.info("Created condition record %s", record.condition_id)
        return record
    except ClientError as e:
        if _is_conditional_failure(e):
            raise DuplicateConditionError(
                f"{record.event_type.value.capitalize()} record already exists for order {record.order_id}"
            )
        raise StorageError(f"Failed to save condition {record.condition_id}: {e}")
    except Exception as e:
        raise StorageError(f"Failed to save condition {record.condition_id}: {e}")


def get_condition(condition_id: str) -> ConditionRecord | None:
    """
    Retrieves a record by ID. Returns None if it does not exist.

    Raises:
        StorageError: If DynamoDB read fails.
    """
    try:
        table = _get_table()
        response = table.get_item(Key={"condition_id": condition_id})

        if "Item" not in response:
            return None

        return ConditionRecord(**_from_dynamodb(response["Item"]))
    except Exception as e:
        raise StorageError(f"Failed to retrieve condition {condition_id}: {e}")


def get_arrival_condition(order_id: str) -> ConditionRecord | None:
    """The arrival record a handover is compared against."""
    return get_condition(condition_id_for(order_id, EventType.ARRIVAL))


def get_order_conditions(order_id: str) -> list[ConditionRecord]:
    """All records for an order, newest first."""
    try:
        table = _get_table()
        response = table.query(
            IndexName=ORDER_INDEX,
            KeyConditionExpression=Key("order_id").eq(order_id),
        )
        records = [ConditionRecord(**_from_dynamodb(item)) for item in response.get("Items", [])]
        return sorted(records, key=lambda r: r.timestamp, reverse=True)
    except Exception as e:
        raise StorageError(f"Failed to list conditions for order {order_id}: {e}")


def get_conditions_requiring_review(warehouse_id: str | None = None) -> list[ConditionRecord]:
    """Records flagged for review, optionally limited to one warehouse."""
    filter_expr = Attr("requires_review").eq(True)
    if warehouse_id:
        filter_expr = filter_expr & Attr("warehouse_id").eq(warehouse_id)

    try:
        table = _get_table()
        items = []
        kwargs = {"FilterExpression": filter_expr}
        while True:
            response = table.scan(**kwargs)
            items.extend(response.get("Items", []))
            if "LastEvaluatedKey" not in response:
                break
            kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

        records = [ConditionRecord(**_from_dynamodb(item)) for item in items]
        return sorted(records, key=lambda r: r.timestamp, reverse=True)
    except Exception as e:
        raise StorageError(f"Failed to list conditions requiring review: {e}")


def attach_measurement(condition_id: str, result: DimensionResult) -> ConditionRecord:
    """Stores dimension engine output on an existing record."""
    return _update(
        condition_id,
        "SET dimension_result = :d",
        {":d": result.model_dump(mode="json")},
    )


def attach_suggestions(condition_id: str, suggestions: DamageSuggestions) -> ConditionRecord:
    """
    Stores advisory damage suggestions for display. Suggestions flagged
    for review raise the record's review flag; they never clear it.
    """
    expression = "SET damage_suggestions = :s"
    values = {":s": suggestions.model_dump(mode="json")}
    if suggestions.flagged_for_review:
        expression += ", requires_review = :r"
        values[":r"] = True

    record = _update(condition_id, expression, values)
    if suggestions.flagged_for_review:
        logger.info("Condition %s flagged for review by damage suggestions", condition_id)
    return record


def confirm_damage(condition_id: str, assessment: DamageAssessment) -> ConditionRecord:
    """Persists the human-confirmed damage assessment."""
    return _update(
        condition_id,
        "SET damage_assessment = :a",
        {":a": assessment.model_dump(mode="json")},
    )


def attach_comparison(
    condition_id: str,
    comparison: ComparisonResult,
    details: HandoverDetails,
) -> ConditionRecord:
    """
    Stores the handover comparison. A detected change flags the record
    for review; an unchanged handover leaves an existing flag in place.
    """
    expression = "SET comparison = :c, handover_details = :h"
    values = {
        ":c": comparison.model_dump(mode="json"),
        ":h": details.model_dump(mode="json"),
    }
    if comparison.change_detected:
        expression += ", requires_review = :r"
        values[":r"] = True

    record = _update(condition_id, expression, values)
    if comparison.change_detected:
        logger.warning("Handover %s flagged for review", condition_id)
    return record


def resolve_review(condition_id: str, resolution: ReviewResolution) -> ConditionRecord:
    """Records who cleared the review flag and with what outcome."""
    record = _update(
        condition_id,
        "SET review_resolution = :v, requires_review = :r",
        {
            ":v": resolution.model_dump(mode="json"),
            ":r": False,
        },
    )
    logger.info("Review on %s resolved by %s: %s", condition_id, resolution.resolved_by, resolution.outcome.value)
    return record


def clear_table_cache() -> None:
    """Clears cached DynamoDB client. Testing only."""
    global _dynamodb, _table
    _dynamodb = None
    _table = None


# --- Internal ---

def _update(condition_id: str, expression: str, values: dict) -> ConditionRecord:
    """
    Applies an update to an existing record only.

    Raises:
        ConditionNotFoundError: If the record does not exist.
        StorageError: If DynamoDB update fails.
    """
    try:
        table = _get_table()
        response = table.update_item(
            Key={"condition_id": condition_id},
            UpdateExpression=expression,
            ConditionExpression="attribute_exists(condition_id)",
            ExpressionAttributeValues=_to_dynamodb(values),
            ReturnValues="ALL_NEW",
        )
        return ConditionRecord(**_from_dynamodb(response["Attributes"]))
    except ClientError as e:
        if _is_conditional_failure(e):
            raise ConditionNotFoundError(f"Condition {condition_id} not found")
        raise StorageError(f"Failed to update condition {condition_id}: {e}")
    except Exception as e:
        raise StorageError(f"Failed to update condition {condition_id}: {e}")


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _to_dynamodb(data: dict) -> dict:
    """Convert floats to Decimal for DynamoDB compatibility."""
    return json.loads(json.dumps(data), parse_float=Decimal)


def _from_dynamodb(item: dict) -> dict:
    """Convert Decimals back to plain ints/floats."""
    return json.loads(json.dumps(item, default=_decimal_default))


def _decimal_default(value):
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
