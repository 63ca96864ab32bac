"""
Arrival / handover event flow.

Wraps the capture session in the staff-facing sequence:
info -> camera -> metadata (weight | courier) -> processing -> confirmation -> done

Processing uploads both photos in parallel, persists the condition record,
attaches the measurement and advisory suggestions and, for handovers,
compares against the arrival record. Failures during processing keep the
captured bundle so the step can be retried without recapturing. Once a
record has been persisted the flow can no longer go back.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Callable

from parcel_condition import blobs, storage
from parcel_condition.comparison import compare_conditions
from parcel_condition.damage import DamageAssessmentForm
from parcel_condition.inference import suggest_damage
from parcel_condition.models import (
    CaptureBundle,
    ComparisonResult,
    ConditionRecord,
    DamageAssessment,
    DamageSuggestions,
    EventType,
    HandoverDetails,
    OrderSnapshot,
    StaffContext,
    StatusChange,
    InferenceError,
    InvalidTransitionError,
    PreconditionViolation,
    QualityGateError,
)
from parcel_condition.config import UPLOAD_WORKERS

logger = logging.getLogger(__name__)


class FlowStep(str, Enum):
    INFO = "info"
    CAMERA = "camera"
    METADATA = "metadata"
    PROCESSING = "processing"
    CONFIRMATION = "confirmation"
    DONE = "done"
    CANCELLED = "cancelled"


_PREVIOUS_STEP = {
    FlowStep.CAMERA: FlowStep.INFO,
    FlowStep.METADATA: FlowStep.CAMERA,
    FlowStep.PROCESSING: FlowStep.METADATA,
}


class ConditionWorkflow:
    """
    One arrival or handover verification for one order.

    store and blob_store default to the DynamoDB and S3 modules; anything
    exposing the same functions can be passed in.
    """

    def __init__(
        self,
        order: OrderSnapshot,
        staff: StaffContext,
        event_type: EventType | str,
        store=storage,
        blob_store=blobs,
        suggest: Callable[[bytes], DamageSuggestions] | None = suggest_damage,
        compare: Callable[[bytes, bytes, str], ComparisonResult] = compare_conditions,
        device_info: str | None = None,
    ):
        self.order = order
        self.staff = staff
        self.event_type = EventType(event_type)
        self.device_info = device_info

        self._store = store
        self._blobs = blob_store
        self._suggest = suggest
        self._compare = compare

        self.step = FlowStep.INFO
        self.arrival: ConditionRecord | None = None
        self.bundle: CaptureBundle | None = None
        self.actual_weight_kg: float | None = None
        self.handover_details: HandoverDetails | None = None

        self.front_ref: str | None = None
        self.side_ref: str | None = None
        self.record: ConditionRecord | None = None
        self.suggestions: DamageSuggestions | None = None
        self._suggestions_done = False
        self.assessment: DamageAssessment | None = None

    @property
    def is_handover(self) -> bool:
        return self.event_type == EventType.HANDOVER

    @property
    def persisted(self) -> bool:
        return self.record is not None

    # --- Steps ---

    def start(self) -> None:
        """
        Leaves the info step.

        Raises:
            PreconditionViolation: Handover for an order with no arrival record.
                Nothing is uploaded or persisted.
        """
        self._require_step(FlowStep.INFO)

        if self.is_handover:
            arrival = self._store.get_arrival_condition(self.order.order_id)
            if arrival is None:
                logger.warning("Handover refused for order %s: no arrival record", self.order.order_id)
                raise PreconditionViolation(
                    f"Order {self.order.order_id} must complete arrival verification before handover"
                )
            self.arrival = arrival

        self.step = FlowStep.CAMERA

    def photos_captured(self, bundle: CaptureBundle) -> None:
        self._require_step(FlowStep.CAMERA)
        if not bundle.quality.quality_passed:
            raise QualityGateError(
                "Photo quality check failed: " + ", ".join(bundle.quality.blocking)
            )
        self.bundle = bundle
        self.step = FlowStep.METADATA

    def submit_weight(self, actual_weight_kg: float) -> None:
        """Arrival only: the scale weight entered by staff."""
        self._require_step(FlowStep.METADATA)
        if self.is_handover:
            raise InvalidTransitionError("Handover uses the arrival weight; submit courier details instead")
        if actual_weight_kg is None or actual_weight_kg <= 0:
            raise ValueError("Actual weight must be a positive number of kg")

        self.actual_weight_kg = float(actual_weight_kg)
        self.step = FlowStep.PROCESSING

    def submit_courier(
        self,
        courier_name: str,
        courier_representative: str | None = None,
        handover_notes: str | None = None,
    ) -> None:
        """Handover only: who is collecting the package."""
        self._require_step(FlowStep.METADATA)
        if not self.is_handover:
            raise InvalidTransitionError("Courier details only apply to handovers")
        if not courier_name or not courier_name.strip():
            raise ValueError("Courier name is required")

        self.handover_details = HandoverDetails(
            courier_name=courier_name.strip(),
            courier_representative=(courier_representative or "").strip() or None,
            handover_notes=(handover_notes or "").strip() or None,
        )
        self.actual_weight_kg = self.arrival.actual_weight_kg
        self.step = FlowStep.PROCESSING

    def process(self) -> ConditionRecord:
        """
        Uploads, persists and analyzes. Safe to call again after a failure;
        completed sub-steps are not repeated.

        Raises:
            UploadError: Photo upload or arrival photo download failed.
            StorageError: A store write failed.
            DuplicateConditionError: The order event already has a record.
        """
        self._require_step(FlowStep.PROCESSING)

        self._upload_photos()

        if self.record is None:
            self.record = self._store.create(self._build_record())
            logger.info(
                "%s record persisted for order %s",
                self.event_type.value.capitalize(),
                self.order.order_id,
            )

        if self.record.dimension_result is None:
            self.record = self._store.attach_measurement(self.record.condition_id, self.bundle.dimensions)

        if not self._suggestions_done:
            self._attach_suggestions()

        if self.is_handover and self.record.comparison is None:
            self._compare_with_arrival()

        self.step = FlowStep.CONFIRMATION
        return self.record

    def assessment_form(self) -> DamageAssessmentForm:
        """A fresh form pre-loaded with the advisory suggestions."""
        return DamageAssessmentForm(self.suggestions)

    def confirm_damage(self, form: DamageAssessmentForm) -> DamageAssessment:
        """
        Raises:
            AssessmentValidationError: No overall condition chosen; nothing is written.
        """
        self._require_step(FlowStep.CONFIRMATION)
        self.assessment = form.confirm(self._store, self.record.condition_id)
        self.step = FlowStep.DONE
        return self.assessment

    def back(self) -> None:
        if self.persisted:
            raise InvalidTransitionError("Cannot go back once the condition record is saved")
        previous = _PREVIOUS_STEP.get(self.step)
        if previous is None:
            raise InvalidTransitionError(f"No previous step from '{self.step.value}'")

        if previous == FlowStep.CAMERA:
            self.bundle = None
            self.front_ref = self.side_ref = None
        self.step = previous

    def cancel(self) -> None:
        if self.step in (FlowStep.DONE, FlowStep.CANCELLED):
            raise InvalidTransitionError(f"Cannot cancel in step '{self.step.value}'")
        self.bundle = None
        self.step = FlowStep.CANCELLED

    # --- Internal ---

    def _require_step(self, expected: FlowStep) -> None:
        if self.step != expected:
            raise InvalidTransitionError(
                f"Expected step '{expected.value}', currently '{self.step.value}'"
            )

    def _upload_photos(self) -> None:
        """Both photos upload in parallel; both must finish before a record exists."""
        pending = {}
        with ThreadPoolExecutor(max_workers=UPLOAD_WORKERS, thread_name_prefix="photo-upload") as pool:
            if self.front_ref is None:
                pending["front"] = pool.submit(
                    self._blobs.upload, self.bundle.front.image_bytes, self.bundle.front.content_type
                )
            if self.side_ref is None:
                pending["side"] = pool.submit(
                    self._blobs.upload, self.bundle.side.image_bytes, self.bundle.side.content_type
                )

            errors = []
            for role, future in pending.items():
                try:
                    setattr(self, f"{role}_ref", future.result())
                except Exception as e:
                    errors.append(e)

        if errors:
            logger.warning("Photo upload failed for order %s: %s", self.order.order_id, errors[0])
            raise errors[0]

    def _build_record(self) -> ConditionRecord:
        return ConditionRecord(
            order_id=self.order.order_id,
            event_type=self.event_type,
            front_photo_ref=self.front_ref,
            side_photo_ref=self.side_ref,
            photo_analysis=self.bundle.analysis,
            actual_weight_kg=self.actual_weight_kg,
            staff_id=self.staff.staff_id,
            staff_name=self.staff.name,
            warehouse_id=self.staff.warehouse_id,
            device_info=self.device_info,
        )

    def _attach_suggestions(self) -> None:
        if self._suggest is None:
            self._suggestions_done = True
            return
        try:
            suggestions = self._suggest(self.bundle.front.image_bytes)
        except InferenceError as e:
            logger.warning("Damage suggestions unavailable for order %s: %s", self.order.order_id, e)
            self._suggestions_done = True
            return

        self.record = self._store.attach_suggestions(self.record.condition_id, suggestions)
        self.suggestions = suggestions
        self._suggestions_done = True

    def _compare_with_arrival(self) -> None:
        arrival_front = self._blobs.download(self.arrival.front_photo_ref)
        comparison = self._compare(
            arrival_front,
            self.bundle.front.image_bytes,
            self.arrival.condition_id,
        )
        details = self.handover_details.model_copy(update={
            "status_change": StatusChange.NEW_DAMAGE if comparison.change_detected else StatusChange.NO_CHANGE,
        })
        self.record = self._store.attach_comparison(self.record.condition_id, comparison, details)
