"""
Domain models for the parcel condition verification pipeline.

All Pydantic models in one place. Imported by validator, dimensions,
quality gate, capture, comparison, storage, workflow and handler modules.
Single source of truth for data contracts.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, computed_field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# --- Domain Enums ---

class EventType(str, Enum):
    """The two warehouse checkpoints a parcel is photographed at."""
    ARRIVAL = "arrival"
    HANDOVER = "handover"


class PhotoRole(str, Enum):
    FRONT = "front"
    SIDE = "side"


class MeasurementSource(str, Enum):
    """
    Where a measurement came from. ESTIMATED results are produced without
    the vision backend and must never be treated as authoritative.
    """
    VISION = "vision"
    ESTIMATED = "estimated"


class DamageLevel(str, Enum):
    NONE = "none"
    MINOR = "minor"
    MAJOR = "major"


class DamageType(str, Enum):
    """Fixed vocabulary staff can confirm."""
    DENT = "dent"
    TEAR = "tear"
    WET = "wet"
    CRUSHED_CORNER = "crushed_corner"
    SCRATCHES = "scratches"
    STAINS = "stains"
    BROKEN_SEAL = "broken_seal"
    OTHER = "other"


DAMAGE_TYPE_LABELS: dict[DamageType, str] = {
    DamageType.DENT: "Dent",
    DamageType.TEAR: "Tear",
    DamageType.WET: "Water Damage",
    DamageType.CRUSHED_CORNER: "Crushed Corner",
    DamageType.SCRATCHES: "Scratches",
    DamageType.STAINS: "Stains",
    DamageType.BROKEN_SEAL: "Broken Seal",
    DamageType.OTHER: "Other",
}


class ChangeType(str, Enum):
    NEW_DAMAGE = "new_damage"
    SHADOW_CHANGE = "shadow_change"
    POSITION_SHIFT = "position_shift"


class StatusChange(str, Enum):
    NO_CHANGE = "no_change"
    NEW_DAMAGE = "new_damage"


class ReviewOutcome(str, Enum):
    ACCEPTED = "accepted"
    DISPUTED = "disputed"


# --- Capture Context ---

class PhotoCapture(BaseModel):
    """A single shutter event."""
    image_bytes: bytes = Field(repr=False)
    role: PhotoRole
    captured_at: datetime = Field(default_factory=utc_now)
    content_type: str = "image/jpeg"


class ValidationResult(BaseModel):
    """Result of photo format, size and resolution checks."""
    is_valid: bool
    error_message: str | None = None

    format: str | None = None
    size_bytes: int | None = Field(None, ge=0)
    resolution: tuple[int, int] | None = None


class PhotoScores(BaseModel):
    """Technical photo quality, both on a 0-100 scale (higher is better)."""
    blur_score: float = Field(0.0, ge=0.0, le=100.0)
    exposure_score: float = Field(0.0, ge=0.0, le=100.0)


class FrontPhotoQuality(PhotoScores):
    has_scale_reference: bool
    ruler_confidence: float = Field(ge=0.0, le=1.0)


class SidePhotoQuality(PhotoScores):
    pass


class PhotoAnalysis(BaseModel):
    """Per-photo quality scores for the front/side pair."""
    front: FrontPhotoQuality
    side: SidePhotoQuality


class QualityGateResult(BaseModel):
    quality_passed: bool
    deficiencies: list[str] = []
    blocking: list[str] = []


# --- Dimension Context ---

class Point(BaseModel):
    x: float
    y: float


class RulerDetection(BaseModel):
    """Scale calibration derived from the printed marker in the front photo."""
    pixels_per_mm: float = Field(gt=0.0)
    corners: list[Point] = []
    perspective_corrected: bool = False
    confidence: float = Field(ge=0.0, le=1.0)


class DimensionMeasurement(BaseModel):
    length_mm: float = Field(ge=0.0)
    width_mm: float = Field(ge=0.0)
    height_mm: float = Field(ge=0.0)
    dim_weight_kg: float = Field(ge=0.0)
    confidence: float = Field(ge=0.0, le=1.0)
    source: MeasurementSource = MeasurementSource.VISION


class DimensionResult(BaseModel):
    """Output of the ruler calibration and dimension engine."""
    ruler: RulerDetection
    measurement: DimensionMeasurement
    area_consistency_ratio: float = Field(0.0, ge=0.0, le=1.0)
    processing_time_ms: int = Field(0, ge=0)

    @computed_field
    @property
    def is_authoritative(self) -> bool:
        return self.measurement.source == MeasurementSource.VISION


class CaptureBundle(BaseModel):
    """Finalized photo pair plus analysis, emitted when capture is confirmed."""
    front: PhotoCapture
    side: PhotoCapture
    analysis: PhotoAnalysis
    dimensions: DimensionResult
    quality: QualityGateResult


# --- Damage Context ---

class AiDamageTag(BaseModel):
    type: str
    confidence: float = Field(ge=0.0, le=1.0)
    area: str = "overall"


class DamageSuggestions(BaseModel):
    """Advisory model output. Displayed to staff, never auto-applied."""
    tags: list[AiDamageTag] = []
    overall_confidence: float = Field(0.0, ge=0.0, le=1.0)
    flagged_for_review: bool = False
    provider: str = ""
    processing_time_ms: int = Field(0, ge=0)


class DamageAssessment(BaseModel):
    """Human-confirmed damage judgment attached to a condition record."""
    ai_suggested_tags: list[AiDamageTag] = []
    overall_ai_confidence: float = Field(0.0, ge=0.0, le=1.0)
    flagged_for_review: bool = False
    final_assessment: DamageLevel
    confirmed_tags: list[DamageType] | None = None
    notes: str | None = None
    confirmed_at: datetime = Field(default_factory=utc_now)


# --- Comparison Context ---

class ChangedArea(BaseModel):
    area: str
    change_type: ChangeType
    confidence: float = Field(ge=0.0, le=1.0)


class ComparisonResult(BaseModel):
    arrival_condition_id: str
    alignment_score: float = Field(ge=0.0, le=1.0)
    ssim_score: float = Field(ge=-1.0, le=1.0)
    change_detected: bool
    lighting_adjusted: bool = False
    changed_areas: list[ChangedArea] = []


class HandoverDetails(BaseModel):
    courier_name: str
    courier_representative: str | None = None
    status_change: StatusChange = StatusChange.NO_CHANGE
    handover_notes: str | None = None


class ReviewResolution(BaseModel):
    resolved_by: str
    outcome: ReviewOutcome
    note: str | None = None
    resolved_at: datetime = Field(default_factory=utc_now)


# --- Read-only collaborators ---

class OrderSnapshot(BaseModel):
    order_id: str
    declared_weight_kg: float | None = Field(None, ge=0.0)
    customer_id: str | None = None
    merchant: str | None = None
    assigned_courier: str | None = None


class StaffContext(BaseModel):
    staff_id: str
    name: str
    warehouse_id: str


# --- Storage Context ---

def condition_id_for(order_id: str, event_type: EventType | str) -> str:
    """Deterministic record id; one record per (order, event type)."""
    return f"{order_id}:{EventType(event_type).value}"


class ConditionRecord(BaseModel):
    """Persisted condition record, one per (order, event type)."""
    order_id: str
    event_type: EventType

    front_photo_ref: str
    side_photo_ref: str
    photo_analysis: PhotoAnalysis
    dimension_result: DimensionResult | None = None

    actual_weight_kg: float = Field(ge=0.0)
    staff_id: str
    staff_name: str = ""
    warehouse_id: str
    device_info: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)

    # Attached after creation
    damage_suggestions: DamageSuggestions | None = None
    damage_assessment: DamageAssessment | None = None
    comparison: ComparisonResult | None = None
    handover_details: HandoverDetails | None = None
    requires_review: bool = False
    review_resolution: ReviewResolution | None = None

    @computed_field
    @property
    def condition_id(self) -> str:
        return condition_id_for(self.order_id, self.event_type)


# --- Exceptions ---

class PhotoValidationError(Exception):
    """Photo is fundamentally unusable (corrupt, wrong format, too small)."""
    pass


class CameraUnavailableError(Exception):
    """Camera device could not be acquired or stopped delivering frames."""
    pass


class AnalysisCancelledError(Exception):
    """Dimension analysis was cancelled before it completed."""
    pass


class InvalidTransitionError(Exception):
    """Event is not allowed in the current state."""
    pass


class QualityGateError(Exception):
    """Capture cannot be finalized because the quality gate did not pass."""
    pass


class InferenceError(Exception):
    """Damage suggestion model execution failed."""
    pass


class UploadError(Exception):
    """Photo upload or download failed. Transient, retry allowed."""
    pass


class StorageError(Exception):
    """Database operation failed."""
    pass


class ConditionNotFoundError(Exception):
    """Requested condition record does not exist."""
    pass


class DuplicateConditionError(Exception):
    """A record already exists for this (order, event type)."""
    pass


class PreconditionViolation(Exception):
    """Handover requested for an order with no arrival record."""
    pass


class AssessmentValidationError(Exception):
    """Damage assessment is incomplete (e.g. no overall condition chosen)."""
    pass
