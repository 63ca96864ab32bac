"""
Damage assessment confirmation.

Collects the human judgment for a condition record. Model suggestions
are carried along for display only; the confirmed condition, tags and
notes always come from staff input.
"""

import logging

from parcel_condition.models import (
    DamageAssessment,
    DamageLevel,
    DamageSuggestions,
    DamageType,
    AssessmentValidationError,
)

logger = logging.getLogger(__name__)


class DamageAssessmentForm:
    """
    Staff-facing assessment state.

    The overall condition starts unset and must be chosen explicitly
    before confirm is accepted.
    """

    def __init__(self, suggestions: DamageSuggestions | None = None):
        self.suggestions = suggestions or DamageSuggestions()
        self.condition: DamageLevel | None = None
        self.selected_tags: list[DamageType] = []
        self.notes: str = ""

    def select_condition(self, condition: DamageLevel | str) -> None:
        try:
            self.condition = DamageLevel(condition)
        except ValueError:
            raise AssessmentValidationError(
                f"Invalid condition: {condition}. Must be one of {[c.value for c in DamageLevel]}"
            )

    def toggle_tag(self, tag: DamageType | str) -> None:
        tag = _parse_tag(tag)
        if tag in self.selected_tags:
            self.selected_tags.remove(tag)
        else:
            self.selected_tags.append(tag)

    def set_notes(self, notes: str) -> None:
        self.notes = notes

    @property
    def has_damage(self) -> bool:
        return self.condition is not None and self.condition != DamageLevel.NONE

    def build(self) -> DamageAssessment:
        """
        Produces the assessment to persist.

        Tags and notes only carry meaning when damage was reported, so they
        are dropped for DamageLevel.NONE.

        Raises:
            AssessmentValidationError: If no overall condition was chosen.
        """
        if self.condition is None:
            raise AssessmentValidationError("Overall package condition is required")

        notes = None
        tags = None
        if self.has_damage:
            notes = self.notes.strip() or None
            tags = list(self.selected_tags) or None

        return DamageAssessment(
            ai_suggested_tags=self.suggestions.tags,
            overall_ai_confidence=self.suggestions.overall_confidence,
            flagged_for_review=self.suggestions.flagged_for_review,
            final_assessment=self.condition,
            confirmed_tags=tags,
            notes=notes,
        )

    def confirm(self, store, condition_id: str) -> DamageAssessment:
        """Validates locally, then persists through the store."""
        assessment = self.build()
        store.confirm_damage(condition_id, assessment)
        logger.info(
            "Damage assessment confirmed for %s: %s",
            condition_id,
            assessment.final_assessment.value,
        )
        return assessment


def build_assessment(
    condition: DamageLevel | str | None,
    tags: list[str] | None = None,
    notes: str | None = None,
    suggestions: DamageSuggestions | None = None,
) -> DamageAssessment:
    """One-shot form fill for callers that receive the whole payload at once."""
    form = DamageAssessmentForm(suggestions)
    if condition is not None:
        form.select_condition(condition)
    for tag in tags or []:
        if _parse_tag(tag) not in form.selected_tags:
            form.toggle_tag(tag)
    form.set_notes(notes or "")
    return form.build()


def _parse_tag(tag: DamageType | str) -> DamageType:
    try:
        return DamageType(tag)
    except ValueError:
        raise AssessmentValidationError(
            f"Unknown damage tag: {tag}. Must be one of {[t.value for t in DamageType]}"
        )
