"""
Advisory damage suggestions - ONNX model loading and tag prediction.

Suggestions are display data for staff. They are never copied into the
confirmed damage assessment; only a human confirmation is durable.
"""

import io
import logging
import time
from pathlib import Path

import numpy as np
import onnxruntime as ort
from PIL import Image

from parcel_condition.models import (
    AiDamageTag,
    DamageSuggestions,
    DamageType,
    DAMAGE_TYPE_LABELS,
    InferenceError,
)
from parcel_condition.config import (
    DAMAGE_MODEL_PATH,
    DAMAGE_MODEL_PATH_LOCAL,
    MODEL_INPUT_SIZE,
    DAMAGE_CLASS_LABELS,
    SUGGESTION_MIN_CONFIDENCE,
    REVIEW_FLAG_CONFIDENCE,
    MODEL_PROVIDER,
)

logger = logging.getLogger(__name__)


# --- Global model cache ---
# Lambda containers persist between invocations; load the model once.

_model_session: ort.InferenceSession | None = None


# --- Public API ---

def suggest_damage(image_bytes: bytes) -> DamageSuggestions:
    """
    Predicts likely damage types for one photo.

    Every non-"none" class at or above SUGGESTION_MIN_CONFIDENCE becomes a
    tag. Review is suggested when any tag reaches REVIEW_FLAG_CONFIDENCE.

    Raises:
        InferenceError: If model loading or inference fails.
    """
    start_time = time.perf_counter()
    try:
        model = _load_model()
        input_tensor = _preprocess(image_bytes)

        input_name = model.get_inputs()[0].name
        outputs = model.run(None, {input_name: input_tensor})
        probabilities = _softmax(np.asarray(outputs[0][0], dtype=np.float64))

        tags = [
            AiDamageTag(type=DAMAGE_CLASS_LABELS[i], confidence=round(float(p), 4))
            for i, p in enumerate(probabilities)
            if i in DAMAGE_CLASS_LABELS
            and DAMAGE_CLASS_LABELS[i] != "none"
            and p >= SUGGESTION_MIN_CONFIDENCE
        ]
        tags.sort(key=lambda t: t.confidence, reverse=True)

        overall = max((t.confidence for t in tags), default=0.0)

        return DamageSuggestions(
            tags=tags,
            overall_confidence=overall,
            flagged_for_review=overall >= REVIEW_FLAG_CONFIDENCE,
            provider=MODEL_PROVIDER,
            processing_time_ms=int((time.perf_counter() - start_time) * 1000),
        )

    except InferenceError:
        raise
    except Exception as e:
        raise InferenceError(f"Inference failed: {e}")


def get_suggestion_summary(suggestions: DamageSuggestions) -> str:
    """Human-readable summary for display next to the assessment form."""
    if not suggestions.tags:
        return "No damage suggested"
    parts = [f"{_tag_label(t.type)} ({t.confidence:.0%})" for t in suggestions.tags]
    return "Suggested: " + ", ".join(parts) + " - please confirm"


def clear_model_cache() -> None:
    """Clears cached model. Used in testing only."""
    global _model_session
    _model_session = None


# --- Internal ---

def _tag_label(tag_type: str) -> str:
    try:
        return DAMAGE_TYPE_LABELS[DamageType(tag_type)]
    except ValueError:
        return tag_type.replace("_", " ")


def _load_model() -> ort.InferenceSession:
    """
    Loads ONNX model with global caching.

    Tries the deployment path first, falls back to local path for development.
    """
    global _model_session

    if _model_session is not None:
        return _model_session

    model_path = Path(DAMAGE_MODEL_PATH)
    if not model_path.exists():
        model_path = Path(DAMAGE_MODEL_PATH_LOCAL)

    if not model_path.exists():
        raise InferenceError(
            f"Model not found. Tried: {DAMAGE_MODEL_PATH}, {DAMAGE_MODEL_PATH_LOCAL}"
        )

    try:
        _model_session = ort.InferenceSession(
            str(model_path),
            providers=["CPUExecutionProvider"],
        )
        logger.info("Loaded damage model from %s", model_path)
        return _model_session
    except Exception as e:
        raise InferenceError(f"Failed to load model: {e}")


def _preprocess(image_bytes: bytes) -> np.ndarray:
    """
    Preprocesses a photo for classifier input.

    Pipeline:
    1. Decode -> PIL Image
    2. Resize to MODEL_INPUT_SIZE
    3. Convert to RGB (handles PNG alpha)
    4. Normalize [0, 255] -> [0.0, 1.0]
    5. HWC -> NCHW
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img = img.resize(MODEL_INPUT_SIZE, Image.Resampling.LANCZOS)
        img = img.convert("RGB")

        tensor = np.array(img, dtype=np.float32) / 255.0
        tensor = np.transpose(tensor, (2, 0, 1))
        return np.expand_dims(tensor, axis=0)
    except Exception as e:
        raise InferenceError(f"Preprocessing failed: {e}")


def _softmax(logits: np.ndarray) -> np.ndarray:
    """Converts model logits to probabilities. Numerically stable."""
    exp = np.exp(logits - np.max(logits))
    return exp / exp.sum()
