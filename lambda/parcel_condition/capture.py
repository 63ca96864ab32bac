"""
Dual-photo capture state machine.

States: front -> side -> analyzing -> analyzed (review), plus error and
the exits cancelled and confirmed.

transition() is pure: it maps (session, event) to a new session and a
list of effects, without touching the camera, threads or storage.
CaptureController executes those effects: scoped camera access, analysis
off the calling thread, cancellation, and emitting the final bundle.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Callable, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field

from parcel_condition.models import (
    CaptureBundle,
    DimensionResult,
    EventType,
    PhotoAnalysis,
    PhotoCapture,
    PhotoRole,
    QualityGateResult,
    AnalysisCancelledError,
    CameraUnavailableError,
    InvalidTransitionError,
    QualityGateError,
)
from parcel_condition.dimensions import VisionBackend, calculate_dimensions
from parcel_condition.quality_gate import evaluate_quality
from parcel_condition.validator import build_photo_analysis, score_photo
from parcel_condition.config import ANALYSIS_WORKERS

logger = logging.getLogger(__name__)


class CaptureState(str, Enum):
    FRONT = "front"
    SIDE = "side"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    ERROR = "error"
    CANCELLED = "cancelled"
    CONFIRMED = "confirmed"


TERMINAL_STATES = frozenset({CaptureState.CANCELLED, CaptureState.CONFIRMED})


class AnalysisOutcome(BaseModel):
    analysis: PhotoAnalysis
    dimensions: DimensionResult
    quality: QualityGateResult


# --- Events ---

class Shutter(BaseModel):
    image_bytes: bytes = Field(repr=False)
    content_type: str = "image/jpeg"


class AnalysisCompleted(BaseModel):
    analysis_id: int
    outcome: AnalysisOutcome


class AnalysisFailed(BaseModel):
    analysis_id: int
    reason: str


class RetakeFront(BaseModel):
    pass


class RetakeSide(BaseModel):
    pass


class CameraFailed(BaseModel):
    reason: str


class Retry(BaseModel):
    pass


class Cancel(BaseModel):
    pass


class Confirm(BaseModel):
    pass


CaptureEvent = Union[
    Shutter, AnalysisCompleted, AnalysisFailed, RetakeFront, RetakeSide,
    CameraFailed, Retry, Cancel, Confirm,
]


# --- Effects ---

class AcquireCamera(BaseModel):
    pass


class ReleaseCamera(BaseModel):
    pass


class StartAnalysis(BaseModel):
    analysis_id: int
    front: PhotoCapture
    side: PhotoCapture


class CancelAnalysis(BaseModel):
    analysis_id: int


class EmitBundle(BaseModel):
    bundle: CaptureBundle


CaptureEffect = Union[AcquireCamera, ReleaseCamera, StartAnalysis, CancelAnalysis, EmitBundle]


# --- Session ---

class CaptureSession(BaseModel):
    """Immutable snapshot of one order-event capture session."""
    model_config = ConfigDict(frozen=True)

    order_id: str
    event_type: EventType
    state: CaptureState = CaptureState.FRONT
    front: PhotoCapture | None = None
    side: PhotoCapture | None = None
    outcome: AnalysisOutcome | None = None
    analysis_id: int = 0
    error: str | None = None

    @property
    def quality_passed(self) -> bool:
        return self.outcome is not None and self.outcome.quality.quality_passed

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class Transition(BaseModel):
    session: CaptureSession
    effects: list[CaptureEffect] = []


# --- Pure transition function ---

def transition(session: CaptureSession, event: CaptureEvent) -> Transition:
    """
    Applies one event.

    Raises:
        InvalidTransitionError: If the event is not allowed in the current state.
        QualityGateError: If Confirm is attempted while the gate is failing.
    """
    if isinstance(event, Cancel):
        return _cancel(session)
    if isinstance(event, CameraFailed):
        return _camera_failed(session, event)

    handler = _HANDLERS.get((session.state, type(event)))
    if handler is None:
        raise InvalidTransitionError(
            f"{type(event).__name__} not allowed in state '{session.state.value}'"
        )
    return handler(session, event)


def _shutter_front(session: CaptureSession, event: Shutter) -> Transition:
    front = PhotoCapture(image_bytes=event.image_bytes, role=PhotoRole.FRONT, content_type=event.content_type)
    return Transition(session=session.model_copy(update={
        "state": CaptureState.SIDE,
        "front": front,
    }))


def _shutter_side(session: CaptureSession, event: Shutter) -> Transition:
    side = PhotoCapture(image_bytes=event.image_bytes, role=PhotoRole.SIDE, content_type=event.content_type)
    analysis_id = session.analysis_id + 1
    return Transition(
        session=session.model_copy(update={
            "state": CaptureState.ANALYZING,
            "side": side,
            "analysis_id": analysis_id,
        }),
        effects=[StartAnalysis(analysis_id=analysis_id, front=session.front, side=side)],
    )


def _analysis_completed(session: CaptureSession, event: AnalysisCompleted) -> Transition:
    _require_current(session, event.analysis_id)
    return Transition(session=session.model_copy(update={
        "state": CaptureState.ANALYZED,
        "outcome": event.outcome,
    }))


def _analysis_failed(session: CaptureSession, event: AnalysisFailed) -> Transition:
    _require_current(session, event.analysis_id)
    return Transition(
        session=session.model_copy(update={
            "state": CaptureState.ERROR,
            "error": event.reason,
        }),
        effects=[ReleaseCamera()],
    )


def _retake_front(session: CaptureSession, event: RetakeFront) -> Transition:
    # A new scale reference invalidates everything captured so far
    return Transition(session=session.model_copy(update={
        "state": CaptureState.FRONT,
        "front": None,
        "side": None,
        "outcome": None,
    }))


def _retake_side(session: CaptureSession, event: RetakeSide) -> Transition:
    return Transition(session=session.model_copy(update={
        "state": CaptureState.SIDE,
        "side": None,
        "outcome": None,
    }))


def _confirm(session: CaptureSession, event: Confirm) -> Transition:
    if not session.quality_passed:
        blocking = session.outcome.quality.blocking if session.outcome else []
        raise QualityGateError(
            "Photo quality check failed: " + ", ".join(blocking or ["no analysis"])
        )
    bundle = CaptureBundle(
        front=session.front,
        side=session.side,
        analysis=session.outcome.analysis,
        dimensions=session.outcome.dimensions,
        quality=session.outcome.quality,
    )
    return Transition(
        session=session.model_copy(update={"state": CaptureState.CONFIRMED}),
        effects=[ReleaseCamera(), EmitBundle(bundle=bundle)],
    )


def _retry(session: CaptureSession, event: Retry) -> Transition:
    return Transition(
        session=session.model_copy(update={
            "state": CaptureState.FRONT,
            "front": None,
            "side": None,
            "outcome": None,
            "error": None,
        }),
        effects=[AcquireCamera()],
    )


def _cancel(session: CaptureSession) -> Transition:
    if session.is_terminal:
        raise InvalidTransitionError(f"Cancel not allowed in state '{session.state.value}'")

    effects: list[CaptureEffect] = []
    if session.state == CaptureState.ANALYZING:
        effects.append(CancelAnalysis(analysis_id=session.analysis_id))
    if session.state != CaptureState.ERROR:
        effects.append(ReleaseCamera())

    return Transition(
        session=session.model_copy(update={
            "state": CaptureState.CANCELLED,
            "front": None,
            "side": None,
            "outcome": None,
        }),
        effects=effects,
    )


def _camera_failed(session: CaptureSession, event: CameraFailed) -> Transition:
    if session.is_terminal or session.state == CaptureState.ERROR:
        raise InvalidTransitionError(f"CameraFailed not allowed in state '{session.state.value}'")

    effects: list[CaptureEffect] = []
    if session.state == CaptureState.ANALYZING:
        effects.append(CancelAnalysis(analysis_id=session.analysis_id))
    effects.append(ReleaseCamera())

    return Transition(
        session=session.model_copy(update={
            "state": CaptureState.ERROR,
            "error": event.reason,
        }),
        effects=effects,
    )


def _require_current(session: CaptureSession, analysis_id: int) -> None:
    if analysis_id != session.analysis_id:
        raise InvalidTransitionError(
            f"Stale analysis result {analysis_id} (current {session.analysis_id})"
        )


_HANDLERS: dict[tuple[CaptureState, type], Callable[..., Transition]] = {
    (CaptureState.FRONT, Shutter): _shutter_front,
    (CaptureState.SIDE, Shutter): _shutter_side,
    (CaptureState.ANALYZING, AnalysisCompleted): _analysis_completed,
    (CaptureState.ANALYZING, AnalysisFailed): _analysis_failed,
    (CaptureState.ANALYZED, RetakeFront): _retake_front,
    (CaptureState.ANALYZED, RetakeSide): _retake_side,
    (CaptureState.ANALYZED, Confirm): _confirm,
    (CaptureState.ERROR, Retry): _retry,
}


# --- Analysis ---

def analyze_photos(
    front_bytes: bytes,
    side_bytes: bytes,
    backend: VisionBackend,
    cancel_event: threading.Event | None = None,
) -> AnalysisOutcome:
    """
    Scores both photos and runs the dimension engine concurrently, then
    evaluates the quality gate on the combined result.

    Raises:
        AnalysisCancelledError: If cancel_event is set before completion.
    """
    with ThreadPoolExecutor(max_workers=2, thread_name_prefix="photo-score") as pool:
        front_scores = pool.submit(score_photo, front_bytes)
        side_scores = pool.submit(score_photo, side_bytes)
        dimensions = calculate_dimensions(front_bytes, side_bytes, backend, cancel_event)
        analysis = build_photo_analysis(front_scores.result(), side_scores.result(), dimensions.ruler)

    if cancel_event is not None and cancel_event.is_set():
        raise AnalysisCancelledError("Photo analysis cancelled")

    quality = evaluate_quality(analysis)
    logger.info(
        "Analysis complete: quality %s, ruler confidence %.2f, source %s",
        "passed" if quality.quality_passed else "failed",
        dimensions.ruler.confidence,
        dimensions.measurement.source.value,
    )
    return AnalysisOutcome(analysis=analysis, dimensions=dimensions, quality=quality)


# --- Effect executor ---

class Camera(Protocol):
    """Camera device. open/close bracket one session; capture returns encoded bytes."""

    def open(self) -> None: ...

    def capture(self) -> bytes: ...

    def close(self) -> None: ...


class CaptureController:
    """
    Runs one capture session against a real camera and analysis pool.

    Use as a context manager: the camera is acquired on entry and released
    on exit, including when an exception escapes. Leaving a live session
    cancels it.
    """

    def __init__(
        self,
        order_id: str,
        event_type: EventType | str,
        camera: Camera,
        backend: VisionBackend,
        executor: ThreadPoolExecutor | None = None,
        on_bundle: Callable[[CaptureBundle], None] | None = None,
    ):
        self.session = CaptureSession(order_id=order_id, event_type=EventType(event_type))
        self.bundle: CaptureBundle | None = None

        self._camera = camera
        self._camera_open = False
        self._backend = backend
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=ANALYSIS_WORKERS, thread_name_prefix="capture-analysis"
        )
        self._on_bundle = on_bundle

        self._lock = threading.RLock()
        self._future: Future | None = None
        self._cancel_event: threading.Event | None = None
        self._settled = threading.Event()
        self._settled.set()

    def __enter__(self) -> "CaptureController":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    @property
    def state(self) -> CaptureState:
        return self.session.state

    # --- User actions ---

    def open(self) -> None:
        self._acquire_camera()

    def shutter(self) -> CaptureSession:
        try:
            image_bytes = self._camera.capture()
        except Exception as e:
            logger.warning("Camera capture failed for order %s: %s", self.session.order_id, e)
            return self.dispatch(CameraFailed(reason=f"Camera capture failed: {e}"))
        return self.dispatch(Shutter(image_bytes=image_bytes))

    def retake_front(self) -> CaptureSession:
        return self.dispatch(RetakeFront())

    def retake_side(self) -> CaptureSession:
        return self.dispatch(RetakeSide())

    def retry(self) -> CaptureSession:
        return self.dispatch(Retry())

    def confirm(self) -> CaptureBundle:
        self.dispatch(Confirm())
        return self.bundle

    def cancel(self) -> CaptureSession:
        return self.dispatch(Cancel())

    def wait_for_analysis(self, timeout: float | None = None) -> bool:
        """Blocks until the in-flight analysis has settled. False on timeout."""
        return self._settled.wait(timeout)

    def close(self) -> None:
        try:
            if not self.session.is_terminal:
                self.dispatch(Cancel())
        finally:
            self._release_camera()
            if self._owns_executor:
                self._executor.shutdown(wait=False, cancel_futures=True)

    # --- Dispatch ---

    def dispatch(self, event: CaptureEvent) -> CaptureSession:
        with self._lock:
            result = transition(self.session, event)
            previous = self.session.state
            self.session = result.session
            if previous != self.session.state:
                logger.debug(
                    "Capture %s: %s -> %s",
                    self.session.order_id,
                    previous.value,
                    self.session.state.value,
                )
            for effect in result.effects:
                self._execute(effect)
            return self.session

    def _execute(self, effect: CaptureEffect) -> None:
        if isinstance(effect, AcquireCamera):
            self._acquire_camera()
        elif isinstance(effect, ReleaseCamera):
            self._release_camera()
        elif isinstance(effect, StartAnalysis):
            self._start_analysis(effect)
        elif isinstance(effect, CancelAnalysis):
            self._cancel_analysis()
        elif isinstance(effect, EmitBundle):
            self.bundle = effect.bundle
            if self._on_bundle is not None:
                self._on_bundle(effect.bundle)

    # --- Camera ---

    def _acquire_camera(self) -> None:
        if self._camera_open:
            return
        try:
            self._camera.open()
            self._camera_open = True
        except Exception as e:
            logger.warning("Camera unavailable for order %s: %s", self.session.order_id, e)
            if self.session.is_terminal or self.session.state == CaptureState.ERROR:
                raise CameraUnavailableError(f"Camera access failed: {e}")
            self.dispatch(CameraFailed(reason=f"Camera access failed: {e}"))

    def _release_camera(self) -> None:
        if not self._camera_open:
            return
        try:
            self._camera.close()
        finally:
            self._camera_open = False

    # --- Analysis ---

    def _start_analysis(self, effect: StartAnalysis) -> None:
        cancel_event = threading.Event()
        self._cancel_event = cancel_event
        self._settled.clear()
        self._future = self._executor.submit(
            self._run_analysis,
            effect.analysis_id,
            effect.front.image_bytes,
            effect.side.image_bytes,
            cancel_event,
        )

    def _run_analysis(
        self,
        analysis_id: int,
        front_bytes: bytes,
        side_bytes: bytes,
        cancel_event: threading.Event,
    ) -> None:
        try:
            outcome = analyze_photos(front_bytes, side_bytes, self._backend, cancel_event)
            event: CaptureEvent = AnalysisCompleted(analysis_id=analysis_id, outcome=outcome)
        except AnalysisCancelledError:
            logger.debug("Analysis %d cancelled", analysis_id)
            return
        except Exception as e:
            logger.exception("Analysis %d failed", analysis_id)
            event = AnalysisFailed(analysis_id=analysis_id, reason=f"Photo analysis failed: {e}")

        try:
            if not cancel_event.is_set():
                self.dispatch(event)
        except InvalidTransitionError:
            logger.debug("Dropping analysis %d result for session in state %s", analysis_id, self.state.value)
        finally:
            if not cancel_event.is_set():
                self._settled.set()

    def _cancel_analysis(self) -> None:
        if self._cancel_event is not None:
            self._cancel_event.set()
        if self._future is not None:
            self._future.cancel()
        self._future = None
        self._cancel_event = None
        self._settled.set()
