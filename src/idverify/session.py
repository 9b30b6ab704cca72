"""
Verification session state machine for the IDVERIFY system.

A session moves through the display steps ``welcome -> selfie -> document ->
processing -> result``. The state machine owns exactly one session at a
time, enforces the step ordering (no document before an accepted selfie,
no decision before both captures, one in-flight decision at most, a
completed session is immutable) and mirrors every change into a
``SessionStore``: the in-progress session under ``currentVerificationSession``
and a snapshot of every completed session appended to
``verificationHistory``.

The store is a small get/put/delete capability so the state machine has no
implicit global state; ``InMemorySessionStore`` serves tests and
``JsonFileSessionStore`` keeps a local cache on disk.
"""

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import structlog

from .constants import CURRENT_SESSION_KEY, HISTORY_KEY
from .data_models import (
    DocumentType,
    FlowStep,
    SessionStatus,
    VerificationResult,
    VerificationSession,
)
from .exceptions import (
    AlreadyCompleted,
    AlreadyProcessing,
    InvalidTransition,
    PersistenceFailure,
    SessionNotStarted,
)
from .utils import generate_session_id, utc_now

# Initialize structured logger
logger = structlog.get_logger(__name__)


class SessionStore(ABC):
    """Key/value capability backing the local session cache."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the JSON-compatible value under ``key`` or ``None``."""

    @abstractmethod
    def put(self, key: str, value: Any) -> None:
        """Store a JSON-compatible value under ``key``."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``; missing keys are ignored."""

    def append(self, key: str, value: Any) -> None:
        """Append ``value`` to the list stored under ``key``."""
        items = self.get(key) or []
        items.append(value)
        self.put(key, items)


class InMemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            value = self._data.get(key)
        # Hand out copies so callers cannot mutate the cache in place
        return json.loads(json.dumps(value)) if value is not None else None

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = json.loads(json.dumps(value))

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class JsonFileSessionStore(SessionStore):
    """
    Session cache persisted as one JSON document on disk.

    Parameters
    ----------
    path : Path
        Location of the cache file. Parent directories are created.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceFailure(
                f"Failed to read session cache: {str(e)}",
                operation="session_cache_read",
                context={"path": str(self.path)},
            ) from e

    def _dump(self, data: Dict[str, Any]) -> None:
        json_str = json.dumps(data, indent=2, default=str, ensure_ascii=False)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(json_str)
            os.replace(tmp_name, self.path)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceFailure(
                f"Failed to write session cache: {str(e)}",
                operation="session_cache_write",
                context={"path": str(self.path)},
            ) from e

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._load().get(key)

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._dump(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._dump(data)


class VerificationStateMachine:
    """
    Owns one verification session and its step transitions.

    Parameters
    ----------
    store : Optional[SessionStore], default=None
        Local session cache. An in-memory store is used when omitted.
    id_factory : Callable[[], str], default=generate_session_id
        Source of new session identifiers.

    Examples
    --------
    >>> machine = VerificationStateMachine(JsonFileSessionStore(path))
    >>> machine.start_session()
    >>> machine.save_selfie(selfie_bytes, quality=82.0)
    >>> machine.save_document(document_bytes, DocumentType.CNH, quality=77.5)
    >>> machine.begin_processing()
    >>> machine.complete_verification(result)
    """

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        id_factory: Callable[[], str] = generate_session_id,
    ) -> None:
        self.store = store or InMemorySessionStore()
        self.id_factory = id_factory
        self._session: Optional[VerificationSession] = None
        self._processing = False
        self._lock = threading.Lock()
        self._cancel_event = threading.Event()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def session(self) -> Optional[VerificationSession]:
        return self._session

    @property
    def current_step(self) -> FlowStep:
        return self._session.step if self._session else FlowStep.WELCOME

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def cancel_event(self) -> threading.Event:
        """Set when the session is abandoned; in-flight scorers watch it."""
        return self._cancel_event

    def history(self) -> List[Dict[str, Any]]:
        """Snapshots of completed sessions, oldest first."""
        return self.store.get(HISTORY_KEY) or []

    def _require_session(self, operation: str) -> VerificationSession:
        if self._session is None:
            raise SessionNotStarted(operation)
        return self._session

    def _require_open(self, operation: str) -> VerificationSession:
        session = self._require_session(operation)
        if session.is_completed:
            raise AlreadyCompleted(session.id)
        return session

    def _persist(self) -> None:
        session = self._require_session("persist")
        session.validate()
        self.store.put(CURRENT_SESSION_KEY, session.to_dict())

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start_session(self) -> VerificationSession:
        """Create a fresh session at the welcome step and cache it."""
        with self._lock:
            self._cancel_event.set()
            self._cancel_event = threading.Event()
            self._processing = False
            self._session = VerificationSession(id=self.id_factory())
            self._persist()

        logger.info("Verification session started", session_id=self._session.id)
        return self._session

    def resume(self) -> Optional[VerificationSession]:
        """Reload the cached in-progress session, if any."""
        data = self.store.get(CURRENT_SESSION_KEY)
        if not data:
            return None

        with self._lock:
            self._session = VerificationSession.from_dict(data)
            self._processing = False

        logger.info(
            "Verification session resumed",
            session_id=self._session.id,
            step=self._session.step.value,
            status=self._session.status.value,
        )
        return self._session

    def save_selfie(self, image: bytes, quality: float) -> VerificationSession:
        """
        Record an accepted selfie and advance to the document step.

        The capture must already have passed the quality gate.

        Raises
        ------
        SessionNotStarted, AlreadyCompleted, AlreadyProcessing
        """
        with self._lock:
            session = self._require_open("save_selfie")
            if self._processing:
                raise AlreadyProcessing(session.id)

            session.selfie_image = image
            session.selfie_timestamp = utc_now()
            session.selfie_quality = quality
            session.error = None
            session.step = FlowStep.DOCUMENT
            self._persist()

        logger.info("Selfie saved", session_id=session.id, quality=quality)
        return session

    def save_document(
        self, image: bytes, document_type: DocumentType, quality: float
    ) -> VerificationSession:
        """
        Record an accepted document photo.

        Raises
        ------
        InvalidTransition
            If no selfie has been saved in this session.
        SessionNotStarted, AlreadyCompleted, AlreadyProcessing
        """
        with self._lock:
            session = self._require_open("save_document")
            if self._processing:
                raise AlreadyProcessing(session.id)
            if not session.has_selfie:
                raise InvalidTransition(
                    "Document cannot be saved before the selfie",
                    session_id=session.id,
                    step=FlowStep.DOCUMENT.value,
                )

            session.document_image = image
            session.document_type = DocumentType(document_type)
            session.document_timestamp = utc_now()
            session.document_quality = quality
            session.error = None
            session.step = FlowStep.PROCESSING
            self._persist()

        logger.info(
            "Document saved",
            session_id=session.id,
            document_type=session.document_type.value,
            quality=quality,
        )
        return session

    def begin_processing(self) -> VerificationSession:
        """
        Claim the session's single in-flight decision slot.

        Raises
        ------
        InvalidTransition
            If either capture is missing.
        AlreadyProcessing
            If a decision is already in flight.
        SessionNotStarted, AlreadyCompleted
        """
        with self._lock:
            session = self._require_open("begin_processing")
            if self._processing:
                raise AlreadyProcessing(session.id)
            if not session.is_ready_for_processing:
                raise InvalidTransition(
                    "Both selfie and document are required before processing",
                    session_id=session.id,
                    step=FlowStep.PROCESSING.value,
                )

            self._processing = True
            session.error = None
            session.step = FlowStep.PROCESSING
            self._persist()

        logger.info("Verification processing started", session_id=session.id)
        return session

    def complete_verification(self, result: VerificationResult) -> VerificationSession:
        """
        Record the decision. One-shot: a completed session is immutable.

        Raises
        ------
        AlreadyCompleted
            If the session already holds a result.
        InvalidTransition
            If either capture is missing.
        SessionNotStarted
        """
        with self._lock:
            session = self._require_open("complete_verification")
            if not session.is_ready_for_processing:
                raise InvalidTransition(
                    "Both selfie and document are required before completion",
                    session_id=session.id,
                    step=FlowStep.RESULT.value,
                )

            session.completed_at = utc_now()
            session.similarity_score = result.score
            session.status = SessionStatus.APPROVED if result.passed else SessionStatus.REJECTED
            session.result = result
            session.error = None
            session.step = FlowStep.RESULT
            self._processing = False
            self._persist()
            self.store.append(HISTORY_KEY, session.to_dict(include_images=False))

        logger.info(
            "Verification completed",
            session_id=session.id,
            status=session.status.value,
            score=result.score,
            required_score=result.required_score,
        )
        return session

    def mark_failed(self, error: str) -> VerificationSession:
        """
        Flag a failed processing attempt. The session stays in progress so
        the user can retry; it is never marked approved or rejected here.
        """
        with self._lock:
            session = self._require_open("mark_failed")
            session.error = error
            self._processing = False
            self._persist()

        logger.warning("Verification attempt failed", session_id=session.id, error=error)
        return session

    def reset_session(self) -> None:
        """
        Abandon the current session. In-flight scorers are signalled to stop
        and the local cache entry is cleared; the history mirror and the
        audit store are left untouched.
        """
        with self._lock:
            session_id = self._session.id if self._session else None
            self._cancel_event.set()
            self._cancel_event = threading.Event()
            self._processing = False
            self._session = None
            self.store.delete(CURRENT_SESSION_KEY)

        logger.info("Verification session reset", session_id=session_id)

    def go_to_step(self, step: FlowStep) -> VerificationSession:
        """
        Navigate directly to a display step without changing ``status``.

        Raises
        ------
        InvalidTransition
            If the step's prerequisites are not met.
        SessionNotStarted
        """
        step = FlowStep(step)
        with self._lock:
            session = self._require_session("go_to_step")

            prerequisites = {
                FlowStep.DOCUMENT: session.has_selfie,
                FlowStep.PROCESSING: session.is_ready_for_processing,
                FlowStep.RESULT: session.is_completed,
            }
            if not prerequisites.get(step, True):
                raise InvalidTransition(
                    f"Cannot navigate to '{step.value}' before its prerequisites are met",
                    session_id=session.id,
                    step=step.value,
                )
            if session.is_completed and step is not FlowStep.RESULT:
                raise AlreadyCompleted(session.id)

            session.step = step
            self._persist()

        logger.debug("Navigated to step", session_id=session.id, step=step.value)
        return session
