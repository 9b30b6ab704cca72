"""
Custom exception classes for the IDVERIFY system.

This module defines the error taxonomy of the verification core. Each
exception carries context information and an error code so that failures
can be logged in structured form and handled programmatically.

Only ``CaptureRejected`` and ``ScoringUnavailable`` are meant to reach an
end user; they carry a ``user_message`` with an actionable "try again" text.
"""

from typing import Optional, Dict, Any


class IdVerifyError(Exception):
    """
    Base exception class for all IDVERIFY related errors.

    Parameters
    ----------
    message : str
        Human-readable error message.
    context : dict, optional
        Additional context information about the error.
    error_code : str, optional
        Unique error code for programmatic handling.
    """

    user_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.error_code = error_code
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return a formatted string representation of the error."""
        parts = [self.message]

        if self.error_code:
            parts.append(f"[Error Code: {self.error_code}]")

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"[Context: {context_str}]")

        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the exception to a dictionary for structured logging.

        Returns
        -------
        dict
            Dictionary representation of the exception.
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


class ImageDecodeError(IdVerifyError):
    """Exception raised when captured bytes cannot be decoded into an image."""

    def __init__(self, message: str, byte_count: int = 0) -> None:
        super().__init__(
            message, context={"byte_count": byte_count}, error_code="IMAGE_001"
        )


class CaptureRejected(IdVerifyError):
    """
    Exception raised when a capture does not pass the quality gate.

    This is not a system error: the user is asked to capture the image
    again. Rejected captures never reach the scorers.
    """

    def __init__(
        self,
        message: str,
        modality: str,
        quality: float,
        acceptance_floor: float,
        reason: Optional[str] = None,
    ) -> None:
        context = {
            "modality": modality,
            "quality": round(quality, 2),
            "acceptance_floor": acceptance_floor,
        }
        super().__init__(message, context=context, error_code="CAPTURE_001")
        self.modality = modality
        self.quality = quality
        self.acceptance_floor = acceptance_floor
        self.user_message = reason or "Image quality too low, please capture again."


class SessionError(IdVerifyError):
    """
    Base class for errors raised by the session state machine.

    Parameters
    ----------
    message : str
        Human-readable error message.
    session_id : str, optional
        Identifier of the session involved.
    """

    def __init__(
        self, message: str, session_id: Optional[str] = None, **kwargs
    ) -> None:
        context = kwargs.get("context", {})
        if session_id:
            context["session_id"] = session_id

        super().__init__(message, context, kwargs.get("error_code"))
        self.session_id = session_id


class InvalidTransition(SessionError):
    """Exception raised for an out-of-order step call on a session."""

    def __init__(
        self, message: str, session_id: Optional[str] = None, step: Optional[str] = None
    ) -> None:
        context = {"step": step} if step else {}
        super().__init__(
            message, session_id=session_id, context=context, error_code="SESSION_001"
        )


class AlreadyCompleted(SessionError):
    """Exception raised when a finalized session is mutated again."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Session {session_id} is already completed",
            session_id=session_id,
            error_code="SESSION_002",
        )


class AlreadyProcessing(SessionError):
    """Exception raised when a second decision is requested while one is in flight."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Session {session_id} already has a verification in flight",
            session_id=session_id,
            error_code="SESSION_003",
        )


class SessionNotStarted(SessionError):
    """Exception raised when a step is called with no active session."""

    def __init__(self, operation: str) -> None:
        super().__init__(
            f"No active verification session for '{operation}'",
            context={"operation": operation},
            error_code="SESSION_004",
        )


class VerificationCancelled(SessionError):
    """Exception raised when a session is abandoned while scorers are running."""

    def __init__(self, session_id: Optional[str] = None) -> None:
        super().__init__(
            "Verification was cancelled before a decision was reached",
            session_id=session_id,
            error_code="SESSION_005",
        )


class ScorerError(IdVerifyError):
    """
    Exception raised when an individual scorer fails.

    A failing scorer is dropped from the ensemble for that run; the error
    is logged and does not fail the verification on its own.
    """

    def __init__(self, message: str, scorer: str, **kwargs) -> None:
        context = kwargs.get("context", {})
        context["scorer"] = scorer
        super().__init__(message, context, kwargs.get("error_code", "SCORER_001"))
        self.scorer = scorer


class ScorerTimeout(ScorerError):
    """Exception raised when a scorer does not finish within its time budget."""

    def __init__(self, scorer: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Scorer '{scorer}' did not finish within {timeout_seconds:.1f}s",
            scorer=scorer,
            context={"timeout_seconds": timeout_seconds},
            error_code="SCORER_002",
        )
        self.timeout_seconds = timeout_seconds


class FeatureExtractionError(ScorerError):
    """Exception raised when a face or its embedding cannot be extracted."""

    def __init__(self, message: str, modality: str, **kwargs) -> None:
        super().__init__(
            message,
            scorer="feature_extraction",
            context={"modality": modality},
            error_code="SCORER_004",
        )
        self.modality = modality


class ScoringUnavailable(IdVerifyError):
    """
    Exception raised when too few scorers produced a result to decide.

    Surfaced to the user as a retry prompt; a session in this state is
    never recorded as rejected.
    """

    def __init__(self, present: int, required: int, dropped: Optional[Dict[str, str]] = None) -> None:
        context = {"present_scorers": present, "required_scorers": required}
        if dropped:
            context["dropped"] = dropped
        super().__init__(
            f"Only {present} scorer(s) produced a result, at least {required} required",
            context=context,
            error_code="SCORER_003",
        )
        self.present = present
        self.required = required
        self.user_message = "We could not complete the verification, please try again."


class PersistenceFailure(IdVerifyError):
    """
    Exception raised when the audit store cannot persist a record.

    Persistence failures are logged and retried; they never alter an
    already decided verification result.
    """

    def __init__(self, message: str, operation: str, **kwargs) -> None:
        context = kwargs.get("context", {})
        context["operation"] = operation
        super().__init__(message, context, kwargs.get("error_code", "AUDIT_001"))


class RecordNotFound(IdVerifyError):
    """Exception raised when an audit record does not exist."""

    def __init__(self, record_id: str) -> None:
        super().__init__(
            f"Verification record not found: {record_id}",
            context={"record_id": record_id},
            error_code="AUDIT_002",
        )
        self.record_id = record_id


class ConfigurationError(IdVerifyError):
    """
    Exception raised for configuration-related errors.

    This includes invalid configuration values, missing required
    environment variables, or configuration conflicts.
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[str] = None,
        **kwargs,
    ) -> None:
        context = kwargs.get("context", {})
        if config_key:
            context["config_key"] = config_key
        if config_value:
            context["config_value"] = config_value

        super().__init__(message, context, kwargs.get("error_code", "CONFIG_001"))
