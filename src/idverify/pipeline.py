"""
End-to-end verification flow for the IDVERIFY system.

``IdentityVerifier`` wires the components together in the order a capture
front end drives them:

1. ``capture_selfie`` / ``capture_document``: decode, quality gate, record
   the accepted capture on the session.
2. ``run_verification``: claim the session's decision slot, run the scorer
   pool on both captures, let the consensus engine decide, complete the
   session and hand the result to the background audit writer.

Scoring failures (including too few scorers) leave the session in
progress with an error flag so the user can retry; only a decided result
marks a session approved or rejected.
"""

from typing import Optional

import structlog

from . import config
from .audit import AuditGateway, AuditWriter
from .consensus import EnsembleConsensusEngine
from .data_models import (
    DocumentType,
    Modality,
    QualityAssessment,
    VerificationResult,
    VerificationSession,
)
from .detection import FaceAnalyzer, FaceRecognitionAnalyzer
from .exceptions import IdVerifyError, InvalidTransition, VerificationCancelled
from .imaging import decode_image
from .quality import QualityGate
from .scorer_pool import ScorerPool
from .session import SessionStore, VerificationStateMachine

# Initialize structured logger
logger = structlog.get_logger(__name__)


class IdentityVerifier:
    """
    Orchestrates capture, scoring, decision and persistence for one user.

    Parameters
    ----------
    session_store : Optional[SessionStore], default=None
        Local session cache for the state machine.
    audit_gateway : Optional[AuditGateway], default=None
        Durable audit store. Nothing is persisted when omitted.
    face_analyzer : Optional[FaceAnalyzer], default=None
        Shared by the quality gate and the scorer pool.
    quality_gate, scorer_pool, engine : optional
        Component overrides.
    device_info : Optional[str], default=config.DEFAULT_DEVICE_INFO
        Device description stored with audit records.

    Examples
    --------
    >>> verifier = IdentityVerifier(audit_gateway=JsonFileAuditGateway(path))
    >>> verifier.start()
    >>> verifier.capture_selfie(selfie_bytes)
    >>> verifier.capture_document(document_bytes, DocumentType.RG)
    >>> result = verifier.run_verification()
    """

    def __init__(
        self,
        session_store: Optional[SessionStore] = None,
        audit_gateway: Optional[AuditGateway] = None,
        face_analyzer: Optional[FaceAnalyzer] = None,
        quality_gate: Optional[QualityGate] = None,
        scorer_pool: Optional[ScorerPool] = None,
        engine: Optional[EnsembleConsensusEngine] = None,
        device_info: Optional[str] = config.DEFAULT_DEVICE_INFO,
    ) -> None:
        if face_analyzer is None and (quality_gate is None or scorer_pool is None):
            face_analyzer = FaceRecognitionAnalyzer()

        self.state_machine = VerificationStateMachine(session_store)
        self.quality_gate = quality_gate or QualityGate(face_analyzer=face_analyzer)
        self.scorer_pool = scorer_pool or ScorerPool(face_analyzer=face_analyzer)
        self.engine = engine or EnsembleConsensusEngine()
        self.audit_writer = AuditWriter(audit_gateway) if audit_gateway is not None else None
        self.device_info = device_info

    @property
    def session(self) -> Optional[VerificationSession]:
        return self.state_machine.session

    def start(self) -> VerificationSession:
        return self.state_machine.start_session()

    def resume(self) -> Optional[VerificationSession]:
        return self.state_machine.resume()

    def reset(self) -> None:
        """Abandon the current session and cancel in-flight scoring."""
        self.state_machine.reset_session()

    def _assess(self, image_bytes: bytes, modality: Modality) -> QualityAssessment:
        image = decode_image(image_bytes)
        return self.quality_gate.assess_and_accept(image, modality)

    def capture_selfie(self, image_bytes: bytes) -> QualityAssessment:
        """
        Gate and record a selfie.

        Raises
        ------
        CaptureRejected
            If the selfie is below the acceptance floor.
        ImageDecodeError
            If the bytes are not an image.
        """
        assessment = self._assess(image_bytes, Modality.SELFIE)
        self.state_machine.save_selfie(image_bytes, assessment.quality)
        return assessment

    def capture_document(
        self, image_bytes: bytes, document_type: DocumentType
    ) -> QualityAssessment:
        """
        Gate and record a document photo.

        Raises
        ------
        CaptureRejected
            If the document photo is below the acceptance floor.
        InvalidTransition
            If no selfie was recorded yet.
        """
        session = self.session
        if session is not None and not session.has_selfie:
            raise InvalidTransition(
                "Document cannot be saved before the selfie",
                session_id=session.id,
                step="document",
            )

        assessment = self._assess(image_bytes, Modality.DOCUMENT)
        self.state_machine.save_document(image_bytes, document_type, assessment.quality)
        return assessment

    def run_verification(self) -> VerificationResult:
        """
        Score both captures, decide and complete the session.

        Returns
        -------
        VerificationResult
            The recorded decision.

        Raises
        ------
        ScoringUnavailable
            If too few scorers produced a result; the session stays in
            progress with an error flag.
        VerificationCancelled
            If the session was reset while scoring.
        AlreadyProcessing, AlreadyCompleted, InvalidTransition
            On out-of-order calls.
        """
        session = self.state_machine.begin_processing()
        cancel_event = self.state_machine.cancel_event
        log = logger.bind(session_id=session.id)

        try:
            selfie = decode_image(session.selfie_image)
            document = decode_image(session.document_image)

            outcome = self.scorer_pool.run(selfie, document, cancel_event)
            if cancel_event.is_set():
                raise VerificationCancelled(session.id)

            result = self.engine.decide(
                outcome.algorithms,
                outcome.metrics,
                session.selfie_quality,
                session.document_quality,
                outcome.dropped,
            )

        except VerificationCancelled:
            log.info("Verification cancelled, discarding scorer results")
            raise
        except IdVerifyError as e:
            self.state_machine.mark_failed(e.user_message or e.message)
            log.warning("Verification did not reach a decision", **e.to_dict())
            raise
        except Exception as e:
            self.state_machine.mark_failed("Verification failed, please try again.")
            raise IdVerifyError(
                f"Unexpected error during verification: {str(e)}",
                context={"session_id": session.id},
                error_code="PIPELINE_001",
            ) from e

        if cancel_event.is_set():
            log.info("Verification cancelled after decision, discarding result")
            raise VerificationCancelled(session.id)

        self.state_machine.complete_verification(result)

        if self.audit_writer is not None:
            self.audit_writer.submit(result, session.id, self.device_info)

        log.info(
            "Verification finished",
            passed=result.passed,
            score=result.score,
            confidence=result.confidence.value,
        )
        return result

    def close(self) -> None:
        """Wait for pending audit writes."""
        if self.audit_writer is not None:
            self.audit_writer.close()
