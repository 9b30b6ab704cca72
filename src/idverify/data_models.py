"""
Data models for the IDVERIFY system.

This module defines the core data structures of the verification core:
quality assessments, per-scorer verdicts, the ensemble breakdown, the final
verification result, the verification session and the audit record shape.

All models are dataclasses with explicit optional fields rather than open
maps, validate their invariants in ``__post_init__`` and round-trip through
plain dictionaries for the JSON session cache and audit store.
"""

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional, List

from .constants import DOCUMENT_AUTO_CAPTURE_QUALITY, EMBEDDING_SCORERS


class Modality(str, Enum):
    SELFIE = "selfie"
    DOCUMENT = "document"


class DocumentType(str, Enum):
    CNH = "CNH"
    RG = "RG"
    RNE = "RNE"
    PASSPORT = "PASSPORT"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"


class FlowStep(str, Enum):
    WELCOME = "welcome"
    SELFIE = "selfie"
    DOCUMENT = "document"
    PROCESSING = "processing"
    RESULT = "result"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _b64(value: Optional[bytes]) -> Optional[str]:
    return base64.b64encode(value).decode("ascii") if value is not None else None


def _unb64(value: Optional[str]) -> Optional[bytes]:
    return base64.b64decode(value) if value else None


@dataclass
class QualityAssessment:
    """
    Fitness-for-matching assessment of a single capture.

    Selfie and document assessments share this shape; sub-checks that do not
    apply to a modality are left as ``None``.

    Parameters
    ----------
    modality : Modality
        Which capture was assessed.
    detected : bool
        A face (selfie) or a document (document) was located in frame.
    quality : float
        Normalized quality score between 0 and 100.
    message : str
        Human-readable reason; required when any sub-check fails.
    fully_visible : bool
        The located face or document lies entirely inside the frame.
    centered, good_lighting, looking_at_camera : Optional[bool]
        Selfie sub-checks.
    good_focus, no_glare : Optional[bool]
        Document sub-checks.
    components : Dict[str, float]
        Continuous component scores (0-1) behind the sub-checks.
    issues, suggestions : List[str]
        Diagnostic texts for the capture UI.
    photometric : Dict[str, float]
        Whole-frame brightness, contrast and sharpness (0-1) and their
        combined quality (0-100).
    """

    modality: Modality
    detected: bool
    quality: float
    message: str = ""
    fully_visible: bool = False
    centered: Optional[bool] = None
    good_lighting: Optional[bool] = None
    looking_at_camera: Optional[bool] = None
    good_focus: Optional[bool] = None
    no_glare: Optional[bool] = None
    components: Dict[str, float] = field(default_factory=dict)
    issues: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    photometric: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.modality = Modality(self.modality)

        if not 0.0 <= self.quality <= 100.0:
            raise ValueError("quality must be between 0 and 100")

        if not self.detected and self.quality != 0.0:
            raise ValueError("quality must be 0 when nothing was detected")

        if self.failed_checks and not self.message:
            raise ValueError("message is required when a sub-check fails")

    @property
    def checks(self) -> Dict[str, bool]:
        """Boolean sub-checks that apply to this modality."""
        candidates = {
            "detected": self.detected,
            "fully_visible": self.fully_visible,
            "centered": self.centered,
            "good_lighting": self.good_lighting,
            "looking_at_camera": self.looking_at_camera,
            "good_focus": self.good_focus,
            "no_glare": self.no_glare,
        }
        return {name: value for name, value in candidates.items() if value is not None}

    @property
    def failed_checks(self) -> List[str]:
        return [name for name, passed in self.checks.items() if not passed]

    @property
    def ready_for_capture(self) -> bool:
        """Conditions under which the document capture UI auto-captures."""
        return (
            self.detected
            and self.fully_visible
            and bool(self.good_focus)
            and self.quality >= DOCUMENT_AUTO_CAPTURE_QUALITY
        )

    def is_acceptable(self, acceptance_floor: float) -> bool:
        return self.detected and self.quality >= acceptance_floor

    def to_dict(self) -> Dict[str, Any]:
        return {
            "modality": self.modality.value,
            "detected": self.detected,
            "quality": self.quality,
            "message": self.message,
            "fully_visible": self.fully_visible,
            "centered": self.centered,
            "good_lighting": self.good_lighting,
            "looking_at_camera": self.looking_at_camera,
            "good_focus": self.good_focus,
            "no_glare": self.no_glare,
            "components": dict(self.components),
            "issues": list(self.issues),
            "suggestions": list(self.suggestions),
            "photometric": dict(self.photometric),
        }


@dataclass
class AlgorithmResult:
    """
    One scorer's verdict on a selfie/document pair.

    Parameters
    ----------
    name : str
        Scorer name, e.g. ``"arcface"``.
    score : float
        Normalized similarity in [0, 1].
    matched : bool
        ``score >= threshold``, decided by the scorer itself.
    confidence : Confidence
        Bucket derived from the margin between score and threshold.
    threshold : float
        The scorer's own calibrated threshold in score space.
    distance, angle, cosine : Optional[float]
        Raw signals the scorer used.
    """

    name: str
    score: float
    matched: bool
    confidence: Confidence
    threshold: float
    distance: Optional[float] = None
    angle: Optional[float] = None
    cosine: Optional[float] = None

    def __post_init__(self) -> None:
        self.confidence = Confidence(self.confidence)

        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"score must be between 0 and 1, got {self.score}")

        if self.matched != (self.score >= self.threshold):
            raise ValueError("matched must equal score >= threshold")

    @property
    def margin(self) -> float:
        return self.score - self.threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "score": self.score,
            "matched": self.matched,
            "confidence": self.confidence.value,
            "threshold": self.threshold,
            "distance": self.distance,
            "angle": self.angle,
            "cosine": self.cosine,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlgorithmResult":
        return cls(**data)


@dataclass
class EnsembleAlgorithms:
    """Fixed map of the four embedding scorers; missing scorers are ``None``."""

    triplet: Optional[AlgorithmResult] = None
    arcface: Optional[AlgorithmResult] = None
    cosface: Optional[AlgorithmResult] = None
    sphereface: Optional[AlgorithmResult] = None

    @classmethod
    def from_results(cls, results: Dict[str, AlgorithmResult]) -> "EnsembleAlgorithms":
        unknown = set(results) - set(EMBEDDING_SCORERS)
        if unknown:
            raise ValueError(f"Unknown embedding scorers: {sorted(unknown)}")
        return cls(**results)

    def present(self) -> Dict[str, AlgorithmResult]:
        """Scorers that produced a result, in ensemble order."""
        return {
            name: getattr(self, name)
            for name in EMBEDDING_SCORERS
            if getattr(self, name) is not None
        }

    @property
    def count(self) -> int:
        return len(self.present())

    def to_dict(self) -> Dict[str, Any]:
        return {
            name: (result.to_dict() if result is not None else None)
            for name, result in ((n, getattr(self, n)) for n in EMBEDDING_SCORERS)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnsembleAlgorithms":
        return cls(
            **{
                name: AlgorithmResult.from_dict(value)
                for name, value in data.items()
                if value is not None
            }
        )


@dataclass
class ComparisonMetrics:
    """
    Outputs of the classical signal comparators.

    Similarities are in [0, 1]; a comparator that failed leaves its field
    ``None``. The raw distances are kept for audit and debugging.
    """

    euclidean: Optional[float] = None
    cosine: Optional[float] = None
    landmarks: Optional[float] = None
    structural: Optional[float] = None
    texture: Optional[float] = None
    histogram: Optional[float] = None
    euclidean_distance: Optional[float] = None
    cosine_distance: Optional[float] = None

    SIMILARITY_FIELDS = ("euclidean", "cosine", "landmarks", "structural", "texture", "histogram")

    def __post_init__(self) -> None:
        for name, value in self.similarities().items():
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} similarity must be between 0 and 1, got {value}")

    def similarities(self) -> Dict[str, float]:
        """Similarity values that are present."""
        return {
            name: getattr(self, name)
            for name in self.SIMILARITY_FIELDS
            if getattr(self, name) is not None
        }

    @property
    def is_empty(self) -> bool:
        return not self.similarities()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "euclidean": self.euclidean,
            "cosine": self.cosine,
            "landmarks": self.landmarks,
            "structural": self.structural,
            "texture": self.texture,
            "histogram": self.histogram,
            "euclidean_distance": self.euclidean_distance,
            "cosine_distance": self.cosine_distance,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ComparisonMetrics":
        return cls(**data)


@dataclass
class EnsembleStats:
    """
    Statistics behind an ensemble decision.

    ``weighted_score`` and ``threshold`` are on the 0-100 scale used by
    ``VerificationResult``; ``variance`` and ``std_dev`` are computed on the
    raw [0, 1] scores of the embedding scorers that ran.
    """

    weighted_score: float
    votes: int
    variance: float
    std_dev: float
    threshold: float
    scorer_count: int

    def __post_init__(self) -> None:
        if not 0 <= self.votes <= self.scorer_count <= len(EMBEDDING_SCORERS):
            raise ValueError("votes must satisfy 0 <= votes <= scorer_count <= 4")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "weighted_score": self.weighted_score,
            "votes": self.votes,
            "variance": self.variance,
            "std_dev": self.std_dev,
            "threshold": self.threshold,
            "scorer_count": self.scorer_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnsembleStats":
        return cls(**data)


@dataclass
class VerificationResult:
    """
    Final verdict for a verification session.

    Parameters
    ----------
    passed : bool
        Final decision.
    score : float
        Final weighted score, 0-100.
    confidence : Confidence
        Never ``HIGH`` unless ``passed``.
    required_score : float
        Adaptive threshold applied, 0-100.
    metrics : ComparisonMetrics
        Classical comparator outputs.
    selfie_quality, document_quality : float
        Quality Gate scores (0-100) of the captures that fed the decision.
    required_votes : int
        Votes needed for a pass (majority plus one of the scorers that ran).
    ensemble_agreement, adaptive_threshold : Optional
        Mirrors of ``ensemble_stats.votes`` and ``ensemble_stats.threshold``.
    algorithms, ensemble_stats : Optional
        Ensemble detail.
    dropped_scorers : Dict[str, str]
        Scorers left out of this run and why.
    """

    passed: bool
    score: float
    confidence: Confidence
    required_score: float
    metrics: ComparisonMetrics
    selfie_quality: float
    document_quality: float
    required_votes: int = 0
    ensemble_agreement: Optional[int] = None
    adaptive_threshold: Optional[float] = None
    algorithms: Optional[EnsembleAlgorithms] = None
    ensemble_stats: Optional[EnsembleStats] = None
    dropped_scorers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.confidence = Confidence(self.confidence)

        votes = self.ensemble_agreement or 0
        if self.passed != (self.score >= self.required_score and votes >= self.required_votes):
            raise ValueError(
                "passed must equal score >= required_score with enough ensemble votes"
            )

        if self.confidence is Confidence.HIGH and not self.passed:
            raise ValueError("confidence cannot be high for a failed verification")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "score": self.score,
            "confidence": self.confidence.value,
            "required_score": self.required_score,
            "metrics": self.metrics.to_dict(),
            "selfie_quality": self.selfie_quality,
            "document_quality": self.document_quality,
            "required_votes": self.required_votes,
            "ensemble_agreement": self.ensemble_agreement,
            "adaptive_threshold": self.adaptive_threshold,
            "algorithms": self.algorithms.to_dict() if self.algorithms else None,
            "ensemble_stats": (
                self.ensemble_stats.to_dict() if self.ensemble_stats else None
            ),
            "dropped_scorers": dict(self.dropped_scorers),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationResult":
        payload = dict(data)
        payload["metrics"] = ComparisonMetrics.from_dict(payload["metrics"])
        if payload.get("algorithms"):
            payload["algorithms"] = EnsembleAlgorithms.from_dict(payload["algorithms"])
        if payload.get("ensemble_stats"):
            payload["ensemble_stats"] = EnsembleStats.from_dict(payload["ensemble_stats"])
        return cls(**payload)


@dataclass
class VerificationSession:
    """
    One verification attempt.

    Created by the state machine at flow start, mutated in place as each
    step completes and finalized once a result is recorded.

    Parameters
    ----------
    id : str
        Opaque unique identifier generated at session start.
    started_at : datetime
        When the session was created.
    status : SessionStatus
        ``IN_PROGRESS`` until a result is recorded.
    step : FlowStep
        Current display step of the flow.
    selfie_image, document_image : Optional[bytes]
        Most recent accepted encoded captures.
    selfie_quality, document_quality : Optional[float]
        Quality Gate scores of the accepted captures.
    error : Optional[str]
        Set when the last processing attempt failed and needs a retry.
    """

    id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: SessionStatus = SessionStatus.IN_PROGRESS
    step: FlowStep = FlowStep.WELCOME
    completed_at: Optional[datetime] = None
    selfie_image: Optional[bytes] = None
    selfie_timestamp: Optional[datetime] = None
    selfie_quality: Optional[float] = None
    document_image: Optional[bytes] = None
    document_type: Optional[DocumentType] = None
    document_timestamp: Optional[datetime] = None
    document_quality: Optional[float] = None
    similarity_score: Optional[float] = None
    result: Optional[VerificationResult] = None
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.id or not isinstance(self.id, str):
            raise ValueError("id must be a non-empty string")

        self.status = SessionStatus(self.status)
        self.step = FlowStep(self.step)
        if self.document_type is not None:
            self.document_type = DocumentType(self.document_type)

        self.validate()

    def validate(self) -> None:
        """
        Check the session invariants.

        Raises
        ------
        ValueError
            If ``result`` and ``status`` disagree, or the document step was
            recorded without a selfie.
        """
        if (self.result is not None) != (self.status is not SessionStatus.IN_PROGRESS):
            raise ValueError("result is set if and only if the session is completed")

        if self.document_timestamp is not None and self.selfie_timestamp is None:
            raise ValueError("document step cannot complete before the selfie step")

    @property
    def is_completed(self) -> bool:
        return self.status is not SessionStatus.IN_PROGRESS

    @property
    def has_selfie(self) -> bool:
        return self.selfie_image is not None

    @property
    def has_document(self) -> bool:
        return self.document_image is not None

    @property
    def is_ready_for_processing(self) -> bool:
        return self.has_selfie and self.has_document

    def to_dict(self, include_images: bool = True) -> Dict[str, Any]:
        """
        Convert the session to a JSON compatible dictionary.

        Parameters
        ----------
        include_images : bool, default=True
            Whether to embed the captures (base64). History snapshots leave
            them out.
        """
        return {
            "id": self.id,
            "started_at": _iso(self.started_at),
            "status": self.status.value,
            "step": self.step.value,
            "completed_at": _iso(self.completed_at),
            "selfie_image": _b64(self.selfie_image) if include_images else None,
            "selfie_timestamp": _iso(self.selfie_timestamp),
            "selfie_quality": self.selfie_quality,
            "document_image": _b64(self.document_image) if include_images else None,
            "document_type": self.document_type.value if self.document_type else None,
            "document_timestamp": _iso(self.document_timestamp),
            "document_quality": self.document_quality,
            "similarity_score": self.similarity_score,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationSession":
        return cls(
            id=data["id"],
            started_at=_parse_iso(data.get("started_at")) or datetime.now(timezone.utc),
            status=SessionStatus(data.get("status", SessionStatus.IN_PROGRESS.value)),
            step=FlowStep(data.get("step", FlowStep.WELCOME.value)),
            completed_at=_parse_iso(data.get("completed_at")),
            selfie_image=_unb64(data.get("selfie_image")),
            selfie_timestamp=_parse_iso(data.get("selfie_timestamp")),
            selfie_quality=data.get("selfie_quality"),
            document_image=_unb64(data.get("document_image")),
            document_type=data.get("document_type"),
            document_timestamp=_parse_iso(data.get("document_timestamp")),
            document_quality=data.get("document_quality"),
            similarity_score=data.get("similarity_score"),
            result=(
                VerificationResult.from_dict(data["result"]) if data.get("result") else None
            ),
            error=data.get("error"),
        )


def _percent(value: Optional[float]) -> Optional[float]:
    return round(value * 100.0, 2) if value is not None else None


@dataclass
class StoredVerification:
    """
    Flat audit row for a completed verification.

    Classical and algorithm scores are stored on the 0-100 scale.
    """

    id: str
    session_id: str
    created_at: datetime
    passed: bool
    confidence: str
    similarity_score: float
    required_score: float
    selfie_quality: Optional[float] = None
    document_quality: Optional[float] = None
    euclidean_score: Optional[float] = None
    cosine_score: Optional[float] = None
    landmark_score: Optional[float] = None
    structural_score: Optional[float] = None
    texture_score: Optional[float] = None
    histogram_score: Optional[float] = None
    triplet_score: Optional[float] = None
    arcface_score: Optional[float] = None
    cosface_score: Optional[float] = None
    sphereface_score: Optional[float] = None
    ensemble_score: Optional[float] = None
    euclidean_distance: Optional[float] = None
    cosine_distance: Optional[float] = None
    agreement_count: Optional[int] = None
    adaptive_threshold: Optional[float] = None
    device_info: Optional[str] = None

    @classmethod
    def from_result(
        cls,
        record_id: str,
        session_id: str,
        result: VerificationResult,
        device_info: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> "StoredVerification":
        metrics = result.metrics
        algorithms = result.algorithms.present() if result.algorithms else {}

        def algorithm_score(name: str) -> Optional[float]:
            return _percent(algorithms[name].score) if name in algorithms else None

        return cls(
            id=record_id,
            session_id=session_id,
            created_at=created_at or datetime.now(timezone.utc),
            passed=result.passed,
            confidence=result.confidence.value,
            similarity_score=result.score,
            required_score=result.required_score,
            selfie_quality=result.selfie_quality,
            document_quality=result.document_quality,
            euclidean_score=_percent(metrics.euclidean),
            cosine_score=_percent(metrics.cosine),
            landmark_score=_percent(metrics.landmarks),
            structural_score=_percent(metrics.structural),
            texture_score=_percent(metrics.texture),
            histogram_score=_percent(metrics.histogram),
            triplet_score=algorithm_score("triplet"),
            arcface_score=algorithm_score("arcface"),
            cosface_score=algorithm_score("cosface"),
            sphereface_score=algorithm_score("sphereface"),
            ensemble_score=(
                result.ensemble_stats.weighted_score if result.ensemble_stats else None
            ),
            euclidean_distance=metrics.euclidean_distance,
            cosine_distance=metrics.cosine_distance,
            agreement_count=result.ensemble_agreement,
            adaptive_threshold=result.adaptive_threshold,
            device_info=device_info,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.__dict__)
        data["created_at"] = _iso(self.created_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredVerification":
        payload = dict(data)
        payload["created_at"] = _parse_iso(payload["created_at"])
        return cls(**payload)
