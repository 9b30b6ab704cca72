"""
Ensemble consensus engine for the IDVERIFY system.

This module turns the verdicts of the embedding matchers and the classical
comparator similarities into one verification decision. The decision has
two independent gates:

1. The weighted score (reliability weighted mean of the embedding scores,
   blended with the mean classical similarity) must reach an adaptive
   threshold. The threshold starts from a baseline and is raised for poor
   captures and for disagreement between the scorers, then clamped.
2. A majority-plus-one of the embedding scorers that actually ran must have
   matched on their own calibrated thresholds.

``decide`` is a pure function of its inputs.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np
import structlog

from . import config
from .constants import EMBEDDING_SCORERS, HIGH_CONFIDENCE_LEAD, MIN_SCORERS
from .data_models import (
    ComparisonMetrics,
    Confidence,
    EnsembleAlgorithms,
    EnsembleStats,
    VerificationResult,
)
from .exceptions import ConfigurationError, ScoringUnavailable
from .utils import clamp

# Initialize structured logger
logger = structlog.get_logger(__name__)


@dataclass
class ConsensusSettings:
    """
    Tunable parameters of the consensus engine.

    Parameters
    ----------
    weights : Dict[str, float]
        Reliability weight per embedding scorer; normalized to sum to 1.
    embedding_blend : float
        Share of the weighted score taken from the embedding scorers.
    baseline_threshold : float
        Threshold (0-100) before penalties.
    quality_penalty : float
        Threshold increase per point of capture quality below 100.
    dispersion_penalty : float
        Threshold increase per point of scorer standard deviation (x100).
    threshold_min, threshold_max : float
        Clamp range of the adaptive threshold.
    min_scorers : int
        Fewest embedding scorers that can produce an automated decision.
    high_confidence_lead : float
        Lead over the threshold required for a high-confidence pass.
    """

    weights: Dict[str, float] = field(default_factory=lambda: dict(config.ENSEMBLE_WEIGHTS))
    embedding_blend: float = config.EMBEDDING_BLEND
    baseline_threshold: float = config.BASELINE_THRESHOLD
    quality_penalty: float = config.QUALITY_PENALTY
    dispersion_penalty: float = config.DISPERSION_PENALTY
    threshold_min: float = config.THRESHOLD_MIN
    threshold_max: float = config.THRESHOLD_MAX
    min_scorers: int = MIN_SCORERS
    high_confidence_lead: float = HIGH_CONFIDENCE_LEAD

    def __post_init__(self) -> None:
        self.weights = dict(self.weights)

        missing = [name for name in EMBEDDING_SCORERS if name not in self.weights]
        if missing:
            raise ConfigurationError(
                f"Missing ensemble weight for scorers {missing}",
                config_key="weights",
            )

        for name, weight in self.weights.items():
            if weight < 0:
                raise ConfigurationError(
                    f"Ensemble weight for '{name}' must be non-negative, got {weight}",
                    config_key=f"IDVERIFY_WEIGHT_{name.upper()}",
                    config_value=str(weight),
                )

        total_weight = sum(self.weights.values())
        if total_weight == 0:
            raise ConfigurationError("Ensemble weights cannot all be zero", config_key="weights")

        # Normalize weights
        for name in self.weights:
            self.weights[name] /= total_weight

        if not 0.0 <= self.embedding_blend <= 1.0:
            raise ConfigurationError(
                "Embedding blend must be between 0 and 1",
                config_key="IDVERIFY_EMBEDDING_BLEND",
                config_value=str(self.embedding_blend),
            )

        if self.threshold_min > self.threshold_max:
            raise ConfigurationError(
                "Threshold minimum cannot exceed threshold maximum",
                config_key="IDVERIFY_THRESHOLD_MIN",
                config_value=str(self.threshold_min),
            )

        if self.quality_penalty < 0 or self.dispersion_penalty < 0:
            raise ConfigurationError("Threshold penalties cannot be negative")

        if self.min_scorers < 1:
            raise ConfigurationError("At least one scorer is required", config_key="min_scorers")

    @classmethod
    def from_config(cls) -> "ConsensusSettings":
        """Build settings from the current ``idverify.config`` values."""
        return cls(
            weights=dict(config.ENSEMBLE_WEIGHTS),
            embedding_blend=config.EMBEDDING_BLEND,
            baseline_threshold=config.BASELINE_THRESHOLD,
            quality_penalty=config.QUALITY_PENALTY,
            dispersion_penalty=config.DISPERSION_PENALTY,
            threshold_min=config.THRESHOLD_MIN,
            threshold_max=config.THRESHOLD_MAX,
        )


def required_votes(scorer_count: int) -> int:
    """Majority plus one of the scorers that ran."""
    return math.ceil(scorer_count / 2) + 1


class EnsembleConsensusEngine:
    """
    Combines scorer outputs into a ``VerificationResult``.

    Parameters
    ----------
    settings : Optional[ConsensusSettings], default=None
        Engine parameters; read from ``idverify.config`` when omitted.

    Examples
    --------
    >>> engine = EnsembleConsensusEngine()
    >>> result = engine.decide(algorithms, metrics, 92.0, 88.0)
    >>> print(result.passed, result.score, result.required_score)
    """

    def __init__(self, settings: Optional[ConsensusSettings] = None) -> None:
        self.settings = settings or ConsensusSettings.from_config()

        logger.info(
            "EnsembleConsensusEngine initialized",
            weights=self.settings.weights,
            embedding_blend=self.settings.embedding_blend,
            baseline_threshold=self.settings.baseline_threshold,
            threshold_range=(self.settings.threshold_min, self.settings.threshold_max),
        )

    def embedding_score(self, algorithms: EnsembleAlgorithms) -> float:
        """Reliability weighted mean of the present embedding scores, in [0, 1]."""
        present = algorithms.present()
        if not present:
            return 0.0

        weights = {name: self.settings.weights[name] for name in present}
        total = sum(weights.values())
        if total == 0:
            return float(np.mean([r.score for r in present.values()]))

        # Renormalize over the scorers that ran
        return sum(present[name].score * weights[name] / total for name in present)

    def weighted_score(self, algorithms: EnsembleAlgorithms, metrics: ComparisonMetrics) -> float:
        """Blend of embedding and classical similarity, scaled to 0-100."""
        embedding = self.embedding_score(algorithms)
        similarities = metrics.similarities()
        if not similarities:
            return embedding * 100.0

        classical = float(np.mean(list(similarities.values())))
        blend = self.settings.embedding_blend
        return (blend * embedding + (1.0 - blend) * classical) * 100.0

    def adaptive_threshold(
        self, selfie_quality: float, document_quality: float, std_dev: float
    ) -> float:
        """
        Threshold raised for poor captures and scorer disagreement.

        Parameters
        ----------
        selfie_quality, document_quality : float
            Quality Gate scores, 0-100.
        std_dev : float
            Standard deviation of the embedding scores, on the [0, 1] scale.
        """
        s = self.settings
        weakest = clamp(min(selfie_quality, document_quality), 0.0, 100.0)
        threshold = (
            s.baseline_threshold
            + (100.0 - weakest) * s.quality_penalty
            + std_dev * 100.0 * s.dispersion_penalty
        )
        return clamp(threshold, s.threshold_min, s.threshold_max)

    def decide(
        self,
        algorithms: EnsembleAlgorithms,
        metrics: ComparisonMetrics,
        selfie_quality: float,
        document_quality: float,
        dropped: Optional[Dict[str, str]] = None,
    ) -> VerificationResult:
        """
        Decide a verification from scorer outputs.

        Parameters
        ----------
        algorithms : EnsembleAlgorithms
            Embedding matcher verdicts; missing scorers allowed.
        metrics : ComparisonMetrics
            Classical comparator similarities; may be empty.
        selfie_quality, document_quality : float
            Quality Gate scores of the captures, 0-100.
        dropped : Optional[Dict[str, str]], default=None
            Scorers left out of this run, carried into the result.

        Returns
        -------
        VerificationResult
            The decision with its ensemble breakdown.

        Raises
        ------
        ScoringUnavailable
            If fewer than ``min_scorers`` embedding scorers are present.
        """
        present = algorithms.present()
        scorer_count = len(present)

        if scorer_count < self.settings.min_scorers:
            logger.warning(
                "Too few scorers for an automated decision",
                present_scorers=scorer_count,
                required_scorers=self.settings.min_scorers,
                dropped=dropped or {},
            )
            raise ScoringUnavailable(scorer_count, self.settings.min_scorers, dropped)

        scores = np.array([r.score for r in present.values()], dtype=np.float64)
        variance = float(np.var(scores))
        std_dev = float(np.sqrt(variance))

        score = round(self.weighted_score(algorithms, metrics), 2)
        threshold = round(self.adaptive_threshold(selfie_quality, document_quality, std_dev), 2)

        votes = sum(1 for r in present.values() if r.matched)
        needed = required_votes(scorer_count)
        passed = score >= threshold and votes >= needed

        if passed and votes == scorer_count and score - threshold >= self.settings.high_confidence_lead:
            confidence = Confidence.HIGH
        elif passed:
            confidence = Confidence.MEDIUM
        else:
            confidence = Confidence.LOW

        stats = EnsembleStats(
            weighted_score=score,
            votes=votes,
            variance=variance,
            std_dev=std_dev,
            threshold=threshold,
            scorer_count=scorer_count,
        )

        result = VerificationResult(
            passed=passed,
            score=score,
            confidence=confidence,
            required_score=threshold,
            metrics=metrics,
            selfie_quality=selfie_quality,
            document_quality=document_quality,
            required_votes=needed,
            ensemble_agreement=votes,
            adaptive_threshold=threshold,
            algorithms=algorithms,
            ensemble_stats=stats,
            dropped_scorers=dict(dropped or {}),
        )

        logger.info(
            "Ensemble decision reached",
            passed=passed,
            score=score,
            required_score=threshold,
            votes=votes,
            required_votes=needed,
            scorer_count=scorer_count,
            std_dev=round(std_dev, 4),
            confidence=confidence.value,
            dropped=sorted(dropped or {}),
        )
        return result


def decide(
    algorithms: EnsembleAlgorithms,
    metrics: ComparisonMetrics,
    selfie_quality: float,
    document_quality: float,
    settings: Optional[ConsensusSettings] = None,
) -> VerificationResult:
    """
    Convenience function to decide with a one-off engine.

    Examples
    --------
    >>> result = decide(algorithms, ComparisonMetrics(), 95.0, 95.0)
    """
    return EnsembleConsensusEngine(settings).decide(
        algorithms, metrics, selfie_quality, document_quality
    )
