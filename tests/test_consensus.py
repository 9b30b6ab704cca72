"""
Unit and property tests for EnsembleConsensusEngine
"""
import pytest
from hypothesis import given, settings, strategies as st

from conftest import algorithm, uniform_metrics
from idverify.consensus import (
    ConsensusSettings,
    EnsembleConsensusEngine,
    decide,
    required_votes,
)
from idverify.data_models import ComparisonMetrics, Confidence, EnsembleAlgorithms
from idverify.exceptions import ConfigurationError, ScoringUnavailable

SCORERS = ("triplet", "arcface", "cosface", "sphereface")


def ensemble(**scores) -> EnsembleAlgorithms:
    return EnsembleAlgorithms.from_results(
        {name: algorithm(name, score) for name, score in scores.items()}
    )


class TestEnsembleScenarios:
    """Reference decisions"""

    def setup_method(self):
        self.engine = EnsembleConsensusEngine(ConsensusSettings())

    def test_unanimous_strong_match_passes_with_high_confidence(self):
        result = self.engine.decide(
            ensemble(triplet=0.9, arcface=0.9, cosface=0.9, sphereface=0.9),
            uniform_metrics(0.9),
            95.0,
            95.0,
        )

        assert result.score == pytest.approx(90.0)
        assert result.adaptive_threshold == pytest.approx(70.75)
        assert result.required_score == result.adaptive_threshold
        assert result.ensemble_agreement == 4
        assert result.required_votes == 3
        assert result.passed is True
        assert result.confidence is Confidence.HIGH
        assert result.ensemble_stats.std_dev == pytest.approx(0.0)

    def test_split_ensemble_fails_on_votes(self):
        result = self.engine.decide(
            ensemble(arcface=0.85, cosface=0.85, sphereface=0.4, triplet=0.4),
            ComparisonMetrics(),
            60.0,
            60.0,
        )

        # 70 + 40 * 0.15 + 22.5 * 0.20
        assert result.adaptive_threshold == pytest.approx(80.5)
        assert result.ensemble_stats.std_dev == pytest.approx(0.225)
        assert result.score == pytest.approx(64.75)
        assert result.ensemble_agreement == 2
        assert result.required_votes == 3
        assert result.passed is False
        assert result.confidence is Confidence.LOW

    def test_single_scorer_is_unavailable(self):
        with pytest.raises(ScoringUnavailable) as exc_info:
            self.engine.decide(ensemble(arcface=0.95), uniform_metrics(0.9), 95.0, 95.0)

        assert exc_info.value.present == 1
        assert exc_info.value.required == 2
        assert exc_info.value.user_message

    def test_total_scorer_failure_is_unavailable(self):
        with pytest.raises(ScoringUnavailable):
            self.engine.decide(
                EnsembleAlgorithms(),
                ComparisonMetrics(),
                95.0,
                95.0,
                dropped={name: "timeout" for name in SCORERS},
            )

    def test_high_score_without_majority_plus_one_fails(self):
        # Two of four matched: score clears the bar but votes do not
        result = self.engine.decide(
            ensemble(arcface=0.99, cosface=0.99, sphereface=0.49, triplet=0.49),
            uniform_metrics(1.0),
            100.0,
            100.0,
        )

        assert result.score >= result.required_score
        assert result.ensemble_agreement == 2
        assert result.passed is False
        assert result.confidence is Confidence.LOW

    def test_three_scorers_need_three_votes(self):
        result = self.engine.decide(
            ensemble(arcface=0.9, cosface=0.9, triplet=0.9),
            uniform_metrics(0.9),
            95.0,
            95.0,
            dropped={"sphereface": "Scorer 'sphereface' did not finish within 5.0s"},
        )

        assert result.ensemble_stats.scorer_count == 3
        assert result.required_votes == 3
        assert result.passed is True
        assert result.confidence is Confidence.HIGH
        assert "sphereface" in result.dropped_scorers
        assert result.algorithms.sphereface is None

    def test_medium_confidence_when_not_unanimous(self):
        result = self.engine.decide(
            ensemble(triplet=0.95, arcface=0.95, cosface=0.95, sphereface=0.45),
            uniform_metrics(0.95),
            100.0,
            100.0,
        )

        assert result.passed is True
        assert result.ensemble_agreement == 3
        assert result.confidence is Confidence.MEDIUM

    def test_medium_confidence_when_lead_is_small(self):
        result = self.engine.decide(
            ensemble(triplet=0.75, arcface=0.75, cosface=0.75, sphereface=0.75),
            uniform_metrics(0.75),
            100.0,
            100.0,
        )

        assert result.score == pytest.approx(75.0)
        assert result.required_score == pytest.approx(70.0)
        assert result.passed is True
        assert result.confidence is Confidence.MEDIUM


class TestWeightedScore:
    """Weight renormalization and classical blend"""

    def setup_method(self):
        self.engine = EnsembleConsensusEngine(ConsensusSettings())

    def test_weights_renormalized_over_present_scorers(self):
        score = self.engine.embedding_score(ensemble(arcface=1.0, triplet=0.5))

        # (0.30 * 1.0 + 0.25 * 0.5) / 0.55
        assert score == pytest.approx(0.425 / 0.55)

    def test_embedding_only_when_metrics_empty(self):
        algorithms = ensemble(arcface=0.8, cosface=0.8)
        assert self.engine.weighted_score(algorithms, ComparisonMetrics()) == pytest.approx(80.0)

    def test_classical_share_is_fifteen_percent(self):
        algorithms = ensemble(triplet=1.0, arcface=1.0, cosface=1.0, sphereface=1.0)
        score = self.engine.weighted_score(algorithms, uniform_metrics(0.0))
        assert score == pytest.approx(85.0)

    def test_partial_metrics_average_present_values(self):
        algorithms = ensemble(arcface=1.0, cosface=1.0)
        metrics = ComparisonMetrics(euclidean=0.2, histogram=0.6)
        assert self.engine.weighted_score(algorithms, metrics) == pytest.approx(91.0)

    def test_configured_weights_are_normalized(self):
        custom = ConsensusSettings(
            weights={"arcface": 3.0, "cosface": 2.5, "sphereface": 2.0, "triplet": 2.5}
        )
        assert sum(custom.weights.values()) == pytest.approx(1.0)
        assert custom.weights["arcface"] == pytest.approx(0.30)

    def test_invalid_settings_rejected(self):
        with pytest.raises(ConfigurationError):
            ConsensusSettings(weights={"arcface": 1.0})
        with pytest.raises(ConfigurationError):
            ConsensusSettings(
                weights={"arcface": -1.0, "cosface": 1.0, "sphereface": 1.0, "triplet": 1.0}
            )
        with pytest.raises(ConfigurationError):
            ConsensusSettings(threshold_min=95.0, threshold_max=90.0)
        with pytest.raises(ConfigurationError):
            ConsensusSettings(embedding_blend=1.5)


class TestAdaptiveThreshold:
    def setup_method(self):
        self.engine = EnsembleConsensusEngine(ConsensusSettings())

    def test_baseline_for_perfect_input(self):
        assert self.engine.adaptive_threshold(100.0, 100.0, 0.0) == pytest.approx(70.0)

    def test_weakest_capture_drives_penalty(self):
        assert self.engine.adaptive_threshold(100.0, 80.0, 0.0) == pytest.approx(73.0)
        assert self.engine.adaptive_threshold(80.0, 100.0, 0.0) == pytest.approx(73.0)

    def test_clamped_to_range(self):
        assert self.engine.adaptive_threshold(0.0, 0.0, 0.5) == pytest.approx(90.0)
        low = EnsembleConsensusEngine(ConsensusSettings(baseline_threshold=40.0))
        assert low.adaptive_threshold(100.0, 100.0, 0.0) == pytest.approx(55.0)

    def test_required_votes_is_majority_plus_one(self):
        assert [required_votes(n) for n in (1, 2, 3, 4)] == [2, 2, 3, 3]


score_strategy = st.floats(min_value=0.0, max_value=1.0, allow_nan=False, allow_infinity=False)
quality_strategy = st.floats(min_value=0.0, max_value=100.0, allow_nan=False, allow_infinity=False)
std_strategy = st.floats(min_value=0.0, max_value=0.5, allow_nan=False, allow_infinity=False)


class TestConsensusProperties:
    """Property-based tests for EnsembleConsensusEngine"""

    def setup_method(self):
        self.engine = EnsembleConsensusEngine(ConsensusSettings())

    @given(q1=quality_strategy, q2=quality_strategy, other=quality_strategy, std=std_strategy)
    def test_lower_quality_never_lowers_threshold(self, q1, q2, other, std):
        low, high = sorted((q1, q2))
        assert self.engine.adaptive_threshold(low, other, std) >= self.engine.adaptive_threshold(
            high, other, std
        )
        assert self.engine.adaptive_threshold(other, low, std) >= self.engine.adaptive_threshold(
            other, high, std
        )

    @given(s1=std_strategy, s2=std_strategy, q=quality_strategy)
    def test_lower_dispersion_never_raises_threshold(self, s1, s2, q):
        low, high = sorted((s1, s2))
        assert self.engine.adaptive_threshold(q, q, low) <= self.engine.adaptive_threshold(
            q, q, high
        )

    @given(sq=quality_strategy, dq=quality_strategy, std=std_strategy)
    def test_threshold_always_clamped(self, sq, dq, std):
        assert 55.0 <= self.engine.adaptive_threshold(sq, dq, std) <= 90.0

    @settings(deadline=None)
    @given(
        scores=st.lists(score_strategy, min_size=2, max_size=4),
        classical=st.one_of(st.none(), score_strategy),
        sq=quality_strategy,
        dq=quality_strategy,
    )
    def test_decision_invariants(self, scores, classical, sq, dq):
        algorithms = ensemble(**dict(zip(SCORERS, scores)))
        metrics = uniform_metrics(classical) if classical is not None else ComparisonMetrics()

        result = self.engine.decide(algorithms, metrics, sq, dq)
        stats = result.ensemble_stats

        assert result.passed == (
            result.score >= result.required_score
            and result.ensemble_agreement >= result.required_votes
        )
        assert 0 <= result.ensemble_agreement <= stats.scorer_count <= 4
        assert stats.scorer_count == len(scores)
        assert 55.0 <= result.required_score <= 90.0
        if result.confidence is Confidence.HIGH:
            assert result.passed

    @settings(deadline=None)
    @given(scores=st.lists(score_strategy, min_size=2, max_size=4), q=quality_strategy)
    def test_decide_is_deterministic(self, scores, q):
        algorithms = ensemble(**dict(zip(SCORERS, scores)))
        first = self.engine.decide(algorithms, uniform_metrics(0.5), q, q)
        second = self.engine.decide(algorithms, uniform_metrics(0.5), q, q)
        assert first.to_dict() == second.to_dict()

    @given(score=score_strategy, name=st.sampled_from(SCORERS))
    def test_fewer_than_two_scorers_never_pass(self, score, name):
        with pytest.raises(ScoringUnavailable):
            self.engine.decide(ensemble(**{name: score}), uniform_metrics(1.0), 100.0, 100.0)


def test_convenience_decide_matches_engine():
    algorithms = ensemble(triplet=0.9, arcface=0.9, cosface=0.9, sphereface=0.9)
    result = decide(algorithms, uniform_metrics(0.9), 95.0, 95.0, settings=ConsensusSettings())
    assert result.passed is True
    assert result.score == pytest.approx(90.0)
