"""
Unit tests for data model validation and serialization
"""
import pytest

from conftest import algorithm
from idverify.data_models import (
    AlgorithmResult,
    ComparisonMetrics,
    Confidence,
    DocumentType,
    EnsembleAlgorithms,
    EnsembleStats,
    FlowStep,
    Modality,
    QualityAssessment,
    SessionStatus,
    StoredVerification,
    VerificationResult,
    VerificationSession,
)


class TestQualityAssessment:
    def test_undetected_capture_must_score_zero(self):
        with pytest.raises(ValueError):
            QualityAssessment(modality=Modality.SELFIE, detected=False, quality=40.0, message="x")

    def test_failed_check_requires_message(self):
        with pytest.raises(ValueError):
            QualityAssessment(
                modality=Modality.SELFIE, detected=True, quality=60.0, good_lighting=False
            )

    def test_quality_range(self):
        with pytest.raises(ValueError):
            QualityAssessment(modality="document", detected=True, quality=101.0)

    def test_checks_only_cover_modality(self):
        assessment = QualityAssessment(
            modality="document",
            detected=True,
            quality=80.0,
            fully_visible=True,
            good_focus=True,
            no_glare=True,
        )
        assert set(assessment.checks) == {"detected", "fully_visible", "good_focus", "no_glare"}
        assert assessment.to_dict()["modality"] == "document"


class TestAlgorithmResult:
    def test_matched_must_agree_with_threshold(self):
        with pytest.raises(ValueError):
            AlgorithmResult(
                name="arcface", score=0.4, matched=True, confidence="low", threshold=0.5
            )

    def test_score_range(self):
        with pytest.raises(ValueError):
            AlgorithmResult(
                name="arcface", score=1.2, matched=True, confidence="high", threshold=0.5
            )

    def test_margin(self):
        assert algorithm("cosface", 0.8, threshold=0.6).margin == pytest.approx(0.2)


class TestEnsembleModels:
    def test_unknown_scorer_rejected(self):
        with pytest.raises(ValueError):
            EnsembleAlgorithms.from_results({"facenet": algorithm("facenet", 0.9)})

    def test_present_keeps_ensemble_order(self):
        algorithms = EnsembleAlgorithms.from_results(
            {"sphereface": algorithm("sphereface", 0.7), "triplet": algorithm("triplet", 0.8)}
        )
        assert list(algorithms.present()) == ["triplet", "sphereface"]
        assert algorithms.count == 2

    def test_votes_bounded_by_scorer_count(self):
        with pytest.raises(ValueError):
            EnsembleStats(
                weighted_score=80.0, votes=3, variance=0.0, std_dev=0.0, threshold=75.0,
                scorer_count=2,
            )

    def test_metric_similarity_range(self):
        with pytest.raises(ValueError):
            ComparisonMetrics(histogram=-0.1)


class TestVerificationResult:
    def test_passed_must_follow_score_and_votes(self):
        with pytest.raises(ValueError):
            VerificationResult(
                passed=True,
                score=70.0,
                confidence="medium",
                required_score=75.0,
                metrics=ComparisonMetrics(),
                selfie_quality=90.0,
                document_quality=90.0,
            )

    def test_high_confidence_requires_pass(self):
        with pytest.raises(ValueError):
            VerificationResult(
                passed=False,
                score=60.0,
                confidence="high",
                required_score=75.0,
                metrics=ComparisonMetrics(),
                selfie_quality=90.0,
                document_quality=90.0,
            )

    def test_round_trip(self, passing_result):
        restored = VerificationResult.from_dict(passing_result.to_dict())

        assert restored.passed is True
        assert restored.confidence is passing_result.confidence
        assert restored.algorithms.count == 4
        assert restored.ensemble_stats == passing_result.ensemble_stats
        assert restored.metrics == passing_result.metrics


class TestVerificationSession:
    def test_requires_id(self):
        with pytest.raises(ValueError):
            VerificationSession(id="")

    def test_result_iff_completed(self, passing_result):
        with pytest.raises(ValueError):
            VerificationSession(id="abc", status=SessionStatus.APPROVED)
        with pytest.raises(ValueError):
            VerificationSession(id="abc", result=passing_result)

    def test_round_trip_with_images(self, passing_result):
        session = VerificationSession(
            id="abc",
            step=FlowStep.RESULT,
            status=SessionStatus.APPROVED,
            selfie_image=b"\x89PNG selfie",
            document_image=b"\xff\xd8 document",
            document_type=DocumentType.PASSPORT,
            result=passing_result,
            similarity_score=passing_result.score,
        )

        restored = VerificationSession.from_dict(session.to_dict())

        assert restored.selfie_image == session.selfie_image
        assert restored.document_image == session.document_image
        assert restored.document_type is DocumentType.PASSPORT
        assert restored.result.score == passing_result.score
        assert restored.started_at == session.started_at

    def test_snapshot_without_images(self):
        session = VerificationSession(id="abc", selfie_image=b"selfie")
        snapshot = session.to_dict(include_images=False)
        assert snapshot["selfie_image"] is None
        assert snapshot["step"] == "welcome"


class TestStoredVerification:
    def test_scores_stored_as_percentages(self, passing_result):
        record = StoredVerification.from_result(
            record_id="rec-1", session_id="abc", result=passing_result, device_info="kiosk"
        )

        assert record.euclidean_score == pytest.approx(90.0)
        assert record.arcface_score == pytest.approx(90.0)
        assert record.similarity_score == passing_result.score
        assert record.required_score == passing_result.required_score
        assert record.ensemble_score == passing_result.ensemble_stats.weighted_score
        assert record.agreement_count == 4
        assert record.confidence == Confidence.HIGH.value

    def test_missing_scorers_stored_as_none(self, failing_result):
        record = StoredVerification.from_result(
            record_id="rec-2", session_id="def", result=failing_result
        )
        assert record.euclidean_score is None
        assert record.triplet_score == pytest.approx(40.0)

    def test_round_trip(self, passing_result):
        record = StoredVerification.from_result(
            record_id="rec-1", session_id="abc", result=passing_result
        )
        assert StoredVerification.from_dict(record.to_dict()) == record
