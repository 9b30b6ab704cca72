"""
Unit tests for image decoding, preprocessing and detection helpers
"""
import cv2
import numpy as np
import pytest

from conftest import (
    FakeFaceAnalyzer,
    encode,
    landmarks_for,
    make_document,
    make_sample,
    make_selfie,
    random_embedding,
)
from idverify.detection import (
    FaceAnalyzer,
    FaceObservation,
    align_face,
    eye_angle,
    largest_box,
    locate_document,
    observe_face,
    prepare_sample,
    select_best_pair,
)
from idverify.exceptions import FeatureExtractionError, ImageDecodeError
from idverify.imaging import (
    analyze_image_quality,
    crop_face,
    decode_image,
    normalize_illumination,
    padded_crop,
    preprocess_document,
    preprocess_selfie,
    upscale,
)


class TestDecoding:
    def test_decode_round_trip_shape(self):
        image = make_selfie()
        decoded = decode_image(encode(image))
        assert decoded.shape == image.shape
        assert np.array_equal(decoded, image)

    def test_empty_payload(self):
        with pytest.raises(ImageDecodeError) as exc_info:
            decode_image(b"")
        assert exc_info.value.error_code == "IMAGE_001"

    def test_garbage_payload(self):
        with pytest.raises(ImageDecodeError) as exc_info:
            decode_image(b"definitely not a jpeg")
        assert exc_info.value.context["byte_count"] == len(b"definitely not a jpeg")


class TestPreprocessing:
    def test_quality_metrics_flag_dark_images(self):
        metrics = analyze_image_quality(make_selfie(brightness=20))
        assert metrics.brightness < 0.3
        assert "Image too dark" in metrics.issues
        assert 0.0 <= metrics.overall_quality <= 100.0

    def test_illumination_brightens_dark_centre(self):
        dark = make_selfie(brightness=60)
        assert normalize_illumination(dark).mean() > dark.mean()

    def test_preprocessing_keeps_shape_and_dtype(self):
        for processed in (preprocess_selfie(make_selfie()), preprocess_document(make_document())):
            assert processed.shape == (480, 640, 3)
            assert processed.dtype == np.uint8

    def test_crop_face_is_square(self):
        crop = crop_face(make_selfie(), (120, 448, 360, 192))
        assert crop.shape == (224, 224, 3)

    def test_crop_outside_frame_falls_back_to_full_frame(self):
        crop = crop_face(make_selfie(), (900, 1000, 950, 960), padding=0.0)
        assert crop.shape == (224, 224, 3)


class TestDocumentLocation:
    def test_card_located_inside_frame(self):
        region = locate_document(make_document())

        assert region is not None
        assert region.touches_border is False
        assert region.area_ratio > 0.4

    def test_flat_frame_has_no_document(self):
        assert locate_document(np.full((480, 640, 3), 90, dtype=np.uint8)) is None


class TestFaceObservation:
    def test_largest_face_is_observed(self):
        analyzer = FakeFaceAnalyzer(embeddings=[random_embedding(3)], faces=3)
        observation = observe_face(analyzer, make_selfie(), "selfie")

        assert observation.faces_detected == 3
        assert observation.box == largest_box(analyzer.locate_faces(make_selfie()))
        assert observation.embedding.shape == (128,)
        assert "left_eye" in observation.landmarks

    def test_no_face(self):
        with pytest.raises(FeatureExtractionError) as exc_info:
            observe_face(FakeFaceAnalyzer(faces=0), make_selfie(), "document")
        assert exc_info.value.modality == "document"

    def test_backend_failure_wrapped(self):
        with pytest.raises(FeatureExtractionError) as exc_info:
            observe_face(FakeFaceAnalyzer(), make_selfie(), "selfie")
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_non_finite_embedding_rejected(self):
        bad = np.full(128, np.nan, dtype=np.float32)
        with pytest.raises(FeatureExtractionError):
            observe_face(FakeFaceAnalyzer(embeddings=[bad]), make_selfie(), "selfie")

    def test_observation_without_embedding(self):
        observation = observe_face(FakeFaceAnalyzer(), make_selfie(), "selfie", with_embedding=False)
        assert observation.embedding is None
        assert observation.area > 0


def test_prepare_sample():
    analyzer = FakeFaceAnalyzer(embeddings=[random_embedding(4)])
    sample = prepare_sample(analyzer, make_document(), "document")

    assert sample.modality == "document"
    assert sample.crop.shape == (224, 224, 3)
    assert sample.embedding.shape == (128,)
    assert len(sample.descriptors) == 1


class SmallFaceAnalyzer(FakeFaceAnalyzer):
    """Finds faces only once the frame is at least 1000 pixels wide."""

    def locate_faces(self, image):
        if image.shape[1] < 1000:
            return []
        return super().locate_faces(image)


class RecordingAnalyzer(FaceAnalyzer):
    """Keeps the default alternate views and records every embedding request."""

    def __init__(self, fail_on_crops=False):
        self.fail_on_crops = fail_on_crops
        self.requests = []

    def locate_faces(self, image):
        return []

    def landmarks(self, image, box):
        return {}

    def embedding(self, image, box):
        self.requests.append((image.shape[:2], box))
        if self.fail_on_crops and image.shape[:2] == (224, 224):
            raise RuntimeError("face too small")
        return random_embedding(len(self.requests))


def tilted_landmarks(left_eye, right_eye):
    def ring(center):
        return [(center[0] + dx, center[1] + dy) for dx, dy in ((-4, 0), (0, -2), (4, 0), (0, 2))]

    return {"left_eye": ring(left_eye), "right_eye": ring(right_eye)}


class TestMultiPassDetection:
    def test_small_face_found_on_enlarged_capture(self):
        analyzer = SmallFaceAnalyzer(embeddings=[random_embedding(3)])
        sample = prepare_sample(analyzer, make_selfie(), "selfie")

        assert sample.image.shape == (960, 1280, 3)
        top, right, bottom, left = sample.observation.box
        assert 0 <= left < right <= 1280
        assert 0 <= top < bottom <= 960
        assert sample.crop.shape == (224, 224, 3)

    def test_no_face_at_any_size(self):
        with pytest.raises(FeatureExtractionError):
            prepare_sample(FakeFaceAnalyzer(faces=0), make_selfie(), "selfie")

    def test_upscale_respects_max_edge(self):
        assert upscale(make_selfie(), 3.5).shape == (1500, 2000, 3)

        large = np.zeros((1000, 2000, 3), dtype=np.uint8)
        assert upscale(large, 2.0) is large


class TestAlignment:
    def test_level_eyes_need_no_alignment(self):
        box = (100, 400, 400, 100)
        observation = FaceObservation(box=box, landmarks=landmarks_for(box))

        assert eye_angle(observation.landmarks) == pytest.approx(0.0, abs=0.02)
        assert align_face(make_selfie(), observation) is None

    def test_tilted_eyes_rotated_level(self):
        image = np.zeros((400, 400, 3), dtype=np.uint8)
        cv2.circle(image, (150, 200), 6, (255, 255, 255), -1)
        cv2.circle(image, (250, 240), 6, (255, 255, 255), -1)
        observation = FaceObservation(
            box=(120, 300, 320, 100), landmarks=tilted_landmarks((150, 200), (250, 240))
        )

        assert eye_angle(observation.landmarks) > 0.3

        rotated, box = align_face(image, observation)
        gray = rotated[:, :, 0]
        left_y = np.argwhere(gray[:, :200] > 128)[:, 0].mean()
        right_y = np.argwhere(gray[:, 200:] > 128)[:, 0].mean()

        assert rotated.shape == image.shape
        assert abs(left_y - right_y) < 2.0
        assert left_y == pytest.approx(220.0, abs=2.0)
        # The box is centred on the rotation centre, so it stays in place
        assert box == pytest.approx((120, 300, 320, 100), abs=1)


class TestAlternateViews:
    def test_padded_crop_maps_box(self):
        crop, box = padded_crop(make_selfie(), (100, 300, 300, 100), padding=0.0, size=224)

        assert crop.shape == (224, 224, 3)
        assert box == (0, 224, 224, 0)

    def test_level_face_described_by_padded_crops(self):
        analyzer = RecordingAnalyzer()
        box = (100, 400, 400, 100)
        observation = FaceObservation(box=box, landmarks=landmarks_for(box))

        embeddings = analyzer.alternate_embeddings(make_selfie(), observation)

        assert len(embeddings) == 3
        for shape, crop_box in analyzer.requests:
            top, right, bottom, left = crop_box
            assert shape == (224, 224)
            assert 0 <= left < right <= 224 and 0 <= top < bottom <= 224

    def test_tilted_face_adds_aligned_view(self):
        analyzer = RecordingAnalyzer()
        observation = FaceObservation(
            box=(120, 300, 320, 100), landmarks=tilted_landmarks((150, 200), (250, 240))
        )

        embeddings = analyzer.alternate_embeddings(make_selfie(), observation)

        assert len(embeddings) == 4
        assert analyzer.requests[0][0] == (480, 640)

    def test_failing_views_skipped(self):
        analyzer = RecordingAnalyzer(fail_on_crops=True)
        box = (100, 400, 400, 100)
        observation = FaceObservation(box=box, landmarks=landmarks_for(box))

        assert analyzer.alternate_embeddings(make_selfie(), observation) == []
        assert len(analyzer.requests) == 3


class TestBestPair:
    def test_closest_pair_selected(self):
        shared = random_embedding(10)
        selfie = make_sample(random_embedding(11))
        document = make_sample(random_embedding(12), modality="document")
        selfie.descriptors = [random_embedding(11), shared]
        document.descriptors = [random_embedding(12), shared + 0.001]

        best_selfie, best_document = select_best_pair(selfie, document)

        np.testing.assert_array_equal(best_selfie.embedding, shared)
        np.testing.assert_allclose(best_document.embedding, shared + 0.001)
        # Inputs are left untouched
        np.testing.assert_array_equal(selfie.embedding, random_embedding(11))

    def test_samples_without_descriptors_use_their_embedding(self):
        selfie = make_sample(random_embedding(4))
        document = make_sample(random_embedding(4), modality="document")

        best_selfie, best_document = select_best_pair(selfie, document)

        np.testing.assert_array_equal(best_selfie.embedding, selfie.embedding)
        np.testing.assert_array_equal(best_document.embedding, document.embedding)
