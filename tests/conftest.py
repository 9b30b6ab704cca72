"""
Shared fixtures for the IDVERIFY test suite.

Face analysis is replaced by ``FakeFaceAnalyzer`` so tests never load the
dlib models; captures are synthetic numpy/OpenCV images.
"""
import threading
from itertools import cycle
from typing import Dict, List, Optional, Sequence

import numpy as np
import pytest

from idverify.consensus import ConsensusSettings, EnsembleConsensusEngine
from idverify.data_models import AlgorithmResult, ComparisonMetrics, EnsembleAlgorithms
from idverify.detection import FaceAnalyzer, FaceObservation, FaceSample
from idverify.imaging import encode_image
from idverify.matchers import confidence_for


def face_box_for(image: np.ndarray):
    """Centered face box covering 40% of the width and half the height."""
    height, width = image.shape[:2]
    return (int(height * 0.25), int(width * 0.7), int(height * 0.75), int(width * 0.3))


def landmarks_for(box) -> Dict[str, List[tuple]]:
    """Frontal landmark constellation inside ``box``, eyes level."""
    top, right, bottom, left = box
    w, h = right - left, bottom - top

    def ring(cx, cy, rx, ry, n):
        return [
            (int(cx + rx * np.cos(2 * np.pi * i / n)), int(cy + ry * np.sin(2 * np.pi * i / n)))
            for i in range(n)
        ]

    eye_y = top + 0.38 * h
    return {
        "chin": [
            (int(left + w * i / 16), int(top + 0.75 * h + 0.2 * h * np.sin(np.pi * i / 16)))
            for i in range(17)
        ],
        "left_eye": ring(left + 0.32 * w, eye_y, 0.08 * w, 0.03 * h, 6),
        "right_eye": ring(left + 0.68 * w, eye_y, 0.08 * w, 0.03 * h, 6),
        "nose_tip": [(int(left + w * (0.42 + 0.04 * i)), int(top + 0.6 * h)) for i in range(5)],
    }


class FakeFaceAnalyzer(FaceAnalyzer):
    """
    Deterministic stand-in for the face_recognition backend.

    Parameters
    ----------
    embeddings : Sequence[np.ndarray]
        Returned in turn by ``embedding``; cycled.
    faces : int
        Number of face boxes reported per image (0 for no face).

    Only the plain view of a face is described, so every prepared capture
    consumes exactly one embedding.
    """

    def __init__(self, embeddings: Sequence[np.ndarray] = (), faces: int = 1) -> None:
        self._embeddings = cycle(list(embeddings)) if embeddings else None
        self.faces = faces
        self.embedding_calls = 0
        self._lock = threading.Lock()

    def locate_faces(self, image):
        if self.faces == 0:
            return []
        box = face_box_for(image)
        extra = []
        if self.faces > 1:
            top, right, bottom, left = box
            # Smaller face in the top-left corner
            extra = [(10, 10 + (right - left) // 3, 10 + (bottom - top) // 3, 10)] * (
                self.faces - 1
            )
        return [box] + extra

    def landmarks(self, image, box):
        return landmarks_for(box)

    def embedding(self, image, box):
        with self._lock:
            self.embedding_calls += 1
            if self._embeddings is None:
                raise RuntimeError("no embedding configured")
            return next(self._embeddings)

    def alternate_embeddings(self, image, observation):
        return []


def random_embedding(seed: int, dim: int = 128) -> np.ndarray:
    return np.random.default_rng(seed).normal(size=dim).astype(np.float32)


def make_selfie(brightness: int = 128, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    noise = rng.integers(-20, 21, size=(480, 640, 3))
    return np.clip(brightness + noise, 0, 255).astype(np.uint8)


def make_document(glare: bool = False, seed: int = 1) -> np.ndarray:
    """Dark background with a large textured card not touching the border."""
    rng = np.random.default_rng(seed)
    image = np.full((480, 640, 3), 40, dtype=np.uint8)
    if glare:
        card = np.full((360, 480, 3), 255, dtype=np.uint8)
    else:
        card = rng.integers(120, 201, size=(360, 480, 3)).astype(np.uint8)
    image[60:420, 80:560] = card
    return image


def encode(image: np.ndarray) -> bytes:
    return encode_image(image, ".png")


def make_sample(
    embedding: Optional[np.ndarray],
    crop: Optional[np.ndarray] = None,
    landmarks: Optional[Dict[str, List[tuple]]] = None,
    modality: str = "selfie",
) -> FaceSample:
    box = (50, 174, 174, 50)
    if crop is None:
        crop = np.random.default_rng(7).integers(0, 256, size=(224, 224, 3)).astype(np.uint8)
    return FaceSample(
        modality=modality,
        image=crop,
        observation=FaceObservation(
            box=box,
            landmarks=landmarks if landmarks is not None else landmarks_for(box),
            embedding=embedding,
        ),
        crop=crop,
    )


def algorithm(name: str, score: float, threshold: float = 0.5) -> AlgorithmResult:
    return AlgorithmResult(
        name=name,
        score=score,
        matched=score >= threshold,
        confidence=confidence_for(score, threshold),
        threshold=threshold,
    )


def uniform_metrics(value: float) -> ComparisonMetrics:
    return ComparisonMetrics(
        euclidean=value,
        cosine=value,
        landmarks=value,
        structural=value,
        texture=value,
        histogram=value,
    )


@pytest.fixture
def engine() -> EnsembleConsensusEngine:
    return EnsembleConsensusEngine(ConsensusSettings())


@pytest.fixture
def passing_result(engine):
    algorithms = EnsembleAlgorithms.from_results(
        {name: algorithm(name, 0.9) for name in ("triplet", "arcface", "cosface", "sphereface")}
    )
    return engine.decide(algorithms, uniform_metrics(0.9), 95.0, 95.0)


@pytest.fixture
def failing_result(engine):
    algorithms = EnsembleAlgorithms.from_results(
        {
            "arcface": algorithm("arcface", 0.85),
            "cosface": algorithm("cosface", 0.85),
            "sphereface": algorithm("sphereface", 0.4),
            "triplet": algorithm("triplet", 0.4),
        }
    )
    return engine.decide(algorithms, ComparisonMetrics(), 60.0, 60.0)
