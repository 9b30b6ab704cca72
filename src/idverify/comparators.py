"""
Classical signal comparators for the IDVERIFY system.

Besides the margin-based embedding matchers, six classical signals are
computed for every selfie/document pair. They feed the small classical
share of the ensemble score and the audit record:

- euclidean / cosine: embedding distances (scipy.spatial.distance)
- landmarks: Procrustes disparity of the facial landmark constellations
- structural: SSIM of the aligned grayscale face crops (scikit-image)
- texture: Bhattacharyya coefficient of uniform LBP histograms
- histogram: HSV colour histogram correlation (OpenCV)

Every comparator returns a similarity in [0, 1] and optionally the raw
distance it was derived from.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

import cv2
import numpy as np
import structlog
from scipy.spatial import distance as sp_distance
from scipy.spatial import procrustes
from skimage.feature import local_binary_pattern
from skimage.metrics import structural_similarity

from .constants import LANDMARK_DISPARITY_SCALE, LBP_POINTS, LBP_RADIUS
from .detection import FaceSample
from .exceptions import ScorerError
from .imaging import to_gray
from .matchers import l2_normalize

# Initialize structured logger
logger = structlog.get_logger(__name__)

ComparisonOutput = Tuple[float, Optional[float]]

# Landmark groups compared, in a fixed order so point sets line up
LANDMARK_GROUPS = (
    "chin",
    "left_eyebrow",
    "right_eyebrow",
    "nose_bridge",
    "nose_tip",
    "left_eye",
    "right_eye",
    "top_lip",
    "bottom_lip",
)


def _unit(value: float) -> float:
    return float(np.clip(value, 0.0, 1.0))


class SignalComparator(ABC):
    """Base class for the classical comparators."""

    name: str = ""

    @abstractmethod
    def compare(self, selfie: FaceSample, document: FaceSample) -> ComparisonOutput:
        """Return ``(similarity, distance)`` for a pair of samples."""

    def __call__(self, selfie: FaceSample, document: FaceSample) -> ComparisonOutput:
        try:
            similarity, raw_distance = self.compare(selfie, document)
        except ScorerError:
            raise
        except Exception as e:
            raise ScorerError(
                f"Comparator '{self.name}' failed: {str(e)}", scorer=self.name
            ) from e

        if not np.isfinite(similarity):
            raise ScorerError(
                f"Comparator '{self.name}' produced a non-finite similarity", scorer=self.name
            )

        logger.debug(
            "Comparator completed",
            scorer=self.name,
            similarity=round(similarity, 4),
            distance=raw_distance,
        )
        return similarity, raw_distance


class EuclideanComparator(SignalComparator):
    name = "euclidean"

    def compare(self, selfie: FaceSample, document: FaceSample) -> ComparisonOutput:
        d = float(
            sp_distance.euclidean(l2_normalize(selfie.embedding), l2_normalize(document.embedding))
        )
        return _unit(1.0 - d), d


class CosineComparator(SignalComparator):
    name = "cosine"

    def compare(self, selfie: FaceSample, document: FaceSample) -> ComparisonOutput:
        d = float(sp_distance.cosine(selfie.embedding, document.embedding))
        return _unit(1.0 - d), d


class LandmarkComparator(SignalComparator):
    """Shape similarity of the landmark constellations, invariant to pose scale."""

    name = "landmarks"

    def __init__(self, disparity_scale: float = LANDMARK_DISPARITY_SCALE) -> None:
        self.disparity_scale = disparity_scale

    @staticmethod
    def _points(sample: FaceSample, groups: List[str]) -> np.ndarray:
        landmarks = sample.observation.landmarks
        return np.array(
            [point for group in groups for point in landmarks[group]], dtype=np.float64
        )

    def compare(self, selfie: FaceSample, document: FaceSample) -> ComparisonOutput:
        selfie_marks = selfie.observation.landmarks
        document_marks = document.observation.landmarks
        groups = [
            g
            for g in LANDMARK_GROUPS
            if g in selfie_marks
            and g in document_marks
            and len(selfie_marks[g]) == len(document_marks[g])
        ]
        if not groups:
            raise ScorerError("No common landmark groups to compare", scorer=self.name)

        a, b = self._points(selfie, groups), self._points(document, groups)
        if len(a) < 3:
            raise ScorerError(
                "At least 3 landmark points are required", scorer=self.name
            )

        _, _, disparity = procrustes(a, b)
        return _unit(float(np.exp(-self.disparity_scale * disparity))), float(disparity)


class StructuralComparator(SignalComparator):
    """SSIM between the grayscale face crops."""

    name = "structural"

    def compare(self, selfie: FaceSample, document: FaceSample) -> ComparisonOutput:
        gray_a, gray_b = to_gray(selfie.crop), to_gray(document.crop)
        if gray_a.shape != gray_b.shape:
            gray_b = cv2.resize(gray_b, (gray_a.shape[1], gray_a.shape[0]))
        score = structural_similarity(gray_a, gray_b, data_range=255)
        return _unit(float(score)), None


class TextureComparator(SignalComparator):
    """Bhattacharyya coefficient of uniform local binary pattern histograms."""

    name = "texture"

    def __init__(self, points: int = LBP_POINTS, radius: float = LBP_RADIUS) -> None:
        self.points = points
        self.radius = radius

    def _histogram(self, crop: np.ndarray) -> np.ndarray:
        lbp = local_binary_pattern(to_gray(crop), self.points, self.radius, method="uniform")
        bins = self.points + 2
        hist, _ = np.histogram(lbp.ravel(), bins=bins, range=(0, bins))
        hist = hist.astype(np.float64)
        return hist / (hist.sum() + 1e-7)

    def compare(self, selfie: FaceSample, document: FaceSample) -> ComparisonOutput:
        h1, h2 = self._histogram(selfie.crop), self._histogram(document.crop)
        coefficient = float(np.sum(np.sqrt(h1 * h2)))
        return _unit(coefficient), 1.0 - _unit(coefficient)


class HistogramComparator(SignalComparator):
    """Hue/saturation histogram correlation of the face crops."""

    name = "histogram"

    @staticmethod
    def _histogram(crop: np.ndarray) -> np.ndarray:
        if crop.ndim == 2:
            crop = cv2.cvtColor(crop, cv2.COLOR_GRAY2BGR)
        hsv = cv2.cvtColor(crop, cv2.COLOR_BGR2HSV)
        hist = cv2.calcHist([hsv], [0, 1], None, [50, 60], [0, 180, 0, 256])
        cv2.normalize(hist, hist, 0, 1, cv2.NORM_MINMAX)
        return hist

    def compare(self, selfie: FaceSample, document: FaceSample) -> ComparisonOutput:
        correlation = cv2.compareHist(
            self._histogram(selfie.crop), self._histogram(document.crop), cv2.HISTCMP_CORREL
        )
        return _unit(float(correlation)), None


def default_comparators() -> List[SignalComparator]:
    return [
        EuclideanComparator(),
        CosineComparator(),
        LandmarkComparator(),
        StructuralComparator(),
        TextureComparator(),
        HistogramComparator(),
    ]
