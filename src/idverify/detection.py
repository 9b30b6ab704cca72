"""
Face and document detection for the IDVERIFY system.

This module locates faces, facial landmarks and face embeddings in captured
images behind a small ``FaceAnalyzer`` capability, and locates the card
region in document photos. The default analyzer is backed by the
``face_recognition`` library (dlib HOG detector, 68-point landmarks and
128-dimensional embeddings); tests and alternative deployments inject their
own analyzer.

Document portraits are small, so detection is retried on enlarged copies
of the capture. Each prepared face is described by several embeddings (the
plain view, an eye-level aligned view and crops with different paddings)
and the closest selfie/document pair is used for matching.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np
import structlog

from .constants import (
    DESCRIPTOR_PADDINGS,
    DETECTION_UPSCALE_FACTORS,
    MIN_ALIGNMENT_ANGLE,
    MIN_DOCUMENT_RATIO,
)
from .exceptions import FeatureExtractionError
from .imaging import (
    Box,
    crop_face,
    padded_crop,
    preprocess_document,
    preprocess_selfie,
    rotate_image,
    to_gray,
    upscale,
)

# Initialize structured logger
logger = structlog.get_logger(__name__)

Landmarks = Dict[str, List[Tuple[int, int]]]


@dataclass
class FaceObservation:
    """
    A face located in a capture.

    Parameters
    ----------
    box : Box
        Face box as (top, right, bottom, left).
    landmarks : Landmarks
        Named landmark groups (``left_eye``, ``nose_tip``...), possibly empty.
    embedding : Optional[np.ndarray]
        Face embedding vector, ``None`` when extraction was not requested.
    faces_detected : int
        Number of faces found in the frame; the largest is observed.
    """

    box: Box
    landmarks: Landmarks = field(default_factory=dict)
    embedding: Optional[np.ndarray] = None
    faces_detected: int = 1

    @property
    def width(self) -> int:
        return self.box[1] - self.box[3]

    @property
    def height(self) -> int:
        return self.box[2] - self.box[0]

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)


class FaceAnalyzer(ABC):
    """Capability to locate faces and describe them."""

    @abstractmethod
    def locate_faces(self, image: np.ndarray) -> List[Box]:
        """Return face boxes in (top, right, bottom, left) form."""

    @abstractmethod
    def landmarks(self, image: np.ndarray, box: Box) -> Landmarks:
        """Return named landmark groups for the face in ``box``."""

    @abstractmethod
    def embedding(self, image: np.ndarray, box: Box) -> np.ndarray:
        """Return the embedding vector for the face in ``box``."""

    def alternate_embeddings(
        self, image: np.ndarray, observation: FaceObservation
    ) -> List[np.ndarray]:
        """
        Embeddings of additional views of an observed face.

        The views are the face rotated so the eyes are level (only when the
        eye line is tilted) and crops of the face with several paddings.
        A view whose embedding cannot be computed is skipped.
        """
        views: List[Tuple[np.ndarray, Box]] = []
        aligned = align_face(image, observation)
        if aligned is not None:
            views.append(aligned)
        for padding in DESCRIPTOR_PADDINGS:
            views.append(padded_crop(image, observation.box, padding))

        embeddings: List[np.ndarray] = []
        for view, box in views:
            try:
                embedding = np.asarray(self.embedding(view, box), dtype=np.float32)
            except Exception as e:
                logger.debug("Alternate face view skipped", error=str(e))
                continue
            if embedding.ndim == 1 and embedding.size and np.isfinite(embedding).all():
                embeddings.append(embedding)
        return embeddings


class FaceRecognitionAnalyzer(FaceAnalyzer):
    """
    ``FaceAnalyzer`` backed by the ``face_recognition`` library.

    Parameters
    ----------
    model : str, default="hog"
        Face detector, ``"hog"`` (CPU) or ``"cnn"`` (GPU).
    num_jitters : int, default=1
        Re-sampling passes when computing embeddings.
    upsample : int, default=1
        Image upsampling passes for small faces.
    """

    def __init__(self, model: str = "hog", num_jitters: int = 1, upsample: int = 1) -> None:
        # dlib models are loaded on import, keep that cost off package import
        import face_recognition

        self._fr = face_recognition
        self.model = model
        self.num_jitters = num_jitters
        self.upsample = upsample

        logger.info(
            "FaceRecognitionAnalyzer initialized",
            model=model,
            num_jitters=num_jitters,
            upsample=upsample,
        )

    @staticmethod
    def _rgb(image: np.ndarray) -> np.ndarray:
        if image.ndim == 2:
            return cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
        return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

    def locate_faces(self, image: np.ndarray) -> List[Box]:
        return [
            tuple(box)
            for box in self._fr.face_locations(
                self._rgb(image), number_of_times_to_upsample=self.upsample, model=self.model
            )
        ]

    def landmarks(self, image: np.ndarray, box: Box) -> Landmarks:
        found = self._fr.face_landmarks(self._rgb(image), [box])
        return found[0] if found else {}

    def embedding(self, image: np.ndarray, box: Box) -> np.ndarray:
        encodings = self._fr.face_encodings(
            self._rgb(image), [box], num_jitters=self.num_jitters
        )
        if not encodings:
            raise FeatureExtractionError(
                "Failed to extract face encoding. Face may be too small or unclear",
                modality="unknown",
            )
        return np.asarray(encodings[0], dtype=np.float32)


def largest_box(boxes: List[Box]) -> Box:
    return max(boxes, key=lambda b: (b[2] - b[0]) * (b[1] - b[3]))


def eye_centers(landmarks: Landmarks) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    if not landmarks.get("left_eye") or not landmarks.get("right_eye"):
        return None
    left = np.mean(np.asarray(landmarks["left_eye"], dtype=float), axis=0)
    right = np.mean(np.asarray(landmarks["right_eye"], dtype=float), axis=0)
    return left, right


def eye_angle(landmarks: Landmarks) -> Optional[float]:
    """Tilt of the eye line in radians, positive when the right eye is lower."""
    centers = eye_centers(landmarks)
    if centers is None:
        return None
    left, right = centers
    return float(math.atan2(right[1] - left[1], right[0] - left[0]))


def align_face(
    image: np.ndarray, observation: FaceObservation
) -> Optional[Tuple[np.ndarray, Box]]:
    """
    Rotate a capture around the eye midpoint so the eye line is horizontal.

    Returns
    -------
    Optional[Tuple[np.ndarray, Box]]
        The rotated image and the face box moved with it, or ``None`` when
        the eyes are unknown or already level.
    """
    angle = eye_angle(observation.landmarks)
    if angle is None or abs(angle) <= MIN_ALIGNMENT_ANGLE:
        return None

    left, right = eye_centers(observation.landmarks)
    center = (left + right) / 2.0
    rotated, matrix = rotate_image(image, math.degrees(angle), (center[0], center[1]))

    top, right_x, bottom, left_x = observation.box
    box_center = matrix @ np.array([(left_x + right_x) / 2.0, (top + bottom) / 2.0, 1.0])
    half_w, half_h = (right_x - left_x) / 2.0, (bottom - top) / 2.0
    height, width = image.shape[:2]
    box = (
        int(max(0, box_center[1] - half_h)),
        int(min(width, box_center[0] + half_w)),
        int(min(height, box_center[1] + half_h)),
        int(max(0, box_center[0] - half_w)),
    )
    return rotated, box


def observe_face(
    analyzer: FaceAnalyzer,
    image: np.ndarray,
    modality: str,
    with_embedding: bool = True,
) -> FaceObservation:
    """
    Locate the dominant face in a capture and describe it.

    Parameters
    ----------
    analyzer : FaceAnalyzer
        Face analysis backend.
    image : np.ndarray
        BGR capture.
    modality : str
        ``"selfie"`` or ``"document"``, for error context.
    with_embedding : bool, default=True
        Whether to compute the embedding.

    Returns
    -------
    FaceObservation
        Observation of the largest face.

    Raises
    ------
    FeatureExtractionError
        If no face is found or the embedding is unusable.
    """
    try:
        boxes = analyzer.locate_faces(image)
        if not boxes:
            raise FeatureExtractionError(
                f"No face detected in {modality} image", modality=modality
            )

        if len(boxes) > 1:
            logger.warning(
                "Multiple faces detected, using the largest face",
                modality=modality,
                faces_detected=len(boxes),
            )

        box = largest_box(boxes)
        landmarks = analyzer.landmarks(image, box)

        embedding = None
        if with_embedding:
            embedding = np.asarray(analyzer.embedding(image, box), dtype=np.float32)
            if embedding.ndim != 1 or embedding.size == 0:
                raise FeatureExtractionError(
                    f"Unexpected embedding shape {embedding.shape}", modality=modality
                )
            if not np.isfinite(embedding).all():
                raise FeatureExtractionError(
                    "Embedding contains non-finite values", modality=modality
                )

        logger.debug(
            "Face observed",
            modality=modality,
            box=box,
            landmark_groups=len(landmarks),
            embedding_dim=None if embedding is None else int(embedding.size),
        )

        return FaceObservation(
            box=box, landmarks=landmarks, embedding=embedding, faces_detected=len(boxes)
        )

    except FeatureExtractionError:
        raise
    except Exception as e:
        raise FeatureExtractionError(
            f"Unexpected error during face analysis: {str(e)}", modality=modality
        ) from e


def observe_face_multi_pass(
    analyzer: FaceAnalyzer,
    image: np.ndarray,
    modality: str,
    factors: Sequence[float] = DETECTION_UPSCALE_FACTORS,
) -> Tuple[np.ndarray, FaceObservation]:
    """
    Observe the dominant face, retrying on enlarged copies of the capture.

    Returns
    -------
    Tuple[np.ndarray, FaceObservation]
        The image the face was found in and its observation; box and
        landmarks are in that image's coordinates.

    Raises
    ------
    FeatureExtractionError
        The error of the last pass when every pass failed.
    """
    last_error: Optional[FeatureExtractionError] = None
    tried = set()

    for factor in factors:
        candidate = image if factor <= 1.0 else upscale(image, factor)
        if candidate.shape in tried:
            continue
        tried.add(candidate.shape)

        try:
            observation = observe_face(analyzer, candidate, modality)
        except FeatureExtractionError as e:
            last_error = e
            logger.debug(
                "Face detection pass failed",
                modality=modality,
                factor=factor,
                error=e.message,
            )
            continue

        if candidate is not image:
            logger.info(
                "Face found on enlarged capture",
                modality=modality,
                shape=candidate.shape[:2],
            )
        return candidate, observation

    raise last_error or FeatureExtractionError(
        f"No face detected in {modality} image", modality=modality
    )


@dataclass
class DocumentRegion:
    """Bounding region of an identity document in a photo."""

    x: int
    y: int
    width: int
    height: int
    area_ratio: float
    touches_border: bool
    is_quadrilateral: bool


def locate_document(image: np.ndarray) -> Optional[DocumentRegion]:
    """
    Locate the largest card-like contour in a document photo.

    Returns
    -------
    Optional[DocumentRegion]
        The document region, or ``None`` when no sufficiently large contour
        is present.
    """
    gray = cv2.GaussianBlur(to_gray(image), (5, 5), 0)
    edges = cv2.Canny(gray, 50, 150)
    edges = cv2.dilate(edges, np.ones((3, 3), np.uint8), iterations=2)

    contours, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    if not contours:
        return None

    frame_h, frame_w = gray.shape
    contour = max(contours, key=cv2.contourArea)
    x, y, w, h = cv2.boundingRect(contour)
    area_ratio = (w * h) / float(frame_w * frame_h)

    if area_ratio < MIN_DOCUMENT_RATIO:
        return None

    perimeter = cv2.arcLength(contour, True)
    approx = cv2.approxPolyDP(contour, 0.02 * perimeter, True)
    margin = 2
    touches_border = (
        x <= margin or y <= margin or x + w >= frame_w - margin or y + h >= frame_h - margin
    )

    return DocumentRegion(
        x=x,
        y=y,
        width=w,
        height=h,
        area_ratio=float(area_ratio),
        touches_border=bool(touches_border),
        is_quadrilateral=len(approx) == 4,
    )


@dataclass
class FaceSample:
    """
    A preprocessed capture ready for matching.

    Parameters
    ----------
    modality : str
        ``"selfie"`` or ``"document"``.
    image : np.ndarray
        Preprocessed BGR image.
    observation : FaceObservation
        Dominant face with landmarks and embedding.
    crop : np.ndarray
        Square face crop used by the pixel based comparators.
    descriptors : List[np.ndarray]
        Embeddings of every view of the face, the plain view first.
    """

    modality: str
    image: np.ndarray
    observation: FaceObservation
    crop: np.ndarray
    descriptors: List[np.ndarray] = field(default_factory=list)

    @property
    def embedding(self) -> np.ndarray:
        if self.observation.embedding is None:
            raise FeatureExtractionError(
                f"No embedding available for {self.modality} sample", modality=self.modality
            )
        return self.observation.embedding

    @property
    def candidate_embeddings(self) -> List[np.ndarray]:
        if self.descriptors:
            return list(self.descriptors)
        if self.observation.embedding is not None:
            return [self.observation.embedding]
        return []

    def with_embedding(self, embedding: np.ndarray) -> "FaceSample":
        return replace(self, observation=replace(self.observation, embedding=embedding))


def prepare_sample(analyzer: FaceAnalyzer, image: np.ndarray, modality: str) -> FaceSample:
    """
    Preprocess a capture, observe its face, describe it and crop it.

    Raises
    ------
    FeatureExtractionError
        If no usable face is found.
    """
    if modality == "document":
        processed = preprocess_document(image)
    else:
        processed = preprocess_selfie(image)

    processed, observation = observe_face_multi_pass(analyzer, processed, modality)
    descriptors = [observation.embedding] + analyzer.alternate_embeddings(processed, observation)

    logger.debug("Face sample prepared", modality=modality, descriptors=len(descriptors))

    return FaceSample(
        modality=modality,
        image=processed,
        observation=observation,
        crop=crop_face(processed, observation.box),
        descriptors=descriptors,
    )


def select_best_pair(selfie: FaceSample, document: FaceSample) -> Tuple[FaceSample, FaceSample]:
    """
    Use the closest pair of descriptors across the two samples.

    Every selfie view is compared with every document view by euclidean
    distance; the samples are returned with the winning embeddings set.
    Samples without descriptors are returned unchanged.
    """
    best: Optional[Tuple[float, np.ndarray, np.ndarray]] = None
    for selfie_embedding in selfie.candidate_embeddings:
        for document_embedding in document.candidate_embeddings:
            distance = float(np.linalg.norm(selfie_embedding - document_embedding))
            if best is None or distance < best[0]:
                best = (distance, selfie_embedding, document_embedding)

    if best is None:
        return selfie, document

    logger.debug(
        "Best descriptor pair selected",
        distance=best[0],
        pairs=len(selfie.candidate_embeddings) * len(document.candidate_embeddings),
    )
    return selfie.with_embedding(best[1]), document.with_embedding(best[2])
