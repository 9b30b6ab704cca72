"""
Capture quality gate for the IDVERIFY system.

This module scores a single captured image (selfie or document photo) for
fitness-for-matching. Each modality has its own boolean sub-checks backed
by continuous component scores; the overall quality is the equally weighted
mean of the components, scaled to 0-100. Hard failures (nothing detected,
bad lighting on a selfie, glare on a document) cap the quality below the
acceptance floor so that such captures are always rejected.

Captures below the acceptance floor must be re-captured and never reach the
scorer pool.
"""

from typing import Dict, List, Optional, Tuple

import numpy as np
import structlog

from . import config
from .constants import (
    MAX_CENTER_OFFSET,
    MAX_FACE_RATIO,
    MAX_GLARE_RATIO,
    MAX_GOOD_BRIGHTNESS,
    MIN_FACE_RATIO,
    MIN_FOCUS_VARIANCE,
    MIN_GOOD_BRIGHTNESS,
    MIN_PHOTOMETRIC_QUALITY,
    GLARE_LUMINANCE,
)
from .data_models import Modality, QualityAssessment
from .detection import FaceAnalyzer, FaceRecognitionAnalyzer, largest_box, locate_document
from .exceptions import CaptureRejected, IdVerifyError
from .imaging import analyze_image_quality, laplacian_variance, to_gray

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Sub-checks whose failure caps the quality below the acceptance floor
CRITICAL_CHECKS: Dict[Modality, Tuple[str, ...]] = {
    Modality.SELFIE: ("good_lighting",),
    Modality.DOCUMENT: ("no_glare",),
}

SELFIE_MESSAGES: Dict[str, str] = {
    "fully_visible": "Move back so your whole face is in the frame",
    "centered": "Center your face in the frame",
    "good_lighting": "Find a place with better lighting",
    "looking_at_camera": "Look straight at the camera",
}

DOCUMENT_MESSAGES: Dict[str, str] = {
    "fully_visible": "Adjust the angle so the whole document is visible",
    "good_focus": "Bring the document closer and hold it steady",
    "no_glare": "Tilt the document to avoid reflections",
}

UNUSABLE_IMAGE_MESSAGE = "Image quality too low, take the photo again"


def _tier(value: float, bounds: List[Tuple[float, float]], top: float = 1.0) -> float:
    """Map ``value`` to the score of the first bound it falls below."""
    for limit, score in bounds:
        if value < limit:
            return score
    return top


class QualityGate:
    """
    Per-capture quality assessment engine.

    Parameters
    ----------
    face_analyzer : Optional[FaceAnalyzer], default=None
        Face analysis backend for selfies. A ``FaceRecognitionAnalyzer`` is
        created on first use when omitted.
    acceptance_floor : float, default=config.ACCEPTANCE_FLOOR
        Minimum quality (0-100) for a capture to be accepted.
    strict_mode : bool, default=False
        Apply a 10% penalty to every quality score.

    Examples
    --------
    >>> gate = QualityGate()
    >>> assessment = gate.assess(image, Modality.SELFIE)
    >>> gate.ensure_acceptable(assessment)
    """

    def __init__(
        self,
        face_analyzer: Optional[FaceAnalyzer] = None,
        acceptance_floor: float = config.ACCEPTANCE_FLOOR,
        strict_mode: bool = False,
    ) -> None:
        self._face_analyzer = face_analyzer
        self.acceptance_floor = acceptance_floor
        self.strict_mode = strict_mode

        logger.info(
            "QualityGate initialized",
            acceptance_floor=acceptance_floor,
            strict_mode=strict_mode,
        )

    @property
    def face_analyzer(self) -> FaceAnalyzer:
        if self._face_analyzer is None:
            self._face_analyzer = FaceRecognitionAnalyzer()
        return self._face_analyzer

    def assess(self, image: np.ndarray, modality: Modality) -> QualityAssessment:
        """
        Assess a decoded capture.

        Parameters
        ----------
        image : np.ndarray
            BGR capture.
        modality : Modality
            ``SELFIE`` or ``DOCUMENT``.

        Returns
        -------
        QualityAssessment
            Sub-checks, quality score and message.

        Raises
        ------
        IdVerifyError
            If the assessment itself fails unexpectedly.
        """
        modality = Modality(modality)
        logger.debug("Starting quality assessment", modality=modality.value)

        try:
            if modality is Modality.SELFIE:
                assessment = self._assess_selfie(image)
            else:
                assessment = self._assess_document(image)
        except IdVerifyError:
            raise
        except Exception as e:
            raise IdVerifyError(
                f"Unexpected error during {modality.value} quality assessment: {str(e)}",
                context={"modality": modality.value},
                error_code="QUALITY_001",
            ) from e

        logger.info(
            "Quality assessment completed",
            modality=modality.value,
            quality=assessment.quality,
            failed_checks=assessment.failed_checks,
            components=assessment.components,
        )
        return assessment

    def ensure_acceptable(self, assessment: QualityAssessment) -> QualityAssessment:
        """
        Reject captures below the acceptance floor.

        Raises
        ------
        CaptureRejected
            If nothing was detected or the quality is below the floor.
        """
        if not assessment.is_acceptable(self.acceptance_floor):
            logger.warning(
                "Capture rejected by quality gate",
                modality=assessment.modality.value,
                quality=assessment.quality,
                acceptance_floor=self.acceptance_floor,
                reason=assessment.message,
            )
            raise CaptureRejected(
                f"{assessment.modality.value.capitalize()} quality {assessment.quality:.1f} "
                f"below acceptance floor {self.acceptance_floor}",
                modality=assessment.modality.value,
                quality=assessment.quality,
                acceptance_floor=self.acceptance_floor,
                reason=assessment.message or None,
            )
        return assessment

    def assess_and_accept(self, image: np.ndarray, modality: Modality) -> QualityAssessment:
        return self.ensure_acceptable(self.assess(image, modality))

    def _finalize(
        self,
        modality: Modality,
        checks: Dict[str, bool],
        components: Dict[str, float],
        messages: Dict[str, str],
        success_message: str,
        image: np.ndarray,
    ) -> QualityAssessment:
        quality = float(np.mean(list(components.values()))) * 100.0

        if self.strict_mode:
            quality *= 0.9

        photometric = analyze_image_quality(image)
        unusable = photometric.overall_quality < MIN_PHOTOMETRIC_QUALITY[modality.value]

        if unusable or any(not checks[name] for name in CRITICAL_CHECKS[modality]):
            quality = min(quality, max(0.0, self.acceptance_floor - 1.0))

        quality = float(np.clip(quality, 0.0, 100.0))

        failed = [name for name, passed in checks.items() if not passed]
        if failed:
            message = messages[failed[0]]
        elif unusable:
            message = (
                photometric.suggestions[0] if photometric.suggestions else UNUSABLE_IMAGE_MESSAGE
            )
        else:
            message = success_message

        if unusable:
            logger.warning(
                "Capture below photometric minimum",
                modality=modality.value,
                photometric_quality=photometric.overall_quality,
            )

        return QualityAssessment(
            modality=modality,
            detected=True,
            quality=round(quality, 2),
            message=message,
            components={k: round(v, 4) for k, v in components.items()},
            issues=photometric.issues,
            suggestions=photometric.suggestions,
            photometric={
                "brightness": round(photometric.brightness, 4),
                "contrast": round(photometric.contrast, 4),
                "sharpness": round(photometric.sharpness, 4),
                "overall_quality": round(photometric.overall_quality, 2),
            },
            **checks,
        )

    def _assess_selfie(self, image: np.ndarray) -> QualityAssessment:
        gray = to_gray(image)
        height, width = gray.shape

        boxes = self.face_analyzer.locate_faces(image)
        if not boxes:
            return QualityAssessment(
                modality=Modality.SELFIE,
                detected=False,
                quality=0.0,
                message="Position your face inside the frame",
                fully_visible=False,
                centered=False,
                good_lighting=False,
                looking_at_camera=False,
            )

        components: Dict[str, float] = {}
        components["detected"] = 1.0 if len(boxes) == 1 else 0.8

        box = largest_box(boxes)
        top, right, bottom, left = box
        face_w, face_h = right - left, bottom - top

        # Face size and containment
        face_ratio = (face_w * face_h) / float(width * height)
        inside = top >= 0 and left >= 0 and bottom <= height and right <= width
        size_ok = MIN_FACE_RATIO <= face_ratio <= MAX_FACE_RATIO
        if face_ratio < MIN_FACE_RATIO:
            components["fully_visible"] = 0.3
        elif face_ratio > MAX_FACE_RATIO:
            components["fully_visible"] = 0.6
        else:
            components["fully_visible"] = 1.0
        if not inside:
            components["fully_visible"] *= 0.5

        # Centering
        offset_x = abs((left + right) / 2.0 - width / 2.0) / width
        offset_y = abs((top + bottom) / 2.0 - height / 2.0) / height
        offset = max(offset_x, offset_y)
        components["centered"] = float(np.clip(1.0 - offset / (2 * MAX_CENTER_OFFSET), 0.0, 1.0))

        # Illumination of the face region
        roi = gray[max(0, top) : max(0, bottom), max(0, left) : max(0, right)]
        brightness = float(roi.mean()) if roi.size else 0.0
        if brightness < 30 or brightness > 220:
            components["good_lighting"] = 0.2
        elif brightness < MIN_GOOD_BRIGHTNESS or brightness > MAX_GOOD_BRIGHTNESS:
            components["good_lighting"] = 0.6
        else:
            components["good_lighting"] = 1.0

        # Frontal pose from eye level symmetry
        components["looking_at_camera"] = self._pose_score(image, box)

        checks = {
            "fully_visible": size_ok and inside,
            "centered": offset <= MAX_CENTER_OFFSET,
            "good_lighting": MIN_GOOD_BRIGHTNESS <= brightness <= MAX_GOOD_BRIGHTNESS,
            "looking_at_camera": components["looking_at_camera"] >= 0.7,
        }

        return self._finalize(
            Modality.SELFIE,
            checks,
            components,
            SELFIE_MESSAGES,
            "Perfect! Hold still",
            image,
        )

    def _pose_score(self, image: np.ndarray, box) -> float:
        try:
            landmarks = self.face_analyzer.landmarks(image, box)
        except Exception as e:
            logger.debug("Landmark detection failed, assuming frontal pose", error=str(e))
            return 0.7

        if "left_eye" not in landmarks or "right_eye" not in landmarks:
            return 0.7  # Assume reasonable pose if landmarks not detected

        left_eye = np.array(landmarks["left_eye"], dtype=float)
        right_eye = np.array(landmarks["right_eye"], dtype=float)
        eye_level_diff = abs(np.mean(left_eye[:, 1]) - np.mean(right_eye[:, 1]))
        eye_distance = np.linalg.norm(np.mean(left_eye, axis=0) - np.mean(right_eye, axis=0))

        if eye_distance == 0:
            return 0.5
        return float(np.clip(1.0 - (eye_level_diff / eye_distance) * 2, 0.0, 1.0))

    def _assess_document(self, image: np.ndarray) -> QualityAssessment:
        region = locate_document(image)
        if region is None:
            return QualityAssessment(
                modality=Modality.DOCUMENT,
                detected=False,
                quality=0.0,
                message="Position the document inside the frame",
                fully_visible=False,
                good_focus=False,
                no_glare=False,
            )

        gray = to_gray(image)
        roi = gray[region.y : region.y + region.height, region.x : region.x + region.width]

        components: Dict[str, float] = {"detected": 1.0}

        # Framing: inside the frame, card shaped, large enough
        size_score = _tier(region.area_ratio, [(0.35, 0.5), (0.5, 0.8)])
        components["fully_visible"] = float(
            np.mean(
                [
                    0.0 if region.touches_border else 1.0,
                    1.0 if region.is_quadrilateral else 0.5,
                    size_score,
                ]
            )
        )

        # Focus
        focus_variance = laplacian_variance(roi)
        components["good_focus"] = _tier(
            focus_variance, [(50, 0.1), (MIN_FOCUS_VARIANCE, 0.5), (200, 0.8)]
        )

        # Specular glare
        glare_ratio = float(np.mean(roi >= GLARE_LUMINANCE)) if roi.size else 1.0
        components["no_glare"] = float(
            np.clip(1.0 - glare_ratio / (2 * MAX_GLARE_RATIO), 0.0, 1.0)
        )

        checks = {
            "fully_visible": not region.touches_border,
            "good_focus": focus_variance >= MIN_FOCUS_VARIANCE,
            "no_glare": glare_ratio <= MAX_GLARE_RATIO,
        }

        return self._finalize(
            Modality.DOCUMENT,
            checks,
            components,
            DOCUMENT_MESSAGES,
            "Perfect! Capturing...",
            image,
        )


def assess_capture(
    image: np.ndarray, modality: Modality, face_analyzer: Optional[FaceAnalyzer] = None
) -> QualityAssessment:
    """
    Convenience function to assess a single capture with default settings.

    Examples
    --------
    >>> assessment = assess_capture(image, Modality.DOCUMENT)
    >>> print(f"Document quality: {assessment.quality:.1f}")
    """
    return QualityGate(face_analyzer=face_analyzer).assess(image, modality)
