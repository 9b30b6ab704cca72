"""
Image decoding and preprocessing for the IDVERIFY system.

Captures arrive as encoded bytes (JPEG/PNG). This module decodes them into
BGR ``uint8`` arrays, computes basic photometric quality metrics and applies
the modality specific preprocessing used before matching: selfies get a
light histogram equalisation and illumination correction, document photos
additionally get glare suppression, denoising and sharpening to compensate
for printed and laminated portraits.
"""

from dataclasses import dataclass, field
from typing import List, Tuple

import cv2
import numpy as np
import structlog

from .constants import (
    FACE_CROP_PADDING,
    FACE_CROP_SIZE,
    GLARE_LUMINANCE,
    ILLUMINATION_FACTOR_RANGE,
    MAX_UPSCALE_EDGE,
    TARGET_CENTER_BRIGHTNESS,
)
from .exceptions import ImageDecodeError

# Initialize structured logger
logger = structlog.get_logger(__name__)

# (top, right, bottom, left), the face_recognition box convention
Box = Tuple[int, int, int, int]


@dataclass
class ImageQualityMetrics:
    """Photometric quality of a capture, all ratios in [0, 1]."""

    brightness: float
    contrast: float
    sharpness: float
    overall_quality: float
    issues: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)


def decode_image(data: bytes) -> np.ndarray:
    """
    Decode encoded image bytes into a BGR array.

    Raises
    ------
    ImageDecodeError
        If the bytes are empty or not a supported image format.
    """
    if not data:
        raise ImageDecodeError("Empty image payload", byte_count=0)

    buffer = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None:
        raise ImageDecodeError(
            "Failed to decode image. Payload may be corrupted or an unsupported format",
            byte_count=len(data),
        )
    return image


def encode_image(image: np.ndarray, extension: str = ".jpg") -> bytes:
    ok, buffer = cv2.imencode(extension, image)
    if not ok:
        raise ImageDecodeError(f"Failed to encode image as {extension}")
    return buffer.tobytes()


def to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def laplacian_variance(gray: np.ndarray) -> float:
    """Variance of the Laplacian, a standard focus measure."""
    return float(cv2.Laplacian(gray, cv2.CV_64F).var())


def analyze_image_quality(image: np.ndarray) -> ImageQualityMetrics:
    """
    Compute brightness, contrast and sharpness of a capture.

    Parameters
    ----------
    image : np.ndarray
        BGR or grayscale image.

    Returns
    -------
    ImageQualityMetrics
        Metrics plus user-facing issues and suggestions.
    """
    gray = to_gray(image).astype(np.float64)
    issues: List[str] = []
    suggestions: List[str] = []

    brightness = float(gray.mean() / 255.0)
    dark_ratio = float(np.mean(gray < 50))
    bright_ratio = float(np.mean(gray > 200))

    if brightness < 0.3:
        issues.append("Image too dark")
        suggestions.append("Increase the ambient lighting")
    elif brightness > 0.7:
        issues.append("Image too bright")
        suggestions.append("Avoid direct light on the camera")

    if dark_ratio > 0.3 or bright_ratio > 0.3:
        issues.append("Uneven lighting")
        suggestions.append("Use uniform lighting")

    contrast = min(float(gray.std()) / 80.0, 1.0)

    # Mean absolute 4-neighbour Laplacian, scaled to [0, 1]
    laplacian = np.abs(cv2.Laplacian(gray, cv2.CV_64F))
    sharpness = min(float(laplacian.mean()) / 50.0, 1.0)

    if sharpness < 0.3:
        issues.append("Image out of focus")
        suggestions.append("Hold the device steady")

    brightness_score = 1.0 - abs(brightness - 0.5) * 2.0
    overall = brightness_score * 30.0 + contrast * 35.0 + sharpness * 35.0

    return ImageQualityMetrics(
        brightness=brightness,
        contrast=contrast,
        sharpness=sharpness,
        overall_quality=float(np.clip(overall, 0.0, 100.0)),
        issues=issues,
        suggestions=suggestions,
    )


def equalize_histogram(image: np.ndarray, clip_limit: float = 2.0) -> np.ndarray:
    """Contrast limited adaptive histogram equalisation on the luminance channel."""
    clahe = cv2.createCLAHE(clipLimit=clip_limit, tileGridSize=(8, 8))
    if image.ndim == 2:
        return clahe.apply(image)

    lab = cv2.cvtColor(image, cv2.COLOR_BGR2LAB)
    lab[:, :, 0] = clahe.apply(lab[:, :, 0])
    return cv2.cvtColor(lab, cv2.COLOR_LAB2BGR)


def normalize_illumination(image: np.ndarray) -> np.ndarray:
    """
    Scale brightness so the central region (where the face usually is)
    approaches a fixed target luminance.
    """
    gray = to_gray(image)
    height, width = gray.shape
    center = gray[int(height * 0.2) : int(height * 0.8), int(width * 0.25) : int(width * 0.75)]
    center_brightness = float(center.mean()) if center.size else float(gray.mean())

    low, high = ILLUMINATION_FACTOR_RANGE
    factor = np.clip(TARGET_CENTER_BRIGHTNESS / max(center_brightness, 1.0), low, high)
    return cv2.convertScaleAbs(image, alpha=float(factor), beta=0)


def enhance_contrast(image: np.ndarray, factor: float = 1.2) -> np.ndarray:
    """Stretch each channel around its mean."""
    pixels = image.astype(np.float32)
    means = pixels.reshape(-1, pixels.shape[-1] if pixels.ndim == 3 else 1).mean(axis=0)
    stretched = means + (pixels - means) * factor
    return np.clip(stretched, 0, 255).astype(np.uint8)


def remove_glare(image: np.ndarray) -> np.ndarray:
    """Inpaint saturated specular highlights (laminated documents)."""
    gray = to_gray(image)
    mask = (gray >= GLARE_LUMINANCE).astype(np.uint8) * 255
    if not mask.any():
        return image
    mask = cv2.dilate(mask, np.ones((3, 3), np.uint8), iterations=1)
    return cv2.inpaint(image, mask, 3, cv2.INPAINT_TELEA)


def denoise(image: np.ndarray, sigma_space: float = 2, sigma_color: float = 25) -> np.ndarray:
    """Edge preserving bilateral filter."""
    return cv2.bilateralFilter(image, 5, sigma_color, sigma_space)


def sharpen(image: np.ndarray, amount: float = 0.5) -> np.ndarray:
    """Unsharp mask."""
    blurred = cv2.GaussianBlur(image, (0, 0), 1.0)
    return cv2.addWeighted(image, 1.0 + amount, blurred, -amount, 0)


def preprocess_selfie(image: np.ndarray) -> np.ndarray:
    processed = equalize_histogram(image, 2.0)
    processed = normalize_illumination(processed)
    return enhance_contrast(processed, 1.15)


def preprocess_document(image: np.ndarray) -> np.ndarray:
    """Document photos need more aggressive processing than selfies."""
    processed = remove_glare(image)
    processed = denoise(processed, 2, 25)
    processed = equalize_histogram(processed, 2.5)
    processed = normalize_illumination(processed)
    processed = enhance_contrast(processed, 1.3)
    return sharpen(processed, 0.3)


def padded_crop(
    image: np.ndarray,
    box: Box,
    padding: float = FACE_CROP_PADDING,
    size: int = FACE_CROP_SIZE,
) -> Tuple[np.ndarray, Box]:
    """
    Crop a padded region around a face box and resize it to a square.

    Parameters
    ----------
    image : np.ndarray
        Source image.
    box : Box
        Face box as (top, right, bottom, left).
    padding : float, default=FACE_CROP_PADDING
        Padding added on each side, as a fraction of the box size.
    size : int, default=FACE_CROP_SIZE
        Output edge length in pixels.

    Returns
    -------
    Tuple[np.ndarray, Box]
        The resized crop and the face box in crop coordinates.
    """
    top, right, bottom, left = box
    height, width = image.shape[:2]
    box_w, box_h = right - left, bottom - top

    pad_x, pad_y = int(box_w * padding), int(box_h * padding)
    x0, y0 = max(0, left - pad_x), max(0, top - pad_y)
    x1, y1 = min(width, right + pad_x), min(height, bottom + pad_y)

    crop = image[y0:y1, x0:x1]
    if crop.size == 0:
        logger.warning("Empty face crop, using full frame", box=box, image_shape=image.shape)
        crop = image
        x0, y0, x1, y1 = 0, 0, width, height

    scale_x, scale_y = size / float(x1 - x0), size / float(y1 - y0)
    crop_box = (
        int(round((top - y0) * scale_y)),
        int(round((right - x0) * scale_x)),
        int(round((bottom - y0) * scale_y)),
        int(round((left - x0) * scale_x)),
    )
    return cv2.resize(crop, (size, size), interpolation=cv2.INTER_AREA), crop_box


def crop_face(
    image: np.ndarray,
    box: Box,
    padding: float = FACE_CROP_PADDING,
    size: int = FACE_CROP_SIZE,
) -> np.ndarray:
    """Padded square face crop, see ``padded_crop``."""
    return padded_crop(image, box, padding, size)[0]


def upscale(image: np.ndarray, factor: float, max_edge: int = MAX_UPSCALE_EDGE) -> np.ndarray:
    """
    Enlarge an image so small faces become detectable.

    The factor is reduced so the longer edge never exceeds ``max_edge``;
    the image is returned unchanged when no enlargement is possible.
    """
    height, width = image.shape[:2]
    factor = min(factor, max_edge / float(max(height, width)))
    if factor <= 1.0:
        return image
    size = (int(round(width * factor)), int(round(height * factor)))
    return cv2.resize(image, size, interpolation=cv2.INTER_CUBIC)


def rotate_image(
    image: np.ndarray, angle_degrees: float, center: Tuple[float, float]
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Rotate an image counter-clockwise around ``center``, keeping its size.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        The rotated image and the 2x3 affine matrix that was applied.
    """
    height, width = image.shape[:2]
    matrix = cv2.getRotationMatrix2D((float(center[0]), float(center[1])), angle_degrees, 1.0)
    rotated = cv2.warpAffine(
        image, matrix, (width, height), flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE
    )
    return rotated, matrix
