"""
Constants and calibration parameters for the IDVERIFY system.

This module centralizes the fixed parameters of the decision core: the
quality gate floor, the per-scorer calibration of the embedding matchers,
the ensemble reliability weights and the adaptive threshold coefficients.
Values that operators are expected to tune are re-exported through
``idverify.config`` where they can be overridden from the environment.
"""

from typing import Dict, Final, Tuple

# =============================================================================
# Quality Gate
# =============================================================================

# Captures scoring below this value (0-100) are rejected before matching
QUALITY_ACCEPTANCE_FLOOR: Final[float] = 50.0

# Document auto-capture fires once quality reaches this value
DOCUMENT_AUTO_CAPTURE_QUALITY: Final[float] = 75.0

# Face box area relative to frame, outside of which the face is not fully visible
MIN_FACE_RATIO: Final[float] = 0.04
MAX_FACE_RATIO: Final[float] = 0.70

# Maximum offset of the face centre from the frame centre (fraction of frame)
MAX_CENTER_OFFSET: Final[float] = 0.20

# Mean luminance band considered well lit (0-255)
MIN_GOOD_BRIGHTNESS: Final[float] = 60.0
MAX_GOOD_BRIGHTNESS: Final[float] = 200.0

# Laplacian variance below which an image is considered out of focus
MIN_FOCUS_VARIANCE: Final[float] = 100.0

# Share of saturated pixels above which a document capture has glare
MAX_GLARE_RATIO: Final[float] = 0.05
GLARE_LUMINANCE: Final[int] = 245

# Document region area relative to frame
MIN_DOCUMENT_RATIO: Final[float] = 0.20

# =============================================================================
# Embedding Scorers
# =============================================================================

# TripletLoss (FaceNet) margin and exponential decay of the euclidean distance
TRIPLET_MARGIN: Final[float] = 0.2
TRIPLET_DECAY: Final[float] = 1.0

# ArcFace additive angular margin (radians) and logit scale
ARCFACE_SCALE: Final[float] = 64.0
ARCFACE_MARGIN: Final[float] = 0.5

# CosFace additive cosine margin and logit scale
COSFACE_SCALE: Final[float] = 64.0
COSFACE_MARGIN: Final[float] = 0.35

# SphereFace multiplicative angular margin and logit scale
SPHEREFACE_SCALE: Final[float] = 64.0
SPHEREFACE_MARGIN: Final[float] = 1.35

# Logits are divided by this temperature before the sigmoid
LOGIT_TEMPERATURE: Final[float] = 10.0

# Procrustes disparity of the landmark sets is mapped to exp(-scale * disparity)
LANDMARK_DISPARITY_SCALE: Final[float] = 40.0

# LBP texture descriptor neighbourhood
LBP_POINTS: Final[int] = 8
LBP_RADIUS: Final[float] = 1.0

# Margin between a scorer's score and its own threshold
HIGH_CONFIDENCE_MARGIN: Final[float] = 0.15
MEDIUM_CONFIDENCE_MARGIN: Final[float] = 0.05

# =============================================================================
# Ensemble Consensus
# =============================================================================

EMBEDDING_SCORERS: Final[Tuple[str, ...]] = ("triplet", "arcface", "cosface", "sphereface")

# Reliability weights of the embedding scorers
DEFAULT_ENSEMBLE_WEIGHTS: Final[Dict[str, float]] = {
    "arcface": 0.30,
    "cosface": 0.25,
    "sphereface": 0.20,
    "triplet": 0.25,
}

# Share of the weighted score taken from the embedding scorers; the rest
# comes from the mean of the classical comparator similarities
EMBEDDING_BLEND: Final[float] = 0.85

# Adaptive threshold, 0-100 scale
BASELINE_THRESHOLD: Final[float] = 70.0
QUALITY_PENALTY: Final[float] = 0.15
DISPERSION_PENALTY: Final[float] = 0.20
THRESHOLD_MIN: Final[float] = 55.0
THRESHOLD_MAX: Final[float] = 90.0

# Minimum number of embedding scorers for an automated decision
MIN_SCORERS: Final[int] = 2

# A high-confidence pass must clear the threshold by at least this much
HIGH_CONFIDENCE_LEAD: Final[float] = 10.0

# =============================================================================
# Scorer Pool
# =============================================================================

SCORER_TIMEOUT_SECONDS: Final[float] = 5.0
MAX_SCORER_WORKERS: Final[int] = 10

# =============================================================================
# Image Preprocessing
# =============================================================================

FACE_CROP_SIZE: Final[int] = 224
FACE_CROP_PADDING: Final[float] = 0.3
TARGET_CENTER_BRIGHTNESS: Final[float] = 130.0
ILLUMINATION_FACTOR_RANGE: Final[Tuple[float, float]] = (0.6, 1.8)

# Photometric quality (0-100) below which a capture is unusable
MIN_PHOTOMETRIC_QUALITY: Final[Dict[str, float]] = {"selfie": 15.0, "document": 10.0}

# =============================================================================
# Face Extraction
# =============================================================================

# Detection passes: the capture as is, then enlarged for small portraits
DETECTION_UPSCALE_FACTORS: Final[Tuple[float, ...]] = (1.0, 2.0, 3.5)
MAX_UPSCALE_EDGE: Final[int] = 2000

# Eye-line tilt (radians) above which an aligned view is added
MIN_ALIGNMENT_ANGLE: Final[float] = 0.02

# Paddings of the extra face crops described for best-pair matching
DESCRIPTOR_PADDINGS: Final[Tuple[float, ...]] = (0.15, 0.30, 0.40)

# =============================================================================
# Persistence
# =============================================================================

CURRENT_SESSION_KEY: Final[str] = "currentVerificationSession"
HISTORY_KEY: Final[str] = "verificationHistory"

AUDIT_RETRY_ATTEMPTS: Final[int] = 3
AUDIT_RETRY_DELAY: Final[float] = 0.5
AUDIT_RETRY_BACKOFF: Final[float] = 2.0

DEFAULT_SESSION_CACHE_FILE: Final[str] = "session_cache.json"
DEFAULT_AUDIT_FILE: Final[str] = "face_verifications.json"

# Accepted capture file extensions for the command-line front end
IMAGE_EXTENSIONS: Final[tuple] = (".jpg", ".jpeg", ".png", ".bmp", ".webp")
