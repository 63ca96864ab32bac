"""
Configuration for the parcel condition verification pipeline.

All thresholds, limits, and constants in one place.
Change here, not in business logic modules.
"""

import os

# --- Photo Validation ---

MAX_FILE_SIZE_MB: float = 10.0
MIN_RESOLUTION: int = 320
ALLOWED_FORMATS: set[str] = {"JPEG", "PNG"}

# --- Photo Quality Scoring (0-100 scale) ---

# Laplacian variance that maps to a blur score of 100
SHARPNESS_CEILING: float = 500.0

# --- Quality Gate ---

MIN_BLUR_SCORE: float = 60.0
MIN_EXPOSURE_SCORE: float = 50.0

# Ruler confidence must be strictly above the fallback confidence
SCALE_REFERENCE_MIN_CONFIDENCE: float = 0.3

DEFICIENCY_MISSING_SCALE = "missing scale reference"
DEFICIENCY_FRONT_BLUR = "front blur too low"
DEFICIENCY_SIDE_BLUR = "side blur too low"
DEFICIENCY_FRONT_EXPOSURE = "front exposure too low"
DEFICIENCY_SIDE_EXPOSURE = "side exposure too low"

DEFICIENCY_FEEDBACK: dict[str, str] = {
    DEFICIENCY_MISSING_SCALE: "FRONT shot must show the printed ruler label clearly",
    DEFICIENCY_FRONT_BLUR: "FRONT shot needs better focus",
    DEFICIENCY_SIDE_BLUR: "SIDE shot needs better focus",
    DEFICIENCY_FRONT_EXPOSURE: "FRONT shot needs better lighting",
    DEFICIENCY_SIDE_EXPOSURE: "SIDE shot needs better lighting",
}

# --- Ruler Calibration ---

# 4x3 inch shipping label
MARKER_WIDTH_MM: float = 101.6
MARKER_HEIGHT_MM: float = 76.2

# Area band applies to the front photo scaled down to MARKER_WORKING_WIDTH
MARKER_WORKING_WIDTH: int = 800
MARKER_MIN_AREA_PX: float = 1000.0
MARKER_MAX_AREA_PX: float = 50000.0
MARKER_MIN_EXTENT: float = 0.7
MARKER_MAX_CONFIDENCE: float = 0.95
POLY_EPSILON_RATIO: float = 0.02

BLUR_KERNEL: tuple[int, int] = (5, 5)
CANNY_LOW: int = 50
CANNY_HIGH: int = 150

# ~96 DPI expressed in pixels per mm
FALLBACK_PIXELS_PER_MM: float = 3.78
FALLBACK_RULER_CONFIDENCE: float = 0.3

# --- Dimensional Weight ---

# L x W x H in mm divided by this gives kg. Kept exact for compatibility.
DIM_WEIGHT_DIVISOR: float = 5_000_000.0

# --- Vision Backend ---

VISION_READY_TIMEOUT_S: float = 10.0
ANALYSIS_WORKERS: int = 2

# Estimated (non-vision) measurement bounds
ESTIMATE_LENGTH_MM: tuple[float, float] = (150.0, 350.0)
ESTIMATE_WIDTH_MM: tuple[float, float] = (100.0, 250.0)
ESTIMATE_HEIGHT_MM: tuple[float, float] = (50.0, 150.0)
ESTIMATE_PIXELS_PER_MM: tuple[float, float] = (3.5, 4.5)
ESTIMATE_CONFIDENCE: tuple[float, float] = (0.4, 0.6)

# --- Handover Comparison ---

COMPARISON_WIDTH: int = 640
ORB_FEATURES: int = 1000
ORB_RATIO_THRESH: float = 0.75
MIN_ALIGNMENT_MATCHES: int = 10
RANSAC_REPROJ_THRESH: float = 4.0
MIN_ALIGNMENT_SCORE: float = 0.3

CLAHE_CLIP_LIMIT: float = 2.0
CLAHE_TILE_GRID: tuple[int, int] = (8, 8)

SSIM_WINDOW: tuple[int, int] = (11, 11)
SSIM_SIGMA: float = 1.5
CHANGE_SSIM_THRESHOLD: float = 0.6
# Cells with less aligned coverage than this are not judged
MIN_CELL_COVERAGE: float = 0.5

GRID_LABELS: list[list[str]] = [
    ["top-left", "top-center", "top-right"],
    ["middle-left", "center", "middle-right"],
    ["bottom-left", "bottom-center", "bottom-right"],
]

# --- Damage Suggestions (advisory) ---

DAMAGE_MODEL_PATH: str = os.environ.get("DAMAGE_MODEL_PATH", "/var/task/models/parcel_damage_v1.onnx")
DAMAGE_MODEL_PATH_LOCAL: str = "models/parcel_damage_v1.onnx"
MODEL_INPUT_SIZE: tuple[int, int] = (224, 224)
DAMAGE_CLASS_LABELS: dict[int, str] = {
    0: "dent",
    1: "tear",
    2: "wet",
    3: "crushed_corner",
    4: "scratches",
    5: "stains",
    6: "broken_seal",
    7: "none",
}
SUGGESTION_MIN_CONFIDENCE: float = 0.3
REVIEW_FLAG_CONFIDENCE: float = 0.7
MODEL_PROVIDER: str = "onnx-parcel-damage-v1"

# --- Storage ---

CONDITIONS_TABLE: str = os.environ.get("CONDITIONS_TABLE", "parcel_conditions")
PHOTO_BUCKET: str = os.environ.get("PHOTO_BUCKET", "parcel-condition-photos")
PHOTO_KEY_PREFIX: str = "conditions/"
UPLOAD_URL_EXPIRY_S: int = int(os.environ.get("UPLOAD_URL_EXPIRY_S", "900"))
UPLOAD_WORKERS: int = 2

# --- Logging ---

LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")
