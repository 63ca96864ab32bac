# In lambda/ folder

import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

# Add lambda/ directory to Python path
lambda_dir = Path(__file__).parent.parent
sys.path.insert(0, str(lambda_dir))


# ============================================================================
# SYNTHETIC PHOTOS
# ============================================================================

PIXELS_PER_MM = 2.0
BACKGROUND = 20
PACKAGE_GRAY = 180
MARKER_WHITE = 255


def encode_png(image: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", image)
    assert ok
    return buf.tobytes()


def add_noise(image: np.ndarray, sigma: float = 10.0, seed: int = 0) -> np.ndarray:
    """Sensor-like noise; keeps the Laplacian blur score high."""
    rng = np.random.default_rng(seed)
    noisy = image.astype(np.float64) + rng.normal(0.0, sigma, image.shape)
    return np.clip(noisy, 0, 255).astype(np.uint8)


def render_front(
    package_px=(400, 300),
    marker=True,
    ppm=PIXELS_PER_MM,
    size=(800, 600),
    noise=True,
) -> bytes:
    """
    Top view: package box plus a 4x3 inch label lying beside it.
    Positions scale with the canvas; (300, 150) and (40, 40) at 800x600.
    """
    w, h = size
    img = np.full((h, w, 3), BACKGROUND, dtype=np.uint8)

    pw, ph = package_px
    px, py = 3 * w // 8, h // 4
    cv2.rectangle(img, (px, py), (px + pw - 1, py + ph - 1), (PACKAGE_GRAY,) * 3, -1)

    if marker:
        mx, my = w // 20, h // 15
        mw = int(round(101.6 * ppm))
        mh = int(round(76.2 * ppm))
        cv2.rectangle(img, (mx, my), (mx + mw - 1, my + mh - 1), (MARKER_WHITE,) * 3, -1)

    if noise:
        img = add_noise(img, seed=1)
    return encode_png(img)


def render_side(package_px=(400, 160), size=(800, 600), noise=True) -> bytes:
    """Side profile: package box only."""
    w, h = size
    img = np.full((h, w, 3), BACKGROUND, dtype=np.uint8)
    pw, ph = package_px
    px, py = w // 4, 11 * h // 30
    cv2.rectangle(img, (px, py), (px + pw - 1, py + ph - 1), (PACKAGE_GRAY,) * 3, -1)
    if noise:
        img = add_noise(img, seed=2)
    return encode_png(img)


def render_texture(size=(640, 480), seed: int = 7) -> np.ndarray:
    """Blotchy grayscale texture with plenty of ORB features."""
    w, h = size
    rng = np.random.default_rng(seed)
    noise = rng.integers(0, 256, (h, w), dtype=np.uint8)
    return cv2.GaussianBlur(noise, (5, 5), 0)


@pytest.fixture
def front_bytes():
    return render_front()


@pytest.fixture
def side_bytes():
    return render_side()


@pytest.fixture
def front_without_marker_bytes():
    return render_front(marker=False)
