"""
Handover comparison engine.

Compares the handover front photo against the arrival front photo of the
same order: lighting normalization, ORB + RANSAC alignment, then SSIM over
the aligned region and per-cell on a 3x3 grid. Cells below the change
threshold are reported as changed areas.
"""

import logging

import cv2
import numpy as np

from parcel_condition.models import ChangedArea, ChangeType, ComparisonResult
from parcel_condition.validator import decode_image
from parcel_condition.config import (
    COMPARISON_WIDTH,
    ORB_FEATURES,
    ORB_RATIO_THRESH,
    MIN_ALIGNMENT_MATCHES,
    RANSAC_REPROJ_THRESH,
    MIN_ALIGNMENT_SCORE,
    CLAHE_CLIP_LIMIT,
    CLAHE_TILE_GRID,
    SSIM_WINDOW,
    SSIM_SIGMA,
    CHANGE_SSIM_THRESHOLD,
    MIN_CELL_COVERAGE,
    GRID_LABELS,
)

logger = logging.getLogger(__name__)

_C1 = (0.01 * 255) ** 2
_C2 = (0.03 * 255) ** 2


def compare_conditions(
    arrival_front: bytes,
    handover_front: bytes,
    arrival_condition_id: str,
) -> ComparisonResult:
    """
    Compares arrival and handover photos.

    Undecodable photos cannot be compared; they are reported as a full
    change with zero alignment so the handover gets reviewed.
    """
    arrival = _prepare(decode_image(arrival_front, cv2.IMREAD_GRAYSCALE))
    handover = _prepare(decode_image(handover_front, cv2.IMREAD_GRAYSCALE))

    try:
        if arrival is None or handover is None:
            logger.warning("Comparison for %s skipped: photo could not be decoded", arrival_condition_id)
            return ComparisonResult(
                arrival_condition_id=arrival_condition_id,
                alignment_score=0.0,
                ssim_score=0.0,
                change_detected=True,
                lighting_adjusted=False,
                changed_areas=[
                    ChangedArea(area="center", change_type=ChangeType.POSITION_SHIFT, confidence=1.0)
                ],
            )

        handover = _resize_to(handover, arrival.shape)
        arrival_eq, handover_eq = normalize_lighting(arrival), normalize_lighting(handover)

        aligned, valid_mask, alignment_score = align_images(arrival_eq, handover_eq)
        ssim_map = ssim(arrival_eq, aligned)
        # SSIM windows straddling the warp border mix in blank pixels
        valid_mask = cv2.erode(valid_mask, np.ones(SSIM_WINDOW, dtype=np.uint8))

        ssim_score = _masked_mean(ssim_map, valid_mask)
        changed_areas = find_changed_areas(ssim_map, valid_mask, alignment_score)

        result = ComparisonResult(
            arrival_condition_id=arrival_condition_id,
            alignment_score=round(alignment_score, 4),
            ssim_score=round(_clamp(ssim_score, -1.0, 1.0), 4),
            change_detected=bool(changed_areas),
            lighting_adjusted=True,
            changed_areas=changed_areas,
        )
        if result.change_detected:
            logger.info(
                "Change detected against %s in %s",
                arrival_condition_id,
                ", ".join(a.area for a in changed_areas),
            )
        return result
    finally:
        arrival = handover = None


def normalize_lighting(gray: np.ndarray) -> np.ndarray:
    """CLAHE equalization so exposure differences do not read as damage."""
    clahe = cv2.createCLAHE(clipLimit=CLAHE_CLIP_LIMIT, tileGridSize=CLAHE_TILE_GRID)
    return clahe.apply(gray)


def align_images(reference: np.ndarray, moving: np.ndarray) -> tuple[np.ndarray, np.ndarray, float]:
    """
    Warps moving onto reference with an ORB/RANSAC homography.

    Returns (aligned image, mask of pixels covered after warping,
    alignment score). Alignment score is the RANSAC inlier ratio over
    good matches; identity with score 0.0 when too few matches exist.
    """
    h, w = reference.shape[:2]
    full_mask = np.full((h, w), 255, dtype=np.uint8)

    orb = cv2.ORB_create(nfeatures=ORB_FEATURES)
    kp1, des1 = orb.detectAndCompute(reference, None)
    kp2, des2 = orb.detectAndCompute(moving, None)

    if des1 is None or des2 is None or len(kp1) < 2 or len(kp2) < 2:
        logger.debug("Alignment skipped: not enough keypoints")
        return moving, full_mask, 0.0

    bf = cv2.BFMatcher(cv2.NORM_HAMMING)
    matches = bf.knnMatch(des2, des1, k=2)

    # Lowe's ratio test
    good = []
    for pair in matches:
        if len(pair) < 2:
            continue
        m, n = pair[0], pair[1]
        if m.distance < ORB_RATIO_THRESH * n.distance:
            good.append(m)

    if len(good) < MIN_ALIGNMENT_MATCHES:
        logger.debug("Alignment skipped: %d good matches", len(good))
        return moving, full_mask, 0.0

    src_pts = np.array([kp2[m.queryIdx].pt for m in good], dtype=np.float32).reshape(-1, 1, 2)
    dst_pts = np.array([kp1[m.trainIdx].pt for m in good], dtype=np.float32).reshape(-1, 1, 2)

    M, inliers = cv2.findHomography(src_pts, dst_pts, cv2.RANSAC, RANSAC_REPROJ_THRESH)
    if M is None or inliers is None:
        return moving, full_mask, 0.0

    score = float(np.sum(inliers.ravel())) / len(good)
    if np.allclose(M, np.eye(3), atol=1e-3):
        return moving, full_mask, score

    aligned = cv2.warpPerspective(moving, M, (w, h))
    coverage = cv2.warpPerspective(full_mask, M, (w, h))
    return aligned, coverage, score


def ssim(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Per-pixel structural similarity map with a Gaussian window."""
    a = a.astype(np.float64)
    b = b.astype(np.float64)

    mu_a = cv2.GaussianBlur(a, SSIM_WINDOW, SSIM_SIGMA)
    mu_b = cv2.GaussianBlur(b, SSIM_WINDOW, SSIM_SIGMA)
    mu_a2, mu_b2, mu_ab = mu_a * mu_a, mu_b * mu_b, mu_a * mu_b

    sigma_a2 = cv2.GaussianBlur(a * a, SSIM_WINDOW, SSIM_SIGMA) - mu_a2
    sigma_b2 = cv2.GaussianBlur(b * b, SSIM_WINDOW, SSIM_SIGMA) - mu_b2
    sigma_ab = cv2.GaussianBlur(a * b, SSIM_WINDOW, SSIM_SIGMA) - mu_ab

    numerator = (2 * mu_ab + _C1) * (2 * sigma_ab + _C2)
    denominator = (mu_a2 + mu_b2 + _C1) * (sigma_a2 + sigma_b2 + _C2)
    return numerator / denominator


def find_changed_areas(
    ssim_map: np.ndarray,
    valid_mask: np.ndarray,
    alignment_score: float,
) -> list[ChangedArea]:
    """
    Grid cells whose mean local SSIM falls below CHANGE_SSIM_THRESHOLD.

    Only aligned pixels count. Cells the handover photo barely covers
    (camera panned or zoomed) are skipped rather than reported.
    """
    rows = len(GRID_LABELS)
    cols = len(GRID_LABELS[0])
    h, w = ssim_map.shape[:2]

    change_type = ChangeType.NEW_DAMAGE
    if alignment_score < MIN_ALIGNMENT_SCORE:
        change_type = ChangeType.POSITION_SHIFT

    areas: list[ChangedArea] = []
    judged = 0
    for r in range(rows):
        for c in range(cols):
            y0, y1 = r * h // rows, (r + 1) * h // rows
            x0, x1 = c * w // cols, (c + 1) * w // cols
            cell_mask = valid_mask[y0:y1, x0:x1]
            if np.count_nonzero(cell_mask) < MIN_CELL_COVERAGE * cell_mask.size:
                logger.debug("Cell %s skipped: not covered after alignment", GRID_LABELS[r][c])
                continue
            judged += 1
            local = _masked_mean(ssim_map[y0:y1, x0:x1], cell_mask)
            if local < CHANGE_SSIM_THRESHOLD:
                areas.append(ChangedArea(
                    area=GRID_LABELS[r][c],
                    change_type=change_type,
                    confidence=round(_clamp(1.0 - local, 0.0, 1.0), 4),
                ))

    if judged == 0:
        return [ChangedArea(area="center", change_type=ChangeType.POSITION_SHIFT, confidence=1.0)]
    return areas


# --- Internal ---

def _prepare(gray: np.ndarray | None) -> np.ndarray | None:
    if gray is None:
        return None
    h, w = gray.shape[:2]
    if w == COMPARISON_WIDTH:
        return gray
    new_h = max(1, int(round(h * COMPARISON_WIDTH / w)))
    return cv2.resize(gray, (COMPARISON_WIDTH, new_h), interpolation=cv2.INTER_AREA)


def _resize_to(gray: np.ndarray, shape: tuple[int, ...]) -> np.ndarray:
    if gray.shape[:2] == shape[:2]:
        return gray
    return cv2.resize(gray, (shape[1], shape[0]), interpolation=cv2.INTER_AREA)


def _masked_mean(values: np.ndarray, mask: np.ndarray) -> float:
    selected = values[mask > 0]
    if selected.size == 0:
        return 0.0
    return float(selected.mean())


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
