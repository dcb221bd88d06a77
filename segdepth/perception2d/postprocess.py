"""
Post-processing of raw YOLO segmentation outputs.

Pipeline:
=========
1. reshape_raw_output: (1, C, N) channel-major tensor -> (N, C) rows
2. filter_candidates:  keep rows whose best class score > conf_threshold
3. apply_nms:          greedy per-class (or class-agnostic) suppression
4. rescale_boxes:      letterbox inversion back to image pixels

Non-Maximum Suppression (NMS):
==============================
NMS removes redundant overlapping detections. The algorithm:

1. Sort detections by confidence score (descending)
2. Select the highest-scoring detection, add to output
3. Remove all detections with IoU > threshold with the selected detection
4. Repeat until no detections remain or top_k boxes are kept

IoU (Intersection over Union):
==============================
       intersection(A, B)
IoU = ---------------------
      area(A) + area(B) - intersection(A, B)

IoU ranges from 0 (no overlap) to 1 (perfect overlap).
"""

from typing import Optional, Tuple

import numpy as np

from ..utils.logger import get_logger
from .letterbox import LetterboxTransform
from .workspace import InferenceWorkspace

logger = get_logger(__name__)

# Columns of a candidate row: [x, y, w, h, conf, cls, mask coeffs...]
BOX_COLS = slice(0, 4)
CONF_COL = 4
CLASS_COL = 5
COEFF_START = 6


def reshape_raw_output(
    output: np.ndarray,
    num_classes: int,
    num_masks: int,
) -> Tuple[np.ndarray, int]:
    """
    Turn the channel-major prediction tensor into one row per candidate.

    Args:
        output: (1, 4 + num_classes + num_masks, N) prediction tensor.
        num_classes: Expected class count.
        num_masks: Mask coefficient count (0 for detection-only models).

    Returns:
        Tuple[np.ndarray, int]:
            - rows: (N, C) float32 array
            - num_classes: class count actually present in the tensor

    Raises:
        ValueError: If the tensor is not 3D with batch size 1, or has too
            few channels for a box plus the mask coefficients.
    """
    output = np.asarray(output)
    if output.ndim != 3 or output.shape[0] != 1:
        raise ValueError(f"Expected prediction tensor of shape (1, C, N), got {output.shape}")

    channels = output.shape[1]
    if channels != 4 + num_classes + num_masks:
        corrected = channels - 4 - num_masks
        if corrected < 0:
            raise ValueError(
                f"Prediction tensor has {channels} channels, fewer than "
                f"4 box values + {num_masks} mask coefficients"
            )
        logger.warning(
            "The number of classes and output shapes are different "
            "(channels=%d != 4 + num_classes=%d + num_masks=%d). "
            "Using num_classes=%d; load the matching class names file for custom models.",
            channels, num_classes, num_masks, corrected,
        )
        num_classes = corrected

    # (1, C, N) -> (N, C)
    rows = np.ascontiguousarray(output[0].T, dtype=np.float32)
    return rows, num_classes


def filter_candidates(
    rows: np.ndarray,
    num_classes: int,
    num_masks: int,
    conf_threshold: float,
    workspace: Optional[InferenceWorkspace] = None,
) -> np.ndarray:
    """
    Keep candidates whose best class score exceeds the threshold.

    Args:
        rows: (N, 4 + num_classes + num_masks) rows from reshape_raw_output.
        num_classes: Number of class score columns.
        num_masks: Number of mask coefficient columns.
        conf_threshold: Strict lower bound on the best class score.
        workspace: Scratch storage; a fresh one is used if None.

    Returns:
        (K, 6 + num_masks) view of [x, y, w, h, conf, cls, coeffs...] rows,
        (x, y) being the top-left corner. Valid until the workspace is reused.
    """
    if workspace is None:
        workspace = InferenceWorkspace()
    workspace.reset()

    cols = COEFF_START + num_masks
    if len(rows) == 0 or num_classes <= 0:
        return workspace.candidates(cols)

    scores = rows[:, 4:4 + num_classes]
    class_ids = scores.argmax(axis=1)
    confidences = scores[np.arange(len(rows)), class_ids]

    keep = confidences > conf_threshold
    if not keep.any():
        return workspace.candidates(cols)

    selected = rows[keep]
    block = np.empty((len(selected), cols), dtype=np.float32)

    # [cx, cy, w, h] -> [x, y, w, h]
    block[:, 2:4] = selected[:, 2:4]
    block[:, 0:2] = selected[:, 0:2] - selected[:, 2:4] / 2
    # Scores are probabilities
    block[:, CONF_COL] = np.minimum(confidences[keep], 1.0)
    block[:, CLASS_COL] = class_ids[keep]
    block[:, COEFF_START:] = selected[:, 4 + num_classes:4 + num_classes + num_masks]

    workspace.append_candidates(block)
    return workspace.candidates(cols)


def xywh_to_xyxy(boxes: np.ndarray) -> np.ndarray:
    """Convert (N, 4) [x, y, w, h] boxes to [x1, y1, x2, y2]."""
    boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
    out = boxes.copy()
    out[:, 2] = boxes[:, 0] + boxes[:, 2]
    out[:, 3] = boxes[:, 1] + boxes[:, 3]
    return out


def compute_iou_matrix(boxes1: np.ndarray, boxes2: np.ndarray) -> np.ndarray:
    """
    Compute IoU between all pairs of boxes (vectorized).

    Args:
        boxes1: (N, 4) array of boxes.
        boxes2: (M, 4) array of boxes.

    Returns:
        (N, M) array of IoU values.
    """
    # (N, 1, 4) against (1, M, 4)
    boxes1 = np.asarray(boxes1, dtype=np.float64)[:, np.newaxis, :]
    boxes2 = np.asarray(boxes2, dtype=np.float64)[np.newaxis, :, :]

    x1 = np.maximum(boxes1[..., 0], boxes2[..., 0])
    y1 = np.maximum(boxes1[..., 1], boxes2[..., 1])
    x2 = np.minimum(boxes1[..., 2], boxes2[..., 2])
    y2 = np.minimum(boxes1[..., 3], boxes2[..., 3])

    intersection = np.maximum(0, x2 - x1) * np.maximum(0, y2 - y1)

    area1 = (boxes1[..., 2] - boxes1[..., 0]) * (boxes1[..., 3] - boxes1[..., 1])
    area2 = (boxes2[..., 2] - boxes2[..., 0]) * (boxes2[..., 3] - boxes2[..., 1])

    union = area1 + area2 - intersection
    with np.errstate(divide="ignore", invalid="ignore"):
        iou = np.where(union > 0, intersection / union, 0.0)

    return iou


def _nms_numpy(
    boxes: np.ndarray,
    scores: np.ndarray,
    threshold: float,
    top_k: Optional[int] = None,
) -> np.ndarray:
    """
    Greedy NMS over [x1, y1, x2, y2] boxes.

    Args:
        boxes: (N, 4) boxes.
        scores: (N,) confidence scores.
        threshold: IoU above which a box is suppressed.
        top_k: Stop after this many keeps (None = no limit).

    Returns:
        Indices of kept boxes, highest score first.
    """
    if len(boxes) == 0:
        return np.zeros(0, dtype=np.int64)

    boxes = boxes.astype(np.float64)

    # Stable so equal scores keep their input order
    order = np.argsort(-scores, kind="stable")

    keep = []

    while len(order) > 0:
        i = order[0]
        keep.append(i)

        if len(order) == 1 or (top_k is not None and len(keep) >= top_k):
            break

        rest = order[1:]
        iou = compute_iou_matrix(boxes[i:i + 1], boxes[rest])[0]
        order = rest[iou <= threshold]

    return np.asarray(keep, dtype=np.int64)


def apply_nms(
    boxes: np.ndarray,
    scores: np.ndarray,
    class_ids: Optional[np.ndarray] = None,
    iou_threshold: float = 0.45,
    top_k: int = 300,
    class_agnostic: bool = False,
) -> np.ndarray:
    """
    Apply Non-Maximum Suppression.

    Args:
        boxes: (N, 4) boxes [x1, y1, x2, y2].
        scores: (N,) confidence scores.
        class_ids: (N,) class indices; required unless class_agnostic.
        iou_threshold: IoU threshold above which boxes are suppressed.
        top_k: Maximum number of boxes kept overall.
        class_agnostic: If True, boxes suppress each other regardless of
            class. If False, only boxes of the same class compete.

    Returns:
        Indices into the inputs, in keep order (descending score).

    Raises:
        ValueError: If top_k <= 0 or class_ids are missing in class-aware mode.
    """
    if top_k <= 0:
        raise ValueError(f"top_k must be positive, got {top_k}")

    boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
    scores = np.asarray(scores, dtype=np.float32).reshape(-1)

    if len(boxes) == 0:
        return np.zeros(0, dtype=np.int64)

    if class_agnostic:
        return _nms_numpy(boxes, scores, iou_threshold, top_k)

    if class_ids is None:
        raise ValueError("class_ids are required for class-aware NMS")
    class_ids = np.asarray(class_ids).reshape(-1)

    keep_indices = []
    for class_id in np.unique(class_ids):
        class_indices = np.flatnonzero(class_ids == class_id)
        class_keep = _nms_numpy(
            boxes[class_indices],
            scores[class_indices],
            iou_threshold,
            top_k,
        )
        keep_indices.append(class_indices[class_keep])

    keep = np.concatenate(keep_indices)
    order = np.argsort(-scores[keep], kind="stable")
    return keep[order][:top_k]


def rescale_boxes(boxes: np.ndarray, transform: LetterboxTransform) -> np.ndarray:
    """
    Map [x1, y1, x2, y2] boxes from network input space to image pixels.

    Args:
        boxes: (N, 4) boxes in input coordinates.
        transform: Letterbox transform used for pre-processing.

    Returns:
        (N, 4) float32 boxes, rounded to whole pixels.
    """
    boxes = np.asarray(boxes, dtype=np.float64).reshape(-1, 4)
    out = np.empty_like(boxes)
    out[:, 0], out[:, 1] = transform.to_image(boxes[:, 0], boxes[:, 1])
    out[:, 2], out[:, 3] = transform.to_image(boxes[:, 2], boxes[:, 3])
    return out.astype(np.float32)


class DetectionPostProcessor:
    """
    Reshape, filter and suppress raw predictions.

    Usage:
        processor = DetectionPostProcessor(conf_threshold=0.25, nms_threshold=0.45)
        rows, num_classes = processor.process(predictions, num_classes=80)
        # rows: (K, 6 + num_masks) [x1, y1, x2, y2, conf, cls, coeffs...]
    """

    def __init__(
        self,
        conf_threshold: float = 0.25,
        nms_threshold: float = 0.45,
        top_k: int = 300,
        class_agnostic: bool = False,
        num_masks: int = 32,
    ):
        """
        Args:
            conf_threshold: Minimum best-class score (exclusive).
            nms_threshold: IoU threshold for NMS.
            top_k: Maximum detections per image.
            class_agnostic: Apply NMS across all classes.
            num_masks: Mask coefficients per candidate.
        """
        if top_k <= 0:
            raise ValueError(f"top_k must be positive, got {top_k}")
        self.conf_threshold = conf_threshold
        self.nms_threshold = nms_threshold
        self.top_k = top_k
        self.class_agnostic = class_agnostic
        self.num_masks = num_masks

    def process(
        self,
        predictions: np.ndarray,
        num_classes: int,
        workspace: Optional[InferenceWorkspace] = None,
    ) -> Tuple[np.ndarray, int]:
        """
        Run reshape, confidence filtering and NMS.

        Args:
            predictions: (1, 4 + num_classes + num_masks, N) tensor.
            num_classes: Expected class count.
            workspace: Scratch storage for the candidate buffer.

        Returns:
            Tuple[np.ndarray, int]:
                - kept rows [x1, y1, x2, y2, conf, cls, coeffs...] in input
                  coordinates, owned by the caller
                - num_classes found in the tensor
        """
        rows, num_classes = reshape_raw_output(predictions, num_classes, self.num_masks)
        candidates = filter_candidates(
            rows, num_classes, self.num_masks, self.conf_threshold, workspace
        )

        if len(candidates) == 0:
            return np.zeros((0, COEFF_START + self.num_masks), dtype=np.float32), num_classes

        boxes = xywh_to_xyxy(candidates[:, BOX_COLS])
        keep = apply_nms(
            boxes,
            candidates[:, CONF_COL],
            candidates[:, CLASS_COL].astype(np.int64),
            iou_threshold=self.nms_threshold,
            top_k=self.top_k,
            class_agnostic=self.class_agnostic,
        )

        results = candidates[keep].copy()
        results[:, BOX_COLS] = boxes[keep]
        return results, num_classes

    def __repr__(self) -> str:
        return (
            f"DetectionPostProcessor("
            f"conf>{self.conf_threshold}, "
            f"nms={self.nms_threshold}, "
            f"top_k={self.top_k})"
        )
