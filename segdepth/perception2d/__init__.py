"""
2D perception: YOLO segmentation output decoding.

This module turns raw YOLO segmentation outputs into detections and binary
instance masks.

Classes:
    YoloPredictor: Letterbox, forward pass and post-processing
    Detection: Standardized detection result format
    ClassLabels: Class index to label lookup
    DetectionPostProcessor: Reshape, confidence filter and NMS
    LetterboxTransform: Image <-> input <-> mask coordinate mapping
    MaskMembershipTester: Image-pixel membership in instance masks
    InferenceWorkspace: Reusable scratch buffers

Functions:
    reshape_raw_output: (1, C, N) -> (N, C)
    filter_candidates: Confidence filtering
    apply_nms: Non-Maximum Suppression
    rescale_boxes: Letterbox inversion for boxes
    process_mask: Prototype + coefficient mask reconstruction
    compute_iou_matrix: Pairwise IoU between two box sets

Example:
    >>> from segdepth.perception2d import YoloPredictor, dnn_forward
    >>>
    >>> predictor = YoloPredictor(dnn_forward(net), conf_threshold=0.25)
    >>> result = predictor.infer(image)
    >>> result.detections, result.masks
"""

from .detector import COCO_CLASSES, ClassLabels, Detection
from .letterbox import LetterboxTransform, letterbox_image, make_blob
from .masks import (
    MaskMembershipTester,
    box_masks,
    crop_masks,
    process_mask,
    sigmoid,
)
from .postprocess import (
    DetectionPostProcessor,
    apply_nms,
    compute_iou_matrix,
    filter_candidates,
    rescale_boxes,
    reshape_raw_output,
    xywh_to_xyxy,
)
from .predictor import ModelFlavor, PredictionResult, YoloPredictor, dnn_forward
from .workspace import InferenceWorkspace

__all__ = [
    # Types
    "Detection",
    "ClassLabels",
    "COCO_CLASSES",
    "InferenceWorkspace",
    # Predictor
    "YoloPredictor",
    "ModelFlavor",
    "PredictionResult",
    "dnn_forward",
    # Letterbox
    "LetterboxTransform",
    "letterbox_image",
    "make_blob",
    # Post-processing
    "DetectionPostProcessor",
    "reshape_raw_output",
    "filter_candidates",
    "apply_nms",
    "rescale_boxes",
    "xywh_to_xyxy",
    "compute_iou_matrix",
    # Masks
    "process_mask",
    "crop_masks",
    "box_masks",
    "sigmoid",
    "MaskMembershipTester",
]
