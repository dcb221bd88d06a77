"""
YOLO predictors: pre-processing, network call and post-processing.

The network itself is a black box. A predictor receives a callable

    infer(blob) -> outputs

that maps the (1, 3, H, W) input blob to the raw output tensors, e.g. an
OpenCV DNN net wrapped with dnn_forward(net). Which outputs are expected
depends on the model flavor chosen at configuration time:

    segmentation: (predictions (1, 4+nc+nm, N), prototypes (1, nm, mh, mw))
    detection:    (predictions (1, 4+nc, N),)

Detection-only models get filled-box masks so downstream depth sampling
works the same way for both flavors.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np

from ..utils.logger import LoggerMixin
from .detector import ClassLabels, Detection
from .letterbox import LetterboxTransform, make_blob
from .masks import box_masks, process_mask
from .postprocess import (
    BOX_COLS,
    CLASS_COL,
    COEFF_START,
    CONF_COL,
    DetectionPostProcessor,
    rescale_boxes,
)
from .workspace import InferenceWorkspace

InferFn = Callable[[np.ndarray], Union[np.ndarray, Sequence[np.ndarray]]]


class ModelFlavor(str, Enum):
    """Supported network output layouts."""

    SEGMENTATION = "segmentation"
    DETECTION = "detection"


@dataclass
class PredictionResult:
    """
    Post-processed network output for one image.

    Attributes:
        detections: Detections in image pixels, in NMS keep order.
        masks: (N, h, w) uint8 masks in input space, index-aligned with
               detections.
        transform: Letterbox transform between image and input space.
    """

    detections: List[Detection]
    masks: np.ndarray
    transform: LetterboxTransform

    def __len__(self) -> int:
        return len(self.detections)


def dnn_forward(net) -> InferFn:
    """
    Adapt an OpenCV ``cv2.dnn.Net`` to the infer callable.

    Args:
        net: Loaded network (loading is up to the caller).

    Returns:
        Callable running one forward pass over all unconnected outputs.
    """
    def forward(blob: np.ndarray) -> Sequence[np.ndarray]:
        net.setInput(blob)
        return net.forward(net.getUnconnectedOutLayersNames())

    return forward


class YoloPredictor(LoggerMixin):
    """
    YOLO predictor for segmentation and detection-only models.

    Usage:
        predictor = YoloPredictor(dnn_forward(net), flavor="segmentation")
        result = predictor.infer(bgr_image)
        for det in result.detections:
            print(det.class_name, det.confidence)

    Attributes:
        flavor: Output layout of the model.
        input_size: Network input (width, height).
        num_classes: Class count; corrected from the output shape if the
            model disagrees with the label table.
        num_masks: Mask coefficients per candidate (0 for detection models).
    """

    def __init__(
        self,
        infer: InferFn,
        flavor: Union[ModelFlavor, str] = ModelFlavor.SEGMENTATION,
        class_labels: Optional[ClassLabels] = None,
        input_size: Tuple[int, int] = (640, 640),
        conf_threshold: float = 0.25,
        nms_threshold: float = 0.45,
        top_k: int = 300,
        class_agnostic: bool = False,
        upsample: bool = True,
        num_masks: int = 32,
    ):
        """
        Initialize predictor.

        Args:
            infer: Forward pass, blob -> raw outputs.
            flavor: 'segmentation' or 'detection'.
            class_labels: Label table; None = COCO labels.
            input_size: Network input (width, height).
            conf_threshold: Minimum best-class score (exclusive).
            nms_threshold: IoU threshold for NMS.
            top_k: Maximum detections per image.
            class_agnostic: Suppress across classes.
            upsample: Upsample segmentation masks to input resolution.
            num_masks: Prototype channels of segmentation models.
        """
        self._infer = infer
        self.flavor = ModelFlavor(flavor)
        self.class_labels = class_labels if class_labels is not None else ClassLabels()
        self.input_size = (int(input_size[0]), int(input_size[1]))
        self.upsample = upsample
        self.num_classes = len(self.class_labels)
        self.num_masks = num_masks if self.flavor is ModelFlavor.SEGMENTATION else 0

        self.postprocessor = DetectionPostProcessor(
            conf_threshold=conf_threshold,
            nms_threshold=nms_threshold,
            top_k=top_k,
            class_agnostic=class_agnostic,
            num_masks=self.num_masks,
        )

    def preprocess(self, image: np.ndarray) -> Tuple[np.ndarray, LetterboxTransform]:
        """
        Letterbox a BGR image into the network input blob.

        Returns:
            (blob, transform) with blob shaped (1, 3, input_h, input_w).
        """
        height, width = image.shape[:2]
        transform = LetterboxTransform.from_sizes(width, height, *self.input_size)
        return make_blob(image, transform), transform

    def infer(
        self,
        image: np.ndarray,
        workspace: Optional[InferenceWorkspace] = None,
    ) -> PredictionResult:
        """
        Run the full predictor on one BGR image.

        Args:
            image: (H, W, 3) uint8 BGR image.
            workspace: Scratch storage reused across calls.

        Raises:
            ValueError: If the image is not a 3-channel image.
        """
        if image.ndim != 3 or image.shape[2] != 3:
            raise ValueError(f"The input image must be in BGR format, got shape {image.shape}")

        blob, transform = self.preprocess(image)
        outputs = self._infer(blob)
        return self.postprocess(outputs, (transform.image_width, transform.image_height), workspace)

    def postprocess(
        self,
        raw_outputs: Union[np.ndarray, Sequence[np.ndarray]],
        image_size: Tuple[int, int],
        workspace: Optional[InferenceWorkspace] = None,
    ) -> PredictionResult:
        """
        Turn raw outputs into detections and index-aligned masks.

        Args:
            raw_outputs: Network outputs, see module docstring.
            image_size: (width, height) of the original image.
            workspace: Scratch storage reused across calls.
        """
        predictions, protos = self._split_outputs(raw_outputs)
        transform = LetterboxTransform.from_sizes(image_size[0], image_size[1], *self.input_size)

        rows, self.num_classes = self.postprocessor.process(
            predictions, self.num_classes, workspace
        )

        input_boxes = rows[:, BOX_COLS]
        if self.flavor is ModelFlavor.SEGMENTATION:
            masks = process_mask(
                protos,
                rows[:, COEFF_START:],
                input_boxes,
                self.input_size,
                upsample=self.upsample,
            )
        else:
            masks = box_masks(input_boxes, self.input_size)

        boxes = rescale_boxes(input_boxes, transform)
        detections = [
            Detection(
                bbox=boxes[i],
                class_id=int(rows[i, CLASS_COL]),
                class_name=self.get_class_label(rows[i, CLASS_COL]),
                confidence=float(rows[i, CONF_COL]),
            )
            for i in range(len(rows))
        ]

        self.logger.debug("%d detections after NMS", len(detections))
        return PredictionResult(detections=detections, masks=masks, transform=transform)

    def _split_outputs(self, raw_outputs) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        if isinstance(raw_outputs, np.ndarray):
            raw_outputs = [raw_outputs]
        outputs = list(raw_outputs)

        expected = 2 if self.flavor is ModelFlavor.SEGMENTATION else 1
        if len(outputs) != expected:
            raise ValueError(
                f"{self.flavor.value} model must produce {expected} output(s), "
                f"got {len(outputs)}"
            )

        protos = outputs[1] if expected == 2 else None
        return outputs[0], protos

    def get_class_label(self, class_id: Union[int, float]) -> str:
        """Label for a class index, numeric string if unknown."""
        return self.class_labels.get(class_id)

    def __repr__(self) -> str:
        return (
            f"YoloPredictor({self.flavor.value}, "
            f"input={self.input_size[0]}x{self.input_size[1]}, "
            f"classes={self.num_classes}, {self.postprocessor!r})"
        )
