"""
Instance mask reconstruction and membership tests.

Mask Reconstruction:
====================
A YOLO segmentation head predicts a small set of prototype masks shared by
the whole image plus a coefficient vector per candidate. After NMS:

    logits_i = coeffs_i @ prototypes          (C,) x (C, mh*mw)
    mask_i   = sigmoid(logits_i) cropped to box_i, thresholded at 0.5

The masks live in network input space (letterboxed), optionally upsampled
from prototype resolution (typically 160x160) to input resolution
(typically 640x640). Mask values are stored as uint8 {0, 255}.
"""

from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from .letterbox import LetterboxTransform

MASK_INSIDE = 255
MASK_THRESHOLD = 0.5

_VALUE_TOLERANCE = 1e-5

# Diagonal neighbour directions: (-,-), (+,-), (-,+), (+,+)
_DIAGONALS = np.array([[-1, -1], [1, -1], [-1, 1], [1, 1]], dtype=np.int64)


def sigmoid(x: np.ndarray) -> np.ndarray:
    """Elementwise 1 / (1 + exp(-x))."""
    with np.errstate(over="ignore"):
        return 1.0 / (1.0 + np.exp(-x))


def crop_masks(masks: np.ndarray, boxes: np.ndarray) -> np.ndarray:
    """
    Zero every mask pixel outside its box.

    A pixel (c, r) is kept when x1 <= c < x2 and y1 <= r < y2.

    Args:
        masks: (N, H, W) masks.
        boxes: (N, 4) boxes [x1, y1, x2, y2] in mask pixel units.

    Returns:
        (N, H, W) cropped masks (same dtype as input).
    """
    _, h, w = masks.shape
    boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
    x1, y1, x2, y2 = np.split(boxes[:, :, None], 4, axis=1)  # each (N, 1, 1)
    cols = np.arange(w, dtype=np.float32)[None, None, :]
    rows = np.arange(h, dtype=np.float32)[None, :, None]

    inside = (cols >= x1) & (cols < x2) & (rows >= y1) & (rows < y2)
    return masks * inside.astype(masks.dtype)


def process_mask(
    protos: np.ndarray,
    mask_coeffs: np.ndarray,
    boxes: np.ndarray,
    input_size: Tuple[int, int],
    upsample: bool = True,
) -> np.ndarray:
    """
    Build binary instance masks from prototypes and coefficients.

    Args:
        protos: (1, C, mh, mw) or (C, mh, mw) prototype tensor.
        mask_coeffs: (N, C) coefficients of the kept detections.
        boxes: (N, 4) kept boxes [x1, y1, x2, y2] in input coordinates.
        input_size: Network input (width, height).
        upsample: Resize masks to input resolution.

    Returns:
        uint8 array of shape (N, input_h, input_w) if upsample else
        (N, mh, mw), values in {0, 255}. Empty (0, h, w) when N == 0.
    """
    protos = np.asarray(protos, dtype=np.float32)
    if protos.ndim == 4:
        if protos.shape[0] != 1:
            raise ValueError(f"Expected prototype batch size 1, got {protos.shape}")
        # (1, C, mh, mw) -> (C, mh, mw)
        protos = protos[0]
    if protos.ndim != 3:
        raise ValueError(f"Expected prototypes of shape (C, mh, mw), got {protos.shape}")

    c, mh, mw = protos.shape
    iw, ih = input_size

    coeffs = np.asarray(mask_coeffs, dtype=np.float32).reshape(-1, c)
    boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
    n = len(coeffs)

    if n == 0 or len(boxes) == 0:
        shape = (ih, iw) if upsample else (mh, mw)
        return np.zeros((0,) + shape, dtype=np.uint8)

    if len(boxes) != n:
        raise ValueError(f"Got {n} coefficient rows but {len(boxes)} boxes")

    masks = sigmoid(coeffs @ protos.reshape(c, -1)).reshape(n, mh, mw)

    # Boxes from input space into prototype space
    scale = np.array([mw / iw, mh / ih, mw / iw, mh / ih], dtype=np.float32)
    masks = crop_masks(masks, boxes * scale)

    binary = (masks > MASK_THRESHOLD).astype(np.float32)

    if not upsample:
        return (binary * MASK_INSIDE).astype(np.uint8)

    upsampled = np.empty((n, ih, iw), dtype=np.uint8)
    for i in range(n):
        resized = cv2.resize(binary[i], (iw, ih), interpolation=cv2.INTER_LINEAR)
        upsampled[i] = np.where(resized > MASK_THRESHOLD, MASK_INSIDE, 0)

    return upsampled


def box_masks(boxes: np.ndarray, input_size: Tuple[int, int]) -> np.ndarray:
    """
    Filled-rectangle masks for models without a segmentation head.

    Args:
        boxes: (N, 4) boxes [x1, y1, x2, y2] in input coordinates.
        input_size: Network input (width, height).

    Returns:
        (N, input_h, input_w) uint8 masks, 255 inside each box.
    """
    iw, ih = input_size
    boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
    filled = np.full((len(boxes), ih, iw), MASK_INSIDE, dtype=np.uint8)
    return crop_masks(filled, boxes)


class MaskMembershipTester:
    """
    Answer "is image pixel (x, y) inside instance i?" for a mask tensor.

    The masks were produced from a letterboxed input, so an image pixel is
    first mapped through the letterbox transform into mask cells: the long
    side of the image fills the mask, the short side is centered. The same
    mapping serves single pixels, grids and diagonal neighbours.

    Usage:
        tester = MaskMembershipTester(masks, image_width=1280, image_height=720)
        tester.contains(640, 360, index=0)
        tester.contains_many(xs, ys, index=0)
    """

    def __init__(self, masks: np.ndarray, image_width: int, image_height: int):
        """
        Args:
            masks: (N, mask_h, mask_w) mask tensor with values in {0, 255}.
            image_width: Width of the image the pixels refer to.
            image_height: Height of the image the pixels refer to.
        """
        masks = np.asarray(masks)
        if masks.size and masks.ndim != 3:
            raise ValueError(f"Expected masks of shape (N, H, W), got {masks.shape}")

        self.masks = masks
        self.image_width = int(image_width)
        self.image_height = int(image_height)
        self.transform: Optional[LetterboxTransform] = None

        if masks.size:
            # The mask tensor spans the whole input plane, so its own size
            # stands in for the input size.
            _, mask_h, mask_w = masks.shape
            self.transform = LetterboxTransform.from_sizes(
                self.image_width, self.image_height, mask_w, mask_h
            )

    @property
    def num_masks(self) -> int:
        return 0 if self.transform is None else self.masks.shape[0]

    def contains_many(self, xs, ys, index: int) -> np.ndarray:
        """
        Vectorized membership test.

        Args:
            xs: Image x coordinate(s).
            ys: Image y coordinate(s), broadcastable against xs.
            index: Instance index.

        Returns:
            Boolean array of the broadcast shape. Points that fall outside
            the mask tensor, and any index out of range, are not members.
        """
        xs, ys = np.broadcast_arrays(np.asarray(xs), np.asarray(ys))
        result = np.zeros(xs.shape, dtype=bool)

        if self.transform is None or not 0 <= index < self.num_masks:
            return result

        _, mask_h, mask_w = self.masks.shape
        mx, my = self.transform.to_mask(xs, ys, mask_w, mask_h)

        valid = (mx >= 0) & (mx < mask_w) & (my >= 0) & (my < mask_h)
        values = self.masks[index, my[valid], mx[valid]].astype(np.float64)
        result[valid] = np.abs(values - MASK_INSIDE) < _VALUE_TOLERANCE

        return result

    def contains(self, x: int, y: int, index: int) -> bool:
        """Membership of a single image pixel."""
        return bool(self.contains_many(x, y, index))

    def contains_any(self, xs, ys, indices: Sequence[int]) -> np.ndarray:
        """Membership in at least one of several instances."""
        xs, ys = np.broadcast_arrays(np.asarray(xs), np.asarray(ys))
        result = np.zeros(xs.shape, dtype=bool)
        for index in indices:
            result |= self.contains_many(xs, ys, index)
        return result

    def neighbors_inside(self, xs, ys, index: int, offset: int) -> np.ndarray:
        """
        Membership of the four diagonal neighbours at +/- offset.

        Returns:
            Boolean array of shape broadcast(xs, ys).shape + (4,).
        """
        xs, ys = np.broadcast_arrays(np.asarray(xs), np.asarray(ys))
        nx = xs[..., None] + offset * _DIAGONALS[:, 0]
        ny = ys[..., None] + offset * _DIAGONALS[:, 1]
        return self.contains_many(nx, ny, index)

    def any_neighbor_inside(self, xs, ys, index: int, offset: int) -> np.ndarray:
        """True where any diagonal neighbour is inside (offset <= 0 -> False)."""
        if offset <= 0:
            return np.zeros(np.broadcast(np.asarray(xs), np.asarray(ys)).shape, dtype=bool)
        return self.neighbors_inside(xs, ys, index, offset).any(axis=-1)

    def any_neighbor_outside(self, xs, ys, index: int, offset: int) -> np.ndarray:
        """True where any diagonal neighbour is outside (offset <= 0 -> False)."""
        if offset <= 0:
            return np.zeros(np.broadcast(np.asarray(xs), np.asarray(ys)).shape, dtype=bool)
        return ~self.neighbors_inside(xs, ys, index, offset).all(axis=-1)

    def __repr__(self) -> str:
        return (
            f"MaskMembershipTester(masks={self.num_masks}, "
            f"image={self.image_width}x{self.image_height})"
        )
