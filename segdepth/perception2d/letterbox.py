"""
Letterbox transform shared by pre-processing, box rescaling and mask lookup.

The network sees a square (or fixed-size) input. Frames of arbitrary size are
padded symmetrically to the input aspect ratio and then resized:

    ratio   = max(image_w / input_w, image_h / input_h)
    padded  = (ceil(input_w * ratio), ceil(input_h * ratio))
    shift_x = (input_w * ratio - image_w) / 2
    shift_y = (input_h * ratio - image_h) / 2

Coordinate spaces:
==================
    image  -> input:  u = (x + shift_x) / ratio
    input  -> image:  x = round(u * ratio - shift_x)
    image  -> mask:   m = floor(u * mask_w / input_w)

Every consumer of these spaces goes through LetterboxTransform so the three
directions can never drift apart.
"""

import math
from dataclasses import dataclass
from typing import Tuple, Union

import cv2
import numpy as np

PAD_VALUE = 114

# Absorbs float error when a pixel maps exactly onto a mask cell boundary
_CELL_EPS = 1e-6

ArrayLike = Union[float, int, np.ndarray]


@dataclass(frozen=True)
class LetterboxTransform:
    """
    Pad-to-aspect-then-resize transform between image and network input.

    Attributes:
        image_width: Original frame width in pixels.
        image_height: Original frame height in pixels.
        input_width: Network input width.
        input_height: Network input height.

    Example:
        >>> t = LetterboxTransform.from_sizes(1280, 720, 640, 640)
        >>> t.ratio, t.shift_x, t.shift_y
        (2.0, 0.0, 280.0)
    """

    image_width: int
    image_height: int
    input_width: int
    input_height: int

    def __post_init__(self):
        if min(self.image_width, self.image_height) <= 0:
            raise ValueError(
                f"Image size must be positive, got {self.image_width}x{self.image_height}"
            )
        if min(self.input_width, self.input_height) <= 0:
            raise ValueError(
                f"Input size must be positive, got {self.input_width}x{self.input_height}"
            )

    @classmethod
    def from_sizes(
        cls,
        image_width: int,
        image_height: int,
        input_width: int,
        input_height: int,
    ) -> "LetterboxTransform":
        """Build a transform from (width, height) pairs."""
        return cls(int(image_width), int(image_height), int(input_width), int(input_height))

    @property
    def ratio(self) -> float:
        """Scale from input pixels to image pixels."""
        return max(
            self.image_width / self.input_width,
            self.image_height / self.input_height,
        )

    @property
    def shift_x(self) -> float:
        return (self.input_width * self.ratio - self.image_width) / 2

    @property
    def shift_y(self) -> float:
        return (self.input_height * self.ratio - self.image_height) / 2

    @property
    def padded_size(self) -> Tuple[int, int]:
        """(width, height) of the padded canvas before resizing."""
        return (
            int(math.ceil(self.input_width * self.ratio)),
            int(math.ceil(self.input_height * self.ratio)),
        )

    def to_input(self, x: ArrayLike, y: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
        """Map image pixel coordinates into network input space."""
        ratio = self.ratio
        return (x + self.shift_x) / ratio, (y + self.shift_y) / ratio

    def to_image(self, u: ArrayLike, v: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
        """
        Map network input coordinates back into image pixels.

        Rounds half to even, matching the rounding used for detection boxes.
        """
        ratio = self.ratio
        return np.round(u * ratio - self.shift_x), np.round(v * ratio - self.shift_y)

    def to_mask(
        self,
        x: ArrayLike,
        y: ArrayLike,
        mask_width: int,
        mask_height: int,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Map image pixels to integer cell indices of a mask tensor.

        The mask tensor covers the whole network input, so its cells are the
        input plane scaled by mask_size / input_size. Results may fall outside
        [0, mask_size); callers bounds-check.

        Args:
            x: Image x coordinate(s).
            y: Image y coordinate(s).
            mask_width: Width of the mask tensor.
            mask_height: Height of the mask tensor.

        Returns:
            (mx, my) integer arrays.
        """
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)

        scale_x = mask_width / (self.ratio * self.input_width)
        scale_y = mask_height / (self.ratio * self.input_height)

        mx = np.floor((x + self.shift_x) * scale_x + _CELL_EPS).astype(np.int64)
        my = np.floor((y + self.shift_y) * scale_y + _CELL_EPS).astype(np.int64)
        return mx, my


def letterbox_image(image: np.ndarray, transform: LetterboxTransform) -> np.ndarray:
    """
    Pad an image symmetrically to the network input aspect ratio.

    Args:
        image: (H, W, C) or (H, W) image.
        transform: Transform built for this image size.

    Returns:
        Padded image with the original centered on a PAD_VALUE canvas.
    """
    height, width = image.shape[:2]
    if (width, height) != (transform.image_width, transform.image_height):
        raise ValueError(
            f"Image size {width}x{height} does not match transform "
            f"{transform.image_width}x{transform.image_height}"
        )

    pad_w, pad_h = transform.padded_size
    padded = np.full((pad_h, pad_w) + image.shape[2:], PAD_VALUE, dtype=image.dtype)

    left = (pad_w - width) // 2
    top = (pad_h - height) // 2
    padded[top:top + height, left:left + width] = image

    return padded


def make_blob(image: np.ndarray, transform: LetterboxTransform) -> np.ndarray:
    """
    Build the NCHW float blob fed to the network.

    Letterboxes the BGR image, resizes it to the input size, scales to [0, 1]
    and swaps BGR to RGB.

    Returns:
        (1, 3, input_height, input_width) float32 array.
    """
    padded = letterbox_image(image, transform)
    return cv2.dnn.blobFromImage(
        padded,
        scalefactor=1.0 / 255.0,
        size=(transform.input_width, transform.input_height),
        mean=(0, 0, 0),
        swapRB=True,
        crop=False,
        ddepth=cv2.CV_32F,
    )
