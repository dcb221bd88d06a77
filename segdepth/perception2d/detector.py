"""
Detection result and class-label types.

YOLO Segmentation Output Format:
================================
A YOLOv8-seg style network returns two tensors per image:

1. Predictions: (1, 4 + num_classes + num_masks, num_candidates)
   - rows 0..3:   box as [center_x, center_y, width, height] in input pixels
   - rows 4..:    one score per class (already sigmoid-activated)
   - last rows:   num_masks mask coefficients
2. Prototypes: (1, num_masks, mask_h, mask_w)
   - shared basis masks; an instance mask is coeffs @ prototypes

For the standard 640x640 COCO model these are (1, 116, 8400) and
(1, 32, 160, 160).

Coordinate Systems:
==================
  - Image: Origin at top-left, x increases right, y increases down
  - Box format: [x1, y1, x2, y2] where (x1, y1) is top-left, (x2, y2) is bottom-right
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

COCO_CLASSES: Tuple[str, ...] = (
    "person", "bicycle", "car", "motorcycle", "airplane", "bus", "train", "truck",
    "boat", "traffic light", "fire hydrant", "stop sign", "parking meter", "bench",
    "bird", "cat", "dog", "horse", "sheep", "cow", "elephant", "bear", "zebra",
    "giraffe", "backpack", "umbrella", "handbag", "tie", "suitcase", "frisbee",
    "skis", "snowboard", "sports ball", "kite", "baseball bat", "baseball glove",
    "skateboard", "surfboard", "tennis racket", "bottle", "wine glass", "cup",
    "fork", "knife", "spoon", "bowl", "banana", "apple", "sandwich", "orange",
    "broccoli", "carrot", "hot dog", "pizza", "donut", "cake", "chair", "couch",
    "potted plant", "bed", "dining table", "toilet", "tv", "laptop", "mouse",
    "remote", "keyboard", "cell phone", "microwave", "oven", "toaster", "sink",
    "refrigerator", "book", "clock", "vase", "scissors", "teddy bear",
    "hair drier", "toothbrush",
)


@dataclass(frozen=True)
class Detection:
    """
    Single 2D detection in original image pixels.

    Attributes:
        bbox: Bounding box (x1, y1, x2, y2) in pixels.
              (x1, y1) = top-left corner, (x2, y2) = bottom-right corner.
        class_id: Integer class index from the network.
        class_name: Resolved label (numeric string if the table has no entry).
        confidence: Detection confidence score in range [0, 1].
    """

    bbox: Tuple[float, float, float, float]
    class_id: int
    class_name: str
    confidence: float

    def __post_init__(self):
        bbox = tuple(float(v) for v in self.bbox)
        if len(bbox) != 4:
            raise ValueError(f"bbox must have 4 values, got {len(bbox)}")
        object.__setattr__(self, "bbox", bbox)
        object.__setattr__(self, "class_id", int(self.class_id))
        object.__setattr__(self, "confidence", float(self.confidence))

    @property
    def x1(self) -> float:
        """Left edge x coordinate."""
        return self.bbox[0]

    @property
    def y1(self) -> float:
        """Top edge y coordinate."""
        return self.bbox[1]

    @property
    def x2(self) -> float:
        """Right edge x coordinate."""
        return self.bbox[2]

    @property
    def y2(self) -> float:
        """Bottom edge y coordinate."""
        return self.bbox[3]

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center(self) -> Tuple[float, float]:
        """Box center (x, y) coordinates."""
        return ((self.x1 + self.x2) / 2, (self.y1 + self.y2) / 2)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "bbox": list(self.bbox),
            "class_id": self.class_id,
            "class_name": self.class_name,
            "confidence": self.confidence,
        }

    def __repr__(self) -> str:
        return (
            f"Detection({self.class_name}, "
            f"conf={self.confidence:.2f}, "
            f"bbox=[{self.x1:.0f}, {self.y1:.0f}, {self.x2:.0f}, {self.y2:.0f}])"
        )


class ClassLabels:
    """
    Class-index to label lookup.

    Lookups never fail: ids without a (non-empty) entry resolve to their
    numeric string.

    Usage:
        labels = ClassLabels.from_file("models/coco.names")
        labels.get(0)    # "person"
        labels.get(999)  # "999"
    """

    def __init__(self, names: Optional[Sequence[str]] = None):
        """
        Args:
            names: Label per class index. None = COCO classes.
        """
        self.names: List[str] = list(COCO_CLASSES if names is None else names)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ClassLabels":
        """
        Read a names file with one label per line.

        Raises:
            FileNotFoundError: If the file doesn't exist.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Class names file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            names = [line.rstrip("\r\n") for line in f]

        # A trailing newline is not a class
        while names and not names[-1].strip():
            names.pop()

        return cls(names)

    def get(self, class_id: Union[int, float]) -> str:
        """Resolve a class index (ints or float-encoded ints) to its label."""
        class_id = int(class_id)
        name = ""
        if 0 <= class_id < len(self.names):
            name = self.names[class_id]
        return name if name else str(class_id)

    def __len__(self) -> int:
        return len(self.names)

    def __repr__(self) -> str:
        return f"ClassLabels({len(self.names)} classes)"
