"""
Grid sampling of instance masks into 3D point clouds.

Given detections, their instance masks and a per-pixel depth lookup, the
sampler walks a regular pixel grid (stride = pixel_margin) and produces:

1. Free space ("background"): grid points that are neither inside any mask
   nor within free_space_margin (diagonally) of one. Keeping a gap around
   silhouettes stops free-space points from hugging object edges.
2. One point cloud per detection: grid points inside the detection's mask
   whose four diagonal neighbours at object_boundary_margin are inside too.
   Edge pixels mix object and background depth, so they are eroded away.

Grid Layout:
============
    x = 0, m, 2m, ...  < width        (outer loop)
    y = 0, m, 2m, ...  < height       (inner loop)

Per-object grids start at int(x1), int(y1) of the detection box and stop
before x2, y2; points outside the image are skipped.

Diagonal neighbours at offset d:
    (x-d, y-d)   (x+d, y-d)
          \\       /
           (x, y)
          /       \\
    (x-d, y+d)   (x+d, y+d)
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..perception2d.detector import Detection
from ..perception2d.masks import MaskMembershipTester
from ..utils.logger import LoggerMixin
from .depth_lookup import DepthLookupFn, as_depth_lookup


@dataclass
class DetectedObject:
    """
    Point cloud of one detected object or of the free space.

    Attributes:
        label: Class label (or the background label).
        vertices: (M, 3) camera-relative points.
        rect: Source box (x1, y1, x2, y2) in image pixels; the full image
              for the background.
        score: Detection confidence (1.0 for the background).
        nearest_z: Smallest z among the vertices.
        origin: Center of the axis-aligned bounds of the vertices.
        is_background: True for the free-space cloud.
    """

    label: str
    vertices: np.ndarray
    rect: Tuple[float, float, float, float]
    score: float
    nearest_z: float
    origin: np.ndarray
    is_background: bool = False

    @property
    def num_vertices(self) -> int:
        return len(self.vertices)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "label": self.label,
            "vertices": self.vertices.tolist(),
            "rect": list(self.rect),
            "score": self.score,
            "nearest_z": self.nearest_z,
            "origin": self.origin.tolist(),
            "is_background": self.is_background,
        }

    def __repr__(self) -> str:
        kind = "background" if self.is_background else f"score={self.score:.2f}"
        return (
            f"DetectedObject({self.label}, {kind}, "
            f"vertices={self.num_vertices}, nearest_z={self.nearest_z:.2f})"
        )


@dataclass
class _PointAccumulator:
    """Collects sampled points and their aggregate statistics."""

    points: List[np.ndarray] = field(default_factory=list)

    def add(self, point) -> None:
        self.points.append(np.asarray(point, dtype=np.float64).reshape(3))

    def __len__(self) -> int:
        return len(self.points)

    def build(
        self,
        label: str,
        rect: Tuple[float, float, float, float],
        score: float,
        is_background: bool = False,
    ) -> DetectedObject:
        vertices = np.stack(self.points)
        lower = vertices.min(axis=0)
        upper = vertices.max(axis=0)
        return DetectedObject(
            label=label,
            vertices=vertices,
            rect=tuple(float(v) for v in rect),
            score=float(score),
            nearest_z=float(lower[2]),
            origin=(lower + upper) / 2,
            is_background=is_background,
        )


def _grid(xs: np.ndarray, ys: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Flattened grid, x-major (x outer loop, y inner loop)."""
    gx, gy = np.meshgrid(xs, ys, indexing="ij")
    return gx.ravel(), gy.ravel()


class DepthGridSampler(LoggerMixin):
    """
    Turn detections + masks + depth into object and free-space point clouds.

    Usage:
        sampler = DepthGridSampler(pixel_margin=15, object_boundary_margin=5,
                                   background_label="env")
        objects = sampler.sample(detections, masks, (width, height), lookup)

    Attributes:
        pixel_margin: Grid stride in image pixels.
        object_boundary_margin: Erosion offset for object interiors (0 = off).
        background_label: Label of the free-space cloud; None/"" disables it.
        label_whitelist: Labels to keep; empty keeps every label.
        free_space_margin: Dilation offset around masks for free space.
            None means pixel_margin + 2.
        discarded_block_free_space: Whether detections dropped by the
            whitelist still keep free space away from their masks.
    """

    MIN_OBJECT_VERTICES = 2
    MIN_BACKGROUND_VERTICES = 1

    def __init__(
        self,
        pixel_margin: int = 15,
        object_boundary_margin: int = 5,
        background_label: Optional[str] = "env",
        label_whitelist: Sequence[str] = (),
        free_space_margin: Optional[int] = None,
        discarded_block_free_space: bool = True,
    ):
        if pixel_margin <= 0:
            raise ValueError(f"pixel_margin must be positive, got {pixel_margin}")
        if object_boundary_margin < 0:
            raise ValueError(
                f"object_boundary_margin must be >= 0, got {object_boundary_margin}"
            )
        if free_space_margin is not None and free_space_margin < 0:
            raise ValueError(f"free_space_margin must be >= 0, got {free_space_margin}")
        if isinstance(label_whitelist, str):
            raise ValueError(
                f"label_whitelist must be a sequence of labels, got the string {label_whitelist!r}"
            )

        self.pixel_margin = int(pixel_margin)
        self.object_boundary_margin = int(object_boundary_margin)
        self.background_label = background_label or None
        self.label_whitelist = tuple(label_whitelist)
        self.free_space_margin = free_space_margin
        self.discarded_block_free_space = discarded_block_free_space

    @property
    def dilation_margin(self) -> int:
        """Neighbour offset used to keep free space away from masks."""
        if self.free_space_margin is not None:
            return int(self.free_space_margin)
        return self.pixel_margin + 2

    def is_discarded(self, detection: Detection) -> bool:
        """True if the whitelist excludes this detection's label."""
        return bool(self.label_whitelist) and detection.class_name not in self.label_whitelist

    def sample(
        self,
        detections: Sequence[Detection],
        masks: np.ndarray,
        image_size: Tuple[int, int],
        depth_lookup,
    ) -> List[DetectedObject]:
        """
        Sample free space and every kept detection.

        Args:
            detections: Detections in image pixels, index-aligned with masks.
            masks: (N, mask_h, mask_w) uint8 masks in {0, 255}.
            image_size: (width, height) of the image.
            depth_lookup: Callable (x, y) -> Optional[Point3D] or an object
                with try_get_camera_relative_point.

        Returns:
            Background object first (if any), then objects in detection order.

        Raises:
            ValueError: If detections and masks are not index-aligned.
        """
        width, height = int(image_size[0]), int(image_size[1])
        lookup = as_depth_lookup(depth_lookup)
        tester = MaskMembershipTester(masks, width, height)

        if len(detections) != tester.num_masks and len(detections) > 0:
            raise ValueError(
                f"Got {len(detections)} detections but {tester.num_masks} masks"
            )

        discarded = [self.is_discarded(det) for det in detections]
        objects: List[DetectedObject] = []

        if self.background_label is not None:
            if self.discarded_block_free_space:
                blockers = list(range(len(detections)))
            else:
                blockers = [i for i, d in enumerate(discarded) if not d]

            background = self.sample_free_space(tester, blockers, width, height, lookup)
            if background is not None:
                objects.append(background)

        for index, detection in enumerate(detections):
            if discarded[index]:
                continue
            obj = self.sample_object(tester, index, detection, width, height, lookup)
            if obj is not None:
                objects.append(obj)

        self.logger.debug(
            "Sampled %d objects from %d detections (%d discarded)",
            len(objects), len(detections), sum(discarded),
        )
        return objects

    def free_space_points(
        self,
        tester: MaskMembershipTester,
        blockers: Sequence[int],
        width: int,
        height: int,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Grid points that are free space.

        A point is blocked when it lies inside any blocker mask or any of
        its diagonal neighbours at dilation_margin does.

        Returns:
            (xs, ys) of the unblocked grid points, x-major order.
        """
        gx, gy = _grid(
            np.arange(0, width, self.pixel_margin),
            np.arange(0, height, self.pixel_margin),
        )
        blocked = np.zeros(gx.shape, dtype=bool)

        for index in blockers:
            blocked |= tester.contains_many(gx, gy, index)
            blocked |= tester.any_neighbor_inside(gx, gy, index, self.dilation_margin)

        return gx[~blocked], gy[~blocked]

    def object_points(
        self,
        tester: MaskMembershipTester,
        index: int,
        detection: Detection,
        width: int,
        height: int,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Grid points accepted as the interior of one instance.

        Returns:
            (xs, ys) of accepted points, x-major order.
        """
        xs = np.arange(int(detection.x1), detection.x2, self.pixel_margin).astype(np.int64)
        ys = np.arange(int(detection.y1), detection.y2, self.pixel_margin).astype(np.int64)
        xs = xs[(xs >= 0) & (xs < width)]
        ys = ys[(ys >= 0) & (ys < height)]

        gx, gy = _grid(xs, ys)
        accepted = tester.contains_many(gx, gy, index)

        if self.object_boundary_margin > 0 and accepted.any():
            accepted &= ~tester.any_neighbor_outside(
                gx, gy, index, self.object_boundary_margin
            )

        return gx[accepted], gy[accepted]

    def sample_free_space(
        self,
        tester: MaskMembershipTester,
        blockers: Sequence[int],
        width: int,
        height: int,
        lookup: DepthLookupFn,
    ) -> Optional[DetectedObject]:
        """Free-space cloud, or None if no point had depth."""
        xs, ys = self.free_space_points(tester, blockers, width, height)
        points = _resolve(xs, ys, lookup)

        if len(points) < self.MIN_BACKGROUND_VERTICES:
            return None

        return points.build(
            label=self.background_label,
            rect=(0, 0, width, height),
            score=1.0,
            is_background=True,
        )

    def sample_object(
        self,
        tester: MaskMembershipTester,
        index: int,
        detection: Detection,
        width: int,
        height: int,
        lookup: DepthLookupFn,
    ) -> Optional[DetectedObject]:
        """Object cloud, or None with fewer than MIN_OBJECT_VERTICES points."""
        xs, ys = self.object_points(tester, index, detection, width, height)
        points = _resolve(xs, ys, lookup)

        # A single point is not a reconstructable surface
        if len(points) < self.MIN_OBJECT_VERTICES:
            return None

        return points.build(
            label=detection.class_name,
            rect=detection.bbox,
            score=detection.confidence,
        )

    def __repr__(self) -> str:
        return (
            f"DepthGridSampler(pixel_margin={self.pixel_margin}, "
            f"boundary={self.object_boundary_margin}, "
            f"free_space={self.dilation_margin}, "
            f"background={self.background_label!r})"
        )


def _resolve(xs: np.ndarray, ys: np.ndarray, lookup: DepthLookupFn) -> _PointAccumulator:
    """Query depth for each grid point; misses contribute nothing."""
    points = _PointAccumulator()
    for x, y in zip(xs.tolist(), ys.tolist()):
        point = lookup(x, y)
        if point is not None:
            points.add(point)
    return points
