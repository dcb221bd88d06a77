"""
Per-pixel depth lookups.

The grid sampler only needs one capability from the frame source:

    try_get_camera_relative_point(x, y) -> Optional[Point3D]

where (x, y) is an image pixel and the result is an (3,) array in the
camera frame, or None when no depth is available at that pixel. Any plain
callable with the same signature is accepted too.
"""

from typing import Callable, Optional, Tuple, Union

import numpy as np

from ..calibration.intrinsics import CameraIntrinsics

DepthLookupFn = Callable[[int, int], Optional[np.ndarray]]


class DepthMapLookup:
    """
    Depth lookup backed by a dense depth map.

    The depth map may have a different resolution than the image described
    by the intrinsics; pixels are scaled onto depth cells. Non-positive or
    non-finite depth means "no depth here".

    Example:
        >>> lookup = DepthMapLookup.from_fov(depth_map, 58.0, 58.0)
        >>> point = lookup.try_get_camera_relative_point(320, 240)
    """

    def __init__(self, depth_map: np.ndarray, intrinsics: CameraIntrinsics):
        """
        Args:
            depth_map: (H, W) depth along the optical axis.
            intrinsics: Camera model of the image whose pixels are queried.
        """
        depth_map = np.asarray(depth_map, dtype=np.float32)
        if depth_map.ndim != 2:
            raise ValueError(f"depth_map must be 2D, got shape {depth_map.shape}")

        self.depth_map = depth_map
        self.intrinsics = intrinsics

    @classmethod
    def from_fov(
        cls,
        depth_map: np.ndarray,
        horizontal_fov: float,
        vertical_fov: float,
        image_size: Optional[Tuple[int, int]] = None,
    ) -> "DepthMapLookup":
        """
        Build a lookup for a camera described by its field of view.

        Args:
            depth_map: (H, W) depth map.
            horizontal_fov: Horizontal FOV in degrees.
            vertical_fov: Vertical FOV in degrees.
            image_size: (width, height) of the queried image. Defaults to
                the depth map size.
        """
        depth_map = np.asarray(depth_map)
        if image_size is None:
            image_size = (depth_map.shape[1], depth_map.shape[0])
        intrinsics = CameraIntrinsics.from_fov(
            image_size[0], image_size[1], horizontal_fov, vertical_fov
        )
        return cls(depth_map, intrinsics)

    def sample_depth(self, x: int, y: int) -> float:
        """Raw depth at an image pixel, 0.0 outside the map."""
        if not (0 <= x < self.intrinsics.width and 0 <= y < self.intrinsics.height):
            return 0.0

        map_h, map_w = self.depth_map.shape
        dx = int(x * map_w / self.intrinsics.width)
        dy = int(y * map_h / self.intrinsics.height)
        return float(self.depth_map[dy, dx])

    def try_get_camera_relative_point(self, x: int, y: int) -> Optional[np.ndarray]:
        """Camera-frame point at an image pixel, or None without valid depth."""
        depth = self.sample_depth(x, y)
        if not np.isfinite(depth) or depth <= 0:
            return None
        return self.intrinsics.unproject_point(np.array([x, y]), depth)

    __call__ = try_get_camera_relative_point

    def __repr__(self) -> str:
        h, w = self.depth_map.shape
        return f"DepthMapLookup(map={w}x{h}, {self.intrinsics!r})"


def as_depth_lookup(source: Union[DepthLookupFn, object]) -> DepthLookupFn:
    """
    Normalize a depth source into a plain callable.

    Accepts objects exposing try_get_camera_relative_point(x, y) or any
    callable (x, y) -> Optional[Point3D].

    Raises:
        TypeError: If the source offers neither.
    """
    method = getattr(source, "try_get_camera_relative_point", None)
    if callable(method):
        return method
    if callable(source):
        return source
    raise TypeError(
        f"{type(source).__name__} is not a depth lookup: expected a callable "
        "or an object with try_get_camera_relative_point(x, y)"
    )
