"""
Camera Intrinsic Parameters Module.

Mathematical Background:
========================

A pixel (u, v) with depth d along the optical axis back-projects to the
camera frame (x right, y down, z forward) as:
    X = (u - cx) * d / fx
    Y = (v - cy) * d / fy
    Z = d

Focal Length from Field of View:
================================
fx = width  / (2 * tan(hfov / 2))
fy = height / (2 * tan(vfov / 2))

Frame sources that only report a field of view (most AR and RGB-D
runtimes) are modelled with the principal point at the image center and
fx, fy derived from the FOV.
"""

from dataclasses import dataclass
from typing import Union

import numpy as np


@dataclass
class CameraIntrinsics:
    """
    Camera intrinsic parameters.

    Attributes:
        fx: Focal length in x direction (pixels).
        fy: Focal length in y direction (pixels).
        cx: Principal point x coordinate (pixels).
        cy: Principal point y coordinate (pixels).
        width: Image width in pixels.
        height: Image height in pixels.

    Example:
        >>> intrinsics = CameraIntrinsics.from_fov(640, 480, 58.0, 58.0)
        >>> point = intrinsics.unproject_point(np.array([320, 240]), 2.0)
        >>> print(point)  # [0. 0. 2.]
    """

    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int

    @classmethod
    def from_fov(
        cls,
        width: int,
        height: int,
        horizontal_fov: float,
        vertical_fov: float,
    ) -> "CameraIntrinsics":
        """
        Build intrinsics from field-of-view angles.

        Args:
            width: Image width in pixels.
            height: Image height in pixels.
            horizontal_fov: Horizontal FOV in degrees, in (0, 180).
            vertical_fov: Vertical FOV in degrees, in (0, 180).

        Raises:
            ValueError: If a FOV is outside (0, 180) or the size is not positive.
        """
        if width <= 0 or height <= 0:
            raise ValueError(f"Image size must be positive, got {width}x{height}")
        for name, fov in (("horizontal_fov", horizontal_fov), ("vertical_fov", vertical_fov)):
            if not 0 < fov < 180:
                raise ValueError(f"{name} must be in (0, 180) degrees, got {fov}")

        fx = width / (2 * np.tan(np.radians(horizontal_fov) / 2))
        fy = height / (2 * np.tan(np.radians(vertical_fov) / 2))

        return cls(
            fx=float(fx),
            fy=float(fy),
            cx=width / 2,
            cy=height / 2,
            width=int(width),
            height=int(height),
        )

    def unproject_point(
        self,
        point_2d: np.ndarray,
        depth: Union[float, np.ndarray],
    ) -> np.ndarray:
        """
        Back-project 2D pixel(s) to 3D using depth.

        Args:
            point_2d: 2D pixel coordinate (2,) or coordinates (N, 2).
            depth: Depth value(s) along the optical axis.

        Returns:
            np.ndarray: 3D point(s) (3,) or (N, 3) in camera coordinates
            (x right, y down, z forward).
        """
        point_2d = np.atleast_2d(np.asarray(point_2d, dtype=np.float64))
        depth = np.atleast_1d(np.asarray(depth, dtype=np.float64))

        x = (point_2d[:, 0] - self.cx) * depth / self.fx
        y = (point_2d[:, 1] - self.cy) * depth / self.fy
        z = np.broadcast_to(depth, x.shape)

        return np.stack([x, y, z], axis=1).squeeze()

    def __repr__(self) -> str:
        return (
            f"CameraIntrinsics(fx={self.fx:.2f}, fy={self.fy:.2f}, "
            f"cx={self.cx:.2f}, cy={self.cy:.2f}, "
            f"width={self.width}, height={self.height})"
        )
