"""
Camera model used to turn sampled depth into camera-relative points.

Classes:
    CameraIntrinsics: Pinhole intrinsics, constructible from a field of view.
"""

from .intrinsics import CameraIntrinsics

__all__ = ["CameraIntrinsics"]
