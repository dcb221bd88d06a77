"""
Tests for camera intrinsics and depth-map lookups.

These tests verify:
1. Intrinsics derived from field of view
2. Back-projection of pixels with depth
3. Depth map sampling, scaling and invalid depth handling
4. Normalization of depth sources
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add repository root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from segdepth.calibration.intrinsics import CameraIntrinsics
from segdepth.fusion.depth_lookup import DepthMapLookup, as_depth_lookup


# =============================================================================
# Intrinsics Tests
# =============================================================================

class TestCameraIntrinsics:
    """Tests for CameraIntrinsics."""

    def test_from_fov_ninety_degrees(self):
        """Test that a 90 degree FOV puts the focal length at half the width."""
        intr = CameraIntrinsics.from_fov(640, 480, 90.0, 90.0)

        assert intr.fx == pytest.approx(320.0)
        assert intr.fy == pytest.approx(240.0)
        assert intr.cx == 320.0
        assert intr.cy == 240.0

    def test_narrower_fov_longer_focal_length(self):
        wide = CameraIntrinsics.from_fov(640, 480, 90.0, 70.0)
        narrow = CameraIntrinsics.from_fov(640, 480, 45.0, 35.0)

        assert narrow.fx > wide.fx
        assert narrow.fy > wide.fy

    def test_unproject_center(self):
        intr = CameraIntrinsics.from_fov(640, 480, 58.0, 58.0)

        point = intr.unproject_point(np.array([320, 240]), 2.0)

        np.testing.assert_allclose(point, [0.0, 0.0, 2.0])

    def test_unproject_image_edge(self):
        """Test that the image edge sits on the FOV boundary."""
        intr = CameraIntrinsics.from_fov(640, 480, 90.0, 90.0)

        # tan(45 deg) = 1: the right edge is as far sideways as it is deep
        point = intr.unproject_point(np.array([640, 240]), 3.0)

        np.testing.assert_allclose(point, [3.0, 0.0, 3.0])

    def test_unproject_many(self):
        intr = CameraIntrinsics(fx=100.0, fy=50.0, cx=10.0, cy=20.0, width=20, height=40)
        pixels = np.array([[10, 20], [110, 20], [10, 70]], dtype=np.float64)

        points = intr.unproject_point(pixels, np.array([1.0, 2.0, 4.0]))

        np.testing.assert_allclose(points, [
            [0.0, 0.0, 1.0],
            [2.0, 0.0, 2.0],
            [0.0, 4.0, 4.0],
        ])

    def test_axes(self):
        """Test x right, y down, z forward."""
        intr = CameraIntrinsics.from_fov(640, 480, 58.0, 58.0)

        point = intr.unproject_point(np.array([600, 400]), 1.0)

        assert point[0] > 0
        assert point[1] > 0
        assert point[2] == 1.0

    @pytest.mark.parametrize("hfov,vfov", [(0, 45), (180, 45), (60, -1), (60, 200)])
    def test_invalid_fov(self, hfov, vfov):
        with pytest.raises(ValueError):
            CameraIntrinsics.from_fov(640, 480, hfov, vfov)

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            CameraIntrinsics.from_fov(0, 480, 60, 45)


# =============================================================================
# Depth Map Lookup Tests
# =============================================================================

class TestDepthMapLookup:
    """Tests for DepthMapLookup."""

    def test_valid_depth(self):
        lookup = DepthMapLookup.from_fov(np.full((10, 10), 2.0), 90.0, 90.0)

        point = lookup.try_get_camera_relative_point(5, 5)

        np.testing.assert_allclose(point, [0.0, 0.0, 2.0])

    def test_invalid_depth(self):
        depth = np.full((10, 10), 2.0, dtype=np.float32)
        depth[1, 1] = 0.0
        depth[2, 2] = np.nan
        depth[3, 3] = -1.0
        depth[4, 4] = np.inf
        lookup = DepthMapLookup.from_fov(depth, 60.0, 60.0)

        for x in range(1, 5):
            assert lookup.try_get_camera_relative_point(x, x) is None

    def test_out_of_bounds(self):
        lookup = DepthMapLookup.from_fov(np.ones((10, 10)), 60.0, 60.0)

        assert lookup(-1, 0) is None
        assert lookup(10, 0) is None
        assert lookup.sample_depth(0, 10) == 0.0

    def test_low_resolution_depth_map(self):
        """Test that image pixels are scaled onto a smaller depth map."""
        depth = np.arange(25, dtype=np.float32).reshape(5, 5) + 1
        lookup = DepthMapLookup.from_fov(depth, 60.0, 60.0, image_size=(100, 100))

        # Pixel (45, 85) -> depth cell (2, 4)
        assert lookup.sample_depth(45, 85) == depth[4, 2]
        assert lookup(45, 85)[2] == pytest.approx(depth[4, 2])

    def test_rejects_non_2d(self):
        with pytest.raises(ValueError):
            DepthMapLookup(np.ones((2, 2, 2)), CameraIntrinsics.from_fov(2, 2, 60, 60))


# =============================================================================
# Depth Source Tests
# =============================================================================

class TestAsDepthLookup:
    """Tests for depth source normalization."""

    def test_callable(self):
        def fn(x, y):
            return None

        assert as_depth_lookup(fn) is fn

    def test_frame_object(self):
        class Frame:
            def try_get_camera_relative_point(self, x, y):
                return np.array([x, y, 1.0])

        lookup = as_depth_lookup(Frame())

        np.testing.assert_array_equal(lookup(3, 4), [3, 4, 1])

    def test_invalid_source(self):
        with pytest.raises(TypeError):
            as_depth_lookup(42)
