"""
Tests for raw output decoding, confidence filtering and NMS.

These tests verify:
1. Channel-major reshape and class count correction
2. Strict confidence filtering into the workspace buffer
3. IoU computation
4. Class-aware and class-agnostic NMS, including the top_k cap
5. Letterbox inversion of boxes
"""

import logging
import sys
from pathlib import Path

import numpy as np
import pytest

# Add repository root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from segdepth.perception2d.letterbox import LetterboxTransform
from segdepth.perception2d.postprocess import (
    DetectionPostProcessor,
    apply_nms,
    compute_iou_matrix,
    filter_candidates,
    rescale_boxes,
    reshape_raw_output,
    xywh_to_xyxy,
)
from segdepth.perception2d.workspace import InferenceWorkspace


def make_output(boxes_cxcywh, class_scores, coeffs=None):
    """Pack candidate rows into a (1, C, N) channel-major tensor."""
    boxes = np.asarray(boxes_cxcywh, dtype=np.float32).reshape(-1, 4)
    scores = np.asarray(class_scores, dtype=np.float32).reshape(len(boxes), -1)
    parts = [boxes, scores]
    if coeffs is not None:
        parts.append(np.asarray(coeffs, dtype=np.float32).reshape(len(boxes), -1))
    rows = np.concatenate(parts, axis=1)
    return rows.T[np.newaxis].copy()


def random_boxes(rng, n, extent=640, min_size=10, max_size=200):
    """Random [x1, y1, x2, y2] boxes."""
    xy = rng.uniform(0, extent - max_size, size=(n, 2))
    wh = rng.uniform(min_size, max_size, size=(n, 2))
    return np.concatenate([xy, xy + wh], axis=1).astype(np.float32)


# =============================================================================
# Reshape Tests
# =============================================================================

class TestReshapeRawOutput:
    """Tests for the (1, C, N) -> (N, C) reshape."""

    def test_transposes_channels(self):
        """Test that each row holds one candidate's channels."""
        output = np.arange(7 * 5, dtype=np.float32).reshape(1, 7, 5)

        rows, num_classes = reshape_raw_output(output, num_classes=1, num_masks=2)

        assert rows.shape == (5, 7)
        assert num_classes == 1
        np.testing.assert_array_equal(rows[3], output[0, :, 3])

    def test_mismatch_corrects_class_count(self, caplog):
        """Test that a class count mismatch is corrected with a warning."""
        output = np.zeros((1, 4 + 3 + 2, 10), dtype=np.float32)

        with caplog.at_level(logging.WARNING):
            rows, num_classes = reshape_raw_output(output, num_classes=80, num_masks=2)

        assert num_classes == 3
        assert rows.shape == (10, 9)
        assert any("different" in record.getMessage() for record in caplog.records)

    def test_too_few_channels(self):
        """Test that a tensor without room for box and coefficients fails."""
        output = np.zeros((1, 5, 10), dtype=np.float32)

        with pytest.raises(ValueError):
            reshape_raw_output(output, num_classes=80, num_masks=32)

    def test_bad_rank(self):
        """Test that non-batched tensors are rejected."""
        with pytest.raises(ValueError):
            reshape_raw_output(np.zeros((7, 5)), num_classes=1, num_masks=2)
        with pytest.raises(ValueError):
            reshape_raw_output(np.zeros((2, 7, 5)), num_classes=1, num_masks=2)


# =============================================================================
# Candidate Filter Tests
# =============================================================================

class TestFilterCandidates:
    """Tests for confidence filtering."""

    def test_threshold_is_strict(self):
        """Test that a score equal to the threshold is dropped."""
        output = make_output(
            [[50, 50, 10, 10], [50, 50, 10, 10]],
            [[0.5, 0.1], [0.1, 0.6]],
        )
        rows, num_classes = reshape_raw_output(output, num_classes=2, num_masks=0)

        candidates = filter_candidates(rows, num_classes, 0, conf_threshold=0.5)

        assert len(candidates) == 1
        assert candidates[0, 5] == 1
        assert candidates[0, 4] == pytest.approx(0.6)

    def test_center_to_corner(self):
        """Test that boxes become top-left + size."""
        output = make_output([[50, 60, 20, 10]], [[0.9]], coeffs=[[0.25, -0.5]])
        rows, _ = reshape_raw_output(output, num_classes=1, num_masks=2)

        candidates = filter_candidates(rows, 1, 2, conf_threshold=0.25)

        np.testing.assert_allclose(candidates[0, :4], [40, 55, 20, 10])
        np.testing.assert_allclose(candidates[0, 6:], [0.25, -0.5])

    def test_confidence_clipped(self):
        """Test that out-of-range scores are clipped to 1."""
        output = make_output([[50, 50, 10, 10]], [[1.7]])
        rows, _ = reshape_raw_output(output, num_classes=1, num_masks=0)

        candidates = filter_candidates(rows, 1, 0, conf_threshold=0.25)

        assert candidates[0, 4] == 1.0

    def test_nothing_passes(self):
        """Test that an all-low output gives an empty block."""
        output = make_output([[50, 50, 10, 10]], [[0.1]], coeffs=[[0, 0]])
        rows, _ = reshape_raw_output(output, num_classes=1, num_masks=2)

        candidates = filter_candidates(rows, 1, 2, conf_threshold=0.25)

        assert candidates.shape == (0, 8)

    def test_workspace_grows(self):
        """Test that the candidate buffer doubles past its capacity."""
        workspace = InferenceWorkspace(initial_capacity=4)
        output = make_output(np.tile([50, 50, 10, 10], (10, 1)), np.full((10, 1), 0.9))
        rows, _ = reshape_raw_output(output, num_classes=1, num_masks=0)

        candidates = filter_candidates(rows, 1, 0, 0.25, workspace)

        assert len(candidates) == 10
        assert workspace.num_candidates == 10
        assert workspace.capacity == 16

    def test_workspace_reset_between_calls(self):
        """Test that rows from an earlier call never leak into the next."""
        workspace = InferenceWorkspace(initial_capacity=4)
        many = make_output(np.tile([50, 50, 10, 10], (10, 1)), np.full((10, 1), 0.9))
        few = make_output([[20, 20, 4, 4], [30, 30, 4, 4]], [[0.8], [0.7]])

        rows, _ = reshape_raw_output(many, num_classes=1, num_masks=0)
        filter_candidates(rows, 1, 0, 0.25, workspace)
        rows, _ = reshape_raw_output(few, num_classes=1, num_masks=0)
        candidates = filter_candidates(rows, 1, 0, 0.25, workspace)

        assert len(candidates) == 2
        np.testing.assert_allclose(candidates[:, 0], [18, 28])
        assert workspace.capacity == 16


# =============================================================================
# Workspace Tests
# =============================================================================

class TestInferenceWorkspace:
    """Tests for the reusable candidate buffer."""

    def test_starts_unallocated(self):
        workspace = InferenceWorkspace()

        assert workspace.capacity == 0
        assert workspace.candidates(8).shape == (0, 8)

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            InferenceWorkspace(initial_capacity=0)

    def test_column_change_reallocates(self):
        """Test that a different row layout starts a fresh buffer."""
        workspace = InferenceWorkspace(initial_capacity=2)
        workspace.append_candidates(np.ones((3, 6), dtype=np.float32))
        workspace.reset()
        workspace.append_candidates(np.full((1, 8), 2.0, dtype=np.float32))

        candidates = workspace.candidates(8)

        assert candidates.shape == (1, 8)
        assert np.all(candidates == 2.0)


# =============================================================================
# IoU Tests
# =============================================================================

class TestIoU:
    """Tests for IoU computation."""

    def test_iou_identical_boxes(self):
        """Test IoU of identical boxes is 1."""
        box = np.array([[0, 0, 10, 10]])
        assert compute_iou_matrix(box, box)[0, 0] == pytest.approx(1.0)

    def test_iou_no_overlap(self):
        """Test IoU of non-overlapping boxes is 0."""
        box1 = np.array([[0, 0, 10, 10]])
        box2 = np.array([[20, 20, 30, 30]])
        assert compute_iou_matrix(box1, box2)[0, 0] == 0.0

    def test_iou_partial_overlap(self):
        """Test IoU of partially overlapping boxes."""
        box1 = np.array([[0, 0, 10, 10]])
        box2 = np.array([[5, 5, 15, 15]])

        # Intersection 25, union 175
        assert compute_iou_matrix(box1, box2)[0, 0] == pytest.approx(25 / 175)

    def test_iou_degenerate_boxes(self):
        """Test that zero-area boxes give 0 instead of NaN."""
        box = np.array([[5, 5, 5, 5]])
        assert compute_iou_matrix(box, box)[0, 0] == 0.0

    def test_iou_matrix_pairs(self):
        """Test that entry (i, j) pairs boxes1[i] with boxes2[j]."""
        boxes1 = np.array([[0, 0, 10, 10], [100, 100, 110, 110]])
        boxes2 = np.array([[100, 100, 110, 105], [0, 0, 10, 10], [5, 0, 15, 10]])

        matrix = compute_iou_matrix(boxes1, boxes2)

        assert matrix.shape == (2, 3)
        np.testing.assert_allclose(matrix, [
            [0.0, 1.0, 50 / 150],
            [0.5, 0.0, 0.0],
        ])

    def test_iou_matrix_symmetric(self):
        rng = np.random.default_rng(3)
        boxes = random_boxes(rng, 6)

        matrix = compute_iou_matrix(boxes, boxes)

        np.testing.assert_allclose(matrix, matrix.T)
        np.testing.assert_allclose(np.diag(matrix), 1.0)
        assert np.all((matrix >= 0) & (matrix <= 1))

    def test_xywh_to_xyxy(self):
        boxes = xywh_to_xyxy(np.array([[10, 20, 30, 40]]))
        np.testing.assert_array_equal(boxes, [[10, 20, 40, 60]])


# =============================================================================
# NMS Tests
# =============================================================================

class TestNMS:
    """Tests for Non-Maximum Suppression."""

    def test_overlapping_same_class(self):
        """Test that the weaker of two heavily overlapping boxes goes."""
        # IoU = 8000 / 10000 = 0.8
        boxes = np.array([[0, 0, 100, 100], [0, 0, 100, 80]], dtype=np.float32)
        scores = np.array([0.9, 0.6])

        keep = apply_nms(boxes, scores, np.array([0, 0]), iou_threshold=0.45)

        np.testing.assert_array_equal(keep, [0])

    def test_overlapping_different_classes(self):
        """Test that class-aware NMS keeps overlapping boxes of other classes."""
        boxes = np.array([[0, 0, 100, 100], [0, 0, 100, 80]], dtype=np.float32)
        scores = np.array([0.9, 0.6])

        keep = apply_nms(boxes, scores, np.array([0, 1]), iou_threshold=0.45)

        np.testing.assert_array_equal(keep, [0, 1])

    def test_class_agnostic(self):
        """Test that class-agnostic NMS suppresses across classes."""
        boxes = np.array([[0, 0, 100, 100], [0, 0, 100, 80]], dtype=np.float32)
        scores = np.array([0.6, 0.9])

        keep = apply_nms(boxes, scores, np.array([0, 1]), iou_threshold=0.45, class_agnostic=True)

        np.testing.assert_array_equal(keep, [1])

    def test_iou_equal_to_threshold_is_kept(self):
        """Test that suppression needs IoU strictly above the threshold."""
        # IoU = 50 / 100 = 0.5
        boxes = np.array([[0, 0, 10, 10], [0, 0, 10, 5]], dtype=np.float32)
        scores = np.array([0.9, 0.8])

        keep = apply_nms(boxes, scores, np.array([0, 0]), iou_threshold=0.5)

        assert len(keep) == 2

    def test_non_overlapping_all_kept_by_score(self):
        """Test keep order is descending confidence."""
        boxes = np.array([
            [0, 0, 10, 10],
            [100, 100, 110, 110],
            [200, 200, 210, 210],
        ], dtype=np.float32)
        scores = np.array([0.3, 0.9, 0.6])

        keep = apply_nms(boxes, scores, np.array([0, 1, 0]))

        np.testing.assert_array_equal(keep, [1, 2, 0])

    def test_empty(self):
        keep = apply_nms(np.zeros((0, 4)), np.zeros(0), np.zeros(0))
        assert len(keep) == 0

    def test_invalid_top_k(self):
        boxes = np.array([[0, 0, 10, 10]], dtype=np.float32)
        with pytest.raises(ValueError):
            apply_nms(boxes, np.array([0.9]), np.array([0]), top_k=0)

    def test_class_ids_required(self):
        boxes = np.array([[0, 0, 10, 10]], dtype=np.float32)
        with pytest.raises(ValueError):
            apply_nms(boxes, np.array([0.9]))

    def test_top_k_cap_with_many_candidates(self):
        """Test that thousands of high-score candidates never exceed top_k."""
        rng = np.random.default_rng(0)
        n = 5000
        # Small boxes spread out so most survive suppression
        boxes = random_boxes(rng, n, extent=4000, min_size=2, max_size=8)
        scores = rng.uniform(0.9, 1.0, size=n)
        class_ids = rng.integers(0, 80, size=n)

        keep = apply_nms(boxes, scores, class_ids, iou_threshold=0.45, top_k=300)
        keep_agnostic = apply_nms(boxes, scores, class_ids, top_k=300, class_agnostic=True)

        assert len(keep) == 300
        assert len(keep_agnostic) == 300
        assert np.all(np.diff(scores[keep]) <= 0)

    def test_idempotent(self):
        """Test that NMS over its own output keeps everything."""
        rng = np.random.default_rng(1)
        boxes = random_boxes(rng, 400)
        scores = rng.uniform(0, 1, size=400)
        class_ids = rng.integers(0, 3, size=400)

        keep = apply_nms(boxes, scores, class_ids, iou_threshold=0.45, top_k=100)
        again = apply_nms(boxes[keep], scores[keep], class_ids[keep], iou_threshold=0.45, top_k=100)

        np.testing.assert_array_equal(again, np.arange(len(keep)))

    def test_kept_boxes_do_not_overlap(self):
        """Test that no two kept same-class boxes exceed the threshold."""
        rng = np.random.default_rng(2)
        boxes = random_boxes(rng, 300)
        scores = rng.uniform(0, 1, size=300)
        class_ids = rng.integers(0, 2, size=300)

        keep = apply_nms(boxes, scores, class_ids, iou_threshold=0.3)

        for c in (0, 1):
            kept = keep[class_ids[keep] == c]
            iou = compute_iou_matrix(boxes[kept], boxes[kept])
            np.fill_diagonal(iou, 0)
            assert np.all(iou <= 0.3 + 1e-6)


# =============================================================================
# Box Rescaling Tests
# =============================================================================

class TestRescaleBoxes:
    """Tests for letterbox inversion of boxes."""

    def test_landscape_image(self):
        """Test a 1280x720 frame letterboxed into 640x640."""
        transform = LetterboxTransform.from_sizes(1280, 720, 640, 640)

        boxes = rescale_boxes(np.array([[10, 150, 100, 200]]), transform)

        np.testing.assert_array_equal(boxes, [[20, 20, 200, 120]])
        assert boxes.dtype == np.float32

    def test_identity(self):
        """Test that equal image and input sizes leave boxes unchanged."""
        transform = LetterboxTransform.from_sizes(640, 640, 640, 640)

        boxes = rescale_boxes(np.array([[10, 20, 30, 40]]), transform)

        np.testing.assert_array_equal(boxes, [[10, 20, 30, 40]])


# =============================================================================
# DetectionPostProcessor Tests
# =============================================================================

class TestDetectionPostProcessor:
    """Tests for the combined reshape, filter and NMS step."""

    def test_duplicate_person(self):
        """Test that a 0.6 duplicate of a 0.9 person is suppressed."""
        # xyxy [0, 0, 100, 100] and [0, 0, 100, 80]: IoU 0.8
        output = make_output(
            [[50, 50, 100, 100], [50, 40, 100, 80]],
            [[0.9, 0.0], [0.6, 0.0]],
            coeffs=[[1, 2], [3, 4]],
        )
        processor = DetectionPostProcessor(conf_threshold=0.25, nms_threshold=0.45, num_masks=2)

        rows, num_classes = processor.process(output, num_classes=2)

        assert num_classes == 2
        assert rows.shape == (1, 8)
        np.testing.assert_allclose(rows[0, :4], [0, 0, 100, 100])
        assert rows[0, 4] == pytest.approx(0.9)
        np.testing.assert_allclose(rows[0, 6:], [1, 2])

    def test_confidence_bounds(self):
        """Test that every kept row scores in (threshold, 1]."""
        rng = np.random.default_rng(4)
        n = 500
        boxes = np.concatenate([
            rng.uniform(50, 600, size=(n, 2)),
            rng.uniform(5, 80, size=(n, 2)),
        ], axis=1)
        scores = rng.uniform(0, 1.2, size=(n, 5))
        output = make_output(boxes, scores, coeffs=rng.normal(size=(n, 4)))
        processor = DetectionPostProcessor(conf_threshold=0.3, top_k=50, num_masks=4)

        rows, _ = processor.process(output, num_classes=5)

        assert 0 < len(rows) <= 50
        assert np.all(rows[:, 4] > 0.3)
        assert np.all(rows[:, 4] <= 1.0)

    def test_result_survives_workspace_reuse(self):
        """Test that returned rows are a copy, not a workspace view."""
        workspace = InferenceWorkspace()
        processor = DetectionPostProcessor(num_masks=0)
        first = make_output([[50, 50, 10, 10]], [[0.9]])
        second = make_output([[300, 300, 10, 10]], [[0.8]])

        rows, _ = processor.process(first, 1, workspace)
        processor.process(second, 1, workspace)

        np.testing.assert_allclose(rows[0, :4], [45, 45, 55, 55])

    def test_empty(self):
        processor = DetectionPostProcessor(num_masks=2)
        output = make_output([[50, 50, 10, 10]], [[0.1]], coeffs=[[0, 0]])

        rows, _ = processor.process(output, num_classes=1)

        assert rows.shape == (0, 8)

    def test_invalid_top_k(self):
        with pytest.raises(ValueError):
            DetectionPostProcessor(top_k=0)
