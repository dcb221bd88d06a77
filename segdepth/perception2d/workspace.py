"""Caller-owned scratch buffers reused across inference calls."""

from typing import Optional

import numpy as np


class InferenceWorkspace:
    """
    Grow-only scratch storage for the candidate buffer.

    One workspace must not be shared by two overlapping calls. Every
    pipeline call starts with reset(), so rows written by an earlier
    (possibly failed) call are never visible.

    Attributes:
        initial_capacity: Row capacity allocated on first use.
        num_candidates: Rows filled during the current call.
    """

    def __init__(self, initial_capacity: int = 300):
        if initial_capacity <= 0:
            raise ValueError(f"initial_capacity must be positive, got {initial_capacity}")
        self.initial_capacity = initial_capacity
        self.num_candidates = 0
        self._candidates: Optional[np.ndarray] = None

    @property
    def capacity(self) -> int:
        """Currently allocated candidate rows (0 before first use)."""
        return 0 if self._candidates is None else self._candidates.shape[0]

    def reset(self) -> None:
        """Forget the rows of the previous call; keeps the allocation."""
        self.num_candidates = 0

    def _ensure_capacity(self, rows: int, cols: int) -> None:
        buffer = self._candidates
        if buffer is None or buffer.shape[1] != cols:
            # Column layout changed (different model): start over.
            capacity = self.initial_capacity
            while capacity < rows:
                capacity *= 2
            self._candidates = np.zeros((capacity, cols), dtype=np.float32)
            self.num_candidates = 0
            return

        capacity = buffer.shape[0]
        if rows <= capacity:
            return

        while capacity < rows:
            capacity *= 2

        grown = np.zeros((capacity, cols), dtype=np.float32)
        grown[:self.num_candidates] = buffer[:self.num_candidates]
        self._candidates = grown

    def append_candidates(self, rows: np.ndarray) -> None:
        """
        Append candidate rows, doubling the buffer on overflow.

        Args:
            rows: (K, 6 + num_masks) rows [x, y, w, h, conf, cls, coeffs...].
        """
        rows = np.atleast_2d(rows)
        if rows.shape[0] == 0:
            return
        self._ensure_capacity(self.num_candidates + rows.shape[0], rows.shape[1])
        end = self.num_candidates + rows.shape[0]
        self._candidates[self.num_candidates:end] = rows
        self.num_candidates = end

    def candidates(self, cols: int) -> np.ndarray:
        """View of the rows filled during the current call."""
        if self._candidates is None or self.num_candidates == 0:
            return np.zeros((0, cols), dtype=np.float32)
        return self._candidates[:self.num_candidates]

    def __repr__(self) -> str:
        return (
            f"InferenceWorkspace(capacity={self.capacity}, "
            f"filled={self.num_candidates})"
        )
