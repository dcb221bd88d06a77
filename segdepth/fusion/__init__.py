"""Fusion of instance masks with per-pixel depth."""

from .depth_lookup import DepthMapLookup, as_depth_lookup
from .depth_sampler import DepthGridSampler, DetectedObject

__all__ = ["DepthMapLookup", "as_depth_lookup", "DepthGridSampler", "DetectedObject"]
