"""YOLO segmentation post-processing and depth sampling into 3D point clouds."""

__version__ = "0.1.0"

from . import calibration
from . import fusion
from . import perception2d
from . import utils
from .pipeline import (
    EngineConfig,
    EngineResult,
    EngineRunner,
    SegmentationDepthEngine,
    create_predictor,
)

__all__ = [
    "calibration",
    "fusion",
    "perception2d",
    "utils",
    "EngineConfig",
    "EngineResult",
    "EngineRunner",
    "SegmentationDepthEngine",
    "create_predictor",
]
