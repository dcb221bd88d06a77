"""
Segmentation + depth pipeline.

Per frame:
    1. Letterbox the image and run the network (black box)
    2. Decode detections and instance masks (perception2d)
    3. Sample masks against the depth lookup into point clouds (fusion)

Each call is a stateless transform apart from the caller-owned
InferenceWorkspace. SegmentationDepthEngine does not lock; use one
EngineRunner per engine when calls can come from several threads.
"""

import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .fusion.depth_sampler import DepthGridSampler, DetectedObject
from .perception2d.detector import ClassLabels, Detection
from .perception2d.predictor import InferFn, ModelFlavor, PredictionResult, YoloPredictor
from .perception2d.workspace import InferenceWorkspace
from .utils.config_loader import get_nested, load_config
from .utils.logger import LoggerMixin


@dataclass(frozen=True)
class EngineConfig:
    """
    Validated engine configuration.

    Invalid values are rejected here, never mid-pipeline.

    Attributes:
        conf_threshold: Minimum best-class score, in [0, 1].
        nms_threshold: NMS IoU threshold, in [0, 1].
        top_k: Maximum detections per image (> 0).
        class_agnostic_nms: Suppress across classes.
        upsample_masks: Upsample masks to input resolution.
        pixel_margin: Sampling grid stride in pixels (> 0).
        object_boundary_margin: Erosion offset for object interiors (>= 0).
        label_whitelist: Labels to keep; empty keeps all.
        background_label: Free-space label; None disables free space.
        input_size: Network input (width, height).
        num_masks: Prototype channels of segmentation models.
        free_space_margin: Dilation around masks for free space;
            None = pixel_margin + 2.
        discarded_block_free_space: Whitelist-discarded detections still
            block free space.
        model_flavor: 'segmentation' or 'detection'.
        class_names_file: Optional names file, one label per line.
    """

    conf_threshold: float = 0.25
    nms_threshold: float = 0.45
    top_k: int = 300
    class_agnostic_nms: bool = False
    upsample_masks: bool = True
    pixel_margin: int = 15
    object_boundary_margin: int = 5
    label_whitelist: Tuple[str, ...] = ()
    background_label: Optional[str] = "env"
    input_size: Tuple[int, int] = (640, 640)
    num_masks: int = 32
    free_space_margin: Optional[int] = None
    discarded_block_free_space: bool = True
    model_flavor: str = ModelFlavor.SEGMENTATION.value
    class_names_file: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.label_whitelist, str):
            raise ValueError(
                f"label_whitelist must be a list of labels, got the string {self.label_whitelist!r}"
            )
        object.__setattr__(self, "label_whitelist", tuple(self.label_whitelist))
        object.__setattr__(self, "input_size", tuple(int(v) for v in self.input_size))

        for name in ("conf_threshold", "nms_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be in [0, 1], got {value}")
        if self.top_k <= 0:
            raise ValueError(f"top_k must be positive, got {self.top_k}")
        if self.pixel_margin <= 0:
            raise ValueError(f"pixel_margin must be positive, got {self.pixel_margin}")
        if self.object_boundary_margin < 0:
            raise ValueError(
                f"object_boundary_margin must be >= 0, got {self.object_boundary_margin}"
            )
        if self.free_space_margin is not None and self.free_space_margin < 0:
            raise ValueError(f"free_space_margin must be >= 0, got {self.free_space_margin}")
        if len(self.input_size) != 2 or min(self.input_size) <= 0:
            raise ValueError(f"input_size must be two positive ints, got {self.input_size}")
        if self.num_masks < 0:
            raise ValueError(f"num_masks must be >= 0, got {self.num_masks}")

        # Raises ValueError for unknown flavors
        ModelFlavor(self.model_flavor)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "EngineConfig":
        """
        Build a config from a plain dictionary (e.g. parsed YAML).

        Raises:
            ValueError: On unknown keys or invalid values.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown engine config keys: {unknown}")
        return cls(**values)

    @classmethod
    def from_yaml(
        cls,
        path: Union[str, Path],
        overrides: Optional[Dict[str, Any]] = None,
        section: str = "engine",
    ) -> "EngineConfig":
        """
        Load a config from a YAML file.

        Args:
            path: YAML file path.
            overrides: Values deep-merged over the file's section.
            section: Dotted key of the engine settings, e.g. "engine" or
                "robot.engine".
        """
        section_overrides = None
        if overrides:
            section_overrides = {}
            target = section_overrides
            *parents, leaf = section.split(".")
            for part in parents:
                target = target.setdefault(part, {})
            target[leaf] = dict(overrides)

        config = load_config(path, overrides=section_overrides)
        values = get_nested(config, section) or {}
        if not isinstance(values, dict):
            raise ValueError(f"Config section '{section}' in {path} must be a mapping")
        return cls.from_dict(values)


@dataclass
class EngineResult:
    """
    Output of one engine call.

    Attributes:
        objects: Point clouds (background first, if any).
        detections: Detections for callers drawing their own overlays.
        masks: Instance masks, index-aligned with detections.
    """

    objects: List[DetectedObject] = field(default_factory=list)
    detections: List[Detection] = field(default_factory=list)
    masks: np.ndarray = field(default_factory=lambda: np.zeros((0, 0, 0), dtype=np.uint8))

    @property
    def background(self) -> Optional[DetectedObject]:
        """The free-space cloud, if one was produced."""
        for obj in self.objects:
            if obj.is_background:
                return obj
        return None


def create_predictor(
    config: EngineConfig,
    infer: InferFn,
    class_labels: Optional[ClassLabels] = None,
) -> YoloPredictor:
    """Select and configure the predictor variant named by the config."""
    return YoloPredictor(
        infer,
        flavor=config.model_flavor,
        class_labels=class_labels,
        input_size=config.input_size,
        conf_threshold=config.conf_threshold,
        nms_threshold=config.nms_threshold,
        top_k=config.top_k,
        class_agnostic=config.class_agnostic_nms,
        upsample=config.upsample_masks,
        num_masks=config.num_masks,
    )


class SegmentationDepthEngine(LoggerMixin):
    """
    Detections, masks and point clouds from one image and a depth lookup.

    Usage:
        engine = SegmentationDepthEngine(EngineConfig(), dnn_forward(net))
        result = engine.run(bgr_image, DepthMapLookup.from_fov(depth, 58, 58))
        for obj in result.objects:
            print(obj.label, obj.nearest_z)
    """

    def __init__(
        self,
        config: EngineConfig,
        infer: InferFn,
        class_labels: Optional[ClassLabels] = None,
    ):
        """
        Args:
            config: Validated configuration.
            infer: Forward pass, blob -> raw outputs.
            class_labels: Label table; defaults to config.class_names_file,
                then COCO labels.
        """
        if class_labels is None and config.class_names_file:
            class_labels = ClassLabels.from_file(config.class_names_file)

        self.config = config
        self.predictor = create_predictor(config, infer, class_labels)
        self.sampler = DepthGridSampler(
            pixel_margin=config.pixel_margin,
            object_boundary_margin=config.object_boundary_margin,
            background_label=config.background_label,
            label_whitelist=config.label_whitelist,
            free_space_margin=config.free_space_margin,
            discarded_block_free_space=config.discarded_block_free_space,
        )

    def run(
        self,
        image: np.ndarray,
        depth_lookup,
        workspace: Optional[InferenceWorkspace] = None,
    ) -> EngineResult:
        """
        Full pipeline on one BGR image.

        Args:
            image: (H, W, 3) uint8 BGR image.
            depth_lookup: Callable (x, y) -> Optional[Point3D] or an object
                with try_get_camera_relative_point.
            workspace: Scratch storage; a fresh one if None.

        Raises:
            Any exception from inference or post-processing, after logging.
        """
        try:
            prediction = self.predictor.infer(image, workspace)
            return self._sample(prediction, depth_lookup)
        except Exception:
            self.logger.exception("Segmentation depth inference failed")
            raise

    def process_outputs(
        self,
        raw_outputs: Sequence[np.ndarray],
        image_size: Tuple[int, int],
        depth_lookup,
        workspace: Optional[InferenceWorkspace] = None,
    ) -> EngineResult:
        """
        Pipeline on outputs of a forward pass run by the caller.

        Args:
            raw_outputs: Network outputs for the letterboxed image.
            image_size: (width, height) of the original image.
            depth_lookup: See run().
            workspace: Scratch storage; a fresh one if None.
        """
        try:
            prediction = self.predictor.postprocess(raw_outputs, image_size, workspace)
            return self._sample(prediction, depth_lookup)
        except Exception:
            self.logger.exception("Segmentation depth post-processing failed")
            raise

    def _sample(self, prediction: PredictionResult, depth_lookup) -> EngineResult:
        transform = prediction.transform
        objects = self.sampler.sample(
            prediction.detections,
            prediction.masks,
            (transform.image_width, transform.image_height),
            depth_lookup,
        )
        return EngineResult(
            objects=objects,
            detections=prediction.detections,
            masks=prediction.masks,
        )

    def get_class_label(self, class_id: Union[int, float]) -> str:
        return self.predictor.get_class_label(class_id)

    def __repr__(self) -> str:
        return f"SegmentationDepthEngine({self.predictor!r}, {self.sampler!r})"


class EngineRunner(LoggerMixin):
    """
    Serializes calls into one engine and owns its workspace.

    Usage:
        with EngineRunner(engine) as runner:
            result = runner.run(image, lookup)   # safe from any thread
    """

    def __init__(
        self,
        engine: SegmentationDepthEngine,
        workspace: Optional[InferenceWorkspace] = None,
    ):
        self.engine = engine
        self.workspace = workspace if workspace is not None else InferenceWorkspace()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def run(self, image: np.ndarray, depth_lookup) -> EngineResult:
        """engine.run() under the runner lock."""
        with self._lock:
            self._check_open()
            return self.engine.run(image, depth_lookup, self.workspace)

    def process_outputs(
        self,
        raw_outputs: Sequence[np.ndarray],
        image_size: Tuple[int, int],
        depth_lookup,
    ) -> EngineResult:
        """engine.process_outputs() under the runner lock."""
        with self._lock:
            self._check_open()
            return self.engine.process_outputs(
                raw_outputs, image_size, depth_lookup, self.workspace
            )

    def close(self) -> None:
        """Refuse further calls; waits for a running call to finish."""
        with self._lock:
            self._closed = True
        self.logger.debug("Engine runner closed")

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("EngineRunner is closed")

    def __enter__(self) -> "EngineRunner":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
