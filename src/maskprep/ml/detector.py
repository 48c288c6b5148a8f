"""Mask R-CNN detector adapter over an ONNX Runtime session.

The graph is treated as opaque: inputs go in by name, outputs come back by
name, and only the first output is shape/type checked before being handed on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from maskprep.ml.errors import EngineResultError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from maskprep.ml.model_manager import ModelManager
    from maskprep.ml.pipeline import DetectorInputs, InputPipeline

logger = logging.getLogger(__name__)


def describe_type(value: object) -> str:
    """Human-readable runtime type, including dtype and rank for arrays."""
    if isinstance(value, np.ndarray):
        return f"ndarray[{value.dtype}] with shape {value.shape}"
    return type(value).__name__


def validate_engine_result(results: Sequence[object]) -> NDArray[np.floating]:
    """Check that an engine returned at least one non-empty 2D+ float array.

    Returns:
        The first result.

    Raises:
        EngineResultError: If there are no results, the first result is not
            an array of float arrays, or it holds no predictions.
    """
    if len(results) < 1:
        raise EngineResultError("result is empty")

    first = results[0]
    if not isinstance(first, np.ndarray) or first.ndim < 2 or not np.issubdtype(first.dtype, np.floating):
        observed = describe_type(first)
        raise EngineResultError(f"result has unexpected type {observed}", observed_type=observed)

    if len(first) < 1:
        raise EngineResultError("predictions are empty", observed_type=describe_type(first))

    return first


@dataclass(frozen=True)
class DetectionResult:
    """Named raw output tensors together with the inputs that produced them."""

    outputs: dict[str, NDArray[np.floating]]
    inputs: DetectorInputs


class MaskRCNNDetector:
    """Runs a Mask R-CNN graph on images prepared by an InputPipeline."""

    def __init__(
        self,
        model_manager: ModelManager,
        pipeline: InputPipeline,
        model_name: str = "mask_rcnn_coco",
        output_names: Sequence[str] | None = None,
    ) -> None:
        self._model_manager = model_manager
        self._pipeline = pipeline
        self._output_names = list(output_names) if output_names is not None else None
        self.model_name = model_name

    def detect(self, image: NDArray[np.generic], image_id: int = 0) -> DetectionResult:
        """Prepare inputs for an image and run the detector graph.

        Raises:
            ConstructionError: If the image is malformed.
            EngineResultError: If the model cannot be loaded or run, or returns
                nothing usable.
        """
        inputs = self._pipeline.prepare(image, image_id=image_id)

        try:
            session = self._model_manager.get_session(self.model_name)
            output_names = self._output_names
            if output_names is None:
                output_names = [output.name for output in session.get_outputs()]
            results = session.run(output_names, inputs.as_feed())
        except Exception as exc:
            raise EngineResultError(f"error running the model session: {exc}") from exc
        validate_engine_result(results)

        logger.debug("Detector %s returned %d outputs", self.model_name, len(results))
        return DetectionResult(outputs=dict(zip(output_names, results, strict=False)), inputs=inputs)
