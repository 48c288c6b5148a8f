"""Single-scale image classification over a fixed-resolution input.

Classifiers reuse the detector's tensor composer; only the target size and
the normalization scheme differ per model (299px centered for Inception,
224px mean-subtracted BGR for Caffe-style ResNets).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from maskprep.ml.composer import compose_image_tensor
from maskprep.ml.detector import validate_engine_result
from maskprep.ml.errors import EngineResultError
from maskprep.ml.model_manager import get_spec
from maskprep.ml.normalization import get_normalizer
from maskprep.ml.preprocessing import PillowResizer

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from maskprep.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


class Labels:
    """Class labels indexed by output position."""

    def __init__(self, names: list[str] | None = None) -> None:
        self._names = names or []

    @classmethod
    def from_file(cls, path: str | Path) -> Labels:
        """Read one label per line, skipping trailing blank lines."""
        lines = Path(path).read_text(encoding="utf-8").splitlines()
        while lines and not lines[-1].strip():
            lines.pop()
        return cls([line.strip() for line in lines])

    def get(self, index: int) -> str:
        if 0 <= index < len(self._names):
            return self._names[index]
        return str(index)

    def __len__(self) -> int:
        return len(self._names)


@dataclass(frozen=True)
class Prediction:
    label: str
    score: float


@dataclass(frozen=True)
class Predictions:
    """Raw class scores for one image."""

    scores: NDArray[np.floating]
    labels: Labels

    def best(self, n: int) -> list[Prediction]:
        """Return the n highest-scoring predictions, best first."""
        order = np.argsort(-self.scores, kind="stable")[: max(n, 0)]
        return [Prediction(label=self.labels.get(int(i)), score=float(self.scores[i])) for i in order]


class ImageClassifier:
    """Classifies whole images with a registry model."""

    def __init__(self, model_manager: ModelManager, model_name: str = "inception_v3") -> None:
        spec = get_spec(model_name)
        if spec.input_size is None:
            raise KeyError(f"Model {model_name} is not a classifier")

        self.model_name = model_name
        self._model_manager = model_manager
        self._resizer = PillowResizer(spec.input_size, spec.input_size)
        self._normalizer = get_normalizer(spec.image_mode)
        self._labels: Labels | None = None
        self._labels_lock = threading.Lock()

    @property
    def input_size(self) -> int:
        return self._resizer.height

    def classify(self, image: NDArray[np.generic]) -> Predictions:
        """Run the classifier on one image.

        Raises:
            ConstructionError: If the image is malformed.
            EngineResultError: If the model cannot be loaded or run, or returns
                nothing usable.
        """
        resized = self._resizer.resize(image)
        tensor = compose_image_tensor(resized.pixels, self._normalizer)

        try:
            session = self._model_manager.get_session(self.model_name)
            input_name = session.get_inputs()[0].name
            output_name = session.get_outputs()[0].name
            results = session.run([output_name], {input_name: tensor})
        except Exception as exc:
            raise EngineResultError(f"error running the model session: {exc}") from exc
        scores = validate_engine_result(results)

        return Predictions(scores=np.asarray(scores[0], dtype=np.float32), labels=self._get_labels())

    def _get_labels(self) -> Labels:
        with self._labels_lock:
            if self._labels is None:
                path = self._model_manager.ensure_labels(self.model_name)
                self._labels = Labels.from_file(path) if path is not None else Labels()
                logger.info("Loaded %d labels for %s", len(self._labels), self.model_name)
            return self._labels
