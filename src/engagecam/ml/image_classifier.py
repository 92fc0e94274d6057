"""Image classification over an exported Teachable-Machine style ONNX model.

The bundle is a graph (``model.onnx``) plus ``metadata.json`` describing the
class labels and the square input size the model was trained on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from engagecam.ml.preprocessing import to_model_input

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

logger = logging.getLogger(__name__)

PROBABILITY_TOLERANCE: float = 1e-3


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


class ModelMetadata(BaseModel):
    """Contents of a model bundle's ``metadata.json``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", protected_namespaces=())

    labels: list[str] = Field(min_length=1)
    image_size: int = Field(default=224, ge=1, alias="imageSize")
    model_name: str | None = Field(default=None, alias="modelName")
    tm_version: str | None = Field(default=None, alias="tmVersion")
    time_stamp: str | None = Field(default=None, alias="timeStamp")
    user_metadata: dict[str, object] = Field(default_factory=dict, alias="userMetadata")


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def class_labels(self) -> list[str]:
        """Return the class labels in model output order."""
        ...

    @property
    def total_classes(self) -> int:
        """Return the number of classes the model predicts."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        """Classify an image.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            One result per class, in label order.
        """
        ...


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return (exp / np.sum(exp)).astype(np.float32)


def as_probabilities(scores: NDArray[np.float32]) -> NDArray[np.float32]:
    """Return scores unchanged if they already form a distribution, else softmax them."""
    if scores.size and np.all(scores >= 0.0) and np.all(scores <= 1.0):
        if abs(float(np.sum(scores)) - 1.0) <= PROBABILITY_TOLERANCE:
            return scores
    logger.debug("Model outputs are not probabilities, applying softmax")
    return softmax(scores)


class TeachableImageClassifier:
    """ImageClassifier backed by an ONNX Runtime session."""

    def __init__(self, session: InferenceSession, metadata: ModelMetadata, name: str | None = None) -> None:
        self._session = session
        self._metadata = metadata
        self._name = name or metadata.model_name or "model"

        model_input = session.get_inputs()[0]
        self._input_name: str = model_input.name
        self._channels_first = _is_channels_first(model_input.shape)

    @property
    def model_name(self) -> str:
        return self._name

    @property
    def class_labels(self) -> list[str]:
        return list(self._metadata.labels)

    @property
    def total_classes(self) -> int:
        return len(self._metadata.labels)

    @property
    def image_size(self) -> int:
        return self._metadata.image_size

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        tensor = to_model_input(image, self._metadata.image_size, channels_first=self._channels_first)
        outputs = self._session.run(None, {self._input_name: tensor})
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)

        if scores.size != self.total_classes:
            raise ValueError(f"Model returned {scores.size} scores for {self.total_classes} labels")

        probabilities = as_probabilities(scores)
        return [
            ClassificationResult(label=label, confidence=float(probability))
            for label, probability in zip(self._metadata.labels, probabilities, strict=True)
        ]


def _is_channels_first(shape: list[object]) -> bool:
    # NCHW graphs declare 3 channels in position 1; symbolic dims come through as strings.
    return len(shape) == 4 and shape[1] == 3 and shape[3] != 3
