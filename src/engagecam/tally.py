"""Per-class prediction tallies.

A ``TallyBoard`` counts, frame by frame, which class the model picked. The
board is created from the loaded model's class labels and replaced whenever
a new model is loaded.
"""

from __future__ import annotations

import math
import threading
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from engagecam.ml.image_classifier import ClassificationResult

SUMMARY_TEMPLATE = "The system thinks you are mostly: {category}"


class TallyMode(StrEnum):
    TOP = "top"  # only the highest-confidence class per frame
    ALL = "all"  # every class at or above the threshold


def format_percentage(confidence: float) -> int:
    """Convert a 0-1 confidence to a whole percentage, rounding halves up."""
    return int(math.floor(confidence * 100.0 + 0.5))


def summarize(category: str | None) -> str:
    return SUMMARY_TEMPLATE.format(category=category)


def max_category(tallies: dict[str, int]) -> str | None:
    """Return the label with the highest count.

    Ties go to the label that appears first. An empty mapping yields None.
    """
    best: str | None = None
    best_count = -math.inf
    for label, count in tallies.items():
        if count > best_count:
            best = label
            best_count = count
    return best


class TallyBoard:
    """Thread-safe running count of per-frame predictions by class label."""

    def __init__(self, labels: Iterable[str], mode: TallyMode | str = TallyMode.TOP) -> None:
        self._counts: dict[str, int] = dict.fromkeys(labels, 0)
        self._mode = TallyMode(mode)
        self._frames_seen = 0
        self._lock = threading.Lock()

    @property
    def labels(self) -> list[str]:
        return list(self._counts)

    @property
    def mode(self) -> TallyMode:
        return self._mode

    @property
    def threshold(self) -> float:
        """Minimum percentage a prediction needs to be counted (100 / classes)."""
        if not self._counts:
            return math.inf
        return 100.0 / len(self._counts)

    @property
    def frames_seen(self) -> int:
        with self._lock:
            return self._frames_seen

    def record(self, predictions: Sequence[ClassificationResult]) -> list[str]:
        """Count one frame of predictions and return the labels that were incremented."""
        threshold = self.threshold
        if self._mode is TallyMode.TOP:
            candidates = [max(predictions, key=lambda p: p.confidence)] if predictions else []
        else:
            candidates = list(predictions)

        incremented: list[str] = []
        with self._lock:
            self._frames_seen += 1
            for prediction in candidates:
                if prediction.label not in self._counts:
                    continue
                if format_percentage(prediction.confidence) >= threshold:
                    self._counts[prediction.label] += 1
                    incremented.append(prediction.label)
        return incremented

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def state(self) -> tuple[dict[str, int], int]:
        """Return the counts and the number of frames seen, read together."""
        with self._lock:
            return dict(self._counts), self._frames_seen

    def max_category(self) -> str | None:
        return max_category(self.snapshot())

    def summary(self) -> str:
        return summarize(self.max_category())

    def reset(self) -> None:
        with self._lock:
            for label in self._counts:
                self._counts[label] = 0
            self._frames_seen = 0
