"""Per-frame prediction loop and the background webcam session that drives it."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from engagecam.render import format_prediction
from engagecam.tally import max_category, summarize

if TYPE_CHECKING:
    from collections.abc import Callable

    import numpy as np
    from numpy.typing import NDArray

    from engagecam.ml.image_classifier import ClassificationResult, ImageClassifier
    from engagecam.ml.model_manager import LoadedModel
    from engagecam.ml.webcam import Webcam
    from engagecam.tally import TallyBoard

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FrameResult:
    """Everything produced by classifying one frame."""

    predictions: list[ClassificationResult]
    labels: list[str]
    incremented: list[str]
    tallies: dict[str, int]
    max_category: str | None
    summary: str
    frames_seen: int


class PredictionLoop:
    """Classifies frames and keeps the tally up to date."""

    def __init__(self, classifier: ImageClassifier, tally: TallyBoard) -> None:
        self.classifier = classifier
        self.tally = tally

    @classmethod
    def for_model(cls, loaded: LoadedModel) -> PredictionLoop:
        return cls(loaded.classifier, loaded.tally)

    def step(self, frame: NDArray[np.uint8]) -> FrameResult:
        predictions = self.classifier.classify(frame)
        incremented = self.tally.record(predictions)
        tallies, frames_seen = self.tally.state()
        logger.debug("Tallies: %s", tallies)

        category = max_category(tallies)
        return FrameResult(
            predictions=predictions,
            labels=[format_prediction(p) for p in predictions],
            incremented=incremented,
            tallies=tallies,
            max_category=category,
            summary=summarize(category),
            frames_seen=frames_seen,
        )


@dataclass
class _SessionState:
    frames: int = 0
    last_result: FrameResult | None = None
    last_error: str | None = None
    lock: threading.Lock = field(default_factory=threading.Lock)


class WebcamSession:
    """Runs ``update -> predict -> tally`` on a background thread until stopped.

    The model is looked up on every frame, so loading a new model while the
    session runs switches the loop over to it (and to its fresh tally).
    """

    def __init__(
        self,
        webcam: Webcam,
        get_model: Callable[[], LoadedModel],
        frame_interval: float = 0.0,
        on_frame: Callable[[FrameResult], None] | None = None,
    ) -> None:
        self._webcam = webcam
        self._get_model = get_model
        self._frame_interval = frame_interval
        self._on_frame = on_frame
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._state = _SessionState()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def frames(self) -> int:
        with self._state.lock:
            return self._state.frames

    @property
    def last_result(self) -> FrameResult | None:
        with self._state.lock:
            return self._state.last_result

    @property
    def last_error(self) -> str | None:
        with self._state.lock:
            return self._state.last_error

    def start(self) -> None:
        """Open the webcam and start the frame loop.

        Raises:
            RuntimeError: If the session is already running or the camera fails to open.
        """
        if self.running:
            raise RuntimeError("Webcam session already running")
        self._webcam.setup()
        self._webcam.play()
        self._stop_event.clear()
        with self._state.lock:
            self._state.last_error = None
        self._thread = threading.Thread(target=self._run, name="webcam-session", daemon=True)
        self._thread.start()
        logger.info("Webcam session started")

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None
        self._webcam.stop()
        logger.info("Webcam session stopped after %d frame(s)", self.frames)

    def step(self) -> FrameResult:
        """Grab one frame and classify it with the active model."""
        frame = self._webcam.update()
        result = PredictionLoop.for_model(self._get_model()).step(frame)
        with self._state.lock:
            self._state.frames += 1
            self._state.last_result = result
        if self._on_frame is not None:
            self._on_frame(result)
        return result

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.step()
            except Exception as exc:
                logger.exception("Webcam session stopped on error")
                with self._state.lock:
                    self._state.last_error = str(exc)
                self._stop_event.set()
                self._webcam.stop()
                return
            if self._frame_interval:
                self._stop_event.wait(self._frame_interval)
