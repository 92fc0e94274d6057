"""Tests for the prediction loop and the webcam session."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from unittest.mock import MagicMock, patch

import numpy as np
import pytest
from helpers import LABELS, make_fake_session

from engagecam.ml.image_classifier import ClassificationResult, ModelMetadata, TeachableImageClassifier
from engagecam.ml.model_manager import LoadedModel, ModelSource, NoModelLoadedError, SourceKind
from engagecam.ml.webcam import Webcam
from engagecam.session import PredictionLoop, WebcamSession
from engagecam.tally import TallyBoard, max_category, summarize


def _loaded(scores: list[float]) -> LoadedModel:
    classifier = TeachableImageClassifier(make_fake_session(scores), ModelMetadata(labels=LABELS))
    return LoadedModel(
        classifier=classifier,
        tally=TallyBoard(LABELS),
        source=ModelSource(kind=SourceKind.LOCAL, location="./engagement-model/"),
    )


def _fake_capture(frames: int | None = None) -> MagicMock:
    capture = MagicMock()
    capture.isOpened.return_value = True
    frame = np.zeros((480, 640, 3), dtype=np.uint8)
    if frames is None:
        capture.read.return_value = (True, frame)
    else:
        capture.read.side_effect = [(True, frame)] * frames + [(False, None)] * 1000
    return capture


def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met in time")


class TestPredictionLoop:
    def test_step_classifies_and_tallies(self, rgb_frame: np.ndarray) -> None:
        loop = PredictionLoop.for_model(_loaded([0.1, 0.8, 0.1]))

        result = loop.step(rgb_frame)

        assert result.labels == ["focused: 10%", "distracted: 80%", "away: 10%"]
        assert result.incremented == ["distracted"]
        assert result.tallies == {"focused": 0, "distracted": 1, "away": 0}
        assert result.max_category == "distracted"
        assert result.summary == "The system thinks you are mostly: distracted"
        assert result.frames_seen == 1

    def test_steps_accumulate(self, rgb_frame: np.ndarray) -> None:
        loaded = _loaded([0.7, 0.2, 0.1])
        loop = PredictionLoop.for_model(loaded)
        for _ in range(3):
            loop.step(rgb_frame)
        assert loaded.tally.snapshot() == {"focused": 3, "distracted": 0, "away": 0}

    def test_summary_matches_tallies_under_concurrent_records(self, rgb_frame: np.ndarray) -> None:
        loaded = _loaded([0.1, 0.8, 0.1])
        loop = PredictionLoop.for_model(loaded)
        away = [ClassificationResult(label="away", confidence=0.9)]
        done = threading.Event()

        def record_away() -> None:
            while not done.is_set():
                loaded.tally.record(away)

        worker = threading.Thread(target=record_away)
        worker.start()
        try:
            results = [loop.step(rgb_frame) for _ in range(50)]
        finally:
            done.set()
            worker.join()

        for result in results:
            assert result.max_category == max_category(result.tallies)
            assert result.summary == summarize(result.max_category)
            assert result.frames_seen >= sum(result.tallies.values())


class TestWebcam:
    @patch("engagecam.ml.webcam.cv2.VideoCapture")
    def test_setup_fails_when_camera_unavailable(self, mock_capture_cls: MagicMock) -> None:
        mock_capture_cls.return_value.isOpened.return_value = False
        with pytest.raises(RuntimeError, match="Cannot open camera 0"):
            Webcam().setup()

    @patch("engagecam.ml.webcam.cv2.VideoCapture")
    def test_update_produces_sized_rgb_canvas(self, mock_capture_cls: MagicMock) -> None:
        capture = MagicMock()
        capture.isOpened.return_value = True
        frame = np.zeros((480, 640, 3), dtype=np.uint8)
        frame[:, :320] = (255, 0, 0)  # blue on the left in BGR
        capture.read.return_value = (True, frame)
        mock_capture_cls.return_value = capture

        cam = Webcam(width=200, height=200, flip=True)
        cam.setup()
        cam.play()
        canvas = cam.update()

        assert canvas.shape == (200, 200, 3)
        # Mirrored, so the blue half ends up on the right; RGB puts blue last.
        assert tuple(canvas[100, 190]) == (0, 0, 255)
        assert cam.canvas is canvas

    @patch("engagecam.ml.webcam.cv2.VideoCapture")
    def test_update_without_flip_keeps_orientation(self, mock_capture_cls: MagicMock) -> None:
        capture = MagicMock()
        capture.isOpened.return_value = True
        frame = np.zeros((480, 640, 3), dtype=np.uint8)
        frame[:, :320] = (255, 0, 0)
        capture.read.return_value = (True, frame)
        mock_capture_cls.return_value = capture

        cam = Webcam(width=200, height=200, flip=False)
        cam.setup()
        cam.play()
        canvas = cam.update()

        assert tuple(canvas[100, 10]) == (0, 0, 255)
        assert tuple(canvas[100, 190]) == (0, 0, 0)

    def test_update_requires_play(self) -> None:
        with pytest.raises(RuntimeError, match="not playing"):
            Webcam().update()


class TestWebcamSession:
    @patch("engagecam.ml.webcam.cv2.VideoCapture")
    def test_runs_frames_until_stopped(self, mock_capture_cls: MagicMock) -> None:
        mock_capture_cls.return_value = _fake_capture()
        loaded = _loaded([0.1, 0.1, 0.8])
        session = WebcamSession(Webcam(), lambda: loaded, frame_interval=0.001)

        session.start()
        _wait_until(lambda: session.frames >= 3)
        session.stop()

        assert not session.running
        assert loaded.tally.snapshot()["away"] >= 3
        assert session.last_result is not None
        assert session.last_error is None

    @patch("engagecam.ml.webcam.cv2.VideoCapture")
    def test_error_stops_session(self, mock_capture_cls: MagicMock) -> None:
        mock_capture_cls.return_value = _fake_capture(frames=2)
        loaded = _loaded([0.1, 0.1, 0.8])
        session = WebcamSession(Webcam(), lambda: loaded)

        session.start()
        _wait_until(lambda: not session.running)

        assert session.frames == 2
        assert session.last_error is not None
        assert "Failed to read a frame" in session.last_error

    @patch("engagecam.ml.webcam.cv2.VideoCapture")
    def test_no_model_stops_session(self, mock_capture_cls: MagicMock) -> None:
        mock_capture_cls.return_value = _fake_capture()

        def no_model() -> LoadedModel:
            raise NoModelLoadedError("No model loaded")

        session = WebcamSession(Webcam(), no_model)
        session.start()
        _wait_until(lambda: not session.running)
        assert session.last_error == "No model loaded"

    @patch("engagecam.ml.webcam.cv2.VideoCapture")
    def test_on_frame_callback(self, mock_capture_cls: MagicMock) -> None:
        mock_capture_cls.return_value = _fake_capture()
        seen: list[str | None] = []
        session = WebcamSession(
            Webcam(),
            lambda: _loaded([0.9, 0.05, 0.05]),
            on_frame=lambda r: seen.append(r.max_category),
        )
        session._webcam.setup()
        session._webcam.play()

        session.step()

        assert seen == ["focused"]
