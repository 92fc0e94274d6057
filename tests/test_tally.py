"""Tests for per-class tally bookkeeping."""

from __future__ import annotations

import threading

import pytest

from engagecam.ml.image_classifier import ClassificationResult
from engagecam.tally import TallyBoard, TallyMode, format_percentage, max_category, summarize


def _frame(*confidences: float, labels: tuple[str, ...] = ("focused", "distracted", "away")) -> list[ClassificationResult]:
    return [ClassificationResult(label=label, confidence=c) for label, c in zip(labels, confidences, strict=True)]


class TestFormatPercentage:
    def test_rounds_halves_up(self) -> None:
        assert format_percentage(0.125) == 13
        assert format_percentage(0.5) == 50

    def test_bounds(self) -> None:
        assert format_percentage(0.0) == 0
        assert format_percentage(1.0) == 100


class TestTallyBoard:
    def test_starts_at_zero_in_label_order(self) -> None:
        board = TallyBoard(["focused", "distracted", "away"])
        assert board.snapshot() == {"focused": 0, "distracted": 0, "away": 0}
        assert list(board.snapshot()) == ["focused", "distracted", "away"]
        assert board.frames_seen == 0

    def test_duplicate_labels_collapse(self) -> None:
        board = TallyBoard(["a", "b", "a"])
        assert board.labels == ["a", "b"]

    def test_threshold_is_one_over_classes(self) -> None:
        assert TallyBoard(["a", "b", "c", "d"]).threshold == pytest.approx(25.0)
        assert TallyBoard(["a", "b", "c"]).threshold == pytest.approx(100 / 3)

    def test_top_mode_counts_only_top_class(self) -> None:
        board = TallyBoard(["focused", "distracted", "away"])
        incremented = board.record(_frame(0.4, 0.35, 0.25))
        assert incremented == ["focused"]
        assert board.snapshot() == {"focused": 1, "distracted": 0, "away": 0}
        assert board.frames_seen == 1

    def test_top_mode_tie_goes_to_first_label(self) -> None:
        board = TallyBoard(["a", "b"], mode="top")
        assert board.record(_frame(0.5, 0.5, labels=("a", "b"))) == ["a"]

    def test_rounded_top_below_threshold_not_counted(self) -> None:
        board = TallyBoard(["focused", "distracted", "away"])
        # 0.334 rounds to 33%, under the 33.3% threshold.
        assert board.record(_frame(0.334, 0.333, 0.333)) == []
        assert board.snapshot() == {"focused": 0, "distracted": 0, "away": 0}
        assert board.frames_seen == 1

    def test_all_mode_counts_every_class_over_threshold(self) -> None:
        board = TallyBoard(["focused", "distracted", "away"], mode=TallyMode.ALL)
        assert board.record(_frame(0.4, 0.35, 0.25)) == ["focused", "distracted"]
        assert board.snapshot() == {"focused": 1, "distracted": 1, "away": 0}

    def test_all_mode_even_split_counts_both(self) -> None:
        board = TallyBoard(["a", "b"], mode="all")
        board.record(_frame(0.5, 0.5, labels=("a", "b")))
        assert board.snapshot() == {"a": 1, "b": 1}

    def test_unknown_labels_ignored(self) -> None:
        board = TallyBoard(["a", "b"])
        assert board.record([ClassificationResult(label="zzz", confidence=0.99)]) == []
        assert board.snapshot() == {"a": 0, "b": 0}

    def test_empty_frame_counts_frame_only(self) -> None:
        board = TallyBoard(["a", "b"])
        assert board.record([]) == []
        assert board.frames_seen == 1
        assert board.snapshot() == {"a": 0, "b": 0}

    def test_max_category_and_summary(self) -> None:
        board = TallyBoard(["focused", "distracted", "away"])
        board.record(_frame(0.1, 0.8, 0.1))
        board.record(_frame(0.1, 0.8, 0.1))
        board.record(_frame(0.9, 0.05, 0.05))
        assert board.max_category() == "distracted"
        assert board.summary() == "The system thinks you are mostly: distracted"

    def test_state_reads_counts_and_frames_together(self) -> None:
        board = TallyBoard(["a", "b"])
        board.record(_frame(0.9, 0.1, labels=("a", "b")))
        board.record(_frame(0.5, 0.5, labels=("a", "b")))
        assert board.state() == ({"a": 2, "b": 0}, 2)

    def test_reset(self) -> None:
        board = TallyBoard(["a", "b"])
        board.record(_frame(0.9, 0.1, labels=("a", "b")))
        board.reset()
        assert board.snapshot() == {"a": 0, "b": 0}
        assert board.frames_seen == 0

    def test_concurrent_records_are_all_counted(self) -> None:
        board = TallyBoard(["a", "b"])
        frame = _frame(0.9, 0.1, labels=("a", "b"))

        def worker() -> None:
            for _ in range(500):
                board.record(frame)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert board.snapshot()["a"] == 2000
        assert board.frames_seen == 2000


class TestMaxCategory:
    def test_ties_go_to_earliest(self) -> None:
        assert max_category({"a": 2, "b": 2, "c": 1}) == "a"

    def test_all_zero_picks_first(self) -> None:
        assert max_category({"a": 0, "b": 0}) == "a"

    def test_empty_is_none(self) -> None:
        assert max_category({}) is None
        assert summarize(None) == "The system thinks you are mostly: None"
