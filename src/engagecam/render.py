"""Render tallies as a bar graph with a "most likely class" summary."""

from __future__ import annotations

from typing import TYPE_CHECKING

import cv2
from jinja2 import Environment, PackageLoader, select_autoescape

from engagecam.tally import format_percentage, max_category, summarize

if TYPE_CHECKING:
    from collections.abc import Sequence

    import numpy as np
    from numpy.typing import NDArray

    from engagecam.ml.image_classifier import ClassificationResult

environment = Environment(
    loader=PackageLoader("engagecam", "templates"),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)

# RGB colours cycled over the bars, matching the class_<n> CSS classes.
BAR_COLORS: list[tuple[int, int, int]] = [
    (66, 133, 244),
    (219, 68, 55),
    (244, 180, 0),
    (15, 157, 88),
    (171, 71, 188),
    (0, 172, 193),
]


def format_prediction(prediction: ClassificationResult) -> str:
    return f"{prediction.label}: {format_percentage(prediction.confidence)}%"


def render_graph(tallies: dict[str, int]) -> str:
    """Render tallies as the HTML bar graph fragment."""
    template = environment.get_template("graph.html")
    return template.render(tallies=tallies, summary=summarize(max_category(tallies)))


def render_text_graph(tallies: dict[str, int], width: int = 40) -> str:
    """Render tallies as a plain-text bar graph scaled to ``width`` characters."""
    if not tallies:
        return summarize(None)
    label_width = max(len(label) for label in tallies)
    peak = max(tallies.values())
    lines = []
    for label, count in tallies.items():
        bar = "#" * (round(count / peak * width) if peak else 0)
        lines.append(f"{label.ljust(label_width)} | {bar} {count}")
    lines.append(summarize(max_category(tallies)))
    return "\n".join(lines)


def draw_overlay(
    frame: NDArray[np.uint8],
    predictions: Sequence[ClassificationResult],
    tallies: dict[str, int],
    bar_scale: float = 1.0,
) -> NDArray[np.uint8]:
    """Draw prediction labels, tally bars and the summary onto a copy of ``frame``."""
    canvas = frame.copy()
    font = cv2.FONT_HERSHEY_SIMPLEX
    line_height = 18
    y = line_height

    for prediction in predictions:
        cv2.putText(canvas, format_prediction(prediction), (8, y), font, 0.45, (255, 255, 255), 1, cv2.LINE_AA)
        y += line_height

    max_width = canvas.shape[1] - 16
    for i, (label, count) in enumerate(tallies.items()):
        color = BAR_COLORS[i % len(BAR_COLORS)]
        bar_width = min(int(count * bar_scale), max_width)
        if bar_width > 0:
            cv2.rectangle(canvas, (8, y - 10), (8 + bar_width, y), color, thickness=-1)
        cv2.putText(canvas, label, (8, y), font, 0.4, (255, 255, 255), 1, cv2.LINE_AA)
        y += line_height

    cv2.putText(
        canvas,
        summarize(max_category(tallies)),
        (8, canvas.shape[0] - 8),
        font,
        0.4,
        (255, 255, 0),
        1,
        cv2.LINE_AA,
    )
    return canvas
