"""Command line entry point.

Usage:
    engagecam serve
    engagecam webcam --pretrained-url hf://owner/engagement-model
"""

from __future__ import annotations

import argparse
import logging
import sys

import cv2
from pydantic import ValidationError

from engagecam.config import Settings, get_settings
from engagecam.main import LOG_FORMAT
from engagecam.ml.model_manager import ModelLoadError, OnnxModelManager
from engagecam.ml.webcam import Webcam
from engagecam.render import draw_overlay, render_text_graph
from engagecam.session import PredictionLoop

logger = logging.getLogger(__name__)

WINDOW_NAME = "EngageCam"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="engagecam", description="Webcam classification with a running tally")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every frame's tallies")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    webcam = sub.add_parser("webcam", help="Classify the local webcam in a window (press q to quit)")
    webcam.add_argument("--pretrained-url", default=None, help="Model directory or hf://owner/repo")
    webcam.add_argument("--camera", type=int, default=None, help="Camera index")
    webcam.add_argument("--no-flip", action="store_true", help="Do not mirror the webcam")
    webcam.add_argument("--tally-mode", choices=["top", "all"], default=None)
    webcam.add_argument("--max-frames", type=int, default=0, help="Stop after this many frames (0 = no limit)")
    return parser.parse_args(argv)


def _settings_from_args(args: argparse.Namespace) -> Settings:
    overrides: dict[str, object] = {}
    for arg_name, field_name in (
        ("host", "host"),
        ("port", "port"),
        ("pretrained_url", "pretrained_url"),
        ("camera", "camera_index"),
        ("tally_mode", "tally_mode"),
    ):
        value = getattr(args, arg_name, None)
        if value is not None:
            overrides[field_name] = value
    if getattr(args, "no_flip", False):
        overrides["webcam_flip"] = False
    settings = get_settings()
    if not overrides:
        return settings
    # Re-validate so command line values get the same bounds as the environment.
    return Settings.model_validate({**settings.model_dump(), **overrides})


def run_serve(settings: Settings) -> int:
    import uvicorn

    uvicorn.run("engagecam.main:app", host=settings.host, port=settings.port, log_level="info")
    return 0


def run_webcam(settings: Settings, max_frames: int = 0) -> int:
    manager = OnnxModelManager(settings)
    try:
        loaded = manager.load_pretrained()
    except ModelLoadError as exc:
        logger.error("%s", exc)
        return 1

    webcam = Webcam(
        width=settings.webcam_width,
        height=settings.webcam_height,
        flip=settings.webcam_flip,
        device_index=settings.camera_index,
    )
    try:
        webcam.setup()
    except RuntimeError as exc:
        logger.error("%s", exc)
        return 1
    webcam.play()

    loop = PredictionLoop.for_model(loaded)
    frames = 0
    exit_code = 0
    try:
        while max_frames <= 0 or frames < max_frames:
            frame = webcam.update()
            result = loop.step(frame)
            frames += 1

            overlay = draw_overlay(frame, result.predictions, result.tallies)
            cv2.imshow(WINDOW_NAME, cv2.cvtColor(overlay, cv2.COLOR_RGB2BGR))
            if cv2.waitKey(1) & 0xFF == ord("q"):
                break
    except KeyboardInterrupt:
        pass
    except RuntimeError:
        logger.exception("Webcam loop stopped on error")
        exit_code = 1
    finally:
        webcam.stop()
        cv2.destroyAllWindows()

    print(render_text_graph(loaded.tally.snapshot()))
    return exit_code


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)
    try:
        settings = _settings_from_args(args)
    except ValidationError as exc:
        logger.error("Invalid settings: %s", exc)
        return 2

    if args.command == "serve":
        return run_serve(settings)
    return run_webcam(settings, max_frames=args.max_frames)


if __name__ == "__main__":
    sys.exit(main())
