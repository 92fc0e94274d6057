"""Helpers shared by the test modules."""

from __future__ import annotations

import io
import json
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import numpy as np
from PIL import Image

from engagecam.config import Settings

LABELS = ["focused", "distracted", "away"]


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/engagecam_test_models",
        "pretrained_url": "./engagement-model/",
        "tally_mode": "top",
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def make_fake_session(scores: list[float], input_shape: list[object] | None = None) -> MagicMock:
    """A stand-in for onnxruntime.InferenceSession returning fixed scores."""
    session = MagicMock()
    session.get_inputs.return_value = [SimpleNamespace(name="input_1", shape=input_shape or ["batch", 224, 224, 3])]
    session.run.return_value = [np.array([scores], dtype=np.float32)]
    return session


def write_bundle(directory: Path, labels: list[str] | None = None, image_size: int = 224) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "model.onnx").write_bytes(b"onnx-graph")
    metadata = {
        "tfjsVersion": "1.3.1",
        "tmVersion": "2.4.7",
        "modelName": "engagement",
        "labels": labels or LABELS,
        "imageSize": image_size,
    }
    (directory / "metadata.json").write_text(json.dumps(metadata))
    return directory


def png_bytes(width: int = 64, height: int = 48, color: tuple[int, int, int] = (200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()
