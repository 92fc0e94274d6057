"""Shared fixtures."""

from __future__ import annotations

import numpy as np
import pytest


@pytest.fixture()
def rgb_frame() -> np.ndarray:
    rng = np.random.default_rng(0)
    return rng.integers(0, 256, size=(120, 160, 3), dtype=np.uint8)
