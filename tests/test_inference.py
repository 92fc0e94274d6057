"""Tests for the inference pool."""

from __future__ import annotations

import asyncio
import threading

import pytest
from helpers import make_settings

from engagecam.ml.inference import InferenceBusyError, InferencePool


async def test_run_returns_result() -> None:
    pool = InferencePool(make_settings(max_concurrent=1))
    try:
        assert await pool.run(lambda a, b: a + b, 2, 3) == 5
        assert pool.active_count == 0
        assert pool.queue_depth == 0
    finally:
        pool.shutdown()


async def test_saturated_pool_raises_busy() -> None:
    pool = InferencePool(make_settings(max_concurrent=1), timeout=0.05)
    release = threading.Event()
    try:
        blocker = asyncio.create_task(pool.run(release.wait, 5.0))
        await asyncio.sleep(0.01)
        assert pool.active_count == 1

        with pytest.raises(InferenceBusyError):
            await pool.run(lambda: None)
        assert pool.queue_depth == 0

        release.set()
        assert await blocker is True
    finally:
        release.set()
        pool.shutdown()
