"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> classifier

Frames beyond the semaphore limit wait up to 5s, then raise InferenceBusyError.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from engagecam.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class InferenceBusyError(RuntimeError):
    """Every inference slot stayed busy for the whole wait timeout."""


class InferencePool:
    """Bounds how many frames are classified at once."""

    def __init__(self, settings: Settings, timeout: float = SEMAPHORE_TIMEOUT_SECONDS) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="frame-inference",
        )
        self._timeout = timeout
        self._active = 0
        self._waiting = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a blocking call on the inference thread pool.

        Raises:
            InferenceBusyError: If no slot frees up within the timeout.
        """
        with self._counter_lock:
            self._waiting += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._timeout)
        except TimeoutError as exc:
            logger.warning("Inference pool saturated, rejecting frame after %.1fs", self._timeout)
            raise InferenceBusyError("Inference pool is busy") from exc
        finally:
            with self._counter_lock:
                self._waiting -= 1

        with self._counter_lock:
            self._active += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active -= 1

    @property
    def active_count(self) -> int:
        """Number of frames currently being classified."""
        with self._counter_lock:
            return self._active

    @property
    def queue_depth(self) -> int:
        """Number of frames waiting for a slot."""
        with self._counter_lock:
            return self._waiting

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
