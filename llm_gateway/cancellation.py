# llm_gateway/cancellation.py
# SPDX-License-Identifier: Apache-2.0
"""
Correlation-key registry for aborting in-flight generations.

Each abortable call installs a :class:`CancelHandle` under its caller-supplied
correlation key and removes it when it finishes. ``abort(key)`` fires the
handle: the bound asyncio task (a unary call) is cancelled and the handle's
event is set (streams race their next read against it).

There is no TTL; the registry only ever holds calls that are still running.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Dict, List, Optional

from llm_gateway.errors import ErrorKind, LLMError

logger = logging.getLogger(__name__)

__all__ = ["CancelHandle", "CancellationRegistry"]


class CancelHandle:
    """Cancellation token owned by exactly one call."""

    def __init__(self, key: str) -> None:
        self.key = key
        self.started_at = time.time()
        self._event = asyncio.Event()
        self._task: Optional["asyncio.Future"] = None
        self._aborted = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    def bind(self, task: "asyncio.Future") -> None:
        """Attach the task to cancel on abort. Cancels at once if already aborted."""
        self._task = task
        if self._aborted:
            task.cancel()

    def cancel(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._event.set()
        task = self._task
        if task is not None and not task.done():
            task.cancel()

    async def wait(self) -> None:
        await self._event.wait()


class CancellationRegistry:
    """
    Thread-safe ``correlation key -> CancelHandle`` map.

    A key may have at most one live handle. :meth:`remove` only drops the
    entry if it still belongs to the given handle, so a late finisher cannot
    evict a newer call that reused the key.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, CancelHandle] = {}

    def install(self, key: str) -> CancelHandle:
        if not key:
            raise LLMError("correlation key must be non-empty", kind=ErrorKind.INVALID_REQUEST)
        handle = CancelHandle(key)
        with self._lock:
            if key in self._entries:
                raise LLMError(
                    f"a generation is already running under key {key!r}",
                    kind=ErrorKind.INVALID_REQUEST,
                    details={"correlation_key": key},
                )
            self._entries[key] = handle
        return handle

    def abort(self, key: str) -> None:
        """Cancel the call registered under ``key``; ``not_found`` if none is."""
        with self._lock:
            handle = self._entries.pop(key, None)
        if handle is None:
            raise LLMError(
                f"no in-flight generation for key {key!r}",
                kind=ErrorKind.NOT_FOUND,
                details={"correlation_key": key},
            )
        logger.debug("aborting generation %s", key)
        handle.cancel()

    def remove(self, key: str, handle: CancelHandle) -> None:
        with self._lock:
            if self._entries.get(key) is handle:
                del self._entries[key]

    def get(self, key: str) -> Optional[CancelHandle]:
        with self._lock:
            return self._entries.get(key)

    def active(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
