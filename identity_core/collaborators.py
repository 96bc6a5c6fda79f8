"""Timeout-bounded invocation of external collaborators (store, notifier, event sink)."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CollaboratorTimeout(Exception):
    """A collaborator call did not return within its time budget."""

    def __init__(self, name: str, timeout: float) -> None:
        super().__init__(f"{name} did not complete within {timeout:.2f}s")
        self.name = name
        self.timeout = timeout


class BoundedCaller:
    """Run blocking collaborator calls on a bounded pool and wait at most ``timeout``.

    A timed-out call keeps running on its worker thread; the caller only
    stops waiting for it. Whether it committed is therefore unknown.
    """

    def __init__(self, max_workers: int = 16) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="identity-io")

    def call(self, name: str, timeout: float, fn: Callable[..., T], *args, **kwargs) -> T:
        """Invoke ``fn`` and return its result, raising :class:`CollaboratorTimeout` on expiry.

        Exceptions raised by ``fn`` propagate unchanged.
        """
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout as exc:
            future.cancel()
            logger.warning("collaborator call %s timed out after %.2fs", name, timeout)
            raise CollaboratorTimeout(name, timeout) from exc

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
