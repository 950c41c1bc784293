"""
Deadline-bounded calls into backing services.

Store and audit calls made while gating a request run on a shared worker
pool and are abandoned after a fixed timeout, so a stuck backend turns
into a StoreTimeoutError (and a fail-closed deny) instead of a hung
request thread.

Usage:
    from core.bounded import BoundedExecutor

    bounded = BoundedExecutor(timeout=2.0)
    session = bounded.call(store.lookup_session, session_id)
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional, TypeVar

from core.errors import StoreTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_WORKERS = 16


class BoundedExecutor:
    """Runs callables with a deadline on a shared thread pool.

    A timeout of 0 or less disables the pool and calls inline.
    """

    def __init__(self, timeout: float, max_workers: int = DEFAULT_WORKERS):
        self.timeout = timeout
        self._pool: Optional[ThreadPoolExecutor] = None
        if timeout > 0:
            self._pool = ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix="fleetgate-store"
            )

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Call ``fn`` and wait at most ``timeout`` seconds for the result.

        Exceptions raised by ``fn`` propagate unchanged.

        Raises:
            StoreTimeoutError: the call did not finish in time
        """
        if self._pool is None:
            return fn(*args, **kwargs)

        future = self._pool.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            future.cancel()
            name = getattr(fn, "__qualname__", repr(fn))
            logger.error(f"{name} exceeded {self.timeout}s deadline")
            raise StoreTimeoutError(f"{name} timed out after {self.timeout}s")

    def shutdown(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=False)
