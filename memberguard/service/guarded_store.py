from __future__ import annotations

import concurrent.futures
from typing import Any, Callable

from memberguard.logging import get_logger
from memberguard.service.errors import TransportFailure
from memberguard.storage.errors import StoreTimeout

logger = get_logger(__name__)

READ_PREFIXES = ("get_", "list_", "count_")


def is_read_operation(name: str) -> bool:
    return name.startswith(READ_PREFIXES)


class TimedStore:
    """Proxy that puts a deadline on every store call.

    Reads run on a worker pool and are abandoned after ``timeout``. Writes run
    in the calling thread so they either finish or are aborted by the backing
    store itself (Postgres ``statement_timeout``), which rolls them back.
    Either kind of timeout raises :class:`TransportFailure`; callers treat
    that as a failed check, never as a pass. Other storage exceptions
    propagate unchanged.
    """

    MAX_WORKERS = 16

    def __init__(self, store: Any, timeout: float, *, workers: int = 8) -> None:
        self._store = store
        self._timeout = timeout
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(max(1, workers), self.MAX_WORKERS),
            thread_name_prefix="store",
        )
        self._executor_shutdown = False

    @property
    def inner(self) -> Any:
        return self._store

    def __getattr__(self, name: str) -> Any:
        target = getattr(self._store, name)
        if not callable(target):
            return target
        run = self._run_read if is_read_operation(name) else self._run_write

        def _call(*args: Any, **kwargs: Any) -> Any:
            return run(name, target, *args, **kwargs)

        return _call

    def _timed_out(self, name: str) -> TransportFailure:
        return TransportFailure(
            "The account store did not respond in time",
            detail={"operation": name},
        )

    def _run_read(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self._timeout)
        except concurrent.futures.TimeoutError:
            logger.warning("store_call_timeout", operation=name, timeout=self._timeout)
            future.cancel()
            raise self._timed_out(name)
        except StoreTimeout:
            logger.warning("store_call_aborted", operation=name)
            raise self._timed_out(name)

    def _run_write(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except StoreTimeout:
            logger.warning("store_call_aborted", operation=name)
            raise self._timed_out(name)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        self._executor.shutdown(wait=wait)
