from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TypeVar

from app.errors import OperationTimeoutError

T = TypeVar("T")

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="attr-timeout")


def run_with_timeout(fn: Callable[[], T], *, timeout_s: float, label: str) -> T:
    """Race ``fn`` against a deadline.

    The losing future is left running; callers must treat a timeout as an
    unknown outcome rather than a failure of the operation.
    """
    future = _executor.submit(fn)
    try:
        return future.result(timeout=max(0.0, float(timeout_s)))
    except FutureTimeoutError as exc:
        raise OperationTimeoutError(label=label, timeout_s=timeout_s) from exc
