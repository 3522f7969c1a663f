from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, Iterable, List, Tuple, TypeVar

from .errors import ModMergerError, SchemaVersionError
from .logging_utils import log_error, log_progress

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_WORKERS = 4


class CancelToken:
    """Cooperative cancellation checked between units of work."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(slots=True)
class BatchResult(Generic[T, R]):
    results: Dict[T, R] = field(default_factory=dict)
    errors: List[Tuple[T, ModMergerError]] = field(default_factory=list)
    skipped: List[T] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors and not self.cancelled


def run_batch(
    items: Iterable[T],
    worker: Callable[[T], R],
    *,
    workers: int = DEFAULT_WORKERS,
    cancel: CancelToken | None = None,
    label: str = "items",
) -> BatchResult[T, R]:
    """Run ``worker`` over ``items`` in a thread pool.

    Per-item :class:`ModMergerError` failures are collected and the batch
    keeps going. A :class:`SchemaVersionError` is re-raised once every
    running unit has finished. Results are handed back to the caller, which
    commits them on its own thread.
    """

    pending = list(items)
    result: BatchResult[T, R] = BatchResult()
    if not pending:
        return result

    total = len(pending)
    fatal: SchemaVersionError | None = None

    def guarded(item: T) -> R | None:
        if cancel is not None and cancel.cancelled:
            return None
        return worker(item)

    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        futures = {executor.submit(guarded, item): item for item in pending}
        done = 0
        for future in as_completed(futures):
            item = futures[future]
            done += 1
            try:
                value = future.result()
            except SchemaVersionError as exc:
                fatal = fatal or exc
                if cancel is not None:
                    cancel.cancel()
                continue
            except ModMergerError as exc:
                log_error(f"{item}: {exc}", indent=2)
                result.errors.append((item, exc))
                continue
            if cancel is not None and cancel.cancelled and value is None:
                result.skipped.append(item)
                continue
            result.results[item] = value
            log_progress(done, total, label)

    if fatal is not None:
        raise fatal
    result.cancelled = bool(result.skipped)
    return result


__all__ = ["BatchResult", "CancelToken", "run_batch", "DEFAULT_WORKERS"]
