from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from threading import Event
from typing import Callable, Sequence, TypeVar

from clinical_kb.errors import OperationCancelled

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")


def raise_if_cancelled(cancel_event: Event | None, what: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled(f"{what} cancelled")


def bounded_map(
    func: Callable[[ItemT], ResultT],
    items: Sequence[ItemT],
    *,
    max_workers: int,
    cancel_event: Event,
    what: str,
) -> list[ResultT]:
    """Run ``func`` over ``items`` with at most ``max_workers`` in flight.

    Results keep the input order regardless of completion order. ``func`` is
    expected to check ``cancel_event`` itself before calling a provider; once
    the event is set the whole batch raises ``OperationCancelled``.
    """
    if not items:
        return []

    results: list[ResultT | None] = [None] * len(items)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {executor.submit(func, item): index for index, item in enumerate(items)}
        for future in as_completed(futures):
            results[futures[future]] = future.result()

    raise_if_cancelled(cancel_event, what)
    return results  # type: ignore[return-value]
