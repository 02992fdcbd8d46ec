"""Range Partitioner — disjoint sub-ranges for parallel workers.

WHY
───
A single bulk operation is strictly sequential, but independent workers can
split an index space between them. ``RangePartitioner`` keeps one shared,
lock-protected cursor; every ``claim()`` hands out the next fixed-size
``range`` so no two workers ever see the same index, and nothing is skipped.
It is safe to call from several threads as well as from several asyncio tasks.

ARCHITECTURE
────────────
::

    RangePartitioner(total=1000, batch_size=20)
      ├── .claim()      ─ next disjoint range(begin, end) or None
      ├── .claimed      ─ number of ranges handed out
      └── .remaining    ─ indices not yet claimed

    fan_out(partitioner, worker, workers=5)
      5 asyncio tasks ──► loop: claim() → await worker(range) → ...
      returns every processed range, in claim order

Example::

    partitioner = RangePartitioner(total=1000, batch_size=20)
    ranges = await fan_out(partitioner, process_range, workers=5)
    assert len(ranges) == 50
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable, Iterator
from typing import Any

from kvbulk.core.cancellation import CancellationToken, ensure_token
from kvbulk.core.errors import ConfigError, unwrap_error
from kvbulk.core.logging import get_logger
from kvbulk.execution.retry import maybe_await

logger = get_logger(__name__)


class RangePartitioner:
    """Hands out disjoint ``[begin, end)`` index ranges from a shared cursor.

    Parameters
    ----------
    total : int
        End of the index space (exclusive).
    batch_size : int
        Size of each claimed range; the last one may be shorter.
    start : int
        First index (default 0).
    """

    def __init__(self, total: int, batch_size: int, *, start: int = 0) -> None:
        if batch_size < 1:
            raise ConfigError("batch_size must be >= 1")
        if total < start:
            raise ConfigError("total must be >= start")
        self._total = total
        self._batch_size = batch_size
        self._start = start
        self._offset = start
        self._claimed = 0
        self._lock = threading.Lock()

    @property
    def total(self) -> int:
        return self._total

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def claimed(self) -> int:
        """Number of ranges handed out so far."""
        return self._claimed

    @property
    def remaining(self) -> int:
        with self._lock:
            return max(0, self._total - self._offset)

    def claim(self) -> range | None:
        """Atomically claim the next range, or ``None`` once exhausted."""
        with self._lock:
            begin = self._offset
            if begin >= self._total:
                return None
            end = min(begin + self._batch_size, self._total)
            self._offset = end
            self._claimed += 1
        return range(begin, end)

    def __iter__(self) -> Iterator[range]:
        while (claimed := self.claim()) is not None:
            yield claimed

    def __repr__(self) -> str:
        return (
            f"RangePartitioner(start={self._start}, total={self._total}, "
            f"batch_size={self._batch_size}, claimed={self._claimed})"
        )


async def fan_out(
    partitioner: RangePartitioner,
    worker: Callable[[range], Any],
    *,
    workers: int = 4,
    cancel: CancellationToken | None = None,
) -> list[range]:
    """Run ``workers`` tasks that claim and process ranges until exhausted.

    ``worker(range)`` may be sync or async. The first failing worker cancels
    the others and its exception propagates.

    Returns:
        Every processed range, in claim order.
    """
    if workers < 1:
        raise ConfigError("workers must be >= 1")
    cancel = ensure_token(cancel)
    cancel.raise_if_cancelled()
    processed: list[range] = []

    logger.info(
        "fan_out.start",
        total=partitioner.total,
        batch_size=partitioner.batch_size,
        workers=workers,
    )

    async def _run(worker_id: int) -> None:
        while not cancel.cancelled:
            claimed = partitioner.claim()
            if claimed is None:
                return
            processed.append(claimed)
            await maybe_await(worker(claimed))
            await asyncio.sleep(0)

    try:
        async with asyncio.TaskGroup() as group:
            for worker_id in range(workers):
                group.create_task(_run(worker_id))
    except BaseExceptionGroup as group_error:
        raise unwrap_error(group_error) from None

    cancel.raise_if_cancelled(partial=processed, position=len(processed))
    logger.info("fan_out.complete", ranges=len(processed))
    return processed


__all__ = ["RangePartitioner", "fan_out"]
