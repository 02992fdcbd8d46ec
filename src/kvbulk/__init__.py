"""
kvbulk - Adaptive, retry-safe bulk transactions over an ordered key-value store.

The package is layered bottom-up:
- kvbulk.core: errors, keys, protocols, cancellation, logging, settings
- kvbulk.storage: in-process MVCC reference store
- kvbulk.execution: retryable executor, generation controller, partitioner
- kvbulk.bulk: write / insert / for_each / aggregate / fold / export
"""

__version__ = "0.1.0"

from kvbulk.bulk import (  # noqa: E402
    BulkOptions,
    aggregate,
    export,
    fold,
    for_each,
    insert,
    insert_batched,
    write,
)
from kvbulk.core.cancellation import CancellationToken  # noqa: E402
from kvbulk.core.errors import (  # noqa: E402
    ConfigError,
    InvalidOperationError,
    ItemTooLargeError,
    KvBulkError,
    MaybeCommittedError,
    OperationCancelled,
    StoreError,
    StoreErrorCode,
)
from kvbulk.core.keys import KeyRange  # noqa: E402
from kvbulk.execution.partition import RangePartitioner, fan_out  # noqa: E402
from kvbulk.execution.retry import TransactionRunner  # noqa: E402
from kvbulk.storage.memory import MemoryDatabase  # noqa: E402

__all__ = [
    "BulkOptions",
    "CancellationToken",
    "ConfigError",
    "InvalidOperationError",
    "ItemTooLargeError",
    "KeyRange",
    "KvBulkError",
    "MaybeCommittedError",
    "MemoryDatabase",
    "OperationCancelled",
    "RangePartitioner",
    "StoreError",
    "StoreErrorCode",
    "TransactionRunner",
    "__version__",
    "aggregate",
    "export",
    "fan_out",
    "fold",
    "for_each",
    "insert",
    "insert_batched",
    "write",
]
