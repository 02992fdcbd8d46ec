"""Public bulk operations."""

from kvbulk.bulk.operations import (
    aggregate,
    export,
    fold,
    for_each,
    insert,
    insert_batched,
    write,
)
from kvbulk.bulk.options import BulkOptions

__all__ = [
    "BulkOptions",
    "aggregate",
    "export",
    "fold",
    "for_each",
    "insert",
    "insert_batched",
    "write",
]
