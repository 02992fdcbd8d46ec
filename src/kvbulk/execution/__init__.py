"""kvbulk execution — retries, generations and partitioning.

ARCHITECTURE
────────────
::

    TransactionRunner       ─ one unit of work, classified retries
      ▲
    GenerationController    ─ adaptive chunks, one generation per transaction
      ▲
    bulk operations         ─ write / insert / fold / export ...

    RangePartitioner + fan_out ─ disjoint index ranges for parallel workers
"""

from kvbulk.execution.generation import (
    BatchContext,
    GenerationController,
    GenerationOutcome,
    RangeFeeder,
    SequenceFeeder,
    StepPolicy,
)
from kvbulk.execution.partition import RangePartitioner, fan_out
from kvbulk.execution.retry import (
    ConstantBackoff,
    ExponentialBackoff,
    RetryPolicy,
    RetryStrategy,
    TransactionContext,
    TransactionRunner,
    read,
    transactional,
    write,
)

__all__ = [
    "BatchContext",
    "ConstantBackoff",
    "ExponentialBackoff",
    "GenerationController",
    "GenerationOutcome",
    "RangeFeeder",
    "RangePartitioner",
    "RetryPolicy",
    "RetryStrategy",
    "SequenceFeeder",
    "StepPolicy",
    "TransactionContext",
    "TransactionRunner",
    "fan_out",
    "read",
    "transactional",
    "write",
]
