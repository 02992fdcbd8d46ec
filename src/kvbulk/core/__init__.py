"""kvbulk core primitives: errors, keys, store protocols, cancellation, logging, settings."""

from kvbulk.core.cancellation import CancellationToken, ensure_token
from kvbulk.core.errors import (
    SIZE_OR_DURATION_CODES,
    ConfigError,
    ErrorCategory,
    ErrorClass,
    ErrorContext,
    InvalidOperationError,
    ItemTooLargeError,
    KvBulkError,
    MaybeCommittedError,
    OperationCancelled,
    StoreError,
    StoreErrorCode,
    classify_error,
    is_size_or_duration_error,
    unwrap_error,
)
from kvbulk.core.keys import KeyRange, key_after, strinc
from kvbulk.core.logging import LogContext, configure_logging, get_logger
from kvbulk.core.protocols import Database, ReadTransaction, Transaction
from kvbulk.core.settings import BulkSettings, get_settings, reset_settings

__all__ = [
    "SIZE_OR_DURATION_CODES",
    "BulkSettings",
    "CancellationToken",
    "ConfigError",
    "Database",
    "ErrorCategory",
    "ErrorClass",
    "ErrorContext",
    "InvalidOperationError",
    "ItemTooLargeError",
    "KeyRange",
    "KvBulkError",
    "LogContext",
    "MaybeCommittedError",
    "OperationCancelled",
    "ReadTransaction",
    "StoreError",
    "StoreErrorCode",
    "Transaction",
    "classify_error",
    "configure_logging",
    "ensure_token",
    "get_logger",
    "get_settings",
    "is_size_or_duration_error",
    "key_after",
    "reset_settings",
    "strinc",
    "unwrap_error",
]
