# src/flowday/core/errors.py

"""
Error taxonomy.

Only validation and local storage failures reach the caller of a command.
Remote failures are caught by the reconciliation engine and logged.
"""

from __future__ import annotations


class FlowdayError(Exception):
    """Base class for all flowday errors."""


class TaskValidationError(FlowdayError, ValueError):
    """A command was rejected before anything was written."""


class LocalStorageError(FlowdayError):
    """The local task store could not complete an operation."""


class RemoteWriteError(FlowdayError):
    """A remote put/delete did not reach the ledger."""


class RemoteSubscriptionError(FlowdayError):
    """A remote change stream could not be opened."""


class MalformedRemoteRecord(FlowdayError, ValueError):
    def __init__(self, record_id: str | None, reason: str) -> None:
        super().__init__(f"malformed remote record id={record_id}: {reason}")
        self.record_id = record_id
        self.reason = reason
