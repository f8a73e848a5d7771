# src/flowday/tasks/task_models.py

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import date
from enum import StrEnum
from typing import Any

from ..core.errors import MalformedRemoteRecord, TaskValidationError

# Range of epoch-ms values that convert to a calendar date in any zone
# (0001-01-02 .. 9999-12-31 UTC).
MIN_TIMESTAMP_MS = -62135510400000
MAX_TIMESTAMP_MS = 253402214400000


def normalize_valid_until(value: int | None) -> int | None:
    """
    Unbounded is None. Values past the last representable date (other clients
    write the signed 64-bit maximum for "forever") are also unbounded.
    """
    if value is None or value >= MAX_TIMESTAMP_MS:
        return None
    return value


class TaskStatus(StrEnum):
    """
    Definition lifecycle status.

    Active -> Completed | Failed | CarriedForward. The three dispositions are terminal
    for the definition that received them.
    """

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CARRIED_FORWARD = "carried_forward"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.ACTIVE
        try:
            return cls(raw)
        except ValueError:
            return cls.ACTIVE

    @property
    def code(self) -> int:
        # Integer codes used by remote documents.
        return _STATUS_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> TaskStatus:
        for status, value in _STATUS_CODES.items():
            if value == code:
                return status
        raise ValueError(f"unknown status code {code!r}")

    @property
    def is_terminal(self) -> bool:
        return self is not TaskStatus.ACTIVE


_STATUS_CODES: dict[TaskStatus, int] = {
    TaskStatus.ACTIVE: 0,
    TaskStatus.COMPLETED: 1,
    TaskStatus.FAILED: 2,
    TaskStatus.CARRIED_FORWARD: 3,
}


class RecurrenceKind(StrEnum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @classmethod
    def from_db(cls, raw: str | None) -> RecurrenceKind:
        if not raw:
            return cls.NONE
        try:
            return cls(raw.strip().lower())
        except ValueError:
            return cls.NONE

    @property
    def label(self) -> str:
        if self is RecurrenceKind.NONE:
            return "One Time"
        return self.value.capitalize()


def parse_weekdays(raw: str | Iterable[int] | None) -> frozenset[int]:
    """
    Parse weekday numbers (1=Mon ... 7=Sun) from "1,3,5" or an iterable of ints.

    Raises TaskValidationError on values outside 1..7.
    """
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        parts = [p.strip() for p in raw.split(",") if p.strip()]
        try:
            days = {int(p) for p in parts}
        except ValueError as exc:
            raise TaskValidationError(f"invalid weekday list {raw!r}") from exc
    else:
        days = {int(d) for d in raw}

    bad = sorted(d for d in days if d < 1 or d > 7)
    if bad:
        raise TaskValidationError(f"weekday numbers must be 1..7, got {bad}")
    return frozenset(days)


def format_weekdays(days: Iterable[int]) -> str:
    return ",".join(str(d) for d in sorted(days))


@dataclass(frozen=True, slots=True)
class Recurrence:
    kind: RecurrenceKind = RecurrenceKind.NONE
    weekly_days: frozenset[int] = field(default_factory=frozenset)
    # Epoch ms; None means unbounded.
    valid_until: int | None = None


@dataclass(frozen=True, slots=True)
class TaskDefinition:
    id: str
    name: str
    anchor_date: int  # epoch ms
    execution_time: int  # epoch ms, anchor date combined with time of day
    validity_label: str
    status: TaskStatus
    owner_id: str | None
    recurrence: Recurrence = field(default_factory=Recurrence)

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def validate(self) -> None:
        if not self.id or not self.id.strip():
            raise TaskValidationError("id is required")
        if not self.name or not self.name.strip():
            raise TaskValidationError("name is required")
        if not isinstance(self.status, TaskStatus):
            raise TaskValidationError(f"unknown status {self.status!r}")
        for label, ts in (("anchor_date", self.anchor_date), ("execution_time", self.execution_time)):
            if not MIN_TIMESTAMP_MS <= ts < MAX_TIMESTAMP_MS:
                raise TaskValidationError(f"{label} out of range: {ts}")
        rec = self.recurrence
        if rec.kind is RecurrenceKind.WEEKLY:
            parse_weekdays(rec.weekly_days)
        if rec.valid_until is not None and rec.valid_until < self.anchor_date:
            raise TaskValidationError("valid_until is before anchor_date")

    def with_status(self, status: TaskStatus) -> TaskDefinition:
        return replace(self, status=status)

    def with_owner(self, owner_id: str | None) -> TaskDefinition:
        return replace(self, owner_id=owner_id)

    # ---- remote document format ----

    def to_record(self) -> dict[str, Any]:
        rec = self.recurrence
        return {
            "id": self.id,
            "name": self.name,
            "anchorDate": int(self.anchor_date),
            "validity": self.validity_label,
            "executionTime": int(self.execution_time),
            "status": self.status.code,
            "ownerId": self.owner_id,
            "recurrenceType": rec.kind.value.upper(),
            "recurrenceDays": format_weekdays(rec.weekly_days),
            "validUntil": rec.valid_until,
        }

    @classmethod
    def from_record(
        cls,
        record: Mapping[str, Any],
        *,
        record_id: str | None = None,
        owner_id: str | None = None,
    ) -> TaskDefinition:
        """
        Materialize a remote document.

        `record_id` is the document key; when given it wins over the payload's "id" field.
        A missing "ownerId" falls back to `owner_id` (the owner the document lives under).
        Raises MalformedRemoteRecord when the payload cannot be turned into a valid definition.
        """
        rid = record_id or (record.get("id") if isinstance(record, Mapping) else None)
        try:
            if not isinstance(record, Mapping):
                raise TypeError(f"record must be a mapping, got {type(record).__name__}")

            kind_raw = record.get("recurrenceType") or "NONE"
            kind = RecurrenceKind(str(kind_raw).strip().lower())

            valid_until_raw = record.get("validUntil")
            valid_until = normalize_valid_until(None if valid_until_raw is None else int(valid_until_raw))

            definition = cls(
                id=str(rid or ""),
                name=str(record.get("name") or ""),
                anchor_date=int(record["anchorDate"]),
                execution_time=int(record.get("executionTime") or 0),
                validity_label=str(record.get("validity") or ""),
                status=TaskStatus.from_code(int(record.get("status") or 0)),
                owner_id=record.get("ownerId") or owner_id or None,
                recurrence=Recurrence(
                    kind=kind,
                    weekly_days=parse_weekdays(record.get("recurrenceDays") or ""),
                    valid_until=valid_until,
                ),
            )
            definition.validate()
            return definition
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedRemoteRecord(str(rid) if rid else None, str(exc)) from exc


@dataclass(frozen=True, slots=True)
class Occurrence:
    """A definition materialized on one calendar date. Never persisted."""

    definition: TaskDefinition
    on_date: date
    execution_at: int  # epoch ms
