"""Closed status families for invoices and bank connections.

Invoice statuses carry no payload, so they are a plain :class:`enum.Enum`.
Bank connection statuses carry per-variant data and are modelled as one
frozen dataclass per variant joined in the ``BankConnectionStatus`` union.
Every helper here handles each variant explicitly and raises ``TypeError``
for anything outside the union.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union


class InvoiceStatus(Enum):
    DRAFT = "Draft"
    SENT = "Sent"
    PAID = "Paid"
    OVERDUE = "Overdue"

    @property
    def label(self) -> str:
        return self.value

    @property
    def badge_variant(self) -> str:
        if self is InvoiceStatus.DRAFT:
            return "secondary"
        if self is InvoiceStatus.SENT:
            return "default"
        if self is InvoiceStatus.PAID:
            return "outline"
        if self is InvoiceStatus.OVERDUE:
            return "destructive"
        raise TypeError(f"Unknown invoice status: {self!r}")

    @property
    def is_unpaid(self) -> bool:
        return self in (InvoiceStatus.SENT, InvoiceStatus.OVERDUE)


def parse_invoice_status(value: str) -> InvoiceStatus:
    normalized = value.strip().lower()
    for status in InvoiceStatus:
        if status.value.lower() == normalized:
            return status
    raise ValueError("Invalid invoice status.")


@dataclass(frozen=True)
class Idle:
    kind = "idle"


@dataclass(frozen=True)
class InProgress:
    kind = "inProgress"


@dataclass(frozen=True)
class LastSynced:
    timestamp: int
    kind = "lastSynced"


@dataclass(frozen=True)
class SyncError:
    error: str
    timestamp: int
    kind = "syncError"


BankConnectionStatus = Union[Idle, InProgress, LastSynced, SyncError]

STATUS_KINDS = (Idle.kind, InProgress.kind, LastSynced.kind, SyncError.kind)


def status_to_record(status: BankConnectionStatus) -> dict[str, object]:
    if isinstance(status, (Idle, InProgress)):
        return {"status_kind": status.kind, "status_timestamp": None, "status_error": None}
    if isinstance(status, LastSynced):
        return {"status_kind": status.kind, "status_timestamp": status.timestamp, "status_error": None}
    if isinstance(status, SyncError):
        return {
            "status_kind": status.kind,
            "status_timestamp": status.timestamp,
            "status_error": status.error,
        }
    raise TypeError(f"Unknown bank connection status: {status!r}")


def status_from_record(
    kind: str,
    timestamp: int | None = None,
    error: str | None = None,
) -> BankConnectionStatus:
    if kind == Idle.kind:
        return Idle()
    if kind == InProgress.kind:
        return InProgress()
    if kind == LastSynced.kind:
        if timestamp is None:
            raise ValueError("lastSynced status requires a timestamp.")
        return LastSynced(timestamp=timestamp)
    if kind == SyncError.kind:
        if timestamp is None or not error:
            raise ValueError("syncError status requires an error and a timestamp.")
        return SyncError(error=error, timestamp=timestamp)
    raise ValueError(f"Unsupported bank connection status: {kind}")


def describe_status(status: BankConnectionStatus) -> str:
    if isinstance(status, Idle):
        return "Idle"
    if isinstance(status, InProgress):
        return "Syncing"
    if isinstance(status, LastSynced):
        return f"Last synced: {status.timestamp}"
    if isinstance(status, SyncError):
        return f"Error: {status.error}"
    raise TypeError(f"Unknown bank connection status: {status!r}")


def is_syncing(status: BankConnectionStatus) -> bool:
    return isinstance(status, InProgress)
