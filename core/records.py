"""Shared data types for records, collections and queued sync actions."""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

Record = Dict[str, Any]


class Collection(Enum):
    """Named collections; the value doubles as the remote sheet name."""

    PRODUCTS = "Products"
    SALES = "Sales"
    EXPENSES = "Expenses"
    CUSTOMERS = "Customers"

    @classmethod
    def parse(cls, value: "Collection | str") -> "Collection":
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for member in cls:
            if text.lower() in (member.value.lower(), member.name.lower()):
                return member
        raise ValueError(f"Unknown collection: {value!r}")


class ActionType(Enum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"

    @property
    def wire_name(self) -> str:
        """Lower-cased action name understood by the remote script."""

        if self is ActionType.CREATE:
            return "add"
        return self.value.lower()

    @classmethod
    def parse(cls, value: "ActionType | str") -> "ActionType":
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        if text == "add":
            return cls.CREATE
        for member in cls:
            if text == member.value.lower():
                return member
        raise ValueError(f"Unknown action: {value!r}")


def new_record_id() -> str:
    return str(uuid.uuid4())


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PendingAction:
    """A mutation intent waiting to be transmitted to the remote store."""

    id: str
    action: ActionType
    collection: Collection
    payload: Mapping[str, Any]
    enqueued_at: int = field(default_factory=_now_ms)

    @property
    def target(self) -> tuple:
        return (self.collection.value, self.id)

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action.value,
            "collection": self.collection.value,
            "payload": dict(self.payload),
            "enqueuedAt": self.enqueued_at,
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "PendingAction":
        if not isinstance(data, Mapping):
            raise ValueError("Pending action must be an object")
        record_id = data.get("id")
        if not record_id:
            raise ValueError("Pending action is missing its target id")
        payload = data.get("payload")
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise ValueError(f"Pending action {record_id} has a non-object payload")
        try:
            enqueued_at = int(data.get("enqueuedAt") or 0)
        except (TypeError, ValueError):
            enqueued_at = 0
        return cls(
            id=str(record_id),
            action=ActionType.parse(data.get("action", "")),
            collection=Collection.parse(data.get("collection", "")),
            payload=dict(payload),
            enqueued_at=enqueued_at,
        )


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one remote round trip."""

    ok: bool
    response: Any = None
    kind: Optional[str] = None
    message: str = ""

    @classmethod
    def success(cls, response: Any = None) -> "SyncResult":
        return cls(ok=True, response=response)

    @classmethod
    def failure(cls, kind: str, message: str) -> "SyncResult":
        return cls(ok=False, kind=kind, message=message)


__all__ = [
    "ActionType",
    "Collection",
    "PendingAction",
    "Record",
    "SyncResult",
    "new_record_id",
]
