"""Durable queue of mutations waiting to be replayed against the remote store."""
from __future__ import annotations

import json
import logging
import threading
from collections import OrderedDict
from typing import List, Optional, Sequence, Tuple

import db
from core.records import Collection, PendingAction

logger = logging.getLogger(__name__)

QUEUE_KEY = "sync_queue"

Target = Tuple[str, str]


class PendingActionQueue:
    """FIFO of pending actions holding at most one entry per ``(collection, id)``.

    Enqueuing an action for a target that is already queued discards the older
    entry and appends the new one at the end. Entries leave the queue only
    through :meth:`remove`, :meth:`discard` or :meth:`clear`.
    """

    def __init__(self, kv=db, key: str = QUEUE_KEY) -> None:
        self._kv = kv
        self._key = key
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def enqueue(self, action: PendingAction) -> None:
        with self._lock:
            entries = self._load(strict=True)
            entries.pop(action.target, None)
            entries[action.target] = action
            self._save(entries)
        logger.debug(
            "Queued %s for %s/%s (%d pending)",
            action.action.value,
            action.collection.value,
            action.id,
            len(entries),
        )

    def dequeue_all(self) -> List[PendingAction]:
        """Return a snapshot of the queue in enqueue order without removing anything."""

        with self._lock:
            return list(self._load().values())

    def remove(self, record_id: str, collection: "Collection | str | None" = None) -> int:
        """Remove entries targeting ``record_id``; returns how many were dropped."""

        name = Collection.parse(collection).value if collection is not None else None
        with self._lock:
            entries = self._load(strict=True)
            doomed = [
                target
                for target in entries
                if target[1] == str(record_id) and (name is None or target[0] == name)
            ]
            if not doomed:
                return 0
            for target in doomed:
                del entries[target]
            self._save(entries)
            return len(doomed)

    def discard(self, action: PendingAction) -> bool:
        """Remove ``action`` only if it is still the queued intent for its target."""

        with self._lock:
            entries = self._load(strict=True)
            current = entries.get(action.target)
            if current is None or current != action:
                return False
            del entries[action.target]
            self._save(entries)
            return True

    def clear(self, expected: Optional[Sequence[PendingAction]] = None) -> bool:
        """Drop every entry; with ``expected``, only if the queue still matches it."""

        with self._lock:
            if expected is not None and list(self._load(strict=True).values()) != list(expected):
                return False
            self._kv.delete_value(self._key)
            return True

    def contains(self, collection: "Collection | str", record_id: str) -> bool:
        target = (Collection.parse(collection).value, str(record_id))
        with self._lock:
            return target in self._load()

    def pending_ids(self, collection: "Collection | str") -> set:
        name = Collection.parse(collection).value
        with self._lock:
            return {target[1] for target in self._load(strict=True) if target[0] == name}

    def get(self, collection: "Collection | str", record_id: str) -> Optional[PendingAction]:
        target = (Collection.parse(collection).value, str(record_id))
        with self._lock:
            return self._load().get(target)

    @property
    def pending_count(self) -> int:
        return len(self)

    def __len__(self) -> int:
        with self._lock:
            return len(self._load())

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _load(self, strict: bool = False) -> "OrderedDict[Target, PendingAction]":
        """Decode the stored queue; with ``strict``, storage read errors propagate."""

        entries: "OrderedDict[Target, PendingAction]" = OrderedDict()
        try:
            raw = self._kv.read_value(self._key)
        except db.StorageError:
            if strict:
                raise
            logger.exception("Unable to read the pending-action queue")
            return entries
        if not raw:
            return entries
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            logger.error("Pending-action queue is corrupt; starting from an empty queue")
            return entries
        if not isinstance(payload, list):
            logger.error("Pending-action queue is not a list; starting from an empty queue")
            return entries

        for item in payload:
            try:
                action = PendingAction.from_json(item)
            except ValueError as exc:
                logger.warning("Dropping malformed queue entry: %s", exc)
                continue
            entries.pop(action.target, None)
            entries[action.target] = action
        return entries

    def _save(self, entries: "OrderedDict[Target, PendingAction]") -> None:
        if not entries:
            self._kv.delete_value(self._key)
            return
        serialised = json.dumps([action.to_json() for action in entries.values()], ensure_ascii=False)
        self._kv.write_value(self._key, serialised)


__all__ = ["PendingActionQueue", "QUEUE_KEY"]
