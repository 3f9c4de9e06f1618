"""Durable on-device cache of remote collections."""
from __future__ import annotations

import json
import logging
import threading
from typing import Iterable, List, Mapping, Optional

import db
from core.records import Collection, Record

logger = logging.getLogger(__name__)


def _key(collection: "Collection | str") -> str:
    return Collection.parse(collection).value


class LocalStore:
    """Keyed mapping from collection name to an ordered list of records.

    Every mutation is committed to the backing key/value store before the call
    returns. Reads never raise: missing, corrupt or unreadable entries are
    reported as an empty collection.
    """

    def __init__(self, kv=db) -> None:
        self._kv = kv
        self._lock = threading.RLock()

    def locked(self) -> threading.RLock:
        """Re-entrant lock serialising read-modify-write sequences on the store."""

        return self._lock

    def get(self, collection: "Collection | str", strict: bool = False) -> List[Record]:
        """Return the cached records; with ``strict``, storage read errors propagate.

        Mutations read strictly so that an unreadable entry is never saved over.
        """

        key = _key(collection)
        try:
            raw = self._kv.read_value(key)
        except db.StorageError:
            if strict:
                raise
            logger.exception("Error reading local data for %s", key)
            return []
        if raw is None:
            return []
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.error("Local data for %s is corrupt; treating it as empty", key)
            return []
        if not isinstance(data, list):
            logger.error("Local data for %s is not a list; treating it as empty", key)
            return []
        return [dict(item) for item in data if isinstance(item, dict)]

    def find(self, collection: "Collection | str", record_id: str) -> Optional[Record]:
        for record in self.get(collection):
            if str(record.get("id")) == str(record_id):
                return record
        return None

    def put(self, collection: "Collection | str", record: Mapping) -> None:
        """Upsert ``record`` by id, keeping its position when it already exists."""

        record_id = record.get("id")
        if record_id in (None, ""):
            raise ValueError("Record is missing its id")
        with self._lock:
            records = self.get(collection, strict=True)
            for index, existing in enumerate(records):
                if str(existing.get("id")) == str(record_id):
                    records[index] = dict(record)
                    break
            else:
                records.append(dict(record))
            self._save(collection, records)

    def remove(self, collection: "Collection | str", record_id: str) -> bool:
        with self._lock:
            records = self.get(collection, strict=True)
            kept = [record for record in records if str(record.get("id")) != str(record_id)]
            if len(kept) == len(records):
                return False
            self._save(collection, kept)
            return True

    def replace(self, collection: "Collection | str", records: Iterable[Mapping]) -> None:
        """Overwrite the whole collection; duplicate ids keep their first occurrence."""

        unique: List[Record] = []
        seen = set()
        for record in records:
            record_id = str(record.get("id"))
            if record_id in seen:
                continue
            seen.add(record_id)
            unique.append(dict(record))
        with self._lock:
            self._save(collection, unique)

    def _save(self, collection: "Collection | str", records: List[Record]) -> None:
        key = _key(collection)
        serialised = json.dumps(records, ensure_ascii=False)
        self._kv.write_value(key, serialised)


__all__ = ["LocalStore"]
