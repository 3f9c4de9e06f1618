"""Application configuration helpers for Cipex sync."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping

from core import app_paths
from core.records import Collection


logger = logging.getLogger(__name__)


SYNC_SETTINGS_PATH = str(app_paths.data_path("sync_settings.json"))
DEFAULT_SCRIPT_URL = os.getenv("CIPEX_SCRIPT_URL", "")
DEFAULT_COLLECTIONS: List[str] = [collection.value for collection in Collection]


@dataclass
class SyncSettings:
    endpoint_url: str = DEFAULT_SCRIPT_URL
    read_attempts: int = 3
    read_backoff_seconds: float = 1.5
    write_attempts: int = 2
    write_backoff_seconds: float = 2.0
    request_timeout_seconds: float = 30.0
    payload_warning_chars: int = 500_000
    connectivity_interval_seconds: int = 15
    collections: List[str] = field(default_factory=lambda: list(DEFAULT_COLLECTIONS))

    def collection_members(self) -> List[Collection]:
        members: List[Collection] = []
        for name in self.collections:
            try:
                member = Collection.parse(name)
            except ValueError:
                logger.warning("Ignoring unknown collection %r in sync settings", name)
                continue
            if member not in members:
                members.append(member)
        return members

    def to_json(self) -> Dict[str, object]:
        return {
            "endpoint_url": self.endpoint_url,
            "read_attempts": self.read_attempts,
            "read_backoff_seconds": self.read_backoff_seconds,
            "write_attempts": self.write_attempts,
            "write_backoff_seconds": self.write_backoff_seconds,
            "request_timeout_seconds": self.request_timeout_seconds,
            "payload_warning_chars": self.payload_warning_chars,
            "connectivity_interval_seconds": self.connectivity_interval_seconds,
            "collections": list(self.collections),
        }


def _bounded_int(value: object, default: int, minimum: int, maximum: int) -> int:
    try:
        return max(minimum, min(maximum, int(value)))
    except (TypeError, ValueError):
        return default


def _bounded_float(value: object, default: float, minimum: float, maximum: float) -> float:
    try:
        return max(minimum, min(maximum, float(value)))
    except (TypeError, ValueError):
        return default


def _read_settings_file(path: str) -> Dict[str, object]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, ValueError):
        logger.warning("Sync settings at %s are unreadable; using defaults", path, exc_info=True)
        return {}
    if not isinstance(data, Mapping):
        logger.warning("Sync settings at %s are not an object; using defaults", path)
        return {}
    return dict(data)


def load_sync_settings(path: str = SYNC_SETTINGS_PATH) -> SyncSettings:
    data = _read_settings_file(path)
    defaults = SyncSettings()

    endpoint = data.get("endpoint_url")
    if not isinstance(endpoint, str):
        endpoint = defaults.endpoint_url
    env_endpoint = os.getenv("CIPEX_SCRIPT_URL")
    if env_endpoint:
        endpoint = env_endpoint

    collections = data.get("collections")
    if not isinstance(collections, list) or not collections:
        collections = list(defaults.collections)

    return SyncSettings(
        endpoint_url=endpoint.strip(),
        read_attempts=_bounded_int(data.get("read_attempts"), defaults.read_attempts, 1, 10),
        read_backoff_seconds=_bounded_float(
            data.get("read_backoff_seconds"), defaults.read_backoff_seconds, 0.0, 60.0
        ),
        write_attempts=_bounded_int(data.get("write_attempts"), defaults.write_attempts, 1, 10),
        write_backoff_seconds=_bounded_float(
            data.get("write_backoff_seconds"), defaults.write_backoff_seconds, 0.0, 60.0
        ),
        request_timeout_seconds=_bounded_float(
            data.get("request_timeout_seconds"), defaults.request_timeout_seconds, 1.0, 300.0
        ),
        payload_warning_chars=_bounded_int(
            data.get("payload_warning_chars"), defaults.payload_warning_chars, 1, 50_000_000
        ),
        connectivity_interval_seconds=_bounded_int(
            data.get("connectivity_interval_seconds"),
            defaults.connectivity_interval_seconds,
            5,
            600,
        ),
        collections=[str(name) for name in collections],
    )


def save_sync_settings(settings: SyncSettings, path: str = SYNC_SETTINGS_PATH) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    payload = settings.to_json()

    with open(path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)


__all__ = [
    "DEFAULT_COLLECTIONS",
    "DEFAULT_SCRIPT_URL",
    "SYNC_SETTINGS_PATH",
    "SyncSettings",
    "load_sync_settings",
    "save_sync_settings",
]
