"""Centralised helpers for managing Cipex application directories."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable


_APP_ENV_VARS: Iterable[str] = ("LOCALAPPDATA", "APPDATA")


def _detect_base_directory() -> Path:
    override = os.environ.get("CIPEX_HOME")
    if override:
        return Path(override).expanduser().resolve()
    for env_var in _APP_ENV_VARS:
        value = os.environ.get(env_var)
        if value:
            return Path(value).expanduser().resolve() / "CipexArt"
    return Path.home().resolve() / ".cipexart"


APP_DIR: Path = _detect_base_directory()
LOGS_DIR: Path = APP_DIR / "logs"


def ensure_directory(path: Path) -> Path:
    """Ensure that ``path`` exists, returning the :class:`~pathlib.Path`."""

    path.mkdir(parents=True, exist_ok=True)
    return path


def ensure_app_structure() -> None:
    """Create the base directories required for application data."""

    for directory in (APP_DIR, LOGS_DIR):
        ensure_directory(directory)


def data_path(*parts: str) -> Path:
    """Return a path rooted inside :data:`APP_DIR`, creating parent directories."""

    ensure_app_structure()
    target = APP_DIR.joinpath(*parts)
    if target.parent and not target.parent.exists():
        target.parent.mkdir(parents=True, exist_ok=True)
    return target


def logs_path(*parts: str) -> Path:
    """Return a path inside :data:`LOGS_DIR`."""

    ensure_directory(LOGS_DIR)
    return LOGS_DIR.joinpath(*parts)


__all__ = [
    "APP_DIR",
    "LOGS_DIR",
    "data_path",
    "logs_path",
    "ensure_app_structure",
    "ensure_directory",
]
