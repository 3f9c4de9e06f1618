"""Background watcher that triggers a sync when the network comes back."""
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Poll ``probe`` on a daemon thread and call ``on_online`` after an outage."""

    def __init__(
        self,
        probe: Callable[[], bool],
        on_online: Callable[[], object],
        *,
        interval_seconds: float = 15.0,
        initially_online: Optional[bool] = None,
    ) -> None:
        self._probe = probe
        self._on_online = on_online
        self._interval = max(1.0, interval_seconds)
        self._online = initially_online
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def online(self) -> bool:
        return bool(self._online)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="cipex-connectivity", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2)
            self._thread = None

    def check_now(self) -> bool:
        """Probe once, firing ``on_online`` on an offline to online transition."""

        try:
            reachable = bool(self._probe())
        except Exception:
            logger.debug("Connectivity probe failed", exc_info=True)
            reachable = False

        with self._lock:
            previous = self._online
            self._online = reachable

        if previous is not None and previous != reachable:
            logger.info("Network is %s", "back online" if reachable else "offline")
        if reachable and previous is False:
            try:
                self._on_online()
            except Exception:  # pragma: no cover - trigger callback guard
                logger.exception("Reconnect trigger failed")
        return reachable

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.check_now()
            self._stop_event.wait(self._interval)


__all__ = ["ConnectivityMonitor"]
