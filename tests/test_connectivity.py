from __future__ import annotations

import sys
import threading
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.connectivity import ConnectivityMonitor


class _Probe:
    def __init__(self, *states: bool) -> None:
        self.states = list(states)

    def __call__(self) -> bool:
        if len(self.states) > 1:
            return self.states.pop(0)
        return self.states[0]


def test_trigger_fires_only_on_offline_to_online_transition():
    triggered = []
    monitor = ConnectivityMonitor(_Probe(True, False, False, True, True), lambda: triggered.append(1))

    results = [monitor.check_now() for _ in range(5)]

    assert results == [True, False, False, True, True]
    assert len(triggered) == 1
    assert monitor.online is True


def test_initially_offline_triggers_on_first_success():
    triggered = []
    monitor = ConnectivityMonitor(_Probe(True), lambda: triggered.append(1), initially_online=False)

    monitor.check_now()

    assert triggered == [1]


def test_probe_errors_count_as_offline():
    def _broken() -> bool:
        raise OSError("no route")

    monitor = ConnectivityMonitor(_broken, lambda: None)

    assert monitor.check_now() is False
    assert monitor.online is False


def test_background_thread_polls_until_stopped():
    fired = threading.Event()
    monitor = ConnectivityMonitor(_Probe(True), fired.set, interval_seconds=1, initially_online=False)

    monitor.start()
    try:
        assert fired.wait(5)
    finally:
        monitor.stop()
