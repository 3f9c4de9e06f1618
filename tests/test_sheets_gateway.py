from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.backoff import BackoffPolicy
from core.records import ActionType, Collection
from core.sheets_gateway import NetworkError, ProtocolError, SheetsGateway

ENDPOINT = "https://script.example.com/macros/s/abc/exec"


class _FakeResponse:
    def __init__(self, body: Any = None, *, status_code: int = 200, content_type: str = "application/json") -> None:
        self.status_code = status_code
        self.headers = {"Content-Type": content_type}
        self.text = body if isinstance(body, str) else json.dumps(body)


class _FakeSession:
    """Replays queued responses; exceptions in the queue are raised instead."""

    def __init__(self, responses: Optional[List[Any]] = None) -> None:
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []

    def _next(self):
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url, params=None, timeout=None, **kwargs):
        self.calls.append({"method": "GET", "url": url, "params": dict(params or {}), "kwargs": kwargs})
        return self._next()

    def post(self, url, data=None, headers=None, timeout=None, **kwargs):
        self.calls.append({"method": "POST", "url": url, "data": dict(data or {}), "headers": headers})
        return self._next()

    def head(self, url, timeout=None, allow_redirects=True):
        self.calls.append({"method": "HEAD", "url": url})
        return self._next()


def _gateway(session: _FakeSession, slept: List[float], **kwargs) -> SheetsGateway:
    return SheetsGateway(
        ENDPOINT,
        session=session,
        read_policy=BackoffPolicy(3, 1.5, sleep=slept.append),
        write_policy=BackoffPolicy(2, 2.0, sleep=slept.append),
        clock=lambda: 1_700_000_000.5,
        **kwargs,
    )


def test_fetch_collection_sends_read_query_without_headers():
    session = _FakeSession([_FakeResponse([{"id": "P1", "Name": "Vase"}])])
    gateway = _gateway(session, [])

    records = gateway.fetch_collection(Collection.PRODUCTS)

    assert records == [{"id": "P1", "Name": "Vase"}]
    call = session.calls[0]
    assert call["method"] == "GET"
    assert call["url"] == ENDPOINT
    assert call["params"] == {"action": "read", "sheet": "Products", "t": "1700000000500"}
    assert "headers" not in call["kwargs"]


def test_fetch_collection_accepts_data_envelope_and_normalises_ids():
    payload = {"status": "success", "data": [{"id": 7, "Total": 10}, {"Total": 5}, "junk", {"id": "7"}]}
    gateway = _gateway(_FakeSession([_FakeResponse(payload)]), [])

    assert gateway.fetch_collection("Sales") == [{"id": "7", "Total": 10}]


def test_fetch_collection_empty_envelope():
    gateway = _gateway(_FakeSession([_FakeResponse({"status": "success"})]), [])

    assert gateway.fetch_collection(Collection.EXPENSES) == []


def test_transport_failures_are_retried_until_success():
    slept: List[float] = []
    session = _FakeSession(
        [
            requests.ConnectionError("reset"),
            requests.Timeout("slow"),
            _FakeResponse([{"id": "C1"}]),
        ]
    )

    records = _gateway(session, slept).fetch_collection(Collection.CUSTOMERS)

    assert records == [{"id": "C1"}]
    assert len(session.calls) == 3
    assert slept == [1.5, 3.0]


def test_non_2xx_status_is_retried_then_raised_as_network_error():
    slept: List[float] = []
    session = _FakeSession([_FakeResponse("", status_code=503) for _ in range(3)])

    with pytest.raises(NetworkError):
        _gateway(session, slept).fetch_collection(Collection.PRODUCTS)
    assert len(session.calls) == 3
    assert slept == [1.5, 3.0]


def test_html_page_with_200_is_a_protocol_error():
    session = _FakeSession([_FakeResponse("<html>Sign in</html>", content_type="text/html; charset=utf-8")])

    with pytest.raises(ProtocolError):
        _gateway(session, []).fetch_collection(Collection.PRODUCTS)
    assert len(session.calls) == 1


def test_error_status_body_is_a_protocol_error():
    session = _FakeSession([_FakeResponse({"status": "error", "message": "Sheet not found"})])

    with pytest.raises(ProtocolError, match="Sheet not found"):
        _gateway(session, []).fetch_collection(Collection.PRODUCTS)


def test_invalid_json_is_a_protocol_error():
    session = _FakeSession([_FakeResponse("not-json", content_type="text/plain")])

    with pytest.raises(ProtocolError):
        _gateway(session, []).fetch_collection(Collection.PRODUCTS)


def test_submit_action_posts_form_encoded_payload():
    session = _FakeSession([_FakeResponse({"status": "success"})])
    gateway = _gateway(session, [])

    result = gateway.submit_action(Collection.PRODUCTS, ActionType.CREATE, {"id": "P1", "Name": "Vase"})

    assert result.ok
    assert result.response == {"status": "success"}
    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["headers"] == {"Content-Type": "application/x-www-form-urlencoded"}
    assert call["data"]["action"] == "add"
    assert call["data"]["sheet"] == "Products"
    assert json.loads(call["data"]["data"]) == {"id": "P1", "Name": "Vase"}


@pytest.mark.parametrize("action, wire", [(ActionType.UPDATE, "update"), (ActionType.DELETE, "delete")])
def test_submit_action_lowercases_action_names(action, wire):
    session = _FakeSession([_FakeResponse({"status": "success"})])

    _gateway(session, []).submit_action(Collection.SALES, action, {"id": "S1"})

    assert session.calls[0]["data"]["action"] == wire


def test_submit_action_returns_failure_after_exhausting_retries():
    slept: List[float] = []
    session = _FakeSession([requests.ConnectionError("down"), requests.ConnectionError("down")])

    result = _gateway(session, slept).submit_action(Collection.SALES, ActionType.DELETE, {"id": "S9"})

    assert not result.ok
    assert result.kind == "network"
    assert len(session.calls) == 2
    assert slept == [2.0]


def test_submit_action_reports_script_errors():
    session = _FakeSession([_FakeResponse({"status": "error", "message": "Locked"})])

    result = _gateway(session, []).submit_action(Collection.SALES, ActionType.UPDATE, {"id": "S1"})

    assert not result.ok
    assert result.kind == "protocol"
    assert result.message == "Locked"


def test_large_payload_warns_but_is_sent(caplog):
    session = _FakeSession([_FakeResponse({"status": "success"})])
    gateway = _gateway(session, [], payload_warning_chars=50)

    with caplog.at_level(logging.WARNING, logger="core.sheets_gateway"):
        result = gateway.submit_action(Collection.PRODUCTS, ActionType.UPDATE, {"id": "P1", "Image": "x" * 200})

    assert result.ok
    assert len(session.calls) == 1
    assert any("very large" in record.getMessage() for record in caplog.records)


def test_is_reachable():
    session = _FakeSession([_FakeResponse("", status_code=405), requests.ConnectionError("down")])
    gateway = _gateway(session, [])

    assert gateway.is_reachable() is True
    assert gateway.is_reachable() is False


def test_endpoint_is_required():
    with pytest.raises(ValueError):
        SheetsGateway("")
