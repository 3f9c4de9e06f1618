"""HTTP gateway to the spreadsheet-backed Apps Script web app.

The remote script exposes one URL. Reads are plain ``GET`` requests carrying
``action=read`` and the sheet name; writes are form-encoded ``POST`` requests
with ``action`` (``add``/``update``/``delete``), ``sheet`` and a JSON encoded
``data`` field. Requests carry no credentials and no custom headers on reads
so that the script never has to answer a CORS preflight.

A 2xx status is not taken as proof of success. The script (or Google's
front end) sometimes answers with an HTML error page or with a JSON body of
the form ``{"status": "error", "message": ...}``; both are reported as
:class:`ProtocolError`. Transport problems and non-2xx statuses are reported
as :class:`NetworkError` and are retried according to the configured
:class:`~core.backoff.BackoffPolicy`.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, List, Mapping, Optional

import requests

from core.backoff import BackoffPolicy
from core.records import ActionType, Collection, Record, SyncResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
PAYLOAD_WARNING_CHARS = 500_000
READ_ATTEMPTS = 3
READ_BACKOFF_SECONDS = 1.5
WRITE_ATTEMPTS = 2
WRITE_BACKOFF_SECONDS = 2.0


class GatewayError(Exception):
    """Base error raised when the remote store cannot complete a request."""

    kind = "gateway"


class NetworkError(GatewayError):
    """Raised when the request never produced a usable HTTP response."""

    kind = "network"


class ProtocolError(GatewayError):
    """Raised when the response is malformed or flagged as an error."""

    kind = "protocol"


def _sheet_name(collection: "Collection | str") -> str:
    return Collection.parse(collection).value


def _decode_body(response) -> Any:
    content_type = (response.headers.get("Content-Type") or "").lower()
    if "text/html" in content_type:
        raise ProtocolError(
            "Server returned an HTML page instead of JSON. Check the script deployment permissions."
        )
    try:
        payload = json.loads(response.text)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"Response is not valid JSON: {exc}") from exc
    if isinstance(payload, dict) and str(payload.get("status", "")).lower() == "error":
        raise ProtocolError(str(payload.get("message") or "Script returned error status"))
    return payload


def _records_from_payload(name: str, payload: Any) -> List[Record]:
    if isinstance(payload, list):
        rows = payload
    elif isinstance(payload, dict):
        rows = payload.get("data") or []
    else:
        raise ProtocolError(f"Unexpected payload type for {name}: {type(payload).__name__}")
    if not isinstance(rows, list):
        raise ProtocolError(f"'data' for {name} is not a list")

    records: List[Record] = []
    seen = set()
    for row in rows:
        if not isinstance(row, dict):
            logger.info("%s: non-object row skipped", name)
            continue
        record_id = row.get("id")
        if record_id in (None, ""):
            logger.info("%s: row missing identifier; skipped.", name)
            continue
        record_id = str(record_id)
        if record_id in seen:
            logger.warning("%s: duplicate id %s ignored", name, record_id)
            continue
        seen.add(record_id)
        record = dict(row)
        record["id"] = record_id
        records.append(record)
    return records


class SheetsGateway:
    """Retrying request layer for the remote spreadsheet script."""

    def __init__(
        self,
        endpoint: str,
        *,
        session: Optional[requests.Session] = None,
        read_policy: Optional[BackoffPolicy] = None,
        write_policy: Optional[BackoffPolicy] = None,
        timeout: float = DEFAULT_TIMEOUT,
        payload_warning_chars: int = PAYLOAD_WARNING_CHARS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not endpoint:
            raise ValueError("A script endpoint URL is required")
        self._endpoint = endpoint
        self._session = session or requests.Session()
        self._read_policy = read_policy or BackoffPolicy(READ_ATTEMPTS, READ_BACKOFF_SECONDS)
        self._write_policy = write_policy or BackoffPolicy(WRITE_ATTEMPTS, WRITE_BACKOFF_SECONDS)
        self._timeout = timeout
        self._payload_warning_chars = payload_warning_chars
        self._clock = clock

    @property
    def endpoint(self) -> str:
        return self._endpoint

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def fetch_collection(self, collection: "Collection | str") -> List[Record]:
        """Return every record of ``collection`` as stored remotely.

        Raises :class:`NetworkError` once the read policy is exhausted and
        :class:`ProtocolError` as soon as a response fails validation.
        """

        name = _sheet_name(collection)
        try:
            response = self._read_policy.run(
                lambda: self._get(name),
                retry_on=(NetworkError,),
                description=f"Read {name}",
            )
            return _records_from_payload(name, _decode_body(response))
        except GatewayError as exc:
            logger.error("Failed to fetch remote data for %s: %s", name, exc)
            raise

    def submit_action(
        self,
        collection: "Collection | str",
        action: "ActionType | str",
        payload: Mapping[str, Any],
    ) -> SyncResult:
        """Send one mutation; failures are returned, never raised."""

        name = _sheet_name(collection)
        action_type = ActionType.parse(action)
        data = json.dumps(dict(payload), ensure_ascii=False)
        if len(data) > self._payload_warning_chars:
            logger.warning(
                "Payload for %s is very large (%dKB). Sync might fail.",
                name,
                round(len(data) / 1024),
            )
        form = {"action": action_type.wire_name, "sheet": name, "data": data}
        try:
            response = self._write_policy.run(
                lambda: self._post(form),
                retry_on=(NetworkError,),
                description=f"{action_type.wire_name} {name}",
            )
            body = _decode_body(response)
        except GatewayError as exc:
            logger.error("Failed to post data to %s: %s", name, exc)
            return SyncResult.failure(exc.kind, str(exc))
        return SyncResult.success(body)

    def is_reachable(self) -> bool:
        """Cheap connectivity probe; any HTTP answer counts as reachable."""

        try:
            self._session.head(self._endpoint, timeout=min(self._timeout, 5.0), allow_redirects=False)
        except requests.RequestException as exc:
            logger.debug("Endpoint unreachable: %s", exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _get(self, name: str):
        params = {"action": "read", "sheet": name, "t": str(int(self._clock() * 1000))}
        try:
            response = self._session.get(self._endpoint, params=params, timeout=self._timeout)
        except requests.RequestException as exc:
            raise NetworkError(f"Network error reading {name}: {exc}") from exc
        return self._check_status(response)

    def _post(self, form: Mapping[str, str]):
        try:
            response = self._session.post(
                self._endpoint,
                data=dict(form),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise NetworkError(f"Network error writing {form.get('sheet')}: {exc}") from exc
        return self._check_status(response)

    @staticmethod
    def _check_status(response):
        status = getattr(response, "status_code", 0)
        if not 200 <= status < 300:
            raise NetworkError(f"HTTP error! status: {status}")
        return response


__all__ = [
    "GatewayError",
    "NetworkError",
    "ProtocolError",
    "SheetsGateway",
    "PAYLOAD_WARNING_CHARS",
]
