"""Coordinate pull and flush cycles between the local cache and the remote store."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

import db
from core.backoff import BackoffPolicy
from core.local_store import LocalStore
from core.offline_queue import PendingActionQueue
from core.records import ActionType, Collection, PendingAction, Record, new_record_id
from core.sheets_gateway import GatewayError, SheetsGateway
from settings import SyncSettings

logger = logging.getLogger(__name__)

NotifyCallback = Callable[[str, Dict[str, Any]], None]


class SyncState(Enum):
    IDLE = "idle"
    PULLING = "pulling"
    FLUSHING = "flushing"


@dataclass
class SyncReport:
    status: str = "synced"
    pulled: List[str] = field(default_factory=list)
    pull_errors: Dict[str, str] = field(default_factory=dict)
    flushed: int = 0
    flush_error: Optional[str] = None
    pending: int = 0
    resynced: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "synced"


def merge_remote(
    remote: Iterable[Mapping[str, Any]],
    local: Iterable[Mapping[str, Any]],
    pending_ids: Set[str],
) -> List[Record]:
    """Return ``remote`` with every pending record swapped for its local version.

    Pending records keep the remote position when the remote already knows
    them; local-only pending records (unflushed creates) are appended in local
    order.
    """

    local_by_id = {str(record.get("id")): dict(record) for record in local}
    merged: List[Record] = []
    placed: Set[str] = set()
    for record in remote:
        record_id = str(record.get("id"))
        if record_id in pending_ids and record_id in local_by_id:
            merged.append(local_by_id[record_id])
        else:
            merged.append(dict(record))
        placed.add(record_id)
    for record_id, record in local_by_id.items():
        if record_id in pending_ids and record_id not in placed:
            merged.append(record)
    return merged


class SyncCoordinator:
    """Own the local cache and pending queue and reconcile them with the remote store.

    Mutations (:meth:`create`, :meth:`update`, :meth:`delete`) are applied to the
    local store and recorded in the queue immediately; they do not wait for a
    running cycle. :meth:`sync` runs at most one cycle at a time and callers that
    arrive while a cycle is running receive that cycle's report.
    """

    def __init__(
        self,
        store: LocalStore,
        queue: PendingActionQueue,
        gateway: SheetsGateway,
        *,
        collections: Iterable["Collection | str"] = tuple(Collection),
        is_online: Optional[Callable[[], bool]] = None,
        notify: Optional[NotifyCallback] = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._gateway = gateway
        self._collections = [Collection.parse(item) for item in collections]
        self._is_online = is_online or (lambda: True)
        self._notify_callback = notify
        self._state = SyncState.IDLE
        self._lock = threading.Lock()
        self._inflight: Optional[Future] = None

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    @property
    def state(self) -> SyncState:
        with self._lock:
            return self._state

    @property
    def store(self) -> LocalStore:
        return self._store

    @property
    def queue(self) -> PendingActionQueue:
        return self._queue

    @property
    def gateway(self) -> SheetsGateway:
        return self._gateway

    @property
    def collections(self) -> List[Collection]:
        return list(self._collections)

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    @property
    def is_syncing(self) -> bool:
        with self._lock:
            return self._inflight is not None

    def records(self, collection: "Collection | str") -> List[Record]:
        return self._store.get(collection)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def create(self, collection: "Collection | str", fields: Mapping[str, Any]) -> Record:
        record = dict(fields)
        if record.get("id") in (None, ""):
            record["id"] = new_record_id()
        else:
            record["id"] = str(record["id"])
        self._record_intent(collection, ActionType.CREATE, record)
        return record

    def update(self, collection: "Collection | str", record: Mapping[str, Any]) -> Record:
        updated = dict(record)
        if updated.get("id") in (None, ""):
            raise ValueError("Cannot update a record without an id")
        updated["id"] = str(updated["id"])
        self._record_intent(collection, ActionType.UPDATE, updated)
        return updated

    def delete(self, collection: "Collection | str", record_id: str) -> Record:
        """Queue a delete; the local record stays until the remote confirms it."""

        with self._store.locked():
            snapshot = self._store.find(collection, record_id)
            if snapshot is None:
                raise KeyError(f"{Collection.parse(collection).value}/{record_id} not found")
            action = PendingAction(
                id=str(record_id),
                action=ActionType.DELETE,
                collection=Collection.parse(collection),
                payload=snapshot,
            )
            self._queue.enqueue(action)
        return snapshot

    def _record_intent(self, collection: "Collection | str", action_type: ActionType, record: Record) -> None:
        action = PendingAction(
            id=record["id"],
            action=action_type,
            collection=Collection.parse(collection),
            payload=dict(record),
        )
        # Store before queue: a queued intent always has its local record.
        with self._store.locked():
            previous = next(
                (
                    item
                    for item in self._store.get(collection, strict=True)
                    if str(item.get("id")) == record["id"]
                ),
                None,
            )
            self._store.put(collection, record)
            try:
                self._queue.enqueue(action)
            except db.StorageError:
                self._roll_back(collection, record["id"], previous)
                raise

    def _roll_back(self, collection: "Collection | str", record_id: str, previous: Optional[Record]) -> None:
        try:
            if previous is None:
                self._store.remove(collection, record_id)
            else:
                self._store.put(collection, previous)
        except db.StorageError:
            logger.exception(
                "Could not restore %s/%s after the queue write failed",
                Collection.parse(collection).value,
                record_id,
            )

    # ------------------------------------------------------------------
    # Sync cycles
    # ------------------------------------------------------------------
    def sync(self) -> SyncReport:
        """Run one pull/flush cycle, or wait for the one already running."""

        with self._lock:
            inflight = self._inflight
            owner = inflight is None
            if owner:
                inflight = Future()
                self._inflight = inflight
        if not owner:
            logger.debug("Sync already running; waiting for its result")
            return inflight.result()

        try:
            report = self._run_cycle()
        except BaseException as exc:
            inflight.set_exception(exc)
            raise
        else:
            inflight.set_result(report)
            return report
        finally:
            with self._lock:
                self._state = SyncState.IDLE
                self._inflight = None

    def request_sync(self) -> "Future[SyncReport]":
        """Start :meth:`sync` on a daemon thread and return a future for its report."""

        future: "Future[SyncReport]" = Future()

        def _runner() -> None:
            try:
                future.set_result(self.sync())
            except Exception as exc:  # pragma: no cover - surfaced through the future
                logger.exception("Background sync failed")
                future.set_exception(exc)

        threading.Thread(target=_runner, name="cipex-sync", daemon=True).start()
        return future

    def resync(self) -> SyncReport:
        """Flush everything, then rebuild the cache from remote truth.

        The queue is cleared only when the cycle confirmed every entry flushed.
        """

        report = self.sync()
        if report.status == "offline" or report.flush_error is not None or self.pending_count:
            logger.info("Resync skipped: %d action(s) still pending", self.pending_count)
            report.pending = self.pending_count
            return report

        with self._lock:
            if self._inflight is not None:
                return report
            inflight: Future = Future()
            self._inflight = inflight
        try:
            try:
                cleared = self._queue.clear(expected=[])
            except db.StorageError as exc:
                logger.error("Resync skipped: could not read the queue: %s", exc)
                cleared = False
            else:
                if not cleared:
                    logger.info("Resync skipped: new actions were queued during the flush")
            if not cleared:
                report.pending = self.pending_count
                inflight.set_result(report)
                return report
            self._set_state(SyncState.PULLING)
            pulled, errors = self._pull()
            report = SyncReport(
                status="synced" if not errors else "partial",
                pulled=pulled,
                pull_errors=errors,
                flushed=report.flushed,
                pending=self.pending_count,
                resynced=True,
            )
            inflight.set_result(report)
            return report
        except BaseException as exc:
            inflight.set_exception(exc)
            raise
        finally:
            with self._lock:
                self._state = SyncState.IDLE
                self._inflight = None

    def _set_state(self, state: SyncState) -> None:
        with self._lock:
            self._state = state

    def _run_cycle(self) -> SyncReport:
        if not self._is_online():
            logger.info("Offline; sync skipped with %d action(s) pending", self.pending_count)
            self._notify("offline", {"pending": self.pending_count})
            return SyncReport(status="offline", pending=self.pending_count)

        self._set_state(SyncState.PULLING)
        pulled, pull_errors = self._pull()

        self._set_state(SyncState.FLUSHING)
        flushed, flush_error = self._flush()

        pending = self.pending_count
        status = "synced" if not pull_errors and flush_error is None else "partial"
        report = SyncReport(
            status=status,
            pulled=pulled,
            pull_errors=pull_errors,
            flushed=flushed,
            flush_error=flush_error,
            pending=pending,
        )
        logger.info(
            "Sync finished: %s (pulled=%d, flushed=%d, pending=%d)",
            status,
            len(pulled),
            flushed,
            pending,
        )
        self._notify(status, {"report": report})
        return report

    # ------------------------------------------------------------------
    # Pull phase
    # ------------------------------------------------------------------
    def _pull(self):
        pulled: List[str] = []
        errors: Dict[str, str] = {}
        if not self._collections:
            return pulled, errors

        with ThreadPoolExecutor(
            max_workers=len(self._collections), thread_name_prefix="cipex-pull"
        ) as executor:
            futures = {
                collection: executor.submit(self._gateway.fetch_collection, collection)
                for collection in self._collections
            }
            for collection, future in futures.items():
                name = collection.value
                try:
                    remote = future.result()
                except GatewayError as exc:
                    errors[name] = str(exc)
                    logger.warning("Pull of %s failed; keeping cached copy: %s", name, exc)
                    self._notify("pull_failed", {"collection": name, "message": str(exc)})
                    continue
                try:
                    self._apply_pull(collection, remote)
                except db.StorageError as exc:
                    errors[name] = str(exc)
                    logger.error("Could not cache pulled %s: %s", name, exc)
                    self._notify("pull_failed", {"collection": name, "message": str(exc)})
                    continue
                pulled.append(name)
        return pulled, errors

    def _apply_pull(self, collection: Collection, remote: List[Record]) -> None:
        with self._store.locked():
            pending = self._queue.pending_ids(collection)
            if pending:
                merged = merge_remote(remote, self._store.get(collection, strict=True), pending)
            else:
                merged = remote
            self._store.replace(collection, merged)

    # ------------------------------------------------------------------
    # Flush phase
    # ------------------------------------------------------------------
    def _flush(self):
        snapshot = self._queue.dequeue_all()
        flushed = 0
        for action in snapshot:
            result = self._gateway.submit_action(action.collection, action.action, action.payload)
            if not result.ok:
                message = f"{action.action.value} {action.collection.value}/{action.id}: {result.message}"
                logger.warning("Flush halted at %s", message)
                self._notify("flush_failed", {"action": action.to_json(), "message": result.message})
                return flushed, message
            try:
                self._confirm(action)
            except db.StorageError as exc:
                message = f"Could not record confirmation for {action.id}: {exc}"
                logger.error(message)
                return flushed, message
            flushed += 1
        return flushed, None

    def _confirm(self, action: PendingAction) -> None:
        still_current = self._queue.discard(action)
        if action.action is ActionType.DELETE and still_current:
            self._store.remove(action.collection, action.id)
        if not still_current:
            logger.debug("%s/%s changed during flush; newer intent kept", action.collection.value, action.id)

    def _notify(self, event: str, payload: Dict[str, Any]) -> None:
        if self._notify_callback:
            try:
                self._notify_callback(event, payload)
            except Exception:  # pragma: no cover - UI callback guard
                logger.debug("Sync notify callback failed", exc_info=True)


class SyncConfigurationError(Exception):
    """Raised when the settings do not allow a coordinator to be built."""


def build_coordinator(
    settings: SyncSettings,
    *,
    session=None,
    is_online: Optional[Callable[[], bool]] = None,
    notify: Optional[NotifyCallback] = None,
) -> SyncCoordinator:
    """Wire a coordinator, store, queue and gateway from ``settings``."""

    if not settings.endpoint_url:
        raise SyncConfigurationError(
            "No script URL configured. Set endpoint_url in sync_settings.json or CIPEX_SCRIPT_URL."
        )
    gateway = SheetsGateway(
        settings.endpoint_url,
        session=session,
        read_policy=BackoffPolicy(settings.read_attempts, settings.read_backoff_seconds),
        write_policy=BackoffPolicy(settings.write_attempts, settings.write_backoff_seconds),
        timeout=settings.request_timeout_seconds,
        payload_warning_chars=settings.payload_warning_chars,
    )
    return SyncCoordinator(
        LocalStore(),
        PendingActionQueue(),
        gateway,
        collections=settings.collection_members(),
        is_online=is_online,
        notify=notify,
    )


__all__ = [
    "SyncConfigurationError",
    "SyncCoordinator",
    "SyncReport",
    "SyncState",
    "build_coordinator",
    "merge_remote",
]
