# outbox.py
# Pending-upload queue over the local store's pending_changes table, and the worker that drains it

import asyncio
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Set

from loguru import logger

from unforgotten_sync.app.core.DB_Management.Local_Store_DB import LocalStoreDB
from unforgotten_sync.app.core.Utils.Utils import entity_key

from .models import ChangeOperation, PendingChange


class Outbox:
    """
    Ordered queue of local changes waiting for upload.

    Changes for the same entity are collapsed while they are not being
    uploaded: an update after a pending create folds into the create, a
    newer update replaces an older one, and a delete of a never-uploaded
    create cancels both.
    """

    def __init__(self, db: LocalStoreDB, max_retries: int = 5):
        self.db = db
        self.max_retries = max_retries
        self._in_flight: Set[int] = set()

    def enqueue(self, entity_type, entity_id: str, account_id: str, operation,
                payload: Optional[Dict[str, Any]] = None) -> Optional[int]:
        """
        Queue a change, collapsing it into idle queued changes for the same entity.

        Returns:
            The change_id now carrying this change, or None when a delete
            cancelled a create that never reached the server.
        """
        operation = ChangeOperation(operation)
        key = entity_key(entity_type)
        queued = [PendingChange.from_row(r) for r in self.db.pending_changes(entity_type=key, entity_id=entity_id)]
        idle = [c for c in queued if c.change_id not in self._in_flight]
        create = next((c for c in idle if c.operation == ChangeOperation.CREATE), None)

        if operation == ChangeOperation.UPDATE:
            if create is not None:
                self.db.update_change(create.change_id, payload=payload)
                logger.debug(f"Folded update of {key} {entity_id} into pending create #{create.change_id}")
                return create.change_id
            last = queued[-1] if queued else None
            if last is not None and last.operation == ChangeOperation.UPDATE and last.change_id not in self._in_flight:
                self.db.update_change(last.change_id, payload=payload)
                logger.debug(f"Replaced payload of pending update #{last.change_id} for {key} {entity_id}")
                return last.change_id

        if operation == ChangeOperation.DELETE:
            if create is not None:
                for change in idle:
                    self.db.remove_change(change.change_id)
                logger.debug(f"Delete of {key} {entity_id} cancelled its never-uploaded create")
                return None
            for change in idle:
                if change.operation == ChangeOperation.UPDATE:
                    self.db.remove_change(change.change_id)

        change_id = self.db.enqueue_change(key, entity_id, account_id, operation.value, payload)
        logger.debug(f"Queued {operation.value} #{change_id} for {key} {entity_id}")
        return change_id

    def pending(self, account_id: Optional[str] = None) -> List[PendingChange]:
        return [PendingChange.from_row(r) for r in self.db.pending_changes(account_id)]

    def pending_count(self, account_id: Optional[str] = None) -> int:
        return len(self.db.pending_changes(account_id))

    def has_later_changes(self, change: PendingChange) -> bool:
        return self.db.has_pending_changes(change.entity_type, change.entity_id, after_change_id=change.change_id)

    @contextmanager
    def in_flight(self, change: PendingChange):
        """Marks a change as being uploaded so enqueue() won't rewrite it underneath the request."""
        self._in_flight.add(change.change_id)
        try:
            yield change
        finally:
            self._in_flight.discard(change.change_id)

    def complete(self, change: PendingChange):
        self.db.remove_change(change.change_id)

    def get(self, change_id: int) -> Optional[PendingChange]:
        rows = self.db.execute_query("SELECT * FROM pending_changes WHERE change_id = ?", (change_id,)).fetchall()
        return PendingChange.from_row(rows[0]) if rows else None

    def convert(self, change: PendingChange, operation, payload: Optional[Dict[str, Any]] = None):
        self.db.update_change(change.change_id, operation=ChangeOperation(operation).value, payload=payload)

    def record_failure(self, change: PendingChange, error: Exception) -> int:
        """Store the failure on the outbox row. Returns the new retry count."""
        self.db.record_change_failure(change.change_id, str(error))
        attempts = change.retry_count + 1
        if attempts >= self.max_retries:
            logger.warning(f"Change #{change.change_id} ({change.operation.value} {change.entity_type} "
                           f"{change.entity_id}) is stuck after {attempts} attempts: {error}")
        return attempts

    def drop_for(self, entity_type, entity_id: str) -> int:
        dropped = self.db.drop_changes_for(entity_type, entity_id)
        if dropped:
            logger.debug(f"Dropped {dropped} pending change(s) for {entity_key(entity_type)} {entity_id}")
        return dropped


class OutboxWorker:
    """
    Single background loop that uploads queued changes.

    Runs a push pass whenever it is woken (local write, reconnect) or the poll
    interval elapses. Consecutive failing passes back off exponentially up to
    max_backoff seconds. Pushes share the engine's push lock, so a full sync
    and the worker never upload concurrently.
    """

    def __init__(self, engine, network=None, poll_interval: float = 30.0, retry_backoff: float = 2.0,
                 max_backoff: float = 300.0):
        self.engine = engine
        self.network = network
        self.poll_interval = poll_interval
        self.retry_backoff = retry_backoff
        self.max_backoff = max_backoff
        self.running = False
        self.passes = 0
        self._failures = 0
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_running:
            return
        self.running = True
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="outbox-worker")
        logger.info("Outbox worker started")

    def notify(self):
        self._wake.set()

    async def stop(self):
        self.running = False
        self._wake.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Outbox worker stopped")

    def _next_delay(self) -> float:
        if not self._failures:
            return self.poll_interval
        return min(self.retry_backoff * (2 ** (self._failures - 1)), self.max_backoff)

    async def _run(self):
        while self.running:
            self._wake.clear()
            if self.network is None or self.network.is_connected:
                try:
                    report = await self.engine.push_pending()
                    self.passes += 1
                    self._failures = self._failures + 1 if report.failed else 0
                except Exception as e:
                    logger.error(f"Error in outbox worker loop: {e}")
                    self._failures += 1
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._next_delay())
            except asyncio.TimeoutError:
                pass
