# Sync/core.py
import asyncio
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from loguru import logger

from unforgotten_sync.app.core.DB_Management.Local_Store_DB import LocalStorageError, LocalStoreDB
from unforgotten_sync.app.core.Utils.Utils import entity_key, format_timestamp, parse_timestamp, utc_now

from .conflict import ConflictResolver, LastWriteWinsStrategy, Resolution
from .connectivity import NetworkMonitor
from .entity_schemas import decode_entity
from .exceptions import DecodeError, RemoteError, StateError, SyncError, TransportError
from .medication_logs import MedicationLogGenerator
from .models import (ChangeKind, ChangeOperation, EntityType, MergeOutcome, PendingChange, PushReport, SyncResult,
                     SyncState)
from .notifier import ChangeNotifier
from .outbox import Outbox
from .state import SyncStateManager
from .transport import RemoteClient

# Parents before children so a first pull fills accounts and medications before their dependents.
DEFAULT_ENTITY_ORDER: Tuple[EntityType, ...] = (
    EntityType.ACCOUNT,
    EntityType.ACCOUNT_MEMBER,
    EntityType.USER_PREFERENCES,
    EntityType.PROFILE,
    EntityType.PROFILE_DETAIL,
    EntityType.PROFILE_CONNECTION,
    EntityType.IMPORTANT_ACCOUNT,
    EntityType.MEDICATION,
    EntityType.MEDICATION_SCHEDULE,
    EntityType.MEDICATION_LOG,
    EntityType.APPOINTMENT,
    EntityType.USEFUL_CONTACT,
    EntityType.MOOD_ENTRY,
    EntityType.TODO_LIST,
    EntityType.TODO_ITEM,
    EntityType.STICKY_REMINDER,
    EntityType.COUNTDOWN,
    EntityType.RECIPE,
    EntityType.PLANNED_MEAL,
)


# Rows that are unique on more than their id; a remote row matching one of these under another id is the same row.
NATURAL_KEYS: Dict[str, Tuple[str, ...]] = {
    EntityType.MEDICATION_LOG.value: ("medication_id", "scheduled_at"),
    EntityType.ACCOUNT_MEMBER.value: ("account_id", "user_id"),
}


def _is_remote_delete(record: Dict[str, Any]) -> bool:
    return bool(record.get('deleted') or record.get('_deleted'))


class SyncEngine:
    """Orchestrates pulls, pushes and the single merge path between the local store and the remote."""

    def __init__(self,
                 db: LocalStoreDB,
                 remote: RemoteClient,
                 notifier: Optional[ChangeNotifier] = None,
                 outbox: Optional[Outbox] = None,
                 resolver: Optional[ConflictResolver] = None,
                 state_manager: Optional[SyncStateManager] = None,
                 network: Optional[NetworkMonitor] = None,
                 entity_types: Optional[Sequence] = None,
                 max_retries: int = 5,
                 concurrent_pulls: int = 4,
                 log_generator: Optional[MedicationLogGenerator] = None):
        """
        Initializes the SyncEngine.

        Args:
            db: The local store.
            remote: Transport to the backend.
            notifier: Change event registry; a private one is created if omitted.
            outbox: Upload queue over db; created if omitted.
            resolver: Conflict strategy; LastWriteWinsStrategy if omitted.
            state_manager: Cursor storage; created over db if omitted.
            network: Connectivity flag. Full syncs are skipped while it reports offline.
            entity_types: Entity types to pull, in merge order.
            max_retries: Attempts after which a failing change is reported as stuck.
            concurrent_pulls: Maximum simultaneous list() calls during a full sync.
            log_generator: Medication log generator; created over db if omitted.
        """
        if not isinstance(db, LocalStoreDB):
            raise TypeError("db must be a LocalStoreDB object")
        if not isinstance(remote, RemoteClient):
            raise TypeError("remote must be a RemoteClient object")

        self.db = db
        self.remote = remote
        self.notifier = notifier or ChangeNotifier()
        self.outbox = outbox or Outbox(db, max_retries=max_retries)
        self.resolver = resolver or LastWriteWinsStrategy()
        self.state_manager = state_manager or SyncStateManager(db)
        self.network = network
        self.entity_types: List[str] = [entity_key(t) for t in (entity_types or DEFAULT_ENTITY_ORDER)]
        self.max_retries = max_retries
        self.concurrent_pulls = max(1, concurrent_pulls)
        self.log_generator = log_generator or MedicationLogGenerator(db, self.outbox, self.notifier)
        self.worker = None

        self._account_locks: Dict[str, asyncio.Lock] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._push_lock = asyncio.Lock()
        self._states: Dict[str, SyncState] = {}
        self._last_results: Dict[str, SyncResult] = {}

        logger.info(f"SyncEngine initialized for client_id: {db.client_id}")

    # --- Status ---

    def status(self, account_id: str) -> SyncState:
        return self._states.get(account_id, SyncState.IDLE)

    def last_result(self, account_id: str) -> Optional[SyncResult]:
        return self._last_results.get(account_id)

    def attach_worker(self, worker):
        self.worker = worker

    def _is_offline(self) -> bool:
        return self.network is not None and not self.network.is_connected

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._account_locks.get(account_id)
        if lock is None:
            lock = self._account_locks[account_id] = asyncio.Lock()
        return lock

    def _emit(self, entity_type, account_id: Optional[str], entity_id: Optional[str], kind: ChangeKind):
        self.notifier.emit(entity_type, account_id, entity_id, kind)

    # --- Local change queueing ---

    def queue_change(self, entity_type, entity_id: str, account_id: str, operation,
                     payload: Optional[Dict[str, Any]] = None) -> Optional[int]:
        """Put a local change in the outbox and wake the worker. Returns None if it cancelled an unsent create."""
        change_id = self.outbox.enqueue(entity_type, entity_id, account_id, operation, payload)
        if self.worker is not None:
            self.worker.notify()
        return change_id

    # --- Full sync ---

    async def perform_full_sync(self, account_id: str) -> SyncResult:
        """
        Pull every entity type, push the outbox, generate today's medication logs, then advance cursors.

        A call made while a full sync of the same account is running waits for
        that run and returns its result. The run itself is shielded from the
        caller's cancellation.
        """
        if self._is_offline():
            logger.info(f"Offline, skipping full sync for account {account_id}")
            return SyncResult(account_id=account_id, finished_at=utc_now(), skipped=True, offline=True)

        task = self._in_flight.get(account_id)
        if task is not None and not task.done():
            logger.info(f"Full sync for account {account_id} already in progress. Awaiting it.")
            return await asyncio.shield(task)

        task = asyncio.create_task(self._run_full_sync(account_id), name=f"full-sync-{account_id}")
        self._in_flight[account_id] = task
        task.add_done_callback(lambda t, a=account_id: self._forget(a, t))
        return await asyncio.shield(task)

    def _forget(self, account_id: str, task: asyncio.Task):
        if self._in_flight.get(account_id) is task:
            del self._in_flight[account_id]

    async def _run_full_sync(self, account_id: str) -> SyncResult:
        async with self._lock_for(account_id):
            self._states[account_id] = SyncState.SYNCING
            result = SyncResult(account_id=account_id)
            logger.info(f"Starting full sync for account {account_id}")
            try:
                advanced = await self._pull_all(account_id, result)

                report = await self.push_pending(account_id)
                result.pushed = report.pushed
                result.errors.extend(report.errors)

                try:
                    result.logs_generated = self.generate_local_medication_logs(account_id)
                except LocalStorageError as e:
                    logger.error(f"Medication log generation failed for account {account_id}: {e}")
                    result.errors.append(f"medication_log generation: {e}")

                for key, latest in advanced.items():
                    try:
                        self.state_manager.update_cursor(account_id, key, latest)
                    except StateError as e:
                        result.errors.append(f"cursor {key}: {e}")
            except Exception as e:
                logger.critical(f"Unexpected error during full sync of account {account_id}: {e}")
                result.errors.append(f"unexpected: {e}")
            finally:
                result.finished_at = utc_now()
                self._states[account_id] = SyncState.IDLE
                self._last_results[account_id] = result

            logger.info(f"Full sync for account {account_id} finished: pulled {sum(result.pulled.values())}, "
                        f"pushed {result.pushed}, logs generated {result.logs_generated}, "
                        f"errors {len(result.errors)}")
            return result

    async def _pull_all(self, account_id: str, result: SyncResult) -> Dict[str, Optional[datetime]]:
        """
        Fetch every entity type concurrently, merge sequentially. Returns the cursor to store per merged type.

        An incremental pull also fetches the server's id/updated_at manifest.
        The cursor only finds rows whose updated_at moved forward past it, so
        the manifest is what catches remote deletes and edits stamped earlier
        than the cursor (made offline, uploaded late).
        """
        cursors: Dict[str, Optional[datetime]] = {}
        for key in self.entity_types:
            try:
                cursors[key] = self.state_manager.get_cursor(account_id, key)
            except StateError as e:
                logger.error(f"Could not read cursor for {key}, pulling everything: {e}")
                cursors[key] = None

        semaphore = asyncio.Semaphore(self.concurrent_pulls)

        async def fetch(key: str) -> Tuple[List[Dict[str, Any]], Optional[List[Dict[str, Any]]]]:
            async with semaphore:
                records = await self.remote.list(key, account_id, since=cursors[key])
                versions = None
                if cursors[key] is not None:
                    versions = await self.remote.list_versions(key, account_id)
                return records, versions

        fetched = await asyncio.gather(*(fetch(key) for key in self.entity_types), return_exceptions=True)

        advanced: Dict[str, Optional[datetime]] = {}
        for key, outcome in zip(self.entity_types, fetched):
            if isinstance(outcome, TransportError):
                logger.error(f"Pull of {key} for account {account_id} failed: {outcome}")
                result.errors.append(f"pull {key}: {outcome}")
                continue
            if isinstance(outcome, BaseException):
                logger.critical(f"Unexpected error pulling {key} for account {account_id}: {outcome!r}")
                result.errors.append(f"pull {key}: {outcome!r}")
                continue
            records, versions = outcome
            try:
                merged, latest, errors = self._merge_batch(key, account_id, records, full=versions is None)
                if versions is not None:
                    seen = {str(r['id']) for r in records if r.get('id') is not None}
                    reconciled, reconcile_errors = await self._reconcile_versions(key, account_id, versions, seen)
                    merged += reconciled
                    errors.extend(reconcile_errors)
            except TransportError as e:
                logger.error(f"Reconciling {key} for account {account_id} failed: {e}")
                result.errors.append(f"pull {key}: {e}")
                continue
            except (SyncError, LocalStorageError) as e:
                logger.error(f"Merging {key} for account {account_id} failed: {e}")
                result.errors.append(f"merge {key}: {e}")
                continue
            result.pulled[key] = merged
            result.errors.extend(errors)
            advanced[key] = latest
        return advanced

    async def _reconcile_versions(self, entity_type: str, account_id: str, versions: List[Dict[str, Any]],
                                  seen: Set[str]) -> Tuple[int, List[str]]:
        """
        Bring the local store in line with the server's id/updated_at manifest.

        Rows whose local updated_at differs from the manifest (or that are
        missing locally) are refetched and merged; synced rows absent from it
        are purged. Ids in `seen` were just merged from the incremental batch.

        Raises:
            TransportError: If refetching the stale rows fails.
        """
        remote_ids: Set[str] = set(seen)
        stale: List[str] = []
        for version in versions:
            if version.get('id') is None:
                continue
            entity_id = str(version['id'])
            remote_ids.add(entity_id)
            if entity_id in seen:
                continue
            local = self.db.fetch_by_id(entity_type, entity_id, include_deleted=True)
            if local is None or parse_timestamp(local['updated_at']) != parse_timestamp(version.get('updated_at')):
                stale.append(entity_id)

        merged = 0
        errors: List[str] = []
        if stale:
            logger.info(f"{len(stale)} {entity_type} row(s) changed behind the cursor for account {account_id}, "
                        f"refetching")
            for record in await self.remote.fetch(entity_type, account_id, stale):
                try:
                    outcome = self.merge_remote_record(entity_type, record)
                except DecodeError as e:
                    logger.warning(f"Skipping undecodable remote {entity_type} {record.get('id')}: {e}")
                    errors.append(f"decode {entity_type} {record.get('id')}: {e}")
                    continue
                if outcome != MergeOutcome.IGNORED:
                    merged += 1
        merged += self._purge_missing(entity_type, account_id, remote_ids)
        return merged, errors

    def _merge_batch(self, entity_type, account_id: str, records: List[Dict[str, Any]],
                     full: bool) -> Tuple[int, Optional[datetime], List[str]]:
        """
        Merge one entity type's fetch result in the order received.

        Returns:
            (records merged, latest remote updated_at seen, per-record error strings)
        """
        key = entity_key(entity_type)
        merged = 0
        latest: Optional[datetime] = None
        errors: List[str] = []
        seen: Set[str] = set()
        for record in records:
            if record.get('id') is not None:
                seen.add(str(record['id']))
            stamp = parse_timestamp(record.get('updated_at') or record.get('created_at'))
            if stamp is not None and (latest is None or stamp > latest):
                latest = stamp
            try:
                outcome = self.merge_remote_record(key, record)
            except DecodeError as e:
                logger.warning(f"Skipping undecodable remote {key} {record.get('id')}: {e}")
                errors.append(f"decode {key} {record.get('id')}: {e}")
                continue
            if outcome != MergeOutcome.IGNORED:
                merged += 1

        if full:
            merged += self._purge_missing(key, account_id, seen)
        return merged, latest, errors

    def _purge_missing(self, entity_type: str, account_id: str, remote_ids: Set[str]) -> int:
        """Synced local rows missing from a full pull or from the server manifest were deleted remotely."""
        purged = 0
        for row in self.db.fetch_where(entity_type, account_id, filters={"is_synced": True}):
            if row['id'] in remote_ids or self.db.has_pending_changes(entity_type, row['id']):
                continue
            logger.debug(f"{entity_type} {row['id']} missing remotely, treating as remote delete")
            if self.merge_remote_delete(entity_type, row['id']) == MergeOutcome.DELETED:
                purged += 1
        return purged

    # --- Entity refresh ---

    async def refresh_from_remote(self, entity_type, account_id: str) -> SyncResult:
        """Full (non-incremental) pull of one entity type through the merge path. Transport errors end up in errors."""
        key = entity_key(entity_type)
        result = SyncResult(account_id=account_id)
        if self._is_offline():
            result.offline = True
            result.skipped = True
            result.finished_at = utc_now()
            return result
        async with self._lock_for(account_id):
            try:
                records = await self.remote.list(key, account_id, since=None)
                merged, latest, errors = self._merge_batch(key, account_id, records, full=True)
                result.pulled[key] = merged
                result.errors.extend(errors)
                self.state_manager.update_cursor(account_id, key, latest)
            except (TransportError, StateError) as e:
                logger.error(f"Refresh of {key} for account {account_id} failed: {e}")
                result.errors.append(f"refresh {key}: {e}")
        result.finished_at = utc_now()
        return result

    # --- Merge path ---

    def merge_remote_record(self, entity_type, record: Dict[str, Any]) -> MergeOutcome:
        """
        Apply one server record to the local store.

        Raises:
            DecodeError: If the record doesn't decode into its entity model.
        """
        key = entity_key(entity_type)
        if _is_remote_delete(record):
            if record.get('id') is None:
                raise DecodeError(f"Remote delete for {key} carries no id", entity_type=key, raw=record)
            return self.merge_remote_delete(key, str(record['id']))

        remote = decode_entity(key, record).to_record()
        entity_id = remote['id']
        account_id = remote['account_id']

        with self.db.transaction():
            local = self.db.fetch_by_id(key, entity_id, include_deleted=True)
            if local is None and key in NATURAL_KEYS:
                outcome = self._merge_by_natural_key(key, remote)
                if outcome is not None:
                    return outcome

            if local is None:
                self.db.upsert_remote(key, remote)
                outcome, kind = MergeOutcome.INSERTED, ChangeKind.CREATED
            else:
                has_pending = self.db.has_pending_changes(key, entity_id)
                if (local['is_synced'] and not has_pending and not local['locally_deleted']
                        and local['data'] == remote):
                    logger.debug(f"Remote {key} {entity_id} matches local copy. Ignoring.")
                    return MergeOutcome.IGNORED
                resolution = self.resolver.resolve(key, local, remote, has_pending)
                outcome, kind = self._apply_resolution(key, local, remote, resolution, has_pending)
                if kind is None:
                    return outcome

        self._emit(key, account_id, entity_id, kind)
        return outcome

    def _apply_resolution(self, key: str, local: Dict[str, Any], remote: Dict[str, Any], resolution: Resolution,
                          has_pending: bool) -> Tuple[MergeOutcome, Optional[ChangeKind]]:
        entity_id = remote['id']
        local_edit = has_pending or not local['is_synced']

        if resolution == Resolution.APPLY_REMOTE:
            merged = self.resolver.merge_fields(key, local['data'], remote, resolution) if local_edit else remote
            if merged == remote:
                # the remote version supersedes every queued local change, a pending delete included
                self.outbox.drop_for(key, entity_id)
                self.db.upsert_remote(key, remote)
                logger.debug(f"Applied remote {key} {entity_id}")
            else:
                # must stay newer than the server copy or the conditional upload of these fields is refused
                remote_ts = parse_timestamp(remote['updated_at']) or utc_now()
                merged['updated_at'] = format_timestamp(max(utc_now(), remote_ts + timedelta(milliseconds=1)))
                self.db.update(key, merged, is_synced=False, clear_tombstone=True)
                if not has_pending:
                    self.queue_change(key, entity_id, local['account_id'], ChangeOperation.UPDATE, merged)
                logger.debug(f"Applied remote {key} {entity_id}, keeping client-owned fields pending")
            kind = ChangeKind.CREATED if local['locally_deleted'] else ChangeKind.UPDATED
            return MergeOutcome.UPDATED, kind

        merged = self.resolver.merge_fields(key, local['data'], remote, resolution)
        changed = merged != local['data']
        if changed:
            self.db.update(key, merged, is_synced=False)
        if not has_pending:
            # an unsynced row with nothing queued would never be uploaded
            operation = ChangeOperation.DELETE if local['locally_deleted'] else ChangeOperation.UPDATE
            self.queue_change(key, entity_id, local['account_id'], operation,
                              None if local['locally_deleted'] else merged)
        logger.debug(f"Kept local {key} {entity_id} over older remote version")
        return MergeOutcome.KEPT_LOCAL, (ChangeKind.UPDATED if changed else None)

    def _merge_by_natural_key(self, key: str, remote: Dict[str, Any]) -> Optional[MergeOutcome]:
        """A remote row that already exists locally under another id. Must run inside a transaction."""
        rows = self.db.fetch_where(key, include_deleted=True, limit=1,
                                   filters={col: remote[col] for col in NATURAL_KEYS[key]})
        if not rows:
            return None
        local = rows[0]
        old_id, new_id = local['id'], remote['id']
        has_pending = self.db.has_pending_changes(key, old_id)
        resolution = self.resolver.resolve(key, local, remote, has_pending)

        if resolution == Resolution.KEEP_LOCAL:
            self.db.rekey(key, old_id, new_id)
            # the server already has this row, so a queued create must go out as an update
            for change in self.outbox.pending():
                if (change.entity_type == key and change.entity_id == new_id
                        and change.operation == ChangeOperation.CREATE):
                    self.outbox.convert(change, ChangeOperation.UPDATE)
            logger.info(f"{key} {old_id} re-keyed to server id {new_id}, keeping newer local data")
            self._emit(key, local['account_id'], old_id, ChangeKind.DELETED)
            self._emit(key, local['account_id'], new_id, ChangeKind.UPDATED)
            return MergeOutcome.KEPT_LOCAL

        self.outbox.drop_for(key, old_id)
        self.db.purge(key, old_id)
        self.db.upsert_remote(key, remote)
        logger.info(f"{key} {old_id} replaced by server row {new_id} with the same natural key")
        self._emit(key, local['account_id'], old_id, ChangeKind.DELETED)
        self._emit(key, remote['account_id'], new_id, ChangeKind.CREATED)
        return MergeOutcome.UPDATED

    def merge_remote_delete(self, entity_type, entity_id: str) -> MergeOutcome:
        """Tombstone then purge the local row and drop whatever was queued for it."""
        key = entity_key(entity_type)
        with self.db.transaction():
            local = self.db.fetch_by_id(key, entity_id, include_deleted=True)
            self.outbox.drop_for(key, entity_id)
            if local is None:
                logger.debug(f"Remote delete of {key} {entity_id}: nothing local. Ignoring.")
                return MergeOutcome.IGNORED
            if not local['locally_deleted']:
                self.db.soft_delete(key, entity_id)
            self.db.purge(key, entity_id)
        logger.debug(f"Applied remote delete of {key} {entity_id}")
        self._emit(key, local['account_id'], entity_id, ChangeKind.DELETED)
        return MergeOutcome.DELETED

    # --- Push ---

    async def push_pending(self, account_id: Optional[str] = None) -> PushReport:
        """
        Upload queued changes oldest first. Holds the push lock for the whole pass.

        A failure is recorded on the outbox row and later changes to the same
        entity are skipped for this pass, so they never overtake it.
        """
        report = PushReport()
        async with self._push_lock:
            blocked: Set[Tuple[str, str]] = set()
            for queued in self.outbox.pending(account_id):
                ident = (queued.entity_type, queued.entity_id)
                if ident in blocked:
                    continue
                change = self.outbox.get(queued.change_id)
                if change is None:
                    continue  # collapsed or dropped since the pass started
                if change.exceeded(self.max_retries):
                    logger.warning(f"Retrying stuck change #{change.change_id} ({change.operation.value} "
                                   f"{change.entity_type} {change.entity_id}), {change.retry_count} failed attempts, "
                                   f"last error: {change.last_error}")
                with self.outbox.in_flight(change):
                    try:
                        await self._push_change(change)
                        report.pushed += 1
                    except TransportError as e:
                        self.outbox.record_failure(change, e)
                        blocked.add(ident)
                        report.failed += 1
                        report.errors.append(f"push {change.operation.value} {change.entity_type} "
                                             f"{change.entity_id}: {e}")
                        logger.error(f"Upload of change #{change.change_id} failed: {e}")
        if report.pushed or report.failed:
            logger.info(f"Push pass finished: {report.pushed} uploaded, {report.failed} failed")
        return report

    async def _push_change(self, change: PendingChange):
        key, entity_id = change.entity_type, change.entity_id

        if change.operation == ChangeOperation.DELETE:
            await self.remote.delete(key, entity_id)
            with self.db.transaction():
                self.outbox.complete(change)
                row = self.db.fetch_by_id(key, entity_id, include_deleted=True)
                if row is not None and row['locally_deleted'] and not self.outbox.has_later_changes(change):
                    self.db.purge(key, entity_id)
            logger.debug(f"Remote delete of {key} {entity_id} acknowledged")
            return

        row = self.db.fetch_by_id(key, entity_id, include_deleted=True)
        if row is None or row['locally_deleted']:
            # gone locally; a queued delete (if any) takes care of the server copy
            self.outbox.complete(change)
            return

        payload = row['data']
        if change.operation == ChangeOperation.CREATE:
            try:
                server = await self.remote.create(key, payload)
            except RemoteError as e:
                if e.status_code != 409:
                    raise
                logger.info(f"{key} {entity_id} already exists remotely, resolving against the server copy")
                current = await self._fetch_server_copy(change)
                if current is None:
                    raise TransportError(f"Create of {key} {entity_id} conflicted but the server row is "
                                         f"not readable", entity_type=key, entity_id=entity_id) from e
                server = await self._reconcile_with_server(change, current)
                if server is None:
                    return
        else:
            try:
                server = await self.remote.update(key, entity_id, payload,
                                                  if_older_than=parse_timestamp(row['updated_at']))
            except RemoteError as e:
                if not e.is_not_found:
                    raise
                current = await self._fetch_server_copy(change)
                if current is None:
                    logger.warning(f"{key} {entity_id} missing remotely, re-sending as create")
                    server = await self.remote.create(key, payload)
                else:
                    logger.info(f"Server copy of {key} {entity_id} is not older than the local edit, resolving")
                    server = await self._reconcile_with_server(change, current)
                    if server is None:
                        return

        self._acknowledge(change, row, server)

    async def _fetch_server_copy(self, change: PendingChange) -> Optional[Dict[str, Any]]:
        rows = await self.remote.fetch(change.entity_type, change.account_id, [change.entity_id])
        return rows[0] if rows else None

    async def _reconcile_with_server(self, change: PendingChange,
                                     server_row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Settle a rejected write through the merge path instead of overwriting the server.

        Returns:
            The server's copy after a conditional re-send of the surviving local
            version, or None when the server version won and nothing is left to upload.
        """
        key, entity_id = change.entity_type, change.entity_id
        try:
            self.merge_remote_record(key, server_row)
        except DecodeError as e:
            raise TransportError(f"Server copy of {key} {entity_id} did not decode: {e}",
                                 entity_type=key, entity_id=entity_id) from e
        if self.outbox.get(change.change_id) is None:
            logger.info(f"Server version of {key} {entity_id} is newer, local change dropped")
            return None
        row = self.db.fetch_by_id(key, entity_id, include_deleted=True)
        if row is None or row['locally_deleted']:
            self.outbox.complete(change)
            return None
        logger.info(f"Local version of {key} {entity_id} is newer, re-sending over the server copy")
        return await self.remote.update(key, entity_id, row['data'], if_older_than=parse_timestamp(row['updated_at']))

    def _acknowledge(self, change: PendingChange, row: Dict[str, Any], server: Optional[Dict[str, Any]]):
        key, entity_id = change.entity_type, change.entity_id
        rewritten = False
        with self.db.transaction():
            self.outbox.complete(change)
            if self.outbox.has_later_changes(change):
                logger.debug(f"Ack for {key} {entity_id} arrived with newer local edits queued; staying unsynced")
                return
            current = self.db.fetch_by_id(key, entity_id, include_deleted=True)
            if current is None or current['locally_deleted']:
                return
            record = None
            if change.operation == ChangeOperation.CREATE and isinstance(server, dict) \
                    and str(server.get('id')) == entity_id:
                try:
                    record = decode_entity(key, server).to_record()
                except DecodeError as e:
                    logger.warning(f"Server copy of {key} {entity_id} did not decode, keeping local version: {e}")
            if record is not None and record != current['data']:
                self.db.upsert_remote(key, record)
                rewritten = True
            else:
                self.db.mark_synced(key, entity_id)
        logger.debug(f"Upload of {change.operation.value} {key} {entity_id} acknowledged")
        if rewritten:
            self._emit(key, row['account_id'], entity_id, ChangeKind.UPDATED)

    # --- Medication logs ---

    def generate_local_medication_logs(self, account_id: str, *, today: Optional[date] = None) -> int:
        created = self.log_generator.generate(account_id, today=today)
        if created and self.worker is not None:
            self.worker.notify()
        return created
