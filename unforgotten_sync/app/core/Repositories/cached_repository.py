# cached_repository.py
# Description: Local-first data access per entity type. Reads hit the local store only; writes are optimistic
#              and reach the server through the outbox.
#
# Imports
import uuid
from datetime import date, datetime, tzinfo
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Tuple, Type, TypeVar, Union
#
# Third-Party Libraries
from loguru import logger
from pydantic import ValidationError
#
# Local Imports
from unforgotten_sync.app.core.DB_Management.Local_Store_DB import InputError, LocalStoreDB, RecordNotFoundError
from unforgotten_sync.app.core.Sync.core import SyncEngine
from unforgotten_sync.app.core.Sync.entity_schemas import (Account, AccountMember, ImportantAccount, Medication,
                                                           MedicationLog, MedicationLogStatus, MedicationSchedule,
                                                           MemberRole, Profile, ProfileConnection, ProfileDetail,
                                                           StickyReminder, SyncedEntity, decode_entity, model_for)
from unforgotten_sync.app.core.Sync.exceptions import DecodeError, PermissionDeniedError
from unforgotten_sync.app.core.Sync.medication_logs import local_timezone
from unforgotten_sync.app.core.Sync.models import ChangeKind, ChangeOperation, EntityType
from unforgotten_sync.app.core.Utils.Utils import entity_key, utc_now
#
########################################################################################################################
#
# Functions:

T = TypeVar('T', bound=SyncedEntity)


def _lower(value: Optional[str]) -> str:
    return (value or "").lower()


# entity type -> (sort key, reverse)
ORDERINGS: Dict[str, Tuple[Callable[[Any], Any], bool]] = {
    "account": (lambda a: _lower(a.display_name), False),
    "profile": (lambda p: (p.sort_order, _lower(p.full_name)), False),
    "profile_detail": (lambda d: (d.category, _lower(d.label)), False),
    "profile_connection": (lambda c: c.created_at, False),
    "important_account": (lambda a: _lower(a.account_name), False),
    "medication": (lambda m: (m.sort_order, _lower(m.name)), False),
    "medication_schedule": (lambda s: (s.start_date, s.created_at), False),
    "medication_log": (lambda log: log.scheduled_at, False),
    "appointment": (lambda a: (a.date, a.time is not None, a.time or datetime.min.time()), False),
    "useful_contact": (lambda c: (c.sort_order, _lower(c.name)), False),
    "mood_entry": (lambda m: m.date, True),
    "todo_list": (lambda t: t.created_at, True),
    "todo_item": (lambda t: (t.sort_order, t.created_at), False),
    "sticky_reminder": (lambda r: (r.sort_order, r.trigger_time), False),
    "countdown": (lambda c: c.date, False),
    "planned_meal": (lambda m: m.date, False),
    "recipe": (lambda r: _lower(r.name), False),
}


class CachedRepository(Generic[T]):
    """
    Public data-access API for one entity type.

    Reads only ever touch the local store and hide rows whose account the
    current user can't see. Writes land locally first (is_synced=False), get
    queued in the outbox and are announced on the change notifier; the
    outbox worker uploads them in the background.
    """

    def __init__(self, entity_type, db: LocalStoreDB, engine: SyncEngine, user_id: Optional[str] = None):
        self.entity_type = entity_key(entity_type)
        self.model: Type[T] = model_for(self.entity_type)
        self.db = db
        self.engine = engine
        self.user_id = user_id

    # --- Access checks ---

    def _visible(self, account_id: Optional[str]) -> bool:
        if not account_id or not self.user_id:
            return False
        return self.db.is_account_visible(account_id, self.user_id)

    def _check_write(self, account_id: str):
        role = self.db.member_role(account_id, self.user_id) if self.user_id else None
        if role is None:
            raise PermissionDeniedError("Not a member of this account", account_id=account_id)
        if not MemberRole(role).can_write:
            raise PermissionDeniedError("Role does not allow changes", account_id=account_id, role=role)

    # --- Decoding ---

    def _decode(self, row: Dict[str, Any], entity_type: Optional[str] = None) -> Optional[SyncedEntity]:
        try:
            return decode_entity(entity_type or self.entity_type, row['data'])
        except DecodeError as e:
            logger.warning(f"Skipping undecodable cached {entity_type or self.entity_type} {row.get('id')}: {e}")
            return None

    def _decode_rows(self, rows: Iterable[Dict[str, Any]], entity_type: Optional[str] = None) -> List:
        return [e for e in (self._decode(r, entity_type) for r in rows) if e is not None]

    def _sorted(self, entities: List, entity_type: Optional[str] = None) -> List:
        key, reverse = ORDERINGS.get(entity_type or self.entity_type, (lambda e: e.created_at, False))
        return sorted(entities, key=key, reverse=reverse)

    def _validate(self, model: Type[SyncedEntity], data: Dict[str, Any]) -> SyncedEntity:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise InputError(f"Invalid {model.__name__}: {e}") from e

    # --- Reads ---

    def get(self, account_id: str) -> List[T]:
        if not self._visible(account_id):
            return []
        return self._sorted(self._decode_rows(self.db.fetch_where(self.entity_type, account_id)))

    def get_by_id(self, entity_id: str) -> Optional[T]:
        row = self.db.fetch_by_id(self.entity_type, entity_id)
        if row is None or not self._visible(row['account_id']):
            return None
        return self._decode(row)

    # --- Writes ---

    def create(self, insert: Union[Dict[str, Any], T]) -> T:
        """Validate, store locally unsynced, queue the upload. Returns the local row immediately."""
        return self._create_as(self.entity_type, insert)

    def _create_as(self, entity_type: str, insert: Union[Dict[str, Any], SyncedEntity]):
        entity_type = entity_key(entity_type)
        data = insert.to_record() if isinstance(insert, SyncedEntity) else dict(insert)
        account_id = data.get('account_id')
        if not account_id:
            raise InputError("Required field 'account_id' is missing or empty.")
        self._check_write(str(account_id))
        now = utc_now()
        data['id'] = str(data.get('id') or uuid.uuid4())
        data['created_at'] = now
        data['updated_at'] = now
        entity = self._validate(model_for(entity_type), data)
        return self._store_create(entity_type, entity)

    def _store_create(self, entity_type: str, entity: SyncedEntity):
        record = entity.to_record()
        with self.db.transaction():
            self.db.insert(entity_type, record, is_synced=False)
            self.engine.queue_change(entity_type, entity.id, entity.account_id, ChangeOperation.CREATE, record)
        logger.debug(f"Created local {entity_type} {entity.id}")
        self.engine.notifier.emit(entity_type, entity.account_id, entity.id, ChangeKind.CREATED)
        return entity

    def update(self, entity: T) -> T:
        return self._store_update(self.entity_type, entity)

    def _store_update(self, entity_type: str, entity: SyncedEntity):
        existing = self.db.fetch_by_id(entity_type, entity.id)
        if existing is None:
            raise RecordNotFoundError("Record not found or deleted.", entity=entity_type, entity_id=entity.id)
        self._check_write(existing['account_id'])
        data = entity.to_record()
        data['account_id'] = existing['account_id']
        data['created_at'] = existing['data'].get('created_at', data.get('created_at'))
        data['updated_at'] = utc_now()
        updated = self._validate(type(entity), data)
        record = updated.to_record()
        with self.db.transaction():
            self.db.update(entity_type, record, is_synced=False)
            self.engine.queue_change(entity_type, updated.id, updated.account_id, ChangeOperation.UPDATE, record)
        logger.debug(f"Updated local {entity_type} {updated.id}")
        self.engine.notifier.emit(entity_type, updated.account_id, updated.id, ChangeKind.UPDATED)
        return updated

    def delete(self, entity_id: str):
        """Tombstone the row and queue the remote delete. A never-uploaded row is purged right away."""
        existing = self.db.fetch_by_id(self.entity_type, entity_id)
        if existing is None:
            raise RecordNotFoundError("Record not found or already deleted.", entity=self.entity_type,
                                      entity_id=entity_id)
        self._check_write(existing['account_id'])
        with self.db.transaction():
            self.db.soft_delete(self.entity_type, entity_id)
            change_id = self.engine.queue_change(self.entity_type, entity_id, existing['account_id'],
                                                 ChangeOperation.DELETE)
            if change_id is None:
                self.db.purge(self.entity_type, entity_id)
        logger.debug(f"Deleted local {self.entity_type} {entity_id}"
                     f"{' (never uploaded, purged)' if change_id is None else ''}")
        self.engine.notifier.emit(self.entity_type, existing['account_id'], entity_id, ChangeKind.DELETED)

    async def refresh_from_remote(self, account_id: str) -> List[T]:
        """Full pull of this entity type through the merge path. On failure the cached set is returned."""
        result = await self.engine.refresh_from_remote(self.entity_type, account_id)
        if result.errors:
            logger.warning(f"Refresh of {self.entity_type} for account {account_id} incomplete, "
                           f"serving cached data: {result.errors}")
        return self.get(account_id)


class AccountRepository(CachedRepository[Account]):
    MEMBER_NAMESPACE = uuid.UUID("0b8f3f3e-6d2a-4a51-8d0e-7f0f6c2b9a44")

    def __init__(self, db: LocalStoreDB, engine: SyncEngine, user_id: Optional[str] = None):
        super().__init__(EntityType.ACCOUNT, db, engine, user_id)

    def get(self, account_id: str) -> List[Account]:
        account = self.get_by_id(account_id)
        return [account] if account is not None else []

    def role_for(self, account_id: str, user_id: Optional[str] = None) -> Optional[MemberRole]:
        role = self.db.member_role(account_id, user_id or self.user_id)
        return MemberRole(role) if role else None

    def cache_accounts(self, user_id: str,
                       accounts_with_roles: Iterable[Tuple[Union[Account, Dict[str, Any]], Any]]) -> int:
        """
        Store server-confirmed accounts and the user's membership in each.

        Args:
            user_id: The signed-in user.
            accounts_with_roles: (account, role) pairs as returned by the backend.

        Returns:
            Number of accounts cached.
        """
        cached = 0
        for account, role in accounts_with_roles:
            record = account.to_record() if isinstance(account, SyncedEntity) else dict(account)
            entity = self._validate(Account, record)
            role = MemberRole(role)
            self.engine.merge_remote_record(EntityType.ACCOUNT, entity.to_record())
            self._ensure_member(entity, user_id, role)
            cached += 1
        logger.info(f"Cached {cached} account(s) for user {user_id}")
        return cached

    def _ensure_member(self, account: Account, user_id: str, role: MemberRole):
        key = EntityType.ACCOUNT_MEMBER.value
        rows = self.db.fetch_where(key, account.id, include_deleted=True, filters={"user_id": user_id}, limit=1)
        if rows:
            row = rows[0]
            if row['role'] == role.value and not row['locally_deleted']:
                return
            record = dict(row['data'], role=role.value)
            self.db.update(key, record, is_synced=True, clear_tombstone=True)
            return
        member = AccountMember(id=str(uuid.uuid5(self.MEMBER_NAMESPACE, f"{account.id}|{user_id}")),
                               account_id=account.id, user_id=user_id, role=role,
                               created_at=account.created_at, updated_at=account.updated_at)
        self.db.insert(key, member.to_record(), is_synced=True)
        self.engine.notifier.emit(key, account.id, member.id, ChangeKind.CREATED)

    def load_accounts_from_cache(self, user_id: Optional[str] = None) -> List[Account]:
        """Accounts the user belongs to, owned accounts first, then by display name."""
        user_id = user_id or self.user_id
        if not user_id:
            return []
        accounts = []
        for member in self.db.fetch_where(EntityType.ACCOUNT_MEMBER, filters={"user_id": user_id}):
            row = self.db.fetch_by_id(EntityType.ACCOUNT, member['account_id'])
            account = self._decode(row) if row else None
            if account is not None:
                accounts.append(account)
        return sorted(accounts, key=lambda a: (a.owner_user_id != user_id, _lower(a.display_name)))


class ProfileRepository(CachedRepository[Profile]):
    """Profiles plus the rows hanging off them: details, connections and important accounts."""

    def __init__(self, db: LocalStoreDB, engine: SyncEngine, user_id: Optional[str] = None):
        super().__init__(EntityType.PROFILE, db, engine, user_id)

    def _children(self, entity_type: EntityType, column: str, profile_id: str) -> List:
        key = entity_type.value
        rows = [r for r in self.db.fetch_where(key, filters={column: profile_id}) if self._visible(r['account_id'])]
        return self._decode_rows(rows, key)

    def get_details(self, profile_id: str, category: Optional[str] = None) -> List[ProfileDetail]:
        details = self._children(EntityType.PROFILE_DETAIL, "profile_id", profile_id)
        if category is not None:
            details = [d for d in details if d.category == category]
        return self._sorted(details, EntityType.PROFILE_DETAIL.value)

    def get_connections(self, profile_id: str) -> List[ProfileConnection]:
        """Connections in either direction."""
        found = {c.id: c for c in self._children(EntityType.PROFILE_CONNECTION, "from_profile_id", profile_id)}
        for connection in self._children(EntityType.PROFILE_CONNECTION, "to_profile_id", profile_id):
            found.setdefault(connection.id, connection)
        return self._sorted(list(found.values()), EntityType.PROFILE_CONNECTION.value)

    def get_important_accounts(self, profile_id: str) -> List[ImportantAccount]:
        accounts = self._children(EntityType.IMPORTANT_ACCOUNT, "profile_id", profile_id)
        return self._sorted(accounts, EntityType.IMPORTANT_ACCOUNT.value)

    def add_detail(self, insert: Dict[str, Any]) -> ProfileDetail:
        return self._create_as(EntityType.PROFILE_DETAIL, insert)

    def add_connection(self, insert: Dict[str, Any]) -> ProfileConnection:
        return self._create_as(EntityType.PROFILE_CONNECTION, insert)

    def add_important_account(self, insert: Dict[str, Any]) -> ImportantAccount:
        return self._create_as(EntityType.IMPORTANT_ACCOUNT, insert)


class MedicationRepository(CachedRepository[Medication]):

    def __init__(self, db: LocalStoreDB, engine: SyncEngine, user_id: Optional[str] = None,
                 tz: Optional[tzinfo] = None):
        super().__init__(EntityType.MEDICATION, db, engine, user_id)
        self.tz = tz

    def get_schedules(self, medication_id: str) -> List[MedicationSchedule]:
        key = EntityType.MEDICATION_SCHEDULE.value
        rows = [r for r in self.db.fetch_where(key, filters={"medication_id": medication_id})
                if self._visible(r['account_id'])]
        return self._sorted(self._decode_rows(rows, key), key)

    def get_logs_for_day(self, account_id: str, day: date) -> List[MedicationLog]:
        if not self._visible(account_id):
            return []
        key = EntityType.MEDICATION_LOG.value
        tz = self.tz or local_timezone()
        logs = self._decode_rows(self.db.fetch_where(key, account_id, order_by="scheduled_at"), key)
        return [log for log in logs if log.scheduled_at.astimezone(tz).date() == day]

    def mark_log(self, log_id: str, status, taken_at: Optional[datetime] = None) -> MedicationLog:
        key = EntityType.MEDICATION_LOG.value
        row = self.db.fetch_by_id(key, log_id)
        if row is None or not self._visible(row['account_id']):
            raise RecordNotFoundError("Medication log not found or deleted.", entity=key, entity_id=log_id)
        status = MedicationLogStatus(status)
        log = self._decode(row, key)
        if log is None:
            raise InputError(f"Cached medication log {log_id} is unreadable")
        if status == MedicationLogStatus.TAKEN:
            taken_at = taken_at or utc_now()
        else:
            taken_at = None
        return self._store_update(key, log.model_copy(update={"status": status, "taken_at": taken_at}))


class StickyReminderRepository(CachedRepository[StickyReminder]):
    """Sticky reminders. Their notifications follow the change events every write emits."""

    def __init__(self, db: LocalStoreDB, engine: SyncEngine, user_id: Optional[str] = None):
        super().__init__(EntityType.STICKY_REMINDER, db, engine, user_id)

    def get_active(self, account_id: str) -> List[StickyReminder]:
        return [r for r in self.get(account_id) if r.should_notify]

    def dismiss(self, reminder_id: str) -> StickyReminder:
        reminder = self.get_by_id(reminder_id)
        if reminder is None:
            raise RecordNotFoundError("Sticky reminder not found or deleted.", entity=self.entity_type,
                                      entity_id=reminder_id)
        return self.update(reminder.model_copy(update={"is_dismissed": True}))

#
# End of cached_repository.py
########################################################################################################################
