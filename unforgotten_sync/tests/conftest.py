# conftest.py
# Shared fixtures for the sync core tests: in-memory local store, a fake remote with failure injection,
# and factories for seeding accounts and records.
#
# Imports
import asyncio
import copy
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
#
# Third-Party Imports
import pytest
#
# Local Imports
from unforgotten_sync.app.core.DB_Management.Local_Store_DB import LocalStoreDB
from unforgotten_sync.app.core.Notifications.reminder_scheduler import (InMemoryNotificationScheduler,
                                                                        StickyReminderNotifier)
from unforgotten_sync.app.core.Sync.core import SyncEngine
from unforgotten_sync.app.core.Sync.entity_schemas import decode_entity
from unforgotten_sync.app.core.Sync.exceptions import NetworkError, RemoteError
from unforgotten_sync.app.core.Sync.models import EntityType
from unforgotten_sync.app.core.Sync.notifier import ALL_ENTITIES, ChangeNotifier
from unforgotten_sync.app.core.Sync.transport import CREATED_ONLY_TYPES, PROFILE_SCOPED_TYPES, RemoteClient
from unforgotten_sync.app.core.Utils.Utils import entity_key, format_timestamp, parse_timestamp
#
#######################################################################################################################
#
# Functions:

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
ACCOUNT_ID = "11111111-1111-4111-8111-111111111111"
USER_ID = "22222222-2222-4222-8222-222222222222"


def ts(minutes: float = 0) -> str:
    """ISO timestamp `minutes` after BASE_TIME."""
    return format_timestamp(BASE_TIME + timedelta(minutes=minutes))


class FakeRemoteClient(RemoteClient):
    """
    In-memory stand-in for the backend.

    Tables are dicts of id -> record. `fail_next(op, error)` makes the next
    call of that operation raise; `offline = True` makes every call raise
    NetworkError.
    """

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.calls: List[tuple] = []
        self.offline = False
        self._failures: Dict[str, List[Exception]] = {}
        self.list_delay = 0.0

    # --- Test helpers ---

    def seed(self, entity_type, record: Dict[str, Any]) -> Dict[str, Any]:
        self.tables.setdefault(entity_key(entity_type), {})[str(record['id'])] = copy.deepcopy(record)
        return record

    def get(self, entity_type, entity_id: str) -> Optional[Dict[str, Any]]:
        return self.tables.get(entity_key(entity_type), {}).get(str(entity_id))

    def fail_next(self, operation: str, error: Exception):
        self._failures.setdefault(operation, []).append(error)

    def count_calls(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def _check(self, operation: str):
        if self.offline:
            raise NetworkError("Simulated offline")
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)

    # --- RemoteClient ---

    def _scoped_rows(self, key: str, account_id: str) -> List[Dict[str, Any]]:
        rows = []
        for row in self.tables.get(key, {}).values():
            if key in PROFILE_SCOPED_TYPES:
                profile = self.get(EntityType.PROFILE, row.get('profile_id'))
                if profile is None or str(profile.get('account_id')) != account_id:
                    continue
                row = {**row, "profiles": {"account_id": profile['account_id']}}
            elif str(row.get("id" if key == EntityType.ACCOUNT.value else "account_id")) != account_id:
                continue
            rows.append(row)
        rows.sort(key=lambda r: parse_timestamp(r.get('updated_at') or r.get('created_at')))
        return rows

    async def list(self, entity_type, account_id: str, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        key = entity_key(entity_type)
        self.calls.append(("list", key, account_id, since))
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        self._check("list")
        rows = self._scoped_rows(key, account_id)
        if since is not None:
            rows = [r for r in rows if parse_timestamp(r.get('updated_at') or r.get('created_at')) > since]
        return copy.deepcopy(rows)

    async def list_versions(self, entity_type, account_id: str) -> List[Dict[str, Any]]:
        key = entity_key(entity_type)
        self.calls.append(("versions", key, account_id))
        self._check("versions")
        return [{"id": r['id'], "updated_at": r.get('updated_at') or r.get('created_at')}
                for r in self._scoped_rows(key, account_id)]

    async def fetch(self, entity_type, account_id: str, ids) -> List[Dict[str, Any]]:
        key = entity_key(entity_type)
        self.calls.append(("fetch", key, account_id, tuple(ids)))
        self._check("fetch")
        wanted = {str(i) for i in ids}
        return copy.deepcopy([r for r in self._scoped_rows(key, account_id) if str(r['id']) in wanted])

    async def create(self, entity_type, payload: Dict[str, Any]) -> Dict[str, Any]:
        key = entity_key(entity_type)
        self.calls.append(("create", key, payload.get('id')))
        self._check("create")
        table = self.tables.setdefault(key, {})
        if str(payload['id']) in table:
            raise RemoteError("duplicate key", status_code=409, entity_type=key, entity_id=payload['id'])
        table[str(payload['id'])] = copy.deepcopy(payload)
        return copy.deepcopy(payload)

    async def update(self, entity_type, entity_id: str, payload: Dict[str, Any],
                     if_older_than: Optional[datetime] = None) -> Dict[str, Any]:
        key = entity_key(entity_type)
        self.calls.append(("update", key, entity_id))
        self._check("update")
        table = self.tables.setdefault(key, {})
        existing = table.get(str(entity_id))
        if existing is None:
            raise RemoteError("Remote returned no row", status_code=404, entity_type=key, entity_id=entity_id)
        stamp = parse_timestamp(existing.get('updated_at') or existing.get('created_at'))
        if if_older_than is not None and key not in CREATED_ONLY_TYPES and stamp >= if_older_than:
            raise RemoteError("Remote returned no row", status_code=404, entity_type=key, entity_id=entity_id)
        table[str(entity_id)] = copy.deepcopy(payload)
        return copy.deepcopy(payload)

    async def delete(self, entity_type, entity_id: str) -> None:
        key = entity_key(entity_type)
        self.calls.append(("delete", key, entity_id))
        self._check("delete")
        self.tables.setdefault(key, {}).pop(str(entity_id), None)


def account_record(account_id: str = ACCOUNT_ID, owner: str = USER_ID, name: str = "Family",
                   updated: float = 0) -> Dict[str, Any]:
    return {"id": account_id, "account_id": account_id, "owner_user_id": owner, "display_name": name,
            "created_at": ts(0), "updated_at": ts(updated)}


def member_record(account_id: str = ACCOUNT_ID, user_id: str = USER_ID, role: str = "owner",
                  member_id: Optional[str] = None, updated: float = 0) -> Dict[str, Any]:
    member_id = member_id or str(uuid.uuid5(uuid.NAMESPACE_URL, f"member:{account_id}:{user_id}"))
    return {"id": member_id, "account_id": account_id, "user_id": user_id, "role": role,
            "created_at": ts(0), "updated_at": ts(updated)}


def appointment_record(appointment_id: Optional[str] = None, account_id: str = ACCOUNT_ID, title: str = "Dentist",
                       updated: float = 0, **extra) -> Dict[str, Any]:
    record = {"id": appointment_id or str(uuid.uuid4()), "account_id": account_id,
              "profile_id": "33333333-3333-4333-8333-333333333333", "title": title, "date": "2024-05-10",
              "time": "09:30", "created_at": ts(0), "updated_at": ts(updated)}
    record.update(extra)
    return record


def reminder_record(reminder_id: Optional[str] = None, account_id: str = ACCOUNT_ID, title: str = "Drink water",
                    updated: float = 0, **extra) -> Dict[str, Any]:
    record = {"id": reminder_id or str(uuid.uuid4()), "account_id": account_id, "title": title,
              "trigger_time": ts(60), "repeat_interval": "30_minutes", "is_active": True, "is_dismissed": False,
              "created_at": ts(0), "updated_at": ts(updated)}
    record.update(extra)
    return record


# --- Fixtures ---

@pytest.fixture
def client_id():
    return "test_client_001"


@pytest.fixture
def db_path(tmp_path):
    """Provides a temporary path for the database file for each test."""
    return tmp_path / "unforgotten_test.sqlite"


@pytest.fixture
def file_db(db_path, client_id):
    db = LocalStoreDB(db_path, client_id)
    yield db
    db.close_connection()


@pytest.fixture
def mem_db(client_id):
    """Creates an in-memory local store."""
    db = LocalStoreDB(":memory:", client_id)
    yield db
    db.close_connection()


@pytest.fixture
def remote():
    return FakeRemoteClient()


@pytest.fixture
def notifier():
    return ChangeNotifier()


@pytest.fixture
def events(notifier):
    """Every change event published on the notifier, in order."""
    received = []
    notifier.subscribe(ALL_ENTITIES, received.append)
    return received


@pytest.fixture
def engine(mem_db, remote, notifier):
    return SyncEngine(mem_db, remote, notifier=notifier)


@pytest.fixture
def scheduler():
    return InMemoryNotificationScheduler()


@pytest.fixture
def reminder_notifier(scheduler):
    return StickyReminderNotifier(scheduler)


@pytest.fixture
def seed_account(mem_db, remote):
    """Stores a server-confirmed account plus the user's membership, locally and on the fake remote."""
    def _seed(account_id: str = ACCOUNT_ID, user_id: str = USER_ID, role: str = "owner"):
        for key, record in ((EntityType.ACCOUNT, account_record(account_id, owner=user_id)),
                            (EntityType.ACCOUNT_MEMBER, member_record(account_id, user_id, role))):
            mem_db.upsert_remote(key, decode_entity(key, record).to_record())
            remote.seed(key, record)
        return account_id
    return _seed
