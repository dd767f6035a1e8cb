# Local_Store_DB.py
# Description: On-device SQLite store for every synced entity type, the upload outbox and sync cursors.
#
# Imports
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
#
# Third-Party Libraries
from loguru import logger
#
# Local Imports
from unforgotten_sync.app.core.Utils.Utils import entity_key, format_timestamp, parse_timestamp, utc_now
#
########################################################################################################################
#
# Functions:

# --- Custom Exceptions ---
class LocalStorageError(Exception):
    """Base exception for local store errors. Fatal for the operation that triggered it."""
    pass


class SchemaError(LocalStorageError):
    """Exception for schema version mismatches or migration failures."""
    pass


class InputError(ValueError):
    """Custom exception for input validation errors."""
    pass


class ConflictError(LocalStorageError):
    """A write collided with an existing row (duplicate id or unique constraint)."""

    def __init__(self, message="Conflict detected.", entity: Optional[str] = None, entity_id: Any = None):
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id

    def __str__(self):
        base = super().__str__()
        details = []
        if self.entity:
            details.append(f"Entity: {self.entity}")
        if self.entity_id:
            details.append(f"ID: {self.entity_id}")
        return f"{base} ({', '.join(details)})" if details else base


class RecordNotFoundError(ConflictError):
    """The row to update/delete does not exist (or is tombstoned)."""
    pass


# entity type -> table and the payload fields promoted to real columns.
# 'timestamp' columns are normalized so equal instants compare equal in SQL.
ENTITY_TABLES: Dict[str, Dict[str, Any]] = {
    "account": {"table": "accounts", "columns": {}},
    "account_member": {"table": "account_members", "columns": {"user_id": "text", "role": "text"}},
    "profile": {"table": "profiles", "columns": {}},
    "profile_detail": {"table": "profile_details", "columns": {"profile_id": "text"}},
    "profile_connection": {"table": "profile_connections",
                           "columns": {"from_profile_id": "text", "to_profile_id": "text"}},
    "important_account": {"table": "important_accounts", "columns": {"profile_id": "text"}},
    "medication": {"table": "medications", "columns": {}},
    "medication_schedule": {"table": "medication_schedules", "columns": {"medication_id": "text"}},
    "medication_log": {"table": "medication_logs",
                       "columns": {"medication_id": "text", "scheduled_at": "timestamp"}},
    "appointment": {"table": "appointments", "columns": {}},
    "useful_contact": {"table": "useful_contacts", "columns": {}},
    "mood_entry": {"table": "mood_entries", "columns": {}},
    "todo_list": {"table": "todo_lists", "columns": {}},
    "todo_item": {"table": "todo_items", "columns": {"list_id": "text"}},
    "sticky_reminder": {"table": "sticky_reminders", "columns": {}},
    "countdown": {"table": "countdowns", "columns": {}},
    "recipe": {"table": "recipes", "columns": {}},
    "planned_meal": {"table": "planned_meals", "columns": {}},
    "user_preferences": {"table": "user_preferences", "columns": {"user_id": "text"}},
}

_SYNC_COLUMNS = ("id", "account_id", "created_at", "updated_at", "is_synced", "locally_deleted", "last_synced_at")


class LocalStoreDB:
    """
    Manages the SQLite connection and all local reads/writes for the sync core.

    One table per entity type, keyed by the remote id. Every row stores the
    full entity document as JSON in `data` next to its sync metadata
    (is_synced, locally_deleted, updated_at, last_synced_at). Tombstoned rows
    are invisible to the fetch helpers unless include_deleted is passed.
    Requires client_id on initialization.
    """
    _CURRENT_SCHEMA_VERSION = 2
    _SCHEMA_NAME = "unforgotten_local_store"

    _FULL_SCHEMA_SQL_V1 = """
PRAGMA foreign_keys = ON;

/*───────────────────────────────────────────────────────────────
  Schema version
───────────────────────────────────────────────────────────────*/
CREATE TABLE IF NOT EXISTS db_schema_version(
  schema_name TEXT PRIMARY KEY NOT NULL,
  version INTEGER NOT NULL
);
INSERT OR IGNORE INTO db_schema_version(schema_name, version) VALUES('unforgotten_local_store', 0);

/*───────────────────────────────────────────────────────────────
  Accounts & membership
───────────────────────────────────────────────────────────────*/
CREATE TABLE IF NOT EXISTS accounts(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);

CREATE TABLE IF NOT EXISTS account_members(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  user_id TEXT NOT NULL,
  role TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT,
  UNIQUE(account_id, user_id)
);
CREATE INDEX IF NOT EXISTS idx_account_members_user ON account_members(user_id);

CREATE TABLE IF NOT EXISTS user_preferences(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  user_id TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);

/*───────────────────────────────────────────────────────────────
  People
───────────────────────────────────────────────────────────────*/
CREATE TABLE IF NOT EXISTS profiles(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);

CREATE TABLE IF NOT EXISTS useful_contacts(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);

CREATE TABLE IF NOT EXISTS mood_entries(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);

/*───────────────────────────────────────────────────────────────
  Medications
───────────────────────────────────────────────────────────────*/
CREATE TABLE IF NOT EXISTS medications(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);

CREATE TABLE IF NOT EXISTS medication_schedules(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  medication_id TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_medication_schedules_med ON medication_schedules(medication_id);

CREATE TABLE IF NOT EXISTS medication_logs(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  medication_id TEXT NOT NULL,
  scheduled_at TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT,
  UNIQUE(medication_id, scheduled_at)
);

/*───────────────────────────────────────────────────────────────
  Calendar, lists, reminders
───────────────────────────────────────────────────────────────*/
CREATE TABLE IF NOT EXISTS appointments(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);

CREATE TABLE IF NOT EXISTS countdowns(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);

CREATE TABLE IF NOT EXISTS planned_meals(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);

CREATE TABLE IF NOT EXISTS todo_lists(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);

CREATE TABLE IF NOT EXISTS todo_items(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  list_id TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_todo_items_list ON todo_items(list_id);

CREATE TABLE IF NOT EXISTS sticky_reminders(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);

/*───────────────────────────────────────────────────────────────
  Outbox & cursors
───────────────────────────────────────────────────────────────*/
CREATE TABLE IF NOT EXISTS pending_changes(
  change_id INTEGER PRIMARY KEY AUTOINCREMENT,
  entity_type TEXT NOT NULL,
  entity_id TEXT NOT NULL,
  account_id TEXT NOT NULL,
  operation TEXT NOT NULL CHECK(operation IN ('create','update','delete')),
  payload TEXT,
  created_at TEXT NOT NULL,
  retry_count INTEGER NOT NULL DEFAULT 0,
  last_error TEXT,
  last_attempt_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_pending_changes_entity ON pending_changes(entity_type, entity_id);
CREATE INDEX IF NOT EXISTS idx_pending_changes_account ON pending_changes(account_id);

CREATE TABLE IF NOT EXISTS sync_metadata(
  account_id TEXT NOT NULL,
  entity_type TEXT NOT NULL,
  last_server_timestamp TEXT,
  last_synced_at TEXT,
  PRIMARY KEY(account_id, entity_type)
);

UPDATE db_schema_version SET version = 1 WHERE schema_name = 'unforgotten_local_store' AND version = 0;
"""

    _MIGRATE_SQL_V1_TO_V2 = """
/*───────────────────────────────────────────────────────────────
  V2: profile details, connections, important accounts, recipes
───────────────────────────────────────────────────────────────*/
CREATE TABLE IF NOT EXISTS profile_details(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  profile_id TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_profile_details_profile ON profile_details(profile_id);

CREATE TABLE IF NOT EXISTS profile_connections(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  from_profile_id TEXT NOT NULL,
  to_profile_id TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_profile_connections_from ON profile_connections(from_profile_id);
CREATE INDEX IF NOT EXISTS idx_profile_connections_to ON profile_connections(to_profile_id);

CREATE TABLE IF NOT EXISTS important_accounts(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  profile_id TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_important_accounts_profile ON important_accounts(profile_id);

CREATE TABLE IF NOT EXISTS recipes(
  id TEXT PRIMARY KEY,
  account_id TEXT NOT NULL,
  data TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  is_synced INTEGER NOT NULL DEFAULT 0,
  locally_deleted INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);

UPDATE db_schema_version SET version = 2 WHERE schema_name = 'unforgotten_local_store' AND version = 1;
"""

    def __init__(self, db_path: Union[str, Path], client_id: str):
        if isinstance(db_path, Path):
            self.is_memory_db = False
            self.db_path = db_path.resolve()
        else:
            self.is_memory_db = (db_path == ':memory:')
            self.db_path = Path(db_path).resolve() if not self.is_memory_db else Path(":memory:")
        self.db_path_str = str(self.db_path) if not self.is_memory_db else ':memory:'

        if not client_id:
            raise ValueError("Client ID cannot be empty or None.")
        self.client_id = client_id

        if not self.is_memory_db:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise LocalStorageError(f"Failed to create database directory {self.db_path.parent}: {e}") from e

        logger.info(f"Initializing LocalStoreDB for path: {self.db_path_str} [Client ID: {self.client_id}]")
        self._local = threading.local()
        try:
            self._initialize_schema()
            logger.debug(f"LocalStoreDB initialization completed successfully for {self.db_path_str}")
        except (LocalStorageError, sqlite3.Error) as e:
            logger.critical(f"FATAL: DB Initialization failed for {self.db_path_str}: {e}")
            self.close_connection()
            raise LocalStorageError(f"Database initialization failed: {e}") from e

    # --- Connection Management ---
    def _get_thread_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, 'conn', None)
        if conn:
            try:
                conn.execute("SELECT 1")
            except (sqlite3.ProgrammingError, sqlite3.OperationalError):
                logger.warning(f"Thread-local connection for {self.db_path_str} became unusable. Reopening.")
                try:
                    conn.close()
                except sqlite3.Error as close_err:
                    logger.debug(f"Ignoring error while closing stale connection: {close_err}")
                conn = None

        if not conn:
            try:
                conn = sqlite3.connect(self.db_path_str, check_same_thread=False, timeout=15)
                conn.row_factory = sqlite3.Row
                if not self.is_memory_db:
                    conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA foreign_keys = ON;")
                self._local.conn = conn
                logger.debug(f"Opened SQLite connection to {self.db_path_str} for thread {threading.get_ident()}")
            except sqlite3.Error as e:
                self._local.conn = None
                raise LocalStorageError(f"Failed to connect to database '{self.db_path_str}': {e}") from e
        return self._local.conn

    def get_connection(self) -> sqlite3.Connection:
        return self._get_thread_connection()

    def close_connection(self):
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            try:
                if conn.in_transaction:
                    logger.warning(f"Connection to {self.db_path_str} closed mid-transaction. Rolling back.")
                    conn.rollback()
                if not self.is_memory_db:
                    conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
                conn.close()
                logger.debug(f"Closed connection for thread {threading.get_ident()} to {self.db_path_str}.")
            except sqlite3.Error as e:
                logger.warning(f"Error during SQLite connection close for {self.db_path_str}: {e}")
            finally:
                self._local.conn = None

    # --- Query Execution ---
    def execute_query(self, query: str, params: Optional[Union[tuple, Dict[str, Any]]] = None, *,
                      commit: bool = False) -> sqlite3.Cursor:
        conn = self.get_connection()
        try:
            cursor = conn.execute(query, params or ())
            if commit and not self._in_managed_transaction():  # the context manager commits its own block
                conn.commit()
            return cursor
        except sqlite3.IntegrityError as e:
            logger.warning(f"Integrity constraint violation: {query[:200]}... Error: {e}")
            if "unique constraint failed" in str(e).lower():
                raise ConflictError(message=f"Unique constraint violation: {e}") from e
            raise LocalStorageError(f"Database constraint violation: {e}") from e
        except sqlite3.Error as e:
            logger.error(f"Query execution failed: {query[:200]}... Error: {e}")
            raise LocalStorageError(f"Query execution failed: {e}") from e

    def _in_managed_transaction(self) -> bool:
        return getattr(self._local, 'tx_depth', 0) > 0

    # --- Transaction Context ---
    def transaction(self) -> 'TransactionContextManager':
        return TransactionContextManager(self)

    # --- Schema Initialization ---
    def _get_db_version(self, conn: sqlite3.Connection) -> int:
        try:
            cursor = conn.execute("SELECT version FROM db_schema_version WHERE schema_name = ? LIMIT 1",
                                  (self._SCHEMA_NAME,))
            result = cursor.fetchone()
            return result['version'] if result else 0
        except sqlite3.Error as e:
            if "no such table" in str(e).lower():
                return 0
            raise SchemaError(f"Could not determine schema version for '{self._SCHEMA_NAME}': {e}") from e

    def _apply_schema_v1(self, conn: sqlite3.Connection):
        logger.info(f"Applying schema V1 for '{self._SCHEMA_NAME}'...")
        try:
            conn.executescript(self._FULL_SCHEMA_SQL_V1)
        except sqlite3.Error as e:
            raise SchemaError(f"DB schema V1 setup failed for '{self._SCHEMA_NAME}': {e}") from e

    def _migrate_schema_v1_to_v2(self, conn: sqlite3.Connection):
        logger.info(f"Migrating '{self._SCHEMA_NAME}' from V1 to V2...")
        try:
            conn.executescript(self._MIGRATE_SQL_V1_TO_V2)
        except sqlite3.Error as e:
            raise SchemaError(f"DB schema V1->V2 migration failed for '{self._SCHEMA_NAME}': {e}") from e

    def _initialize_schema(self):
        conn = self.get_connection()
        current_version = self._get_db_version(conn)
        target_version = self._CURRENT_SCHEMA_VERSION
        logger.info(f"Checking DB schema '{self._SCHEMA_NAME}'. Current version: {current_version}. "
                    f"Code supports: {target_version}")
        if current_version == target_version:
            return
        if current_version > target_version:
            raise SchemaError(f"Database schema '{self._SCHEMA_NAME}' version ({current_version}) is newer "
                              f"than supported by code ({target_version}). Aborting.")
        if current_version == 0:
            self._apply_schema_v1(conn)
            current_version = self._get_db_version(conn)
        if current_version == 1:
            self._migrate_schema_v1_to_v2(conn)
        final_version = self._get_db_version(conn)
        if final_version != target_version:
            raise SchemaError(f"Schema version update check failed. Expected {target_version}, got: {final_version}")
        logger.info(f"Database schema '{self._SCHEMA_NAME}' initialized to version {final_version}.")

    # --- Internal Helpers ---
    @staticmethod
    def _table_config(entity_type) -> Dict[str, Any]:
        key = entity_key(entity_type)
        config = ENTITY_TABLES.get(key)
        if config is None:
            raise InputError(f"Unknown entity type: {key}")
        return config

    @staticmethod
    def _normalize_ts(value: Any) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, datetime):
            return format_timestamp(value)
        parsed = parse_timestamp(value)
        return format_timestamp(parsed) if parsed else str(value)

    def _row_to_dict(self, row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
        if not row:
            return None
        item = dict(row)
        try:
            item['data'] = json.loads(item['data'])
        except (json.JSONDecodeError, TypeError) as e:
            raise LocalStorageError(f"Corrupt JSON document for row {item.get('id')}: {e}") from e
        item['is_synced'] = bool(item['is_synced'])
        item['locally_deleted'] = bool(item['locally_deleted'])
        return item

    def _column_values(self, config: Dict[str, Any], record: Dict[str, Any]) -> Dict[str, Any]:
        for required in ('id', 'account_id', 'created_at', 'updated_at'):
            if not record.get(required):
                raise InputError(f"Required field '{required}' is missing or empty.")
        values = {
            'id': str(record['id']),
            'account_id': str(record['account_id']),
            'data': json.dumps(record, default=str),
            'created_at': self._normalize_ts(record['created_at']),
            'updated_at': self._normalize_ts(record['updated_at']),
        }
        for col, kind in config['columns'].items():
            value = record.get(col)
            if value is None:
                raise InputError(f"Required field '{col}' is missing or empty.")
            values[col] = self._normalize_ts(value) if kind == 'timestamp' else str(value)
        return values

    def _allowed_columns(self, config: Dict[str, Any]) -> Tuple[str, ...]:
        return _SYNC_COLUMNS + tuple(config['columns'].keys())

    # --- Typed Queries ---
    def fetch_where(self, entity_type, account_id: Optional[str] = None, *, include_deleted: bool = False,
                    filters: Optional[Dict[str, Any]] = None, order_by: Optional[str] = None,
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Rows of one entity table matching the given predicate.

        Args:
            entity_type: Entity type name (or EntityType).
            account_id: Restrict to one account when given.
            include_deleted: Include tombstoned rows.
            filters: Equality filters on sync or promoted columns.
            order_by: Column to order by (suffix ' DESC' allowed). Defaults to insertion order.
            limit: Optional row limit.

        Returns:
            List of row dicts with the entity document under 'data'.
        """
        config = self._table_config(entity_type)
        allowed = self._allowed_columns(config)
        clauses: List[str] = []
        params: List[Any] = []
        if account_id is not None:
            clauses.append("account_id = ?")
            params.append(str(account_id))
        if not include_deleted:
            clauses.append("locally_deleted = 0")
        for col, value in (filters or {}).items():
            if col not in allowed:
                raise InputError(f"Cannot filter {config['table']} on unknown column '{col}'")
            if isinstance(value, bool):
                value = int(value)
            elif config['columns'].get(col) == 'timestamp':
                value = self._normalize_ts(value)
            clauses.append(f"{col} = ?")
            params.append(value)

        order_sql = "rowid"
        if order_by:
            col, _, direction = order_by.partition(" ")
            if col not in allowed or direction.upper() not in ("", "ASC", "DESC"):
                raise InputError(f"Cannot order {config['table']} by '{order_by}'")
            order_sql = f"{col} {direction.upper()}".strip() + ", rowid"

        query = f"SELECT * FROM {config['table']}"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += f" ORDER BY {order_sql}"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        cursor = self.execute_query(query, tuple(params))
        return [self._row_to_dict(row) for row in cursor.fetchall()]

    def fetch_by_id(self, entity_type, entity_id: str, *, include_deleted: bool = False) -> Optional[Dict[str, Any]]:
        config = self._table_config(entity_type)
        query = f"SELECT * FROM {config['table']} WHERE id = ?"
        if not include_deleted:
            query += " AND locally_deleted = 0"
        cursor = self.execute_query(query, (str(entity_id),))
        return self._row_to_dict(cursor.fetchone())

    def fetch_unsynced(self, entity_type, account_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Rows with local edits the server has not acknowledged, tombstones included."""
        return self.fetch_where(entity_type, account_id, include_deleted=True, filters={"is_synced": False})

    def fetch_tombstones(self, entity_type, account_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.fetch_where(entity_type, account_id, include_deleted=True, filters={"locally_deleted": True})

    def count(self, entity_type, account_id: Optional[str] = None, *, include_deleted: bool = False) -> int:
        config = self._table_config(entity_type)
        query = f"SELECT COUNT(*) AS n FROM {config['table']} WHERE 1 = 1"
        params: List[Any] = []
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(str(account_id))
        if not include_deleted:
            query += " AND locally_deleted = 0"
        return self.execute_query(query, tuple(params)).fetchone()['n']

    # --- Writes ---
    def insert(self, entity_type, record: Dict[str, Any], *, is_synced: bool = False,
               synced_at: Optional[str] = None) -> Dict[str, Any]:
        config = self._table_config(entity_type)
        values = self._column_values(config, record)
        values['is_synced'] = int(is_synced)
        values['locally_deleted'] = 0
        values['last_synced_at'] = synced_at if is_synced else None
        cols = ", ".join(values.keys())
        placeholders = ", ".join(f":{c}" for c in values.keys())
        try:
            with self.transaction():
                self.execute_query(f"INSERT INTO {config['table']} ({cols}) VALUES ({placeholders})", values)
        except ConflictError as e:
            raise ConflictError(f"{config['table']} row already exists or violates a unique key: {e}",
                                entity=config['table'], entity_id=values['id']) from e
        logger.debug(f"Inserted {config['table']} row {values['id']} (synced={is_synced})")
        return self.fetch_by_id(entity_type, values['id'], include_deleted=True)

    def update(self, entity_type, record: Dict[str, Any], *, is_synced: bool = False,
               synced_at: Optional[str] = None, clear_tombstone: bool = False) -> Dict[str, Any]:
        """Overwrite an existing row's document. Raises RecordNotFoundError if the row is missing."""
        config = self._table_config(entity_type)
        values = self._column_values(config, record)
        values['is_synced'] = int(is_synced)
        set_cols = [c for c in values.keys() if c != 'id']
        set_sql = ", ".join(f"{c} = :{c}" for c in set_cols)
        if is_synced:
            set_sql += ", last_synced_at = :last_synced_at"
            values['last_synced_at'] = synced_at or format_timestamp(utc_now())
        if clear_tombstone:
            set_sql += ", locally_deleted = 0"
        with self.transaction():
            cursor = self.execute_query(f"UPDATE {config['table']} SET {set_sql} WHERE id = :id", values)
            if cursor.rowcount == 0:
                raise RecordNotFoundError(f"Record not found in {config['table']}.",
                                          entity=config['table'], entity_id=values['id'])
        logger.debug(f"Updated {config['table']} row {values['id']} (synced={is_synced})")
        return self.fetch_by_id(entity_type, values['id'], include_deleted=True)

    def soft_delete(self, entity_type, entity_id: str, *, deleted_at: Optional[str] = None) -> bool:
        """Tombstone a row. Already tombstoned counts as success (idempotent)."""
        config = self._table_config(entity_type)
        now = deleted_at or format_timestamp(utc_now())
        with self.transaction():
            row = self.execute_query(f"SELECT locally_deleted FROM {config['table']} WHERE id = ?",
                                     (str(entity_id),)).fetchone()
            if row is None:
                raise RecordNotFoundError(f"Record not found in {config['table']}.",
                                          entity=config['table'], entity_id=entity_id)
            if row['locally_deleted']:
                logger.info(f"{config['table']} row {entity_id} already soft-deleted. Success (idempotent).")
                return True
            self.execute_query(
                f"UPDATE {config['table']} SET locally_deleted = 1, is_synced = 0, updated_at = ? WHERE id = ?",
                (now, str(entity_id)))
        logger.debug(f"Soft-deleted {config['table']} row {entity_id}")
        return True

    def purge(self, entity_type, entity_id: str) -> bool:
        """Physically remove a row. Returns False if there was nothing to remove."""
        config = self._table_config(entity_type)
        with self.transaction():
            cursor = self.execute_query(f"DELETE FROM {config['table']} WHERE id = ?", (str(entity_id),))
        removed = cursor.rowcount > 0
        if removed:
            logger.debug(f"Purged {config['table']} row {entity_id}")
        return removed

    def upsert_remote(self, entity_type, record: Dict[str, Any], *, synced_at: Optional[str] = None) -> bool:
        """
        Store a server-confirmed version of a row, replacing any local state.

        Returns True when the row was inserted, False when an existing row was
        overwritten. The row ends up synced and not tombstoned.
        """
        synced_at = synced_at or format_timestamp(utc_now())
        existing = self.fetch_by_id(entity_type, record['id'], include_deleted=True)
        if existing is None:
            self.insert(entity_type, record, is_synced=True, synced_at=synced_at)
            return True
        self.update(entity_type, record, is_synced=True, synced_at=synced_at, clear_tombstone=True)
        return False

    def mark_synced(self, entity_type, entity_id: str, synced_at: Optional[str] = None) -> bool:
        config = self._table_config(entity_type)
        synced_at = synced_at or format_timestamp(utc_now())
        with self.transaction():
            cursor = self.execute_query(
                f"UPDATE {config['table']} SET is_synced = 1, last_synced_at = ? WHERE id = ?",
                (synced_at, str(entity_id)))
        return cursor.rowcount > 0

    def rekey(self, entity_type, old_id: str, new_id: str) -> None:
        """Move a row (and its queued outbox changes) to a new id, e.g. the server's id for the same record."""
        config = self._table_config(entity_type)
        with self.transaction():
            row = self.execute_query(f"SELECT data FROM {config['table']} WHERE id = ?", (str(old_id),)).fetchone()
            if row is None:
                raise RecordNotFoundError(f"Record not found in {config['table']}.",
                                          entity=config['table'], entity_id=old_id)
            data = json.loads(row['data'])
            data['id'] = str(new_id)
            self.execute_query(f"UPDATE {config['table']} SET id = ?, data = ? WHERE id = ?",
                               (str(new_id), json.dumps(data, default=str), str(old_id)))
            self.execute_query("UPDATE pending_changes SET entity_id = ? WHERE entity_type = ? AND entity_id = ?",
                               (str(new_id), entity_key(entity_type), str(old_id)))
        logger.info(f"Re-keyed {config['table']} row {old_id} -> {new_id}")

    # --- Membership ---
    def member_role(self, account_id: str, user_id: str) -> Optional[str]:
        """Role of user_id in account_id, or None when either row is missing/tombstoned."""
        cursor = self.execute_query(
            """
            SELECT m.role FROM account_members m
            JOIN accounts a ON a.id = m.account_id
            WHERE m.account_id = ? AND m.user_id = ? AND m.locally_deleted = 0 AND a.locally_deleted = 0
            """, (str(account_id), str(user_id)))
        row = cursor.fetchone()
        return row['role'] if row else None

    def is_account_visible(self, account_id: str, user_id: str) -> bool:
        return self.member_role(account_id, user_id) is not None

    # --- Outbox ---
    def enqueue_change(self, entity_type, entity_id: str, account_id: str, operation: str,
                       payload: Optional[Dict[str, Any]] = None) -> int:
        cursor = self.execute_query(
            """
            INSERT INTO pending_changes (entity_type, entity_id, account_id, operation, payload, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (entity_key(entity_type), str(entity_id), str(account_id), operation,
             json.dumps(payload, default=str) if payload is not None else None, format_timestamp(utc_now())),
            commit=True)
        return cursor.lastrowid

    def pending_changes(self, account_id: Optional[str] = None, *, entity_type=None,
                        entity_id: Optional[str] = None) -> List[sqlite3.Row]:
        """Outbox rows, oldest first."""
        query = "SELECT * FROM pending_changes WHERE 1 = 1"
        params: List[Any] = []
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(str(account_id))
        if entity_type is not None:
            query += " AND entity_type = ?"
            params.append(entity_key(entity_type))
        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(str(entity_id))
        query += " ORDER BY change_id ASC"
        return self.execute_query(query, tuple(params)).fetchall()

    def has_pending_changes(self, entity_type, entity_id: str, *, after_change_id: int = 0) -> bool:
        cursor = self.execute_query(
            "SELECT 1 FROM pending_changes WHERE entity_type = ? AND entity_id = ? AND change_id > ? LIMIT 1",
            (entity_key(entity_type), str(entity_id), after_change_id))
        return cursor.fetchone() is not None

    def update_change(self, change_id: int, *, operation: Optional[str] = None,
                      payload: Optional[Dict[str, Any]] = None) -> None:
        sets, params = [], []
        if operation is not None:
            sets.append("operation = ?")
            params.append(operation)
        if payload is not None:
            sets.append("payload = ?")
            params.append(json.dumps(payload, default=str))
        if not sets:
            return
        params.append(change_id)
        self.execute_query(f"UPDATE pending_changes SET {', '.join(sets)} WHERE change_id = ?", tuple(params),
                           commit=True)

    def remove_change(self, change_id: int) -> None:
        self.execute_query("DELETE FROM pending_changes WHERE change_id = ?", (change_id,), commit=True)

    def drop_changes_for(self, entity_type, entity_id: str) -> int:
        cursor = self.execute_query("DELETE FROM pending_changes WHERE entity_type = ? AND entity_id = ?",
                                    (entity_key(entity_type), str(entity_id)), commit=True)
        return cursor.rowcount

    def record_change_failure(self, change_id: int, error: str) -> None:
        self.execute_query(
            """
            UPDATE pending_changes
            SET retry_count = retry_count + 1, last_error = ?, last_attempt_at = ?
            WHERE change_id = ?
            """, (error[:1000], format_timestamp(utc_now()), change_id), commit=True)

    # --- Sync Metadata ---
    def get_sync_metadata(self, account_id: str, entity_type) -> Optional[Dict[str, Any]]:
        row = self.execute_query("SELECT * FROM sync_metadata WHERE account_id = ? AND entity_type = ?",
                                 (str(account_id), entity_key(entity_type))).fetchone()
        return dict(row) if row else None

    def list_sync_metadata(self, account_id: str) -> List[Dict[str, Any]]:
        cursor = self.execute_query("SELECT * FROM sync_metadata WHERE account_id = ? ORDER BY entity_type",
                                    (str(account_id),))
        return [dict(r) for r in cursor.fetchall()]

    def set_sync_metadata(self, account_id: str, entity_type, *, last_server_timestamp: Optional[str] = None,
                          last_synced_at: Optional[str] = None) -> None:
        """Upsert one cursor row. None leaves the stored column unchanged."""
        self.execute_query(
            """
            INSERT INTO sync_metadata (account_id, entity_type, last_server_timestamp, last_synced_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(account_id, entity_type) DO UPDATE SET
                last_server_timestamp = COALESCE(excluded.last_server_timestamp, last_server_timestamp),
                last_synced_at = COALESCE(excluded.last_synced_at, last_synced_at)
            """, (str(account_id), entity_key(entity_type), last_server_timestamp, last_synced_at), commit=True)


class TransactionContextManager:
    """Commits or rolls back only the outermost `with db.transaction():` block on this thread."""

    def __init__(self, db_instance: LocalStoreDB):
        self.db = db_instance
        self.conn: Optional[sqlite3.Connection] = None
        self.is_outermost_transaction = False

    def __enter__(self) -> sqlite3.Connection:
        self.conn = self.db.get_connection()
        depth = getattr(self.db._local, 'tx_depth', 0)
        if depth == 0:
            if self.conn.in_transaction:
                # finish whatever the sqlite3 module opened implicitly
                self.conn.commit()
            self.conn.execute("BEGIN")
            self.is_outermost_transaction = True
            logger.debug(f"Transaction started (outermost) on thread {threading.get_ident()}.")
        self.db._local.tx_depth = depth + 1
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.db._local.tx_depth = max(getattr(self.db._local, 'tx_depth', 1) - 1, 0)
        if not self.is_outermost_transaction:
            return False

        if exc_type:
            logger.debug(f"Transaction failed, rolling back on thread {threading.get_ident()}: "
                         f"{exc_type.__name__} - {exc_val}")
            try:
                self.conn.rollback()
            except sqlite3.Error as rb_err:
                logger.critical(f"Rollback FAILED on thread {threading.get_ident()}: {rb_err}")
            return False

        try:
            self.conn.commit()
        except sqlite3.Error as commit_err:
            logger.error(f"Commit FAILED on thread {threading.get_ident()}, attempting rollback: {commit_err}")
            try:
                self.conn.rollback()
            except sqlite3.Error as rb_err:
                logger.critical(f"Rollback after failed commit also FAILED: {rb_err}")
            raise LocalStorageError(f"Commit failed: {commit_err}") from commit_err
        return False

#
# End of Local_Store_DB.py
#######################################################################################################################
