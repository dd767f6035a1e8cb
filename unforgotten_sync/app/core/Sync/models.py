# Sync/models.py
# Description: Sync bookkeeping types: entity types, outbox rows, sync results.
#
# Imports
import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union
#
# Third-Party Libraries
from loguru import logger
#
# Local Imports
from unforgotten_sync.app.core.Utils.Utils import format_timestamp, utc_now
#
########################################################################################################################
#
# Functions:

class EntityType(str, Enum):
    ACCOUNT = "account"
    ACCOUNT_MEMBER = "account_member"
    PROFILE = "profile"
    PROFILE_DETAIL = "profile_detail"
    PROFILE_CONNECTION = "profile_connection"
    IMPORTANT_ACCOUNT = "important_account"
    MEDICATION = "medication"
    MEDICATION_SCHEDULE = "medication_schedule"
    MEDICATION_LOG = "medication_log"
    APPOINTMENT = "appointment"
    USEFUL_CONTACT = "useful_contact"
    MOOD_ENTRY = "mood_entry"
    TODO_LIST = "todo_list"
    TODO_ITEM = "todo_item"
    STICKY_REMINDER = "sticky_reminder"
    COUNTDOWN = "countdown"
    PLANNED_MEAL = "planned_meal"
    RECIPE = "recipe"
    USER_PREFERENCES = "user_preferences"


class ChangeOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ChangeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    REFRESH = "refresh"  # something changed, details unknown


class MergeOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    DELETED = "deleted"
    KEPT_LOCAL = "kept_local"
    IGNORED = "ignored"


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"


# --- Outbox ---

@dataclass
class PendingChange:
    change_id: int
    entity_type: str
    entity_id: str
    account_id: str
    operation: ChangeOperation
    created_at: str
    payload: Optional[Dict[str, Any]] = field(default=None, repr=False)
    retry_count: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Union[sqlite3.Row, Dict[str, Any]]) -> 'PendingChange':
        payload = row['payload']
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError:
                logger.error(f"Failed to decode outbox payload for change_id {row['change_id']}")
                payload = None
        return cls(
            change_id=row['change_id'],
            entity_type=row['entity_type'],
            entity_id=row['entity_id'],
            account_id=row['account_id'],
            operation=ChangeOperation(row['operation']),
            created_at=row['created_at'],
            payload=payload,
            retry_count=row['retry_count'] or 0,
            last_error=row['last_error'],
            last_attempt_at=row['last_attempt_at'],
        )

    def exceeded(self, max_retries: int) -> bool:
        return self.retry_count >= max_retries


# --- Results ---

@dataclass
class PushReport:
    pushed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class SyncResult:
    account_id: str
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    pulled: Dict[str, int] = field(default_factory=dict)
    pushed: int = 0
    logs_generated: int = 0
    errors: List[str] = field(default_factory=list)
    skipped: bool = False
    offline: bool = False

    @property
    def success(self) -> bool:
        return not self.errors and not self.offline

    @property
    def changes_count(self) -> int:
        return sum(self.pulled.values()) + self.pushed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "started_at": format_timestamp(self.started_at),
            "finished_at": format_timestamp(self.finished_at),
            "pulled": dict(self.pulled),
            "pushed": self.pushed,
            "logs_generated": self.logs_generated,
            "errors": list(self.errors),
            "skipped": self.skipped,
            "offline": self.offline,
            "success": self.success,
        }

#
# End of Sync/models.py
########################################################################################################################
