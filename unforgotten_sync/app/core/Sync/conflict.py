# Sync/conflict.py
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from loguru import logger

from unforgotten_sync.app.core.Utils.Utils import entity_key, parse_timestamp


class Resolution(str, Enum):
    APPLY_REMOTE = "apply_remote"
    KEEP_LOCAL = "keep_local"


# Fields where the device that edited them last stays authoritative while its edit is unconfirmed.
CLIENT_AUTHORITATIVE_FIELDS: Dict[str, tuple] = {
    "user_preferences": ("feature_order", "feature_visibility"),
}

# Fields only the server may change.
SERVER_AUTHORITATIVE_FIELDS: Dict[str, tuple] = {
    "account": ("owner_user_id",),
    "account_member": ("role",),
}

_EPOCH = datetime.fromtimestamp(0, timezone.utc)


class ConflictResolver(ABC):
    """Abstract base class for conflict resolution strategies."""

    @abstractmethod
    def resolve(self, entity_type, local_row: Optional[Dict[str, Any]], remote_record: Dict[str, Any],
                has_pending: bool) -> Resolution:
        """
        Determines the outcome when a remote record arrives for a row that may exist locally.

        Args:
            entity_type: Entity type of the row.
            local_row: Current local row (as returned by LocalStoreDB.fetch_by_id with
                include_deleted=True), or None if it doesn't exist locally.
            remote_record: The incoming server record.
            has_pending: Whether the outbox still holds unconfirmed changes for this id.

        Returns:
            Resolution.APPLY_REMOTE: Replace the local row with the remote record.
            Resolution.KEEP_LOCAL: Keep the local version and its pending upload.
        """
        pass

    def merge_fields(self, entity_type, local_data: Dict[str, Any], remote_record: Dict[str, Any],
                     resolution: Resolution) -> Dict[str, Any]:
        """The document to store once `resolution` is decided. Whole-record by default."""
        return dict(remote_record) if resolution == Resolution.APPLY_REMOTE else dict(local_data)


class LastWriteWinsStrategy(ConflictResolver):
    """Resolves conflicts by updated_at. Equal timestamps go to the remote version."""

    def resolve(self, entity_type, local_row: Optional[Dict[str, Any]], remote_record: Dict[str, Any],
                has_pending: bool) -> Resolution:
        entity_id = remote_record.get('id')

        if local_row is None:
            logger.debug(f"Conflict resolution ({entity_key(entity_type)} {entity_id}): Local nonexistent. "
                         f"Outcome: Apply Remote.")
            return Resolution.APPLY_REMOTE

        if local_row.get('is_synced') and not has_pending:
            logger.debug(f"Conflict resolution ({entity_key(entity_type)} {entity_id}): Local synced. "
                         f"Outcome: Apply Remote.")
            return Resolution.APPLY_REMOTE

        remote_ts = parse_timestamp(remote_record.get('updated_at') or remote_record.get('created_at')) or _EPOCH
        local_ts = parse_timestamp(local_row.get('updated_at')) or _EPOCH
        local_deleted = bool(local_row.get('locally_deleted'))

        logger.debug(f"Conflict check ({entity_key(entity_type)} {entity_id}): Remote TS={remote_ts}, "
                     f"Local TS={local_ts}, Local Deleted={local_deleted}, Pending={has_pending}")

        if local_ts > remote_ts:
            logger.debug(f"Conflict resolution ({entity_key(entity_type)} {entity_id}): Local TS > Remote TS. "
                         f"Outcome: Keep Local.")
            return Resolution.KEEP_LOCAL
        if local_ts == remote_ts:
            logger.debug(f"Conflict resolution ({entity_key(entity_type)} {entity_id}): Timestamps equal. "
                         f"Outcome: Apply Remote.")
        else:
            logger.debug(f"Conflict resolution ({entity_key(entity_type)} {entity_id}): Remote TS > Local TS. "
                         f"Outcome: Apply Remote.")
        return Resolution.APPLY_REMOTE

    def merge_fields(self, entity_type, local_data: Dict[str, Any], remote_record: Dict[str, Any],
                     resolution: Resolution) -> Dict[str, Any]:
        key = entity_key(entity_type)
        if resolution == Resolution.APPLY_REMOTE:
            merged = dict(remote_record)
            # the remote won, but a pending local edit still owns these
            for field_name in CLIENT_AUTHORITATIVE_FIELDS.get(key, ()):
                if field_name in local_data:
                    merged[field_name] = local_data[field_name]
        else:
            merged = dict(local_data)
        for field_name in SERVER_AUTHORITATIVE_FIELDS.get(key, ()):
            if field_name in remote_record:
                merged[field_name] = remote_record[field_name]
        return merged

#
# End of Sync/conflict.py
