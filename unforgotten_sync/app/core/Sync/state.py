# Sync/state.py
from datetime import datetime, timezone
from typing import Dict, Optional

from loguru import logger

from unforgotten_sync.app.core.DB_Management.Local_Store_DB import LocalStorageError, LocalStoreDB
from unforgotten_sync.app.core.Utils.Utils import entity_key, format_timestamp, parse_timestamp, utc_now

from .exceptions import StateError


class SyncStateManager:
    """Manages persistent per-(account, entity type) pull cursors in the local store's sync_metadata table."""

    def __init__(self, db: LocalStoreDB):
        self.db = db
        logger.info(f"Sync state manager initialized on {db.db_path_str}")

    def get_cursor(self, account_id: str, entity_type) -> Optional[datetime]:
        """
        Gets the latest server updated_at already merged for this account and entity type.

        Returns:
            Optional[datetime]: The cursor in UTC, or None if the type was never pulled.
        """
        try:
            row = self.db.get_sync_metadata(account_id, entity_type)
        except LocalStorageError as e:
            logger.error(f"Error loading sync cursor for {account_id}/{entity_key(entity_type)}: {e}")
            raise StateError(f"Failed to load sync cursor: {e}") from e
        if not row or not row.get('last_server_timestamp'):
            return None
        return parse_timestamp(row['last_server_timestamp'])

    def get_cursors(self, account_id: str) -> Dict[str, Optional[datetime]]:
        try:
            rows = self.db.list_sync_metadata(account_id)
        except LocalStorageError as e:
            raise StateError(f"Failed to load sync cursors: {e}") from e
        return {row['entity_type']: parse_timestamp(row['last_server_timestamp']) for row in rows}

    def update_cursor(self, account_id: str, entity_type, timestamp: Optional[datetime]):
        """Moves the cursor forward. None or an older timestamp only refreshes last_synced_at."""
        current = self.get_cursor(account_id, entity_type)
        new_value = None
        if timestamp is not None:
            if timestamp.tzinfo is None:
                logger.warning(f"Received naive cursor timestamp {timestamp}, assuming UTC.")
                timestamp = timestamp.replace(tzinfo=timezone.utc)
            if current is None or timestamp > current:
                new_value = format_timestamp(timestamp)
            elif timestamp < current:
                logger.warning(f"Attempted to move cursor for {account_id}/{entity_key(entity_type)} back from "
                               f"{current} to {timestamp}. Ignoring.")
        try:
            self.db.set_sync_metadata(account_id, entity_type, last_server_timestamp=new_value,
                                      last_synced_at=format_timestamp(utc_now()))
        except LocalStorageError as e:
            logger.error(f"Error saving sync cursor for {account_id}/{entity_key(entity_type)}: {e}")
            raise StateError(f"Failed to save sync cursor: {e}") from e
        if new_value:
            logger.debug(f"Updated cursor {account_id}/{entity_key(entity_type)} to {new_value}")

    def last_synced_at(self, account_id: str) -> Optional[datetime]:
        """Most recent completed pull across every entity type of the account."""
        try:
            rows = self.db.list_sync_metadata(account_id)
        except LocalStorageError as e:
            raise StateError(f"Failed to load sync cursors: {e}") from e
        stamps = [parse_timestamp(r['last_synced_at']) for r in rows if r.get('last_synced_at')]
        return max(stamps) if stamps else None
