# realtime_sync.py
# Listens to server-pushed row changes for the active account and feeds them into the sync engine's merge path.
#
# Imports
import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence
#
# Third-Party Libraries
import httpx
from loguru import logger
#
# Local Imports
from unforgotten_sync.app.core.DB_Management.Local_Store_DB import ENTITY_TABLES, InputError, LocalStorageError
from unforgotten_sync.app.core.Sync.core import SyncEngine
from unforgotten_sync.app.core.Sync.exceptions import DecodeError, NetworkError, RemoteError, TransportError
from unforgotten_sync.app.core.Sync.models import ChangeKind, EntityType, MergeOutcome
from unforgotten_sync.app.core.Utils.Utils import entity_key
#
#######################################################################################################################
#
# Functions:

DEFAULT_REALTIME_ENTITIES = (
    EntityType.APPOINTMENT.value,
    EntityType.STICKY_REMINDER.value,
    EntityType.COUNTDOWN.value,
    EntityType.PROFILE.value,
)

_TABLE_TO_ENTITY = {config['table']: key for key, config in ENTITY_TABLES.items()}


def entity_for_table(table: Optional[str]) -> Optional[str]:
    if not table:
        return None
    if table in ENTITY_TABLES:
        return table
    return _TABLE_TO_ENTITY.get(table)


class RealtimeEventType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class RealtimeEvent:
    entity_type: str
    type: RealtimeEventType
    record: Dict[str, Any] = field(default_factory=dict)
    old_record: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'RealtimeEvent':
        if not isinstance(raw, dict):
            raise DecodeError(f"Change event must be an object, got {type(raw).__name__}")
        entity_type = entity_for_table(raw.get('table'))
        if entity_type is None:
            raise DecodeError(f"Change event for unknown table {raw.get('table')!r}", raw=raw)
        try:
            event_type = RealtimeEventType(str(raw.get('type') or raw.get('eventType') or '').upper())
        except ValueError:
            raise DecodeError(f"Unknown change event type {raw.get('type')!r}", entity_type=entity_type,
                              raw=raw) from None
        record = raw.get('record') or {}
        old_record = raw.get('old_record') or {}
        if not isinstance(record, dict) or not isinstance(old_record, dict):
            raise DecodeError("Change event record must be an object", entity_type=entity_type, raw=raw)
        return cls(entity_type=entity_type, type=event_type, record=record, old_record=old_record)

    @property
    def entity_id(self) -> Optional[str]:
        value = (self.old_record if self.type == RealtimeEventType.DELETE else self.record).get('id')
        if value is None:
            value = self.record.get('id') or self.old_record.get('id')
        return str(value) if value is not None else None


class ChangeFeed(ABC):
    """Source of raw row change events for one account."""

    @abstractmethod
    def stream(self, account_id: str, entity_types: Sequence[str]) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield raw change events until the connection ends.

        Raises:
            TransportError: If the connection fails or breaks.
        """
        pass

    async def aclose(self):
        pass


class HttpChangeFeed(ChangeFeed):
    """Reads newline-delimited JSON change events from a long-lived HTTP response."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, access_token: Optional[str] = None,
                 stream_path: str = "realtime/v1/changes", client: Optional[httpx.AsyncClient] = None):
        if not base_url.endswith('/'):
            base_url += '/'
        self.base_url = base_url
        self.stream_path = stream_path.strip('/')
        self.api_key = api_key
        self.access_token = access_token
        self._client = client
        self._owns_client = client is None

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/x-ndjson"}
        if self.api_key:
            headers["apikey"] = self.api_key
        token = self.access_token or self.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            # no read timeout: the server holds the response open between events
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None))
        return self._client

    async def stream(self, account_id: str, entity_types: Sequence[str]) -> AsyncIterator[Dict[str, Any]]:
        tables = ",".join(ENTITY_TABLES[entity_key(t)]['table'] for t in entity_types)
        params = {"account_id": account_id, "tables": tables}
        url = f"{self.base_url}{self.stream_path}"
        logger.debug(f"Opening change feed {url} with params: {params}")
        try:
            async with self.client.stream("GET", url, params=params, headers=self._get_headers()) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line:
                        continue  # keep-alive
                    try:
                        yield json.loads(line)
                    except json.JSONDecodeError as e:
                        logger.warning(f"Dropping malformed change feed line: {e}")
        except httpx.HTTPStatusError as e:
            raise RemoteError(f"Change feed rejected with HTTP {e.response.status_code}",
                              status_code=e.response.status_code) from e
        except httpx.RequestError as e:
            raise NetworkError(f"Change feed connection failed: {e}") from e

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class RealtimeSyncService:
    """
    One change feed subscription for the active account.

    start_listening() is idempotent for the same account and replaces the
    subscription for a different one. The listener reconnects after
    reconnect_delay seconds whenever the feed ends or fails, until stopped.
    Merged rows reach the rest of the app (sticky reminder notifications
    included) through the engine's change notifier.
    """

    def __init__(self, engine: SyncEngine, feed: ChangeFeed, entity_types: Sequence = DEFAULT_REALTIME_ENTITIES,
                 reconnect_delay: float = 5.0):
        self.engine = engine
        self.feed = feed
        self.entity_types: List[str] = [entity_key(t) for t in entity_types]
        self.reconnect_delay = reconnect_delay
        self.current_account_id: Optional[str] = None
        self.events_handled = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def is_listening(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start_listening(self, account_id: str):
        if self.current_account_id == account_id and self.is_listening:
            return
        await self.stop_listening()
        self.current_account_id = account_id
        self._task = asyncio.create_task(self._listen(account_id), name=f"realtime-{account_id}")
        logger.info(f"Realtime: started listening for account {account_id}")

    async def stop_listening(self):
        task, self._task = self._task, None
        account_id, self.current_account_id = self.current_account_id, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"Realtime: stopped listening for account {account_id}")

    async def _listen(self, account_id: str):
        while True:
            try:
                async for raw in self.feed.stream(account_id, self.entity_types):
                    try:
                        self.handle_event(raw, account_id)
                    except (LocalStorageError, InputError) as e:
                        logger.error(f"Realtime: local store rejected change event: {e}")
                        table = raw.get('table') if isinstance(raw, dict) else None
                        self._publish_refresh(entity_for_table(table), account_id, None)
                logger.info("Realtime: change feed closed by server")
            except TransportError as e:
                logger.error(f"Realtime: change feed failed: {e}")
            except Exception as e:
                logger.exception(f"Realtime: listener for account {account_id} crashed, reconnecting: {e}")
            await asyncio.sleep(self.reconnect_delay)

    def _publish_refresh(self, entity_type: Optional[str], account_id: Optional[str], entity_id: Optional[str]):
        self.engine.notifier.emit(entity_type or "*", account_id, entity_id, ChangeKind.REFRESH)

    def handle_event(self, raw: Dict[str, Any], account_id: Optional[str] = None) -> Optional[MergeOutcome]:
        """Merge one raw change event. Undecodable events become a REFRESH notification."""
        account_id = account_id or self.current_account_id
        try:
            event = RealtimeEvent.from_dict(raw)
        except DecodeError as e:
            logger.warning(f"Realtime: could not decode change event, requesting refresh: {e}")
            table = raw.get('table') if isinstance(raw, dict) else None
            self._publish_refresh(entity_for_table(table), account_id, None)
            return None

        if event.entity_type not in self.entity_types:
            logger.debug(f"Realtime: ignoring {event.entity_type} change, not subscribed")
            return None
        self.events_handled += 1

        if event.type == RealtimeEventType.DELETE:
            entity_id = event.entity_id
            if entity_id is None:
                self._publish_refresh(event.entity_type, account_id, None)
                return None
            return self.engine.merge_remote_delete(event.entity_type, entity_id)

        record_account = event.record.get('account_id')
        if account_id and record_account and str(record_account) != account_id:
            logger.debug(f"Realtime: ignoring {event.entity_type} change for other account {record_account}")
            return None
        try:
            outcome = self.engine.merge_remote_record(event.entity_type, event.record)
        except DecodeError as e:
            logger.warning(f"Realtime: {event.entity_type} record did not decode, requesting refresh: {e}")
            self._publish_refresh(event.entity_type, account_id, event.entity_id)
            return None
        return outcome

#
# End of realtime_sync.py
#######################################################################################################################
