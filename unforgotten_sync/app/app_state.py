# app_state.py
# Description: Composition root. Builds every sync component once, passes references explicitly, and triggers
#              sync on account switch and app-foreground.
#
# Imports
from typing import Dict, Optional
#
# Third-Party Libraries
from loguru import logger
#
# Local Imports
from unforgotten_sync.app.core.config import UnforgottenConfig
from unforgotten_sync.app.core.DB_Management.Local_Store_DB import LocalStoreDB
from unforgotten_sync.app.core.Notifications.reminder_scheduler import (InMemoryNotificationScheduler,
                                                                        NotificationScheduler, StickyReminderNotifier)
from unforgotten_sync.app.core.Realtime.realtime_sync import ChangeFeed, HttpChangeFeed, RealtimeSyncService
from unforgotten_sync.app.core.Repositories.cached_repository import (AccountRepository, CachedRepository,
                                                                      MedicationRepository, ProfileRepository,
                                                                      StickyReminderRepository)
from unforgotten_sync.app.core.Sync.connectivity import NetworkMonitor
from unforgotten_sync.app.core.Sync.core import SyncEngine
from unforgotten_sync.app.core.Sync.models import EntityType, SyncResult
from unforgotten_sync.app.core.Sync.notifier import ChangeNotifier
from unforgotten_sync.app.core.Sync.outbox import OutboxWorker
from unforgotten_sync.app.core.Sync.transport import HttpRemoteClient, RemoteClient
from unforgotten_sync.app.core.Utils.Utils import entity_key
#
########################################################################################################################
#
# Functions:


class AppState:
    """
    Owns the local store, remote client, engine, outbox worker, realtime
    listener and one repository per entity type.

    Must be constructed inside a running event loop when start() is used,
    since the worker and listener are asyncio tasks.
    """

    def __init__(self,
                 config: Optional[UnforgottenConfig] = None,
                 remote: Optional[RemoteClient] = None,
                 feed: Optional[ChangeFeed] = None,
                 notification_scheduler: Optional[NotificationScheduler] = None,
                 network: Optional[NetworkMonitor] = None,
                 db: Optional[LocalStoreDB] = None,
                 user_id: Optional[str] = None):
        self.config = config or UnforgottenConfig()
        cfg = self.config

        self.db = db or LocalStoreDB(cfg.storage.db_path, cfg.storage.client_id)
        self.remote = remote or HttpRemoteClient(cfg.remote.base_url, api_key=cfg.remote.api_key,
                                                 timeout=cfg.remote.timeout, rest_path=cfg.remote.rest_path)
        self.notifier = ChangeNotifier()
        self.network = network or NetworkMonitor()
        self.engine = SyncEngine(self.db, self.remote, notifier=self.notifier, network=self.network,
                                 entity_types=cfg.sync.entity_order, max_retries=cfg.sync.max_retries,
                                 concurrent_pulls=cfg.sync.concurrent_pulls)
        self.worker = OutboxWorker(self.engine, network=self.network, poll_interval=cfg.sync.poll_interval,
                                   retry_backoff=cfg.sync.retry_backoff, max_backoff=cfg.sync.max_backoff)
        self.engine.attach_worker(self.worker)

        self.reminder_notifier = StickyReminderNotifier(notification_scheduler or InMemoryNotificationScheduler())
        self.reminder_subscription = self.reminder_notifier.watch(self.notifier, self.db)
        self.feed = feed
        if self.feed is None and cfg.realtime.enabled:
            self.feed = HttpChangeFeed(cfg.remote.base_url, api_key=cfg.remote.api_key,
                                       stream_path=cfg.realtime.stream_path)
        self.realtime: Optional[RealtimeSyncService] = None
        if self.feed is not None and cfg.realtime.enabled:
            self.realtime = RealtimeSyncService(self.engine, self.feed, entity_types=cfg.realtime.entity_types,
                                                reconnect_delay=cfg.realtime.reconnect_delay)

        self.user_id = user_id
        self.current_account_id: Optional[str] = None
        self.repositories: Dict[str, CachedRepository] = self._build_repositories()
        self.network.add_status_callback(self._on_connectivity_change)
        logger.info(f"AppState ready (client_id={self.db.client_id}, realtime={'on' if self.realtime else 'off'})")

    def _build_repositories(self) -> Dict[str, CachedRepository]:
        special = {
            EntityType.ACCOUNT.value: AccountRepository(self.db, self.engine, self.user_id),
            EntityType.MEDICATION.value: MedicationRepository(self.db, self.engine, self.user_id),
            EntityType.PROFILE.value: ProfileRepository(self.db, self.engine, self.user_id),
            EntityType.STICKY_REMINDER.value: StickyReminderRepository(self.db, self.engine, self.user_id),
        }
        repos: Dict[str, CachedRepository] = {}
        for entity_type in EntityType:
            repos[entity_type.value] = special.get(entity_type.value) or CachedRepository(
                entity_type, self.db, self.engine, self.user_id)
        return repos

    def repository(self, entity_type) -> CachedRepository:
        return self.repositories[entity_key(entity_type)]

    @property
    def accounts(self) -> AccountRepository:
        return self.repositories[EntityType.ACCOUNT.value]

    @property
    def medications(self) -> MedicationRepository:
        return self.repositories[EntityType.MEDICATION.value]

    @property
    def profiles(self) -> ProfileRepository:
        return self.repositories[EntityType.PROFILE.value]

    @property
    def sticky_reminders(self) -> StickyReminderRepository:
        return self.repositories[EntityType.STICKY_REMINDER.value]

    def set_user(self, user_id: Optional[str]):
        self.user_id = user_id
        for repo in self.repositories.values():
            repo.user_id = user_id

    # --- Lifecycle ---

    def start(self):
        self.worker.start()

    async def switch_account(self, account_id: str) -> SyncResult:
        """Make account_id active: move the realtime subscription to it and run a full sync."""
        if account_id != self.current_account_id:
            logger.info(f"Switching active account to {account_id}")
        self.current_account_id = account_id
        if self.realtime is not None:
            await self.realtime.start_listening(account_id)
        return await self.engine.perform_full_sync(account_id)

    async def on_foreground(self) -> Optional[SyncResult]:
        """App returned to the foreground: resync the active account and nudge the outbox."""
        self.worker.notify()
        if self.current_account_id is None:
            return None
        return await self.engine.perform_full_sync(self.current_account_id)

    def _on_connectivity_change(self, connected: bool):
        if connected:
            self.worker.notify()

    async def shutdown(self):
        logger.info("AppState shutdown: stopping background tasks")
        if self.realtime is not None:
            await self.realtime.stop_listening()
        await self.worker.stop()
        self.reminder_subscription.cancel()
        self.network.remove_status_callback(self._on_connectivity_change)
        if self.feed is not None:
            await self.feed.aclose()
        await self.remote.aclose()
        self.db.close_connection()

#
# End of app_state.py
########################################################################################################################
