# reminder_scheduler.py
# Boundary to the host's local notification center, and the sticky reminder rules that drive it.
#
# Imports
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional
#
# Third-Party Libraries
from loguru import logger
#
# Local Imports
from unforgotten_sync.app.core.DB_Management.Local_Store_DB import LocalStorageError, LocalStoreDB
from unforgotten_sync.app.core.Sync.entity_schemas import StickyReminder, decode_entity
from unforgotten_sync.app.core.Sync.exceptions import DecodeError
from unforgotten_sync.app.core.Sync.models import ChangeKind, EntityType
from unforgotten_sync.app.core.Sync.notifier import ChangeEvent, ChangeNotifier, Subscription
from unforgotten_sync.app.core.Utils.Utils import utc_now
#
#######################################################################################################################
#
# Functions:

DEFAULT_REMINDER_BODY = "Tap to open the app and dismiss this reminder"


@dataclass(frozen=True)
class ReminderNotification:
    reminder_id: str
    title: str
    body: str
    trigger_time: datetime
    repeat_interval: timedelta

    @property
    def identifier(self) -> str:
        return f"sticky-{self.reminder_id}"


class NotificationScheduler(ABC):
    """Implemented by the host platform. Scheduling the same reminder_id again replaces the earlier request."""

    @abstractmethod
    def schedule(self, notification: ReminderNotification) -> None:
        pass

    @abstractmethod
    def cancel(self, reminder_id: str) -> None:
        pass


class InMemoryNotificationScheduler(NotificationScheduler):
    """Keeps requests in a dict. Used when no platform scheduler is attached."""

    def __init__(self):
        self.scheduled: Dict[str, ReminderNotification] = {}

    def schedule(self, notification: ReminderNotification) -> None:
        self.scheduled[notification.reminder_id] = notification

    def cancel(self, reminder_id: str) -> None:
        self.scheduled.pop(str(reminder_id), None)


def build_notification(reminder: StickyReminder, now: Optional[datetime] = None) -> ReminderNotification:
    """
    Notification request for a sticky reminder.

    A trigger time still in the future is used as is. Once it has passed the
    next occurrence is one repeat interval from now.
    """
    now = now or utc_now()
    interval = timedelta(seconds=reminder.repeat_interval.seconds)
    trigger_time = reminder.trigger_time if reminder.trigger_time > now else now + interval
    return ReminderNotification(
        reminder_id=str(reminder.id),
        title=reminder.title,
        body=reminder.message or DEFAULT_REMINDER_BODY,
        trigger_time=trigger_time,
        repeat_interval=interval,
    )


class StickyReminderNotifier:
    """
    Keeps the host's scheduled notifications in line with sticky reminder state.

    watch() ties it to the change notifier, so every path that changes a
    reminder locally (repository writes, full sync, refresh, realtime) ends
    up rescheduling or cancelling it from the stored row.
    """

    def __init__(self, scheduler: NotificationScheduler):
        self.scheduler = scheduler

    def sync_reminder(self, reminder: StickyReminder, now: Optional[datetime] = None) -> bool:
        """Schedule an active, undismissed reminder and cancel any other. Returns True if scheduled."""
        if not reminder.should_notify:
            self.cancel(reminder.id)
            return False
        notification = build_notification(reminder, now)
        try:
            self.scheduler.schedule(notification)
        except Exception as e:
            logger.error(f"Failed to schedule sticky reminder {reminder.id}: {e}")
            return False
        logger.debug(f"Scheduled sticky reminder '{reminder.title}' for {notification.trigger_time.isoformat()}")
        return True

    def cancel(self, reminder_id: str):
        try:
            self.scheduler.cancel(str(reminder_id))
        except Exception as e:
            logger.error(f"Failed to cancel sticky reminder {reminder_id}: {e}")
            return
        logger.debug(f"Cancelled sticky reminder notifications for {reminder_id}")

    def reschedule_from_store(self, db: LocalStoreDB, reminder_id: str, now: Optional[datetime] = None) -> bool:
        """Re-read one reminder and schedule or cancel it. A missing or tombstoned row is cancelled."""
        row = db.fetch_by_id(EntityType.STICKY_REMINDER, reminder_id)
        if row is None:
            self.cancel(reminder_id)
            return False
        try:
            reminder = decode_entity(EntityType.STICKY_REMINDER, row['data'])
        except DecodeError as e:
            logger.warning(f"Stored sticky reminder {reminder_id} is unreadable, leaving its notification: {e}")
            return False
        return self.sync_reminder(reminder, now)

    def reschedule_account(self, db: LocalStoreDB, account_id: str, now: Optional[datetime] = None) -> int:
        """Reschedule every stored reminder of an account. Returns how many are scheduled."""
        scheduled = 0
        for row in db.fetch_where(EntityType.STICKY_REMINDER, account_id):
            if self.reschedule_from_store(db, row['id'], now):
                scheduled += 1
        return scheduled

    def watch(self, notifier: ChangeNotifier, db: LocalStoreDB) -> Subscription:
        """Follow sticky reminder change events. Cancel the returned subscription to stop."""
        def on_change(event: ChangeEvent):
            try:
                if event.kind == ChangeKind.DELETED and event.entity_id:
                    self.cancel(event.entity_id)
                elif event.entity_id:
                    self.reschedule_from_store(db, event.entity_id)
                elif event.account_id:
                    self.reschedule_account(db, event.account_id)
            except LocalStorageError as e:
                logger.error(f"Could not read sticky reminder state for {event.entity_id or event.account_id}: {e}")

        return notifier.subscribe(EntityType.STICKY_REMINDER, on_change)

#
# End of reminder_scheduler.py
#######################################################################################################################
