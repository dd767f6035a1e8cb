# test_reminder_scheduler.py
#
#
# Imports
from datetime import datetime, timedelta, timezone
#
# Third-Party Imports
import pytest
#
# Local Imports
from unforgotten_sync.app.core.Notifications.reminder_scheduler import (DEFAULT_REMINDER_BODY,
                                                                        NotificationScheduler,
                                                                        StickyReminderNotifier, build_notification)
from unforgotten_sync.app.core.Sync.entity_schemas import StickyReminder, decode_entity
from unforgotten_sync.app.core.Sync.models import ChangeKind, EntityType
from conftest import ACCOUNT_ID, reminder_record
#
#######################################################################################################################
#
# Functions:

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _reminder(**extra):
    return StickyReminder.model_validate(reminder_record("r-1", **extra))


class TestBuildNotification:

    def test_future_trigger_kept(self):
        notification = build_notification(_reminder(trigger_time="2024-05-01T15:00:00Z"), now=NOW)
        assert notification.trigger_time == datetime(2024, 5, 1, 15, tzinfo=timezone.utc)
        assert notification.repeat_interval == timedelta(minutes=30)
        assert notification.identifier == "sticky-r-1"

    def test_past_trigger_moves_one_interval_ahead(self):
        notification = build_notification(_reminder(trigger_time="2024-04-30T09:00:00Z",
                                                    repeat_interval="2_hours"), now=NOW)
        assert notification.trigger_time == NOW + timedelta(hours=2)

    def test_body_defaults_when_no_message(self):
        assert build_notification(_reminder(), now=NOW).body == DEFAULT_REMINDER_BODY
        assert build_notification(_reminder(message="Glass by the sink"), now=NOW).body == "Glass by the sink"


class TestStickyReminderNotifier:

    def test_active_reminder_scheduled(self, reminder_notifier, scheduler):
        assert reminder_notifier.sync_reminder(_reminder(), now=NOW) is True
        assert list(scheduler.scheduled) == ["r-1"]

    def test_rescheduling_replaces_request(self, reminder_notifier, scheduler):
        reminder_notifier.sync_reminder(_reminder(title="Old"), now=NOW)
        reminder_notifier.sync_reminder(_reminder(title="New"), now=NOW)
        assert len(scheduler.scheduled) == 1
        assert scheduler.scheduled["r-1"].title == "New"

    @pytest.mark.parametrize("extra", [{"is_dismissed": True}, {"is_active": False}])
    def test_inactive_or_dismissed_cancelled(self, reminder_notifier, scheduler, extra):
        reminder_notifier.sync_reminder(_reminder(), now=NOW)
        assert reminder_notifier.sync_reminder(_reminder(**extra), now=NOW) is False
        assert scheduler.scheduled == {}

    def test_scheduler_failure_reported_not_raised(self):
        class BrokenScheduler(NotificationScheduler):
            def schedule(self, notification):
                raise RuntimeError("notification permission revoked")

            def cancel(self, reminder_id):
                raise RuntimeError("notification permission revoked")

        notifier = StickyReminderNotifier(BrokenScheduler())
        assert notifier.sync_reminder(_reminder(), now=NOW) is False
        notifier.cancel("r-1")


class TestWatchingChanges:

    @pytest.fixture
    def watching(self, reminder_notifier, notifier, mem_db):
        subscription = reminder_notifier.watch(notifier, mem_db)
        yield subscription
        subscription.cancel()

    def _store(self, db, **extra):
        record = decode_entity(EntityType.STICKY_REMINDER, reminder_record("r-1", **extra)).to_record()
        db.upsert_remote(EntityType.STICKY_REMINDER, record)

    def test_changed_reminder_rescheduled_from_store(self, watching, notifier, mem_db, scheduler):
        self._store(mem_db, title="Stored title")
        notifier.emit(EntityType.STICKY_REMINDER, ACCOUNT_ID, "r-1", ChangeKind.UPDATED)
        assert scheduler.scheduled["r-1"].title == "Stored title"

    def test_deleted_event_cancels(self, watching, notifier, mem_db, scheduler):
        self._store(mem_db)
        notifier.emit(EntityType.STICKY_REMINDER, ACCOUNT_ID, "r-1", ChangeKind.CREATED)
        notifier.emit(EntityType.STICKY_REMINDER, ACCOUNT_ID, "r-1", ChangeKind.DELETED)
        assert scheduler.scheduled == {}

    def test_missing_row_cancels(self, watching, notifier, scheduler):
        scheduler.scheduled["r-1"] = object()
        notifier.emit(EntityType.STICKY_REMINDER, ACCOUNT_ID, "r-1", ChangeKind.UPDATED)
        assert scheduler.scheduled == {}

    def test_account_refresh_reschedules_everything(self, watching, notifier, mem_db, scheduler):
        self._store(mem_db)
        notifier.emit(EntityType.STICKY_REMINDER, ACCOUNT_ID, None, ChangeKind.REFRESH)
        assert list(scheduler.scheduled) == ["r-1"]

    def test_other_entity_types_ignored(self, watching, notifier, mem_db, scheduler):
        self._store(mem_db)
        notifier.emit(EntityType.APPOINTMENT, ACCOUNT_ID, "r-1", ChangeKind.UPDATED)
        assert scheduler.scheduled == {}

    def test_cancelled_subscription_stops_following(self, watching, notifier, mem_db, scheduler):
        self._store(mem_db)
        watching.cancel()
        notifier.emit(EntityType.STICKY_REMINDER, ACCOUNT_ID, "r-1", ChangeKind.UPDATED)
        assert scheduler.scheduled == {}

#
# End of test_reminder_scheduler.py
#######################################################################################################################
