# test_realtime_sync.py
#
#
# Imports
import asyncio
import json
#
# Third-Party Imports
import httpx
import pytest
#
# Local Imports
from unforgotten_sync.app.core.Realtime.realtime_sync import (ChangeFeed, HttpChangeFeed, RealtimeEvent,
                                                              RealtimeEventType, RealtimeSyncService,
                                                              entity_for_table)
from unforgotten_sync.app.core.DB_Management.Local_Store_DB import InputError
from unforgotten_sync.app.core.Sync.exceptions import DecodeError, NetworkError, RemoteError
from unforgotten_sync.app.core.Sync.models import ChangeKind, EntityType, MergeOutcome
from conftest import ACCOUNT_ID, appointment_record, reminder_record
#
#######################################################################################################################
#
# Functions:

APPT = EntityType.APPOINTMENT


class QueueFeed(ChangeFeed):
    """Feed driven by the test: put dicts to deliver, an exception to fail the stream, None to close it."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.opened = []

    async def stream(self, account_id, entity_types):
        self.opened.append((account_id, tuple(entity_types)))
        while True:
            item = await self.queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item


async def _eventually(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def feed():
    return QueueFeed()


@pytest.fixture
def service(engine, feed, reminder_notifier, mem_db):
    subscription = reminder_notifier.watch(engine.notifier, mem_db)
    yield RealtimeSyncService(engine, feed, reconnect_delay=0.01)
    subscription.cancel()


def _event(kind, table="appointments", record=None, old_record=None):
    return {"type": kind, "table": table, "record": record or {}, "old_record": old_record or {}}


class TestEventParsing:

    @pytest.mark.parametrize("table, expected", [
        ("appointments", "appointment"),
        ("appointment", "appointment"),
        ("sticky_reminders", "sticky_reminder"),
        ("mood_entries", "mood_entry"),
        ("spaceships", None),
        (None, None),
    ])
    def test_entity_for_table(self, table, expected):
        assert entity_for_table(table) == expected

    def test_from_dict(self):
        event = RealtimeEvent.from_dict({"eventType": "update", "table": "appointments",
                                         "record": {"id": "a-1"}})
        assert event.type == RealtimeEventType.UPDATE
        assert event.entity_type == "appointment"
        assert event.entity_id == "a-1"

    def test_delete_id_from_old_record(self):
        event = RealtimeEvent.from_dict(_event("DELETE", old_record={"id": "a-9"}))
        assert event.entity_id == "a-9"

    @pytest.mark.parametrize("raw", [
        "not an object",
        {"type": "INSERT", "table": "spaceships"},
        {"type": "TRUNCATE", "table": "appointments"},
        {"type": "INSERT", "table": "appointments", "record": ["a-1"]},
    ])
    def test_malformed_events_raise_decode_error(self, raw):
        with pytest.raises(DecodeError):
            RealtimeEvent.from_dict(raw)


class TestHandleEvent:

    def test_insert_merges_record(self, service, mem_db, events):
        outcome = service.handle_event(_event("INSERT", record=appointment_record("a-1")), ACCOUNT_ID)

        assert outcome == MergeOutcome.INSERTED
        assert mem_db.fetch_by_id(APPT, "a-1")['is_synced'] is True
        assert (events[-1].entity_id, events[-1].kind) == ("a-1", ChangeKind.CREATED)
        assert service.events_handled == 1

    def test_update_overwrites_synced_row(self, service, mem_db):
        service.handle_event(_event("INSERT", record=appointment_record("a-1")), ACCOUNT_ID)
        outcome = service.handle_event(_event("UPDATE", record=appointment_record("a-1", title="Moved", updated=5)),
                                       ACCOUNT_ID)
        assert outcome == MergeOutcome.UPDATED
        assert mem_db.fetch_by_id(APPT, "a-1")['data']['title'] == "Moved"

    def test_delete_purges_row(self, service, mem_db, events):
        service.handle_event(_event("INSERT", record=appointment_record("a-1")), ACCOUNT_ID)
        outcome = service.handle_event(_event("DELETE", old_record={"id": "a-1"}), ACCOUNT_ID)

        assert outcome == MergeOutcome.DELETED
        assert mem_db.fetch_by_id(APPT, "a-1", include_deleted=True) is None
        assert events[-1].kind == ChangeKind.DELETED

    def test_delete_without_id_requests_refresh(self, service, events):
        assert service.handle_event(_event("DELETE"), ACCOUNT_ID) is None
        assert (events[-1].entity_type, events[-1].kind) == ("appointment", ChangeKind.REFRESH)

    def test_unknown_table_requests_global_refresh(self, service, events):
        assert service.handle_event({"type": "INSERT", "table": "spaceships"}, ACCOUNT_ID) is None
        assert (events[-1].entity_type, events[-1].kind) == ("*", ChangeKind.REFRESH)

    def test_undecodable_record_requests_refresh(self, service, mem_db, events):
        raw = _event("INSERT", record=appointment_record("a-1", date="someday"))
        assert service.handle_event(raw, ACCOUNT_ID) is None
        assert mem_db.fetch_by_id(APPT, "a-1") is None
        assert (events[-1].entity_type, events[-1].entity_id, events[-1].kind) == \
            ("appointment", "a-1", ChangeKind.REFRESH)

    def test_unsubscribed_type_ignored(self, service, mem_db):
        raw = _event("INSERT", table="todo_lists",
                     record={"id": "l-1", "account_id": ACCOUNT_ID, "title": "Shopping", "created_at": "2024-05-01"})
        assert service.handle_event(raw, ACCOUNT_ID) is None
        assert mem_db.fetch_by_id(EntityType.TODO_LIST, "l-1") is None
        assert service.events_handled == 0

    def test_other_account_ignored(self, service, mem_db):
        raw = _event("INSERT", record=appointment_record("a-1", account_id="someone-else"))
        assert service.handle_event(raw, ACCOUNT_ID) is None
        assert mem_db.fetch_by_id(APPT, "a-1") is None


class TestStickyReminders:

    def test_insert_schedules_notification(self, service, scheduler):
        service.handle_event(_event("INSERT", table="sticky_reminders", record=reminder_record("r-1")), ACCOUNT_ID)
        assert scheduler.scheduled["r-1"].title == "Drink water"

    def test_dismissal_cancels_notification(self, service, scheduler):
        service.handle_event(_event("INSERT", table="sticky_reminders", record=reminder_record("r-1")), ACCOUNT_ID)
        service.handle_event(_event("UPDATE", table="sticky_reminders",
                                    record=reminder_record("r-1", is_dismissed=True, updated=5)), ACCOUNT_ID)
        assert "r-1" not in scheduler.scheduled

    def test_delete_cancels_notification(self, service, scheduler):
        service.handle_event(_event("INSERT", table="sticky_reminders", record=reminder_record("r-1")), ACCOUNT_ID)
        service.handle_event(_event("DELETE", table="sticky_reminders", old_record={"id": "r-1"}), ACCOUNT_ID)
        assert scheduler.scheduled == {}


class TestListening:

    @pytest.mark.asyncio
    async def test_events_from_feed_are_merged(self, service, feed, mem_db):
        await service.start_listening(ACCOUNT_ID)
        try:
            await feed.queue.put(_event("INSERT", record=appointment_record("a-1")))
            await _eventually(lambda: mem_db.fetch_by_id(APPT, "a-1") is not None)
            assert feed.opened[0][0] == ACCOUNT_ID
            assert "appointment" in feed.opened[0][1]
        finally:
            await service.stop_listening()
        assert not service.is_listening
        assert service.current_account_id is None

    @pytest.mark.asyncio
    async def test_start_is_idempotent_for_same_account(self, service):
        await service.start_listening(ACCOUNT_ID)
        task = service._task
        await service.start_listening(ACCOUNT_ID)
        assert service._task is task
        await service.stop_listening()

    @pytest.mark.asyncio
    async def test_switching_account_replaces_subscription(self, service, feed):
        await service.start_listening(ACCOUNT_ID)
        first = service._task
        await service.start_listening("other-account")
        try:
            assert first.cancelled()
            assert service.current_account_id == "other-account"
            await _eventually(lambda: [a for a, _ in feed.opened] == [ACCOUNT_ID, "other-account"])
        finally:
            await service.stop_listening()

    @pytest.mark.asyncio
    async def test_reconnects_after_failure_and_close(self, service, feed):
        await service.start_listening(ACCOUNT_ID)
        try:
            await feed.queue.put(NetworkError("socket closed"))
            await _eventually(lambda: len(feed.opened) == 2)
            await feed.queue.put(None)
            await _eventually(lambda: len(feed.opened) == 3)
            assert service.is_listening
        finally:
            await service.stop_listening()

    @pytest.mark.asyncio
    async def test_unexpected_handler_error_reconnects(self, service, feed, mem_db):
        handle = service.handle_event
        raised = []

        def crash_once(raw, account_id=None):
            if not raised:
                raised.append(raw)
                raise RuntimeError("unexpected handler bug")
            return handle(raw, account_id)

        service.handle_event = crash_once
        await service.start_listening(ACCOUNT_ID)
        try:
            await feed.queue.put(_event("INSERT", record=appointment_record("a-1")))
            await _eventually(lambda: len(feed.opened) == 2)
            assert service.is_listening
            await feed.queue.put(_event("INSERT", record=appointment_record("a-2")))
            await _eventually(lambda: mem_db.fetch_by_id(APPT, "a-2") is not None)
        finally:
            await service.stop_listening()
        assert len(raised) == 1

    @pytest.mark.asyncio
    async def test_rejected_event_requests_refresh_and_keeps_stream(self, service, feed, mem_db, events):
        handle = service.handle_event

        def reject_first(raw, account_id=None):
            if raw["record"]["id"] == "a-1":
                raise InputError("Required field 'profile_id' is missing")
            return handle(raw, account_id)

        service.handle_event = reject_first
        await service.start_listening(ACCOUNT_ID)
        try:
            await feed.queue.put(_event("INSERT", record=appointment_record("a-1")))
            await feed.queue.put(_event("INSERT", record=appointment_record("a-2")))
            await _eventually(lambda: mem_db.fetch_by_id(APPT, "a-2") is not None)
            assert len(feed.opened) == 1
        finally:
            await service.stop_listening()
        assert ("appointment", ChangeKind.REFRESH) in [(e.entity_type, e.kind) for e in events]

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_noop(self, service):
        await service.stop_listening()
        assert not service.is_listening


class TestHttpChangeFeed:

    @pytest.mark.asyncio
    async def test_reads_ndjson_lines(self):
        seen = []
        lines = [json.dumps(_event("INSERT", record={"id": "a-1"})), "", "{broken",
                 json.dumps(_event("DELETE", old_record={"id": "a-2"}))]

        def handler(request):
            seen.append(request)
            return httpx.Response(200, content="\n".join(lines).encode())

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        feed = HttpChangeFeed("https://backend.test", api_key="anon-key", client=http)

        received = [raw async for raw in feed.stream(ACCOUNT_ID, ["appointment", "sticky_reminder"])]

        assert [r["type"] for r in received] == ["INSERT", "DELETE"]
        request = seen[0]
        assert request.url.path == "/realtime/v1/changes"
        assert request.url.params["tables"] == "appointments,sticky_reminders"
        assert request.url.params["account_id"] == ACCOUNT_ID
        assert request.headers["apikey"] == "anon-key"
        await feed.aclose()
        assert not http.is_closed
        await http.aclose()

    @pytest.mark.asyncio
    async def test_rejected_stream_raises_remote_error(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(401)))
        feed = HttpChangeFeed("https://backend.test", client=http)
        with pytest.raises(RemoteError) as exc_info:
            async for _ in feed.stream(ACCOUNT_ID, ["appointment"]):
                pass
        assert exc_info.value.status_code == 401
        await http.aclose()

    @pytest.mark.asyncio
    async def test_connection_failure_raises_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        feed = HttpChangeFeed("https://backend.test", client=http)
        with pytest.raises(NetworkError):
            async for _ in feed.stream(ACCOUNT_ID, ["appointment"]):
                pass
        await http.aclose()

#
# End of test_realtime_sync.py
#######################################################################################################################
