# medication_logs.py
# Creates the day's 'scheduled' medication log rows from the cached medication schedules.
#
# Imports
import uuid
from datetime import date, datetime, timezone, tzinfo
from typing import List, Optional
#
# Third-Party Libraries
from loguru import logger
#
# Local Imports
from unforgotten_sync.app.core.DB_Management.Local_Store_DB import ConflictError, LocalStoreDB
from unforgotten_sync.app.core.Utils.Utils import format_timestamp, utc_now
from .entity_schemas import (Medication, MedicationLog, MedicationLogStatus, MedicationSchedule, ScheduleType,
                             decode_entity)
from .exceptions import DecodeError
from .models import ChangeKind, ChangeOperation, EntityType
from .notifier import ChangeNotifier
from .outbox import Outbox
#
#######################################################################################################################
#
# Functions:

MEDICATION_LOG_NAMESPACE = uuid.UUID("6f1c8d52-3b0e-4f4e-9a65-2d7f0b7c1e11")


def generated_log_id(medication_id: str, scheduled_at: datetime) -> str:
    """Deterministic id so every device generates the same row for the same dose."""
    return str(uuid.uuid5(MEDICATION_LOG_NAMESPACE, f"{medication_id}|{format_timestamp(scheduled_at)}"))


def sunday_based_weekday(day: date) -> int:
    return (day.weekday() + 1) % 7


def local_timezone() -> tzinfo:
    return datetime.now().astimezone().tzinfo or timezone.utc


class MedicationLogGenerator:
    """
    Materialises scheduled doses for one day as medication_log rows.

    Safe to call repeatedly: a log is only created when no log (tombstoned
    ones included) exists for its (medication_id, scheduled_at).
    """

    def __init__(self, db: LocalStoreDB, outbox: Outbox, notifier: Optional[ChangeNotifier] = None,
                 tz: Optional[tzinfo] = None):
        self.db = db
        self.outbox = outbox
        self.notifier = notifier
        self.tz = tz

    def _decode_rows(self, entity_type: EntityType, rows) -> List:
        decoded = []
        for row in rows:
            try:
                decoded.append(decode_entity(entity_type, row['data']))
            except DecodeError as e:
                logger.warning(f"Skipping undecodable cached {entity_type.value} {row.get('id')}: {e}")
        return decoded

    def _log_exists(self, medication_id: str, scheduled_at: datetime) -> bool:
        if self.db.fetch_by_id(EntityType.MEDICATION_LOG, generated_log_id(medication_id, scheduled_at),
                               include_deleted=True):
            return True
        rows = self.db.fetch_where(EntityType.MEDICATION_LOG, include_deleted=True, limit=1,
                                   filters={"medication_id": medication_id, "scheduled_at": scheduled_at})
        return bool(rows)

    def generate(self, account_id: str, today: Optional[date] = None) -> int:
        tz = self.tz or local_timezone()
        today = today or datetime.now(tz).date()
        weekday = sunday_based_weekday(today)
        created = 0

        medications: List[Medication] = self._decode_rows(
            EntityType.MEDICATION, self.db.fetch_where(EntityType.MEDICATION, account_id))
        for medication in medications:
            if medication.is_paused:
                continue
            schedules: List[MedicationSchedule] = self._decode_rows(
                EntityType.MEDICATION_SCHEDULE,
                self.db.fetch_where(EntityType.MEDICATION_SCHEDULE, account_id,
                                    filters={"medication_id": medication.id}))
            for schedule in schedules:
                if schedule.schedule_type != ScheduleType.SCHEDULED.value:
                    continue
                for entry in schedule.entries():
                    if not schedule.is_active_on(today, entry) or weekday not in entry.days_of_week:
                        continue
                    time_of_day = entry.time_of_day()
                    if time_of_day is None:
                        logger.warning(f"Skipping schedule {schedule.id} entry {entry.id}: "
                                       f"malformed time {entry.time!r}")
                        continue
                    scheduled_at = datetime.combine(today, time_of_day, tzinfo=tz).astimezone(timezone.utc)
                    if self._log_exists(medication.id, scheduled_at):
                        continue
                    if self._insert_log(account_id, medication.id, scheduled_at):
                        created += 1

        if created:
            logger.info(f"Generated {created} medication log(s) for account {account_id} on {today.isoformat()}")
        return created

    def _insert_log(self, account_id: str, medication_id: str, scheduled_at: datetime) -> bool:
        now = utc_now()
        log = MedicationLog(id=generated_log_id(medication_id, scheduled_at), account_id=account_id,
                            medication_id=medication_id, scheduled_at=scheduled_at,
                            status=MedicationLogStatus.SCHEDULED, created_at=now, updated_at=now)
        record = log.to_record()
        try:
            with self.db.transaction():
                self.db.insert(EntityType.MEDICATION_LOG, record, is_synced=False)
                self.outbox.enqueue(EntityType.MEDICATION_LOG, log.id, account_id, ChangeOperation.CREATE, record)
        except ConflictError:
            logger.debug(f"Medication log for {medication_id} at {record['scheduled_at']} appeared concurrently")
            return False
        if self.notifier is not None:
            self.notifier.emit(EntityType.MEDICATION_LOG, account_id, log.id, ChangeKind.CREATED)
        return True

#
# End of medication_logs.py
#######################################################################################################################
