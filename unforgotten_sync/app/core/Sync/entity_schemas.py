# entity_schemas.py
# Pydantic models for every synced entity type

import uuid
from datetime import date, datetime, time, timedelta
from datetime import time as clock_time
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Type

from loguru import logger
from pydantic import (BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator,
                      model_serializer, model_validator)

from unforgotten_sync.app.core.Utils.Utils import entity_key, parse_time_of_day, parse_timestamp

from .exceptions import DecodeError
from .models import EntityType


# --- Tolerant scalar types ---

def _coerce_id(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def _coerce_datetime(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (str, date)):
        parsed = parse_timestamp(value)
        if parsed is None:
            raise ValueError(f"Cannot decode date from: {value!r}")
        return parsed
    return value


def _coerce_date(value: Any) -> Any:
    if value is None or (isinstance(value, date) and not isinstance(value, datetime)):
        return value
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        parsed = parse_timestamp(value)
        if parsed is None:
            raise ValueError(f"Cannot decode date from: {value!r}")
        return parsed.date()
    return value


def _coerce_time(value: Any) -> Any:
    if value is None or isinstance(value, time):
        return value
    if isinstance(value, str):
        if 'T' in value or (len(value) >= 10 and value[4] == '-'):
            parsed = parse_timestamp(value)
            if parsed is not None:
                return parsed.time()
        parsed_time = parse_time_of_day(value)
        if parsed_time is None:
            raise ValueError(f"Cannot decode time from: {value!r}")
        return parsed_time
    return value


IdStr = Annotated[str, BeforeValidator(_coerce_id)]
FlexibleDatetime = Annotated[datetime, BeforeValidator(_coerce_datetime)]
FlexibleDate = Annotated[date, BeforeValidator(_coerce_date)]
FlexibleTime = Annotated[time, BeforeValidator(_coerce_time)]


# --- Enums ---

class MemberRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    HELPER = "helper"
    VIEWER = "viewer"

    @property
    def can_write(self) -> bool:
        return self != MemberRole.VIEWER

    @property
    def can_manage_members(self) -> bool:
        return self in (MemberRole.OWNER, MemberRole.ADMIN)


class ScheduleType(str, Enum):
    SCHEDULED = "scheduled"
    AS_NEEDED = "as_needed"


class DurationUnit(str, Enum):
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


class MedicationLogStatus(str, Enum):
    SCHEDULED = "scheduled"
    TAKEN = "taken"
    MISSED = "missed"
    SKIPPED = "skipped"


class ReminderTimeUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    MONTHS = "months"
    YEARS = "years"

    @property
    def seconds(self) -> int:
        return {
            ReminderTimeUnit.MINUTES: 60,
            ReminderTimeUnit.HOURS: 60 * 60,
            ReminderTimeUnit.DAYS: 24 * 60 * 60,
            ReminderTimeUnit.MONTHS: 30 * 24 * 60 * 60,
            ReminderTimeUnit.YEARS: 365 * 24 * 60 * 60,
        }[self]


# --- Base ---

class SyncedEntity(BaseModel):
    """Fields shared by every row that is mirrored to the remote store."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True, populate_by_name=True)

    id: IdStr = Field(..., description="Stable UUID, client- or server-assigned")
    account_id: IdStr = Field(..., description="Owning account")
    created_at: FlexibleDatetime
    updated_at: FlexibleDatetime

    @model_validator(mode="before")
    @classmethod
    def _fill_updated_at(cls, data: Any) -> Any:
        # Some tables never carried updated_at on the wire
        if isinstance(data, dict) and not data.get("updated_at") and data.get("created_at"):
            data = {**data, "updated_at": data["created_at"]}
        return data

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# --- Accounts ---

class Account(SyncedEntity):
    owner_user_id: IdStr
    display_name: str

    @model_validator(mode="before")
    @classmethod
    def _account_scopes_itself(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("account_id") and data.get("id"):
            data = {**data, "account_id": data["id"]}
        return data


class AccountMember(SyncedEntity):
    user_id: IdStr
    role: MemberRole = MemberRole.VIEWER

    @property
    def member_role(self) -> MemberRole:
        return MemberRole(self.role)


class UserPreferences(SyncedEntity):
    user_id: IdStr
    header_style_id: str = "default"
    accent_color_index: int = 0
    has_custom_accent_color: bool = False
    feature_visibility: Dict[str, bool] = Field(default_factory=dict)
    feature_order: List[str] = Field(default_factory=list)


# --- People ---

class Profile(SyncedEntity):
    type: str = "relative"
    full_name: str
    preferred_name: Optional[str] = None
    relationship: Optional[str] = None
    connected_to_profile_id: Optional[IdStr] = None
    include_in_family_tree: bool = True
    birthday: Optional[FlexibleDate] = None
    is_deceased: bool = False
    date_of_death: Optional[FlexibleDate] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None
    is_favourite: bool = False
    linked_user_id: Optional[IdStr] = None
    photo_url: Optional[str] = None
    sort_order: int = 0

    @property
    def display_name(self) -> str:
        return self.preferred_name or self.full_name


class UsefulContact(SyncedEntity):
    name: str
    category: str = "other"
    company_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    is_favourite: bool = False
    sort_order: int = 0


class ProfileDetail(SyncedEntity):
    profile_id: IdStr
    category: str = "note"
    label: str
    value: str = ""
    status: Optional[str] = None
    occasion: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None


class ProfileConnection(SyncedEntity):
    from_profile_id: IdStr
    to_profile_id: IdStr
    relationship_type: str = "other"

    def other_profile_id(self, profile_id: str) -> str:
        return self.to_profile_id if self.from_profile_id == profile_id else self.from_profile_id


class ImportantAccount(SyncedEntity):
    """Website/service login hints for a profile. The table is scoped through profiles, not account_id."""
    profile_id: IdStr
    account_name: str
    website_url: Optional[str] = None
    username: Optional[str] = None
    email_address: Optional[str] = None
    phone_number: Optional[str] = None
    security_question_hint: Optional[str] = None
    recovery_hint: Optional[str] = None
    notes: Optional[str] = None
    category: Optional[str] = None
    image_url: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _lift_account_from_profile(cls, data: Any) -> Any:
        # Remote rows come back with the owning profile embedded as {"profiles": {"account_id": ...}}
        if isinstance(data, dict) and not data.get("account_id"):
            embedded = data.get("profiles")
            if isinstance(embedded, dict) and embedded.get("account_id"):
                data = {**data, "account_id": embedded["account_id"]}
        return data


# --- Medications ---

class Medication(SyncedEntity):
    profile_id: IdStr
    name: str
    strength: Optional[str] = None
    form: Optional[str] = None
    reason: Optional[str] = None
    prescribing_doctor_id: Optional[IdStr] = None
    notes: Optional[str] = None
    image_url: Optional[str] = None
    intake_instruction: Optional[str] = None
    is_paused: bool = False
    paused_at: Optional[FlexibleDatetime] = None
    sort_order: int = 0


class ScheduleEntry(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: IdStr = Field(default_factory=lambda: str(uuid.uuid4()))
    time: str = Field(..., description="HH:mm, local time of day")
    dosage: Optional[str] = None
    days_of_week: List[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4, 5, 6],
                                    description="0-6, Sunday=0")
    duration_value: Optional[int] = None
    duration_unit: DurationUnit = DurationUnit.DAYS
    sort_order: int = 0

    @field_validator("days_of_week")
    @classmethod
    def _days_in_range(cls, v: List[int]) -> List[int]:
        bad = [d for d in v if d < 0 or d > 6]
        if bad:
            raise ValueError(f"days_of_week values must be 0-6, got {bad}")
        return v

    @property
    def effective_duration_days(self) -> Optional[int]:
        if self.duration_value is None:
            return None
        multiplier = {DurationUnit.DAYS.value: 1, DurationUnit.WEEKS.value: 7, DurationUnit.MONTHS.value: 30}
        return self.duration_value * multiplier[DurationUnit(self.duration_unit).value]

    def time_of_day(self) -> Optional[clock_time]:
        parts = self.time.split(":")
        if len(parts) < 2:
            return None
        try:
            return clock_time(int(parts[0]), int(parts[1]))
        except ValueError:
            return None


class MedicationSchedule(SyncedEntity):
    medication_id: IdStr
    schedule_type: ScheduleType = ScheduleType.SCHEDULED
    start_date: FlexibleDate
    end_date: Optional[FlexibleDate] = None
    days_of_week: Optional[List[int]] = None
    schedule_entries: Optional[List[ScheduleEntry]] = None
    legacy_times: Optional[List[str]] = Field(default=None, alias="times")
    dose_description: Optional[str] = None

    def entries(self) -> List[ScheduleEntry]:
        """Schedule entries, falling back to the older flat `times` list."""
        if self.schedule_entries:
            return list(self.schedule_entries)
        if not self.legacy_times:
            return []
        days = self.days_of_week if self.days_of_week is not None else [0, 1, 2, 3, 4, 5, 6]
        return [ScheduleEntry(time=t, days_of_week=days, dosage=self.dose_description, sort_order=i)
                for i, t in enumerate(self.legacy_times)]

    def is_active_on(self, day: date, entry: Optional[ScheduleEntry] = None) -> bool:
        if day < self.start_date:
            return False
        if self.end_date is not None and day > self.end_date:
            return False
        if entry is not None and entry.effective_duration_days is not None:
            if day >= self.start_date + timedelta(days=entry.effective_duration_days):
                return False
        return True


class MedicationLog(SyncedEntity):
    medication_id: IdStr
    scheduled_at: FlexibleDatetime
    status: MedicationLogStatus = MedicationLogStatus.SCHEDULED
    taken_at: Optional[FlexibleDatetime] = None
    note: Optional[str] = None


# --- Calendar-ish ---

class Appointment(SyncedEntity):
    profile_id: IdStr
    with_profile_id: Optional[IdStr] = None
    type: str = "general"
    title: str
    date: FlexibleDate
    time: Optional[FlexibleTime] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    reminder_offset_minutes: Optional[int] = None
    repeat_interval: Optional[int] = None
    repeat_unit: Optional[str] = None
    is_completed: bool = False


class Countdown(SyncedEntity):
    title: str
    date: FlexibleDate
    type: str = "custom"
    notes: Optional[str] = None


class PlannedMeal(SyncedEntity):
    date: FlexibleDate
    meal_type: str = "dinner"
    title: str
    notes: Optional[str] = None


class Recipe(SyncedEntity):
    name: str
    website_url: Optional[str] = None
    image_url: Optional[str] = None
    meal_type: Optional[str] = None


class MoodEntry(SyncedEntity):
    user_id: IdStr
    date: FlexibleDate
    rating: int = Field(..., ge=1, le=5)
    note: Optional[str] = None


# --- To-dos ---

class ToDoList(SyncedEntity):
    title: str
    list_type: Optional[str] = None


class ToDoItem(SyncedEntity):
    list_id: IdStr
    text: str
    is_completed: bool = False
    sort_order: int = 0


# --- Sticky reminders ---

_LEGACY_INTERVALS = {
    "every_15_minutes": (15, ReminderTimeUnit.MINUTES),
    "every_30_minutes": (30, ReminderTimeUnit.MINUTES),
    "every_hour": (1, ReminderTimeUnit.HOURS),
    "hourly": (1, ReminderTimeUnit.HOURS),
    "every_2_hours": (2, ReminderTimeUnit.HOURS),
    "every_4_hours": (4, ReminderTimeUnit.HOURS),
    "every_8_hours": (8, ReminderTimeUnit.HOURS),
    "daily": (1, ReminderTimeUnit.DAYS),
}


class StickyReminderInterval(BaseModel):
    """Repeat interval, stored on the wire as '<value>_<unit>' (e.g. '30_minutes')."""
    value: int = 1
    unit: ReminderTimeUnit = ReminderTimeUnit.HOURS

    @model_validator(mode="before")
    @classmethod
    def _parse_wire_string(cls, data: Any) -> Any:
        if not isinstance(data, str):
            return data
        head, _, tail = data.partition("_")
        if tail and head.isdigit():
            try:
                return {"value": int(head), "unit": ReminderTimeUnit(tail)}
            except ValueError:
                pass
        legacy = _LEGACY_INTERVALS.get(data)
        if legacy is None:
            logger.debug(f"Unknown sticky reminder interval {data!r}, defaulting to every hour")
            legacy = (1, ReminderTimeUnit.HOURS)
        return {"value": legacy[0], "unit": legacy[1]}

    @model_serializer
    def _to_wire_string(self) -> str:
        return self.encoded

    @property
    def encoded(self) -> str:
        return f"{self.value}_{ReminderTimeUnit(self.unit).value}"

    @property
    def seconds(self) -> int:
        return self.value * ReminderTimeUnit(self.unit).seconds


class StickyReminder(SyncedEntity):
    title: str
    message: Optional[str] = None
    trigger_time: FlexibleDatetime
    repeat_interval: StickyReminderInterval = Field(default_factory=StickyReminderInterval)
    is_active: bool = True
    is_dismissed: bool = False
    last_notified_at: Optional[FlexibleDatetime] = None
    sort_order: int = 0

    @property
    def should_notify(self) -> bool:
        return self.is_active and not self.is_dismissed


ENTITY_MODELS: Dict[str, Type[SyncedEntity]] = {
    EntityType.ACCOUNT.value: Account,
    EntityType.ACCOUNT_MEMBER.value: AccountMember,
    EntityType.PROFILE.value: Profile,
    EntityType.PROFILE_DETAIL.value: ProfileDetail,
    EntityType.PROFILE_CONNECTION.value: ProfileConnection,
    EntityType.IMPORTANT_ACCOUNT.value: ImportantAccount,
    EntityType.MEDICATION.value: Medication,
    EntityType.MEDICATION_SCHEDULE.value: MedicationSchedule,
    EntityType.MEDICATION_LOG.value: MedicationLog,
    EntityType.APPOINTMENT.value: Appointment,
    EntityType.USEFUL_CONTACT.value: UsefulContact,
    EntityType.MOOD_ENTRY.value: MoodEntry,
    EntityType.TODO_LIST.value: ToDoList,
    EntityType.TODO_ITEM.value: ToDoItem,
    EntityType.STICKY_REMINDER.value: StickyReminder,
    EntityType.COUNTDOWN.value: Countdown,
    EntityType.RECIPE.value: Recipe,
    EntityType.PLANNED_MEAL.value: PlannedMeal,
    EntityType.USER_PREFERENCES.value: UserPreferences,
}


def model_for(entity_type) -> Type[SyncedEntity]:
    try:
        return ENTITY_MODELS[entity_key(entity_type)]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type}") from None


def decode_entity(entity_type, record: Dict[str, Any]) -> SyncedEntity:
    """Validate a wire/local record into its domain model, raising DecodeError on failure."""
    model = model_for(entity_type)
    try:
        return model.model_validate(record)
    except ValidationError as e:
        raise DecodeError(f"Failed to decode {entity_key(entity_type)}: {e.error_count()} error(s): {e}",
                          entity_type=entity_key(entity_type), raw=record) from e
