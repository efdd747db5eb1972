# strata_cmms/models.py
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional


class RecurrencePattern(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class ScheduleRecurrence(str, Enum):
    ONE_TIME = "one_time"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class ComplianceStatus(str, Enum):
    UNKNOWN = "unknown"
    COMPLIANT = "compliant"
    EXPIRING_SOON = "expiring_soon"
    NON_COMPLIANT = "non_compliant"


SCHEDULE_ACTIVE = "active"


def parse_date(value):
    """Coerce an ISO string, date or datetime into a date. Blank means absent."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Expected an ISO date string, got {value!r}")
    return date.fromisoformat(value)


def parse_flag(value):
    """Accept booleans and the stored 0/1 form only. Missing means false."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise ValueError(f"Expected true/false, got {value!r}")


def format_date(value):
    return value.isoformat() if value else None


@dataclass
class WorkOrder:
    id: Optional[int]
    building_id: Optional[int]
    title: str
    description: Optional[str] = None
    due_date: Optional[date] = None
    assigned_contractor_id: Optional[int] = None
    assigned_to: Optional[str] = None
    status: str = "open"
    priority: str = "medium"
    is_recurring: bool = False
    recurrence_pattern: Optional[RecurrencePattern] = None
    recurrence_end_date: Optional[date] = None

    @classmethod
    def from_record(cls, record):
        """Build from a store row or request payload. Raises ValueError on bad enums/dates."""
        is_recurring = parse_flag(record.get("is_recurring"))
        pattern = record.get("recurrence_pattern")
        if pattern:
            pattern = RecurrencePattern(pattern)
        elif is_recurring:
            pattern = RecurrencePattern.MONTHLY
        else:
            pattern = None
        return cls(
            id=record.get("id"),
            building_id=record.get("building_id"),
            title=record["title"],
            description=record.get("description"),
            due_date=parse_date(record.get("due_date")),
            assigned_contractor_id=record.get("assigned_contractor_id"),
            assigned_to=record.get("assigned_to"),
            status=record.get("status") or "open",
            priority=record.get("priority") or "medium",
            is_recurring=is_recurring,
            recurrence_pattern=pattern,
            recurrence_end_date=parse_date(record.get("recurrence_end_date")),
        )

    def to_fields(self):
        return {
            "building_id": self.building_id,
            "title": self.title,
            "description": self.description,
            "due_date": format_date(self.due_date),
            "assigned_contractor_id": self.assigned_contractor_id,
            "assigned_to": self.assigned_to,
            "status": self.status,
            "priority": self.priority,
            "is_recurring": int(self.is_recurring),
            "recurrence_pattern": self.recurrence_pattern.value if self.recurrence_pattern else None,
            "recurrence_end_date": format_date(self.recurrence_end_date),
        }


@dataclass
class MaintenanceSchedule:
    id: Optional[int]
    building_id: Optional[int]
    subject: str
    event_start: date
    recurrence: ScheduleRecurrence = ScheduleRecurrence.ONE_TIME
    description: Optional[str] = None
    event_end: Optional[date] = None
    contractor_id: Optional[int] = None
    assigned_to: Optional[str] = None
    never_expire: bool = False
    status: str = SCHEDULE_ACTIVE
    work_order_id: Optional[int] = None

    @classmethod
    def from_record(cls, record):
        return cls(
            id=record.get("id"),
            building_id=record.get("building_id"),
            subject=record["subject"],
            event_start=parse_date(record["event_start"]),
            recurrence=ScheduleRecurrence(record.get("recurrence") or ScheduleRecurrence.ONE_TIME.value),
            description=record.get("description"),
            event_end=parse_date(record.get("event_end")),
            contractor_id=record.get("contractor_id"),
            assigned_to=record.get("assigned_to"),
            never_expire=parse_flag(record.get("never_expire")),
            status=record.get("status") or SCHEDULE_ACTIVE,
            work_order_id=record.get("work_order_id"),
        )

    def to_fields(self):
        return {
            "building_id": self.building_id,
            "subject": self.subject,
            "description": self.description,
            "event_start": format_date(self.event_start),
            "event_end": format_date(self.event_end),
            "recurrence": self.recurrence.value,
            "contractor_id": self.contractor_id,
            "assigned_to": self.assigned_to,
            "never_expire": int(self.never_expire),
            "status": self.status,
            "work_order_id": self.work_order_id,
        }
