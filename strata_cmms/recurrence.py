# strata_cmms/recurrence.py
"""Keeps one generated MaintenanceSchedule per recurring WorkOrder.

The schedule is a projection of the work order, linked by ``work_order_id``.
Synchronization runs after the work order is saved and is best effort: a
failing schedule write is logged and reported in the returned SyncResult,
never raised to the caller.
"""
import calendar
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional

from .app_logger import get_logger
from .models import (SCHEDULE_ACTIVE, MaintenanceSchedule, RecurrencePattern,
                     ScheduleRecurrence)
from .store import StoreError

logger = get_logger("recurrence")

# daily/weekly have no schedule counterpart and collapse to a single entry
PATTERN_TO_SCHEDULE = {
    RecurrencePattern.DAILY: ScheduleRecurrence.ONE_TIME,
    RecurrencePattern.WEEKLY: ScheduleRecurrence.ONE_TIME,
    RecurrencePattern.MONTHLY: ScheduleRecurrence.MONTHLY,
    RecurrencePattern.QUARTERLY: ScheduleRecurrence.QUARTERLY,
    RecurrencePattern.YEARLY: ScheduleRecurrence.YEARLY,
}

MONTHS_PER_STEP = {
    ScheduleRecurrence.MONTHLY: 1,
    ScheduleRecurrence.QUARTERLY: 3,
    ScheduleRecurrence.YEARLY: 12,
}


class SyncAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    NOOP = "noop"
    FAILED = "failed"


@dataclass
class SyncResult:
    action: SyncAction
    schedule_id: Optional[int] = None
    reason: Optional[str] = None

    @property
    def ok(self):
        return self.action is not SyncAction.FAILED

    def to_dict(self):
        return {"ok": self.ok, "action": self.action.value,
                "schedule_id": self.schedule_id, "reason": self.reason}


class KeyedLocks:
    """One reentrant lock per key, dropped once no thread holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}  # key -> [lock, holders]

    def __len__(self):
        return len(self._locks)

    def holders(self, key):
        with self._guard:
            entry = self._locks.get(key)
            return entry[1] if entry else 0

    @contextmanager
    def __call__(self, key):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


work_order_locks = KeyedLocks()


def schedule_recurrence(pattern):
    return PATTERN_TO_SCHEDULE[RecurrencePattern(pattern)]


def schedule_fields(work_order_id, work_order, today):
    """Schedule fields derived from a work order, identical for create and update."""
    schedule = MaintenanceSchedule(
        id=None,
        work_order_id=work_order_id,
        building_id=work_order.building_id,
        subject=work_order.title,
        description=work_order.description,
        event_start=work_order.due_date or today,
        event_end=work_order.recurrence_end_date,
        never_expire=work_order.recurrence_end_date is None,
        recurrence=schedule_recurrence(work_order.recurrence_pattern or RecurrencePattern.MONTHLY),
        contractor_id=work_order.assigned_contractor_id,
        assigned_to=work_order.assigned_to,
        status=SCHEDULE_ACTIVE,
    )
    return schedule.to_fields()


class RecurrenceSynchronizer:
    def __init__(self, store, today=None, locks=None):
        self.schedules = store.collection("MaintenanceSchedule")
        self.today = today or date.today
        self.locks = locks if locks is not None else work_order_locks

    def _linked(self, work_order_id):
        return self.schedules.filter(work_order_id=work_order_id)

    def sync(self, work_order_id, work_order):
        if not work_order.is_recurring:
            return self.remove(work_order_id)
        with self.locks(work_order_id):
            try:
                fields = schedule_fields(work_order_id, work_order, self.today())
                linked = self._linked(work_order_id)
                if not linked:
                    created = self.schedules.create(fields)
                    logger.info("Created schedule %s for work order %s", created["id"], work_order_id)
                    return SyncResult(SyncAction.CREATED, created["id"])
                if len(linked) > 1:
                    logger.warning("Work order %s has %d linked schedules; updating %s",
                                   work_order_id, len(linked), linked[0]["id"])
                fields.pop("work_order_id")
                updated = self.schedules.update(linked[0]["id"], fields)
                logger.info("Updated schedule %s for work order %s", updated["id"], work_order_id)
                return SyncResult(SyncAction.UPDATED, updated["id"])
            except StoreError as e:
                logger.exception("Schedule sync failed for work order %s", work_order_id)
                return SyncResult(SyncAction.FAILED, reason=str(e))

    def remove(self, work_order_id):
        with self.locks(work_order_id):
            try:
                linked = self._linked(work_order_id)
                if not linked:
                    return SyncResult(SyncAction.NOOP)
                for schedule in linked:
                    self.schedules.delete(schedule["id"])
                    logger.info("Deleted schedule %s for work order %s", schedule["id"], work_order_id)
                return SyncResult(SyncAction.DELETED, linked[0]["id"])
            except StoreError as e:
                logger.exception("Schedule removal failed for work order %s", work_order_id)
                return SyncResult(SyncAction.FAILED, reason=str(e))


def add_months(d, months):
    month_index = d.month - 1 + months
    year, month = d.year + month_index // 12, month_index % 12 + 1
    return date(year, month, min(d.day, calendar.monthrange(year, month)[1]))


def occurrences(schedule, start, end):
    """Event dates of a schedule that fall inside [start, end]."""
    last = end if schedule.never_expire or schedule.event_end is None else min(end, schedule.event_end)
    step = MONTHS_PER_STEP.get(schedule.recurrence)
    if step is None:
        if start <= schedule.event_start <= last:
            yield schedule.event_start
        return
    n = 0
    current = schedule.event_start
    while current <= last:
        if current >= start:
            yield current
        n += 1
        # offset from event_start, not from the previous occurrence
        current = add_months(schedule.event_start, n * step)

