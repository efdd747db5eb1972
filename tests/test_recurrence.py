import logging
import threading
from datetime import date

import pytest

from strata_cmms.models import MaintenanceSchedule, RecurrencePattern, ScheduleRecurrence, WorkOrder
from strata_cmms.recurrence import (PATTERN_TO_SCHEDULE, KeyedLocks, RecurrenceSynchronizer,
                                    SyncAction, add_months, occurrences)
from strata_cmms.store import StoreError

TODAY = date(2025, 3, 10)


def make_wo(**overrides):
    fields = dict(id=None, building_id=4, title="Gutter clean", description="Level 3 gutters",
                  due_date=date(2025, 4, 1), assigned_contractor_id=9, assigned_to="Sam",
                  is_recurring=True, recurrence_pattern=RecurrencePattern.MONTHLY,
                  recurrence_end_date=None)
    fields.update(overrides)
    return WorkOrder(**fields)


@pytest.fixture
def sync(store):
    return RecurrenceSynchronizer(store, today=lambda: TODAY)


def linked(store, wo_id):
    return store.collection("MaintenanceSchedule").filter(work_order_id=wo_id)


def test_mapping_covers_every_pattern():
    assert set(PATTERN_TO_SCHEDULE) == set(RecurrencePattern)
    assert PATTERN_TO_SCHEDULE[RecurrencePattern.DAILY] == ScheduleRecurrence.ONE_TIME
    assert PATTERN_TO_SCHEDULE[RecurrencePattern.WEEKLY] == ScheduleRecurrence.ONE_TIME
    assert PATTERN_TO_SCHEDULE[RecurrencePattern.QUARTERLY] == ScheduleRecurrence.QUARTERLY


def test_create_monthly_without_end(store, sync):
    result = sync.sync(1, make_wo())
    assert result.action == SyncAction.CREATED and result.ok
    [s] = linked(store, 1)
    assert s["id"] == result.schedule_id
    assert s["recurrence"] == "monthly"
    assert s["never_expire"] == 1
    assert s["event_end"] is None
    assert s["event_start"] == "2025-04-01"
    assert s["subject"] == "Gutter clean"
    assert s["description"] == "Level 3 gutters"
    assert s["building_id"] == 4
    assert s["contractor_id"] == 9
    assert s["assigned_to"] == "Sam"
    assert s["status"] == "active"


def test_weekly_with_end_date_collapses_to_one_time(store, sync):
    wo = make_wo(recurrence_pattern=RecurrencePattern.WEEKLY, recurrence_end_date=date(2025, 12, 31))
    sync.sync(2, wo)
    [s] = linked(store, 2)
    assert s["recurrence"] == "one_time"
    assert s["never_expire"] == 0
    assert s["event_end"] == "2025-12-31"


def test_missing_due_date_starts_today(store, sync):
    sync.sync(3, make_wo(due_date=None))
    [s] = linked(store, 3)
    assert s["event_start"] == TODAY.isoformat()


def without_timestamp(record):
    return {k: v for k, v in record.items() if k != "updated_at"}


def test_sync_is_idempotent(store, sync):
    first = sync.sync(5, make_wo())
    [after_first] = linked(store, 5)
    second = sync.sync(5, make_wo())
    [after_second] = linked(store, 5)
    assert without_timestamp(after_second) == without_timestamp(after_first)
    assert first.action == SyncAction.CREATED
    assert second.action == SyncAction.UPDATED
    assert second.schedule_id == first.schedule_id
    assert len(linked(store, 5)) == 1


def test_update_overwrites_fields_and_reactivates(store, sync):
    created = sync.sync(6, make_wo())
    schedules = store.collection("MaintenanceSchedule")
    schedules.update(created.schedule_id, {"status": "completed", "subject": "edited by hand"})
    sync.sync(6, make_wo(title="Gutter + downpipes", recurrence_pattern=RecurrencePattern.YEARLY))
    s = schedules.get(created.schedule_id)
    assert s["subject"] == "Gutter + downpipes"
    assert s["recurrence"] == "yearly"
    assert s["status"] == "active"
    assert s["work_order_id"] == 6


def test_unflagging_deletes_linked_schedule(store, sync):
    sync.sync(7, make_wo())
    result = sync.sync(7, make_wo(is_recurring=False))
    assert result.action == SyncAction.DELETED
    assert linked(store, 7) == []


def test_not_recurring_and_unlinked_is_noop(store, sync):
    assert sync.sync(8, make_wo(is_recurring=False)).action == SyncAction.NOOP
    assert sync.remove(8).action == SyncAction.NOOP
    assert linked(store, 8) == []


def test_toggle_never_leaves_two_schedules(store, sync):
    sync.sync(9, make_wo())
    assert len(linked(store, 9)) == 1
    sync.remove(9)
    assert len(linked(store, 9)) == 0
    sync.sync(9, make_wo())
    assert len(linked(store, 9)) == 1


def test_remove_clears_stale_duplicates(store, sync):
    schedules = store.collection("MaintenanceSchedule")
    for _ in range(2):
        schedules.create({"work_order_id": 10, "subject": "dup", "event_start": "2025-01-01"})
    assert sync.remove(10).action == SyncAction.DELETED
    assert linked(store, 10) == []


def test_manual_schedules_are_untouched(store, sync):
    schedules = store.collection("MaintenanceSchedule")
    manual = schedules.create({"subject": "Annual fire inspection", "event_start": "2025-06-01",
                               "recurrence": "yearly"})
    sync.sync(11, make_wo())
    sync.remove(11)
    assert schedules.get(manual["id"])["subject"] == "Annual fire inspection"
    assert len(schedules.list()) == 1


class FailingSchedules:
    def filter(self, **equals):
        return []

    def create(self, fields):
        raise StoreError("disk I/O error")


class FailingStore:
    def collection(self, name):
        return FailingSchedules()


def test_store_failure_is_reported_not_raised(caplog):
    sync = RecurrenceSynchronizer(FailingStore(), today=lambda: TODAY)
    with caplog.at_level(logging.ERROR, logger="strata_cmms"):
        result = sync.sync(12, make_wo())
    assert result.action == SyncAction.FAILED
    assert not result.ok
    assert "disk I/O error" in result.reason
    assert "Schedule sync failed for work order 12" in caplog.text


def test_add_months_clamps_to_month_end():
    assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2025, 11, 15), 3) == date(2026, 2, 15)


def test_monthly_occurrences_keep_anchor_day():
    schedule = MaintenanceSchedule(id=1, building_id=1, subject="x", event_start=date(2025, 1, 31),
                                   recurrence=ScheduleRecurrence.MONTHLY, never_expire=True)
    got = list(occurrences(schedule, date(2025, 2, 1), date(2025, 4, 30)))
    assert got == [date(2025, 2, 28), date(2025, 3, 31), date(2025, 4, 30)]


def test_occurrences_stop_at_event_end():
    schedule = MaintenanceSchedule(id=1, building_id=1, subject="x", event_start=date(2025, 1, 15),
                                   recurrence=ScheduleRecurrence.QUARTERLY,
                                   event_end=date(2025, 8, 1), never_expire=False)
    got = list(occurrences(schedule, date(2025, 1, 1), date(2025, 12, 31)))
    assert got == [date(2025, 1, 15), date(2025, 4, 15), date(2025, 7, 15)]


def test_one_time_occurrence():
    schedule = MaintenanceSchedule(id=1, building_id=1, subject="x", event_start=date(2025, 5, 5))
    assert list(occurrences(schedule, date(2025, 5, 1), date(2025, 5, 31))) == [date(2025, 5, 5)]
    assert list(occurrences(schedule, date(2025, 6, 1), date(2025, 6, 30))) == []


def test_concurrent_syncs_for_one_work_order_leave_one_schedule(store):
    locks = KeyedLocks()
    start = threading.Barrier(8)
    results = []

    def worker():
        sync = RecurrenceSynchronizer(store, today=lambda: TODAY, locks=locks)
        start.wait()
        results.append(sync.sync(20, make_wo()))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(linked(store, 20)) == 1
    actions = sorted(r.action.value for r in results)
    assert actions == ["created"] + ["updated"] * 7
    assert len(locks) == 0


def test_keyed_locks_are_reentrant_and_released():
    locks = KeyedLocks()
    with locks(1):
        with locks(1):
            assert locks.holders(1) == 2
        assert locks.holders(1) == 1
        assert locks.holders(2) == 0
    assert locks.holders(1) == 0
    assert len(locks) == 0


def test_keyed_locks_released_after_error():
    locks = KeyedLocks()
    with pytest.raises(RuntimeError):
        with locks("wo-1"):
            raise RuntimeError("boom")
    assert len(locks) == 0


def test_sync_and_remove_leave_no_lock_entries(store):
    locks = KeyedLocks()
    sync = RecurrenceSynchronizer(store, today=lambda: TODAY, locks=locks)
    sync.sync(21, make_wo())
    sync.remove(21)
    assert len(locks) == 0
