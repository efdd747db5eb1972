from datetime import date, datetime

import pytest

from strata_cmms.models import WorkOrder, parse_date, parse_flag


def test_parse_date_accepts_iso_and_date_values():
    assert parse_date("2025-06-01") == date(2025, 6, 1)
    assert parse_date(date(2025, 6, 1)) == date(2025, 6, 1)
    assert parse_date(datetime(2025, 6, 1, 8, 30)) == date(2025, 6, 1)
    assert parse_date(None) is None
    assert parse_date("") is None


@pytest.mark.parametrize("value", ["2025-06-01garbage", "01/06/2025", 20250601, ["2025-06-01"]])
def test_parse_date_rejects_anything_else(value):
    with pytest.raises(ValueError):
        parse_date(value)


def test_parse_flag_accepts_booleans_and_stored_ints():
    assert parse_flag(True) is True
    assert parse_flag(0) is False
    assert parse_flag(1) is True
    assert parse_flag(None) is False


@pytest.mark.parametrize("value", ["false", "true", "1", 2, 1.0])
def test_parse_flag_rejects_other_values(value):
    with pytest.raises(ValueError):
        parse_flag(value)


def test_work_order_rejects_string_recurring_flag():
    with pytest.raises(ValueError):
        WorkOrder.from_record({"title": "x", "is_recurring": "false"})
