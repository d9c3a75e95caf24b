from datetime import datetime, timezone

import pytest

from vm_manager.errors import InvalidSchedule
from vm_manager.schedule import next_run


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "cron, now, expected",
    [
        ("0 * * * *", utc(2024, 1, 1, 10, 30), utc(2024, 1, 1, 11, 0)),
        ("*/15 * * * *", utc(2024, 1, 1, 10, 15), utc(2024, 1, 1, 10, 30)),
        ("30 4 * * *", utc(2024, 1, 1, 10, 0), utc(2024, 1, 2, 4, 30)),
        ("0 0 1 * *", utc(2024, 2, 14, 12, 0), utc(2024, 3, 1, 0, 0)),
    ],
)
def test_next_run_is_strictly_after_now(cron, now, expected):
    assert next_run(cron, now) == expected


def test_naive_now_is_treated_as_utc():
    assert next_run("0 12 * * *", datetime(2024, 6, 1, 9, 0)) == utc(2024, 6, 1, 12, 0)


def test_expression_is_not_a_fixed_offset():
    now = utc(2024, 1, 1, 10, 0)
    assert next_run("5 10 * * *", now) == utc(2024, 1, 1, 10, 5)


@pytest.mark.parametrize("cron", ["", "not a cron", "61 * * * *", "* * * *", "0 25 * * *"])
def test_invalid_expressions(cron):
    with pytest.raises(InvalidSchedule):
        next_run(cron)
