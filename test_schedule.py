from datetime import datetime, time, timedelta, timezone

import pytest

from dataexport.schedule import compute_next_run, describe_schedule, parse_week_days


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


NOW = utc(2024, 5, 1, 12, 0)


def test_interval_runs_one_interval_after_reference(make_job):
    job = make_job(schedule_type="Interval", interval_minutes=15)
    assert compute_next_run(job, NOW) == NOW + timedelta(minutes=15)


def test_interval_catch_up_after_downtime_schedules_single_run(make_job):
    # Last ran three hours ago; missed ticks are not replayed
    job = make_job(schedule_type="Interval", interval_minutes=60,
                   last_run_time=NOW - timedelta(hours=3), next_run_time=NOW - timedelta(hours=2))
    assert compute_next_run(job, NOW) == NOW + timedelta(hours=1)


def test_interval_defaults_to_an_hour(make_job):
    job = make_job(schedule_type="Interval", interval_minutes=None)
    assert compute_next_run(job, NOW) == NOW + timedelta(hours=1)


@pytest.mark.parametrize("reference, expected", [
    (utc(2024, 2, 10), utc(2024, 2, 29, 9)),          # leap year
    (utc(2023, 2, 10), utc(2023, 2, 28, 9)),
    (utc(2024, 1, 31, 10), utc(2024, 2, 29, 9)),      # today's run already passed
    (utc(2024, 3, 1), utc(2024, 3, 31, 9)),
    (utc(2024, 12, 31, 10), utc(2025, 1, 31, 9)),
])
def test_monthly_day_31_is_clamped_to_month_length(make_job, reference, expected):
    job = make_job(schedule_type="Monthly", month_day=31, start_time=time(9, 0))
    assert compute_next_run(job, reference) == expected


@pytest.mark.parametrize("reference, expected", [
    (utc(2024, 5, 6, 8), utc(2024, 5, 6, 9)),         # Monday before 09:00
    (utc(2024, 5, 7, 10), utc(2024, 5, 8, 9)),        # Tuesday -> Wednesday
    (utc(2024, 5, 8, 9), utc(2024, 5, 10, 9)),        # Wednesday at 09:00 -> Friday
    (utc(2024, 5, 10, 10), utc(2024, 5, 13, 9)),      # Friday after -> Monday
    (utc(2024, 5, 11, 12), utc(2024, 5, 13, 9)),      # Saturday -> Monday
])
def test_weekly_selects_monday_wednesday_friday(make_job, reference, expected):
    job = make_job(schedule_type="Weekly", week_days="0,2,4", start_time=time(9, 0))
    assert compute_next_run(job, reference) == expected


def test_weekly_single_day_already_passed_rolls_a_week(make_job):
    job = make_job(schedule_type="Weekly", week_days="2", start_time=time(9, 0))
    assert compute_next_run(job, utc(2024, 5, 8, 10)) == utc(2024, 5, 15, 9)


def test_daily_rolls_to_tomorrow_when_time_passed(make_job):
    job = make_job(schedule_type="Daily", start_time=time(6, 0))
    assert compute_next_run(job, utc(2024, 5, 1, 7)) == utc(2024, 5, 2, 6)
    assert compute_next_run(job, utc(2024, 5, 1, 5)) == utc(2024, 5, 1, 6)


def test_cron_match_is_strictly_after_reference(make_job):
    job = make_job(schedule_type="Cron", cron_expression="0 6 * * *")
    assert compute_next_run(job, utc(2024, 5, 1, 6)) == utc(2024, 5, 2, 6)
    assert compute_next_run(job, utc(2024, 5, 1, 5, 59)) == utc(2024, 5, 1, 6)


@pytest.mark.parametrize("expression, expected", [
    ("0 9 * * 1", utc(2024, 5, 6, 9)),        # Monday
    ("0 9 * * 0", utc(2024, 5, 5, 9)),        # Sunday
    ("0 9 * * 7", utc(2024, 5, 5, 9)),        # Sunday, alternate form
    ("0 9 * * 1-5", utc(2024, 5, 2, 9)),
    ("0 9 * * sat,sun", utc(2024, 5, 4, 9)),
    ("0 9 * * 5-7", utc(2024, 5, 3, 9)),
    ("0 9 * * */3", utc(2024, 5, 4, 9)),      # Sun, Wed, Sat; Wednesday 09:00 already passed
])
def test_cron_day_of_week_uses_crontab_numbering(make_job, expression, expected):
    # NOW is Wednesday 2024-05-01 12:00
    job = make_job(schedule_type="Cron", cron_expression=expression)
    assert compute_next_run(job, NOW) == expected


def test_cron_with_wrong_field_count_falls_back_to_an_hour(make_job):
    job = make_job(schedule_type="Cron", cron_expression="0 9 * * 1 2024")
    assert compute_next_run(job, NOW) == NOW + timedelta(hours=1)


def test_invalid_cron_falls_back_to_an_hour(make_job):
    job = make_job(schedule_type="Cron", cron_expression="not a cron")
    assert compute_next_run(job, NOW) == NOW + timedelta(hours=1)


def test_time_window_moves_run_to_next_window_start(make_job):
    job = make_job(schedule_type="Interval", interval_minutes=60,
                   start_time=time(9, 0), end_time=time(17, 0))
    assert compute_next_run(job, utc(2024, 5, 1, 17, 30)) == utc(2024, 5, 2, 9)
    assert compute_next_run(job, utc(2024, 5, 1, 10)) == utc(2024, 5, 1, 11)


def test_future_start_date_is_the_base(make_job):
    start = NOW + timedelta(days=2)
    job = make_job(schedule_type="Interval", interval_minutes=30, start_date=start)
    assert compute_next_run(job, NOW) == start + timedelta(minutes=30)


@pytest.mark.parametrize("overrides", [
    {"schedule_type": "Manual"},
    {"is_enabled": False},
    {"end_date": NOW - timedelta(minutes=1)},
])
def test_no_next_run(make_job, overrides):
    assert compute_next_run(make_job(**overrides), NOW) is None


@pytest.mark.parametrize("overrides", [
    {"schedule_type": "Interval", "interval_minutes": 1},
    {"schedule_type": "Cron", "cron_expression": "*/5 * * * *"},
    {"schedule_type": "Daily", "start_time": time(12, 0)},
    {"schedule_type": "Weekly", "week_days": "2", "start_time": time(12, 0)},
    {"schedule_type": "Monthly", "month_day": 1, "start_time": time(12, 0)},
    {"schedule_type": "Interval", "interval_minutes": 60, "start_time": time(12, 0), "end_time": time(12, 0)},
])
def test_next_run_is_always_in_the_future(make_job, overrides):
    # NOW is Wednesday the 1st at exactly 12:00
    result = compute_next_run(make_job(**overrides), NOW)
    assert result is not None
    assert result > NOW


def test_naive_reference_is_treated_as_utc(make_job):
    job = make_job(schedule_type="Interval", interval_minutes=10)
    assert compute_next_run(job, datetime(2024, 5, 1, 12, 0)) == NOW + timedelta(minutes=10)


def test_parse_week_days_ignores_garbage():
    assert parse_week_days("4, 0,x,9,2") == [0, 2, 4]
    assert parse_week_days(None) == [0]


def test_describe_schedule(make_job):
    assert describe_schedule(make_job(schedule_type="Weekly", week_days="0,4", start_time=time(7, 30))) == \
        "Weekly on Mon, Fri at 07:30"
    assert describe_schedule(make_job(schedule_type="Manual")) == "Manual"
