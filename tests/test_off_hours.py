"""
Тесты off-hours аннотаторов (off_hours.py).
"""

from datetime import datetime, time, timezone

import pytest

from chat_router.off_hours import (
    DEFAULT_PROMPT_NOTE,
    OFF_HOURS_SUFFIX,
    BusinessHours,
    DaySchedule,
    OffHoursAnnotator,
    default_schedule,
    parse_hhmm,
)


@pytest.fixture
def hours():
    return BusinessHours(schedule=default_schedule("09:00", "18:00"))


class TestBusinessHours:

    def test_open_during_business_hours(self, hours, open_time):
        assert hours.is_open(open_time) is True

    def test_closed_in_the_evening(self, hours, closed_time):
        assert hours.is_open(closed_time) is False

    def test_closing_time_is_exclusive(self, hours):
        # 18:00 по Бангкоку
        assert hours.is_open(datetime(2026, 1, 5, 11, 0, tzinfo=timezone.utc)) is False

    def test_naive_datetime_treated_as_utc(self, hours):
        assert hours.is_open(datetime(2026, 1, 5, 3, 0)) is True

    def test_inactive_day(self, open_time):
        schedule = tuple(
            DaySchedule(day=d.day, open=d.open, close=d.close, active=d.day != "monday")
            for d in default_schedule()
        )
        assert BusinessHours(schedule=schedule).is_open(open_time) is False

    def test_missing_day_is_closed(self, open_time):
        schedule = (DaySchedule(day="tuesday", open=time(9, 0), close=time(18, 0)),)
        assert BusinessHours(schedule=schedule).is_open(open_time) is False

    def test_disabled_schedule_always_open(self, closed_time):
        assert BusinessHours(enabled=False).is_open(closed_time) is True

    def test_parse_hhmm(self):
        assert parse_hhmm(" 09:30 ") == time(9, 30)
        with pytest.raises(ValueError):
            parse_hhmm("0930")


class TestOffHoursAnnotator:

    def test_open_leaves_content(self, hours, open_time):
        assert OffHoursAnnotator(hours)("สวัสดีครับ", open_time) == "สวัสดีครับ"

    def test_closed_appends_suffix(self, hours, closed_time):
        assert OffHoursAnnotator(hours)("สวัสดีครับ", closed_time) == "สวัสดีครับ" + OFF_HOURS_SUFFIX

    def test_existing_marker_not_duplicated(self, hours, closed_time):
        content = "ขณะนี้อยู่นอกเวลาทำการครับ"
        assert OffHoursAnnotator(hours)(content, closed_time) == content

    def test_empty_content(self, hours, closed_time):
        assert OffHoursAnnotator(hours)("", closed_time) == ""

    def test_custom_suffix(self, hours, closed_time):
        assert OffHoursAnnotator(hours, suffix=" (ปิด)")("ok", closed_time) == "ok (ปิด)"

    def test_prompt_note(self, hours, open_time, closed_time):
        annotator = OffHoursAnnotator(hours)
        assert annotator.note(open_time) is None
        assert annotator.note(closed_time) == DEFAULT_PROMPT_NOTE
