"""
Tests for the occurrence materializer.
"""

from datetime import date, datetime, timedelta

import pytest
import pytz

from conftest import ALICE, BOB
from sharecal.event_wrapper import CanonicalEvent, CustomTime, RepeatOption
from sharecal.materializer import RECURRENCE_CAP, add_years, materialize


def utc(*args) -> datetime:
    return pytz.UTC.localize(datetime(*args))


class TestSingleDay:

    def test_single_occurrence_round_trip(self, make_event):
        """A plain event yields one occurrence with the base id and its own times."""
        event = make_event(start="2025-03-10T14:00:00Z", end="2025-03-10T15:30:00Z")
        occurrences = materialize(event, ALICE)

        assert len(occurrences) == 1
        occ = occurrences[0]
        assert occ.occurrence_id == event.id
        assert occ.base_id == event.id
        assert occ.date_key == "2025-03-10"
        assert occ.start == utc(2025, 3, 10, 14, 0)
        assert occ.end == utc(2025, 3, 10, 15, 30)
        assert not occ.is_all_day

    def test_missing_end_defaults_to_one_hour(self, make_event):
        event = make_event(start="2025-03-10T14:00:00Z", end=None)
        occ = materialize(event)[0]
        assert occ.end - occ.start == timedelta(hours=1)

    def test_all_day_uses_fixed_hours(self, make_event):
        event = make_event(start="2025-03-10T00:00:00Z", end="2025-03-10T23:00:00Z", is_all_day=True)
        occ = materialize(event)[0]
        assert occ.is_all_day
        assert occ.start == utc(2025, 3, 10, 12, 0)
        assert occ.end == utc(2025, 3, 10, 13, 0)

    def test_unparseable_timestamps_still_emit_an_occurrence(self):
        """Malformed stored times fall back to an all-day occurrence on the anchor date."""
        event = CanonicalEvent.from_row({
            "id": "event_bad",
            "title": "Broken",
            "date": "2025-06-01",
            "start_datetime": "yesterday-ish",
            "end_datetime": "2025-13-45T99:00:00Z",
            "user_id": ALICE,
        })
        occurrences = materialize(event, ALICE)

        assert len(occurrences) == 1
        assert occurrences[0].date_key == "2025-06-01"
        assert occurrences[0].is_all_day
        assert occurrences[0].time_unknown

    def test_event_without_date_or_start_has_no_occurrences(self):
        event = CanonicalEvent(id="event_empty", title="Nothing", date=None)
        assert materialize(event) == []

    def test_private_photos_only_for_owner(self, make_event):
        event = make_event(photos=["https://p/public.jpg"], private_photos=["https://p/private.jpg"])

        assert materialize(event, ALICE)[0].photos == ("https://p/public.jpg", "https://p/private.jpg")
        assert materialize(event, BOB)[0].photos == ("https://p/public.jpg",)


class TestMultiDay:

    def test_three_day_span_gets_per_day_ids(self, make_event):
        """2025-01-15 09:00 to 2025-01-17: one occurrence per day, hours preserved."""
        event = make_event(start="2025-01-15T09:00:00Z", end="2025-01-17T10:00:00Z")
        occurrences = materialize(event)

        assert [o.occurrence_id for o in occurrences] == [
            "event_1_2025-01-15", "event_1_2025-01-16", "event_1_2025-01-17",
        ]
        assert {o.base_id for o in occurrences} == {"event_1"}
        for occ in occurrences:
            assert occ.start.hour == 9
            assert occ.end.hour == 10
            assert occ.start.date().isoformat() == occ.date_key

    def test_reminder_only_on_first_day(self, make_event):
        event = make_event(start="2025-01-15T09:00:00Z", end="2025-01-17T10:00:00Z",
                           reminder_time=utc(2025, 1, 15, 8, 45))
        reminders = [o.reminder_time for o in materialize(event)]
        assert reminders == [utc(2025, 1, 15, 8, 45), None, None]

    def test_repeat_option_does_not_expand_a_span(self, make_event):
        event = make_event(start="2025-01-15T09:00:00Z", end="2025-01-17T10:00:00Z",
                           repeat_option="Daily")
        assert len(materialize(event)) == 3

    def test_all_day_span(self, make_event):
        event = make_event(start="2025-01-15T12:00:00Z", end="2025-01-16T13:00:00Z", is_all_day=True)
        occurrences = materialize(event)

        assert [o.date_key for o in occurrences] == ["2025-01-15", "2025-01-16"]
        assert all(o.is_all_day and o.start.hour == 12 and o.end.hour == 13 for o in occurrences)

    def test_overnight_span_never_ends_before_it_starts(self, make_event):
        event = make_event(start="2025-01-15T22:00:00Z", end="2025-01-16T02:00:00Z")
        occurrences = materialize(event)

        assert [o.date_key for o in occurrences] == ["2025-01-15", "2025-01-16"]
        assert all(o.end >= o.start for o in occurrences)
        assert occurrences[0].end == utc(2025, 1, 15, 23, 59, 59)


class TestCustomDates:

    def test_custom_dates_with_per_date_times(self, make_event):
        event = make_event(
            custom_dates=[date(2025, 2, 3), date(2025, 2, 1)],
            custom_times={
                "2025-02-03": CustomTime(start=utc(2025, 2, 3, 18, 0), end=utc(2025, 2, 3, 19, 0)),
            },
            repeat_option="Custom",
        )
        occurrences = materialize(event)

        assert [o.date_key for o in occurrences] == ["2025-02-01", "2025-02-03"]
        assert all(o.occurrence_id == event.id for o in occurrences)
        assert occurrences[0].start == utc(2025, 2, 1, 9, 0)
        assert occurrences[1].start == utc(2025, 2, 3, 18, 0)
        assert occurrences[1].end == utc(2025, 2, 3, 19, 0)

    def test_custom_dates_win_over_periodic_repeat(self, make_event):
        event = make_event(custom_dates=[date(2025, 2, 1)], repeat_option="Daily")
        assert len(materialize(event)) == 1


class TestRecurring:

    def test_weekly_until_end_date(self, make_event):
        """Weekly from 2025-01-01 until 2025-01-22 gives four instances."""
        event = make_event(start="2025-01-01T10:00:00Z", end="2025-01-01T11:00:00Z",
                           repeat_option="Weekly", repeat_end_date=date(2025, 1, 22))
        occurrences = materialize(event)

        assert [o.date_key for o in occurrences] == [
            "2025-01-01", "2025-01-08", "2025-01-15", "2025-01-22",
        ]
        assert all(o.occurrence_id == event.id for o in occurrences)
        assert all(o.start.hour == 10 for o in occurrences)

    def test_daily_without_end_date_is_capped(self, make_event):
        event = make_event(repeat_option="Daily")
        occurrences = materialize(event)

        assert len(occurrences) == RECURRENCE_CAP
        assert occurrences[0].date_key == "2025-01-15"
        assert occurrences[-1].date_key == "2025-04-24"

    def test_cap_applies_even_with_far_end_date(self, make_event):
        event = make_event(repeat_option="Daily", repeat_end_date=date(2030, 1, 1))
        assert len(materialize(event)) == RECURRENCE_CAP

    def test_custom_cap(self, make_event):
        event = make_event(repeat_option="Daily")
        assert len(materialize(event, recurrence_cap=5)) == 5

    def test_daily_with_near_end_date(self, make_event):
        event = make_event(repeat_option="Daily", repeat_end_date=date(2025, 1, 20))
        assert len(materialize(event)) == 6

    def test_yearly_defaults_to_one_year(self, make_event):
        event = make_event(repeat_option="Yearly")
        assert [o.date_key for o in materialize(event)] == ["2025-01-15", "2026-01-15"]

    def test_monthly_skips_months_without_the_day(self, make_event):
        event = make_event(start="2025-01-31T09:00:00Z", end="2025-01-31T10:00:00Z",
                           repeat_option="Monthly", repeat_end_date=date(2025, 5, 31))
        assert [o.date_key for o in materialize(event)] == ["2025-01-31", "2025-03-31", "2025-05-31"]

    def test_monthly_on_the_31st_reaches_the_cap(self, make_event):
        """Test that skipped short months do not cut a long series below the cap."""
        event = make_event(start="2025-01-31T09:00:00Z", end="2025-01-31T10:00:00Z",
                           repeat_option="Monthly", repeat_end_date=date(2045, 12, 31))
        occurrences = materialize(event)
        assert len(occurrences) == RECURRENCE_CAP
        assert occurrences[-1].date_key == "2039-03-31"

    def test_yearly_on_leap_day_reaches_the_cap(self, make_event):
        event = make_event(start="2024-02-29T09:00:00Z", end="2024-02-29T10:00:00Z",
                           repeat_option="Yearly", repeat_end_date=date(2500, 1, 1))
        occurrences = materialize(event)
        assert len(occurrences) == RECURRENCE_CAP
        assert all(o.date_key.endswith("-02-29") for o in occurrences)
        assert occurrences[-1].date_key == "2432-02-29"

    def test_reminder_shifts_with_each_instance(self, make_event):
        event = make_event(repeat_option="Weekly", repeat_end_date=date(2025, 1, 29),
                           reminder_time=utc(2025, 1, 15, 8, 45))
        for occ in materialize(event):
            assert occ.start - occ.reminder_time == timedelta(minutes=15)

    def test_end_date_before_anchor_yields_anchor_only(self, make_event):
        event = make_event(repeat_option="Daily", repeat_end_date=date(2024, 12, 1))
        assert [o.date_key for o in materialize(event)] == ["2025-01-15"]


@pytest.mark.parametrize("day, years, expected", [
    (date(2025, 1, 15), 1, date(2026, 1, 15)),
    (date(2024, 2, 29), 1, date(2025, 2, 28)),
])
def test_add_years(day, years, expected):
    assert add_years(day, years) == expected


def test_repeat_option_parsing_is_lenient():
    assert RepeatOption.from_wire("weekly") == RepeatOption.WEEKLY
    assert RepeatOption.from_wire("fortnightly") == RepeatOption.NONE
    assert RepeatOption.from_wire(None) == RepeatOption.NONE
