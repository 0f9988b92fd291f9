"""
Tests for the date index and the reconciliation pass.
"""

from dataclasses import replace
from datetime import date, datetime, timedelta

import pytz

from conftest import ALICE, BOB, CAROL
from sharecal.date_index import DateIndex, build_index, sort_for_display
from sharecal.event_wrapper import Profile, SharingStatus
from sharecal.materializer import materialize
from sharecal.sharing import create_shares, fork_accepted_event, transition


PROFILES = {
    ALICE: Profile(ALICE, username="alice", full_name="Alice Smith"),
    BOB: Profile(BOB, username="bob"),
    CAROL: Profile(CAROL, full_name="Carol Jones"),
}


class TestDateIndex:

    def test_buckets_by_date_key(self, make_event):
        span = make_event("event_span", start="2025-01-15T09:00:00Z", end="2025-01-17T10:00:00Z")
        index = DateIndex.from_occurrences(materialize(span))

        assert index.dates() == ["2025-01-15", "2025-01-16", "2025-01-17"]
        assert len(index) == 3
        assert date(2025, 1, 16) in index
        assert index.find("event_span_2025-01-16").date_key == "2025-01-16"

    def test_replace_event_removes_every_prior_occurrence(self, make_event):
        """Shrinking a multi-day event leaves nothing behind on the dropped days."""
        span = make_event("event_span", start="2025-01-15T09:00:00Z", end="2025-01-17T10:00:00Z")
        other = make_event("event_other", start="2025-01-16T14:00:00Z", end="2025-01-16T15:00:00Z")
        index = DateIndex.from_occurrences(materialize(span) + materialize(other))

        edited = replace(span, end_datetime=span.start_datetime + timedelta(hours=2))
        updated = index.replace_event(span.id, materialize(edited))

        assert updated.occurrences_of("event_span")[0].occurrence_id == "event_span"
        assert len(updated.occurrences_of("event_span")) == 1
        assert [o.base_id for o in updated.get("2025-01-16")] == ["event_other"]
        assert "2025-01-17" not in updated
        # the original index is untouched
        assert len(index.occurrences_of("event_span")) == 3

    def test_base_ids_are_symmetric_between_materializer_and_removal(self, make_event):
        weekly = make_event("event_weekly", repeat_option="Weekly", repeat_end_date=date(2025, 2, 5))
        span = make_event("event_span", start="2025-01-15T09:00:00Z", end="2025-01-17T10:00:00Z")
        index = DateIndex.from_occurrences(materialize(weekly) + materialize(span))

        assert index.base_ids() == {"event_weekly", "event_span"}
        assert len(index.without_base_id("event_weekly").without_base_id("event_span")) == 0

    def test_sort_for_display_puts_all_day_first(self, make_event):
        late = make_event("late", start="2025-01-15T18:00:00Z", end="2025-01-15T19:00:00Z")
        early = make_event("early", start="2025-01-15T07:00:00Z", end="2025-01-15T08:00:00Z")
        all_day = make_event("allday", start="2025-01-15T12:00:00Z", end="2025-01-15T13:00:00Z",
                             is_all_day=True)
        occurrences = materialize(late) + materialize(early) + materialize(all_day)

        assert [o.base_id for o in sort_for_display(occurrences)] == ["allday", "early", "late"]

    def test_between_filters_days(self, make_event):
        daily = make_event("event_daily", repeat_option="Daily", repeat_end_date=date(2025, 1, 31))
        index = DateIndex.from_occurrences(materialize(daily))
        window = index.between(date(2025, 1, 20), date(2025, 1, 22))
        assert list(window) == ["2025-01-20", "2025-01-21", "2025-01-22"]


class TestBuildIndex:

    def test_own_events_only(self, make_event):
        index = build_index(ALICE, [make_event()])
        assert [o.occurrence_id for o in index] == ["event_1"]
        assert not next(iter(index)).is_shared

    def test_pending_share_visible_to_sender_labelled(self, make_event):
        event = make_event()
        share = create_shares(event, ALICE, [BOB])[0]
        index = build_index(ALICE, [event], sent_pending_shared=[share], profiles=PROFILES)

        occurrences = list(index)
        assert len(occurrences) == 1
        assert occurrences[0].shared_status == SharingStatus.PENDING
        assert occurrences[0].sharing.label == "sent - pending"
        assert occurrences[0].shared_by_display_name == "bob"

    def test_pending_share_invisible_to_recipient(self, make_event):
        """Even if a pending share arrives in a stream, the recipient's grid ignores it."""
        event = make_event()
        share = create_shares(event, ALICE, [BOB])[0]

        index = build_index(BOB, [], accepted_shared=[share], sent_pending_shared=[share])
        assert len(index) == 0

    def test_accepted_share_annotates_recipient_copy_without_duplicates(self, make_event):
        event = make_event()
        share = create_shares(event, ALICE, [BOB])[0]
        accepted = transition(share, SharingStatus.ACCEPTED, BOB)
        fork = fork_accepted_event(accepted, BOB)

        index = build_index(BOB, [fork], accepted_shared=[accepted], profiles=PROFILES)

        occurrences = list(index)
        assert len(occurrences) == 1
        assert occurrences[0].base_id == fork.id
        assert occurrences[0].shared_status == SharingStatus.ACCEPTED
        assert occurrences[0].shared_by_display_name == "Alice Smith"

    def test_accepted_share_without_copy_shows_snapshot(self, make_event):
        event = make_event()
        share = create_shares(event, ALICE, [BOB])[0]
        accepted = transition(share, SharingStatus.ACCEPTED, BOB)

        index = build_index(BOB, [], accepted_shared=[accepted], profiles=PROFILES)
        occurrences = list(index)
        assert [o.base_id for o in occurrences] == [accepted.accepted_copy_id]
        assert occurrences[0].owner_id == BOB

    def test_sender_sees_one_set_for_many_recipients(self, make_event):
        event = make_event(repeat_option="Weekly", repeat_end_date=date(2025, 1, 29))
        to_bob, to_carol = create_shares(event, ALICE, [BOB, CAROL])
        accepted = transition(to_bob, SharingStatus.ACCEPTED, BOB)

        index = build_index(ALICE, [event], accepted_shared=[accepted],
                            sent_pending_shared=[to_carol], profiles=PROFILES)

        assert len(index) == 3
        occ = next(iter(index))
        assert occ.sharing.recipients == (BOB, CAROL)
        assert occ.shared_status == SharingStatus.PENDING
        assert occ.shared_by_display_name == "bob, Carol Jones"

    def test_declined_share_contributes_nothing(self, make_event):
        event = make_event()
        share = create_shares(event, ALICE, [BOB])[0]
        declined = transition(share, SharingStatus.DECLINED, BOB)

        alice_index = build_index(ALICE, [event], accepted_shared=[declined])
        assert not next(iter(alice_index)).is_shared
        assert len(build_index(BOB, [], accepted_shared=[declined])) == 0

    def test_latest_copy_of_a_share_wins_across_streams(self, make_event):
        event = make_event()
        share = create_shares(event, ALICE, [BOB],
                              now=pytz.UTC.localize(datetime(2025, 1, 1, 8, 0)))[0]
        accepted = transition(share, SharingStatus.ACCEPTED, BOB,
                              now=pytz.UTC.localize(datetime(2025, 1, 2, 8, 0)))

        index = build_index(ALICE, [event], accepted_shared=[accepted], sent_pending_shared=[share])
        assert next(iter(index)).shared_status == SharingStatus.ACCEPTED
