"""Tests for per-participant free time resolution.

Covers:
- search_window bounds with and without a deadline
- Calendar participants: busy time inverted, weekends removed
- Manual participants: submissions clipped to the window, weekends removed
- A transient busy lookup failure degrades to "no busy time"; any other failure is raised
- Calendar participants without a usable token fall back to submissions
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from callagent.core.availability import (
    AvailabilityResolver,
    BusyLookupError,
    free_from_busy,
    free_from_submissions,
    search_window,
)
from callagent.core.intervals import Interval
from callagent.models import AvailabilitySubmission, Call, CallKind, CallStatus, ParticipantLink
from callagent.providers.base import (
    CalendarError,
    CalendarRequestError,
    CalendarUnavailableError,
)
from callagent.testing import FakeCalendarProvider

pytestmark = pytest.mark.unit

ROME = ZoneInfo("Europe/Rome")


def _t(day: int, hour: int, minute: int = 0) -> datetime:
    """October 2026 in Rome; the 19th is a Monday."""
    return datetime(2026, 10, day, hour, minute, tzinfo=ROME)


NOW = _t(19, 10)


def _call(deadline: datetime | None = _t(23, 18), created_at: datetime = _t(18, 9)) -> Call:
    return Call(
        id="call-1",
        title="Screening",
        created_at=created_at,
        status=CallStatus.PROCESSING,
        kind=CallKind.SCREENING,
        duration_minutes=30,
        deadline=deadline,
    )


def _link(participant_id: str, *, has_calendar: bool) -> ParticipantLink:
    return ParticipantLink(
        call_id="call-1",
        participant_id=participant_id,
        name=participant_id,
        email=participant_id,
        has_calendar=has_calendar,
        access_token=None if has_calendar else f"tok-{participant_id}",
    )


def _submission(participant_id: str, start: datetime, minutes: int) -> AvailabilitySubmission:
    return AvailabilitySubmission("call-1", participant_id, start, minutes)


class TestSearchWindow:
    def test_now_to_deadline(self):
        assert search_window(_call(), NOW) == Interval(NOW, _t(23, 18))

    def test_starts_at_creation_when_created_in_future(self):
        call = _call(created_at=_t(20, 9))
        assert search_window(call, NOW).start == _t(20, 9)

    def test_default_horizon_without_deadline(self):
        window = search_window(_call(deadline=None), NOW, default_days=14)
        assert window == Interval(NOW, NOW + timedelta(days=14))


class TestFreeFromBusy:
    def test_inverts_busy_within_window(self):
        window = Interval(_t(19, 8), _t(19, 18))
        busy = [Interval(_t(19, 9), _t(19, 10)), Interval(_t(19, 12), _t(19, 13))]
        assert free_from_busy(busy, window, ROME) == [
            Interval(_t(19, 8), _t(19, 9)),
            Interval(_t(19, 10), _t(19, 12)),
            Interval(_t(19, 13), _t(19, 18)),
        ]

    def test_weekend_removed(self):
        window = Interval(_t(23, 12), _t(26, 12))
        assert free_from_busy([], window, ROME) == [
            Interval(_t(23, 12), _t(24, 0)),
            Interval(_t(26, 0), _t(26, 12)),
        ]


class TestFreeFromSubmissions:
    def test_clipped_to_window(self):
        window = Interval(NOW, _t(23, 18))
        submissions = [
            _submission("m", _t(19, 8), 180),  # starts before the window
            _submission("m", _t(21, 14), 60),
            _submission("m", _t(30, 9), 60),  # after the deadline
        ]
        assert free_from_submissions(submissions, window, ROME) == [
            Interval(NOW, _t(19, 11)),
            Interval(_t(21, 14), _t(21, 15)),
        ]

    def test_weekend_submission_dropped(self):
        window = Interval(NOW, _t(30, 18))
        submissions = [_submission("m", _t(24, 10), 120)]
        assert free_from_submissions(submissions, window, ROME) == []

    def test_overlapping_submissions_merged(self):
        window = Interval(NOW, _t(23, 18))
        submissions = [_submission("m", _t(21, 9), 60), _submission("m", _t(21, 9, 30), 60)]
        assert free_from_submissions(submissions, window, ROME) == [
            Interval(_t(21, 9), _t(21, 10, 30))
        ]


class TestAvailabilityResolver:
    @pytest.fixture
    def provider(self) -> FakeCalendarProvider:
        return FakeCalendarProvider()

    @pytest.fixture
    def resolver(self, provider: FakeCalendarProvider) -> AvailabilityResolver:
        return AvailabilityResolver(provider, ROME)

    async def test_resolves_both_kinds(self, resolver, provider):
        provider.busy["tok-cal"] = [Interval(_t(20, 0), _t(23, 18))]
        links = [_link("cal", has_calendar=True), _link("man", has_calendar=False)]
        submissions = [_submission("man", _t(21, 9), 60)]

        free = await resolver.resolve(_call(), links, submissions, {"cal": "tok-cal"}, NOW)

        assert free["cal"] == [Interval(NOW, _t(20, 0))]
        assert free["man"] == [Interval(_t(21, 9), _t(21, 10))]
        assert provider.freebusy_calls == [("tok-cal", "primary", Interval(NOW, _t(23, 18)))]

    @pytest.mark.parametrize(
        "error",
        [
            CalendarUnavailableError("connection reset"),
            CalendarRequestError(status_code=429, message="rate limited"),
            CalendarRequestError(status_code=500, message="backend error"),
        ],
    )
    async def test_transient_failure_means_no_busy_time(self, resolver, provider, error):
        provider.busy["tok-cal"] = [Interval(NOW, _t(23, 18))]
        provider.freebusy_errors["tok-cal"] = error
        links = [_link("cal", has_calendar=True)]

        free = await resolver.resolve(_call(), links, [], {"cal": "tok-cal"}, NOW)

        assert free["cal"] == [Interval(NOW, _t(23, 18))]

    @pytest.mark.parametrize(
        ("error", "status_code"),
        [
            (CalendarRequestError(status_code=401, message="invalid credentials"), 401),
            (CalendarRequestError(status_code=403, message="forbidden"), 403),
            (CalendarError("Google Calendar freeBusy reported errors: notFound"), None),
            (CalendarError("Google Calendar API returned invalid JSON"), None),
        ],
    )
    async def test_permanent_failure_is_raised(self, resolver, provider, error, status_code):
        provider.freebusy_errors["tok-cal"] = error
        links = [_link("cal", has_calendar=True), _link("man", has_calendar=False)]

        with pytest.raises(BusyLookupError) as exc_info:
            await resolver.resolve(_call(), links, [], {"cal": "tok-cal"}, NOW)

        assert exc_info.value.participant_id == "cal"
        assert exc_info.value.status_code == status_code
        assert exc_info.value.__cause__ is error

    async def test_calendar_participant_without_token_uses_submissions(self, resolver, provider):
        links = [_link("cal", has_calendar=True)]
        free = await resolver.resolve(_call(), links, [], {}, NOW)
        assert free == {"cal": []}
        assert provider.freebusy_calls == []

    async def test_manual_participant_without_submissions_has_no_time(self, resolver):
        free = await resolver.resolve(_call(), [_link("man", has_calendar=False)], [], {}, NOW)
        assert free == {"man": []}

    async def test_window_already_closed(self, resolver, provider):
        links = [_link("cal", has_calendar=True)]
        free = await resolver.resolve(_call(), links, [], {"cal": "tok"}, _t(24, 9))
        assert free == {"cal": []}
        assert provider.freebusy_calls == []
