"""Unit tests for data models."""
from datetime import datetime, timedelta, timezone

import pytest

from processor.models import (
    NO_LIMIT_LABEL,
    EventsPage,
    MeetingRecord,
    Result,
    Tag,
    User,
    UsersPage,
    has_more_pages,
    to_utc_aware,
)
from processor.errors import NetworkError
from conftest import make_event, make_user


class TestUser:
    """Test cases for User model."""

    def test_requires_display_name_and_profile_url(self):
        """Test that display name and profile URL are mandatory."""
        with pytest.raises(ValueError):
            make_user(1, display_name=' ')

        with pytest.raises(ValueError):
            User(user_id=1, nickname='a', display_name='A', profile_url='')

    def test_rejects_non_positive_id(self):
        """Test that a non-positive user id is rejected."""
        with pytest.raises(ValueError):
            make_user(0)

    def test_profile_helpers(self):
        """Test profile and icon helpers treat blank text as absent."""
        user = make_user(1, profile='  ', icon_url='https://example.com/a.png')

        assert not user.has_profile()
        assert user.has_custom_icon()

    def test_matches_nickname_or_display_name(self):
        """Test case-insensitive matching on nickname and display name."""
        user = make_user(1, nickname='haru', display_name='Haruka Sato')

        assert user.matches('HAR')
        assert user.matches('sato')
        assert not user.matches('kotlin')


class TestEvent:
    """Test cases for Event model."""

    def test_unlimited_capacity_is_labelled_no_limit(self):
        """Test that a missing limit is shown as 'no limit', not zero."""
        event = make_event(1, limit=None, accepted_count=30)

        assert event.is_unlimited()
        assert event.capacity_label() == NO_LIMIT_LABEL
        assert event.available_slots() is None
        assert not event.is_full()

    def test_limited_capacity(self):
        """Test capacity helpers for an event with a limit."""
        event = make_event(1, limit=20, accepted_count=25, waitlist_count=3)

        assert event.capacity_label() == '20'
        assert event.is_full()
        assert event.available_slots() == 0
        assert event.has_waiting_list()
        assert event.total_participants() == 28

    def test_end_before_start_rejected(self):
        """Test that an event ending before it starts is rejected."""
        event = make_event(1)
        with pytest.raises(ValueError):
            make_event(1, started_at=event.started_at, ended_at=event.started_at - timedelta(minutes=1))

    def test_naive_timestamps_rejected(self):
        """Test that event times without a UTC offset are rejected."""
        with pytest.raises(ValueError):
            make_event(1, started_at=datetime(2024, 1, 1, 10), ended_at=None)

    def test_online_event_has_no_address(self):
        """Test that an event without an address is online."""
        assert make_event(1).is_online()
        assert not make_event(1, address='Tokyo').is_online()

    def test_matches_title_and_tags(self):
        """Test matching on title and tag labels."""
        event = make_event(1, title='Python Meetup', tags=('kotlin',))

        assert event.matches('meetup')
        assert event.matches('Kotlin')
        assert not event.matches('rust')


def test_tag_from_label_case_folds_key():
    """Test that the tag id is the case-folded label."""
    tag = Tag.from_label('  PyConJP ')

    assert tag.tag_id == 'pyconjp'
    assert tag.label == 'PyConJP'


def test_meeting_record_key():
    """Test the composite meeting record key."""
    record = MeetingRecord(user_id=5, event_id=42)

    assert record.key == (5, 42)
    assert record.created_at.tzinfo is not None


@pytest.mark.parametrize('start, returned, available, expected', [
    (1, 10, 15, True),
    (11, 5, 15, False),
    (1, 10, 10, False),
    (1, 0, 15, False),
])
def test_has_more_pages(start, returned, available, expected):
    """Test the more-pages rule for pagination counters."""
    assert has_more_pages(start, returned, available) is expected


def test_pages_expose_has_more():
    """Test that pages expose has_more."""
    assert UsersPage(1, 10, 15, users=[]).has_more
    assert not EventsPage(11, 5, 15, events=[]).has_more


def test_result_constructors():
    """Test the Result success and failure constructors."""
    success = Result.success([1, 2], stale=True)
    failure = Result.failure(NetworkError())

    assert success.ok and success.stale and success.value == [1, 2]
    assert not failure.ok and isinstance(failure.error, NetworkError)


def test_to_utc_aware():
    """Test that naive datetimes get UTC and aware ones are untouched."""
    jst = timezone(timedelta(hours=9))
    aware = datetime(2024, 1, 1, 10, tzinfo=jst)

    assert to_utc_aware(datetime(2024, 1, 1, 10)) == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
    assert to_utc_aware(aware) is aware


def test_meeting_record_requires_aware_created_at():
    """Test that a meeting record creation time must carry an offset."""
    with pytest.raises(ValueError):
        MeetingRecord(user_id=1, event_id=2, created_at=datetime(2024, 1, 1))
