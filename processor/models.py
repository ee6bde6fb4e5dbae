"""Data models for users, events, tags and meeting records."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Generic, List, Optional, Tuple, TypeVar

from processor.errors import DataError

T = TypeVar('T')

NO_LIMIT_LABEL = "no limit"


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ValueError(message)


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def _is_aware(value: datetime) -> bool:
    return value.tzinfo is not None and value.utcoffset() is not None


def to_utc_aware(value: datetime) -> datetime:
    """Attach UTC to a naive datetime; offset-aware values are returned as is."""
    return value if _is_aware(value) else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class User:
    """User profile, keyed by the remote-assigned user_id."""
    user_id: int
    nickname: str
    display_name: str
    profile_url: str
    profile: Optional[str] = None
    icon_url: Optional[str] = None
    twitter_handle: Optional[str] = None
    github_username: Optional[str] = None

    def __post_init__(self):
        _require(self.user_id > 0, "User ID must be positive")
        _require(not _is_blank(self.nickname), "Nickname must not be blank")
        _require(not _is_blank(self.display_name), "Display name must not be blank")
        _require(not _is_blank(self.profile_url), "Profile URL must not be blank")

    def has_profile(self) -> bool:
        return not _is_blank(self.profile)

    def has_custom_icon(self) -> bool:
        return not _is_blank(self.icon_url)

    def display_name_or_nickname(self) -> str:
        if self.display_name == self.nickname:
            return self.nickname
        return self.display_name

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match on nickname or display name."""
        needle = query.strip().casefold()
        if not needle:
            return True
        return needle in self.nickname.casefold() or needle in self.display_name.casefold()


@dataclass(frozen=True)
class Tag:
    """Label attached to events or meeting records."""
    tag_id: str
    label: str

    def __post_init__(self):
        _require(not _is_blank(self.tag_id), "Tag ID must not be blank")
        _require(not _is_blank(self.label), "Tag label must not be blank")

    @classmethod
    def from_label(cls, label: str) -> 'Tag':
        """
        Build a tag whose natural key is the case-folded label.

        Args:
            label: Tag text as entered or received

        Returns:
            Tag instance
        """
        label = label.strip()
        _require(bool(label), "Tag label must not be blank")
        return cls(tag_id=label.casefold(), label=label)


@dataclass(frozen=True)
class Event:
    """Event as listed by the remote API."""
    event_id: int
    title: str
    url: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    accepted_count: int = 0
    waitlist_count: int = 0
    limit: Optional[int] = None
    catch: Optional[str] = None
    description: Optional[str] = None
    address: Optional[str] = None
    place: Optional[str] = None
    owner_nickname: Optional[str] = None
    updated_at: Optional[datetime] = None
    tags: Tuple[Tag, ...] = ()

    def __post_init__(self):
        _require(self.event_id > 0, "Event ID must be positive")
        _require(not _is_blank(self.title), "Event title must not be blank")
        _require(not _is_blank(self.url), "Event URL must not be blank")
        _require(self.accepted_count >= 0, "Accepted count must not be negative")
        _require(self.waitlist_count >= 0, "Waiting count must not be negative")
        for value in (self.started_at, self.ended_at, self.updated_at):
            if value is not None:
                _require(_is_aware(value), "Event timestamps must include a UTC offset")
        if self.limit is not None:
            _require(self.limit >= 0, "Participant limit must not be negative")
        if self.ended_at is not None:
            _require(
                self.ended_at >= self.started_at,
                "Event end time must not be before start time"
            )

    def is_unlimited(self) -> bool:
        return self.limit is None or self.limit == 0

    def is_full(self) -> bool:
        if self.is_unlimited():
            return False
        return self.accepted_count >= self.limit

    def available_slots(self) -> Optional[int]:
        if self.is_unlimited():
            return None
        return max(0, self.limit - self.accepted_count)

    def has_waiting_list(self) -> bool:
        return self.waitlist_count > 0

    def is_online(self) -> bool:
        return _is_blank(self.address)

    def total_participants(self) -> int:
        return self.accepted_count + self.waitlist_count

    def capacity_label(self) -> str:
        if self.is_unlimited():
            return NO_LIMIT_LABEL
        return str(self.limit)

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match over the searchable text fields."""
        needle = query.strip().casefold()
        if not needle:
            return True
        haystack = [
            self.title, self.catch, self.description, self.place, self.address
        ] + [tag.label for tag in self.tags]
        return any(text and needle in text.casefold() for text in haystack)


@dataclass(frozen=True)
class MeetingRecord:
    """A user met at an event. Created locally, never fetched remotely."""
    user_id: int
    event_id: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    nickname: Optional[str] = None
    notes: Optional[str] = None
    tag_labels: Tuple[str, ...] = ()

    def __post_init__(self):
        _require(self.user_id > 0, "User ID must be positive")
        _require(self.event_id > 0, "Event ID must be positive")
        _require(_is_aware(self.created_at), "Creation time must include a UTC offset")

    @property
    def key(self) -> Tuple[int, int]:
        return (self.user_id, self.event_id)


@dataclass(frozen=True)
class UsersPage:
    """One page of user search results with the API pagination counters."""
    results_start: int
    results_returned: int
    results_available: int
    users: List[User]

    @property
    def has_more(self) -> bool:
        return has_more_pages(self.results_start, self.results_returned, self.results_available)


@dataclass(frozen=True)
class EventsPage:
    """One page of event search results with the API pagination counters."""
    results_start: int
    results_returned: int
    results_available: int
    events: List[Event]

    @property
    def has_more(self) -> bool:
        return has_more_pages(self.results_start, self.results_returned, self.results_available)


def has_more_pages(results_start: int, results_returned: int, results_available: int) -> bool:
    """
    Decide whether another page exists after the current one.

    Args:
        results_start: 1-based index of the first item in the page
        results_returned: Number of items in the page
        results_available: Total number of matching items

    Returns:
        True if items remain past this page
    """
    if results_returned <= 0:
        return False
    return results_start + results_returned <= results_available


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Outcome of a data operation: a value or exactly one DataError.

    stale is set when the value was served from the local store because
    the remote source was unavailable.
    """
    value: Optional[T] = None
    error: Optional[DataError] = None
    stale: bool = False
    total_available: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(
        cls,
        value: T = None,
        stale: bool = False,
        total_available: Optional[int] = None
    ) -> 'Result[T]':
        return cls(value=value, stale=stale, total_available=total_available)

    @classmethod
    def failure(cls, error: DataError) -> 'Result[T]':
        return cls(error=error)
