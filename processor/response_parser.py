"""Parser turning connpass API JSON payloads into typed pages."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from processor.errors import ParseError
from processor.models import Event, EventsPage, Tag, User, UsersPage, to_utc_aware

logger = logging.getLogger(__name__)


class ConnpassResponseParser:
    """Validates and normalizes connpass API responses."""

    PAGINATION_FIELDS = ('results_start', 'results_returned', 'results_available')

    def parse_users_page(self, payload: Any) -> UsersPage:
        """
        Parse a /users/ response body.

        Args:
            payload: Decoded JSON body

        Returns:
            UsersPage with every user in the response

        Raises:
            ParseError: If the body does not have the expected shape
        """
        counters = self._parse_pagination(payload)
        items = self._require_list(payload, 'users')
        users = [self._parse_user(item, index) for index, item in enumerate(items)]
        logger.debug(f"Parsed {len(users)} users from response")
        return UsersPage(users=users, **counters)

    def parse_events_page(self, payload: Any) -> EventsPage:
        """
        Parse an /events/ response body.

        Args:
            payload: Decoded JSON body

        Returns:
            EventsPage with every event in the response

        Raises:
            ParseError: If the body does not have the expected shape
        """
        counters = self._parse_pagination(payload)
        items = self._require_list(payload, 'events')
        events = [self._parse_event(item, index) for index, item in enumerate(items)]
        logger.debug(f"Parsed {len(events)} events from response")
        return EventsPage(events=events, **counters)

    def _parse_pagination(self, payload: Any) -> Dict[str, int]:
        if not isinstance(payload, dict):
            raise ParseError(cause=TypeError(f"Expected JSON object, got {type(payload).__name__}"))

        counters = {}
        for name in self.PAGINATION_FIELDS:
            value = payload.get(name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ParseError(cause=KeyError(f"Missing or non-integer field: {name}"))
            counters[name] = value
        return counters

    def _require_list(self, payload: Dict[str, Any], name: str) -> List[Any]:
        items = payload.get(name)
        if not isinstance(items, list):
            raise ParseError(cause=KeyError(f"Missing or non-array field: {name}"))
        return items

    def _parse_user(self, item: Any, index: int) -> User:
        try:
            return User(
                user_id=int(item['id']),
                nickname=item['nickname'],
                display_name=item['display_name'],
                profile_url=item['url'],
                profile=self._optional_text(item.get('description')),
                icon_url=self._optional_text(item.get('image_url')),
                twitter_handle=self._optional_text(item.get('twitter_username')),
                github_username=self._optional_text(item.get('github_username'))
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Invalid user at index {index}: {e}")
            raise ParseError(cause=e) from e

    def _parse_event(self, item: Any, index: int) -> Event:
        try:
            hash_tag = self._optional_text(item.get('hash_tag'))
            return Event(
                event_id=int(item['id']),
                title=item['title'],
                url=item['url'],
                started_at=self._parse_datetime(item['started_at']),
                ended_at=self._parse_optional_datetime(item.get('ended_at')),
                accepted_count=int(item['accepted']),
                waitlist_count=int(item['waiting']),
                limit=self._normalize_limit(item.get('limit')),
                catch=self._optional_text(item.get('catch')),
                description=self._optional_text(item.get('description')),
                address=self._optional_text(item.get('address')),
                place=self._optional_text(item.get('place')),
                owner_nickname=self._optional_text(item.get('owner_nickname')),
                updated_at=self._parse_optional_datetime(item.get('updated_at')),
                tags=(Tag.from_label(hash_tag),) if hash_tag else ()
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Invalid event at index {index}: {e}")
            raise ParseError(cause=e) from e

    def _optional_text(self, value: Any) -> Optional[str]:
        """Map missing or blank strings to None."""
        if value is None:
            return None
        if not isinstance(value, str):
            raise TypeError(f"Expected string, got {type(value).__name__}")
        return value if value.strip() else None

    def _normalize_limit(self, value: Any) -> Optional[int]:
        """The API reports unlimited capacity as null or 0."""
        if value is None:
            return None
        limit = int(value)
        return limit if limit > 0 else None

    def _parse_datetime(self, value: Any) -> datetime:
        if not isinstance(value, str):
            raise TypeError(f"Expected ISO 8601 string, got {type(value).__name__}")
        # connpass sends offsets; anything without one is taken as UTC
        return to_utc_aware(datetime.fromisoformat(value.strip()))

    def _parse_optional_datetime(self, value: Any) -> Optional[datetime]:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return self._parse_datetime(value)
