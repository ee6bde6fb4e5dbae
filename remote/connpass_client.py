"""HTTP client for the connpass event and user listing API."""
import logging
from typing import Any, Dict

import requests

from processor.errors import NotFound
from processor.models import Event, EventsPage, Result, UsersPage
from processor.response_parser import ConnpassResponseParser
from remote.error_classifier import classify, classify_status

logger = logging.getLogger(__name__)


class ConnpassApiClient:
    """Client for connpass API v2. Every call returns a Result, never raises."""

    BASE_URL = "https://connpass.com/api/v2"
    MAX_PAGE_SIZE = 100
    ORDER_BY_START = 2

    def __init__(
        self,
        api_key: str,
        timeout: int = 30,
        base_url: str = BASE_URL,
        session: requests.Session = None
    ):
        """
        Initialize the API client.

        Args:
            api_key: Value sent in the X-API-Key header
            timeout: HTTP request timeout in seconds (default: 30)
            base_url: API root, overridable for testing
            session: Optional pre-built requests session
        """
        self.timeout = timeout
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.session.headers['X-API-Key'] = api_key or ''
        self.parser = ConnpassResponseParser()

    def search_users(self, query: str, page_offset: int = 0, page_size: int = 100) -> Result[UsersPage]:
        """
        Search users by nickname.

        Args:
            query: Nickname to search for (partial match)
            page_offset: 0-based item offset of the page
            page_size: Number of items to request (max: 100)

        Returns:
            Result holding a UsersPage or a DataError
        """
        params = {'nickname': query, **self._page_params(page_offset, page_size)}
        return self._fetch('/users/', params, self.parser.parse_users_page)

    def search_events(self, query: str, page_offset: int = 0, page_size: int = 100) -> Result[EventsPage]:
        """
        Search events by keyword, upcoming events first.

        Args:
            query: Keyword matched against title, description, etc.
            page_offset: 0-based item offset of the page
            page_size: Number of items to request (max: 100)

        Returns:
            Result holding an EventsPage or a DataError
        """
        params = {
            'keyword': query,
            'order': self.ORDER_BY_START,
            **self._page_params(page_offset, page_size)
        }
        return self._fetch('/events/', params, self.parser.parse_events_page)

    def search_events_by_nickname(
        self,
        nickname: str,
        page_offset: int = 0,
        page_size: int = 100
    ) -> Result[EventsPage]:
        """
        List events a user joined or organized.

        Args:
            nickname: Exact connpass nickname
            page_offset: 0-based item offset of the page
            page_size: Number of items to request (max: 100)

        Returns:
            Result holding an EventsPage or a DataError
        """
        params = {
            'nickname': nickname,
            'order': self.ORDER_BY_START,
            **self._page_params(page_offset, page_size)
        }
        return self._fetch('/events/', params, self.parser.parse_events_page)

    def get_event(self, event_id: int) -> Result[Event]:
        """
        Fetch a single event by its connpass ID.

        Args:
            event_id: connpass event ID

        Returns:
            Result holding the Event, or NotFound if the API returned nothing
        """
        result = self._fetch(
            '/events/',
            {'event_id': event_id, 'start': 1, 'count': 1},
            self.parser.parse_events_page
        )
        if not result.ok:
            return result
        if not result.value.events:
            return Result.failure(NotFound(f"Event {event_id} not found"))
        return Result.success(result.value.events[0])

    def close(self) -> None:
        self.session.close()

    def _page_params(self, page_offset: int, page_size: int) -> Dict[str, int]:
        # connpass pagination is 1-based
        return {
            'start': max(page_offset, 0) + 1,
            'count': max(1, min(page_size, self.MAX_PAGE_SIZE))
        }

    def _fetch(self, path: str, params: Dict[str, Any], parse) -> Result:
        url = f"{self.base_url}{path}"
        try:
            logger.info(f"GET {url}", extra={'params': params})
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            # Unfollowed 3xx (304, 302 without Location) pass raise_for_status
            if not 200 <= response.status_code < 300:
                error = classify_status(response.status_code)
                logger.warning(
                    f"Request to {url} returned HTTP {response.status_code}: {error.message}",
                    extra={'error_type': type(error).__name__}
                )
                return Result.failure(error)
            return Result.success(parse(response.json()))
        except Exception as e:
            error = classify(e)
            logger.warning(
                f"Request to {url} failed: {error.message}",
                extra={'error_type': type(error).__name__},
                exc_info=e
            )
            return Result.failure(error)
