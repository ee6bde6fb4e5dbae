"""Repository reconciling the connpass API with the local store."""
import asyncio
import dataclasses
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from processor.errors import (
    TRANSIENT_ERRORS,
    BadRequest,
    DataError,
    NotFound,
    UnknownError,
)
from processor.models import Event, MeetingRecord, Result, Tag, User
from remote.connpass_client import ConnpassApiClient
from storage.dynamodb_store import DynamoDBStore, StoreError

logger = logging.getLogger(__name__)


class EventMeetRepository:
    """
    Unified read/write access to users, events, tags and meeting records.

    Searches go to the remote API first and are written through to the
    local store on success. When the API is unreachable or failing on its
    side, matching cached rows are returned marked stale. Request and
    contract errors are returned to the caller unchanged.

    Blocking client and store calls run in worker threads so the event
    loop is never blocked.
    """

    def __init__(
        self,
        client: ConnpassApiClient,
        store: DynamoDBStore,
        page_size: int = 100,
        max_pages: int = 10,
        max_retries: int = 3,
        base_delay: float = 1.0
    ):
        """
        Args:
            client: Remote API client
            store: Local store
            page_size: Items requested per page
            max_pages: Upper bound on pages fetched per search
            max_retries: Attempts per page for transient failures
            base_delay: First backoff delay in seconds, doubled per attempt
        """
        self.client = client
        self.store = store
        self.page_size = page_size
        self.max_pages = max(1, max_pages)
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay

    # ------------------------------------------------------------------
    # Remote-backed reads
    # ------------------------------------------------------------------

    async def find_users(self, query: str) -> Result[List[User]]:
        """
        Search users by nickname.

        Args:
            query: Nickname or part of it

        Returns:
            Result with the matching users; stale if served from cache
        """
        return await self._find(
            query,
            label='users',
            search=self.client.search_users,
            items_of=lambda page: page.users,
            key_of=lambda user: user.user_id,
            write=self.store.upsert_users,
            read_cached=self.store.list_users
        )

    async def find_events(self, query: str) -> Result[List[Event]]:
        """
        Search events by keyword.

        Args:
            query: Keyword

        Returns:
            Result with the matching events; stale if served from cache
        """
        return await self._find(
            query,
            label='events',
            search=self.client.search_events,
            items_of=lambda page: page.events,
            key_of=lambda event: event.event_id,
            write=self.store.upsert_events,
            read_cached=self.store.list_events
        )

    async def get_user_events(self, nickname: str) -> Result[List[Event]]:
        """
        List the events a user joined or organized.

        Fetched events are written through together with the user's event
        links, so the same list can be served from cache later.

        Args:
            nickname: connpass nickname

        Returns:
            Result with the user's events; stale if served from cache
        """
        nickname = (nickname or '').strip()
        if not nickname:
            return Result.failure(BadRequest("Nickname must not be blank"))

        return await self._find(
            nickname,
            label=f"events of {nickname}",
            search=self.client.search_events_by_nickname,
            items_of=lambda page: page.events,
            key_of=lambda event: event.event_id,
            write=lambda events: self.store.upsert_user_events(nickname, events),
            read_cached=lambda: self.store.list_events_for_nickname(nickname),
            match=lambda event: True
        )

    async def find_common_events(self, nickname: str, other_nickname: str) -> Result[List[Event]]:
        """
        Find events both users took part in.

        Events are matched by event_id and returned in the order of the
        first user's list. Both lists are fetched concurrently.

        Args:
            nickname: First user's nickname, usually the signed-in user
            other_nickname: Second user's nickname

        Returns:
            Result with the shared events; stale if either list came from cache
        """
        if not (nickname or '').strip() or not (other_nickname or '').strip():
            return Result.failure(BadRequest("Nickname must not be blank"))

        own, other = await asyncio.gather(
            self.get_user_events(nickname),
            self.get_user_events(other_nickname)
        )
        for result in (own, other):
            if not result.ok:
                return result

        other_ids = {event.event_id for event in other.value}
        common = [event for event in own.value if event.event_id in other_ids]
        logger.info(f"Found {len(common)} common events for {nickname.strip()} and {other_nickname.strip()}")
        return Result.success(common, stale=own.stale or other.stale)

    async def get_event(self, event_id: int) -> Result[Event]:
        """Return a cached event, fetching and caching it on a miss."""
        cached = await self._run_store("read event", self.store.get_event, event_id)
        if not cached.ok or cached.value is not None:
            return cached

        result = await self._call_remote(self.client.get_event, event_id)
        if not result.ok:
            logger.warning(f"Could not fetch event {event_id}: {result.error.message}")
            return result

        written = await self._run_store("save event", self.store.upsert_events, [result.value])
        if not written.ok:
            return written
        return Result.success(result.value)

    # ------------------------------------------------------------------
    # Local-only operations
    # ------------------------------------------------------------------

    async def get_user(self, user_id: int) -> Result[Optional[User]]:
        return await self._run_store("read user", self.store.get_user, user_id)

    async def save_user_profile(self, user: User) -> Result[None]:
        """Persist a user profile locally. Nothing is sent to the API."""
        logger.info(f"Saving profile for user {user.user_id}")
        result = await self._run_store("save user profile", self.store.upsert_user, user)
        return Result.success() if result.ok else result

    async def record_meeting(self, user_id: int, event_id: int) -> Result[MeetingRecord]:
        """
        Record that a user was met at an event.

        The event must already be in the local store. Recording the same
        pair twice returns the existing record unchanged.
        """
        def record() -> Result[MeetingRecord]:
            existing = self.store.get_meeting_record(user_id, event_id)
            if existing:
                return Result.success(existing)
            if self.store.get_event(event_id) is None:
                return Result.failure(NotFound(f"Event {event_id} not found"))

            user = self.store.get_user(user_id)
            meeting = MeetingRecord(
                user_id=user_id,
                event_id=event_id,
                nickname=user.nickname if user else None
            )
            stored = self.store.add_meeting_record(meeting)
            if stored is meeting:
                logger.info(f"Recorded meeting with user {user_id} at event {event_id}")
            return Result.success(stored)

        return await self._run_local("record meeting", record)

    async def update_meeting_record(
        self,
        user_id: int,
        event_id: int,
        notes: Optional[str],
        tag_labels: Iterable[str] = ()
    ) -> Result[MeetingRecord]:
        """
        Replace the notes and tags of an existing meeting record.

        Blank notes are cleared; blank and repeated tag labels are dropped.
        """
        labels = _unique_labels(tag_labels)
        notes = notes.strip() if notes and notes.strip() else None

        def update() -> Result[MeetingRecord]:
            existing = self.store.get_meeting_record(user_id, event_id)
            if existing is None:
                return Result.failure(NotFound("Meeting record not found"))
            updated = dataclasses.replace(existing, notes=notes, tag_labels=labels)
            self.store.upsert_meeting_record(updated)
            return Result.success(updated)

        return await self._run_local("update meeting record", update)

    async def list_meeting_records(
        self,
        user_id: Optional[int] = None,
        event_id: Optional[int] = None
    ) -> Result[List[MeetingRecord]]:
        return await self._run_store(
            "list meeting records", self.store.list_meeting_records, user_id, event_id
        )

    async def delete_meeting_record(self, user_id: int, event_id: int) -> Result[None]:
        result = await self._run_store(
            "delete meeting record", self.store.delete_meeting_record, user_id, event_id
        )
        if not result.ok:
            return result
        if not result.value:
            return Result.failure(NotFound("Meeting record not found"))
        return Result.success()

    async def list_tags(self) -> Result[List[Tag]]:
        return await self._run_store("list tags", self.store.list_tags)

    async def clear_event_cache(self) -> Result[int]:
        """Drop all cached events. Tags and meeting records are kept."""
        return await self._run_store("clear event cache", self.store.clear_events)

    async def count_cached_events(self) -> Result[int]:
        return await self._run_store("count cached events", self.store.count_events)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _find(
        self,
        query: str,
        label: str,
        search: Callable[..., Result],
        items_of: Callable[[Any], List[Any]],
        key_of: Callable[[Any], Any],
        write: Callable[[List[Any]], Any],
        read_cached: Callable[[], List[Any]],
        match: Optional[Callable[[Any], bool]] = None
    ) -> Result[List[Any]]:
        logger.info(f"Searching {label} for '{query}'")
        fetched = await self._fetch_all_pages(query, search, items_of, key_of)

        if fetched.ok:
            written = await self._run_store(f"save {label}", write, fetched.value)
            if not written.ok:
                return written
            logger.info(
                f"Fetched and stored {len(fetched.value)} {label}",
                extra={'query': query, 'total_available': fetched.total_available}
            )
            return fetched

        error = fetched.error
        if isinstance(error, TRANSIENT_ERRORS):
            match = match or (lambda item: item.matches(query))
            return await self._serve_cached(query, label, read_cached, match, error)

        logger.warning(
            f"Search for {label} failed: {error.message}",
            extra={'error_type': type(error).__name__}
        )
        return fetched

    async def _fetch_all_pages(
        self,
        query: str,
        search: Callable[..., Result],
        items_of: Callable[[Any], List[Any]],
        key_of: Callable[[Any], Any]
    ) -> Result[List[Any]]:
        """
        Fetch pages in ascending order and merge them by id.

        Nothing is returned until every page succeeded. A repeated id keeps
        the record from the later page.
        """
        merged: Dict[Any, Any] = {}
        page_offset = 0
        total_available = None

        for page_number in range(1, self.max_pages + 1):
            result = await self._call_remote(search, query, page_offset, self.page_size)
            if not result.ok:
                return result

            page = result.value
            items = items_of(page)
            for item in items:
                merged[key_of(item)] = item
            total_available = page.results_available

            if not page.has_more or not items:
                break
            if page_number == self.max_pages:
                logger.info(f"Stopping after {self.max_pages} pages for '{query}'")
            page_offset = page.results_start - 1 + page.results_returned

        return Result.success(list(merged.values()), total_available=total_available)

    async def _call_remote(self, call: Callable[..., Result], *args) -> Result:
        """Call the client, retrying transient failures with exponential backoff."""
        for attempt in range(self.max_retries):
            result = await asyncio.to_thread(call, *args)
            if result.ok or not isinstance(result.error, TRANSIENT_ERRORS):
                return result

            if attempt < self.max_retries - 1:
                delay = self.base_delay * (2 ** attempt)
                logger.warning(
                    f"Request failed (attempt {attempt + 1}/{self.max_retries}): "
                    f"{result.error.message}. Retrying in {delay} seconds..."
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    f"All {self.max_retries} attempts failed. Last error: {result.error.message}"
                )
        return result

    async def _serve_cached(
        self,
        query: str,
        label: str,
        read_cached: Callable[[], List[Any]],
        match: Callable[[Any], bool],
        error: DataError
    ) -> Result[List[Any]]:
        try:
            cached = await asyncio.to_thread(read_cached)
        except StoreError:
            logger.error(f"Local store unavailable while serving cached {label}", exc_info=True)
            return Result.failure(error)

        matches = [item for item in cached if match(item)]
        logger.warning(
            f"Remote unavailable ({type(error).__name__}); serving {len(matches)} cached {label}",
            extra={'query': query}
        )
        return Result.success(matches, stale=True)

    async def _run_store(self, action: str, call: Callable[..., Any], *args) -> Result:
        """Run a store call off the event loop, wrapping store faults."""
        try:
            value = await asyncio.to_thread(call, *args)
        except StoreError as e:
            logger.error(f"Local store failed to {action}", exc_info=True)
            return Result.failure(UnknownError(f"Failed to {action}", cause=e))
        return Result.success(value)

    async def _run_local(self, action: str, operation: Callable[[], Result]) -> Result:
        try:
            return await asyncio.to_thread(operation)
        except StoreError as e:
            logger.error(f"Local store failed to {action}", exc_info=True)
            return Result.failure(UnknownError(f"Failed to {action}", cause=e))
        except ValueError as e:
            return Result.failure(BadRequest(str(e), cause=e))


def _unique_labels(labels: Iterable[str]) -> tuple:
    seen = set()
    unique = []
    for label in labels:
        if not label or not label.strip():
            continue
        tag = Tag.from_label(label)
        if tag.tag_id not in seen:
            seen.add(tag.tag_id)
            unique.append(tag.label)
    return tuple(unique)
