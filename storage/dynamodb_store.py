"""DynamoDB local store for users, events, tags and meeting records."""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from processor.models import Event, MeetingRecord, Tag, User, to_utc_aware

logger = logging.getLogger(__name__)

USER = 'USER'
EVENT = 'EVENT'
TAG = 'TAG'
EVENT_TAG = 'EVENT_TAG'
MEETING_RECORD = 'MEETING_RECORD'
USER_EVENT = 'USER_EVENT'
META = 'META'

ItemKey = Tuple[str, str]


class StoreError(Exception):
    """Storage fault wrapped at the store boundary."""


class DynamoDBStore:
    """
    Keyed store backed by a single DynamoDB table.

    Rows are addressed by (entity_type, entity_id). Every upsert fully
    replaces the prior row. Multi-row upserts are applied as one unit:
    either every row is written or none is.
    """

    TRANSACTION_LIMIT = 100  # TransactWriteItems item limit
    BATCH_GET_LIMIT = 100
    SCHEMA_VERSION = 1
    # Additive migrations keyed by the version they upgrade from.
    MIGRATIONS: Dict[int, Callable[['DynamoDBStore'], None]] = {}

    def __init__(self, table_name: str, region_name: Optional[str] = None, endpoint_url: Optional[str] = None):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the DynamoDB table
            region_name: AWS region (default: boto3 configuration)
            endpoint_url: Custom endpoint, e.g. DynamoDB Local
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name, endpoint_url=endpoint_url)
        self.table = self.dynamodb.Table(table_name)
        self._lock = threading.RLock()
        logger.info(f"Initialized DynamoDBStore for table: {table_name}")

    # ------------------------------------------------------------------
    # Schema management
    # ------------------------------------------------------------------

    def ensure_schema(self, allow_destructive_reset: bool = False) -> int:
        """
        Create the table if needed and bring its schema to SCHEMA_VERSION.

        Args:
            allow_destructive_reset: Drop and recreate the table when a
                migration is missing or fails. Development use only.

        Returns:
            Schema version in effect after the call

        Raises:
            StoreError: If the schema cannot be brought up to date
        """
        with self._lock, self._store_errors("prepare local store schema"):
            if not self._table_exists():
                self._create_table()
                self._write_schema_version(self.SCHEMA_VERSION)
                return self.SCHEMA_VERSION

            version = self._read_schema_version()
            if version is None:
                self._write_schema_version(self.SCHEMA_VERSION)
                return self.SCHEMA_VERSION
            if version == self.SCHEMA_VERSION:
                return version

            try:
                self._migrate(version)
            except (StoreError, ClientError, BotoCoreError) as e:
                if not allow_destructive_reset:
                    logger.error(f"Schema migration from version {version} failed: {e}")
                    if isinstance(e, StoreError):
                        raise
                    raise StoreError(f"Failed to migrate schema from version {version}") from e
                logger.warning(
                    f"Schema migration from version {version} failed; resetting local store",
                    exc_info=True
                )
                self.reset()
            return self.SCHEMA_VERSION

    def reset(self) -> None:
        """Drop and recreate the table. All local data is lost."""
        with self._lock, self._store_errors("reset local store"):
            logger.warning(f"Destructively resetting table: {self.table_name}")
            if self._table_exists():
                self.table.delete()
                self.table.wait_until_not_exists()
            self._create_table()
            self._write_schema_version(self.SCHEMA_VERSION)

    def _migrate(self, version: int) -> None:
        if version > self.SCHEMA_VERSION:
            raise StoreError(
                f"Stored schema version {version} is newer than supported "
                f"version {self.SCHEMA_VERSION}"
            )
        for current in range(version, self.SCHEMA_VERSION):
            migration = self.MIGRATIONS.get(current)
            if migration is None:
                raise StoreError(f"No migration registered from schema version {current}")
            logger.info(f"Migrating schema from version {current} to {current + 1}")
            migration(self)
            self._write_schema_version(current + 1)

    def _table_exists(self) -> bool:
        try:
            self.dynamodb.meta.client.describe_table(TableName=self.table_name)
            return True
        except ClientError as e:
            if e.response['Error']['Code'] == 'ResourceNotFoundException':
                return False
            raise

    def _create_table(self) -> None:
        logger.info(f"Creating table: {self.table_name}")
        self.table = self.dynamodb.create_table(
            TableName=self.table_name,
            KeySchema=[
                {'AttributeName': 'entity_type', 'KeyType': 'HASH'},
                {'AttributeName': 'entity_id', 'KeyType': 'RANGE'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'entity_type', 'AttributeType': 'S'},
                {'AttributeName': 'entity_id', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )
        self.table.wait_until_exists()

    def _read_schema_version(self) -> Optional[int]:
        item = self.table.get_item(Key={'entity_type': META, 'entity_id': 'schema'}).get('Item')
        return int(item['version']) if item else None

    def _write_schema_version(self, version: int) -> None:
        self.table.put_item(Item={'entity_type': META, 'entity_id': 'schema', 'version': version})

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def upsert_user(self, user: User) -> None:
        self.upsert_users([user])

    def upsert_users(self, users: Iterable[User]) -> int:
        """
        Insert or replace users as one unit.

        Returns:
            Number of rows written
        """
        operations = {}
        for user in users:
            item = self._user_to_item(user)
            operations[(USER, item['entity_id'])] = ('put', item)
        return self._write_batch(operations)

    def get_user(self, user_id: int) -> Optional[User]:
        item = self._get_item(USER, str(user_id))
        return self._item_to_user(item) if item else None

    def list_users(self) -> List[User]:
        users = [self._item_to_user(item) for item in self._query(USER)]
        return sorted((user for user in users if user), key=lambda user: user.user_id)

    # ------------------------------------------------------------------
    # Events and tags
    # ------------------------------------------------------------------

    def upsert_event(self, event: Event) -> None:
        self.upsert_events([event])

    def upsert_events(self, events: Iterable[Event]) -> int:
        """
        Insert or replace events, their tags and their tag links as one unit.

        Links to tags no longer present on an event are removed.

        Returns:
            Number of rows written or deleted
        """
        with self._lock:
            operations = {}
            self._add_event_operations(events, operations)
            return self._write_batch(operations)

    def upsert_user_events(self, nickname: str, events: Iterable[Event]) -> int:
        """
        Insert or replace events and record them as the events of a user.

        The user's previous event links are replaced by the given set, in
        the same unit as the event rows.

        Args:
            nickname: connpass nickname the events were listed for
            events: Events the user joined or organized

        Returns:
            Number of rows written or deleted
        """
        events = list(events)
        prefix = f"{_nickname_key(nickname)}#"
        with self._lock:
            operations = {}
            for link in self._query(USER_EVENT, prefix=prefix):
                operations[(USER_EVENT, link['entity_id'])] = ('delete', None)
            self._add_event_operations(events, operations)
            for event in events:
                link_id = f"{prefix}{event.event_id}"
                operations.pop((USER_EVENT, link_id), None)
                operations[(USER_EVENT, link_id)] = ('put', {
                    'entity_type': USER_EVENT,
                    'entity_id': link_id,
                    'nickname': nickname,
                    'event_id': event.event_id
                })
            return self._write_batch(operations)

    def _add_event_operations(self, events: Iterable[Event], operations: Dict) -> None:
        for event in events:
            item = self._event_to_item(event)
            operations[(EVENT, item['entity_id'])] = ('put', item)

            prefix = f"{event.event_id}#"
            for link in self._query(EVENT_TAG, prefix=prefix):
                operations[(EVENT_TAG, link['entity_id'])] = ('delete', None)
            for tag in event.tags:
                operations[(TAG, tag.tag_id)] = ('put', self._tag_to_item(tag))
                link_id = f"{prefix}{tag.tag_id}"
                operations.pop((EVENT_TAG, link_id), None)
                operations[(EVENT_TAG, link_id)] = ('put', {
                    'entity_type': EVENT_TAG,
                    'entity_id': link_id,
                    'event_id': event.event_id,
                    'tag_id': tag.tag_id
                })

    def get_event(self, event_id: int) -> Optional[Event]:
        with self._lock:
            item = self._get_item(EVENT, str(event_id))
            if not item:
                return None
            return self._item_to_event(item, self.list_tags_for_event(event_id))

    def list_events(self) -> List[Event]:
        """Return all events, most recent start first."""
        with self._lock:
            tags = {tag.tag_id: tag for tag in self.list_tags()}
            links: Dict[int, List[Tag]] = {}
            for link in self._query(EVENT_TAG):
                tag = tags.get(link['tag_id'])
                if tag:
                    links.setdefault(int(link['event_id']), []).append(tag)
            events = [
                self._item_to_event(item, links.get(int(item['event_id']), []))
                for item in self._query(EVENT)
            ]
        return sorted((event for event in events if event), key=lambda event: event.started_at, reverse=True)

    def list_events_for_nickname(self, nickname: str) -> List[Event]:
        """Return the cached events of a user, most recent start first."""
        with self._lock:
            event_ids = {
                int(link['event_id'])
                for link in self._query(USER_EVENT, prefix=f"{_nickname_key(nickname)}#")
            }
            if not event_ids:
                return []
            return [event for event in self.list_events() if event.event_id in event_ids]

    def count_events(self) -> int:
        return len(self._query(EVENT))

    def clear_events(self) -> int:
        """
        Delete all cached events with their tag and user links.

        Tags and meeting records are kept.

        Returns:
            Number of events deleted
        """
        with self._lock:
            operations = {}
            deleted = 0
            for entity_type in (EVENT, EVENT_TAG, USER_EVENT):
                for item in self._query(entity_type):
                    operations[(entity_type, item['entity_id'])] = ('delete', None)
                    if entity_type == EVENT:
                        deleted += 1
            self._write_batch(operations)
        logger.info(f"Cleared {deleted} cached events")
        return deleted

    def upsert_tag(self, tag: Tag) -> None:
        self.upsert_tags([tag])

    def upsert_tags(self, tags: Iterable[Tag]) -> int:
        operations = {(TAG, tag.tag_id): ('put', self._tag_to_item(tag)) for tag in tags}
        return self._write_batch(operations)

    def get_tag(self, tag_id: str) -> Optional[Tag]:
        item = self._get_item(TAG, tag_id)
        return self._item_to_tag(item) if item else None

    def list_tags(self) -> List[Tag]:
        """Return all tags sorted by label."""
        tags = [self._item_to_tag(item) for item in self._query(TAG)]
        return sorted((tag for tag in tags if tag), key=lambda tag: tag.label.casefold())

    def list_tags_for_event(self, event_id: int) -> List[Tag]:
        with self._lock:
            tags = []
            for link in self._query(EVENT_TAG, prefix=f"{event_id}#"):
                tag = self.get_tag(link['tag_id'])
                if tag:
                    tags.append(tag)
        return sorted(tags, key=lambda tag: tag.label.casefold())

    # ------------------------------------------------------------------
    # Meeting records
    # ------------------------------------------------------------------

    def upsert_meeting_record(self, record: MeetingRecord) -> None:
        """Insert or replace a meeting record and the tags it references."""
        self._write_batch(self._meeting_record_operations(record, 'put'))

    def add_meeting_record(self, record: MeetingRecord) -> MeetingRecord:
        """
        Insert a meeting record unless one already exists for the same pair.

        The row is written with an attribute_not_exists condition, so a
        record created concurrently by another writer is never replaced.

        Returns:
            The stored record: the given one, or the one already present
        """
        with self._lock:
            existing = self.get_meeting_record(record.user_id, record.event_id)
            if existing:
                return existing

            operations = self._meeting_record_operations(record, 'put_new')
            try:
                self._transact(list(operations.items()))
            except ClientError as e:
                if e.response['Error']['Code'] == 'TransactionCanceledException':
                    existing = self.get_meeting_record(record.user_id, record.event_id)
                    if existing:
                        logger.info(f"Meeting record {record.key} was created concurrently")
                        return existing
                logger.error(f"Failed to add meeting record {record.key}: {e}")
                raise StoreError("Failed to add meeting record") from e
            except BotoCoreError as e:
                logger.error(f"Failed to add meeting record {record.key}: {e}")
                raise StoreError("Failed to add meeting record") from e
        return record

    def _meeting_record_operations(self, record: MeetingRecord, action: str) -> Dict:
        item = self._meeting_record_to_item(record)
        operations = {(MEETING_RECORD, item['entity_id']): (action, item)}
        for label in record.tag_labels:
            tag = Tag.from_label(label)
            operations[(TAG, tag.tag_id)] = ('put', self._tag_to_item(tag))
        return operations

    def get_meeting_record(self, user_id: int, event_id: int) -> Optional[MeetingRecord]:
        item = self._get_item(MEETING_RECORD, f"{user_id}#{event_id}")
        return self._item_to_meeting_record(item) if item else None

    def list_meeting_records(self, user_id: Optional[int] = None, event_id: Optional[int] = None) -> List[MeetingRecord]:
        """
        List meeting records, newest first.

        Args:
            user_id: Only records for this user
            event_id: Only records for this event
        """
        prefix = f"{user_id}#" if user_id is not None else None
        records = [self._item_to_meeting_record(item) for item in self._query(MEETING_RECORD, prefix=prefix)]
        records = [
            record for record in records
            if record and (event_id is None or record.event_id == event_id)
        ]
        return sorted(records, key=lambda record: record.created_at, reverse=True)

    def delete_meeting_record(self, user_id: int, event_id: int) -> bool:
        """
        Delete a meeting record.

        Returns:
            True if a record was deleted, False if none existed
        """
        with self._lock, self._store_errors("delete meeting record"):
            response = self.table.delete_item(
                Key={'entity_type': MEETING_RECORD, 'entity_id': f"{user_id}#{event_id}"},
                ReturnValues='ALL_OLD'
            )
        return 'Attributes' in response

    # ------------------------------------------------------------------
    # Low-level access
    # ------------------------------------------------------------------

    @contextmanager
    def _store_errors(self, action: str):
        try:
            yield
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to {action}: {e}")
            raise StoreError(f"Failed to {action}") from e

    def _get_item(self, entity_type: str, entity_id: str) -> Optional[dict]:
        with self._lock, self._store_errors(f"read {entity_type} {entity_id}"):
            response = self.table.get_item(Key={'entity_type': entity_type, 'entity_id': entity_id})
        return response.get('Item')

    def _query(self, entity_type: str, prefix: Optional[str] = None) -> List[dict]:
        condition = Key('entity_type').eq(entity_type)
        if prefix:
            condition = condition & Key('entity_id').begins_with(prefix)

        with self._lock, self._store_errors(f"query {entity_type}"):
            response = self.table.query(KeyConditionExpression=condition)
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = self.table.query(
                    KeyConditionExpression=condition,
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))
        return items

    def _write_batch(self, operations: Dict[ItemKey, Tuple[str, Optional[dict]]]) -> int:
        """
        Apply puts and deletes as one unit.

        Batches within the transaction limit are a single TransactWriteItems
        call. Larger batches are written in chunks; if a chunk fails, rows
        already written are restored from a snapshot taken beforehand.

        Raises:
            StoreError: If the batch could not be applied
        """
        if not operations:
            return 0

        entries = list(operations.items())
        with self._lock:
            if len(entries) <= self.TRANSACTION_LIMIT:
                with self._store_errors(f"write batch of {len(entries)} items"):
                    self._transact(entries)
                return len(entries)

            with self._store_errors("snapshot rows before batch write"):
                snapshot = self._snapshot([key for key, _ in entries])

            written: List[ItemKey] = []
            try:
                for i in range(0, len(entries), self.TRANSACTION_LIMIT):
                    chunk = entries[i:i + self.TRANSACTION_LIMIT]
                    self._transact(chunk)
                    written.extend(key for key, _ in chunk)
            except (ClientError, BotoCoreError) as e:
                logger.error(
                    f"Batch write failed after {len(written)} of {len(entries)} items; "
                    f"restoring previous state: {e}"
                )
                self._restore(snapshot, written)
                raise StoreError(f"Failed to write batch of {len(entries)} items") from e

        logger.info(f"Wrote batch of {len(entries)} items in chunks")
        return len(entries)

    def _transact(self, entries: List[Tuple[ItemKey, Tuple[str, Optional[dict]]]]) -> None:
        transact_items = []
        for (entity_type, entity_id), (action, item) in entries:
            if action == 'put':
                transact_items.append({'Put': {'TableName': self.table_name, 'Item': item}})
            elif action == 'put_new':
                transact_items.append({'Put': {
                    'TableName': self.table_name,
                    'Item': item,
                    'ConditionExpression': 'attribute_not_exists(entity_id)'
                }})
            else:
                transact_items.append({'Delete': {
                    'TableName': self.table_name,
                    'Key': {'entity_type': entity_type, 'entity_id': entity_id}
                }})
        self.dynamodb.meta.client.transact_write_items(TransactItems=transact_items)

    def _snapshot(self, keys: List[ItemKey]) -> Dict[ItemKey, dict]:
        snapshot = {}
        for i in range(0, len(keys), self.BATCH_GET_LIMIT):
            request = {self.table_name: {'Keys': [
                {'entity_type': entity_type, 'entity_id': entity_id}
                for entity_type, entity_id in keys[i:i + self.BATCH_GET_LIMIT]
            ]}}
            while request:
                response = self.dynamodb.batch_get_item(RequestItems=request)
                for item in response.get('Responses', {}).get(self.table_name, []):
                    snapshot[(item['entity_type'], item['entity_id'])] = item
                request = response.get('UnprocessedKeys') or None
        return snapshot

    def _restore(self, snapshot: Dict[ItemKey, dict], keys: List[ItemKey]) -> None:
        with self._store_errors("roll back partial batch"):
            with self.table.batch_writer() as writer:
                for entity_type, entity_id in keys:
                    previous = snapshot.get((entity_type, entity_id))
                    if previous is None:
                        writer.delete_item(Key={'entity_type': entity_type, 'entity_id': entity_id})
                    else:
                        writer.put_item(Item=previous)

    # ------------------------------------------------------------------
    # Item conversion
    # ------------------------------------------------------------------

    def _user_to_item(self, user: User) -> dict:
        item = {
            'entity_type': USER,
            'entity_id': str(user.user_id),
            'user_id': user.user_id,
            'nickname': user.nickname,
            'display_name': user.display_name,
            'profile_url': user.profile_url
        }

        # Add optional fields if present
        for name in ('profile', 'icon_url', 'twitter_handle', 'github_username'):
            value = getattr(user, name)
            if value is not None:
                item[name] = value
        return item

    def _item_to_user(self, item: dict) -> Optional[User]:
        try:
            return User(
                user_id=int(item['user_id']),
                nickname=item['nickname'],
                display_name=item['display_name'],
                profile_url=item['profile_url'],
                profile=item.get('profile'),
                icon_url=item.get('icon_url'),
                twitter_handle=item.get('twitter_handle'),
                github_username=item.get('github_username')
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Failed to convert item to User: {e}")
            return None

    def _event_to_item(self, event: Event) -> dict:
        item = {
            'entity_type': EVENT,
            'entity_id': str(event.event_id),
            'event_id': event.event_id,
            'title': event.title,
            'url': event.url,
            'started_at': event.started_at.isoformat(),
            'accepted_count': event.accepted_count,
            'waitlist_count': event.waitlist_count
        }

        # Add optional fields if present
        if event.ended_at:
            item['ended_at'] = event.ended_at.isoformat()
        if event.updated_at:
            item['updated_at'] = event.updated_at.isoformat()
        if event.limit is not None:
            item['limit'] = event.limit
        for name in ('catch', 'description', 'address', 'place', 'owner_nickname'):
            value = getattr(event, name)
            if value is not None:
                item[name] = value
        return item

    def _item_to_event(self, item: dict, tags: List[Tag]) -> Optional[Event]:
        try:
            return Event(
                event_id=int(item['event_id']),
                title=item['title'],
                url=item['url'],
                started_at=to_utc_aware(datetime.fromisoformat(item['started_at'])),
                ended_at=_optional_datetime(item.get('ended_at')),
                accepted_count=int(item['accepted_count']),
                waitlist_count=int(item['waitlist_count']),
                limit=int(item['limit']) if 'limit' in item else None,
                catch=item.get('catch'),
                description=item.get('description'),
                address=item.get('address'),
                place=item.get('place'),
                owner_nickname=item.get('owner_nickname'),
                updated_at=_optional_datetime(item.get('updated_at')),
                tags=tuple(tags)
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Failed to convert item to Event: {e}")
            return None

    def _tag_to_item(self, tag: Tag) -> dict:
        return {'entity_type': TAG, 'entity_id': tag.tag_id, 'tag_id': tag.tag_id, 'label': tag.label}

    def _item_to_tag(self, item: dict) -> Optional[Tag]:
        try:
            return Tag(tag_id=item['tag_id'], label=item['label'])
        except (KeyError, ValueError) as e:
            logger.warning(f"Failed to convert item to Tag: {e}")
            return None

    def _meeting_record_to_item(self, record: MeetingRecord) -> dict:
        item = {
            'entity_type': MEETING_RECORD,
            'entity_id': f"{record.user_id}#{record.event_id}",
            'user_id': record.user_id,
            'event_id': record.event_id,
            'created_at': record.created_at.isoformat(),
            'tag_labels': list(record.tag_labels)
        }
        if record.nickname is not None:
            item['nickname'] = record.nickname
        if record.notes is not None:
            item['notes'] = record.notes
        return item

    def _item_to_meeting_record(self, item: dict) -> Optional[MeetingRecord]:
        try:
            return MeetingRecord(
                user_id=int(item['user_id']),
                event_id=int(item['event_id']),
                created_at=to_utc_aware(datetime.fromisoformat(item['created_at'])),
                nickname=item.get('nickname'),
                notes=item.get('notes'),
                tag_labels=tuple(item.get('tag_labels', []))
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Failed to convert item to MeetingRecord: {e}")
            return None


def _optional_datetime(value: Optional[str]) -> Optional[datetime]:
    return to_utc_aware(datetime.fromisoformat(value)) if value else None


def _nickname_key(nickname: str) -> str:
    return nickname.strip().casefold()
