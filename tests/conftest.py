"""Shared fixtures for store and repository tests."""
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from moto import mock_aws

from processor.models import Event, Tag, User
from storage.dynamodb_store import DynamoDBStore

JST = timezone(timedelta(hours=9))


@pytest.fixture
def aws_credentials():
    """Fake AWS credentials so boto3 never reaches a real account."""
    env_vars = {
        'AWS_ACCESS_KEY_ID': 'testing',
        'AWS_SECRET_ACCESS_KEY': 'testing',
        'AWS_SECURITY_TOKEN': 'testing',
        'AWS_SESSION_TOKEN': 'testing',
        'AWS_DEFAULT_REGION': 'us-east-1'
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


@pytest.fixture
def store(aws_credentials):
    """Create a DynamoDBStore on a mock table."""
    with mock_aws():
        dynamodb_store = DynamoDBStore('test-event-meet', region_name='us-east-1')
        dynamodb_store.ensure_schema()
        yield dynamodb_store


def make_user(user_id, nickname=None, display_name=None, **kwargs):
    nickname = nickname or f'user{user_id}'
    return User(
        user_id=user_id,
        nickname=nickname,
        display_name=display_name or nickname.title(),
        profile_url=f'https://connpass.com/user/{nickname}/',
        **kwargs
    )


def make_event(event_id, title=None, tags=(), **kwargs):
    started_at = kwargs.pop('started_at', datetime(2024, 12, 25, 19, 0, tzinfo=JST))
    return Event(
        event_id=event_id,
        title=title or f'Event {event_id}',
        url=f'https://connpass.com/event/{event_id}/',
        started_at=started_at,
        ended_at=kwargs.pop('ended_at', started_at + timedelta(hours=2)),
        tags=tuple(Tag.from_label(label) for label in tags),
        **kwargs
    )


@pytest.fixture
def sample_user():
    return make_user(5, nickname='haru', display_name='Haru', profile='<p>Pythonista</p>')


@pytest.fixture
def sample_event():
    return make_event(42, title='Meetup', tags=('PyConJP',), limit=50, accepted_count=10, waitlist_count=0)
