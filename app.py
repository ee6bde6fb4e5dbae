"""Configuration, logging and construction of the event-meet data layer."""
import json
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from remote.connpass_client import ConnpassApiClient
from repository.event_meet_repository import EventMeetRepository
from storage.dynamodb_store import DynamoDBStore

logger = logging.getLogger(__name__)

_TRUE_VALUES = ('1', 'true', 'yes', 'on')

# LogRecord attributes that are not structured context
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}


class JsonFormatter(logging.Formatter):
    """Render records as one JSON object per line, including any extra= fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage()
        }
        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Send all records to stderr as JSON.

    Handlers already attached to the root logger are replaced, so calling
    this twice does not duplicate output.

    Args:
        log_level: Level name; unknown names fall back to INFO
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


@dataclass(frozen=True)
class AppConfig:
    """Settings for the data layer, normally read from the environment."""
    api_key: str = ''
    table_name: str = 'event-meet'
    region_name: Optional[str] = None
    log_level: str = 'INFO'
    timeout_seconds: int = 30
    page_size: int = 100
    max_pages: int = 10
    max_retries: int = 3
    allow_destructive_reset: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'AppConfig':
        """
        Read configuration from environment variables.

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            AppConfig instance
        """
        env = os.environ if environ is None else environ
        return cls(
            api_key=env.get('CONNPASS_API_KEY', ''),
            table_name=env.get('TABLE_NAME', 'event-meet'),
            region_name=env.get('AWS_REGION') or None,
            log_level=env.get('LOG_LEVEL', 'INFO'),
            timeout_seconds=int(env.get('TIMEOUT_SECONDS', '30')),
            page_size=int(env.get('PAGE_SIZE', '100')),
            max_pages=int(env.get('MAX_PAGES', '10')),
            max_retries=int(env.get('MAX_RETRIES', '3')),
            allow_destructive_reset=env.get('ALLOW_DESTRUCTIVE_RESET', '').lower() in _TRUE_VALUES
        )


def build_repository(config: AppConfig) -> EventMeetRepository:
    """
    Wire the API client and local store into a repository.

    The store schema is brought up to date before the repository is
    returned.

    Args:
        config: Application configuration

    Returns:
        Ready-to-use EventMeetRepository
    """
    logger.info(
        "Building repository",
        extra={
            'table_name': config.table_name,
            'timeout_seconds': config.timeout_seconds,
            'page_size': config.page_size
        }
    )
    client = ConnpassApiClient(api_key=config.api_key, timeout=config.timeout_seconds)
    store = DynamoDBStore(table_name=config.table_name, region_name=config.region_name)
    store.ensure_schema(allow_destructive_reset=config.allow_destructive_reset)
    return EventMeetRepository(
        client=client,
        store=store,
        page_size=config.page_size,
        max_pages=config.max_pages,
        max_retries=config.max_retries
    )
