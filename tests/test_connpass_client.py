"""Unit tests for ConnpassApiClient."""
import pytest
import responses
from requests.exceptions import ConnectionError, Timeout

from processor.errors import (
    BadRequest,
    NetworkError,
    NotFound,
    ParseError,
    RateLimitExceeded,
    ServerError,
    Unauthorized,
    UnknownApiError,
)
from remote.connpass_client import ConnpassApiClient
from test_response_parser import event_payload, user_payload

USERS_URL = "https://connpass.com/api/v2/users/"
EVENTS_URL = "https://connpass.com/api/v2/events/"


class TestConnpassApiClient:
    """Test cases for ConnpassApiClient class."""

    @responses.activate
    def test_search_users_success(self):
        """Test successful user search with auth header and pagination params."""
        responses.add(
            responses.GET,
            USERS_URL,
            json={
                'results_start': 11,
                'results_returned': 1,
                'results_available': 11,
                'users': [user_payload()]
            },
            status=200
        )

        client = ConnpassApiClient(api_key='secret-key', timeout=5)
        result = client.search_users('haru', page_offset=10, page_size=10)

        assert result.ok
        page = result.value
        assert page.results_start == 11
        assert page.results_returned == 1
        assert page.results_available == 11
        assert page.users[0].nickname == 'haru'

        request = responses.calls[0].request
        assert request.headers['X-API-Key'] == 'secret-key'
        assert 'nickname=haru' in request.url
        assert 'start=11' in request.url
        assert 'count=10' in request.url

    @responses.activate
    def test_search_events_success(self):
        """Test successful event search with keyword and order params."""
        responses.add(
            responses.GET,
            EVENTS_URL,
            json={
                'results_start': 1,
                'results_returned': 1,
                'results_available': 1,
                'events': [event_payload()]
            },
            status=200
        )

        client = ConnpassApiClient(api_key='key')
        result = client.search_events('python')

        assert result.ok
        assert result.value.events[0].event_id == 42
        request_url = responses.calls[0].request.url
        assert 'keyword=python' in request_url
        assert 'start=1' in request_url
        assert 'order=2' in request_url

    @responses.activate
    def test_search_events_by_nickname(self):
        """Test that a user's events are requested by nickname, not keyword."""
        responses.add(
            responses.GET,
            EVENTS_URL,
            json={
                'results_start': 51,
                'results_returned': 1,
                'results_available': 51,
                'events': [event_payload()]
            }
        )

        result = ConnpassApiClient(api_key='key').search_events_by_nickname('haru', page_offset=50, page_size=50)

        assert result.ok
        assert result.value.events[0].event_id == 42
        request_url = responses.calls[0].request.url
        assert 'nickname=haru' in request_url
        assert 'keyword' not in request_url
        assert 'start=51' in request_url
        assert 'count=50' in request_url

    @responses.activate
    def test_page_size_capped_at_api_maximum(self):
        """Test that page sizes above 100 are capped."""
        responses.add(
            responses.GET,
            USERS_URL,
            json={'results_start': 1, 'results_returned': 0, 'results_available': 0, 'users': []}
        )

        ConnpassApiClient(api_key='key').search_users('haru', page_size=500)

        assert 'count=100' in responses.calls[0].request.url

    @responses.activate
    @pytest.mark.parametrize('status, expected', [
        (400, BadRequest),
        (401, Unauthorized),
        (404, NotFound),
        (429, RateLimitExceeded),
        (500, ServerError),
        (502, ServerError),
        (302, UnknownApiError),
        (304, UnknownApiError),
    ])
    def test_http_errors_are_classified(self, status, expected):
        """Test that HTTP failures come back as the error arm, not raised."""
        responses.add(responses.GET, EVENTS_URL, body="error", status=status)

        result = ConnpassApiClient(api_key='key').search_events('kotlin')

        assert not result.ok
        assert isinstance(result.error, expected)

    @responses.activate
    def test_redirect_without_location_is_not_a_page(self):
        """Test that an unfollowed 302 with a valid JSON body is not returned as data."""
        responses.add(
            responses.GET,
            USERS_URL,
            json={'results_start': 1, 'results_returned': 1, 'results_available': 1, 'users': [user_payload()]},
            status=302
        )

        result = ConnpassApiClient(api_key='key').search_users('haru')

        assert result.value is None
        assert isinstance(result.error, UnknownApiError)
        assert result.error.status_code == 302

    @responses.activate
    def test_no_retry_inside_client(self):
        """Test that the client makes exactly one request per call."""
        responses.add(responses.GET, EVENTS_URL, body="Server Error", status=500)
        responses.add(responses.GET, EVENTS_URL, json={}, status=200)

        ConnpassApiClient(api_key='key').search_events('kotlin')

        assert len(responses.calls) == 1

    @responses.activate
    def test_timeout_is_network_error(self):
        """Test that a timeout is classified as NetworkError."""
        responses.add(responses.GET, USERS_URL, body=Timeout("Request timed out"))

        result = ConnpassApiClient(api_key='key').search_users('haru')

        assert isinstance(result.error, NetworkError)

    @responses.activate
    def test_connection_failure_is_network_error(self):
        """Test that a connection failure is classified as NetworkError."""
        responses.add(responses.GET, USERS_URL, body=ConnectionError("Name or service not known"))

        result = ConnpassApiClient(api_key='key').search_users('haru')

        assert isinstance(result.error, NetworkError)

    @responses.activate
    def test_invalid_json_is_parse_error(self):
        """Test that a non-JSON body is classified as ParseError."""
        responses.add(responses.GET, USERS_URL, body="<html>maintenance</html>", status=200)

        result = ConnpassApiClient(api_key='key').search_users('haru')

        assert isinstance(result.error, ParseError)

    @responses.activate
    def test_unexpected_shape_is_parse_error(self):
        """Test that a JSON body of the wrong shape is classified as ParseError."""
        responses.add(responses.GET, USERS_URL, json={'users': 'nope'}, status=200)

        result = ConnpassApiClient(api_key='key').search_users('haru')

        assert isinstance(result.error, ParseError)

    @responses.activate
    def test_get_event_found(self):
        """Test fetching a single event by id."""
        responses.add(
            responses.GET,
            EVENTS_URL,
            json={'results_start': 1, 'results_returned': 1, 'results_available': 1, 'events': [event_payload()]}
        )

        result = ConnpassApiClient(api_key='key').get_event(42)

        assert result.ok
        assert result.value.title == 'Meetup'
        assert 'event_id=42' in responses.calls[0].request.url

    @responses.activate
    def test_get_event_missing_is_not_found(self):
        """Test that an empty result for an event id is NotFound."""
        responses.add(
            responses.GET,
            EVENTS_URL,
            json={'results_start': 1, 'results_returned': 0, 'results_available': 0, 'events': []}
        )

        result = ConnpassApiClient(api_key='key').get_event(99)

        assert isinstance(result.error, NotFound)
