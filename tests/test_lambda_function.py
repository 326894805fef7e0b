"""Integration tests for Lambda handler."""
import hashlib
import hmac
import json
import logging
import os
import time
from datetime import datetime
from unittest.mock import Mock, patch

import pytest

from ingest.slack_client import SlackApiError
from lambda_function import MEMORY_STORE, JsonFormatter, lambda_handler, setup_logging
from processor.models import ParsedEvent, RawMessage, SyncResult


@pytest.fixture
def mock_env():
    """Set up environment variables for testing."""
    env_vars = {
        'LOG_LEVEL': 'INFO',
        'SLACK_BOT_TOKEN': 'xoxb-test',
        'SLACK_CHANNEL_IDS': 'C1, C2',
        'HISTORY_LIMIT': '25',
        'TIMEOUT_SECONDS': '10',
        'TIMEZONE': 'UTC'
    }
    with patch.dict(os.environ, env_vars, clear=True):
        yield env_vars


@pytest.fixture(autouse=True)
def empty_store():
    MEMORY_STORE.clear()
    yield MEMORY_STORE
    MEMORY_STORE.clear()


@pytest.fixture
def mock_context():
    """Create a mock Lambda context."""
    context = Mock()
    context.function_name = 'test-function'
    context.aws_request_id = 'test-request-id'
    return context


@pytest.fixture
def mock_client():
    with patch('lambda_function.SlackClient') as mock_client_class:
        client = Mock()
        client.get_channel_name.return_value = 'announcements'
        client.get_user_name.return_value = 'Ada Lovelace'
        mock_client_class.return_value = client
        client.client_class = mock_client_class
        yield client


def messages_for(channel_id, *texts):
    return [
        RawMessage(text=text, ts=f'1773130000.{i:06d}', channel_id=channel_id,
                   channel_name=f'channel-{channel_id}', user='U1')
        for i, text in enumerate(texts)
    ]


def http_event(method, path, query=None, body=None, headers=None):
    return {
        'httpMethod': method,
        'path': path,
        'queryStringParameters': query,
        'headers': headers or {},
        'body': body,
        'isBase64Encoded': False
    }


def stored_event(event_id, hour, day=11):
    return ParsedEvent(
        event_id=event_id,
        channel_id='C1',
        title=event_id,
        description=event_id,
        start_time=datetime(2026, 3, day, hour, 0),
        end_time=datetime(2026, 3, day, hour + 1, 0),
        location='',
        categories=('Uncategorized',),
        organizer_id='slack-user-U1',
        organizer_name='general',
        tags=('Slack', 'general'),
        color='#611f69'
    )


class TestScheduledImport:
    """Test cases for the scheduled channel import."""

    def test_successful_import(self, mock_env, mock_context, mock_client):
        mock_client.fetch_messages.side_effect = [
            messages_for('C1', 'Pizza night at The Cut 6-8pm', 'has joined the channel'),
            messages_for('C2', 'Yoga 8am'),
        ]

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['message'] == 'Import completed'
        assert body['statistics']['channels'] == 2
        assert body['statistics']['messages_fetched'] == 3
        assert body['statistics']['events_parsed'] == 2
        assert body['statistics']['events_added'] == 2
        assert body['errors'] == []
        assert MEMORY_STORE.count() == 2

        mock_client.client_class.assert_called_once_with('xoxb-test', timeout=10)
        mock_client.fetch_messages.assert_any_call('C1', limit=25)
        mock_client.fetch_messages.assert_any_call('C2', limit=25)

    def test_reimport_is_idempotent(self, mock_env, mock_context, mock_client):
        mock_client.fetch_messages.side_effect = lambda channel_id, limit: messages_for(
            channel_id, 'Trivia 7pm'
        )

        lambda_handler({}, mock_context)
        response = lambda_handler({}, mock_context)

        body = json.loads(response['body'])
        assert body['statistics']['events_added'] == 0
        assert MEMORY_STORE.count() == 2

    def test_out_of_range_date_does_not_fail_import(self, mock_env, mock_context, mock_client):
        mock_client.fetch_messages.side_effect = [
            messages_for('C1', 'Launch party 12/31/9999 11:30pm'),
            messages_for('C2', 'Yoga 8am'),
        ]

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 200
        assert json.loads(response['body'])['statistics']['events_added'] == 2

    def test_one_channel_fails(self, mock_env, mock_context, mock_client):
        mock_client.fetch_messages.side_effect = [
            SlackApiError('conversations.history', 'not_in_channel'),
            messages_for('C2', 'Yoga 8am'),
        ]

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['statistics']['events_added'] == 1
        assert len(body['errors']) == 1
        assert 'not_in_channel' in body['errors'][0]

    def test_all_channels_fail(self, mock_env, mock_context, mock_client):
        mock_client.fetch_messages.side_effect = Exception('Network error')

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['ok'] is False
        assert len(body['errors']) == 2

    def test_no_channels_configured(self, mock_env, mock_context, mock_client):
        with patch.dict(os.environ, {'SLACK_CHANNEL_IDS': ''}):
            response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 400
        mock_client.fetch_messages.assert_not_called()

    @patch('lambda_function.DynamoDBEventStore')
    def test_uses_dynamodb_when_table_configured(
        self, mock_store_class, mock_env, mock_context, mock_client
    ):
        mock_client.fetch_messages.return_value = messages_for('C1', 'Trivia 7pm')
        mock_store = Mock()
        mock_store.save_events.return_value = SyncResult(added=1, updated=0, unchanged=0)
        mock_store_class.return_value = mock_store

        with patch.dict(os.environ, {'TABLE_NAME': 'campus-events'}):
            response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 200
        mock_store_class.assert_called_once_with(table_name='campus-events')
        assert mock_store.save_events.call_count == 2
        assert MEMORY_STORE.count() == 0

    @patch('lambda_function.setup_logging')
    def test_logging_output(self, mock_setup_logging, mock_env, mock_context, mock_client, caplog):
        mock_client.fetch_messages.return_value = messages_for('C1', 'Trivia 7pm')

        with caplog.at_level(logging.INFO):
            response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 200
        log_messages = [record.message for record in caplog.records]
        assert any('Scheduled import started' in msg for msg in log_messages)
        assert any('Parsed 1 events out of 1 messages' in msg for msg in log_messages)
        assert any('Scheduled import finished' in msg for msg in log_messages)


class TestHttpRoutes:
    """Test cases for the API Gateway routes."""

    def test_index(self, mock_env, mock_context):
        response = lambda_handler(http_event('GET', '/'), mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['service'] == 'campus-event-sync'
        assert 'layout' in body['endpoints']

    def test_health(self, mock_env, mock_context):
        MEMORY_STORE.put_event(stored_event('a', 9))

        response = lambda_handler(http_event('GET', '/api/slack/health/'), mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['status'] == 'ok'
        assert body['eventsInStore'] == 1

    def test_unknown_route(self, mock_env, mock_context):
        response = lambda_handler(http_event('GET', '/api/nope'), mock_context)

        assert response['statusCode'] == 404

    def test_http_api_v2_payload(self, mock_env, mock_context):
        event = {
            'rawPath': '/api/slack/health',
            'requestContext': {'http': {'method': 'GET'}}
        }

        response = lambda_handler(event, mock_context)

        assert response['statusCode'] == 200

    def test_channels(self, mock_env, mock_context, mock_client):
        mock_client.list_channels.return_value = [{'id': 'C1', 'name': 'general'}]

        response = lambda_handler(http_event('GET', '/api/slack/channels'), mock_context)

        assert response['statusCode'] == 200
        assert json.loads(response['body'])['channels'] == [{'id': 'C1', 'name': 'general'}]

    def test_channels_error(self, mock_env, mock_context, mock_client):
        mock_client.list_channels.side_effect = SlackApiError('conversations.list', 'invalid_auth')

        response = lambda_handler(http_event('GET', '/api/slack/channels'), mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['ok'] is False
        assert 'invalid_auth' in body['error']

    def test_channel_events_are_fetched_and_cached(self, mock_env, mock_context, mock_client):
        mock_client.fetch_messages.return_value = messages_for(
            'C9', 'Pizza night at The Cut 6-8pm', 'Yoga 8am'
        )

        response = lambda_handler(
            http_event('GET', '/api/slack/events', query={'channel': 'C9', 'limit': '5'}),
            mock_context
        )

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['count'] == 2
        assert body['channel'] == {'id': 'C9', 'name': 'channel-C9'}
        assert body['events'][0]['location'] == 'The Cut'
        mock_client.fetch_messages.assert_called_once_with('C9', limit=5)
        assert MEMORY_STORE.count() == 2

    def test_events_without_channel_reads_store(self, mock_env, mock_context, mock_client):
        MEMORY_STORE.put_event(stored_event('a', 9))

        response = lambda_handler(http_event('GET', '/api/slack/events'), mock_context)

        body = json.loads(response['body'])
        assert body['count'] == 1
        mock_client.fetch_messages.assert_not_called()

    def test_cached_by_channel(self, mock_env, mock_context):
        MEMORY_STORE.put_event(stored_event('a', 9))

        response = lambda_handler(
            http_event('GET', '/api/slack/cached', query={'channel': 'C2'}),
            mock_context
        )

        assert json.loads(response['body'])['count'] == 0

    def test_cached_day_layout(self, mock_env, mock_context):
        MEMORY_STORE.put_event(stored_event('a', 9))
        MEMORY_STORE.put_event(stored_event('b', 9))
        MEMORY_STORE.put_event(stored_event('c', 11))
        MEMORY_STORE.put_event(stored_event('other-day', 9, day=12))

        response = lambda_handler(
            http_event('GET', '/api/slack/cached', query={'day': '2026-03-11'}),
            mock_context
        )

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['count'] == 3
        layout = {item['eventId']: item for item in body['layout']}
        assert set(layout) == {'a', 'b', 'c'}
        assert layout['a']['totalColumns'] == layout['b']['totalColumns'] == 2
        assert layout['c'] == {'eventId': 'c', 'column': 0, 'totalColumns': 1}

    def test_cached_invalid_day(self, mock_env, mock_context):
        response = lambda_handler(
            http_event('GET', '/api/slack/cached', query={'day': 'someday'}),
            mock_context
        )

        assert response['statusCode'] == 400

    def test_layout(self, mock_env, mock_context):
        body = json.dumps({'events': [
            {'id': 'A', 'startTime': '2026-03-10T09:00:00Z', 'endTime': '2026-03-10T10:00:00Z'},
            {'id': 'B', 'start_ts': '2026-03-10T09:30:00Z', 'end_ts': '2026-03-10T10:30:00Z'},
            {'id': 'C', 'start_time': '2026-03-10T11:00:00Z', 'end_time': '2026-03-10T12:00:00Z'},
        ]})

        response = lambda_handler(http_event('POST', '/api/calendar/layout', body=body), mock_context)

        assert response['statusCode'] == 200
        layout = json.loads(response['body'])['layout']
        assert layout == [
            {'eventId': 'A', 'column': 0, 'totalColumns': 2},
            {'eventId': 'B', 'column': 1, 'totalColumns': 2},
            {'eventId': 'C', 'column': 0, 'totalColumns': 1},
        ]

    def test_layout_rejects_malformed_events(self, mock_env, mock_context):
        body = json.dumps({'events': [{'id': 'A', 'startTime': 'soon', 'endTime': 'later'}]})

        response = lambda_handler(http_event('POST', '/api/calendar/layout', body=body), mock_context)

        assert response['statusCode'] == 400
        assert json.loads(response['body'])['ok'] is False


class TestWebhook:
    """Test cases for the Slack Events API webhook."""

    def callback(self, channel='C1', text='Pizza night at The Cut 6-8pm'):
        return json.dumps({
            'type': 'event_callback',
            'event': {
                'type': 'message',
                'channel': channel,
                'user': 'U1',
                'text': text,
                'ts': '1773130000.000200'
            }
        })

    def signed_headers(self, body, secret):
        timestamp = str(int(time.time()))
        digest = hmac.new(
            secret.encode('utf-8'),
            f"v0:{timestamp}:{body}".encode('utf-8'),
            hashlib.sha256
        ).hexdigest()
        return {
            'X-Slack-Request-Timestamp': timestamp,
            'X-Slack-Signature': f"v0={digest}"
        }

    def test_url_verification(self, mock_env, mock_context):
        body = json.dumps({'type': 'url_verification', 'challenge': 'abc123'})

        response = lambda_handler(http_event('POST', '/api/slack/webhook', body=body), mock_context)

        assert response['statusCode'] == 200
        assert json.loads(response['body']) == {'challenge': 'abc123'}

    @patch('lambda_function.setup_logging')
    def test_unsigned_request_without_secret_logs_warning(
        self, mock_setup_logging, mock_env, mock_context, mock_client, caplog
    ):
        with caplog.at_level(logging.WARNING):
            response = lambda_handler(
                http_event('POST', '/api/slack/webhook', body=self.callback()),
                mock_context
            )

        assert response['statusCode'] == 200
        warnings = [r.message for r in caplog.records if r.levelno == logging.WARNING]
        assert any('SLACK_SIGNING_SECRET is not set' in msg for msg in warnings)

    @patch('lambda_function.setup_logging')
    def test_signed_request_logs_no_secret_warning(
        self, mock_setup_logging, mock_env, mock_context, mock_client, caplog
    ):
        body = self.callback()
        headers = self.signed_headers(body, 'shh')

        with patch.dict(os.environ, {'SLACK_SIGNING_SECRET': 'shh'}):
            with caplog.at_level(logging.WARNING):
                lambda_handler(
                    http_event('POST', '/api/slack/webhook', body=body, headers=headers),
                    mock_context
                )

        assert not any('SLACK_SIGNING_SECRET' in r.message for r in caplog.records)

    def test_message_is_parsed_and_stored(self, mock_env, mock_context, mock_client):
        response = lambda_handler(
            http_event('POST', '/api/slack/webhook', body=self.callback()),
            mock_context
        )

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['stored'] is True
        assert body['id'] == 'slack-C1-1773130000.000200'

        event = MEMORY_STORE.get_event(body['id'])
        assert event.organizer_name == 'Ada Lovelace'
        assert event.tags == ('Slack', 'announcements')
        assert event.location == 'The Cut'
        mock_client.get_user_name.assert_called_once_with('U1')

    def test_unmonitored_channel_is_ignored(self, mock_env, mock_context, mock_client):
        response = lambda_handler(
            http_event('POST', '/api/slack/webhook', body=self.callback(channel='C7')),
            mock_context
        )

        assert json.loads(response['body'])['stored'] is False
        assert MEMORY_STORE.count() == 0

    def test_join_message_is_not_stored(self, mock_env, mock_context, mock_client):
        body = self.callback(text='<@U1> has joined the channel')

        response = lambda_handler(http_event('POST', '/api/slack/webhook', body=body), mock_context)

        assert json.loads(response['body'])['stored'] is False

    def test_valid_signature(self, mock_env, mock_context, mock_client):
        body = self.callback()
        headers = self.signed_headers(body, 'shh')

        with patch.dict(os.environ, {'SLACK_SIGNING_SECRET': 'shh'}):
            response = lambda_handler(
                http_event('POST', '/api/slack/webhook', body=body, headers=headers),
                mock_context
            )

        assert response['statusCode'] == 200
        assert json.loads(response['body'])['stored'] is True

    def test_invalid_signature(self, mock_env, mock_context, mock_client):
        body = self.callback()
        headers = self.signed_headers(body, 'wrong-secret')

        with patch.dict(os.environ, {'SLACK_SIGNING_SECRET': 'shh'}):
            response = lambda_handler(
                http_event('POST', '/api/slack/webhook', body=body, headers=headers),
                mock_context
            )

        assert response['statusCode'] == 401
        assert MEMORY_STORE.count() == 0


class TestSetupLogging:
    """Test cases for logging setup."""

    def test_setup_logging_default_level(self):
        setup_logging()
        assert logging.getLogger().level == logging.INFO

    def test_setup_logging_debug_level(self):
        setup_logging('DEBUG')
        assert logging.getLogger().level == logging.DEBUG

    def test_setup_logging_unknown_level_falls_back_to_info(self):
        setup_logging('VERBOSE')
        assert logging.getLogger().level == logging.INFO

    def test_json_formatter(self):
        record = logging.LogRecord(
            'processor.layout', logging.WARNING, __file__, 1, 'Laid out %d events', (3,), None
        )

        data = json.loads(JsonFormatter().format(record))

        assert data['level'] == 'WARNING'
        assert data['message'] == 'Laid out 3 events'
        assert data['logger'] == 'processor.layout'
