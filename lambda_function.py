"""AWS Lambda handler for the campus Slack event importer."""
import base64
import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from ingest.slack_client import SlackClient
from ingest.slack_events import message_from_callback, verify_signature
from processor.adapters import event_from_parsed, event_from_record
from processor.layout import OverlapLayoutEngine
from processor.message_parser import EventTextParser
from processor.models import RawMessage
from storage.dynamodb_manager import DynamoDBEventStore
from storage.memory_store import InMemoryEventStore

SERVICE_NAME = 'campus-event-sync'
SERVICE_VERSION = '1.0.0'

# Used when no TABLE_NAME is configured; survives warm invocations only
MEMORY_STORE = InMemoryEventStore()


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


@dataclass
class ServiceConfig:
    """Settings read from the Lambda environment."""
    table_name: Optional[str] = None
    log_level: str = 'INFO'
    slack_bot_token: str = ''
    slack_signing_secret: Optional[str] = None
    channel_ids: List[str] = field(default_factory=list)
    history_limit: int = 50
    timeout_seconds: int = 30
    timezone: str = 'UTC'


def load_config() -> ServiceConfig:
    """Read configuration from environment variables."""
    channels = os.environ.get('SLACK_CHANNEL_IDS', '')
    return ServiceConfig(
        table_name=os.environ.get('TABLE_NAME') or None,
        log_level=os.environ.get('LOG_LEVEL', 'INFO'),
        slack_bot_token=os.environ.get('SLACK_BOT_TOKEN', ''),
        slack_signing_secret=os.environ.get('SLACK_SIGNING_SECRET') or None,
        channel_ids=[c.strip() for c in channels.split(',') if c.strip()],
        history_limit=int(os.environ.get('HISTORY_LIMIT', '50')),
        timeout_seconds=int(os.environ.get('TIMEOUT_SECONDS', '30')),
        timezone=os.environ.get('TIMEZONE', 'UTC')
    )


def build_store(config: ServiceConfig):
    """Pick the DynamoDB store when a table is configured."""
    if config.table_name:
        return DynamoDBEventStore(table_name=config.table_name)
    return MEMORY_STORE


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler.

    API Gateway requests are routed to the REST endpoints; any other
    invocation (EventBridge schedule) imports the configured channels.

    Args:
        event: API Gateway or EventBridge payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and JSON body
    """
    config = load_config()
    setup_logging(config.log_level)

    if _is_http_request(event):
        return handle_http(event, config)

    return run_scheduled_import(config)


def run_scheduled_import(config: ServiceConfig) -> Dict[str, Any]:
    """
    Import recent messages of every configured channel.

    Returns:
        Response dict with per-run statistics
    """
    logger = logging.getLogger(__name__)
    start_time = time.time()
    logger.info(
        "Scheduled import started",
        extra={
            'channels': config.channel_ids,
            'history_limit': config.history_limit
        }
    )

    if not config.channel_ids:
        logger.warning("No channels configured (SLACK_CHANNEL_IDS is empty)")
        return _response(400, {
            'ok': False,
            'error': 'No channels configured'
        })

    try:
        client = SlackClient(config.slack_bot_token, timeout=config.timeout_seconds)
        parser = EventTextParser()
        store = build_store(config)
        now = _now(config)

        messages_fetched = 0
        events_parsed = 0
        added = updated = unchanged = 0
        errors = []
        failed_channels = 0

        for channel_id in config.channel_ids:
            try:
                messages = client.fetch_messages(channel_id, limit=config.history_limit)
            except Exception as e:
                # One broken channel should not stop the others
                logger.error(
                    f"Failed to fetch messages from {channel_id}: {str(e)}",
                    extra={'error_type': type(e).__name__},
                    exc_info=True
                )
                errors.append(f"{channel_id}: {e}")
                failed_channels += 1
                continue

            events = parser.parse_messages(messages, now=now)
            result = store.save_events(events)

            messages_fetched += len(messages)
            events_parsed += len(events)
            added += result.added
            updated += result.updated
            unchanged += result.unchanged
            errors.extend(result.errors)

        duration = time.time() - start_time
        status = 500 if failed_channels == len(config.channel_ids) else 200

        logger.info(
            "Scheduled import finished",
            extra={
                'duration_seconds': round(duration, 2),
                'events_added': added,
                'events_updated': updated,
                'errors': errors
            }
        )

        return _response(status, {
            'ok': status == 200,
            'message': 'Import completed' if status == 200 else 'Import failed',
            'statistics': {
                'channels': len(config.channel_ids),
                'messages_fetched': messages_fetched,
                'events_parsed': events_parsed,
                'events_added': added,
                'events_updated': updated,
                'events_unchanged': unchanged,
                'duration_seconds': round(duration, 2)
            },
            'errors': errors
        })

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Scheduled import failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _response(500, {
            'ok': False,
            'error': str(e),
            'error_type': type(e).__name__,
            'duration_seconds': round(duration, 2)
        })


def handle_http(event: Dict[str, Any], config: ServiceConfig) -> Dict[str, Any]:
    """
    Route an API Gateway request.

    Returns:
        API Gateway proxy response
    """
    logger = logging.getLogger(__name__)
    method, path = _route(event)
    logger.info(f"{method} {path}")

    routes = {
        ('GET', '/'): _get_index,
        ('GET', '/api/slack/health'): _get_health,
        ('GET', '/api/slack/channels'): _get_channels,
        ('GET', '/api/slack/events'): _get_channel_events,
        ('GET', '/api/slack/cached'): _get_cached_events,
        ('POST', '/api/slack/webhook'): _post_webhook,
        ('POST', '/api/calendar/layout'): _post_layout,
    }

    handler = routes.get((method, path))
    if handler is None:
        return _response(404, {'ok': False, 'error': f"No route for {method} {path}"})

    try:
        return handler(event, config)
    except Exception as e:
        logger.error(
            f"Request {method} {path} failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _response(500, {'ok': False, 'error': str(e) or type(e).__name__})


def _get_index(event, config):
    return _response(200, {
        'service': SERVICE_NAME,
        'version': SERVICE_VERSION,
        'endpoints': {
            'health': 'GET /api/slack/health',
            'channels': 'GET /api/slack/channels',
            'events': 'GET /api/slack/events?channel={id}&limit={n}',
            'cached': 'GET /api/slack/cached?channel={id}',
            'webhook': 'POST /api/slack/webhook',
            'layout': 'POST /api/calendar/layout'
        }
    })


def _get_health(event, config):
    return _response(200, {
        'status': 'ok',
        'service': SERVICE_NAME,
        'eventsInStore': build_store(config).count(),
        'timestamp': datetime.now(ZoneInfo('UTC')).isoformat()
    })


def _get_channels(event, config):
    client = SlackClient(config.slack_bot_token, timeout=config.timeout_seconds)
    channels = client.list_channels()
    return _response(200, {'ok': True, 'channels': channels})


def _get_channel_events(event, config):
    params = _query(event)
    store = build_store(config)
    channel_id = params.get('channel')

    # Without a channel, answer from the store
    if not channel_id:
        events = store.get_events()
        return _response(200, {
            'ok': True,
            'events': [e.to_dict() for e in events],
            'count': len(events)
        })

    try:
        limit = int(params.get('limit') or config.history_limit)
    except ValueError:
        limit = config.history_limit

    client = SlackClient(config.slack_bot_token, timeout=config.timeout_seconds)
    messages = client.fetch_messages(channel_id, limit=limit)
    events = EventTextParser().parse_messages(messages, now=_now(config))
    store.save_events(events)

    channel_name = messages[0].channel_name if messages else channel_id
    return _response(200, {
        'ok': True,
        'events': [e.to_dict() for e in events],
        'count': len(events),
        'channel': {'id': channel_id, 'name': channel_name}
    })


def _get_cached_events(event, config):
    """Stored events; with ?day=YYYY-MM-DD, that day's events and their layout."""
    params = _query(event)
    store = build_store(config)
    channel_id = params.get('channel')
    events = store.get_events_by_channel(channel_id) if channel_id else store.get_events()

    if not params.get('day'):
        return _response(200, {
            'ok': True,
            'events': [e.to_dict() for e in events],
            'count': len(events)
        })

    try:
        day = date.fromisoformat(params['day'])
    except ValueError:
        return _response(400, {'ok': False, 'error': f"Invalid day: {params['day']}"})

    layout = OverlapLayoutEngine().layout_days(
        [event_from_parsed(e) for e in events], [day]
    )[day]
    day_ids = {r.event_id for r in layout}
    return _response(200, {
        'ok': True,
        'events': [e.to_dict() for e in events if e.event_id in day_ids],
        'count': len(day_ids),
        'layout': [_layout_dict(r) for r in layout]
    })


def _post_webhook(event, config):
    """Slack Events API callback: store events posted in monitored channels."""
    logger = logging.getLogger(__name__)
    body = _body(event)

    if config.slack_signing_secret:
        headers = {k.lower(): v for k, v in (event.get('headers') or {}).items()}
        if not verify_signature(
            config.slack_signing_secret,
            headers.get('x-slack-request-timestamp', ''),
            body,
            headers.get('x-slack-signature', '')
        ):
            logger.warning("Rejected Slack request with invalid signature")
            return _response(401, {'ok': False, 'error': 'invalid_signature'})
    else:
        logger.warning(
            "SLACK_SIGNING_SECRET is not set; accepting unsigned webhook request"
        )

    try:
        payload = json.loads(body or '{}')
    except json.JSONDecodeError:
        return _response(400, {'ok': False, 'error': 'invalid_json'})

    if payload.get('type') == 'url_verification':
        return _response(200, {'challenge': payload.get('challenge')})

    msg = message_from_callback(payload)
    if msg is None:
        return _response(200, {'ok': True, 'stored': False})

    channel_id = msg['channel']
    if config.channel_ids and channel_id not in config.channel_ids:
        return _response(200, {'ok': True, 'stored': False})

    client = SlackClient(config.slack_bot_token, timeout=config.timeout_seconds)
    username = msg.get('username')
    if not username and msg.get('user'):
        username = client.get_user_name(msg['user'])

    message = RawMessage(
        text=msg.get('text') or '',
        ts=msg.get('ts') or '',
        channel_id=channel_id,
        channel_name=client.get_channel_name(channel_id),
        user=msg.get('user'),
        username=username
    )

    parsed = EventTextParser().parse(message, now=_now(config))
    if parsed is None:
        return _response(200, {'ok': True, 'stored': False})

    is_new = build_store(config).put_event(parsed)
    if is_new:
        logger.info(
            f"New event from #{message.channel_name}: "
            f"\"{parsed.title}\" ({parsed.start_time.isoformat()})"
        )

    return _response(200, {'ok': True, 'stored': True, 'id': parsed.event_id})


def _post_layout(event, config):
    """Lay out a day's events: {"events": [...]} -> column assignments."""
    try:
        payload = json.loads(_body(event) or '{}')
        records = payload.get('events', [])
        events = [event_from_record(record) for record in records]
        results = OverlapLayoutEngine().layout(events)
    except (ValueError, TypeError, AttributeError) as e:
        return _response(400, {'ok': False, 'error': str(e)})

    return _response(200, {
        'ok': True,
        'layout': [_layout_dict(r) for r in results]
    })


def _layout_dict(result) -> Dict[str, Any]:
    return {
        'eventId': result.event_id,
        'column': result.column,
        'totalColumns': result.total_columns
    }


def _is_http_request(event: Dict[str, Any]) -> bool:
    return 'httpMethod' in event or 'rawPath' in event or 'routeKey' in event


def _route(event: Dict[str, Any]):
    http = (event.get('requestContext') or {}).get('http') or {}
    method = (event.get('httpMethod') or http.get('method') or 'GET').upper()
    path = event.get('rawPath') or event.get('path') or '/'
    if len(path) > 1:
        path = path.rstrip('/')
    return method, path


def _query(event: Dict[str, Any]) -> Dict[str, str]:
    return event.get('queryStringParameters') or {}


def _body(event: Dict[str, Any]) -> str:
    body = event.get('body') or ''
    if event.get('isBase64Encoded'):
        body = base64.b64decode(body).decode('utf-8')
    return body


def _now(config: ServiceConfig) -> datetime:
    return datetime.now(ZoneInfo(config.timezone))


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {
            'Content-Type': 'application/json',
            'Access-Control-Allow-Origin': '*'
        },
        'body': json.dumps(body)
    }
