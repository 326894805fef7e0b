"""Slack Web API client for reading channel history."""
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from processor.models import RawMessage

logger = logging.getLogger(__name__)


class SlackApiError(Exception):
    """Slack answered the request with "ok": false."""

    def __init__(self, method: str, error: str):
        super().__init__(f"Slack API {method} failed: {error}")
        self.method = method
        self.error = error


class SlackClient:
    """Thin client over the Slack Web API methods the importer needs."""

    BASE_URL = "https://slack.com/api"
    MAX_HISTORY_LIMIT = 200
    MAX_RETRIES = 3

    def __init__(self, token: str, timeout: int = 30):
        """
        Initialize the Slack client.

        Args:
            token: Bot token (xoxb-...)
            timeout: HTTP request timeout in seconds (default: 30)
        """
        self.token = token
        self.timeout = timeout

    def list_channels(self) -> List[Dict[str, Any]]:
        """
        List public, non-archived channels visible to the bot.

        Returns:
            List of channel summaries
        """
        data = self._call('conversations.list', {
            'types': 'public_channel',
            'exclude_archived': 'true',
            'limit': 200
        })

        channels = []
        for channel in data.get('channels', []):
            channels.append({
                'id': channel.get('id'),
                'name': channel.get('name'),
                'topic': (channel.get('topic') or {}).get('value', ''),
                'purpose': (channel.get('purpose') or {}).get('value', ''),
                'memberCount': channel.get('num_members', 0),
                'isPrivate': channel.get('is_private', False)
            })

        logger.info(f"Listed {len(channels)} channels")
        return channels

    def get_channel_name(self, channel_id: str) -> str:
        """
        Look up a channel's name, falling back to its id.
        """
        try:
            data = self._call('conversations.info', {'channel': channel_id})
        except (SlackApiError, requests.RequestException) as e:
            logger.warning(f"Could not look up channel {channel_id}: {e}")
            return channel_id

        return (data.get('channel') or {}).get('name') or channel_id

    def get_user_name(self, user_id: str) -> Optional[str]:
        """
        Look up a user's display name.

        Returns:
            Real name, else user name, else None if the lookup fails
        """
        try:
            data = self._call('users.info', {'user': user_id})
        except (SlackApiError, requests.RequestException) as e:
            logger.warning(f"Could not look up user {user_id}: {e}")
            return None

        user = data.get('user') or {}
        return user.get('real_name') or user.get('name') or None

    def fetch_messages(self, channel_id: str, limit: int = 50) -> List[RawMessage]:
        """
        Fetch recent messages of a channel.

        Args:
            channel_id: Slack channel id
            limit: Number of messages to request (1-200)

        Returns:
            Plain and bot messages, newest first as Slack returns them
        """
        limit = max(1, min(limit, self.MAX_HISTORY_LIMIT))
        channel_name = self.get_channel_name(channel_id)

        data = self._call('conversations.history', {
            'channel': channel_id,
            'limit': limit
        })

        messages = []
        for msg in data.get('messages', []):
            # Joins, edits, deletions and other subtypes are not announcements
            subtype = msg.get('subtype')
            if subtype and subtype != 'bot_message':
                continue

            messages.append(RawMessage(
                text=msg.get('text') or '',
                ts=msg.get('ts') or '',
                channel_id=channel_id,
                channel_name=channel_name,
                user=msg.get('user'),
                username=msg.get('username')
            ))

        logger.info(
            f"Fetched {len(messages)} messages from #{channel_name} ({channel_id})"
        )
        return messages

    def _call(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Call a Web API method with retry logic.

        Args:
            method: API method name, e.g. "conversations.history"
            params: Query parameters

        Returns:
            Decoded JSON response

        Raises:
            requests.RequestException: If all retry attempts fail
            SlackApiError: If Slack reports an error
        """
        base_delay = 1  # seconds

        for attempt in range(self.MAX_RETRIES):
            try:
                logger.debug(
                    f"Calling {method} (attempt {attempt + 1}/{self.MAX_RETRIES})"
                )
                response = requests.get(
                    f"{self.BASE_URL}/{method}",
                    params=params,
                    headers={'Authorization': f"Bearer {self.token}"},
                    timeout=self.timeout
                )
                response.raise_for_status()
                data = response.json()
                break

            except requests.RequestException as e:
                if attempt < self.MAX_RETRIES - 1:
                    delay = base_delay * (2 ** attempt)
                    logger.warning(
                        f"{method} failed (attempt {attempt + 1}/{self.MAX_RETRIES}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {self.MAX_RETRIES} attempts of {method} failed. Last error: {e}"
                    )
                    raise

        if not data.get('ok'):
            raise SlackApiError(method, data.get('error', 'unknown_error'))

        return data
