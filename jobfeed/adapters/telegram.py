from telethon import TelegramClient
from telethon.sessions import StringSession
from telethon.errors import FloodWaitError
from datetime import timedelta
import logging
import re
from typing import List, Optional

from .base import BaseAdapter, UnifiedJob
from ..database import SourceEnum, utcnow
from ..errors import AdapterFailure
from ..models import ScrapeOptions

logger = logging.getLogger(__name__)


class TelegramAdapter(BaseAdapter):
    """Job posts from public Telegram channels, filtered by keyword."""
    source = SourceEnum.TELEGRAM
    label = 'Telegram'
    history_hours = 24
    messages_per_channel = 50

    def __init__(self, api_id: Optional[int], api_hash: Optional[str], session_string: Optional[str] = None,
                 channels: Optional[List[str]] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_id = api_id
        self.api_hash = api_hash
        self.session_string = session_string
        self.channels = list(channels or [])
        self.client = None

    @property
    def available(self) -> bool:
        return bool(self.api_id and self.api_hash and self.session_string and self.channels)

    def _get_client(self) -> TelegramClient:
        if self.client is None:
            self.client = TelegramClient(StringSession(self.session_string), self.api_id, self.api_hash)
        return self.client

    async def fetch(self, options: ScrapeOptions) -> List[UnifiedJob]:
        client = self._get_client()
        await client.start()

        jobs = []
        time_limit = utcnow() - timedelta(hours=self.history_hours)
        terms = options.keywords.lower().split()
        for channel in self.channels:
            logger.info(f"[Telegram] Fetching {channel}...")
            try:
                async for message in client.iter_messages(channel, limit=self.messages_per_channel):
                    if message.date.replace(tzinfo=None) < time_limit:
                        break
                    if message.text and all(term in message.text.lower() for term in terms):
                        jobs.append(self._parse_message(message, channel))
            except FloodWaitError as e:
                # Surface the wait to the caller instead of sleeping through its deadline
                raise AdapterFailure(self.name, f"FloodWait {e.seconds}s on {channel}") from e
            if len(jobs) >= options.limit:
                break
        return jobs

    def _parse_message(self, message, channel) -> UnifiedJob:
        text = message.text.strip()
        lines = text.split('\n')

        url_pattern = r'https?://[^\s]+'
        urls = re.findall(url_pattern, text)

        return UnifiedJob(
            title=lines[0][:100] if lines else "Job Posting",
            company=f"Telegram: {channel}",
            location="Remote/Telegram",
            description=text,
            external_id=f"{channel}:{message.id}",
            apply_link=urls[0] if urls else None,
            posted_at_source=message.date.replace(tzinfo=None),
            is_remote=True,
            raw_data={'message_id': message.id, 'chat_id': message.chat_id}
        )
