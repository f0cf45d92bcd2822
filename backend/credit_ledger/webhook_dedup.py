"""
Webhook Deduplicator

Remembers provider notification ids that were already taken in.
record() is a unique-index insert, so two concurrent deliveries of the
same event cannot both pass.
"""

import logging
from datetime import datetime, timezone

from pymongo.errors import DuplicateKeyError

from .exceptions import AlreadyRecorded
from .models import WebhookEventRecord

logger = logging.getLogger(__name__)


class WebhookDeduplicator:

    def __init__(self, db):
        self.db = db

    async def seen(self, provider_event_id: str) -> bool:
        existing = await self.db.webhook_events.find_one(
            {"provider_event_id": provider_event_id},
            {"_id": 0, "provider_event_id": 1}
        )
        return existing is not None

    async def record(self, provider_event_id: str, event_type: str = None) -> WebhookEventRecord:
        """
        Insert the marker for provider_event_id.

        Raises:
            AlreadyRecorded: the event id is already stored
        """
        record = WebhookEventRecord(
            provider_event_id=provider_event_id,
            event_type=event_type,
            received_at=datetime.now(timezone.utc).isoformat()
        )

        try:
            await self.db.webhook_events.insert_one(record.model_dump())
        except DuplicateKeyError:
            logger.info(f"Webhook event {provider_event_id} already recorded")
            raise AlreadyRecorded(provider_event_id)

        return record
