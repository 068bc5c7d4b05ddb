"""
Recording Gateway — in-process gateway that keeps every send in memory.

Used for local development and tests. Failures can be injected per contact
to exercise the outbox's failed-delivery path.
"""
from __future__ import annotations

import uuid
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from channels.base import MessagingGateway
from models.schemas import DeliveryResult, DeliveryStatus, MessageContent

logger = structlog.get_logger()


@dataclass
class SentMessage:
    contact_id: str
    content: MessageContent
    channel_message_id: str
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def text(self) -> str:
        return self.content.text


class RecordingGateway(MessagingGateway):

    name = "recording"

    def __init__(self):
        super().__init__()
        self.sent: list[SentMessage] = []
        self.fail_contacts: set[str] = set()
        self.raise_for: set[str] = set()

    async def _do_send(self, contact_id: str, content: MessageContent) -> DeliveryResult:
        if contact_id in self.raise_for:
            raise ConnectionError(f"gateway unreachable for {contact_id}")
        if contact_id in self.fail_contacts:
            return DeliveryResult(status=DeliveryStatus.FAILED, error="rejected by recipient")

        msg_id = f"rec.{uuid.uuid4().hex[:12]}"
        self.sent.append(SentMessage(contact_id=contact_id, content=content, channel_message_id=msg_id))
        logger.debug("recording_gateway_sent", contact_id=contact_id, msg_id=msg_id)
        return DeliveryResult(status=DeliveryStatus.SENT, channel_message_id=msg_id)

    def texts(self, contact_id: Optional[str] = None) -> list[str]:
        return [m.text for m in self.sent if contact_id is None or m.contact_id == contact_id]

    def clear(self):
        self.sent.clear()
