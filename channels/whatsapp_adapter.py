"""
WhatsApp Gateway — WhatsApp Business Cloud API integration.

Provides:
- Phone number normalization (contact ids are digits-only phone numbers)
- Webhook verification (hub.verify_token challenge)
- Outbound: plain text, or a plain interactive payload when the action
  carries options (reply buttons for up to 3 options, a list otherwise)
- Inbound: text, interactive button_reply / list_reply (→ choice selection)
- Status update processing (sent, delivered, read, failed)

Option reply ids are the flow's handle ids ("option-0", "option-1", ...), so a
tap comes back as an exact branch selection.
"""
from __future__ import annotations

import re
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import ChannelError, MessagingGateway, StatusUpdate
from models.schemas import DeliveryResult, DeliveryStatus, InboundMessage, MessageContent

logger = structlog.get_logger()

GRAPH_API_URL = "https://graph.facebook.com"

MAX_REPLY_BUTTONS = 3
MAX_BUTTON_TITLE = 20
MAX_LIST_ROW_TITLE = 24

_STATUS_MAP = {
    "sent": DeliveryStatus.SENT,
    "delivered": DeliveryStatus.DELIVERED,
    "read": DeliveryStatus.READ,
    "failed": DeliveryStatus.FAILED,
}


def normalize_phone(phone: str) -> str:
    """Normalize phone to digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", phone or "")


def build_message_payload(phone: str, content: MessageContent) -> dict[str, Any]:
    """Cloud API request body for one outbound action."""
    base = {"messaging_product": "whatsapp", "recipient_type": "individual", "to": phone}
    options = content.options or []

    if not options:
        return {**base, "type": "text", "text": {"body": content.text}}

    if len(options) <= MAX_REPLY_BUTTONS and not (content.header or content.footer):
        interactive: dict[str, Any] = {
            "type": "button",
            "body": {"text": content.text or " "},
            "action": {"buttons": [
                {"type": "reply", "reply": {"id": f"option-{i}", "title": opt[:MAX_BUTTON_TITLE]}}
                for i, opt in enumerate(options)
            ]},
        }
    else:
        interactive = {
            "type": "list",
            "body": {"text": content.text or " "},
            "action": {
                "button": (content.button_label or "Options")[:MAX_BUTTON_TITLE],
                "sections": [{
                    "title": (content.header or "Options")[:MAX_LIST_ROW_TITLE],
                    "rows": [
                        {"id": f"option-{i}", "title": opt[:MAX_LIST_ROW_TITLE]}
                        for i, opt in enumerate(options)
                    ],
                }],
            },
        }
        if content.header:
            interactive["header"] = {"type": "text", "text": content.header}
        if content.footer:
            interactive["footer"] = {"text": content.footer}
    return {**base, "type": "interactive", "interactive": interactive}


class WhatsAppGateway(MessagingGateway):
    """WhatsApp Business Cloud API gateway."""

    name = "whatsapp"

    def __init__(self, config: dict[str, Any] = None, client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        config = config or {}
        self._phone_number_id: str = config.get("phone_number_id", "")
        self._access_token: str = config.get("access_token", "")
        self._verify_token: str = config.get("verify_token", "")
        self._api_version: str = config.get("api_version", "v18.0")
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{GRAPH_API_URL}/{self._api_version}",
                headers={"Authorization": f"Bearer {self._access_token}"},
                timeout=httpx.Timeout(30.0, connect=10.0),
            )
        return self._client

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the WhatsApp webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and self._verify_token and token == self._verify_token:
            return challenge
        return None

    # ── Send ──────────────────────────────────────────────────

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post_message(self, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        resp = await client.post(f"/{self._phone_number_id}/messages", json=payload)
        if resp.status_code >= 400:
            logger.error("whatsapp_api_error", status=resp.status_code, body=resp.text[:500])
            raise ChannelError(
                f"WhatsApp API returned {resp.status_code}",
                channel=self.name,
                retryable=resp.status_code >= 500,
            )
        return resp.json() if resp.content else {}

    async def _do_send(self, contact_id: str, content: MessageContent) -> DeliveryResult:
        phone = normalize_phone(contact_id)
        if not phone:
            return DeliveryResult(status=DeliveryStatus.FAILED, error="No WhatsApp number")

        body = await self._post_message(build_message_payload(phone, content))
        messages = body.get("messages") or [{}]
        msg_id = messages[0].get("id", "")
        logger.info("whatsapp_message_sent", to=phone, msg_id=msg_id, interactive=bool(content.options))
        return DeliveryResult(status=DeliveryStatus.SENT, channel_message_id=msg_id)

    # ── Inbound parsing ───────────────────────────────────────

    @staticmethod
    def _values(raw_payload: dict[str, Any]) -> list[dict[str, Any]]:
        values = []
        for entry in raw_payload.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value")
                if isinstance(value, dict):
                    values.append(value)
        return values

    def parse_inbound(self, raw_payload: dict[str, Any]) -> list[InboundMessage]:
        """Parse WhatsApp Cloud API webhook messages."""
        parsed = []
        for value in self._values(raw_payload):
            for msg in value.get("messages") or []:
                message = self._parse_message(msg)
                if message is not None:
                    parsed.append(message)
        return parsed

    @staticmethod
    def _parse_message(msg: dict[str, Any]) -> Optional[InboundMessage]:
        sender = normalize_phone(msg.get("from", ""))
        if not sender:
            return None
        msg_type = msg.get("type", "text")
        msg_id = msg.get("id") or None

        if msg_type == "text":
            return InboundMessage(contact_id=sender, text=msg.get("text", {}).get("body", ""), message_id=msg_id)

        if msg_type == "interactive":
            interactive = msg.get("interactive", {})
            itype = interactive.get("type", "")
            if itype in ("button_reply", "list_reply"):
                reply = interactive.get(itype, {})
                return InboundMessage(
                    contact_id=sender,
                    text=reply.get("title", ""),
                    selection=reply.get("id") or None,
                    message_id=msg_id,
                )

        if msg_type == "button":
            # Quick-reply button on a template message
            return InboundMessage(contact_id=sender, text=msg.get("button", {}).get("text", ""), message_id=msg_id)

        media = msg.get(msg_type, {}) if isinstance(msg.get(msg_type), dict) else {}
        return InboundMessage(
            contact_id=sender,
            text=media.get("caption") or f"[{msg_type}]",
            message_id=msg_id,
        )

    def parse_statuses(self, raw_payload: dict[str, Any]) -> list[StatusUpdate]:
        updates = []
        for value in self._values(raw_payload):
            for status in value.get("statuses") or []:
                mapped = _STATUS_MAP.get(status.get("status", ""))
                if mapped is None or not status.get("id"):
                    continue
                errors = status.get("errors") or []
                updates.append(StatusUpdate(
                    channel_message_id=status["id"],
                    status=mapped,
                    error=(errors[0].get("title") or errors[0].get("message", "")) if errors else "",
                    contact_id=normalize_phone(status.get("recipient_id", "")),
                ))
        return updates

    async def shutdown(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
