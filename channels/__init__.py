"""Messaging gateways the engine sends through and receives from."""
from channels.base import (
    ChannelError,
    CircuitBreaker,
    CircuitOpenError,
    MessagingGateway,
    StatusUpdate,
)
from channels.recording import RecordingGateway
from channels.whatsapp_adapter import WhatsAppGateway

__all__ = [
    "ChannelError", "CircuitBreaker", "CircuitOpenError",
    "MessagingGateway", "StatusUpdate",
    "RecordingGateway", "WhatsAppGateway",
]
