"""
Messaging Gateways — base infrastructure for outbound delivery and inbound parsing.

Provides:
- ChannelError: structured error hierarchy
- CircuitBreaker: failure-counting breaker with half-open probe
- StatusUpdate: an asynchronous delivery report from the provider
- MessagingGateway: abstract base wrapping every send with the breaker,
  turning transport failures into a FAILED DeliveryResult instead of raising

The engine treats a gateway as fire-and-forget: whatever `send` returns is
recorded on the outbox, and nothing a gateway does can roll back a session.
"""
from __future__ import annotations

import abc
import time
import structlog
from dataclasses import dataclass
from typing import Any, Optional

from models.schemas import DeliveryResult, DeliveryStatus, InboundMessage, MessageContent

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all gateway operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Failure-counting circuit breaker.

    closed → open (after threshold consecutive failures) → half_open (after
    recovery_timeout) → closed (on success) or open again (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._state = "open"
            self._opened_at = time.monotonic()
            logger.warning("circuit_opened", failures=self._failure_count)

    def record_success(self):
        self._state = "closed"
        self._failure_count = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state, "failure_count": self._failure_count}


# ══════════════════════════════════════════════════════════════
#  DELIVERY REPORTS
# ══════════════════════════════════════════════════════════════

@dataclass
class StatusUpdate:
    """Provider-side delivery report for a previously sent message."""
    channel_message_id: str
    status: DeliveryStatus
    error: str = ""
    contact_id: str = ""


# ══════════════════════════════════════════════════════════════
#  MESSAGING GATEWAY — Abstract Base
# ══════════════════════════════════════════════════════════════

class MessagingGateway(abc.ABC):
    """
    Base class for all messaging gateways.

    Subclasses implement _do_send. The base class wraps every send with the
    circuit breaker and never lets a transport exception escape.
    """

    name: str = "gateway"

    def __init__(self):
        self._breaker = CircuitBreaker()

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(self, contact_id: str, content: MessageContent) -> DeliveryResult:
        ...

    # ── Public send ───────────────────────────────────────────

    async def send(self, contact_id: str, content: MessageContent) -> DeliveryResult:
        if self._breaker.is_open:
            logger.warning("gateway_circuit_open", gateway=self.name, contact_id=contact_id)
            return DeliveryResult(status=DeliveryStatus.FAILED, error=str(CircuitOpenError(self.name)))

        try:
            result = await self._do_send(contact_id, content)
        except Exception as e:
            self._breaker.record_failure()
            logger.error("gateway_send_failed",
                         gateway=self.name,
                         contact_id=contact_id,
                         action_id=content.action_id,
                         error=str(e))
            return DeliveryResult(status=DeliveryStatus.FAILED, error=str(e) or type(e).__name__)

        if result.ok:
            self._breaker.record_success()
        else:
            self._breaker.record_failure()
        return result

    # ── Inbound ───────────────────────────────────────────────

    def parse_inbound(self, raw_payload: dict[str, Any]) -> list[InboundMessage]:
        """Extract user messages from a provider webhook payload."""
        return []

    def parse_statuses(self, raw_payload: dict[str, Any]) -> list[StatusUpdate]:
        """Extract delivery reports from a provider webhook payload."""
        return []

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        return None

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {"gateway": self.name, "circuit_breaker": self._breaker.stats}

    async def shutdown(self) -> None:
        pass
