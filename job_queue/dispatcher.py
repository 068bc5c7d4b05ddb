"""
Inbound Dispatcher — per-contact mailboxes in front of the SessionManager.

Each contact gets its own bounded asyncio.Queue and, while it has work, one
worker task draining it in order. Contacts never wait on each other, and a
single contact's events are handled strictly one at a time.

  webhook ──submit──▶ mailbox[contact A] ──▶ worker A ──▶ handler
                      mailbox[contact B] ──▶ worker B ──▶ handler

A worker exits after idle_timeout seconds with an empty mailbox, so memory
tracks the number of contacts currently talking, not the number ever seen.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Awaitable, Callable, Optional

from config.settings import DispatcherConfig
from models.schemas import InboundMessage

logger = structlog.get_logger()

InboundHandler = Callable[[InboundMessage], Awaitable[object]]


class InboundDispatcher:
    """
    Usage:
        dispatcher = InboundDispatcher(manager.handle_message)
        await dispatcher.submit(InboundMessage(contact_id="c1", text="hi"))
        await dispatcher.drain()     # wait until every mailbox is empty
        await dispatcher.stop()
    """

    def __init__(
        self,
        handler: InboundHandler,
        mailbox_size: int = 100,
        idle_timeout: float = 30.0,
    ):
        self.handler = handler
        self.mailbox_size = mailbox_size
        self.idle_timeout = idle_timeout
        self._mailboxes: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}

    @classmethod
    def from_config(cls, handler: InboundHandler, config: DispatcherConfig) -> InboundDispatcher:
        return cls(handler, mailbox_size=config.mailbox_size, idle_timeout=config.idle_timeout_seconds)

    @property
    def active_contacts(self) -> int:
        return len(self._workers)

    async def submit(self, message: InboundMessage):
        """Queue a message for its contact. Waits if that contact's mailbox is full."""
        contact_id = message.contact_id
        mailbox = self._mailboxes.get(contact_id)
        if mailbox is None:
            mailbox = asyncio.Queue(maxsize=self.mailbox_size)
            self._mailboxes[contact_id] = mailbox
        await mailbox.put(message)

        worker = self._workers.get(contact_id)
        if worker is None or worker.done():
            self._workers[contact_id] = asyncio.create_task(self._work(contact_id, mailbox))

    async def _work(self, contact_id: str, mailbox: asyncio.Queue):
        while True:
            try:
                message = await asyncio.wait_for(mailbox.get(), timeout=self.idle_timeout)
            except asyncio.TimeoutError:
                if mailbox.empty() and self._mailboxes.get(contact_id) is mailbox:
                    del self._mailboxes[contact_id]
                    self._workers.pop(contact_id, None)
                    return
                continue

            try:
                await self.handler(message)
            except Exception as e:
                logger.error("inbound_handler_failed",
                             contact_id=contact_id,
                             message_id=message.message_id,
                             error=str(e),
                             exc_info=True)
            finally:
                mailbox.task_done()

    async def drain(self, timeout: Optional[float] = None):
        """Wait until every queued message has been handled."""
        mailboxes = list(self._mailboxes.values())
        await asyncio.wait_for(asyncio.gather(*(m.join() for m in mailboxes)), timeout=timeout)

    async def stop(self):
        """Cancel all workers. Queued but unhandled messages are dropped."""
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        for task in workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers.clear()
        self._mailboxes.clear()
        logger.info("inbound_dispatcher_stopped", workers=len(workers))
