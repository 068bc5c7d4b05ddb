"""
Background work — durable timers and per-contact inbound mailboxes.

- TimerService polls the flow store for due delay/inactivity timers
- InboundDispatcher serializes each contact's inbound events onto one worker
"""
