"""
Live coaching messages from a supervisor to an operator.

`CoachingHub` is the push side: it persists each message and fans it out to
the operator's subscribers in send order. `CoachingChannel` is the operator
side for one active call: it receives messages in the background and keeps
them most-recent-first with read state.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Optional

import structlog

from callops.collaborators import CoachingStore
from callops.models import CoachingMessage

log = structlog.get_logger(__name__)


class CoachingSubscription:
    def __init__(self, operator_id: str, session_id: str, maxsize: int):
        self.operator_id = operator_id
        self.session_id = session_id
        self.queue: asyncio.Queue[CoachingMessage] = asyncio.Queue(maxsize=maxsize)


class CoachingHub:
    def __init__(self, store: CoachingStore, buffer_size: int = 50):
        self.store = store
        self.buffer_size = buffer_size
        self._subs: dict[str, list[CoachingSubscription]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def subscribe(self, operator_id: str, session_id: str) -> CoachingSubscription:
        sub = CoachingSubscription(operator_id, session_id, self.buffer_size)
        self._subs.setdefault(operator_id, []).append(sub)
        log.debug("coaching_subscribed", operator_id=operator_id, session_id=session_id)
        return sub

    def unsubscribe(self, sub: CoachingSubscription) -> None:
        subs = self._subs.get(sub.operator_id, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subs.pop(sub.operator_id, None)

    def active_session(self, operator_id: str) -> Optional[str]:
        subs = self._subs.get(operator_id)
        return subs[-1].session_id if subs else None

    async def publish(self, message: CoachingMessage) -> CoachingMessage:
        """
        Persist a message and deliver it to the operator's open channels.

        The message is scoped to the operator's current session, if any.
        Messages for the same operator are stored and delivered in the order
        `publish` was called.
        """
        lock = self._locks.setdefault(message.operator_id, asyncio.Lock())
        async with lock:
            message.session_scope = self.active_session(message.operator_id)
            message.sent_at = datetime.utcnow()
            message.read_at = None
            message.message_id = await self.store.insert_coaching_message(message)

            subs = list(self._subs.get(message.operator_id, []))
            for sub in subs:
                self._offer(sub, message.model_copy())

        log.info(
            "coaching_message_sent",
            message_id=message.message_id,
            operator_id=message.operator_id,
            session_scope=message.session_scope,
            delivered_to=len(subs),
        )
        return message

    @staticmethod
    def _offer(sub: CoachingSubscription, message: CoachingMessage) -> None:
        if sub.queue.full():
            dropped = sub.queue.get_nowait()
            log.warning(
                "coaching_buffer_full",
                operator_id=sub.operator_id,
                dropped_message_id=dropped.message_id,
            )
        sub.queue.put_nowait(message)


class CoachingChannel:
    """Receives coaching messages for one operator during one call."""

    def __init__(
        self,
        hub: CoachingHub,
        operator_id: str,
        session_id: str,
        on_cue: Optional[Callable[[CoachingMessage], None]] = None,
    ):
        self.hub = hub
        self.operator_id = operator_id
        self.session_id = session_id
        self.on_cue = on_cue
        self.messages: list[CoachingMessage] = []
        self._sub: Optional[CoachingSubscription] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self._sub is not None

    @property
    def unread_count(self) -> int:
        return sum(1 for m in self.messages if not m.is_read)

    @property
    def has_unread(self) -> bool:
        return self.unread_count > 0

    def open(self) -> None:
        if self._sub is not None:
            return
        self._sub = self.hub.subscribe(self.operator_id, self.session_id)
        self._task = asyncio.create_task(
            self._consume(self._sub), name=f"coaching-{self.session_id}"
        )

    def close(self) -> None:
        """Stop receiving. Messages already queued are still delivered."""
        sub, self._sub = self._sub, None
        if sub is None:
            return
        self.hub.unsubscribe(sub)
        if self._task and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None
        while not sub.queue.empty():
            self._receive(sub.queue.get_nowait())

    async def mark_read(self, message_id: int) -> bool:
        """Mark a message read. Returns False if it was already read."""
        message = next((m for m in self.messages if m.message_id == message_id), None)
        if message is None:
            raise LookupError(f"Coaching message {message_id} not found")
        if message.is_read:
            return False

        message.read_at = datetime.utcnow()
        try:
            await self.hub.store.mark_coaching_read(message_id, message.read_at)
        except Exception:
            message.read_at = None
            raise
        return True

    async def _consume(self, sub: CoachingSubscription) -> None:
        while True:
            message = await sub.queue.get()
            self._receive(message)

    def _receive(self, message: CoachingMessage) -> None:
        self.messages.insert(0, message)
        log.info(
            "coaching_message_received",
            message_id=message.message_id,
            operator_id=self.operator_id,
            session_id=self.session_id,
        )
        if self.on_cue is not None:
            try:
                self.on_cue(message)
            except Exception:
                log.exception("coaching_cue_failed", message_id=message.message_id)
