"""
Conversation assembly on top of the message store.

A conversation between two participants is identified by a key derived from
their cell digits. Messages are written under that key and read back as full,
timestamp-ordered snapshots, either once (``fetch_recent``) or continuously
(``subscribe`` / ``stream``).

The store calls are blocking; the ``*_async`` methods run them on a worker
thread so request handlers never block the event loop.
"""

import asyncio
import logging
import threading
from typing import AsyncIterator, Callable, Optional

from telecom.errors import (
    EmptyBody,
    InvalidParticipant,
    MalformedRecord,
    MessageNotFound,
    MessagingError,
    NoRecipient,
    StoreUnavailable,
)
from telecom.message_store import ListenerRegistration, MessageStore
from telecom.metrics import live_subscriptions, record_malformed_record, record_send_outcome
from telecom.schemas import ConversationSummary, Message
from telecom.utils import KEY_SEPARATOR, now_ms, utc_now_iso

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[list[Message]], None]
ErrorCallback = Callable[[Exception], None]


def compute_conversation_key(participant_a: str, participant_b: str) -> str:
    """
    Derive the conversation key for two participants.

    The identifiers are sorted before joining, so the key is the same whichever
    participant looks it up.

    Raises:
        InvalidParticipant: If an identifier is empty or contains the separator
    """
    for participant in (participant_a, participant_b):
        if not participant:
            raise InvalidParticipant("Participant identifier is empty")
        if KEY_SEPARATOR in participant:
            raise InvalidParticipant(
                f"Participant identifier '{participant}' contains '{KEY_SEPARATOR}'"
            )
    return KEY_SEPARATOR.join(sorted((participant_a, participant_b)))


class Subscription:
    """
    A live view of one conversation.

    Every change to the conversation delivers a fresh full snapshot to
    ``on_update``. ``cancel`` detaches from the store; after the first call
    returns no further snapshots are delivered.
    """

    def __init__(
        self,
        assembler: "ConversationAssembler",
        participants: str,
        on_update: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ):
        self.participants = participants
        self._assembler = assembler
        self._on_update = on_update
        self._on_error = on_error
        # Reentrant so callbacks may cancel their own subscription
        self._lock = threading.RLock()
        self._cancelled = False
        self._registration: Optional[ListenerRegistration] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _start(self) -> None:
        self._registration = self._assembler.store.listen(self.participants, self._refresh)
        live_subscriptions.inc()
        logger.info(f"Subscription opened for {self.participants}")
        self._refresh()

    def _refresh(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            try:
                snapshot = self._assembler._load(self.participants)
            except MessagingError as e:
                self._fail(e)
                return
            self._on_update(snapshot)

    def _fail(self, exc: Exception) -> None:
        if self._on_error is not None:
            self._on_error(exc)
        else:
            logger.error(f"Snapshot refresh failed for {self.participants}: {exc}")

    def cancel(self) -> None:
        """Stop delivering snapshots and release the store listener. Idempotent."""
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            registration = self._registration

        if registration is not None:
            registration.close()
            live_subscriptions.dec()
        logger.info(f"Subscription cancelled for {self.participants}")


class ConversationAssembler:
    """Writes messages to the store and materializes conversations from it."""

    def __init__(self, store: MessageStore, timeout: Optional[float] = None):
        self.store = store
        self.timeout = timeout

    # -------------------------------------------------------------------
    # Write path
    # -------------------------------------------------------------------
    def send_message(
        self,
        sender: str,
        recipient: Optional[str],
        body: str,
        sender_name: Optional[str] = None,
        recipient_name: Optional[str] = None,
    ) -> Message:
        """
        Append a new message with status ``sent``.

        Nothing is written when validation fails.

        Raises:
            EmptyBody: If the body is empty or only whitespace
            NoRecipient: If no recipient is given
            InvalidParticipant: If an identifier cannot form a conversation key
            StoreUnavailable: If the store write fails
        """
        if not body or not body.strip():
            record_send_outcome("empty_body")
            raise EmptyBody()
        if not recipient:
            record_send_outcome("no_recipient")
            raise NoRecipient()
        try:
            participants = compute_conversation_key(sender, recipient)
        except InvalidParticipant:
            record_send_outcome("invalid_participant")
            raise

        message = Message(
            id="pending",
            sender=sender,
            recipient=recipient,
            text=body,
            timestamp=now_ms(),
            status="sent",
            participants=participants,
            sender_name=sender_name,
            recipient_name=recipient_name,
            created_at=utc_now_iso(),
        )

        try:
            record_id = self.store.push(message.to_record())
        except StoreUnavailable:
            record_send_outcome("store_unavailable")
            raise

        record_send_outcome("sent")
        logger.info(f"Message sent: id={record_id}, participants={participants}")
        return message.model_copy(update={"id": record_id})

    # -------------------------------------------------------------------
    # Read path
    # -------------------------------------------------------------------
    def _load(self, participants: str, limit: Optional[int] = None) -> list[Message]:
        window = limit
        rejected: set[str] = set()
        while True:
            rows = self.store.query(participants, limit=window)
            messages = []
            for record_id, raw in rows:
                try:
                    messages.append(Message.from_record(record_id, raw))
                except MalformedRecord as e:
                    if record_id not in rejected:
                        rejected.add(record_id)
                        record_malformed_record()
                        logger.warning(f"Skipping malformed record: {e.message}")
            if limit is None or len(messages) >= limit or len(rows) < window:
                break
            # Malformed records took part of the window; reach further back for valid ones
            window += limit - len(messages)

        messages.sort(key=lambda m: (m.timestamp, m.id))
        return messages if limit is None else messages[-limit:]

    def fetch_recent(self, participant_a: str, participant_b: str, limit: int) -> list[Message]:
        """
        The ``limit`` most recent messages of a conversation, ascending by timestamp.

        Raises:
            InvalidParticipant: If an identifier cannot form a conversation key
            StoreUnavailable: If the store query fails
        """
        if limit < 1:
            raise ValueError("limit must be at least 1")
        participants = compute_conversation_key(participant_a, participant_b)
        messages = self._load(participants, limit=limit)
        logger.debug(f"Fetched {len(messages)} messages for {participants} (limit={limit})")
        return messages

    def get_message(self, message_id: str) -> Message:
        """
        Raises:
            MessageNotFound: If the store has no such record
            MalformedRecord: If the record fails validation
        """
        raw = self.store.get(message_id)
        if raw is None:
            raise MessageNotFound(message_id)
        return Message.from_record(message_id, raw)

    def summarize(self, viewer: str, counterpart: str) -> ConversationSummary:
        """Last message and number of messages to ``viewer`` not yet read."""
        participants = compute_conversation_key(viewer, counterpart)
        messages = self._load(participants)
        summary = ConversationSummary(participants=participants)
        if messages:
            last = messages[-1]
            summary.last_message = last.text
            summary.last_message_time = last.timestamp
            summary.unread_count = sum(
                1 for m in messages if m.recipient == viewer and m.status != "read"
            )
        return summary

    def subscribe(
        self,
        participant_a: str,
        participant_b: str,
        on_update: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """
        Open a live view of a conversation.

        ``on_update`` receives the current snapshot immediately, then a new full
        snapshot after every change. Refresh failures go to ``on_error`` when
        given and are logged otherwise. Callbacks may run on a store thread.

        Returns:
            Subscription whose ``cancel()`` ends delivery
        """
        participants = compute_conversation_key(participant_a, participant_b)
        subscription = Subscription(self, participants, on_update, on_error)
        subscription._start()
        return subscription

    # -------------------------------------------------------------------
    # Async bridge
    # -------------------------------------------------------------------
    async def _run(self, func, *args, **kwargs):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Message store call {func.__name__} timed out after {self.timeout}s")
            raise StoreUnavailable(f"Message store did not respond within {self.timeout}s")

    async def send_message_async(self, *args, **kwargs) -> Message:
        return await self._run(self.send_message, *args, **kwargs)

    async def fetch_recent_async(self, participant_a: str, participant_b: str, limit: int) -> list[Message]:
        return await self._run(self.fetch_recent, participant_a, participant_b, limit)

    async def get_message_async(self, message_id: str) -> Message:
        return await self._run(self.get_message, message_id)

    async def summarize_async(self, viewer: str, counterpart: str) -> ConversationSummary:
        return await self._run(self.summarize, viewer, counterpart)

    async def stream(self, participant_a: str, participant_b: str) -> AsyncIterator[list[Message]]:
        """
        Async iterator over live snapshots of a conversation.

        Snapshots produced faster than they are consumed are coalesced: only
        the newest pending one is yielded. Refresh errors are raised from the
        iterator. Leaving the iteration cancels the subscription.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def deliver(item) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                logger.debug("Event loop closed; dropping snapshot")

        subscription = await asyncio.to_thread(
            self.subscribe, participant_a, participant_b, deliver, deliver
        )
        try:
            while True:
                item = await queue.get()
                while not isinstance(item, Exception) and not queue.empty():
                    item = queue.get_nowait()
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            subscription.cancel()
