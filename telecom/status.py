"""
Delivery/read tracking.

A message's status only ever moves forward: sent -> delivered -> read.
Each transition is a conditional store update, so a late "delivered" can never
overwrite "read" no matter which client gets there first.
"""

import asyncio
import logging
from typing import Iterable, Optional

from telecom.errors import MessageNotFound, StatusUpdateFailed, StoreUnavailable
from telecom.message_store import MessageStore
from telecom.metrics import record_status_update
from telecom.schemas import Message
from telecom.utils import now_ms

logger = logging.getLogger(__name__)


class DeliveryTracker:
    """Advances message statuses in response to the recipient observing them."""

    def __init__(self, store: MessageStore, timeout: Optional[float] = None):
        self.store = store
        self.timeout = timeout

    def _transition(self, message_id: str, target: str, allowed_from: tuple[str, ...], extra: dict) -> bool:
        try:
            changed = self.store.update(
                message_id,
                {"status": target, **extra},
                only_if_status=allowed_from,
            )
        except StoreUnavailable as e:
            record_status_update(target, "failed")
            logger.error(f"Failed to mark {message_id} as {target}: {e.message}")
            raise StatusUpdateFailed(message_id, target, e) from e

        record_status_update(target, "updated" if changed else "noop")
        if changed:
            logger.info(f"Message {message_id} marked {target}")
        else:
            logger.debug(f"Message {message_id} already past {allowed_from[-1]}, {target} is a no-op")
        return changed

    def mark_delivered(self, message_id: str) -> bool:
        """
        Move a message from ``sent`` to ``delivered``. No-op in any other status.

        Returns:
            True if the status changed

        Raises:
            MessageNotFound: If the message does not exist
            StatusUpdateFailed: If the store write fails
        """
        return self._transition(message_id, "delivered", ("sent",), {})

    def mark_read(self, message_id: str) -> bool:
        """
        Move a message to ``read`` and stamp ``readAt``. No-op once read, so the
        first read time is kept.

        Returns:
            True if the status changed

        Raises:
            MessageNotFound: If the message does not exist
            StatusUpdateFailed: If the store write fails
        """
        return self._transition(message_id, "read", ("sent", "delivered"), {"readAt": now_ms()})

    def acknowledge(self, messages: Iterable[Message], viewer: str, thread_open: bool) -> int:
        """
        Apply the recipient-side observation rules to a snapshot.

        Messages addressed to ``viewer`` are marked read when the thread is
        open, otherwise delivered if still ``sent``. The viewer's own messages
        are never touched. Failures are logged and skipped so the caller can
        keep rendering the last known statuses.

        Returns:
            Number of messages whose status changed
        """
        changed = 0
        for message in messages:
            if message.recipient != viewer or message.sender == viewer:
                continue
            try:
                if thread_open and message.status != "read":
                    changed += self.mark_read(message.id)
                elif not thread_open and message.status == "sent":
                    changed += self.mark_delivered(message.id)
            except (StatusUpdateFailed, MessageNotFound) as e:
                logger.warning(f"Status update skipped for {message.id}: {e.message}")
        return changed

    async def acknowledge_async(self, messages: Iterable[Message], viewer: str, thread_open: bool) -> int:
        return await asyncio.to_thread(self.acknowledge, list(messages), viewer, thread_open)

    async def _mark_async(self, mark, target: str, message_id: str) -> bool:
        try:
            return await asyncio.wait_for(asyncio.to_thread(mark, message_id), timeout=self.timeout)
        except asyncio.TimeoutError:
            record_status_update(target, "failed")
            logger.error(f"Marking {message_id} as {target} timed out after {self.timeout}s")
            cause = StoreUnavailable(f"Message store did not respond within {self.timeout}s")
            raise StatusUpdateFailed(message_id, target, cause)

    async def mark_delivered_async(self, message_id: str) -> bool:
        return await self._mark_async(self.mark_delivered, "delivered", message_id)

    async def mark_read_async(self, message_id: str) -> bool:
        return await self._mark_async(self.mark_read, "read", message_id)
