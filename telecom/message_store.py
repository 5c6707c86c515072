"""
Client for the hosted message store.

The message store is a schema-less, append-mostly record store: records are
untyped JSON objects keyed by a store-generated id, queried by equality on
their ``participants`` field and ordered by ``timestamp``. Writers push new
records and update fields of existing ones; readers can attach listeners to a
``participants`` value and are notified after every committed change to it.

The store is reached through an explicit ``MessageStore`` handle that the
application opens at startup and closes at shutdown. Its persistence is a
SQLAlchemy table holding the raw payload next to the two indexed columns the
store orders and filters by, so any SQLAlchemy URL (SQLite, PostgreSQL) can
host it.

Usage::

    store = MessageStore("sqlite://")
    store.open()

    record_id = store.push({"participants": "1_2", "timestamp": 1, ...})
    registration = store.listen("1_2", lambda: print("changed"))
    ...
    registration.close()
    store.close()
"""

import logging
import threading
from typing import Any, Callable, Collection, Optional

from sqlalchemy import BigInteger, Column, JSON, String, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base
from sqlalchemy.pool import StaticPool

from telecom.errors import MessageNotFound, StoreUnavailable
from telecom.utils import generate_record_id

logger = logging.getLogger(__name__)

StoreBase = declarative_base()


class MessageRecordRow(StoreBase):
    """
    Raw store record.

    Table: message_records
    ``participants`` and ``timestamp`` are copied out of the payload so the
    store can filter and order on them; the payload itself is never trusted.
    """
    __tablename__ = "message_records"

    id = Column(String(32), primary_key=True)
    participants = Column(String, nullable=False, index=True)
    timestamp = Column(BigInteger, nullable=True, index=True)
    payload = Column(JSON, nullable=False)


def _sort_timestamp(payload: dict) -> Optional[int]:
    value = payload.get("timestamp")
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


class ListenerRegistration:
    """Handle for a listener attached with ``MessageStore.listen``."""

    def __init__(self, store: "MessageStore", participants: str, callback: Callable[[], Any]):
        self._store = store
        self.participants = participants
        self._callback = callback
        self._closed = False

    @property
    def active(self) -> bool:
        return not self._closed

    def close(self) -> None:
        """Detach the listener. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._store._detach(self)

    def _fire(self) -> None:
        if not self._closed:
            self._callback()


class MessageStore:
    """Connection handle to the hosted message store."""

    def __init__(self, url: str):
        self.url = url
        self._engine = None
        self._listeners: dict[str, list[ListenerRegistration]] = {}
        self._listeners_lock = threading.Lock()
        # Every session goes through this lock; an in-memory store shares one connection
        self._db_lock = threading.RLock()

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def open(self) -> None:
        """Connect to the store and make sure the record table exists."""
        if self._engine is not None:
            return

        kwargs: dict[str, Any] = {"echo": False}
        if self.url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if self.url in ("sqlite://", "sqlite:///:memory:"):
                # A single shared connection keeps the in-memory database alive
                kwargs["poolclass"] = StaticPool

        try:
            engine = create_engine(self.url, **kwargs)
            StoreBase.metadata.create_all(engine)
        except SQLAlchemyError as e:
            logger.error(f"Failed to open message store: {e}")
            raise StoreUnavailable(f"Message store unavailable: {e}") from e

        self._engine = engine
        logger.info(f"Message store opened: {engine.url.render_as_string(hide_password=True)}")

    def close(self) -> None:
        """Detach every listener and release the connection pool."""
        with self._listeners_lock:
            registrations = [reg for regs in self._listeners.values() for reg in regs]
            self._listeners = {}
        for reg in registrations:
            reg._closed = True

        with self._db_lock:
            engine, self._engine = self._engine, None
        if engine is not None:
            engine.dispose()
            logger.info(f"Message store closed ({len(registrations)} listeners detached)")

    def __enter__(self) -> "MessageStore":
        self.open()
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _require_engine(self):
        if self._engine is None:
            raise StoreUnavailable("Message store is not open")
        return self._engine

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------
    def push(self, record: dict) -> str:
        """
        Append a record under a fresh store-generated id.

        Args:
            record: Record payload; must carry a string ``participants`` field

        Returns:
            The new record id

        Raises:
            StoreUnavailable: If the write fails
        """
        participants = record.get("participants")
        if not isinstance(participants, str) or not participants:
            raise ValueError("record must carry a non-empty 'participants' string")

        engine = self._require_engine()
        timestamp = _sort_timestamp(record)
        record_id = generate_record_id(timestamp)

        try:
            with self._db_lock, Session(engine) as session:
                session.add(MessageRecordRow(
                    id=record_id,
                    participants=participants,
                    timestamp=timestamp,
                    payload=dict(record),
                ))
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to push record for {participants}: {e}")
            raise StoreUnavailable(f"Message store write failed: {e}") from e

        logger.debug(f"Pushed record {record_id} for {participants}")
        self._notify(participants)
        return record_id

    def update(
        self,
        record_id: str,
        changes: dict,
        only_if_status: Optional[Collection[str]] = None,
    ) -> bool:
        """
        Merge ``changes`` into a record's payload.

        With ``only_if_status`` the update is conditional: it is applied only
        when the record's current ``status`` (``"sent"`` when absent) is one of
        the given values. Check and write happen under the record lock, so
        concurrent conditional updates cannot interleave.

        Returns:
            True if the record was changed, False if the condition did not hold

        Raises:
            MessageNotFound: If the record does not exist
            StoreUnavailable: If the read or write fails
        """
        engine = self._require_engine()

        try:
            with self._db_lock, Session(engine) as session:
                row = session.get(MessageRecordRow, record_id, with_for_update=True)
                if row is None:
                    raise MessageNotFound(record_id)

                payload = dict(row.payload or {})
                if only_if_status is not None and payload.get("status", "sent") not in only_if_status:
                    return False

                payload.update(changes)
                row.payload = payload
                row.timestamp = _sort_timestamp(payload)
                participants = row.participants
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to update record {record_id}: {e}")
            raise StoreUnavailable(f"Message store update failed: {e}") from e

        logger.debug(f"Updated record {record_id}: {sorted(changes)}")
        self._notify(participants)
        return True

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def get(self, record_id: str) -> Optional[dict]:
        """Return a record's payload, or None if it does not exist."""
        engine = self._require_engine()
        try:
            with self._db_lock, Session(engine) as session:
                row = session.get(MessageRecordRow, record_id)
                return dict(row.payload) if row is not None else None
        except SQLAlchemyError as e:
            logger.error(f"Failed to read record {record_id}: {e}")
            raise StoreUnavailable(f"Message store read failed: {e}") from e

    def query(self, participants: str, limit: Optional[int] = None) -> list[tuple[str, Any]]:
        """
        Records whose ``participants`` equals the given key.

        Records are ordered by ``timestamp`` then id. With ``limit`` only the
        last ``limit`` records of that order are returned (still ascending).

        Returns:
            List of (record_id, payload) tuples
        """
        engine = self._require_engine()

        stmt = select(MessageRecordRow).where(MessageRecordRow.participants == participants)
        if limit is not None:
            stmt = stmt.order_by(MessageRecordRow.timestamp.desc(), MessageRecordRow.id.desc()).limit(limit)
        else:
            stmt = stmt.order_by(MessageRecordRow.timestamp.asc(), MessageRecordRow.id.asc())

        try:
            with self._db_lock, Session(engine) as session:
                rows = [(row.id, row.payload) for row in session.scalars(stmt).all()]
        except SQLAlchemyError as e:
            logger.error(f"Failed to query records for {participants}: {e}")
            raise StoreUnavailable(f"Message store query failed: {e}") from e

        if limit is not None:
            rows.reverse()
        return rows

    # -------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------
    def listen(self, participants: str, callback: Callable[[], Any]) -> ListenerRegistration:
        """
        Call ``callback`` after every committed change to records with this
        ``participants`` value. Callbacks run on the writing thread.
        """
        self._require_engine()
        registration = ListenerRegistration(self, participants, callback)
        with self._listeners_lock:
            self._listeners.setdefault(participants, []).append(registration)
        logger.debug(f"Listener attached for {participants}")
        return registration

    def listener_count(self, participants: Optional[str] = None) -> int:
        with self._listeners_lock:
            if participants is not None:
                return len(self._listeners.get(participants, []))
            return sum(len(regs) for regs in self._listeners.values())

    def _detach(self, registration: ListenerRegistration) -> None:
        with self._listeners_lock:
            regs = self._listeners.get(registration.participants, [])
            remaining = [reg for reg in regs if reg is not registration]
            if remaining:
                self._listeners[registration.participants] = remaining
            else:
                self._listeners.pop(registration.participants, None)
        logger.debug(f"Listener detached for {registration.participants}")

    def _notify(self, participants: str) -> None:
        with self._listeners_lock:
            registrations = list(self._listeners.get(participants, []))

        for reg in registrations:
            try:
                reg._fire()
            except Exception:
                # One failing listener must not fail the write or starve the others
                logger.exception(f"Listener for {participants} raised")
