"""
Tests for the conversation assembler.

Tests cover:
- Conversation key symmetry, distinctness and validation
- Sending: record shape, validation errors, no write on failure
- fetch_recent ordering and limits
- Malformed record rejection
- Conversation summaries
- Async bridge
- Concurrent sends from both participants
"""

import asyncio
import itertools
import threading

import pytest

from telecom.conversations import compute_conversation_key
from telecom.errors import EmptyBody, InvalidParticipant, NoRecipient, StoreUnavailable
from tests.conftest import ALICE, BOB, CAROL


class TestConversationKey:
    """Test conversation key derivation."""

    def test_key_is_symmetric(self):
        assert compute_conversation_key(ALICE, BOB) == compute_conversation_key(BOB, ALICE)

    def test_key_sorts_and_joins(self):
        assert compute_conversation_key(BOB, ALICE) == f"{ALICE}_{BOB}"

    @pytest.mark.parametrize("a,b", [
        ("15551230001", "15551230002"),
        ("9", "10"),
        ("abc", "abd"),
        ("same", "same"),
    ])
    def test_symmetry_for_assorted_identifiers(self, a, b):
        assert compute_conversation_key(a, b) == compute_conversation_key(b, a)

    def test_different_participants_give_different_keys(self):
        assert compute_conversation_key(ALICE, BOB) != compute_conversation_key(CAROL, BOB)
        assert compute_conversation_key(ALICE, BOB) != compute_conversation_key(ALICE, CAROL)

    def test_prefix_identifiers_do_not_collide(self):
        assert compute_conversation_key("1", "23") != compute_conversation_key("12", "3")

    @pytest.mark.parametrize("a,b", [("", BOB), (ALICE, ""), (None, BOB)])
    def test_empty_participant_rejected(self, a, b):
        with pytest.raises(InvalidParticipant):
            compute_conversation_key(a, b)

    def test_separator_in_participant_rejected(self):
        with pytest.raises(InvalidParticipant):
            compute_conversation_key("1555_123", BOB)


class TestSendMessage:
    """Test the write path."""

    def test_send_then_fetch_returns_message(self, assembler):
        assembler.send_message(ALICE, BOB, "hi")

        messages = assembler.fetch_recent(ALICE, BOB, 50)

        assert len(messages) == 1
        assert messages[0].text == "hi"
        assert messages[0].status == "sent"

    def test_sent_message_fields(self, assembler, store):
        message = assembler.send_message(ALICE, BOB, "hello", sender_name="Alice", recipient_name="Bob")

        assert message.id != "pending"
        assert message.sender == ALICE
        assert message.recipient == BOB
        assert message.participants == compute_conversation_key(ALICE, BOB)
        assert message.timestamp > 0

        record = store.get(message.id)
        assert record["text"] == "hello"
        assert record["status"] == "sent"
        assert record["participants"] == f"{ALICE}_{BOB}"
        assert record["senderName"] == "Alice"
        assert record["recipientName"] == "Bob"
        assert isinstance(record["timestamp"], int)
        assert "id" not in record

    def test_visible_from_either_side(self, assembler):
        assembler.send_message(ALICE, BOB, "hi")

        assert [m.text for m in assembler.fetch_recent(BOB, ALICE, 10)] == ["hi"]

    def test_empty_body_writes_nothing(self, assembler, store):
        with pytest.raises(EmptyBody):
            assembler.send_message(ALICE, BOB, "")

        assert store.query(compute_conversation_key(ALICE, BOB)) == []

    def test_whitespace_body_is_empty(self, assembler, store):
        with pytest.raises(EmptyBody):
            assembler.send_message(ALICE, BOB, "   \n")

        assert store.query(compute_conversation_key(ALICE, BOB)) == []

    def test_missing_recipient(self, assembler):
        with pytest.raises(NoRecipient):
            assembler.send_message(ALICE, None, "hi")
        with pytest.raises(NoRecipient):
            assembler.send_message(ALICE, "", "hi")

    def test_invalid_sender(self, assembler):
        with pytest.raises(InvalidParticipant):
            assembler.send_message("", BOB, "hi")

    def test_send_on_closed_store(self, assembler, store):
        store.close()

        with pytest.raises(StoreUnavailable):
            assembler.send_message(ALICE, BOB, "hi")


class TestFetchRecent:
    """Test one-shot reads."""

    def test_reverse_insertion_order_reads_ascending(self, assembler, monkeypatch):
        # T3 is inserted first, then T1, then T2
        timestamps = iter([3000, 1000, 2000])
        monkeypatch.setattr("telecom.conversations.now_ms", lambda: next(timestamps))

        assembler.send_message(ALICE, BOB, "third")
        assembler.send_message(ALICE, BOB, "first")
        assembler.send_message(BOB, ALICE, "second")

        messages = assembler.fetch_recent(ALICE, BOB, 50)

        assert [m.timestamp for m in messages] == [1000, 2000, 3000]
        assert [m.text for m in messages] == ["first", "second", "third"]

    def test_limit_keeps_most_recent(self, assembler, monkeypatch):
        clock = itertools.count(1000, 10)
        monkeypatch.setattr("telecom.conversations.now_ms", lambda: next(clock))

        for i in range(5):
            assembler.send_message(ALICE, BOB, f"m{i}")

        messages = assembler.fetch_recent(ALICE, BOB, 2)

        assert [m.text for m in messages] == ["m3", "m4"]

    def test_other_conversations_excluded(self, assembler):
        assembler.send_message(ALICE, BOB, "for bob")
        assembler.send_message(ALICE, CAROL, "for carol")

        assert [m.text for m in assembler.fetch_recent(ALICE, BOB, 50)] == ["for bob"]
        assert [m.text for m in assembler.fetch_recent(CAROL, ALICE, 50)] == ["for carol"]

    def test_empty_conversation(self, assembler):
        assert assembler.fetch_recent(ALICE, BOB, 50) == []

    def test_limit_must_be_positive(self, assembler):
        with pytest.raises(ValueError):
            assembler.fetch_recent(ALICE, BOB, 0)

    def test_malformed_records_skipped(self, assembler, store):
        key = compute_conversation_key(ALICE, BOB)
        assembler.send_message(ALICE, BOB, "valid")
        store.push({"participants": key, "sender": ALICE, "recipient": BOB, "text": "no timestamp"})
        store.push({"participants": key, "sender": ALICE, "recipient": BOB, "text": 42, "timestamp": 5})
        store.push({"participants": key, "sender": ALICE, "recipient": BOB, "text": "x",
                    "timestamp": "soon"})
        store.push({"participants": key, "sender": ALICE, "recipient": BOB, "text": "x",
                    "timestamp": 7, "status": "lost"})

        messages = assembler.fetch_recent(ALICE, BOB, 50)

        assert [m.text for m in messages] == ["valid"]

    def test_malformed_records_do_not_shrink_the_page(self, assembler, store, monkeypatch):
        clock = itertools.count(1000, 1000)
        monkeypatch.setattr("telecom.conversations.now_ms", lambda: next(clock))
        key = compute_conversation_key(ALICE, BOB)
        for text in ("a", "b", "c"):
            assembler.send_message(ALICE, BOB, text)
        store.push({"participants": key, "sender": ALICE, "recipient": BOB, "text": 42, "timestamp": 9000})
        store.push({"participants": key, "sender": ALICE, "recipient": BOB, "text": 43, "timestamp": 9500})

        messages = assembler.fetch_recent(ALICE, BOB, 2)

        assert [m.text for m in messages] == ["b", "c"]

    def test_missing_status_reads_as_sent(self, assembler, store):
        key = compute_conversation_key(ALICE, BOB)
        store.push({"participants": key, "sender": ALICE, "recipient": BOB, "text": "old", "timestamp": 1})

        messages = assembler.fetch_recent(ALICE, BOB, 50)

        assert messages[0].status == "sent"


class TestSummarize:
    """Test conversation summaries used by the contact list."""

    def test_empty_conversation(self, assembler):
        summary = assembler.summarize(ALICE, BOB)

        assert summary.last_message is None
        assert summary.unread_count == 0

    def test_last_message_and_unread_count(self, assembler, tracker, monkeypatch):
        clock = itertools.count(1000, 10)
        monkeypatch.setattr("telecom.conversations.now_ms", lambda: next(clock))

        first = assembler.send_message(BOB, ALICE, "one")
        assembler.send_message(BOB, ALICE, "two")
        assembler.send_message(ALICE, BOB, "reply")
        tracker.mark_read(first.id)

        summary = assembler.summarize(ALICE, BOB)

        assert summary.last_message == "reply"
        assert summary.last_message_time == 1020
        assert summary.unread_count == 1

        # Bob has not read Alice's reply either
        assert assembler.summarize(BOB, ALICE).unread_count == 1


class TestAsyncBridge:
    """Test the asyncio wrappers."""

    def test_send_and_fetch_async(self, assembler):
        async def scenario():
            sent = await assembler.send_message_async(ALICE, BOB, "async hi")
            fetched = await assembler.fetch_recent_async(BOB, ALICE, 10)
            return sent, fetched

        sent, fetched = asyncio.run(scenario())

        assert [m.id for m in fetched] == [sent.id]

    def test_async_errors_propagate(self, assembler):
        with pytest.raises(EmptyBody):
            asyncio.run(assembler.send_message_async(ALICE, BOB, ""))

    def test_timeout_is_store_unavailable(self, assembler, monkeypatch):
        import time

        def slow_query(participants, limit=None):
            time.sleep(0.5)
            return []

        monkeypatch.setattr(assembler.store, "query", slow_query)
        assembler.timeout = 0.05

        with pytest.raises(StoreUnavailable):
            asyncio.run(assembler.fetch_recent_async(ALICE, BOB, 10))


class TestConcurrentSends:
    """Both participants sending on the same conversation at once."""

    def test_every_send_is_kept_while_readers_run(self, assembler):
        per_sender = 60
        sent_ids = []
        errors = []
        snapshots = []
        lock = threading.Lock()
        done = threading.Event()

        def sender(frm, to):
            try:
                for i in range(per_sender):
                    message = assembler.send_message(frm, to, f"{frm} #{i}")
                    with lock:
                        sent_ids.append(message.id)
            except Exception as e:
                errors.append(e)

        def reader():
            try:
                while not done.is_set():
                    assembler.fetch_recent(ALICE, BOB, 5)
            except Exception as e:
                errors.append(e)

        subscription = assembler.subscribe(ALICE, BOB, snapshots.append)
        readers = [threading.Thread(target=reader) for _ in range(3)]
        senders = [
            threading.Thread(target=sender, args=(ALICE, BOB)),
            threading.Thread(target=sender, args=(BOB, ALICE)),
        ]
        for thread in readers + senders:
            thread.start()
        for thread in senders:
            thread.join()
        done.set()
        for thread in readers:
            thread.join()
        subscription.cancel()

        assert errors == []
        messages = assembler.fetch_recent(ALICE, BOB, 2 * per_sender)
        assert sorted(m.id for m in messages) == sorted(sent_ids)
        assert len(sent_ids) == 2 * per_sender
        order = [(m.timestamp, m.id) for m in messages]
        assert order == sorted(order)
        assert len(snapshots[-1]) == 2 * per_sender
