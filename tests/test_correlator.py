"""Tests for the session correlator state machine."""

from __future__ import annotations

import threading

import pytest

from contactly.correlation.correlator import (
    COMPLETE_TIMEOUT_SECONDS,
    PARTIAL_TIMEOUT_SECONDS,
    SessionCorrelator,
    adaptive_timeout_seconds,
)
from contactly.domain.sessions import Slot, SlotSet
from helpers import SENDER_JID, SENDER_NUMBER, make_message

NAME = "Rahul Sharma"
OTHER_NAME = "Priya Patel"
MOBILE = "9876543210"
ADDRESS = "12 MG Road, Near City Mall, Pune"
UNKNOWN = "please note this"


@pytest.fixture
def correlator(scheduler, listener, clock):
    return SessionCorrelator(
        scheduler=scheduler,
        listener=listener,
        timeout_seconds=120,
        max_messages=10,
        clock=clock,
    )


class TestAdaptiveTimeout:
    def test_no_slots_uses_default(self):
        assert adaptive_timeout_seconds(SlotSet(), 120) == 120

    def test_any_slot_uses_partial(self):
        assert adaptive_timeout_seconds(SlotSet(address="x"), 120) == PARTIAL_TIMEOUT_SECONDS

    def test_name_and_mobile_uses_complete(self):
        slots = SlotSet(name="A B", mobile="9876543210")
        assert adaptive_timeout_seconds(slots, 120) == COMPLETE_TIMEOUT_SECONDS


class TestTimeoutFinalize:
    def test_default_timeout_when_no_slot_filled(self, correlator, scheduler, listener):
        assert correlator.add_message(make_message(UNKNOWN)) is True

        scheduler.advance(119)
        assert listener.finalized == []

        scheduler.advance(1)
        assert len(listener.finalized) == 1
        assert listener.finalized[0].combined_text == UNKNOWN

    def test_partial_timeout_after_one_slot(self, correlator, scheduler, listener):
        correlator.add_message(make_message(ADDRESS))

        scheduler.advance(29)
        assert listener.finalized == []
        scheduler.advance(1)
        assert len(listener.finalized) == 1

    def test_complete_timeout_after_name_and_mobile(self, correlator, scheduler, listener):
        correlator.add_message(make_message(NAME))
        correlator.add_message(make_message(MOBILE))

        scheduler.advance(COMPLETE_TIMEOUT_SECONDS)

        assert len(listener.finalized) == 1
        record = listener.finalized[0]
        assert record.combined_text == f"{NAME}\n{MOBILE}"
        assert record.message_count == 2
        assert record.slots == {"name": NAME, "mobile": MOBILE, "address": None}
        assert record.sender_number == SENDER_NUMBER

    def test_new_message_resets_timer(self, correlator, scheduler, listener):
        correlator.add_message(make_message(UNKNOWN))
        scheduler.advance(100)
        correlator.add_message(make_message("another line here"))

        scheduler.advance(100)
        assert listener.finalized == []

        scheduler.advance(20)
        assert len(listener.finalized) == 1
        assert listener.finalized[0].message_count == 2

    def test_at_most_one_pending_timer_per_sender(self, correlator, scheduler):
        for text in (UNKNOWN, "second note line", "third note line"):
            correlator.add_message(make_message(text))

        assert len(scheduler.pending()) == 1
        assert correlator.has_pending_timer(SENDER_JID)

    def test_superseded_timer_firing_late_is_ignored(self, correlator, scheduler, listener):
        correlator.add_message(make_message(UNKNOWN))
        first_timer = scheduler.pending()[0]
        correlator.add_message(make_message("second note line"))

        scheduler.fire(first_timer)

        assert listener.finalized == []
        assert correlator.store.get(SENDER_JID) is not None

    def test_duration_is_completed_minus_started(self, correlator, scheduler, listener):
        correlator.add_message(make_message(UNKNOWN))
        scheduler.advance(120)

        record = listener.finalized[0]
        assert record.duration_ms == record.completed_at - record.started_at
        assert record.duration_ms == 120_000


class TestMessageLimit:
    def test_limit_finalizes_immediately(self, scheduler, listener, clock):
        correlator = SessionCorrelator(
            scheduler=scheduler, listener=listener, max_messages=3, clock=clock
        )
        for i in range(3):
            correlator.add_message(make_message(f"note {i} for the team"))

        assert len(listener.finalized) == 1
        assert listener.finalized[0].message_count == 3
        assert not correlator.has_pending_timer(SENDER_JID)
        assert scheduler.pending() == []

    def test_next_message_after_limit_starts_new_session(self, scheduler, listener, clock):
        correlator = SessionCorrelator(
            scheduler=scheduler, listener=listener, max_messages=2, clock=clock
        )
        for i in range(3):
            correlator.add_message(make_message(f"note {i} for the team"))

        assert len(listener.finalized) == 1
        assert len(correlator.store) == 1
        assert len(correlator.store.get(SENDER_JID).messages) == 1

    def test_timer_firing_after_limit_emits_nothing_more(self, scheduler, listener, clock):
        correlator = SessionCorrelator(
            scheduler=scheduler, listener=listener, max_messages=2, clock=clock
        )
        correlator.add_message(make_message("first note line"))
        [timer] = scheduler.pending()
        correlator.add_message(make_message("second note line"))

        scheduler.fire(timer)
        for stale in scheduler.timers:
            scheduler.fire(stale)

        assert len(listener.finalized) == 1
        assert listener.finalized[0].message_count == 2
        assert len(correlator.store) == 0

    def test_invalid_limit_rejected(self):
        with pytest.raises(ValueError):
            SessionCorrelator(max_messages=0)


class TestSlotCollision:
    def test_second_name_finalizes_previous_session(self, correlator, listener):
        correlator.add_message(make_message(NAME))
        correlator.add_message(make_message(MOBILE))
        correlator.add_message(make_message(OTHER_NAME))

        assert len(listener.finalized) == 1
        first = listener.finalized[0]
        assert first.combined_text == f"{NAME}\n{MOBILE}"

        current = correlator.store.get(SENDER_JID)
        assert [m.text for m in current.messages] == [OTHER_NAME]
        assert current.slots.get(Slot.NAME) == OTHER_NAME

    def test_second_mobile_finalizes_previous_session(self, correlator, listener, clock):
        correlator.add_message(make_message(MOBILE))
        clock.advance(1)
        correlator.add_message(make_message(UNKNOWN))
        clock.advance(1)
        correlator.add_message(make_message("9123456780"))

        assert len(listener.finalized) == 1
        assert listener.finalized[0].combined_text == f"{MOBILE}\n{UNKNOWN}"
        assert listener.finalized[0].slots["mobile"] == MOBILE

        current = correlator.store.get(SENDER_JID)
        assert [m.text for m in current.messages] == ["9123456780"]
        assert current.slots.get(Slot.MOBILE) == "9123456780"
        assert current.session_id != listener.finalized[0].session_id

    def test_collision_in_same_millisecond_gets_distinct_session_id(
        self, correlator, listener
    ):
        # Clock never advances: both sessions start at the same instant
        correlator.add_message(make_message(NAME))
        correlator.add_message(make_message(OTHER_NAME))
        correlator.flush_all()

        ids = [r.session_id for r in listener.finalized]
        assert len(ids) == 2
        assert ids[0] != ids[1]

    def test_unknown_slot_never_collides(self, correlator, listener):
        correlator.add_message(make_message(UNKNOWN))
        correlator.add_message(make_message("yet another note"))

        assert listener.finalized == []

    def test_first_value_of_slot_is_kept(self, correlator):
        correlator.add_message(make_message(MOBILE))
        session = correlator.store.get(SENDER_JID)
        assert session.slots.fill(Slot.MOBILE, "9123456780") is False
        assert session.slots.get(Slot.MOBILE) == MOBILE


class TestIntakeFilters:
    def test_duplicate_message_id_ignored(self, correlator):
        msg = make_message(UNKNOWN, message_id="DUP1")

        assert correlator.add_message(msg) is True
        assert correlator.add_message(msg) is False
        assert len(correlator.store.get(SENDER_JID).messages) == 1

    def test_noise_ignored(self, correlator, scheduler):
        assert correlator.add_message(make_message("hi")) is False
        assert correlator.add_message(make_message("Namaste ji")) is False

        assert len(correlator.store) == 0
        assert scheduler.pending() == []

    def test_session_started_callback(self, correlator, listener):
        correlator.add_message(make_message(UNKNOWN))

        assert len(listener.started) == 1
        session_id, sender_number = listener.started[0]
        assert session_id.startswith(f"{SENDER_JID}_")
        assert sender_number == SENDER_NUMBER

    def test_messages_kept_in_arrival_order(self, correlator, scheduler, listener):
        texts = ["first note line", "second note line", "third note line"]
        for text in texts:
            correlator.add_message(make_message(text))
        scheduler.advance(120)

        record = listener.finalized[0]
        assert [m.text for m in record.messages] == texts
        assert record.combined_text == "\n".join(texts)


class TestRevocation:
    def test_remove_one_of_two(self, correlator):
        correlator.add_message(make_message(UNKNOWN, message_id="A"))
        correlator.add_message(make_message("second note line", message_id="B"))

        assert correlator.remove_message(SENDER_JID, "A") is True
        assert [m.id for m in correlator.store.get(SENDER_JID).messages] == ["B"]

    def test_remove_last_message_discards_session_and_timer(
        self, correlator, scheduler, listener
    ):
        correlator.add_message(make_message(UNKNOWN, message_id="A"))

        assert correlator.remove_message(SENDER_JID, "A") is True
        assert correlator.store.get(SENDER_JID) is None
        assert not correlator.has_pending_timer(SENDER_JID)

        scheduler.advance(300)
        assert listener.finalized == []

    def test_cancelled_timer_firing_late_is_ignored(self, correlator, scheduler, listener):
        correlator.add_message(make_message(UNKNOWN, message_id="A"))
        [timer] = scheduler.pending()

        correlator.remove_message(SENDER_JID, "A")
        scheduler.fire(timer)

        assert listener.finalized == []
        assert correlator.store.get(SENDER_JID) is None

    def test_remove_unknown_message(self, correlator):
        correlator.add_message(make_message(UNKNOWN, message_id="A"))

        assert correlator.remove_message(SENDER_JID, "nope") is False
        assert correlator.remove_message("other@s.whatsapp.net", "A") is False

    def test_slots_stay_filled_after_revoke(self, correlator, listener):
        correlator.add_message(make_message(NAME, message_id="N1"))
        correlator.add_message(make_message(UNKNOWN, message_id="U1"))
        correlator.remove_message(SENDER_JID, "N1")

        correlator.add_message(make_message(OTHER_NAME, message_id="N2"))

        assert len(listener.finalized) == 1
        assert listener.finalized[0].combined_text == UNKNOWN


class TestFinalize:
    def test_explicit_finalize_returns_record_once(self, correlator, listener):
        correlator.add_message(make_message(UNKNOWN))

        record = correlator.finalize(SENDER_JID)
        assert record is not None
        assert correlator.finalize(SENDER_JID) is None
        assert len(listener.finalized) == 1

    def test_finalize_without_session(self, correlator):
        assert correlator.finalize("nobody@s.whatsapp.net") is None

    def test_flush_all_emits_every_session(self, correlator, listener, scheduler):
        correlator.add_message(make_message(UNKNOWN))
        correlator.add_message(make_message(UNKNOWN, sender_id="919876500002@s.whatsapp.net"))

        assert correlator.flush_all() == 2
        assert len(listener.finalized) == 2
        assert len(correlator.store) == 0
        assert scheduler.pending() == []

    def test_listener_failure_does_not_break_intake(self, scheduler, clock):
        class ExplodingListener:
            def on_session_started(self, session_id, sender_number):
                raise RuntimeError("boom")

            def on_session_finalized(self, record):
                raise RuntimeError("boom")

        correlator = SessionCorrelator(
            scheduler=scheduler, listener=ExplodingListener(), max_messages=1, clock=clock
        )

        assert correlator.add_message(make_message(UNKNOWN)) is True
        assert len(correlator.store) == 0

    def test_close_drops_sessions_without_emitting(self, correlator, scheduler, listener):
        correlator.add_message(make_message(UNKNOWN))
        correlator.close()

        scheduler.advance(300)
        assert listener.finalized == []
        assert len(correlator.store) == 0


class TestStats:
    def test_stats_hide_sender_identity(self, correlator, clock):
        correlator.add_message(make_message(NAME))
        clock.advance(5)

        stats = correlator.get_stats()

        assert stats["activeSessions"] == 1
        session = stats["sessions"][0]
        assert session["messageCount"] == 1
        assert session["filledSlots"] == ["name"]
        assert session["ageMs"] == 5000
        assert SENDER_NUMBER not in str(stats)


class TestConcurrency:
    def test_parallel_senders_do_not_interfere(self, scheduler, listener, clock):
        correlator = SessionCorrelator(
            scheduler=scheduler, listener=listener, max_messages=50, clock=clock
        )
        senders = [f"9198765{i:05d}@s.whatsapp.net" for i in range(8)]

        def feed(sender_id: str) -> None:
            for k in range(5):
                correlator.add_message(
                    make_message(f"note {k} for the team", sender_id=sender_id)
                )

        threads = [threading.Thread(target=feed, args=(s,)) for s in senders]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert correlator.flush_all() == 8
        assert sorted(r.sender_id for r in listener.finalized) == sorted(senders)
        assert all(r.message_count == 5 for r in listener.finalized)

    def test_listeners_run_without_holding_sender_lock(self, scheduler, clock):
        lock_free_during_callback = []

        class LockCheckingListener:
            def __init__(self):
                self.correlator = None

            def _stripe_is_free(self, sender_id):
                lock = self.correlator._lock_for(sender_id)
                acquired = []

                def try_lock():
                    got = lock.acquire(timeout=1)
                    acquired.append(got)
                    if got:
                        lock.release()

                worker = threading.Thread(target=try_lock)
                worker.start()
                worker.join()
                return acquired[0]

            def on_session_started(self, session_id, sender_number):
                lock_free_during_callback.append(self._stripe_is_free(SENDER_JID))

            def on_session_finalized(self, record):
                lock_free_during_callback.append(self._stripe_is_free(record.sender_id))

        listener = LockCheckingListener()
        correlator = SessionCorrelator(
            scheduler=scheduler, listener=listener, max_messages=2, clock=clock
        )
        listener.correlator = correlator

        correlator.add_message(make_message(NAME))
        correlator.add_message(make_message(OTHER_NAME))
        correlator.add_message(make_message(MOBILE))
        scheduler.advance(120)

        # started, finalized (collision), started, finalized (limit)
        assert lock_free_during_callback == [True, True, True, True]

    def test_collision_events_keep_order(self, correlator, listener):
        events = []
        listener.on_session_started = lambda sid, number: events.append(("started", sid))
        listener.on_session_finalized = lambda record: events.append(
            ("finalized", record.session_id)
        )

        correlator.add_message(make_message(NAME))
        correlator.add_message(make_message(OTHER_NAME))

        assert [kind for kind, _ in events] == ["started", "finalized", "started"]
        assert events[0][1] == events[1][1]
        assert events[2][1] != events[1][1]
