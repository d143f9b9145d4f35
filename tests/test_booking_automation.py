import asyncio
from datetime import timedelta

from bookme.services.booking_automation import run_booking_automation
from bookme.services.eip712_signer import chain_booking_id_for
from bookme.utils.time_utils import ensure_utc, utcnow


class FakeChain:
    def __init__(self, fail=False):
        self.fail = fail
        self.completed = []

    async def complete_service_as_backend(self, chain_booking_id):
        if self.fail:
            raise RuntimeError("execution reverted")
        self.completed.append(chain_booking_id)
        return "0x" + "77" * 32


def _run(db, dispatcher, blockchain=None):
    return asyncio.run(run_booking_automation(db, dispatcher, blockchain))


def test_started_bookings_move_to_in_progress(db, dispatcher, service, customer, factory):
    due = factory.booking(service, customer, status="confirmed", starts_in=timedelta(minutes=-5))
    later = factory.booking(service, customer, status="confirmed", starts_in=timedelta(hours=5))

    summary = _run(db, dispatcher)
    assert summary["started"] == 1
    db.refresh(due)
    db.refresh(later)
    assert due.status == "in_progress"
    assert later.status == "confirmed"
    assert ("send_booking_notification_task", (str(due.id), "booking_in_progress", {})) in dispatcher.jobs


def test_finished_bookings_are_completed(db, dispatcher, service, customer, factory):
    finished = factory.booking(service, customer, status="in_progress", starts_in=timedelta(hours=-2))
    running = factory.booking(service, customer, status="in_progress", starts_in=timedelta(minutes=-30))

    summary = _run(db, dispatcher)
    assert summary["completed"] == 1
    db.refresh(finished)
    db.refresh(running)
    assert finished.status == "completed"
    assert finished.backend_completed is True
    assert running.status == "in_progress"


def test_blocked_bookings_are_left_for_the_customer(db, dispatcher, service, customer, factory):
    blocked = factory.booking(
        service,
        customer,
        status="in_progress",
        starts_in=timedelta(hours=-2),
        auto_complete_blocked=True,
        auto_complete_blocked_reason="Provider session duration (10m) is below 90%",
    )
    summary = _run(db, dispatcher)
    assert summary["completed"] == 0
    db.refresh(blocked)
    assert blocked.status == "in_progress"


def test_chain_bookings_complete_through_contract_once(db, dispatcher, service, customer, factory):
    booking = factory.booking(
        service,
        customer,
        status="in_progress",
        starts_in=timedelta(hours=-2),
        blockchain_booking_id=chain_booking_id_for("auto"),
        blockchain_tx_hash="0x" + "66" * 32,
    )
    chain = FakeChain()

    assert _run(db, dispatcher, chain)["pending_chain"] == 1
    assert _run(db, dispatcher, chain)["pending_chain"] == 0
    assert chain.completed == [booking.blockchain_booking_id]
    db.refresh(booking)
    assert booking.status == "in_progress"


def test_chain_failure_is_retried_next_run(db, dispatcher, service, customer, factory):
    booking = factory.booking(
        service,
        customer,
        status="in_progress",
        starts_in=timedelta(hours=-2),
        blockchain_booking_id=chain_booking_id_for("retry"),
        blockchain_tx_hash="0x" + "88" * 32,
    )
    assert _run(db, dispatcher, FakeChain(fail=True))["failed"] == 1
    db.refresh(booking)
    assert booking.backend_completed is False

    assert _run(db, dispatcher, FakeChain())["pending_chain"] == 1


def test_reminders_are_sent_once(db, dispatcher, service, customer, factory):
    soon = factory.booking(service, customer, status="paid", starts_in=timedelta(minutes=40))
    factory.booking(service, customer, status="paid", starts_in=timedelta(hours=3))

    assert _run(db, dispatcher)["reminders"] == 1
    assert _run(db, dispatcher)["reminders"] == 0
    db.refresh(soon)
    assert soon.reminder_1h_sent is not None
    assert utcnow() - ensure_utc(soon.reminder_1h_sent) < timedelta(minutes=1)
