import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from bookme import worker
from bookme.database import Base
from bookme.domain.bookings.repository import BookingRepository
from bookme.domain.bookings.schemas import BookingCreate, BookingUpdate
from bookme.domain.bookings.service import BookingService
from bookme.exceptions import ActorNotAllowed, Forbidden, NotFound, SlotConflict, ValidationFailed
from bookme.models import BlockchainEvent, Booking, Service, SignatureNonce, User
from bookme.services.eip712_signer import chain_booking_id_for
from bookme.services.event_reconciler import EventReconciler
from bookme.services.points_service import PointsService
from bookme.services.session_tracker import NOT_GOOGLE_MEET, SessionCheckResult
from bookme.utils.time_utils import utcnow

MEET_LINK = "https://meet.google.com/abc-defg-hij"


def _create(service, customer, booking_service, starts_in=timedelta(days=3), **kwargs):
    data = BookingCreate(service_id=service.id, scheduled_at=utcnow() + starts_in, **kwargs)
    return booking_service.create_booking(data, customer.id)


@pytest.fixture
def bookings(db, dispatcher, signer):
    return BookingService(db, dispatcher, signer=signer)


# ============================================================================
# CREATE
# ============================================================================


def test_create_issues_payment_authorization(db, bookings, service, customer):
    result = _create(service, customer, bookings)

    booking = result["booking"]
    assert booking.status == "pending_payment"
    assert booking.blockchain_booking_id == chain_booking_id_for(booking.id)
    assert result["payment_status"] == "authorization_issued"
    assert result["authorization"]["amount"] == "100000000"
    assert result["authorization"]["originalAmount"] == "100000000"
    assert result["fees"]["platform_fee_rate"] == 1000
    assert result["fees"]["inviter_fee_rate"] == 0
    assert booking.usdc_paid == Decimal("100.00")

    nonces = db.query(SignatureNonce).filter(SignatureNonce.booking_id == booking.id).all()
    assert [n.nonce for n in nonces] == [result["nonce"]]


def test_create_with_inviter_splits_fee(db, bookings, service, factory):
    inviter = factory.user()
    invited = factory.user(referred_by=inviter.id)

    result = _create(service, invited, bookings)
    assert result["fees"]["platform_fee_rate"] == 500
    assert result["fees"]["inviter_fee_rate"] == 500
    assert result["authorization"]["inviter"] == inviter.wallet_address


def test_create_without_wallet_defers_payment(db, bookings, service, factory):
    walletless = factory.user(wallet=False)
    result = _create(service, walletless, bookings)

    assert result["payment_status"] == "payment_required_later"
    assert result["payment_error"] == "Wallet addresses not configured"
    assert result["booking"].status == "pending"
    assert result["booking"].blockchain_booking_id is None


def test_create_without_signer_still_books(db, dispatcher, service, customer):
    result = _create(service, customer, BookingService(db, dispatcher, signer=None))
    assert result["payment_status"] == "payment_required_later"
    assert result["booking"].status == "pending"


def test_cannot_book_own_service(bookings, service, provider):
    with pytest.raises(ValidationFailed) as exc:
        _create(service, provider, bookings)
    assert exc.value.reason == "Cannot book your own service"


def test_cannot_book_in_the_past(bookings, service, customer):
    with pytest.raises(ValidationFailed) as exc:
        _create(service, customer, bookings, starts_in=timedelta(hours=-1))
    assert exc.value.reason == "Cannot schedule bookings in the past"


def test_unknown_service(bookings, customer):
    data = BookingCreate(service_id=uuid.uuid4(), scheduled_at=utcnow() + timedelta(days=1))
    with pytest.raises(NotFound) as exc:
        bookings.create_booking(data, customer.id)
    assert exc.value.reason == "Service not found"


def test_missing_fields(bookings, customer):
    with pytest.raises(ValidationFailed) as exc:
        bookings.create_booking(BookingCreate(), customer.id)
    assert exc.value.reason == "Service ID and scheduled time are required"


def test_client_price_is_ignored(bookings, service, customer):
    result = _create(service, customer, bookings, price=Decimal("1.00"))
    assert result["booking"].total_price == Decimal("100.00")


# ============================================================================
# SLOT CONFLICT GUARD
# ============================================================================


def test_overlapping_booking_is_rejected(db, bookings, service, customer, factory):
    start = utcnow().replace(microsecond=0) + timedelta(days=3)
    first = bookings.create_booking(BookingCreate(service_id=service.id, scheduled_at=start), customer.id)

    other = factory.user()
    with pytest.raises(SlotConflict) as exc:
        bookings.create_booking(
            BookingCreate(service_id=service.id, scheduled_at=start + timedelta(minutes=30)), other.id
        )
    assert exc.value.reason == "Time slot not available"
    assert exc.value.status_code == 400
    assert [b["id"] for b in exc.value.extra["conflicting_bookings"]] == [str(first["booking"].id)]


def test_same_start_reports_the_existing_booking(db, bookings, service, customer, factory):
    start = utcnow().replace(microsecond=0) + timedelta(days=3)
    first = bookings.create_booking(BookingCreate(service_id=service.id, scheduled_at=start), customer.id)

    with pytest.raises(SlotConflict) as exc:
        bookings.create_booking(BookingCreate(service_id=service.id, scheduled_at=start), factory.user().id)
    conflict = exc.value.extra["conflicting_bookings"]
    assert [b["id"] for b in conflict] == [str(first["booking"].id)]
    assert conflict[0]["duration_minutes"] == 60


def test_request_outside_service_hours(bookings, factory, provider, customer):
    scheduled = factory.service(
        provider, weekly_schedule={"monday": {"enabled": True, "start": "09:00", "end": "12:00"}}
    )
    data = BookingCreate(service_id=scheduled.id, scheduled_at=datetime(2030, 1, 7, 13, 0, tzinfo=timezone.utc))
    with pytest.raises(ValidationFailed) as exc:
        bookings.create_booking(data, customer.id)
    assert exc.value.reason == "Requested time is outside service hours"


def test_guard_reports_conflicting_rows(db, service, customer):
    start = utcnow().replace(microsecond=0) + timedelta(days=3)
    kwargs = dict(
        service_id=service.id,
        customer_id=customer.id,
        provider_id=service.provider_id,
        duration_minutes=60,
        total_price=Decimal("100.00"),
    )
    first = BookingRepository.create_booking_atomic(db, scheduled_at=start, **kwargs)
    assert not first.conflict
    assert first.booking.status == "pending"

    clash = BookingRepository.create_booking_atomic(db, scheduled_at=start + timedelta(minutes=59), **kwargs)
    assert clash.conflict
    assert [b.id for b in clash.conflicting_bookings] == [first.booking.id]


def test_back_to_back_slots_do_not_conflict(db, service, customer):
    start = utcnow().replace(microsecond=0) + timedelta(days=3)
    kwargs = dict(
        service_id=service.id,
        customer_id=customer.id,
        provider_id=service.provider_id,
        duration_minutes=60,
        total_price=Decimal("100.00"),
    )
    assert not BookingRepository.create_booking_atomic(db, scheduled_at=start, **kwargs).conflict
    assert not BookingRepository.create_booking_atomic(db, scheduled_at=start + timedelta(hours=1), **kwargs).conflict
    assert not BookingRepository.create_booking_atomic(db, scheduled_at=start - timedelta(hours=1), **kwargs).conflict


def test_cancelled_bookings_free_the_slot(db, service, customer, factory):
    start = utcnow().replace(microsecond=0) + timedelta(days=3)
    factory.booking(service, customer, status="cancelled", scheduled_at=start)
    reservation = BookingRepository.create_booking_atomic(
        db,
        service_id=service.id,
        customer_id=customer.id,
        provider_id=service.provider_id,
        scheduled_at=start,
        duration_minutes=60,
        total_price=Decimal("100.00"),
    )
    assert not reservation.conflict


@pytest.fixture
def file_session_factory(tmp_path):
    """Sessions on a file-backed database so each thread gets its own connection"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'slots.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    # SQLite has no row locks; take the write lock up front so creators queue like FOR UPDATE
    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def test_concurrent_requests_for_one_slot(file_session_factory):
    setup = file_session_factory()
    provider, first_customer, second_customer = (
        User(id=uuid.uuid4(), email=f"{name}@example.com", display_name=name)
        for name in ("provider", "first", "second")
    )
    setup.add_all([provider, first_customer, second_customer])
    setup.flush()
    service = Service(provider_id=provider.id, title="Consultation", price=Decimal("100.00"), duration_minutes=60)
    setup.add(service)
    setup.commit()
    service_id, provider_id = service.id, provider.id
    customer_ids = [first_customer.id, second_customer.id]
    setup.close()

    start = utcnow().replace(microsecond=0) + timedelta(days=3)
    barrier = threading.Barrier(2, timeout=10)

    def book(customer_id, offset_minutes):
        session = file_session_factory()
        try:
            barrier.wait()
            result = BookingRepository.create_booking_atomic(
                session,
                service_id=service_id,
                customer_id=customer_id,
                provider_id=provider_id,
                scheduled_at=start + timedelta(minutes=offset_minutes),
                duration_minutes=60,
                total_price=Decimal("100.00"),
            )
            if result.conflict:
                return True, [b.id for b in result.conflicting_bookings]
            return False, result.booking.id
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(pool.map(book, customer_ids, [0, 30]))

    winners = [value for conflict, value in outcomes if not conflict]
    losers = [value for conflict, value in outcomes if conflict]
    assert len(winners) == 1
    assert losers == [[winners[0]]]

    check = file_session_factory()
    try:
        assert check.query(Booking).filter(Booking.service_id == service_id).count() == 1
    finally:
        check.close()


# ============================================================================
# POINTS
# ============================================================================


def test_points_reserved_then_deducted_on_payment(db, bookings, dispatcher, service, customer):
    points = PointsService(db)
    points.award_points(customer.id, 5000, "Welcome bonus")

    result = _create(service, customer, bookings, use_points=True)
    booking = result["booking"]
    assert booking.points_used == 5000
    assert booking.points_value == Decimal("50.00")
    assert result["authorization"]["amount"] == "50000000"
    assert result["authorization"]["originalAmount"] == "100000000"
    assert points.get_points_info(customer.id)["reserved"] == 5000
    assert points.get_balance(customer.id) == 0

    EventReconciler(db, dispatcher).reconcile(
        {
            "type": "BookingCreatedAndPaid",
            "bookingId": booking.blockchain_booking_id,
            "transactionHash": "0x" + "01" * 32,
            "logIndex": 0,
            "amount": "50000000",
        }
    )
    db.refresh(booking)
    assert booking.status == "paid"
    info = points.get_points_info(customer.id)
    assert info["balance"] == 0
    assert info["reserved"] == 0
    assert info["total_spent"] == 5000


def test_points_reservation_failure_removes_booking(db, bookings, service, customer, monkeypatch):
    points = PointsService(db)
    points.award_points(customer.id, 5000, "Welcome bonus")

    from bookme.exceptions import InsufficientPointsError

    def fail(*args, **kwargs):
        raise InsufficientPointsError(0, 5000)

    monkeypatch.setattr(bookings.points, "reserve_points", fail)
    with pytest.raises(ValidationFailed) as exc:
        _create(service, customer, bookings, use_points=True)
    assert exc.value.reason == "Insufficient points balance"
    assert BookingRepository.list_for_user(db, customer.id) == []


# ============================================================================
# PAYMENT REISSUE
# ============================================================================


def test_authorize_payment_reissues_with_new_nonce(db, bookings, service, customer):
    created = _create(service, customer, bookings)
    booking = created["booking"]

    again = bookings.authorize_payment(booking.id, customer.id)
    assert again["nonce"] != created["nonce"]
    assert again["blockchain_booking_id"] == booking.blockchain_booking_id
    assert len(BookingRepository.get_nonces(db, booking.id)) == 2


def test_authorize_payment_only_for_customer(bookings, service, customer, provider):
    booking = _create(service, customer, bookings)["booking"]
    with pytest.raises(Forbidden):
        bookings.authorize_payment(booking.id, provider.id)


def test_authorize_payment_rejects_paid_booking(bookings, service, customer, factory):
    booking = factory.booking(service, customer, status="paid")
    with pytest.raises(ValidationFailed) as exc:
        bookings.authorize_payment(booking.id, customer.id)
    assert exc.value.reason == "Booking not eligible for payment"


# ============================================================================
# TRANSITIONS
# ============================================================================


@pytest.mark.asyncio
async def test_provider_confirms_paid_booking(db, bookings, dispatcher, service, customer, provider, factory):
    booking = factory.booking(service, customer, status="paid")
    result = await bookings.update_booking(booking.id, provider.id, BookingUpdate(status="confirmed"))
    assert result["booking"].status == "confirmed"
    assert ("send_booking_notification_task", (str(booking.id), "booking_confirmed", {})) in dispatcher.jobs


@pytest.mark.asyncio
async def test_customer_cannot_start_service(bookings, service, customer, factory):
    booking = factory.booking(service, customer, status="confirmed")
    with pytest.raises(ActorNotAllowed) as exc:
        await bookings.update_booking(booking.id, customer.id, BookingUpdate(status="in_progress"))
    assert exc.value.reason == "Only provider can start the service"


@pytest.mark.asyncio
async def test_outsider_cannot_update(bookings, service, customer, factory):
    booking = factory.booking(service, customer, status="confirmed")
    stranger = factory.user()
    with pytest.raises(Forbidden):
        await bookings.update_booking(booking.id, stranger.id, BookingUpdate(provider_notes="hi"))


@pytest.mark.asyncio
async def test_starting_online_service_generates_meeting_link(db, dispatcher, signer, service, customer, provider, factory):
    class FakeMeetings:
        async def generate_meeting_link_for_booking(self, booking_id):
            booking = db.get(type(online), booking_id)
            booking.meeting_link = MEET_LINK
            db.commit()
            return MEET_LINK

    online = factory.booking(service, customer, status="confirmed", is_online=True)
    service_layer = BookingService(db, dispatcher, signer=signer, meetings=FakeMeetings())
    result = await service_layer.update_booking(online.id, provider.id, BookingUpdate(status="in_progress"))
    assert result["meeting_link_generated"] is True
    assert result["booking"].meeting_link == MEET_LINK


def test_reject_paid_booking_logs_refund(db, bookings, dispatcher, session_factory, service, customer, provider, factory, monkeypatch):
    booking = factory.booking(
        service,
        customer,
        status="confirmed",
        blockchain_booking_id=chain_booking_id_for("x"),
        blockchain_tx_hash="0x" + "aa" * 32,
        usdc_paid=Decimal("100.00"),
    )

    rejected = bookings.reject_booking(booking.id, provider.id, "Double booked")
    assert rejected.status == "rejected"
    assert rejected.rejection_reason == "Double booked"
    assert rejected.rejected_at is not None

    refund_jobs = [args for name, args in dispatcher.jobs if name == "log_refund_event_task"]
    assert len(refund_jobs) == 1

    import asyncio

    monkeypatch.setattr(worker, "SessionLocal", session_factory)
    asyncio.run(worker.log_refund_event_task({}, *refund_jobs[0]))

    events = db.query(BlockchainEvent).filter(BlockchainEvent.booking_id == booking.id).all()
    assert [e.event_type for e in events] == ["refund_processed"]
    assert events[0].event_data["reason"] == "rejection"


def test_only_provider_rejects(bookings, service, customer, factory):
    booking = factory.booking(service, customer, status="confirmed")
    with pytest.raises(Forbidden) as exc:
        bookings.reject_booking(booking.id, customer.id)
    assert exc.value.reason == "Only the provider can reject this booking"


def test_reject_requires_confirmed(bookings, service, customer, provider, factory):
    booking = factory.booking(service, customer, status="paid")
    with pytest.raises(ValidationFailed) as exc:
        bookings.reject_booking(booking.id, provider.id)
    assert exc.value.reason == "Can only reject confirmed bookings"


# ============================================================================
# COMPLETION
# ============================================================================


@pytest.mark.asyncio
async def test_customer_completion_of_chain_booking_defers_to_contract(bookings, service, customer, factory):
    booking = factory.booking(
        service,
        customer,
        status="in_progress",
        blockchain_booking_id=chain_booking_id_for("y"),
        blockchain_tx_hash="0x" + "bb" * 32,
    )
    result = await bookings.complete_service(booking.id, customer.id, "Great session")
    assert result["status"] == "pending_confirmation"
    assert result["blockchain_booking_id"] == booking.blockchain_booking_id
    assert bookings.get_booking(booking.id, customer.id).status == "in_progress"


@pytest.mark.asyncio
async def test_customer_completion_without_chain_payment(bookings, service, customer, factory):
    booking = factory.booking(service, customer, status="in_progress")
    result = await bookings.complete_service(booking.id, customer.id)
    assert result["status"] == "completed"
    assert result["booking"].completed_at is not None


@pytest.mark.asyncio
async def test_provider_cannot_complete(bookings, service, customer, provider, factory):
    booking = factory.booking(service, customer, status="in_progress")
    with pytest.raises(ActorNotAllowed) as exc:
        await bookings.complete_service(booking.id, provider.id)
    assert exc.value.reason == "Only customer can mark service as complete"


class FakeTracker:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    async def check_google_meet_session_duration(self, booking_id):
        if self.error:
            raise self.error
        return self.result


class FakeChain:
    def __init__(self):
        self.completed = []

    async def complete_service_as_backend(self, chain_booking_id):
        self.completed.append(chain_booking_id)
        return "0x" + "cc" * 32


def _online_booking(factory, service, customer, **kwargs):
    return factory.booking(
        service,
        customer,
        status="in_progress",
        is_online=True,
        meeting_link=MEET_LINK,
        starts_in=timedelta(hours=-2),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_session_gate_blocks_short_provider_session(db, dispatcher, service, customer, factory):
    booking = _online_booking(factory, service, customer)
    tracker = FakeTracker(
        SessionCheckResult(
            success=True,
            provider_duration=40 * 60,
            customer_duration=55 * 60,
            service_duration=60 * 60,
            threshold=0.9,
            provider_meets_threshold=False,
        )
    )
    chain = FakeChain()
    layer = BookingService(db, dispatcher, session_tracker=tracker, blockchain=chain)

    result = await layer.complete_service_backend(booking.id)
    assert result["status"] == "blocked"
    assert result["reason"] == (
        "Provider session duration (40m) is below 90% of the scheduled service duration (60m). "
        "Customer must complete manually."
    )
    db.refresh(booking)
    assert booking.auto_complete_blocked is True
    assert booking.status == "in_progress"
    assert chain.completed == []


@pytest.mark.asyncio
async def test_session_gate_blocks_when_check_fails(db, dispatcher, service, customer, factory):
    booking = _online_booking(factory, service, customer)
    layer = BookingService(db, dispatcher, session_tracker=FakeTracker(error=RuntimeError("Meet API down")))

    result = await layer.complete_service_backend(booking.id)
    assert result["reason"] == "Session duration check failed: Meet API down"


@pytest.mark.asyncio
async def test_session_gate_passes_and_chain_completion_is_sent(db, dispatcher, service, customer, factory):
    booking = _online_booking(
        factory,
        service,
        customer,
        blockchain_booking_id=chain_booking_id_for("z"),
        blockchain_tx_hash="0x" + "dd" * 32,
    )
    tracker = FakeTracker(
        SessionCheckResult(success=True, provider_duration=58 * 60, service_duration=60 * 60, provider_meets_threshold=True)
    )
    chain = FakeChain()
    layer = BookingService(db, dispatcher, session_tracker=tracker, blockchain=chain)

    result = await layer.complete_service_backend(booking.id)
    assert result["status"] == "pending_confirmation"
    assert result["tx_hash"] == "0x" + "cc" * 32
    assert chain.completed == [booking.blockchain_booking_id]
    db.refresh(booking)
    assert booking.backend_completed is True
    assert booking.status == "in_progress"


@pytest.mark.asyncio
async def test_not_a_meet_booking_does_not_block(db, dispatcher, service, customer, factory):
    booking = _online_booking(factory, service, customer)
    tracker = FakeTracker(SessionCheckResult(success=False, reason=NOT_GOOGLE_MEET))
    layer = BookingService(db, dispatcher, session_tracker=tracker)

    result = await layer.complete_service_backend(booking.id)
    assert result["status"] == "completed"
    assert result["booking"].backend_completed is True


@pytest.mark.asyncio
async def test_backend_completion_requires_in_progress(db, dispatcher, service, customer, factory):
    booking = factory.booking(service, customer, status="paid")
    with pytest.raises(ValidationFailed) as exc:
        await BookingService(db, dispatcher).complete_service_backend(booking.id)
    assert exc.value.reason == "Service cannot be completed from current status"


# ============================================================================
# READS
# ============================================================================


def test_list_user_bookings_is_self_only(bookings, service, customer, provider, factory):
    factory.booking(service, customer)
    assert len(bookings.list_user_bookings(customer.id, customer.id)) == 1
    assert len(bookings.list_user_bookings(provider.id, provider.id, role="provider")) == 1
    assert bookings.list_user_bookings(provider.id, provider.id, role="customer") == []
    with pytest.raises(Forbidden):
        bookings.list_user_bookings(customer.id, provider.id)


@pytest.mark.asyncio
async def test_blockchain_status_lists_events(db, bookings, service, customer, factory):
    booking = factory.booking(service, customer)
    BookingRepository.log_blockchain_event(db, booking.id, "refund_processed", event_data={"reason": "x"})
    status = await bookings.blockchain_status(booking.id, customer.id)
    assert status["is_on_chain"] is False
    assert [e["event_type"] for e in status["events"]] == ["refund_processed"]
