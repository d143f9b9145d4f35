"""Shared fixtures: in-memory SQLite database, row factories and fakes."""

import os
import uuid
from datetime import timedelta
from decimal import Decimal

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("EVENT_DISPATCH_MODE", "inline")

import pytest
from eth_account import Account
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from bookme import models
from bookme.database import Base
from bookme.services.dispatcher import EventDispatcher
from bookme.services.eip712_signer import EIP712Signer
from bookme.utils.time_utils import utcnow

CONTRACT = "0x" + "ab" * 20


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


class RecordingDispatcher(EventDispatcher):
    """Keeps dispatched jobs in memory instead of running them"""

    def __init__(self):
        self.jobs = []

    def dispatch(self, job_name, *args):
        self.jobs.append((job_name, args))

    def names(self):
        return [name for name, _ in self.jobs]


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def signer():
    return EIP712Signer(Account.create().key, CONTRACT, 84532)


def make_user(db, wallet=True, **kwargs):
    user = models.User(
        id=uuid.uuid4(),
        email=kwargs.pop("email", f"{uuid.uuid4().hex[:8]}@example.com"),
        display_name=kwargs.pop("display_name", "Test User"),
        wallet_address=Account.create().address if wallet else None,
        **kwargs,
    )
    db.add(user)
    db.commit()
    return user


def make_service(db, provider, **kwargs):
    service = models.Service(
        provider_id=provider.id,
        title=kwargs.pop("title", "Consultation"),
        price=kwargs.pop("price", Decimal("100.00")),
        duration_minutes=kwargs.pop("duration_minutes", 60),
        **kwargs,
    )
    db.add(service)
    db.commit()
    return service


def make_booking(db, service, customer, status="confirmed", starts_in=timedelta(days=2), **kwargs):
    booking = models.Booking(
        service_id=service.id,
        customer_id=customer.id,
        provider_id=service.provider_id,
        scheduled_at=kwargs.pop("scheduled_at", utcnow() + starts_in),
        duration_minutes=kwargs.pop("duration_minutes", service.duration_minutes),
        total_price=kwargs.pop("total_price", service.price),
        status=status,
        **kwargs,
    )
    db.add(booking)
    db.commit()
    return booking


@pytest.fixture
def provider(db):
    return make_user(db, display_name="Pat Provider", email="provider@example.com")


@pytest.fixture
def customer(db):
    return make_user(db, display_name="Casey Customer", email="customer@example.com")


@pytest.fixture
def service(db, provider):
    return make_service(db, provider)


@pytest.fixture
def policies(db):
    from bookme.domain.cancellations.defaults import seed_default_policies

    seed_default_policies(db)
    return {p.reason_key: p for p in db.query(models.CancellationPolicy).all()}


@pytest.fixture
def factory(db):
    """Row builders bound to the test session"""
    from types import SimpleNamespace

    return SimpleNamespace(
        user=lambda **kw: make_user(db, **kw),
        service=lambda provider, **kw: make_service(db, provider, **kw),
        booking=lambda service, customer, **kw: make_booking(db, service, customer, **kw),
    )
