"""
Pytest fixtures for the payments test suite.

Provides:
- A fresh SQLite file database per test with the real ORM models
- Robokassa settings with known passwords for signature vectors
- A fake gateway and a recording notification dispatcher
- Invoice factories
- An RSA key pair for signed ResultURL2 tokens
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("POLLER_ENABLED", "false")

from datetime import timedelta
from decimal import Decimal

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy.orm import sessionmaker

from app.config import RobokassaSettings
from app.database import Base, create_db_engine
from app.domain.payments.repository import InvoiceRepository
from app.domain.payments.state_machine import PaymentStateMachine
from app.models_invoice import Invoice
from app.services.fake_gateway import FakeRobokassaGateway
from app.services.notification_service import NotificationDispatcher, NotificationPublisher
from app.utils.clock import utcnow


class RecordingDispatcher(NotificationDispatcher):
    """Collects every notification instead of sending it"""

    def __init__(self, delivered: bool = True, fail: bool = False):
        self.events: list[tuple[str, str, dict]] = []
        self.delivered = delivered
        self.fail = fail

    async def notify(self, user_id, event_type, payload):
        self.events.append((user_id, event_type, payload))
        if self.fail:
            raise RuntimeError("socket closed")
        return self.delivered

    def of_type(self, event_type: str) -> list[tuple[str, str, dict]]:
        return [event for event in self.events if event[1] == event_type]


@pytest.fixture
def engine(tmp_path):
    db_engine = create_db_engine(f"sqlite:///{tmp_path / 'payments.db'}")
    Base.metadata.create_all(bind=db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def repository(db):
    return InvoiceRepository(db)


@pytest.fixture
def settings():
    return RobokassaSettings(
        merchant_login="waxhands",
        password_1="first-password",
        password_2="second-password",
        password_3="third-password",
        test_mode=True,
        timeout_seconds=2.0,
    )


@pytest.fixture
def gateway():
    return FakeRobokassaGateway()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def publisher(dispatcher):
    return NotificationPublisher(dispatcher)


@pytest.fixture
def machine(repository, publisher):
    return PaymentStateMachine(repository, publisher)


@pytest.fixture
def make_invoice(repository):
    """Create an invoice; paid=True walks it through pending -> paid like a real payment"""

    def _make(
        amount="750.00",
        participant_id="parent-1",
        workshop_in=timedelta(days=10),
        created_ago=timedelta(hours=1),
        gateway_invoice=True,
        paid=False,
        operation_id=None,
        op_key=None,
        line_items=None,
    ) -> Invoice:
        invoice = repository.create(
            participant_id=participant_id,
            participant_name="Маша",
            master_class_id="mc-42",
            workshop_date=utcnow() + workshop_in,
            amount=Decimal(amount),
            description="Восковые ручки",
            line_items=line_items
            if line_items is not None
            else [{"name": "Восковая ручка", "quantity": 1, "cost": amount, "tax": "none"}],
            created_at=utcnow() - created_ago,
        )
        if gateway_invoice:
            repository.assign_gateway_invoice_id(invoice.id)
        if paid:
            invoice = repository.get(invoice.id)
            repository.compare_and_set_status(
                invoice.id,
                "pending",
                "paid",
                {
                    "operation_id": operation_id or str(invoice.gateway_invoice_id or "manual"),
                    "payment_method": "BankCard",
                    "paid_at": utcnow(),
                    "op_key": op_key,
                },
            )
        return repository.get(invoice.id)

    return _make


@pytest.fixture(scope="session")
def jws_keys():
    """RSA key pair standing in for the Robokassa JWS certificate: (private_pem, public_pem)"""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = (
        private_key.public_key()
        .public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
        .decode("ascii")
    )
    return private_pem, public_pem
