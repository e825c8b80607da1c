import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_temp.db")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("STRIPE_CONNECT_CLIENT_ID", "ca_test")

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from salon_payments.auth import TenantContext
from salon_payments.database import Base, get_db
from salon_payments.main import app as fastapi_app
from salon_payments.models import Payment, PaymentSettings, Tenant
from salon_payments.payment_log import PaymentLogBuffer, PaymentLogger

engine = create_engine(os.environ["DATABASE_URL"], connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TENANT_A = "tenant-a"
TENANT_B = "tenant-b"


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def payment_logger():
    return PaymentLogger(PaymentLogBuffer())


@pytest.fixture
def ctx():
    return TenantContext(tenant_id=TENANT_A, user_id="user-1", role="owner")


@pytest.fixture
def tenants(db):
    db.add_all([Tenant(id=TENANT_A, name="Salong A"), Tenant(id=TENANT_B, name="Salong B")])
    db.commit()


@pytest.fixture
def connected(db, tenants):
    db.add(PaymentSettings(
        tenant_id=TENANT_A,
        stripe_connected_account_id="acct_a",
        stripe_account_status="connected",
        stripe_charges_enabled=True,
        card_enabled=True,
    ))
    db.commit()


def stripe_account(charges_enabled=True, details_submitted=True, currently_due=(), past_due=()):
    return SimpleNamespace(
        id="acct_a",
        charges_enabled=charges_enabled,
        payouts_enabled=charges_enabled,
        details_submitted=details_submitted,
        requirements=SimpleNamespace(
            currently_due=list(currently_due),
            eventually_due=[],
            past_due=list(past_due),
        ),
    )


def payment_intent(intent_id="pi_1", destination="acct_a"):
    return {"id": intent_id, "transfer_data": {"destination": destination}}


@pytest.fixture
def own_intents(mocker):
    """Every retrieved payment intent settles into tenant A's connected account."""
    return mocker.patch("stripe.PaymentIntent.retrieve", side_effect=lambda intent_id: payment_intent(intent_id))


def add_payment(db, tenant_id=TENANT_A, amount=10000, status="completed", method="cash",
                gateway_payment_id=None, order_id=None):
    payment = Payment(
        tenant_id=tenant_id,
        amount=amount,
        payment_method=method,
        status=status,
        gateway_payment_id=gateway_payment_id,
        order_id=order_id,
    )
    db.add(payment)
    db.commit()
    return payment


def auth_headers(tenant_id=TENANT_A, role="owner", sub="user-1"):
    claims = {"sub": sub, "role": role}
    if tenant_id:
        claims["tenant_id"] = tenant_id
    token = jwt.encode(claims, os.environ["JWT_SECRET"], algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client():
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.state.payment_logger = PaymentLogger(PaymentLogBuffer(), session_factory=TestingSessionLocal)
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()
