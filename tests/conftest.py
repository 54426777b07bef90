from typing import Generator
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from portal import identity
from portal.auth import create_access_token
from portal.db import Base
from portal.errors import GatewayError
from portal.main import app, get_db, get_optional_gateway

VALID_SIGN = "valid-signature"


class FakeGateway:
    """Stands in for the Alipay adapter; a payload is authentic when signed with VALID_SIGN."""

    def __init__(self):
        self.fail_requests = False
        self.return_url = None
        self.precreate_calls = []
        self.redirect_calls = []

    def request_precreate_artifact(self, order_id, amount, subject, notify_url=None):
        if self.fail_requests:
            raise GatewayError("sandbox unavailable")
        self.precreate_calls.append((order_id, amount, subject, notify_url))
        return f"https://qr.alipay.com/{order_id}"

    def request_redirect_form(self, order_id, amount, subject, return_url=None, notify_url=None):
        if self.fail_requests:
            raise GatewayError("sandbox unavailable")
        self.redirect_calls.append((order_id, amount, subject, return_url, notify_url))
        return f'<form action="https://openapi.alipay.com/gateway.do"><input name="out_trade_no" value="{order_id}"/></form>'

    def verify_callback_signature(self, payload):
        return payload.get("sign") == VALID_SIGN


def notification(order_id, trade_status="TRADE_SUCCESS", trade_no="2024000000000001", sign=VALID_SIGN, **extra):
    payload = {
        "out_trade_no": order_id,
        "trade_status": trade_status,
        "trade_no": trade_no,
        "sign_type": "RSA2",
        "sign": sign,
    }
    payload.update(extra)
    return {k: v for k, v in payload.items() if v is not None}


@pytest.fixture(scope="function")
def db_session() -> Generator:
    # Use in-memory SQLite with a single connection
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def writes(db_session):
    """Records every INSERT/UPDATE/DELETE issued through the test engine."""
    statements = []

    def record(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith(("INSERT", "UPDATE", "DELETE")):
            statements.append(statement)

    engine = db_session.get_bind()
    event.listen(engine, "before_cursor_execute", record)
    yield statements
    event.remove(engine, "before_cursor_execute", record)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture(scope="function")
def client(db_session, gateway):
    # Override dependencies to use the same session and the fake gateway
    def override_get_db():
        try:
            yield db_session
        finally:
            pass
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_optional_gateway] = lambda: gateway
    from fastapi.testclient import TestClient
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def member(db_session):
    return identity.admin_create_user(db_session, "member@example.com", password="member-pw", username="member")


@pytest.fixture
def admin(db_session):
    return identity.admin_create_user(db_session, "ops@example.com", password="admin-pw", username="ops", role="admin")


def bearer(user):
    return {"Authorization": f"Bearer {create_access_token(user.id, user.profile.role)}"}
