"""Pytest fixtures for payment-service tests."""

import os
import time
from datetime import datetime, timedelta, timezone

# Must be set before the service modules are imported.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("TOSS_SECRET_KEY", "test_sk_123")

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from payment_service import models
from payment_service.db import Base, get_db, get_session_factory
from payment_service.gateway import TossPaymentsClient
from payment_service.main import app, get_gateway


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


class GatewayStub:
    """Records gateway calls and replays canned responses per path."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.responses: dict[str, tuple[int, dict]] = {}
        self.error: Exception | None = None

    def respond(self, path: str, status: int, body: dict) -> None:
        self.responses[path] = (status, body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        status, body = self.responses.get(request.url.path, (200, {}))
        return httpx.Response(status, json=body)

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def gateway_stub():
    return GatewayStub()


@pytest.fixture
def gateway(gateway_stub):
    http = httpx.AsyncClient(transport=httpx.MockTransport(gateway_stub.handler))
    return TossPaymentsClient(http, "test_sk_123", "https://api.toss.test")


@pytest.fixture
def client(session_factory, gateway):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_token(uid: str, ttl: int = 3600) -> str:
    now = int(time.time())
    return jwt.encode({"sub": uid, "iat": now, "exp": now + ttl}, "test-secret", algorithm="HS256")


@pytest.fixture
def auth():
    def _headers(uid: str = "user-1") -> dict:
        return {"Authorization": f"Bearer {make_token(uid)}"}

    return _headers


@pytest.fixture
def seed(session_factory):
    """Factory helpers that write fixture rows and commit them."""

    class Seeder:
        def product(self, product_id: str, units: list[tuple[str, str, int]], name: str = "") -> None:
            with session_factory() as s, s.begin():
                s.add(
                    models.Product(
                        id=product_id,
                        name=name or product_id,
                        options=[
                            models.ProductOption(id=uid, label=label, position=i, stock=stock)
                            for i, (uid, label, stock) in enumerate(units)
                        ],
                    )
                )

        def user(self, user_id: str, order_ids=(), cart=()) -> None:
            with session_factory() as s, s.begin():
                s.add(models.User(id=user_id, order_ids=list(order_ids)))
                for cart_id, product_id in cart:
                    s.add(models.CartItem(id=cart_id, user_id=user_id, product_id=product_id))

        def order(
            self,
            order_id: str,
            user_id: str = "user-1",
            *,
            status: str = models.PENDING,
            total: int = 20000,
            payment_key: str | None = None,
            payment_status: str | None = None,
            items: list[dict] = (),
            age: timedelta = timedelta(0),
        ) -> None:
            created = datetime.now(timezone.utc) - age
            with session_factory() as s, s.begin():
                s.add(
                    models.Order(
                        id=order_id,
                        user_id=user_id,
                        status=status,
                        total_amount=total,
                        payment_key=payment_key,
                        payment_status=payment_status,
                        created_at=created,
                        items=[models.OrderedProduct(**item) for item in items],
                    )
                )

        def payment(self, payment_key: str, user_id: str = "user-1", status: str = "DONE", order_id=None) -> None:
            with session_factory() as s, s.begin():
                s.add(models.Payment(payment_key=payment_key, user_id=user_id, status=status, order_id=order_id))

    return Seeder()
