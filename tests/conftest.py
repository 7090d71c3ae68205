"""Shared fixtures: in-memory database, fake gateway, fixed clock."""

import json
from datetime import datetime, timedelta, timezone

import pytest
import stripe
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from pixelgrid.backend import Backend
from pixelgrid.broadcast import Broadcaster
from pixelgrid.entities import Base, Cell
from pixelgrid.gateway import Failed, PaymentIntent, Succeeded, decode_intent_event
from pixelgrid.settings import PricingConfig, create_session_factory


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingSubscriber:
    def __init__(self) -> None:
        self.messages: list[dict] = []

    def deliver(self, message: dict) -> None:
        self.messages.append(message)


class FakeGateway:
    """Issues intents in memory and builds the events the gateway would send."""

    def __init__(self) -> None:
        self.intents: dict[str, dict] = {}
        self._counter = 0

    def create_intent(self, amount: int, metadata: dict[str, str]) -> PaymentIntent:
        self._counter += 1
        intent_id = f"pi_test_{self._counter}"
        self.intents[intent_id] = {"amount": amount, "metadata": dict(metadata)}
        return PaymentIntent(id=intent_id, client_secret=f"{intent_id}_secret")

    def succeed(self, intent_id: str, amount: int | None = None) -> Succeeded:
        intent = self.intents[intent_id]
        return Succeeded(
            ref=intent_id,
            amount=intent["amount"] if amount is None else amount,
            metadata=dict(intent["metadata"]),
        )

    def fail(self, intent_id: str, reason: str = "card_declined", permanent: bool = False) -> Failed:
        intent = self.intents[intent_id]
        return Failed(ref=intent_id, reason=reason, metadata=dict(intent["metadata"]), permanent=permanent)

    def webhook_body(self, intent_id: str, event_type: str = "payment_intent.succeeded") -> bytes:
        intent = self.intents[intent_id]
        event = {
            "id": f"evt_{intent_id}",
            "type": event_type,
            "data": {
                "object": {
                    "id": intent_id,
                    "object": "payment_intent",
                    "amount": intent["amount"],
                    "amount_received": intent["amount"],
                    "status": "succeeded" if event_type.endswith("succeeded") else "requires_payment_method",
                    "metadata": intent["metadata"],
                }
            },
        }
        return json.dumps(event).encode("utf-8")

    def parse_event(self, payload: bytes, signature: str | None):
        if signature != "valid":
            raise stripe.SignatureVerificationError("No signatures found matching the expected signature", signature)
        return decode_intent_event(json.loads(payload))


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture
def config() -> PricingConfig:
    return PricingConfig(
        floor_price=100,
        price_increment=100,
        free_allocation_max=3,
        protection_window=timedelta(hours=24),
        grid_width=100,
        grid_height=100,
        max_bulk_cells=10,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def viewer() -> RecordingSubscriber:
    return RecordingSubscriber()


@pytest.fixture
def broadcaster(viewer) -> Broadcaster:
    broadcaster = Broadcaster()
    broadcaster.subscribe(viewer)
    return broadcaster


@pytest.fixture
def backend(session_factory, gateway, config, broadcaster, clock) -> Backend:
    return Backend(
        session_factory=session_factory,
        gateway=gateway,
        config=config,
        broadcaster=broadcaster,
        clock=clock,
    )


def seed_cell(
    session_factory,
    x: int,
    y: int,
    price: int,
    owner_id: str = "alice",
    protected_until: datetime | None = None,
    ref: str = "seed",
) -> None:
    session = session_factory()
    try:
        session.add(
            Cell(
                x=x,
                y=y,
                color="#000000",
                price=price,
                owner_id=owner_id,
                owner_name=owner_id.title(),
                is_protected=protected_until is not None,
                protection_expires_at=protected_until,
                last_updated=NOW,
                settlement_ref=f"{ref}_{x}_{y}",
            )
        )
        session.commit()
    finally:
        session.close()


@pytest.fixture
def seed(session_factory):
    def _seed(x: int, y: int, price: int, **kwargs) -> None:
        seed_cell(session_factory, x, y, price, **kwargs)

    return _seed
