# pixelgrid/backend.py

import logging

from sqlalchemy.orm import Session, sessionmaker

from pixelgrid import history_log, ownership_store
from pixelgrid.broadcast import Broadcaster, cell_message, iso_utc
from pixelgrid.entities import Base, utcnow
from pixelgrid.gateway import PaymentGateway, StripeGateway
from pixelgrid.idempotency_cache import SettledRefCache
from pixelgrid.pricing import check_owner, free_allocation_remaining
from pixelgrid.quotes import QuoteService
from pixelgrid.reconciliation_recorder import open_cases
from pixelgrid.settings import (
    CURRENCY,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
    PricingConfig,
    create_session_factory,
    get_db_engine,
    load_pricing_config,
)
from pixelgrid.settlement import SettlementEngine

logger = logging.getLogger("pixelgrid_backend")


def history_dict(entry) -> dict:
    return {
        "x": entry.x,
        "y": entry.y,
        "color": entry.color,
        "price": entry.price,
        "ownerId": entry.owner_id,
        "ownerName": entry.owner_name,
        "link": entry.link,
        "isProtected": bool(entry.is_protected),
        "protectionExpiresAt": iso_utc(entry.protection_expires_at),
        "lastUpdated": iso_utc(entry.last_updated),
        "previousSettlementRef": entry.previous_settlement_ref,
        "settlementRef": entry.settlement_ref,
        "createdAt": iso_utc(entry.created_at),
    }


def reconciliation_dict(case) -> dict:
    return {
        "id": case.id,
        "settlementRef": case.settlement_ref,
        "x": case.x,
        "y": case.y,
        "ownerId": case.owner_id,
        "amount": case.amount,
        "reason": case.reason,
        "message": case.message,
        "status": case.status,
        "createdAt": iso_utc(case.created_at),
    }


class Backend:
    """
    Wires the stores, the settlement engine, the quote path and the
    broadcaster around one session factory.
    """

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        gateway: PaymentGateway | None = None,
        config: PricingConfig | None = None,
        broadcaster: Broadcaster | None = None,
        clock=utcnow,
    ):
        if session_factory is None:
            engine = get_db_engine()
            Base.metadata.create_all(engine)
            session_factory = create_session_factory(engine)

        self.SessionFactory = session_factory
        self.config = config or load_pricing_config()
        self.gateway = gateway or StripeGateway(STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET, CURRENCY)
        self.broadcaster = broadcaster or Broadcaster()

        self.settlement = SettlementEngine(
            self.SessionFactory,
            self.config,
            self.broadcaster,
            settled_refs=SettledRefCache(),
            clock=clock,
        )
        self.quotes = QuoteService(
            self.SessionFactory,
            self.config,
            self.gateway,
            self.settlement,
            clock=clock,
        )

    # -----------------------
    # Read API
    # -----------------------

    def list_cells(self) -> list[dict]:
        session: Session = self.SessionFactory()
        try:
            return [cell_message(cell) for cell in ownership_store.list_all(session)]
        finally:
            session.close()

    def get_cell(self, x: int, y: int) -> dict | None:
        session: Session = self.SessionFactory()
        try:
            cell = ownership_store.get_cell(session, x, y)
            return cell_message(cell) if cell is not None else None
        finally:
            session.close()

    def cell_history(self, x: int, y: int) -> list[dict]:
        session: Session = self.SessionFactory()
        try:
            return [history_dict(entry) for entry in history_log.for_cell(session, x, y)]
        finally:
            session.close()

    def free_allocation(self, owner_id: str) -> int:
        owner_id = check_owner(owner_id)
        session: Session = self.SessionFactory()
        try:
            owned = ownership_store.count_free_cells(session, owner_id)
        finally:
            session.close()
        return free_allocation_remaining(owned, self.config)

    def open_reconciliation_cases(self) -> list[dict]:
        return [reconciliation_dict(case) for case in open_cases(self.SessionFactory)]
