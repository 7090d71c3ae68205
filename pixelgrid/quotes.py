# pixelgrid/quotes.py

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping
from uuid import uuid4

from sqlalchemy.orm import Session, sessionmaker

from pixelgrid import bulk_staging, ownership_store
from pixelgrid.entities import utcnow
from pixelgrid.errors import AmountMismatch, BulkTooLarge, InvalidBulkRequest
from pixelgrid.gateway import PaymentGateway, Succeeded
from pixelgrid.pricing import check_owner, free_allocation_remaining, validate_bid
from pixelgrid.settings import PricingConfig
from pixelgrid.settlement import CellClaim, SettlementEngine, SettlementReport

logger = logging.getLogger("pixelgrid_backend")


@dataclass
class Quote:
    amount: int
    client_secret: str | None = None
    payment_intent_id: str | None = None
    session_id: str | None = None
    # set when the quote was free and settled on the spot
    settlement: SettlementReport | None = None

    def to_dict(self) -> dict:
        return {
            "amount": self.amount,
            "clientSecret": self.client_secret,
            "paymentIntentId": self.payment_intent_id,
            "sessionId": self.session_id,
            "settlement": self.settlement.to_dict() if self.settlement else None,
        }


class QuoteService:
    """
    Validates bids and opens payment intents. Never writes to the ownership
    store, so quoting never reserves a cell.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        config: PricingConfig,
        gateway: PaymentGateway,
        engine: SettlementEngine,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.gateway = gateway
        self.engine = engine
        self.clock = clock

    def quote_single(
        self,
        *,
        x: int,
        y: int,
        color: str,
        price: int,
        owner_id: str | None,
        owner_name: str | None = "",
        wants_protection: bool = False,
        link: str | None = None,
    ) -> Quote:
        owner_id = check_owner(owner_id)
        now = self.clock()

        session: Session = self.session_factory()
        try:
            existing = ownership_store.get_cell(session, x, y)
            free_owned = ownership_store.count_free_cells(session, owner_id)
        finally:
            session.close()

        check = validate_bid(
            existing,
            x=x,
            y=y,
            price=price,
            wants_protection=wants_protection,
            free_remaining=free_allocation_remaining(free_owned, self.config),
            config=self.config,
            now=now,
        )
        claim = CellClaim(
            x=x,
            y=y,
            color=color,
            price=check.price,
            expected_prior_price=check.expected_prior_price,
            wants_protection=wants_protection,
            surcharge=check.surcharge,
            link=link,
        )
        metadata = {
            "kind": "single",
            "owner_id": owner_id,
            "owner_name": owner_name or "",
            **claim.to_metadata(),
        }

        if check.total == 0:
            return self._settle_free(metadata)

        intent = self.gateway.create_intent(check.total, metadata)
        logger.info("Quoted (%s,%s) at %d for %s (intent %s)", x, y, check.total, owner_id, intent.id)
        return Quote(amount=check.total, client_secret=intent.client_secret, payment_intent_id=intent.id)

    def quote_bulk(
        self,
        *,
        cells: list[Mapping[str, Any]],
        total_amount: int,
        owner_id: str | None,
        owner_name: str | None = "",
    ) -> Quote:
        owner_id = check_owner(owner_id)
        if not cells:
            raise InvalidBulkRequest("A bulk quote needs at least one cell")
        if len(cells) > self.config.max_bulk_cells:
            raise BulkTooLarge(f"At most {self.config.max_bulk_cells} cells per bulk quote")

        seen = set()
        for cell in cells:
            key = (int(cell["x"]), int(cell["y"]))
            if key in seen:
                raise InvalidBulkRequest(f"Cell {key} appears twice")
            seen.add(key)

        now = self.clock()
        checks = []
        session: Session = self.session_factory()
        try:
            free_remaining = free_allocation_remaining(
                ownership_store.count_free_cells(session, owner_id), self.config
            )
            for cell in cells:
                x, y = int(cell["x"]), int(cell["y"])
                check = validate_bid(
                    ownership_store.get_cell(session, x, y),
                    x=x,
                    y=y,
                    price=int(cell["price"]),
                    wants_protection=bool(cell.get("wants_protection", False)),
                    free_remaining=free_remaining,
                    config=self.config,
                    now=now,
                )
                if check.price == 0 and not check.is_override:
                    free_remaining -= 1
                checks.append(check)
        finally:
            session.close()

        computed = sum(check.total for check in checks)
        if int(total_amount) != computed:
            raise AmountMismatch(computed, int(total_amount))

        session_id = bulk_staging.stage_session(
            self.session_factory,
            owner_id=owner_id,
            owner_name=owner_name or "",
            checks=checks,
            colors=[str(cell["color"]) for cell in cells],
            links=[cell.get("link") or None for cell in cells],
            total_amount=computed,
        )
        metadata = {
            "kind": "bulk",
            "session_id": session_id,
            "owner_id": owner_id,
            "cell_count": str(len(checks)),
        }

        if computed == 0:
            quote = self._settle_free(metadata)
            quote.session_id = session_id
            return quote

        try:
            intent = self.gateway.create_intent(computed, metadata)
        except Exception:
            bulk_staging.delete_session(self.session_factory, session_id)
            raise

        logger.info("Bulk quote %s: %d cells at %d for %s", session_id, len(checks), computed, owner_id)
        return Quote(
            amount=computed,
            client_secret=intent.client_secret,
            payment_intent_id=intent.id,
            session_id=session_id,
        )

    def _settle_free(self, metadata: dict[str, str]) -> Quote:
        # nothing to charge: settle through the same path with a local reference
        ref = f"free_{uuid4().hex}"
        report = self.engine.settle(Succeeded(ref=ref, amount=0, metadata=metadata))
        return Quote(amount=0, settlement=report)
