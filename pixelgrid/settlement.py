# pixelgrid/settlement.py
"""
Settlement engine: turns terminal gateway events into ownership changes.

Every event walks Received -> Validated -> Applied -> Broadcasted, or stops at
Rejected / Duplicate. Same-cell races are settled by the compare-and-set in
ownership_store.upsert_cell, never by an in-process lock, so several service
instances can settle concurrently.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from pixelgrid import bulk_staging, history_log, ownership_store
from pixelgrid.broadcast import Broadcaster, cell_message
from pixelgrid.entities import Cell, utcnow
from pixelgrid.errors import (
    ActiveProtectionViolation,
    AmountMismatch,
    BidTooLow,
    DuplicateSettlement,
    InvalidGatewayEvent,
    SessionNotFound,
    StaleWrite,
)
from pixelgrid.gateway import Failed, GatewayEvent, Succeeded
from pixelgrid.idempotency_cache import SettledRefCache
from pixelgrid.pricing import (
    free_allocation_remaining,
    is_under_active_protection,
    minimum_bid,
    required_bid_under_protection,
)
from pixelgrid.reconciliation_recorder import has_case, record_reconciliation_case
from pixelgrid.settings import PricingConfig

logger = logging.getLogger("pixelgrid_backend")


class SettlementState(str, enum.Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    APPLIED = "applied"
    BROADCASTED = "broadcasted"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class CellClaim:
    x: int
    y: int
    color: str
    price: int
    expected_prior_price: int
    wants_protection: bool = False
    surcharge: int = 0
    link: str | None = None

    @property
    def total(self) -> int:
        return self.price + self.surcharge

    def to_metadata(self) -> dict[str, str]:
        # gateway metadata only carries strings
        metadata = {
            "x": str(self.x),
            "y": str(self.y),
            "color": self.color,
            "price": str(self.price),
            "expected_prior_price": str(self.expected_prior_price),
            "wants_protection": "true" if self.wants_protection else "false",
            "surcharge": str(self.surcharge),
        }
        if self.link:
            metadata["link"] = self.link
        return metadata

    @classmethod
    def from_metadata(cls, metadata: dict) -> "CellClaim":
        try:
            return cls(
                x=int(metadata["x"]),
                y=int(metadata["y"]),
                color=str(metadata["color"]),
                price=int(metadata["price"]),
                expected_prior_price=int(metadata.get("expected_prior_price", 0)),
                wants_protection=str(metadata.get("wants_protection", "false")).lower() == "true",
                surcharge=int(metadata.get("surcharge", 0)),
                link=metadata.get("link") or None,
            )
        except (KeyError, ValueError) as exc:
            raise InvalidGatewayEvent(f"Malformed single-cell metadata: {exc}") from exc

    @classmethod
    def from_proposal(cls, proposal) -> "CellClaim":
        return cls(
            x=proposal.x,
            y=proposal.y,
            color=proposal.color,
            price=proposal.price,
            expected_prior_price=proposal.expected_prior_price,
            wants_protection=proposal.wants_protection,
            surcharge=proposal.surcharge,
            link=proposal.link,
        )


@dataclass
class CellOutcome:
    x: int
    y: int
    state: SettlementState
    error: str | None = None
    message: str | None = None

    def to_dict(self) -> dict:
        return {
            "x": self.x,
            "y": self.y,
            "state": self.state.value,
            "error": self.error,
            "message": self.message,
        }


@dataclass
class SettlementReport:
    settlement_ref: str
    state: SettlementState
    outcomes: list[CellOutcome] = field(default_factory=list)
    error: str | None = None
    message: str | None = None

    @property
    def applied(self) -> list[CellOutcome]:
        return [o for o in self.outcomes if o.state in (SettlementState.APPLIED, SettlementState.BROADCASTED)]

    def to_dict(self) -> dict:
        return {
            "settlement_ref": self.settlement_ref,
            "state": self.state.value,
            "error": self.error,
            "message": self.message,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class SettlementEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        config: PricingConfig,
        broadcaster: Broadcaster,
        settled_refs: SettledRefCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.broadcaster = broadcaster
        self.settled_refs = settled_refs if settled_refs is not None else SettledRefCache()
        self.clock = clock

    # -----------------------
    # Entry point
    # -----------------------

    def settle(self, event: GatewayEvent) -> SettlementReport:
        ref = event.ref
        if ref in self.settled_refs:
            logger.debug("Settlement %s already processed in this process", ref)
            return SettlementReport(ref, SettlementState.DUPLICATE, error=DuplicateSettlement.code)

        kind = event.metadata.get("kind")

        if isinstance(event, Failed):
            return self._reject_failed(event, kind)

        if not isinstance(event, Succeeded):
            raise InvalidGatewayEvent(f"Unsupported gateway event {event!r}")

        if kind == "single":
            report = self._settle_single(event)
        elif kind == "bulk":
            report = self._settle_bulk(event)
        else:
            raise InvalidGatewayEvent(f"Unknown settlement kind {kind!r} on {ref}")

        self.settled_refs.add(ref)
        return report

    def _reject_failed(self, event: Failed, kind: str | None) -> SettlementReport:
        logger.warning("Payment %s did not succeed: %s", event.ref, event.reason)
        if kind == "bulk" and event.permanent and event.metadata.get("session_id"):
            bulk_staging.delete_session(self.session_factory, event.metadata["session_id"])
        return SettlementReport(
            event.ref,
            SettlementState.REJECTED,
            error="payment_not_succeeded",
            message=event.reason,
        )

    # -----------------------
    # Single cell
    # -----------------------

    def _settle_single(self, event: Succeeded) -> SettlementReport:
        metadata = event.metadata
        claim = CellClaim.from_metadata(metadata)
        owner_id = metadata.get("owner_id") or ""
        owner_name = metadata.get("owner_name") or ""
        if not owner_id:
            raise InvalidGatewayEvent(f"Settlement {event.ref} carries no owner")

        if event.amount != claim.total:
            outcome = self._reject_amount(event, claim.total, owner_id, x=claim.x, y=claim.y)
            return SettlementReport(event.ref, outcome.state, [outcome], error=outcome.error, message=outcome.message)

        outcome, cell = self._apply_claim(event.ref, owner_id, owner_name, claim)
        self._broadcast([(outcome, cell)])

        return SettlementReport(
            event.ref,
            outcome.state,
            [outcome],
            error=outcome.error,
            message=outcome.message,
        )

    def _reject_amount(
        self,
        event: Succeeded,
        expected: int,
        owner_id: str,
        x: int | None = None,
        y: int | None = None,
    ) -> CellOutcome:
        session: Session = self.session_factory()
        try:
            seen = has_case(session, event.ref, x, y)
        finally:
            session.close()
        if seen:
            return CellOutcome(x, y, SettlementState.DUPLICATE, error=DuplicateSettlement.code)

        err = AmountMismatch(expected, event.amount)
        record_reconciliation_case(
            self.session_factory,
            settlement_ref=event.ref,
            reason=err.code,
            amount=event.amount,
            message=err.message,
            owner_id=owner_id,
            x=x,
            y=y,
        )
        logger.error("Reconciliation needed for %s: %s", event.ref, err.message)
        return CellOutcome(x, y, SettlementState.REJECTED, error=err.code, message=err.message)

    # -----------------------
    # Bulk
    # -----------------------

    def _settle_bulk(self, event: Succeeded) -> SettlementReport:
        session_id = event.metadata.get("session_id")
        if not session_id:
            raise InvalidGatewayEvent(f"Bulk settlement {event.ref} carries no session id")

        bulk = bulk_staging.load_session(self.session_factory, session_id)
        if bulk is None:
            # consumed already, or never staged
            logger.debug("Bulk session %s not found for %s", session_id, event.ref)
            return SettlementReport(
                event.ref,
                SettlementState.DUPLICATE,
                error=SessionNotFound.code,
            )

        if event.amount != bulk.total_amount:
            outcome = self._reject_amount(event, bulk.total_amount, bulk.owner_id)
            bulk_staging.delete_session(self.session_factory, session_id)
            return SettlementReport(event.ref, outcome.state, [outcome], error=outcome.error, message=outcome.message)

        results = []
        for proposal in bulk.proposals:
            claim = CellClaim.from_proposal(proposal)
            results.append(self._apply_claim(event.ref, bulk.owner_id, bulk.owner_name, claim))

        bulk_staging.delete_session(self.session_factory, session_id)
        self._broadcast(results)

        outcomes = [outcome for outcome, _ in results]
        states = {o.state for o in outcomes}
        if SettlementState.BROADCASTED in states:
            state = SettlementState.BROADCASTED
        elif states and states <= {SettlementState.DUPLICATE}:
            state = SettlementState.DUPLICATE
        else:
            state = SettlementState.REJECTED

        logger.info(
            "Bulk settlement %s: %d applied, %d total",
            event.ref,
            sum(1 for o in outcomes if o.state == SettlementState.BROADCASTED),
            len(outcomes),
        )
        return SettlementReport(event.ref, state, outcomes)

    # -----------------------
    # Per-cell apply
    # -----------------------

    def _already_settled(self, session: Session, ref: str, x: int, y: int) -> bool:
        current = ownership_store.get_cell(session, x, y)
        if current is not None and current.settlement_ref == ref:
            return True
        return history_log.has_ref(session, ref, x, y) or has_case(session, ref, x, y)

    def _revalidate(self, session: Session, current: Cell | None, claim: CellClaim, owner_id: str, now: datetime) -> None:
        if is_under_active_protection(current, now):
            required = required_bid_under_protection(current, self.config)
            if claim.price < required:
                raise ActiveProtectionViolation(required)
            return

        if claim.price == 0:
            owned_free = ownership_store.count_free_cells(session, owner_id)
            if current is not None or free_allocation_remaining(owned_free, self.config) <= 0:
                raise BidTooLow(minimum_bid(current, self.config))

    def _apply_claim(
        self,
        ref: str,
        owner_id: str,
        owner_name: str,
        claim: CellClaim,
    ) -> tuple[CellOutcome, Cell | None]:
        now = self.clock()
        x, y = claim.x, claim.y
        session: Session = self.session_factory()
        try:
            with session.begin():
                if self._already_settled(session, ref, x, y):
                    logger.debug("Settlement %s already applied to (%s,%s)", ref, x, y)
                    return CellOutcome(x, y, SettlementState.DUPLICATE, error=DuplicateSettlement.code), None

                current = ownership_store.get_cell(session, x, y)
                self._revalidate(session, current, claim, owner_id, now)

                prior, cell = ownership_store.upsert_cell(
                    session,
                    x=x,
                    y=y,
                    color=claim.color,
                    price=claim.price,
                    owner_id=owner_id,
                    owner_name=owner_name,
                    link=claim.link,
                    is_protected=claim.wants_protection,
                    protection_expires_at=now + self.config.protection_window if claim.wants_protection else None,
                    last_updated=now,
                    settlement_ref=ref,
                    expected_prior_price=claim.expected_prior_price,
                )
                history_log.append(session, x=x, y=y, prior=prior, settlement_ref=ref, created_at=now)

            logger.info("Settlement %s applied (%s,%s) at %d for %s", ref, x, y, claim.price, owner_id)
            return CellOutcome(x, y, SettlementState.APPLIED), cell

        except (StaleWrite, BidTooLow) as e:
            return self._reject_claim(ref, owner_id, claim, e), None
        finally:
            session.close()

    def _reject_claim(self, ref: str, owner_id: str, claim: CellClaim, err) -> CellOutcome:
        x, y = claim.x, claim.y
        session: Session = self.session_factory()
        try:
            # a concurrent delivery of the same event may have won the race
            won_elsewhere = self._already_settled(session, ref, x, y)
        finally:
            session.close()
        if won_elsewhere:
            return CellOutcome(x, y, SettlementState.DUPLICATE, error=DuplicateSettlement.code)

        # the charge went through, so the loss is flagged instead of dropped
        record_reconciliation_case(
            self.session_factory,
            settlement_ref=ref,
            reason=err.code,
            amount=claim.total,
            message=err.message,
            owner_id=owner_id,
            x=x,
            y=y,
        )
        logger.warning("Settlement %s rejected for (%s,%s): %s", ref, x, y, err.message)
        logger.error("Reconciliation needed for %s at (%s,%s)", ref, x, y)
        return CellOutcome(x, y, SettlementState.REJECTED, error=err.code, message=err.message)

    # -----------------------
    # Fan-out
    # -----------------------

    def _broadcast(self, results: list[tuple[CellOutcome, Cell | None]]) -> None:
        for outcome, cell in results:
            if outcome.state != SettlementState.APPLIED or cell is None:
                continue
            self.broadcaster.publish(cell_message(cell))
            outcome.state = SettlementState.BROADCASTED
