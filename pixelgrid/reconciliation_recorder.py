# pixelgrid/reconciliation_recorder.py

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from pixelgrid.entities import ReconciliationCase


def record_reconciliation_case(
    session_factory: sessionmaker,
    *,
    settlement_ref: str,
    reason: str,
    amount: int,
    message: str | None = None,
    owner_id: str | None = None,
    x: int | None = None,
    y: int | None = None,
) -> str:
    """
    Create a ReconciliationCase row in state OPEN and return its id.
    """
    session: Session = session_factory()
    try:
        case = ReconciliationCase(
            settlement_ref=settlement_ref,
            reason=reason,
            amount=amount,
            message=message,
            owner_id=owner_id,
            x=x,
            y=y,
            status="OPEN",
        )
        session.add(case)
        session.commit()
        return case.id
    finally:
        session.close()


def has_case(session: Session, settlement_ref: str, x: int | None = None, y: int | None = None) -> bool:
    stmt = select(ReconciliationCase.id).where(ReconciliationCase.settlement_ref == settlement_ref)
    if x is not None and y is not None:
        stmt = stmt.where(ReconciliationCase.x == x, ReconciliationCase.y == y)
    return session.execute(stmt.limit(1)).first() is not None


def open_cases(session_factory: sessionmaker) -> list[ReconciliationCase]:
    session: Session = session_factory()
    try:
        stmt = (
            select(ReconciliationCase)
            .where(ReconciliationCase.status == "OPEN")
            .order_by(ReconciliationCase.created_at.asc())
        )
        return list(session.execute(stmt).scalars())
    finally:
        session.close()
