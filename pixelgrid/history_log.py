# pixelgrid/history_log.py

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from pixelgrid.entities import HistoryEntry


def append(
    session: Session,
    *,
    x: int,
    y: int,
    prior: dict | None,
    settlement_ref: str,
    created_at: datetime,
) -> HistoryEntry:
    """
    Append the snapshot a settlement is about to overwrite. `prior` is None
    when the cell was unclaimed. Rows are never updated or deleted.
    """
    prior = prior or {}
    entry = HistoryEntry(
        x=x,
        y=y,
        color=prior.get("color"),
        price=prior.get("price"),
        owner_id=prior.get("owner_id"),
        owner_name=prior.get("owner_name"),
        link=prior.get("link"),
        is_protected=bool(prior.get("is_protected", False)),
        protection_expires_at=prior.get("protection_expires_at"),
        last_updated=prior.get("last_updated"),
        previous_settlement_ref=prior.get("settlement_ref"),
        settlement_ref=settlement_ref,
        created_at=created_at,
    )
    session.add(entry)
    return entry


def for_cell(session: Session, x: int, y: int) -> list[HistoryEntry]:
    """Newest first."""
    stmt = (
        select(HistoryEntry)
        .where(HistoryEntry.x == x, HistoryEntry.y == y)
        .order_by(HistoryEntry.created_at.desc(), HistoryEntry.id.desc())
    )
    return list(session.execute(stmt).scalars())


def has_ref(session: Session, settlement_ref: str, x: int | None = None, y: int | None = None) -> bool:
    stmt = select(HistoryEntry.id).where(HistoryEntry.settlement_ref == settlement_ref)
    if x is not None and y is not None:
        stmt = stmt.where(HistoryEntry.x == x, HistoryEntry.y == y)
    return session.execute(stmt.limit(1)).first() is not None
