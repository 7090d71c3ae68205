# pixelgrid/ownership_store.py

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pixelgrid.entities import Cell
from pixelgrid.errors import StaleWrite


SNAPSHOT_FIELDS = (
    "color",
    "price",
    "owner_id",
    "owner_name",
    "link",
    "is_protected",
    "protection_expires_at",
    "last_updated",
    "settlement_ref",
)


def snapshot_cell(cell: Cell | None) -> dict | None:
    if cell is None:
        return None
    return {name: getattr(cell, name) for name in SNAPSHOT_FIELDS}


def get_cell(session: Session, x: int, y: int, *, for_update: bool = False) -> Cell | None:
    stmt = select(Cell).where(Cell.x == x, Cell.y == y)
    if for_update:
        stmt = stmt.with_for_update()
    return session.execute(stmt).scalar_one_or_none()


def list_all(session: Session) -> list[Cell]:
    return list(session.execute(select(Cell).order_by(Cell.y, Cell.x)).scalars())


def count_free_cells(session: Session, owner_id: str) -> int:
    stmt = select(func.count()).select_from(Cell).where(Cell.owner_id == owner_id, Cell.price == 0)
    return int(session.execute(stmt).scalar_one())


def upsert_cell(
    session: Session,
    *,
    x: int,
    y: int,
    color: str,
    price: int,
    owner_id: str,
    owner_name: str,
    link: str | None,
    is_protected: bool,
    protection_expires_at: datetime | None,
    last_updated: datetime,
    settlement_ref: str,
    expected_prior_price: int,
) -> tuple[dict | None, Cell]:
    """
    Compare-and-set write of one cell, inside the caller's transaction.

    An absent cell counts as price 0. The write applies only when the stored
    price equals `expected_prior_price` and the new price is strictly above it
    (any price is accepted for a brand-new cell). Otherwise raises StaleWrite
    and the caller must roll back.

    Returns (snapshot of the prior state or None, the stored cell).
    """
    current = get_cell(session, x, y, for_update=True)

    if current is None:
        if expected_prior_price != 0:
            raise StaleWrite(f"Cell ({x},{y}) expected at {expected_prior_price} but is unclaimed")
        cell = Cell(
            x=x,
            y=y,
            color=color,
            price=price,
            owner_id=owner_id,
            owner_name=owner_name,
            link=link,
            is_protected=is_protected,
            protection_expires_at=protection_expires_at,
            last_updated=last_updated,
            settlement_ref=settlement_ref,
        )
        session.add(cell)
        try:
            session.flush()
        except IntegrityError as exc:
            # another settlement created the row first
            raise StaleWrite(f"Cell ({x},{y}) was claimed concurrently") from exc
        return None, cell

    if current.price != expected_prior_price:
        raise StaleWrite(
            f"Cell ({x},{y}) moved from {expected_prior_price} to {current.price} since quote"
        )
    if price <= current.price:
        raise StaleWrite(f"Cell ({x},{y}) price {price} does not exceed stored {current.price}")

    prior = snapshot_cell(current)

    result = session.execute(
        update(Cell)
        .where(Cell.x == x, Cell.y == y, Cell.price == expected_prior_price)
        .values(
            color=color,
            price=price,
            owner_id=owner_id,
            owner_name=owner_name,
            link=link,
            is_protected=is_protected,
            protection_expires_at=protection_expires_at,
            last_updated=last_updated,
            settlement_ref=settlement_ref,
        )
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        raise StaleWrite(f"Cell ({x},{y}) changed during settlement")

    session.refresh(current)
    return prior, current
