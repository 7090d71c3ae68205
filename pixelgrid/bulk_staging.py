# pixelgrid/bulk_staging.py

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from pixelgrid.entities import BulkProposal, BulkSession
from pixelgrid.pricing import BidCheck


def stage_session(
    session_factory: sessionmaker,
    *,
    owner_id: str,
    owner_name: str,
    checks: list[BidCheck],
    colors: list[str],
    links: list[str | None],
    total_amount: int,
) -> str:
    """
    Persist a bulk proposal set and return its session id.
    """
    session: Session = session_factory()
    try:
        bulk = BulkSession(owner_id=owner_id, owner_name=owner_name, total_amount=total_amount)
        for position, (check, color, link) in enumerate(zip(checks, colors, links)):
            bulk.proposals.append(
                BulkProposal(
                    position=position,
                    x=check.x,
                    y=check.y,
                    color=color,
                    price=check.price,
                    expected_prior_price=check.expected_prior_price,
                    wants_protection=check.wants_protection,
                    surcharge=check.surcharge,
                    link=link,
                )
            )
        session.add(bulk)
        session.commit()
        return bulk.session_id
    finally:
        session.close()


def load_session(session_factory: sessionmaker, session_id: str) -> BulkSession | None:
    session: Session = session_factory()
    try:
        stmt = select(BulkSession).where(BulkSession.session_id == str(session_id))
        bulk = session.execute(stmt).scalar_one_or_none()
        if bulk is not None:
            # touch the relationship so it survives the session closing
            list(bulk.proposals)
        return bulk
    finally:
        session.close()


def delete_session(session_factory: sessionmaker, session_id: str) -> bool:
    session: Session = session_factory()
    try:
        session.execute(delete(BulkProposal).where(BulkProposal.session_id == str(session_id)))
        result = session.execute(delete(BulkSession).where(BulkSession.session_id == str(session_id)))
        session.commit()
        return result.rowcount > 0
    finally:
        session.close()
