# pixelgrid/entities.py
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )


class Cell(Base):
    """
    Current state of one occupied grid cell. Absent row == unclaimed.
    Prices are integer cents.
    """
    __tablename__ = "cell"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    x: Mapped[int] = mapped_column(Integer, nullable=False)
    y: Mapped[int] = mapped_column(Integer, nullable=False)

    color: Mapped[str] = mapped_column(String(32), nullable=False)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    link: Mapped[str | None] = mapped_column(Text)

    is_protected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    protection_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    # gateway reference that produced the current state
    settlement_ref: Mapped[str | None] = mapped_column(String(255), index=True)

    __table_args__ = (
        UniqueConstraint("x", "y", name="uq_cell_xy"),
        Index("ix_cell_owner_price", "owner_id", "price"),
    )

    def __repr__(self):
        return f"<Cell ({self.x},{self.y}) {self.color} {self.price} owner={self.owner_id}>"


class HistoryEntry(Base, TimestampMixin):
    """
    Snapshot of a cell taken right before a settlement overwrote it.
    When the cell was unclaimed before the transition, the snapshot columns are NULL.
    """
    __tablename__ = "cell_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    x: Mapped[int] = mapped_column(Integer, nullable=False)
    y: Mapped[int] = mapped_column(Integer, nullable=False)

    color: Mapped[str | None] = mapped_column(String(32))
    price: Mapped[int | None] = mapped_column(BigInteger)
    owner_id: Mapped[str | None] = mapped_column(String(255))
    owner_name: Mapped[str | None] = mapped_column(String(255))
    link: Mapped[str | None] = mapped_column(Text)
    is_protected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    protection_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    previous_settlement_ref: Mapped[str | None] = mapped_column(String(255))

    # settlement that caused the transition away from this snapshot
    settlement_ref: Mapped[str] = mapped_column(String(255), nullable=False)

    __table_args__ = (
        Index("ix_cell_history_xy", "x", "y"),
        Index("ix_cell_history_ref", "settlement_ref", "x", "y"),
    )


class BulkSession(Base, TimestampMixin):
    __tablename__ = "bulk_session"

    session_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: uuid4().hex,
    )
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    # total charge computed at quote time
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    proposals: Mapped[list["BulkProposal"]] = relationship(
        back_populates="session",
        order_by="BulkProposal.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class BulkProposal(Base):
    __tablename__ = "bulk_proposal"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("bulk_session.session_id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    x: Mapped[int] = mapped_column(Integer, nullable=False)
    y: Mapped[int] = mapped_column(Integer, nullable=False)
    color: Mapped[str] = mapped_column(String(32), nullable=False)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expected_prior_price: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    surcharge: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    wants_protection: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    link: Mapped[str | None] = mapped_column(Text)

    session: Mapped[BulkSession] = relationship(back_populates="proposals")

    __table_args__ = (
        UniqueConstraint("session_id", "x", "y", name="uq_bulk_proposal_xy"),
        Index("ix_bulk_proposal_session", "session_id"),
    )


class ReconciliationCase(Base, TimestampMixin):
    """
    A succeeded charge that could not be turned into ownership.
    """
    __tablename__ = "reconciliation_case"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    settlement_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    x: Mapped[int | None] = mapped_column(Integer)
    y: Mapped[int | None] = mapped_column(Integer)
    owner_id: Mapped[str | None] = mapped_column(String(255))

    # what the buyer was charged for this cell (or the whole event)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[str | None] = mapped_column(Text)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="OPEN",  # OPEN, RESOLVED
    )

    __table_args__ = (
        Index("ix_reconciliation_case_ref", "settlement_ref", "x", "y"),
        Index("ix_reconciliation_case_status", "status"),
    )
