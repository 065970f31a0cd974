"""
Database Models - SQLAlchemy ORM models with strict typing.

All columns use Mapped[] type annotations. Types are portable between
PostgreSQL and SQLite.
"""

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class User(Base):
    """
    ORM model for users table.

    Users are found-or-created by email and never deleted.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)

    # Payment processor customer reference
    stripe_customer_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )

    # Subscription access (BYOK) lasts until this instant
    subscription_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<User(id={self.id}, email={self.email})>"


class APIKey(Base):
    """
    ORM model for api_keys table.

    Only the SHA-256 of the raw key is stored. Keys are revoked, never deleted,
    so historical usage stays attributable.
    """

    __tablename__ = "api_keys"

    key_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    key_prefix: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="default")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_api_keys_user_id", "user_id"),
        Index("idx_api_keys_user_prefix", "user_id", "key_prefix"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<APIKey(prefix={self.key_prefix}, user_id={self.user_id}, "
            f"revoked={self.revoked})>"
        )


class CreditBalance(Base):
    """
    ORM model for credit_balances table.

    One row per user. balance_minor never goes below zero: every debit is a
    single conditional UPDATE, and the CHECK constraint backs that up.
    """

    __tablename__ = "credit_balances"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), primary_key=True
    )
    balance_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance_minor >= 0", name="ck_credit_balance_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<CreditBalance(user_id={self.user_id}, balance={self.balance_minor})>"


class UsageRecord(Base):
    """
    ORM model for usage_records table.

    Append-only journal of billed requests.
    """

    __tablename__ = "usage_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    model: Mapped[str] = mapped_column(String(255), nullable=False)
    input_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cost_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("cost_minor >= 0", name="ck_usage_cost_non_negative"),
        Index("idx_usage_records_user_id", "user_id"),
        Index("idx_usage_records_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UsageRecord(id={self.id}, user_id={self.user_id}, "
            f"model={self.model}, cost={self.cost_minor})>"
        )


class PaymentEvent(Base):
    """
    ORM model for payment_events table.

    Keyed by the payment processor's identifier. A row's existence means the
    payment has already been applied.
    """

    __tablename__ = "payment_events"

    payment_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    credits_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    subscription_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("kind IN ('credits', 'subscription')", name="ck_payment_events_kind"),
        Index("idx_payment_events_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PaymentEvent(payment_id={self.payment_id}, user_id={self.user_id}, "
            f"kind={self.kind})>"
        )
