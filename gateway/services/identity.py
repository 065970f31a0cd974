"""
Identity & Key Store - Users, bearer keys and subscription state.

NO DICTIONARIES - All data uses typed models/dataclasses.
"""

import hashlib
import secrets
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from gateway.db.models import APIKey, CreditBalance, User
from gateway.models.domain import IssuedKey, KeyInfo, UserData

logger = get_logger(__name__)

KEY_PREFIX = "cgk_"
KEY_RANDOM_BYTES = 24  # 48 hex chars
DISPLAY_PREFIX_LENGTH = 20  # cgk_ + 16 hex chars (64 bits)


def hash_key(raw_key: str) -> str:
    """SHA-256 hex digest of a raw key. Only the digest is ever stored."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def display_prefix(raw_key: str) -> str:
    """Non-secret prefix used to identify a key in listings."""
    return raw_key[:DISPLAY_PREFIX_LENGTH] + "..."


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps (SQLite drops tzinfo)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def is_subscription_active(user: UserData, now: datetime | None = None) -> bool:
    """True while the user's subscription expiry lies in the future."""
    expires_at = as_utc(user.subscription_expires_at)
    if expires_at is None:
        return False
    return expires_at > (now or datetime.now(UTC))


def _user_to_domain(user: User) -> UserData:
    return UserData(
        user_id=user.id,
        email=user.email,
        stripe_customer_id=user.stripe_customer_id,
        subscription_expires_at=as_utc(user.subscription_expires_at),
        created_at=as_utc(user.created_at) or user.created_at,
    )


class IdentityService:
    """Service for users, API keys and subscription expiry."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ========================================================================
    # Users
    # ========================================================================

    async def find_or_create_user(self, email: str) -> UserData:
        """
        Find a user by email, creating it (with a zero balance row) if missing.

        Idempotent. A concurrent insert of the same email is resolved by
        re-reading the row that won.
        """
        email = email.strip().lower()
        existing = await self._find_user_by_email(email)
        if existing is not None:
            return _user_to_domain(existing)

        user = User(email=email)
        self.session.add(user)
        try:
            await self.session.flush()
            self.session.add(CreditBalance(user_id=user.id, balance_minor=0))
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            existing = await self._find_user_by_email(email)
            if existing is None:
                raise
            return _user_to_domain(existing)

        logger.info("user_created", user_id=user.id)
        return _user_to_domain(user)

    async def get_user(self, user_id: int) -> UserData | None:
        user = await self.session.get(User, user_id)
        return _user_to_domain(user) if user is not None else None

    async def get_user_by_customer(self, customer_id: str) -> UserData | None:
        """Look up a user by payment processor customer id."""
        result = await self.session.execute(
            select(User).where(User.stripe_customer_id == customer_id)
        )
        user = result.scalar_one_or_none()
        return _user_to_domain(user) if user is not None else None

    async def set_customer_id(self, user_id: int, customer_id: str, commit: bool = True) -> None:
        await self.session.execute(
            update(User).where(User.id == user_id).values(stripe_customer_id=customer_id)
        )
        if commit:
            await self.session.commit()

    async def extend_subscription(
        self, user_id: int, until: datetime, commit: bool = True
    ) -> datetime | None:
        """
        Move the subscription expiry forward to `until`.

        An expiry already later than `until` is kept. Returns the resulting
        expiry, or None if the user does not exist.
        """
        user = await self.session.get(User, user_id)
        if user is None:
            return None

        current = as_utc(user.subscription_expires_at)
        if current is None or current < until:
            user.subscription_expires_at = until
            current = until
        await self.session.flush()
        if commit:
            await self.session.commit()
        return current

    async def _find_user_by_email(self, email: str) -> User | None:
        result = await self.session.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    # ========================================================================
    # Keys
    # ========================================================================

    async def issue_key(self, user_id: int, name: str = "default") -> IssuedKey:
        """
        Issue a new key for a user.

        Returns:
            IssuedKey with the raw secret (shown once, never retrievable again)
        """
        raw_key = KEY_PREFIX + secrets.token_hex(KEY_RANDOM_BYTES)
        prefix = display_prefix(raw_key)

        self.session.add(
            APIKey(
                key_hash=hash_key(raw_key),
                key_prefix=prefix,
                user_id=user_id,
                name=name,
            )
        )
        await self.session.commit()

        logger.info("api_key_issued", user_id=user_id, prefix=prefix, name=name)
        return IssuedKey(raw_key=raw_key, prefix=prefix, name=name, user_id=user_id)

    async def resolve(self, raw_key: str) -> UserData | None:
        """Resolve a presented bearer secret to its user; revoked or malformed keys give None."""
        if not raw_key or not raw_key.startswith(KEY_PREFIX):
            return None

        result = await self.session.execute(
            select(User)
            .join(APIKey, APIKey.user_id == User.id)
            .where(APIKey.key_hash == hash_key(raw_key), APIKey.revoked.is_(False))
        )
        user = result.scalar_one_or_none()
        return _user_to_domain(user) if user is not None else None

    async def list_keys(self, user_id: int) -> list[KeyInfo]:
        """List a user's keys, newest first, revoked ones included."""
        result = await self.session.execute(
            select(APIKey)
            .where(APIKey.user_id == user_id)
            .order_by(APIKey.created_at.desc())
        )
        return [
            KeyInfo(
                prefix=key.key_prefix,
                name=key.name,
                created_at=as_utc(key.created_at) or key.created_at,
                revoked=key.revoked,
            )
            for key in result.scalars().all()
        ]

    async def revoke(self, user_id: int, prefix: str) -> bool:
        """Revoke the user's key(s) with this display prefix. True if any was revoked."""
        result = await self.session.execute(
            update(APIKey)
            .where(
                APIKey.user_id == user_id,
                APIKey.key_prefix == prefix,
                APIKey.revoked.is_(False),
            )
            .values(revoked=True)
        )
        await self.session.commit()

        revoked = bool(result.rowcount)
        if revoked:
            logger.info("api_key_revoked", user_id=user_id, prefix=prefix)
        return revoked
