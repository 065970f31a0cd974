"""
Credit Ledger - Durable per-user integer balances.

The debit is the money-safety primitive: one conditional UPDATE that checks and
subtracts in a single statement. There is never a read-then-write.
"""

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from gateway.db.models import CreditBalance, utc_now

logger = get_logger(__name__)


class LedgerService:
    """Service for credit balance reads, credits and debits."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_balance(self, user_id: int) -> int:
        """Current balance in minor units (0 when the user has no balance row)."""
        result = await self.session.execute(
            select(CreditBalance.balance_minor).where(CreditBalance.user_id == user_id)
        )
        balance = result.scalar_one_or_none()
        return balance if balance is not None else 0

    async def credit(self, user_id: int, amount: int, commit: bool = True) -> None:
        """
        Add credits to a user's balance, creating the row if needed.

        With commit=False the change joins the caller's transaction.

        Raises:
            ValueError: amount is not positive
        """
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive: {amount}")

        dialect = self.session.bind.dialect.name if self.session.bind else "postgresql"
        insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
        now = utc_now()

        stmt = insert(CreditBalance).values(user_id=user_id, balance_minor=amount, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[CreditBalance.user_id],
            set_={
                "balance_minor": CreditBalance.balance_minor + stmt.excluded.balance_minor,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        if commit:
            await self.session.commit()

        logger.info("credits_added", user_id=user_id, amount_minor=amount)

    async def debit(self, user_id: int, amount: int, commit: bool = True) -> bool:
        """
        Atomically subtract `amount` if the balance covers it.

        With commit=False the debit joins the caller's transaction, which
        must then commit or roll back.

        Returns:
            True if debited (or amount <= 0), False if funds were insufficient.
            On False nothing is mutated.
        """
        if amount <= 0:
            return True

        result = await self.session.execute(
            update(CreditBalance)
            .where(
                CreditBalance.user_id == user_id,
                CreditBalance.balance_minor >= amount,
            )
            .values(
                balance_minor=CreditBalance.balance_minor - amount,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if commit:
            await self.session.commit()

        debited = result.rowcount == 1
        if not debited:
            logger.warning("debit_rejected", user_id=user_id, amount_minor=amount)
        return debited
