"""
Wallet ledger: the only writer of ``User.balance``.

Every mutation reads the user row under a lock, computes the new balance,
writes it and appends an immutable ``WalletTransaction``, all inside one
unit of work. Idempotency is not handled here: callers gate on the status
of the aggregate that caused the mutation (deposit, order) before calling.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy import func, select

from resellhub.database.connection import Database, UnitOfWork
from resellhub.database.models import User, WalletTransaction, WalletTransactionType
from resellhub.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")


class LedgerError(Exception):
    """Raised when a balance mutation cannot be applied."""

    pass


class InsufficientBalanceError(LedgerError):
    """Raised when a debit would make the balance negative."""

    pass


@dataclass(frozen=True)
class LedgerAudit:
    """Comparison of a stored balance with the sum of its ledger entries."""

    user_id: int
    balance: Decimal
    ledger_total: Decimal
    transaction_count: int

    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_total


class WalletLedger:
    """Atomic balance mutation primitive with an append-only transaction log."""

    def __init__(self, database: Database):
        self.database = database

    @asynccontextmanager
    async def _joined(self, uow: Optional[UnitOfWork]) -> AsyncIterator[UnitOfWork]:
        """Join the caller's unit of work or open a dedicated one."""
        if uow is not None:
            yield uow
            return
        async with self.database.unit_of_work() as own:
            yield own

    async def _apply(
        self,
        uow: UnitOfWork,
        user_id: int,
        delta: Decimal,
        transaction_type: WalletTransactionType,
        reference_id: Optional[str],
        description: Optional[str],
    ) -> WalletTransaction:
        session = uow.session
        stmt = select(User).where(User.id == user_id).with_for_update()
        user = (await session.execute(stmt)).scalar_one_or_none()
        if user is None:
            raise LedgerError(f"User {user_id} not found")

        balance_before = Decimal(user.balance)
        balance_after = balance_before + delta
        if balance_after < 0:
            raise InsufficientBalanceError(
                f"Balance {balance_before} cannot cover {abs(delta)}"
            )

        user.balance = balance_after
        entry = WalletTransaction(
            user_id=user.id,
            type=transaction_type.value,
            amount=delta,
            balance_before=balance_before,
            balance_after=balance_after,
            reference_id=reference_id,
            description=description,
        )
        session.add(entry)
        await session.flush()

        logger.info(
            "wallet_balance_mutated",
            user_id=user_id,
            type=transaction_type.value,
            amount=str(delta),
            balance_before=str(balance_before),
            balance_after=str(balance_after),
            reference_id=reference_id,
        )
        metrics.record_wallet_mutation(transaction_type.value, float(delta))
        return entry

    @staticmethod
    def _positive(amount: Decimal | int | float | str) -> Decimal:
        value = Decimal(str(amount))
        if value <= 0:
            raise LedgerError(f"Amount must be positive, got {value}")
        return value

    async def credit(
        self,
        user_id: int,
        amount: Decimal | int | float | str,
        reference_id: Optional[str],
        description: Optional[str],
        *,
        transaction_type: WalletTransactionType = WalletTransactionType.DEPOSIT,
        uow: Optional[UnitOfWork] = None,
    ) -> WalletTransaction:
        """
        Add ``amount`` to the user's balance.

        Args:
            user_id: User to credit
            amount: Positive amount
            reference_id: Id of the deposit/order causing the credit
            description: Human readable description
            transaction_type: Ledger entry type
            uow: Caller's unit of work; a dedicated one is opened if omitted

        Returns:
            WalletTransaction: The appended ledger entry

        Raises:
            LedgerError: If the amount is not positive or the user is unknown
        """
        value = self._positive(amount)
        async with self._joined(uow) as active:
            return await self._apply(
                active, user_id, value, transaction_type, reference_id, description
            )

    async def debit(
        self,
        user_id: int,
        amount: Decimal | int | float | str,
        reference_id: Optional[str],
        description: Optional[str],
        *,
        transaction_type: WalletTransactionType = WalletTransactionType.PURCHASE,
        uow: Optional[UnitOfWork] = None,
    ) -> WalletTransaction:
        """
        Subtract ``amount`` from the user's balance.

        Raises:
            InsufficientBalanceError: If the balance cannot cover the amount
        """
        value = self._positive(amount)
        async with self._joined(uow) as active:
            return await self._apply(
                active, user_id, -value, transaction_type, reference_id, description
            )

    async def audit(self, user_id: int) -> LedgerAudit:
        """Compare a user's balance with the sum of their ledger entries."""
        async with self.database.session() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise LedgerError(f"User {user_id} not found")
            row = (
                await session.execute(
                    select(
                        func.coalesce(func.sum(WalletTransaction.amount), 0).label("total"),
                        func.count(WalletTransaction.id).label("count"),
                    ).where(WalletTransaction.user_id == user_id)
                )
            ).one()

        audit = LedgerAudit(
            user_id=user_id,
            balance=Decimal(str(user.balance)).quantize(CENT),
            ledger_total=Decimal(str(row.total)).quantize(CENT),
            transaction_count=int(row.count),
        )
        if not audit.consistent:
            logger.error(
                "wallet_ledger_inconsistent",
                user_id=user_id,
                balance=str(audit.balance),
                ledger_total=str(audit.ledger_total),
            )
        return audit
