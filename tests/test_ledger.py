"""
Unit tests for the wallet ledger.
"""
from decimal import Decimal

import pytest
from sqlalchemy import select

from resellhub.core.ledger import InsufficientBalanceError, LedgerError, WalletLedger
from resellhub.database.connection import Database
from resellhub.database.models import User, WalletTransaction, WalletTransactionType


class TestWalletLedger:
    """Test suite for WalletLedger."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_credit_updates_balance_and_appends_entry(
        self, database: Database, ledger: WalletLedger, seed
    ) -> None:
        """Test a credit mutates the balance and records before/after."""
        user = await seed.user()

        entry = await ledger.credit(user.id, Decimal("50000"), "DEP-1", "Deposit via QRIS")

        assert entry.amount == Decimal("50000")
        assert entry.balance_before == Decimal("0")
        assert entry.balance_after == Decimal("50000")
        assert entry.type == WalletTransactionType.DEPOSIT.value

        async with database.session() as session:
            stored = await session.get(User, user.id)
            assert stored.balance == Decimal("50000")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_debit_reduces_balance(self, ledger: WalletLedger, seed) -> None:
        """Test a debit records a negative entry."""
        user = await seed.user()
        await ledger.credit(user.id, "30000", "DEP-1", "Deposit via QRIS")

        entry = await ledger.debit(user.id, "12500", "INV-1", "Purchase INV-1")

        assert entry.amount == Decimal("-12500")
        assert entry.balance_after == Decimal("17500")
        assert entry.type == WalletTransactionType.PURCHASE.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_debit_insufficient_balance(
        self, database: Database, ledger: WalletLedger, seed
    ) -> None:
        """Test a debit below zero is refused and nothing is written."""
        user = await seed.user()
        await ledger.credit(user.id, "1000", "DEP-1", None)

        with pytest.raises(InsufficientBalanceError):
            await ledger.debit(user.id, "1000.01", "INV-1", None)

        async with database.session() as session:
            entries = (
                await session.execute(
                    select(WalletTransaction).where(WalletTransaction.user_id == user.id)
                )
            ).scalars().all()
            stored = await session.get(User, user.id)
        assert len(entries) == 1
        assert stored.balance == Decimal("1000")

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5", 0])
    async def test_non_positive_amount_rejected(self, ledger: WalletLedger, seed, amount) -> None:
        """Test zero and negative amounts are rejected."""
        user = await seed.user()

        with pytest.raises(LedgerError, match="must be positive"):
            await ledger.credit(user.id, amount, None, None)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_user(self, ledger: WalletLedger) -> None:
        """Test mutating an unknown user fails."""
        with pytest.raises(LedgerError, match="not found"):
            await ledger.credit(999, "100", None, None)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_joined_unit_of_work_rolls_back_together(
        self, database: Database, ledger: WalletLedger, seed
    ) -> None:
        """Test a credit inside a failing unit of work is rolled back."""
        user = await seed.user()

        with pytest.raises(RuntimeError):
            async with database.unit_of_work() as uow:
                await ledger.credit(user.id, "5000", "DEP-1", None, uow=uow)
                raise RuntimeError("abort")

        audit = await ledger.audit(user.id)
        assert audit.balance == Decimal("0.00")
        assert audit.transaction_count == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_audit_consistent(self, ledger: WalletLedger, seed) -> None:
        """Test the audit sums ledger entries to the stored balance."""
        user = await seed.user()
        await ledger.credit(user.id, "20000", "DEP-1", None)
        await ledger.credit(user.id, "5000.50", "DEP-2", None)
        await ledger.debit(user.id, "7000", "INV-1", None)

        audit = await ledger.audit(user.id)

        assert audit.consistent
        assert audit.balance == Decimal("18000.50")
        assert audit.ledger_total == Decimal("18000.50")
        assert audit.transaction_count == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_audit_detects_out_of_band_write(
        self, database: Database, ledger: WalletLedger, seed
    ) -> None:
        """Test a balance written outside the ledger is reported inconsistent."""
        user = await seed.user()
        await ledger.credit(user.id, "1000", "DEP-1", None)
        async with database.unit_of_work() as uow:
            stored = await uow.session.get(User, user.id)
            stored.balance = Decimal("9999")

        audit = await ledger.audit(user.id)

        assert not audit.consistent
        assert audit.ledger_total == Decimal("1000.00")
