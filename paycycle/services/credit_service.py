# coding: utf-8
"""
Credit Ledger Service

Append-only, balance-tracked credit ledger.

Features:
- Every settled row carries balance_before/balance_after
- Sign of the amount fixed by the transaction type
- Idempotency keys for debits and credits
- Per-user serialization on PostgreSQL (advisory transaction lock)
- Ledger audit: running sum must match balance_after on every row
"""

from dataclasses import dataclass
from datetime import datetime, UTC
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paycycle.core.enums import CreditTransactionType
from paycycle.database.models import CreditTransaction

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Quantize anything numeric to cents"""
    if isinstance(value, Decimal):
        return value.quantize(CENT, rounding=ROUND_HALF_UP)
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def cents_to_money(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


@dataclass
class SpendResult:
    """Outcome of a debit: ok or insufficient_balance"""
    ok: bool
    balance: Decimal
    transaction: Optional[CreditTransaction] = None
    reason: Optional[str] = None
    duplicate: bool = False


class CreditService:
    """Service for the credit ledger"""

    @staticmethod
    async def lock_user_balance(session: AsyncSession, user_id: int) -> None:
        """
        Serialize balance computation for one user until the transaction ends

        No-op on databases without advisory locks (SQLite in tests).
        """
        if session.get_bind().dialect.name != "postgresql":
            return
        await session.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:lock_key))"),
            {"lock_key": f"credit_balance:{user_id}"},
        )

    @staticmethod
    async def get_balance(session: AsyncSession, user_id: int) -> Decimal:
        """
        Current balance: sum of all settled rows

        Unsettled intent rows (pending crypto deposits) are excluded.
        """
        stmt = select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.balance_after.is_not(None),
        )
        result = await session.execute(stmt)
        return to_money(result.scalar_one())

    @staticmethod
    async def get_by_idempotency_key(
        session: AsyncSession, idempotency_key: str
    ) -> Optional[CreditTransaction]:
        stmt = select(CreditTransaction).where(
            CreditTransaction.idempotency_key == idempotency_key
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def _append(
        session: AsyncSession,
        user_id: int,
        transaction_type: CreditTransactionType,
        amount: Decimal,
        balance_before: Decimal,
        description: Optional[str],
        metadata: Optional[Dict[str, Any]],
        idempotency_key: Optional[str],
    ) -> CreditTransaction:
        row = CreditTransaction(
            user_id=user_id,
            type=transaction_type.value,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_before + amount,
            description=description,
            extra_data=metadata or {},
            idempotency_key=idempotency_key,
            created_at=datetime.now(UTC),
        )
        session.add(row)
        await session.flush()
        return row

    @staticmethod
    async def add_credits(
        session: AsyncSession,
        user_id: int,
        amount: Any,
        transaction_type: CreditTransactionType = CreditTransactionType.BONUS,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        commit: bool = True,
    ) -> CreditTransaction:
        """
        Append a credit row (deposit, refund or bonus)

        Args:
            session: Database session
            user_id: User ID
            amount: Positive amount
            transaction_type: Credit type
            description: Human-readable description
            metadata: Additional metadata dict
            idempotency_key: Returns the existing row if already used
            commit: Commit here, or leave it to the caller

        Returns:
            The ledger row (existing one for a duplicate key)
        """
        value = to_money(amount)
        if not transaction_type.is_credit:
            raise ValueError(f"{transaction_type.value} is not a credit type")
        if value < ZERO:
            raise ValueError("Credit amount must be non-negative")

        if idempotency_key:
            existing = await CreditService.get_by_idempotency_key(session, idempotency_key)
            if existing:
                logger.debug(f"Credit {idempotency_key} already exists, skipping")
                return existing

        await CreditService.lock_user_balance(session, user_id)
        balance = await CreditService.get_balance(session, user_id)
        row = await CreditService._append(
            session, user_id, transaction_type, value, balance,
            description, metadata, idempotency_key,
        )
        if commit:
            await session.commit()

        logger.info(
            f"💰 Credited {value} to user {user_id} ({transaction_type.value}), "
            f"balance {balance} → {row.balance_after}"
        )
        return row

    @staticmethod
    async def _debit(
        session: AsyncSession,
        user_id: int,
        amount: Any,
        transaction_type: CreditTransactionType,
        description: Optional[str],
        metadata: Optional[Dict[str, Any]],
        idempotency_key: Optional[str],
        commit: bool,
    ) -> SpendResult:
        value = to_money(amount)
        if value <= ZERO:
            raise ValueError("Debit amount must be positive")

        if idempotency_key:
            existing = await CreditService.get_by_idempotency_key(session, idempotency_key)
            if existing:
                logger.debug(f"Debit {idempotency_key} already applied, skipping")
                return SpendResult(
                    ok=True,
                    balance=await CreditService.get_balance(session, user_id),
                    transaction=existing,
                    duplicate=True,
                )

        await CreditService.lock_user_balance(session, user_id)
        balance = await CreditService.get_balance(session, user_id)

        if balance < value:
            logger.info(
                f"Insufficient balance for user {user_id}: balance={balance}, requested={value}"
            )
            return SpendResult(ok=False, balance=balance, reason="insufficient_balance")

        try:
            async with session.begin_nested():
                row = await CreditService._append(
                    session, user_id, transaction_type, -value, balance,
                    description, metadata, idempotency_key,
                )
        except IntegrityError:
            # Another instance applied the same idempotency key first;
            # only the savepoint is rolled back
            if idempotency_key:
                existing = await CreditService.get_by_idempotency_key(session, idempotency_key)
                if existing:
                    return SpendResult(
                        ok=True,
                        balance=await CreditService.get_balance(session, user_id),
                        transaction=existing,
                        duplicate=True,
                    )
            raise

        if commit:
            await session.commit()

        logger.info(
            f"💸 Debited {value} from user {user_id} ({transaction_type.value}), "
            f"balance {balance} → {row.balance_after}"
        )
        return SpendResult(ok=True, balance=row.balance_after, transaction=row)

    @staticmethod
    async def spend(
        session: AsyncSession,
        user_id: int,
        amount: Any,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        commit: bool = True,
    ) -> SpendResult:
        """
        Spend credits (checkout and renewal debits)

        Returns:
            SpendResult(ok=True) with the new row, or ok=False with
            reason "insufficient_balance". Never raises for a low balance.
        """
        return await CreditService._debit(
            session, user_id, amount, CreditTransactionType.PURCHASE,
            description, metadata, idempotency_key, commit,
        )

    @staticmethod
    async def reverse_credits(
        session: AsyncSession,
        user_id: int,
        amount: Any,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        commit: bool = True,
    ) -> SpendResult:
        """Take back credits after a refund (refund_reversal row)"""
        return await CreditService._debit(
            session, user_id, amount, CreditTransactionType.REFUND_REVERSAL,
            description, metadata, idempotency_key, commit,
        )

    @staticmethod
    async def get_history(
        session: AsyncSession,
        user_id: int,
        limit: int = 50,
        settled_only: bool = False,
    ) -> List[CreditTransaction]:
        """Ledger rows for a user, newest first"""
        stmt = select(CreditTransaction).where(CreditTransaction.user_id == user_id)
        if settled_only:
            stmt = stmt.where(CreditTransaction.balance_after.is_not(None))
        stmt = stmt.order_by(
            CreditTransaction.created_at.desc(), CreditTransaction.id.desc()
        ).limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def audit_ledger(session: AsyncSession, user_id: int) -> List[str]:
        """
        Check the running-sum invariant for one user

        Settled rows ordered by (created_at, id) must satisfy
        balance_before == previous running sum and
        balance_after == balance_before + amount.

        Returns:
            Human-readable violations (empty when the ledger is sound)
        """
        stmt = (
            select(CreditTransaction)
            .where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.balance_after.is_not(None),
            )
            .order_by(CreditTransaction.created_at, CreditTransaction.id)
        )
        result = await session.execute(stmt)

        violations: List[str] = []
        running = ZERO
        for row in result.scalars().all():
            amount = to_money(row.amount)
            before = to_money(row.balance_before)
            after = to_money(row.balance_after)
            if before != running:
                violations.append(f"row {row.id}: balance_before {before} != running sum {running}")
            if after != before + amount:
                violations.append(f"row {row.id}: balance_after {after} != {before} + {amount}")
            is_credit = CreditTransactionType(row.type).is_credit
            if (is_credit and amount < ZERO) or (not is_credit and amount > ZERO):
                violations.append(f"row {row.id}: amount {amount} has wrong sign for {row.type}")
            running += amount

        if violations:
            logger.error(f"Ledger audit failed for user {user_id}: {len(violations)} violations")
        return violations
