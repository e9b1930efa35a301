"""
Unit tests for the credit ledger
"""

import pytest
from decimal import Decimal

from sqlalchemy import select

from paycycle.core.enums import CreditTransactionType
from paycycle.database.models import CreditTransaction
from paycycle.services.credit_service import CreditService, cents_to_money, to_money


def test_money_helpers():
    """Cents conversion and half-up rounding"""
    assert cents_to_money(999) == Decimal("9.99")
    assert cents_to_money(2000) == Decimal("20.00")
    assert to_money("10.005") == Decimal("10.01")
    assert to_money(3) == Decimal("3.00")


@pytest.mark.asyncio
async def test_running_balance_invariant(db_session, make_user):
    """Every settled row continues the running sum of the rows before it"""
    user = await make_user()

    await CreditService.add_credits(db_session, user.id, "20.00")
    await CreditService.add_credits(
        db_session, user.id, "5.50", transaction_type=CreditTransactionType.REFUND
    )
    spent = await CreditService.spend(db_session, user.id, "9.99", description="Order #1")
    reversed_ = await CreditService.reverse_credits(db_session, user.id, "1.00")

    assert spent.ok and reversed_.ok
    assert await CreditService.get_balance(db_session, user.id) == Decimal("14.51")
    assert await CreditService.audit_ledger(db_session, user.id) == []

    history = await CreditService.get_history(db_session, user.id)
    assert len(history) == 4
    for row in history:
        assert row.balance_after == row.balance_before + row.amount


@pytest.mark.asyncio
async def test_amount_sign_follows_type(db_session, make_user):
    """Credits are non-negative, debits are stored as negative amounts"""
    user = await make_user()
    await CreditService.add_credits(db_session, user.id, "10.00")
    result = await CreditService.spend(db_session, user.id, "4.00")

    assert result.transaction.type == CreditTransactionType.PURCHASE.value
    assert result.transaction.amount == Decimal("-4.00")

    with pytest.raises(ValueError):
        await CreditService.add_credits(
            db_session, user.id, "1.00", transaction_type=CreditTransactionType.PURCHASE
        )
    with pytest.raises(ValueError):
        await CreditService.spend(db_session, user.id, "0")


@pytest.mark.asyncio
async def test_spend_insufficient_balance_writes_nothing(db_session, make_user):
    """A low balance is a result, not an exception, and leaves no row"""
    user = await make_user()
    await CreditService.add_credits(db_session, user.id, "5.00")

    result = await CreditService.spend(db_session, user.id, "9.99")

    assert result.ok is False
    assert result.reason == "insufficient_balance"
    assert result.balance == Decimal("5.00")

    rows = (await db_session.execute(
        select(CreditTransaction).where(CreditTransaction.user_id == user.id)
    )).scalars().all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_spend_idempotency_key(db_session, make_user):
    """The same idempotency key debits once"""
    user = await make_user()
    await CreditService.add_credits(db_session, user.id, "20.00")

    first = await CreditService.spend(db_session, user.id, "9.99", idempotency_key="renewal:1:x")
    second = await CreditService.spend(db_session, user.id, "9.99", idempotency_key="renewal:1:x")

    assert first.ok and not first.duplicate
    assert second.ok and second.duplicate
    assert second.transaction.id == first.transaction.id
    assert await CreditService.get_balance(db_session, user.id) == Decimal("10.01")


@pytest.mark.asyncio
async def test_unsettled_intent_rows_excluded(db_session, make_user, make_topup):
    """Pending crypto deposits do not count towards the balance or the audit"""
    user = await make_user()
    await CreditService.add_credits(db_session, user.id, "3.00")
    await make_topup(user.id, "np-intent", amount="50.00")

    assert await CreditService.get_balance(db_session, user.id) == Decimal("3.00")
    assert await CreditService.audit_ledger(db_session, user.id) == []

    settled = await CreditService.get_history(db_session, user.id, settled_only=True)
    assert [row.amount for row in settled] == [Decimal("3.00")]


@pytest.mark.asyncio
async def test_audit_detects_broken_row(db_session, make_user):
    """audit_ledger reports a row whose balance does not continue the sum"""
    user = await make_user()
    await CreditService.add_credits(db_session, user.id, "10.00")
    row = await CreditService.add_credits(db_session, user.id, "5.00")

    row.balance_before = Decimal("11.00")
    row.balance_after = Decimal("16.00")
    await db_session.commit()

    violations = await CreditService.audit_ledger(db_session, user.id)
    assert len(violations) == 1
    assert f"row {row.id}" in violations[0]
