"""Tests for unit-of-work and conflict retry helpers."""
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.database import is_lock_conflict, run_in_transaction, run_with_retry, unit_of_work
from usage_billing.exceptions import ConcurrencyConflict
from usage_billing.models.balance_transaction import TransactionType
from usage_billing.services.ledger_service import LedgerService


@pytest.mark.asyncio
async def test_unit_of_work_commits_on_success(db_session: AsyncSession, make_user) -> None:
    user = await make_user(balance="1")
    user_id = user.id

    async with unit_of_work(db_session):
        await LedgerService(db_session).credit(user_id, Decimal("2"), TransactionType.TOPUP, "Top-up")
    await db_session.rollback()

    assert await LedgerService(db_session).get_balance(user_id) == Decimal("3.00000")


@pytest.mark.asyncio
async def test_unit_of_work_rolls_back_on_error(db_session: AsyncSession, make_user) -> None:
    user = await make_user(balance="1")
    user_id = user.id

    with pytest.raises(RuntimeError):
        async with unit_of_work(db_session):
            await LedgerService(db_session).debit(user_id, Decimal("1"), TransactionType.DEPLOYMENT, "Deploy")
            raise RuntimeError("boom")

    assert await LedgerService(db_session).get_balance(user_id) == Decimal("1.00000")


@pytest.mark.asyncio
async def test_unit_of_work_maps_lock_errors_to_conflict(db_session: AsyncSession) -> None:
    with pytest.raises(ConcurrencyConflict):
        async with unit_of_work(db_session):
            raise OperationalError("UPDATE users", {}, Exception("database is locked"))


def test_lock_conflict_detection() -> None:
    assert is_lock_conflict(OperationalError("SELECT 1", {}, Exception("database table is locked")))
    assert not is_lock_conflict(OperationalError("SELECT 1", {}, Exception("no such table: users")))


@pytest.mark.asyncio
async def test_run_with_retry_retries_conflicts() -> None:
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConcurrencyConflict("row locked")
        return "done"

    assert await run_with_retry(flaky, attempts=3, backoff_seconds=0) == "done"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_run_with_retry_gives_up() -> None:
    async def always_locked():
        raise ConcurrencyConflict("row locked")

    with pytest.raises(ConcurrencyConflict):
        await run_with_retry(always_locked, attempts=2, backoff_seconds=0)


@pytest.mark.asyncio
async def test_run_in_transaction_replays_the_unit_after_a_lock_conflict(
    db_session: AsyncSession, make_user
) -> None:
    """The conflicting attempt is rolled back, so the credit lands exactly once."""
    user = await make_user(balance="1")
    user_id = user.id
    attempts = []

    async def top_up(amount: Decimal) -> int:
        attempts.append(amount)
        await LedgerService(db_session).credit(user_id, amount, TransactionType.TOPUP, "Top-up")
        if len(attempts) == 1:
            raise OperationalError("UPDATE users", {}, Exception("database is locked"))
        return len(attempts)

    assert await run_in_transaction(db_session, top_up, Decimal("2"), backoff_seconds=0) == 2
    await db_session.rollback()

    assert await LedgerService(db_session).get_balance(user_id) == Decimal("3.00000")


@pytest.mark.asyncio
async def test_run_in_transaction_does_not_retry_other_errors(db_session: AsyncSession, make_user) -> None:
    user = await make_user(balance="1")
    user_id = user.id
    attempts = []

    async def failing_debit() -> None:
        attempts.append(1)
        await LedgerService(db_session).debit(user_id, Decimal("1"), TransactionType.DEPLOYMENT, "Deploy")
        raise RuntimeError("downstream failure")

    with pytest.raises(RuntimeError):
        await run_in_transaction(db_session, failing_debit, backoff_seconds=0)

    assert len(attempts) == 1
    assert await LedgerService(db_session).get_balance(user_id) == Decimal("1.00000")
