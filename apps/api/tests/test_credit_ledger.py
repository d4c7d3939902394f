import asyncio
from unittest.mock import patch

import pytest
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.future import select

from _helpers import load_user, read_credit, seed_user
from models.user_credit import UserCredit
from services.credits import (
    CreditLedgerIntegrityError,
    CreditLedgerUnavailableError,
    consume_credits,
    get_credit_balance,
    get_credit_stats,
    has_enough_credits,
    release_credits,
    resolve_effective_user,
    set_credit_allocation,
)


def test_available_is_floored_at_zero():
    assert UserCredit(credits=100, used=30).available == 70
    assert UserCredit(credits=100, used=150).available == 0
    assert UserCredit(credits=100, used=50).has_enough(50)
    assert not UserCredit(credits=100, used=50).has_enough(51)


@pytest.mark.asyncio
async def test_consume_takes_last_unit_then_refuses(session_maker):
    await seed_user(session_maker, "owner", credits={"task": (10, 9)})

    async with session_maker() as session:
        owner = await load_user(session, "owner")
        assert await consume_credits(owner, "task", session) is True
        await session.commit()

    assert (await read_credit(session_maker, "owner", "task")).used == 10

    async with session_maker() as session:
        owner = await load_user(session, "owner")
        assert await consume_credits(owner, "task", session) is False
        await session.rollback()

    assert (await read_credit(session_maker, "owner", "task")).used == 10


@pytest.mark.asyncio
async def test_consume_without_ledger_row_is_refused(session_maker):
    await seed_user(session_maker, "fresh")

    async with session_maker() as session:
        fresh = await load_user(session, "fresh")
        assert await has_enough_credits(fresh, "email", session) is False
        assert await consume_credits(fresh, "email", session) is False
        await session.commit()

    assert await read_credit(session_maker, "fresh", "email") is None


@pytest.mark.asyncio
async def test_concurrent_consumers_never_overspend(session_maker):
    await seed_user(session_maker, "owner", credits={"task": (10, 9)})

    async def attempt():
        async with session_maker() as session:
            owner = await load_user(session, "owner")
            try:
                granted = await consume_credits(owner, "task", session)
            except CreditLedgerUnavailableError:
                await session.rollback()
                return "unavailable"
            await session.commit()
            return granted

    results = await asyncio.gather(attempt(), attempt())

    assert results.count(True) == 1
    assert all(result in (True, False, "unavailable") for result in results)
    assert (await read_credit(session_maker, "owner", "task")).used == 10


@pytest.mark.asyncio
async def test_sequential_consumers_stop_at_available_quota(session_maker):
    await seed_user(session_maker, "owner", credits={"email": (5, 2)})

    outcomes = []
    for _ in range(6):
        async with session_maker() as session:
            owner = await load_user(session, "owner")
            outcomes.append(await consume_credits(owner, "email", session))
            await session.commit()

    assert outcomes == [True, True, True, False, False, False]
    assert (await read_credit(session_maker, "owner", "email")).used == 5


@pytest.mark.asyncio
async def test_release_is_clamped_at_zero(session_maker):
    await seed_user(session_maker, "owner", credits={"task": (10, 3)})

    async with session_maker() as session:
        owner = await load_user(session, "owner")
        await release_credits(owner, "task", session, amount=5)
        await session.commit()

    assert (await read_credit(session_maker, "owner", "task")).used == 0


@pytest.mark.asyncio
async def test_release_refunds_partial_amount(session_maker):
    await seed_user(session_maker, "owner", credits={"task": (100, 50)})

    async with session_maker() as session:
        owner = await load_user(session, "owner")
        await release_credits(owner, "task", session, amount=20)
        await session.commit()

    credit = await read_credit(session_maker, "owner", "task")
    assert credit.used == 30
    assert credit.available == 70


@pytest.mark.asyncio
async def test_super_admin_bypasses_ledger_without_touching_rows(session_maker):
    await seed_user(session_maker, "root-admin", role="super_admin")

    async with session_maker() as session:
        admin = await load_user(session, "root-admin")
        assert await consume_credits(admin, "email", session, amount=1000) is True
        assert await has_enough_credits(admin, "email", session, amount=10**6) is True
        await release_credits(admin, "email", session, amount=3)
        await session.commit()

    assert await read_credit(session_maker, "root-admin", "email") is None


@pytest.mark.asyncio
async def test_rollback_discards_consumption(session_maker):
    await seed_user(session_maker, "owner", credits={"task": (10, 4)})

    async with session_maker() as session:
        owner = await load_user(session, "owner")
        assert await consume_credits(owner, "task", session) is True
        await session.rollback()

    assert (await read_credit(session_maker, "owner", "task")).used == 4


@pytest.mark.asyncio
async def test_sub_account_is_billed_to_parent(session_maker):
    await seed_user(session_maker, "parent-42", credits={"task": (10, 0)})
    await seed_user(session_maker, "child-99", parent_id="parent-42")

    async with session_maker() as session:
        child = await load_user(session, "child-99")
        assert await consume_credits(child, "task", session) is True
        await session.commit()

    assert (await read_credit(session_maker, "parent-42", "task")).used == 1
    assert await read_credit(session_maker, "child-99", "task") is None

    async with session_maker() as session:
        child = await load_user(session, "child-99")
        await release_credits(child, "task", session)
        await session.commit()

    assert (await read_credit(session_maker, "parent-42", "task")).used == 0


@pytest.mark.asyncio
async def test_account_created_by_super_admin_bills_itself(session_maker):
    await seed_user(session_maker, "root-admin", role="super_admin")
    await seed_user(session_maker, "customer", parent_id="root-admin", credits={"email": (2, 0)})

    async with session_maker() as session:
        customer = await load_user(session, "customer")
        effective = await resolve_effective_user(customer, session)
        assert effective.id == "customer"
        assert await consume_credits(customer, "email", session) is True
        await session.commit()

    assert (await read_credit(session_maker, "customer", "email")).used == 1


@pytest.mark.asyncio
async def test_delegation_chain_longer_than_one_hop_fails_loudly(session_maker):
    await seed_user(session_maker, "grandparent", credits={"task": (5, 0)})
    await seed_user(session_maker, "parent", parent_id="grandparent")
    await seed_user(session_maker, "child", parent_id="parent")

    async with session_maker() as session:
        child = await load_user(session, "child")
        with pytest.raises(CreditLedgerIntegrityError):
            await consume_credits(child, "task", session)


@pytest.mark.asyncio
async def test_has_enough_is_side_effect_free(session_maker):
    await seed_user(session_maker, "owner", credits={"task": (10, 9)})

    async with session_maker() as session:
        owner = await load_user(session, "owner")
        first = await has_enough_credits(owner, "task", session)
        second = await has_enough_credits(owner, "task", session)
        assert first is second is True
        assert await has_enough_credits(owner, "task", session, amount=2) is False

    assert (await read_credit(session_maker, "owner", "task")).used == 9


@pytest.mark.asyncio
async def test_lock_failure_surfaces_as_unavailable_not_insufficient(session_maker):
    await seed_user(session_maker, "owner", credits={"task": (10, 0)})

    async with session_maker() as session:
        owner = await load_user(session, "owner")
        with patch(
            "services.credits._select_credit",
            side_effect=OperationalError("SELECT ... FOR UPDATE", {}, Exception("database is locked")),
        ):
            with pytest.raises(CreditLedgerUnavailableError):
                await consume_credits(owner, "task", session)


class _PgLockTimeout(Exception):
    sqlstate = "55P03"


@pytest.mark.asyncio
async def test_postgres_lock_timeout_surfaces_as_unavailable(session_maker):
    await seed_user(session_maker, "owner", credits={"task": (10, 0)})

    async with session_maker() as session:
        owner = await load_user(session, "owner")
        with patch(
            "services.credits._select_credit",
            side_effect=DBAPIError("SELECT ... FOR UPDATE", {}, _PgLockTimeout("canceling statement due to lock timeout")),
        ):
            with pytest.raises(CreditLedgerUnavailableError):
                await consume_credits(owner, "task", session)


@pytest.mark.asyncio
async def test_schema_errors_are_not_reported_as_retryable(session_maker):
    await seed_user(session_maker, "owner", credits={"task": (10, 0)})

    async with session_maker() as session:
        owner = await load_user(session, "owner")
        with patch(
            "services.credits._select_credit",
            side_effect=OperationalError("SELECT ...", {}, Exception("no such table: user_credits")),
        ):
            with pytest.raises(OperationalError):
                await consume_credits(owner, "task", session)


@pytest.mark.asyncio
async def test_invalid_arguments_are_rejected(session_maker):
    await seed_user(session_maker, "owner", credits={"task": (10, 0)})

    async with session_maker() as session:
        owner = await load_user(session, "owner")
        with pytest.raises(ValueError):
            await consume_credits(owner, "invoices", session)
        with pytest.raises(ValueError):
            await consume_credits(owner, "task", session, amount=0)
        with pytest.raises(ValueError):
            await release_credits(owner, "task", session, amount=-2)


@pytest.mark.asyncio
async def test_allocation_keeps_usage_unless_reset(session_maker):
    await seed_user(session_maker, "owner", credits={"task": (10, 7)})

    async with session_maker() as session:
        await set_credit_allocation("owner", "task", 20, session)
        await set_credit_allocation("owner", "email", 3, session)
        await session.commit()

    task_credit = await read_credit(session_maker, "owner", "task")
    assert (task_credit.credits, task_credit.used) == (20, 7)
    email_credit = await read_credit(session_maker, "owner", "email")
    assert (email_credit.credits, email_credit.used) == (3, 0)

    async with session_maker() as session:
        await set_credit_allocation("owner", "task", 5, session, reset_used=True)
        await session.commit()
        rows = (await session.execute(select(UserCredit).where(UserCredit.user_id == "owner"))).scalars().all()

    assert len(rows) == 2
    assert (await read_credit(session_maker, "owner", "task")).used == 0


@pytest.mark.asyncio
async def test_stats_report_unlimited_and_missing_rows(session_maker):
    await seed_user(session_maker, "root-admin", role="super_admin")
    await seed_user(session_maker, "owner", credits={"task": (10, 4)})

    async with session_maker() as session:
        admin = await load_user(session, "root-admin")
        owner = await load_user(session, "owner")
        admin_stats = await get_credit_stats(admin, session)
        owner_stats = await get_credit_stats(owner, session)
        balance = await get_credit_balance(owner, "task", session)

    assert admin_stats["unlimited"] is True
    assert admin_stats["modules"]["email"] == {"credits": -1, "used": 0, "available": -1}
    assert owner_stats["modules"]["task"] == {"credits": 10, "used": 4, "available": 6}
    assert owner_stats["modules"]["user"] == {"credits": 0, "used": 0, "available": 0}
    assert (balance.granted, balance.used, balance.available) == (10, 4, 6)
