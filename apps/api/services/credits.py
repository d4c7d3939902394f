"""Credit ledger: per-module quota checks, consumption and release.

Every operation bills the *effective* account of the acting user (a sub-account
is billed to its parent) and participates in the caller's transaction. The
ledger never commits or rolls back; callers persist the gated resource and the
credit change together so that either both land or neither does.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import logging
from typing import Any, Dict, Iterator, Optional

from fastapi import HTTPException
from sqlalchemy import case, func, text, update
from sqlalchemy.exc import DBAPIError, MultipleResultsFound
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.user import User
from models.user_credit import UserCredit

logger = logging.getLogger(__name__)

CREDIT_MODULES = ("user", "email", "task")

# lock_not_available, query_canceled (lock/statement timeouts), deadlock_detected on PostgreSQL
_TRANSIENT_SQLSTATES = {"55P03", "57014", "40P01"}
# SQLite reports lock contention only through the message text
_TRANSIENT_SQLITE_MESSAGES = ("database is locked", "database table is locked")


class CreditLedgerUnavailableError(RuntimeError):
    """The ledger row could not be locked or read. Transient; not a quota decision."""


class CreditLedgerIntegrityError(RuntimeError):
    """Ledger or delegation data violates an invariant."""


@dataclass
class CreditBalance:
    module: str
    granted: int = 0
    used: int = 0
    unlimited: bool = False

    @property
    def available(self) -> int:
        return max(0, self.granted - self.used)

    def as_dict(self) -> Dict[str, int]:
        if self.unlimited:
            return {"credits": -1, "used": 0, "available": -1}
        return {"credits": self.granted, "used": self.used, "available": self.available}


def _validate_module(module: str) -> None:
    if module not in CREDIT_MODULES:
        raise ValueError(f"Unknown credit module: {module!r}")


def _validate_amount(amount: int) -> int:
    value = int(amount)
    if value < 1:
        raise ValueError("amount must be a positive integer")
    return value


def _is_transient(exc: DBAPIError) -> bool:
    sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if sqlstate:
        return sqlstate in _TRANSIENT_SQLSTATES
    message = str(exc.orig).lower()
    return any(marker in message for marker in _TRANSIENT_SQLITE_MESSAGES)


@contextmanager
def _ledger_storage(operation: str, module: str) -> Iterator[None]:
    try:
        yield
    except DBAPIError as exc:
        if not _is_transient(exc):
            raise
        logger.warning("credit_ledger_unavailable op=%s module=%s error=%s", operation, module, exc)
        raise CreditLedgerUnavailableError(
            f"Credit ledger unavailable during {operation} for module {module}. Retry the request."
        ) from exc


async def _load_user(user_id: str, db: AsyncSession) -> Optional[User]:
    result = await db.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _select_credit(
    user_id: str,
    module: str,
    db: AsyncSession,
    *,
    for_update: bool = False,
) -> Optional[UserCredit]:
    stmt = (
        select(UserCredit)
        .where(UserCredit.user_id == user_id, UserCredit.module == module)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    try:
        return result.scalar_one_or_none()
    except MultipleResultsFound as exc:
        raise CreditLedgerIntegrityError(
            f"Multiple credit rows found for user {user_id} module {module}."
        ) from exc


async def _apply_lock_timeout(db: AsyncSession) -> None:
    if db.get_bind().dialect.name != "postgresql":
        return
    timeout_ms = max(int(settings.CREDIT_LOCK_TIMEOUT_MS), 0)
    if timeout_ms:
        await db.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))


async def resolve_effective_user(user: User, db: AsyncSession) -> User:
    """Return the account that is billed for `user`'s consumption.

    Super admins and root accounts bill themselves. Accounts created directly by
    a super admin also bill themselves; any other sub-account bills its parent.
    Delegation is a single hop.
    """
    if user.is_super_admin or not user.parent_id:
        return user

    parent = await _load_user(user.parent_id, db)
    if parent is None or parent.is_super_admin:
        return user

    if parent.parent_id:
        grandparent = await _load_user(parent.parent_id, db)
        if grandparent is not None and not grandparent.is_super_admin:
            raise CreditLedgerIntegrityError(
                f"User {user.id} delegates through {parent.id} to {grandparent.id}; "
                "billing delegation must be a single hop."
            )
    return parent


async def is_unlimited(user: User, db: AsyncSession) -> bool:
    effective = await resolve_effective_user(user, db)
    return effective.is_super_admin


async def has_enough_credits(user: User, module: str, db: AsyncSession, amount: int = 1) -> bool:
    """Read-only quota check against current committed state."""
    _validate_module(module)
    required = _validate_amount(amount)
    with _ledger_storage("check", module):
        effective = await resolve_effective_user(user, db)
        if effective.is_super_admin:
            return True
        credit = await _select_credit(effective.id, module, db)
    if credit is None:
        return False
    return credit.has_enough(required)


async def consume_credits(user: User, module: str, db: AsyncSession, amount: int = 1) -> bool:
    """Atomically take `amount` units of `module` quota inside the caller's transaction.

    Returns False when the billing account lacks quota; nothing is mutated in
    that case. The row stays locked until the caller commits or rolls back.
    """
    _validate_module(module)
    required = _validate_amount(amount)
    with _ledger_storage("consume", module):
        effective = await resolve_effective_user(user, db)
        if effective.is_super_admin:
            logger.debug(
                "credit_consume_bypassed user=%s effective=%s module=%s amount=%s",
                user.id,
                effective.id,
                module,
                required,
            )
            return True

        await _apply_lock_timeout(db)
        credit = await _select_credit(effective.id, module, db, for_update=True)
        if credit is None:
            logger.warning(
                "credit_consume_failed reason=no_ledger_row user=%s effective=%s module=%s amount=%s",
                user.id,
                effective.id,
                module,
                required,
            )
            return False

        if not credit.has_enough(required):
            logger.warning(
                "credit_consume_failed reason=insufficient user=%s effective=%s module=%s "
                "amount=%s available=%s granted=%s used=%s",
                user.id,
                effective.id,
                module,
                required,
                credit.available,
                credit.credits,
                credit.used,
            )
            return False

        used_before = int(credit.used or 0)
        # Conditional increment keeps the check and the write in one statement
        # on stores that ignore FOR UPDATE.
        result = await db.execute(
            update(UserCredit)
            .where(
                UserCredit.id == credit.id,
                UserCredit.credits - UserCredit.used >= required,
            )
            .values(used=UserCredit.used + required, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "credit_consume_failed reason=concurrent_update user=%s effective=%s module=%s amount=%s",
                user.id,
                effective.id,
                module,
                required,
            )
            return False

        await db.refresh(credit)

    logger.info(
        "credit_consumed user=%s effective=%s module=%s amount=%s used=%s->%s granted=%s available=%s",
        user.id,
        effective.id,
        module,
        required,
        used_before,
        credit.used,
        credit.credits,
        credit.available,
    )
    return True


async def release_credits(user: User, module: str, db: AsyncSession, amount: int = 1) -> None:
    """Refund `amount` units to the billing account, never dropping `used` below zero."""
    _validate_module(module)
    refund = _validate_amount(amount)
    with _ledger_storage("release", module):
        effective = await resolve_effective_user(user, db)
        if effective.is_super_admin:
            return

        result = await db.execute(
            update(UserCredit)
            .where(UserCredit.user_id == effective.id, UserCredit.module == module)
            .values(
                used=case((UserCredit.used > refund, UserCredit.used - refund), else_=0),
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )

    if result.rowcount == 0:
        logger.info(
            "credit_release_skipped reason=no_ledger_row user=%s effective=%s module=%s amount=%s",
            user.id,
            effective.id,
            module,
            refund,
        )
        return
    logger.info(
        "credit_released user=%s effective=%s module=%s amount=%s",
        user.id,
        effective.id,
        module,
        refund,
    )


async def get_credit_balance(user: User, module: str, db: AsyncSession) -> CreditBalance:
    _validate_module(module)
    with _ledger_storage("balance", module):
        effective = await resolve_effective_user(user, db)
        if effective.is_super_admin:
            return CreditBalance(module=module, unlimited=True)
        credit = await _select_credit(effective.id, module, db)
    if credit is None:
        return CreditBalance(module=module)
    return CreditBalance(module=module, granted=int(credit.credits or 0), used=int(credit.used or 0))


async def get_credit_stats(user: User, db: AsyncSession) -> Dict[str, Any]:
    effective = await resolve_effective_user(user, db)
    modules = {}
    for module in CREDIT_MODULES:
        balance = await get_credit_balance(user, module, db)
        modules[module] = balance.as_dict()
    return {
        "user_id": user.id,
        "effective_user_id": effective.id,
        "unlimited": effective.is_super_admin,
        "modules": modules,
    }


async def set_credit_allocation(
    user_id: str,
    module: str,
    credits: int,
    db: AsyncSession,
    *,
    reset_used: bool = False,
) -> UserCredit:
    """Provision or adjust the granted quota of one account. Keeps `used` unless asked."""
    _validate_module(module)
    granted = int(credits)
    if granted < 0:
        raise ValueError("credits must be zero or greater")

    with _ledger_storage("allocate", module):
        credit = await _select_credit(user_id, module, db, for_update=True)
        if credit is None:
            credit = UserCredit(user_id=user_id, module=module, credits=granted, used=0)
            db.add(credit)
        else:
            credit.credits = granted
            if reset_used:
                credit.used = 0
        await db.flush()

    logger.info(
        "credit_allocated user=%s module=%s credits=%s used=%s",
        user_id,
        module,
        credit.credits,
        credit.used,
    )
    return credit


async def reject_insufficient_credits(
    user: User,
    module: str,
    db: AsyncSession,
    *,
    message: str,
    required: int = 1,
) -> None:
    """Roll back the caller's transaction and raise a 403 with post-rollback figures."""
    await db.rollback()
    await db.refresh(user)
    balance = await get_credit_balance(user, module, db)
    raise HTTPException(
        status_code=403,
        detail={
            "message": message,
            "error": (
                f"You have {balance.available} {module} credit(s) available "
                f"(out of {balance.granted} total), but need {required}."
            ),
            "module": module,
            "available": balance.available,
            "granted": balance.granted,
            "required": required,
        },
    )
