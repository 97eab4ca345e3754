"""creditledger/core/ledger.py — Ledger Store.

Append-only credit transactions plus the cached per-tenant balance.

Design:
    - The ledger is the source of truth; ``tenants.credits`` is a materialized
      view written only here, in the same DB transaction as the row insert.
    - Per-tenant serialization has two layers:
        1. an in-process ``threading.Lock`` per tenant (fails fast after
           ``tenant_lock_timeout_seconds``),
        2. a guarded ``UPDATE tenants SET credits = credits - :amt
           WHERE id = :id AND credits >= :amt``. Under PostgreSQL READ COMMITTED
           the row write lock serializes writers across processes and the WHERE
           clause is re-checked on the newest row version; SQLite serializes
           writers on its database lock.
    - Different tenants never share a lock.
    - Any SQLAlchemy error inside a unit of work rolls back both the row and
      the balance change and surfaces as ``LedgerUnavailableError``.

Usage:
    ledger = LedgerStore(SessionLocal)
    tx_id = ledger.append(7, 100, "debit", "Chat completion", ChatUsage(...))

    with ledger.tenant_scope(7) as scope:      # one atomic unit of work
        scope.append(5000, "credit", "Credit purchase")
        scope.tenant.plan = "pro"
"""

from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterator, Optional

import structlog
from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from creditledger.core.errors import (
    InvalidAmountError,
    InvalidTenantError,
    LedgerUnavailableError,
    OverdraftError,
    TenantConflictError,
    TenantNotFoundError,
)
from creditledger.core.metadata import coerce_metadata, dump_metadata
from creditledger.core.models import CreditTransaction, Tenant, utcnow

logger = structlog.get_logger()


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


# ── Value objects ──────────────────────────────────────────────────────────────

def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from the store."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_storage(value: datetime) -> datetime:
    """Naive UTC, the format timestamps are persisted in."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class TransactionRecord(BaseModel):
    """Read-only snapshot of a ledger row."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    tenant_id: int
    amount: int
    type: TransactionType
    description: str
    metadata: dict[str, Any] = {}
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def from_row(cls, row: CreditTransaction) -> "TransactionRecord":
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            amount=row.amount,
            type=row.type,
            description=row.description or "",
            metadata=row.metadata_dict,
            created_at=row.created_at,
        )

    @property
    def signed_amount(self) -> int:
        return self.amount if self.type is TransactionType.CREDIT else -self.amount


class TenantSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    slug: str
    name: str
    credits: int
    monthly_credit_limit: int
    plan: str
    stripe_customer_id: Optional[str] = None
    updated_at: Optional[datetime] = None


class HistoryFilter(BaseModel):
    type: Optional[TransactionType] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None


class HistoryPage(BaseModel):
    items: list[TransactionRecord]
    next_cursor: Optional[int] = None


class BalanceCheck(BaseModel):
    tenant_id: int
    cached: int
    computed: int

    @property
    def consistent(self) -> bool:
        return self.cached == self.computed


# ── Validation (before any I/O) ─────────────────────────────────────────────────

def validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(f"amount must be a positive integer, got {amount!r}")
    if amount <= 0:
        raise InvalidAmountError(f"amount must be a positive integer, got {amount}")
    return amount


def validate_tenant_id(tenant_id: Any) -> int:
    if isinstance(tenant_id, bool) or not isinstance(tenant_id, int) or tenant_id <= 0:
        raise InvalidTenantError(f"malformed tenant reference: {tenant_id!r}")
    return tenant_id


# ── Per-tenant locks ───────────────────────────────────────────────────────────

class TenantLockRegistry:
    """One lock per tenant id, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, tenant_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(tenant_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[tenant_id] = lock
            return lock


# ── Unit of work ───────────────────────────────────────────────────────────────

class TenantLedgerScope:
    """A single DB transaction holding the tenant's lock.

    Everything done through the scope commits or rolls back together.
    """

    def __init__(self, store: "LedgerStore", session: Session, tenant: Tenant) -> None:
        self._store = store
        self.session = session
        self.tenant = tenant

    @property
    def tenant_id(self) -> int:
        return self.tenant.id

    @property
    def balance(self) -> int:
        return self.session.execute(
            select(Tenant.credits).where(Tenant.id == self.tenant.id)
        ).scalar_one()

    def append(
        self,
        amount: int,
        type_: TransactionType | str,
        description: str,
        metadata: BaseModel | dict[str, Any] | None = None,
    ) -> int:
        tx_id = self._store._apply(self.session, self.tenant.id, amount, type_, description, metadata)
        self.session.expire(self.tenant, ["credits"])
        return tx_id


# ── Store ──────────────────────────────────────────────────────────────────────

class LedgerStore:
    """Exclusive writer of CreditTransaction rows and ``Tenant.credits``."""

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        lock_timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
        locks: TenantLockRegistry | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._lock_timeout = lock_timeout
        self._clock = clock
        self._locks = locks or TenantLockRegistry()

    def now(self) -> datetime:
        return as_utc(self._clock())

    # ── Writes ──────────────────────────────────────────────────────────────

    @contextmanager
    def tenant_scope(self, tenant_id: int) -> Iterator[TenantLedgerScope]:
        """Serialize a unit of work for one tenant. Commits on clean exit."""
        tenant_id = validate_tenant_id(tenant_id)
        lock = self._locks.get(tenant_id)
        if not lock.acquire(timeout=self._lock_timeout):
            logger.error("ledger.lock_timeout", tenant_id=tenant_id, timeout=self._lock_timeout)
            raise LedgerUnavailableError(f"Timed out waiting for ledger lock of tenant {tenant_id}")
        try:
            with structlog.contextvars.bound_contextvars(tenant_id=tenant_id):
                db = self._session_factory()
                try:
                    tenant = db.get(Tenant, tenant_id)
                    if tenant is None:
                        raise TenantNotFoundError(tenant_id)
                    yield TenantLedgerScope(self, db, tenant)
                    db.commit()
                except SQLAlchemyError as exc:
                    db.rollback()
                    logger.error("ledger.unit_of_work_failed", error=str(exc))
                    raise LedgerUnavailableError(str(exc)) from exc
                except Exception:
                    db.rollback()
                    raise
                finally:
                    db.close()
        finally:
            lock.release()

    def append(
        self,
        tenant_id: int,
        amount: int,
        type_: TransactionType | str,
        description: str,
        metadata: BaseModel | dict[str, Any] | None = None,
    ) -> int:
        """Append one transaction and move the cached balance with it.

        Raises OverdraftError (nothing written) if a debit exceeds the balance.
        """
        validate_amount(amount)
        TransactionType(type_)
        metadata = coerce_metadata(metadata)
        with self.tenant_scope(tenant_id) as scope:
            return scope.append(amount, type_, description, metadata)

    def _apply(
        self,
        db: Session,
        tenant_id: int,
        amount: int,
        type_: TransactionType | str,
        description: str,
        metadata: BaseModel | dict[str, Any] | None,
    ) -> int:
        amount = validate_amount(amount)
        tx_type = TransactionType(type_)
        metadata_json = json.dumps(dump_metadata(metadata), ensure_ascii=False)
        now = to_storage(self.now())

        if tx_type is TransactionType.DEBIT:
            stmt = (
                update(Tenant)
                .where(Tenant.id == tenant_id, Tenant.credits >= amount)
                .values(credits=Tenant.credits - amount, updated_at=now)
            )
        else:
            stmt = (
                update(Tenant)
                .where(Tenant.id == tenant_id)
                .values(credits=Tenant.credits + amount, updated_at=now)
            )
        result = db.execute(stmt.execution_options(synchronize_session=False))
        if result.rowcount != 1:
            available = db.execute(select(Tenant.credits).where(Tenant.id == tenant_id)).scalar_one_or_none()
            if available is None:
                raise TenantNotFoundError(tenant_id)
            logger.info("ledger.overdraft_prevented", tenant_id=tenant_id, amount=amount, balance=available)
            raise OverdraftError(tenant_id, amount, available)

        row = CreditTransaction(
            tenant_id=tenant_id,
            amount=amount,
            type=tx_type.value,
            description=description or "",
            metadata_json=metadata_json,
            created_at=now,
        )
        db.add(row)
        db.flush()
        logger.info("ledger.append", tenant_id=tenant_id, tx_id=row.id, type=tx_type.value, amount=amount)
        return row.id

    def create_tenant(
        self,
        slug: str,
        name: str,
        *,
        plan: str = "starter",
        monthly_credit_limit: int = 0,
        stripe_customer_id: str | None = None,
        opening_credits: int = 0,
    ) -> int:
        """Create a tenant. A non-zero opening balance is recorded as a credit row."""
        if opening_credits:
            validate_amount(opening_credits)
        now = to_storage(self.now())
        db = self._session_factory()
        try:
            tenant = Tenant(
                slug=slug,
                name=name,
                credits=0,
                plan=plan,
                monthly_credit_limit=monthly_credit_limit,
                stripe_customer_id=stripe_customer_id,
                created_at=now,
                updated_at=now,
            )
            db.add(tenant)
            db.flush()
            if opening_credits:
                self._apply(db, tenant.id, opening_credits, TransactionType.CREDIT, "Opening balance", None)
            db.commit()
            logger.info("ledger.tenant_created", tenant_id=tenant.id, slug=slug, opening_credits=opening_credits)
            return tenant.id
        except IntegrityError as exc:
            db.rollback()
            logger.warning("ledger.tenant_conflict", slug=slug, stripe_customer_id=stripe_customer_id)
            raise TenantConflictError(f"tenant slug or customer id already in use: {slug!r}") from exc
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("ledger.tenant_create_failed", slug=slug, error=str(exc))
            raise LedgerUnavailableError(str(exc)) from exc
        finally:
            db.close()

    # ── Reads ───────────────────────────────────────────────────────────────

    @contextmanager
    def _read(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            logger.error("ledger.read_failed", error=str(exc))
            raise LedgerUnavailableError(str(exc)) from exc
        finally:
            db.close()

    def get_tenant(self, tenant_id: int) -> TenantSnapshot:
        tenant_id = validate_tenant_id(tenant_id)
        with self._read() as db:
            tenant = db.get(Tenant, tenant_id)
            if tenant is None:
                raise TenantNotFoundError(tenant_id)
            return TenantSnapshot.model_validate(tenant)

    def find_tenant_id(self, *, tenant_id: Any = None, stripe_customer_id: str | None = None) -> int | None:
        """Resolve a tenant from a provider customer id or a raw id value. None if unknown."""
        with self._read() as db:
            if stripe_customer_id:
                found = db.execute(
                    select(Tenant.id).where(Tenant.stripe_customer_id == stripe_customer_id)
                ).scalar_one_or_none()
                if found is not None:
                    return found
            if tenant_id in (None, ""):
                return None
            try:
                candidate = int(tenant_id)
            except (TypeError, ValueError):
                return None
            return db.execute(select(Tenant.id).where(Tenant.id == candidate)).scalar_one_or_none()

    def current_balance(self, tenant_id: int) -> int:
        tenant_id = validate_tenant_id(tenant_id)
        with self._read() as db:
            balance = db.execute(select(Tenant.credits).where(Tenant.id == tenant_id)).scalar_one_or_none()
            if balance is None:
                raise TenantNotFoundError(tenant_id)
            return balance

    @staticmethod
    def _ledger_sum(db: Session, tenant_id: int) -> int:
        signed = case(
            (CreditTransaction.type == TransactionType.CREDIT.value, CreditTransaction.amount),
            else_=-CreditTransaction.amount,
        )
        total = db.execute(
            select(func.coalesce(func.sum(signed), 0)).where(CreditTransaction.tenant_id == tenant_id)
        ).scalar_one()
        return int(total)

    def recompute_balance(self, tenant_id: int) -> int:
        """Sum of credits minus sum of debits over the full history."""
        tenant_id = validate_tenant_id(tenant_id)
        with self._read() as db:
            return self._ledger_sum(db, tenant_id)

    def verify_balance(self, tenant_id: int) -> BalanceCheck:
        # Both reads run under the tenant lock, in one transaction.
        with self.tenant_scope(tenant_id) as scope:
            cached = scope.balance
            computed = self._ledger_sum(scope.session, scope.tenant_id)
        check = BalanceCheck(tenant_id=tenant_id, cached=cached, computed=computed)
        if not check.consistent:
            logger.error("ledger.balance_drift", tenant_id=tenant_id, cached=check.cached, computed=check.computed)
        return check

    def history(
        self,
        tenant_id: int,
        filters: HistoryFilter | None = None,
        *,
        cursor: int | None = None,
        limit: int = 50,
    ) -> HistoryPage:
        """Newest first. Pass ``next_cursor`` back in to continue."""
        tenant_id = validate_tenant_id(tenant_id)
        if limit <= 0:
            raise ValueError("limit must be positive")
        filters = filters or HistoryFilter()
        stmt = select(CreditTransaction).where(CreditTransaction.tenant_id == tenant_id)
        if filters.type is not None:
            stmt = stmt.where(CreditTransaction.type == filters.type.value)
        if filters.since is not None:
            stmt = stmt.where(CreditTransaction.created_at >= to_storage(filters.since))
        if filters.until is not None:
            stmt = stmt.where(CreditTransaction.created_at <= to_storage(filters.until))
        if cursor is not None:
            stmt = stmt.where(CreditTransaction.id < cursor)
        stmt = stmt.order_by(CreditTransaction.id.desc()).limit(limit + 1)

        with self._read() as db:
            rows = db.execute(stmt).scalars().all()
            items = [TransactionRecord.from_row(row) for row in rows[:limit]]
        next_cursor = items[-1].id if len(rows) > limit else None
        return HistoryPage(items=items, next_cursor=next_cursor)

    def transactions_between(
        self,
        tenant_id: int,
        start: datetime,
        end: datetime,
        *,
        type_: TransactionType | None = None,
        end_inclusive: bool = True,
    ) -> list[TransactionRecord]:
        """Transactions in the window, oldest first."""
        tenant_id = validate_tenant_id(tenant_id)
        upper = CreditTransaction.created_at <= to_storage(end) if end_inclusive \
            else CreditTransaction.created_at < to_storage(end)
        stmt = select(CreditTransaction).where(
            CreditTransaction.tenant_id == tenant_id,
            CreditTransaction.created_at >= to_storage(start),
            upper,
        )
        if type_ is not None:
            stmt = stmt.where(CreditTransaction.type == type_.value)
        stmt = stmt.order_by(CreditTransaction.created_at, CreditTransaction.id)
        with self._read() as db:
            return [TransactionRecord.from_row(row) for row in db.execute(stmt).scalars().all()]
