"""Plan/Subscription State.

Keyed lookup price id → plan slug → monthly allowance. Plans are static
reference data; tenant plan fields are only mutated by the webhook processor.
"""

from __future__ import annotations

from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from creditledger.core.errors import LedgerUnavailableError
from creditledger.core.models import SubscriptionPlan

logger = structlog.get_logger()


PLAN_CATALOG = [
    {
        "name": "Starter",
        "slug": "starter",
        "monthly_credits": 1_000,
        "price_cents": 0,
        "stripe_price_id": None,
    },
    {
        "name": "Pro",
        "slug": "pro",
        "monthly_credits": 10_000,
        "price_cents": 2999,  # $29.99/month
        "stripe_price_id": "price_pro_monthly",
    },
    {
        "name": "Enterprise",
        "slug": "enterprise",
        "monthly_credits": 50_000,
        "price_cents": 9999,  # $99.99/month
        "stripe_price_id": "price_enterprise_monthly",
    },
]


class PlanInfo(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    slug: str
    name: str
    monthly_credits: int
    price_cents: int
    stripe_price_id: Optional[str] = None


class PlanCatalog:
    """Read-only view over ``subscription_plans``."""

    def __init__(self, session_factory: sessionmaker, default_plan_slug: str = "starter") -> None:
        self._session_factory = session_factory
        self._default_plan_slug = default_plan_slug

    @property
    def default_plan_slug(self) -> str:
        return self._default_plan_slug

    def _one(self, stmt) -> PlanInfo | None:
        db = self._session_factory()
        try:
            row = db.execute(stmt).scalars().first()
            return PlanInfo.model_validate(row) if row else None
        except SQLAlchemyError as exc:
            logger.error("plans.lookup_failed", error=str(exc))
            raise LedgerUnavailableError(str(exc)) from exc
        finally:
            db.close()

    def list_plans(self) -> list[PlanInfo]:
        db = self._session_factory()
        try:
            rows = db.execute(
                select(SubscriptionPlan)
                .where(SubscriptionPlan.is_active.is_(True))
                .order_by(SubscriptionPlan.price_cents, SubscriptionPlan.id)
            ).scalars().all()
            return [PlanInfo.model_validate(row) for row in rows]
        except SQLAlchemyError as exc:
            logger.error("plans.list_failed", error=str(exc))
            raise LedgerUnavailableError(str(exc)) from exc
        finally:
            db.close()

    def by_slug(self, slug: str | None) -> PlanInfo | None:
        if not slug:
            return None
        return self._one(
            select(SubscriptionPlan).where(SubscriptionPlan.slug == slug, SubscriptionPlan.is_active.is_(True))
        )

    def by_price_id(self, price_id: str | None) -> PlanInfo | None:
        if not price_id:
            return None
        return self._one(
            select(SubscriptionPlan).where(
                SubscriptionPlan.stripe_price_id == price_id,
                SubscriptionPlan.is_active.is_(True),
            )
        )

    def default_plan(self) -> PlanInfo | None:
        """The configured fallback tier, else the cheapest active plan."""
        plan = self.by_slug(self._default_plan_slug)
        if plan:
            return plan
        plans = self.list_plans()
        if plans:
            logger.warning("plans.default_slug_missing", slug=self._default_plan_slug, fallback=plans[0].slug)
            return plans[0]
        return None

    def monthly_allowance(self, slug: str | None) -> int:
        plan = self.by_slug(slug)
        return plan.monthly_credits if plan else 0


def seed_plans(session_factory: sessionmaker) -> None:
    """Seed the standard plans if they don't exist yet. Called at startup."""
    db = session_factory()
    try:
        for data in PLAN_CATALOG:
            existing = db.execute(
                select(SubscriptionPlan).where(SubscriptionPlan.slug == data["slug"])
            ).scalars().first()
            if not existing:
                db.add(SubscriptionPlan(**data))
        db.commit()
        logger.info("plans.seeded", count=len(PLAN_CATALOG))
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("plans.seed_failed", error=str(exc))
    finally:
        db.close()
