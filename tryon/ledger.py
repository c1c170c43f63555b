"""Per-store usage metering with a lazy monthly rollover."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shared.config import Settings
from shared.models import UNLIMITED, ProductSetting, UsageLedger, as_utc, utcnow

from .errors import LimitExceeded

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Plan:
    key: str
    name: str
    credits: int
    product_limit: int


PLANS: Dict[str, Plan] = {
    "FREE": Plan("FREE", "Trial", 50, 3),
    "SIDE_HUSSLE": Plan("SIDE_HUSSLE", "Side Hussle", 500, 100),
    "BUSINESS": Plan("BUSINESS", "Business", 10000, UNLIMITED),
    "ALL_IN": Plan("ALL_IN", "All In", UNLIMITED, UNLIMITED),
}


def plan_for_name(name: str) -> Optional[Plan]:
    """Match a billing subscription name to a plan, ignoring case and padding."""

    wanted = name.strip().lower()
    return next((plan for plan in PLANS.values() if plan.name.lower() == wanted), None)


@dataclass
class ProductCapacity:
    exceeded: bool
    limit: int
    current: int


class UsageLedgerService:
    """Reads and mutates :class:`UsageLedger` rows.

    The rollover is evaluated on every read path instead of by a scheduler:
    once ``reset_period_days`` have elapsed since ``last_reset_at`` the counter
    drops to zero and the period restarts from now.  ``-1`` limits mean
    unlimited and are checked before any comparison.
    """

    def __init__(
        self,
        session: Session,
        *,
        default_credits_limit: int = 10,
        default_product_limit: int = 3,
        reset_period_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session = session
        self.default_credits_limit = default_credits_limit
        self.default_product_limit = default_product_limit
        self.reset_period = timedelta(days=reset_period_days)
        self.clock = clock

    @classmethod
    def from_settings(cls, session: Session, settings: Settings) -> "UsageLedgerService":
        return cls(
            session,
            default_credits_limit=settings.default_credits_limit,
            default_product_limit=settings.default_product_limit,
            reset_period_days=settings.reset_period_days,
        )

    def _find(self, store: str) -> Optional[UsageLedger]:
        return self.session.scalars(select(UsageLedger).where(UsageLedger.store == store)).first()

    def ensure(self, store: str) -> UsageLedger:
        ledger = self._find(store)
        if ledger is not None:
            return ledger
        now = self.clock()
        ledger = UsageLedger(
            id=uuid.uuid4(),
            store=store,
            credits_used=0,
            credits_limit=self.default_credits_limit,
            product_limit=self.default_product_limit,
            is_active=True,
            has_custom_limits=False,
            last_reset_at=now,
            created_at=now,
            updated_at=now,
        )
        self.session.add(ledger)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = self._find(store)
            if existing is None:
                raise
            return existing
        logger.info("Created usage ledger for %s", store)
        return ledger

    def check_and_reset(self, store: str) -> bool:
        """Roll the period over if it has expired; returns whether it did."""

        ledger = self.ensure(store)
        now = self.clock()
        if now - as_utc(ledger.last_reset_at) < self.reset_period:
            return False
        ledger.credits_used = 0
        ledger.last_reset_at = now
        ledger.updated_at = now
        self.session.commit()
        logger.info("Reset monthly usage for %s", store)
        return True

    def has_capacity(self, store: str) -> bool:
        self.check_and_reset(store)
        ledger = self.ensure(store)
        if not ledger.is_active:
            return False
        if ledger.credits_limit == UNLIMITED:
            return True
        return ledger.credits_used < ledger.credits_limit

    def require_capacity(self, store: str) -> UsageLedger:
        if not self.has_capacity(store):
            raise LimitExceeded()
        return self.ensure(store)

    def increment(self, store: str) -> int:
        """Meter one credit with a single atomic UPDATE and return the new total."""

        self.ensure(store)
        self.session.execute(
            update(UsageLedger)
            .where(UsageLedger.store == store)
            .values(credits_used=UsageLedger.credits_used + 1, updated_at=self.clock())
        )
        self.session.commit()
        return self.session.scalar(select(UsageLedger.credits_used).where(UsageLedger.store == store))

    def enabled_products(self, store: str) -> int:
        return self.session.scalar(
            select(func.count())
            .select_from(ProductSetting)
            .where(ProductSetting.store == store, ProductSetting.enabled.is_(True))
        ) or 0

    def has_product_capacity(self, store: str) -> ProductCapacity:
        """Report whether another product may be enabled for the store."""

        ledger = self.ensure(store)
        current = self.enabled_products(store)
        limit = ledger.product_limit
        if limit == UNLIMITED:
            return ProductCapacity(exceeded=False, limit=UNLIMITED, current=current)
        return ProductCapacity(exceeded=current >= limit, limit=limit, current=current)

    def set_product_enabled(self, store: str, product_id: str, enabled: bool) -> ProductSetting:
        """Toggle try-on for a product; enabling past the product limit is refused."""

        setting = self.session.scalars(
            select(ProductSetting).where(
                ProductSetting.store == store, ProductSetting.product_id == product_id
            )
        ).first()
        already_enabled = setting is not None and setting.enabled
        if enabled and not already_enabled and self.has_product_capacity(store).exceeded:
            raise LimitExceeded("Product limit reached for the current plan.")
        if setting is None:
            setting = ProductSetting(id=uuid.uuid4(), store=store, product_id=product_id)
            self.session.add(setting)
        setting.enabled = enabled
        setting.updated_at = self.clock()
        self.session.commit()
        return setting

    def apply_plan(self, store: str, plan_key: str) -> UsageLedger:
        """Switch a store to a catalogue plan and restart the usage period.

        Stores with custom limits keep their limits; only the plan name and
        the period are updated.
        """

        try:
            plan = PLANS[plan_key]
        except KeyError:
            raise ValueError(f"Unknown plan '{plan_key}'") from None
        ledger = self.ensure(store)
        now = self.clock()
        if not ledger.has_custom_limits:
            ledger.credits_limit = plan.credits
            ledger.product_limit = plan.product_limit
        ledger.plan = plan.key
        ledger.is_active = True
        ledger.last_reset_at = now
        ledger.updated_at = now
        self.session.commit()
        logger.info("Store %s moved to plan %s", store, plan.key)
        return ledger

    def set_limits(self, store: str, credits_limit: int, product_limit: int) -> UsageLedger:
        for value in (credits_limit, product_limit):
            if value < UNLIMITED:
                raise ValueError("Limits must be non-negative or -1 for unlimited")
        ledger = self.ensure(store)
        now = self.clock()
        ledger.credits_limit = credits_limit
        ledger.product_limit = product_limit
        ledger.has_custom_limits = True
        ledger.last_reset_at = now
        ledger.updated_at = now
        self.session.commit()
        return ledger

    def clear_custom_limits(self, store: str) -> UsageLedger:
        """Drop custom limits and fall back to the current plan's allowance."""

        ledger = self.ensure(store)
        ledger.has_custom_limits = False
        plan = PLANS.get(ledger.plan or "")
        if plan is not None:
            ledger.credits_limit = plan.credits
            ledger.product_limit = plan.product_limit
        else:
            ledger.credits_limit = self.default_credits_limit
            ledger.product_limit = self.default_product_limit
        ledger.updated_at = self.clock()
        self.session.commit()
        return ledger

    def deactivate(self, store: str) -> None:
        ledger = self._find(store)
        if ledger is None:
            return
        ledger.is_active = False
        ledger.updated_at = self.clock()
        self.session.commit()

    def snapshot(self, store: str) -> Dict[str, Any]:
        self.check_and_reset(store)
        ledger = self.ensure(store)
        last_reset = as_utc(ledger.last_reset_at)
        return {
            "store": ledger.store,
            "plan": ledger.plan,
            "credits_used": ledger.credits_used,
            "credits_limit": ledger.credits_limit,
            "product_limit": ledger.product_limit,
            "enabled_products": self.enabled_products(store),
            "is_active": ledger.is_active,
            "has_custom_limits": ledger.has_custom_limits,
            "last_reset_at": last_reset.isoformat(),
            "next_reset_at": (last_reset + self.reset_period).isoformat(),
        }
