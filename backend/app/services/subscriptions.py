"""Subscription bookkeeping driven by payment webhooks."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from backend.app.core.database import Database
from backend.app.core.errors import LedgerUnavailable
from backend.app.db.models import DbSubscription


@dataclass(frozen=True)
class Subscription:
    id: str
    account_id: str
    plan_id: str | None
    stripe_subscription_id: str
    stripe_customer_id: str | None
    active: bool
    current_period_start: int | None
    current_period_end: int | None


def _to_subscription(row: DbSubscription) -> Subscription:
    return Subscription(
        id=row.id,
        account_id=row.account_id,
        plan_id=row.plan_id,
        stripe_subscription_id=row.stripe_subscription_id,
        stripe_customer_id=row.stripe_customer_id,
        active=bool(row.active),
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
    )


class SubscriptionStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def upsert(
        self,
        *,
        account_id: str,
        stripe_subscription_id: str,
        plan_id: str | None,
        stripe_customer_id: str | None = None,
        current_period_start: int | None = None,
        current_period_end: int | None = None,
    ) -> Subscription:
        now = int(time.time())
        try:
            with self.db.session() as session:
                row = session.scalar(
                    select(DbSubscription)
                    .where(DbSubscription.stripe_subscription_id == stripe_subscription_id)
                    .limit(1)
                )
                if row is None:
                    row = DbSubscription(
                        id=uuid.uuid4().hex,
                        account_id=account_id,
                        stripe_subscription_id=stripe_subscription_id,
                    )
                    session.add(row)
                row.plan_id = plan_id
                row.stripe_customer_id = stripe_customer_id or row.stripe_customer_id
                row.active = True
                if current_period_start is not None:
                    row.current_period_start = current_period_start
                if current_period_end is not None:
                    row.current_period_end = current_period_end
                row.updated_at = now
                session.flush()
                return _to_subscription(row)
        except SQLAlchemyError as exc:
            raise LedgerUnavailable() from exc

    def get_by_stripe_id(self, stripe_subscription_id: str) -> Subscription | None:
        if not stripe_subscription_id:
            return None
        try:
            with self.db.session() as session:
                row = session.scalar(
                    select(DbSubscription)
                    .where(DbSubscription.stripe_subscription_id == stripe_subscription_id)
                    .limit(1)
                )
                return _to_subscription(row) if row else None
        except SQLAlchemyError as exc:
            raise LedgerUnavailable() from exc

    def deactivate(self, stripe_subscription_id: str) -> bool:
        try:
            with self.db.session() as session:
                result = session.execute(
                    update(DbSubscription)
                    .where(DbSubscription.stripe_subscription_id == stripe_subscription_id)
                    .values(active=False, updated_at=int(time.time()))
                )
                return int(result.rowcount or 0) > 0
        except SQLAlchemyError as exc:
            raise LedgerUnavailable() from exc

    def active_for_account(self, account_id: str) -> Subscription | None:
        try:
            with self.db.session() as session:
                row = session.scalar(
                    select(DbSubscription)
                    .where(DbSubscription.account_id == account_id, DbSubscription.active.is_(True))
                    .order_by(DbSubscription.updated_at.desc())
                    .limit(1)
                )
                return _to_subscription(row) if row else None
        except SQLAlchemyError as exc:
            raise LedgerUnavailable() from exc
