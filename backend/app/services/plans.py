"""Billing plans keyed by external (Stripe) price id."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from backend.app.core.database import Database
from backend.app.core.errors import LedgerUnavailable
from backend.app.db.models import DbPlan


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    external_price_id: str
    credits_granted: int


class PlanStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def upsert(
        self,
        *,
        plan_id: str,
        name: str,
        external_price_id: str,
        credits_granted: int,
        active: bool = True,
    ) -> Plan:
        if credits_granted <= 0:
            raise ValueError("credits_granted must be positive")
        try:
            with self.db.session() as session:
                row = session.get(DbPlan, plan_id)
                if row is None:
                    row = DbPlan(id=plan_id)
                    session.add(row)
                row.name = name
                row.external_price_id = external_price_id
                row.credits_granted = credits_granted
                row.active = active
                session.flush()
                return _to_plan(row)
        except SQLAlchemyError as exc:
            raise LedgerUnavailable() from exc

    def get_by_price_id(self, price_id: str) -> Plan | None:
        if not price_id:
            return None
        try:
            with self.db.session() as session:
                row = session.scalar(
                    select(DbPlan)
                    .where(DbPlan.external_price_id == price_id, DbPlan.active.is_(True))
                    .limit(1)
                )
                return _to_plan(row) if row else None
        except SQLAlchemyError as exc:
            raise LedgerUnavailable() from exc


def _to_plan(row: DbPlan) -> Plan:
    return Plan(
        id=row.id,
        name=row.name,
        external_price_id=row.external_price_id,
        credits_granted=int(row.credits_granted),
    )
