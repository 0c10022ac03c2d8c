"""Atomic, auditable credit accounting."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.core.config import settings
from backend.app.core.database import Database, upsert_insert
from backend.app.core.errors import IdempotencyConflict, LedgerUnavailable
from backend.app.db.models import DbAccount, DbCreditOperation

KIND_GRANT = "grant"
KIND_DEBIT = "debit"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


def scoped_idempotency_key(source: str, kind: str, account_id: str, key: str | None) -> str | None:
    """Namespace a caller-supplied key so it cannot collide with internal keys or other accounts."""
    if not key:
        return None
    return f"{source}:{kind}:{account_id}:{key}"


def insufficient_credits_reason(required: int, available: int) -> str:
    return f"Insufficient credits. Required: {required}, available: {available}."


@dataclass(frozen=True)
class GrantResult:
    new_balance: int
    applied: bool
    operation_id: str | None


@dataclass(frozen=True)
class DebitResult:
    ok: bool
    new_balance: int
    reason: str | None = None
    applied: bool = False
    operation_id: str | None = None


@dataclass(frozen=True)
class CreditOperationRow:
    id: str
    account_id: str
    kind: str
    amount: int
    status: str
    reason: str
    error_message: str | None
    reference_id: str | None
    idempotency_key: str | None
    balance_after: int | None
    created_at: int


class _InsufficientBalance(Exception):
    """Raised inside a debit transaction to roll it back."""

    def __init__(self, available: int) -> None:
        super().__init__(available)
        self.available = available


class CreditLedger:
    """Service layer that owns all balance mutations."""

    def __init__(self, db: Database, *, starting_credits: int | None = None) -> None:
        self.db = db
        self.starting_credits = settings.starting_credits if starting_credits is None else starting_credits

    def ensure_account(self, account_id: str) -> bool:
        _validate_account_id(account_id)
        now = int(time.time())
        try:
            with self.db.session() as session:
                return self._ensure_account_in_session(session, account_id=account_id, now=now)
        except SQLAlchemyError as exc:
            raise LedgerUnavailable() from exc

    def get_balance(self, account_id: str) -> int:
        self.ensure_account(account_id)
        try:
            with self.db.session() as session:
                return self._balance_in_session(session, account_id)
        except SQLAlchemyError as exc:
            raise LedgerUnavailable() from exc

    def grant_credits(
        self,
        account_id: str,
        amount: int,
        *,
        reason: str,
        idempotency_key: str | None = None,
        reference_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> GrantResult:
        """
        Increment the balance and record a grant operation in one transaction.

        With an idempotency key, a replay leaves the balance untouched and
        returns ``applied=False``. A key already held by another account,
        kind or amount raises ``IdempotencyConflict``.
        """
        _validate_account_id(account_id)
        _validate_amount(amount)
        _validate_reason(reason)

        now = int(time.time())
        operation_id = uuid.uuid4().hex
        try:
            with self.db.session() as session:
                self._ensure_account_in_session(session, account_id=account_id, now=now)

                inserted = self._insert_operation(
                    session,
                    id=operation_id,
                    account_id=account_id,
                    kind=KIND_GRANT,
                    amount=amount,
                    reason=reason,
                    idempotency_key=idempotency_key,
                    reference_id=reference_id,
                    meta=meta,
                    now=now,
                )
                if not inserted:
                    return GrantResult(
                        new_balance=self._balance_in_session(session, account_id),
                        applied=False,
                        operation_id=self._replayed_operation_id(
                            session,
                            idempotency_key,
                            account_id=account_id,
                            kind=KIND_GRANT,
                            amount=amount,
                        ),
                    )

                session.execute(
                    update(DbAccount)
                    .where(DbAccount.id == account_id)
                    .values(
                        credit_balance=DbAccount.credit_balance + amount,
                        updated_at=now,
                    )
                )
                new_balance = self._balance_in_session(session, account_id)
                self._set_balance_after(session, operation_id, new_balance)
                return GrantResult(new_balance=new_balance, applied=True, operation_id=operation_id)
        except SQLAlchemyError as exc:
            raise LedgerUnavailable() from exc

    def debit_if_available(
        self,
        account_id: str,
        amount: int,
        *,
        reason: str,
        idempotency_key: str | None = None,
        reference_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> DebitResult:
        """
        Decrement the balance only if it covers ``amount``.

        The decrement is a conditional UPDATE so concurrent debits are
        serialized by the row lock. When the balance is short the whole
        transaction rolls back and ``ok=False`` is returned with no mutation.
        """
        _validate_account_id(account_id)
        _validate_amount(amount)
        _validate_reason(reason)

        now = int(time.time())
        operation_id = uuid.uuid4().hex
        try:
            with self.db.session() as session:
                self._ensure_account_in_session(session, account_id=account_id, now=now)

                inserted = self._insert_operation(
                    session,
                    id=operation_id,
                    account_id=account_id,
                    kind=KIND_DEBIT,
                    amount=amount,
                    reason=reason,
                    idempotency_key=idempotency_key,
                    reference_id=reference_id,
                    meta=meta,
                    now=now,
                )
                if not inserted:
                    return DebitResult(
                        ok=True,
                        new_balance=self._balance_in_session(session, account_id),
                        applied=False,
                        operation_id=self._replayed_operation_id(
                            session,
                            idempotency_key,
                            account_id=account_id,
                            kind=KIND_DEBIT,
                            amount=amount,
                        ),
                    )

                result = session.execute(
                    update(DbAccount)
                    .where(DbAccount.id == account_id, DbAccount.credit_balance >= amount)
                    .values(
                        credit_balance=DbAccount.credit_balance - amount,
                        updated_at=now,
                    )
                )
                if int(result.rowcount or 0) != 1:
                    raise _InsufficientBalance(self._balance_in_session(session, account_id))

                new_balance = self._balance_in_session(session, account_id)
                self._set_balance_after(session, operation_id, new_balance)
                return DebitResult(ok=True, new_balance=new_balance, applied=True, operation_id=operation_id)
        except _InsufficientBalance as exc:
            return DebitResult(
                ok=False,
                new_balance=exc.available,
                reason=insufficient_credits_reason(amount, exc.available),
            )
        except SQLAlchemyError as exc:
            raise LedgerUnavailable() from exc

    def has_operation(self, idempotency_key: str) -> bool:
        try:
            with self.db.session() as session:
                return self._operation_id_for_key(session, idempotency_key) is not None
        except SQLAlchemyError as exc:
            raise LedgerUnavailable() from exc

    def list_operations(self, account_id: str, *, limit: int = 50) -> list[CreditOperationRow]:
        limit = max(1, min(int(limit), 500))
        try:
            with self.db.session() as session:
                rows = session.scalars(
                    select(DbCreditOperation)
                    .where(DbCreditOperation.account_id == account_id)
                    .order_by(DbCreditOperation.created_at.desc(), DbCreditOperation.id.desc())
                    .limit(limit)
                ).all()
                return [_to_row(row) for row in rows]
        except SQLAlchemyError as exc:
            raise LedgerUnavailable() from exc

    def _ensure_account_in_session(self, session: Session, *, account_id: str, now: int) -> bool:
        """Create the account row if missing, recording the free-tier grant."""
        starting_balance = max(0, int(self.starting_credits))
        insert_stmt = upsert_insert(session, DbAccount).values(
            id=account_id,
            credit_balance=starting_balance,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=[DbAccount.id])

        created = (
            session.execute(insert_stmt.returning(DbAccount.id)).scalar_one_or_none()
            is not None
        )

        if created and starting_balance > 0:
            session.add(
                DbCreditOperation(
                    id=uuid.uuid4().hex,
                    account_id=account_id,
                    kind=KIND_GRANT,
                    amount=starting_balance,
                    status=STATUS_SUCCESS,
                    reason="initial_balance",
                    balance_after=starting_balance,
                    meta={"source": "ensure_account"},
                    created_at=now,
                )
            )
            session.flush()
        return created

    def _insert_operation(
        self,
        session: Session,
        *,
        id: str,
        account_id: str,
        kind: str,
        amount: int,
        reason: str,
        idempotency_key: str | None,
        reference_id: str | None,
        meta: dict[str, Any] | None,
        now: int,
    ) -> bool:
        insert_stmt = upsert_insert(session, DbCreditOperation).values(
            id=id,
            account_id=account_id,
            kind=kind,
            amount=amount,
            status=STATUS_SUCCESS,
            reason=reason,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
            meta=meta,
            created_at=now,
        )
        if idempotency_key:
            insert_stmt = insert_stmt.on_conflict_do_nothing(
                index_elements=[DbCreditOperation.idempotency_key]
            )

        # Use RETURNING to reliably detect insertion
        return (
            session.execute(insert_stmt.returning(DbCreditOperation.id)).scalar_one_or_none()
            is not None
        )

    @staticmethod
    def _set_balance_after(session: Session, operation_id: str, balance: int) -> None:
        session.execute(
            update(DbCreditOperation)
            .where(DbCreditOperation.id == operation_id)
            .values(balance_after=balance)
        )

    @staticmethod
    def _balance_in_session(session: Session, account_id: str) -> int:
        balance = session.scalar(
            select(DbAccount.credit_balance).where(DbAccount.id == account_id).limit(1)
        )
        return int(balance or 0)

    @staticmethod
    def _operation_id_for_key(session: Session, idempotency_key: str | None) -> str | None:
        if not idempotency_key:
            return None
        return session.scalar(
            select(DbCreditOperation.id)
            .where(
                DbCreditOperation.idempotency_key == idempotency_key,
                DbCreditOperation.status == STATUS_SUCCESS,
            )
            .limit(1)
        )

    @staticmethod
    def _replayed_operation_id(
        session: Session,
        idempotency_key: str | None,
        *,
        account_id: str,
        kind: str,
        amount: int,
    ) -> str | None:
        """Return the operation that owns ``idempotency_key`` if it matches this request."""
        if not idempotency_key:
            return None
        existing = session.scalars(
            select(DbCreditOperation)
            .where(
                DbCreditOperation.idempotency_key == idempotency_key,
                DbCreditOperation.status == STATUS_SUCCESS,
            )
            .limit(1)
        ).first()
        if existing is None:
            return None
        if (existing.account_id, existing.kind, existing.amount) != (account_id, kind, amount):
            raise IdempotencyConflict(
                f"Idempotency key {idempotency_key} was already used for a different operation"
            )
        return existing.id


def _to_row(row: DbCreditOperation) -> CreditOperationRow:
    return CreditOperationRow(
        id=row.id,
        account_id=row.account_id,
        kind=row.kind,
        amount=row.amount,
        status=row.status,
        reason=row.reason,
        error_message=row.error_message,
        reference_id=row.reference_id,
        idempotency_key=row.idempotency_key,
        balance_after=row.balance_after,
        created_at=row.created_at,
    )


def _validate_account_id(account_id: str) -> None:
    if not account_id or not account_id.strip() or len(account_id) > 64:
        raise ValueError("Invalid account id")


def _validate_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError("amount must be a positive integer")


def _validate_reason(reason: str) -> None:
    cleaned = reason.strip()
    if not cleaned or len(cleaned) > 64:
        raise ValueError("Invalid reason")
