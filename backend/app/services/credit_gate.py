"""Reserve-then-compensate gate in front of paid actions."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from backend.app.core.errors import IdempotencyConflict, LedgerUnavailable
from backend.app.services.ledger import KIND_DEBIT, KIND_GRANT, CreditLedger, insufficient_credits_reason
from backend.app.services.operation_log import CreditOperationLogger

logger = logging.getLogger(__name__)

GENERATION_REASON = "generation"
REFUND_REASON = "refund"


def debit_key(request_id: str) -> str:
    return f"generation_debit:{request_id}"


def refund_key(request_id: str) -> str:
    return f"generation_refund:{request_id}"


@dataclass(frozen=True)
class CreditCheck:
    has_credits: bool
    balance: int
    error_message: str | None = None


@dataclass(frozen=True)
class Authorization:
    """A committed debit that gates one paid request."""

    account_id: str
    request_id: str
    amount: int
    operation_id: str | None
    balance_after: int


@dataclass(frozen=True)
class Denied:
    account_id: str
    required: int
    balance: int
    reason: str


class CreditGate:
    def __init__(self, ledger: CreditLedger, op_logger: CreditOperationLogger) -> None:
        self.ledger = ledger
        self.op_logger = op_logger

    def check(self, account_id: str, required: int) -> CreditCheck:
        """Read-only balance check; nothing is reserved."""
        if required <= 0:
            raise ValueError("required credits must be positive")
        balance = self.ledger.get_balance(account_id)
        if balance >= required:
            return CreditCheck(has_credits=True, balance=balance)
        return CreditCheck(
            has_credits=False,
            balance=balance,
            error_message=insufficient_credits_reason(required, balance),
        )

    def check_and_reserve(
        self,
        account_id: str,
        required: int,
        *,
        request_id: str,
        reason: str = GENERATION_REASON,
    ) -> Authorization | Denied:
        try:
            result = self.ledger.debit_if_available(
                account_id,
                required,
                reason=reason,
                idempotency_key=debit_key(request_id),
                reference_id=request_id,
            )
        except LedgerUnavailable as exc:
            self.op_logger.log_failure(
                account_id=account_id,
                kind=KIND_DEBIT,
                amount=required,
                reason=reason,
                error_message=exc.message,
                reference_id=request_id,
            )
            raise

        if not result.ok:
            denial = result.reason or insufficient_credits_reason(required, result.new_balance)
            self.op_logger.log_failure(
                account_id=account_id,
                kind=KIND_DEBIT,
                amount=required,
                reason=reason,
                error_message=denial,
                reference_id=request_id,
            )
            return Denied(account_id=account_id, required=required, balance=result.new_balance, reason=denial)

        if not result.applied:
            # The debit for this request id was committed by an earlier call that
            # already owns the generation and any refund.
            message = f"Request {request_id} was already processed"
            self.op_logger.log_failure(
                account_id=account_id,
                kind=KIND_DEBIT,
                amount=required,
                reason=reason,
                error_message=message,
                reference_id=request_id,
            )
            raise IdempotencyConflict(message)

        self.op_logger.log_success(
            account_id=account_id,
            kind=KIND_DEBIT,
            amount=required,
            reason=reason,
            balance_after=result.new_balance,
            operation_id=result.operation_id,
            reference_id=request_id,
        )
        return Authorization(
            account_id=account_id,
            request_id=request_id,
            amount=required,
            operation_id=result.operation_id,
            balance_after=result.new_balance,
        )

    def refund(self, authorization: Authorization, *, error: str | None = None) -> int:
        """
        Reverse a reservation with a compensating grant.

        Keyed by the request id, so repeated calls refund at most once.
        Returns the balance after the refund.
        """
        try:
            result = self.ledger.grant_credits(
                authorization.account_id,
                authorization.amount,
                reason=REFUND_REASON,
                idempotency_key=refund_key(authorization.request_id),
                reference_id=authorization.request_id,
                meta={"debit_operation_id": authorization.operation_id, "error": error},
            )
        except LedgerUnavailable as exc:
            self.op_logger.log_failure(
                account_id=authorization.account_id,
                kind=KIND_GRANT,
                amount=authorization.amount,
                reason=REFUND_REASON,
                error_message=exc.message,
                reference_id=authorization.request_id,
            )
            raise

        if result.applied:
            self.op_logger.log_success(
                account_id=authorization.account_id,
                kind=KIND_GRANT,
                amount=authorization.amount,
                reason=REFUND_REASON,
                balance_after=result.new_balance,
                operation_id=result.operation_id,
                reference_id=authorization.request_id,
            )
        else:
            logger.info("Refund for request %s already applied", authorization.request_id)
        return result.new_balance
