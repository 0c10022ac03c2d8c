"""Internal credit RPCs: check, debit, grant and account summary."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from ...services.credit_gate import CreditGate
from ...services.ledger import KIND_DEBIT, KIND_GRANT, CreditLedger, scoped_idempotency_key
from ...services.operation_log import CreditOperationLogger
from ...services.subscriptions import SubscriptionStore
from ...schemas.credits import (
    AccountCreditsResponse,
    CreditCheckRequest,
    CreditCheckResponse,
    CreditMutationRequest,
    CreditMutationResponse,
    CreditOperationSchema,
    SubscriptionSchema,
)
from ..deps import (
    get_credit_gate,
    get_ledger,
    get_operation_logger,
    get_subscription_store,
    require_service_token,
)

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(require_service_token)])


@router.post("/check", response_model=CreditCheckResponse)
def check_credits(
    body: CreditCheckRequest,
    gate: CreditGate = Depends(get_credit_gate),
):
    result = gate.check(body.account_id, body.required_credits)
    return CreditCheckResponse(
        has_credits=result.has_credits,
        balance=result.balance,
        error_message=result.error_message,
    )


@router.post("/debit", response_model=CreditMutationResponse)
def debit_credits(
    body: CreditMutationRequest,
    ledger: CreditLedger = Depends(get_ledger),
    op_logger: CreditOperationLogger = Depends(get_operation_logger),
):
    reason = body.reason or "manual_debit"
    result = ledger.debit_if_available(
        body.account_id,
        body.amount,
        reason=reason,
        idempotency_key=scoped_idempotency_key("rpc", KIND_DEBIT, body.account_id, body.idempotency_key),
    )
    if not result.ok:
        op_logger.log_failure(
            account_id=body.account_id,
            kind=KIND_DEBIT,
            amount=body.amount,
            reason=reason,
            error_message=result.reason or "Insufficient credits",
        )
        return CreditMutationResponse(
            success=False,
            current_credits=result.new_balance,
            error_message=result.reason,
        )

    if result.applied:
        op_logger.log_success(
            account_id=body.account_id,
            kind=KIND_DEBIT,
            amount=body.amount,
            reason=reason,
            balance_after=result.new_balance,
            operation_id=result.operation_id,
        )
    return CreditMutationResponse(success=True, current_credits=result.new_balance, applied=result.applied)


@router.post("/grant", response_model=CreditMutationResponse)
def grant_credits(
    body: CreditMutationRequest,
    ledger: CreditLedger = Depends(get_ledger),
    op_logger: CreditOperationLogger = Depends(get_operation_logger),
):
    reason = body.reason or "manual_grant"
    result = ledger.grant_credits(
        body.account_id,
        body.amount,
        reason=reason,
        idempotency_key=scoped_idempotency_key("rpc", KIND_GRANT, body.account_id, body.idempotency_key),
    )
    if result.applied:
        op_logger.log_success(
            account_id=body.account_id,
            kind=KIND_GRANT,
            amount=body.amount,
            reason=reason,
            balance_after=result.new_balance,
            operation_id=result.operation_id,
        )
    return CreditMutationResponse(success=True, current_credits=result.new_balance, applied=result.applied)


@router.get("/{account_id}", response_model=AccountCreditsResponse)
def get_account_credits(
    account_id: str,
    limit: int = Query(20, ge=1, le=200),
    ledger: CreditLedger = Depends(get_ledger),
    subscriptions: SubscriptionStore = Depends(get_subscription_store),
):
    if len(account_id) > 64:
        raise HTTPException(400, "Invalid account id")
    balance = ledger.get_balance(account_id)
    operations = ledger.list_operations(account_id, limit=limit)
    subscription = subscriptions.active_for_account(account_id)
    return AccountCreditsResponse(
        account_id=account_id,
        balance=balance,
        operations=[CreditOperationSchema.model_validate(op) for op in operations],
        subscription=SubscriptionSchema.model_validate(subscription) if subscription else None,
    )
