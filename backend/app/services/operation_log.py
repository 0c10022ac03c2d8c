"""Best-effort audit trail for credit mutations."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from backend.app.core.database import Database
from backend.app.core.errors import sanitize_message
from backend.app.core.metrics import log_ledger_event
from backend.app.db.models import DbCreditOperation
from backend.app.services.ledger import KIND_DEBIT, KIND_GRANT, STATUS_FAILED

logger = logging.getLogger(__name__)


class CreditOperationLogger:
    """
    Observes ledger mutations.

    Successful mutations already have their ``success`` row written by the
    ledger in the same transaction; this logger adds the structured log line
    and the JSONL audit event. Failed attempts get their own ``failed`` row,
    written in a separate transaction. None of the methods ever raise.
    """

    def __init__(self, db: Database | None) -> None:
        self.db = db

    def log_success(
        self,
        *,
        account_id: str,
        kind: str,
        amount: int,
        reason: str,
        balance_after: int | None = None,
        operation_id: str | None = None,
        reference_id: str | None = None,
    ) -> None:
        data = {
            "account_id": account_id,
            "kind": kind,
            "amount": amount,
            "reason": reason,
            "status": "success",
            "balance_after": balance_after,
            "operation_id": operation_id,
            "reference_id": reference_id,
        }
        try:
            logger.info("Credit %s applied", kind, extra={"data": data})
            log_ledger_event({"event": "credit_operation", **data})
        except Exception:
            return

    def log_failure(
        self,
        *,
        account_id: str,
        kind: str,
        amount: int,
        reason: str,
        error_message: str,
        reference_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> str | None:
        """Append a ``failed`` operation row. Returns its id, or None if the write failed."""
        if kind not in (KIND_GRANT, KIND_DEBIT):
            kind = KIND_GRANT
        amount = max(1, int(amount or 0))
        error_message = sanitize_message(error_message)[:500]
        data = {
            "account_id": account_id,
            "kind": kind,
            "amount": amount,
            "reason": reason,
            "status": STATUS_FAILED,
            "error_message": error_message,
            "reference_id": reference_id,
        }
        try:
            logger.warning("Credit %s failed", kind, extra={"data": data})
            log_ledger_event({"event": "credit_operation", **data})
        except Exception:
            pass

        if not self.db:
            return None

        operation_id = uuid.uuid4().hex
        try:
            with self.db.session() as session:
                session.add(
                    DbCreditOperation(
                        id=operation_id,
                        account_id=account_id,
                        kind=kind,
                        amount=amount,
                        status=STATUS_FAILED,
                        error_message=error_message,
                        reason=reason[:64],
                        reference_id=reference_id,
                        idempotency_key=None,
                        meta=meta,
                        created_at=int(time.time()),
                    )
                )
        except Exception:
            logger.exception(
                "Failed to record failed credit operation (account_id=%s kind=%s)",
                account_id,
                kind,
            )
            return None
        return operation_id
