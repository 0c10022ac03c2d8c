"""Stripe webhook receiver."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ...core.errors import ServiceError, sanitize_message
from ...services.webhook_reconciler import WebhookReconciler
from ..deps import get_webhook_reconciler

logger = logging.getLogger(__name__)
router = APIRouter()

WEBHOOK_ERROR_TYPE = "webhook_processing_error"


def _webhook_error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": sanitize_message(message), "type": WEBHOOK_ERROR_TYPE},
    )


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
):
    """
    Apply a Stripe event. Any non-200 answer makes Stripe re-deliver the
    event later; idempotency makes re-delivery safe.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        outcome = await run_in_threadpool(reconciler.handle, payload, sig_header)
    except ServiceError as exc:
        logger.warning(
            "Stripe webhook rejected",
            extra={"data": {"code": exc.code, "status": exc.status_code, "error": exc.message}},
        )
        return _webhook_error(exc.status_code, exc.message)
    except Exception:
        logger.exception("Stripe webhook processing failed")
        return _webhook_error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Webhook processing failed")

    logger.info(
        "Stripe webhook processed",
        extra={
            "data": {
                "event_id": outcome.event_id,
                "event_type": outcome.event_type,
                "status": outcome.status,
                "credits_granted": outcome.credits_granted,
            }
        },
    )
    return {"received": True, "status": outcome.status}
