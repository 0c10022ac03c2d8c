"""Stripe checkout for plan purchases."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from ...core.errors import UnknownPlan
from ...schemas.billing import CheckoutRequest, CheckoutResponse
from ...services.plans import PlanStore
from ...services.stripe_gateway import StripeGateway
from ..deps import get_plan_store, get_stripe_gateway, require_service_token

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(require_service_token)])


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    body: CheckoutRequest,
    plans: PlanStore = Depends(get_plan_store),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """Start a Stripe checkout for a configured plan; the webhook grants the credits later."""
    plan = plans.get_by_price_id(body.price_id)
    if plan is None:
        raise UnknownPlan(f"No plan is configured for price {body.price_id}")

    session = gateway.create_checkout_session(
        body.account_id,
        body.price_id,
        body.mode,
        email=body.email,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
    )
    logger.info(
        "Checkout started",
        extra={"data": {"account_id": body.account_id, "plan_id": plan.id, "session_id": session["id"]}},
    )
    return CheckoutResponse(session_id=session["id"], url=session.get("url"))
