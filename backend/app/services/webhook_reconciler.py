"""Translate Stripe payment events into exactly-once credit grants."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from backend.app.core.errors import AccountResolutionError, LedgerUnavailable, PriceResolutionError, UnknownPlan
from backend.app.services.ledger import KIND_GRANT, CreditLedger
from backend.app.services.operation_log import CreditOperationLogger
from backend.app.services.plans import Plan, PlanStore
from backend.app.services.stripe_gateway import StripeGateway, first_price_id
from backend.app.services.subscriptions import SubscriptionStore

logger = logging.getLogger(__name__)

EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
RENEWAL_EVENTS = frozenset({"invoice.paid", "invoice.payment_succeeded"})

STATUS_GRANTED = "granted"
STATUS_DUPLICATE = "duplicate"
STATUS_IGNORED = "ignored"
STATUS_DEACTIVATED = "deactivated"

DUPLICATE_EVENT_MESSAGE = "duplicate event already applied"


def event_idempotency_key(event_id: str) -> str:
    return f"stripe_event:{event_id}"


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    status: str
    account_id: str | None = None
    credits_granted: int = 0
    balance: int | None = None


def _stripe_id(value: Any) -> str | None:
    """Accept either an id string or an expanded Stripe object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id") or None
    return None


class WebhookReconciler:
    """
    Applies each payment event at most once.

    The stored ``stripe_event:<id>`` idempotency key on the grant operation is
    the only deduplication anchor; there is no in-process cache of seen events.
    Failures are raised to the caller so Stripe re-delivers the event later.
    """

    def __init__(
        self,
        *,
        ledger: CreditLedger,
        plans: PlanStore,
        subscriptions: SubscriptionStore,
        gateway: StripeGateway,
        op_logger: CreditOperationLogger,
    ) -> None:
        self.ledger = ledger
        self.plans = plans
        self.subscriptions = subscriptions
        self.gateway = gateway
        self.op_logger = op_logger

    def handle(self, payload: bytes, sig_header: str | None) -> WebhookOutcome:
        # Signature failures raise before any ledger access.
        event = self.gateway.verify_event(payload, sig_header)
        return self.process_event(event)

    def process_event(self, event: dict[str, Any]) -> WebhookOutcome:
        event_id = str(event["id"])
        event_type = str(event["type"])
        obj = (event.get("data") or {}).get("object") or {}

        logger.info("Processing Stripe event", extra={"data": {"event_id": event_id, "event_type": event_type}})

        if event_type == EVENT_CHECKOUT_COMPLETED:
            return self._handle_checkout_completed(event_id, event_type, obj)
        if event_type in RENEWAL_EVENTS:
            return self._handle_invoice_paid(event_id, event_type, obj)
        if event_type == EVENT_SUBSCRIPTION_DELETED:
            return self._handle_subscription_deleted(event_id, event_type, obj)

        logger.info("Ignoring unhandled Stripe event type %s", event_type)
        return WebhookOutcome(event_id=event_id, event_type=event_type, status=STATUS_IGNORED)

    def _handle_checkout_completed(self, event_id: str, event_type: str, session: dict[str, Any]) -> WebhookOutcome:
        if session.get("payment_status") != "paid":
            logger.info("Checkout session %s not paid yet; ignoring", session.get("id"))
            return WebhookOutcome(event_id=event_id, event_type=event_type, status=STATUS_IGNORED)

        metadata = session.get("metadata") or {}
        account_id = metadata.get("account_id") or session.get("client_reference_id")
        if not account_id:
            raise AccountResolutionError("Checkout session has no account reference")

        subscription_id = None
        if session.get("mode") == "subscription":
            subscription_id = _stripe_id(session.get("subscription"))
            if not subscription_id:
                raise PriceResolutionError("Subscription checkout has no subscription id")
            price_id = self.gateway.price_id_for_subscription(subscription_id)
        else:
            session_id = session.get("id")
            if not session_id:
                raise PriceResolutionError("Checkout session has no id")
            price_id = self.gateway.price_id_for_checkout_session(session_id)

        plan = self._resolve_plan(price_id)
        outcome = self._grant_once(
            event_id,
            event_type,
            account_id=account_id,
            plan=plan,
            reason="plan_purchase",
            meta={"price_id": price_id, "plan_id": plan.id, "checkout_session_id": session.get("id")},
        )

        if subscription_id:
            self.subscriptions.upsert(
                account_id=account_id,
                stripe_subscription_id=subscription_id,
                plan_id=plan.id,
                stripe_customer_id=_stripe_id(session.get("customer")),
            )
        return outcome

    def _handle_invoice_paid(self, event_id: str, event_type: str, invoice: dict[str, Any]) -> WebhookOutcome:
        # The first invoice of a subscription is covered by checkout.session.completed.
        if invoice.get("billing_reason") != "subscription_cycle":
            return WebhookOutcome(event_id=event_id, event_type=event_type, status=STATUS_IGNORED)

        subscription_id = _stripe_id(invoice.get("subscription"))
        if not subscription_id:
            parent = invoice.get("parent") or {}
            subscription_id = _stripe_id((parent.get("subscription_details") or {}).get("subscription"))
        if not subscription_id:
            raise AccountResolutionError("Invoice is not tied to a subscription")

        stored = self.subscriptions.get_by_stripe_id(subscription_id)
        account_id = stored.account_id if stored else None
        if not account_id:
            details = invoice.get("subscription_details") or {}
            account_id = (details.get("metadata") or {}).get("account_id")
        if not account_id:
            raise AccountResolutionError("No account found for subscription")

        price_id = _invoice_price_id(invoice) or self.gateway.price_id_for_subscription(subscription_id)
        plan = self._resolve_plan(price_id)
        outcome = self._grant_once(
            event_id,
            event_type,
            account_id=account_id,
            plan=plan,
            reason="subscription_renewal",
            meta={"price_id": price_id, "plan_id": plan.id, "invoice_id": invoice.get("id")},
        )

        period = _invoice_period(invoice)
        self.subscriptions.upsert(
            account_id=account_id,
            stripe_subscription_id=subscription_id,
            plan_id=plan.id,
            stripe_customer_id=_stripe_id(invoice.get("customer")),
            current_period_start=period[0],
            current_period_end=period[1],
        )
        return outcome

    def _handle_subscription_deleted(self, event_id: str, event_type: str, subscription: dict[str, Any]) -> WebhookOutcome:
        subscription_id = _stripe_id(subscription.get("id"))
        if not subscription_id or not self.subscriptions.deactivate(subscription_id):
            logger.info("Deleted subscription %s is not tracked; ignoring", subscription_id)
            return WebhookOutcome(event_id=event_id, event_type=event_type, status=STATUS_IGNORED)
        stored = self.subscriptions.get_by_stripe_id(subscription_id)
        return WebhookOutcome(
            event_id=event_id,
            event_type=event_type,
            status=STATUS_DEACTIVATED,
            account_id=stored.account_id if stored else None,
        )

    def _resolve_plan(self, price_id: str | None) -> Plan:
        if not price_id:
            raise PriceResolutionError()
        plan = self.plans.get_by_price_id(price_id)
        if not plan:
            logger.warning("No plan configured for price %s", price_id)
            raise UnknownPlan(f"No plan is configured for price {price_id}")
        return plan

    def _grant_once(
        self,
        event_id: str,
        event_type: str,
        *,
        account_id: str,
        plan: Plan,
        reason: str,
        meta: dict[str, Any],
    ) -> WebhookOutcome:
        key = event_idempotency_key(event_id)
        try:
            if self.ledger.has_operation(key):
                return self._duplicate(event_id, event_type, account_id=account_id, plan=plan, reason=reason)

            result = self.ledger.grant_credits(
                account_id,
                plan.credits_granted,
                reason=reason,
                idempotency_key=key,
                reference_id=event_id,
                meta={"event_type": event_type, **meta},
            )
        except LedgerUnavailable as exc:
            self.op_logger.log_failure(
                account_id=account_id,
                kind=KIND_GRANT,
                amount=plan.credits_granted,
                reason=reason,
                error_message=exc.message,
                reference_id=event_id,
            )
            raise

        if not result.applied:
            # A concurrent delivery of the same event won the unique key.
            return self._duplicate(event_id, event_type, account_id=account_id, plan=plan, reason=reason)

        self.op_logger.log_success(
            account_id=account_id,
            kind=KIND_GRANT,
            amount=plan.credits_granted,
            reason=reason,
            balance_after=result.new_balance,
            operation_id=result.operation_id,
            reference_id=event_id,
        )
        return WebhookOutcome(
            event_id=event_id,
            event_type=event_type,
            status=STATUS_GRANTED,
            account_id=account_id,
            credits_granted=plan.credits_granted,
            balance=result.new_balance,
        )

    def _duplicate(self, event_id: str, event_type: str, *, account_id: str, plan: Plan, reason: str) -> WebhookOutcome:
        logger.info("Stripe event %s already applied; skipping grant", event_id)
        self.op_logger.log_failure(
            account_id=account_id,
            kind=KIND_GRANT,
            amount=plan.credits_granted,
            reason=reason,
            error_message=DUPLICATE_EVENT_MESSAGE,
            reference_id=event_id,
        )
        return WebhookOutcome(
            event_id=event_id,
            event_type=event_type,
            status=STATUS_DUPLICATE,
            account_id=account_id,
            balance=self.ledger.get_balance(account_id),
        )


def _invoice_price_id(invoice: dict[str, Any]) -> str | None:
    lines = invoice.get("lines") or {}
    price_id = first_price_id(lines)
    if price_id:
        return price_id
    try:
        pricing = lines["data"][0].get("pricing") or {}
    except (KeyError, IndexError, TypeError, AttributeError):
        return None
    return (pricing.get("price_details") or {}).get("price") or None


def _invoice_period(invoice: dict[str, Any]) -> tuple[int | None, int | None]:
    try:
        period = invoice["lines"]["data"][0]["period"]
        return int(period["start"]), int(period["end"])
    except (KeyError, IndexError, TypeError, ValueError):
        return None, None
