import secrets

from fastapi import Depends, Header, HTTPException, Request, status

from ..core.config import settings
from ..core.database import Database
from ..services.credit_gate import CreditGate
from ..services.generation import GenerationOrchestrator
from ..services.ledger import CreditLedger
from ..services.operation_log import CreditOperationLogger
from ..services.plans import PlanStore
from ..services.providers import HttpGenerationProvider, HttpResizeProvider
from ..services.resizer import Resizer
from ..services.stripe_gateway import StripeGateway
from ..services.subscriptions import SubscriptionStore
from ..services.webhook_reconciler import WebhookReconciler


def get_db(request: Request) -> Database:
    """Dependency to get the process-wide database instance created at startup."""
    db = getattr(request.app.state, "db", None)
    if db is None:
        db = Database()
        request.app.state.db = db
    return db

def get_ledger(db: Database = Depends(get_db)) -> CreditLedger:
    return CreditLedger(db=db)

def get_operation_logger(db: Database = Depends(get_db)) -> CreditOperationLogger:
    return CreditOperationLogger(db=db)

def get_plan_store(db: Database = Depends(get_db)) -> PlanStore:
    return PlanStore(db=db)

def get_subscription_store(db: Database = Depends(get_db)) -> SubscriptionStore:
    return SubscriptionStore(db=db)

def get_credit_gate(
    ledger: CreditLedger = Depends(get_ledger),
    op_logger: CreditOperationLogger = Depends(get_operation_logger),
) -> CreditGate:
    return CreditGate(ledger, op_logger)

def get_stripe_gateway() -> StripeGateway:
    return StripeGateway()

def get_webhook_reconciler(
    ledger: CreditLedger = Depends(get_ledger),
    plans: PlanStore = Depends(get_plan_store),
    subscriptions: SubscriptionStore = Depends(get_subscription_store),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    op_logger: CreditOperationLogger = Depends(get_operation_logger),
) -> WebhookReconciler:
    return WebhookReconciler(
        ledger=ledger,
        plans=plans,
        subscriptions=subscriptions,
        gateway=gateway,
        op_logger=op_logger,
    )

def get_generation_provider() -> HttpGenerationProvider:
    return HttpGenerationProvider()

def get_resize_provider() -> HttpResizeProvider:
    return HttpResizeProvider()

def get_resizer(provider: HttpResizeProvider = Depends(get_resize_provider)) -> Resizer:
    return Resizer(provider)

def get_orchestrator(
    provider: HttpGenerationProvider = Depends(get_generation_provider),
    gate: CreditGate = Depends(get_credit_gate),
    resizer: Resizer = Depends(get_resizer),
) -> GenerationOrchestrator:
    return GenerationOrchestrator(provider, gate, resizer)

def require_service_token(x_service_token: str | None = Header(default=None)) -> None:
    """Reject internal RPC calls without the shared service token (when one is configured)."""
    expected = settings.service_token
    if not expected:
        return
    if not x_service_token or not secrets.compare_digest(x_service_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid service token",
        )
