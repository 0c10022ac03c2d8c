
from contextlib import asynccontextmanager

from backend.app.core.errors import register_exception_handlers
from backend.app.core.logging import setup_logging

# Configure logging (JSON structured)
logger = setup_logging()

import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.httpsredirect import HTTPSRedirectMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from secure import (
    ContentSecurityPolicy,
    ReferrerPolicy,
    Secure,
    StrictTransportSecurity,
    XContentTypeOptions,
    XFrameOptions,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.types import ASGIApp
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from backend.app.api.deps import get_db
from backend.app.api.endpoints import billing, credits, generation, webhooks
from backend.app.core.config import settings
from backend.app.core.database import Database


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    db = Database()
    if db.settings.is_sqlite:
        # PostgreSQL schemas are managed by Alembic.
        db.create_all()
    app.state.db = db
    yield
    # Shutdown
    app.state.db.dispose()

app = FastAPI(
    title="Ad Credit Ledger API",
    description="Credit ledger, Stripe reconciliation and gated ad generation",
    version="1.0.0",
    docs_url="/docs" if settings.is_dev else None,
    redoc_url="/redoc" if settings.is_dev else None,
    openapi_url="/openapi.json" if settings.is_dev else None,
    lifespan=lifespan,
)

# Register Global Exception Handlers
register_exception_handlers(app)


def _env_list(key: str, default: list[str]) -> list[str]:
    if "PYTEST_CURRENT_TEST" in os.environ:
        return default
    value = os.getenv(key)
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]

# Configure CORS (secure-by-default in production)
default_origins = (
    [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:8080",
        "http://127.0.0.1:8080",
    ]
    if settings.is_dev
    else []
)
origins = _env_list("ADG_ALLOWED_ORIGINS", default_origins)
if not settings.is_dev and not origins:
    raise RuntimeError("ADG_ALLOWED_ORIGINS must be set in production")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Service-Token"],
)

# Enable GZip compression for responses > 1000 bytes
app.add_middleware(GZipMiddleware, minimum_size=1000)

default_trusted_hosts = (
    ["localhost", "127.0.0.1", "0.0.0.0", "[::1]", "testserver"]
    if settings.is_dev
    else ["*.run.app", "*.a.run.app"]
)
trusted_hosts = _env_list("ADG_TRUSTED_HOSTS", default_trusted_hosts)
if not settings.is_dev and "*" in trusted_hosts:
    raise RuntimeError("ADG_TRUSTED_HOSTS cannot include '*' in production")
app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

# API-only service: nothing is rendered, so the CSP can stay closed
SECURE_HEADERS = Secure(
    hsts=StrictTransportSecurity().max_age(63072000).include_subdomains().preload(),
    xfo=XFrameOptions().deny(),
    referrer=ReferrerPolicy().strict_origin_when_cross_origin(),
    csp=ContentSecurityPolicy().default_src("'none'"),
    xcto=XContentTypeOptions().nosniff(),
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, secure_headers: Secure) -> None:
        super().__init__(app)
        self.secure_headers = secure_headers

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        await self.secure_headers.set_headers_async(response)
        # Avoid sending HSTS on cleartext requests to keep local dev/proxy setups flexible.
        if settings.is_dev and request.url.scheme not in ("https", "wss"):
            if "Strict-Transport-Security" in response.headers:
                del response.headers["Strict-Transport-Security"]

        # Balances and operations must never be served from a shared cache
        if request.url.path.startswith(("/credits/", "/generation/", "/webhooks/")):
            response.headers["Cache-Control"] = "no-store"

        return response


app.add_middleware(
    SecurityHeadersMiddleware,
    secure_headers=SECURE_HEADERS,
)

if settings.force_https:
    app.add_middleware(HTTPSRedirectMiddleware)

# Trust proxy headers only from known proxy networks (Cloud Run / local dev).
# Added last (executed first) so request.client.host & scheme are correct.
proxy_trusted_hosts: list[str] | str = (
    "*"
    if settings.is_dev
    else _env_list(
        "ADG_PROXY_TRUSTED_HOSTS",
        [
            "127.0.0.1",
            "::1",
            "10.0.0.0/8",
            "172.16.0.0/12",
            "192.168.0.0/16",
        ],
    )
)
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=proxy_trusted_hosts)

# Include Routers
app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(credits.router, prefix="/credits", tags=["credits"])
app.include_router(generation.router, prefix="/generation", tags=["generation"])
app.include_router(billing.router, prefix="/billing", tags=["billing"])

@app.get("/health")
def health_check(db: Database = Depends(get_db)):
    database_ok = db.ping()
    return JSONResponse(
        status_code=200 if database_ok else 503,
        content={
            "status": "ok" if database_ok else "degraded",
            "service": "ad-credit-ledger-api",
            "app_env": settings.app_env.value,
            "database": "ok" if database_ok else "unavailable",
        },
    )
