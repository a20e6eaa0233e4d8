"""FastAPI application entry point."""

import hmac

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from clinic_crm.config import settings
from clinic_crm.errors import CRMError, UpdateFailedError
from clinic_crm.api import admin, doctor, employee, health, public, webhooks
from clinic_crm.api.health import ERRORS
from clinic_crm.middleware.auth import create_admin_token

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(0),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)

logger = structlog.get_logger()

app = FastAPI(
    title=settings.app_name,
    description="Dental-tourism clinic lead CRM and patient portal",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS - allow the public site and staff frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.public_site_url, "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CRMError)
async def crm_error_handler(request: Request, exc: CRMError):
    if exc.status_code >= 500:
        ERRORS.labels(type=exc.code).inc()
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    body = {"ok": False, "error": exc.message}
    if isinstance(exc, UpdateFailedError) and exc.result is not None:
        body["ai_risk_score"] = getattr(exc.result, "score", None)
    return JSONResponse(status_code=exc.status_code, content=body)


# Mount routers
app.include_router(health.router, prefix=settings.api_prefix)
app.include_router(public.router, prefix=settings.api_prefix)
app.include_router(webhooks.router, prefix=settings.api_prefix)
app.include_router(admin.router, prefix=settings.api_prefix)
app.include_router(doctor.router, prefix=settings.api_prefix)
app.include_router(employee.router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "docs": "/docs",
    }


class LoginRequest(BaseModel):
    email: str
    password: str


class LoginResponse(BaseModel):
    token: str
    email: str


@app.post(f"{settings.api_prefix}/auth/login", response_model=LoginResponse)
async def login(req: LoginRequest):
    """Simple admin login. Returns JWT token."""
    email_ok = hmac.compare_digest(req.email.strip().lower().encode(), settings.admin_email.lower().encode())
    password_ok = hmac.compare_digest(req.password.encode(), settings.admin_password.encode())
    if email_ok and password_ok:
        token = create_admin_token(settings.admin_email)
        return LoginResponse(token=token, email=settings.admin_email)
    raise HTTPException(status_code=401, detail="Invalid credentials")
