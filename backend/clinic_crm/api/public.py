"""Public patient endpoints: lead intake, portal access, e-mail verification and onboarding."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_crm.database import get_db
from clinic_crm.errors import CRMError
from clinic_crm.schemas.lead import (
    LeadIntakePayload,
    LeadIntakeResponse,
    MagicLinkRequest,
    OnboardingSubmitRequest,
    PortalLoginRequest,
    PortalPasswordRequest,
    PortalSession,
    VerificationConfirmRequest,
    VerificationSendRequest,
)
from clinic_crm.services import identity, leads, onboarding
from clinic_crm.api.health import LEADS_CREATED, VERIFICATIONS

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/public", tags=["public"])


@router.post("/leads", response_model=LeadIntakeResponse)
async def create_lead(payload: LeadIntakePayload, request: Request, db: AsyncSession = Depends(get_db)):
    """Create a lead from the public form and hand back its portal credentials."""
    request_meta = {
        "ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }
    result = await leads.create_lead(db, payload.model_dump(), request_meta)
    if result.get("id"):
        LEADS_CREATED.labels(source=payload.source or "form").inc()
    return LeadIntakeResponse(**result)


@router.post("/portal")
async def portal(session: PortalSession, db: AsyncSession = Depends(get_db)):
    data = await leads.portal_payload(db, session.case_id, session.portal_token)
    return {"ok": True, "data": data}


@router.post("/verification/send")
async def send_verification(req: VerificationSendRequest, db: AsyncSession = Depends(get_db)):
    return await identity.request_verification(db, req.case_id, req.portal_token, req.email)


@router.post("/verification/confirm")
async def confirm_verification(req: VerificationConfirmRequest, db: AsyncSession = Depends(get_db)):
    try:
        result = await identity.confirm_verification(db, req.token)
    except CRMError as e:
        VERIFICATIONS.labels(outcome=e.code).inc()
        raise
    VERIFICATIONS.labels(outcome="already" if result.already else ("merged" if result.redirect else "verified")).inc()
    return result.as_response()


@router.post("/portal/magic-link")
async def magic_link(req: MagicLinkRequest, db: AsyncSession = Depends(get_db)):
    return await identity.send_magic_link(db, req.email)


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or (request.client.host if request.client else None)


@router.post("/portal/set-password")
async def set_password(req: PortalPasswordRequest, db: AsyncSession = Depends(get_db)):
    return await identity.set_portal_password(db, req.case_id, req.portal_token, req.password)


@router.post("/portal/login")
async def login(req: PortalLoginRequest, request: Request, db: AsyncSession = Depends(get_db)):
    """E-mail and password in, portal session credentials out."""
    return await identity.login_with_password(db, req.email, req.password, client=_client_ip(request))


@router.get("/onboarding/cards")
async def onboarding_cards():
    return {"ok": True, "cards": onboarding.load_cards(), "total": len(onboarding.load_cards())}


@router.post("/onboarding/state")
async def onboarding_state(session: PortalSession, db: AsyncSession = Depends(get_db)):
    return await onboarding.get_onboarding_state(db, session.case_id, session.portal_token)


@router.post("/onboarding/submit")
async def onboarding_submit(req: OnboardingSubmitRequest, db: AsyncSession = Depends(get_db)):
    return await onboarding.submit_card(db, req.case_id, req.portal_token, req.card_id, req.answers)
