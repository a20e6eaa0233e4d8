"""Patient portal models: e-mail verification tokens, onboarding progress and password login."""

import uuid
from datetime import datetime

from sqlalchemy import String, Integer, DateTime, ForeignKey, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from clinic_crm.database import Base, JSONType


class LeadEmailVerification(Base):
    __tablename__ = "lead_email_verifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[str] = mapped_column(String(100), ForeignKey("leads.id"), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)  # sha256 hex
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class LeadOnboardingState(Base):
    __tablename__ = "lead_onboarding_state"

    lead_id: Mapped[str] = mapped_column(String(100), ForeignKey("leads.id"), primary_key=True)
    completed_card_ids: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    progress_percent: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class LeadOnboardingAnswer(Base):
    __tablename__ = "lead_onboarding_answers"
    __table_args__ = (UniqueConstraint("lead_id", "card_id", name="uq_onboarding_answer_card"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[str] = mapped_column(String(100), ForeignKey("leads.id"), nullable=False, index=True)
    card_id: Mapped[str] = mapped_column(String(50), nullable=False)
    answers: Mapped[dict] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class LeadPortalAuth(Base):
    """Optional patient password for portal login; one row per lead."""

    __tablename__ = "lead_portal_auth"

    lead_id: Mapped[str] = mapped_column(String(100), ForeignKey("leads.id"), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(100), nullable=False)  # bcrypt
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
