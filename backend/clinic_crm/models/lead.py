"""Patient lead model."""

import uuid
from datetime import datetime

from sqlalchemy import String, Text, Integer, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from clinic_crm.database import Base, JSONType


def generate_lead_uuid() -> str:
    return str(uuid.uuid4())


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)  # lead_<ms>_<8 hex>
    lead_uuid: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True, default=generate_lead_uuid)
    case_id: Mapped[str | None] = mapped_column(String(20), unique=True, nullable=True, index=True)  # GH-2025-0421

    # Contact info
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Intake
    treatment: Mapped[str | None] = mapped_column(String(255), nullable=True)
    timeline: Mapped[str | None] = mapped_column(String(100), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str | None] = mapped_column(String(50), nullable=True)  # onboarding, cal.com, form
    lang: Mapped[str | None] = mapped_column(String(10), nullable=True)
    page_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    referrer: Mapped[str | None] = mapped_column(Text, nullable=True)
    utm_source: Mapped[str | None] = mapped_column(String(255), nullable=True)
    utm_medium: Mapped[str | None] = mapped_column(String(255), nullable=True)
    utm_campaign: Mapped[str | None] = mapped_column(String(255), nullable=True)
    utm_term: Mapped[str | None] = mapped_column(String(255), nullable=True)
    utm_content: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(30), default="new")  # new, contacted, booked, merged, closed, lost

    # Doctor review
    doctor_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    doctor_review_status: Mapped[str | None] = mapped_column(String(20), nullable=True)  # pending, needs_info, reviewed
    doctor_review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    doctor_assigned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    doctor_reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    assigned_to: Mapped[str | None] = mapped_column(String(100), nullable=True)  # employee user id

    # Patient portal
    portal_token: Mapped[str | None] = mapped_column(String(100), nullable=True)
    portal_status: Mapped[str | None] = mapped_column(String(30), nullable=True)  # pending_review, active
    portal_state: Mapped[str | None] = mapped_column(String(30), nullable=True)  # verified
    email_verified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Booking (Cal.com)
    cal_booking_uid: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    cal_booking_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    meeting_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    meeting_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Risk analysis
    ai_risk_score: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 0-100
    ai_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_last_analyzed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_contacted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Free-form metadata: intake payload, ip/ua, merged_into/merged_at/merged_reason
    meta: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        """Column values as a plain field bag."""
        return {c.key: getattr(self, c.key) for c in self.__table__.columns}

    def __repr__(self) -> str:
        return f"<Lead {self.id} {self.case_id}>"
