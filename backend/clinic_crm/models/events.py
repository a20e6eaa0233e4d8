"""Append-only lead activity: booking webhooks, staff timeline, contact attempts, notes."""

import uuid
from datetime import datetime

from sqlalchemy import String, Text, DateTime, ForeignKey, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from clinic_crm.database import Base, JSONType


class CalWebhookEvent(Base):
    __tablename__ = "cal_webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_type: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)  # booking.created, ...
    trigger_event: Mapped[str | None] = mapped_column(String(50), nullable=True)  # raw value, e.g. BOOKING_CREATED
    cal_booking_uid: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    cal_booking_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lead_id: Mapped[str | None] = mapped_column(String(100), ForeignKey("leads.id"), nullable=True, index=True)
    payload: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


class LeadTimelineEvent(Base):
    __tablename__ = "lead_timeline_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[str] = mapped_column(String(100), ForeignKey("leads.id"), nullable=False, index=True)
    stage: Mapped[str] = mapped_column(String(50), nullable=False)  # doctor_reviewed, status_changed, ...
    actor_role: Mapped[str | None] = mapped_column(String(20), nullable=True)  # admin, doctor, employee, patient, system
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


class LeadContactEvent(Base):
    __tablename__ = "lead_contact_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[str] = mapped_column(String(100), ForeignKey("leads.id"), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # phone, whatsapp, email, sms, other
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


class LeadNote(Base):
    __tablename__ = "lead_notes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[str] = mapped_column(String(100), ForeignKey("leads.id"), nullable=False, index=True)
    note: Mapped[str] = mapped_column(Text, nullable=False)
    actor_role: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
