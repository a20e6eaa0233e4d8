"""Doctor notes and the quotes derived from them."""

import uuid
from datetime import datetime

from sqlalchemy import String, Text, Float, Integer, DateTime, ForeignKey, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clinic_crm.database import Base


class DoctorNote(Base):
    __tablename__ = "doctor_notes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[str] = mapped_column(String(100), ForeignKey("leads.id"), nullable=False, index=True)
    doctor_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    note_markdown: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="draft")  # draft, approved
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items: Mapped[list["DoctorNoteItem"]] = relationship(
        back_populates="note", cascade="all, delete-orphan", order_by="DoctorNoteItem.position", lazy="selectin",
    )


class DoctorNoteItem(Base):
    __tablename__ = "doctor_note_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    doctor_note_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("doctor_notes.id"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    catalog_item_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    catalog_item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    qty: Mapped[int] = mapped_column(Integer, default=1)
    unit_price: Mapped[float] = mapped_column(Float, default=0.0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    note: Mapped[DoctorNote] = relationship(back_populates="items")


class Quote(Base):
    __tablename__ = "quotes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[str] = mapped_column(String(100), ForeignKey("leads.id"), nullable=False, index=True)
    doctor_note_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("doctor_notes.id"), nullable=False)
    quote_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)  # QUOTE-<ms>
    status: Mapped[str] = mapped_column(String(20), default="draft")  # draft, sent
    currency: Mapped[str] = mapped_column(String(3), default="EUR")
    subtotal: Mapped[float] = mapped_column(Float, default=0.0)
    discount: Mapped[float] = mapped_column(Float, default=0.0)
    total: Mapped[float] = mapped_column(Float, default=0.0)
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items: Mapped[list["QuoteItem"]] = relationship(
        back_populates="quote", cascade="all, delete-orphan", order_by="QuoteItem.position", lazy="selectin",
    )


class QuoteItem(Base):
    __tablename__ = "quote_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    quote_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("quotes.id"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    catalog_item_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    catalog_item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    qty: Mapped[int] = mapped_column(Integer, default=1)
    unit_price: Mapped[float] = mapped_column(Float, default=0.0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    quote: Mapped[Quote] = relationship(back_populates="items")
