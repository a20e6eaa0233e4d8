#!/usr/bin/env python3
"""Seed the database with demo leads, a doctor assignment and a booking event."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

import asyncio
from datetime import datetime, timedelta

from sqlalchemy import select

from clinic_crm.database import async_session
from clinic_crm.models.lead import Lead
from clinic_crm.models.events import CalWebhookEvent, LeadNote
from clinic_crm.services.leads import generate_lead_id, generate_portal_token

DEMO_DOCTOR_ID = "doctor-demo"
DEMO_EMPLOYEE_ID = "employee-demo"


async def seed():
    async with async_session() as session:
        existing = (await session.execute(select(Lead).where(Lead.case_id == "GH-DEMO-0001"))).scalar_one_or_none()
        if existing:
            print(f"Demo leads already exist: {existing.id}")
            return

        now = datetime.utcnow()
        year = now.year

        form_lead = Lead(
            id=generate_lead_id(),
            case_id="GH-DEMO-0001",
            name="Maria Keller",
            email="maria.keller@example.com",
            phone="+49 151 0000 0001",
            treatment="All-on-4 implants",
            timeline="1-3 months",
            source="onboarding",
            status="new",
            portal_token=generate_portal_token(),
            portal_status="pending_review",
            doctor_id=DEMO_DOCTOR_ID,
            doctor_review_status="pending",
            doctor_assigned_at=now,
            assigned_to=DEMO_EMPLOYEE_ID,
            created_at=now - timedelta(days=3),
        )
        booked_lead = Lead(
            id=f"cal_demo-booking-1_{int(now.timestamp() * 1000)}",
            case_id=f"GH-{year}-0001",
            name="Maria Keller",
            email="Maria.Keller@example.com",
            source="cal.com",
            status="booked",
            cal_booking_uid="demo-booking-1",
            meeting_start=now + timedelta(days=2),
            meeting_end=now + timedelta(days=2, minutes=30),
            created_at=now - timedelta(days=1),
        )
        session.add_all([form_lead, booked_lead])
        await session.flush()

        session.add(LeadNote(lead_id=form_lead.id, note="Prefers a call after 6pm CET.", actor_role="patient"))
        session.add(
            CalWebhookEvent(
                event_type="booking.rescheduled",
                trigger_event="BOOKING_RESCHEDULED",
                cal_booking_uid="demo-booking-1",
                lead_id=booked_lead.id,
                payload={"triggerEvent": "BOOKING_RESCHEDULED", "payload": {"uid": "demo-booking-1"}},
            )
        )
        await session.commit()
        print(f"Created demo leads: {form_lead.id}, {booked_lead.id} (doctor: {DEMO_DOCTOR_ID})")


if __name__ == "__main__":
    asyncio.run(seed())
