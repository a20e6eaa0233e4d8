"""Tests for doctor treatment notes and quotes."""

import pytest
from sqlalchemy import select

from clinic_crm.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from clinic_crm.models.events import LeadTimelineEvent
from clinic_crm.services import notes
from clinic_crm.services.notes import compute_totals, parse_items

from conftest import DOCTOR_ID, EMPLOYEE_ID

ITEMS = [
    {"catalog_item_name": "Zirconia crown", "qty": 2, "unit_price": 100},
    {"name": "Panoramic x-ray", "unit_price": 50.5, "catalog_item_id": "xray-1"},
]


class TestTotals:
    def test_percent_discount(self):
        assert compute_totals(parse_items(ITEMS), 10) == (250.5, 25.05, 225.45)

    def test_no_discount(self):
        assert compute_totals(parse_items(ITEMS)) == (250.5, 0.0, 250.5)

    def test_discount_clamped(self):
        assert compute_totals(parse_items(ITEMS), 150) == (250.5, 250.5, 0.0)

    def test_empty(self):
        assert compute_totals([], 20) == (0.0, 0.0, 0.0)


class TestParseItems:
    def test_positions_and_defaults(self):
        items = parse_items(ITEMS)
        assert [i["position"] for i in items] == [0, 1]
        assert items[1]["qty"] == 1
        assert items[1]["catalog_item_name"] == "Panoramic x-ray"

    def test_none_is_empty(self):
        assert parse_items(None) == []

    @pytest.mark.parametrize("raw", [
        "not a list",
        [{"qty": 1}],
        [{"catalog_item_name": "Crown", "qty": 0}],
        [{"catalog_item_name": "Crown", "unit_price": -1}],
        [{"catalog_item_name": "Crown", "qty": "many"}],
        ["crown"],
    ])
    def test_invalid(self, raw):
        with pytest.raises(ValidationError):
            parse_items(raw)


async def approved_note(db, lead_id):
    note = await notes.create_doctor_note(db, lead_id, DOCTOR_ID, "Initial plan")
    await notes.save_doctor_note(db, note.id, DOCTOR_ID, "Two crowns", ITEMS)
    return await notes.approve_doctor_note(db, note.id, DOCTOR_ID)


class TestDoctorNotes:
    async def test_lifecycle(self, db, make_lead):
        lead = await make_lead(doctor_id=DOCTOR_ID)
        note = await notes.create_doctor_note(db, lead.id, DOCTOR_ID)
        assert note.status == "draft"
        assert note.items == []

        saved = await notes.save_doctor_note(db, str(note.id), DOCTOR_ID, "Two crowns", ITEMS)
        assert [i.catalog_item_name for i in saved.items] == ["Zirconia crown", "Panoramic x-ray"]

        approved = await notes.approve_doctor_note(db, str(note.id), DOCTOR_ID)
        assert approved.status == "approved"
        assert approved.approved_by == DOCTOR_ID

        stages = (await db.execute(select(LeadTimelineEvent.stage))).scalars().all()
        assert stages == ["doctor_note_approved"]

    async def test_approved_note_frozen(self, db, make_lead):
        lead = await make_lead(doctor_id=DOCTOR_ID)
        note = await approved_note(db, lead.id)
        with pytest.raises(ConflictError):
            await notes.save_doctor_note(db, note.id, DOCTOR_ID, "edit", [])
        with pytest.raises(ConflictError):
            await notes.approve_doctor_note(db, note.id, DOCTOR_ID)

    async def test_unassigned_lead(self, db, make_lead):
        lead = await make_lead(doctor_id="someone-else")
        with pytest.raises(ForbiddenError):
            await notes.create_doctor_note(db, lead.id, DOCTOR_ID)

    async def test_other_doctor_note(self, db, make_lead):
        lead = await make_lead(doctor_id=DOCTOR_ID)
        note = await notes.create_doctor_note(db, lead.id, DOCTOR_ID)
        with pytest.raises(NotFoundError):
            await notes.save_doctor_note(db, note.id, "doctor-2", "x", [])

    async def test_bad_note_id(self, db):
        with pytest.raises(NotFoundError):
            await notes.approve_doctor_note(db, "not-a-uuid", DOCTOR_ID)


class TestQuotes:
    async def test_from_note_save_and_send(self, db, make_lead):
        lead = await make_lead(doctor_id=DOCTOR_ID, assigned_to=EMPLOYEE_ID)
        note = await approved_note(db, lead.id)

        quote = await notes.create_quote_from_note(db, str(note.id), EMPLOYEE_ID, "employee")
        assert quote.status == "draft"
        assert quote.quote_number.startswith("QUOTE-")
        assert quote.subtotal == 250.5
        assert quote.total == 250.5
        assert len(quote.items) == 2

        saved = await notes.save_quote(db, str(quote.id), EMPLOYEE_ID, "employee", ITEMS, discount=10)
        assert saved.discount == 10
        assert saved.total == 225.45

        sent = await notes.send_quote(db, str(quote.id), EMPLOYEE_ID, "employee")
        assert sent.status == "sent"
        assert sent.sent_at is not None

        with pytest.raises(ConflictError):
            await notes.send_quote(db, str(quote.id), EMPLOYEE_ID, "employee")
        with pytest.raises(ConflictError):
            await notes.save_quote(db, str(quote.id), EMPLOYEE_ID, "employee", ITEMS)

        stages = (await db.execute(select(LeadTimelineEvent.stage))).scalars().all()
        assert "quote_sent" in stages

    async def test_employee_must_be_assigned(self, db, make_lead):
        lead = await make_lead(doctor_id=DOCTOR_ID, assigned_to="employee-2")
        note = await approved_note(db, lead.id)
        with pytest.raises(ForbiddenError):
            await notes.create_quote_from_note(db, note.id, EMPLOYEE_ID, "employee")

    async def test_admin_bypasses_assignment(self, db, make_lead):
        lead = await make_lead(doctor_id=DOCTOR_ID)
        note = await approved_note(db, lead.id)
        quote = await notes.create_quote_from_note(db, note.id, "admin@example.com", "admin")
        assert quote.lead_id == lead.id

    async def test_draft_note_rejected(self, db, make_lead):
        lead = await make_lead(doctor_id=DOCTOR_ID, assigned_to=EMPLOYEE_ID)
        note = await notes.create_doctor_note(db, lead.id, DOCTOR_ID)
        with pytest.raises(NotFoundError):
            await notes.create_quote_from_note(db, note.id, EMPLOYEE_ID, "employee")
