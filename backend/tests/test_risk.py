"""Tests for risk scoring, call-brief generation and persistence."""

from datetime import datetime, timedelta

import pytest

from clinic_crm.errors import NotFoundError
from clinic_crm.models.events import CalWebhookEvent, LeadNote
from clinic_crm.models.lead import Lead
from clinic_crm.services.risk import (
    MAX_BULLETS,
    analyze_lead,
    assess_lead_risk,
    priority_line,
)

NOW = datetime(2025, 3, 10, 12, 0)
T0 = datetime(2025, 3, 1, 9, 0)


def event(event_type, at):
    return {"event_type": event_type, "received_at": at}


class TestPriorityLine:
    def test_thresholds(self):
        assert priority_line(100).startswith("High risk")
        assert priority_line(70).startswith("High risk")
        assert priority_line(69).startswith("Medium risk")
        assert priority_line(40).startswith("Medium risk")
        assert priority_line(39).startswith("Low risk: Minor issues")
        assert priority_line(20).startswith("Low risk: Minor issues")
        assert priority_line(19).startswith("Low risk: No major concerns")
        assert priority_line(0).startswith("Low risk: No major concerns")


class TestAssessLeadRisk:
    def test_no_events(self):
        lead = {"phone": "+49 151 000", "notes": "Wants veneers", "source": "form"}
        result = assess_lead_risk(lead, [], now=NOW)
        assert result.score == 0
        assert result.what_happened[0] == "No booking events recorded"
        assert "Source: form" in result.what_happened
        assert result.priority.startswith("Low risk: No major concerns")

    def test_booking_without_context(self):
        result = assess_lead_risk({}, [event("booking.created", NOW - timedelta(days=2))], now=NOW)
        assert result.score == 15
        assert result.matched_rules == ["booking_without_context"]
        assert result.what_happened[0] == "Booking created 2 days ago (Mar 8)"
        assert "Ask for a phone number for easier communication" in result.what_to_say

    def test_phone_removes_context_penalty(self):
        result = assess_lead_risk({"phone": "+49 151 000"}, [event("booking.created", T0)], now=NOW)
        assert result.score == 0

    def test_single_reschedule(self):
        events = [event("booking.created", T0), event("booking.rescheduled", T0 + timedelta(days=2))]
        result = assess_lead_risk({"phone": "+49 151 000"}, events, now=NOW)
        assert result.score == 25
        assert "Rescheduled 1 time" in result.what_happened
        assert result.priority.startswith("Low risk: Minor issues")
        assert result.what_to_say[0].startswith("Acknowledge the schedule changes")

    def test_cancelled_is_medium(self):
        result = assess_lead_risk({"phone": "+49 151 000"}, [event("booking.cancelled", T0)], now=NOW)
        assert result.score == 40
        assert result.priority.startswith("Medium risk")
        assert result.what_to_say[0].startswith("Open with empathy")

    def test_score_clamped(self):
        events = [
            event("booking.created", T0),
            event("booking.rescheduled", T0 + timedelta(hours=1)),
            event("booking.rescheduled", T0 + timedelta(days=2)),
            event("booking.cancelled", T0 + timedelta(days=3)),
        ]
        result = assess_lead_risk({}, events, now=NOW)
        assert result.score == 100
        assert set(result.matched_rules) == {"rescheduled", "cancelled", "booking_without_context", "rapid_changes"}
        assert result.priority.startswith("High risk")
        assert result.what_happened[1] == "Rescheduled 2 times, a pattern of changes"

    def test_rapid_changes(self):
        events = [
            event("booking.created", T0),
            event("booking.rescheduled", T0 + timedelta(hours=3)),
        ]
        result = assess_lead_risk({"phone": "+49 151 000"}, events, now=NOW)
        assert result.score == 35
        assert "rapid_changes" in result.matched_rules

    def test_bullets_capped(self):
        events = [
            event("booking.created", T0),
            event("booking.rescheduled", T0 + timedelta(days=2)),
            event("booking.cancelled", T0 + timedelta(days=4)),
        ]
        result = assess_lead_risk({"source": "cal.com"}, events, notes=[{"note": "x"}], now=NOW)
        assert len(result.what_happened) <= MAX_BULLETS
        assert len(result.what_to_say) <= MAX_BULLETS

    def test_note_fallback(self):
        result = assess_lead_risk({"phone": "1"}, [], notes=[{"note": "a"}, {"note": "b"}], now=NOW)
        assert "2 internal notes on file" in result.what_happened

    def test_non_booking_events_use_fallback(self):
        events = [event("ping", T0), event("meeting.ended", T0 + timedelta(days=1))]
        result = assess_lead_risk({"phone": "1", "notes": "x"}, events, now=NOW)
        assert result.what_happened == ["No booking events recorded"]
        assert "WHAT HAPPENED\n• No booking events recorded" in result.summary

    def test_events_fall_back_to_created_at(self):
        events = [{"event_type": "booking.created", "created_at": NOW}]
        result = assess_lead_risk({}, events, now=NOW)
        assert result.what_happened[0] == "Booking created today (Mar 10)"

    def test_summary_format(self):
        result = assess_lead_risk({}, [], now=NOW)
        lines = result.summary.splitlines()
        assert lines[0] == "CALL BRIEF"
        assert lines[1] == "Risk score: 0/100"
        assert "WHAT HAPPENED" in lines
        assert "WHAT TO SAY" in lines
        assert lines[-2] == "PRIORITY"
        assert any(line.startswith("• ") for line in lines)

    def test_deterministic(self):
        events = [event("booking.created", T0), event("booking.cancelled", T0 + timedelta(days=1))]
        first = assess_lead_risk({"source": "cal.com"}, events, now=NOW)
        second = assess_lead_risk({"source": "cal.com"}, list(events), now=NOW)
        assert first.summary == second.summary
        assert first.score == second.score


class TestAnalyzeLead:
    async def test_persists_score_and_summary(self, db, make_lead):
        lead = await make_lead(id="lead_risk", cal_booking_uid="uid-1")
        db.add(CalWebhookEvent(event_type="booking.created", cal_booking_uid="uid-1", received_at=T0))
        db.add(CalWebhookEvent(event_type="booking.cancelled", lead_id="lead_risk", received_at=T0 + timedelta(days=2)))
        db.add(LeadNote(lead_id="lead_risk", note="Asked about financing"))
        await db.commit()

        assessment = await analyze_lead(db, lead.id, now=NOW)

        assert assessment.score == 55
        stored = await db.get(Lead, "lead_risk")
        assert stored.ai_risk_score == 55
        assert stored.ai_summary == assessment.summary
        assert stored.ai_last_analyzed_at == NOW

    async def test_missing_lead(self, db):
        with pytest.raises(NotFoundError):
            await analyze_lead(db, "nope")


class TestScoreRange:
    def test_reschedules_and_cancel_is_high_risk(self):
        events = [
            event("booking.rescheduled", T0),
            event("booking.rescheduled", T0 + timedelta(days=2)),
            event("booking.cancelled", T0 + timedelta(days=4)),
        ]
        result = assess_lead_risk({"phone": "+49 151 000"}, events, now=NOW)
        assert result.score == 90
        assert result.priority.startswith("High risk")

    @pytest.mark.parametrize("types", [
        [],
        ["booking.created"],
        ["booking.rescheduled"] * 6,
        ["booking.created", "booking.cancelled", "booking.cancelled"],
        ["booking.created"] + ["booking.rescheduled"] * 3 + ["booking.cancelled"],
        ["meeting.ended", "ping"],
    ])
    def test_always_in_bounds(self, types):
        events = [event(t, T0 + timedelta(hours=i)) for i, t in enumerate(types)]
        result = assess_lead_risk({}, events, now=NOW)
        assert 0 <= result.score <= 100


class TestRefreshLeads:
    async def test_open_leads_only(self, db, make_lead):
        from clinic_crm.workers.risk_refresh import refresh_leads

        open_lead = await make_lead()
        merged = await make_lead(status="merged")

        summary = await refresh_leads(db)

        assert summary == {"analyzed": 1, "skipped": [], "failed": []}
        assert (await db.get(Lead, open_lead.id)).ai_risk_score == 0
        assert (await db.get(Lead, merged.id)).ai_risk_score is None

    async def test_missing_ids_skipped(self, db, make_lead):
        from clinic_crm.workers.risk_refresh import refresh_leads

        lead = await make_lead()
        summary = await refresh_leads(db, [lead.id, "missing"])
        assert summary == {"analyzed": 1, "skipped": ["missing"], "failed": []}
