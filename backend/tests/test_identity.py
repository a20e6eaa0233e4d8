"""Tests for portal sessions, e-mail verification and canonical lead merge."""

from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import func, select

from clinic_crm.config import Settings, settings
from clinic_crm.errors import (
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
    RateLimitedError,
    TokenExpiredError,
    UnauthorizedError,
    ValidationError,
)
from clinic_crm.models.events import LeadContactEvent, LeadNote
from clinic_crm.models.lead import Lead
from clinic_crm.models.portal import LeadEmailVerification, LeadPortalAuth
from clinic_crm.services.identity import (
    MAGIC_LINK_MESSAGE,
    MERGE_REASON,
    LoginThrottle,
    confirm_verification,
    hash_token,
    login_with_password,
    request_verification,
    select_canonical,
    send_magic_link,
    set_portal_password,
    unified_patient_view,
    validate_portal_session,
)


def token_from(response: dict) -> str:
    return parse_qs(urlparse(response["verify_url"]).query)["token"][0]


async def issue_token(db, lead: Lead, email: str) -> str:
    response = await request_verification(db, lead.case_id, lead.portal_token, email)
    return token_from(response)


async def all_leads(db) -> list[Lead]:
    result = await db.execute(select(Lead).order_by(Lead.created_at))
    return list(result.scalars().all())


class TestSelectCanonical:
    def test_earliest_active(self):
        leads = [
            {"id": "b", "status": "new", "created_at": datetime(2025, 1, 2)},
            {"id": "a", "status": "closed", "created_at": datetime(2025, 1, 1)},
            {"id": "c", "status": "contacted", "created_at": datetime(2025, 1, 3)},
        ]
        assert select_canonical(leads)["id"] == "b"

    def test_ties_keep_input_order(self):
        same = datetime(2025, 1, 1)
        leads = [{"id": "x", "status": "new", "created_at": same}, {"id": "y", "status": "new", "created_at": same}]
        assert select_canonical(leads)["id"] == "x"

    def test_no_eligible(self):
        leads = [{"id": "a", "status": "closed"}, {"id": "b", "status": "merged"}]
        assert select_canonical(leads) is None
        assert select_canonical([]) is None


class TestPortalSession:
    async def test_valid(self, db, make_lead):
        lead = await make_lead()
        assert (await validate_portal_session(db, lead.case_id, lead.portal_token)).id == lead.id

    async def test_wrong_token(self, db, make_lead):
        lead = await make_lead()
        with pytest.raises(UnauthorizedError):
            await validate_portal_session(db, lead.case_id, "wrong")

    async def test_missing_values(self, db):
        with pytest.raises(UnauthorizedError):
            await validate_portal_session(db, None, "x")
        with pytest.raises(UnauthorizedError):
            await validate_portal_session(db, "GH-TEST-0001", "")


class TestRequestVerification:
    async def test_stores_hashed_token(self, db, make_lead):
        lead = await make_lead()
        response = await request_verification(db, lead.case_id, lead.portal_token, " Jane@Example.com ")

        assert response["ok"] is True
        assert "verify-email?token=" in response["verify_url"]
        token = token_from(response)
        row = (await db.execute(select(LeadEmailVerification))).scalar_one()
        assert row.token_hash == hash_token(token)
        assert row.token_hash != token
        assert row.email == "jane@example.com"

    async def test_new_request_replaces_pending(self, db, make_lead):
        lead = await make_lead()
        await issue_token(db, lead, "jane@example.com")
        second = await issue_token(db, lead, "jane@example.com")

        rows = (await db.execute(select(LeadEmailVerification))).scalars().all()
        assert len(rows) == 1
        assert rows[0].token_hash == hash_token(second)

    async def test_requires_email(self, db, make_lead):
        lead = await make_lead()
        with pytest.raises(ValidationError):
            await request_verification(db, lead.case_id, lead.portal_token, "not-an-email")

    async def test_verified_email_cannot_change(self, db, make_lead):
        lead = await make_lead(email="jane@example.com", email_verified_at=datetime(2025, 1, 5))
        with pytest.raises(ForbiddenError):
            await request_verification(db, lead.case_id, lead.portal_token, "other@example.com")

    async def test_invalid_session(self, db, make_lead):
        lead = await make_lead()
        with pytest.raises(UnauthorizedError):
            await request_verification(db, lead.case_id, "wrong", "jane@example.com")

    async def test_link_hidden_by_default(self, db, make_lead, monkeypatch):
        assert Settings.model_fields["expose_verify_url"].default is False
        monkeypatch.setattr(settings, "expose_verify_url", False)
        lead = await make_lead()

        response = await request_verification(db, lead.case_id, lead.portal_token, "jane@example.com")

        assert response["ok"] is True
        assert "verify_url" not in response

    async def test_link_hidden_in_production(self, db, make_lead, monkeypatch):
        monkeypatch.setattr(settings, "environment", "production")
        lead = await make_lead()
        response = await request_verification(db, lead.case_id, lead.portal_token, "jane@example.com")
        assert "verify_url" not in response


class TestConfirmVerification:
    async def test_single_lead(self, db, make_lead):
        lead = await make_lead()
        token = await issue_token(db, lead, "jane@example.com")

        result = await confirm_verification(db, token)

        assert result.already is False
        assert result.lead_id == lead.id
        assert result.redirect is False
        assert result.as_response()["case_id"] == lead.case_id
        stored = await db.get(Lead, lead.id)
        assert stored.email == "jane@example.com"
        assert stored.email_verified_at is not None
        assert stored.portal_state == "verified"
        assert stored.portal_status == "active"

    async def test_merges_onto_earliest_lead(self, db, make_lead):
        first = await make_lead(email="Jane@Example.com", status="new")
        second = await make_lead(email="jane@example.com", status="contacted")
        newest = await make_lead(email="other@example.com")
        token = await issue_token(db, newest, "jane@example.com")

        result = await confirm_verification(db, token)

        assert result.lead_id == first.id
        assert result.case_id == first.case_id
        assert result.portal_token == first.portal_token
        assert result.redirect is True

        leads = {lead.id: lead for lead in await all_leads(db)}
        assert leads[first.id].status == "new"
        assert leads[first.id].email_verified_at is not None
        for lead_id, before in ((second.id, "contacted"), (newest.id, "new")):
            merged = leads[lead_id]
            assert merged.status == "merged"
            assert merged.meta["merged_into"] == first.id
            assert merged.meta["merged_reason"] == MERGE_REASON
            assert merged.meta["status_before_merge"] == before

        active = [lead for lead in leads.values() if lead.status not in ("merged", "closed")]
        assert [lead.id for lead in active] == [first.id]

    async def test_second_confirm_is_already(self, db, make_lead):
        lead = await make_lead()
        token = await issue_token(db, lead, "jane@example.com")
        await confirm_verification(db, token)

        again = await confirm_verification(db, token)

        assert again.already is True
        assert again.as_response() == {"ok": True, "already": True}

    async def test_second_confirm_changes_nothing(self, db, make_lead):
        canonical = await make_lead(email="jane@example.com")
        duplicate = await make_lead()
        token = await issue_token(db, duplicate, "jane@example.com")
        await confirm_verification(db, token, now=datetime.utcnow())

        def snapshot(leads, verification):
            return (
                [(l.id, l.status, l.email_verified_at, l.updated_at, dict(l.meta or {})) for l in leads],
                verification.verified_at,
            )

        verification = (await db.execute(select(LeadEmailVerification))).scalar_one()
        before = snapshot(await all_leads(db), verification)

        again = await confirm_verification(db, token, now=datetime.utcnow() + timedelta(minutes=5))

        assert again.already is True
        db.expire_all()
        verification = (await db.execute(select(LeadEmailVerification))).scalar_one()
        assert snapshot(await all_leads(db), verification) == before
        assert again.lead_id == canonical.id

    async def test_closed_lead_never_merged(self, db, make_lead):
        closed = await make_lead(email="jane@example.com", status="closed")
        lead = await make_lead()
        token = await issue_token(db, lead, "jane@example.com")

        result = await confirm_verification(db, token)

        assert result.lead_id == lead.id
        assert result.redirect is False
        assert (await db.get(Lead, closed.id)).status == "closed"

    async def test_merged_lead_restored_when_alone(self, db, make_lead):
        lead = await make_lead(
            status="merged",
            meta={"merged_into": "lead_gone", "status_before_merge": "contacted", "merged_reason": MERGE_REASON},
        )
        token = await issue_token(db, lead, "solo@example.com")

        result = await confirm_verification(db, token)

        stored = await db.get(Lead, lead.id)
        assert result.lead_id == lead.id
        assert stored.status == "contacted"
        assert "merged_into" not in stored.meta

    async def test_previously_merged_rows_repointed(self, db, make_lead):
        old_target = await make_lead(email="jane@example.com", status="closed")
        earliest = await make_lead(email="jane@example.com")
        stale = await make_lead(
            email="jane@example.com", status="merged",
            meta={"merged_into": old_target.id, "status_before_merge": "new"},
        )
        verifying = await make_lead()
        token = await issue_token(db, verifying, "jane@example.com")

        await confirm_verification(db, token)

        stored = await db.get(Lead, stale.id)
        assert stored.meta["merged_into"] == earliest.id
        assert stored.meta["status_before_merge"] == "new"

    async def test_one_active_lead_after_repeated_verifications(self, db, make_lead):
        first = await make_lead(email="jane@example.com", status="contacted")
        await make_lead(email="jane@example.com", status="closed")
        second = await make_lead()
        third = await make_lead()

        for lead in (third, second, first, third):
            token = await issue_token(db, lead, "jane@example.com")
            await confirm_verification(db, token)

        family = [lead for lead in await all_leads(db) if lead.email == "jane@example.com"]
        active = [lead for lead in family if lead.status not in ("merged", "closed")]
        assert [lead.id for lead in active] == [first.id]
        for lead in family:
            if lead.status == "merged":
                assert lead.meta["merged_into"] == first.id

    async def test_expired(self, db, make_lead):
        lead = await make_lead()
        token = await issue_token(db, lead, "jane@example.com")
        with pytest.raises(TokenExpiredError):
            await confirm_verification(db, token, now=datetime.utcnow() + timedelta(days=1))

    async def test_invalid_token(self, db):
        with pytest.raises(InvalidTokenError):
            await confirm_verification(db, "deadbeef")
        with pytest.raises(InvalidTokenError):
            await confirm_verification(db, "")


class TestMagicLink:
    async def test_unknown_email_is_generic(self, db):
        response = await send_magic_link(db, "nobody@example.com")
        assert response == {"ok": True, "message": MAGIC_LINK_MESSAGE}
        count = (await db.execute(select(func.count()).select_from(LeadEmailVerification))).scalar_one()
        assert count == 0

    async def test_known_email_targets_canonical(self, db, make_lead):
        first = await make_lead(email="jane@example.com")
        await make_lead(email="jane@example.com")

        response = await send_magic_link(db, "JANE@example.com")

        assert response == {"ok": True, "message": MAGIC_LINK_MESSAGE}
        row = (await db.execute(select(LeadEmailVerification))).scalar_one()
        assert row.lead_id == first.id

    async def test_requires_email(self, db):
        with pytest.raises(ValidationError):
            await send_magic_link(db, "  ")


class TestUnifiedPatientView:
    async def test_merges_activity(self, db, make_lead):
        first = await make_lead(email="jane@example.com")
        second = await make_lead(email="Jane@example.com", status="merged")
        db.add(LeadNote(lead_id=first.id, note="First call", created_at=datetime(2025, 2, 1)))
        db.add(LeadContactEvent(lead_id=second.id, channel="whatsapp", created_at=datetime(2025, 2, 3)))
        await db.commit()

        view = await unified_patient_view(db, "jane@example.com")

        assert view["canonical_lead"]["id"] == first.id
        assert view["canonical_lead"]["is_canonical"] is True
        assert [lead["id"] for lead in view["historical_leads"]] == [second.id]
        assert view["stats"]["total_leads"] == 2
        assert view["stats"]["total_notes"] == 1
        assert view["stats"]["total_contact_events"] == 1
        assert view["stats"]["total_timeline_events"] == 0
        assert view["unified_timeline"][0]["type"] == "contact"
        assert view["stats"]["last_activity"] == "2025-02-03T00:00:00"
        assert view["stats"]["first_contact"] == first.created_at.isoformat()

    async def test_unknown_email(self, db):
        with pytest.raises(NotFoundError):
            await unified_patient_view(db, "nobody@example.com")


async def verified_lead(make_lead, **overrides):
    return await make_lead(email="jane@example.com", email_verified_at=datetime(2025, 1, 5), **overrides)


class TestPortalPassword:
    async def test_set_and_login(self, db, make_lead):
        lead = await verified_lead(make_lead)

        assert await set_portal_password(db, lead.case_id, lead.portal_token, "correct horse") == {
            "ok": True, "has_password": True,
        }
        auth = await db.get(LeadPortalAuth, lead.id)
        assert auth.password_hash != "correct horse"
        assert auth.email == "jane@example.com"

        session = await login_with_password(db, " Jane@Example.com ", "correct horse", client="10.0.0.1")
        assert session == {"ok": True, "case_id": lead.case_id, "portal_token": lead.portal_token}

    async def test_reset_replaces_hash(self, db, make_lead):
        lead = await verified_lead(make_lead)
        await set_portal_password(db, lead.case_id, lead.portal_token, "first-password")
        await set_portal_password(db, lead.case_id, lead.portal_token, "second-password")

        assert (await db.execute(select(func.count()).select_from(LeadPortalAuth))).scalar_one() == 1
        with pytest.raises(UnauthorizedError):
            await login_with_password(db, "jane@example.com", "first-password")
        assert (await login_with_password(db, "jane@example.com", "second-password"))["ok"] is True

    async def test_rules(self, db, make_lead):
        lead = await verified_lead(make_lead)
        with pytest.raises(ValidationError):
            await set_portal_password(db, lead.case_id, lead.portal_token, "short")
        with pytest.raises(ValidationError):
            await set_portal_password(db, lead.case_id, lead.portal_token, "x" * 73)
        with pytest.raises(UnauthorizedError):
            await set_portal_password(db, lead.case_id, "wrong", "long enough")

    async def test_requires_verified_email(self, db, make_lead):
        lead = await make_lead(email="jane@example.com")
        with pytest.raises(ForbiddenError):
            await set_portal_password(db, lead.case_id, lead.portal_token, "long enough")

    async def test_failures_are_generic(self, db, make_lead):
        lead = await verified_lead(make_lead)
        await set_portal_password(db, lead.case_id, lead.portal_token, "correct horse")
        await make_lead(email="nopassword@example.com")

        messages = set()
        for email, password in (
            ("jane@example.com", "wrong password"),
            ("nobody@example.com", "correct horse"),
            ("nopassword@example.com", "correct horse"),
            ("", "correct horse"),
        ):
            with pytest.raises(UnauthorizedError) as exc:
                await login_with_password(db, email, password)
            messages.add(exc.value.message)
        assert messages == {"Invalid credentials"}

    async def test_password_on_merged_duplicate_opens_canonical(self, db, make_lead):
        canonical = await make_lead(email="jane@example.com")
        duplicate = await make_lead()
        token = await issue_token(db, duplicate, "jane@example.com")
        await confirm_verification(db, token)
        await set_portal_password(db, duplicate.case_id, duplicate.portal_token, "correct horse")

        session = await login_with_password(db, "jane@example.com", "correct horse")

        assert session["case_id"] == canonical.case_id
        assert session["portal_token"] == canonical.portal_token

    async def test_closed_lead_password_ignored(self, db, make_lead):
        closed = await verified_lead(make_lead)
        await set_portal_password(db, closed.case_id, closed.portal_token, "correct horse")
        closed.status = "closed"
        await db.commit()

        with pytest.raises(UnauthorizedError):
            await login_with_password(db, "jane@example.com", "correct horse")

    async def test_lockout_after_repeated_failures(self, db, make_lead):
        lead = await verified_lead(make_lead)
        await set_portal_password(db, lead.case_id, lead.portal_token, "correct horse")
        now = datetime(2025, 3, 1, 12, 0)

        for _ in range(settings.login_max_failures):
            with pytest.raises(UnauthorizedError):
                await login_with_password(db, "jane@example.com", "guess", client="10.0.0.9", now=now)

        with pytest.raises(RateLimitedError):
            await login_with_password(db, "jane@example.com", "correct horse", client="10.0.0.9", now=now)
        # Other clients are unaffected
        assert (await login_with_password(db, "jane@example.com", "correct horse", client="10.0.0.2", now=now))["ok"]
        # The lock lifts after the window
        later = now + timedelta(minutes=settings.login_lockout_minutes + 1)
        assert (await login_with_password(db, "jane@example.com", "correct horse", client="10.0.0.9", now=later))["ok"]


class TestLoginThrottle:
    def test_window_slides_and_resets(self):
        throttle = LoginThrottle(max_failures=2, window=timedelta(minutes=10))
        t0 = datetime(2025, 1, 1, 12, 0)

        throttle.record_failure("k", t0)
        assert throttle.is_locked("k", t0) is False
        throttle.record_failure("k", t0 + timedelta(minutes=5))
        assert throttle.is_locked("k", t0 + timedelta(minutes=14)) is True
        assert throttle.is_locked("k", t0 + timedelta(minutes=15)) is False

        throttle.record_failure("k", t0)
        throttle.record_failure("k", t0)
        throttle.reset("k")
        assert throttle.is_locked("k", t0) is False
