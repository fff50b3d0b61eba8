"""
Onboarding orchestrator tests.

Drives the application lifecycle end to end against the provider fakes
from conftest.py:

    DRAFT ─► SUBMITTED ─► [DOCUMENTS_REQUIRED ─► DOCUMENTS_UPLOADED]
        ─► KYC_IN_PROGRESS ─► KYC_APPROVED / KYC_FAILED / UNDER_REVIEW
        ─► APPROVED / REJECTED ─► ACTIVATED ─► SUSPENDED ─► REACTIVATED ...

Provider failures must leave status, external ids and history untouched.
"""

import re

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.attributes import set_committed_value

from courier_onboarding.core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    IntegrationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from courier_onboarding.models import db
from courier_onboarding.models.notification import Notification
from courier_onboarding.services.notification import NotificationService


def _statuses(orchestrator, ref):
    return [e.to_status for e in orchestrator.get_status_history(ref)]


# ═════════════════════════════════════════════════════════════════════════════
# Intake
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateApplication:
    def test_create_draft(self, orchestrator, make_application):
        app = make_application(email="  Ada@Example.COM ")

        assert re.fullmatch(r"CUST-ONB-\d{8}-[0-9A-F]{8}", app.reference)
        assert app.status == "DRAFT"
        assert app.email == "ada@example.com"
        assert app.segment == "INDIVIDUAL"
        assert app.version == 1
        entries = orchestrator.get_status_history(app.reference)
        assert [(e.from_status, e.to_status) for e in entries] == [(None, "DRAFT")]
        assert Notification.query.filter_by(entity_ref=app.reference).count() == 1

    @pytest.mark.parametrize("email", [None, "", "not-an-email", "a@"])
    def test_invalid_email(self, orchestrator, email):
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.create_application({"email": email})
        assert "email" in exc_info.value.details

    def test_duplicate_active_email(self, orchestrator, make_application):
        first = make_application()
        with pytest.raises(ConflictError):
            make_application()
        orchestrator.cancel(first.reference)
        assert make_application().reference != first.reference

    def test_unknown_and_read_only_fields(self, orchestrator):
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.create_application({"email": "x@example.com", "status": "APPROVED", "colour": "red"})
        assert set(exc_info.value.details) == {"status", "colour"}

    def test_invalid_field_values(self, orchestrator):
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.create_application({"email": "x@example.com", "segment": "ENTERPRISE",
                                             "date_of_birth": "tomorrow"})
        assert set(exc_info.value.details) == {"segment", "date_of_birth"}

    def test_list_filters(self, orchestrator, make_application):
        a = make_application()
        make_application(email="grace@example.com")
        orchestrator.submit(a.reference)

        assert [x.reference for x in orchestrator.list_applications(status="SUBMITTED")] == [a.reference]
        assert orchestrator.list_applications(email="GRACE@example.com").count() == 1
        assert orchestrator.list_applications(segment="BUSINESS").count() == 0

    def test_get_unknown(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.get_application("CUST-ONB-00000000-00000000")


class TestUpdateApplication:
    def test_update_draft(self, orchestrator, make_application):
        app = make_application()
        updated = orchestrator.update_application(app.reference, {"city": "Paris", "marketing_consent": "yes"})
        assert updated.city == "Paris"
        assert updated.marketing_consent is True
        assert updated.version == 2

    def test_update_outside_draft_refused(self, orchestrator, make_application):
        app = make_application()
        orchestrator.submit(app.reference)
        with pytest.raises(ValidationError):
            orchestrator.update_application(app.reference, {"city": "Paris"})

    def test_invalid_update_changes_nothing(self, orchestrator, make_application):
        app = make_application()
        with pytest.raises(ValidationError):
            orchestrator.update_application(app.reference, {"city": "Paris", "segment": "NOPE"})
        assert orchestrator.get_application(app.reference).city == "London"

    def test_competing_edits_one_wins(self, orchestrator, make_application):
        app = make_application()
        seen = app.version
        orchestrator.update_application(app.reference, {"city": "Paris"}, expected_version=seen)
        with pytest.raises(ConcurrentModificationError) as exc_info:
            orchestrator.update_application(app.reference, {"city": "Rome"}, expected_version=seen)
        assert exc_info.value.expected_version == seen
        assert orchestrator.get_application(app.reference).city == "Paris"


# ═════════════════════════════════════════════════════════════════════════════
# Submission, cancellation, re-application
# ═════════════════════════════════════════════════════════════════════════════


class TestSubmit:
    def test_consents_required_then_submit(self, orchestrator, make_application):
        app = make_application(terms_accepted=False, privacy_accepted=False)

        with pytest.raises(ValidationError) as exc_info:
            orchestrator.submit(app.reference)
        assert set(exc_info.value.details) == {"terms_accepted", "privacy_accepted"}
        assert orchestrator.get_application(app.reference).status == "DRAFT"
        assert _statuses(orchestrator, app.reference) == ["DRAFT"]

        orchestrator.update_application(app.reference, {"terms_accepted": True, "privacy_accepted": True})
        result = orchestrator.submit(app.reference)

        assert result["previous_status"] == "DRAFT"
        assert result["new_status"] == "SUBMITTED"
        app = orchestrator.get_application(app.reference)
        assert app.status == "SUBMITTED"
        assert app.submitted_at is not None
        assert _statuses(orchestrator, app.reference) == ["DRAFT", "SUBMITTED"]

    def test_business_requires_business_name(self, orchestrator, make_application):
        app = make_application(segment="BUSINESS")
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.submit(app.reference)
        assert "business_name" in exc_info.value.details

    def test_submit_twice_refused(self, orchestrator, make_application):
        app = make_application()
        orchestrator.submit(app.reference)
        with pytest.raises(InvalidTransitionError) as exc_info:
            orchestrator.submit(app.reference)
        assert exc_info.value.current_status == "SUBMITTED"
        assert exc_info.value.requested_status == "SUBMITTED"

    def test_stale_version_refused(self, orchestrator, make_application):
        app = make_application()
        with pytest.raises(ConcurrentModificationError):
            orchestrator.submit(app.reference, expected_version=app.version + 3)
        assert orchestrator.get_application(app.reference).status == "DRAFT"


class TestCancelAndReopen:
    def test_cancel_and_reopen(self, orchestrator, make_application):
        app = make_application()
        orchestrator.cancel(app.reference, reason="changed my mind")
        orchestrator.reopen(app.reference)
        assert _statuses(orchestrator, app.reference) == ["DRAFT", "CANCELLED", "DRAFT"]

    def test_reopen_after_rejection(self, orchestrator, make_application):
        app = make_application()
        orchestrator.submit(app.reference)
        orchestrator.reject_application(app.reference, "incomplete trading history")
        rejected = orchestrator.get_application(app.reference)
        assert rejected.rejection_reason == "incomplete trading history"
        assert rejected.rejected_at is not None

        orchestrator.reopen(app.reference)
        reopened = orchestrator.get_application(app.reference)
        assert reopened.status == "DRAFT"
        assert reopened.rejection_reason is None

    def test_reopen_after_rejection_disabled(self, app, orchestrator, make_application, monkeypatch):
        monkeypatch.setitem(app.config, "ALLOW_REAPPLICATION", False)
        entity = make_application()
        orchestrator.submit(entity.reference)
        orchestrator.reject_application(entity.reference, "fraud signals")
        with pytest.raises(InvalidTransitionError):
            orchestrator.reopen(entity.reference)

    def test_reject_requires_reason(self, orchestrator, make_application):
        app = make_application()
        orchestrator.submit(app.reference)
        with pytest.raises(ValidationError):
            orchestrator.reject_application(app.reference, "")

    def test_cancel_after_submission_refused(self, orchestrator, make_application):
        app = make_application()
        orchestrator.submit(app.reference)
        with pytest.raises(InvalidTransitionError):
            orchestrator.cancel(app.reference)


class TestDocumentsRequired:
    def test_request_documents_then_auto_advance(self, orchestrator, upload_document,
                                                 make_application, no_ai):
        app = make_application()
        orchestrator.submit(app.reference)
        orchestrator.request_documents(app.reference)

        assert orchestrator.get_application(app.reference).status == "DOCUMENTS_REQUIRED"
        notice = Notification.query.filter_by(subject="Documents required").one()
        assert "Upload identity document" in notice.body

        upload_document(app.reference, "PASSPORT")
        assert orchestrator.get_application(app.reference).status == "DOCUMENTS_REQUIRED"
        upload_document(app.reference, "PROOF_OF_ADDRESS")
        assert orchestrator.get_application(app.reference).status == "DOCUMENTS_UPLOADED"

        orchestrator.initiate_kyc(app.reference)
        assert orchestrator.get_application(app.reference).status == "KYC_IN_PROGRESS"


# ═════════════════════════════════════════════════════════════════════════════
# KYC
# ═════════════════════════════════════════════════════════════════════════════


class TestKYC:
    def test_initiate_requires_documents(self, orchestrator, kyc, make_application):
        app = make_application()
        orchestrator.submit(app.reference)
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.initiate_kyc(app.reference)
        assert exc_info.value.details["missing"] == ["identity", "proof_of_address"]
        assert kyc.count("initiate") == 0

    def test_initiate_from_draft_refused_before_provider_call(self, orchestrator, kyc, make_application):
        app = make_application()
        with pytest.raises(InvalidTransitionError):
            orchestrator.initiate_kyc(app.reference)
        assert kyc.calls == []

    def test_initiate_stores_verification_id(self, orchestrator, kyc, advance):
        app = advance("KYC_IN_PROGRESS")
        assert app.status == "KYC_IN_PROGRESS"
        assert app.kyc_verification_id == "KYC-0001"
        op, call = kyc.calls[0]
        assert op == "initiate"
        assert call["payload"]["reference"] == app.reference
        assert call["payload"]["address"]["country"] == "GB"

    def test_initiate_provider_failure_changes_nothing(self, engine, orchestrator, kyc,
                                                       make_application, approve_required_documents):
        app = make_application()
        orchestrator.submit(app.reference)
        approve_required_documents(app.reference)
        kyc.fail_on = {"initiate"}

        with pytest.raises(IntegrationError) as exc_info:
            orchestrator.initiate_kyc(app.reference)

        assert exc_info.value.provider == "kyc"
        reloaded = orchestrator.get_application(app.reference)
        assert reloaded.status == "SUBMITTED"
        assert reloaded.kyc_verification_id is None
        assert _statuses(orchestrator, app.reference) == ["DRAFT", "SUBMITTED"]
        assert engine.metrics.get("provider.failure", tag="kyc.initiate") == 1

    @pytest.mark.parametrize("verdict,status", [
        ("approved", "KYC_APPROVED"),
        ("rejected", "KYC_FAILED"),
        ("requires_manual_review", "UNDER_REVIEW"),
    ])
    def test_pushed_verdict(self, orchestrator, advance, verdict, status):
        app = advance("KYC_IN_PROGRESS")
        result = orchestrator.record_kyc_verdict(app.reference, verdict)
        assert result["applied"] is True
        assert orchestrator.get_application(app.reference).status == status

    def test_verdict_is_idempotent(self, orchestrator, advance):
        app = advance("KYC_IN_PROGRESS")
        orchestrator.record_kyc_verdict(app.reference, "approved")
        again = orchestrator.record_kyc_verdict(app.reference, "approved")

        assert again["applied"] is False
        assert _statuses(orchestrator, app.reference).count("KYC_APPROVED") == 1

    def test_repeat_verdict_after_moving_on(self, orchestrator, advance):
        app = advance("KYC_APPROVED")
        orchestrator.refer_to_review(app.reference, reason="address mismatch")

        again = orchestrator.record_kyc_verdict(app.reference, "approved")

        assert again == {"applied": False, "status": "UNDER_REVIEW", "reason": "verdict already recorded"}
        assert _statuses(orchestrator, app.reference).count("KYC_APPROVED") == 1

    def test_conflicting_verdict_refused(self, orchestrator, advance):
        app = advance("KYC_APPROVED")
        version = app.version

        with pytest.raises(InvalidTransitionError) as exc_info:
            orchestrator.record_kyc_verdict(app.reference, "rejected")

        assert exc_info.value.current_status == "KYC_APPROVED"
        assert exc_info.value.requested_status == "KYC_FAILED"
        reloaded = orchestrator.get_application(app.reference)
        assert reloaded.status == "KYC_APPROVED"
        assert reloaded.version == version

    @pytest.mark.parametrize("verdict", ["approved", None])
    def test_verdict_before_kyc_refused(self, orchestrator, kyc, make_application, verdict):
        app = make_application()
        with pytest.raises(InvalidTransitionError):
            orchestrator.record_kyc_verdict(app.reference, verdict)
        assert orchestrator.get_application(app.reference).status == "DRAFT"
        assert kyc.count("get_status") == 0

    def test_polled_verdict(self, orchestrator, kyc, advance):
        app = advance("KYC_IN_PROGRESS")

        pending = orchestrator.record_kyc_verdict(app.reference)
        assert pending["applied"] is False
        assert pending["progress"] == 40

        kyc.status = {"status": "APPROVED", "progress": 100, "requires_manual_review": False}
        assert orchestrator.record_kyc_verdict(app.reference)["applied"] is True
        assert orchestrator.get_application(app.reference).status == "KYC_APPROVED"

    def test_polled_manual_review_flag(self, orchestrator, kyc, advance):
        app = advance("KYC_IN_PROGRESS")
        kyc.status = {"status": "pending", "progress": 90, "requires_manual_review": True}
        orchestrator.record_kyc_verdict(app.reference)
        assert orchestrator.get_application(app.reference).status == "UNDER_REVIEW"

    def test_unknown_verdict(self, orchestrator, advance):
        app = advance("KYC_IN_PROGRESS")
        with pytest.raises(ValidationError):
            orchestrator.record_kyc_verdict(app.reference, "shrug")

    def test_reinitiation_reuses_verification(self, orchestrator, kyc, advance, upload_document, no_ai):
        app = advance("KYC_IN_PROGRESS")
        orchestrator.record_kyc_verdict(app.reference, "rejected")
        orchestrator.request_documents(app.reference, reason="Please add your passport")

        upload_document(app.reference, "PASSPORT")
        assert orchestrator.get_application(app.reference).status == "DOCUMENTS_UPLOADED"

        result = orchestrator.initiate_kyc(app.reference)
        assert result["kyc_verification_id"] == "KYC-0001"
        assert kyc.count("initiate") == 1

    def test_webhook_races_poll(self, orchestrator, advance):
        app = advance("KYC_IN_PROGRESS")
        stale_version = app.version

        # another worker records the verdict first
        db.session.execute(
            text("UPDATE onboarding_applications SET status = 'KYC_APPROVED', version = version + 1 "
                 "WHERE id = :id"),
            {"id": app.id},
        )
        db.session.commit()

        # this worker still holds the copy it loaded before that commit
        mine = orchestrator.get_application(app.reference)
        set_committed_value(mine, "status", "KYC_IN_PROGRESS")
        set_committed_value(mine, "version", stale_version)

        result = orchestrator.record_kyc_verdict(app.reference, "approved")

        assert result == {"applied": False, "status": "KYC_APPROVED", "reason": "verdict already recorded"}
        assert _statuses(orchestrator, app.reference).count("KYC_APPROVED") == 0

    def test_refer_to_review(self, orchestrator, advance):
        app = advance("KYC_APPROVED")
        orchestrator.refer_to_review(app.reference, reason="name mismatch on bill")
        assert orchestrator.get_application(app.reference).status == "UNDER_REVIEW"


# ═════════════════════════════════════════════════════════════════════════════
# Decision
# ═════════════════════════════════════════════════════════════════════════════


class TestDecide:
    def test_approve_provisions_accounts(self, orchestrator, auth, billing, advance):
        app = advance("KYC_APPROVED")
        result = orchestrator.decide(app.reference, "APPROVED", actor="rev-1")

        assert result["new_status"] == "APPROVED"
        assert result["auth_user_id"] == "USR-0001"
        assert result["billing_profile_id"] == "BIL-0001"
        app = orchestrator.get_application(app.reference)
        assert (app.auth_user_id, app.billing_profile_id) == ("USR-0001", "BIL-0001")
        assert app.approved_at is not None
        assert auth.calls[0][1]["role"] == "CUSTOMER"

    def test_auth_failure_changes_nothing(self, orchestrator, auth, billing, advance):
        app = advance("KYC_APPROVED")
        before = _statuses(orchestrator, app.reference)
        auth.fail_on = {"create_user"}

        with pytest.raises(IntegrationError) as exc_info:
            orchestrator.decide(app.reference, "APPROVED", actor="rev-1")

        assert exc_info.value.provider == "auth"
        app = orchestrator.get_application(app.reference)
        assert app.status == "KYC_APPROVED"
        assert app.auth_user_id is None
        assert app.billing_profile_id is None
        assert billing.calls == []
        assert _statuses(orchestrator, app.reference) == before

    def test_billing_failure_changes_nothing_and_retry_succeeds(self, orchestrator, auth, billing, advance):
        app = advance("KYC_APPROVED")
        billing.fail_on = {"create_profile"}

        with pytest.raises(IntegrationError):
            orchestrator.decide(app.reference, "APPROVED", actor="rev-1")
        reloaded = orchestrator.get_application(app.reference)
        assert reloaded.status == "KYC_APPROVED"
        assert reloaded.auth_user_id is None

        billing.fail_on = set()
        orchestrator.decide(app.reference, "APPROVED", actor="rev-1")
        assert orchestrator.get_application(app.reference).status == "APPROVED"
        # both attempts used the application reference as the idempotency key
        assert auth.count("create_user") == 2

    def test_approval_requires_approved_documents(self, orchestrator, auth, make_application,
                                                  upload_document, no_ai):
        app = make_application()
        orchestrator.submit(app.reference)
        upload_document(app.reference, "PASSPORT")
        upload_document(app.reference, "PROOF_OF_ADDRESS")
        orchestrator.initiate_kyc(app.reference)
        orchestrator.record_kyc_verdict(app.reference, "approved")

        with pytest.raises(ValidationError) as exc_info:
            orchestrator.decide(app.reference, "APPROVED", actor="rev-1")
        assert exc_info.value.details["pending"] == ["identity", "proof_of_address"]
        assert auth.calls == []

    def test_reject_decision(self, orchestrator, advance):
        app = advance("KYC_APPROVED")
        with pytest.raises(ValidationError):
            orchestrator.decide(app.reference, "REJECTED", actor="rev-1")
        orchestrator.decide(app.reference, "reject", reason="sanctions hit", actor="rev-1")
        app = orchestrator.get_application(app.reference)
        assert app.status == "REJECTED"
        assert app.rejection_reason == "sanctions hit"

    def test_decide_outside_decision_statuses(self, orchestrator, auth, make_application):
        app = make_application()
        orchestrator.submit(app.reference)
        with pytest.raises(InvalidTransitionError) as exc_info:
            orchestrator.decide(app.reference, "APPROVED")
        assert exc_info.value.current_status == "SUBMITTED"
        assert auth.calls == []

    def test_unknown_decision(self, orchestrator, advance):
        app = advance("KYC_APPROVED")
        with pytest.raises(ValidationError):
            orchestrator.decide(app.reference, "MAYBE")


# ═════════════════════════════════════════════════════════════════════════════
# Account lifecycle
# ═════════════════════════════════════════════════════════════════════════════


class TestAccountLifecycle:
    def test_activate(self, orchestrator, auth, advance):
        app = advance("ACTIVATED")
        assert app.status == "ACTIVATED"
        assert app.activated_at is not None
        assert ("activate", {}) in auth.calls

    def test_activate_failure_keeps_approved(self, orchestrator, auth, advance):
        app = advance("APPROVED")
        auth.fail_on = {"activate"}
        with pytest.raises(IntegrationError):
            orchestrator.activate(app.reference)
        assert orchestrator.get_application(app.reference).status == "APPROVED"

    def test_activate_before_approval_refused(self, orchestrator, auth, advance):
        app = advance("KYC_APPROVED")
        with pytest.raises(InvalidTransitionError):
            orchestrator.activate(app.reference)
        assert auth.count("activate") == 0

    def test_suspend_reactivate_deactivate(self, orchestrator, auth, advance):
        app = advance("ACTIVATED")
        with pytest.raises(ValidationError):
            orchestrator.suspend(app.reference, "")
        orchestrator.suspend(app.reference, "chargebacks")
        orchestrator.reactivate(app.reference)
        orchestrator.deactivate(app.reference, "customer closed account")
        orchestrator.activate(app.reference, reason="customer returned")

        assert _statuses(orchestrator, app.reference)[-4:] == [
            "SUSPENDED", "REACTIVATED", "DEACTIVATED", "ACTIVATED",
        ]
        assert auth.count("suspend") == 2
        assert auth.count("activate") == 3

    def test_account_change_requires_provisioned_user(self, orchestrator, advance):
        app = advance("APPROVED")
        entity = orchestrator.get_application(app.reference)
        # simulate a record migrated without its auth user
        db.session.execute(text("UPDATE onboarding_applications SET auth_user_id = NULL WHERE id = :id"),
                           {"id": entity.id})
        db.session.commit()
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.activate(app.reference)
        assert "auth_user_id" in exc_info.value.details


# ═════════════════════════════════════════════════════════════════════════════
# Notifications and history
# ═════════════════════════════════════════════════════════════════════════════


class _BrokenSink:
    def notify(self, *args, **kwargs):
        raise ConnectionError("smtp relay down")


class TestNotifications:
    def test_sink_failure_never_propagates(self, engine, orchestrator, make_application, monkeypatch):
        monkeypatch.setattr(orchestrator, "notifier", _BrokenSink())
        app = make_application()
        orchestrator.submit(app.reference)
        assert orchestrator.get_application(app.reference).status == "SUBMITTED"
        assert engine.metrics.get("notification.failed") == 2

    def test_storage_failure_counted(self, engine, orchestrator, make_application, monkeypatch):
        def _refuse(**kwargs):
            raise OperationalError("INSERT INTO notifications", {}, Exception("database is locked"))

        monkeypatch.setattr(NotificationService, "create", staticmethod(_refuse))
        app = make_application()

        assert orchestrator.get_application(app.reference).status == "DRAFT"
        assert engine.metrics.get("notification.failed") == 1
        assert Notification.query.count() == 0

    def test_notifications_recorded_per_application(self, orchestrator, make_application):
        app = make_application()
        orchestrator.submit(app.reference)

        notes = NotificationService.list_for_entity(app.reference)
        assert [n.subject for n in notes] == ["Application received", "Application submitted"]
        assert all(n.recipient == "ada@example.com" for n in notes)

        NotificationService.mark_read(notes[0].id)
        unread = NotificationService.list_for_recipient("ada@example.com", unread_only=True)
        assert [n.subject for n in unread] == ["Application submitted"]
        assert NotificationService.mark_read(999999) is None

    def test_history_with_documents(self, orchestrator, make_application, upload_document, no_ai):
        app = make_application()
        upload_document(app.reference, "PASSPORT")
        entries = orchestrator.get_status_history(app.reference, include_documents=True)
        assert [(e.entity_type, e.to_status) for e in entries] == [
            ("application", "DRAFT"), ("document", "PENDING"),
        ]
