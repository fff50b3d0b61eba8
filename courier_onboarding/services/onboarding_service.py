"""
Onboarding Engine — Onboarding Orchestrator

Drives the application status machine and the calls to external providers:

    create (DRAFT) ─► submit ─► [request documents] ─► initiate KYC
        ─► KYC verdict ─► [refer to review] ─► decide ─► activate
        ─► suspend / reactivate / deactivate

Ordering rules for provider calls:
  - The transition policy is checked *before* any provider call, so a
    refused transition never causes an external side effect.
  - The provider call happens before anything is written.  If it fails the
    operation raises IntegrationError and the application's status, external
    ids and history are exactly as they were.
  - Provider calls that create something are keyed by the application
    reference, so a caller may retry after an IntegrationError or a
    ConcurrentModificationError without creating duplicates.

Notifications are fire-and-forget: a failing sink is logged and counted,
never surfaced to the caller.

Usage:
    orchestrator = OnboardingOrchestrator(kyc=kyc, auth=auth, billing=billing, documents=workflow)
    app = orchestrator.create_application({"email": "a@b.com", ...})
    orchestrator.submit(app.reference)
"""

import logging

from email_validator import EmailNotValidError, validate_email

from courier_onboarding.core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    IntegrationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from courier_onboarding.models import db
from courier_onboarding.models.onboarding import (
    COMMUNICATION_CHANNELS,
    CUSTOMER_SEGMENTS,
    EDITABLE_FIELDS,
    INACTIVE_STATUSES,
    REQUIRED_FOR_BUSINESS,
    REQUIRED_FOR_SUBMISSION,
    OnboardingApplication,
    generate_application_reference,
)
from courier_onboarding.models.status_history import (
    append_status_entry,
    history_for,
    history_for_application,
)
from courier_onboarding.services.transition_policy import (
    apply_transition,
    ensure_transition,
    is_valid_transition,
    reapplication_allowed,
)
from courier_onboarding.utils.helpers import (
    check_expected_version,
    commit_or_conflict,
    parse_bool,
    parse_date,
    version_guard,
)

logger = logging.getLogger(__name__)

CUSTOMER_ROLE = "CUSTOMER"

_BOOLEAN_FIELDS = {"marketing_consent", "terms_accepted", "privacy_accepted"}

# provider verdict → application status
_KYC_VERDICTS = {
    "approved": "KYC_APPROVED",
    "verified": "KYC_APPROVED",
    "rejected": "KYC_FAILED",
    "failed": "KYC_FAILED",
    "requires_manual_review": "UNDER_REVIEW",
    "manual_review": "UNDER_REVIEW",
}

_DECISIONS = {
    "APPROVED": "APPROVED",
    "APPROVE": "APPROVED",
    "REJECTED": "REJECTED",
    "REJECT": "REJECTED",
}

DECIDABLE_STATUSES = ("KYC_APPROVED", "UNDER_REVIEW")
KYC_START_STATUSES = ("SUBMITTED", "DOCUMENTS_UPLOADED")

# Document events that mean the applicant has to send a replacement.
_REPLACEMENT_EVENTS = {"resubmission_requested"}


class OnboardingOrchestrator:
    """Application lifecycle service.

    Args:
        kyc: KYC provider client (``initiate``, ``get_status``).
        auth: auth provider client (``create_user``, ``activate``, ``suspend``).
        billing: billing provider client (``create_profile``).
        documents: DocumentVerificationWorkflow; the orchestrator subscribes
                   to its document events.
        notifier: sink with ``notify(recipient_ref, subject, body, **kw)``.
        metrics: MetricsCollector; optional.
    """

    def __init__(self, *, kyc, auth, billing, documents, notifier=None, metrics=None):
        self.kyc = kyc
        self.auth = auth
        self.billing = billing
        self.documents = documents
        self.notifier = notifier
        self.metrics = metrics
        documents.add_listener(self.on_documents_changed)

    # ── Internal helpers ─────────────────────────────────────────────────

    def _count(self, name, tag=None):
        if self.metrics is not None:
            self.metrics.increment(name, tag=tag)

    def _notify(self, app, subject, body=""):
        self.notify(app.email, subject, body, entity_type="application", entity_ref=app.reference,
                    application_ref=app.reference)

    def notify(self, recipient, subject, body="", *, entity_type, entity_ref, application_ref=None) -> bool:
        """Hand a message to the notifier; a failing sink is logged and counted.

        Returns True when the sink accepted the message.
        """
        if self.notifier is None:
            return False
        try:
            self.notifier.notify(recipient, subject, body, entity_type=entity_type, entity_ref=entity_ref)
        except Exception as exc:  # sink contract: never propagate
            self._count("notification.failed")
            logger.warning("Notification '%s' for %s failed: %s", subject, entity_ref, exc,
                           extra={"application_ref": application_ref})
            return False
        return True

    def _call_provider(self, provider, operation, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except IntegrationError:
            self._count("provider.failure", tag=f"{provider}.{operation}")
            raise

    def _transition(self, app, to_status, *, reason, actor, **changes):
        """Apply field changes plus one transition and commit them together."""
        ensure_transition(app, to_status)
        with version_guard("application", app.reference):
            try:
                for field, value in changes.items():
                    setattr(app, field, value)
                result = apply_transition(app, to_status, reason=reason, actor=actor)
            except (ValidationError, InvalidTransitionError):
                db.session.rollback()
                raise
            commit_or_conflict("application", app.reference)
        self._count("application.transition", tag=to_status)
        return result

    @staticmethod
    def get_application(reference) -> OnboardingApplication:
        app = OnboardingApplication.query.filter_by(reference=reference).first()
        if app is None:
            raise NotFoundError("OnboardingApplication", reference)
        return app

    def _load(self, reference, expected_version=None) -> OnboardingApplication:
        app = self.get_application(reference)
        check_expected_version(app, expected_version, "application")
        return app

    @staticmethod
    def list_applications(status=None, email=None, segment=None):
        q = OnboardingApplication.query
        if status:
            q = q.filter_by(status=status)
        if email:
            q = q.filter_by(email=email.strip().lower())
        if segment:
            q = q.filter_by(segment=segment)
        return q.order_by(OnboardingApplication.created_at.desc())

    # ── Intake ───────────────────────────────────────────────────────────

    @staticmethod
    def _normalise_email(raw) -> str:
        if not raw or not str(raw).strip():
            raise ValidationError("email is required", details={"email": "required"})
        try:
            return validate_email(str(raw).strip(), check_deliverability=False).normalized.lower()
        except EmailNotValidError as exc:
            raise ValidationError("email is not valid", details={"email": str(exc)}) from exc

    @staticmethod
    def _apply_profile(app, data: dict) -> None:
        unknown = sorted(set(data) - set(EDITABLE_FIELDS))
        if unknown:
            raise ValidationError("Unknown or read-only fields", details={f: "not editable" for f in unknown})
        errors = {}
        for field in EDITABLE_FIELDS:
            if field not in data:
                continue
            value = data[field]
            if field in _BOOLEAN_FIELDS:
                value = parse_bool(value)
            elif field == "date_of_birth":
                parsed = parse_date(value)
                if value and parsed is None:
                    errors[field] = "expected YYYY-MM-DD"
                    continue
                value = parsed
            elif field == "segment":
                value = (value or "").upper()
                if value not in CUSTOMER_SEGMENTS:
                    errors[field] = f"one of {sorted(CUSTOMER_SEGMENTS)}"
                    continue
            elif field == "preferred_communication" and value:
                value = value.upper()
                if value not in COMMUNICATION_CHANNELS:
                    errors[field] = f"one of {sorted(COMMUNICATION_CHANNELS)}"
                    continue
            elif isinstance(value, str):
                value = value.strip() or None
            setattr(app, field, value)
        if errors:
            raise ValidationError("Invalid application fields", details=errors)

    def create_application(self, data: dict, actor="customer") -> OnboardingApplication:
        """Create a DRAFT application.

        Raises:
            ValidationError: missing/invalid email or invalid profile fields.
            ConflictError: the email already has an active application.
        """
        data = dict(data or {})
        email = self._normalise_email(data.pop("email", None))

        active = (
            OnboardingApplication.query
            .filter(OnboardingApplication.email == email,
                    OnboardingApplication.status.notin_(INACTIVE_STATUSES))
            .first()
        )
        if active is not None:
            raise ConflictError("OnboardingApplication", "email", email)

        app = OnboardingApplication(
            reference=generate_application_reference(),
            email=email,
            segment="INDIVIDUAL",
            status="DRAFT",
        )
        self._apply_profile(app, data)

        db.session.add(app)
        append_status_entry(
            entity_type="application",
            entity_ref=app.reference,
            to_status="DRAFT",
            reason="Application created",
            actor=actor,
        )
        commit_or_conflict("application", app.reference)

        logger.info("Application %s created for %s", app.reference, email,
                    extra={"application_ref": app.reference, "to_status": "DRAFT", "actor": actor})
        self._count("application.created", tag=app.segment)
        self._notify(app, "Application received",
                     f"Your onboarding application {app.reference} has been created.")
        return app

    def update_application(self, reference, changes: dict, actor="customer",
                           *, expected_version=None) -> OnboardingApplication:
        """Edit profile fields.  Only DRAFT applications can be edited."""
        app = self._load(reference, expected_version)
        if app.status != "DRAFT":
            raise ValidationError(
                f"Application {app.reference} can only be edited in DRAFT (status={app.status})",
                details={"status": app.status},
            )
        with version_guard("application", app.reference):
            try:
                self._apply_profile(app, dict(changes or {}))
            except ValidationError:
                db.session.rollback()
                raise
            commit_or_conflict("application", app.reference)
        logger.info("Application %s updated by %s", app.reference, actor,
                    extra={"application_ref": app.reference, "actor": actor})
        return app

    @staticmethod
    def _missing_for_submission(app) -> dict:
        required = REQUIRED_FOR_SUBMISSION
        if app.segment == "BUSINESS":
            required = required + REQUIRED_FOR_BUSINESS
        details = {f: "required" for f in required if not getattr(app, f)}
        if app.terms_accepted is not True:
            details["terms_accepted"] = "must be accepted"
        if app.privacy_accepted is not True:
            details["privacy_accepted"] = "must be accepted"
        return details

    def submit(self, reference, actor="customer", *, expected_version=None) -> dict:
        """DRAFT → SUBMITTED once mandatory fields and consents are present."""
        app = self._load(reference, expected_version)
        ensure_transition(app, "SUBMITTED")
        missing = self._missing_for_submission(app)
        if missing:
            raise ValidationError("Application is incomplete", details=missing)

        result = self._transition(app, "SUBMITTED", reason="Submitted by applicant", actor=actor)
        self._notify(app, "Application submitted",
                     f"We received application {app.reference} and will start verification shortly.")
        return result

    def cancel(self, reference, reason=None, actor="customer", *, expected_version=None) -> dict:
        app = self._load(reference, expected_version)
        result = self._transition(app, "CANCELLED", reason=reason or "Cancelled by applicant", actor=actor)
        self._notify(app, "Application cancelled", f"Application {app.reference} was cancelled.")
        return result

    def reopen(self, reference, reason=None, actor="customer", *, expected_version=None) -> dict:
        """REJECTED / CANCELLED → DRAFT (re-application)."""
        app = self._load(reference, expected_version)
        if app.status == "REJECTED" and not reapplication_allowed():
            raise InvalidTransitionError("application", app.reference, app.status, "DRAFT",
                                         "re-application is disabled")
        return self._transition(app, "DRAFT", reason=reason or "Re-application", actor=actor,
                                rejection_reason=None)

    def request_documents(self, reference, reason=None, actor="reviewer", *, expected_version=None) -> dict:
        app = self._load(reference, expected_version)
        completion = self.documents.check_completion(app.reference)
        result = self._transition(app, "DOCUMENTS_REQUIRED",
                                  reason=reason or "Additional documents required", actor=actor)
        actions = "\n".join(completion.next_actions)
        self._notify(app, "Documents required", reason or actions or "Please upload the requested documents.")
        return result

    # ── Document events ──────────────────────────────────────────────────

    def on_documents_changed(self, application_ref, event, document, allow_resubmission=False, **info):
        """React to committed document changes.

        - a replacement was requested → DOCUMENTS_REQUIRED where the table allows it
        - DOCUMENTS_REQUIRED and every group has a usable submission → DOCUMENTS_UPLOADED
        """
        app = self.get_application(application_ref)
        doc_ref = document.reference if document is not None else info.get("document_ref")

        if event == "rejected":
            self._notify(app, "Document rejected",
                         f"Document {doc_ref} was rejected: {document.rejection_reason}")

        wants_replacement = event in _REPLACEMENT_EVENTS or (event == "rejected" and allow_resubmission)
        if wants_replacement and app.status != "DOCUMENTS_REQUIRED":
            if is_valid_transition("application", app.status, "DOCUMENTS_REQUIRED"):
                self._transition(app, "DOCUMENTS_REQUIRED",
                                 reason=f"Replacement requested for {doc_ref}", actor="system")
                self._notify(app, "Documents required",
                             f"Please upload a replacement for document {doc_ref}.")
            else:
                logger.info("Replacement for %s requested while %s is %s", doc_ref, app.reference, app.status,
                            extra={"application_ref": app.reference, "document_ref": doc_ref})
            return

        if app.status == "DOCUMENTS_REQUIRED":
            completion = self.documents.check_completion(app.reference)
            if not completion.outstanding:
                self._transition(app, "DOCUMENTS_UPLOADED",
                                 reason="All required documents submitted", actor="system")

    def check_completion(self, reference, segment=None):
        return self.documents.check_completion(reference, segment)

    # ── KYC ──────────────────────────────────────────────────────────────

    @staticmethod
    def _identity_payload(app) -> dict:
        return {
            "reference": app.reference,
            "segment": app.segment,
            "first_name": app.first_name,
            "last_name": app.last_name,
            "email": app.email,
            "phone": app.phone,
            "date_of_birth": app.date_of_birth.isoformat() if app.date_of_birth else None,
            "national_id": app.national_id,
            "business_name": app.business_name,
            "business_registration_number": app.business_registration_number,
            "tax_id": app.tax_id,
            "address": {
                "line1": app.address_line1,
                "line2": app.address_line2,
                "city": app.city,
                "state": app.state,
                "postal_code": app.postal_code,
                "country": app.country,
            },
        }

    def initiate_kyc(self, reference, actor="system", *, expected_version=None) -> dict:
        """SUBMITTED / DOCUMENTS_UPLOADED → KYC_IN_PROGRESS.

        A stored verification id is reused rather than starting a second
        verification with the provider.
        """
        app = self._load(reference, expected_version)
        ensure_transition(app, "KYC_IN_PROGRESS")
        completion = self.documents.check_completion(app.reference)
        if completion.outstanding:
            raise ValidationError(
                "Required documents have not been submitted",
                details={"missing": list(completion.missing), "rejected": list(completion.rejected),
                         "next_actions": list(completion.next_actions)},
            )

        verification_id = app.kyc_verification_id
        if verification_id is None:
            response = self._call_provider("kyc", "initiate", self.kyc.initiate,
                                           self._identity_payload(app), app.reference)
            verification_id = response["verification_id"]

        result = self._transition(app, "KYC_IN_PROGRESS", reason="KYC verification started",
                                  actor=actor, kyc_verification_id=verification_id)
        result["kyc_verification_id"] = verification_id
        return result

    def _recorded_verdict(self, app):
        """Status the last KYC verdict moved ``app`` to, or None if none was recorded."""
        for entry in reversed(history_for("application", app.reference)):
            if entry.from_status == "KYC_IN_PROGRESS":
                return entry.to_status
        return None

    def _check_repeat_verdict(self, app, target):
        """Outcome for a verdict arriving after the application left KYC_IN_PROGRESS.

        Only a repeat of the verdict already recorded is a no-op; anything
        else is a refused transition.
        """
        recorded = app.status if app.status == target else self._recorded_verdict(app)
        if recorded is not None and (target is None or recorded == target):
            logger.info("KYC verdict for %s already recorded: %s", app.reference, recorded,
                        extra={"application_ref": app.reference, "provider": "kyc"})
            return {"applied": False, "status": app.status, "reason": "verdict already recorded"}
        raise InvalidTransitionError(
            "application", app.reference, app.status, target or "KYC_APPROVED",
            "not awaiting a KYC verdict",
        )

    def record_kyc_verdict(self, reference, verdict=None, actor="kyc_provider") -> dict:
        """Apply a pushed verdict, or poll the provider when none is given.

        Idempotent: a repeat of the verdict already recorded changes nothing
        and adds no history.  A different verdict, or one for an application
        that never reached KYC, raises InvalidTransitionError.

        Returns:
            {"applied": bool, "status", ...}
        """
        app = self.get_application(reference)
        target = None
        if verdict is not None:
            verdict = str(verdict).strip().lower()
            target = _KYC_VERDICTS.get(verdict)
            if target is None:
                raise ValidationError(f"Unknown KYC verdict: {verdict}", details={"verdict": sorted(_KYC_VERDICTS)})

        if app.status != "KYC_IN_PROGRESS":
            return self._check_repeat_verdict(app, target)

        if verdict is None:
            if not app.kyc_verification_id:
                raise ValidationError("No KYC verification to poll", details={"kyc_verification_id": "missing"})
            status = self._call_provider("kyc", "get_status", self.kyc.get_status, app.kyc_verification_id)
            verdict = str(status["status"]).lower()
            if status.get("requires_manual_review"):
                verdict = "requires_manual_review"
            if verdict not in _KYC_VERDICTS:
                return {"applied": False, "status": app.status, "reason": f"provider status {verdict}",
                        "progress": status.get("progress")}
            target = _KYC_VERDICTS[verdict]

        try:
            result = self._transition(app, target, reason=f"KYC verdict: {verdict}", actor=actor)
        except ConcurrentModificationError:
            db.session.expire_all()
            current = self.get_application(reference)
            if current.status == "KYC_IN_PROGRESS":
                raise
            return self._check_repeat_verdict(current, target)

        self._notify(app, "Identity verification update",
                     f"Identity verification for {app.reference} finished: {verdict}.")
        result["applied"] = True
        result["status"] = target
        return result

    def refer_to_review(self, reference, reason=None, actor="reviewer", *, expected_version=None) -> dict:
        app = self._load(reference, expected_version)
        return self._transition(app, "UNDER_REVIEW", reason=reason or "Referred to manual review", actor=actor)

    # ── Decision ─────────────────────────────────────────────────────────

    def decide(self, reference, decision, reason=None, actor="reviewer", *, expected_version=None) -> dict:
        """Reviewer decision on a KYC-cleared application.

        APPROVED provisions the auth user and the billing profile first; the
        ids and the status change are written together afterwards.  Any
        provider failure raises IntegrationError with nothing persisted.
        """
        target = _DECISIONS.get(str(decision or "").strip().upper())
        if target is None:
            raise ValidationError("decision must be APPROVED or REJECTED", details={"decision": decision})

        app = self._load(reference, expected_version)
        if app.status not in DECIDABLE_STATUSES:
            raise InvalidTransitionError("application", app.reference, app.status, target,
                                         f"decisions are taken from {', '.join(DECIDABLE_STATUSES)}")
        ensure_transition(app, target)

        if target == "REJECTED":
            if not reason:
                raise ValidationError("A rejection reason is required", details={"reason": "required"})
            result = self._transition(app, "REJECTED", reason=reason, actor=actor, rejection_reason=reason)
            self._notify(app, "Application declined", f"Application {app.reference} was declined: {reason}")
            return result

        completion = self.documents.check_completion(app.reference)
        if not completion.is_complete:
            raise ValidationError(
                "All required documents must be approved before approval",
                details=completion.to_dict(),
            )

        auth_user_id = app.auth_user_id
        if auth_user_id is None:
            created = self._call_provider(
                "auth", "create_user", self.auth.create_user,
                email=app.email, phone=app.phone, first_name=app.first_name, last_name=app.last_name,
                role=CUSTOMER_ROLE, external_ref=app.reference,
            )
            auth_user_id = created["user_id"]

        billing_profile_id = app.billing_profile_id
        if billing_profile_id is None:
            profile = self._call_provider(
                "billing", "create_profile", self.billing.create_profile,
                app.reference, {"email": app.email, "name": app.business_name or app.full_name,
                                "country": app.country},
            )
            billing_profile_id = profile["billing_profile_id"]

        result = self._transition(
            app, "APPROVED", reason=reason or "Approved by reviewer", actor=actor,
            auth_user_id=auth_user_id, billing_profile_id=billing_profile_id,
        )
        self._notify(app, "Application approved",
                     f"Application {app.reference} was approved. Your account will be activated shortly.")
        result.update(auth_user_id=auth_user_id, billing_profile_id=billing_profile_id)
        return result

    def reject_application(self, reference, reason, actor="reviewer", *, expected_version=None) -> dict:
        """Early rejection from any status whose table row allows REJECTED."""
        if not reason:
            raise ValidationError("A rejection reason is required", details={"reason": "required"})
        app = self._load(reference, expected_version)
        result = self._transition(app, "REJECTED", reason=reason, actor=actor, rejection_reason=reason)
        self._notify(app, "Application declined", f"Application {app.reference} was declined: {reason}")
        return result

    # ── Account lifecycle ────────────────────────────────────────────────

    def _account_change(self, reference, target, provider_op, *, reason, actor, expected_version,
                        require_billing=False):
        app = self._load(reference, expected_version)
        ensure_transition(app, target)
        missing = {}
        if not app.auth_user_id:
            missing["auth_user_id"] = "missing"
        if require_billing and not app.billing_profile_id:
            missing["billing_profile_id"] = "missing"
        if missing:
            raise ValidationError(f"Application {app.reference} has no provisioned account", details=missing)

        self._call_provider("auth", provider_op, getattr(self.auth, provider_op), app.auth_user_id)
        return app, self._transition(app, target, reason=reason, actor=actor)

    def activate(self, reference, actor="system", reason=None, *, expected_version=None) -> dict:
        app, result = self._account_change(
            reference, "ACTIVATED", "activate", reason=reason or "Account activated", actor=actor,
            expected_version=expected_version, require_billing=True,
        )
        self._notify(app, "Account activated", f"Your courier account for {app.reference} is now active.")
        return result

    def suspend(self, reference, reason, actor="admin", *, expected_version=None) -> dict:
        if not reason:
            raise ValidationError("A suspension reason is required", details={"reason": "required"})
        app, result = self._account_change(
            reference, "SUSPENDED", "suspend", reason=reason, actor=actor, expected_version=expected_version,
        )
        self._notify(app, "Account suspended", f"Your account was suspended: {reason}")
        return result

    def reactivate(self, reference, reason=None, actor="admin", *, expected_version=None) -> dict:
        app, result = self._account_change(
            reference, "REACTIVATED", "activate", reason=reason or "Account reactivated", actor=actor,
            expected_version=expected_version,
        )
        self._notify(app, "Account reactivated", f"Your account for {app.reference} was reactivated.")
        return result

    def deactivate(self, reference, reason, actor="admin", *, expected_version=None) -> dict:
        if not reason:
            raise ValidationError("A deactivation reason is required", details={"reason": "required"})
        app, result = self._account_change(
            reference, "DEACTIVATED", "suspend", reason=reason, actor=actor, expected_version=expected_version,
        )
        self._notify(app, "Account closed", f"Your account for {app.reference} was closed: {reason}")
        return result

    # ── History ──────────────────────────────────────────────────────────

    def get_status_history(self, reference, include_documents=False):
        app = self.get_application(reference)
        if include_documents:
            return history_for_application(app.reference)
        return history_for("application", app.reference)
