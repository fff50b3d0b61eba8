"""
Onboarding Engine — Document Verification Workflow

Owns the verification-document lifecycle:

    upload ─► PENDING ─► AI_VERIFICATION_IN_PROGRESS ─► AI_VERIFIED / AI_FAILED
                 │                 │                        │
                 └──────► MANUAL_REVIEW ◄───────────────────┘
                              │
                 APPROVED / REJECTED / RESUBMISSION_REQUIRED

  - Upload validation (size, MIME allow-list, duplicate-primary guard),
    content hashing and blob-store handoff.
  - Optional AI dispatch handed off after the upload commits (a background
    ``AIDispatchRunner`` when one is wired, inline otherwise).  A failed
    dispatch leaves the document PENDING; the AI path is never mandatory.
  - AI callbacks arrive as ``AIVerificationEvent`` messages and are applied
    only while the document is still AI_VERIFICATION_IN_PROGRESS.
  - Reviewer decisions: approve, reject, request resubmission, manual review.
  - Completion aggregation per application (see ``services/completion.py``).

Every accepted change goes through the transition policy (one history
entry per change) and is committed by this service.  Listeners registered
with ``add_listener`` are told about every committed document change; the
onboarding orchestrator uses this to advance the application.

Usage:
    workflow = DocumentVerificationWorkflow(blob_store=LocalBlobStore(root), ai_client=ai)
    doc = workflow.upload("CUST-ONB-...", "NATIONAL_ID", data, "image/jpeg")
    workflow.approve(doc.reference, reviewer="rev-1", notes="Matches selfie")
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from flask import current_app, has_app_context
from sqlalchemy import func

from courier_onboarding.core.exceptions import (
    ConcurrentModificationError,
    IntegrationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from courier_onboarding.models import db
from courier_onboarding.models.document import (
    AI_ELIGIBLE_MIME_TYPES,
    AI_ELIGIBLE_TYPES,
    AWAITING_REVIEW_STATUSES,
    DOCUMENT_TYPES,
    VerificationDocument,
    generate_document_reference,
)
from courier_onboarding.models.onboarding import OnboardingApplication
from courier_onboarding.models.status_history import append_status_entry
from courier_onboarding.services.completion import evaluate_completion, requirements_for
from courier_onboarding.services.transition_policy import apply_transition
from courier_onboarding.utils.helpers import check_expected_version, commit_or_conflict, version_guard

logger = logging.getLogger(__name__)

APPROVABLE_STATUSES = ("PENDING", "AI_VERIFIED", "MANUAL_REVIEW")
REJECTABLE_STATUSES = ("PENDING", "AI_FAILED", "MANUAL_REVIEW")

# Applications in these statuses no longer accept uploads.
_CLOSED_APPLICATION_STATUSES = {"REJECTED", "CANCELLED", "DEACTIVATED"}

# A primary in these statuses no longer blocks a new primary of the same type.
_REPLACEABLE_STATUSES = ("REJECTED", "RESUBMISSION_REQUIRED")

_AI_OUTCOMES = {
    "verified": "AI_VERIFIED",
    "failed": "AI_FAILED",
    "manual_review": "MANUAL_REVIEW",
}

_DEFAULTS = {
    "DOCUMENT_MAX_FILE_SIZE": 10 * 1024 * 1024,
    "DOCUMENT_ALLOWED_MIME_TYPES": ["image/jpeg", "image/png", "image/gif", "application/pdf"],
    "AI_VERIFICATION_ENABLED": True,
    "DOCUMENT_REVIEW_SLA_DAYS": 3,
}


def _parse_confidence(value):
    """Return ``value`` as a float in [0, 1], or None when not given."""
    if value is None or value == "":
        return None
    try:
        score = float(value)
    except (TypeError, ValueError):
        raise ValidationError("confidence_score must be a number",
                              details={"confidence_score": "must be a number"}) from None
    if not 0.0 <= score <= 1.0:
        raise ValidationError("confidence_score must be between 0 and 1",
                              details={"confidence_score": "must be between 0 and 1"})
    return score


@dataclass(frozen=True)
class AIVerificationEvent:
    """Verdict pushed back by the AI verification service."""

    document_ref: str
    outcome: str
    verification_id: str | None = None
    confidence_score: float | None = None
    notes: str | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> "AIVerificationEvent":
        document_ref = (payload.get("document_ref") or "").strip()
        outcome = (payload.get("outcome") or payload.get("status") or "").strip().lower()
        errors = {}
        if not document_ref:
            errors["document_ref"] = "required"
        if outcome not in _AI_OUTCOMES:
            errors["outcome"] = f"one of {sorted(_AI_OUTCOMES)}"
        confidence = None
        try:
            confidence = _parse_confidence(payload.get("confidence_score"))
        except ValidationError as exc:
            errors.update(exc.details)
        if errors:
            raise ValidationError("Invalid AI verification callback", details=errors)
        return cls(
            document_ref=document_ref,
            outcome=outcome,
            verification_id=payload.get("verification_id"),
            confidence_score=confidence,
            notes=payload.get("notes"),
        )


class DocumentVerificationWorkflow:
    """Document lifecycle service.

    Args:
        blob_store: ``BlobStore`` holding document bytes.
        ai_client: ``AIVerificationClient`` (or None to disable AI dispatch).
        dispatcher: ``AIDispatchRunner`` that runs dispatches off the request
                    path; None dispatches inline before ``upload`` returns.
        metrics: ``MetricsCollector``; optional.
        settings: overrides for DOCUMENT_MAX_FILE_SIZE, DOCUMENT_ALLOWED_MIME_TYPES,
                  AI_VERIFICATION_ENABLED, DOCUMENT_REVIEW_SLA_DAYS.  Anything not
                  overridden is read from the Flask config at call time.
    """

    def __init__(self, blob_store, ai_client=None, metrics=None, settings=None, dispatcher=None):
        self.blob_store = blob_store
        self.ai_client = ai_client
        self.dispatcher = dispatcher
        self.metrics = metrics
        self.settings = dict(settings or {})
        self._listeners = []

    # ── Wiring ───────────────────────────────────────────────────────────

    def add_listener(self, listener):
        """Register ``listener(application_ref, event, document, **info)``."""
        self._listeners.append(listener)

    def _setting(self, name):
        if name in self.settings:
            return self.settings[name]
        if has_app_context():
            return current_app.config.get(name, _DEFAULTS[name])
        return _DEFAULTS[name]

    def _count(self, name, tag=None):
        if self.metrics is not None:
            self.metrics.increment(name, tag=tag)

    def _signal(self, application_ref, event, document, **info):
        for listener in self._listeners:
            try:
                listener(application_ref, event, document, **info)
            except (InvalidTransitionError, ConcurrentModificationError, ValidationError) as exc:
                logger.warning(
                    "Document listener skipped %s for %s: %s", event, application_ref, exc,
                    extra={"application_ref": application_ref},
                )

    # ── Lookups ──────────────────────────────────────────────────────────

    @staticmethod
    def _application(application_ref) -> OnboardingApplication:
        app = OnboardingApplication.query.filter_by(reference=application_ref).first()
        if app is None:
            raise NotFoundError("OnboardingApplication", application_ref)
        return app

    @staticmethod
    def get_document(document_ref) -> VerificationDocument:
        doc = VerificationDocument.query.filter_by(reference=document_ref).first()
        if doc is None:
            raise NotFoundError("VerificationDocument", document_ref)
        return doc

    def list_documents(self, application_ref, document_type=None) -> list[VerificationDocument]:
        app = self._application(application_ref)
        q = VerificationDocument.query.filter_by(application_id=app.id)
        if document_type:
            q = q.filter_by(document_type=document_type)
        return q.order_by(VerificationDocument.uploaded_at, VerificationDocument.id).all()

    def download_document(self, document_ref) -> tuple[VerificationDocument, bytes]:
        doc = self.get_document(document_ref)
        return doc, self.blob_store.get(doc.storage_ref)

    # ── Upload ───────────────────────────────────────────────────────────

    def _validate_upload(self, app, document_type, content, mime_type, size, is_primary):
        errors = {}
        if app.status in _CLOSED_APPLICATION_STATUSES:
            raise ValidationError(
                f"Application {app.reference} is {app.status} and no longer accepts documents",
                details={"status": app.status},
            )
        if document_type not in DOCUMENT_TYPES:
            errors["document_type"] = f"one of {sorted(DOCUMENT_TYPES)}"
        if not content:
            errors["file"] = "empty file"
        elif size != len(content):
            errors["size"] = f"declared {size} bytes, received {len(content)}"
        max_size = self._setting("DOCUMENT_MAX_FILE_SIZE")
        if size and size > max_size:
            errors["size"] = f"exceeds maximum of {max_size} bytes"
        if mime_type not in self._setting("DOCUMENT_ALLOWED_MIME_TYPES"):
            errors["mime_type"] = f"{mime_type} is not an accepted file type"
        if errors:
            raise ValidationError("Document upload rejected", details=errors)

        if is_primary:
            active = (
                VerificationDocument.query
                .filter_by(application_id=app.id, document_type=document_type, is_primary=True)
                .filter(VerificationDocument.status.notin_(_REPLACEABLE_STATUSES))
                .first()
            )
            if active is not None:
                raise ValidationError(
                    f"A primary {DOCUMENT_TYPES[document_type][0]} is already {active.status}",
                    details={"document_type": "duplicate primary", "existing": active.reference,
                             "status": active.status},
                )

    def is_ai_eligible(self, document_type, mime_type) -> bool:
        return (
            bool(self._setting("AI_VERIFICATION_ENABLED"))
            and self.ai_client is not None
            and document_type in AI_ELIGIBLE_TYPES
            and mime_type in AI_ELIGIBLE_MIME_TYPES
        )

    def upload(
        self,
        application_ref,
        document_type,
        content: bytes,
        mime_type,
        size=None,
        *,
        is_primary=True,
        file_name=None,
        uploaded_by="customer",
    ) -> VerificationDocument:
        """
        Validate, store and register one uploaded document.

        Raises:
            NotFoundError: unknown application.
            ValidationError: size / MIME / duplicate-primary / closed application.
            IntegrationError: the blob store refused the bytes (nothing persisted).
        """
        app = self._application(application_ref)
        size = len(content or b"") if size is None else int(size)
        self._validate_upload(app, document_type, content, mime_type, size, is_primary)

        content_hash = hashlib.sha256(content).hexdigest()
        storage_ref = self.blob_store.put(content)

        doc = VerificationDocument(
            reference=generate_document_reference(),
            application=app,
            document_type=document_type,
            status="PENDING",
            is_primary=bool(is_primary),
            file_name=file_name,
            mime_type=mime_type,
            file_size=size,
            content_hash=content_hash,
            storage_ref=storage_ref,
            uploaded_by=uploaded_by,
        )
        try:
            db.session.add(doc)
            append_status_entry(
                entity_type="document",
                entity_ref=doc.reference,
                application_ref=app.reference,
                to_status="PENDING",
                reason=f"Uploaded {file_name or document_type}",
                actor=uploaded_by,
            )
            self._supersede_resubmission_requests(app, document_type, doc.reference, uploaded_by)
            commit_or_conflict("document", doc.reference)
        except Exception:
            db.session.rollback()
            self.blob_store.delete(storage_ref)
            raise

        logger.info(
            "Document %s uploaded for %s (%s, %d bytes)", doc.reference, app.reference, document_type, size,
            extra={"application_ref": app.reference, "document_ref": doc.reference},
        )
        self._count("document.uploaded", tag=document_type)

        if self.is_ai_eligible(document_type, mime_type):
            if self.dispatcher is not None:
                self.dispatcher.submit(doc.reference, self.dispatch_pending)
            else:
                self._dispatch_quietly(doc, content)

        self._signal(app.reference, "uploaded", doc)
        return doc

    def _supersede_resubmission_requests(self, app, document_type, new_ref, actor):
        """A fresh upload closes outstanding resubmission requests of the same type."""
        stale = VerificationDocument.query.filter_by(
            application_id=app.id, document_type=document_type, status="RESUBMISSION_REQUIRED",
        ).all()
        for old in stale:
            apply_transition(old, "REJECTED", reason=f"Superseded by {new_ref}", actor=actor)

    # ── AI verification ──────────────────────────────────────────────────

    def _dispatch(self, doc, content):
        result = self.ai_client.dispatch(
            document_ref=doc.reference,
            document_type=doc.document_type,
            mime_type=doc.mime_type,
            content=content,
        )
        with version_guard("document", doc.reference):
            apply_transition(doc, "AI_VERIFICATION_IN_PROGRESS",
                             reason="Dispatched to AI verification", actor="system")
            doc.ai_verification_id = result.get("verification_id")
            doc.ai_dispatched_at = datetime.now(timezone.utc)
            commit_or_conflict("document", doc.reference)
        self._count("document.ai_dispatched")

    def _dispatch_quietly(self, doc, content):
        try:
            self._dispatch(doc, content)
        except (IntegrationError, ConcurrentModificationError) as exc:
            self._count("document.ai_dispatch_failed")
            logger.warning(
                "AI dispatch failed for %s, document stays PENDING: %s", doc.reference, exc,
                extra={"document_ref": doc.reference, "provider": "ai_verification"},
            )

    def dispatch_pending(self, document_ref) -> bool:
        """Dispatch a PENDING, eligible document that has not been dispatched yet.

        Used by the background runner and the ``ai_dispatch`` job.  Provider
        failures are counted and leave the document PENDING.

        Returns True when the document is now AI_VERIFICATION_IN_PROGRESS.
        """
        doc = VerificationDocument.query.filter_by(reference=document_ref).first()
        if doc is None or doc.status != "PENDING" or doc.ai_dispatched_at is not None:
            return False
        if not self.is_ai_eligible(doc.document_type, doc.mime_type):
            return False
        try:
            content = self.blob_store.get(doc.storage_ref)
        except (IntegrationError, NotFoundError) as exc:
            self._count("document.ai_dispatch_failed")
            logger.warning("Blob for %s unreadable, AI dispatch skipped: %s", doc.reference, exc,
                           extra={"document_ref": doc.reference})
            return False
        self._dispatch_quietly(doc, content)
        return doc.status == "AI_VERIFICATION_IN_PROGRESS"

    def undispatched_documents(self, limit=100) -> list[VerificationDocument]:
        """PENDING AI-eligible documents that never reached the provider."""
        if not self._setting("AI_VERIFICATION_ENABLED") or self.ai_client is None:
            return []
        return (
            VerificationDocument.query
            .filter(
                VerificationDocument.status == "PENDING",
                VerificationDocument.ai_dispatched_at.is_(None),
                VerificationDocument.document_type.in_(AI_ELIGIBLE_TYPES),
                VerificationDocument.mime_type.in_(AI_ELIGIBLE_MIME_TYPES),
            )
            .order_by(VerificationDocument.uploaded_at, VerificationDocument.id)
            .limit(limit)
            .all()
        )

    def start_ai_verification(self, document_ref) -> VerificationDocument:
        """Explicit (re)dispatch of a PENDING document.  Provider failures propagate."""
        doc = self.get_document(document_ref)
        if doc.status != "PENDING":
            raise InvalidTransitionError("document", doc.reference, doc.status,
                                         "AI_VERIFICATION_IN_PROGRESS")
        if not self.is_ai_eligible(doc.document_type, doc.mime_type):
            raise ValidationError(
                f"{doc.display_name} ({doc.mime_type}) is not eligible for AI verification",
                details={"document_type": doc.document_type, "mime_type": doc.mime_type},
            )
        self._dispatch(doc, self.blob_store.get(doc.storage_ref))
        return doc

    def handle_ai_verification_result(self, event: AIVerificationEvent) -> dict:
        """
        Apply an AI verdict if the document is still waiting for one.

        Returns:
            {"applied": bool, "document_ref", "status", "reason"?}
        """
        doc = self.get_document(event.document_ref)
        stale_reason = None
        if doc.status != "AI_VERIFICATION_IN_PROGRESS":
            stale_reason = f"document is {doc.status}"
        elif event.verification_id and doc.ai_verification_id and event.verification_id != doc.ai_verification_id:
            stale_reason = "verification id does not match the latest dispatch"
        if stale_reason:
            self._count("document.ai_callback_stale")
            logger.info(
                "Dropped stale AI callback for %s: %s", doc.reference, stale_reason,
                extra={"document_ref": doc.reference, "provider": "ai_verification"},
            )
            return {"applied": False, "document_ref": doc.reference, "status": doc.status,
                    "reason": stale_reason}

        target = _AI_OUTCOMES[event.outcome]
        with version_guard("document", doc.reference):
            apply_transition(doc, target, reason=event.notes or f"AI verification {event.outcome}",
                             actor="ai_verification")
            if event.confidence_score is not None:
                doc.confidence_score = event.confidence_score
            commit_or_conflict("document", doc.reference)

        self._count("document.ai_result", tag=target)
        self._signal(doc.application_ref, "ai_result", doc)
        return {"applied": True, "document_ref": doc.reference, "status": doc.status}

    # ── Reviewer decisions ───────────────────────────────────────────────

    @staticmethod
    def _require_status(doc, allowed, target):
        if doc.status not in allowed:
            raise InvalidTransitionError(
                "document", doc.reference, doc.status, target,
                f"allowed only from {', '.join(allowed)}",
            )

    def approve(self, document_ref, reviewer, notes=None, confidence=None, expiry=None,
                *, expected_version=None) -> VerificationDocument:
        doc = self.get_document(document_ref)
        check_expected_version(doc, expected_version, "document")
        self._require_status(doc, APPROVABLE_STATUSES, "APPROVED")
        if not reviewer:
            raise ValidationError("reviewer is required", details={"reviewer": "required"})
        if expiry is not None and expiry < date.today():
            raise ValidationError("Document has already expired", details={"expiry": expiry.isoformat()})
        confidence = _parse_confidence(confidence)

        with version_guard("document", doc.reference):
            doc.reviewer_id = reviewer
            doc.review_notes = notes
            if confidence is not None:
                doc.confidence_score = confidence
            doc.expiry_date = expiry
            doc.reviewed_at = datetime.now(timezone.utc)
            apply_transition(doc, "APPROVED", reason=notes or "Approved by reviewer", actor=reviewer)
            commit_or_conflict("document", doc.reference)

        self._count("document.approved", tag=doc.document_type)
        self._signal(doc.application_ref, "approved", doc)
        return doc

    def reject(self, document_ref, reviewer, reason, suggested_action=None,
               allow_resubmission=False, *, expected_version=None) -> VerificationDocument:
        doc = self.get_document(document_ref)
        check_expected_version(doc, expected_version, "document")
        self._require_status(doc, REJECTABLE_STATUSES, "REJECTED")
        if not reason:
            raise ValidationError("A rejection reason is required", details={"reason": "required"})

        with version_guard("document", doc.reference):
            doc.reviewer_id = reviewer
            doc.rejection_reason = reason
            doc.suggested_action = suggested_action
            doc.reviewed_at = datetime.now(timezone.utc)
            apply_transition(doc, "REJECTED", reason=reason, actor=reviewer)
            commit_or_conflict("document", doc.reference)

        self._count("document.rejected", tag=doc.document_type)
        self._signal(doc.application_ref, "rejected", doc, allow_resubmission=bool(allow_resubmission))
        return doc

    def request_resubmission(self, document_ref, reviewer, notes=None, suggested_action=None,
                             *, expected_version=None) -> VerificationDocument:
        """Corrective move to RESUBMISSION_REQUIRED from any non-terminal status."""
        doc = self.get_document(document_ref)
        check_expected_version(doc, expected_version, "document")

        with version_guard("document", doc.reference):
            apply_transition(doc, "RESUBMISSION_REQUIRED", reason=notes or "Resubmission requested",
                             actor=reviewer, corrective=True)
            doc.reviewer_id = reviewer
            doc.review_notes = notes
            doc.suggested_action = suggested_action
            doc.reviewed_at = datetime.now(timezone.utc)
            commit_or_conflict("document", doc.reference)

        self._count("document.resubmission_requested")
        self._signal(doc.application_ref, "resubmission_requested", doc, allow_resubmission=True)
        return doc

    def resubmit(self, document_ref, actor="customer", notes=None) -> VerificationDocument:
        """Put a RESUBMISSION_REQUIRED document back in the queue unchanged."""
        doc = self.get_document(document_ref)
        with version_guard("document", doc.reference):
            apply_transition(doc, "PENDING", reason=notes or "Returned for review", actor=actor)
            commit_or_conflict("document", doc.reference)
        self._signal(doc.application_ref, "resubmitted", doc)
        return doc

    def submit_for_manual_review(self, document_ref, reviewer=None, notes=None,
                                 *, expected_version=None) -> VerificationDocument:
        doc = self.get_document(document_ref)
        check_expected_version(doc, expected_version, "document")
        with version_guard("document", doc.reference):
            apply_transition(doc, "MANUAL_REVIEW", reason=notes or "Sent to manual review",
                             actor=reviewer or "system")
            if reviewer:
                doc.reviewer_id = reviewer
            if notes:
                doc.review_notes = notes
            commit_or_conflict("document", doc.reference)
        self._signal(doc.application_ref, "manual_review", doc)
        return doc

    # ── Administration ───────────────────────────────────────────────────

    def purge_document(self, document_ref, reason, actor) -> dict:
        """Delete the document row and its blob.  Status history is kept."""
        if not reason:
            raise ValidationError("A purge reason is required", details={"reason": "required"})
        doc = self.get_document(document_ref)
        application_ref = doc.application_ref
        storage_ref = doc.storage_ref

        with version_guard("document", doc.reference):
            db.session.delete(doc)
            commit_or_conflict("document", document_ref)

        try:
            self.blob_store.delete(storage_ref)
        except IntegrationError as exc:
            logger.warning("Blob %s for purged document %s not removed: %s", storage_ref, document_ref, exc,
                           extra={"document_ref": document_ref})

        logger.info(
            "Document %s purged by %s: %s", document_ref, actor, reason,
            extra={"application_ref": application_ref, "document_ref": document_ref, "actor": actor},
        )
        self._count("document.purged")
        self._signal(application_ref, "purged", None, document_ref=document_ref)
        return {"document_ref": document_ref, "application_ref": application_ref, "purged": True}

    def pending_review(self, limit=100) -> list[VerificationDocument]:
        return (
            VerificationDocument.query
            .filter(VerificationDocument.status.in_(AWAITING_REVIEW_STATUSES))
            .order_by(VerificationDocument.uploaded_at, VerificationDocument.id)
            .limit(limit)
            .all()
        )

    def overdue_documents(self, max_days=None) -> list[VerificationDocument]:
        days = self._setting("DOCUMENT_REVIEW_SLA_DAYS") if max_days is None else max_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        return (
            VerificationDocument.query
            .filter(
                VerificationDocument.status.in_(AWAITING_REVIEW_STATUSES),
                VerificationDocument.uploaded_at < cutoff,
            )
            .order_by(VerificationDocument.uploaded_at)
            .all()
        )

    @staticmethod
    def verification_statistics() -> dict:
        by_status = dict(
            db.session.query(VerificationDocument.status, func.count(VerificationDocument.id))
            .group_by(VerificationDocument.status).all()
        )
        by_type = dict(
            db.session.query(VerificationDocument.document_type, func.count(VerificationDocument.id))
            .group_by(VerificationDocument.document_type).all()
        )
        avg_confidence = db.session.query(func.avg(VerificationDocument.confidence_score)).scalar()
        total = sum(by_status.values())
        return {
            "total": total,
            "by_status": by_status,
            "by_type": by_type,
            "awaiting_review": sum(by_status.get(s, 0) for s in AWAITING_REVIEW_STATUSES),
            "average_confidence": round(avg_confidence, 3) if avg_confidence is not None else None,
        }

    # ── Completion ───────────────────────────────────────────────────────

    def check_completion(self, application_ref, segment=None):
        """Pure read: classify the application's documents against its segment."""
        app = self._application(application_ref)
        docs = VerificationDocument.query.filter_by(application_id=app.id).all()
        return evaluate_completion(docs, segment or app.segment, application_ref=app.reference)

    @staticmethod
    def required_documents(segment) -> list[dict]:
        return [group.to_dict() for group in requirements_for(segment)]
