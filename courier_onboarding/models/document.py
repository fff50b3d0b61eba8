"""
Courier Onboarding Engine
Verification document domain model.

Models:
    - VerificationDocument: one row per uploaded artifact.

Integrity fields (content hash, size, MIME type, storage reference) are
recorded at upload and never mutated.  Review fields stay NULL until a
review event happens.
"""

import secrets
import uuid
from datetime import datetime, timezone

from sqlalchemy.orm import validates

from courier_onboarding.core.exceptions import ValidationError
from courier_onboarding.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def generate_document_reference() -> str:
    return f"DOC-{secrets.token_hex(6).upper()}"


# ── Constants ────────────────────────────────────────────────────────────────

DOCUMENT_STATUSES = (
    "PENDING",
    "AI_VERIFICATION_IN_PROGRESS",
    "AI_VERIFIED",
    "AI_FAILED",
    "MANUAL_REVIEW",
    "APPROVED",
    "REJECTED",
    "RESUBMISSION_REQUIRED",
)

# code → (display name, is identity document, description)
DOCUMENT_TYPES = {
    "NATIONAL_ID":           ("National ID", True, "National ID, state ID or similar government issued identification"),
    "PASSPORT":              ("Passport", True, "Valid passport from any country"),
    "DRIVERS_LICENSE":       ("Driver's License", True, "Valid driver's license"),
    "PROOF_OF_ADDRESS":      ("Proof of Address", False, "Document showing the residential address"),
    "UTILITY_BILL":          ("Utility Bill", False, "Recent utility bill (electricity, water, gas, internet)"),
    "BANK_STATEMENT":        ("Bank Statement", False, "Recent bank statement or letter from bank"),
    "SELFIE_WITH_ID":        ("Selfie with ID", False, "Photo of the applicant holding their ID document"),
    "BUSINESS_REGISTRATION": ("Business Registration", False, "Certificate of incorporation or business registration"),
    "TAX_CERTIFICATE":       ("Tax Certificate", False, "Business tax registration certificate"),
    "BUSINESS_LICENSE":      ("Business License", False, "Professional or business operating license"),
    "OTHER":                 ("Other Document", False, "Other supporting documentation"),
}

# Document types the AI verification service can read, and the formats it accepts.
AI_ELIGIBLE_TYPES = {"NATIONAL_ID", "PASSPORT", "DRIVERS_LICENSE", "BUSINESS_REGISTRATION"}
AI_ELIGIBLE_MIME_TYPES = {"image/jpeg", "image/png", "application/pdf"}

# Statuses a reviewer still has to act on.
AWAITING_REVIEW_STATUSES = ("PENDING", "MANUAL_REVIEW", "AI_VERIFIED", "AI_FAILED")

TERMINAL_DOCUMENT_STATUSES = {"APPROVED", "REJECTED"}


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

DOCUMENT_TRANSITIONS = {
    "PENDING":                     ["AI_VERIFICATION_IN_PROGRESS", "MANUAL_REVIEW", "APPROVED", "REJECTED"],
    "AI_VERIFICATION_IN_PROGRESS": ["AI_VERIFIED", "AI_FAILED", "MANUAL_REVIEW"],
    "AI_VERIFIED":                 ["APPROVED", "MANUAL_REVIEW"],
    "AI_FAILED":                   ["MANUAL_REVIEW", "REJECTED"],
    "MANUAL_REVIEW":               ["APPROVED", "REJECTED", "RESUBMISSION_REQUIRED"],
    "RESUBMISSION_REQUIRED":       ["PENDING", "REJECTED"],
    "APPROVED":                    [],
    "REJECTED":                    [],
}


class VerificationDocument(db.Model):
    """
    One uploaded verification artifact.

    Several submissions of the same type may exist for an application;
    ``is_primary`` marks the instance completion evaluation should prefer.
    """

    __tablename__ = "verification_documents"
    __table_args__ = (
        db.Index("idx_vdoc_app_type", "application_id", "document_type"),
        db.Index("idx_vdoc_status", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    reference = db.Column(db.String(40), nullable=False, unique=True, default=generate_document_reference)
    application_id = db.Column(
        db.String(36),
        db.ForeignKey("onboarding_applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    document_type = db.Column(db.String(40), nullable=False)
    status = db.Column(db.String(40), nullable=False, default="PENDING")
    is_primary = db.Column(db.Boolean, nullable=False, default=False)

    # Integrity (write-once)
    file_name = db.Column(db.String(255))
    mime_type = db.Column(db.String(100), nullable=False)
    file_size = db.Column(db.BigInteger, nullable=False)
    content_hash = db.Column(db.String(64), nullable=False, comment="SHA-256 hex digest")
    storage_ref = db.Column(db.String(255), nullable=False)
    uploaded_by = db.Column(db.String(100))

    # AI verification
    ai_verification_id = db.Column(db.String(100))
    ai_dispatched_at = db.Column(db.DateTime(timezone=True))

    # Review
    reviewer_id = db.Column(db.String(100))
    review_notes = db.Column(db.Text)
    rejection_reason = db.Column(db.Text)
    suggested_action = db.Column(db.String(255))
    confidence_score = db.Column(db.Float)
    expiry_date = db.Column(db.Date)
    reviewed_at = db.Column(db.DateTime(timezone=True))

    uploaded_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    version = db.Column(db.Integer, nullable=False)

    application = db.relationship("OnboardingApplication", back_populates="documents")

    __mapper_args__ = {"version_id_col": version}

    @validates("content_hash", "file_size", "mime_type", "storage_ref", "reference")
    def _validate_write_once(self, key, value):
        current = getattr(self, key)
        if current is not None and value != current:
            raise ValidationError(f"{key} is recorded at upload and cannot change",
                                  details={key: "immutable"})
        return value

    @property
    def display_name(self) -> str:
        return DOCUMENT_TYPES.get(self.document_type, (self.document_type,))[0]

    @property
    def application_ref(self) -> str | None:
        return self.application.reference if self.application else None

    def to_dict(self):
        return {
            "id": self.id,
            "reference": self.reference,
            "application_ref": self.application_ref,
            "document_type": self.document_type,
            "display_name": self.display_name,
            "status": self.status,
            "is_primary": self.is_primary,
            "file_name": self.file_name,
            "mime_type": self.mime_type,
            "file_size": self.file_size,
            "content_hash": self.content_hash,
            "uploaded_by": self.uploaded_by,
            "ai_verification_id": self.ai_verification_id,
            "reviewer_id": self.reviewer_id,
            "review_notes": self.review_notes,
            "rejection_reason": self.rejection_reason,
            "suggested_action": self.suggested_action,
            "confidence_score": self.confidence_score,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
            "version": self.version,
        }

    def __repr__(self):
        return f"<VerificationDocument {self.reference} {self.document_type} [{self.status}]>"
