"""
Courier Onboarding Engine
Onboarding application domain model.

Models:
    - OnboardingApplication: one row per onboarding attempt, owning its
      verification documents.

The application status machine lives in ``APPLICATION_TRANSITIONS``; it is
the only source the transition policy consults.  ``version`` is registered as
the mapper's version counter, so every UPDATE is conditional on the version
that was loaded and bumps it.
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


def generate_application_reference() -> str:
    """Return a reference like ``CUST-ONB-20260301-1A2B3C4D``."""
    day = datetime.now(timezone.utc).strftime("%Y%m%d")
    return f"CUST-ONB-{day}-{secrets.token_hex(4).upper()}"


# ── Constants ────────────────────────────────────────────────────────────────

APPLICATION_STATUSES = (
    "DRAFT",
    "SUBMITTED",
    "DOCUMENTS_REQUIRED",
    "DOCUMENTS_UPLOADED",
    "KYC_IN_PROGRESS",
    "KYC_APPROVED",
    "KYC_FAILED",
    "UNDER_REVIEW",
    "APPROVED",
    "REJECTED",
    "ACTIVATED",
    "SUSPENDED",
    "DEACTIVATED",
    "REACTIVATED",
    "CANCELLED",
)

CUSTOMER_SEGMENTS = {"INDIVIDUAL", "BUSINESS"}
COMMUNICATION_CHANNELS = {"EMAIL", "SMS", "PHONE", "PUSH"}

# Statuses in which an email address is considered taken by an ongoing
# onboarding attempt or a live account.
INACTIVE_STATUSES = {"REJECTED", "CANCELLED", "DEACTIVATED"}


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

APPLICATION_TRANSITIONS = {
    "DRAFT":              ["SUBMITTED", "CANCELLED"],
    "SUBMITTED":          ["DOCUMENTS_REQUIRED", "KYC_IN_PROGRESS", "REJECTED"],
    "DOCUMENTS_REQUIRED": ["DOCUMENTS_UPLOADED", "REJECTED"],
    "DOCUMENTS_UPLOADED": ["KYC_IN_PROGRESS", "REJECTED"],
    "KYC_IN_PROGRESS":    ["KYC_APPROVED", "KYC_FAILED", "UNDER_REVIEW"],
    "KYC_APPROVED":       ["UNDER_REVIEW", "APPROVED"],
    "KYC_FAILED":         ["REJECTED", "DOCUMENTS_REQUIRED"],
    "UNDER_REVIEW":       ["APPROVED", "REJECTED", "DOCUMENTS_REQUIRED"],
    "APPROVED":           ["ACTIVATED", "SUSPENDED"],
    "REJECTED":           ["DRAFT"],          # re-application, gated by ALLOW_REAPPLICATION
    "ACTIVATED":          ["SUSPENDED", "DEACTIVATED"],
    "SUSPENDED":          ["ACTIVATED", "DEACTIVATED", "REACTIVATED"],
    "DEACTIVATED":        ["ACTIVATED"],
    "REACTIVATED":        ["SUSPENDED", "DEACTIVATED"],
    "CANCELLED":          ["DRAFT"],
}

# Edges that exist only while re-application is enabled.
REAPPLICATION_EDGES = {("REJECTED", "DRAFT")}

# Fields a customer may edit while the application is still a draft.
EDITABLE_FIELDS = (
    "segment",
    "phone",
    "first_name",
    "last_name",
    "date_of_birth",
    "national_id",
    "business_name",
    "business_registration_number",
    "tax_id",
    "address_line1",
    "address_line2",
    "city",
    "state",
    "postal_code",
    "country",
    "preferred_communication",
    "marketing_consent",
    "terms_accepted",
    "privacy_accepted",
)

# Fields that must be present before DRAFT → SUBMITTED.
REQUIRED_FOR_SUBMISSION = ("email", "phone", "first_name", "last_name", "country")
REQUIRED_FOR_BUSINESS = ("business_name",)


class OnboardingApplication(db.Model):
    """
    One onboarding attempt for a prospective courier customer.

    ``status`` changes only through the transition policy.  External
    references (KYC verification, auth user, billing profile) are set once
    and cannot be re-pointed afterwards.
    """

    __tablename__ = "onboarding_applications"
    __table_args__ = (
        db.Index("idx_onb_app_email", "email"),
        db.Index("idx_onb_app_status", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    reference = db.Column(
        db.String(40), nullable=False, unique=True, default=generate_application_reference,
        comment="CUST-ONB-YYYYMMDD-XXXXXXXX",
    )
    segment = db.Column(db.String(20), nullable=False, default="INDIVIDUAL",
                        comment="INDIVIDUAL | BUSINESS")

    # Contact & identity
    email = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(30))
    first_name = db.Column(db.String(100))
    last_name = db.Column(db.String(100))
    date_of_birth = db.Column(db.Date)
    national_id = db.Column(db.String(50))

    # Business identity (BUSINESS segment)
    business_name = db.Column(db.String(200))
    business_registration_number = db.Column(db.String(100))
    tax_id = db.Column(db.String(50))

    # Address
    address_line1 = db.Column(db.String(255))
    address_line2 = db.Column(db.String(255))
    city = db.Column(db.String(100))
    state = db.Column(db.String(100))
    postal_code = db.Column(db.String(20))
    country = db.Column(db.String(100))

    # Preferences & consents
    preferred_communication = db.Column(db.String(20), default="EMAIL")
    marketing_consent = db.Column(db.Boolean, nullable=False, default=False)
    terms_accepted = db.Column(db.Boolean, nullable=False, default=False)
    privacy_accepted = db.Column(db.Boolean, nullable=False, default=False)

    # Workflow
    status = db.Column(db.String(30), nullable=False, default="DRAFT")
    rejection_reason = db.Column(db.Text)

    # External references (set once)
    kyc_verification_id = db.Column(db.String(100))
    auth_user_id = db.Column(db.String(100))
    billing_profile_id = db.Column(db.String(100))

    # Milestones (each stamped at most once)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    submitted_at = db.Column(db.DateTime(timezone=True))
    approved_at = db.Column(db.DateTime(timezone=True))
    rejected_at = db.Column(db.DateTime(timezone=True))
    activated_at = db.Column(db.DateTime(timezone=True))

    version = db.Column(db.Integer, nullable=False)

    documents = db.relationship(
        "VerificationDocument",
        back_populates="application",
        cascade="all, delete-orphan",
        lazy="select",
        order_by="VerificationDocument.uploaded_at",
    )

    __mapper_args__ = {"version_id_col": version}

    # ── Guards ───────────────────────────────────────────────────────────

    @validates("kyc_verification_id", "auth_user_id", "billing_profile_id")
    def _validate_set_once(self, key, value):
        current = getattr(self, key)
        if current is not None and value != current:
            raise ValidationError(
                f"{key} is already set and cannot be changed",
                details={key: "immutable"},
            )
        return value

    @validates("reference")
    def _validate_reference(self, key, value):
        current = getattr(self, key)
        if current is not None and value != current:
            raise ValidationError("reference is immutable", details={key: "immutable"})
        return value

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def to_dict(self, include_documents=False):
        d = {
            "id": self.id,
            "reference": self.reference,
            "segment": self.segment,
            "email": self.email,
            "phone": self.phone,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "date_of_birth": self.date_of_birth.isoformat() if self.date_of_birth else None,
            "national_id": self.national_id,
            "business_name": self.business_name,
            "business_registration_number": self.business_registration_number,
            "tax_id": self.tax_id,
            "address_line1": self.address_line1,
            "address_line2": self.address_line2,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "country": self.country,
            "preferred_communication": self.preferred_communication,
            "marketing_consent": self.marketing_consent,
            "terms_accepted": self.terms_accepted,
            "privacy_accepted": self.privacy_accepted,
            "status": self.status,
            "rejection_reason": self.rejection_reason,
            "kyc_verification_id": self.kyc_verification_id,
            "auth_user_id": self.auth_user_id,
            "billing_profile_id": self.billing_profile_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "rejected_at": self.rejected_at.isoformat() if self.rejected_at else None,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "version": self.version,
        }
        if include_documents:
            d["documents"] = [doc.to_dict() for doc in self.documents]
        return d

    def __repr__(self):
        return f"<OnboardingApplication {self.reference} [{self.status}]>"
