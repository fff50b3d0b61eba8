"""
Courier Onboarding Engine
Notification domain model.

Models:
    - Notification: in-app status message for an applicant or a reviewer queue.
"""

from datetime import datetime, timezone

from courier_onboarding.models import db


NOTIFICATION_CATEGORIES = {"application", "document", "kyc", "account", "system"}


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(255), nullable=False, index=True,
                          comment="Applicant email, reviewer queue name, or 'all'")
    subject = db.Column(db.String(300), nullable=False)
    body = db.Column(db.Text, default="")
    category = db.Column(db.String(30), default="application")

    # Link to source entity
    entity_type = db.Column(db.String(30), default="")
    entity_ref = db.Column(db.String(40), nullable=True, index=True)

    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient": self.recipient,
            "subject": self.subject,
            "body": self.body,
            "category": self.category,
            "entity_type": self.entity_type,
            "entity_ref": self.entity_ref,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.subject[:40]}>"
