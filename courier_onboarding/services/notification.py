"""
Onboarding Engine
Notification Service.

In-app notification sink for application and document status changes.
Storage failures are rolled back and re-raised; the orchestrator logs and
counts them so its own callers never see a notification failure.
"""

from sqlalchemy.exc import SQLAlchemyError

from courier_onboarding.models import db
from courier_onboarding.models.notification import Notification



class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, recipient, subject, body="", category="application",
               entity_type="", entity_ref=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            recipient=recipient,
            subject=subject,
            body=body,
            category=category,
            entity_type=entity_type,
            entity_ref=entity_ref,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    @staticmethod
    def notify(recipient_ref, subject, body="", *, entity_type="application", entity_ref=None,
               category=None):
        """Sink entry point used by the onboarding engine.

        Returns the stored Notification.

        Raises:
            SQLAlchemyError: the notification could not be stored.
        """
        try:
            return NotificationService.create(
                recipient=recipient_ref,
                subject=subject,
                body=body,
                category=category or entity_type or "application",
                entity_type=entity_type,
                entity_ref=entity_ref,
            )
        except SQLAlchemyError:
            db.session.rollback()
            raise

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient, unread_only=False, limit=50):
        q = Notification.query.filter_by(recipient=recipient)
        if unread_only:
            q = q.filter_by(is_read=False)
        return q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()

    @staticmethod
    def list_for_entity(entity_ref):
        return (
            Notification.query
            .filter_by(entity_ref=entity_ref)
            .order_by(Notification.created_at, Notification.id)
            .all()
        )

    @staticmethod
    def mark_read(notification_id):
        notif = db.session.get(Notification, notification_id)
        if not notif:
            return None
        notif.mark_read()
        db.session.commit()
        return notif
