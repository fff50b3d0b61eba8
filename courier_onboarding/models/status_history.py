"""
Courier Onboarding Engine
Status history ledger.

Models:
    - StatusHistoryEntry: immutable, append-only record of every accepted
      status change for an application or a document.

Entries reference their entity by business reference rather than by
foreign key, so a document purge leaves its history in place.  The ORM
refuses UPDATE and DELETE on this table.
"""

from datetime import datetime, timezone

from sqlalchemy import event

from courier_onboarding.models import db

HISTORY_ENTITY_TYPES = {"application", "document"}


class StatusHistoryEntry(db.Model):
    """One accepted transition.  Never updated, never deleted."""

    __tablename__ = "status_history"
    __table_args__ = (
        db.Index("idx_history_entity", "entity_type", "entity_ref"),
        db.Index("idx_history_application", "application_ref"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(20), nullable=False, comment="application | document")
    entity_ref = db.Column(db.String(40), nullable=False)
    application_ref = db.Column(db.String(40), nullable=False,
                                comment="Owning application; equals entity_ref for applications")
    from_status = db.Column(db.String(40), nullable=True, comment="NULL for the creation entry")
    to_status = db.Column(db.String(40), nullable=False)
    reason = db.Column(db.Text)
    actor = db.Column(db.String(150), nullable=False, default="system")
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_ref": self.entity_ref,
            "application_ref": self.application_ref,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "reason": self.reason,
            "actor": self.actor,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return (f"<StatusHistoryEntry {self.id}: {self.entity_type}/{self.entity_ref} "
                f"{self.from_status}->{self.to_status}>")


@event.listens_for(StatusHistoryEntry, "before_update")
def _refuse_update(mapper, connection, target):
    raise RuntimeError("status history entries are immutable")


@event.listens_for(StatusHistoryEntry, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise RuntimeError("status history entries cannot be deleted")


# ── Convenience writer ───────────────────────────────────────────────────────

def append_status_entry(
    *,
    entity_type: str,
    entity_ref: str,
    to_status: str,
    from_status: str | None = None,
    application_ref: str | None = None,
    reason: str | None = None,
    actor: str = "system",
) -> StatusHistoryEntry:
    """
    Append a single history row to the session.  The INSERT goes out with
    the caller's commit, so the entry and the status change it records
    land in the same transaction or not at all.
    """
    if entity_type not in HISTORY_ENTITY_TYPES:
        raise ValueError(f"Unknown history entity_type: {entity_type}")
    entry = StatusHistoryEntry(
        entity_type=entity_type,
        entity_ref=entity_ref,
        application_ref=application_ref or entity_ref,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
        actor=actor or "system",
    )
    db.session.add(entry)
    return entry


def history_for(entity_type: str, entity_ref: str) -> list[StatusHistoryEntry]:
    """Entries for one entity in the order they were written."""
    return (
        StatusHistoryEntry.query
        .filter_by(entity_type=entity_type, entity_ref=entity_ref)
        .order_by(StatusHistoryEntry.created_at, StatusHistoryEntry.id)
        .all()
    )


def history_for_application(application_ref: str) -> list[StatusHistoryEntry]:
    """Application and document entries for one application, oldest first."""
    return (
        StatusHistoryEntry.query
        .filter_by(application_ref=application_ref)
        .order_by(StatusHistoryEntry.created_at, StatusHistoryEntry.id)
        .all()
    )
