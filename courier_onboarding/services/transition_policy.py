"""
Onboarding Engine — Transition Policy

The single authority on legal status changes for applications and
verification documents.

  - ``is_valid_transition`` is pure and total: any (from, to) pair, known
    or not, yields a bool.
  - ``apply_transition`` mutates a *persistent* entity, stamps milestone
    timestamps at most once, and appends exactly one history entry.  It
    never commits; the calling service owns the transaction.

Corrective moves (document → RESUBMISSION_REQUIRED) bypass the forward
table from any non-terminal status, because a reviewer asking for a new
upload is not forward progress.

Usage:
    from courier_onboarding.services.transition_policy import apply_transition

    result = apply_transition(application, "SUBMITTED", reason="Customer submitted", actor="customer")
"""

import logging
from datetime import datetime, timezone

from flask import current_app, has_app_context
from sqlalchemy import inspect as sa_inspect

from courier_onboarding.core.exceptions import InvalidTransitionError, ValidationError
from courier_onboarding.models.document import (
    DOCUMENT_TRANSITIONS,
    TERMINAL_DOCUMENT_STATUSES,
    VerificationDocument,
)
from courier_onboarding.models.onboarding import (
    APPLICATION_TRANSITIONS,
    REAPPLICATION_EDGES,
    OnboardingApplication,
)
from courier_onboarding.models.status_history import append_status_entry

logger = logging.getLogger(__name__)

_TABLES = {
    "application": APPLICATION_TRANSITIONS,
    "document": DOCUMENT_TRANSITIONS,
}

# entity_type → statuses reachable through a corrective move
_CORRECTIVE_TARGETS = {
    "document": {"RESUBMISSION_REQUIRED"},
}

# application status → milestone column stamped on first arrival
_APPLICATION_MILESTONES = {
    "SUBMITTED": "submitted_at",
    "APPROVED": "approved_at",
    "REJECTED": "rejected_at",
    "ACTIVATED": "activated_at",
}


def entity_type_of(entity) -> str:
    if isinstance(entity, OnboardingApplication):
        return "application"
    if isinstance(entity, VerificationDocument):
        return "document"
    raise TypeError(f"No transition table for {type(entity).__name__}")


def is_valid_transition(entity_type, from_status, to_status, *, allow_reapplication=True) -> bool:
    """Return True if ``from_status → to_status`` is in the table for ``entity_type``."""
    table = _TABLES.get(entity_type)
    if table is None:
        return False
    if to_status not in table.get(from_status, []):
        return False
    if entity_type == "application" and (from_status, to_status) in REAPPLICATION_EDGES:
        return bool(allow_reapplication)
    return True


def is_valid_corrective_transition(entity_type, from_status, to_status) -> bool:
    """Corrective moves: any non-terminal status → a corrective target."""
    if to_status not in _CORRECTIVE_TARGETS.get(entity_type, set()):
        return False
    if from_status not in _TABLES[entity_type] or from_status == to_status:
        return False
    return from_status not in TERMINAL_DOCUMENT_STATUSES


def allowed_targets(entity_type, from_status, *, allow_reapplication=True) -> list[str]:
    """Statuses reachable from ``from_status`` (forward table only)."""
    return [
        to for to in _TABLES.get(entity_type, {}).get(from_status, [])
        if is_valid_transition(entity_type, from_status, to, allow_reapplication=allow_reapplication)
    ]


def reapplication_allowed() -> bool:
    if has_app_context():
        return bool(current_app.config.get("ALLOW_REAPPLICATION", True))
    return True


def ensure_transition(entity, to_status, *, corrective=False, reason=None):
    """Raise InvalidTransitionError unless ``entity`` may move to ``to_status``.

    Lets orchestration check the policy *before* an external call, so a
    refused transition never triggers a provider side effect.
    """
    entity_type = entity_type_of(entity)
    current = entity.status
    if corrective:
        ok = is_valid_corrective_transition(entity_type, current, to_status)
    else:
        ok = is_valid_transition(entity_type, current, to_status,
                                 allow_reapplication=reapplication_allowed())
    if not ok:
        raise InvalidTransitionError(
            entity_type, getattr(entity, "reference", None), current, to_status, reason,
        )


def apply_transition(entity, to_status, *, reason=None, actor="system", corrective=False) -> dict:
    """
    Move ``entity`` to ``to_status`` and append one history entry.

    Args:
        entity: Persistent OnboardingApplication or VerificationDocument.
        to_status: Target status.
        reason: Free-text reason recorded in history.
        actor: Who performed the change ("system", reviewer id, ...).
        corrective: Use the corrective rule instead of the forward table.

    Returns:
        {"entity_type", "entity_ref", "previous_status", "new_status"}

    Raises:
        InvalidTransitionError: pair not allowed; entity left untouched.
        ValidationError: entity is not loaded from / flushed to the store.
    """
    entity_type = entity_type_of(entity)
    state = sa_inspect(entity)
    if not state.persistent:
        raise ValidationError(
            f"{entity_type} must be loaded from the store before changing status",
            details={"state": "transient" if state.transient else "detached"},
        )

    ensure_transition(entity, to_status, corrective=corrective)

    previous = entity.status
    now = datetime.now(timezone.utc)
    entity.status = to_status

    if entity_type == "application":
        milestone = _APPLICATION_MILESTONES.get(to_status)
        if milestone and getattr(entity, milestone) is None:
            setattr(entity, milestone, now)
        application_ref = entity.reference
    else:
        application_ref = entity.application_ref

    append_status_entry(
        entity_type=entity_type,
        entity_ref=entity.reference,
        application_ref=application_ref,
        from_status=previous,
        to_status=to_status,
        reason=reason,
        actor=actor,
    )

    logger.info(
        "%s %s: %s -> %s", entity_type, entity.reference, previous, to_status,
        extra={
            "application_ref": application_ref,
            "document_ref": entity.reference if entity_type == "document" else None,
            "from_status": previous,
            "to_status": to_status,
            "actor": actor,
        },
    )

    return {
        "entity_type": entity_type,
        "entity_ref": entity.reference,
        "previous_status": previous,
        "new_status": to_status,
    }
