"""Shared utility functions.

parse_date:            lenient ISO / DD.MM.YYYY parsing, returns None on bad input
parse_bool:            JSON/form truthiness ("true", "1", True, ...)
check_expected_version: optimistic-lock pre-check against a caller's version
commit_or_conflict:    commit that turns a lost version race into ConcurrentModificationError
version_guard:         same mapping for flushes that happen before the commit
"""
import logging
from contextlib import contextmanager
from datetime import date, datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from courier_onboarding.core.exceptions import ConcurrentModificationError, ConflictError
from courier_onboarding.models import db

logger = logging.getLogger(__name__)


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_bool(value, default=False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


# ── Optimistic concurrency ───────────────────────────────────────────────────

def check_expected_version(entity, expected_version, entity_type: str) -> None:
    """Raise ConcurrentModificationError if the loaded row moved past ``expected_version``.

    ``expected_version=None`` means the caller did not pin a version; the
    commit-time check in ``commit_or_conflict`` still applies.
    """
    if expected_version is None:
        return
    if int(expected_version) != entity.version:
        raise ConcurrentModificationError(
            entity_type,
            getattr(entity, "reference", None),
            expected_version=int(expected_version),
            actual_version=entity.version,
        )


def commit_or_conflict(entity_type: str, entity_ref: str | None) -> None:
    """Commit the current session.

    StaleDataError  → rollback + ConcurrentModificationError (another writer
                      bumped the row version between load and flush)
    IntegrityError  → rollback + ConflictError
    Anything else propagates after rollback.
    """
    try:
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning(
            "Version conflict on %s %s: %s", entity_type, entity_ref, exc,
            extra={"entity_type": entity_type, "entity_ref": entity_ref},
        )
        raise ConcurrentModificationError(entity_type, entity_ref) from exc
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit for %s %s: %s", entity_type, entity_ref, exc.orig)
        raise ConflictError(entity_type, "reference", entity_ref) from exc
    except Exception:
        db.session.rollback()
        raise


@contextmanager
def version_guard(entity_type: str, entity_ref: str | None):
    """Map a StaleDataError raised by any flush inside the block.

    Autoflush can push a versioned UPDATE before the final commit (for
    example when a query runs after a status change); the conflict must
    surface the same way wherever the flush happens.
    """
    try:
        yield
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning(
            "Version conflict on %s %s during flush", entity_type, entity_ref,
            extra={"entity_type": entity_type, "entity_ref": entity_ref},
        )
        raise ConcurrentModificationError(entity_type, entity_ref) from exc
