"""
Onboarding Metrics

Two sources:

  - ``MetricsCollector``: in-process counters (transitions, provider
    failures, dropped callbacks, notification failures).  One instance is
    created per app and handed to the engine; there is no module-level
    counter state.
  - ``onboarding_funnel()``: read-only query counting applications and
    documents per status.

Usage:
    metrics = MetricsCollector()
    metrics.increment("application.transition", tag="SUBMITTED")
    metrics.snapshot()
"""

from __future__ import annotations

import threading
from collections import Counter

from sqlalchemy import func

from courier_onboarding.models import db
from courier_onboarding.models.document import DOCUMENT_STATUSES, VerificationDocument
from courier_onboarding.models.onboarding import APPLICATION_STATUSES, OnboardingApplication


class MetricsCollector:
    """Thread-safe named counters, optionally split by a tag."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Counter = Counter()

    @staticmethod
    def _key(name: str, tag: str | None) -> str:
        return f"{name}:{tag}" if tag else name

    def increment(self, name: str, amount: int = 1, *, tag: str | None = None) -> None:
        with self._lock:
            self._counters[name] += amount
            if tag:
                self._counters[self._key(name, tag)] += amount

    def get(self, name: str, tag: str | None = None) -> int:
        with self._lock:
            return self._counters.get(self._key(name, tag), 0)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(sorted(self._counters.items()))

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()


def _safe_pct(numerator: int, denominator: int) -> float:
    """Zero-safe percentage."""
    return round((numerator / denominator) * 100, 1) if denominator else 0.0


def onboarding_funnel() -> dict:
    """Applications and documents per status, plus the approval rate."""
    app_rows = (
        db.session.query(OnboardingApplication.status, func.count(OnboardingApplication.id))
        .group_by(OnboardingApplication.status)
        .all()
    )
    doc_rows = (
        db.session.query(VerificationDocument.status, func.count(VerificationDocument.id))
        .group_by(VerificationDocument.status)
        .all()
    )
    applications = {s: 0 for s in APPLICATION_STATUSES}
    applications.update({status: count for status, count in app_rows})
    documents = {s: 0 for s in DOCUMENT_STATUSES}
    documents.update({status: count for status, count in doc_rows})

    total = sum(applications.values())
    approved = sum(applications[s] for s in ("APPROVED", "ACTIVATED", "SUSPENDED", "REACTIVATED"))
    decided = approved + applications["REJECTED"]
    return {
        "applications": applications,
        "documents": documents,
        "total_applications": total,
        "approval_rate": _safe_pct(approved, decided),
    }
