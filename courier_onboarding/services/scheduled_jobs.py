"""
Onboarding Engine
Scheduled Jobs.

Jobs:
    - kyc_status_poll: polls the KYC provider for applications awaiting a verdict
    - overdue_document_scan: notifies reviewers about documents waiting past the review SLA
    - ai_dispatch: sends PENDING AI-eligible documents that never reached the provider
"""

from __future__ import annotations

import logging
from typing import Any

from courier_onboarding.core.exceptions import (
    ConcurrentModificationError,
    IntegrationError,
    InvalidTransitionError,
)
from courier_onboarding.models.onboarding import OnboardingApplication
from courier_onboarding.services.scheduler_service import register_job

logger = logging.getLogger(__name__)

REVIEWER_QUEUE = "document-review-queue"


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: KYC status poll
# ═══════════════════════════════════════════════════════════════════════════

@register_job("kyc_status_poll")
def poll_kyc_status(app) -> dict[str, Any]:
    """Ask the KYC provider about every application still in KYC_IN_PROGRESS."""
    engine = app.extensions["onboarding"]
    results = {"polled": 0, "applied": 0, "errors": 0}

    refs = [
        a.reference for a in
        OnboardingApplication.query.filter_by(status="KYC_IN_PROGRESS").all()
        if a.kyc_verification_id
    ]
    for ref in refs:
        results["polled"] += 1
        try:
            outcome = engine.orchestrator.record_kyc_verdict(ref, actor="kyc_status_poll")
        except (IntegrationError, ConcurrentModificationError, InvalidTransitionError) as exc:
            results["errors"] += 1
            logger.warning("KYC poll for %s failed: %s", ref, exc, extra={"application_ref": ref})
            continue
        if outcome.get("applied"):
            results["applied"] += 1

    logger.info("KYC status poll: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Overdue document scan
# ═══════════════════════════════════════════════════════════════════════════

@register_job("overdue_document_scan")
def scan_overdue_documents(app) -> dict[str, Any]:
    """Notify the review queue about documents waiting longer than the SLA."""
    engine = app.extensions["onboarding"]
    overdue = engine.documents.overdue_documents()
    notified = 0
    for doc in overdue:
        if engine.orchestrator.notify(
            REVIEWER_QUEUE,
            f"Document {doc.reference} is overdue for review",
            f"{doc.display_name} for {doc.application_ref} has been {doc.status} since {doc.uploaded_at}.",
            entity_type="document",
            entity_ref=doc.reference,
            application_ref=doc.application_ref,
        ):
            notified += 1
    results = {"overdue": len(overdue), "notified": notified}
    logger.info("Overdue document scan: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 3: AI dispatch sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("ai_dispatch")
def dispatch_pending_documents(app) -> dict[str, Any]:
    """Dispatch documents whose upload-time AI hand-off failed or never ran."""
    engine = app.extensions["onboarding"]
    refs = [doc.reference for doc in engine.documents.undispatched_documents()]
    results = {"checked": len(refs), "dispatched": 0}
    for ref in refs:
        if engine.documents.dispatch_pending(ref):
            results["dispatched"] += 1
    logger.info("AI dispatch sweep: %s", results)
    return results
