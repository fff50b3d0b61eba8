"""
Onboarding Engine wiring.

Builds the orchestrator, the document workflow and their collaborators
once per Flask app and stores them in ``app.extensions["onboarding"]``.
Any collaborator can be replaced by keyword (tests pass in-process fakes).

Usage:
    init_onboarding(app)                          # providers from config
    init_onboarding(app, kyc=fake_kyc, ...)       # explicit collaborators
    engine = get_engine()
    engine.orchestrator.submit(ref)
"""

from dataclasses import dataclass

from flask import Flask, current_app

from courier_onboarding.integrations.blob_store import LocalBlobStore
from courier_onboarding.integrations.providers import build_provider_clients
from courier_onboarding.services.ai_dispatch import AIDispatchRunner
from courier_onboarding.services.document_verification import DocumentVerificationWorkflow
from courier_onboarding.services.metrics import MetricsCollector
from courier_onboarding.services.notification import NotificationService
from courier_onboarding.services.onboarding_service import OnboardingOrchestrator


@dataclass
class OnboardingEngine:
    orchestrator: OnboardingOrchestrator
    documents: DocumentVerificationWorkflow
    metrics: MetricsCollector
    blob_store: object


def init_onboarding(app: Flask, **overrides) -> OnboardingEngine:
    """Create the engine for ``app``.

    Keyword overrides: kyc, auth, billing, ai, blob_store, notifier, metrics,
    dispatcher.
    """
    providers = {}
    if not all(k in overrides for k in ("kyc", "auth", "billing", "ai")):
        providers = build_provider_clients(app.config)

    metrics = overrides.get("metrics") or MetricsCollector()
    blob_store = overrides.get("blob_store") or LocalBlobStore(app.config["BLOB_STORAGE_PATH"])
    notifier = overrides.get("notifier", NotificationService)
    dispatcher = overrides.get("dispatcher")
    if dispatcher is None and app.config.get("AI_DISPATCH_MODE", "background") == "background":
        dispatcher = AIDispatchRunner()

    documents = DocumentVerificationWorkflow(
        blob_store=blob_store,
        ai_client=overrides["ai"] if "ai" in overrides else providers.get("ai"),
        metrics=metrics,
        dispatcher=dispatcher,
    )
    orchestrator = OnboardingOrchestrator(
        kyc=overrides.get("kyc") or providers["kyc"],
        auth=overrides.get("auth") or providers["auth"],
        billing=overrides.get("billing") or providers["billing"],
        documents=documents,
        notifier=notifier,
        metrics=metrics,
    )
    engine = OnboardingEngine(
        orchestrator=orchestrator,
        documents=documents,
        metrics=metrics,
        blob_store=blob_store,
    )
    app.extensions["onboarding"] = engine
    app.logger.debug("Onboarding engine initialised (ai=%s, dispatch=%s)", documents.ai_client is not None,
                     "background" if dispatcher is not None else "inline")
    return engine


def get_engine() -> OnboardingEngine:
    return current_app.extensions["onboarding"]
