"""
Shared pytest fixtures for the Courier Onboarding Engine test suite.

Provides:
    - app: Flask application wired to in-process provider fakes (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - engine / orchestrator / workflow: the app's onboarding engine
    - kyc / auth / billing / ai: provider fakes, reset before every test
    - no_ai: disables AI dispatch so uploads stay PENDING
"""

import itertools

import pytest

from courier_onboarding import create_app
from courier_onboarding.core.exceptions import IntegrationError
from courier_onboarding.integrations.blob_store import LocalBlobStore
from courier_onboarding.middleware.timing import reset_metrics
from courier_onboarding.models import db as _db


# ── Provider fakes ───────────────────────────────────────────────────────


class _FakeProvider:
    """Records calls; raises IntegrationError for operations listed in ``fail_on``."""

    name = "provider"

    def __init__(self):
        self.reset()

    def reset(self):
        self.calls = []
        self.fail_on = set()
        self._ids = itertools.count(1)

    def _record(self, operation, entity_ref, **kwargs):
        self.calls.append((operation, kwargs))
        if operation in self.fail_on or "*" in self.fail_on:
            raise IntegrationError(self.name, operation, entity_ref, "simulated outage")

    def count(self, operation):
        return sum(1 for op, _ in self.calls if op == operation)


class FakeKYC(_FakeProvider):
    name = "kyc"

    def reset(self):
        super().reset()
        self.status = {"status": "pending", "progress": 40, "requires_manual_review": False}

    def initiate(self, identity_payload, reference):
        self._record("initiate", reference, payload=identity_payload)
        return {"verification_id": f"KYC-{next(self._ids):04d}", "status": "pending",
                "estimated_completion": None}

    def get_status(self, verification_id):
        self._record("get_status", verification_id)
        return dict(self.status)


class FakeAuth(_FakeProvider):
    name = "auth"

    def create_user(self, *, email, phone, first_name, last_name, role, external_ref):
        self._record("create_user", external_ref, email=email, role=role)
        return {"user_id": f"USR-{next(self._ids):04d}"}

    def activate(self, user_id):
        self._record("activate", user_id)

    def suspend(self, user_id):
        self._record("suspend", user_id)


class FakeBilling(_FakeProvider):
    name = "billing"

    def create_profile(self, application_ref, payload=None):
        self._record("create_profile", application_ref, payload=payload)
        return {"billing_profile_id": f"BIL-{next(self._ids):04d}"}


class FakeAI(_FakeProvider):
    name = "ai_verification"

    def dispatch(self, *, document_ref, document_type, mime_type, content):
        self._record("dispatch", document_ref, document_type=document_type, size=len(content))
        return {"verification_id": f"AIV-{next(self._ids):04d}"}


_FAKES = {
    "kyc": FakeKYC(),
    "auth": FakeAuth(),
    "billing": FakeBilling(),
    "ai": FakeAI(),
}


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app(tmp_path_factory):
    """Create the Flask application once per test session."""
    blob_root = str(tmp_path_factory.mktemp("blobs"))
    application = create_app("testing", blob_store=LocalBlobStore(blob_root), **_FAKES)
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    for fake in _FAKES.values():
        fake.reset()
    app.extensions["onboarding"].metrics.reset()
    reset_metrics()
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def engine(app):
    return app.extensions["onboarding"]


@pytest.fixture()
def orchestrator(engine):
    return engine.orchestrator


@pytest.fixture()
def workflow(engine):
    return engine.documents


@pytest.fixture()
def kyc():
    return _FAKES["kyc"]


@pytest.fixture()
def auth():
    return _FAKES["auth"]


@pytest.fixture()
def billing():
    return _FAKES["billing"]


@pytest.fixture()
def ai():
    return _FAKES["ai"]


@pytest.fixture()
def no_ai(app, monkeypatch):
    """Uploads stay PENDING instead of being dispatched to AI verification."""
    monkeypatch.setitem(app.config, "AI_VERIFICATION_ENABLED", False)


# ── Convenience factories ────────────────────────────────────────────────

PDF_BYTES = b"%PDF-1.4\n" + b"fake-pdf-payload" * 8

INDIVIDUAL_PROFILE = {
    "email": "ada@example.com",
    "phone": "+44 20 7946 0000",
    "first_name": "Ada",
    "last_name": "Lovelace",
    "date_of_birth": "1990-12-10",
    "address_line1": "12 St James's Square",
    "city": "London",
    "postal_code": "SW1Y 4JH",
    "country": "GB",
    "terms_accepted": True,
    "privacy_accepted": True,
}

BUSINESS_PROFILE = dict(
    INDIVIDUAL_PROFILE,
    email="ops@lovelace-logistics.example.com",
    segment="BUSINESS",
    business_name="Lovelace Logistics Ltd",
    business_registration_number="08123456",
    tax_id="GB123456789",
)

SEGMENT_DOCUMENTS = {
    "INDIVIDUAL": ("NATIONAL_ID", "PROOF_OF_ADDRESS"),
    "BUSINESS": ("BUSINESS_REGISTRATION", "TAX_CERTIFICATE"),
}


@pytest.fixture()
def make_application(orchestrator):
    """Create a DRAFT application with a complete individual profile."""
    def _make(**overrides):
        data = dict(INDIVIDUAL_PROFILE)
        data.update(overrides)
        return orchestrator.create_application(data)
    return _make


@pytest.fixture()
def upload_document(workflow):
    """Upload a small PDF of ``document_type`` for an application."""
    def _upload(application_ref, document_type, content=PDF_BYTES, mime_type="application/pdf", **kw):
        return workflow.upload(application_ref, document_type, content, mime_type, **kw)
    return _upload


@pytest.fixture()
def approve_required_documents(workflow, upload_document):
    """Upload and approve one document for every group the segment requires."""
    def _approve(application_ref, segment="INDIVIDUAL"):
        docs = []
        for doc_type in SEGMENT_DOCUMENTS[segment]:
            doc = upload_document(application_ref, doc_type)
            if doc.status == "AI_VERIFICATION_IN_PROGRESS":
                workflow.submit_for_manual_review(doc.reference, reviewer="rev-1")
            docs.append(workflow.approve(doc.reference, reviewer="rev-1"))
        return docs
    return _approve


@pytest.fixture()
def advance(orchestrator, make_application, approve_required_documents):
    """Create an application and drive it to ``target`` along the happy path.

    Targets: DRAFT, SUBMITTED, KYC_IN_PROGRESS, KYC_APPROVED, APPROVED, ACTIVATED.
    """
    steps = ("DRAFT", "SUBMITTED", "KYC_IN_PROGRESS", "KYC_APPROVED", "APPROVED", "ACTIVATED")

    def _advance(target, **overrides):
        app = make_application(**overrides)
        ref, segment = app.reference, app.segment
        wanted = steps.index(target)
        if wanted >= 1:
            orchestrator.submit(ref)
        if wanted >= 2:
            approve_required_documents(ref, segment)
            orchestrator.initiate_kyc(ref)
        if wanted >= 3:
            orchestrator.record_kyc_verdict(ref, "approved")
        if wanted >= 4:
            orchestrator.decide(ref, "APPROVED", actor="rev-1")
        if wanted >= 5:
            orchestrator.activate(ref)
        return orchestrator.get_application(ref)
    return _advance
