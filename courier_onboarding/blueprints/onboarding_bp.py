"""
Onboarding Applications Blueprint

Thin HTTP adapter over ``OnboardingOrchestrator``.  Service exceptions are
mapped to responses by ``utils.errors.register_error_handlers``.

  POST   /applications                         → create DRAFT
  GET    /applications                         → list (status, email, segment filters)
  GET    /applications/<ref>                   → detail (+ documents)
  PATCH  /applications/<ref>                   → edit DRAFT profile
  POST   /applications/<ref>/submit            → DRAFT → SUBMITTED
  POST   /applications/<ref>/cancel            → → CANCELLED
  POST   /applications/<ref>/reopen            → REJECTED / CANCELLED → DRAFT
  POST   /applications/<ref>/request-documents → → DOCUMENTS_REQUIRED
  POST   /applications/<ref>/kyc               → start KYC
  POST   /applications/<ref>/kyc/verdict       → push (or poll) a KYC verdict
  POST   /applications/<ref>/review            → → UNDER_REVIEW
  POST   /applications/<ref>/decision          → APPROVED / REJECTED
  POST   /applications/<ref>/reject            → early rejection
  POST   /applications/<ref>/activate|suspend|reactivate|deactivate
  GET    /applications/<ref>/history           → status history
  GET    /applications/<ref>/completion        → document completion
"""

from flask import Blueprint, jsonify, request

from courier_onboarding.blueprints import actor_from, expected_version, paginate_query
from courier_onboarding.services.engine import get_engine
from courier_onboarding.utils.helpers import parse_bool

onboarding_bp = Blueprint("onboarding", __name__, url_prefix="/api/v1/onboarding/applications")


def _orchestrator():
    return get_engine().orchestrator


def _body() -> dict:
    return request.get_json(silent=True) or {}


# ── Intake ───────────────────────────────────────────────────────────────────

@onboarding_bp.route("", methods=["POST"])
def create_application():
    data = _body()
    actor = data.pop("actor", None) or request.headers.get("X-Actor") or "customer"
    app = _orchestrator().create_application(data, actor=actor)
    return jsonify(app.to_dict()), 201


@onboarding_bp.route("", methods=["GET"])
def list_applications():
    q = _orchestrator().list_applications(
        status=request.args.get("status"),
        email=request.args.get("email"),
        segment=request.args.get("segment"),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [a.to_dict() for a in items], "total": total})


@onboarding_bp.route("/<reference>", methods=["GET"])
def get_application(reference):
    app = _orchestrator().get_application(reference)
    include_docs = parse_bool(request.args.get("include_documents"), default=True)
    return jsonify(app.to_dict(include_documents=include_docs))


@onboarding_bp.route("/<reference>", methods=["PATCH"])
def update_application(reference):
    data = _body()
    version = expected_version(data)
    actor = actor_from(data, "customer")
    changes = {k: v for k, v in data.items() if k not in ("version", "actor")}
    app = _orchestrator().update_application(reference, changes, actor=actor, expected_version=version)
    return jsonify(app.to_dict())


@onboarding_bp.route("/<reference>/submit", methods=["POST"])
def submit(reference):
    data = _body()
    result = _orchestrator().submit(reference, actor=actor_from(data, "customer"),
                                    expected_version=expected_version(data))
    return jsonify(result)


@onboarding_bp.route("/<reference>/cancel", methods=["POST"])
def cancel(reference):
    data = _body()
    result = _orchestrator().cancel(reference, reason=data.get("reason"),
                                    actor=actor_from(data, "customer"),
                                    expected_version=expected_version(data))
    return jsonify(result)


@onboarding_bp.route("/<reference>/reopen", methods=["POST"])
def reopen(reference):
    data = _body()
    result = _orchestrator().reopen(reference, reason=data.get("reason"),
                                    actor=actor_from(data, "customer"),
                                    expected_version=expected_version(data))
    return jsonify(result)


@onboarding_bp.route("/<reference>/request-documents", methods=["POST"])
def request_documents(reference):
    data = _body()
    result = _orchestrator().request_documents(reference, reason=data.get("reason"),
                                               actor=actor_from(data, "reviewer"),
                                               expected_version=expected_version(data))
    return jsonify(result)


# ── KYC & decision ───────────────────────────────────────────────────────────

@onboarding_bp.route("/<reference>/kyc", methods=["POST"])
def initiate_kyc(reference):
    data = _body()
    result = _orchestrator().initiate_kyc(reference, actor=actor_from(data, "system"),
                                          expected_version=expected_version(data))
    return jsonify(result), 202


@onboarding_bp.route("/<reference>/kyc/verdict", methods=["POST"])
def kyc_verdict(reference):
    """Body ``{"verdict": "approved"}``; an empty body polls the provider."""
    data = _body()
    result = _orchestrator().record_kyc_verdict(reference, verdict=data.get("verdict"),
                                                actor=actor_from(data, "kyc_provider"))
    return jsonify(result)


@onboarding_bp.route("/<reference>/review", methods=["POST"])
def refer_to_review(reference):
    data = _body()
    result = _orchestrator().refer_to_review(reference, reason=data.get("reason"),
                                             actor=actor_from(data, "reviewer"),
                                             expected_version=expected_version(data))
    return jsonify(result)


@onboarding_bp.route("/<reference>/decision", methods=["POST"])
def decide(reference):
    data = _body()
    result = _orchestrator().decide(reference, data.get("decision"), reason=data.get("reason"),
                                    actor=actor_from(data, "reviewer"),
                                    expected_version=expected_version(data))
    return jsonify(result)


@onboarding_bp.route("/<reference>/reject", methods=["POST"])
def reject_application(reference):
    data = _body()
    result = _orchestrator().reject_application(reference, data.get("reason"),
                                                actor=actor_from(data, "reviewer"),
                                                expected_version=expected_version(data))
    return jsonify(result)


# ── Account lifecycle ────────────────────────────────────────────────────────

@onboarding_bp.route("/<reference>/activate", methods=["POST"])
def activate(reference):
    data = _body()
    result = _orchestrator().activate(reference, actor=actor_from(data, "system"),
                                      reason=data.get("reason"),
                                      expected_version=expected_version(data))
    return jsonify(result)


@onboarding_bp.route("/<reference>/suspend", methods=["POST"])
def suspend(reference):
    data = _body()
    result = _orchestrator().suspend(reference, data.get("reason"), actor=actor_from(data, "admin"),
                                     expected_version=expected_version(data))
    return jsonify(result)


@onboarding_bp.route("/<reference>/reactivate", methods=["POST"])
def reactivate(reference):
    data = _body()
    result = _orchestrator().reactivate(reference, reason=data.get("reason"),
                                        actor=actor_from(data, "admin"),
                                        expected_version=expected_version(data))
    return jsonify(result)


@onboarding_bp.route("/<reference>/deactivate", methods=["POST"])
def deactivate(reference):
    data = _body()
    result = _orchestrator().deactivate(reference, data.get("reason"), actor=actor_from(data, "admin"),
                                        expected_version=expected_version(data))
    return jsonify(result)


# ── Read models ──────────────────────────────────────────────────────────────

@onboarding_bp.route("/<reference>/history", methods=["GET"])
def history(reference):
    include_docs = parse_bool(request.args.get("include_documents"))
    entries = _orchestrator().get_status_history(reference, include_documents=include_docs)
    return jsonify({"reference": reference, "items": [e.to_dict() for e in entries], "total": len(entries)})


@onboarding_bp.route("/<reference>/completion", methods=["GET"])
def completion(reference):
    status = _orchestrator().check_completion(reference, segment=request.args.get("segment"))
    return jsonify(status.to_dict())
