"""
Verification Documents Blueprint

  POST   /applications/<ref>/documents            → multipart upload (file, document_type)
  GET    /applications/<ref>/documents            → list for an application
  GET    /documents/<doc_ref>                     → detail
  DELETE /documents/<doc_ref>                     → purge (row + blob; history kept)
  GET    /documents/<doc_ref>/download            → raw bytes
  POST   /documents/<doc_ref>/approve
  POST   /documents/<doc_ref>/reject
  POST   /documents/<doc_ref>/resubmission        → request a new upload
  POST   /documents/<doc_ref>/resubmit            → RESUBMISSION_REQUIRED → PENDING
  POST   /documents/<doc_ref>/manual-review
  POST   /documents/<doc_ref>/ai-verification     → (re)dispatch to the AI service
  GET    /documents/pending                       → review queue
  GET    /documents/overdue                       → past the review SLA
  GET    /documents/statistics
  GET    /required-documents/<segment>

The AI provider's callback lives on its own blueprint so it can carry a
separate rate limit.
"""

import io

from flask import Blueprint, jsonify, request, send_file

from courier_onboarding.blueprints import actor_from, expected_version
from courier_onboarding.core.exceptions import ValidationError
from courier_onboarding.services.document_verification import AIVerificationEvent
from courier_onboarding.services.engine import get_engine
from courier_onboarding.utils.helpers import parse_bool, parse_date

documents_bp = Blueprint("documents", __name__, url_prefix="/api/v1/onboarding")
callbacks_bp = Blueprint("callbacks", __name__, url_prefix="/api/v1/onboarding")


def _workflow():
    return get_engine().documents


def _body() -> dict:
    return request.get_json(silent=True) or {}


# ── Upload & lookup ──────────────────────────────────────────────────────────

@documents_bp.route("/applications/<reference>/documents", methods=["POST"])
def upload_document(reference):
    upload = request.files.get("file")
    if upload is None:
        raise ValidationError("file is required", details={"file": "required"})
    form = request.form
    content = upload.read()
    size = form.get("size")
    doc = _workflow().upload(
        reference,
        (form.get("document_type") or "").upper(),
        content,
        form.get("mime_type") or upload.mimetype,
        int(size) if size and size.isdigit() else None,
        is_primary=parse_bool(form.get("is_primary"), default=True),
        file_name=upload.filename,
        uploaded_by=form.get("uploaded_by") or "customer",
    )
    return jsonify(doc.to_dict()), 201


@documents_bp.route("/applications/<reference>/documents", methods=["GET"])
def list_documents(reference):
    docs = _workflow().list_documents(reference, document_type=request.args.get("document_type"))
    return jsonify({"items": [d.to_dict() for d in docs], "total": len(docs)})


@documents_bp.route("/documents/<doc_ref>", methods=["GET"])
def get_document(doc_ref):
    return jsonify(_workflow().get_document(doc_ref).to_dict())


@documents_bp.route("/documents/<doc_ref>", methods=["DELETE"])
def purge_document(doc_ref):
    data = _body()
    result = _workflow().purge_document(doc_ref, reason=data.get("reason"),
                                        actor=actor_from(data, "admin"))
    return jsonify(result)


@documents_bp.route("/documents/<doc_ref>/download", methods=["GET"])
def download_document(doc_ref):
    doc, content = _workflow().download_document(doc_ref)
    return send_file(
        io.BytesIO(content),
        mimetype=doc.mime_type,
        as_attachment=True,
        download_name=doc.file_name or doc.reference,
    )


# ── Reviewer decisions ───────────────────────────────────────────────────────

@documents_bp.route("/documents/<doc_ref>/approve", methods=["POST"])
def approve_document(doc_ref):
    data = _body()
    expiry = data.get("expiry_date")
    parsed_expiry = parse_date(expiry)
    if expiry and parsed_expiry is None:
        raise ValidationError("expiry_date must be YYYY-MM-DD", details={"expiry_date": expiry})
    doc = _workflow().approve(
        doc_ref,
        reviewer=actor_from(data, None),
        notes=data.get("notes"),
        confidence=data.get("confidence_score"),
        expiry=parsed_expiry,
        expected_version=expected_version(data),
    )
    return jsonify(doc.to_dict())


@documents_bp.route("/documents/<doc_ref>/reject", methods=["POST"])
def reject_document(doc_ref):
    data = _body()
    doc = _workflow().reject(
        doc_ref,
        reviewer=actor_from(data, "reviewer"),
        reason=data.get("reason"),
        suggested_action=data.get("suggested_action"),
        allow_resubmission=parse_bool(data.get("allow_resubmission")),
        expected_version=expected_version(data),
    )
    return jsonify(doc.to_dict())


@documents_bp.route("/documents/<doc_ref>/resubmission", methods=["POST"])
def request_resubmission(doc_ref):
    data = _body()
    doc = _workflow().request_resubmission(
        doc_ref,
        reviewer=actor_from(data, "reviewer"),
        notes=data.get("notes"),
        suggested_action=data.get("suggested_action"),
        expected_version=expected_version(data),
    )
    return jsonify(doc.to_dict())


@documents_bp.route("/documents/<doc_ref>/resubmit", methods=["POST"])
def resubmit_document(doc_ref):
    data = _body()
    doc = _workflow().resubmit(doc_ref, actor=actor_from(data, "customer"), notes=data.get("notes"))
    return jsonify(doc.to_dict())


@documents_bp.route("/documents/<doc_ref>/manual-review", methods=["POST"])
def manual_review(doc_ref):
    data = _body()
    doc = _workflow().submit_for_manual_review(
        doc_ref,
        reviewer=actor_from(data, None),
        notes=data.get("notes"),
        expected_version=expected_version(data),
    )
    return jsonify(doc.to_dict())


@documents_bp.route("/documents/<doc_ref>/ai-verification", methods=["POST"])
def start_ai_verification(doc_ref):
    doc = _workflow().start_ai_verification(doc_ref)
    return jsonify(doc.to_dict()), 202


# ── Queues & statistics ──────────────────────────────────────────────────────

@documents_bp.route("/documents/pending", methods=["GET"])
def pending_review():
    limit = request.args.get("limit", 100, type=int)
    docs = _workflow().pending_review(limit=limit)
    return jsonify({"items": [d.to_dict() for d in docs], "total": len(docs)})


@documents_bp.route("/documents/overdue", methods=["GET"])
def overdue_documents():
    docs = _workflow().overdue_documents(max_days=request.args.get("days", type=int))
    return jsonify({"items": [d.to_dict() for d in docs], "total": len(docs)})


@documents_bp.route("/documents/statistics", methods=["GET"])
def statistics():
    return jsonify(_workflow().verification_statistics())


@documents_bp.route("/required-documents/<segment>", methods=["GET"])
def required_documents(segment):
    return jsonify({"segment": segment.upper(), "groups": _workflow().required_documents(segment.upper())})


# ── Provider callbacks ───────────────────────────────────────────────────────

@callbacks_bp.route("/ai-verification/callback", methods=["POST"])
def ai_verification_callback():
    """Apply an AI verdict; stale deliveries are acknowledged and dropped."""
    event = AIVerificationEvent.from_payload(_body())
    result = _workflow().handle_ai_verification_result(event)
    return jsonify(result)
