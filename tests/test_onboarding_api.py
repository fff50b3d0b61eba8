"""
HTTP API tests for the onboarding and document blueprints.

Covers status-code mapping of the error taxonomy, multipart upload, the
AI callback, history/completion read models, health and metrics.
"""

import io

import pytest

BASE = "/api/v1/onboarding"
APPS = f"{BASE}/applications"

PROFILE = {
    "email": "ada@example.com",
    "phone": "+44 20 7946 0000",
    "first_name": "Ada",
    "last_name": "Lovelace",
    "country": "GB",
    "terms_accepted": True,
    "privacy_accepted": True,
}

PDF = b"%PDF-1.4\n" + b"scan" * 64


def _create(client, **overrides):
    res = client.post(APPS, json=dict(PROFILE, **overrides))
    assert res.status_code == 201, res.get_json()
    return res.get_json()


def _upload(client, ref, document_type, content=PDF, filename="scan.pdf", **form):
    data = {"document_type": document_type, "file": (io.BytesIO(content), filename)}
    data.update(form)
    return client.post(f"{APPS}/{ref}/documents", data=data, content_type="multipart/form-data")


# ═════════════════════════════════════════════════════════════════════════════
# Applications
# ═════════════════════════════════════════════════════════════════════════════


class TestApplicationEndpoints:
    def test_create_and_get(self, client):
        body = _create(client)
        assert body["status"] == "DRAFT"
        assert body["version"] == 1

        res = client.get(f"{APPS}/{body['reference']}")
        assert res.status_code == 200
        assert res.get_json()["documents"] == []

    def test_create_invalid_email_422(self, client):
        res = client.post(APPS, json=dict(PROFILE, email="nope"))
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_RULE"
        assert "email" in body["details"]

    def test_duplicate_email_409(self, client):
        _create(client)
        res = client.post(APPS, json=PROFILE)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

    def test_unknown_reference_404(self, client):
        res = client.get(f"{APPS}/CUST-ONB-00000000-00000000")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_list_with_filter(self, client):
        a = _create(client)
        _create(client, email="grace@example.com")
        client.post(f"{APPS}/{a['reference']}/submit")

        res = client.get(f"{APPS}?status=SUBMITTED")
        body = res.get_json()
        assert body["total"] == 1
        assert body["items"][0]["reference"] == a["reference"]

    def test_patch_with_stale_version_409(self, client):
        ref = _create(client)["reference"]
        ok = client.patch(f"{APPS}/{ref}", json={"city": "Paris", "version": 1})
        assert ok.status_code == 200
        assert ok.get_json()["version"] == 2

        stale = client.patch(f"{APPS}/{ref}", json={"city": "Rome"}, headers={"If-Match": "1"})
        assert stale.status_code == 409
        body = stale.get_json()
        assert body["code"] == "ERR_CONFLICT_VERSION"
        assert body["details"]["expected_version"] == 1
        assert body["details"]["actual_version"] == 2

    def test_non_integer_version_422(self, client):
        ref = _create(client)["reference"]
        res = client.post(f"{APPS}/{ref}/submit", json={"version": "latest"})
        assert res.status_code == 422

    def test_invalid_transition_409(self, client):
        ref = _create(client)["reference"]
        res = client.post(f"{APPS}/{ref}/activate")
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_CONFLICT_STATE"
        assert body["details"]["current_status"] == "DRAFT"
        assert body["details"]["requested_status"] == "ACTIVATED"

    def test_submit_and_history(self, client):
        ref = _create(client)["reference"]
        res = client.post(f"{APPS}/{ref}/submit", headers={"X-Actor": "portal"})
        assert res.status_code == 200
        assert res.get_json()["new_status"] == "SUBMITTED"

        history = client.get(f"{APPS}/{ref}/history").get_json()
        assert history["total"] == 2
        assert [e["to_status"] for e in history["items"]] == ["DRAFT", "SUBMITTED"]
        assert history["items"][1]["actor"] == "portal"

    def test_kyc_provider_failure_502(self, client, kyc, no_ai):
        ref = _create(client)["reference"]
        client.post(f"{APPS}/{ref}/submit")
        _upload(client, ref, "PASSPORT")
        _upload(client, ref, "PROOF_OF_ADDRESS")
        kyc.fail_on = {"initiate"}

        res = client.post(f"{APPS}/{ref}/kyc")
        assert res.status_code == 502
        body = res.get_json()
        assert body["code"] == "ERR_INTEGRATION"
        assert body["details"]["provider"] == "kyc"
        assert client.get(f"{APPS}/{ref}").get_json()["status"] == "SUBMITTED"

    def test_kyc_and_verdict(self, client, no_ai):
        ref = _create(client)["reference"]
        client.post(f"{APPS}/{ref}/submit")
        _upload(client, ref, "PASSPORT")
        _upload(client, ref, "PROOF_OF_ADDRESS")

        started = client.post(f"{APPS}/{ref}/kyc")
        assert started.status_code == 202
        assert started.get_json()["kyc_verification_id"] == "KYC-0001"

        polled = client.post(f"{APPS}/{ref}/kyc/verdict")
        assert polled.get_json()["applied"] is False

        pushed = client.post(f"{APPS}/{ref}/kyc/verdict", json={"verdict": "approved"})
        assert pushed.get_json()["status"] == "KYC_APPROVED"

        conflicting = client.post(f"{APPS}/{ref}/kyc/verdict", json={"verdict": "rejected"})
        assert conflicting.status_code == 409

    def test_completion(self, client, no_ai):
        ref = _create(client)["reference"]
        _upload(client, ref, "NATIONAL_ID")

        body = client.get(f"{APPS}/{ref}/completion").get_json()
        assert body["is_complete"] is False
        assert body["pending"] == ["identity"]
        assert body["missing"] == ["proof_of_address"]
        assert body["completion_percentage"] == 0

    def test_suspend_requires_reason(self, client):
        ref = _create(client)["reference"]
        res = client.post(f"{APPS}/{ref}/suspend", json={})
        assert res.status_code == 422


# ═════════════════════════════════════════════════════════════════════════════
# Documents
# ═════════════════════════════════════════════════════════════════════════════


class TestDocumentEndpoints:
    def test_upload_and_download(self, client, ai):
        ref = _create(client)["reference"]
        res = _upload(client, ref, "passport", filename="passport.pdf")
        assert res.status_code == 201
        doc = res.get_json()
        assert doc["document_type"] == "PASSPORT"
        assert doc["mime_type"] == "application/pdf"
        assert doc["status"] == "AI_VERIFICATION_IN_PROGRESS"
        assert doc["ai_verification_id"] == "AIV-0001"

        download = client.get(f"{BASE}/documents/{doc['reference']}/download")
        assert download.status_code == 200
        assert download.data == PDF
        assert "passport.pdf" in download.headers["Content-Disposition"]

        listed = client.get(f"{APPS}/{ref}/documents").get_json()
        assert listed["total"] == 1

    def test_upload_requires_file(self, client):
        ref = _create(client)["reference"]
        res = client.post(f"{APPS}/{ref}/documents", data={"document_type": "PASSPORT"},
                          content_type="multipart/form-data")
        assert res.status_code == 422
        assert res.get_json()["details"] == {"file": "required"}

    def test_upload_rejected_mime(self, client):
        ref = _create(client)["reference"]
        res = _upload(client, ref, "PASSPORT", filename="passport.exe",
                      mime_type="application/x-msdownload")
        assert res.status_code == 422
        assert "mime_type" in res.get_json()["details"]

    def test_ai_callback(self, client):
        ref = _create(client)["reference"]
        doc = _upload(client, ref, "PASSPORT").get_json()

        res = client.post(f"{BASE}/ai-verification/callback", json={
            "document_ref": doc["reference"],
            "verification_id": doc["ai_verification_id"],
            "outcome": "verified",
            "confidence_score": 0.97,
        })
        assert res.status_code == 200
        assert res.get_json() == {"applied": True, "document_ref": doc["reference"], "status": "AI_VERIFIED"}

        again = client.post(f"{BASE}/ai-verification/callback", json={
            "document_ref": doc["reference"],
            "verification_id": doc["ai_verification_id"],
            "outcome": "failed",
        })
        assert again.status_code == 200
        assert again.get_json()["applied"] is False

    def test_ai_callback_invalid_payload(self, client):
        res = client.post(f"{BASE}/ai-verification/callback", json={"outcome": "maybe"})
        assert res.status_code == 422
        assert set(res.get_json()["details"]) == {"document_ref", "outcome"}

    def test_reviewer_flow(self, client, no_ai):
        ref = _create(client)["reference"]
        doc = _upload(client, ref, "PASSPORT").get_json()

        missing_reviewer = client.post(f"{BASE}/documents/{doc['reference']}/approve", json={})
        assert missing_reviewer.status_code == 422

        bad_expiry = client.post(f"{BASE}/documents/{doc['reference']}/approve",
                                 json={"actor": "rev-1", "expiry_date": "soon"})
        assert bad_expiry.status_code == 422

        for score in ("high", 1.5):
            bad_score = client.post(f"{BASE}/documents/{doc['reference']}/approve",
                                    json={"actor": "rev-1", "notes": "looks fine", "confidence_score": score})
            assert bad_score.status_code == 422
            assert "confidence_score" in bad_score.get_json()["details"]

        untouched = client.get(f"{BASE}/documents/{doc['reference']}").get_json()
        assert untouched["status"] == "PENDING"
        assert untouched["reviewer_id"] is None
        assert untouched["review_notes"] is None
        assert untouched["version"] == doc["version"]

        approved = client.post(f"{BASE}/documents/{doc['reference']}/approve",
                               json={"actor": "rev-1", "version": doc["version"], "confidence_score": 0.9})
        assert approved.status_code == 200
        assert approved.get_json()["status"] == "APPROVED"
        assert approved.get_json()["reviewer_id"] == "rev-1"

        again = client.post(f"{BASE}/documents/{doc['reference']}/reject",
                            json={"actor": "rev-1", "reason": "blurry"})
        assert again.status_code == 409

    def test_queues_and_statistics(self, client, no_ai):
        ref = _create(client)["reference"]
        _upload(client, ref, "PASSPORT")

        pending = client.get(f"{BASE}/documents/pending").get_json()
        assert pending["total"] == 1
        overdue = client.get(f"{BASE}/documents/overdue?days=30").get_json()
        assert overdue["total"] == 0
        stats = client.get(f"{BASE}/documents/statistics")
        assert stats.status_code == 200

    def test_required_documents(self, client):
        body = client.get(f"{BASE}/required-documents/individual").get_json()
        assert body["segment"] == "INDIVIDUAL"
        assert [g["code"] for g in body["groups"]] == ["identity", "proof_of_address"]
        assert body["groups"][0]["either_or"] is True

        res = client.get(f"{BASE}/required-documents/martian")
        assert res.status_code == 422

    def test_purge(self, client, no_ai):
        ref = _create(client)["reference"]
        doc = _upload(client, ref, "PASSPORT").get_json()

        res = client.delete(f"{BASE}/documents/{doc['reference']}", json={"reason": "GDPR erasure"})
        assert res.status_code == 200
        assert client.get(f"{BASE}/documents/{doc['reference']}").status_code == 404

        history = client.get(f"{APPS}/{ref}/history?include_documents=true").get_json()
        assert any(e["entity_ref"] == doc["reference"] for e in history["items"])


# ═════════════════════════════════════════════════════════════════════════════
# Health, metrics, request middleware
# ═════════════════════════════════════════════════════════════════════════════


class TestOperationalEndpoints:
    def test_ready(self, client):
        assert client.get("/api/v1/health/ready").get_json() == {"status": "ok"}

    def test_live(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        checks = res.get_json()["checks"]
        assert checks["database"]["status"] == "ok"
        assert checks["blob_store"]["status"] == "ok"

    def test_request_headers(self, client):
        res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "req-42"})
        assert res.headers["X-Request-ID"] == "req-42"
        assert float(res.headers["X-Request-Duration-Ms"]) >= 0

    def test_onboarding_metrics(self, client):
        ref = _create(client)["reference"]
        client.post(f"{APPS}/{ref}/submit")

        body = client.get("/api/v1/metrics/onboarding").get_json()
        assert body["funnel"]["applications"]["SUBMITTED"] == 1
        assert body["funnel"]["total_applications"] == 1
        assert body["counters"]["application.created:INDIVIDUAL"] == 1

    def test_request_metrics(self, client):
        client.get("/api/v1/health/ready")
        client.get(f"{APPS}/missing-ref")

        body = client.get("/api/v1/metrics/requests").get_json()
        assert body["total_requests"] >= 2
        assert body["status_distribution"]["404"] == 1

    @pytest.mark.parametrize("method", ["put", "delete"])
    def test_method_not_allowed(self, client, method):
        res = getattr(client, method)(f"{BASE}/required-documents/individual")
        assert res.status_code == 405
