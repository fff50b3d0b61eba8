"""
External provider clients.

Thin, typed wrappers over ``ProviderGateway`` for the four collaborators
the onboarding engine calls:

    KYCProviderClient          initiate(payload, ref) / get_status(verification_id)
    AuthProviderClient         create_user(...) / activate(user_id) / suspend(user_id)
    BillingProviderClient      create_profile(application_ref, payload)
    AIVerificationClient       dispatch(document_ref, ...)

Every client turns a failed ``GatewayResult`` (or a success missing the id
it needs) into ``IntegrationError``.  Calls that create something on the
provider carry the application/document reference as idempotency key.
"""

from __future__ import annotations

import base64
import logging

from courier_onboarding.core.exceptions import IntegrationError
from courier_onboarding.integrations.provider_gateway import GatewayResult, ProviderGateway

logger = logging.getLogger(__name__)


def _require_ok(result: GatewayResult, provider: str, operation: str, entity_ref: str | None) -> dict:
    if not result.ok:
        logger.warning(
            "%s.%s failed for %s: %s", provider, operation, entity_ref, result.error,
            extra={"provider": provider, "application_ref": entity_ref},
        )
        raise IntegrationError(provider, operation, entity_ref, result.error)
    return result.data if isinstance(result.data, dict) else {}


def _require_field(data: dict, key: str, provider: str, operation: str, entity_ref: str | None):
    value = data.get(key)
    if not value:
        raise IntegrationError(provider, operation, entity_ref, f"response missing '{key}'")
    return value


class KYCProviderClient:
    """Identity / KYC verification provider."""

    provider = "kyc"

    def __init__(self, gateway: ProviderGateway) -> None:
        self.gateway = gateway

    def initiate(self, identity_payload: dict, reference: str) -> dict:
        """Start a verification.

        Returns:
            {"verification_id", "status", "estimated_completion"}
        """
        result = self.gateway.request(
            "POST", "/verifications", json_body=identity_payload, idempotency_key=reference,
        )
        data = _require_ok(result, self.provider, "initiate", reference)
        return {
            "verification_id": str(_require_field(data, "verification_id", self.provider, "initiate", reference)),
            "status": data.get("status", "pending"),
            "estimated_completion": data.get("estimated_completion"),
        }

    def get_status(self, verification_id: str) -> dict:
        """Poll a verification.

        Returns:
            {"status", "progress", "requires_manual_review"}
        """
        result = self.gateway.request("GET", f"/verifications/{verification_id}")
        data = _require_ok(result, self.provider, "get_status", verification_id)
        return {
            "status": (data.get("status") or "pending").lower(),
            "progress": data.get("progress"),
            "requires_manual_review": bool(data.get("requires_manual_review", False)),
        }


class AuthProviderClient:
    """Customer identity / login provider."""

    provider = "auth"

    def __init__(self, gateway: ProviderGateway) -> None:
        self.gateway = gateway

    def create_user(self, *, email, phone, first_name, last_name, role, external_ref) -> dict:
        result = self.gateway.request(
            "POST", "/users",
            json_body={
                "email": email,
                "phone": phone,
                "first_name": first_name,
                "last_name": last_name,
                "role": role,
                "external_ref": external_ref,
            },
            idempotency_key=external_ref,
        )
        data = _require_ok(result, self.provider, "create_user", external_ref)
        return {"user_id": str(_require_field(data, "user_id", self.provider, "create_user", external_ref))}

    def activate(self, user_id: str) -> None:
        result = self.gateway.request("POST", f"/users/{user_id}/activate", idempotency_key=f"activate-{user_id}")
        _require_ok(result, self.provider, "activate", user_id)

    def suspend(self, user_id: str) -> None:
        result = self.gateway.request("POST", f"/users/{user_id}/suspend", idempotency_key=f"suspend-{user_id}")
        _require_ok(result, self.provider, "suspend", user_id)


class BillingProviderClient:
    """Billing account provider."""

    provider = "billing"

    def __init__(self, gateway: ProviderGateway) -> None:
        self.gateway = gateway

    def create_profile(self, application_ref: str, payload: dict | None = None) -> dict:
        body = {"external_ref": application_ref}
        body.update(payload or {})
        result = self.gateway.request("POST", "/profiles", json_body=body, idempotency_key=application_ref)
        data = _require_ok(result, self.provider, "create_profile", application_ref)
        return {
            "billing_profile_id": str(
                _require_field(data, "billing_profile_id", self.provider, "create_profile", application_ref)
            ),
        }


class AIVerificationClient:
    """Automated document verification service.

    Dispatch is fire-and-forget: the verdict arrives later on the callback
    endpoint as an ``AIVerificationEvent``.
    """

    provider = "ai_verification"

    def __init__(self, gateway: ProviderGateway, callback_url: str | None = None) -> None:
        self.gateway = gateway
        self.callback_url = callback_url

    def dispatch(self, *, document_ref: str, document_type: str, mime_type: str, content: bytes) -> dict:
        result = self.gateway.request(
            "POST", "/verify",
            json_body={
                "document_ref": document_ref,
                "document_type": document_type,
                "mime_type": mime_type,
                "content_base64": base64.b64encode(content).decode("ascii"),
                "callback_url": self.callback_url,
            },
            idempotency_key=document_ref,
        )
        data = _require_ok(result, self.provider, "dispatch", document_ref)
        return {"verification_id": data.get("verification_id")}


def build_provider_clients(config) -> dict:
    """Create the provider clients from Flask config (or any mapping)."""
    common = {
        "api_key": config.get("PROVIDER_API_KEY") or None,
        "timeout": config.get("PROVIDER_TIMEOUT_SECONDS", 30),
        "max_retries": config.get("PROVIDER_MAX_RETRIES", 2),
    }
    return {
        "kyc": KYCProviderClient(ProviderGateway("kyc", config["KYC_PROVIDER_URL"], **common)),
        "auth": AuthProviderClient(ProviderGateway("auth", config["AUTH_PROVIDER_URL"], **common)),
        "billing": BillingProviderClient(ProviderGateway("billing", config["BILLING_PROVIDER_URL"], **common)),
        "ai": AIVerificationClient(
            ProviderGateway("ai_verification", config["AI_VERIFICATION_URL"], **common),
            callback_url=config.get("AI_VERIFICATION_CALLBACK_URL"),
        ),
    }
