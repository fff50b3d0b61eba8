"""
Onboarding engine exception hierarchy.

Every service in the engine raises one of these types; the blueprints
register handlers against them once (see ``utils/errors.py``) and get
consistent HTTP status codes everywhere.

    NotFoundError               — reference does not resolve         → 404
    ValidationError             — input violates a business rule     → 422
    ConflictError               — duplicate of a unique business key → 409
    InvalidTransitionError      — status change not permitted        → 409
    ConcurrentModificationError — optimistic-lock conflict           → 409
    IntegrationError            — external provider call failed      → 502

Local validation and transition errors are never retried automatically.
``IntegrationError`` raised from an idempotent provider call may be retried
by the caller with the same idempotency key (the entity reference).

Usage:
    from courier_onboarding.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="OnboardingApplication", resource_id="CUST-ONB-...")
    raise ValidationError("Terms must be accepted", details={"terms_accepted": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "VerificationDocument").
        resource_id: The reference that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    No state is changed when this is raised; the caller must fix the input
    and retry.  Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique business key.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class InvalidTransitionError(Exception):
    """Raised when a status change is not in the entity's transition table.

    Carries the current and requested status so the refused attempt can be
    reconstructed from logs even though nothing was written.
    """

    def __init__(
        self,
        entity_type: str,
        entity_ref: str | None,
        current: str | None,
        requested: str,
        reason: str | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.entity_ref = entity_ref
        self.current_status = current
        self.requested_status = requested
        self.reason = reason
        msg = f"Cannot move {entity_type} {entity_ref} from {current} to {requested}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)

    def to_details(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "entity_ref": self.entity_ref,
            "current_status": self.current_status,
            "requested_status": self.requested_status,
        }


class ConcurrentModificationError(Exception):
    """Raised when the row version moved between load and write.

    The caller must reload the entity and retry the operation.
    """

    def __init__(
        self,
        entity_type: str,
        entity_ref: str | None,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.entity_ref = entity_ref
        self.expected_version = expected_version
        self.actual_version = actual_version
        msg = f"{entity_type} {entity_ref} was modified concurrently"
        if expected_version is not None:
            msg += f" (expected version {expected_version}, found {actual_version})"
        super().__init__(msg)

    def to_details(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "entity_ref": self.entity_ref,
            "expected_version": self.expected_version,
            "actual_version": self.actual_version,
        }


class IntegrationError(Exception):
    """Raised when a required external provider call failed.

    Local state is left as if the operation never started.

    Args:
        provider: "kyc" | "auth" | "billing" | "ai_verification" | "blob_store".
        operation: Provider operation name, e.g. "create_user".
        entity_ref: Application or document reference used as idempotency key.
        cause: Provider error text or the underlying exception.
    """

    def __init__(
        self,
        provider: str,
        operation: str,
        entity_ref: str | None = None,
        cause: object = None,
    ) -> None:
        self.provider = provider
        self.operation = operation
        self.entity_ref = entity_ref
        self.cause = cause
        msg = f"{provider}.{operation} failed"
        if entity_ref:
            msg += f" for {entity_ref}"
        if cause:
            msg += f": {cause}"
        super().__init__(msg)

    def to_details(self) -> dict:
        return {
            "provider": self.provider,
            "operation": self.operation,
            "entity_ref": self.entity_ref,
        }
