"""
Onboarding Engine — Document Completion Aggregation

Decides whether an application has satisfied every required document
group for its customer segment.

A *requirement group* lists one or more document types; any one APPROVED
member satisfies it (national ID OR passport).  Each document type is
classified from the application's submissions with the precedence

    completed  >  pending  >  rejected  >  missing

where ``pending`` is any non-terminal submission and ``rejected`` covers
REJECTED and RESUBMISSION_REQUIRED.  When primary submissions exist for a
type only those are considered.

``evaluate_completion`` is pure: same documents in, same result out.
"""

from dataclasses import dataclass, field

from courier_onboarding.core.exceptions import ValidationError
from courier_onboarding.models.document import DOCUMENT_TYPES

_REJECTED_STATUSES = {"REJECTED", "RESUBMISSION_REQUIRED"}

COMPLETED = "completed"
PENDING = "pending"
REJECTED = "rejected"
MISSING = "missing"

_PRECEDENCE = (COMPLETED, PENDING, REJECTED, MISSING)


@dataclass(frozen=True)
class RequirementGroup:
    code: str
    name: str
    document_types: tuple
    instructions: str = ""

    def to_dict(self):
        return {
            "code": self.code,
            "name": self.name,
            "document_types": [
                {"code": t, "display_name": DOCUMENT_TYPES[t][0], "description": DOCUMENT_TYPES[t][2]}
                for t in self.document_types
            ],
            "either_or": len(self.document_types) > 1,
            "accepted_formats": ["PDF", "JPEG", "PNG", "GIF"],
            "instructions": self.instructions,
        }


SEGMENT_REQUIREMENTS = {
    "INDIVIDUAL": (
        RequirementGroup(
            "identity", "Identity document", ("NATIONAL_ID", "PASSPORT"),
            "Upload a clear photo or scan of the front of your national ID, or the photo page of your passport.",
        ),
        RequirementGroup(
            "proof_of_address", "Proof of address", ("PROOF_OF_ADDRESS",),
            "Upload a document issued within the last 3 months showing your name and address.",
        ),
    ),
    "BUSINESS": (
        RequirementGroup(
            "business_registration", "Business registration", ("BUSINESS_REGISTRATION",),
            "Upload the certificate of incorporation or business registration.",
        ),
        RequirementGroup(
            "tax_certificate", "Tax certificate", ("TAX_CERTIFICATE",),
            "Upload the business tax registration certificate.",
        ),
    ),
}


def requirements_for(segment: str):
    try:
        return SEGMENT_REQUIREMENTS[segment]
    except KeyError:
        raise ValidationError(
            f"Unknown customer segment: {segment}",
            details={"segment": sorted(SEGMENT_REQUIREMENTS)},
        ) from None


@dataclass(frozen=True)
class CompletionStatus:
    application_ref: str | None
    segment: str
    is_complete: bool
    completed: tuple = ()
    pending: tuple = ()
    rejected: tuple = ()
    missing: tuple = ()
    document_status: dict = field(default_factory=dict)
    next_actions: tuple = ()

    @property
    def total_groups(self) -> int:
        return len(self.completed) + len(self.pending) + len(self.rejected) + len(self.missing)

    @property
    def completion_percentage(self) -> int:
        total = self.total_groups
        return int(len(self.completed) * 100 / total) if total else 100

    @property
    def outstanding(self) -> bool:
        """True while some group has nothing usable submitted (missing or rejected)."""
        return bool(self.rejected or self.missing)

    def to_dict(self):
        return {
            "application_ref": self.application_ref,
            "segment": self.segment,
            "is_complete": self.is_complete,
            "completion_percentage": self.completion_percentage,
            "completed": list(self.completed),
            "pending": list(self.pending),
            "rejected": list(self.rejected),
            "missing": list(self.missing),
            "document_status": dict(self.document_status),
            "next_actions": list(self.next_actions),
        }


def classify_type(documents) -> str:
    """State of one document type given all its submissions."""
    if not documents:
        return MISSING
    primaries = [d for d in documents if d.is_primary]
    candidates = primaries or list(documents)
    statuses = {d.status for d in candidates}
    if "APPROVED" in statuses:
        return COMPLETED
    if statuses - _REJECTED_STATUSES:
        return PENDING
    return REJECTED


def _classify_group(type_states: dict, group: RequirementGroup) -> str:
    states = {type_states[t] for t in group.document_types}
    for state in _PRECEDENCE:
        if state in states:
            return state
    return MISSING


def _next_action(group: RequirementGroup, state: str) -> str | None:
    names = " or ".join(DOCUMENT_TYPES[t][0] for t in group.document_types)
    if state == MISSING:
        return f"Upload {group.name.lower()}: {names}"
    if state == REJECTED:
        return f"Re-upload {group.name.lower()}: previous submission was not accepted"
    if state == PENDING:
        return f"Await review of {group.name.lower()}"
    return None


def evaluate_completion(documents, segment: str, application_ref: str | None = None) -> CompletionStatus:
    """Classify ``documents`` against the required groups of ``segment``."""
    groups = requirements_for(segment)

    by_type: dict[str, list] = {}
    for doc in documents:
        by_type.setdefault(doc.document_type, []).append(doc)

    type_states = {}
    for group in groups:
        for doc_type in group.document_types:
            type_states[doc_type] = classify_type(by_type.get(doc_type, []))

    buckets = {state: [] for state in _PRECEDENCE}
    actions = []
    for group in groups:
        state = _classify_group(type_states, group)
        buckets[state].append(group.code)
        action = _next_action(group, state)
        if action:
            actions.append(action)

    return CompletionStatus(
        application_ref=application_ref,
        segment=segment,
        is_complete=not (buckets[PENDING] or buckets[REJECTED] or buckets[MISSING]),
        completed=tuple(buckets[COMPLETED]),
        pending=tuple(buckets[PENDING]),
        rejected=tuple(buckets[REJECTED]),
        missing=tuple(buckets[MISSING]),
        document_status=type_states,
        next_actions=tuple(actions),
    )
