"""
Aether governance errors.

Every domain rule violation is a GovernanceError subclass carrying the
entity it concerns and the rule that refused it, so callers can decide
remediation without parsing messages. ContentionError is the one
non-domain failure: the per-entity write lock stayed contended after
bounded retries and the caller should simply try again.
"""

from typing import Any, Dict, Optional


class GovernanceError(Exception):
    """
    Base class for all caller-visible governance failures.

    Attributes:
        entity_id: Proposal, invitation, account or principal id involved
        rule: Short machine-readable name of the rule that refused the call
        details: Extra structured context (counts, thresholds, timestamps)
    """

    code = "GOVERNANCE_ERROR"

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        rule: Optional[str] = None,
        **details: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id
        self.rule = rule
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Structured form for audit records and transport layers."""
        return {
            "code": self.code,
            "message": self.message,
            "entity_id": self.entity_id,
            "rule": self.rule,
            "details": dict(self.details),
        }


class NotFound(GovernanceError):
    code = "NOT_FOUND"


class Conflict(GovernanceError):
    code = "CONFLICT"


class InvalidArgument(GovernanceError):
    code = "INVALID_ARGUMENT"


class DuplicateVote(GovernanceError):
    code = "DUPLICATE_VOTE"


class InvalidPrincipal(GovernanceError):
    code = "INVALID_PRINCIPAL"


class InvalidSignature(InvalidPrincipal):
    """Vote or approval signature missing or not produced by the claimed founder."""

    code = "INVALID_SIGNATURE"


class QuorumNotMet(GovernanceError):
    code = "QUORUM_NOT_MET"


class AdminCapReached(GovernanceError):
    code = "ADMIN_CAP_REACHED"


class Expired(GovernanceError):
    code = "EXPIRED"


class VotingClosed(GovernanceError):
    code = "VOTING_CLOSED"


class NotApproved(GovernanceError):
    code = "NOT_APPROVED"


class AlreadyDeployed(GovernanceError):
    code = "ALREADY_DEPLOYED"


class DeploymentInProgress(GovernanceError):
    code = "DEPLOYMENT_IN_PROGRESS"


class ApplyFailed(GovernanceError):
    code = "APPLY_FAILED"


class ContentionError(RuntimeError):
    """
    Raised when optimistic transaction retries are exhausted.

    Not a domain error: nothing about the request was wrong, another
    writer kept winning the race on the same entity.
    """

    def __init__(self, entity_id: str, attempts: int) -> None:
        super().__init__(
            f"Concurrent modification on {entity_id} persisted after "
            f"{attempts} attempts, try again"
        )
        self.entity_id = entity_id
        self.attempts = attempts
