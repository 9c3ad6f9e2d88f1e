"""
Aether Quorum Evaluator - distinct-approval counting for proposals and invitations.

Pure functions over votes and approval lists; no storage, no clock.

Proposal rules:
- Approved: distinct approving founders >= required_votes
- Rejected: approvals plus founders who have not voted yet can no longer
  reach required_votes (the outcome is mathematically fixed)
- Otherwise pending (no votes) or voting

Invitation rules:
- user role: at least user_quorum (3) distinct founder approvals
- admin role: every currently registered founder approved

Safety Invariants:
- Distinct: a principal counts once however many entries it has
- Live roster: when founder ids are given, only current founders count
- Monotonic: adding approvals never turns approved into not approved
- Fail-closed: an empty roster never satisfies unanimity
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from core.errors import InvalidArgument


logger = logging.getLogger(__name__)


DEFAULT_USER_QUORUM = 3

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_ADMIN)

STATUS_PENDING = "pending"
STATUS_VOTING = "voting"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_DEPLOYED = "deployed"


class QuorumEvaluator:
    """
    Evaluates N-of-M founder quorum.

    Invariants:
    - Side-effect free: same inputs, same answer
    - Counts distinct principals, never raw entries
    - Recomputed on every check, never cached between transactions
    """

    def __init__(self, user_quorum: int = DEFAULT_USER_QUORUM) -> None:
        """
        Initialize quorum evaluator.

        Args:
            user_quorum: Distinct founder approvals needed to admit a user (default: 3)
        """
        if user_quorum < 1:
            raise ValueError(f"user_quorum must be at least 1, got {user_quorum}")
        self.user_quorum = user_quorum

    @staticmethod
    def _approvers(votes: Iterable[Dict[str, Any]], founder_ids: Optional[Set[str]] = None) -> Set[str]:
        approvers = {v["founder_id"] for v in votes if v.get("approve") is True}
        if founder_ids is not None:
            approvers &= founder_ids
        return approvers

    @staticmethod
    def _voters(votes: Iterable[Dict[str, Any]], founder_ids: Optional[Set[str]] = None) -> Set[str]:
        voters = {v["founder_id"] for v in votes}
        if founder_ids is not None:
            voters &= founder_ids
        return voters

    def approval_count(
        self, votes: List[Dict[str, Any]], founder_ids: Optional[Set[str]] = None
    ) -> int:
        """Distinct approving founders, optionally restricted to the live roster."""
        return len(self._approvers(votes, founder_ids))

    def is_approved(
        self,
        votes: List[Dict[str, Any]],
        required_votes: int,
        founder_ids: Optional[Set[str]] = None,
    ) -> bool:
        """
        True iff distinct approving founders >= required_votes.

        Args:
            votes: Vote records ({founder_id, approve, ...})
            required_votes: Threshold fixed at proposal creation
            founder_ids: Live roster; votes from others are ignored
        """
        return self.approval_count(votes, founder_ids) >= required_votes

    def is_rejected(
        self,
        votes: List[Dict[str, Any]],
        required_votes: int,
        eligible_voters: int,
        founder_ids: Optional[Set[str]] = None,
    ) -> bool:
        """
        True once approval can no longer be reached.

        Args:
            votes: Vote records
            required_votes: Approval threshold
            eligible_voters: Current roster size
            founder_ids: Live roster; votes from others are ignored
        """
        approvals = self.approval_count(votes, founder_ids)
        if approvals >= required_votes:
            return False
        remaining = max(0, eligible_voters - len(self._voters(votes, founder_ids)))
        return approvals + remaining < required_votes

    def derive_status(
        self,
        votes: List[Dict[str, Any]],
        required_votes: int,
        eligible_voters: int,
        founder_ids: Optional[Set[str]] = None,
    ) -> str:
        """Proposal status implied by its votes against the live roster."""
        if self.is_approved(votes, required_votes, founder_ids):
            return STATUS_APPROVED
        if self.is_rejected(votes, required_votes, eligible_voters, founder_ids):
            return STATUS_REJECTED
        if not votes:
            return STATUS_PENDING
        return STATUS_VOTING

    def required_approvals(self, role: str, total_founders: int) -> int:
        """
        Distinct founder approvals a role needs.

        Raises:
            InvalidArgument: If role is not "user" or "admin"
        """
        if role == ROLE_USER:
            return self.user_quorum
        if role == ROLE_ADMIN:
            # Unanimity over an empty roster is never granted
            return max(total_founders, 1)
        raise InvalidArgument(f"Unknown role: {role!r}", rule="role_known", role=role)

    def invitation_quorum_met(
        self,
        role: str,
        approvals: Iterable[str],
        total_founders: int,
        founder_ids: Optional[Set[str]] = None,
    ) -> bool:
        """
        Check the role-dependent invitation quorum.

        Args:
            role: Role being assigned ("user" or "admin")
            approvals: Founder ids that approved
            total_founders: Current roster size (recomputed at use)
            founder_ids: Live roster; approvals from others are ignored

        Returns:
            True if the approvals satisfy the role's quorum
        """
        distinct = set(approvals)
        if founder_ids is not None:
            distinct &= founder_ids

        needed = self.required_approvals(role, total_founders)
        met = len(distinct) >= needed

        logger.debug(
            f"Invitation quorum for role={role}: {len(distinct)}/{needed} "
            f"(roster={total_founders}) -> {'met' if met else 'not met'}"
        )
        return met

    def tally(
        self, proposal: Dict[str, Any], founder_ids: Optional[Set[str]] = None
    ) -> Dict[str, Any]:
        """
        Derived vote counts for display and deploy gating.

        Returns:
            Dict with vote_count, approval_count, rejection_count,
            required_votes and can_deploy
        """
        votes = proposal.get("votes", [])
        approvals = self.approval_count(votes, founder_ids)
        rejections = len({v["founder_id"] for v in votes if v.get("approve") is False})
        required = proposal["required_votes"]

        return {
            "vote_count": len(votes),
            "approval_count": approvals,
            "rejection_count": rejections,
            "required_votes": required,
            "can_deploy": proposal.get("status") == STATUS_APPROVED and approvals >= required,
        }
