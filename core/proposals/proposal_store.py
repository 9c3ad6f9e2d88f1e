"""
Aether Proposal Store - durable proposals and their founder votes.

Each proposal is one JSON document in Redis, so its vote list and its
derived status are always written together. Votes are appended under
WATCH on the proposal and the founder roster: two concurrent votes on the
same proposal serialize, and a roster change mid-vote forces a re-read.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import redis

from bus.python.aether_bus import ContractValidator
from core.audit import AuditEmitter
from core.clock import Clock, utc_now
from core.errors import (
    AlreadyDeployed,
    Conflict,
    DeploymentInProgress,
    DuplicateVote,
    GovernanceError,
    InvalidArgument,
    InvalidPrincipal,
    NotApproved,
    NotFound,
    QuorumNotMet,
    VotingClosed,
)
from core.quorum import QuorumEvaluator
from core.quorum.quorum_evaluator import (
    STATUS_APPROVED,
    STATUS_DEPLOYED,
    STATUS_PENDING,
    STATUS_REJECTED,
    STATUS_VOTING,
)
from core.registry import PrincipalRegistry, VoteSigner
from core.transactions import DEFAULT_MAX_RETRIES, run_transaction


logger = logging.getLogger(__name__)


DEFAULT_REQUIRED_VOTES = 3
KIND_GOVERNANCE = "governance"
KIND_MODEL_PROMOTION = "model_promotion"
OPEN_STATUSES = (STATUS_PENDING, STATUS_VOTING)


class ProposalStore:
    """
    Owns proposal records and their vote lists.

    Invariants:
    - Proposal ids are unique and immutable
    - A founder appears at most once in a proposal's votes
    - required_votes never changes after creation
    - Vote append and status recomputation commit in one transaction
    - Status only moves forward: pending -> voting -> approved -> deployed,
      or into the absorbing rejected state
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        registry: PrincipalRegistry,
        evaluator: QuorumEvaluator,
        audit: AuditEmitter,
        validator: Optional[ContractValidator] = None,
        vote_signer: Optional[VoteSigner] = None,
        require_signed_votes: bool = False,
        default_required_votes: int = DEFAULT_REQUIRED_VOTES,
        key_prefix: str = "aether",
        max_retries: int = DEFAULT_MAX_RETRIES,
        source_name: str = "aether-proposals",
        clock: Optional[Clock] = None,
    ):
        """
        Initialize proposal store.

        Args:
            redis_client: Redis client instance
            registry: Principal registry (live founder roster)
            evaluator: Quorum evaluator
            audit: Audit emitter
            validator: Contract validator for proposal records
            vote_signer: Verifies HMAC vote tokens
            require_signed_votes: Refuse votes without a valid token
            default_required_votes: Threshold when the caller gives none
            key_prefix: Prefix for Redis keys
            max_retries: Optimistic transaction attempts
            source_name: Source identifier for audit records
            clock: Timestamp source (UTC)
        """
        if require_signed_votes and vote_signer is None:
            raise ValueError("require_signed_votes needs a vote_signer")

        self.redis = redis_client
        self.registry = registry
        self.evaluator = evaluator
        self.audit = audit
        self.validator = validator
        self.vote_signer = vote_signer or VoteSigner()
        self.require_signed_votes = require_signed_votes
        self.default_required_votes = default_required_votes
        self.key_prefix = key_prefix
        self.max_retries = max_retries
        self.source_name = source_name
        self._clock = clock or utc_now

    def _key(self, proposal_id: str) -> str:
        return f"{self.key_prefix}:proposal:{proposal_id}"

    @property
    def index_key(self) -> str:
        return f"{self.key_prefix}:proposals"

    def _load(self, reader, proposal_id: str) -> Dict[str, Any]:
        raw = reader.get(self._key(proposal_id))
        if raw is None:
            raise NotFound(
                f"Proposal not found: {proposal_id}",
                entity_id=proposal_id, rule="proposal_exists",
            )
        return json.loads(raw)

    def _write(self, pipe, proposal: Dict[str, Any]) -> None:
        """Queue a full-record write; caller must be in MULTI."""
        proposal["revision"] += 1
        if self.validator is not None:
            self.validator.validate(proposal, "proposal.schema")
        pipe.set(self._key(proposal["id"]), json.dumps(proposal))

    def _audit(self, event_type: str, proposal_id: str, actor: str, pipe=None, **details) -> None:
        self.audit.emit(
            event_type, "proposal", proposal_id, actor,
            details=details or None, source=self.source_name, pipe=pipe,
        )

    def create_proposal(
        self,
        proposal_id: str,
        description: str,
        required_votes: Optional[int] = None,
        created_by: str = "system",
        kind: str = KIND_GOVERNANCE,
        target: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a proposal in pending status.

        Args:
            proposal_id: Caller-supplied unique id
            description: What the proposal authorizes
            required_votes: Distinct approvals needed (default from config)
            created_by: Actor creating the proposal
            kind: "governance" or "model_promotion"
            target: Model id for promotion proposals

        Returns:
            The new proposal

        Raises:
            InvalidArgument: Empty id/description, or required_votes < 1 or
                larger than the founder roster
            Conflict: If the id already exists
        """
        if required_votes is None:
            required_votes = self.default_required_votes

        try:
            if not proposal_id or not str(proposal_id).strip():
                raise InvalidArgument("Proposal ID is required", rule="proposal_id_required")
            if not description or not str(description).strip():
                raise InvalidArgument(
                    "Proposal description is required",
                    entity_id=proposal_id, rule="description_required",
                )
            if isinstance(required_votes, bool) or not isinstance(required_votes, int) or required_votes < 1:
                raise InvalidArgument(
                    f"required_votes must be a positive integer, got {required_votes!r}",
                    entity_id=proposal_id, rule="required_votes_positive",
                )
            if kind not in (KIND_GOVERNANCE, KIND_MODEL_PROMOTION):
                raise InvalidArgument(
                    f"Unknown proposal kind: {kind!r}", entity_id=proposal_id, rule="kind_known"
                )

            key = self._key(proposal_id)

            def body(pipe):
                if pipe.exists(key):
                    raise Conflict(
                        "Proposal ID already exists",
                        entity_id=proposal_id, rule="proposal_id_unique",
                    )
                roster = self.registry.snapshot(pipe)
                if required_votes > roster.founder_count:
                    raise InvalidArgument(
                        f"required_votes {required_votes} exceeds the "
                        f"{roster.founder_count} registered founders",
                        entity_id=proposal_id, rule="required_votes_within_roster",
                        founders_count=roster.founder_count,
                    )

                now = self._clock()
                proposal = {
                    "version": "1.0",
                    "id": proposal_id,
                    "kind": kind,
                    "description": description.strip(),
                    "status": STATUS_PENDING,
                    "votes": [],
                    "required_votes": required_votes,
                    "created_at": now.isoformat(),
                    "created_by": created_by,
                    "revision": 0,
                }
                if target is not None:
                    proposal["target"] = target

                pipe.multi()
                self._write(pipe, proposal)
                pipe.zadd(self.index_key, {proposal_id: now.timestamp()})
                self._audit(
                    "proposal_created", proposal_id, created_by, pipe=pipe,
                    required_votes=required_votes, kind=kind,
                )
                return proposal

            proposal = run_transaction(
                self.redis, [key, *self.registry.roster_keys], body,
                self.max_retries, entity_id=proposal_id,
            )
        except GovernanceError as e:
            self.audit.refused(
                "proposal_refused", "proposal", proposal_id or "unknown", created_by, e,
                source=self.source_name,
            )
            raise

        logger.info(f"Proposal created: {proposal_id} by {created_by} (requires {required_votes})")
        return proposal

    def ensure_proposal(
        self,
        proposal_id: str,
        description: str,
        created_by: str = "system",
        kind: str = KIND_GOVERNANCE,
        target: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Return the proposal, creating it first if it does not exist."""
        try:
            return self.get_proposal(proposal_id)
        except NotFound:
            pass

        try:
            return self.create_proposal(
                proposal_id, description, created_by=created_by, kind=kind, target=target
            )
        except Conflict:
            # Lost the creation race to another caller
            return self.get_proposal(proposal_id)

    def get_proposal(self, proposal_id: str) -> Dict[str, Any]:
        """
        Raises:
            NotFound: If the proposal does not exist
        """
        return self._load(self.redis, proposal_id)

    def list_proposals(
        self, status: Optional[str] = None, kind: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        List proposals, newest first. Read-only.

        Args:
            status: Only proposals in this status
            kind: Only proposals of this kind
        """
        ids = [i.decode("utf-8") if isinstance(i, bytes) else i
               for i in self.redis.zrevrange(self.index_key, 0, -1)]
        if not ids:
            return []

        raws = self.redis.mget([self._key(i) for i in ids])
        proposals = [json.loads(raw) for raw in raws if raw is not None]

        if status is not None:
            proposals = [p for p in proposals if p["status"] == status]
        if kind is not None:
            proposals = [p for p in proposals if p["kind"] == kind]
        return proposals

    def cast_vote(
        self,
        proposal_id: str,
        founder_id: str,
        approve: bool,
        signature: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Record a founder's vote and recompute the proposal status.

        Args:
            proposal_id: Proposal being voted on
            founder_id: Voting founder
            approve: True to approve, False to reject
            signature: HMAC vote token (required if signed votes are enforced)

        Returns:
            The updated proposal

        Raises:
            InvalidArgument: If approve is not a bool or founder_id is empty
            NotFound: If the proposal does not exist
            InvalidPrincipal: If founder_id is not a current founder
            InvalidSignature: If the vote token is required and missing, or invalid
            DuplicateVote: If the founder already voted on this proposal
            VotingClosed: If the proposal is no longer pending or voting
        """
        key = self._key(proposal_id)

        def body(pipe):
            proposal = self._load(pipe, proposal_id)
            roster = self.registry.snapshot(pipe)

            if not roster.is_founder(founder_id):
                raise InvalidPrincipal(
                    f"{founder_id} is not a registered founder",
                    entity_id=proposal_id, rule="voter_is_founder", founder_id=founder_id,
                )
            self.vote_signer.check(
                founder_id, proposal_id, approve, signature, self.require_signed_votes
            )
            if any(v["founder_id"] == founder_id for v in proposal["votes"]):
                raise DuplicateVote(
                    f"{founder_id} has already voted on {proposal_id}",
                    entity_id=proposal_id, rule="one_vote_per_founder", founder_id=founder_id,
                )
            if proposal["status"] not in OPEN_STATUSES:
                raise VotingClosed(
                    "Proposal is not open for voting",
                    entity_id=proposal_id, rule="voting_open", status=proposal["status"],
                )

            previous_status = proposal["status"]
            vote = {
                "founder_id": founder_id,
                "approve": approve,
                "voted_at": self._clock().isoformat(),
            }
            if signature is not None:
                vote["signature"] = signature
            proposal["votes"].append(vote)
            proposal["status"] = self.evaluator.derive_status(
                proposal["votes"], proposal["required_votes"],
                roster.founder_count, roster.founder_ids,
            )
            tally = self.evaluator.tally(proposal, roster.founder_ids)

            pipe.multi()
            self._write(pipe, proposal)
            self._audit(
                "vote_cast", proposal_id, founder_id, pipe=pipe,
                approve=approve, approval_count=tally["approval_count"],
                required_votes=proposal["required_votes"], status=proposal["status"],
            )
            if proposal["status"] != previous_status and proposal["status"] in (
                STATUS_APPROVED, STATUS_REJECTED
            ):
                self._audit(
                    f"proposal_{proposal['status']}", proposal_id, founder_id, pipe=pipe,
                    approval_count=tally["approval_count"],
                    rejection_count=tally["rejection_count"],
                    required_votes=proposal["required_votes"],
                )
            return proposal

        try:
            if not founder_id or not str(founder_id).strip():
                raise InvalidArgument(
                    "Founder ID is required", entity_id=proposal_id, rule="founder_id_required"
                )
            if not isinstance(approve, bool):
                raise InvalidArgument(
                    "Approve field must be true or false",
                    entity_id=proposal_id, rule="approve_is_bool",
                )
            proposal = run_transaction(
                self.redis, [key, *self.registry.roster_keys], body,
                self.max_retries, entity_id=proposal_id,
            )
        except GovernanceError as e:
            self.audit.refused(
                "vote_refused", "proposal", proposal_id, founder_id or "unknown", e,
                details={"approve": approve if isinstance(approve, bool) else None},
                source=self.source_name,
            )
            raise

        logger.info(
            f"Vote cast on {proposal_id} by {founder_id}: "
            f"{'approve' if approve else 'reject'} -> {proposal['status']}"
        )
        return proposal

    def begin_deployment(self, proposal_id: str, actor: str = "system") -> Dict[str, Any]:
        """
        Claim an approved proposal for deployment.

        Re-checks quorum from the recorded votes against the live roster and
        marks the deployment in_progress, so no second caller can apply it
        concurrently.

        Returns:
            The claimed proposal (deployment_status "in_progress")

        Raises:
            NotFound, AlreadyDeployed, DeploymentInProgress, NotApproved, QuorumNotMet
        """
        key = self._key(proposal_id)

        def body(pipe):
            proposal = self._load(pipe, proposal_id)

            if proposal["status"] == STATUS_DEPLOYED:
                raise AlreadyDeployed(
                    "Proposal is already deployed",
                    entity_id=proposal_id, rule="deploy_once",
                    deployed_at=proposal.get("deployed_at"),
                )
            if proposal.get("deployment_status") == "in_progress":
                raise DeploymentInProgress(
                    "Proposal deployment is already in progress",
                    entity_id=proposal_id, rule="single_deployer",
                    started_at=proposal.get("deployment_started_at"),
                )
            if proposal["status"] != STATUS_APPROVED:
                raise NotApproved(
                    "Only approved proposals can be deployed",
                    entity_id=proposal_id, rule="deploy_requires_approval",
                    status=proposal["status"],
                )

            roster = self.registry.snapshot(pipe)
            if not self.evaluator.is_approved(
                proposal["votes"], proposal["required_votes"], roster.founder_ids
            ):
                raise QuorumNotMet(
                    "Recorded approvals from current founders no longer reach quorum",
                    entity_id=proposal_id, rule="quorum_from_current_founders",
                    approval_count=self.evaluator.approval_count(
                        proposal["votes"], roster.founder_ids
                    ),
                    required_votes=proposal["required_votes"],
                )

            proposal["deployment_status"] = "in_progress"
            proposal["deployment_started_at"] = self._clock().isoformat()
            proposal.pop("deployment_error", None)

            pipe.multi()
            self._write(pipe, proposal)
            self._audit("deployment_started", proposal_id, actor, pipe=pipe)
            return proposal

        return run_transaction(
            self.redis, [key, *self.registry.roster_keys], body,
            self.max_retries, entity_id=proposal_id,
        )

    def record_deployment_outcome(
        self,
        proposal_id: str,
        succeeded: bool,
        actor: str = "system",
        error: Optional[str] = None,
        canary_cap: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Record the apply action's outcome on a claimed proposal.

        Success moves the proposal to deployed (terminal). Failure leaves it
        approved so the deployment can be retried.

        Returns:
            The updated proposal
        """
        key = self._key(proposal_id)

        def body(pipe):
            proposal = self._load(pipe, proposal_id)
            if proposal.get("deployment_status") != "in_progress":
                raise Conflict(
                    "Proposal has no deployment in progress",
                    entity_id=proposal_id, rule="deployment_claimed",
                    deployment_status=proposal.get("deployment_status"),
                )

            now = self._clock().isoformat()
            if succeeded:
                proposal["status"] = STATUS_DEPLOYED
                proposal["deployment_status"] = "success"
                proposal["deployed_at"] = now
                proposal["deployed_by"] = actor
                if canary_cap is not None:
                    proposal["canary_cap"] = canary_cap
                    proposal["promoted_at"] = now
                event_type = "proposal_deployed"
            else:
                proposal["deployment_status"] = "failed"
                proposal["deployment_error"] = error or "apply action failed"
                event_type = "deployment_failed"

            pipe.multi()
            self._write(pipe, proposal)
            self.audit.emit(
                event_type, "proposal", proposal_id, actor,
                outcome="success" if succeeded else "failed",
                details=details or None, source=self.source_name, pipe=pipe,
            )
            if succeeded and canary_cap is not None:
                self._audit(
                    "canary_promoted", proposal_id, actor, pipe=pipe,
                    model_id=proposal.get("target"), canary_cap=canary_cap,
                )
            return proposal

        proposal = run_transaction(
            self.redis, [key], body, self.max_retries, entity_id=proposal_id
        )

        if succeeded:
            logger.info(f"Proposal deployed: {proposal_id} by {actor}")
        else:
            logger.error(f"Deployment of {proposal_id} failed: {error}")
        return proposal
