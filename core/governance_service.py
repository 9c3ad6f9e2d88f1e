"""
Aether Governance Service - the transport-agnostic surface of the engine.

Wires the principal registry, proposal store, admission and deployment
workflows around one Redis client and exposes the operations callers use.
Transport layers (HTTP, CLI, workers) translate GovernanceError.to_dict()
into their own responses.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import redis

from bus.python.aether_bus import ContractValidator, EventBus
from core.admission import AdmissionWorkflow
from core.audit import AuditEmitter
from core.clock import Clock, utc_now
from core.config import GovernanceConfig
from core.deployment import DeploymentExecutor, DeploymentWorkflow
from core.proposals import ProposalStore
from core.quorum import QuorumEvaluator
from core.registry import PrincipalRegistry, VoteSigner


logger = logging.getLogger(__name__)


class GovernanceService:
    """
    Facade over the governance components.

    Invariants:
    - Holds no state of its own; every answer comes from Redis
    - Every mutating call goes through the component that owns the entity
    """

    def __init__(
        self,
        registry: PrincipalRegistry,
        proposals: ProposalStore,
        admission: AdmissionWorkflow,
        deployment: DeploymentWorkflow,
        evaluator: QuorumEvaluator,
        audit: AuditEmitter,
        require_signed_votes: bool = False,
    ):
        self.registry = registry
        self.proposals = proposals
        self.admission = admission
        self.deployment = deployment
        self.evaluator = evaluator
        self.audit = audit
        self.require_signed_votes = require_signed_votes

    @classmethod
    def from_config(
        cls,
        config_file: Path,
        redis_client: redis.Redis,
        contracts_dir: Path,
        clock: Optional[Clock] = None,
        seed: bool = True,
    ) -> "GovernanceService":
        """
        Build the service from a governance YAML file.

        Args:
            config_file: Governance configuration (required)
            redis_client: Redis client shared by all components
            contracts_dir: Directory holding the *.schema.json contracts
            clock: Timestamp source (UTC), injectable for tests
            seed: Seed the roster from config when Redis holds none

        Returns:
            Configured GovernanceService
        """
        config = GovernanceConfig(config_file)
        clock = clock or utc_now

        bus = EventBus(
            redis_client,
            contracts_dir,
            stream_prefix=config.stream_prefix,
            max_stream_length=config.max_stream_length,
        )
        validator = ContractValidator(contracts_dir)
        audit = AuditEmitter(bus, clock=clock)
        evaluator = QuorumEvaluator(user_quorum=config.user_quorum)
        signer = VoteSigner(config.signing_keys())

        registry = PrincipalRegistry(
            redis_client, audit, validator=validator,
            admin_cap=config.admin_cap, key_prefix=config.key_prefix,
            max_retries=config.max_transaction_retries, clock=clock,
        )
        proposals = ProposalStore(
            redis_client, registry, evaluator, audit, validator=validator,
            vote_signer=signer, require_signed_votes=config.require_signed_votes,
            default_required_votes=config.default_required_votes,
            key_prefix=config.key_prefix,
            max_retries=config.max_transaction_retries, clock=clock,
        )
        admission = AdmissionWorkflow(
            redis_client, registry, evaluator, audit, validator=validator,
            vote_signer=signer, require_signed_votes=config.require_signed_votes,
            default_expiry_days=config.invitation_expiry_days,
            key_prefix=config.key_prefix,
            max_retries=config.max_transaction_retries, clock=clock,
        )
        executor = DeploymentExecutor(redis_client, key_prefix=config.key_prefix)
        deployment = DeploymentWorkflow(proposals, executor, audit)

        if seed:
            registry.seed(config.founders, config.admins)

        logger.info(f"Governance service ready (config={config_file})")
        return cls(
            registry, proposals, admission, deployment, evaluator, audit,
            require_signed_votes=config.require_signed_votes,
        )

    # Proposals

    def create_proposal(
        self,
        proposal_id: str,
        description: str,
        created_by: str = "system",
        required_votes: Optional[int] = None,
    ) -> Dict[str, Any]:
        return self.proposals.create_proposal(
            proposal_id, description, required_votes=required_votes, created_by=created_by
        )

    def get_proposal(self, proposal_id: str) -> Dict[str, Any]:
        return self.proposals.get_proposal(proposal_id)

    def list_proposals(
        self, status: Optional[str] = None, kind: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Proposals, newest first, each with tallies against the live roster.

        Adds vote_count, approval_count, rejection_count and can_deploy.
        """
        founder_ids = self.registry.snapshot().founder_ids
        listed = []
        for proposal in self.proposals.list_proposals(status=status, kind=kind):
            entry = dict(proposal)
            entry.update(self.evaluator.tally(proposal, founder_ids))
            listed.append(entry)
        return listed

    def cast_vote(
        self,
        proposal_id: str,
        founder_id: str,
        approve: bool,
        signature: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self.proposals.cast_vote(proposal_id, founder_id, approve, signature=signature)

    def deploy_proposal(self, proposal_id: str, actor: str = "system") -> Dict[str, Any]:
        return self.deployment.deploy(proposal_id, actor=actor)

    def promote_model_canary(
        self, model_id: str, cap_fraction: float, actor: str = "system"
    ) -> Dict[str, Any]:
        return self.deployment.promote_canary(model_id, cap_fraction, actor=actor)

    # Invitations

    def create_invitation(
        self,
        email: str,
        role: str,
        founder_approvals: Optional[List[str]] = None,
        expiry_days: Optional[float] = None,
        invited_by: str = "system",
        approval_signatures: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        return self.admission.create_invitation(
            email, role,
            founder_approvals=founder_approvals,
            expiry_days=expiry_days,
            invited_by=invited_by,
            approval_signatures=approval_signatures,
        )

    def record_invitation_approval(
        self, invitation_id: str, founder_id: str, signature: Optional[str] = None
    ) -> Dict[str, Any]:
        return self.admission.record_approval(invitation_id, founder_id, signature=signature)

    def list_pending_invitations(
        self, search: str = "", limit: int = 10, offset: int = 0
    ) -> Dict[str, Any]:
        return self.admission.list_pending(search=search, limit=limit, offset=offset)

    def approve_invitation(
        self,
        invitation_id: str,
        assigned_role: Optional[str] = None,
        actor: str = "system",
    ) -> Dict[str, Any]:
        return self.admission.approve_invitation(
            invitation_id, assigned_role=assigned_role, actor=actor
        )

    def reject_invitation(self, invitation_id: str, actor: str = "system") -> None:
        self.admission.reject_invitation(invitation_id, actor=actor)

    def invitation_stats(self) -> Dict[str, Any]:
        return self.admission.stats()

    # Founders

    def bootstrap_status(self) -> Dict[str, Any]:
        return self.registry.bootstrap_status()

    def bootstrap_founder(self, display_name: str, email: str) -> Dict[str, Any]:
        return self.registry.bootstrap_founder(display_name, email)

    def list_founders(self) -> List[Dict[str, Any]]:
        return self.registry.list_founders()

    def remove_founder(self, founder_id: str, actor: str = "system") -> Dict[str, Any]:
        return self.registry.remove_founder(founder_id, actor=actor)

    def system_debug(self) -> Dict[str, Any]:
        """Roster, thresholds and record counts for operators."""
        roster = self.registry.snapshot()
        return {
            "founders_count": roster.founder_count,
            "founders": [
                {"id": f["id"], "display_name": f["display_name"], "email": f["email"]}
                for f in self.registry.list_founders()
            ],
            "admins": sorted(roster.admins),
            "admin_count": roster.admin_count,
            "admin_cap": self.registry.admin_cap,
            "user_quorum": self.evaluator.user_quorum,
            "require_signed_votes": self.require_signed_votes,
            "proposals_count": len(self.proposals.list_proposals()),
            "pending_invitations": self.admission.stats()["total_pending"],
            "accounts_count": len(self.admission.list_accounts()),
            "audit_records": self.audit.bus.stream_length("audit"),
        }

    # Audit

    def audit_trail(
        self,
        limit: Optional[int] = None,
        entity_id: Optional[str] = None,
        event_type: Optional[str] = None,
        since: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        return self.audit.read(
            limit=limit, entity_id=entity_id, event_type=event_type, since=since
        )
