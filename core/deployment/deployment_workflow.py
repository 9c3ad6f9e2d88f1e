"""
Aether Deployment Workflow - gate irreversible apply actions on approved proposals.

Deployment lifecycle:
1. Claim: the proposal must be approved (quorum re-checked against the
   live roster) and not deployed or already being deployed; it is marked
   in_progress in the same transaction.
2. Apply: the executor runs the action exactly once for this claim.
3. Record: success makes the proposal deployed (terminal); failure leaves
   it approved with deployment_status "failed" so it can be retried.

Canary promotion is the same lifecycle on a proposal scoped to one model,
created on first use.
"""

import logging
from numbers import Real
from typing import Any, Dict, Optional

from core.audit import AuditEmitter
from core.errors import ApplyFailed, GovernanceError, InvalidArgument
from core.proposals import ProposalStore
from core.proposals.proposal_store import KIND_MODEL_PROMOTION
from .executor import ACTION_APPLY_CONFIGURATION, ACTION_ROUTE_CANARY_TRAFFIC, DeploymentExecutor


logger = logging.getLogger(__name__)


MODEL_PROPOSAL_PREFIX = "MODEL-DEPLOY-"


def model_proposal_id(model_id: str) -> str:
    return f"{MODEL_PROPOSAL_PREFIX}{model_id}"


class DeploymentWorkflow:
    """
    Runs apply actions behind approved proposals.

    Invariants:
    - Deploy requires approved status and a quorum that still holds
    - Deployment is one-shot: a deployed proposal is never applied again
    - At most one caller holds the deployment claim
    - Apply failure never marks the proposal deployed
    - At most one model receives canary traffic
    """

    def __init__(
        self,
        proposal_store: ProposalStore,
        executor: DeploymentExecutor,
        audit: AuditEmitter,
        source_name: str = "aether-deployment",
    ):
        """
        Initialize deployment workflow.

        Args:
            proposal_store: Store owning proposal records
            executor: External apply action
            audit: Audit emitter
            source_name: Source identifier for audit records
        """
        self.store = proposal_store
        self.executor = executor
        self.audit = audit
        self.source_name = source_name

    def _run(
        self,
        proposal_id: str,
        actor: str,
        action_type: str,
        parameters: Dict[str, Any],
        canary_cap: Optional[float] = None,
    ) -> Dict[str, Any]:
        try:
            proposal = self.store.begin_deployment(proposal_id, actor)
        except GovernanceError as e:
            self.audit.refused(
                "deployment_refused", "proposal", proposal_id, actor, e, source=self.source_name
            )
            raise

        try:
            outcome = self.executor.execute(
                action_type, proposal, parameters, idempotency_key=f"{action_type}:{proposal_id}"
            )
        except Exception as e:
            logger.error(f"Apply action for {proposal_id} raised: {e}", exc_info=True)
            outcome = {
                "status": "failed",
                "error": {"code": "EXECUTION_FAILED", "message": str(e)},
            }

        status = outcome.get("status")
        if status != "succeeded":
            message = (outcome.get("error") or {}).get("message") or f"apply action {status}"
            self.store.record_deployment_outcome(
                proposal_id, succeeded=False, actor=actor, error=message,
                details={"action_type": action_type, "outcome_status": status},
            )
            raise ApplyFailed(
                f"Apply action for {proposal_id} failed: {message}",
                entity_id=proposal_id, rule="apply_succeeded",
                action_type=action_type, outcome_status=status,
            )

        proposal = self.store.record_deployment_outcome(
            proposal_id, succeeded=True, actor=actor, canary_cap=canary_cap,
            details={"action_type": action_type, "outcome_id": outcome.get("outcome_id")},
        )

        return {
            "proposal_id": proposal_id,
            "status": proposal["status"],
            "deployed_at": proposal["deployed_at"],
            "deployment_status": proposal["deployment_status"],
            "outcome": outcome,
        }

    def deploy(self, proposal_id: str, actor: str = "system") -> Dict[str, Any]:
        """
        Deploy an approved proposal.

        Args:
            proposal_id: Proposal to deploy
            actor: Operator requesting deployment

        Returns:
            Deployment result (proposal_id, status, deployed_at,
            deployment_status, outcome)

        Raises:
            NotFound: If the proposal does not exist
            AlreadyDeployed: If the proposal was already deployed
            DeploymentInProgress: If another caller is deploying it
            NotApproved: If the proposal is not approved
            QuorumNotMet: If approvals from current founders fell below quorum
            ApplyFailed: If the apply action failed (proposal stays approved)
        """
        logger.info(f"Deploy requested for {proposal_id} by {actor}")
        return self._run(
            proposal_id, actor, ACTION_APPLY_CONFIGURATION, {"proposal_id": proposal_id}
        )

    def promote_canary(
        self, model_id: str, cap_fraction: float, actor: str = "system"
    ) -> Dict[str, Any]:
        """
        Route a capped fraction of traffic to a candidate model.

        The model's promotion proposal is created on first call and must be
        approved by founder vote before the rollout is applied. A model
        already holding canary traffic is archived when another is promoted.

        Args:
            model_id: Candidate model
            cap_fraction: Fraction of traffic for the candidate, 0 < cap <= 1
            actor: Operator requesting promotion

        Returns:
            Rollout result (proposal_id, model_id, cap_fraction, promoted_at,
            deployment_status, outcome)

        Raises:
            InvalidArgument: If model_id is empty or cap_fraction out of range
            NotApproved: If the model's proposal is not approved yet
            (and everything deploy() raises)
        """
        proposal_id = model_proposal_id(model_id) if model_id else "unknown"

        try:
            if not model_id or not str(model_id).strip():
                raise InvalidArgument("Model ID is required", rule="model_id_required")
            if isinstance(cap_fraction, bool) or not isinstance(cap_fraction, Real) \
                    or not 0 < cap_fraction <= 1:
                raise InvalidArgument(
                    f"cap_fraction must be in (0, 1], got {cap_fraction!r}",
                    entity_id=proposal_id, rule="cap_fraction_range", model_id=model_id,
                )
        except GovernanceError as e:
            self.audit.refused(
                "deployment_refused", "proposal", proposal_id, actor, e, source=self.source_name
            )
            raise

        self.store.ensure_proposal(
            proposal_id,
            f"Deploy model {model_id}",
            created_by=actor,
            kind=KIND_MODEL_PROMOTION,
            target=model_id,
        )

        logger.info(f"Canary promotion requested for {model_id} at {cap_fraction:.0%} by {actor}")
        result = self._run(
            proposal_id,
            actor,
            ACTION_ROUTE_CANARY_TRAFFIC,
            {"model_id": model_id, "cap_fraction": float(cap_fraction)},
            canary_cap=float(cap_fraction),
        )

        archived = (result["outcome"].get("result") or {}).get("archived")
        if archived is not None:
            self.audit.emit(
                "canary_archived", "proposal", model_proposal_id(archived["model_id"]), actor,
                details={
                    "model_id": archived["model_id"],
                    "cap_fraction": archived["cap_fraction"],
                    "replaced_by": model_id,
                },
                source=self.source_name,
            )

        proposal = self.store.get_proposal(proposal_id)
        return {
            "proposal_id": proposal_id,
            "model_id": model_id,
            "cap_fraction": proposal["canary_cap"],
            "promoted_at": proposal["promoted_at"],
            "deployment_status": result["deployment_status"],
            "outcome": result["outcome"],
        }
