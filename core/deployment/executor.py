"""
Aether Deployment Executor - the external apply actions behind approved proposals.

Executes an approved proposal's side effect and reports an outcome:
- apply_configuration: publish the proposal's configuration change
- route_canary_traffic: route a fraction of traffic to a candidate model

Every execution carries an idempotency key. A key that already succeeded
returns the recorded result instead of applying twice.
"""

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis

from core.transactions import decode, run_transaction


logger = logging.getLogger(__name__)


ACTION_APPLY_CONFIGURATION = "apply_configuration"
ACTION_ROUTE_CANARY_TRAFFIC = "route_canary_traffic"


class DeploymentExecutor:
    """
    Executes apply actions and returns outcomes.

    Invariants:
    - Unknown action types are rejected
    - An idempotency key is applied at most once
    - Failures attempt rollback of partial writes
    - Outcomes always say succeeded, failed or rolled_back; never raise
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        key_prefix: str = "aether",
        source_name: str = "aether-executor",
    ):
        """
        Initialize executor.

        Args:
            redis_client: Redis client holding applied configuration and routing
            key_prefix: Prefix for Redis keys
            source_name: Source identifier for outcomes
        """
        self.redis = redis_client
        self.key_prefix = key_prefix
        self.source_name = source_name

    def _idempotency_key(self, idempotency_key: str) -> str:
        return f"{self.key_prefix}:applied:{idempotency_key}"

    def config_key(self, proposal_id: str) -> str:
        return f"{self.key_prefix}:config:{proposal_id}"

    def canary_key(self, model_id: str) -> str:
        return f"{self.key_prefix}:canary:{model_id}"

    @property
    def active_canary_key(self) -> str:
        return f"{self.key_prefix}:canary-active"

    def _create_outcome(
        self,
        action_type: str,
        proposal_id: str,
        idempotency_key: str,
        status: str,
        execution_time_ms: int,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        outcome = {
            "outcome_id": str(uuid.uuid4()),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": self.source_name,
            "action_type": action_type,
            "proposal_id": proposal_id,
            "idempotency_key": idempotency_key,
            "status": status,
            "execution_time_ms": execution_time_ms,
        }

        if result:
            outcome["result"] = result

        if error:
            outcome["error"] = error

        if status == "rolled_back":
            outcome["rollback_executed"] = True

        return outcome

    def _execute_apply_configuration(
        self, proposal: Dict[str, Any], parameters: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Publish the approved configuration change for readers of the config key."""
        applied = {
            "proposal_id": proposal["id"],
            "description": proposal["description"],
            "parameters": parameters,
            "applied_at": datetime.now(timezone.utc).isoformat(),
        }
        self.redis.set(self.config_key(proposal["id"]), json.dumps(applied))

        logger.info(f"Configuration from {proposal['id']} applied")
        return applied

    def _rollback_apply_configuration(
        self, proposal: Dict[str, Any], parameters: Dict[str, Any]
    ) -> None:
        logger.info(f"Rolling back configuration from {proposal['id']}")
        self.redis.delete(self.config_key(proposal["id"]))

    def _execute_route_canary_traffic(
        self, proposal: Dict[str, Any], parameters: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Route cap_fraction of traffic to the candidate model.

        Only one candidate holds canary traffic: the previously active
        model's routing is archived in the same write that installs the new
        one.
        """
        model_id = parameters["model_id"]
        cap_fraction = float(parameters["cap_fraction"])
        if not 0 < cap_fraction <= 1:
            raise ValueError(f"cap_fraction out of range: {cap_fraction}")

        def body(pipe):
            now = datetime.now(timezone.utc).isoformat()
            previous_id = pipe.get(self.active_canary_key)
            previous_id = decode(previous_id) if previous_id is not None else None

            archived = None
            if previous_id is not None and previous_id != model_id:
                raw = pipe.get(self.canary_key(previous_id))
                if raw is not None:
                    archived = dict(json.loads(raw), mode="archived", archived_at=now)

            routing = {
                "model_id": model_id,
                "proposal_id": proposal["id"],
                "mode": "canary",
                "cap_fraction": cap_fraction,
                "routed_at": now,
            }

            pipe.multi()
            if previous_id is not None and previous_id != model_id:
                pipe.delete(self.canary_key(previous_id))
            pipe.set(self.canary_key(model_id), json.dumps(routing))
            pipe.set(self.active_canary_key, model_id)
            return routing, archived

        routing, archived = run_transaction(
            self.redis, [self.active_canary_key], body, entity_id=self.active_canary_key
        )

        if archived is not None:
            logger.info(f"Archived canary routing for model {archived['model_id']}")
            routing = dict(routing, archived=archived)

        logger.info(f"Canary routing {cap_fraction:.0%} of traffic to model {model_id}")
        return routing

    def _rollback_route_canary_traffic(
        self, proposal: Dict[str, Any], parameters: Dict[str, Any]
    ) -> None:
        model_id = parameters.get("model_id")
        logger.info(f"Rolling back canary routing for model {model_id}")
        if model_id:
            self.redis.delete(self.canary_key(model_id))
            active = self.redis.get(self.active_canary_key)
            if active is not None and decode(active) == model_id:
                self.redis.delete(self.active_canary_key)

    def execute(
        self,
        action_type: str,
        proposal: Dict[str, Any],
        parameters: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Execute an apply action and return its outcome.

        Args:
            action_type: "apply_configuration" or "route_canary_traffic"
            proposal: Approved proposal authorizing the action
            parameters: Action parameters
            idempotency_key: Key identifying this logical application

        Returns:
            Outcome dict; status "succeeded", "failed" or "rolled_back"
        """
        parameters = parameters or {}
        idempotency_key = idempotency_key or f"{action_type}:{proposal['id']}"
        start_time = time.time()

        logger.info(
            f"Executing {action_type} for proposal {proposal['id']} "
            f"(idempotency_key={idempotency_key})"
        )

        previous = self.redis.get(self._idempotency_key(idempotency_key))
        if previous is not None:
            logger.warning(
                f"Idempotency key {idempotency_key} already applied, returning recorded result"
            )
            result = json.loads(previous)
            result["replayed"] = True
            return self._create_outcome(
                action_type, proposal["id"], idempotency_key, "succeeded", 0, result=result
            )

        try:
            if action_type == ACTION_APPLY_CONFIGURATION:
                result = self._execute_apply_configuration(proposal, parameters)
            elif action_type == ACTION_ROUTE_CANARY_TRAFFIC:
                result = self._execute_route_canary_traffic(proposal, parameters)
            else:
                raise ValueError(f"Unknown action type: {action_type}")

            self.redis.set(self._idempotency_key(idempotency_key), json.dumps(result))
            execution_time_ms = int((time.time() - start_time) * 1000)

            logger.info(f"{action_type} for {proposal['id']} succeeded in {execution_time_ms}ms")
            return self._create_outcome(
                action_type, proposal["id"], idempotency_key, "succeeded",
                execution_time_ms, result=result,
            )

        except Exception as e:
            execution_time_ms = int((time.time() - start_time) * 1000)

            logger.error(
                f"{action_type} for {proposal['id']} failed: {e}",
                exc_info=True,
            )

            try:
                if action_type == ACTION_APPLY_CONFIGURATION:
                    self._rollback_apply_configuration(proposal, parameters)
                elif action_type == ACTION_ROUTE_CANARY_TRAFFIC:
                    self._rollback_route_canary_traffic(proposal, parameters)
                status = "rolled_back"
            except Exception as rollback_error:
                logger.error(
                    f"Rollback failed for {proposal['id']}: {rollback_error}",
                    exc_info=True,
                )
                status = "failed"

            error = {
                "code": "EXECUTION_FAILED",
                "message": str(e),
                "details": {"action_type": action_type},
            }

            return self._create_outcome(
                action_type, proposal["id"], idempotency_key, status,
                execution_time_ms, error=error,
            )

    def get_canary_routing(self, model_id: str) -> Optional[Dict[str, Any]]:
        raw = self.redis.get(self.canary_key(model_id))
        return json.loads(raw) if raw is not None else None

    def get_active_canary(self) -> Optional[Dict[str, Any]]:
        """Routing of the one model currently receiving canary traffic."""
        model_id = self.redis.get(self.active_canary_key)
        if model_id is None:
            return None
        return self.get_canary_routing(decode(model_id))

    def get_applied_configuration(self, proposal_id: str) -> Optional[Dict[str, Any]]:
        raw = self.redis.get(self.config_key(proposal_id))
        return json.loads(raw) if raw is not None else None
