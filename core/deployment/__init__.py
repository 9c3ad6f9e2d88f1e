"""Aether Deployment - apply actions gated behind approved proposals."""

from .deployment_workflow import DeploymentWorkflow, model_proposal_id
from .executor import DeploymentExecutor

__all__ = ["DeploymentWorkflow", "DeploymentExecutor", "model_proposal_id"]
