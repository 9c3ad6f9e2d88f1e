"""Aether governance configuration."""

from .governance_config import GovernanceConfig

__all__ = ["GovernanceConfig"]
