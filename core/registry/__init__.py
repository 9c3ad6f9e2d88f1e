"""Aether Registry - founder roster, admin role holders and vote signing."""

from .principal_registry import PrincipalRegistry, RosterSnapshot
from .vote_signer import VoteSigner

__all__ = ["PrincipalRegistry", "RosterSnapshot", "VoteSigner"]
