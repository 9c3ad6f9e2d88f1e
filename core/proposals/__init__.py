"""Aether Proposals - proposal records and founder votes."""

from .proposal_store import ProposalStore

__all__ = ["ProposalStore"]
