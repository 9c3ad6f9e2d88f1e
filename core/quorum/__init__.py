"""Aether Quorum - distinct founder approval counting."""

from .quorum_evaluator import QuorumEvaluator

__all__ = ["QuorumEvaluator"]
