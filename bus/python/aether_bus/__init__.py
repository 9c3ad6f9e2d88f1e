"""
Aether Event Bus - Python client.

Provides Redis Streams-based audit/event bus with contract validation.
"""

from .bus import EventBus
from .validator import ContractValidator

__all__ = ["EventBus", "ContractValidator"]
