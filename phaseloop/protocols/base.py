"""
phaseloop - Protocol strategy interface.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator

from ..models import ExecutionContext, ProtocolEvent


class ProtocolStrategy(ABC):
    """A way of running one conversational turn against the LLM.

    Subclasses stream ``ProtocolEvent``s ending in exactly one ``done``
    (or one ``error`` when the LLM client fails).
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Identifier used by ``create_protocol``."""

    @abstractmethod
    def can_handle(self, context: ExecutionContext) -> bool:
        """Whether this strategy can run the given turn."""

    @abstractmethod
    def execute_streaming(self, context: ExecutionContext) -> AsyncIterator[ProtocolEvent]:
        """Run the turn, yielding protocol events."""
