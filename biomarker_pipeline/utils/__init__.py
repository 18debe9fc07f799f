"""Utility modules for the biomarker pipeline."""

from .base_agent import BaseAgent, AgentResult

__all__ = [
    "BaseAgent",
    "AgentResult",
]
