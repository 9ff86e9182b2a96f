"""Agents and the delegation stack."""

from .agent import Agent, AgentNotFoundError, AgentRegistry
from .delegation import DelegationFrame, DelegationRecord, DelegationStack

__all__ = [
    "Agent",
    "AgentNotFoundError",
    "AgentRegistry",
    "DelegationFrame",
    "DelegationRecord",
    "DelegationStack",
]
