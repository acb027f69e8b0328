"""
swarmcore: Swarm Coordination Engine

Takes one free-form task, splits it into dependent subtasks, assembles an
ephemeral team of capability-tagged worker agents, routes messages between
them over session-scoped channels, tracks every subtask to a terminal state
and reports health and performance until the swarm is dissolved.

Components (leaf to root):
    1. TaskDecomposer (task → subtasks + dependency hints)
    2. CapabilityMatcher (requirements → coordinator + workers)
    3. CommunicationManager (channels, delivery, offline queues)
    4. SwarmMonitor (health reports, performance metrics)
    5. SwarmOrchestrator (session state machine, dispatch, stall policy)
    6. SwarmService (control surface with HTTP-style status codes)
"""

from swarmcore.communication import ChannelRegistry, CommunicationManager
from swarmcore.config import SwarmConfig
from swarmcore.decomposer import TaskDecomposer
from swarmcore.directory import AgentDirectory, FileAgentDirectory, InMemoryAgentDirectory
from swarmcore.errors import (
    AuthorizationError,
    CommunicationError,
    IllegalTransitionError,
    NoSuitableAgentsError,
    NotFoundError,
    SwarmError,
    ValidationError,
)
from swarmcore.matcher import CapabilityMatcher
from swarmcore.models import AgentMessage, AgentMetadata, ComplexTask, SwarmSession
from swarmcore.monitor import SwarmMonitor
from swarmcore.orchestrator import SwarmOrchestrator
from swarmcore.service import SwarmService
from swarmcore.store import InMemorySessionStore, JsonSessionStore, SessionStore

__version__ = "0.1.0"

__all__ = [
    "AgentDirectory",
    "AgentMessage",
    "AgentMetadata",
    "AuthorizationError",
    "CapabilityMatcher",
    "ChannelRegistry",
    "CommunicationError",
    "CommunicationManager",
    "ComplexTask",
    "FileAgentDirectory",
    "IllegalTransitionError",
    "InMemoryAgentDirectory",
    "InMemorySessionStore",
    "JsonSessionStore",
    "NoSuitableAgentsError",
    "NotFoundError",
    "SessionStore",
    "SwarmConfig",
    "SwarmError",
    "SwarmMonitor",
    "SwarmOrchestrator",
    "SwarmService",
    "SwarmSession",
    "TaskDecomposer",
    "ValidationError",
]
