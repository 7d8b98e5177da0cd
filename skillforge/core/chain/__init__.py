"""
SkillForge Chain Engine
=======================

Durable execution of skill chains: ordered links with per-link retry
budgets, a chain-wide failure cap, branching, human escalation and
best-effort checkpoints.

Components:
- ChainDefinitionStore: Chain/link authoring, publish validation, resolution
- RetryEscalationPolicy: Pure next-step decisions
- ExecutionStateMachine: Execution lifecycle and transitions
- ConcurrencyControl: Optimistic per-execution version checks
- CheckpointSessionBridge: Checkpoints and session-state snapshots
- SqlSessionStateStore: TTL-bound session-state persistence
"""

from skillforge.core.chain.checkpoints import (
    CheckpointSessionBridge,
    ExecutionObserver,
    SessionStateOptions,
)
from skillforge.core.chain.concurrency import ConcurrencyControl
from skillforge.core.chain.definitions import ChainDefinitionStore, PublishedChain
from skillforge.core.chain.engine import ExecutionStateMachine
from skillforge.core.chain.errors import (
    ChainEngineError,
    ChainNotFoundError,
    ConcurrencyConflictError,
    ConfigurationError,
    ExecutionNotFoundError,
    InvalidStateError,
    LinkMismatchError,
    LinkNotFoundError,
    NotFoundError,
    NotPublishedError,
    SessionStateNotFoundError,
)
from skillforge.core.chain.policy import Decision, RetryEscalationPolicy, decide
from skillforge.core.chain.registry import (
    InMemorySkillRegistry,
    InMemoryTicketDirectory,
    SkillRegistry,
    TicketDirectory,
)
from skillforge.core.chain.session_state import (
    SessionSnapshot,
    SessionStateStore,
    SqlSessionStateStore,
)
from skillforge.core.chain.snapshot import ExecutionSnapshot

__all__ = [
    "ChainDefinitionStore",
    "PublishedChain",
    "RetryEscalationPolicy",
    "Decision",
    "decide",
    "ExecutionStateMachine",
    "ExecutionSnapshot",
    "ConcurrencyControl",
    "CheckpointSessionBridge",
    "ExecutionObserver",
    "SessionStateOptions",
    "SessionStateStore",
    "SqlSessionStateStore",
    "SessionSnapshot",
    "SkillRegistry",
    "TicketDirectory",
    "InMemorySkillRegistry",
    "InMemoryTicketDirectory",
    "ChainEngineError",
    "NotFoundError",
    "ChainNotFoundError",
    "LinkNotFoundError",
    "ExecutionNotFoundError",
    "SessionStateNotFoundError",
    "NotPublishedError",
    "InvalidStateError",
    "LinkMismatchError",
    "ConcurrencyConflictError",
    "ConfigurationError",
]
