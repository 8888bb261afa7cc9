"""
Agent module - the per-session turn loop and what surrounds it.

Includes:
- Agent: turn loop with tools, recall, cancellation and busy tracking
- SessionManager: registry of running sessions
- ContextWindowManager: history compression and pruning
- EventBus: lifecycle events for observers
"""

from .background import BackgroundQueue
from .compaction import CompactionConfig, CompactionResult, ContextWindowManager
from .core import Agent, TurnOptions
from .events import Event, EventBus, EventType
from .session import SessionManager

__all__ = [
    "Agent",
    "TurnOptions",
    "SessionManager",
    "BackgroundQueue",
    "CompactionConfig",
    "CompactionResult",
    "ContextWindowManager",
    "Event",
    "EventBus",
    "EventType",
]
