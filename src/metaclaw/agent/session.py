"""
Session management - the registry of running agents.

The application owns one ``SessionManager``; there is no module-level
instance. Every session gets its own workspace, agent and tool registry,
and all agents publish to the manager's shared ``EventBus``.
"""

from pathlib import Path
from typing import Callable

import structlog

from ..config import Settings, get_settings
from ..llm.base import BaseLLM
from ..llm.factory import create_llm
from .core import Agent
from .events import EventBus

logger = structlog.get_logger()

LLMFactory = Callable[[Settings], BaseLLM]


class SessionManager:
    """Creates, looks up and stops per-session agents."""

    def __init__(
        self,
        settings: Settings | None = None,
        llm_factory: LLMFactory | None = None,
        events: EventBus | None = None,
    ):
        self.settings = settings or get_settings()
        self.llm_factory = llm_factory or (lambda s: create_llm(settings=s))
        self.events = events or EventBus()
        self._agents: dict[str, Agent] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    @property
    def session_ids(self) -> list[str]:
        return list(self._agents.keys())

    def workspace_for(self, session_id: str) -> Path:
        return self.settings.workspace_for(session_id)

    def get_agent(self, session_id: str) -> Agent | None:
        return self._agents.get(session_id)

    def start_session(self, session_id: str) -> Agent:
        """Return the session's agent, creating it and its workspace if needed."""
        agent = self._agents.get(session_id)
        if agent is not None:
            return agent

        agent = Agent(
            session_id=session_id,
            llm=self.llm_factory(self.settings),
            workspace_dir=self.workspace_for(session_id),
            settings=self.settings,
            events=self.events,
        )
        self._agents[session_id] = agent
        logger.info("Session started", session_id=session_id, workspace=str(agent.workspace_dir))
        return agent

    def start_all(self) -> list[Agent]:
        """Start every session named in the settings."""
        return [self.start_session(sid) for sid in self.settings.session_ids]

    async def stop_session(self, session_id: str) -> bool:
        agent = self._agents.pop(session_id, None)
        if agent is None:
            return False
        await agent.close()
        logger.info("Session stopped", session_id=session_id)
        return True

    async def stop_all(self) -> None:
        for session_id in list(self._agents):
            await self.stop_session(session_id)
