from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional

from narratrix.config import get_settings, reset_settings_cache
from narratrix.logging import get_logger
from narratrix.schemas import Agent
from narratrix.service.deps import WorkflowDeps
from narratrix.service.event_bus import EventBus
from narratrix.service.triggers import AgentSource, TriggerManager
from narratrix.service.workflow import WorkflowEngine

logger = get_logger(__name__)


class AgentRegistry:
    """In-memory set of agents the trigger manager consults on each event."""

    def __init__(self, agents: Iterable[Agent] = ()) -> None:
        self._agents: Dict[str, Agent] = {}
        self._lock = threading.Lock()
        for agent in agents:
            self.register(agent)

    def register(self, agent: Agent) -> Agent:
        with self._lock:
            self._agents[agent.id] = agent
        return agent

    def remove(self, agent_id: str) -> Optional[Agent]:
        with self._lock:
            return self._agents.pop(agent_id, None)

    def get(self, agent_id: str) -> Optional[Agent]:
        with self._lock:
            return self._agents.get(agent_id)

    def list(self) -> List[Agent]:
        with self._lock:
            return list(self._agents.values())

    def for_chat(self, chat_id: str) -> List[Agent]:
        return [agent for agent in self.list() if agent.enabled]


class Runtime:
    """Holds the process-wide event bus, engine and trigger manager."""

    def __init__(
        self,
        deps: Optional[WorkflowDeps] = None,
        *,
        agent_source: Optional[AgentSource] = None,
    ) -> None:
        self.settings = get_settings()
        self.bus = EventBus()
        self.agents = AgentRegistry()
        self.engine = WorkflowEngine(deps, settings=self.settings)
        self.triggers = TriggerManager(
            self.bus,
            self.engine,
            agent_source or self.agents.for_chat,
            settings=self.settings,
        )
        self.triggers.start()
        logger.info(
            "runtime_initialized",
            deps_configured=deps is not None,
            run_policy=self.settings.run_policy.value,
            trigger_workers=self.settings.trigger_workers,
            test_mode=self.settings.test_mode,
        )

    def shutdown(self, wait: bool = True) -> None:
        self.triggers.shutdown(wait=wait)
        self.bus.clear()
        logger.info("runtime_shutdown", wait=wait)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def init_runtime(
    deps: Optional[WorkflowDeps] = None,
    *,
    agent_source: Optional[AgentSource] = None,
) -> Runtime:
    """Replace the singleton with one wired to the host's dependencies."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.shutdown(wait=False)
        runtime = Runtime(deps, agent_source=agent_source)
        return runtime


def shutdown_runtime(wait: bool = True) -> None:
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.shutdown(wait=wait)
            runtime = None


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.shutdown(wait=False)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
