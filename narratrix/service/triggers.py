from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from typing import Any, Callable, Dict, Iterable, Optional, Set, Tuple

from narratrix.config import RunPolicy, Settings, get_settings
from narratrix.logging import get_logger
from narratrix.schemas import Agent, TriggerType
from narratrix.service.event_bus import WILDCARD, ChatEvent, ChatEventType, EventBus
from narratrix.service.workflow import WorkflowEngine

EVENT_TO_TRIGGER_TYPES: Dict[ChatEventType, Tuple[TriggerType, ...]] = {
    ChatEventType.AFTER_USER_MESSAGE: (
        TriggerType.AFTER_USER_MESSAGE,
        TriggerType.AFTER_ANY_MESSAGE,
    ),
    ChatEventType.BEFORE_USER_MESSAGE: (
        TriggerType.BEFORE_USER_MESSAGE,
        TriggerType.BEFORE_ANY_MESSAGE,
    ),
    ChatEventType.AFTER_PARTICIPANT_MESSAGE: (
        TriggerType.AFTER_ANY_MESSAGE,
        TriggerType.AFTER_CHARACTER_MESSAGE,
    ),
    ChatEventType.BEFORE_PARTICIPANT_MESSAGE: (
        TriggerType.BEFORE_ANY_MESSAGE,
        TriggerType.BEFORE_CHARACTER_MESSAGE,
    ),
    ChatEventType.AFTER_ALL_PARTICIPANTS: (TriggerType.AFTER_ALL_PARTICIPANTS,),
    ChatEventType.MESSAGE_COUNT: (TriggerType.EVERY_X_MESSAGES,),
}

# Events that advance every_x_messages counters
COUNTER_EVENT_TYPES = frozenset(
    {ChatEventType.AFTER_USER_MESSAGE, ChatEventType.AFTER_PARTICIPANT_MESSAGE}
)

AgentSource = Callable[[str], Iterable[Agent]]


def build_seed_inputs(event: ChatEvent, agent: Agent, trigger_type: TriggerType) -> Dict[str, Any]:
    """Seed inputs handed to root nodes of a triggered run.

    ``type`` is the agent's matched trigger type, not the event type.
    """
    seeds: Dict[str, Any] = {
        "type": trigger_type.value,
        "chatId": event.chat_id,
        "input": event.message,
        "message": event.message,
        "participantId": event.participant_id or agent.id,
        "userCharacterId": event.user_character_id,
        "messageCount": event.message_count,
    }
    return {key: value for key, value in seeds.items() if value is not None}


class TriggerManager:
    """Starts agent runs in reaction to user-sourced chat events.

    Runs are never awaited on the emitting thread: inside a running event loop
    they become tasks, otherwise they are handed to a bounded thread pool that
    runs each one on its own loop.
    """

    def __init__(
        self,
        bus: EventBus,
        engine: WorkflowEngine,
        agent_source: AgentSource,
        *,
        settings: Optional[Settings] = None,
        chat_id: str = WILDCARD,
    ) -> None:
        self.bus = bus
        self.engine = engine
        self.settings = settings or get_settings()
        self.chat_id = chat_id
        self.logger = get_logger(__name__)
        self._agent_source = agent_source
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._lock = threading.Lock()
        self._counters: Dict[Tuple[str, str], int] = {}
        self._in_flight: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._futures: Set[concurrent.futures.Future] = set()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.settings.trigger_workers,
            thread_name_prefix="agent-trigger",
        )
        self._executor_shutdown = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.bus.subscribe(self.handle_event, self.chat_id)
            self.logger.info("trigger_manager_started", chat_id=self.chat_id)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
            self.logger.info("trigger_manager_stopped", chat_id=self.chat_id)

    @property
    def started(self) -> bool:
        return self._unsubscribe is not None

    def shutdown(self, wait: bool = True) -> None:
        """Detach from the bus and stop the worker pool."""
        self.stop()
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        try:
            self._executor.shutdown(wait=wait, cancel_futures=not wait)
            self.logger.info("trigger_executor_shutdown", wait=wait)
        except Exception as exc:
            self.logger.warning("trigger_executor_shutdown_error", error=str(exc))

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until every run this manager started has finished."""
        loop = asyncio.get_running_loop()
        while True:
            pending = [t for t in list(self._tasks) if not t.done() and t.get_loop() is loop]
            pending.extend(
                asyncio.wrap_future(f) for f in list(self._futures) if not f.done()
            )
            if not pending:
                return
            await asyncio.wait_for(
                asyncio.gather(*pending, return_exceptions=True), timeout=timeout
            )

    def wait_idle_sync(self, timeout: Optional[float] = None) -> bool:
        """Block until runs handed to the worker pool finish; False on timeout."""
        futures = [f for f in list(self._futures) if not f.done()]
        if not futures:
            return True
        _, not_done = concurrent.futures.wait(futures, timeout=timeout)
        return not not_done

    def reset_counters(self, chat_id: Optional[str] = None) -> None:
        with self._lock:
            if chat_id is None:
                self._counters.clear()
            else:
                for key in [k for k in self._counters if k[0] == chat_id]:
                    del self._counters[key]

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def handle_event(self, event: ChatEvent) -> None:
        if event.is_system:
            return

        try:
            agents = list(self._agent_source(event.chat_id))
        except Exception as exc:
            self.logger.error(
                "trigger_agent_source_failed", chat_id=event.chat_id, error=str(exc)
            )
            return

        for agent in agents:
            if not agent.enabled:
                continue
            trigger_type = self._matches(agent, event)
            if trigger_type is not None:
                self._dispatch(agent, event, trigger_type)

    def _matches(self, agent: Agent, event: ChatEvent) -> Optional[TriggerType]:
        """Return the agent's trigger type if ``event`` should start a run."""
        trigger_type, message_count = agent.trigger_config()
        if trigger_type is TriggerType.MANUAL:
            return None
        if trigger_type is TriggerType.EVERY_X_MESSAGES:
            # only counter events advance the count; nothing else fires these agents
            if event.type not in COUNTER_EVENT_TYPES:
                return None
            threshold = message_count or self.settings.default_message_threshold
            key = (event.chat_id, agent.id)
            with self._lock:
                count = self._counters.get(key, 0) + 1
                if count < threshold:
                    self._counters[key] = count
                    return None
                self._counters[key] = 0
            return trigger_type
        if trigger_type in EVENT_TO_TRIGGER_TYPES.get(event.type, ()):
            return trigger_type
        return None

    def _dispatch(self, agent: Agent, event: ChatEvent, trigger_type: TriggerType) -> None:
        if self._executor_shutdown:
            self.logger.warning("agent_run_rejected_after_shutdown", agent_id=agent.id)
            return

        with self._lock:
            busy = self._in_flight.get(agent.id, 0) > 0 or self.engine.is_running(agent.id)
            if busy and self.settings.run_policy is RunPolicy.SKIP:
                self.logger.info(
                    "agent_run_skipped",
                    agent_id=agent.id,
                    chat_id=event.chat_id,
                    reason="already_running",
                )
                return
            self._in_flight[agent.id] = self._in_flight.get(agent.id, 0) + 1

        seeds = build_seed_inputs(event, agent, trigger_type)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        try:
            if loop is not None:
                task = loop.create_task(self._run(agent, seeds))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            else:
                future = self._executor.submit(self._run_in_thread, agent, seeds)
                self._futures.add(future)
                future.add_done_callback(self._futures.discard)
        except Exception as exc:
            self._release(agent.id)
            self.logger.error("agent_run_start_failed", agent_id=agent.id, error=str(exc))
            return

        self.logger.info(
            "agent_run_dispatched",
            agent_id=agent.id,
            chat_id=event.chat_id,
            event_type=event.type.value,
            trigger_type=trigger_type.value,
        )

    def _run_in_thread(self, agent: Agent, seeds: Dict[str, Any]) -> None:
        asyncio.run(self._run(agent, seeds))

    async def _run(self, agent: Agent, seeds: Dict[str, Any]) -> None:
        try:
            results = await self.engine.run(agent, seeds)
            failed = [node_id for node_id, result in results.items() if not result.success]
            self.logger.info(
                "agent_run_completed",
                agent_id=agent.id,
                nodes=len(results),
                failed=failed,
            )
        except Exception as exc:
            self.logger.error(
                "agent_run_crashed", agent_id=agent.id, error=str(exc), exc_info=True
            )
        finally:
            self._release(agent.id)

    def _release(self, agent_id: str) -> None:
        with self._lock:
            remaining = self._in_flight.get(agent_id, 0) - 1
            if remaining > 0:
                self._in_flight[agent_id] = remaining
            else:
                self._in_flight.pop(agent_id, None)

    def in_flight(self, agent_id: str) -> int:
        with self._lock:
            return self._in_flight.get(agent_id, 0)


__all__ = [
    "COUNTER_EVENT_TYPES",
    "EVENT_TO_TRIGGER_TYPES",
    "TriggerManager",
    "build_seed_inputs",
]
