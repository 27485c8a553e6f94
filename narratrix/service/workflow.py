from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    Union,
)
from uuid import uuid4

from narratrix.config import Settings, get_settings
from narratrix.logging import (
    bind_run_id,
    get_logger,
    log_workflow_trace,
    sanitize_error_message,
    unbind_run_id,
)
from narratrix.schemas import Agent, AgentEdge, AgentNode, validate_json_value
from narratrix.service.deps import WorkflowDeps, maybe_await
from narratrix.service.errors import NodeExecutionError, ValidationError, WorkflowError
from narratrix.service.executors import (
    EXECUTOR_REGISTRY,
    ExecutorSpec,
    NodeCall,
    NodeExecutionResult,
    get_executor,
    map_handle_to_input_name,
)

_MISSING = object()

NodeCallback = Callable[[str, NodeExecutionResult], Any]


@dataclass(eq=False)
class WorkflowExecutionContext:
    """Mutable state of one in-flight run; never shared between runs."""

    agent_id: str
    run_id: str = field(default_factory=lambda: str(uuid4()))
    seed_inputs: Dict[str, Any] = field(default_factory=dict)
    node_values: Dict[str, Any] = field(default_factory=dict)
    handle_values: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    executed_nodes: Set[str] = field(default_factory=set)
    is_running: bool = True
    current_node_id: Optional[str] = None
    validation_error: Optional[ValidationError] = None
    trace: List[Dict[str, Any]] = field(default_factory=list)
    node_types: Dict[str, str] = field(default_factory=dict, repr=False)


class WorkflowEngine:
    """Executes agent graphs wavefront by wavefront.

    Nodes whose dependencies have all completed form a wavefront and run
    concurrently on the caller's event loop. A failed node short-circuits its
    transitive dependents; independent branches keep going. ``run`` never
    raises for node or validation failures: every outcome is in the result map.
    """

    def __init__(
        self,
        deps: Optional[WorkflowDeps] = None,
        *,
        registry: Mapping[str, ExecutorSpec] = EXECUTOR_REGISTRY,
        settings: Optional[Settings] = None,
    ) -> None:
        self.deps = deps
        self.registry = registry
        self.settings = settings or get_settings()
        self.logger = get_logger(__name__)
        self._active: Dict[str, Dict[str, WorkflowExecutionContext]] = {}
        self._active_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Validation and ordering
    # ------------------------------------------------------------------

    def validate(self, agent: Agent) -> List[List[str]]:
        """Check the graph and return its wavefronts in execution order.

        Raises:
            ValidationError: duplicate node id, unknown node type, dangling
                edge, undeclared input slot or a cycle.
        """
        node_types: Dict[str, str] = {}
        order: List[str] = []
        for node in agent.nodes:
            if node.id in node_types:
                raise ValidationError(f"Duplicate node id: {node.id}", node_id=node.id)
            if node.type not in self.registry:
                raise ValidationError(
                    f"No executor registered for node type: {node.type}",
                    node_id=node.id,
                    detail={"type": node.type},
                )
            node_types[node.id] = node.type
            order.append(node.id)

        dependencies: Dict[str, Set[str]] = {node_id: set() for node_id in order}
        for edge in agent.edges:
            for end in (edge.source, edge.target):
                if end not in node_types:
                    raise ValidationError(
                        f"Edge {edge.id} references unknown node {end}",
                        detail={"edge": edge.id},
                    )
            slot = map_handle_to_input_name(edge.target_handle)
            spec = self.registry[node_types[edge.target]]
            if not spec.accepts(slot):
                raise ValidationError(
                    f"Node {edge.target} ({spec.type}) has no input slot '{slot}'",
                    node_id=edge.target,
                    detail={"edge": edge.id, "slot": slot},
                )
            dependencies[edge.target].add(edge.source)

        return self._wavefronts(order, dependencies)

    @staticmethod
    def _wavefronts(order: List[str], dependencies: Dict[str, Set[str]]) -> List[List[str]]:
        remaining = {node_id: set(deps) for node_id, deps in dependencies.items()}
        done: Set[str] = set()
        levels: List[List[str]] = []
        while remaining:
            level = [node_id for node_id in order if node_id in remaining and remaining[node_id] <= done]
            if not level:
                stuck = sorted(remaining)
                raise ValidationError(
                    f"Circular dependency detected involving nodes: {', '.join(stuck)}",
                    detail={"nodes": stuck},
                )
            for node_id in level:
                del remaining[node_id]
            done.update(level)
            levels.append(level)
        return levels

    # ------------------------------------------------------------------
    # Run control
    # ------------------------------------------------------------------

    def _register(self, context: WorkflowExecutionContext) -> None:
        with self._active_lock:
            self._active.setdefault(context.agent_id, {})[context.run_id] = context

    def _unregister(self, context: WorkflowExecutionContext) -> None:
        with self._active_lock:
            runs = self._active.get(context.agent_id)
            if runs is not None:
                runs.pop(context.run_id, None)
                if not runs:
                    del self._active[context.agent_id]

    def cancel(self, agent_id: str) -> bool:
        """Stop every in-flight run of ``agent_id`` at its next wavefront boundary."""
        with self._active_lock:
            runs = list(self._active.get(agent_id, {}).values())
        for context in runs:
            context.is_running = False
        if runs:
            self.logger.info("workflow_cancel_requested", agent_id=agent_id, runs=len(runs))
        return bool(runs)

    def is_running(self, agent_id: str) -> bool:
        with self._active_lock:
            runs = list(self._active.get(agent_id, {}).values())
        return any(context.is_running for context in runs)

    def active_runs(self, agent_id: str) -> int:
        with self._active_lock:
            return len(self._active.get(agent_id, {}))

    @staticmethod
    def agent_output(agent: Agent, results: Mapping[str, NodeExecutionResult]) -> Any:
        """Value of the first chatOutput node, or None."""
        for node in agent.nodes:
            if node.type == "chatOutput":
                result = results.get(node.id)
                if result is None or not result.success:
                    return None
                return result.value
        return None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(
        self,
        agent: Agent,
        seed_inputs: Union[Dict[str, Any], str, None] = None,
        *,
        on_node_executed: Optional[NodeCallback] = None,
    ) -> Dict[str, NodeExecutionResult]:
        results, _ = await self.run_with_context(
            agent, seed_inputs, on_node_executed=on_node_executed
        )
        return results

    async def run_with_context(
        self,
        agent: Agent,
        seed_inputs: Union[Dict[str, Any], str, None] = None,
        *,
        on_node_executed: Optional[NodeCallback] = None,
        run_id: Optional[str] = None,
    ) -> Tuple[Dict[str, NodeExecutionResult], WorkflowExecutionContext]:
        context = WorkflowExecutionContext(
            agent_id=agent.id,
            run_id=run_id or str(uuid4()),
            seed_inputs=self._normalise_seeds(agent, seed_inputs),
        )
        results: Dict[str, NodeExecutionResult] = {}
        token = bind_run_id(context.run_id)
        self._register(context)
        started = time.perf_counter()
        try:
            try:
                levels = self.validate(agent)
            except ValidationError as exc:
                context.validation_error = exc
                self.logger.error(
                    "workflow_validation_failed",
                    agent_id=agent.id,
                    error=exc.message,
                    node_id=exc.node_id,
                )
                return results, context

            self.logger.info(
                "workflow_run_started",
                agent_id=agent.id,
                nodes=len(agent.nodes),
                wavefronts=len(levels),
            )
            await self._run_levels(agent, levels, context, results, on_node_executed)
            return results, context
        finally:
            cancelled = not context.is_running
            context.is_running = False
            context.current_node_id = None
            self._unregister(context)
            if context.validation_error is None:
                log_workflow_trace(context.trace, logger=self.logger)
                self.logger.info(
                    "workflow_run_finished",
                    agent_id=agent.id,
                    executed=len(context.executed_nodes),
                    failed=sum(1 for r in results.values() if not r.success),
                    cancelled=cancelled and len(results) < len(agent.nodes),
                    duration_ms=round((time.perf_counter() - started) * 1000, 2),
                )
            unbind_run_id(token)

    @staticmethod
    def _normalise_seeds(
        agent: Agent, seed_inputs: Union[Dict[str, Any], str, None]
    ) -> Dict[str, Any]:
        if isinstance(seed_inputs, str):
            seeds: Dict[str, Any] = {"type": "manual"}
            if seed_inputs:
                seeds["input"] = seed_inputs
                seeds["message"] = seed_inputs
        else:
            seeds = dict(seed_inputs or {})
        seeds.setdefault("participantId", agent.id)
        return seeds

    async def _run_levels(
        self,
        agent: Agent,
        levels: List[List[str]],
        context: WorkflowExecutionContext,
        results: Dict[str, NodeExecutionResult],
        on_node_executed: Optional[NodeCallback],
    ) -> None:
        nodes = {node.id: node for node in agent.nodes}
        context.node_types = {node.id: node.type for node in agent.nodes}
        incoming: Dict[str, List[AgentEdge]] = {node_id: [] for node_id in nodes}
        for edge in agent.edges:
            incoming[edge.target].append(edge)

        for level in levels:
            if not context.is_running:
                self.logger.info(
                    "workflow_cancelled", agent_id=agent.id, completed=len(results)
                )
                break

            runnable: List[str] = []
            for node_id in level:
                failed_dep = next(
                    (
                        edge.source
                        for edge in incoming[node_id]
                        if not results[edge.source].success
                    ),
                    None,
                )
                if failed_dep is not None:
                    skipped = NodeExecutionResult.fail(
                        f"dependency failed: {failed_dep}",
                        error_code=NodeExecutionError.error_code,
                    )
                    self._record(context, nodes[node_id], skipped, results, on_node_executed, 0.0, status="skipped")
                    continue
                runnable.append(node_id)

            if not runnable:
                continue

            outcomes = await asyncio.gather(
                *(self._execute_node(agent, nodes[node_id], incoming[node_id], context) for node_id in runnable)
            )
            for node_id, (result, elapsed_ms) in zip(runnable, outcomes):
                context.executed_nodes.add(node_id)
                self._record(context, nodes[node_id], result, results, on_node_executed, elapsed_ms)

    def _record(
        self,
        context: WorkflowExecutionContext,
        node: AgentNode,
        result: NodeExecutionResult,
        results: Dict[str, NodeExecutionResult],
        on_node_executed: Optional[NodeCallback],
        elapsed_ms: float,
        *,
        status: Optional[str] = None,
    ) -> None:
        results[node.id] = result
        if result.success:
            context.node_values[node.id] = result.value
            if result.outputs is not None:
                context.handle_values[node.id] = dict(result.outputs)

        entry: Dict[str, Any] = {
            "node": node.id,
            "type": node.type,
            "status": status or ("ok" if result.success else "error"),
            "ms": round(elapsed_ms, 2),
        }
        if not result.success:
            entry["error"] = result.error
        self._append_trace(context.trace, entry)

        if on_node_executed is not None:
            try:
                on_node_executed(node.id, result)
            except Exception as exc:
                self.logger.warning("node_callback_failed", node_id=node.id, error=str(exc))

    def _append_trace(self, trace: List[Dict[str, Any]], entry: Dict[str, Any]) -> None:
        trace.append(entry)
        max_entries = self.settings.max_trace_entries
        if len(trace) > max_entries:
            del trace[0 : len(trace) - max_entries]

    async def _execute_node(
        self,
        agent: Agent,
        node: AgentNode,
        incoming: List[AgentEdge],
        context: WorkflowExecutionContext,
    ) -> Tuple[NodeExecutionResult, float]:
        started = time.perf_counter()
        result = await self._invoke(agent, node, incoming, context)
        elapsed_ms = (time.perf_counter() - started) * 1000
        if not result.success:
            result.error = sanitize_error_message(result.error or f"Node {node.id} failed")
            self.logger.warning(
                "workflow_node_failed",
                agent_id=agent.id,
                node_id=node.id,
                node_type=node.type,
                error=result.error,
                error_code=result.error_code,
            )
        else:
            self.logger.debug("workflow_node_completed", node_id=node.id, node_type=node.type)
        return result, elapsed_ms

    async def _invoke(
        self,
        agent: Agent,
        node: AgentNode,
        incoming: List[AgentEdge],
        context: WorkflowExecutionContext,
    ) -> NodeExecutionResult:
        spec = get_executor(node.type, self.registry)
        if spec is None:
            return NodeExecutionResult.fail(f"No executor registered for node type: {node.type}")

        try:
            inputs = self._gather_inputs(incoming, context)
        except ValueError as exc:
            return NodeExecutionResult.fail(str(exc))

        context.current_node_id = node.id
        call = NodeCall(
            agent=agent,
            node=node,
            inputs=inputs,
            seed_inputs=context.seed_inputs,
            settings=self.settings,
            run_id=context.run_id,
            deps=self.deps,
        )
        try:
            result = await maybe_await(spec.executor(call))
        except WorkflowError as exc:
            return NodeExecutionResult.fail(exc.message, error_code=exc.error_code)
        except Exception as exc:
            self.logger.error(
                "workflow_executor_raised",
                node_id=node.id,
                node_type=node.type,
                error=str(exc),
                exc_info=True,
            )
            return NodeExecutionResult.fail(f"{type(exc).__name__}: {exc}")

        if not isinstance(result, NodeExecutionResult):
            return NodeExecutionResult.fail(
                f"Executor for {node.type} returned {type(result).__name__}"
            )
        return result

    def _edge_value(self, edge: AgentEdge, context: WorkflowExecutionContext) -> Any:
        scoped = context.handle_values.get(edge.source)
        if scoped is not None and edge.source_handle:
            if edge.source_handle in scoped:
                value = scoped[edge.source_handle]
                return _MISSING if value is None else value
            source_spec = self._spec_for(edge.source, context)
            if source_spec is not None and edge.source_handle in source_spec.outputs:
                # declared output the node did not produce this run
                return _MISSING
        value = context.node_values.get(edge.source, _MISSING)
        return _MISSING if value is None else value

    def _spec_for(self, node_id: str, context: WorkflowExecutionContext) -> Optional[ExecutorSpec]:
        node_type = context.node_types.get(node_id)
        return get_executor(node_type, self.registry) if node_type else None

    def _gather_inputs(
        self, incoming: List[AgentEdge], context: WorkflowExecutionContext
    ) -> Dict[str, Any]:
        if not incoming:
            try:
                return dict(validate_json_value(context.seed_inputs))
            except ValueError as exc:
                raise ValueError(f"seed inputs: {exc}") from exc

        inputs: Dict[str, Any] = {}
        for edge in incoming:
            value = self._edge_value(edge, context)
            if value is _MISSING:
                continue
            slot = map_handle_to_input_name(edge.target_handle)
            try:
                value = validate_json_value(value)
            except ValueError as exc:
                raise ValueError(f"input '{slot}' from {edge.source}: {exc}") from exc
            if slot == "toolset":
                toolset = inputs.setdefault("toolset", [])
                toolset.extend(value if isinstance(value, list) else [value])
            else:
                inputs[slot] = value
        return inputs


__all__ = ["WorkflowEngine", "WorkflowExecutionContext"]
