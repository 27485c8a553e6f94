"""Node executor registry and the built-in node executors.

The registry is a read-only mapping from node type tag to ``ExecutorSpec``
resolved once at import. Every executor takes a single ``NodeCall`` and returns
a ``NodeExecutionResult`` (or raises a ``WorkflowError``, which the engine turns
into a failed result for that node).
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from types import MappingProxyType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    Union,
)

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from narratrix.config import Settings
from narratrix.logging import get_logger
from narratrix.schemas import Agent, AgentNode
from narratrix.service.deps import (
    FormattedPrompt,
    InferenceRequest,
    ModelSpecs,
    WorkflowDeps,
    maybe_await,
)
from narratrix.service.errors import ExternalDependencyError, NodeExecutionError, SandboxError
from narratrix.service.sandbox import ScriptStores, run_script

logger = get_logger(__name__)

HANDLE_TO_INPUT_NAME = {
    "in-input": "input",
    "in-history": "history",
    "in-system-prompt": "systemPrompt",
    "response": "response",
    "in-character": "characterId",
    "in-toolset": "toolset",
}

NESTED_PARAMETER_GROUPS = ("dry", "reasoning", "xtc", "smoothing_sampling")

CHAT_HISTORY_DEFAULT_DEPTH = 10

PROMPT_INJECTION_DEFAULTS: Dict[str, Any] = {
    "behavior": "next",
    "role": "system",
    "position": "bottom",
    "depth": 1,
    "globalType": "",
    "scopeToAgent": False,
}


def map_handle_to_input_name(handle: Optional[str]) -> str:
    """Normalise an edge target handle to the input slot name executors read."""
    if not handle:
        return "input"
    return HANDLE_TO_INPUT_NAME.get(handle, handle)


@dataclass
class NodeExecutionResult:
    success: bool
    value: Any = None
    error: Optional[str] = None
    outputs: Optional[Dict[str, Any]] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, value: Any = None, outputs: Optional[Dict[str, Any]] = None) -> "NodeExecutionResult":
        return cls(success=True, value=value, outputs=outputs)

    @classmethod
    def fail(cls, error: str, *, error_code: str = "node_error") -> "NodeExecutionResult":
        return cls(success=False, error=error, error_code=error_code)


@dataclass
class NodeCall:
    """Everything one executor invocation may see."""

    agent: Agent
    node: AgentNode
    inputs: Dict[str, Any]
    seed_inputs: Dict[str, Any]
    settings: Settings
    run_id: str
    deps: Optional[WorkflowDeps] = None

    @property
    def config(self) -> Dict[str, Any]:
        return self.node.config or {}

    @property
    def chat_id(self) -> Optional[str]:
        chat_id = self.seed_inputs.get("chatId")
        if not chat_id or chat_id == "*":
            return None
        return str(chat_id)

    @property
    def stores(self) -> Optional[ScriptStores]:
        return getattr(self.deps, "stores", None) if self.deps is not None else None


NodeExecutor = Callable[
    [NodeCall], Union[NodeExecutionResult, Awaitable[NodeExecutionResult]]
]


@dataclass(frozen=True)
class ExecutorSpec:
    """Registry entry; ``inputs`` of None accepts any input slot."""

    type: str
    executor: NodeExecutor
    inputs: Optional[FrozenSet[str]] = frozenset()
    outputs: Tuple[str, ...] = ()
    description: str = ""

    def accepts(self, slot: str) -> bool:
        return self.inputs is None or slot in self.inputs


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from a host record that may be a dict or an object."""
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def remove_nested_fields(
    params: Optional[Mapping[str, Any]],
    keys_to_flatten: Iterable[str] = NESTED_PARAMETER_GROUPS,
) -> Dict[str, Any]:
    """Lift grouped sampler settings (``{"dry": {...}}``) to the top level."""
    source = dict(params or {})
    result = dict(source)
    for key in keys_to_flatten:
        nested = source.get(key)
        if nested and isinstance(nested, Mapping):
            result.update(nested)
            result.pop(key, None)
    return result


def _require_stores(call: NodeCall, store_name: str) -> Any:
    stores = call.stores
    if stores is None:
        raise ExternalDependencyError(
            f"{call.node.type} node needs stores.{store_name}", node_id=call.node.id
        )
    return getattr(stores, store_name)


def _require_chat_id(call: NodeCall) -> str:
    chat_id = call.chat_id
    if chat_id is None:
        raise NodeExecutionError("No active chat for this run", node_id=call.node.id)
    return chat_id


# ---------------------------------------------------------------------------
# Built-in executors
# ---------------------------------------------------------------------------


def execute_trigger(call: NodeCall) -> NodeExecutionResult:
    participant_id = call.seed_inputs.get("participantId") or ""
    chat_id = call.seed_inputs.get("chatId") or ""
    return NodeExecutionResult.ok(
        participant_id,
        outputs={"out-participant": participant_id, "out-chat-id": chat_id},
    )


def execute_chat_input(call: NodeCall) -> NodeExecutionResult:
    message = call.seed_inputs.get("input")
    if message is None:
        message = call.seed_inputs.get("message")
    return NodeExecutionResult.ok(message)


def execute_text(call: NodeCall) -> NodeExecutionResult:
    return NodeExecutionResult.ok(call.config.get("content", ""))


def _script_input(inputs: Dict[str, Any]) -> Any:
    if not inputs:
        return None
    if len(inputs) == 1:
        return next(iter(inputs.values()))
    return dict(inputs)


def _validate_script_input(call: NodeCall, payload: Any) -> None:
    schema = call.config.get("inputSchema")
    if not schema or not isinstance(schema, dict):
        return
    try:
        validator = Draft202012Validator(schema)
    except SchemaError as exc:
        raise NodeExecutionError(
            f"invalid input schema: {exc.message}", node_id=call.node.id
        ) from exc
    errors = sorted(
        validator.iter_errors(payload), key=lambda e: [str(part) for part in e.path]
    )
    if errors:
        raise NodeExecutionError(
            "script input failed schema validation: " + "; ".join(e.message for e in errors),
            node_id=call.node.id,
            detail={"errors": [e.message for e in errors]},
        )


def _script_outputs(value: Any) -> Optional[Dict[str, Any]]:
    if isinstance(value, str):
        return {"out-string": value, "out-toolset": []}
    if isinstance(value, list):
        return {"out-toolset": value}
    if isinstance(value, dict):
        toolset = value.get("toolset")
        outputs: Dict[str, Any] = {"out-toolset": toolset if isinstance(toolset, list) else []}
        if isinstance(value.get("text"), str):
            outputs["out-string"] = value["text"]
        return outputs
    return None


async def execute_javascript(call: NodeCall) -> NodeExecutionResult:
    code = call.config.get("code")
    if not isinstance(code, str) or not code.strip():
        return NodeExecutionResult.fail("Script node has no code", error_code=SandboxError.error_code)

    payload = _script_input(call.inputs)
    _validate_script_input(call, payload)

    try:
        result = await run_script(
            code,
            payload,
            stores=call.stores,
            timeout=call.settings.script_timeout_seconds,
            max_log_entries=call.settings.max_script_log_entries,
        )
    except SandboxError as exc:
        if exc.detail.get("logs"):
            logger.info("script_console", node_id=call.node.id, lines=exc.detail["logs"])
        exc.node_id = call.node.id
        raise
    if result.logs:
        logger.info("script_console", node_id=call.node.id, lines=result.logs)
    return NodeExecutionResult.ok(result.value, outputs=_script_outputs(result.value))


async def _collect_inference(result: Any) -> Optional[str]:
    if hasattr(result, "__aiter__"):
        chunks: List[str] = []
        async for chunk in result:
            if chunk:
                chunks.append(str(chunk))
        return "".join(chunks)
    return result


async def _optional_lookup(lookup: Optional[Callable[[str], Any]], ref: Any) -> Any:
    if not ref or lookup is None:
        return None
    try:
        return await maybe_await(lookup(ref))
    except Exception as exc:
        logger.warning("optional_template_lookup_failed", template_id=ref, error=str(exc))
        return None


async def execute_agent(call: NodeCall) -> NodeExecutionResult:
    cfg = call.config
    deps = call.deps
    node_id = call.node.id

    input_prompt = cfg.get("inputPrompt") or "{{input}}"
    if isinstance(call.inputs.get("input"), str):
        input_prompt = input_prompt.replace("{{input}}", call.inputs["input"], 1)
    system_prompt = call.inputs.get("systemPrompt") or cfg.get("systemPromptOverride") or ""

    if deps is None:
        raise ExternalDependencyError("Agent node missing workflow dependencies", node_id=node_id)

    chat_template_id = cfg.get("chatTemplateID")
    if not chat_template_id:
        return NodeExecutionResult.fail("Agent node is missing chat template configuration")

    chat_template = await maybe_await(deps.get_chat_template_by_id(chat_template_id))
    if not chat_template:
        raise ExternalDependencyError(f"Chat template not found: {chat_template_id}", node_id=node_id)

    model_id = _field(chat_template, "model_id")
    model = await maybe_await(deps.get_model_by_id(model_id)) if model_id else None
    if not model:
        raise ExternalDependencyError(
            f"Model not found for chat template {chat_template_id}", node_id=node_id
        )

    manifest = await maybe_await(deps.get_manifest_by_id(_field(model, "manifest_id")))
    if not manifest:
        raise ExternalDependencyError(
            f"Manifest not found for model {_field(model, 'id')}", node_id=node_id
        )

    inference_template = await _optional_lookup(
        getattr(deps, "get_inference_template_by_id", None), _field(model, "inference_template_id")
    )
    format_template = await _optional_lookup(
        getattr(deps, "get_format_template_by_id", None), _field(chat_template, "format_template_id")
    )

    character_id = call.inputs.get("characterId")
    history = call.inputs.get("history")
    prompt = FormattedPrompt.coerce(
        await maybe_await(
            deps.format_prompt(
                {
                    "message_history": history if isinstance(history, list) else [],
                    "user_prompt": input_prompt,
                    "model_settings": model,
                    "inference_template": inference_template,
                    "format_template": format_template,
                    "chat_template": chat_template,
                    "system_override_prompt": system_prompt,
                    "chat_config": {
                        "character": {"id": character_id}
                        if character_id and character_id != "user"
                        else None,
                        "user_character": {"name": "You", "custom": {"personality": ""}}
                        if character_id == "user"
                        else None,
                    },
                }
            )
        )
    )

    base_params = remove_nested_fields(_field(chat_template, "config") or {})
    input_params = call.inputs.get("parameters")
    parameters = remove_nested_fields(
        {
            **base_params,
            **(cfg.get("parameters") or {}),
            **(input_params if isinstance(input_params, dict) else {}),
        }
    )
    if prompt.custom_stop_strings:
        parameters["stop"] = list(parameters.get("stop") or []) + list(prompt.custom_stop_strings)

    request = InferenceRequest(
        messages=prompt.inference_messages,
        model_specs=ModelSpecs(
            id=str(_field(model, "id")),
            model_type="completion" if _field(model, "inference_template_id") else "chat",
            config=_field(model, "config") or {},
            max_concurrent_requests=_field(model, "max_concurrency") or 1,
            engine=str(_field(manifest, "engine") or ""),
        ),
        system_prompt=prompt.system_prompt,
        parameters=parameters,
        stream=False,
    )

    timeout = call.settings.inference_timeout_seconds

    async def _infer() -> Optional[str]:
        return await _collect_inference(await maybe_await(deps.run_inference(request)))

    try:
        text = await asyncio.wait_for(_infer(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ExternalDependencyError(
            f"Agent inference timed out after {timeout}s", node_id=node_id
        ) from exc
    except ExternalDependencyError:
        raise
    except Exception as exc:
        raise ExternalDependencyError(f"Agent inference failed: {exc}", node_id=node_id) from exc

    if isinstance(text, str) and text:
        return NodeExecutionResult.ok(text)
    raise ExternalDependencyError("Agent inference returned no result", node_id=node_id)


async def execute_chat_history(call: NodeCall) -> NodeExecutionResult:
    chat = _require_stores(call, "chat")
    chat_id = _require_chat_id(call)
    messages = await maybe_await(chat.list_messages(chat_id))
    history = list(messages) if isinstance(messages, (list, tuple)) else []

    participant_id = call.inputs.get("characterId") or call.inputs.get("participantId")
    if participant_id:
        if participant_id == "user":
            history = [m for m in history if _field(m, "type") == "user"]
        else:
            history = [m for m in history if _field(m, "character_id") == participant_id]

    message_type = call.config.get("messageType") or "all"
    if message_type != "all":
        target_type = "character" if message_type == "assistant" else message_type
        history = [m for m in history if _field(m, "type") == target_type]

    depth = call.config.get("depth", CHAT_HISTORY_DEFAULT_DEPTH)
    if isinstance(depth, int) and depth > 0:
        history = history[-depth:]

    return NodeExecutionResult.ok([_as_record(m) for m in history])


def _as_record(message: Any) -> Any:
    if isinstance(message, Mapping):
        return dict(message)
    if hasattr(message, "model_dump"):
        return message.model_dump(mode="json")
    return message


async def _pick_participant(call: NodeCall, mode: str) -> Optional[str]:
    if mode == "user":
        return "user"
    if mode == "agent":
        return call.agent.id

    chat = _require_stores(call, "chat")
    chat_id = _require_chat_id(call)

    if mode == "lastMessageCharacter":
        messages = await maybe_await(chat.list_messages(chat_id)) or []
        for message in reversed(list(messages)):
            if _field(message, "type") == "character" and _field(message, "character_id"):
                return _field(message, "character_id")
        return None

    participants = [
        p for p in (await maybe_await(chat.get_participants(chat_id)) or [])
        if _field(p, "id") and _field(p, "id") != "user"
    ]
    if mode == "character":
        for participant in participants:
            if _field(participant, "enabled", True):
                return _field(participant, "id")
        return None

    if mode in ("prevCharacter", "nextCharacter"):
        ids = [_field(p, "id") for p in participants]
        if not ids:
            return None
        if call.agent.id not in ids:
            return ids[-1] if mode == "prevCharacter" else ids[0]
        index = ids.index(call.agent.id)
        if mode == "prevCharacter":
            return ids[index - 1] if index > 0 else None
        return ids[index + 1] if index + 1 < len(ids) else None

    raise NodeExecutionError(f"Unknown participant picker mode: {mode}", node_id=call.node.id)


async def execute_participant_picker(call: NodeCall) -> NodeExecutionResult:
    mode = call.config.get("mode") or "user"
    picked = await _pick_participant(call, mode)
    if not picked:
        return NodeExecutionResult.fail("No participant could be selected")
    return NodeExecutionResult.ok(picked)


async def execute_prompt_injection(call: NodeCall) -> NodeExecutionResult:
    response = call.inputs.get("response")
    if not isinstance(response, str) or not response.strip():
        return NodeExecutionResult.fail("Prompt injection node missing prompt content")

    chat = _require_stores(call, "chat")
    chat_id = _require_chat_id(call)
    config = {**PROMPT_INJECTION_DEFAULTS, **call.config}
    message = {
        "character_id": None,
        "type": "system",
        "messages": [response],
        "disabled": False,
        "extra": {
            "script": "agent",
            "name": call.agent.name,
            "agentId": call.agent.id,
            "promptConfig": {
                "behavior": config["behavior"],
                "role": config["role"],
                "position": config["position"],
                "depth": config["depth"],
                "globalType": config["globalType"] or None,
                "scopeToAgent": bool(config["scopeToAgent"]),
            },
        },
    }
    await maybe_await(chat.add_chat_message(chat_id, message))
    return NodeExecutionResult.ok(response)


def execute_chat_output(call: NodeCall) -> NodeExecutionResult:
    value = call.inputs.get("response")
    if value is None:
        value = call.inputs.get("input")
    return NodeExecutionResult.ok(value)


def execute_end(call: NodeCall) -> NodeExecutionResult:
    value = call.inputs.get("in-string")
    if value is None:
        value = call.inputs.get("input")
    return NodeExecutionResult.ok(value)


BUILTIN_EXECUTORS: Tuple[ExecutorSpec, ...] = (
    ExecutorSpec(
        "trigger",
        execute_trigger,
        outputs=("out-participant", "out-chat-id"),
        description="Exposes the triggering participant and chat id",
    ),
    ExecutorSpec("chatInput", execute_chat_input, outputs=("message",)),
    ExecutorSpec("text", execute_text, outputs=("out-text",)),
    ExecutorSpec(
        "javascript",
        execute_javascript,
        inputs=None,
        outputs=("out-string", "out-toolset"),
        description="Runs a sandboxed script",
    ),
    ExecutorSpec(
        "agent",
        execute_agent,
        inputs=frozenset({"input", "toolset", "history", "systemPrompt", "characterId", "parameters"}),
        outputs=("response",),
        description="Runs one inference call through the injected dependencies",
    ),
    ExecutorSpec(
        "chatHistory",
        execute_chat_history,
        inputs=frozenset({"characterId", "participantId"}),
        outputs=("out-messages",),
    ),
    ExecutorSpec("participantPicker", execute_participant_picker, outputs=("out-participant",)),
    ExecutorSpec("promptInjection", execute_prompt_injection, inputs=frozenset({"response"})),
    ExecutorSpec("chatOutput", execute_chat_output, inputs=frozenset({"response", "input"})),
    ExecutorSpec("end", execute_end, inputs=frozenset({"in-string", "input"})),
)


def build_registry(
    specs: Iterable[ExecutorSpec] = BUILTIN_EXECUTORS,
) -> Mapping[str, ExecutorSpec]:
    """Build a read-only type tag -> ExecutorSpec mapping."""
    registry: Dict[str, ExecutorSpec] = {}
    for spec in specs:
        if spec.type in registry:
            raise ValueError(f"duplicate executor for node type '{spec.type}'")
        registry[spec.type] = spec
    return MappingProxyType(registry)


EXECUTOR_REGISTRY: Mapping[str, ExecutorSpec] = build_registry()


def get_executor(node_type: str, registry: Mapping[str, ExecutorSpec] = EXECUTOR_REGISTRY) -> Optional[ExecutorSpec]:
    return registry.get(node_type)


__all__ = [
    "BUILTIN_EXECUTORS",
    "EXECUTOR_REGISTRY",
    "ExecutorSpec",
    "NodeCall",
    "NodeExecutionResult",
    "build_registry",
    "get_executor",
    "map_handle_to_input_name",
    "remove_nested_fields",
]
