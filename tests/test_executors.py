from __future__ import annotations

import asyncio
from types import MappingProxyType
from typing import Any, Dict, Optional

import pytest

from narratrix.config import Settings
from narratrix.schemas import Agent, AgentNode
from narratrix.service.errors import ExternalDependencyError, NodeExecutionError, SandboxError
from narratrix.service.executors import (
    BUILTIN_EXECUTORS,
    EXECUTOR_REGISTRY,
    ExecutorSpec,
    NodeCall,
    build_registry,
    execute_agent,
    execute_chat_history,
    execute_chat_input,
    execute_chat_output,
    execute_javascript,
    execute_participant_picker,
    execute_prompt_injection,
    execute_text,
    execute_trigger,
    get_executor,
    map_handle_to_input_name,
    remove_nested_fields,
)
from narratrix.service.sandbox import ScriptStores

AGENT = Agent(id="agent-1", name="Narrator helper")

MESSAGES = [
    {"id": "m1", "type": "user", "character_id": None, "messages": ["hi"]},
    {"id": "m2", "type": "character", "character_id": "c1", "messages": ["hello"]},
    {"id": "m3", "type": "character", "character_id": "c2", "messages": ["hey"]},
    {"id": "m4", "type": "system", "character_id": None, "messages": ["note"]},
    {"id": "m5", "type": "user", "character_id": None, "messages": ["again"]},
]


class StubDeps:
    """Minimal host dependencies for agent node tests."""

    def __init__(self, *, inference: Any = "Hello there", stores: Optional[ScriptStores] = None):
        self.stores = stores
        self.inference = inference
        self.requests = []
        self.format_calls = []
        self.templates = {
            "tpl-1": {
                "id": "tpl-1",
                "model_id": "m-1",
                "format_template_id": None,
                "config": {"temperature": 0.7, "dry": {"dry_multiplier": 0.8}, "stop": ["###"]},
            }
        }
        self.models = {
            "m-1": {
                "id": "m-1",
                "manifest_id": "openai",
                "config": {"model": "gpt-test"},
                "max_concurrency": None,
                "inference_template_id": None,
            }
        }
        self.manifests = {"openai": {"id": "openai", "engine": "openai_compatible"}}

    async def get_chat_template_by_id(self, template_id: str):
        return self.templates.get(template_id)

    async def get_model_by_id(self, model_id: str):
        return self.models.get(model_id)

    async def get_inference_template_by_id(self, template_id: str):
        return None

    async def get_format_template_by_id(self, template_id: str):
        return None

    def get_manifest_by_id(self, manifest_id: str):
        return self.manifests.get(manifest_id)

    async def format_prompt(self, config: Dict[str, Any]) -> dict:
        self.format_calls.append(config)
        return {
            "inference_messages": [{"role": "user", "text": config["user_prompt"]}],
            "system_prompt": "SYS",
            "custom_stop_strings": ["</s>"],
        }

    async def run_inference(self, request):
        self.requests.append(request)
        if callable(self.inference):
            return await self.inference(request)
        return self.inference


def make_call(
    node_type: str,
    *,
    config: Optional[dict] = None,
    inputs: Optional[dict] = None,
    seeds: Optional[dict] = None,
    deps: Any = None,
    settings: Optional[Settings] = None,
) -> NodeCall:
    return NodeCall(
        agent=AGENT,
        node=AgentNode(id=f"{node_type}-1", type=node_type, config=config or {}),
        inputs=inputs or {},
        seed_inputs=seeds or {},
        settings=settings or Settings(),
        run_id="run-test",
        deps=deps,
    )


def chat_deps(**chat_actions) -> StubDeps:
    return StubDeps(stores=ScriptStores(chat=chat_actions))


# ==============================================================================
# Registry
# ==============================================================================


def test_handle_names_are_normalised():
    assert map_handle_to_input_name("in-input") == "input"
    assert map_handle_to_input_name("in-history") == "history"
    assert map_handle_to_input_name("in-system-prompt") == "systemPrompt"
    assert map_handle_to_input_name("in-character") == "characterId"
    assert map_handle_to_input_name("in-toolset") == "toolset"
    assert map_handle_to_input_name("response") == "response"
    assert map_handle_to_input_name("in-code-params") == "in-code-params"
    assert map_handle_to_input_name("") == "input"


def test_registry_is_read_only_and_has_builtins():
    assert isinstance(EXECUTOR_REGISTRY, MappingProxyType)
    for node_type in (
        "trigger",
        "chatInput",
        "text",
        "javascript",
        "agent",
        "chatHistory",
        "participantPicker",
        "promptInjection",
        "chatOutput",
        "end",
    ):
        assert EXECUTOR_REGISTRY[node_type].type == node_type
    assert EXECUTOR_REGISTRY.get("nope") is None
    with pytest.raises(TypeError):
        EXECUTOR_REGISTRY["custom"] = EXECUTOR_REGISTRY["text"]  # type: ignore[index]


def test_get_executor_reads_the_given_registry():
    custom = build_registry([ExecutorSpec("only", execute_text)])

    assert get_executor("text") is EXECUTOR_REGISTRY["text"]
    assert get_executor("text", custom) is None
    assert get_executor("only", custom).executor is execute_text


def test_build_registry_rejects_duplicate_types():
    extra = ExecutorSpec("text", execute_text)
    with pytest.raises(ValueError):
        build_registry(BUILTIN_EXECUTORS + (extra,))


def test_executor_spec_slot_declarations():
    assert EXECUTOR_REGISTRY["javascript"].accepts("anything")
    assert EXECUTOR_REGISTRY["agent"].accepts("toolset")
    assert not EXECUTOR_REGISTRY["text"].accepts("input")


def test_remove_nested_fields_flattens_sampler_groups():
    params = {
        "temperature": 1.0,
        "dry": {"dry_multiplier": 0.8, "dry_base": 1.75},
        "reasoning": {"effort": "low"},
        "xtc": None,
        "other": {"keep": True},
    }

    flat = remove_nested_fields(params)

    assert flat == {
        "temperature": 1.0,
        "dry_multiplier": 0.8,
        "dry_base": 1.75,
        "effort": "low",
        "xtc": None,
        "other": {"keep": True},
    }
    assert "dry" in params


# ==============================================================================
# Simple nodes
# ==============================================================================


def test_trigger_exposes_participant_and_chat_handles():
    result = execute_trigger(make_call("trigger", seeds={"participantId": "c1", "chatId": "chat-9"}))

    assert result.success
    assert result.value == "c1"
    assert result.outputs == {"out-participant": "c1", "out-chat-id": "chat-9"}


def test_chat_input_text_and_outputs():
    assert execute_chat_input(make_call("chatInput", seeds={"input": "hello"})).value == "hello"
    assert execute_text(make_call("text", config={"content": "fixed"})).value == "fixed"
    assert execute_chat_output(make_call("chatOutput", inputs={"response": "r"})).value == "r"
    assert execute_chat_output(make_call("chatOutput", inputs={"input": "i"})).value == "i"


# ==============================================================================
# Script node
# ==============================================================================


@pytest.mark.asyncio
async def test_javascript_string_result_maps_to_out_string():
    call = make_call("javascript", config={"code": 'return "hi " + input'}, inputs={"input": "bob"})

    result = await execute_javascript(call)

    assert result.success
    assert result.value == "hi bob"
    assert result.outputs == {"out-string": "hi bob", "out-toolset": []}


@pytest.mark.asyncio
async def test_javascript_list_and_object_results():
    as_list = await execute_javascript(
        make_call("javascript", config={"code": 'return [{"name": "search"}]'})
    )
    as_object = await execute_javascript(
        make_call("javascript", config={"code": 'return {"toolset": [1, 2], "text": "t"}'})
    )

    assert as_list.outputs == {"out-toolset": [{"name": "search"}]}
    assert as_object.outputs == {"out-toolset": [1, 2], "out-string": "t"}


@pytest.mark.asyncio
async def test_javascript_receives_all_slots_when_several_are_bound():
    call = make_call(
        "javascript",
        config={"code": 'return input["a"] + input["b"]'},
        inputs={"a": 1, "b": 2},
    )

    result = await execute_javascript(call)

    assert result.value == 3


@pytest.mark.asyncio
async def test_javascript_input_schema_is_enforced():
    call = make_call(
        "javascript",
        config={
            "code": "return input",
            "inputSchema": {"type": "object", "required": ["name"]},
        },
        inputs={"a": 1, "b": 2},
    )

    with pytest.raises(NodeExecutionError) as exc_info:
        await execute_javascript(call)

    assert "'name' is a required property" in exc_info.value.message


@pytest.mark.asyncio
async def test_javascript_failure_carries_node_id():
    call = make_call("javascript", config={"code": "raise ValueError('boom')"})

    with pytest.raises(SandboxError) as exc_info:
        await execute_javascript(call)

    assert exc_info.value.node_id == "javascript-1"
    assert "ValueError: boom" in exc_info.value.message


@pytest.mark.asyncio
async def test_javascript_without_code_fails():
    result = await execute_javascript(make_call("javascript", config={"code": "  "}))

    assert not result.success
    assert result.error_code == "sandbox_error"


# ==============================================================================
# Agent (inference) node
# ==============================================================================


@pytest.mark.asyncio
async def test_agent_node_builds_inference_request():
    deps = StubDeps()
    call = make_call(
        "agent",
        config={"chatTemplateID": "tpl-1", "inputPrompt": "Summarize: {{input}}"},
        inputs={"input": "the chat"},
        deps=deps,
    )

    result = await execute_agent(call)

    assert result.success
    assert result.value == "Hello there"
    request = deps.requests[0]
    assert request.messages == [{"role": "user", "text": "Summarize: the chat"}]
    assert request.system_prompt == "SYS"
    assert request.stream is False
    assert request.parameters == {
        "temperature": 0.7,
        "dry_multiplier": 0.8,
        "stop": ["###", "</s>"],
    }
    specs = request.model_specs
    assert specs.model_type == "chat"
    assert specs.max_concurrent_requests == 1
    assert specs.engine == "openai_compatible"
    assert specs.config == {"model": "gpt-test"}
    assert deps.format_calls[0]["system_override_prompt"] == ""
    assert deps.format_calls[0]["chat_config"] == {"character": None, "user_character": None}


@pytest.mark.asyncio
async def test_agent_node_collects_streamed_chunks():
    async def stream(request):
        async def chunks():
            yield "Hel"
            yield "lo"

        return chunks()

    deps = StubDeps(inference=stream)
    call = make_call("agent", config={"chatTemplateID": "tpl-1"}, deps=deps)

    result = await execute_agent(call)

    assert result.value == "Hello"


@pytest.mark.asyncio
async def test_agent_node_completion_model_type():
    deps = StubDeps()
    deps.models["m-1"]["inference_template_id"] = "inf-1"
    deps.models["m-1"]["max_concurrency"] = 3
    call = make_call("agent", config={"chatTemplateID": "tpl-1"}, deps=deps)

    await execute_agent(call)

    assert deps.requests[0].model_specs.model_type == "completion"
    assert deps.requests[0].model_specs.max_concurrent_requests == 3


@pytest.mark.asyncio
async def test_agent_node_missing_lookups_are_dependency_errors():
    deps = StubDeps()

    with pytest.raises(ExternalDependencyError, match="Chat template not found"):
        await execute_agent(make_call("agent", config={"chatTemplateID": "missing"}, deps=deps))

    deps.manifests.clear()
    with pytest.raises(ExternalDependencyError, match="Manifest not found"):
        await execute_agent(make_call("agent", config={"chatTemplateID": "tpl-1"}, deps=deps))


@pytest.mark.asyncio
async def test_agent_node_without_template_or_deps_fails():
    no_template = await execute_agent(make_call("agent", config={}, deps=StubDeps()))
    assert not no_template.success
    assert "chat template" in no_template.error

    with pytest.raises(ExternalDependencyError):
        await execute_agent(make_call("agent", config={"chatTemplateID": "tpl-1"}))


@pytest.mark.asyncio
async def test_agent_node_empty_inference_fails():
    deps = StubDeps(inference="")

    with pytest.raises(ExternalDependencyError, match="returned no result"):
        await execute_agent(make_call("agent", config={"chatTemplateID": "tpl-1"}, deps=deps))


@pytest.mark.asyncio
async def test_agent_node_inference_timeout():
    async def slow(request):
        await asyncio.sleep(1)
        return "late"

    deps = StubDeps(inference=slow)
    call = make_call(
        "agent",
        config={"chatTemplateID": "tpl-1"},
        deps=deps,
        settings=Settings(inference_timeout_seconds=0.05),
    )

    with pytest.raises(ExternalDependencyError, match="timed out"):
        await execute_agent(call)


# ==============================================================================
# Chat-state nodes
# ==============================================================================


def _ids(result) -> list:
    return [m["id"] for m in result.value]


@pytest.mark.asyncio
async def test_chat_history_filters():
    deps = chat_deps(list_messages=lambda chat_id: MESSAGES)
    seeds = {"chatId": "chat-1"}

    all_messages = await execute_chat_history(make_call("chatHistory", seeds=seeds, deps=deps))
    assistant = await execute_chat_history(
        make_call("chatHistory", config={"messageType": "assistant"}, seeds=seeds, deps=deps)
    )
    user_only = await execute_chat_history(
        make_call("chatHistory", inputs={"characterId": "user"}, seeds=seeds, deps=deps)
    )
    one_character = await execute_chat_history(
        make_call("chatHistory", inputs={"characterId": "c2"}, seeds=seeds, deps=deps)
    )
    shallow = await execute_chat_history(
        make_call("chatHistory", config={"depth": 2}, seeds=seeds, deps=deps)
    )

    assert _ids(all_messages) == ["m1", "m2", "m3", "m4", "m5"]
    assert _ids(assistant) == ["m2", "m3"]
    assert _ids(user_only) == ["m1", "m5"]
    assert _ids(one_character) == ["m3"]
    assert _ids(shallow) == ["m4", "m5"]


@pytest.mark.asyncio
async def test_chat_history_needs_an_active_chat():
    deps = chat_deps(list_messages=lambda chat_id: MESSAGES)

    with pytest.raises(NodeExecutionError, match="No active chat"):
        await execute_chat_history(make_call("chatHistory", seeds={"chatId": "*"}, deps=deps))


@pytest.mark.asyncio
async def test_participant_picker_modes():
    participants = [{"id": "user"}, {"id": "c1", "enabled": False}, {"id": "c2"}]
    deps = chat_deps(
        list_messages=lambda chat_id: MESSAGES,
        get_participants=lambda chat_id: participants,
    )
    seeds = {"chatId": "chat-1"}

    async def pick(mode: str):
        return await execute_participant_picker(
            make_call("participantPicker", config={"mode": mode}, seeds=seeds, deps=deps)
        )

    assert (await pick("user")).value == "user"
    assert (await pick("agent")).value == "agent-1"
    assert (await pick("character")).value == "c2"
    assert (await pick("lastMessageCharacter")).value == "c2"
    assert (await pick("nextCharacter")).value == "c1"
    assert (await pick("prevCharacter")).value == "c2"


@pytest.mark.asyncio
async def test_participant_picker_fails_when_nobody_matches():
    deps = chat_deps(get_participants=lambda chat_id: [{"id": "user"}])

    result = await execute_participant_picker(
        make_call("participantPicker", config={"mode": "character"}, seeds={"chatId": "c"}, deps=deps)
    )

    assert not result.success
    assert result.error == "No participant could be selected"


@pytest.mark.asyncio
async def test_prompt_injection_writes_system_message():
    added = []

    async def add_chat_message(chat_id, message):
        added.append((chat_id, message))

    deps = chat_deps(add_chat_message=add_chat_message)
    call = make_call(
        "promptInjection",
        config={"behavior": "global", "depth": 3},
        inputs={"response": "Stay in character."},
        seeds={"chatId": "chat-1"},
        deps=deps,
    )

    result = await execute_prompt_injection(call)

    assert result.success
    assert result.value == "Stay in character."
    chat_id, message = added[0]
    assert chat_id == "chat-1"
    assert message["type"] == "system"
    assert message["messages"] == ["Stay in character."]
    assert message["extra"]["agentId"] == "agent-1"
    assert message["extra"]["name"] == "Narrator helper"
    assert message["extra"]["promptConfig"] == {
        "behavior": "global",
        "role": "system",
        "position": "bottom",
        "depth": 3,
        "globalType": None,
        "scopeToAgent": False,
    }


@pytest.mark.asyncio
async def test_prompt_injection_requires_content():
    deps = chat_deps(add_chat_message=lambda chat_id, message: None)

    result = await execute_prompt_injection(
        make_call("promptInjection", inputs={"response": "   "}, seeds={"chatId": "c"}, deps=deps)
    )

    assert not result.success
    assert "missing prompt content" in result.error
