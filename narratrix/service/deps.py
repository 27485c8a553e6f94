"""Contracts for the capabilities the host application injects into a run.

The workflow core never reaches into application state on its own: template,
model and manifest lookups, prompt formatting, inference and store actions all
arrive through a ``WorkflowDeps`` implementation. Lookups may be plain or
``async`` callables; the executors accept both.
"""
from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Dict,
    List,
    Literal,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)

from narratrix.service.sandbox import ScriptStores


@dataclass
class ModelSpecs:
    id: str
    model_type: Literal["chat", "completion"]
    config: Dict[str, Any]
    max_concurrent_requests: int
    engine: str


@dataclass
class InferenceRequest:
    messages: List[Dict[str, Any]]
    model_specs: ModelSpecs
    system_prompt: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    stream: bool = False


@dataclass
class FormattedPrompt:
    inference_messages: List[Dict[str, Any]]
    system_prompt: Optional[str] = None
    custom_stop_strings: List[str] = field(default_factory=list)

    @classmethod
    def coerce(cls, value: Any) -> "FormattedPrompt":
        """Accept either a FormattedPrompt or the plain dict a formatter returns."""
        if isinstance(value, cls):
            return value
        if isinstance(value, dict):
            return cls(
                inference_messages=list(
                    value.get("inference_messages") or value.get("inferenceMessages") or []
                ),
                system_prompt=value.get("system_prompt") or value.get("systemPrompt"),
                custom_stop_strings=list(
                    value.get("custom_stop_strings") or value.get("customStopStrings") or []
                ),
            )
        raise TypeError(f"prompt formatter returned {type(value).__name__}")


InferenceResult = Union[Optional[str], AsyncIterator[str]]


@runtime_checkable
class WorkflowDeps(Protocol):
    """Capability bundle owned by the host and consumed read-only by the engine."""

    stores: Optional[ScriptStores]

    def format_prompt(self, config: Dict[str, Any]) -> Union[FormattedPrompt, dict, Awaitable[Any]]:
        ...

    def get_chat_template_by_id(self, template_id: str) -> Any:
        ...

    def get_model_by_id(self, model_id: str) -> Any:
        ...

    def get_inference_template_by_id(self, template_id: str) -> Any:
        ...

    def get_format_template_by_id(self, template_id: str) -> Any:
        ...

    def get_manifest_by_id(self, manifest_id: str) -> Optional[Dict[str, Any]]:
        ...

    def run_inference(self, request: InferenceRequest) -> Union[InferenceResult, Awaitable[InferenceResult]]:
        ...


async def maybe_await(value: Any) -> Any:
    """Resolve ``value`` if the host handed back an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value
