from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    JsonValue,
    TypeAdapter,
    ValidationError as PydanticValidationError,
    field_validator,
)

# Maximum nested JSON depth accepted for node values and node configs
MAX_JSON_DEPTH = 32

_JSON_VALUE_ADAPTER: TypeAdapter[JsonValue] = TypeAdapter(JsonValue)


class TriggerType(str, Enum):
    """When an agent fires, as configured on its trigger node."""

    MANUAL = "manual"
    AFTER_USER_MESSAGE = "after_user_message"
    BEFORE_USER_MESSAGE = "before_user_message"
    AFTER_CHARACTER_MESSAGE = "after_character_message"
    BEFORE_CHARACTER_MESSAGE = "before_character_message"
    AFTER_ANY_MESSAGE = "after_any_message"
    BEFORE_ANY_MESSAGE = "before_any_message"
    AFTER_ALL_PARTICIPANTS = "after_all_participants"
    EVERY_X_MESSAGES = "every_x_messages"


def _check_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _check_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _check_depth(item, max_depth, current_depth + 1)


def validate_json_value(value: Any) -> JsonValue:
    """Validate that ``value`` belongs to the closed JSON value set.

    Accepts str, int, float, bool, None, lists of those, and dicts with string
    keys. Raises ``ValueError`` for anything else (callables, objects, bytes).
    """
    try:
        validated = _JSON_VALUE_ADAPTER.validate_python(value, strict=True)
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValueError(
            f"value is not JSON-compatible ({first.get('msg', 'invalid')}"
            + (f" at {location}" if location else "")
            + ")"
        ) from exc
    _check_depth(validated)
    return validated


class NodePosition(BaseModel):
    x: float = 0.0
    y: float = 0.0


class AgentNode(BaseModel):
    """One step of an agent graph; ``config`` is static per node type."""

    id: str
    type: str
    label: str = ""
    position: Optional[NodePosition] = None
    config: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    @field_validator("config", mode="before")
    @classmethod
    def _none_config_is_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("config")
    @classmethod
    def _validate_config_depth(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _check_depth(value)
        return value


class AgentEdge(BaseModel):
    """Directed edge from a source node's output handle to a target input handle."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    source: str
    target: str
    source_handle: str = Field("", alias="sourceHandle")
    target_handle: str = Field("in-input", alias="targetHandle")
    edge_type: str = Field("string", alias="edgeType")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RunOn(BaseModel):
    type: str = TriggerType.MANUAL.value
    config: Dict[str, Any] = Field(default_factory=dict)


class AgentSettings(BaseModel):
    run_on: RunOn = Field(default_factory=RunOn)

    model_config = ConfigDict(extra="allow")


class Agent(BaseModel):
    """A user-authored automation: an enabled flag, trigger settings and a node graph."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = Field(..., min_length=1)
    enabled: bool = True
    description: Optional[str] = None
    version: str = "1.0.0"
    tags: List[str] = Field(default_factory=list)
    nodes: List[AgentNode] = Field(default_factory=list)
    edges: List[AgentEdge] = Field(default_factory=list)
    settings: AgentSettings = Field(default_factory=AgentSettings)

    model_config = ConfigDict(extra="ignore")

    def node(self, node_id: str) -> Optional[AgentNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def trigger_config(self) -> Tuple[TriggerType, Optional[int]]:
        """Return (trigger type, message count).

        The trigger node's config wins; ``settings.run_on`` is the fallback for
        agents authored before trigger nodes existed. Unknown types mean manual.
        """
        trigger_node = next((n for n in self.nodes if n.type == "trigger"), None)
        if trigger_node is not None and trigger_node.config:
            raw_type = trigger_node.config.get("triggerType") or TriggerType.MANUAL.value
            raw_count = trigger_node.config.get("messageCount")
        else:
            raw_type = self.settings.run_on.type
            raw_count = self.settings.run_on.config.get("messageCount")
        try:
            trigger_type = TriggerType(raw_type)
        except ValueError:
            trigger_type = TriggerType.MANUAL
        message_count = raw_count if isinstance(raw_count, int) and raw_count > 0 else None
        return trigger_type, message_count
