import pytest
from pydantic import ValidationError as PydanticValidationError

from narratrix.schemas import (
    MAX_JSON_DEPTH,
    Agent,
    AgentEdge,
    AgentNode,
    TriggerType,
    validate_json_value,
)
from narratrix.service.errors import (
    ExternalDependencyError,
    NodeExecutionError,
    SandboxError,
    ValidationError,
    WorkflowError,
)


class TestJsonValues:
    @pytest.mark.parametrize(
        "value",
        ["text", 3, 2.5, True, None, [1, "a", None], {"a": {"b": [1, 2]}}],
    )
    def test_json_values_pass_through(self, value):
        assert validate_json_value(value) == value

    @pytest.mark.parametrize(
        "value",
        [object(), b"bytes", {1: "int key"}, [lambda: None], {"s": {1, 2}}],
    )
    def test_non_json_values_are_rejected(self, value):
        with pytest.raises(ValueError) as exc_info:
            validate_json_value(value)
        assert "not JSON-compatible" in str(exc_info.value)

    def test_deep_nesting_is_rejected(self):
        value = "leaf"
        for _ in range(MAX_JSON_DEPTH + 2):
            value = [value]

        with pytest.raises(ValueError):
            validate_json_value(value)


class TestAgentModel:
    def test_edge_aliases_and_defaults(self):
        edge = AgentEdge.model_validate(
            {"id": "e1", "source": "a", "target": "b", "sourceHandle": "out-string"}
        )

        assert edge.source_handle == "out-string"
        assert edge.target_handle == "in-input"
        assert edge.edge_type == "string"

    def test_node_config_none_becomes_empty(self):
        node = AgentNode.model_validate({"id": "n", "type": "text", "config": None})

        assert node.config == {}

    def test_agent_requires_name(self):
        with pytest.raises(PydanticValidationError):
            Agent.model_validate({"id": "a", "name": ""})

    def test_lookup_node_by_id(self):
        agent = Agent.model_validate(
            {"id": "a", "name": "A", "nodes": [{"id": "n1", "type": "text"}]}
        )

        assert agent.node("n1").type == "text"
        assert agent.node("missing") is None


class TestTriggerConfig:
    def test_trigger_node_config_wins(self):
        agent = Agent.model_validate(
            {
                "id": "a",
                "name": "A",
                "nodes": [
                    {
                        "id": "t",
                        "type": "trigger",
                        "config": {"triggerType": "every_x_messages", "messageCount": 4},
                    }
                ],
                "settings": {"run_on": {"type": "after_user_message"}},
            }
        )

        assert agent.trigger_config() == (TriggerType.EVERY_X_MESSAGES, 4)

    def test_settings_run_on_is_fallback(self):
        agent = Agent.model_validate(
            {
                "id": "a",
                "name": "A",
                "settings": {"run_on": {"type": "after_any_message", "config": {}}},
            }
        )

        assert agent.trigger_config() == (TriggerType.AFTER_ANY_MESSAGE, None)

    def test_unknown_type_and_bad_count_mean_manual_without_count(self):
        agent = Agent.model_validate(
            {
                "id": "a",
                "name": "A",
                "nodes": [
                    {
                        "id": "t",
                        "type": "trigger",
                        "config": {"triggerType": "on_full_moon", "messageCount": -2},
                    }
                ],
            }
        )

        assert agent.trigger_config() == (TriggerType.MANUAL, None)


class TestErrors:
    def test_error_codes_are_stable(self):
        assert ValidationError("x").error_code == "validation_error"
        assert NodeExecutionError("x").error_code == "node_error"
        assert SandboxError("x").error_code == "sandbox_error"
        assert ExternalDependencyError("x").error_code == "dependency_error"

    def test_error_carries_node_and_detail(self):
        exc = SandboxError("bad script", node_id="js", detail={"logs": ["a"]})

        assert isinstance(exc, NodeExecutionError)
        assert isinstance(exc, WorkflowError)
        assert str(exc) == "bad script"
        assert exc.node_id == "js"
        assert exc.detail == {"logs": ["a"]}

    def test_error_code_override(self):
        assert WorkflowError("x", error_code="custom").error_code == "custom"
        assert WorkflowError("x").error_code == "workflow_error"
