#!/usr/bin/env python3
"""Run an agent graph once from a JSON definition.

Usage:
    # Validate only:
    python scripts/run_agent.py agent.json --validate

    # Run with a triggering message:
    python scripts/run_agent.py agent.json --message "hello" --chat-id chat-1

    # Agent nodes answer with their formatted prompt instead of calling a model:
    python scripts/run_agent.py agent.json --message "hello" --echo-inference

Environment Variables:
    SCRIPT_TIMEOUT_SECONDS: Deadline for script nodes (empty disables)
    LOG_LEVEL / LOG_JSON / LOG_DEV_MODE: structlog output settings
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


class EchoDeps:
    """Stand-in dependencies whose inference returns the formatted user prompt."""

    stores = None

    def format_prompt(self, config: Dict[str, Any]) -> dict:
        return {
            "inference_messages": [{"role": "user", "text": config.get("user_prompt", "")}],
            "system_prompt": config.get("system_override_prompt") or None,
        }

    def get_chat_template_by_id(self, template_id: str) -> dict:
        return {"id": template_id, "model_id": "echo", "config": {}}

    def get_model_by_id(self, model_id: str) -> dict:
        return {"id": model_id, "manifest_id": "echo", "config": {}}

    def get_inference_template_by_id(self, template_id: str) -> None:
        return None

    def get_format_template_by_id(self, template_id: str) -> None:
        return None

    def get_manifest_by_id(self, manifest_id: str) -> dict:
        return {"id": manifest_id, "engine": "echo"}

    async def run_inference(self, request) -> Optional[str]:
        if not request.messages:
            return None
        return request.messages[-1].get("text")


async def run_agent(
    path: Path,
    *,
    message: Optional[str],
    chat_id: Optional[str],
    echo_inference: bool,
    validate_only: bool,
) -> dict:
    # Import here so env overrides apply before settings load
    from narratrix.schemas import Agent
    from narratrix.service.errors import ValidationError
    from narratrix.service.workflow import WorkflowEngine

    agent = Agent.model_validate(json.loads(path.read_text()))
    engine = WorkflowEngine(EchoDeps() if echo_inference else None)

    if validate_only:
        try:
            levels = engine.validate(agent)
        except ValidationError as exc:
            return {"agent": agent.id, "valid": False, "error": exc.message}
        return {"agent": agent.id, "valid": True, "wavefronts": levels}

    seeds: Dict[str, Any] = {"type": "manual"}
    if message is not None:
        seeds["input"] = message
        seeds["message"] = message
    if chat_id:
        seeds["chatId"] = chat_id

    results, context = await engine.run_with_context(agent, seeds)
    if context.validation_error is not None:
        return {"agent": agent.id, "valid": False, "error": context.validation_error.message}
    return {
        "agent": agent.id,
        "valid": True,
        "output": engine.agent_output(agent, results),
        "nodes": {
            node_id: {"success": r.success, "value": r.value, "error": r.error}
            for node_id, r in results.items()
        },
    }


def main():
    parser = argparse.ArgumentParser(
        description="Run a Narratrix agent graph once",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("agent_file", type=Path, help="Path to the agent JSON definition")
    parser.add_argument("--message", help="Triggering message passed as the run input")
    parser.add_argument("--chat-id", help="Chat id exposed to chat-aware nodes")
    parser.add_argument(
        "--echo-inference",
        action="store_true",
        help="Answer agent nodes with their prompt instead of a model call",
    )
    parser.add_argument(
        "--validate",
        action="store_true",
        help="Only check the graph and print its wavefronts",
    )

    args = parser.parse_args()

    if not args.agent_file.exists():
        print(f"Error: {args.agent_file} not found")
        sys.exit(1)

    try:
        result = asyncio.run(
            run_agent(
                args.agent_file,
                message=args.message,
                chat_id=args.chat_id,
                echo_inference=args.echo_inference,
                validate_only=args.validate,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(json.dumps(result, indent=2, default=str))
    if not result.get("valid"):
        sys.exit(2)


if __name__ == "__main__":
    main()
