"""Script node sandbox.

A script is the body of an ``async def`` that sees exactly five names:
``input`` (upstream value), ``args`` (deprecated alias of ``input``), ``stores``
(allowlisted host actions), ``utils`` and ``console``. The source is checked
with an AST allowlist before it is compiled, and it runs against a minimal
builtins table.

This is a capability restriction, not OS isolation: a script that never awaits
cannot be interrupted by the deadline, and ``stores`` actions mutate real host
state.
"""
from __future__ import annotations

import ast
import asyncio
import builtins
import json
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, FrozenSet, List, Optional

from narratrix.logging import get_logger
from narratrix.service.errors import SandboxError

logger = get_logger(__name__)

SCRIPT_FILENAME = "<script>"
_ENTRYPOINT = "__narratrix_script__"
_SCRIPT_PARAMS = ("input", "args", "stores", "utils", "console")

DEFAULT_MAX_LOG_ENTRIES = 200

_FORBIDDEN_CALLS = frozenset(
    {
        "eval",
        "exec",
        "compile",
        "open",
        "getattr",
        "setattr",
        "delattr",
        "hasattr",
        "globals",
        "locals",
        "vars",
        "dir",
        "breakpoint",
        "__import__",
        "memoryview",
        "type",
    }
)

# Attributes that hand out frames, code objects or unchecked formatting.
_FORBIDDEN_ATTRIBUTES = frozenset({"format", "format_map", "mro"})
_FORBIDDEN_ATTRIBUTE_PREFIXES = ("_", "gi_", "cr_", "ag_", "f_", "tb_", "co_")

_FORBIDDEN_NODES = (
    ast.Import,
    ast.ImportFrom,
    ast.Global,
    ast.Nonlocal,
    ast.ClassDef,
    ast.Yield,
    ast.YieldFrom,
)

_SAFE_BUILTIN_NAMES = (
    "abs",
    "all",
    "any",
    "bool",
    "chr",
    "dict",
    "divmod",
    "enumerate",
    "filter",
    "float",
    "int",
    "isinstance",
    "len",
    "list",
    "map",
    "max",
    "min",
    "ord",
    "pow",
    "range",
    "repr",
    "reversed",
    "round",
    "set",
    "sorted",
    "str",
    "sum",
    "tuple",
    "zip",
    "Exception",
    "ArithmeticError",
    "KeyError",
    "IndexError",
    "LookupError",
    "TypeError",
    "ValueError",
    "ZeroDivisionError",
    "StopAsyncIteration",
)

SAFE_BUILTINS: Dict[str, Any] = {name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES}

STORE_ACTIONS: Dict[str, FrozenSet[str]] = {
    "chat": frozenset(
        {
            "get_chat",
            "update_chat",
            "list_messages",
            "get_participants",
            "add_chat_message",
            "update_chat_message",
            "delete_chat_message",
        }
    ),
    "characters": frozenset({"list_characters", "get_character_by_id", "update_character"}),
    "lorebook": frozenset(
        {
            "list_lorebooks",
            "get_lorebook_entries",
            "create_lorebook_entry",
            "update_lorebook_entry",
        }
    ),
    "models": frozenset({"list_models", "get_model_by_id"}),
}


class StoreActions:
    """Enumerated view over one host store; only allowlisted actions resolve."""

    __slots__ = ("_store_name", "_target", "_allowed")

    def __init__(self, store_name: str, target: Any, allowed: FrozenSet[str]) -> None:
        self._store_name = store_name
        self._target = target
        self._allowed = allowed

    def __getattr__(self, action: str) -> Any:
        if action.startswith("_") or action not in self._allowed:
            raise AttributeError(f"stores.{self._store_name} has no action '{action}'")
        if self._target is None:
            raise AttributeError(f"stores.{self._store_name} is not available")
        if isinstance(self._target, Mapping):
            if action not in self._target:
                raise AttributeError(f"stores.{self._store_name}.{action} is not provided")
            return self._target[action]
        try:
            return getattr(self._target, action)
        except AttributeError:
            raise AttributeError(f"stores.{self._store_name}.{action} is not provided") from None

    @property
    def available(self) -> bool:
        return self._target is not None

    def __repr__(self) -> str:
        return f"<stores.{self._store_name}>"


class ScriptStores:
    """The chat / characters / lorebook / models action surface.

    Each target may be an object exposing the actions as methods (sync or
    async) or a mapping of action name to callable.
    """

    __slots__ = ("chat", "characters", "lorebook", "models")

    def __init__(
        self,
        *,
        chat: Any = None,
        characters: Any = None,
        lorebook: Any = None,
        models: Any = None,
    ) -> None:
        self.chat = StoreActions("chat", chat, STORE_ACTIONS["chat"])
        self.characters = StoreActions("characters", characters, STORE_ACTIONS["characters"])
        self.lorebook = StoreActions("lorebook", lorebook, STORE_ACTIONS["lorebook"])
        self.models = StoreActions("models", models, STORE_ACTIONS["models"])


class ScriptUtils:
    async def delay(self, ms: float) -> None:
        await asyncio.sleep(max(0.0, float(ms)) / 1000.0)

    def json_parse(self, text: Any) -> Any:
        """Parse JSON text; malformed input yields None instead of raising."""
        if not isinstance(text, (str, bytes, bytearray)):
            return None
        try:
            return json.loads(text)
        except ValueError:
            return None

    def json_stringify(self, value: Any, indent: Optional[int] = None) -> str:
        return json.dumps(value, indent=indent, ensure_ascii=False)

    jsonParse = json_parse
    jsonStringify = json_stringify


def _format_log_arg(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return repr(value)


class ScriptConsole:
    """Captures console output in a bounded buffer; oldest lines drop first."""

    def __init__(self, max_entries: int = DEFAULT_MAX_LOG_ENTRIES) -> None:
        self._entries: Deque[str] = deque(maxlen=max(1, max_entries))

    def _write(self, prefix: str, args: tuple) -> None:
        self._entries.append(prefix + " ".join(_format_log_arg(arg) for arg in args))

    def log(self, *args: Any) -> None:
        self._write("", args)

    def info(self, *args: Any) -> None:
        self._write("", args)

    def debug(self, *args: Any) -> None:
        self._write("", args)

    def warn(self, *args: Any) -> None:
        self._write("[warn] ", args)

    def error(self, *args: Any) -> None:
        self._write("[error] ", args)

    @property
    def entries(self) -> List[str]:
        return list(self._entries)


@dataclass
class ScriptResult:
    value: Any = None
    logs: List[str] = field(default_factory=list)


def _reject(node: ast.AST, reason: str) -> None:
    line = getattr(node, "lineno", None)
    suffix = f" (line {line})" if line else ""
    raise SandboxError(f"Script rejected: {reason}{suffix}", detail={"line": line})


def _is_forbidden_attribute(attr: str) -> bool:
    return attr in _FORBIDDEN_ATTRIBUTES or attr.startswith(_FORBIDDEN_ATTRIBUTE_PREFIXES)


def check_script_ast(tree: ast.AST) -> None:
    """Reject constructs that reach outside the bound names."""
    for node in ast.walk(tree):
        if isinstance(node, _FORBIDDEN_NODES):
            _reject(node, f"{type(node).__name__.lower()} statements are not allowed")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            _reject(node, f"name '{node.id}' is not allowed")
        if isinstance(node, ast.Attribute) and _is_forbidden_attribute(node.attr):
            _reject(node, f"attribute '{node.attr}' is not allowed")
        # class patterns read keyword attributes without an Attribute node
        if isinstance(node, ast.MatchClass):
            for attr in node.kwd_attrs:
                if _is_forbidden_attribute(attr):
                    _reject(node, f"attribute '{attr}' is not allowed")
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
            if node.func.id in _FORBIDDEN_CALLS:
                _reject(node, f"call to '{node.func.id}' is not allowed")
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda)):
            for arg in ast.walk(node.args):
                if isinstance(arg, ast.arg) and arg.arg.startswith("__"):
                    _reject(node, f"parameter '{arg.arg}' is not allowed")


def compile_script(code: str) -> Any:
    """Parse, check and compile ``code`` into the script coroutine function."""
    if not isinstance(code, str):
        raise SandboxError("Script source must be a string")
    try:
        body = compile(
            code,
            SCRIPT_FILENAME,
            "exec",
            flags=ast.PyCF_ONLY_AST | ast.PyCF_ALLOW_TOP_LEVEL_AWAIT,
            dont_inherit=True,
        )
    except SyntaxError as exc:
        raise SandboxError(
            f"SyntaxError: {exc.msg} (line {exc.lineno})",
            detail={"line": exc.lineno},
        ) from exc

    check_script_ast(body)

    module = ast.parse(f"async def {_ENTRYPOINT}({', '.join(_SCRIPT_PARAMS)}):\n    pass\n")
    module.body[0].body = list(body.body) or [ast.Pass()]
    ast.fix_missing_locations(module)
    try:
        code_obj = compile(module, SCRIPT_FILENAME, "exec", dont_inherit=True)
    except SyntaxError as exc:
        raise SandboxError(
            f"SyntaxError: {exc.msg} (line {exc.lineno})",
            detail={"line": exc.lineno},
        ) from exc

    namespace: Dict[str, Any] = {"__builtins__": dict(SAFE_BUILTINS)}
    exec(code_obj, namespace)
    return namespace[_ENTRYPOINT]


async def run_script(
    code: str,
    input: Any = None,
    *,
    stores: Optional[ScriptStores] = None,
    timeout: Optional[float] = None,
    max_log_entries: int = DEFAULT_MAX_LOG_ENTRIES,
) -> ScriptResult:
    """Run a script body and return its value with the captured console lines.

    Raises:
        SandboxError: syntax error, rejected construct, raised exception or
            deadline exceeded. ``detail["logs"]`` holds the lines captured
            before the failure.
    """
    console = ScriptConsole(max_log_entries)
    script_fn = compile_script(code)
    coro = script_fn(input, input, stores or ScriptStores(), ScriptUtils(), console)
    try:
        if timeout is not None:
            value = await asyncio.wait_for(coro, timeout=timeout)
        else:
            value = await coro
    except asyncio.TimeoutError as exc:
        raise SandboxError(
            f"Script timed out after {timeout}s",
            detail={"logs": console.entries, "timeout": timeout},
        ) from exc
    except SandboxError:
        raise
    except Exception as exc:
        raise SandboxError(
            f"{type(exc).__name__}: {exc}",
            detail={"logs": console.entries},
        ) from exc
    logs = console.entries
    logger.debug("script_completed", log_lines=len(logs))
    return ScriptResult(value=value, logs=logs)


__all__ = [
    "SAFE_BUILTINS",
    "STORE_ACTIONS",
    "ScriptConsole",
    "ScriptResult",
    "ScriptStores",
    "ScriptUtils",
    "StoreActions",
    "check_script_ast",
    "compile_script",
    "run_script",
]
