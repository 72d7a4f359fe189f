"""
Tools Framework

Auto-registration of tools using decorators and type hints, plus the
registry that the conversation loop dispatches through.

Usage:
    from tools import tool, ToolRegistry

    @tool
    def search_web(query: str, max_results: int = 5) -> dict:
        '''Search the web.

        Args:
            query: What to search for
        '''
        return {"results": [...]}

    registry = ToolRegistry()
    registry.register(search_web)
    result = await registry.dispatch("search_web", '{"query": "banana bread"}')

The @tool decorator:
- Generates JSON schema from type hints
- Extracts descriptions from docstrings
- Builds a pydantic model used to validate and coerce model-supplied arguments
- Collects the tool in a module-level list when the module loads

Dispatch never raises. Unknown tools, malformed arguments and handler
exceptions all come back as a ToolResult whose content is error text, so
the model always receives a well-formed tool result.
"""

import asyncio
import inspect
import json
import logging
import re
import types
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Union, get_args, get_origin, get_type_hints

from pydantic import BaseModel, ConfigDict, ValidationError, create_model

from errors import ToolArgumentError

logger = logging.getLogger(__name__)

# Parameters injected by dispatch, never exposed to the model
_INJECTED_PARAMS = ("context", "self")


# =============================================================================
# Results and context
# =============================================================================


@dataclass
class ToolImage:
    """An image returned by a tool (base64 payload)."""
    mime_type: str
    base64: str

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


@dataclass
class ToolResult:
    """Normalized tool output: text, optional images, optional metadata such as sources."""
    content: str
    images: list[ToolImage] = field(default_factory=list)
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def sources(self) -> list[dict]:
        return self.meta.get("sources", [])


@dataclass
class ToolContext:
    """
    Per-run services and identity handed to tools that declare a `context` parameter.

    The registry itself is shared and read-only; anything scoped to one run
    (which agent, which browser session) travels here.
    """
    run_id: str | None = None
    agent_id: str | None = None
    agent_name: str | None = None
    memory_path: str = ""
    session_id: str = "default"
    vector_store: Any = None
    notes: Any = None
    agent_store: Any = None
    browser: Any = None
    settings: dict[str, Any] = field(default_factory=dict)


def to_tool_result(value: Any) -> ToolResult:
    """Normalize a handler's return value."""
    if isinstance(value, ToolResult):
        return value
    if value is None:
        return ToolResult(content="(no output)")
    if isinstance(value, str):
        return ToolResult(content=value)
    return ToolResult(content=json.dumps(value, default=str))


def parse_arguments(args: str | dict | None) -> dict:
    """Turn model-produced arguments (raw JSON text or a dict) into a dict."""
    if args is None or args == "":
        return {}
    if isinstance(args, dict):
        return args
    try:
        parsed = json.loads(args)
    except json.JSONDecodeError as e:
        raise ToolArgumentError(f"arguments are not valid JSON ({e.msg})") from e
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ToolArgumentError("arguments must be a JSON object")
    return parsed


# =============================================================================
# Schema generation
# =============================================================================


def _python_type_to_json(py_type) -> dict:
    """Convert Python type hints to JSON schema types."""
    type_map = {
        str: {"type": "string"},
        int: {"type": "integer"},
        float: {"type": "number"},
        bool: {"type": "boolean"},
        list: {"type": "array"},
        dict: {"type": "object"},
    }

    if py_type in type_map:
        return dict(type_map[py_type])

    origin = get_origin(py_type)
    if origin is type(None) or py_type is type(None):
        return {"type": "null"}

    # Optional[X] / X | None -> schema of X
    if origin in (Union, types.UnionType):
        members = [a for a in get_args(py_type) if a is not type(None)]
        if len(members) == 1:
            return _python_type_to_json(members[0])
        return {"type": "string"}

    if origin is Literal:
        values = list(get_args(py_type))
        schema = _python_type_to_json(type(values[0])) if values else {"type": "string"}
        schema["enum"] = values
        return schema

    if origin is list:
        schema = {"type": "array"}
        item_args = get_args(py_type)
        if item_args:
            schema["items"] = _python_type_to_json(item_args[0])
        return schema

    if origin is dict:
        return {"type": "object"}

    # Default to string
    return {"type": "string"}


def _parse_docstring(docstring: str) -> tuple[str, dict[str, str]]:
    """
    Parse a docstring to extract description and argument descriptions.

    Returns:
        (main_description, {arg_name: arg_description})
    """
    if not docstring:
        return "", {}

    lines = docstring.strip().split("\n")
    description_lines = []
    arg_descriptions = {}

    in_args = False
    current_arg = None

    for line in lines:
        stripped = line.strip()

        if stripped.lower() in ("args:", "arguments:", "parameters:"):
            in_args = True
            continue

        if stripped.lower() in ("returns:", "raises:", "examples:", "example:"):
            in_args = False
            continue

        if in_args:
            # "arg_name: description" or "arg_name (type): description"
            match = re.match(r"(\w+)(?:\s*\([^)]*\))?\s*:\s*(.+)", stripped)
            if match:
                current_arg = match.group(1)
                arg_descriptions[current_arg] = match.group(2).strip()
            elif current_arg and stripped:
                arg_descriptions[current_arg] += " " + stripped
        elif stripped:
            description_lines.append(stripped)

    return " ".join(description_lines), arg_descriptions


# =============================================================================
# Tool
# =============================================================================


class Tool:
    """A named capability: JSON schema for the model plus an executable handler."""

    def __init__(
        self,
        name: str,
        description: str,
        parameters: dict,
        fn: Callable,
        args_model: type[BaseModel] | None = None,
        accepts_context: bool = False,
    ):
        self.name = name
        self.description = description
        self.parameters = parameters
        self.fn = fn
        self.args_model = args_model
        self.accepts_context = accepts_context

    def definition(self) -> dict:
        """Chat-completions tool definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def validate(self, params: dict) -> dict:
        """Validate and coerce params against the tool's argument model."""
        if self.args_model is None:
            return dict(params)
        try:
            parsed = self.args_model.model_validate(params)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in e.errors()
            )
            raise ToolArgumentError(problems) from e
        return {name: getattr(parsed, name) for name in self.args_model.model_fields}

    async def execute(self, params: dict, context: ToolContext | None = None) -> ToolResult:
        kwargs = self.validate(params)
        if self.accepts_context:
            kwargs["context"] = context or ToolContext()

        if inspect.iscoroutinefunction(self.fn):
            value = await self.fn(**kwargs)
        else:
            value = await asyncio.to_thread(self.fn, **kwargs)
            if inspect.isawaitable(value):
                value = await value
        return to_tool_result(value)

    def __repr__(self):
        return f"Tool({self.name})"


def tool(fn: Callable = None, *, name: str = None, description: str = None):
    """
    Decorator to convert a function into a Tool.

    Can be used as:
        @tool
        def my_func(...): ...

    Or with options:
        @tool(name="custom_name", description="Custom description")
        def my_func(...): ...

    A parameter named `context` receives the run's ToolContext and is left
    out of the schema.
    """
    def decorator(func: Callable):
        tool_name = name or func.__name__

        doc_desc, arg_descs = _parse_docstring(func.__doc__ or "")
        tool_description = description or doc_desc or f"Tool: {tool_name}"

        hints = get_type_hints(func) if hasattr(func, "__annotations__") else {}
        hints.pop("return", None)

        sig = inspect.signature(func)

        properties = {}
        required = []
        model_fields = {}

        for param_name, param in sig.parameters.items():
            if param_name in _INJECTED_PARAMS:
                continue

            param_type = hints.get(param_name, str)
            prop = _python_type_to_json(param_type)

            if param_name in arg_descs:
                prop["description"] = arg_descs[param_name]

            properties[param_name] = prop

            if param.default is inspect.Parameter.empty:
                required.append(param_name)
                model_fields[param_name] = (param_type, ...)
            else:
                model_fields[param_name] = (param_type, param.default)

        schema = {
            "type": "object",
            "properties": properties,
        }
        if required:
            schema["required"] = required

        args_model = create_model(
            f"{tool_name}_args",
            __config__=ConfigDict(extra="ignore"),
            **model_fields,
        )

        t = Tool(
            name=tool_name,
            description=tool_description,
            parameters=schema,
            fn=func,
            args_model=args_model,
            accepts_context="context" in sig.parameters,
        )
        # Return the original function so it can still be called directly
        func._tool = t
        return func

    if fn is not None:
        return decorator(fn)
    return decorator


# =============================================================================
# Registry and dispatch
# =============================================================================


class ToolRegistry:
    """
    Name -> Tool map with generic dispatch.

    Registration is the only mutation; after startup the registry is shared
    read-only by every concurrent run.
    """

    def __init__(self, tools: list = None):
        self._tools: dict[str, Tool] = {}
        for t in tools or []:
            self.register(t)

    def register(self, handler: Tool | Callable) -> Tool:
        """Add a tool (or @tool-decorated function). Re-registering a name overwrites it."""
        t = handler if isinstance(handler, Tool) else getattr(handler, "_tool", None)
        if t is None:
            raise TypeError(f"{handler!r} is not a Tool or @tool function")
        if t.name in self._tools:
            logger.debug("Replacing tool %s", t.name)
        self._tools[t.name] = t
        return t

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def list_definitions(self) -> list[dict]:
        return [t.definition() for t in self._tools.values()]

    def has_any(self) -> bool:
        return bool(self._tools)

    def __len__(self):
        return len(self._tools)

    def __contains__(self, name: str):
        return name in self._tools

    async def dispatch(self, name: str, args: str | dict | None = None,
                       context: ToolContext | None = None) -> ToolResult:
        """Execute a tool by name. Always returns a ToolResult, never raises."""
        t = self._tools.get(name)
        if t is None:
            return ToolResult(content=f'Error: Unknown tool "{name}"')

        try:
            params = parse_arguments(args)
            return await t.execute(params, context)
        except ToolArgumentError as e:
            return ToolResult(content=f'Error: invalid arguments for tool "{name}": {e}')
        except Exception as e:
            logger.warning("Tool %s failed: %s", name, e)
            return ToolResult(content=f'Error executing tool "{name}": {e}')


def load_builtin_tools() -> list[Tool]:
    """Collect the @tool functions defined in the built-in tool modules."""
    from tools import agents, browser, memory, search

    found = []
    for module in (agents, browser, memory, search):
        for obj in vars(module).values():
            t = getattr(obj, "_tool", None)
            if isinstance(t, Tool) and getattr(obj, "__module__", None) == module.__name__:
                found.append(t)
    return found


def default_registry(include: list[str] = None) -> ToolRegistry:
    """Registry holding the built-in tools, optionally limited to `include` names."""
    registry = ToolRegistry()
    for t in load_builtin_tools():
        if include is None or t.name in include:
            registry.register(t)
    return registry
