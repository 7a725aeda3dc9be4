"""Tool definitions and the registry that executes them.

Provides:
- Tool: name, description, JSON schema and a handler taking the decoded
  arguments as one structured value.
- tool(): fluent builder accepting shorthand ``{"param": "type"}`` schemas.
- ToolRegistry: lookup, OpenAI function definitions, and execution with
  schema validation at the registry boundary.

A handler failure is a ToolExecutionError, which the session turns into an
error tool result so the model can react.
"""

from __future__ import annotations

import copy
import inspect
import logging
from collections.abc import Callable, Iterable
from typing import Any

import jsonschema

from open_agent.errors import ToolExecutionError, UnknownToolError

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Any], Any]

_TYPE_ALIASES: dict[str, str] = {
    "string": "string",
    "str": "string",
    "integer": "integer",
    "int": "integer",
    "number": "number",
    "float": "number",
    "boolean": "boolean",
    "bool": "boolean",
    "array": "array",
    "list": "array",
    "object": "object",
    "dict": "object",
}


def type_to_json_schema(type_name: str) -> dict[str, Any]:
    """Map a shorthand type name to a JSON-schema fragment. Unknown -> string."""
    return {"type": _TYPE_ALIASES.get(type_name.lower(), "string")}


def convert_schema(schema: Any) -> dict[str, Any]:
    """Normalize a tool schema into a JSON-schema object.

    Full schemas (with ``type`` and ``properties``) pass through. Shorthand
    dicts map parameter names to either a type name or a property dict; a
    property is required unless it says ``optional: true``,
    ``required: false`` or carries a ``default``.
    """
    if not isinstance(schema, dict):
        return {"type": "object", "properties": {}, "required": []}
    if "type" in schema and "properties" in schema:
        return schema

    properties: dict[str, Any] = {}
    required: list[str] = []
    for name, spec in schema.items():
        if isinstance(spec, str):
            properties[name] = type_to_json_schema(spec)
            required.append(name)
        elif isinstance(spec, dict):
            prop = dict(spec)
            optional = bool(prop.pop("optional", False))
            explicit = prop.pop("required", None)
            properties[name] = prop
            if explicit is True:
                required.append(name)
            elif optional or explicit is False:
                continue
            elif "default" not in prop:
                required.append(name)
    return {"type": "object", "properties": properties, "required": required}


class Tool:
    """A locally executable capability the model may call."""

    def __init__(
        self,
        name: str,
        description: str,
        input_schema: Any,
        handler: ToolHandler,
    ) -> None:
        self.name = name
        self.description = description
        self.input_schema = convert_schema(input_schema)
        self._handler = handler

    async def invoke(self, arguments: Any) -> Any:
        """Call the handler; coroutine handlers are awaited."""
        result = self._handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

    def to_openai_format(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }

    def __repr__(self) -> str:
        return f"Tool(name={self.name!r})"


class ToolBuilder:
    """Fluent construction: ``tool("add", "Add").param("a", "number").build(fn)``."""

    def __init__(self, name: str, description: str) -> None:
        self._name = name
        self._description = description
        self._schema: Any = {}

    def schema(self, schema: Any) -> ToolBuilder:
        self._schema = schema
        return self

    def param(self, name: str, type_name: str) -> ToolBuilder:
        if not isinstance(self._schema, dict):
            self._schema = {}
        self._schema[name] = type_name
        return self

    def build(self, handler: ToolHandler) -> Tool:
        return Tool(self._name, self._description, copy.deepcopy(self._schema), handler)


def tool(name: str, description: str) -> ToolBuilder:
    return ToolBuilder(name, description)


class ToolRegistry:
    """Registers tools and executes calls from the model."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for t in tools:
            self.register(t)

    def register(self, t: Tool) -> None:
        if t.name in self._tools:
            logger.warning("Replacing already registered tool %s", t.name)
        self._tools[t.name] = t

    def lookup(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        """All tool definitions in chat-completions ``tools[]`` format."""
        return [t.to_openai_format() for t in self._tools.values()]

    async def execute(self, name: str, arguments: Any) -> Any:
        """Validate ``arguments`` against the tool schema, then invoke it.

        Raises UnknownToolError for an unregistered name and
        ToolExecutionError for invalid input or a failing handler.
        """
        t = self._tools.get(name)
        if t is None:
            raise UnknownToolError(name)
        try:
            jsonschema.validate(arguments, t.input_schema)
        except jsonschema.ValidationError as e:
            raise ToolExecutionError(name, f"Invalid arguments for {name}: {e.message}") from e
        except jsonschema.SchemaError as e:
            raise ToolExecutionError(name, f"Tool {name} has an invalid schema: {e.message}") from e
        try:
            return await t.invoke(arguments)
        except ToolExecutionError:
            raise
        except Exception as e:
            logger.exception("Tool execution error for %s", name)
            raise ToolExecutionError(name, str(e)) from e
