"""In-process tool bodies.

Decorate a function with ``@tool`` to get a :class:`Tool` whose JSON
schema is derived from the signature and docstring.  Toolsets register
these next to tools imported from MCP servers.
"""

import functools
import inspect
import re
from typing import Any, Callable, get_origin

from pydantic import BaseModel, Field

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
}

_SECTION_HEADERS = ("args:", "arguments:", "parameters:", "params:")


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any


def _json_type(annotation: Any) -> str:
    if annotation is inspect.Parameter.empty:
        return "string"
    origin = get_origin(annotation) or annotation
    return _JSON_TYPES.get(origin, "string")


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Extract per-parameter descriptions from a docstring.

    Understands Google (``Args:``), reST (``:param x:``) and numpy
    (``Parameters`` + dashes) layouts.
    """
    doc = inspect.getdoc(func)
    if not doc:
        return {}
    lines = doc.splitlines()

    rest = {}
    for line in lines:
        match = re.match(r"\s*:param\s+(?:\w+\s+)?(\w+):\s*(.*)", line)
        if match:
            rest[match.group(1)] = match.group(2).strip()
    if rest:
        return rest

    for i, line in enumerate(lines):
        stripped = line.strip()
        if stripped.lower() in _SECTION_HEADERS:
            return _parse_indented_section(lines[i + 1:], google=True)
        if stripped == "Parameters" and i + 1 < len(lines) and set(lines[i + 1].strip()) == {"-"}:
            return _parse_indented_section(lines[i + 2:], google=False)
    return {}


def _parse_indented_section(lines: list[str], google: bool) -> dict[str, str]:
    descriptions: dict[str, list[str]] = {}
    current = None
    base_indent = None
    for line in lines:
        if not line.strip():
            if google and current is None:
                continue
            break
        indent = len(line) - len(line.lstrip())
        if base_indent is None:
            base_indent = indent
        if indent < base_indent:
            break
        if indent == base_indent:
            if google:
                match = re.match(r"\s*(\w+)\s*(?:\([^)]*\))?\s*:\s*(.*)", line)
            else:
                match = re.match(r"\s*(\w+)\s*(?::.*)?$", line)
            if not match:
                break
            current = match.group(1)
            first = match.group(2).strip() if google else ""
            descriptions[current] = [first] if first else []
        elif current is not None:
            descriptions[current].append(line.strip())
    return {name: "\n".join(parts) for name, parts in descriptions.items()}


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    signature = inspect.signature(func)
    descriptions = _parse_param_descriptions(func)
    properties = {}
    required = []
    for name, param in signature.parameters.items():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        properties[name] = {
            "type": _json_type(param.annotation),
            "description": descriptions.get(name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(name)
    schema = {"type": "object", "properties": properties, "required": required}
    return schema, required


class Tool(BaseModel):
    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters_schema: dict
    model_config = {"arbitrary_types_allowed": True}

    def model_dump(self, **kwargs):
        """Return the chat-completions function schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    def bind(self, **bound: Any) -> "Tool":
        """Pre-fill arguments and hide them from the schema."""
        properties = {
            k: v for k, v in self.parameters_schema["properties"].items() if k not in bound
        }
        required = [r for r in self.parameters_schema["required"] if r not in bound]
        return Tool(
            func=functools.partial(self.func, **bound),
            name=self.name,
            description=self.description,
            parameters_schema={**self.parameters_schema, "properties": properties, "required": required},
        )

    async def __call__(self, **kwargs) -> ToolCallResult:
        output = self.func(**kwargs)
        if inspect.isawaitable(output):
            output = await output
        return ToolCallResult(tool_name=self.name, output=output)


def tool(func: Callable | None = None, *, name: str | None = None, description: str | None = None):
    """Turn a function into a :class:`Tool`.

    Usable bare (``@tool``) or with overrides
    (``@tool(name="x", description="...")``).
    """

    def wrap(f: Callable) -> Tool:
        schema, _ = _build_parameters_schema(f)
        doc = inspect.getdoc(f) or ""
        summary = doc.split("\n\n")[0].strip()
        return Tool(
            func=f,
            name=name or f.__name__,
            description=description if description is not None else summary,
            parameters_schema=schema,
        )

    if func is not None:
        return wrap(func)
    return wrap
