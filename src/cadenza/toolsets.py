"""Toolsets: named groups of tools with a shared lifecycle.

A toolset exposes tools from two kinds of backends: in-process
:class:`~cadenza.tools.Tool` bodies and MCP servers running as child
processes.  Each MCP server belongs to exactly one toolset.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shlex
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, field_validator

from cadenza.errors import ToolExecutionError
from cadenza.mcp_client import MCPClient
from cadenza.permissions import ToolPermissionType
from cadenza.stdio import ServerParameters, StdioTransport
from cadenza.tools import Tool

logger = logging.getLogger(__name__)

TOOL_CALL_INTERRUPTED_MESSAGE = "Tool call interrupted"

_MAX_LOG_LINES = 500


class ToolsetStatus(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


@dataclass(frozen=True)
class UserTool:
    """A tool as presented to the model and the user."""

    toolset_name: str
    display_name_suffix: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass(frozen=True)
class ServerTool:
    """A tool as advertised by an MCP server."""

    name_on_server: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass(frozen=True)
class ConfigParameter:
    id: str
    display_name: str
    type: Literal["string", "boolean"] = "string"


def get_namespaced_tool_name(tool: UserTool) -> str:
    return f"{tool.toolset_name}_{tool.display_name_suffix}"


def parse_namespaced_tool_name(namespaced_name: str) -> tuple[str, str]:
    """Split ``"<toolset>_<tool>"`` at the first underscore."""
    toolset_name, sep, tool_name = namespaced_name.partition("_")
    if not sep or not toolset_name or not tool_name:
        raise ValueError(f"Invalid tool name: {namespaced_name!r}")
    return toolset_name, tool_name


def get_env_from_json(env_json: str | None) -> dict[str, str]:
    """Parse a JSON object of environment variables.

    Raises:
        ValueError: If the text is not a JSON object.
    """
    if not env_json or not env_json.strip():
        return {}
    try:
        env = json.loads(env_json)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid environment JSON: {e}") from e
    if not isinstance(env, dict):
        raise ValueError("Environment must be a JSON object")
    return {str(k): str(v) for k, v in env.items()}


def stringify_output(output: Any) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output, default=str)


# ---------------------------------------------------------------------------
# MCP servers
# ---------------------------------------------------------------------------

class MCPServer(ABC):
    """Owns one MCP server process and its client connection.

    Calls into the process are serialized so JSON-RPC frames from
    unrelated generations never interleave.
    """

    def __init__(self, sidecar_dir: str | None = None, request_timeout: float = 60.0) -> None:
        self.sidecar_dir = sidecar_dir
        self.request_timeout = request_timeout
        self.status = ToolsetStatus.STOPPED
        self.on_stopped: Callable[[], None] | None = None
        self._client: MCPClient | None = None
        self._active_config: dict[str, str] | None = None
        self._logs: deque[str] = deque(maxlen=_MAX_LOG_LINES)
        self._lifecycle_lock = asyncio.Lock()
        self._call_lock = asyncio.Lock()

    @abstractmethod
    def execution_parameters(self, config: dict[str, str]) -> ServerParameters:
        """How to launch the server for the given toolset config."""

    @property
    def logs(self) -> str:
        return "\n".join(self._logs)

    async def ensure_start(self, config: dict[str, str]) -> bool:
        """Start the server, restarting it if ``config`` changed."""
        async with self._lifecycle_lock:
            if self.status == ToolsetStatus.RUNNING:
                if config == self._active_config:
                    return True
                logger.info(f"{type(self).__name__}: configuration changed, restarting")
                await self._stop()

            self.status = ToolsetStatus.STARTING
            try:
                params = self.execution_parameters(config)
                client = await self._open_client(params)
            except Exception as e:
                logger.exception(f"{type(self).__name__} failed to start")
                self._logs.append(f"Failed to start: {e}")
                self.status = ToolsetStatus.STOPPED
                return False

            self._client = client
            self._active_config = dict(config)
            self.status = ToolsetStatus.RUNNING
            return True

    async def _open_client(self, params: ServerParameters) -> MCPClient:
        transport = StdioTransport(params, sidecar_dir=self.sidecar_dir)
        client = MCPClient(request_timeout=self.request_timeout)
        client.on_error = self._handle_error
        client.on_close = self._handle_close
        await client.connect(transport)
        return client

    async def ensure_stop(self) -> None:
        async with self._lifecycle_lock:
            await self._stop()

    async def _stop(self) -> None:
        client, self._client = self._client, None
        self.status = ToolsetStatus.STOPPED
        self._active_config = None
        if client is not None:
            await client.close()

    def _handle_error(self, error: Exception) -> None:
        logger.debug(f"{type(self).__name__}: {error}")
        self._logs.append(str(error))

    def _handle_close(self) -> None:
        if self.status != ToolsetStatus.RUNNING:
            return
        logger.warning(f"{type(self).__name__} exited unexpectedly")
        self._logs.append("Server process exited")
        self._client = None
        self._active_config = None
        self.status = ToolsetStatus.STOPPED
        if self.on_stopped is not None:
            self.on_stopped()

    async def list_tools(self) -> list[ServerTool]:
        client = self._client
        if client is None:
            return []
        try:
            tools = await client.list_tools()
        except Exception as e:
            logger.exception(f"{type(self).__name__}: listing tools failed")
            self._logs.append(f"Error listing tools: {e}")
            return []
        return [
            ServerTool(
                name_on_server=t.name,
                description=t.description or "",
                input_schema=t.inputSchema,
            )
            for t in tools
        ]

    async def execute_tool_call(self, name_on_server: str, args: dict[str, Any]) -> str:
        client = self._client
        if self.status != ToolsetStatus.RUNNING or client is None:
            raise ToolExecutionError("MCP server is not running")
        async with self._call_lock:
            result = await client.call_tool(name_on_server, args)
        if result.isError:
            logger.info(f"{name_on_server} reported an error")
        texts = [block.text for block in result.content if block.type == "text"]
        if texts:
            return "\n".join(texts)
        return json.dumps([block.model_dump(mode="json", exclude_none=True) for block in result.content])


class MCPServerCustom(MCPServer):
    """A user-configured command."""

    def __init__(self, command: str, args: str = "", env: str = "", **kwargs) -> None:
        super().__init__(**kwargs)
        self.command = command
        self.args = args
        self.env = env

    def execution_parameters(self, config: dict[str, str]) -> ServerParameters:
        try:
            env = get_env_from_json(self.env)
        except ValueError as e:
            logger.warning(f"Ignoring environment for {self.command}: {e}")
            self._logs.append(str(e))
            env = {}
        return ServerParameters(
            type="custom",
            command=self.command,
            args=shlex.split(self.args) if self.args else [],
            env=env,
        )


# ---------------------------------------------------------------------------
# Toolsets
# ---------------------------------------------------------------------------

@dataclass
class ToolRegistration:
    """Which of a server's tools a toolset exposes."""

    mode: Literal["all", "none", "filter", "select"] = "all"
    include: tuple[str, ...] = ()
    predicate: Callable[[ServerTool], bool] | None = None

    @classmethod
    def all(cls) -> ToolRegistration:
        return cls("all")

    @classmethod
    def none(cls) -> ToolRegistration:
        return cls("none")

    @classmethod
    def select(cls, *names: str) -> ToolRegistration:
        return cls("select", include=names)

    @classmethod
    def filter(cls, predicate: Callable[[ServerTool], bool]) -> ToolRegistration:
        return cls("filter", predicate=predicate)

    def apply(self, tools: list[ServerTool]) -> list[ServerTool]:
        if self.mode == "none":
            return []
        if self.mode == "select":
            return [t for t in tools if t.name_on_server in self.include]
        if self.mode == "filter" and self.predicate is not None:
            return [t for t in tools if self.predicate(t)]
        return list(tools)


@dataclass
class _ServerEntry:
    server: MCPServer
    registration: ToolRegistration
    rename_map: dict[str, str]
    description_map: dict[str, str]


@dataclass
class _RegisteredTool:
    tool: UserTool
    server: MCPServer | None = None
    name_on_server: str | None = None
    body: Tool | None = None

    async def execute(self, args: dict[str, Any]) -> str:
        if self.body is not None:
            result = await self.body(**args)
            return stringify_output(result.output)
        return await self.server.execute_tool_call(self.name_on_server, args)


class Toolset:
    """A named group of tools.

    Args:
        name: Namespace prefix for tool names. Alphanumeric only.
        display_name: Shown to the user.
        config: Parameters the user must fill in before the toolset can
            start.
        is_built_in: Built-in toolsets live for the whole process;
            custom ones come and go with configuration.
        default_permission: Used when no preference is saved for a tool.
    """

    def __init__(
        self,
        name: str,
        display_name: str,
        config: list[ConfigParameter] | None = None,
        description: str | None = None,
        link: str | None = None,
        is_built_in: bool = True,
        default_permission: ToolPermissionType = ToolPermissionType.ASK,
    ) -> None:
        if not name.isalnum():
            raise ValueError(f"Toolset name must be alphanumeric: {name!r}")
        self.name = name
        self.display_name = display_name
        self.config = config or []
        self.description = description
        self.link = link
        self.is_built_in = is_built_in
        self.default_permission = default_permission
        self._servers: list[_ServerEntry] = []
        self._registry: dict[str, _RegisteredTool] = {}
        self._status = ToolsetStatus.STOPPED
        self._active_config: dict[str, str] | None = None
        self._lock = asyncio.Lock()

    @property
    def status(self) -> ToolsetStatus:
        return self._status

    @property
    def logs(self) -> str:
        return "\n".join(entry.server.logs for entry in self._servers)

    def add_server(
        self,
        server: MCPServer,
        registration: ToolRegistration | None = None,
        rename_map: dict[str, str] | None = None,
        description_map: dict[str, str] | None = None,
    ) -> None:
        server.on_stopped = self._handle_server_stopped
        self._servers.append(_ServerEntry(
            server=server,
            registration=registration or ToolRegistration.all(),
            rename_map=rename_map or {},
            description_map=description_map or {},
        ))

    def add_tool(self, body: Tool, display_name_suffix: str | None = None) -> None:
        """Register an in-process tool body."""
        suffix = display_name_suffix or body.name
        self._registry[suffix] = _RegisteredTool(
            tool=UserTool(
                toolset_name=self.name,
                display_name_suffix=suffix,
                description=body.description,
                input_schema=body.parameters_schema,
            ),
            body=body,
        )

    def register_server_tool(self, display_name_suffix: str, server: MCPServer, server_tool: ServerTool) -> None:
        self._registry[display_name_suffix] = _RegisteredTool(
            tool=UserTool(
                toolset_name=self.name,
                display_name_suffix=display_name_suffix,
                description=server_tool.description,
                input_schema=server_tool.input_schema,
            ),
            server=server,
            name_on_server=server_tool.name_on_server,
        )

    def import_server_tools(self, entry: _ServerEntry, server_tools: list[ServerTool]) -> None:
        for server_tool in entry.registration.apply(server_tools):
            name = server_tool.name_on_server
            suffix = entry.rename_map.get(name, name)
            if not re.fullmatch(r"[A-Za-z0-9_-]+", suffix):
                logger.warning(f"Skipping tool {name!r} from {self.name}: unusable name")
                continue
            description = entry.description_map.get(name, server_tool.description)
            self.register_server_tool(
                suffix,
                entry.server,
                ServerTool(name_on_server=name, description=description, input_schema=server_tool.input_schema),
            )

    async def ensure_start(self, config: dict[str, str] | None = None) -> bool:
        """Start every server, then import their tools."""
        config = dict(config or {})
        async with self._lock:
            if self._status == ToolsetStatus.RUNNING and config == self._active_config:
                return True

            self._status = ToolsetStatus.STARTING
            started = await asyncio.gather(*(entry.server.ensure_start(config) for entry in self._servers))
            if not all(started):
                logger.error(f"Failed to start all servers for toolset {self.name}")
                await asyncio.gather(*(entry.server.ensure_stop() for entry in self._servers))
                self._status = ToolsetStatus.STOPPED
                return False

            self._registry = {k: v for k, v in self._registry.items() if v.server is None}
            for entry in self._servers:
                if entry.registration.mode == "none":
                    continue
                self.import_server_tools(entry, await entry.server.list_tools())

            self._active_config = config
            self._status = ToolsetStatus.RUNNING
            logger.info(f"Toolset {self.name} running with {len(self._registry)} tools")
            return True

    async def ensure_stop(self) -> None:
        async with self._lock:
            await asyncio.gather(*(entry.server.ensure_stop() for entry in self._servers))
            self._status = ToolsetStatus.STOPPED
            self._active_config = None

    def _handle_server_stopped(self) -> None:
        if self._status == ToolsetStatus.RUNNING:
            logger.warning(f"Toolset {self.name} stopped: a server exited")
            self._status = ToolsetStatus.STOPPED
            self._active_config = None

    def list_tools(self) -> list[UserTool]:
        if self._status != ToolsetStatus.RUNNING:
            return []
        return [entry.tool for entry in self._registry.values()]

    def get_tool(self, display_name_suffix: str) -> UserTool | None:
        entry = self._registry.get(display_name_suffix)
        return entry.tool if entry else None

    async def execute_tool(self, display_name_suffix: str, args: dict[str, Any]) -> str:
        entry = self._registry.get(display_name_suffix)
        if entry is None:
            raise ToolExecutionError(f"Tool {display_name_suffix} not found in toolset {self.name}")
        return await entry.execute(args)

    def are_required_params_filled(self, configs: dict[str, dict[str, str]] | None) -> bool:
        values = (configs or {}).get(self.name, {})
        return all(values.get(param.id) not in (None, "") for param in self.config)


# ---------------------------------------------------------------------------
# Custom toolsets
# ---------------------------------------------------------------------------

class CustomToolsetConfig(BaseModel):
    """A user-defined MCP server.

    ``args`` is a shell-style string and ``env`` a JSON object string,
    both as typed in settings.
    """

    name: str
    command: str
    args: str = ""
    env: str = ""
    default_permission: ToolPermissionType = ToolPermissionType.ASK

    @field_validator("name")
    @classmethod
    def name_is_alphanumeric(cls, name: str) -> str:
        if not name.isalnum():
            raise ValueError("Toolset name must contain only letters and digits")
        return name


class CustomToolset(Toolset):
    def __init__(self, config: CustomToolsetConfig, sidecar_dir: str | None = None, request_timeout: float = 60.0) -> None:
        super().__init__(
            name=config.name,
            display_name=config.name,
            description=f"Custom MCP server: {config.command}",
            is_built_in=False,
            default_permission=config.default_permission,
        )
        self.custom_config = config
        self.add_server(MCPServerCustom(
            command=config.command,
            args=config.args,
            env=config.env,
            sidecar_dir=sidecar_dir,
            request_timeout=request_timeout,
        ))
