import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

from cadenza.errors import Cancelled, ToolsetNotFoundError
from cadenza.instrumentation import record_error, tool_span
from cadenza.message import ToolCall, ToolResult
from cadenza.permissions import (
    PermissionBroker,
    ToolPermissionRequest,
    ToolPermissionType,
    check_tool_permission,
)
from cadenza.toolsets import (
    TOOL_CALL_INTERRUPTED_MESSAGE,
    CustomToolset,
    CustomToolsetConfig,
    Toolset,
    UserTool,
    parse_namespaced_tool_name,
)

logger = logging.getLogger(__name__)

DENIED_BY_USER = "<system_message>Tool execution denied by user</system_message>"
DENIED_BY_PREFERENCE = "<system_message>Tool execution denied by saved preference</system_message>"


def execution_error_message(error: Exception) -> str:
    return f"<system_message>Error executing tool call: {error}</system_message>"


class ToolsetsManager:
    """Registry of built-in and custom toolsets.

    Resolves namespaced tool names, applies the permission policy and
    executes calls. ``execute_tool_call`` always returns a ``ToolResult``;
    failures become markers in its content.

    Args:
        builtin_toolsets: Toolsets that live for the whole process.
        broker: Permission prompts and saved preferences.
        yolo_mode: Returns True to skip permission checks. Evaluated on
            every call so the flag can change at runtime.
        sidecar_dir: Passed to custom toolsets' MCP servers.
        request_timeout: Seconds to wait for an MCP response.
    """

    def __init__(
        self,
        builtin_toolsets: list[Toolset] | None = None,
        broker: PermissionBroker | None = None,
        yolo_mode: Callable[[], bool | Awaitable[bool]] | None = None,
        sidecar_dir: str | None = None,
        request_timeout: float = 60.0,
    ):
        self.builtin_toolsets = {t.name: t for t in builtin_toolsets or []}
        self.custom_toolsets: dict[str, CustomToolset] = {}
        self.broker = broker if broker is not None else PermissionBroker()
        self._yolo_mode = yolo_mode or (lambda: False)
        self.sidecar_dir = sidecar_dir
        self.request_timeout = request_timeout
        self._refresh_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def list_toolsets(self) -> list[Toolset]:
        return [*self.builtin_toolsets.values(), *self.custom_toolsets.values()]

    def list_tools(self) -> list[UserTool]:
        """Tools of every running toolset."""
        return [t for toolset in self.list_toolsets() for t in toolset.list_tools()]

    def get_toolset(self, name: str) -> Toolset | None:
        return self.builtin_toolsets.get(name) or self.custom_toolsets.get(name)

    def resolve(self, namespaced_tool_name: str) -> tuple[Toolset, str]:
        """
        Raises:
            ToolsetNotFoundError: If the name is malformed or names no
                known toolset.
        """
        try:
            toolset_name, tool_name = parse_namespaced_tool_name(namespaced_tool_name)
        except ValueError as e:
            raise ToolsetNotFoundError(str(e)) from e
        toolset = self.get_toolset(toolset_name)
        if toolset is None:
            raise ToolsetNotFoundError(f"Toolset {toolset_name} not found")
        return toolset, tool_name

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _is_yolo(self) -> bool:
        value = self._yolo_mode()
        if inspect.isawaitable(value):
            value = await value
        return bool(value)

    async def execute_tool_call(
        self,
        call: ToolCall,
        model_name: str | None = None,
        abort: asyncio.Event | None = None,
    ) -> ToolResult:
        async with tool_span(call.namespaced_tool_name, call.id) as span:
            try:
                content = await self._execute(call, model_name, abort)
            except Cancelled:
                logger.info(f"Tool call {call.id} interrupted")
                content = TOOL_CALL_INTERRUPTED_MESSAGE
            except Exception as e:
                logger.exception(f"Error executing tool call {call.namespaced_tool_name}")
                record_error(span, e)
                content = execution_error_message(e)
        return ToolResult(id=call.id, content=content)

    async def _execute(self, call: ToolCall, model_name: str | None, abort: asyncio.Event | None) -> str:
        toolset, tool_name = self.resolve(call.namespaced_tool_name)

        if not await self._is_yolo():
            check = await check_tool_permission(
                self.broker.store, toolset.name, tool_name, default=toolset.default_permission
            )
            if check.permission_type == ToolPermissionType.ALWAYS_DENY:
                logger.info(f"{call.namespaced_tool_name} denied by saved preference")
                return DENIED_BY_PREFERENCE
            if check.should_ask:
                tool = toolset.get_tool(tool_name)
                allowed = await self.broker.request(
                    ToolPermissionRequest(
                        toolset_name=toolset.name,
                        tool_name=tool_name,
                        tool_description=tool.description if tool else None,
                        args=call.args,
                        model_name=model_name or "Unknown Model",
                    ),
                    abort=abort,
                )
                if not allowed:
                    logger.info(f"{call.namespaced_tool_name} denied by user")
                    return DENIED_BY_USER

        if abort is not None and abort.is_set():
            raise Cancelled("Generation aborted before tool execution")
        logger.info(f"Calling {call.namespaced_tool_name} with {call.args}")
        return await toolset.execute_tool(tool_name, call.args)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def refresh_toolsets(
        self,
        toolsets_config: dict[str, dict[str, str]],
        custom_configs: list[CustomToolsetConfig],
    ) -> None:
        """Reconcile running toolsets with configuration.

        ``toolsets_config`` maps toolset name to its settings; a toolset
        runs when its ``enabled`` value is ``"true"``. Safe to call after
        every settings change.
        """
        async with self._refresh_lock:
            for toolset in self.builtin_toolsets.values():
                await self._apply(toolset, toolsets_config.get(toolset.name, {}))

            wanted = {c.name: c for c in custom_configs}
            for name in list(self.custom_toolsets):
                current = self.custom_toolsets[name]
                if name not in wanted or current.custom_config != wanted[name]:
                    logger.info(f"Removing custom toolset {name}")
                    await current.ensure_stop()
                    del self.custom_toolsets[name]

            for name, config in wanted.items():
                if name in self.builtin_toolsets:
                    logger.warning(f"Custom toolset {name} shadows a built-in toolset; ignoring")
                    continue
                toolset = self.custom_toolsets.get(name)
                if toolset is None:
                    toolset = CustomToolset(config, sidecar_dir=self.sidecar_dir, request_timeout=self.request_timeout)
                    self.custom_toolsets[name] = toolset
                await self._apply(toolset, toolsets_config.get(name, {}))

    async def _apply(self, toolset: Toolset, config: dict[str, str]) -> None:
        if config.get("enabled") == "true":
            if not toolset.are_required_params_filled({toolset.name: config}):
                logger.info(f"Toolset {toolset.name} is enabled but missing required settings")
                await toolset.ensure_stop()
                return
            if not await toolset.ensure_start(config):
                logger.error(f"Toolset {toolset.name} failed to start")
        else:
            await toolset.ensure_stop()

    async def shutdown(self) -> None:
        self.broker.cancel_all()
        await asyncio.gather(
            *(t.ensure_stop() for t in self.list_toolsets()), return_exceptions=True
        )
