"""
MCP client over a message transport.

Correlates JSON-RPC responses with requests by id and performs the MCP
initialize handshake. Results are validated with ``mcp.types`` models.
"""

import asyncio
import itertools
import logging
from collections.abc import Callable
from typing import Any

from mcp.types import (
    LATEST_PROTOCOL_VERSION,
    CallToolResult,
    Implementation,
    InitializeResult,
    ListToolsResult,
    Tool as MCPTool,
)

from cadenza.errors import TransportError
from cadenza.stdio import StdioTransport

logger = logging.getLogger(__name__)

METHOD_NOT_FOUND = -32601


class MCPClient:
    """JSON-RPC client for one MCP server connection."""

    def __init__(
        self,
        name: str = "cadenza",
        version: str = "0.1.0",
        request_timeout: float = 60.0,
    ) -> None:
        self.client_info = Implementation(name=name, version=version)
        self.request_timeout = request_timeout
        self.on_error: Callable[[Exception], None] | None = None
        self.on_close: Callable[[], None] | None = None
        self.server_info: Implementation | None = None
        self._transport: StdioTransport | None = None
        self._pending: dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._background: set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self._transport is not None

    async def connect(self, transport: StdioTransport) -> None:
        """Start ``transport`` and run the initialize handshake."""
        transport.on_message = self._handle_message
        transport.on_error = self._handle_error
        transport.on_close = self._handle_close
        self._transport = transport
        await transport.start()
        try:
            result = await self.request("initialize", {
                "protocolVersion": LATEST_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": self.client_info.model_dump(exclude_none=True),
            })
            initialized = InitializeResult.model_validate(result)
            await self.notify("notifications/initialized")
        except Exception:
            await self.close()
            raise
        self.server_info = initialized.serverInfo
        logger.info(
            f"MCP server initialized: {initialized.serverInfo.name} "
            f"(protocol {initialized.protocolVersion})"
        )

    async def request(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if self._transport is None:
            raise TransportError("MCP client is not connected")
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        try:
            await self._transport.send(message)
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except TimeoutError as e:
            raise TransportError(f"Timed out waiting for {method} response") from e
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        if self._transport is None:
            raise TransportError("MCP client is not connected")
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._transport.send(message)

    async def list_tools(self) -> list[MCPTool]:
        tools: list[MCPTool] = []
        cursor = None
        while True:
            result = ListToolsResult.model_validate(
                await self.request("tools/list", {"cursor": cursor} if cursor else None)
            )
            tools.extend(result.tools)
            cursor = result.nextCursor
            if not cursor:
                return tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> CallToolResult:
        result = await self.request("tools/call", {"name": name, "arguments": arguments})
        return CallToolResult.model_validate(result)

    async def close(self) -> None:
        transport, self._transport = self._transport, None
        self._fail_pending(TransportError("MCP connection closed"))
        if transport is not None:
            await transport.close()

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------

    def _handle_message(self, message: dict[str, Any]) -> None:
        if "method" in message:
            if "id" in message:
                self._answer_server_request(message)
            else:
                logger.debug(f"Server notification: {message['method']}")
            return

        future = self._pending.get(message.get("id"))
        if future is None or future.done():
            logger.warning(f"Response for unknown request id {message.get('id')!r}")
            return
        if "error" in message:
            error = message["error"] or {}
            future.set_exception(TransportError(
                f"MCP error {error.get('code')}: {error.get('message', 'unknown error')}"
            ))
        else:
            future.set_result(message.get("result") or {})

    def _answer_server_request(self, message: dict[str, Any]) -> None:
        if message["method"] == "ping":
            reply = {"jsonrpc": "2.0", "id": message["id"], "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {message['method']}"},
            }
        if self._transport is None:
            return
        task = asyncio.ensure_future(self._transport.send(reply))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _handle_error(self, error: Exception) -> None:
        if self.on_error is not None:
            self.on_error(error)

    def _handle_close(self) -> None:
        self._transport = None
        self._fail_pending(TransportError("MCP server process exited"))
        if self.on_close is not None:
            self.on_close()

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()
