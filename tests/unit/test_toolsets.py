"""Unit tests for toolsets and MCP server lifecycle."""

import asyncio

import pytest
from mcp.types import CallToolResult, ImageContent, TextContent
from mcp.types import Tool as MCPTool

from cadenza.errors import ToolExecutionError
from cadenza.permissions import ToolPermissionType
from cadenza.stdio import ServerParameters
from cadenza.tools import tool
from cadenza.toolsets import (
    ConfigParameter,
    CustomToolset,
    CustomToolsetConfig,
    MCPServer,
    MCPServerCustom,
    ServerTool,
    Toolset,
    ToolsetStatus,
    ToolRegistration,
    UserTool,
    get_env_from_json,
    get_namespaced_tool_name,
    parse_namespaced_tool_name,
)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeMCPClient:
    def __init__(self, tools, results=None):
        self.tools = tools
        self.results = results or {}
        self.calls: list[tuple[str, dict]] = []
        self.closed = False

    async def list_tools(self):
        return self.tools

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        return self.results.get(name) or CallToolResult(content=[TextContent(type="text", text=f"{name} ok")])

    async def close(self):
        self.closed = True


class BlockingMCPClient(FakeMCPClient):
    """Holds every call open until ``release`` is set."""

    def __init__(self, tools, results=None):
        super().__init__(tools, results)
        self.log: list[tuple[str, str]] = []
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def call_tool(self, name, arguments):
        self.log.append(("enter", name))
        self.entered.set()
        await self.release.wait()
        self.log.append(("exit", name))
        return await super().call_tool(name, arguments)


class FakeServer(MCPServer):
    """MCP server whose client is an in-memory fake."""

    def __init__(self, tools=None, results=None, fail=False, client_cls=FakeMCPClient):
        super().__init__()
        self.client_cls = client_cls
        self.tools = tools or []
        self.results = results
        self.fail = fail
        self.started_with: list[dict] = []
        self.clients: list[FakeMCPClient] = []

    def execution_parameters(self, config):
        self.started_with.append(dict(config))
        return ServerParameters(command="fake")

    async def _open_client(self, params):
        if self.fail:
            raise OSError("cannot spawn")
        client = self.client_cls(self.tools, self.results)
        self.clients.append(client)
        return client


def mcp_tool(name, description=""):
    return MCPTool(name=name, description=description, inputSchema={"type": "object", "properties": {}})


# ---------------------------------------------------------------------------
# Names and helpers
# ---------------------------------------------------------------------------

class TestNames:
    def test_namespaced_round_trip(self):
        user_tool = UserTool(toolset_name="terminal", display_name_suffix="read_file")
        name = get_namespaced_tool_name(user_tool)

        assert name == "terminal_read_file"
        assert parse_namespaced_tool_name(name) == ("terminal", "read_file")

    @pytest.mark.parametrize("name", ["terminal", "_read", "terminal_"])
    def test_invalid_names(self, name):
        with pytest.raises(ValueError):
            parse_namespaced_tool_name(name)

    def test_env_from_json(self):
        assert get_env_from_json('{"TOKEN": "abc", "N": 1}') == {"TOKEN": "abc", "N": "1"}
        assert get_env_from_json("") == {}
        with pytest.raises(ValueError):
            get_env_from_json("[1]")
        with pytest.raises(ValueError):
            get_env_from_json("{nope")


class TestToolRegistration:
    tools = [ServerTool(name_on_server="a"), ServerTool(name_on_server="b"), ServerTool(name_on_server="c")]

    def test_modes(self):
        assert len(ToolRegistration.all().apply(self.tools)) == 3
        assert ToolRegistration.none().apply(self.tools) == []
        assert [t.name_on_server for t in ToolRegistration.select("a", "c").apply(self.tools)] == ["a", "c"]
        only_b = ToolRegistration.filter(lambda t: t.name_on_server == "b")
        assert [t.name_on_server for t in only_b.apply(self.tools)] == ["b"]


# ---------------------------------------------------------------------------
# MCP servers
# ---------------------------------------------------------------------------

class TestMCPServer:
    @pytest.mark.asyncio
    async def test_restart_on_config_change(self):
        server = FakeServer()
        assert await server.ensure_start({"token": "a"})
        assert await server.ensure_start({"token": "a"})
        assert await server.ensure_start({"token": "b"})

        assert server.started_with == [{"token": "a"}, {"token": "b"}]
        assert server.clients[0].closed

    @pytest.mark.asyncio
    async def test_failed_start_returns_false_and_logs(self):
        server = FakeServer(fail=True)

        assert await server.ensure_start({}) is False
        assert server.status == ToolsetStatus.STOPPED
        assert "cannot spawn" in server.logs

    @pytest.mark.asyncio
    async def test_execute_requires_running(self):
        with pytest.raises(ToolExecutionError, match="not running"):
            await FakeServer().execute_tool_call("x", {})

    @pytest.mark.asyncio
    async def test_non_text_content_is_json(self):
        image = CallToolResult(content=[ImageContent(type="image", data="AAAA", mimeType="image/png")])
        server = FakeServer(results={"shot": image})
        await server.ensure_start({})

        output = await server.execute_tool_call("shot", {})

        assert '"mimeType": "image/png"' in output

    @pytest.mark.asyncio
    async def test_calls_to_one_server_are_serialized(self):
        server = FakeServer(client_cls=BlockingMCPClient)
        await server.ensure_start({})
        client = server.clients[0]

        first = asyncio.create_task(server.execute_tool_call("first", {}))
        second = asyncio.create_task(server.execute_tool_call("second", {}))
        await client.entered.wait()
        for _ in range(5):
            await asyncio.sleep(0)

        assert client.log == [("enter", "first")]

        client.release.set()
        outputs = await asyncio.gather(first, second)

        assert outputs == ["first ok", "second ok"]
        assert client.log == [("enter", "first"), ("exit", "first"), ("enter", "second"), ("exit", "second")]

    @pytest.mark.asyncio
    async def test_unexpected_exit_notifies(self):
        server = FakeServer()
        stopped = []
        server.on_stopped = lambda: stopped.append(True)
        await server.ensure_start({})

        server._handle_close()

        assert server.status == ToolsetStatus.STOPPED
        assert stopped == [True]

    def test_custom_server_parameters(self):
        server = MCPServerCustom(command="npx", args="-y '@scope/server' --flag", env='{"KEY": "v"}')
        params = server.execution_parameters({})

        assert params.args == ["-y", "@scope/server", "--flag"]
        assert params.env == {"KEY": "v"}

    def test_custom_server_bad_env_ignored(self):
        server = MCPServerCustom(command="npx", env="not json")
        assert server.execution_parameters({}).env == {}


# ---------------------------------------------------------------------------
# Toolsets
# ---------------------------------------------------------------------------

class TestToolset:
    @pytest.mark.asyncio
    async def test_imports_server_tools_with_renames(self):
        server = FakeServer(tools=[mcp_tool("read_file", "Read"), mcp_tool("kill_process"), mcp_tool("bad name!")])
        toolset = Toolset("terminal", "Terminal")
        toolset.add_server(
            server,
            registration=ToolRegistration.select("read_file", "bad name!"),
            rename_map={"read_file": "read"},
            description_map={"read_file": "Read a file from disk"},
        )

        assert await toolset.ensure_start({})

        tools = toolset.list_tools()
        assert [get_namespaced_tool_name(t) for t in tools] == ["terminal_read"]
        assert tools[0].description == "Read a file from disk"
        assert await toolset.execute_tool("read", {"path": "/a"}) == "read_file ok"
        assert server.clients[0].calls == [("read_file", {"path": "/a"})]

    @pytest.mark.asyncio
    async def test_in_process_tool(self):
        @tool
        def add(a: int, b: int):
            """Add numbers."""
            return {"sum": a + b}

        toolset = Toolset("math", "Math")
        toolset.add_tool(add)
        await toolset.ensure_start()

        assert toolset.get_tool("add").description == "Add numbers."
        assert await toolset.execute_tool("add", {"a": 1, "b": 2}) == '{"sum": 3}'

    @pytest.mark.asyncio
    async def test_tools_hidden_until_running(self):
        toolset = Toolset("terminal", "Terminal")
        toolset.add_server(FakeServer(tools=[mcp_tool("read_file")]))

        assert toolset.list_tools() == []
        await toolset.ensure_start({})
        assert len(toolset.list_tools()) == 1
        await toolset.ensure_stop()
        assert toolset.list_tools() == []

    @pytest.mark.asyncio
    async def test_one_failing_server_stops_all(self):
        good, bad = FakeServer(tools=[mcp_tool("x")]), FakeServer(fail=True)
        toolset = Toolset("combo", "Combo")
        toolset.add_server(good)
        toolset.add_server(bad)

        assert await toolset.ensure_start({}) is False
        assert toolset.status == ToolsetStatus.STOPPED
        assert good.status == ToolsetStatus.STOPPED

    @pytest.mark.asyncio
    async def test_server_exit_stops_toolset(self):
        server = FakeServer(tools=[mcp_tool("x")])
        toolset = Toolset("combo", "Combo")
        toolset.add_server(server)
        await toolset.ensure_start({})

        server._handle_close()

        assert toolset.status == ToolsetStatus.STOPPED

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        toolset = Toolset("combo", "Combo")
        with pytest.raises(ToolExecutionError, match="not found"):
            await toolset.execute_tool("nope", {})

    def test_name_must_be_alphanumeric(self):
        with pytest.raises(ValueError):
            Toolset("my_tools", "Mine")

    def test_required_params(self):
        toolset = Toolset("github", "GitHub", config=[ConfigParameter(id="personal_access_token", display_name="PAT")])

        assert not toolset.are_required_params_filled({})
        assert not toolset.are_required_params_filled({"github": {"personal_access_token": ""}})
        assert toolset.are_required_params_filled({"github": {"personal_access_token": "ghp"}})


class TestCustomToolset:
    def test_config_name_validated(self):
        with pytest.raises(ValueError):
            CustomToolsetConfig(name="has space", command="x")

    def test_built_from_config(self):
        config = CustomToolsetConfig(
            name="files", command="npx", args="-y server", default_permission=ToolPermissionType.ALWAYS_ALLOW
        )
        toolset = CustomToolset(config)

        assert toolset.name == "files"
        assert not toolset.is_built_in
        assert toolset.default_permission == ToolPermissionType.ALWAYS_ALLOW
