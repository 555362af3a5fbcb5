import pytest

from cadenza.tools import (
    Tool,
    ToolCallResult,
    _build_parameters_schema,
    _parse_param_descriptions,
    tool,
)


# ---------------------------------------------------------------------------
# Schema generation (_build_parameters_schema)
# ---------------------------------------------------------------------------


class TestBuildParametersSchema:
    def test_python_types_map_to_json_schema_types(self):
        def func(a: str, b: int, c: float, d: bool, e: list, f: dict):
            pass

        schema, _ = _build_parameters_schema(func)
        assert schema["properties"]["a"]["type"] == "string"
        assert schema["properties"]["b"]["type"] == "integer"
        assert schema["properties"]["c"]["type"] == "number"
        assert schema["properties"]["d"]["type"] == "boolean"
        assert schema["properties"]["e"]["type"] == "array"
        assert schema["properties"]["f"]["type"] == "object"

    def test_generic_aliases_use_origin(self):
        def func(urls: list[str], headers: dict[str, str]):
            pass

        schema, _ = _build_parameters_schema(func)
        assert schema["properties"]["urls"]["type"] == "array"
        assert schema["properties"]["headers"]["type"] == "object"

    def test_optional_params_not_required(self):
        def func(url: str, max_length: int = 5000):
            pass

        schema, required = _build_parameters_schema(func)
        assert required == ["url"]
        assert schema["required"] == ["url"]

    def test_var_args_skipped(self):
        def func(query: str, *args, **kwargs):
            pass

        schema, _ = _build_parameters_schema(func)
        assert list(schema["properties"]) == ["query"]

    def test_unannotated_param_defaults_to_string(self):
        def func(x):
            pass

        schema, _ = _build_parameters_schema(func)
        assert schema["properties"]["x"]["type"] == "string"


# ---------------------------------------------------------------------------
# Docstring param description parsing (_parse_param_descriptions)
# ---------------------------------------------------------------------------


class TestParseParamDescriptions:
    def test_google_style(self):
        def func(url: str, raw: bool):
            """Fetch a page.

            Args:
                url: Address to fetch.
                raw: Return the HTML unchanged.
            """

        assert _parse_param_descriptions(func) == {
            "url": "Address to fetch.",
            "raw": "Return the HTML unchanged.",
        }

    def test_google_style_with_type_and_continuation(self):
        def func(url, max_length):
            """Fetch a page.

            Args:
                url (str): Address to fetch.
                max_length (int): Characters to return,
                    counted after conversion.
            """

        assert _parse_param_descriptions(func) == {
            "url": "Address to fetch.",
            "max_length": "Characters to return,\ncounted after conversion.",
        }

    def test_sphinx_rest_style(self):
        def func(query: str):
            """Search.

            :param query: What to look for.
            """

        assert _parse_param_descriptions(func) == {"query": "What to look for."}

    def test_numpy_style(self):
        def func(query: str, limit: int):
            """Search.

            Parameters
            ----------
            query : str
                What to look for.
            limit : int
                Maximum results.
            """

        assert _parse_param_descriptions(func) == {
            "query": "What to look for.",
            "limit": "Maximum results.",
        }

    def test_no_docstring(self):
        def func(x):
            pass

        assert _parse_param_descriptions(func) == {}


# ---------------------------------------------------------------------------
# @tool decorator and Tool
# ---------------------------------------------------------------------------


class TestToolDecorator:
    def test_bare_decorator(self):
        @tool
        def greet(name: str):
            """Say hello.

            Args:
                name: Who to greet.
            """
            return f"Hello {name}"

        assert isinstance(greet, Tool)
        assert greet.name == "greet"
        assert greet.description == "Say hello."
        assert greet.parameters_schema["properties"]["name"]["description"] == "Who to greet."

    def test_overrides(self):
        @tool(name="fetch", description="Fetch a URL")
        def fetch_webpage(url: str):
            return url

        assert fetch_webpage.name == "fetch"
        assert fetch_webpage.description == "Fetch a URL"

    def test_model_dump_is_function_schema(self):
        @tool
        def ping():
            """Ping."""

        assert ping.model_dump() == {
            "type": "function",
            "function": {
                "name": "ping",
                "description": "Ping.",
                "parameters": {"type": "object", "properties": {}, "required": []},
            },
        }

    @pytest.mark.asyncio
    async def test_sync_and_async_bodies(self):
        @tool
        def add(a: int, b: int):
            return a + b

        @tool
        async def shout(text: str):
            return text.upper()

        assert await add(a=1, b=2) == ToolCallResult(tool_name="add", output=3)
        assert (await shout(text="hi")).output == "HI"

    @pytest.mark.asyncio
    async def test_bind_hides_argument(self):
        @tool
        def fetch(client, url: str):
            return (client, url)

        bound = fetch.bind(client="shared-client")

        assert "client" not in bound.parameters_schema["properties"]
        assert bound.parameters_schema["required"] == ["url"]
        assert (await bound(url="https://a.test")).output == ("shared-client", "https://a.test")
        assert "client" in fetch.parameters_schema["properties"]
