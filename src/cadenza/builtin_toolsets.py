"""Toolsets that ship with the application."""

import logging
import re
from html.parser import HTMLParser

import httpx
from openai import AsyncOpenAI, OpenAIError

from cadenza.config import ApiKeys, Settings
from cadenza.errors import ToolExecutionError
from cadenza.stdio import ServerParameters
from cadenza.tools import tool
from cadenza.toolsets import ConfigParameter, MCPServer, Toolset, ToolRegistration

logger = logging.getLogger(__name__)

DEFAULT_FETCH_MAX_LENGTH = 50000
PERPLEXITY_BASE_URL = "https://api.perplexity.ai"


# ---------------------------------------------------------------------------
# Terminal
# ---------------------------------------------------------------------------

class MCPServerDesktopCommander(MCPServer):
    def execution_parameters(self, config: dict[str, str]) -> ServerParameters:
        return ServerParameters(type="sidecar", command="mcp-desktopcommander")


class TerminalToolset(Toolset):
    def __init__(self, sidecar_dir: str | None = None, request_timeout: float = 60.0) -> None:
        super().__init__("terminal", "Terminal", description="Run commands in the terminal")
        self.add_server(
            MCPServerDesktopCommander(sidecar_dir=sidecar_dir, request_timeout=request_timeout),
            ToolRegistration.select(
                "execute_command",
                "read_output",
                "force_terminate",
                "list_sessions",
                "list_processes",
                "kill_process",
            ),
            description_map={
                "execute_command": (
                    "Start a new session to execute a command. "
                    "(Use ~ to access the user's home directory.)"
                ),
            },
        )


# ---------------------------------------------------------------------------
# GitHub
# ---------------------------------------------------------------------------

class MCPServerGithub(MCPServer):
    def execution_parameters(self, config: dict[str, str]) -> ServerParameters:
        token = config.get("personal_access_token")
        if not token:
            raise ToolExecutionError("A GitHub personal access token is required")
        return ServerParameters(
            type="sidecar",
            command="mcp-github",
            args=["stdio"],
            env={"GITHUB_PERSONAL_ACCESS_TOKEN": token},
        )


class GithubToolset(Toolset):
    def __init__(self, sidecar_dir: str | None = None, request_timeout: float = 60.0) -> None:
        super().__init__(
            "github",
            "GitHub",
            config=[ConfigParameter(id="personal_access_token", display_name="Personal Access Token")],
            description="Read and manage GitHub repositories, issues and pull requests",
            link="https://github.com/settings/personal-access-tokens",
        )
        self.add_server(MCPServerGithub(sidecar_dir=sidecar_dir, request_timeout=request_timeout))


# ---------------------------------------------------------------------------
# Web
# ---------------------------------------------------------------------------

class _TextExtractor(HTMLParser):
    _SKIPPED = {"script", "style", "noscript", "svg", "head"}
    _BLOCKS = {"p", "div", "br", "li", "tr", "section", "article", "h1", "h2", "h3", "h4", "h5", "h6"}

    def __init__(self) -> None:
        super().__init__()
        self.parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag, attrs):
        if tag in self._SKIPPED:
            self._skip_depth += 1
        elif tag in self._BLOCKS:
            self.parts.append("\n")
        if tag in ("h1", "h2", "h3") and not self._skip_depth:
            self.parts.append("#" * int(tag[1]) + " ")

    def handle_endtag(self, tag):
        if tag in self._SKIPPED and self._skip_depth:
            self._skip_depth -= 1
        elif tag in self._BLOCKS:
            self.parts.append("\n")

    def handle_data(self, data):
        if not self._skip_depth:
            self.parts.append(data)


def html_to_text(html: str) -> str:
    extractor = _TextExtractor()
    extractor.feed(html)
    extractor.close()
    text = "".join(extractor.parts)
    text = re.sub(r"[ \t]+", " ", text)
    return re.sub(r"\n\s*\n+", "\n\n", text).strip()


def _normalize_url(url: str) -> str:
    return url if re.match(r"^https?://", url) else f"https://{url}"


async def fetch_webpage(
    client: httpx.AsyncClient,
    url: str,
    max_length: int = DEFAULT_FETCH_MAX_LENGTH,
    start_index: int = 0,
    raw: bool = False,
) -> str:
    """Fetch a webpage from the internet and return its text content. Images are omitted.

    Args:
        url: URL to fetch.
        max_length: Maximum number of characters to return (default: 50000).
        start_index: Start content from this character index (default: 0).
            Useful if a previous fetch was truncated and more context is required.
        raw: Get the raw HTML content of the page without text extraction (default: false).
    """
    try:
        response = await client.get(_normalize_url(url), follow_redirects=True)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        return f"<error>Error fetching webpage: {e.response.status_code} {e.response.reason_phrase}</error>"
    except httpx.HTTPError as e:
        return f"<error>Error fetching webpage: {e}</error>"

    content = response.text
    if not raw and "html" in response.headers.get("content-type", "html"):
        content = html_to_text(content)

    if start_index >= len(content):
        return "<error>No more content available.</error>"
    end = start_index + max_length
    page = content[start_index:end]
    if end < len(content):
        page += (
            f"\n\n<warning>Content truncated. Call the fetch tool with a start_index of "
            f"{end} to get more content.</warning>"
        )
    return page


async def search_web(api_keys: ApiKeys, query: str) -> str:
    """Search the web to produce a report (with citations) on a topic.

    The query should be a natural-language description of the topic, in full
    sentences. Assume the user will not read the report; repeat anything relevant.

    Args:
        query: Query to search the web for.
    """
    async with AsyncOpenAI(api_key=api_keys.require("perplexity"), base_url=PERPLEXITY_BASE_URL) as client:
        try:
            response = await client.chat.completions.create(
                model="sonar",
                messages=[{"role": "user", "content": query}],
            )
        except OpenAIError as e:
            logger.exception("Web search failed")
            raise ToolExecutionError(f"Web search failed: {e}") from e
    content = response.choices[0].message.content or ""
    citations = getattr(response, "citations", None) or []
    if citations:
        content += "\n\nSources:\n" + "\n".join(f"{i}. {url}" for i, url in enumerate(citations, 1))
    return content


class WebToolset(Toolset):
    def __init__(self, api_keys: ApiKeys, http_client: httpx.AsyncClient | None = None) -> None:
        super().__init__("web", "Web", description="Search the web and read webpages")
        self.http_client = http_client or httpx.AsyncClient(
            timeout=30.0, headers={"User-Agent": "cadenza/0.1 (+tool fetch)"}
        )
        self.add_tool(tool(fetch_webpage, name="fetch").bind(client=self.http_client))
        self.add_tool(tool(search_web, name="search").bind(api_keys=api_keys))


def default_builtin_toolsets(settings: Settings) -> list[Toolset]:
    return [
        WebToolset(settings.api_keys),
        TerminalToolset(sidecar_dir=settings.sidecar_dir, request_timeout=settings.mcp_request_timeout),
        GithubToolset(sidecar_dir=settings.sidecar_dir, request_timeout=settings.mcp_request_timeout),
    ]
