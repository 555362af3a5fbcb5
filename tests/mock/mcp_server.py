import os
from typing import Any

from mcp.server.fastmcp import FastMCP

mcp = FastMCP("cadenza-test-server")


@mcp.tool()
async def echo_text(text: str) -> str:
    """Echo the input text"""
    return text


@mcp.tool()
async def read_env(name: str) -> str:
    """Return an environment variable visible to the server"""
    return os.environ.get(name, "<unset>")


@mcp.tool()
async def get_user_info(user_id: int) -> dict[str, Any]:
    """Get user information by ID"""
    return {"id": user_id, "name": f"User {user_id}"}


@mcp.tool()
async def raise_error(message: str = "An error occurred") -> None:
    """Raise an error with the given message"""
    raise ValueError(message)


if __name__ == "__main__":
    mcp.run("stdio")
