"""
Stdio transport for MCP servers.

Spawns a sidecar binary or a user command and exchanges
newline-delimited JSON-RPC messages over its stdin/stdout.
"""

import asyncio
import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal

from mcp.client.stdio import get_default_environment
from pydantic import BaseModel, Field

from cadenza.errors import ProtocolError, TransportError

logger = logging.getLogger(__name__)

_READ_CHUNK_SIZE = 64 * 1024
_TERMINATE_TIMEOUT = 5.0


class ServerParameters(BaseModel):
    """How to launch an MCP server.

    ``sidecar`` commands name a binary shipped in the sidecar directory;
    ``custom`` commands are run as given.
    """

    type: Literal["sidecar", "custom"] = "custom"
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None


def serialize_message(message: dict[str, Any]) -> bytes:
    return (json.dumps(message) + "\n").encode("utf-8")


class ReadBuffer:
    """Accumulates stdout bytes and splits them into JSON-RPC messages."""

    def __init__(self) -> None:
        self._buffer = b""

    def append(self, chunk: bytes) -> None:
        self._buffer += chunk

    def read_message(self) -> dict[str, Any] | None:
        """Pop the next complete message, or ``None`` if none is buffered.

        A malformed line is consumed and raises :class:`ProtocolError`,
        so the following messages remain readable.
        """
        while True:
            index = self._buffer.find(b"\n")
            if index == -1:
                return None
            line = self._buffer[:index].rstrip(b"\r")
            self._buffer = self._buffer[index + 1:]
            if not line.strip():
                continue
            try:
                message = json.loads(line)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise ProtocolError(f"Malformed message from server: {line[:200]!r}") from e
            if not isinstance(message, dict):
                raise ProtocolError(f"Expected a JSON object, got {type(message).__name__}")
            return message

    def clear(self) -> None:
        self._buffer = b""


class StdioTransport:
    """
    Line-delimited JSON-RPC channel to a child process.

    Incoming messages, errors and process exit are reported through the
    ``on_message``, ``on_error`` and ``on_close`` callbacks. ``send`` does
    not wait for replies; correlation belongs to the client.
    """

    def __init__(self, params: ServerParameters, sidecar_dir: str | None = None) -> None:
        self.params = params
        self.sidecar_dir = sidecar_dir
        self.on_message: Callable[[dict[str, Any]], None] | None = None
        self.on_error: Callable[[Exception], None] | None = None
        self.on_close: Callable[[], None] | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._spawn: asyncio.Future | None = None
        self._read_buffer = ReadBuffer()
        self._readers: list[asyncio.Task] = []

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def command_line(self) -> list[str]:
        command = self.params.command
        if self.params.type == "sidecar":
            base = Path(self.sidecar_dir) if self.sidecar_dir else Path(sys.executable).parent
            suffix = ".exe" if sys.platform == "win32" else ""
            command = str(base / f"{command}{suffix}")
        return [command, *self.params.args]

    def environment(self) -> dict[str, str]:
        """The allowlisted parent environment with this server's overrides on top."""
        return {**get_default_environment(), **(self.params.env or {})}

    async def start(self) -> None:
        """
        Spawn the process and begin reading its output.

        Raises:
            TransportError: If already started or the process cannot be
                spawned.
        """
        if self._process is not None or self._spawn is not None:
            raise TransportError("StdioTransport already started")

        argv = self.command_line()
        env = self.environment()
        logger.info(f"Starting MCP server: {' '.join(argv)}")

        self._spawn = asyncio.ensure_future(asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        ))
        try:
            process = await self._spawn
        except asyncio.CancelledError:
            if asyncio.current_task().cancelling():
                raise
            raise TransportError(f"Start of {argv[0]} was aborted") from None
        except OSError as e:
            raise TransportError(f"Failed to start {argv[0]}: {e}") from e
        finally:
            self._spawn = None

        self._process = process
        logger.info(f"Started MCP server process (pid={process.pid})")
        self._readers = [
            asyncio.create_task(self._read_stdout(process)),
            asyncio.create_task(self._read_stderr(process)),
        ]

    async def send(self, message: dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise TransportError("Transport not connected")
        logger.debug(f"Sending: {message.get('method', 'response')} (id={message.get('id')})")
        try:
            process.stdin.write(serialize_message(message))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise TransportError(f"Server stdin closed: {e}") from e

    async def close(self) -> None:
        """Stop the process; safe to call when nothing is running."""
        if self._spawn is not None:
            self._spawn.cancel()
        self._read_buffer.clear()
        process = self._process
        if process is not None and process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=_TERMINATE_TIMEOUT)
            except TimeoutError:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
        if self._readers:
            await asyncio.gather(*self._readers, return_exceptions=True)
            self._readers = []
        logger.info("Stdio transport stopped")

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _report_error(self, error: Exception) -> None:
        if self.on_error is not None:
            self.on_error(error)
        else:
            logger.warning(f"MCP transport error: {error}")

    def _handle_chunk(self, chunk: bytes) -> None:
        self._read_buffer.append(chunk)
        while True:
            try:
                message = self._read_buffer.read_message()
            except ProtocolError as e:
                self._report_error(e)
                continue
            if message is None:
                return
            if self.on_message is None:
                continue
            try:
                self.on_message(message)
            except Exception as e:
                logger.exception("Message handler failed")
                self._report_error(e)

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        while True:
            chunk = await process.stdout.read(_READ_CHUNK_SIZE)
            if not chunk:
                break
            self._handle_chunk(chunk)
        returncode = await process.wait()
        logger.info(f"MCP server process {process.pid} exited with code {returncode}")
        if self._process is process:
            self._process = None
            self._read_buffer.clear()
        if self.on_close is not None:
            self.on_close()

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        async for line in process.stderr:
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._report_error(TransportError(text))
