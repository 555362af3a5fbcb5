"""Tool permission policy.

Saved preferences live in a :class:`PermissionStore`.  When the policy
is ``ask``, the :class:`PermissionBroker` publishes a
:class:`ToolPermissionRequest` and the caller waits until the UI
resolves it by id.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

from cadenza.errors import Cancelled

logger = logging.getLogger(__name__)


class ToolPermissionType(str, Enum):
    ASK = "ask"
    ALWAYS_ALLOW = "always_allow"
    ALWAYS_DENY = "always_deny"


class ToolPermission(BaseModel):
    toolset_name: str
    tool_name: str
    permission_type: ToolPermissionType
    last_asked_at: datetime | None = None
    last_response: Literal["allow", "deny"] | None = None


class PermissionStore(Protocol):
    async def get(self, toolset_name: str, tool_name: str) -> ToolPermission | None: ...

    async def set(self, permission: ToolPermission) -> None: ...

    async def delete(self, toolset_name: str, tool_name: str) -> None: ...

    async def list_all(self) -> list[ToolPermission]: ...


class InMemoryPermissionStore:
    def __init__(self, permissions: list[ToolPermission] | None = None) -> None:
        self._permissions: dict[tuple[str, str], ToolPermission] = {}
        for permission in permissions or []:
            self._permissions[(permission.toolset_name, permission.tool_name)] = permission

    async def get(self, toolset_name: str, tool_name: str) -> ToolPermission | None:
        return self._permissions.get((toolset_name, tool_name))

    async def set(self, permission: ToolPermission) -> None:
        self._permissions[(permission.toolset_name, permission.tool_name)] = permission

    async def delete(self, toolset_name: str, tool_name: str) -> None:
        self._permissions.pop((toolset_name, tool_name), None)

    async def list_all(self) -> list[ToolPermission]:
        return list(self._permissions.values())


@dataclass
class PermissionCheck:
    permission_type: ToolPermissionType
    saved: ToolPermission | None = None

    @property
    def should_ask(self) -> bool:
        return self.permission_type == ToolPermissionType.ASK

    @property
    def is_allowed(self) -> bool:
        return self.permission_type == ToolPermissionType.ALWAYS_ALLOW


async def check_tool_permission(
    store: PermissionStore,
    toolset_name: str,
    tool_name: str,
    default: ToolPermissionType = ToolPermissionType.ASK,
) -> PermissionCheck:
    """Saved preference for the pair if any, else ``default``."""
    saved = await store.get(toolset_name, tool_name)
    if saved is not None:
        return PermissionCheck(permission_type=saved.permission_type, saved=saved)
    return PermissionCheck(permission_type=default)


class ToolPermissionRequest(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    toolset_name: str
    tool_name: str
    tool_description: str | None = None
    args: dict[str, Any] = Field(default_factory=dict)
    model_name: str = "Unknown Model"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PermissionBroker:
    """Table of pending permission requests keyed by request id.

    A UI consumes requests through ``next_request()``.  The raw
    ``requests`` queue keeps entries whose waiter was aborted or cancelled
    before anyone looked; ``next_request()`` drops those.  ``request()``
    suspends only the calling task; other tool calls and streams keep
    running.
    """

    def __init__(self, store: PermissionStore | None = None) -> None:
        self.store = store if store is not None else InMemoryPermissionStore()
        self.requests: asyncio.Queue[ToolPermissionRequest] = asyncio.Queue()
        self._pending: dict[str, tuple[ToolPermissionRequest, asyncio.Future[bool]]] = {}

    @property
    def pending(self) -> list[ToolPermissionRequest]:
        return [request for request, _ in self._pending.values()]

    async def next_request(self) -> ToolPermissionRequest:
        """Wait for the next request that is still awaiting a decision."""
        while True:
            request = await self.requests.get()
            if request.id in self._pending:
                return request
            logger.debug(f"Skipping stale permission request {request.id}")

    async def request(self, request: ToolPermissionRequest, abort: asyncio.Event | None = None) -> bool:
        """Publish ``request`` and wait for the user's decision.

        Raises:
            Cancelled: If ``abort`` fires or the request is cancelled
                before a decision arrives.
        """
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[request.id] = (request, future)
        await self.requests.put(request)
        logger.info(f"Waiting for permission: {request.toolset_name}_{request.tool_name} ({request.id})")

        abort_wait = asyncio.ensure_future(abort.wait()) if abort is not None else None
        try:
            if abort_wait is None:
                return await future
            await asyncio.wait({future, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
            if future.done():
                return future.result()
            raise Cancelled("Permission request interrupted")
        except asyncio.CancelledError:
            if future.cancelled() and not asyncio.current_task().cancelling():
                raise Cancelled("Permission request cancelled") from None
            raise
        finally:
            if abort_wait is not None:
                abort_wait.cancel()
            self._pending.pop(request.id, None)

    async def resolve(
        self,
        request_id: str,
        allowed: bool,
        save_preference: ToolPermissionType | None = None,
    ) -> bool:
        """Deliver the user's decision; returns False for unknown ids."""
        entry = self._pending.get(request_id)
        if entry is None:
            logger.warning(f"No pending permission request {request_id}")
            return False
        request, future = entry
        if save_preference is not None:
            await self.store.set(ToolPermission(
                toolset_name=request.toolset_name,
                tool_name=request.tool_name,
                permission_type=save_preference,
                last_asked_at=datetime.now(timezone.utc),
                last_response="allow" if allowed else "deny",
            ))
        if not future.done():
            future.set_result(allowed)
        return True

    def cancel(self, request_id: str) -> None:
        entry = self._pending.get(request_id)
        if entry is not None and not entry[1].done():
            entry[1].cancel()

    def cancel_all(self) -> None:
        for request_id in list(self._pending):
            self.cancel(request_id)
