from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Dict, List

import anyio

from vision_dispatch.observability.metrics import ANALYSIS_REJECTED_TOTAL

logger = logging.getLogger(__name__)

QUEUE_FULL = "QUEUE_FULL"
REQUEST_CANCELLED = "REQUEST_CANCELLED"


@dataclass(frozen=True)
class ConcurrencyLimits:
    max_concurrent: int = 10
    queue_limit: int = 5

    def __post_init__(self):
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.queue_limit < 0:
            raise ValueError("queue_limit must be >= 0")


@dataclass(frozen=True)
class ConcurrencyDetails:
    max_concurrent: int
    queue_limit: int
    current_active: int
    current_queued: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "maxConcurrent": self.max_concurrent,
            "queueLimit": self.queue_limit,
            "currentActive": self.current_active,
            "currentQueued": self.current_queued,
        }


class ConcurrencyError(Exception):
    """Raised when a request is refused a slot (QUEUE_FULL) or dropped from the queue (REQUEST_CANCELLED)."""

    def __init__(self, code: str, message: str, details: ConcurrencyDetails):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


@dataclass
class _Workspace:
    limiter: anyio.CapacityLimiter
    # insertion order is arrival order
    waiting: List[anyio.CancelScope] = field(default_factory=list)


def workspace_key(working_directory: str) -> str:
    return str(Path(working_directory).resolve())


class ConcurrencyManager:
    """
    Caps in-flight analyses per working directory.

    Up to max_concurrent requests run at once; up to queue_limit more wait
    and are admitted in arrival order. Anything beyond that is refused
    immediately with QUEUE_FULL.

    State for a workspace exists only while it has active or waiting
    requests, so a manager can outlive the event loop that created it.
    """

    def __init__(self, limits: ConcurrencyLimits = ConcurrencyLimits()):
        self._limits = limits
        self._workspaces: Dict[str, _Workspace] = {}

    @property
    def limits(self) -> ConcurrencyLimits:
        return self._limits

    def get_active_count(self, working_directory: str) -> int:
        ws = self._workspaces.get(workspace_key(working_directory))
        return int(ws.limiter.borrowed_tokens) if ws else 0

    def get_queued_count(self, working_directory: str) -> int:
        ws = self._workspaces.get(workspace_key(working_directory))
        return len(ws.waiting) if ws else 0

    def can_accept(self, working_directory: str) -> bool:
        return (
            self.get_active_count(working_directory) < self._limits.max_concurrent
            or self.get_queued_count(working_directory) < self._limits.queue_limit
        )

    def cancel_all(self, working_directory: str) -> int:
        """Drop every waiting request of a workspace; running ones are left alone."""
        ws = self._workspaces.get(workspace_key(working_directory))
        if ws is None:
            return 0
        for scope in ws.waiting:
            scope.cancel()
        return len(ws.waiting)

    def _details(self, working_directory: str) -> ConcurrencyDetails:
        return ConcurrencyDetails(
            max_concurrent=self._limits.max_concurrent,
            queue_limit=self._limits.queue_limit,
            current_active=self.get_active_count(working_directory),
            current_queued=self.get_queued_count(working_directory),
        )

    @asynccontextmanager
    async def slot(self, working_directory: str) -> AsyncIterator[None]:
        key = workspace_key(working_directory)
        ws = self._workspaces.get(key)
        if ws is None:
            ws = self._workspaces[key] = _Workspace(anyio.CapacityLimiter(self._limits.max_concurrent))

        token = object()
        try:
            try:
                ws.limiter.acquire_on_behalf_of_nowait(token)
            except anyio.WouldBlock:
                await self._wait_for_slot(ws, token, working_directory)
            try:
                yield
            finally:
                ws.limiter.release_on_behalf_of(token)
        finally:
            if not ws.waiting and ws.limiter.borrowed_tokens == 0 and self._workspaces.get(key) is ws:
                del self._workspaces[key]

    async def _wait_for_slot(self, ws: _Workspace, token: object, working_directory: str) -> None:
        if len(ws.waiting) >= self._limits.queue_limit:
            details = self._details(working_directory)
            ANALYSIS_REJECTED_TOTAL.labels(reason=QUEUE_FULL).inc()
            logger.warning(
                "analysis_rejected reason=queue_full active=%d queued=%d wd=%s",
                details.current_active,
                details.current_queued,
                working_directory,
            )
            raise ConcurrencyError(
                QUEUE_FULL,
                f"Cannot accept request: maximum concurrent analyses ({self._limits.max_concurrent}) "
                f"reached and queue is full ({details.current_queued} queued)",
                details,
            )

        scope = anyio.CancelScope()
        ws.waiting.append(scope)
        logger.info("analysis_queued position=%d wd=%s", len(ws.waiting), working_directory)
        try:
            with scope:
                await ws.limiter.acquire_on_behalf_of(token)
        finally:
            ws.waiting.remove(scope)

        if scope.cancelled_caught:
            ANALYSIS_REJECTED_TOTAL.labels(reason=REQUEST_CANCELLED).inc()
            raise ConcurrencyError(REQUEST_CANCELLED, "Request was cancelled", self._details(working_directory))
