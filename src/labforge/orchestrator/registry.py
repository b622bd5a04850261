"""Authoritative in-memory map of live lab sessions.

Each session carries a fixed time-to-live from creation. Expiry is one
cancellable task per session; deleting a session by hand cancels it, and
deleting an already-removed session is a no-op so a manual delete racing
the expiry is harmless.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from docker.errors import NotFound

from labforge.common import settings
from labforge.orchestrator.containers import LabContainer, LabContainers
from labforge.orchestrator.runtime import (
    ContainerRuntimeError,
    DockerRuntime,
    RuntimeUnavailableError,
)

logger = logging.getLogger(__name__)

# 128 random bits make a repeat negligible, so issued ids are not tracked
SESSION_ID_BYTES = 16
DEFAULT_LAB_TYPE = "general"


@dataclass
class Session:
    session_id: str
    container: Any
    container_id: str
    container_name: str
    lab_type: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def short_id(self) -> str:
        return self.container_id[:12]


class SessionRegistry:
    def __init__(
        self,
        runtime: DockerRuntime,
        containers: LabContainers,
        ttl: float = settings.SESSION_TTL_SECONDS,
    ):
        self.runtime = runtime
        self.containers = containers
        self.ttl = ttl
        self._sessions: dict[str, Session] = {}
        self._expiry: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def _new_session_id(self) -> str:
        while True:
            session_id = secrets.token_hex(SESSION_ID_BYTES)
            if session_id not in self._sessions:
                return session_id

    async def create_session(self, lab_type: str | None = None) -> Session:
        """Provision a container for `lab_type` and register a session for it.

        Raises:
            RuntimeUnavailableError: if the container engine is unreachable;
                nothing is created in that case
        """
        if not await self.runtime.ping():
            raise RuntimeUnavailableError(
                "Docker service is not available. Please start Docker."
            )

        lab_type = lab_type or DEFAULT_LAB_TYPE
        lab = await self.containers.provision(lab_type)
        return await self.register(lab, lab_type)

    async def register(self, lab: LabContainer, lab_type: str) -> Session:
        async with self._lock:
            session = Session(
                session_id=self._new_session_id(),
                container=lab.container,
                container_id=lab.container_id,
                container_name=lab.container_name,
                lab_type=lab_type,
            )
            self._sessions[session.session_id] = session
            self._expiry[session.session_id] = asyncio.create_task(
                self._expire_after(session.session_id, self.ttl)
            )

        expires = session.created_at + timedelta(seconds=self.ttl)
        logger.info(
            f"Registered session {session.session_id} on {session.container_name} "
            f"(expires {expires.isoformat()})"
        )
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def list_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    async def _expire_after(self, session_id: str, ttl: float) -> None:
        await asyncio.sleep(ttl)
        logger.info(f"Session {session_id} reached its time-to-live")
        await self.delete(session_id)

    async def delete(self, session_id: str) -> bool:
        """Remove a session and stop its container.

        Returns False if the session was not registered.
        """
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            task = self._expiry.pop(session_id, None)

        if session is None:
            return False

        if task is not None and task is not asyncio.current_task():
            task.cancel()

        await self._stop_container(session)
        return True

    async def _stop_container(self, session: Session) -> None:
        try:
            await self.runtime.stop(session.container)
            logger.info(f"Container {session.short_id} stopped")
        except (ContainerRuntimeError, NotFound) as e:
            logger.error(f"Error stopping container {session.short_id}: {e}")

    async def shutdown(self) -> None:
        """Clean up every session, e.g. when the server is shutting down."""
        for session_id in list(self._sessions):
            await self.delete(session_id)
