"""Async facade over the Docker engine.

The docker SDK is blocking, so every call is pushed to a worker thread. The
rest of the orchestrator only talks to the engine through `DockerRuntime`,
which keeps container handles opaque (docker `Container` objects in
production, fakes in tests).
"""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import Any, Callable, cast

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container

logger = logging.getLogger(__name__)

PTY_READ_SIZE = 4096


class ContainerRuntimeError(Exception):
    """The container engine rejected or failed an operation."""


class RuntimeUnavailableError(ContainerRuntimeError):
    """The container engine cannot be reached."""


@dataclass
class ContainerSummary:
    id: str
    name: str
    status: str

    @property
    def running(self) -> bool:
        return self.status == "running"


@dataclass
class ExecOutput:
    exit_code: int
    output: str


class PtyStream:
    """Interactive exec with a tty, attached over a hijacked socket."""

    def __init__(self, api: Any, exec_id: str, sock: Any):
        self.api = api
        self.exec_id = exec_id
        # exec_start(socket=True) returns a SocketIO wrapper on unix sockets
        self._sock = getattr(sock, "_sock", sock)
        self._closed = False

    async def read(self) -> bytes:
        """Return the next chunk of output, or b"" once the stream has ended."""
        if self._closed:
            return b""
        try:
            return await asyncio.to_thread(self._sock.recv, PTY_READ_SIZE)
        except OSError as e:
            if self._closed:
                return b""
            logger.debug(f"PTY read failed for exec {self.exec_id[:12]}: {e}")
            return b""

    async def write(self, data: str | bytes) -> None:
        if self._closed:
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        await asyncio.to_thread(self._sock.sendall, data)

    async def resize(self, rows: int, cols: int) -> None:
        await asyncio.to_thread(
            self.api.exec_resize,
            self.exec_id,
            height=max(int(rows), 1),
            width=max(int(cols), 1),
        )

    def close(self) -> None:
        """Shut the socket down so any blocked reader wakes up."""
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._sock.close()
        except OSError as e:
            logger.debug(f"Error closing PTY socket: {e}")


class DockerRuntime:
    """Container engine operations used by the orchestrator."""

    def __init__(self, client_factory: Callable[[], docker.DockerClient] = docker.from_env):
        self._client_factory = client_factory
        self._client: docker.DockerClient | None = None

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = self._client_factory()
            except DockerException as e:
                raise RuntimeUnavailableError(str(e)) from e
            logger.info("Connected to Docker daemon")
        return self._client

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except (NotFound, ImageNotFound):
            raise
        except (APIError, DockerException) as e:
            raise ContainerRuntimeError(str(e)) from e

    async def ping(self) -> bool:
        try:
            return bool(await asyncio.to_thread(lambda: self.client.ping()))
        except (DockerException, ContainerRuntimeError, OSError) as e:
            logger.error(f"Docker is not available: {e}")
            return False

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def image_exists(self, name: str) -> bool:
        try:
            await self._call(self.client.images.get, name)
            return True
        except ImageNotFound:
            return False

    async def build_image(
        self, tag: str, context: str, dockerfile: str, labels: dict[str, str]
    ) -> None:
        result = await self._call(
            self.client.images.build,
            path=context,
            dockerfile=dockerfile,
            tag=tag,
            rm=True,
            labels=labels,
        )
        logs = result[1] if isinstance(result, tuple) else iter([])
        for chunk in list(logs):
            if isinstance(chunk, dict) and "stream" in chunk:
                line = str(chunk["stream"]).strip()
                if line:
                    logger.debug(f"  {line}")

    async def pull_image(self, name: str) -> None:
        logger.info(f"Pulling {name} image...")
        await self._call(self.client.images.pull, name)

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    async def list_containers(self) -> list[ContainerSummary]:
        containers = cast(
            list[Container], await self._call(self.client.containers.list, all=True)
        )
        return [
            ContainerSummary(id=c.id or "", name=c.name or "", status=c.status)
            for c in containers
        ]

    async def get_container(self, container_id: str) -> Container:
        return cast(Container, await self._call(self.client.containers.get, container_id))

    async def run_container(
        self,
        image: str,
        *,
        name: str,
        command: list[str],
        tty: bool,
        stdin_open: bool,
        mem_limit: str,
        environment: dict[str, str] | None = None,
    ) -> Container:
        container = await self._call(
            self.client.containers.run,
            image,
            command=command,
            name=name,
            detach=True,
            tty=tty,
            stdin_open=stdin_open,
            environment=environment or {},
            mem_limit=mem_limit,
            memswap_limit=mem_limit,
        )
        return cast(Container, container)

    async def is_running(self, container: Container) -> bool:
        await self._call(container.reload)
        return container.status == "running"

    async def start(self, container: Container) -> None:
        await self._call(container.start)

    async def stop(self, container: Container, timeout: int = 10) -> None:
        await self._call(container.stop, timeout=timeout)

    async def describe(self, container: Container) -> ContainerSummary:
        await self._call(container.reload)
        return ContainerSummary(
            id=container.id or "", name=container.name or "", status=container.status
        )

    async def exec(
        self,
        container: Container,
        cmd: list[str],
        *,
        user: str = "",
        workdir: str | None = None,
        environment: dict[str, str] | None = None,
    ) -> ExecOutput:
        """Run a command to completion and return its combined stdout/stderr."""
        result = await self._call(
            container.exec_run,
            cmd,
            user=user,
            workdir=workdir,
            environment=environment,
            demux=False,
        )
        exit_code, output = result
        return ExecOutput(
            exit_code=exit_code if isinstance(exit_code, int) else 1,
            output=(output or b"").decode("utf-8", errors="replace"),
        )

    async def open_pty(
        self,
        container: Container,
        cmd: list[str],
        *,
        user: str = "",
        workdir: str | None = None,
        environment: dict[str, str] | None = None,
    ) -> PtyStream:
        api = self.client.api

        def start() -> PtyStream:
            exec_info = api.exec_create(
                container.id,
                cmd,
                stdin=True,
                tty=True,
                user=user,
                workdir=workdir,
                environment=environment,
            )
            sock = api.exec_start(exec_info["Id"], socket=True, tty=True)
            return PtyStream(api, exec_info["Id"], sock)

        return cast(PtyStream, await self._call(start))
