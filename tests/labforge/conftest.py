"""Shared fakes and fixtures for labforge tests."""

import asyncio
from typing import Any, Callable

import pytest
from docker.errors import NotFound

from labforge.common.lab_store import LabStore
from labforge.orchestrator.bootstrap import BootstrapRunner
from labforge.orchestrator.containers import LabContainers
from labforge.orchestrator.exercises import ExerciseInstaller
from labforge.orchestrator.images import ImageProvisioner
from labforge.orchestrator.registry import SessionRegistry
from labforge.orchestrator.runtime import ContainerSummary, ExecOutput
from labforge.orchestrator.sandbox import ScriptSandbox, SharedSandbox


class FakeContainer:
    def __init__(self, container_id: str, name: str, status: str = "running"):
        self.id = container_id
        self.name = name
        self.status = status
        self.removed = False

    @property
    def short_id(self) -> str:
        return self.id[:12]


class FakePty:
    def __init__(self):
        self.output: asyncio.Queue[bytes] = asyncio.Queue()
        self.written: list[str] = []
        self.resizes: list[tuple[int, int]] = []
        self.closed = False

    def feed(self, *chunks: bytes) -> None:
        for chunk in chunks:
            self.output.put_nowait(chunk)

    async def read(self) -> bytes:
        if self.closed:
            return b""
        return await self.output.get()

    async def write(self, data: str | bytes) -> None:
        if isinstance(data, bytes):
            data = data.decode()
        self.written.append(data)

    async def resize(self, rows: int, cols: int) -> None:
        self.resizes.append((rows, cols))

    def close(self) -> None:
        self.closed = True
        self.output.put_nowait(b"")


class FakeRuntime:
    """In-memory stand-in for DockerRuntime."""

    def __init__(self):
        self.available = True
        self.containers: dict[str, FakeContainer] = {}
        self.images: set[str] = set()
        self.built: list[dict[str, Any]] = []
        self.pulled: list[str] = []
        self.build_error: Exception | None = None
        self.execs: list[dict[str, Any]] = []
        self.exec_handler: Callable[..., ExecOutput] | None = None
        self.stopped: list[str] = []
        self.started: list[str] = []
        self.run_calls: list[dict[str, Any]] = []
        self.ptys: list[FakePty] = []
        self.pty_calls: list[dict[str, Any]] = []
        self.pty_error: Exception | None = None
        self.run_delay = 0.0

    def add_container(self, name: str, status: str = "running") -> FakeContainer:
        container_id = f"{len(self.containers) + 1:064x}"
        container = FakeContainer(container_id, name, status)
        self.containers[container_id] = container
        return container

    async def ping(self) -> bool:
        return self.available

    async def image_exists(self, name: str) -> bool:
        return name in self.images

    async def build_image(self, tag, context, dockerfile, labels) -> None:
        if self.build_error:
            raise self.build_error
        self.built.append(
            {"tag": tag, "context": context, "dockerfile": dockerfile, "labels": labels}
        )
        self.images.add(tag)

    async def pull_image(self, name: str) -> None:
        self.pulled.append(name)
        self.images.add(name)

    async def list_containers(self) -> list[ContainerSummary]:
        return [
            ContainerSummary(id=c.id, name=c.name, status=c.status)
            for c in self.containers.values()
            if not c.removed
        ]

    async def get_container(self, container_id: str) -> FakeContainer:
        container = self.containers.get(container_id)
        if container is None or container.removed:
            raise NotFound(f"No such container: {container_id}")
        return container

    async def run_container(self, image, *, name, command, tty, stdin_open, mem_limit, environment=None):
        if self.run_delay:
            await asyncio.sleep(self.run_delay)
        self.run_calls.append(
            {
                "image": image,
                "name": name,
                "command": command,
                "tty": tty,
                "stdin_open": stdin_open,
                "mem_limit": mem_limit,
                "environment": environment,
            }
        )
        return self.add_container(name)

    async def is_running(self, container: FakeContainer) -> bool:
        if container.removed:
            raise NotFound(f"No such container: {container.id}")
        return container.status == "running"

    async def start(self, container: FakeContainer) -> None:
        self.started.append(container.id)
        container.status = "running"

    async def stop(self, container: FakeContainer, timeout: int = 10) -> None:
        self.stopped.append(container.id)
        container.status = "exited"

    async def describe(self, container: FakeContainer) -> ContainerSummary:
        return ContainerSummary(id=container.id, name=container.name, status=container.status)

    async def exec(self, container, cmd, *, user="", workdir=None, environment=None) -> ExecOutput:
        call = {
            "container": container,
            "cmd": cmd,
            "user": user,
            "workdir": workdir,
            "environment": environment,
        }
        self.execs.append(call)
        if self.exec_handler:
            return self.exec_handler(**call)
        return ExecOutput(exit_code=0, output="")

    async def open_pty(self, container, cmd, *, user="", workdir=None, environment=None) -> FakePty:
        self.pty_calls.append(
            {"container": container, "cmd": cmd, "user": user, "workdir": workdir}
        )
        if self.pty_error:
            raise self.pty_error
        pty = FakePty()
        self.ptys.append(pty)
        return pty


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def exercises_dir(tmp_path):
    path = tmp_path / "exercises"
    path.mkdir()
    (path / "run-lab.sh").write_text('echo "helper for $LAB_ID"\n')
    (path / "basics-1-exercises.sh").write_text(
        "#!/bin/bash\nsource ./run-lab.sh\necho basics\n"
    )
    (path / "grep-exercises.sh").write_text("#!/bin/bash\necho grep\n")
    return path


@pytest.fixture
def lab_store(tmp_path):
    return LabStore(
        labs_file=tmp_path / "data" / "custom-labs.json",
        mirror_file=tmp_path / "frontend" / "custom-labs.json",
        scripts_dir=tmp_path / "scripts",
    )


@pytest.fixture
def images(runtime, tmp_path):
    dockerfile = tmp_path / "lab-base" / "Dockerfile"
    dockerfile.parent.mkdir()
    dockerfile.write_text("FROM debian:bookworm-slim\n")
    return ImageProvisioner(
        runtime,
        base_image="linux-lab-base:test",
        dockerfile=dockerfile,
        build_context=dockerfile.parent,
        fallback_image="debian:latest",
    )


@pytest.fixture
def installer(runtime, lab_store, exercises_dir):
    return ExerciseInstaller(runtime, lab_store, exercises_dir=exercises_dir)


@pytest.fixture
def containers(runtime, images, installer):
    return LabContainers(runtime, images, BootstrapRunner(runtime), installer)


@pytest.fixture
def registry(runtime, containers):
    return SessionRegistry(runtime, containers, ttl=60)


@pytest.fixture
def sandbox(runtime, images, registry):
    return ScriptSandbox(runtime, SharedSandbox(runtime, images), registry)
