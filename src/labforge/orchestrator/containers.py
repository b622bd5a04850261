"""Acquisition of per-lab containers.

Containers are named after the lab rather than the session, so sessions for
the same lab (and for labs that alias to the same name) land in the same
container. Existing containers are preferred over new ones to avoid paying
for package installation again.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from labforge.common import settings
from labforge.orchestrator.bootstrap import BootstrapRunner
from labforge.orchestrator.exercises import ExerciseInstaller
from labforge.orchestrator.images import ImageProvisioner
from labforge.orchestrator.results import StepResult
from labforge.orchestrator.runtime import DockerRuntime

logger = logging.getLogger(__name__)

CONTAINER_NAMES = {
    "security-3": "grep-lab",
    "basics-4": "grep-lab",
    "basics-5": "vim-lab",
    "scripting-1": "git-lab",
    "scripting-3": "text-processing-lab",
    "awk": "awk-lab",
    "sed": "sed-lab",
    "grep": "grep-lab",
    "git": "git-lab",
    "vim": "vim-lab",
}


def container_base_name(lab_type: str | None) -> str:
    if not lab_type:
        return settings.DEFAULT_CONTAINER_NAME
    return CONTAINER_NAMES.get(lab_type, lab_type)


@dataclass
class LabContainer:
    """A provisioned container, ready for a session."""

    container: Any
    container_id: str
    container_name: str
    exercises: StepResult | None = None

    @property
    def short_id(self) -> str:
        return self.container_id[:12]


class LabContainers:
    def __init__(
        self,
        runtime: DockerRuntime,
        images: ImageProvisioner,
        bootstrap: BootstrapRunner,
        installer: ExerciseInstaller,
        memory_limit: str = settings.SESSION_MEMORY_LIMIT,
    ):
        self.runtime = runtime
        self.images = images
        self.bootstrap = bootstrap
        self.installer = installer
        self.memory_limit = memory_limit
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, base_name: str) -> asyncio.Lock:
        if base_name not in self._locks:
            self._locks[base_name] = asyncio.Lock()
        return self._locks[base_name]

    async def find_existing(self, base_name: str) -> Any | None:
        """Reuse a container whose name starts with `base_name`.

        Running matches win; otherwise a stopped match is started again.
        """
        matches = [
            c for c in await self.runtime.list_containers() if c.name.startswith(base_name)
        ]
        matches.sort(key=lambda c: not c.running)
        if not matches:
            return None

        match = matches[0]
        container = await self.runtime.get_container(match.id)
        if match.running:
            logger.info(f"Found existing running container: {match.name}")
        else:
            logger.info(f"Starting existing container: {match.name}")
            await self.runtime.start(container)
        return container

    async def acquire(self, lab_type: str) -> Any:
        base_name = container_base_name(lab_type)
        # Lookup and creation must not interleave for the same name
        async with self._lock_for(base_name):
            return await self._find_or_create(base_name)

    async def _find_or_create(self, base_name: str) -> Any:
        container = await self.find_existing(base_name)
        if container is not None:
            logger.info("Reusing existing container")
            return container

        image = await self.images.ensure_base_image()
        logger.info(f"Creating container {base_name} from {image}")
        container = await self.runtime.run_container(
            image,
            name=base_name,
            command=["/bin/bash"],
            tty=True,
            stdin_open=True,
            mem_limit=self.memory_limit,
            environment={
                "DEBIAN_FRONTEND": "noninteractive",
                "PASSWORD": settings.STUDENT_PASSWORD,
            },
        )
        logger.info("New container started")
        return container

    async def provision(self, lab_type: str) -> LabContainer:
        """Acquire, bootstrap and install exercises for a lab container."""
        logger.info(f"Creating lab container for lab: {lab_type}...")
        container = await self.acquire(lab_type)
        await self.bootstrap.run(container)
        exercises = await self.installer.install(container, lab_type)

        summary = await self.runtime.describe(container)
        logger.info(f"Container {summary.id[:12]} ready: {summary.name}")
        return LabContainer(
            container=container,
            container_id=summary.id,
            container_name=summary.name,
            exercises=exercises,
        )
