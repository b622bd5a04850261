"""Service wiring for the API.

Services are built once per process and handed to routes through FastAPI
dependencies, so tests can swap them with `app.dependency_overrides`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Depends

from labforge.common.lab_store import LabStore
from labforge.orchestrator.bootstrap import BootstrapRunner
from labforge.orchestrator.containers import LabContainers
from labforge.orchestrator.exercises import ExerciseInstaller
from labforge.orchestrator.images import ImageProvisioner
from labforge.orchestrator.registry import SessionRegistry
from labforge.orchestrator.runtime import DockerRuntime
from labforge.orchestrator.sandbox import ScriptSandbox, SharedSandbox

logger = logging.getLogger(__name__)


@dataclass
class LabServices:
    runtime: DockerRuntime
    lab_store: LabStore
    registry: SessionRegistry
    sandbox: ScriptSandbox

    @classmethod
    def build(
        cls, runtime: DockerRuntime | None = None, lab_store: LabStore | None = None
    ) -> "LabServices":
        runtime = runtime or DockerRuntime()
        lab_store = lab_store or LabStore()
        images = ImageProvisioner(runtime)
        containers = LabContainers(
            runtime,
            images,
            BootstrapRunner(runtime),
            ExerciseInstaller(runtime, lab_store),
        )
        registry = SessionRegistry(runtime, containers)
        sandbox = ScriptSandbox(runtime, SharedSandbox(runtime, images), registry)
        return cls(runtime=runtime, lab_store=lab_store, registry=registry, sandbox=sandbox)


# Singleton services instance
_services: LabServices | None = None


def get_services() -> LabServices:
    """Get the shared services instance."""
    global _services
    if _services is None:
        _services = LabServices.build()
    return _services


def get_registry(services: LabServices = Depends(get_services)) -> SessionRegistry:
    return services.registry


def get_runtime(services: LabServices = Depends(get_services)) -> DockerRuntime:
    return services.runtime


def get_lab_store(services: LabServices = Depends(get_services)) -> LabStore:
    return services.lab_store


def get_sandbox(services: LabServices = Depends(get_services)) -> ScriptSandbox:
    return services.sandbox


async def shutdown_services() -> None:
    """Stop every live session if services were ever started."""
    global _services
    if _services is None:
        return
    logger.info("Shutting down...")
    await _services.registry.shutdown()
    _services = None
