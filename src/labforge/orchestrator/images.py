"""Base image provisioning for lab containers."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import pathlib

from labforge.common import settings
from labforge.orchestrator.runtime import ContainerRuntimeError, DockerRuntime

logger = logging.getLogger(__name__)


def get_source_hash(dockerfile: pathlib.Path) -> str:
    """Compute hash of the Dockerfile for change detection."""
    hasher = hashlib.sha256()
    if dockerfile.exists():
        hasher.update(dockerfile.read_bytes())
    return hasher.hexdigest()[:12]


class ImageProvisioner:
    """Makes sure a usable image exists before containers are created.

    The configured base image is built from its Dockerfile when missing. A
    failed build never aborts the caller: the known-good public image is
    pulled and used instead.
    """

    def __init__(
        self,
        runtime: DockerRuntime,
        base_image: str = settings.LAB_BASE_IMAGE,
        dockerfile: pathlib.Path = settings.LAB_BASE_DOCKERFILE,
        build_context: pathlib.Path = settings.LAB_BASE_BUILD_CONTEXT,
        fallback_image: str = settings.LAB_FALLBACK_IMAGE,
    ):
        self.runtime = runtime
        self.base_image = base_image
        self.dockerfile = pathlib.Path(dockerfile)
        self.build_context = pathlib.Path(build_context)
        self.fallback_image = fallback_image
        self._lock = asyncio.Lock()

    async def ensure_base_image(self) -> str:
        """Return the image new containers should be created from."""
        async with self._lock:
            if await self.runtime.image_exists(self.base_image):
                return self.base_image

            logger.warning(f"Lab base image {self.base_image} missing, building...")
            try:
                await self.build_base_image()
                return self.base_image
            except (ContainerRuntimeError, FileNotFoundError) as e:
                logger.error(f"Failed to build lab base image: {e}")
                logger.warning(f"Falling back to {self.fallback_image}")
                return await self.ensure_fallback_image()

    async def build_base_image(self) -> None:
        if not self.dockerfile.exists():
            raise FileNotFoundError(f"Dockerfile not found: {self.dockerfile}")

        source_hash = get_source_hash(self.dockerfile)
        logger.info(
            f"Building {self.base_image} from {self.dockerfile} (hash: {source_hash})..."
        )
        await self.runtime.build_image(
            tag=self.base_image,
            context=str(self.build_context),
            dockerfile=os.path.relpath(self.dockerfile, self.build_context),
            labels={"managed-by": "labforge", "source-hash": source_hash},
        )
        logger.info(f"Successfully built image: {self.base_image}")

    async def ensure_fallback_image(self) -> str:
        if not await self.runtime.image_exists(self.fallback_image):
            await self.runtime.pull_image(self.fallback_image)
        return self.fallback_image
