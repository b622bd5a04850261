"""Installs a lab's exercise files into the student's home directory."""

import asyncio
import logging
import pathlib
import re
from dataclasses import dataclass
from typing import Any

from labforge.common import settings
from labforge.common.lab_store import LabStore
from labforge.orchestrator.results import StepResult, StepStatus
from labforge.orchestrator.runtime import ContainerRuntimeError, DockerRuntime

logger = logging.getLogger(__name__)

HELPER_SCRIPT = "run-lab.sh"
HELPER_SOURCE_LINE = re.compile(r"^[^\n]*\bsource\s+[^\n]*run-lab\.sh[^\n]*(\n|$)", re.M)

EXERCISE_SCRIPTS = {
    "basics-1": "basics-1-exercises.sh",
    "basics-2": "basics-2-exercises.sh",
    "basics-3": "basics-3-exercises.sh",
    "basics-4": "basics-4-exercises.sh",
    "basics-5": "basics-5-exercises.sh",
    "filesystem-1": "filesystem-1-exercises.sh",
    "filesystem-2": "filesystem-2-exercises.sh",
    "filesystem-3": "filesystem-3-exercises.sh",
    "filesystem-4": "filesystem-4-exercises.sh",
    "filesystem-5": "filesystem-5-exercises.sh",
    "permissions-1": "permissions-1-exercises.sh",
    "permissions-2": "permissions-2-exercises.sh",
    "permissions-3": "permissions-3-exercises.sh",
    "permissions-4": "permissions-4-exercises.sh",
    "processes-1": "processes-1-exercises.sh",
    "processes-2": "processes-2-exercises.sh",
    "processes-3": "processes-3-exercises.sh",
    "processes-4": "processes-4-exercises.sh",
    "networking-1": "networking-1-exercises.sh",
    "networking-2": "networking-2-exercises.sh",
    "networking-3": "networking-3-exercises.sh",
    "networking-4": "networking-4-exercises.sh",
    "scripting-1": "scripting-1-exercises.sh",
    "scripting-2": "scripting-2-exercises.sh",
    "scripting-3": "scripting-3-exercises.sh",
    "scripting-4": "scripting-4-exercises.sh",
    "security-1": "security-1-exercises.sh",
    "security-2": "security-2-exercises.sh",
    "security-3": "security-3-exercises.sh",
    "sysadmin-1": "sysadmin-1-exercises.sh",
    "sysadmin-2": "sysadmin-2-exercises.sh",
    # Tool-focused labs
    "awk": "awk-exercises.sh",
    "sed": "sed-exercises.sh",
    "grep": "grep-exercises.sh",
    "git": "git-exercises.sh",
    "vim": "vim-exercises.sh",
    "text-processing": "text-processing-exercises.sh",
}


@dataclass
class ResolvedScript:
    path: pathlib.Path
    lab_id: str
    source: str  # "custom" or "built-in"


def strip_helper_source(script: str) -> str:
    """Drop lines that source the helper, since it gets inlined."""
    return HELPER_SOURCE_LINE.sub("", script)


def combine_scripts(script: str, helper: str) -> str:
    return f"{strip_helper_source(script)}\n{helper}"


class ExerciseInstaller:
    def __init__(
        self,
        runtime: DockerRuntime,
        lab_store: LabStore,
        exercises_dir: pathlib.Path = settings.EXERCISES_DIR,
        default_lab_type: str = settings.DEFAULT_LAB_TYPE,
        exercise_scripts: dict[str, str] = EXERCISE_SCRIPTS,
    ):
        self.runtime = runtime
        self.lab_store = lab_store
        self.exercises_dir = pathlib.Path(exercises_dir)
        self.default_lab_type = default_lab_type
        self.exercise_scripts = exercise_scripts

    async def resolve(self, lab_type: str) -> ResolvedScript | None:
        """Find the setup script for a lab: custom labs win over built-ins."""
        custom_lab = await asyncio.to_thread(self.lab_store.get, lab_type)
        if custom_lab:
            return ResolvedScript(
                path=self.lab_store.resolve_script_path(custom_lab),
                lab_id=lab_type,
                source="custom",
            )

        effective = lab_type if lab_type in self.exercise_scripts else self.default_lab_type
        filename = self.exercise_scripts.get(effective)
        if not filename:
            return None
        return ResolvedScript(
            path=self.exercises_dir / filename, lab_id=effective, source="built-in"
        )

    def load_script(self, resolved: ResolvedScript) -> str:
        script = resolved.path.read_text(encoding="utf-8")
        helper_path = self.exercises_dir / HELPER_SCRIPT
        helper = helper_path.read_text(encoding="utf-8") if helper_path.exists() else ""
        return combine_scripts(script, helper)

    async def install(self, container: Any, lab_type: str) -> StepResult:
        """Best-effort install; failures come back as DEGRADED, never raised."""
        resolved = await self.resolve(lab_type)
        if resolved is None or not resolved.path.exists():
            logger.info(f"No exercises configured or script missing for lab type: {lab_type}")
            return StepResult.skipped(f"no setup script for {lab_type}")

        logger.info(
            f"Installing {resolved.source} script for lab {lab_type} from {resolved.path}..."
        )
        try:
            combined = await asyncio.to_thread(self.load_script, resolved)
            logger.debug(f"Exercise script loaded, combined size: {len(combined)} bytes")

            result = await self.runtime.exec(
                container,
                ["/bin/bash", "-c", combined],
                user=settings.STUDENT_USER,
                workdir=settings.STUDENT_HOME,
                environment={"HOME": settings.STUDENT_HOME, "LAB_ID": resolved.lab_id},
            )
        except (OSError, ContainerRuntimeError) as e:
            logger.error(f"Failed to install exercises for {lab_type}: {e}")
            return StepResult.degraded(str(e))

        logger.debug(f"Full exercise output: {result.output}")
        if result.exit_code != 0:
            logger.warning(
                f"Exercise script for {lab_type} exited with code {result.exit_code}"
            )
            return StepResult.degraded(
                f"setup script exited with code {result.exit_code}", result.output
            )

        logger.info(f"{resolved.source} script installed successfully as {resolved.lab_id}")
        return StepResult(StepStatus.OK, output=result.output)
