"""Syntax-check and run user-submitted lab scripts inside a container.

A generated wrapper script runs `bash -n` and then the script itself (the
real run happens even when the syntax check fails), snapshots the working
tree, and prints each artifact between a pair of section markers:

    ___SECTION_START__RUN_OUT___
    ...captured output...
    ___SECTION_END__RUN_OUT___

The markers are plain text in the same stream as the script's own output,
so a script that prints a marker itself can corrupt the sections. That is
a known limitation of the framing.

Two entry points share the protocol:
- `test` runs in one long-lived shared sandbox container
- `preview` runs as the student in a fresh session container that stays up
  afterwards, so a terminal can be opened onto the result
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
import secrets
from dataclasses import dataclass
from typing import Any

from docker.errors import NotFound

from labforge.common import settings
from labforge.orchestrator.images import ImageProvisioner
from labforge.orchestrator.registry import Session, SessionRegistry
from labforge.orchestrator.runtime import ContainerRuntimeError, DockerRuntime

logger = logging.getLogger(__name__)

SYNTAX_OUT = "SYNTAX_OUT"
RUN_OUT = "RUN_OUT"
META = "META"
TREE = "TREE"

STATUS_PATTERN = r"^{key}=(\d+)\s*$"


def section_markers(name: str) -> tuple[str, str]:
    return f"___SECTION_START__{name}___", f"___SECTION_END__{name}___"


def find_section(raw: str, name: str) -> str | None:
    """Text between the first start marker and the first end marker after it.

    Returns None when the marker pair is missing or out of order.
    """
    start, end = section_markers(name)
    start_idx = raw.find(start)
    if start_idx == -1:
        return None
    body_start = start_idx + len(start)
    end_idx = raw.find(end, body_start)
    if end_idx == -1:
        return None
    return raw[body_start:end_idx].strip()


def parse_section(raw: str, name: str) -> str:
    return find_section(raw, name) or ""


def parse_status(meta: str, key: str) -> int | None:
    match = re.search(STATUS_PATTERN.format(key=re.escape(key)), meta, re.M)
    return int(match.group(1)) if match else None


def emit_section(name: str, body: str) -> str:
    start, end = section_markers(name)
    return f'echo "{start}"\n{body}\necho "{end}"\n'


def build_test_script(
    script: str, workdir: str, tree_depth: int = settings.TREE_MAX_DEPTH
) -> str:
    """Wrap `script` so its syntax check, run, and tree come back as sections.

    The script travels base64-encoded so no shell quoting is needed. Captures
    go to a private temporary directory, which keeps concurrent runs in the
    same container apart.
    """
    encoded = base64.b64encode(script.encode("utf-8")).decode("ascii")
    return (
        "set -euo pipefail\n"
        f'WORK="{workdir}"\n'
        'CAPTURE="$(mktemp -d)"\n'
        'rm -rf "$WORK" && mkdir -p "$WORK"\n'
        'cd "$WORK"\n'
        f"echo '{encoded}' | base64 -d > script.sh\n"
        "chmod +x script.sh\n"
        "\n"
        "syntax_status=0\n"
        "run_status=0\n"
        "\n"
        'bash -n script.sh >"$CAPTURE/syntax.out" 2>&1 || syntax_status=$?\n'
        '/bin/bash script.sh >"$CAPTURE/run.out" 2>&1 || run_status=$?\n'
        "\n"
        f"find \"$WORK\" -maxdepth {tree_depth} -printf '%p (%y %s bytes)\\n' "
        '>"$CAPTURE/tree.txt" 2>&1 || true\n'
        "\n"
        + emit_section(SYNTAX_OUT, 'cat "$CAPTURE/syntax.out" 2>/dev/null || true')
        + emit_section(RUN_OUT, 'cat "$CAPTURE/run.out" 2>/dev/null || true')
        + emit_section(
            META, 'echo "syntax_status=${syntax_status}"\necho "run_status=${run_status}"'
        )
        + emit_section(TREE, 'cat "$CAPTURE/tree.txt" 2>/dev/null || true')
        + 'rm -rf "$CAPTURE"\n'
    )


@dataclass
class ExecutionResult:
    syntax_status: int
    run_status: int
    syntax_output: str
    run_output: str
    tree: str
    raw: str = ""
    status_code: int = 0

    @property
    def ok(self) -> bool:
        return self.syntax_status == 0 and self.run_status == 0


def parse_execution_output(raw: str, status_code: int) -> ExecutionResult:
    """Split a captured wrapper stream into an ExecutionResult.

    Missing sections come back empty; the output fields fall back to the
    whole stream and the statuses to the exec's own exit code.
    """
    raw_fallback = raw.strip()
    meta = parse_section(raw, META)
    syntax_status = parse_status(meta, "syntax_status")
    run_status = parse_status(meta, "run_status")
    syntax_output = find_section(raw, SYNTAX_OUT)
    run_output = find_section(raw, RUN_OUT)
    return ExecutionResult(
        syntax_status=status_code if syntax_status is None else syntax_status,
        run_status=status_code if run_status is None else run_status,
        syntax_output=raw_fallback if syntax_output is None else syntax_output,
        run_output=raw_fallback if run_output is None else run_output,
        tree=parse_section(raw, TREE),
        raw=raw_fallback,
        status_code=status_code,
    )


class SharedSandbox:
    """The process-wide container used by every script test.

    The handle is created lazily and checked before each use: a stopped
    container is started again, a vanished one is looked up by name or
    recreated.
    """

    def __init__(
        self,
        runtime: DockerRuntime,
        images: ImageProvisioner,
        name: str = settings.SANDBOX_CONTAINER_NAME,
        memory_limit: str = settings.SANDBOX_MEMORY_LIMIT,
    ):
        self.runtime = runtime
        self.images = images
        self.name = name
        self.memory_limit = memory_limit
        self._container: Any | None = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> Any:
        async with self._lock:
            if self._container is not None:
                try:
                    if not await self.runtime.is_running(self._container):
                        await self.runtime.start(self._container)
                    return self._container
                except (ContainerRuntimeError, NotFound) as e:
                    logger.warning(f"Shared sandbox handle is stale, recreating: {e}")
                    self._container = None

            self._container = await self._adopt_or_create()
            return self._container

    async def _adopt_or_create(self) -> Any:
        for summary in await self.runtime.list_containers():
            if summary.name == self.name:
                container = await self.runtime.get_container(summary.id)
                if not summary.running:
                    await self.runtime.start(container)
                logger.info(f"Adopted existing sandbox container {self.name}")
                return container

        image = await self.images.ensure_base_image()
        container = await self.runtime.run_container(
            image,
            name=self.name,
            command=["/bin/bash", "-lc", "sleep infinity"],
            tty=False,
            stdin_open=False,
            mem_limit=self.memory_limit,
        )
        logger.info(f"Created sandbox container {self.name}")
        return container


class ScriptSandbox:
    def __init__(
        self,
        runtime: DockerRuntime,
        shared: SharedSandbox,
        registry: SessionRegistry,
        workspace: str = settings.SANDBOX_WORKSPACE,
        preview_lab_type: str = settings.PREVIEW_LAB_TYPE,
    ):
        self.runtime = runtime
        self.shared = shared
        self.registry = registry
        self.workspace = workspace
        self.preview_lab_type = preview_lab_type

    async def _execute(
        self,
        container: Any,
        script: str,
        workdir: str,
        *,
        user: str = "",
        home: str,
    ) -> ExecutionResult:
        wrapper = build_test_script(script, workdir)
        result = await self.runtime.exec(
            container,
            ["/bin/bash", "-lc", wrapper],
            user=user,
            environment={"HOME": home},
        )
        logger.debug(f"Script run finished with exec status {result.exit_code}")
        return parse_execution_output(result.output, result.exit_code)

    async def test(self, script: str) -> ExecutionResult:
        """Syntax-check and run `script` in the shared sandbox."""
        container = await self.shared.acquire()
        workdir = f"{self.workspace}/run-{secrets.token_hex(6)}"
        try:
            return await self._execute(container, script, workdir, home=workdir)
        finally:
            await self._discard_workdir(container, workdir)

    async def _discard_workdir(self, container: Any, workdir: str) -> None:
        try:
            await self.runtime.exec(container, ["rm", "-rf", workdir])
        except (ContainerRuntimeError, NotFound) as e:
            logger.warning(f"Failed to remove sandbox workdir {workdir}: {e}")

    async def preview(self, script: str) -> tuple[Session, ExecutionResult]:
        """Run `script` as the student in a new session container.

        The session stays registered (with the usual time-to-live), so the
        caller can open a terminal onto the same workspace afterwards.
        """
        session = await self.registry.create_session(self.preview_lab_type)
        workdir = f"{settings.STUDENT_HOME}/{self.preview_lab_type}"
        result = await self._execute(
            session.container,
            script,
            workdir,
            user=settings.STUDENT_USER,
            home=settings.STUDENT_HOME,
        )
        return session, result
