"""API endpoints for custom labs and script testing."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from labforge.api.deps import get_lab_store, get_runtime, get_sandbox
from labforge.common.lab_store import (
    CamelModel,
    LabNotFoundError,
    LabPayload,
    LabRecord,
    LabStore,
    LabValidationError,
)
from labforge.orchestrator.runtime import DockerRuntime, RuntimeUnavailableError
from labforge.orchestrator.sandbox import ExecutionResult, ScriptSandbox

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/custom-labs", tags=["custom-labs"])


class LabList(CamelModel):
    labs: list[LabRecord]


class LabResponse(CamelModel):
    lab: LabRecord


class ScriptRequest(CamelModel):
    script: str | None = None


class ScriptTestResponse(CamelModel):
    ok: bool
    syntax_status: int
    run_status: int
    syntax_output: str
    run_output: str
    tree: str
    raw: str
    status_code: int

    @classmethod
    def from_result(cls, result: ExecutionResult) -> "ScriptTestResponse":
        return cls(
            ok=result.ok,
            syntax_status=result.syntax_status,
            run_status=result.run_status,
            syntax_output=result.syntax_output,
            run_output=result.run_output,
            tree=result.tree,
            raw=result.raw,
            status_code=result.status_code,
        )


class ScriptPreviewResponse(CamelModel):
    session_id: str
    container_name: str
    ok: bool
    syntax_status: int
    run_status: int
    syntax_output: str
    run_output: str
    tree: str


def require_script(request: ScriptRequest | None) -> str:
    script = request.script if request else None
    if not script or not script.strip():
        raise HTTPException(status_code=400, detail="Script is required")
    return script


async def require_runtime(runtime: DockerRuntime) -> None:
    if not await runtime.ping():
        raise HTTPException(
            status_code=503,
            detail="Docker service is not available. Please start Docker.",
        )


@router.get("")
def list_labs(lab_store: LabStore = Depends(get_lab_store)) -> LabList:
    return LabList(labs=lab_store.list_labs())


@router.post("")
def create_lab(
    payload: LabPayload, lab_store: LabStore = Depends(get_lab_store)
) -> LabResponse:
    try:
        return LabResponse(lab=lab_store.create(payload))
    except LabValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except OSError as e:
        logger.error(f"Custom lab creation failed: {e}")
        raise HTTPException(
            status_code=500,
            detail={"error": "Failed to create custom lab", "details": str(e)},
        )


@router.put("/{lab_id}")
def update_lab(
    lab_id: str, payload: LabPayload, lab_store: LabStore = Depends(get_lab_store)
) -> LabResponse:
    try:
        return LabResponse(lab=lab_store.update(lab_id, payload))
    except LabNotFoundError:
        raise HTTPException(status_code=404, detail="Lab not found")
    except OSError as e:
        logger.error(f"Custom lab update failed: {e}")
        raise HTTPException(
            status_code=500,
            detail={"error": "Failed to update custom lab", "details": str(e)},
        )


@router.post("/test")
async def test_script(
    request: ScriptRequest | None = None,
    sandbox: ScriptSandbox = Depends(get_sandbox),
    runtime: DockerRuntime = Depends(get_runtime),
) -> ScriptTestResponse:
    """Syntax-check and run a script in the shared sandbox container."""
    script = require_script(request)
    await require_runtime(runtime)

    try:
        result = await sandbox.test(script)
    except Exception as e:
        logger.exception("Script test failed")
        raise HTTPException(
            status_code=500, detail={"error": "Failed to test script", "details": str(e)}
        )
    return ScriptTestResponse.from_result(result)


@router.post("/preview")
async def preview_script(
    request: ScriptRequest | None = None,
    sandbox: ScriptSandbox = Depends(get_sandbox),
    runtime: DockerRuntime = Depends(get_runtime),
) -> ScriptPreviewResponse:
    """Run a script in a full lab container and keep it up as a session."""
    script = require_script(request)
    await require_runtime(runtime)

    try:
        session, result = await sandbox.preview(script)
    except RuntimeUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.exception("Preview sandbox failed")
        raise HTTPException(
            status_code=500,
            detail={"error": "Failed to start preview sandbox", "details": str(e)},
        )

    return ScriptPreviewResponse(
        session_id=session.session_id,
        container_name=session.container_name,
        ok=result.ok,
        syntax_status=result.syntax_status,
        run_status=result.run_status,
        syntax_output=result.syntax_output,
        run_output=result.run_output,
        tree=result.tree,
    )
