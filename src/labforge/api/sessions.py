"""API endpoints for lab session management."""

import logging

from docker.errors import NotFound
from fastapi import APIRouter, Depends, HTTPException

from labforge.api.deps import get_registry, get_runtime
from labforge.common import settings
from labforge.common.lab_store import CamelModel
from labforge.orchestrator.registry import SessionRegistry
from labforge.orchestrator.runtime import (
    ContainerRuntimeError,
    DockerRuntime,
    RuntimeUnavailableError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])

# Runs as the student, so $HOME is the student's home
CHECK_COMMAND = (
    "if [ -x /usr/local/bin/finished ]; then /usr/local/bin/finished; "
    'elif [ -x "$HOME/bin/finished" ]; then "$HOME/bin/finished"; '
    'else echo "finished script not installed"; fi'
)


class CreateSessionRequest(CamelModel):
    lab_type: str | None = None


class SessionCreated(CamelModel):
    session_id: str
    container_id: str
    container_name: str
    username: str = settings.STUDENT_USER
    password: str = settings.STUDENT_PASSWORD
    message: str = "SSH container ready"


class SessionSummary(CamelModel):
    session_id: str
    container_id: str
    created: str


class SessionList(CamelModel):
    sessions: list[SessionSummary]


class CheckResult(CamelModel):
    output: str


@router.post("")
async def create_session(
    request: CreateSessionRequest | None = None,
    registry: SessionRegistry = Depends(get_registry),
) -> SessionCreated:
    """Provision (or reuse) a lab container and open a session on it."""
    lab_type = request.lab_type if request else None
    try:
        session = await registry.create_session(lab_type)
    except RuntimeUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.exception(f"Error creating session for lab {lab_type}")
        raise HTTPException(
            status_code=500,
            detail={"error": "Failed to create lab session", "details": str(e)},
        )

    return SessionCreated(
        session_id=session.session_id,
        container_id=session.short_id or "unknown",
        container_name=session.container_name or settings.DEFAULT_CONTAINER_NAME,
    )


@router.get("")
async def list_sessions(registry: SessionRegistry = Depends(get_registry)) -> SessionList:
    return SessionList(
        sessions=[
            SessionSummary(
                session_id=s.session_id,
                container_id=s.short_id,
                created=s.created_at.isoformat(),
            )
            for s in registry.list_sessions()
        ]
    )


@router.delete("/{session_id}")
async def delete_session(
    session_id: str, registry: SessionRegistry = Depends(get_registry)
) -> dict:
    if not await registry.delete(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"message": "Session terminated", "sessionId": session_id}


@router.post("/{session_id}/check")
async def check_session(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry),
    runtime: DockerRuntime = Depends(get_runtime),
) -> CheckResult:
    """Run the lab's `finished` validator inside the session container."""
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")

    try:
        result = await runtime.exec(
            session.container,
            ["/bin/bash", "-lc", CHECK_COMMAND],
            user=settings.STUDENT_USER,
            workdir=settings.STUDENT_HOME,
            environment={"HOME": settings.STUDENT_HOME},
        )
    except (ContainerRuntimeError, NotFound) as e:
        logger.error(f"Error running finished for {session_id}: {e}")
        raise HTTPException(
            status_code=500,
            detail={"error": "Failed to run finished", "details": str(e)},
        )
    return CheckResult(output=result.output)
