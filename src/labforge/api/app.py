"""
FastAPI application for the lab session server.
"""

import contextlib
import logging
import sys

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from labforge.api.custom_labs import router as custom_labs_router
from labforge.api.deps import LabServices, get_services, shutdown_services
from labforge.api.sessions import router as sessions_router
from labforge.api.terminal import router as terminal_router
from labforge.common import settings

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Stop every session container on the way out
    await shutdown_services()


app = FastAPI(title="Linux Lab Forge API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render errors as `{"error": ...}`, keeping structured details as-is."""
    body = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(body, status_code=exc.status_code, headers=exc.headers)


app.include_router(sessions_router)
app.include_router(custom_labs_router)
app.include_router(terminal_router)


@app.get("/health")
async def health_check(services: LabServices = Depends(get_services)) -> dict:
    """Report whether the container engine is reachable."""
    return {
        "status": "ok",
        "docker": await services.runtime.ping(),
        "activeSessions": len(services.registry),
    }


def main(reload: bool = settings.RELOAD):
    """Run the API server."""
    import uvicorn

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )
    uvicorn.run(
        "labforge.api.app:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        reload=reload,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
