"""Interactive terminal over WebSocket.

Bridges a client WebSocket to a bash exec with a pty inside the session's
container. Messages are JSON:

Client -> Server:
- {"type": "input", "data": "..."}: keystrokes for the shell
- {"type": "resize", "rows": N, "cols": N}: resize the pty

Server -> Client:
- {"type": "data", "data": "..."}: terminal output
- {"type": "error", "data": "..."}: setup/runtime failure; the socket is
  closed right after

Closing the WebSocket ends the exec but leaves the container running until
the session is deleted or expires.
"""

import asyncio
import codecs
import json
import logging
from enum import Enum
from typing import Any

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from labforge.api.deps import LabServices, get_services
from labforge.common import settings
from labforge.orchestrator.registry import SessionRegistry
from labforge.orchestrator.runtime import DockerRuntime, PtyStream

logger = logging.getLogger(__name__)

router = APIRouter(tags=["terminal"])

WELCOME_SCRIPT = "\n".join(
    [
        "stty -echo",
        "clear",
        "cat <<EOW",
        "========================================",
        "  Welcome to Linux Lab Forge - REAL CONTAINER!",
        "========================================",
        "",
        "Container Info:",
        "$(uname -a)",
        "",
        "Host: $(hostname)",
        "You are: $(whoami)",
        "Home: $(pwd)",
        "",
        "Try: ls, pwd, cd, grep, or any Linux command!",
        "",
        "EOW",
        f"if [ -f {settings.STUDENT_HOME}/grep-lab/EXERCISES.txt ]; then "
        'echo "Exercises available! Run: cd grep-lab && cat EXERCISES.txt"; '
        'echo "When done, run: finished"; echo ""; fi',
        "stty echo",
    ]
)


class BridgeState(str, Enum):
    CONNECTING = "connecting"
    ATTACHING = "attaching"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


async def send_ws_json(
    websocket: WebSocket, msg_type: str, data: str | None = None, **extra: Any
) -> None:
    """Send a JSON message over WebSocket."""
    msg: dict[str, Any] = {"type": msg_type}
    if data is not None:
        msg["data"] = data
    msg.update(extra)
    await websocket.send_json(msg)


class TerminalBridge:
    def __init__(
        self,
        websocket: WebSocket,
        registry: SessionRegistry,
        runtime: DockerRuntime,
        welcome_delay: float = settings.TERMINAL_WELCOME_DELAY,
    ):
        self.websocket = websocket
        self.registry = registry
        self.runtime = runtime
        self.welcome_delay = welcome_delay
        self.state = BridgeState.CONNECTING
        self.pty: PtyStream | None = None

    async def run(self, session_id: str | None) -> None:
        await self.websocket.accept()
        logger.info(f"WebSocket connection attempt for session: {session_id}")

        session = self.registry.get(session_id) if session_id else None
        if session is None:
            logger.error(f"Invalid session ID: {session_id}")
            await self._fail("Invalid or expired session")
            return

        self.state = BridgeState.ATTACHING
        try:
            logger.info(f"Setting up terminal for container: {session.short_id}")
            self.pty = await self.runtime.open_pty(
                session.container,
                ["/bin/bash"],
                user=settings.STUDENT_USER,
                workdir=settings.STUDENT_HOME,
                environment={"TERM": "xterm-256color"},
            )
        except Exception as e:
            logger.error(f"Error setting up terminal for {session_id}: {e}")
            await self._fail(str(e))
            return

        self.state = BridgeState.ACTIVE
        await self._relay(self.pty, session_id)

    async def _relay(self, pty: PtyStream, session_id: str) -> None:
        output_task = asyncio.create_task(self._container_to_client(pty))
        input_task = asyncio.create_task(self._client_to_container(pty))
        welcome_task = asyncio.create_task(self._send_welcome(pty))

        try:
            # Whichever side finishes first ends the session
            done, pending = await asyncio.wait(
                [output_task, input_task], return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                if not task.cancelled() and (error := task.exception()):
                    logger.error(f"Terminal relay error for {session_id}: {error}")
        finally:
            self.state = BridgeState.CLOSING
            for task in (output_task, input_task, welcome_task):
                task.cancel()
            pty.close()
            await asyncio.gather(output_task, input_task, welcome_task, return_exceptions=True)
            await self._close()
            self.state = BridgeState.CLOSED
            logger.info(f"WebSocket closed for session {session_id}")

    async def _container_to_client(self, pty: PtyStream) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await pty.read()
            if not chunk:
                logger.debug("Container stream ended")
                break
            output = decoder.decode(chunk)
            if output:
                logger.debug(f"Container output: {output[:100]!r}")
                await send_ws_json(self.websocket, "data", output)

    async def _client_to_container(self, pty: PtyStream) -> None:
        while True:
            try:
                raw = await self.websocket.receive_text()
            except WebSocketDisconnect:
                logger.debug("Client disconnected")
                break

            try:
                message = json.loads(raw)
                msg_type = message.get("type")
            except (ValueError, AttributeError) as e:
                logger.error(f"Error processing message: {e}")
                continue

            if msg_type == "input":
                data = message.get("data")
                if isinstance(data, str) and data:
                    await pty.write(data)
            elif msg_type == "resize":
                try:
                    await pty.resize(int(message["rows"]), int(message["cols"]))
                except (KeyError, TypeError, ValueError) as e:
                    logger.error(f"Invalid resize message: {e}")
                except Exception as e:
                    logger.debug(f"Resize failed: {e}")
            else:
                logger.debug(f"Ignoring message type: {msg_type}")

    async def _send_welcome(self, pty: PtyStream) -> None:
        await asyncio.sleep(self.welcome_delay)
        await pty.write(f"{WELCOME_SCRIPT}\n")

    async def _fail(self, error: str) -> None:
        try:
            await send_ws_json(self.websocket, "error", error)
        finally:
            await self._close()
            self.state = BridgeState.CLOSED

    async def _close(self) -> None:
        try:
            await self.websocket.close()
        except (RuntimeError, WebSocketDisconnect) as e:
            logger.debug(f"WebSocket already closed: {e}")


@router.websocket("/terminal")
async def terminal(
    websocket: WebSocket,
    session_id: str | None = Query(None, alias="sessionId"),
    services: LabServices = Depends(get_services),
) -> None:
    bridge = TerminalBridge(websocket, services.registry, services.runtime)
    await bridge.run(session_id)
