"""WebSocket handler for real-time event streaming.

This module streams every event bus event (workspace, runner, task, memory and
notification events) to connected clients and receives commands (stop a run,
ping) from them.
"""

import asyncio
import contextlib
from typing import Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events.bus import EventBus, HistoryFilter
from events.types import Event
from sandbox.runner import RunNotFoundError, SandboxRunner

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

HISTORY_REPLAY_LIMIT = 200


@websocket_router.websocket("/ws/events")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for real-time event streaming.

    This endpoint handles bidirectional communication:
    - Server -> Client: Bus events, recent history first
    - Client -> Server: Commands (stop_run, stop_all, ping)

    Args:
        websocket: The WebSocket connection.
    """
    await websocket.accept()
    client_id = id(websocket)
    logger.info("websocket_connected", client_id=client_id)

    event_bus: EventBus = websocket.app.state.event_bus
    runner: SandboxRunner = websocket.app.state.runner

    # Subscribe FIRST to start capturing live events, then replay history, so
    # nothing published in between is missed.
    queue: asyncio.Queue[Event] = asyncio.Queue()
    unsubscribe = event_bus.subscribe_all(queue.put_nowait)

    try:
        last_replay_timestamp = 0.0
        history = event_bus.get_history(HistoryFilter(limit=HISTORY_REPLAY_LIMIT))
        if history:
            logger.info("replaying_event_history", client_id=client_id, event_count=len(history))
        for event in history:
            try:
                await websocket.send_json(event.to_json())
                last_replay_timestamp = event.timestamp
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_replay", client_id=client_id)
                return

        async def send_events() -> None:
            """Forward bus events, skipping ones already sent from history."""
            try:
                while True:
                    event = await queue.get()
                    if event.timestamp <= last_replay_timestamp:
                        continue
                    await websocket.send_json(event.to_json())
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", client_id=client_id)

        async def receive_commands() -> None:
            """Receive and process commands from the WebSocket client."""
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", client_id=client_id)
                        continue
                    reply = await handle_command(runner, data)
                    if reply is not None:
                        await websocket.send_json(reply)
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", client_id=client_id)

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        # Either side finishing (usually a disconnect) ends the connection
        done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for task in done:
            if task.exception() is not None:
                logger.error(
                    "websocket_task_failed",
                    client_id=client_id,
                    error=str(task.exception()),
                )

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", client_id=client_id)
    finally:
        unsubscribe()
        logger.info("websocket_cleanup_complete", client_id=client_id)


async def handle_command(runner: SandboxRunner, data: dict[str, Any]) -> dict[str, Any] | None:
    """Execute one client command.

    Returns:
        A reply to send back, or None.
    """
    command_type = data.get("type")
    logger.info("command_received", command_type=command_type)

    if command_type == "ping":
        return {"type": "pong", "timestamp": data.get("timestamp")}

    if command_type == "stop_run":
        run_id = str(data.get("run_id", ""))
        try:
            await runner.stop(run_id)
        except RunNotFoundError:
            logger.warning("stop_command_run_not_found", run_id=run_id)
            return {"type": "error", "error": f"Run {run_id} not found"}
        return None

    if command_type == "stop_all":
        stopped = await runner.stop_all()
        return {"type": "stopped", "count": stopped}

    logger.warning("unknown_command", command_type=command_type)
    return {"type": "error", "error": f"Unknown command: {command_type}"}
