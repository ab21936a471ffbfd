"""WebSocket handler for real-time workflow event streaming.

This module handles WebSocket connections that stream workflow events
(stage changes, approval gates, subtask progress) to clients and receive
commands (ping, cancel) from them.
"""

import asyncio
import contextlib

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from api.routes import get_services
from events import EventType, get_event_bus
from models.database import WorkflowNotFoundError

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()


@websocket_router.websocket("/ws/{workflow_id}")
async def websocket_endpoint(websocket: WebSocket, workflow_id: str) -> None:
    """WebSocket endpoint for real-time event streaming.

    This endpoint handles bidirectional communication:
    - Server -> Client: Workflow events (stage changes, subtask updates, etc.)
    - Client -> Server: Commands (ping, cancel)

    Args:
        websocket: The WebSocket connection.
        workflow_id: The workflow to stream events for.
    """
    await websocket.accept()

    logger.info("websocket_connected", workflow_id=workflow_id)

    event_bus = get_event_bus()

    # Subscribe before replaying history so no event falls between the two.
    queue = event_bus.subscribe(workflow_id)

    try:
        last_replay_timestamp: float = 0.0
        history = event_bus.get_event_history(workflow_id)
        if history:
            logger.info(
                "replaying_event_history",
                workflow_id=workflow_id,
                event_count=len(history),
            )
            for event in history:
                try:
                    await websocket.send_json(event.model_dump(mode="json"))
                    last_replay_timestamp = event.timestamp
                except WebSocketDisconnect:
                    logger.info("websocket_disconnect_during_replay", workflow_id=workflow_id)
                    return
                except Exception as e:
                    logger.error("websocket_replay_error", workflow_id=workflow_id, error=str(e))
                    return

        async def send_events() -> None:
            """Forward events from the event bus to the WebSocket client.

            Events with timestamp <= last_replay_timestamp were already sent
            from history and are skipped.
            """
            try:
                while True:
                    event = await queue.get()
                    if event.type == EventType.STREAM_CLOSED:
                        logger.info("stream_closed_sentinel", workflow_id=workflow_id)
                        break

                    if event.timestamp <= last_replay_timestamp:
                        logger.debug(
                            "event_skipped_duplicate",
                            workflow_id=workflow_id,
                            event_type=event.type.value,
                        )
                        continue

                    await websocket.send_json(event.model_dump(mode="json"))
                    logger.debug(
                        "event_sent",
                        workflow_id=workflow_id,
                        event_type=event.type.value,
                    )
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", workflow_id=workflow_id)
            except Exception as e:
                logger.error("websocket_send_error", workflow_id=workflow_id, error=str(e))

        async def receive_commands() -> None:
            """Receive and process commands from the WebSocket client."""
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", workflow_id=workflow_id)
                        continue
                    command_type = data.get("type")

                    logger.info(
                        "command_received",
                        workflow_id=workflow_id,
                        command_type=command_type,
                    )

                    if command_type == "cancel":
                        await handle_cancel_command(workflow_id)
                    elif command_type == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning(
                            "unknown_command",
                            workflow_id=workflow_id,
                            command_type=command_type,
                        )
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", workflow_id=workflow_id)
            except Exception as e:
                logger.error("websocket_receive_error", workflow_id=workflow_id, error=str(e))

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

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", workflow_id=workflow_id)
    except Exception as e:
        logger.error("websocket_error", workflow_id=workflow_id, error=str(e))
    finally:
        event_bus.unsubscribe(workflow_id, queue)
        logger.info("websocket_cleanup_complete", workflow_id=workflow_id)


async def handle_cancel_command(workflow_id: str) -> None:
    """Handle a cancel command: error the workflow's current session.

    Args:
        workflow_id: The workflow to cancel.
    """
    logger.info("cancel_command_processing", workflow_id=workflow_id)

    try:
        await get_services().orchestrator.error_workflow(workflow_id, "Cancelled by user")
    except WorkflowNotFoundError:
        logger.warning("cancel_command_workflow_not_found", workflow_id=workflow_id)
    except Exception as e:
        logger.error("cancel_command_failed", workflow_id=workflow_id, error=str(e))
