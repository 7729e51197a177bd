"""WebSocket router for real-time operation updates.

Each client connects as a user at /ws/{user_id} and receives the status
transitions of the operations it owns. Requests sent over the same socket
are answered with a `<type>_result` message echoing the `request_id`.
"""

import time
import asyncio
import weakref
from typing import Dict, Any, Callable, Awaitable, Optional, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from core.container import container
from core.logging import get_logger
from services.orchestration import OperationNotFound, OrchestrationError

logger = get_logger(__name__)

router = APIRouter(tags=["websocket"])

_send_locks: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()


async def _safe_send(websocket: WebSocket, data: dict):
    """Serialize writes per socket; handler tasks reply concurrently."""
    lock = _send_locks.setdefault(websocket, asyncio.Lock())
    async with lock:
        try:
            await websocket.send_json(data)
        except Exception as e:
            logger.error("Send error", error=str(e))


# Handlers get the message and the connected user's id
MessageHandler = Callable[[Dict[str, Any], str], Awaitable[Dict[str, Any]]]

MESSAGE_HANDLERS: Dict[str, MessageHandler] = {}


def message(msg_type: str, *required_fields: str):
    """Register a handler for a message type.

    Missing required fields and orchestration errors become a
    `success: false` reply instead of an exception.
    """
    def decorator(func: MessageHandler) -> MessageHandler:
        async def wrapper(data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
            missing = [name for name in required_fields if not data.get(name)]
            if missing:
                return {"success": False, "error": f"{missing[0]} required"}
            try:
                return {"success": True, **await func(data, user_id)}
            except OperationNotFound as e:
                return {"success": False, "code": "NOT_FOUND", "error": str(e)}
            except OrchestrationError as e:
                return {"success": False, "error": str(e)}
        MESSAGE_HANDLERS[msg_type] = wrapper
        return wrapper
    return decorator


@message("ping")
async def handle_ping(data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    return {"pong": True, "timestamp": time.time()}


@message("start_operation", "operation_type")
async def handle_start_operation(data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    """Start an operation owned by the connected user."""
    operation_id = await container.tracker().start_operation(
        data["operation_type"],
        data.get("payload") or {},
        priority=data.get("priority"),
        user_id=user_id
    )
    return {"operation_id": operation_id}


@message("get_operation_status", "operation_id")
async def handle_get_operation_status(data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    return {"operation": await container.tracker().get_status(data["operation_id"])}


@message("cancel_operation", "operation_id")
async def handle_cancel_operation(data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    return {"operation": await container.tracker().cancel(data["operation_id"])}


@message("get_stats")
async def handle_get_stats(data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    return {"stats": container.tracker().get_stats()}


async def _execute_handler(
    handler: MessageHandler,
    data: Dict[str, Any],
    websocket: WebSocket,
    msg_type: str,
    user_id: str,
):
    reply: Dict[str, Any] = {"type": f"{msg_type}_result"}
    if data.get("request_id"):
        reply["request_id"] = data["request_id"]
    try:
        reply.update(await handler(data, user_id))
    except asyncio.CancelledError:
        logger.debug("Handler cancelled", msg_type=msg_type)
        raise
    except Exception as e:
        logger.error("Handler error", msg_type=msg_type, user_id=user_id, error=str(e))
        reply.update(success=False, error=str(e))
    await _safe_send(websocket, reply)


@router.websocket("/ws/{user_id}")
async def websocket_user_endpoint(websocket: WebSocket, user_id: str):
    """WebSocket endpoint delivering operation updates to one user.

    Receipt and handling are decoupled through a queue; each request runs
    as its own task so a slow provider call never blocks the socket.
    """
    broadcaster = container.broadcaster()
    await broadcaster.connect(user_id, websocket)

    message_queue: asyncio.Queue = asyncio.Queue()
    handler_tasks: Set[asyncio.Task] = set()

    async def receive_loop():
        try:
            while True:
                await message_queue.put(await websocket.receive_json())
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error("Receive error", user_id=user_id, error=str(e))
        finally:
            await message_queue.put(None)

    async def process_loop():
        # None from the receive loop ends the session
        while (data := await message_queue.get()) is not None:
            msg_type = data.get("type", "")
            handler = MESSAGE_HANDLERS.get(msg_type)
            if handler is None:
                logger.warning("Unknown message type", msg_type=msg_type, user_id=user_id)
                await _safe_send(websocket, {
                    "type": "error",
                    "request_id": data.get("request_id"),
                    "code": "UNKNOWN_MESSAGE_TYPE",
                    "message": f"Unknown message type: {msg_type}"
                })
                continue

            task = asyncio.create_task(_execute_handler(handler, data, websocket, msg_type, user_id))
            handler_tasks.add(task)
            task.add_done_callback(handler_tasks.discard)

    try:
        async with asyncio.TaskGroup() as tg:
            tg.create_task(receive_loop())
            tg.create_task(process_loop())

    except* WebSocketDisconnect:
        pass
    except* asyncio.CancelledError:
        pass
    except* Exception as eg:
        for exc in eg.exceptions:
            logger.error("TaskGroup error", user_id=user_id, error=str(exc))
    finally:
        for task in list(handler_tasks):
            if not task.done():
                task.cancel()
        if handler_tasks:
            await asyncio.gather(*handler_tasks, return_exceptions=True)
        await broadcaster.disconnect(user_id, websocket)


@router.get("/ws/info")
async def websocket_info():
    """Get WebSocket connection info."""
    broadcaster = container.broadcaster()
    return {
        "endpoint": "/ws/{user_id}",
        "connected_clients": broadcaster.connection_count,
        "supported_message_types": list(MESSAGE_HANDLERS.keys())
    }
