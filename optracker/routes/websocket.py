"""
WebSocket routes for live operation updates.
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from typing import Dict
import logging
import json
import asyncio
import threading
from datetime import datetime

from optracker.errors import NotFound
from optracker.models.operation import OperationRecord

logger = logging.getLogger(__name__)
router = APIRouter()

# Close code sent when the operation id is unknown
CLOSE_UNKNOWN_OPERATION = 4404


def update_message(record: OperationRecord) -> dict:
    return {
        "type": "operation_update",
        "operation_id": record.id,
        "timestamp": datetime.now().isoformat(),
        "data": record.model_dump(mode="json"),
    }


class ConnectionManager:
    """Fans operation changes out to WebSocket subscribers.

    ``notify`` is registered as a lifecycle listener and may be called from
    any thread; updates are handed to each subscriber's event loop.
    """

    def __init__(self):
        # Map operation id to subscriber queues and the loop that owns each
        self.subscribers: Dict[str, Dict[asyncio.Queue, asyncio.AbstractEventLoop]] = {}
        self._lock = threading.Lock()

    def subscribe(self, operation_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        loop = asyncio.get_running_loop()
        with self._lock:
            self.subscribers.setdefault(operation_id, {})[queue] = loop
        logger.info(f"WebSocket subscribed to operation {operation_id}")
        return queue

    def unsubscribe(self, operation_id: str, queue: asyncio.Queue):
        with self._lock:
            queues = self.subscribers.get(operation_id)
            if queues is None:
                return
            queues.pop(queue, None)
            # Clean up empty operation channels
            if not queues:
                del self.subscribers[operation_id]
        logger.info(f"WebSocket unsubscribed from operation {operation_id}")

    def notify(self, record: OperationRecord):
        with self._lock:
            targets = list(self.subscribers.get(record.id, {}).items())
        for queue, loop in targets:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, record)
            except RuntimeError:
                # Loop already closed; the connection is gone
                self.unsubscribe(record.id, queue)

    def subscriber_count(self, operation_id: str) -> int:
        with self._lock:
            return len(self.subscribers.get(operation_id, {}))


async def _send_updates(websocket: WebSocket, queue: asyncio.Queue):
    last_version = 0
    while True:
        record: OperationRecord = await queue.get()
        if record.version <= last_version:
            continue
        last_version = record.version
        await websocket.send_text(json.dumps(update_message(record)))
        if record.done:
            return


async def _receive_messages(websocket: WebSocket, operation_id: str):
    while True:
        data = await websocket.receive_text()
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON received from WebSocket for operation {operation_id}")
            continue

        if isinstance(message, dict) and message.get("type") == "ping":
            await websocket.send_text(json.dumps({
                "type": "pong",
                "timestamp": datetime.now().isoformat()
            }))


@router.websocket("/ws/operations/{operation_id}")
async def websocket_endpoint(websocket: WebSocket, operation_id: str):
    """
    WebSocket endpoint for operation updates.

    Streams a snapshot of the operation followed by every stored change, and
    closes once the terminal update has been sent.
    """
    service = websocket.app.state.operations_service
    connections: ConnectionManager = websocket.app.state.connections

    try:
        service.get(operation_id)
    except NotFound:
        await websocket.close(code=CLOSE_UNKNOWN_OPERATION, reason="Unknown operation")
        return

    await websocket.accept()
    # Subscribe before taking the snapshot so no change falls in between
    queue = connections.subscribe(operation_id)
    try:
        await websocket.send_text(json.dumps({
            "type": "connected",
            "operation_id": operation_id,
            "timestamp": datetime.now().isoformat(),
            "message": "Connected to operation updates"
        }))
        queue.put_nowait(service.get(operation_id))

        sender = asyncio.create_task(_send_updates(websocket, queue))
        receiver = asyncio.create_task(_receive_messages(websocket, operation_id))
        done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.warning(f"WebSocket stream for operation {operation_id} ended: {error}")
        if sender in done and sender.exception() is None:
            await websocket.close()
    except (WebSocketDisconnect, NotFound):
        pass
    except Exception as e:
        logger.error(f"WebSocket error for operation {operation_id}: {e}")
    finally:
        connections.unsubscribe(operation_id, queue)
