"""
Notification Service
Pushes invoice and refund updates to connected clients.
Delivery is best-effort: a failed push is logged and never reaches the payment path.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Optional

from fastapi import WebSocket

from ..utils.clock import utcnow

logger = logging.getLogger(__name__)

PAYMENT_SUCCESS = "payment_success"
PAYMENT_FAILED = "payment_failed"
INVOICE_CANCELLED = "invoice_cancelled"
REFUND_REQUESTED = "refund_requested"
REFUND_PROCESSING = "refund_processing"
REFUND_COMPLETED = "refund_completed"
REFUND_REJECTED = "refund_rejected"


class NotificationDispatcher(ABC):
    @abstractmethod
    async def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> bool:
        """Deliver one event to one user; returns whether anyone received it"""


class NullNotificationDispatcher(NotificationDispatcher):
    """Used when no real-time transport is configured"""

    async def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> bool:
        logger.debug(f"🔕 Dropping {event_type} for user {user_id} (no dispatcher configured)")
        return False


class WebSocketNotificationDispatcher(NotificationDispatcher):
    """Fans events out to every open socket of a user"""

    def __init__(self):
        self.connections: dict[str, set[WebSocket]] = defaultdict(set)

    def connect(self, user_id: str, websocket: WebSocket) -> None:
        self.connections[user_id].add(websocket)
        logger.info(f"🔌 WebSocket connected for user {user_id} ({len(self.connections[user_id])} open)")

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        sockets = self.connections.get(user_id)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            self.connections.pop(user_id, None)

    async def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> bool:
        sockets = list(self.connections.get(user_id, ()))
        if not sockets:
            return False

        message = {"type": event_type, "data": payload, "timestamp": utcnow().isoformat()}
        delivered = False
        for websocket in sockets:
            try:
                await websocket.send_json(message)
                delivered = True
            except Exception as e:
                logger.warning(f"⚠️ Dropping dead WebSocket for user {user_id}: {e}")
                self.disconnect(user_id, websocket)
        return delivered


class NotificationPublisher:
    """Schedules dispatcher calls as background tasks so callers never wait on delivery"""

    def __init__(self, dispatcher: Optional[NotificationDispatcher] = None):
        self.dispatcher = dispatcher or NullNotificationDispatcher()
        self._pending: set[asyncio.Task] = set()

    def publish(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(f"❌ No running event loop; {event_type} for user {user_id} not sent")
            return

        task = loop.create_task(self._deliver(user_id, event_type, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, user_id: str, event_type: str, payload: dict[str, Any]) -> bool:
        try:
            delivered = await self.dispatcher.notify(user_id, event_type, payload)
        except Exception as e:
            logger.error(f"❌ Failed to deliver {event_type} to user {user_id}: {e}")
            return False

        if delivered:
            logger.info(f"📨 {event_type} delivered to user {user_id}")
        else:
            logger.debug(f"📭 {event_type} not delivered to user {user_id} (no listeners)")
        return delivered

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every scheduled delivery, including ones scheduled while draining"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
