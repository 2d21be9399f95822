"""WebSocket Status Broadcaster Service.

Manages WebSocket subscriptions per channel and fans node status updates out
to the subscribers of a channel (``workflow-status:{caller_id}``).

``publish(channel, payload)`` is the status publisher handed to node
executors: it never blocks and never raises. Delivery happens in a background
task; failed sockets are dropped.
"""

import asyncio
from collections import OrderedDict
from typing import Any, Dict, Optional, Set

import orjson
from fastapi import WebSocket

from core.logging import get_logger

logger = get_logger(__name__)


class StatusBroadcaster:
    """Manages WebSocket connections and broadcasts status updates."""

    def __init__(self, max_channels: int = 256, max_nodes_per_channel: int = 500):
        self._channels: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()
        # channel -> node_id -> last status payload, least recently published first
        self._last_status: "OrderedDict[str, OrderedDict[str, Dict[str, Any]]]" = OrderedDict()
        self.max_channels = max_channels
        self.max_nodes_per_channel = max_nodes_per_channel

    async def connect(self, websocket: WebSocket, channel: str):
        """Accept a WebSocket and subscribe it to ``channel``."""
        await websocket.accept()
        async with self._lock:
            self._channels.setdefault(channel, set()).add(websocket)
        logger.info("[StatusBroadcaster] Client connected", channel=channel,
                    subscribers=self.subscriber_count(channel))

        # Send current node states immediately
        await websocket.send_text(orjson.dumps({
            "type": "initial_status",
            "channel": channel,
            "nodes": dict(self._last_status.get(channel, {})),
        }).decode())

    async def disconnect(self, websocket: WebSocket, channel: str):
        """Remove a WebSocket subscription."""
        async with self._lock:
            subscribers = self._channels.get(channel)
            if subscribers is not None:
                subscribers.discard(websocket)
                if not subscribers:
                    del self._channels[channel]
        logger.info("[StatusBroadcaster] Client disconnected", channel=channel,
                    subscribers=self.subscriber_count(channel))

    def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        """Fire-and-forget publish of a node status payload."""
        node_id = payload.get("nodeId")
        if node_id is not None:
            self._remember(channel, node_id, payload)

        if not self._channels.get(channel):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("[StatusBroadcaster] No running loop, status dropped", channel=channel)
            return

        task = loop.create_task(self.broadcast(channel, {"type": "node_status", **payload}))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _remember(self, channel: str, node_id: str, payload: Dict[str, Any]) -> None:
        nodes = self._last_status.setdefault(channel, OrderedDict())
        self._last_status.move_to_end(channel)
        nodes[node_id] = payload
        nodes.move_to_end(node_id)
        while len(nodes) > self.max_nodes_per_channel:
            nodes.popitem(last=False)

        # Evict idle channels first; subscribed ones keep their state
        idle = [c for c in self._last_status if c != channel and not self._channels.get(c)]
        for stale in idle[:max(0, len(self._last_status) - self.max_channels)]:
            del self._last_status[stale]

    async def broadcast(self, channel: str, message: Dict[str, Any]):
        """Send a message to every subscriber of ``channel``.

        Uses asyncio.TaskGroup for structured concurrency; per-client send
        failures drop that client.
        """
        async with self._lock:
            connections_list = list(self._channels.get(channel, ()))

        if not connections_list:
            return

        message_text = orjson.dumps(message).decode()
        disconnected: Set[WebSocket] = set()

        async def send_to_client(connection: WebSocket):
            try:
                await connection.send_text(message_text)
            except Exception as e:
                logger.warning("[StatusBroadcaster] Send failed", channel=channel, error=str(e))
                disconnected.add(connection)

        async with asyncio.TaskGroup() as tg:
            for conn in connections_list:
                tg.create_task(send_to_client(conn))

        if disconnected:
            async with self._lock:
                subscribers = self._channels.get(channel)
                if subscribers is not None:
                    subscribers -= disconnected

    async def drain(self):
        """Wait for in-flight deliveries (used on shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # =========================================================================
    # Getters
    # =========================================================================

    def get_node_status(self, channel: str, node_id: str) -> Optional[Dict[str, Any]]:
        """Last published status of a node on a channel."""
        return self._last_status.get(channel, {}).get(node_id)

    def clear_channel(self, channel: str) -> None:
        self._last_status.pop(channel, None)

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    @property
    def connection_count(self) -> int:
        """Get the number of active WebSocket connections."""
        return sum(len(subscribers) for subscribers in self._channels.values())
