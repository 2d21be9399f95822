"""Tests for the WebSocket status broadcaster."""

import orjson

from services.status_broadcaster import StatusBroadcaster


class FakeWebSocket:
    def __init__(self, fail=False):
        self.accepted = False
        self.sent = []
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.fail and self.accepted and self.sent:
            raise RuntimeError("connection closed")
        self.sent.append(orjson.loads(text))


async def test_connect_sends_initial_status():
    broadcaster = StatusBroadcaster()
    broadcaster.publish("workflow-status:u1", {"nodeId": "n1", "status": "success"})

    ws = FakeWebSocket()
    await broadcaster.connect(ws, "workflow-status:u1")

    assert ws.accepted
    assert ws.sent[0]["type"] == "initial_status"
    assert ws.sent[0]["nodes"]["n1"]["status"] == "success"
    assert broadcaster.connection_count == 1


async def test_publish_reaches_channel_subscribers_only():
    broadcaster = StatusBroadcaster()
    mine, other = FakeWebSocket(), FakeWebSocket()
    await broadcaster.connect(mine, "workflow-status:u1")
    await broadcaster.connect(other, "workflow-status:u2")

    broadcaster.publish("workflow-status:u1", {"nodeId": "n1", "status": "loading"})
    await broadcaster.drain()

    assert mine.sent[-1] == {"type": "node_status", "nodeId": "n1", "status": "loading"}
    assert len(other.sent) == 1


async def test_failed_socket_is_dropped():
    broadcaster = StatusBroadcaster()
    ws = FakeWebSocket(fail=True)
    await broadcaster.connect(ws, "c")

    broadcaster.publish("c", {"nodeId": "n1", "status": "loading"})
    await broadcaster.drain()

    assert broadcaster.subscriber_count("c") == 0


async def test_disconnect_and_last_status():
    broadcaster = StatusBroadcaster()
    ws = FakeWebSocket()
    await broadcaster.connect(ws, "c")
    await broadcaster.disconnect(ws, "c")

    broadcaster.publish("c", {"nodeId": "n1", "status": "error"})
    assert broadcaster.connection_count == 0
    assert broadcaster.get_node_status("c", "n1")["status"] == "error"

    broadcaster.clear_channel("c")
    assert broadcaster.get_node_status("c", "n1") is None


def test_publish_without_event_loop_is_safe():
    StatusBroadcaster().publish("c", {"nodeId": "n1", "status": "loading"})


async def test_retained_status_is_bounded():
    broadcaster = StatusBroadcaster(max_channels=2, max_nodes_per_channel=2)
    watched = FakeWebSocket()
    await broadcaster.connect(watched, "watched")

    for node in ("n1", "n2", "n3"):
        broadcaster.publish("watched", {"nodeId": node, "status": "success"})
    for channel in ("a", "b", "c"):
        broadcaster.publish(channel, {"nodeId": "n1", "status": "success"})
    await broadcaster.drain()

    assert broadcaster.get_node_status("watched", "n1") is None
    assert broadcaster.get_node_status("watched", "n3")["status"] == "success"
    assert broadcaster.get_node_status("a", "n1") is None
    assert broadcaster.get_node_status("c", "n1") is not None
