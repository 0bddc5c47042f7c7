import asyncio
import json
from datetime import datetime

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from chunkrelay.sockets import (
    INIT_BROADCAST_UID,
    MANAGER_KEY,
    NodeMsgType,
    SendError,
    TextMsg,
    WebSocketManager,
    check_uid,
    send_message_to_node,
    setup_socket_routes,
)


class FakeSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_str(self, data):
        if self.fail:
            raise ConnectionResetError("gone")
        self.sent.append(data)


def test_text_msg_omits_missing_data():
    assert TextMsg(NodeMsgType.INIT_NODE).to_json() == '{"type":"init_node"}'


@pytest.mark.parametrize(
    "msg",
    [
        TextMsg(NodeMsgType.PING),
        TextMsg(NodeMsgType.INIT_NODE_SUCCESS, "node-a"),
        TextMsg(NodeMsgType.INIT_NODE_FAILED, {"reason": "x"}),
    ],
)
def test_text_msg_round_trip(msg):
    assert TextMsg.from_json(msg.to_json()) == msg


def test_from_json_keeps_unknown_type():
    msg = TextMsg.from_json('{"type":"other","data":3}')
    assert msg.type == "other"
    assert msg.data == 3


@pytest.mark.parametrize("raw", [b"not json", "[1,2]", '{"type": 5}'])
def test_from_json_rejects_invalid(raw):
    with pytest.raises(ValueError):
        TextMsg.from_json(raw)


def test_add_and_remove_connections():
    manager = WebSocketManager()
    first, second = FakeSocket(), FakeSocket()
    manager.add_connection("a", first)
    manager.add_connection("a", second)
    assert manager.connections("a") == [first, second]
    manager.remove_connection("a", first)
    assert manager.connections("a") == [second]
    manager.remove_connection("a", second)
    assert manager.connections("a") == []
    manager.remove_connection("missing", first)
    assert manager.connections("missing") == []


@pytest.mark.asyncio
async def test_send_to_unknown_node_raises():
    manager = WebSocketManager()
    with pytest.raises(SendError, match="不存在"):
        await manager.send_message("nobody", "hi")


@pytest.mark.asyncio
async def test_send_reaches_every_connection():
    manager = WebSocketManager()
    first, second = FakeSocket(), FakeSocket()
    manager.add_connection("a", first)
    manager.add_connection("a", second)
    await manager.send_message("a", b"hello")
    assert first.sent == ["hello"]
    assert second.sent == ["hello"]


@pytest.mark.asyncio
async def test_send_collects_failures():
    manager = WebSocketManager()
    good, bad = FakeSocket(), FakeSocket(fail=True)
    manager.add_connection("a", bad)
    manager.add_connection("a", good)
    with pytest.raises(SendError, match="gone"):
        await manager.send_message("a", "hello")
    assert good.sent == ["hello"]


@pytest.mark.asyncio
async def test_ping_gets_pong():
    manager = WebSocketManager()
    ws = FakeSocket()
    await manager.handle_text_message(ws, '{"type":"ping"}', "n")
    reply = json.loads(ws.sent[0])
    assert reply["type"] == "pong"
    stamp = datetime.fromisoformat(reply["timestamp"].replace("Z", "+00:00"))
    assert stamp.utcoffset() is not None


@pytest.mark.asyncio
async def test_init_node_notifies_node_and_broadcast():
    manager = WebSocketManager()
    target, watcher, sender = FakeSocket(), FakeSocket(), FakeSocket()
    manager.add_connection("node-a", target)
    manager.add_connection(INIT_BROADCAST_UID, watcher)
    await manager.handle_text_message(
        sender, '{"type":"init_node","data":"node-a"}', "someone"
    )
    assert [TextMsg.from_json(m) for m in target.sent] == [
        TextMsg(NodeMsgType.INIT_NODE)
    ]
    assert [TextMsg.from_json(m) for m in watcher.sent] == [
        TextMsg(NodeMsgType.INIT_NODE_SUCCESS, "node-a")
    ]
    assert sender.sent == []


@pytest.mark.asyncio
async def test_init_node_without_string_data_sends_nothing():
    manager = WebSocketManager()
    watcher = FakeSocket()
    manager.add_connection(INIT_BROADCAST_UID, watcher)
    await manager.handle_text_message(FakeSocket(), '{"type":"init_node","data":7}', "n")
    await manager.handle_text_message(FakeSocket(), '{"type":"init_node"}', "n")
    assert watcher.sent == []


@pytest.mark.asyncio
async def test_unparsable_message_is_ignored():
    manager = WebSocketManager()
    ws = FakeSocket()
    await manager.handle_text_message(ws, "{broken", "n")
    assert ws.sent == []


def test_check_uid_accepts_any_id():
    assert check_uid("abc") is True


@pytest.mark.asyncio
async def test_send_message_to_node_reports_result():
    app = web.Application()
    setup_socket_routes(app)
    ws = FakeSocket()
    app[MANAGER_KEY].add_connection("a", ws)
    assert await send_message_to_node(app, "a", "hi") is True
    assert await send_message_to_node(app, "b", "hi") is False
    assert ws.sent == ["hi"]


@pytest.mark.asyncio
async def test_live_socket_ping_and_cleanup():
    app = web.Application()
    setup_socket_routes(app)
    manager = app[MANAGER_KEY]
    async with TestClient(TestServer(app)) as client:
        ws = await client.ws_connect("/socket/node/node-1")
        await ws.send_json({"type": "ping"})
        reply = await ws.receive_json()
        assert reply["type"] == "pong"
        assert len(manager.connections("node-1")) == 1
        await ws.close()
        for _ in range(200):
            if not manager.connections("node-1"):
                break
            await asyncio.sleep(0.01)
        assert manager.connections("node-1") == []


@pytest.mark.asyncio
async def test_plain_request_is_rejected():
    app = web.Application()
    setup_socket_routes(app)
    async with TestClient(TestServer(app)) as client:
        resp = await client.get("/socket/node/node-1")
        assert resp.status == 400
        body = await resp.json()
        assert body["error"].startswith("升级为WebSocket失败")