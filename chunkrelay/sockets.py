"""WebSocket connections from nodes and the messages exchanged with them."""

from __future__ import annotations

import asyncio
import functools
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from aiohttp import WSCloseCode, WSMsgType, web

logger = logging.getLogger(__name__)

INIT_BROADCAST_UID = "111111"

_dumps = functools.partial(json.dumps, ensure_ascii=False)
_compact = functools.partial(
    json.dumps, ensure_ascii=False, separators=(",", ":"), sort_keys=True
)


class NodeMsgType(str, Enum):
    """Kinds of text message a node may send or receive."""

    PING = "ping"
    INIT_NODE = "init_node"
    INIT_NODE_SUCCESS = "init_node_success"
    INIT_NODE_FAILED = "init_node_failed"


@dataclass
class TextMsg:
    """A JSON text message with a type and optional data."""

    type: str
    data: Any = None

    def to_json(self) -> str:
        """Serialise the message; ``data`` is left out when it is None."""
        kind = self.type.value if isinstance(self.type, NodeMsgType) else self.type
        payload: dict[str, Any] = {"type": kind}
        if self.data is not None:
            payload["data"] = self.data
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str | bytes) -> TextMsg:
        """Parse a message, raising ValueError when it is not a valid one."""
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("message is not a JSON object")
        kind = payload.get("type", "")
        if not isinstance(kind, str):
            raise ValueError("message type is not a string")
        try:
            kind = NodeMsgType(kind)
        except ValueError:
            pass
        return cls(type=kind, data=payload.get("data"))


class SendError(Exception):
    """Raised when a message cannot be delivered to a node."""


def _rfc3339_now() -> str:
    stamp = datetime.now().astimezone().replace(microsecond=0).isoformat()
    return stamp[:-6] + "Z" if stamp.endswith("+00:00") else stamp


class WebSocketManager:
    """Tracks the open WebSocket connections of every node."""

    def __init__(self) -> None:
        self._connections: dict[str, list[Any]] = {}

    def connections(self, uid: str) -> list[Any]:
        """Return the open connections of node ``uid``."""
        return list(self._connections.get(uid, ()))

    def add_connection(self, uid: str, ws: Any) -> None:
        """Attach ``ws`` to node ``uid``."""
        self._connections.setdefault(uid, []).append(ws)

    def remove_connection(self, uid: str, ws: Any) -> None:
        """Detach ``ws`` from node ``uid``; the node is dropped when empty."""
        connections = self._connections.get(uid)
        if connections is None:
            return
        position = next((i for i, conn in enumerate(connections) if conn is ws), None)
        if position is not None:
            del connections[position]
        if not connections:
            del self._connections[uid]

    async def send_message(self, uid: str, message: str | bytes) -> None:
        """Send a text message to every connection of node ``uid``."""
        connections = self.connections(uid)
        if not connections:
            raise SendError(f"节点 {uid} 不存在")
        if isinstance(message, (bytes, bytearray)):
            text = bytes(message).decode("utf-8", errors="replace")
        else:
            text = message
        results = await asyncio.gather(
            *(conn.send_str(text) for conn in connections), return_exceptions=True
        )
        errors = [result for result in results if isinstance(result, Exception)]
        for error in errors:
            logger.warning("向节点 %s 发送消息失败: %s", uid, error)
        if errors:
            joined = ", ".join(str(error) for error in errors)
            raise SendError(f"向节点 {uid} 发送消息失败: {joined}")

    async def handle_text_message(self, ws: Any, message: str | bytes, uid: str) -> None:
        """Dispatch one text message received from node ``uid``."""
        try:
            msg = TextMsg.from_json(message)
        except ValueError as exc:
            logger.warning("解析来自节点 %s 的消息失败: %s", uid, exc)
            return
        if msg.type == NodeMsgType.PING:
            await self._handle_ping(ws)
        elif msg.type == NodeMsgType.INIT_NODE:
            await self._handle_init_node(msg.data)
        else:
            logger.info("收到未知类型的消息: %s", msg.type)

    async def _handle_ping(self, ws: Any) -> None:
        reply = _compact({"type": "pong", "timestamp": _rfc3339_now()})
        try:
            await ws.send_str(reply)
        except (ConnectionError, RuntimeError) as exc:
            logger.warning("发送pong消息失败: %s", exc)

    async def _handle_init_node(self, data: Any) -> None:
        if data is None:
            logger.info("data 为空")
            return
        if not isinstance(data, str):
            logger.info("data 不是字符串")
            return
        uid = data
        try:
            await self.send_message(uid, TextMsg(NodeMsgType.INIT_NODE).to_json())
        except SendError as exc:
            logger.warning("向节点 %s 发送初始化成功消息失败: %s", uid, exc)
        success = TextMsg(NodeMsgType.INIT_NODE_SUCCESS, uid).to_json()
        try:
            await self.send_message(INIT_BROADCAST_UID, success)
        except SendError as exc:
            logger.warning(
                "向节点 %s 发送初始化成功消息失败: %s", INIT_BROADCAST_UID, exc
            )

    async def handle_connection(self, ws: Any, uid: str) -> None:
        """Read messages from ``ws`` until it closes, then forget it."""
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self.handle_text_message(ws, msg.data, uid)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("节点 %s 连接异常关闭: %s", uid, ws.exception())
        finally:
            await ws.close()
            self.remove_connection(uid, ws)
            logger.info("节点 %s 的一个连接已关闭", uid)

    async def close_all(self) -> None:
        """Close every tracked connection."""
        sockets = [ws for conns in self._connections.values() for ws in conns]
        for ws in sockets:
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"server shutdown")


MANAGER_KEY = web.AppKey("relay_sockets", WebSocketManager)


def check_uid(uid: str) -> bool:
    """Return whether ``uid`` is an acceptable node id; every id is accepted."""
    logger.info("正在验证节点ID: %s", uid)
    return True


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status, dumps=_dumps)


async def handle_node_socket(request: web.Request) -> web.StreamResponse:
    """Upgrade the request to a WebSocket and serve node ``uid`` on it."""
    uid = request.match_info.get("uid", "")
    if not uid:
        return _error(400, "缺少节点ID参数")
    if not check_uid(uid):
        return _error(400, "无效的节点ID")

    ws = web.WebSocketResponse()
    if not ws.can_prepare(request).ok:
        return _error(400, "升级为WebSocket失败: not a websocket handshake")
    await ws.prepare(request)

    manager = request.app[MANAGER_KEY]
    manager.add_connection(uid, ws)
    await manager.handle_connection(ws, uid)
    return ws


async def send_message_to_node(
    app: web.Application, uid: str, message: str | bytes
) -> bool:
    """Send ``message`` to node ``uid``; return whether every send succeeded."""
    try:
        await app[MANAGER_KEY].send_message(uid, message)
    except SendError as exc:
        logger.warning("%s", exc)
        return False
    return True


async def _close_sockets(app: web.Application) -> None:
    await app[MANAGER_KEY].close_all()


def setup_socket_routes(app: web.Application) -> None:
    """Register the /socket routes and the connection manager."""
    if MANAGER_KEY not in app:
        app[MANAGER_KEY] = WebSocketManager()
    app.on_shutdown.append(_close_sockets)
    app.router.add_get("/socket/node/{uid}", handle_node_socket)