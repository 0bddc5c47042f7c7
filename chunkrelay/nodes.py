"""HTTP handlers for node registration and status."""

from __future__ import annotations

from aiohttp import web


async def register_node(request: web.Request) -> web.Response:
    """Acknowledge a node registration."""
    return web.Response(text="注册成功")


async def report_node_state(request: web.Request) -> web.Response:
    """Acknowledge a node status report."""
    return web.Response(text="连接成功")


async def init_node_by_id(request: web.Request) -> web.Response:
    """Acknowledge the initialisation of the node named in the path."""
    node_id = request.match_info["id"]
    return web.Response(text=f"初始化成功，节点ID：{node_id}")


def setup_node_routes(app: web.Application) -> None:
    """Register the /node routes."""
    app.router.add_post("/node/register", register_node)
    app.router.add_get("/node/report", report_node_state)
    app.router.add_post("/node/init/{id}", init_node_by_id)