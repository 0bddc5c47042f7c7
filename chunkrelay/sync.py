"""HTTP handlers that pass files between nodes through the relay."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import json
import os
import shutil
from pathlib import Path

from aiohttp import web
from aiohttp.web_request import FileField

from chunkrelay.config import RelayConfig
from chunkrelay.files import CONFIG_KEY
from chunkrelay.sockets import MANAGER_KEY, WebSocketManager, send_message_to_node

_dumps = functools.partial(json.dumps, ensure_ascii=False)


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status, dumps=_dumps)


def _join(base: Path, *names: str) -> Path:
    parts = [name.lstrip("/") for name in names]
    return Path(os.path.normpath(os.path.join(str(base), *parts)))


def _text(form, key: str) -> str:
    value = form.get(key)
    return value if isinstance(value, str) else ""


def _save(field: FileField, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    field.file.seek(0)
    with open(destination, "wb") as out:
        shutil.copyfileobj(field.file, out)


async def sync_upload(request: web.Request) -> web.Response:
    """Store a file for node ``uid`` and tell that node to fetch it."""
    config = request.app[CONFIG_KEY]
    form = await request.post()
    uid = _text(form, "uid")
    if not uid:
        return _error(400, "无法获取同步的节点信息")
    filename = _text(form, "filename")
    if not filename:
        return _error(400, "无法获取同步的资源名称")
    upload = form.get("file")
    if not isinstance(upload, FileField):
        return _error(400, "无法获取上传的文件")

    destination = _join(config.uploads_dir, uid, filename)
    try:
        await asyncio.to_thread(_save, upload, destination)
    except OSError:
        return _error(500, "保存文件失败")

    message = json.dumps(
        {"type": "sync", "data": {"uid": uid, "filename": filename}},
        ensure_ascii=False,
        separators=(",", ":"),
        sort_keys=True,
    )
    await send_message_to_node(request.app, uid, message)
    return web.json_response({"message": "同步请求已发送"}, dumps=_dumps)


async def sync_download(request: web.Request) -> web.StreamResponse:
    """Send the stored file named by ``filename``."""
    config = request.app[CONFIG_KEY]
    filename = request.query.get("filename", "")
    if not filename:
        return _error(400, "无法获取同步的资源名称")
    path = _join(config.uploads_dir, filename)
    if not path.exists():
        return _error(404, "文件不存在")
    return web.FileResponse(path)


async def sync_complete(request: web.Request) -> web.Response:
    """Delete a synchronised file once the node has fetched it."""
    config = request.app[CONFIG_KEY]
    form = await request.post()
    uid = _text(form, "uid")
    filename = _text(form, "filename")
    if not uid or not filename:
        return _error(400, "无法获取同步的节点信息或资源名称")
    path = _join(config.uploads_dir, filename)
    if not path.exists():
        return _error(404, "文件不存在")
    with contextlib.suppress(OSError):
        path.unlink()
    return web.Response(status=200)


def setup_sync_routes(app: web.Application) -> None:
    """Register the /sync routes."""
    if CONFIG_KEY not in app:
        app[CONFIG_KEY] = RelayConfig()
    if MANAGER_KEY not in app:
        app[MANAGER_KEY] = WebSocketManager()
    app.router.add_post("/sync/sync/upload", sync_upload)
    app.router.add_get("/sync/sync/download", sync_download)
    app.router.add_post("/sync/sync/complete", sync_complete)