"""HTTP handlers for simple and chunked file upload and download."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import json
import logging
import os
import re
import shutil
from collections.abc import Mapping
from pathlib import Path, PurePosixPath
from typing import Any

from aiohttp import web
from aiohttp.web_request import FileField

from chunkrelay.config import RelayConfig
from chunkrelay.hashing import chunk_md5, data_md5, file_md5, generate_file_id
from chunkrelay.models import (
    DownloadInfo,
    DownloadRegistry,
    UploadInfo,
    UploadRegistry,
)

logger = logging.getLogger(__name__)

CONFIG_KEY = web.AppKey("relay_config", RelayConfig)
UPLOADS_KEY = web.AppKey("relay_uploads", UploadRegistry)
DOWNLOADS_KEY = web.AppKey("relay_downloads", DownloadRegistry)
BACKGROUND_KEY = web.AppKey("relay_background", set)

SIMPLE_SIZE_LIMIT = 10 << 20
DEFAULT_DOWNLOAD_CHUNK = "1048576"
_STREAM_BLOCK = 64 * 1024
_MISSING_FILE = "no such file"
_INT_PATTERN = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1

_dumps = functools.partial(json.dumps, ensure_ascii=False)

_Form = Mapping[str, "str | bytes | FileField"]


class _MergeError(Exception):
    """Raised when chunk files cannot be joined into the final file."""


def _json(payload: dict[str, Any], status: int = 200) -> web.Response:
    return web.json_response(payload, status=status, dumps=_dumps)


def _error(status: int, message: str, **extra: Any) -> web.Response:
    return _json({"error": message, **extra}, status=status)


def _parse_int(text: str) -> int:
    """Parse a base-10 signed 64-bit integer, rejecting anything else."""
    if not _INT_PATTERN.fullmatch(text):
        raise ValueError(f"invalid integer: {text!r}")
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"integer out of range: {text!r}")
    return value


def _join(base: Path, name: str) -> Path:
    """Join ``name`` under ``base`` the way a cleaned path join does."""
    return Path(os.path.normpath(os.path.join(str(base), name.lstrip("/"))))


def _chunk_path(config: RelayConfig, file_id: str, index: int) -> Path:
    return config.chunk_dir / f"{file_id}-{index}"


def _total_chunks(size: int, chunk_size: int) -> int:
    return (size + chunk_size - 1) // chunk_size


def _percentage(done: int, total: int) -> float:
    return done / total * 100 if total else 0.0


async def _read_form(request: web.Request) -> _Form:
    return await request.post()


def _form_text(form: _Form, key: str) -> str:
    value = form.get(key)
    return value if isinstance(value, str) else ""


def _form_file(form: _Form, key: str) -> FileField | None:
    value = form.get(key)
    if isinstance(value, FileField) and PurePosixPath(value.filename or "").name:
        return value
    return None


def _field_size(field: FileField) -> int:
    handle = field.file
    handle.seek(0, os.SEEK_END)
    size = handle.tell()
    handle.seek(0)
    return size


def _save_field(field: FileField, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    field.file.seek(0)
    with open(destination, "wb") as out:
        shutil.copyfileobj(field.file, out)


def _remove_quietly(path: Path) -> None:
    with contextlib.suppress(OSError):
        path.unlink()


def _merge_chunks(final_path: Path, chunk_paths: list[Path]) -> None:
    try:
        out = open(final_path, "wb")
    except OSError as exc:
        raise _MergeError(f"创建最终文件失败: {exc}") from exc
    with out:
        for chunk_path in chunk_paths:
            try:
                source = open(chunk_path, "rb")
            except OSError as exc:
                raise _MergeError(f"打开分块文件失败: {exc}") from exc
            try:
                with source:
                    shutil.copyfileobj(source, out)
            except OSError as exc:
                raise _MergeError(f"合并分块文件失败: {exc}") from exc
            _remove_quietly(chunk_path)


def _download_url(file_id: str) -> str:
    return f"/file/download/chunk?file_id={file_id}&chunk_index="


def setup_file_routes(app: web.Application) -> None:
    """Register the /file routes and the shared state they use."""
    if CONFIG_KEY not in app:
        app[CONFIG_KEY] = RelayConfig()
    if UPLOADS_KEY not in app:
        app[UPLOADS_KEY] = UploadRegistry()
    if DOWNLOADS_KEY not in app:
        app[DOWNLOADS_KEY] = DownloadRegistry()
    if BACKGROUND_KEY not in app:
        app[BACKGROUND_KEY] = set()

    router = app.router
    router.add_post("/file/upload/init", init_upload)
    router.add_post("/file/upload/chunk", upload_chunk)
    router.add_post("/file/upload/complete", complete_upload)
    router.add_get("/file/upload/status", check_upload_status)
    router.add_post("/file/upload", simple_upload)
    router.add_get("/file/download", simple_download)
    router.add_get("/file/download/init", init_download)
    router.add_get("/file/download/chunk", download_chunk)
    router.add_get("/file/download/info", get_download_info)


async def simple_upload(request: web.Request) -> web.Response:
    """Store a small file sent whole in the ``file`` form field."""
    config = request.app[CONFIG_KEY]
    form = await _read_form(request)
    upload = _form_file(form, "file")
    if upload is None:
        return _error(400, f"上传文件时出错: {_MISSING_FILE}")

    size = _field_size(upload)
    if size > SIMPLE_SIZE_LIMIT:
        return _error(
            400,
            "文件过大，请使用分块上传接口",
            max_size="10MB",
            current_size=f"{size / (1024 * 1024):.2f} MB",
        )

    name = PurePosixPath(upload.filename).name
    destination = _join(config.uploads_dir, name)
    try:
        await asyncio.to_thread(_save_field, upload, destination)
    except OSError as exc:
        return _error(500, f"保存文件失败: {exc}")

    return _json({"message": "文件上传成功", "file": name, "size": size})


async def init_upload(request: web.Request) -> web.Response:
    """Start a chunked upload and report its id and chunk layout."""
    form = await _read_form(request)
    file_name = _form_text(form, "file_name")
    file_size_text = _form_text(form, "file_size")
    chunk_size_text = _form_text(form, "chunk_size")
    file_hash = _form_text(form, "file_hash")

    if not file_name or not file_size_text or not chunk_size_text:
        return _error(400, "参数不完整")

    try:
        file_size = _parse_int(file_size_text)
        if file_size < 0:
            raise ValueError(file_size_text)
    except ValueError:
        return _error(400, "file_size 参数格式不正确")

    try:
        chunk_size = _parse_int(chunk_size_text)
        if chunk_size <= 0:
            raise ValueError(chunk_size_text)
    except ValueError:
        return _error(400, "chunk_size 参数格式不正确")

    file_id = generate_file_id(file_name, file_size)
    total_chunks = _total_chunks(file_size, chunk_size)

    uploads = request.app[UPLOADS_KEY]
    existing = uploads.get(file_id)
    if existing is not None:
        return _json(
            {
                "file_id": file_id,
                "total_chunks": existing.total_chunks,
                "chunk_size": existing.chunk_size,
                "completed": existing.completed_count(),
                "file_hash": existing.file_hash,
                "resumed": True,
            }
        )

    uploads.save(
        UploadInfo(
            file_id=file_id,
            file_name=file_name,
            total_chunks=total_chunks,
            total_size=file_size,
            chunk_size=chunk_size,
            file_hash=file_hash,
        )
    )
    return _json(
        {
            "file_id": file_id,
            "total_chunks": total_chunks,
            "chunk_size": chunk_size,
            "file_hash": file_hash,
            "resumed": False,
        }
    )


async def upload_chunk(request: web.Request) -> web.Response:
    """Receive one chunk, optionally checking it against ``chunk_hash``."""
    config = request.app[CONFIG_KEY]
    form = await _read_form(request)
    file_id = _form_text(form, "file_id")
    index_text = _form_text(form, "chunk_index")
    chunk_hash = _form_text(form, "chunk_hash")

    if not file_id or not index_text:
        return _error(400, "参数不完整")

    info = request.app[UPLOADS_KEY].get(file_id)
    if info is None:
        return _error(400, "无效的 file_id，请先初始化上传")

    try:
        index = _parse_int(index_text)
    except ValueError:
        return _error(400, "chunk_index 参数格式不正确")

    if not 0 <= index < info.total_chunks:
        return _error(
            400, "无效的块索引", valid_range=f"0-{info.total_chunks - 1}"
        )

    with info.lock:
        already_done = info.completed[index]
    if already_done:
        return _json({"message": "分块已上传", "chunk_index": index})

    upload = _form_file(form, "chunk")
    if upload is None:
        return _error(400, f"获取文件数据失败: {_MISSING_FILE}")

    chunk_path = _chunk_path(config, file_id, index)
    try:
        await asyncio.to_thread(_save_field, upload, chunk_path)
    except OSError as exc:
        return _error(500, f"保存分块文件失败: {exc}")

    if chunk_hash:
        try:
            calculated = await asyncio.to_thread(chunk_md5, chunk_path)
        except OSError as exc:
            _remove_quietly(chunk_path)
            return _error(500, f"计算分块哈希值失败: {exc}")
        if calculated != chunk_hash:
            _remove_quietly(chunk_path)
            return _error(
                400,
                "分块完整性验证失败",
                expected_hash=chunk_hash,
                calculated_hash=calculated,
                chunk_index=index,
            )
        with info.lock:
            info.chunk_hashes[index] = calculated

    with info.lock:
        info.completed[index] = True
    completed = info.completed_count()

    return _json(
        {
            "message": "分块上传成功",
            "chunk_index": index,
            "completed": completed,
            "total": info.total_chunks,
            "verified": bool(chunk_hash),
        }
    )


async def complete_upload(request: web.Request) -> web.Response:
    """Join all chunks of an upload into the final file and verify it."""
    config = request.app[CONFIG_KEY]
    uploads = request.app[UPLOADS_KEY]
    form = await _read_form(request)
    file_id = _form_text(form, "file_id")

    if not file_id:
        return _error(400, "参数不完整")

    info = uploads.get(file_id)
    if info is None:
        return _error(400, "无效的 file_id")

    with info.lock:
        missing = next(
            (i for i, done in enumerate(info.completed) if not done), None
        )
    if missing is not None:
        return _error(400, "有分块尚未上传完成", chunk_index=missing)

    final_path = _join(config.uploads_dir, info.file_name)
    chunk_paths = [
        _chunk_path(config, file_id, i) for i in range(info.total_chunks)
    ]
    try:
        await asyncio.to_thread(_merge_chunks, final_path, chunk_paths)
    except _MergeError as exc:
        return _error(500, str(exc))

    calculated = ""
    if info.file_hash:
        try:
            calculated = await asyncio.to_thread(file_md5, final_path)
        except OSError as exc:
            return _error(
                500,
                f"计算文件哈希值失败: {exc}",
                note="文件已合并，但未能验证完整性",
            )
        if calculated != info.file_hash:
            uploads.remove(file_id)
            return _json(
                {
                    "message": "文件已合并，但完整性验证失败",
                    "file_name": info.file_name,
                    "file_size": info.total_size,
                    "file_path": str(final_path),
                    "expected_hash": info.file_hash,
                    "calculated_hash": calculated,
                    "integrity_status": "failed",
                }
            )

    uploads.remove(file_id)

    response: dict[str, Any] = {
        "message": "文件上传完成",
        "file_name": info.file_name,
        "file_size": info.total_size,
        "file_path": str(final_path),
    }
    if info.file_hash:
        response["integrity_verified"] = True
        response["file_hash"] = calculated
    return _json(response)


async def check_upload_status(request: web.Request) -> web.Response:
    """Report how many chunks of an upload have arrived."""
    file_id = request.query.get("file_id", "")
    if not file_id:
        return _error(400, "参数不完整")

    info = request.app[UPLOADS_KEY].get(file_id)
    if info is None:
        return _error(404, "找不到上传任务")

    completed = info.completed_count()
    return _json(
        {
            "file_id": file_id,
            "file_name": info.file_name,
            "total_chunks": info.total_chunks,
            "completed": completed,
            "percentage": _percentage(completed, info.total_chunks),
        }
    )


def _stat_error(exc: OSError) -> web.Response:
    if isinstance(exc, FileNotFoundError):
        return _error(404, "找不到指定文件")
    return _error(500, f"获取文件信息失败: {exc}")


async def simple_download(request: web.Request) -> web.StreamResponse:
    """Send a small file whole, or point the client at chunked download."""
    config = request.app[CONFIG_KEY]
    file_name = request.query.get("file_name", "")
    if not file_name:
        return _error(400, "参数不完整，请提供文件名")

    path = _join(config.uploads_dir, file_name)
    try:
        size = path.stat().st_size
    except OSError as exc:
        return _stat_error(exc)

    if size <= SIMPLE_SIZE_LIMIT:
        return web.FileResponse(path)

    return _json(
        {
            "message": "文件过大，建议使用分块下载接口",
            "file_id": generate_file_id(file_name, size),
            "file_name": file_name,
            "file_size": size,
            "download_init_url": f"/file/download/init?file_name={file_name}",
        }
    )


def compute_chunk_hashes(info: DownloadInfo) -> None:
    """Fill ``info.chunk_hashes`` with the MD5 of every chunk of its file."""
    try:
        handle = open(info.file_path, "rb")
    except OSError as exc:
        logger.error("打开文件失败: %s", exc)
        return
    with handle:
        for index in range(info.total_chunks):
            try:
                handle.seek(index * info.chunk_size)
                block = handle.read(info.chunk_size)
            except OSError as exc:
                logger.error("读取分块数据失败: %s", exc)
                continue
            digest = data_md5(block)
            with info.lock:
                info.chunk_hashes[index] = digest


async def init_download(request: web.Request) -> web.Response:
    """Prepare a chunked download and start hashing its chunks."""
    config = request.app[CONFIG_KEY]
    file_name = request.query.get("file_name", "")
    chunk_size_text = request.query.get("chunk_size", DEFAULT_DOWNLOAD_CHUNK)

    if not file_name:
        return _error(400, "参数不完整，请提供文件名")

    try:
        chunk_size = _parse_int(chunk_size_text)
        if chunk_size <= 0:
            raise ValueError(chunk_size_text)
    except ValueError:
        return _error(400, "chunk_size 参数格式不正确")

    path = _join(config.uploads_dir, file_name)
    try:
        file_size = path.stat().st_size
    except OSError as exc:
        return _stat_error(exc)

    total_chunks = _total_chunks(file_size, chunk_size)
    file_id = generate_file_id(file_name, file_size)

    try:
        file_hash = await asyncio.to_thread(file_md5, path)
    except OSError as exc:
        return _error(500, f"计算文件哈希值失败: {exc}")

    info = DownloadInfo(
        file_id=file_id,
        file_name=file_name,
        file_path=str(path),
        total_size=file_size,
        chunk_size=chunk_size,
        total_chunks=total_chunks,
        file_hash=file_hash,
    )
    request.app[DOWNLOADS_KEY].save(info)

    background = request.app[BACKGROUND_KEY]
    future = asyncio.get_running_loop().run_in_executor(
        None, compute_chunk_hashes, info
    )
    background.add(future)
    future.add_done_callback(background.discard)

    return _json(
        {
            "file_id": file_id,
            "file_name": file_name,
            "file_size": file_size,
            "chunk_size": chunk_size,
            "total_chunks": total_chunks,
            "file_hash": file_hash,
            "download_url": _download_url(file_id),
        }
    )


async def download_chunk(request: web.Request) -> web.StreamResponse:
    """Stream one chunk of a prepared download as partial content."""
    file_id = request.query.get("file_id", "")
    index_text = request.query.get("chunk_index", "")
    if not file_id or not index_text:
        return _error(400, "参数不完整")

    info = request.app[DOWNLOADS_KEY].get(file_id)
    if info is None:
        return _error(404, "无效的文件ID，请先初始化下载")

    try:
        index = _parse_int(index_text)
    except ValueError:
        return _error(400, "chunk_index 参数格式不正确")

    if not 0 <= index < info.total_chunks:
        return _error(
            400, "无效的块索引", valid_range=f"0-{info.total_chunks - 1}"
        )

    start = index * info.chunk_size
    end = min(start + info.chunk_size, info.total_size)

    try:
        handle = open(info.file_path, "rb")
    except OSError as exc:
        return _error(500, f"打开文件失败: {exc}")

    with handle:
        try:
            handle.seek(start)
        except OSError as exc:
            return _error(500, f"文件定位失败: {exc}")

        with info.lock:
            chunk_hash = info.chunk_hashes.get(index)

        response = web.StreamResponse(status=206)
        response.content_type = "application/octet-stream"
        response.content_length = end - start
        response.headers["Content-Disposition"] = (
            f"attachment; filename={info.file_name}-part{index}"
        )
        response.headers["Accept-Ranges"] = "bytes"
        response.headers["Content-Range"] = (
            f"bytes {start}-{end - 1}/{info.total_size}"
        )
        if chunk_hash is not None:
            response.headers["X-Chunk-Hash"] = chunk_hash

        await response.prepare(request)
        remaining = end - start
        try:
            while remaining > 0:
                block = handle.read(min(_STREAM_BLOCK, remaining))
                if not block:
                    break
                await response.write(block)
                remaining -= len(block)
        except (OSError, ConnectionError) as exc:
            logger.warning("发送文件块失败: %s", exc)
    return response


async def get_download_info(request: web.Request) -> web.Response:
    """Report a prepared download and how far chunk hashing has got."""
    file_id = request.query.get("file_id", "")
    if not file_id:
        return _error(400, "参数不完整")

    info = request.app[DOWNLOADS_KEY].get(file_id)
    if info is None:
        return _error(404, "找不到下载信息")

    hashed = info.hash_count()
    return _json(
        {
            "file_id": file_id,
            "file_name": info.file_name,
            "file_size": info.total_size,
            "chunk_size": info.chunk_size,
            "total_chunks": info.total_chunks,
            "created_at": info.created_at.isoformat(),
            "file_hash": info.file_hash,
            "hash_completed_chunks": hashed,
            "hash_progress": _percentage(hashed, info.total_chunks),
            "download_url": _download_url(file_id),
        }
    )