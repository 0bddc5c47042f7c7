from unittest.mock import patch

import pytest
from aiohttp.test_utils import TestClient, TestServer

from chunkrelay.app import create_app, main
from chunkrelay.config import RelayConfig


def _app(tmp_path):
    return create_app(RelayConfig(uploads_dir=tmp_path / "uploads"))


def test_create_app_makes_directories(tmp_path):
    _app(tmp_path)
    assert (tmp_path / "uploads").is_dir()
    assert (tmp_path / "uploads" / "temp").is_dir()


@pytest.mark.asyncio
async def test_index_text(tmp_path):
    async with TestClient(TestServer(_app(tmp_path))) as client:
        resp = await client.get("/")
        assert resp.status == 200
        assert await resp.text() == "啥也没有😅!"


@pytest.mark.asyncio
async def test_cors_header_on_cross_origin_request(tmp_path):
    async with TestClient(TestServer(_app(tmp_path))) as client:
        resp = await client.get("/", headers={"Origin": "http://example.com"})
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
        plain = await client.get("/")
        assert "Access-Control-Allow-Origin" not in plain.headers


@pytest.mark.asyncio
async def test_cors_preflight(tmp_path):
    async with TestClient(TestServer(_app(tmp_path))) as client:
        resp = await client.options(
            "/file/upload",
            headers={
                "Origin": "http://example.com",
                "Access-Control-Request-Method": "POST",
            },
        )
        assert resp.status == 204
        assert "POST" in resp.headers["Access-Control-Allow-Methods"].split(",")


@pytest.mark.asyncio
async def test_routes_are_wired(tmp_path):
    async with TestClient(TestServer(_app(tmp_path))) as client:
        resp = await client.post("/node/register")
        assert await resp.text() == "注册成功"
        resp = await client.get("/file/upload/status")
        assert resp.status == 400
        assert (await resp.json())["error"] == "参数不完整"
        resp = await client.get("/sync/sync/download", params={"filename": "nope"})
        assert resp.status == 404


def test_main_runs_app_with_options(tmp_path):
    uploads = tmp_path / "served"
    with patch("chunkrelay.app.web.run_app") as run_app:
        main(["--port", "9090", "--uploads-dir", str(uploads)])
    assert run_app.call_count == 1
    assert run_app.call_args.kwargs["port"] == 9090
    assert uploads.is_dir()