"""Application assembly and the command that serves it."""

from __future__ import annotations

import argparse
from pathlib import Path

from aiohttp import web

from chunkrelay.config import DEFAULT_PORT, DEFAULT_UPLOADS_DIR, RelayConfig
from chunkrelay.files import CONFIG_KEY, setup_file_routes
from chunkrelay.nodes import setup_node_routes
from chunkrelay.sockets import setup_socket_routes
from chunkrelay.sync import setup_sync_routes

MAX_BODY_SIZE = 1 << 40
_CORS_METHODS = "GET,POST,PUT,PATCH,DELETE,HEAD,OPTIONS"
_CORS_HEADERS = "Origin,Content-Length,Content-Type"
_CORS_MAX_AGE = str(12 * 60 * 60)


@web.middleware
async def _cors(request: web.Request, handler) -> web.StreamResponse:
    if "Origin" not in request.headers:
        return await handler(request)
    if request.method == "OPTIONS":
        return web.Response(
            status=204,
            headers={
                "Access-Control-Allow-Origin": "*",
                "Access-Control-Allow-Methods": _CORS_METHODS,
                "Access-Control-Allow-Headers": _CORS_HEADERS,
                "Access-Control-Max-Age": _CORS_MAX_AGE,
            },
        )
    try:
        response = await handler(request)
    except web.HTTPException as exc:
        exc.headers["Access-Control-Allow-Origin"] = "*"
        raise
    if not response.prepared:
        response.headers["Access-Control-Allow-Origin"] = "*"
    return response


async def _index(request: web.Request) -> web.Response:
    return web.Response(text="啥也没有😅!")


def create_app(config: RelayConfig | None = None) -> web.Application:
    """Build the relay application, creating its directories first."""
    config = config or RelayConfig()
    config.ensure_dirs()
    app = web.Application(middlewares=[_cors], client_max_size=MAX_BODY_SIZE)
    app[CONFIG_KEY] = config
    app.router.add_get("/", _index)
    setup_node_routes(app)
    setup_file_routes(app)
    setup_socket_routes(app)
    setup_sync_routes(app)
    return app


def main(argv: list[str] | None = None) -> None:
    """Serve the relay until interrupted."""
    parser = argparse.ArgumentParser(description="File and message relay server.")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--uploads-dir", type=Path, default=DEFAULT_UPLOADS_DIR)
    args = parser.parse_args(argv)

    config = RelayConfig(uploads_dir=args.uploads_dir, host=args.host, port=args.port)
    web.run_app(create_app(config), host=config.host, port=config.port)


if __name__ == "__main__":
    main()