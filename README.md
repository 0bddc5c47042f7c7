# chunkrelay

A small aiohttp server for moving files between nodes. It takes simple
and chunked, resumable uploads and downloads with MD5 integrity checks,
and keeps WebSocket connections to nodes so that it can send them
messages, such as a notice that a file is ready to sync.

## Installation

```
pip install chunkrelay
```

## Running the server

```
chunkrelay
```

Options:

| Option          | Default     | Meaning                          |
|-----------------|-------------|----------------------------------|
| `--host`        | `0.0.0.0`   | Address to listen on             |
| `--port`        | `8080`      | Port to listen on                |
| `--uploads-dir` | `./uploads` | Where uploaded files are stored  |

Chunks of uploads still in progress are kept in a `temp` directory inside
the uploads directory. Both directories are created when the application
is built.

To serve the application from your own code:

```python
from pathlib import Path

from aiohttp import web

from chunkrelay.app import create_app
from chunkrelay.config import RelayConfig

app = create_app(RelayConfig(uploads_dir=Path("./uploads")))
web.run_app(app, port=8080)
```

`create_app(config)` calls `RelayConfig.ensure_dirs()`, registers every
route below, and adds a CORS middleware that allows any origin. A
`RelayConfig` holds `uploads_dir`, `temp_dir` (by default
`uploads_dir / "temp"`), `host` and `port`.

`GET /` answers with a short plain-text placeholder.

## Endpoints

Errors are JSON objects with an `error` field.

### Files (`/file`)

| Method | Path                      | Purpose                                                      |
|--------|---------------------------|--------------------------------------------------------------|
| POST   | `/file/upload`            | Simple upload of one form field `file` (up to 10 MiB)        |
| POST   | `/file/upload/init`       | Start a chunked upload: `file_name`, `file_size`, `chunk_size`, optional `file_hash` |
| POST   | `/file/upload/chunk`      | Send one chunk: `file_id`, `chunk_index`, `chunk`, optional `chunk_hash` |
| POST   | `/file/upload/complete`   | Merge the chunks by `file_id` and check the whole-file hash  |
| GET    | `/file/upload/status`     | Progress of an upload, by `file_id`                          |
| GET    | `/file/download`          | Download a file of up to 10 MiB, by `file_name`              |
| GET    | `/file/download/init`     | Prepare a chunked download: `file_name`, optional `chunk_size` (default 1 MiB) |
| GET    | `/file/download/chunk`    | Fetch one chunk: `file_id`, `chunk_index` (206 Partial Content) |
| GET    | `/file/download/info`     | Download metadata and chunk-hash progress, by `file_id`      |

A file sent to `/file/upload` larger than 10 MiB is refused; a file asked
for at `/file/download` larger than 10 MiB is not sent, and the answer
points at `/file/download/init` instead.

Each upload or download gets a `file_id` made from the file name, size
and the current time. Sending a chunk that has already arrived is
acknowledged without storing it again.

Hashes are lowercase hex MD5 digests. A chunk whose `chunk_hash` does not
match is discarded and refused. A merged file whose hash differs from
`file_hash` is kept, and the answer reports `"integrity_status": "failed"`.

`/file/download/init` hashes the whole file, then hashes each chunk in the
background. Chunk downloads carry an `X-Chunk-Hash` header once that
chunk's hash is known, and `/file/download/info` reports how many are.

### Nodes (`/node`)

| Method | Path               | Purpose                               |
|--------|--------------------|---------------------------------------|
| POST   | `/node/register`   | Acknowledge a node registration       |
| GET    | `/node/report`     | Acknowledge a node status report      |
| POST   | `/node/init/{id}`  | Acknowledge the initialisation of `id`|

### WebSockets (`/socket`)

Connect to `/socket/node/{uid}` to join node `uid`. A node may have
several connections open at once. Messages are JSON objects of the form
`{"type": ..., "data": ...}` (see `chunkrelay.sockets.TextMsg` and
`NodeMsgType`):

- `{"type": "ping"}`: the server answers with
  `{"type": "pong", "timestamp": "<RFC 3339 time>"}`.
- `{"type": "init_node", "data": "<uid>"}`: the server sends
  `{"type": "init_node"}` to every connection of that node, and
  `{"type": "init_node_success", "data": "<uid>"}` to node `111111`.

Other messages are logged and ignored. Other code can push a text message
to every connection of a node with
`await chunkrelay.sockets.send_message_to_node(app, uid, message)`, which
returns whether every send succeeded. `WebSocketManager.send_message`
raises `SendError` instead.

### Sync (`/sync`)

| Method | Path                   | Purpose                                                     |
|--------|------------------------|-------------------------------------------------------------|
| POST   | `/sync/sync/upload`    | Store form field `file` as `<uploads>/<uid>/<filename>` and send node `uid` `{"type": "sync", "data": {"uid": ..., "filename": ...}}` |
| GET    | `/sync/sync/download`  | Fetch `<uploads>/<filename>`                                |
| POST   | `/sync/sync/complete`  | Delete `<uploads>/<filename>`; needs `uid` and `filename`   |

Note that download and complete look up `filename` directly under the
uploads directory, not under the node's subdirectory; pass
`<uid>/<filename>` to reach a file stored by sync upload.

## What it does not do

- Upload and download state lives in memory and is lost when the server
  stops. `DownloadRegistry.cleanup_expired` exists but is never run on a
  schedule by the server.
- There is no authentication. Every node id is accepted, and the node
  endpoints only acknowledge requests; nodes are not stored anywhere.

## Running the tests

```
pip install "chunkrelay[test]"
pytest
```