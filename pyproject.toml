[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chunkrelay"
version = "0.1.0"
description = "HTTP relay server for chunked, resumable file transfer and WebSocket node messaging"
requires-python = ">=3.10"
keywords = ["relay", "upload", "download", "chunked", "resumable", "websocket", "aiohttp"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]
dependencies = [
    "aiohttp>=3.9",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[project.scripts]
chunkrelay = "chunkrelay.app:main"

[tool.hatch.build.targets.wheel]
packages = ["chunkrelay"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
