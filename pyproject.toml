[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "quicnet"
version = "0.17.0"
description = "Server side of client/server multiplayer networking: channels, framing, certificates and an endpoint"
requires-python = ">=3.10"
keywords = ["gamedev", "networking", "quic", "multiplayer", "channels", "asyncio"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Games/Entertainment",
    "Topic :: System :: Networking",
]
dependencies = [
    "cryptography",
    "msgpack",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["quicnet"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
