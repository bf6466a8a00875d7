[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "grpc-relay"
version = "1.0.0rc1"
description = "Relay core for connecting controllers to devices: sessions, stream routing, rate limiting, RBAC, MQTT presence and health reporting"
requires-python = ">=3.10"
keywords = ["grpc", "relay", "iot", "mqtt", "rate-limiting", "rbac", "health-check", "prometheus"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
]
dependencies = [
    "psutil>=5.9",
    "paho-mqtt>=2.0",
    "aiohttp>=3.9",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "pytest-asyncio>=0.21",
]

[tool.hatch.build.targets.wheel]
packages = ["grpc_relay"]

[tool.hatch.build.targets.sdist]
include = ["grpc_relay", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
