[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mcplink"
version = "0.1.0"
description = "Building blocks for Model Context Protocol servers: sessions, a tool/prompt/resource registry, and stdio and SSE transports"
requires-python = ">=3.10"
keywords = ["mcp", "model-context-protocol", "json-rpc", "sse", "asyncio", "stdio"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries :: Application Frameworks",
]
dependencies = [
    "aiohttp",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["mcplink"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
