[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "orchidsproxy"
version = "0.1.0"
description = "Request handling core for an Anthropic-compatible messages proxy: session workdirs, account load balancing, tool-call sanitising and SSE response streaming."
requires-python = ">=3.10"
dependencies = []
keywords = ["proxy", "anthropic", "messages", "sse", "load-balancer", "streaming"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: Software Development :: Libraries :: Python Modules",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["orchidsproxy"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
