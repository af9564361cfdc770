[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "outboundlb"
version = "1.0.0"
description = "Selection of local source IPs for outbound proxy connections: per-host LRU balancing, connection limits, health checks and circuit breaking"
requires-python = ">=3.10"
keywords = [
    "proxy",
    "load-balancer",
    "outbound",
    "source-ip",
    "circuit-breaker",
    "health-check",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]
dependencies = [
    "pyyaml>=6.0",
    "watchdog>=3.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
]

[project.scripts]
outbound-lb = "outboundlb.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["outboundlb"]

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
ignore_missing_imports = true
