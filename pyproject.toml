[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "upstream_balancer"
version = "1.0.3"
description = "Load-balanced dispatch of requests across static or dynamically discovered upstream services"
requires-python = ">=3.10"
dependencies = [
    "dnspython",
]
keywords = [
    "proxy",
    "reverse-proxy",
    "load-balancing",
    "service-discovery",
    "dns",
    "asyncio",
]
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
    "Framework :: AsyncIO",
    "Topic :: Internet :: Proxy Servers",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["upstream_balancer"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
