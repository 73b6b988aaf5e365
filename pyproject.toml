[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pubdatahub"
version = "0.1.0"
description = "Thread-safe SQLite storage with connection pooling, health checks and job progress tracking"
requires-python = ">=3.10"
dependencies = []
keywords = ["sqlite", "storage", "connection-pool", "metrics", "jobs", "progress"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["pubdatahub"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
