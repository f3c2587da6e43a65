[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "raftlog"
version = "0.1.0"
description = "File-based log storage for Raft groups: log batches, log files, pipes and recovery"
requires-python = ">=3.10"
keywords = ["raft", "log", "storage", "write-ahead-log", "consensus"]
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
    "Topic :: Database :: Database Engines/Servers",
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "lz4",
    "portalocker",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["raftlog"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
