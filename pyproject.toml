[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "origin"
version = "0.1.0"
description = "Server framework pieces: logging, profiling, events, cluster configuration, framed TCP transport and JSON RPC"
requires-python = ">=3.10"
dependencies = []
keywords = ["rpc", "cluster", "game-server", "tcp", "events", "logging", "profiler"]
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
    "Topic :: Software Development :: Libraries :: Application Frameworks",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["origin"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
