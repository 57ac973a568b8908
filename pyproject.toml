[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pubsubkit"
version = "0.1.0"
description = "Building blocks for a gossip-style publish/subscribe node: score parameters, message signing, subscription filters, tracing, validation and seen-message caches."
requires-python = ">=3.10"
dependencies = [
    "cryptography",
]
keywords = ["pubsub", "gossipsub", "p2p", "tracing", "validation", "peer-scoring"]
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
    "Topic :: System :: Networking",
    "Topic :: Software Development :: Libraries :: Python Modules",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["pubsubkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
