[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "connmux"
version = "0.1.0"
description = "Serve several protocols from one listening socket by sniffing each connection's first bytes."
requires-python = ">=3.10"
dependencies = [
    "h2",
]
keywords = ["multiplexer", "socket", "listener", "http", "http2", "protocol", "sniffing"]
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
    "Topic :: System :: Networking",
    "Topic :: Internet",
]

[project.optional-dependencies]
test = [
    "pytest",
    "h2",
]

[tool.hatch.build.targets.wheel]
packages = ["connmux"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
