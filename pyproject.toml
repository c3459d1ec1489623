[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "modbus-bridge"
version = "0.1.0"
description = "Poll a Modbus TCP device described in YAML and report or command its named I/O"
requires-python = ">=3.10"
keywords = ["modbus", "modbus-tcp", "plc", "industrial", "io", "bridge"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Manufacturing",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Interface Engine/Protocol Translator",
    "Topic :: System :: Hardware",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
modbus-bridge = "modbus_bridge.node:main"

[tool.hatch.build.targets.wheel]
packages = ["modbus_bridge"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
