[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "telkit"
version = "2.1.0"
description = "Telemetry toolkit: environment-driven configuration, structured logging fields, context propagation and a simulated ride-dispatch demo"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "telemetry",
    "observability",
    "logging",
    "configuration",
    "context",
    "demo",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: System :: Logging",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
telkit-hotrod = "telkit.hotrod.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["telkit"]

[tool.hatch.build.targets.sdist]
include = ["telkit", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
check_untyped_defs = true
