[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kassi"
version = "0.1.0"
description = "Storage, queries, a durable retrying job queue and API envelopes for a crypto point-of-sale back office."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "payments",
    "point-of-sale",
    "crypto",
    "job-queue",
    "worker",
    "sqlite",
    "merchants",
]
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
    "Framework :: AsyncIO",
    "Topic :: Office/Business :: Financial :: Point-Of-Sale",
    "Topic :: Database",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["kassi"]

[tool.hatch.build.targets.sdist]
include = ["kassi", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP", "SIM"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
