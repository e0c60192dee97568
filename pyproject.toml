[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "splai"
version = "0.1.0"
description = "Task scheduling core for distributed AI workloads: DAG planning, policy checks, leased work queues and worker scoring."
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = [
    "scheduler",
    "dag",
    "task-queue",
    "distributed",
    "workers",
    "policy",
    "leases",
    "dead-letter",
    "redis",
    "prometheus",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["splai"]

[tool.hatch.build.targets.sdist]
include = [
    "splai",
    "tests",
]

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
