[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "warden"
version = "0.1.0"
description = "Workflow state machines with task, decision, parallel and join states, event listeners and in-memory snapshot persistence"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "state machine",
    "workflow",
    "orchestration",
    "event sourcing",
    "persistence",
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
    "Topic :: Software Development :: Libraries :: Application Frameworks",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
warden-examples = "warden.examples:main"

[tool.hatch.build.targets.wheel]
packages = ["warden"]

[tool.pytest.ini_options]
addopts = "-ra"
