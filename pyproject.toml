[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "checkin-agent"
version = "1.0.0"
description = "Host agent exposing system metrics and restricted curl-style HTTP tasks over an authenticated HTTP API"
requires-python = ">=3.10"
keywords = ["agent", "monitoring", "systemd", "http", "curl", "checkin"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "psutil",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
checkin-agent = "checkin_agent.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["checkin_agent"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
