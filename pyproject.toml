[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "limaagent"
version = "0.1.0"
description = "Guest and host agent components for forwarding a virtual machine's listening ports to its host"
requires-python = ">=3.10"
keywords = [
    "virtual-machine",
    "port-forwarding",
    "guest-agent",
    "host-agent",
    "dns",
    "iptables",
    "procfs",
    "kubernetes",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Operating System :: MacOS",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Internet :: Name Service (DNS)",
]
dependencies = [
    "dnspython",
    "httpx",
    "starlette",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["limaagent"]

[tool.hatch.build.targets.sdist]
include = [
    "limaagent",
    "tests",
]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
