[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "boots"
version = "0.1.0"
description = "Linux rtnetlink link and address management, /proc stat parsing and small runtime helpers"
requires-python = ">=3.10"
dependencies = []
keywords = ["netlink", "rtnetlink", "network", "interfaces", "tuntap", "bridge", "procfs"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["boots"]

[tool.pytest.ini_options]
addopts = "-ra"
