[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kvbackup"
version = "0.1.0"
description = "Backup and restore tool for distributed transactional key-value clusters"
requires-python = ">=3.10"
dependencies = []
keywords = ["backup", "restore", "key-value", "sst", "checksum"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Archiving :: Backup",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
kvbackup = "kvbackup.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["kvbackup"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
