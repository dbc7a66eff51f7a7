[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hemidb"
version = "0.1.0"
description = "Storage layer for L2 keystones, Bitcoin blocks, PoP data, access keys and finality queries over PostgreSQL-style connections"
requires-python = ">=3.10"
dependencies = []
keywords = ["database", "postgresql", "bitcoin", "keystone", "finality", "notifications"]
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
    "Topic :: Database",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["hemidb"]

[tool.pytest.ini_options]
addopts = "-ra"
