[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gitpackstore"
version = "0.1.0"
description = "Read-only Git object store that resolves objects straight from pack, idx and multi-pack-index files"
requires-python = ">=3.10"
dependencies = []
keywords = ["git", "packfile", "idx", "multi-pack-index", "delta", "object-store"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Version Control :: Git",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
gitpackstore-example = "gitpackstore.example:main"

[tool.hatch.build.targets.wheel]
packages = ["gitpackstore"]

[tool.pytest.ini_options]
addopts = "-ra"
