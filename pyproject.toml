[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lmdiskann"
version = "0.1.0"
description = "DiskANN approximate nearest-neighbour vector index stored in SQLite shadow tables"
requires-python = ">=3.10"
dependencies = []
keywords = ["diskann", "vector", "ann", "nearest-neighbour", "sqlite", "index", "similarity-search"]
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
    "Topic :: Scientific/Engineering :: Information Analysis",
]

[project.optional-dependencies]
test = ["pytest", "hypothesis"]

[tool.hatch.build.targets.wheel]
packages = ["lmdiskann"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
