[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "marginalia"
version = "0.1.0"
description = "SQLite storage for read-aloud documents, reading sessions, notes and rewrite drafts, with a cache for synthesized speech"
requires-python = ">=3.10"
dependencies = []
keywords = ["reading", "text-to-speech", "sqlite", "notes", "audiobook"]
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
    "Topic :: Multimedia :: Sound/Audio :: Speech",
    "Topic :: Database",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["marginalia"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
