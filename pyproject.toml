[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hpametrics"
version = "0.1.0"
description = "Nakadi and ZMON metric clients, an in-memory metric store, a collector scheduler and scheduled scaling logic for horizontal pod autoscalers"
requires-python = ">=3.10"
keywords = ["kubernetes", "autoscaling", "hpa", "metrics", "nakadi", "zmon", "kairosdb", "scheduling"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["hpametrics"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
