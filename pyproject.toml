[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "seckillsvc"
version = "0.1.0"
description = "Building blocks for a flash-sale (seckill) order service: atomic stock reservation, per-instance quotas, product ID prefiltering and buffered RabbitMQ order messaging."
requires-python = ">=3.10"
keywords = [
    "seckill",
    "flash-sale",
    "inventory",
    "stock",
    "bloom-filter",
    "cuckoo-filter",
    "rabbitmq",
    "quota",
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
    "Topic :: Office/Business :: Financial :: Point-Of-Sale",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "pika",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["seckillsvc"]

[tool.hatch.build.targets.sdist]
include = [
    "seckillsvc",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
