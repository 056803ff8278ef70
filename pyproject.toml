[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "twolevel"
version = "0.1.0"
description = "Two-level user threads: many lightweight threads multiplexed over a pool of worker LWPs, with priorities, mutexes and condition variables"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "threads",
    "user-level threads",
    "scheduler",
    "lwp",
    "mutex",
    "condition variable",
    "priority scheduling",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
twolevel-demo = "twolevel.demo:main"

[tool.hatch.build.targets.wheel]
packages = ["twolevel"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
