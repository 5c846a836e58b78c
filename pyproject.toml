[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fibernet"
version = "0.1.0"
description = "Fibers, timers, schedulers and an I/O manager for cooperative network servers"
requires-python = ">=3.10"
dependencies = []
keywords = ["fiber", "coroutine", "scheduler", "timer", "io", "selector", "server"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Software Development :: Libraries",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
fibernet-fiber-server = "fibernet.fiber_server:main"
fibernet-epoll-server = "fibernet.epoll_server:main"
fibernet-event-server = "fibernet.event_server:main"

[tool.hatch.build.targets.wheel]
packages = ["fibernet"]

[tool.pytest.ini_options]
addopts = "-ra"
