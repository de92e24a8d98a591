[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mailbucket"
version = "0.1.0"
description = "Mail testing toolkit: POP3 server, REST API handlers, monitor events and a REST client"
requires-python = ">=3.10"
dependencies = [
    "requests",
]
keywords = ["email", "pop3", "testing", "mailbox", "rest"]
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
    "Topic :: Communications :: Email :: Post-Office :: POP3",
    "Topic :: Software Development :: Testing",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
    "cryptography",
]

[tool.hatch.build.targets.wheel]
packages = ["mailbucket"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
