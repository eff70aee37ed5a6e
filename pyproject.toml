[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "espnowsec"
version = "0.1.0"
description = "Key distribution handshake, AES-CCM payload protection and device utilities for ESP-NOW style peer networks"
requires-python = ">=3.10"
keywords = [
    "espnow",
    "aes-ccm",
    "aes-ctr",
    "curve25519",
    "x25519",
    "key-exchange",
    "proof-of-possession",
    "handshake",
]
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
    "Topic :: Security :: Cryptography",
    "Topic :: Communications",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["espnowsec"]

[tool.hatch.build.targets.sdist]
include = [
    "espnowsec",
    "tests",
]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
