[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "slothudp"
version = "0.1.0"
description = "A small file transfer protocol over UDP with handshakes, windowed sending and bitmap acknowledgements"
requires-python = ">=3.10"
dependencies = []
keywords = ["udp", "file-transfer", "sliding-window", "asyncio", "protocol"]
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
    "Framework :: AsyncIO",
    "Topic :: Internet :: File Transfer Protocol (FTP)",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest", "pytest-asyncio"]

[project.scripts]
slothudp = "slothudp.main:main"

[tool.hatch.build.targets.wheel]
packages = ["slothudp"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
