[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vmdumpkit"
version = "0.1.0"
description = "Readers and filters for kernel crash dump images: ELF core layout, printk ring buffer extraction, sadump headers and data filtering"
requires-python = ">=3.10"
dependencies = []
keywords = ["vmcore", "kdump", "crash dump", "elf", "printk", "sadump", "kernel"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Recovery Tools",
    "Topic :: System :: Operating System Kernels :: Linux",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["vmdumpkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
