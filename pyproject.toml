[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "flamethrower"
version = "0.12.0"
description = "DNS traffic generator for performance and functional testing over UDP, TCP, DoT and DoH"
requires-python = ">=3.10"
keywords = ["dns", "load-testing", "traffic-generator", "benchmark", "doh", "dot"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Name Service (DNS)",
    "Topic :: System :: Benchmark",
    "Topic :: Software Development :: Testing :: Traffic Generation",
]
dependencies = [
    "dnspython",
    "h2",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
flame = "flamethrower.main:main"

[tool.hatch.build.targets.wheel]
packages = ["flamethrower"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
