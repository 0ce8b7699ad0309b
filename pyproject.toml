[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "liminekit"
version = "0.1.0"
description = "Host-side tools for the Limine boot protocol: deploy a BIOS boot image to MBR/GPT disks, inflate DEFLATE/gzip data, and describe protocol requests"
requires-python = ">=3.10"
dependencies = []
keywords = ["bootloader", "limine", "gpt", "mbr", "deflate", "gzip", "boot"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Boot",
]

[project.optional-dependencies]
test = ["pytest", "hypothesis"]

[project.scripts]
liminekit-deploy = "liminekit.deploy:main"
liminekit-version = "liminekit.version:main"

[tool.hatch.build.targets.wheel]
packages = ["liminekit"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
