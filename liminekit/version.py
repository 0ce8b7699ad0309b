"""Report the version of the tools."""

from __future__ import annotations

import sys
from importlib import metadata

__all__ = ["VERSION", "main"]

VERSION = "0.1.0"


def _installed_version() -> str:
    """Return the installed distribution's version, or the built-in one."""
    try:
        return metadata.version("liminekit")
    except metadata.PackageNotFoundError:
        return VERSION


def main(argv=None) -> int:
    """Print the version string on standard output; arguments are ignored."""
    sys.stdout.write(f"{_installed_version()}\n")
    sys.stdout.flush()
    return 0