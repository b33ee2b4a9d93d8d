"""vicdebug package bootstrap.

Exposes the installer version that the ``debug`` workflow reports next to the
version of the appliance it is configuring.
"""
from __future__ import annotations

__all__ = ["__version__"]

# NOTE: Hatch reads the package version from here (see ``pyproject.toml``).
__version__ = "1.2.0"
