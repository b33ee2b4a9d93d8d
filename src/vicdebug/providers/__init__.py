"""vSphere-backed collaborators for the debug workflow."""
from __future__ import annotations

from .appliance import ApplianceConfigReader, DebugConfigurator
from .guest import GuestProgramError, GuestProgramRunner
from .resolver import TargetResolver
from .session import EnvironmentValidator, NotFoundError, VSphereError, VSphereSession

__all__ = [
    "ApplianceConfigReader",
    "DebugConfigurator",
    "EnvironmentValidator",
    "GuestProgramError",
    "GuestProgramRunner",
    "NotFoundError",
    "TargetResolver",
    "VSphereError",
    "VSphereSession",
]
