"""Provider interfaces for stackctl."""
from __future__ import annotations

from .application import ApplicationError, ApplicationProvider, MigrationError
from .database import DatabaseError, PostgresProvider
from .hardening import SecurityHardener
from .packages import DependencyError, PackageError, PackageProvider, ReleasePackage
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "ApplicationError",
    "ApplicationProvider",
    "DatabaseError",
    "DependencyError",
    "MigrationError",
    "PackageError",
    "PackageProvider",
    "PostgresProvider",
    "ReleasePackage",
    "SecurityHardener",
    "SystemdError",
    "SystemdProvider",
]
