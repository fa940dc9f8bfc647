"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    ``VALIDATION`` and ``ENVIRONMENT`` cover precondition failures detected
    before anything is mutated, ``PROVIDER`` covers failing external tools and
    ``CONSISTENCY`` means the installation may need operator recovery.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
    CONSISTENCY = 5
