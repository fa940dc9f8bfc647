"""Post-start health verification."""
from __future__ import annotations

import logging
import time
import urllib.error
import urllib.request
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

LOGGER = logging.getLogger(__name__)

ACTIVE = "active"


class ServiceStateSource(Protocol):
    """Anything that can report a unit's active state."""

    def is_active(self, service: str) -> str: ...


@dataclass(slots=True)
class HealthReport:
    """Final service states plus the advisory probe outcome."""

    services: dict[str, str]
    attempts: int
    probe_ok: bool | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return bool(self.services) and all(state == ACTIVE for state in self.services.values())

    @property
    def failed_services(self) -> list[str]:
        return [name for name, state in self.services.items() if state != ACTIVE]


@dataclass(slots=True)
class HealthChecker:
    """Poll the service manager a bounded number of times at a fixed interval."""

    retries: int = 10
    interval: float = 3.0
    probe_url: str | None = None
    probe_timeout: float = 5.0
    sleep: Callable[[float], None] = time.sleep

    def wait_for_active(self, source: ServiceStateSource, services: Sequence[str]) -> HealthReport:
        """Return once every service is active or the retries are used up."""
        states: dict[str, str] = {}
        attempts = 0
        for attempt in range(1, self.retries + 1):
            attempts = attempt
            states = {service: source.is_active(service) for service in services}
            if all(state == ACTIVE for state in states.values()):
                break
            if attempt < self.retries:
                self.sleep(self.interval)
        report = HealthReport(services=states, attempts=attempts)
        if report.healthy and self.probe_url:
            report.probe_ok = self.probe()
            if not report.probe_ok:
                report.warnings.append(f"HTTP probe of {self.probe_url} did not succeed.")
        return report

    def probe(self) -> bool:
        """Advisory HTTP reachability check; any response below 500 counts."""
        if not self.probe_url:
            return True
        request = urllib.request.Request(self.probe_url, method="GET")  # noqa: S310
        try:
            with urllib.request.urlopen(request, timeout=self.probe_timeout) as response:  # noqa: S310
                return int(response.status) < 500
        except urllib.error.HTTPError as exc:
            return exc.code < 500
        except (urllib.error.URLError, OSError, ValueError) as exc:
            LOGGER.warning("HTTP probe of %s failed: %s", self.probe_url, exc)
            return False


__all__ = ["ACTIVE", "HealthChecker", "HealthReport"]
