"""Tests for post-start health verification."""
from __future__ import annotations

import pytest

from stackctl.health import HealthChecker


class SequenceSource:
    """Reports states from a scripted sequence per service."""

    def __init__(self, states: dict[str, list[str]]) -> None:
        self.states = states
        self.calls = 0

    def is_active(self, service: str) -> str:
        self.calls += 1
        sequence = self.states[service]
        return sequence.pop(0) if len(sequence) > 1 else sequence[0]


def test_wait_until_active() -> None:
    """Polling stops as soon as every service is active."""
    sleeps: list[float] = []
    checker = HealthChecker(retries=5, interval=0.5, sleep=sleeps.append)
    source = SequenceSource({"app": ["activating", "active"], "app-rq": ["active"]})

    report = checker.wait_for_active(source, ["app", "app-rq"])

    assert report.healthy
    assert report.attempts == 2
    assert sleeps == [0.5]
    assert report.probe_ok is None


def test_retries_are_bounded() -> None:
    """A service that never comes up is reported after the last retry."""
    sleeps: list[float] = []
    checker = HealthChecker(retries=3, interval=1.0, sleep=sleeps.append)
    source = SequenceSource({"app": ["active"], "app-rq": ["failed"]})

    report = checker.wait_for_active(source, ["app", "app-rq"])

    assert not report.healthy
    assert report.attempts == 3
    assert sleeps == [1.0, 1.0]
    assert report.failed_services == ["app-rq"]


def test_probe_failure_is_only_a_warning(monkeypatch: pytest.MonkeyPatch) -> None:
    """An unreachable probe URL adds a warning but keeps the report healthy."""
    checker = HealthChecker(retries=1, probe_url="http://127.0.0.1:9/", sleep=lambda _: None)
    monkeypatch.setattr(HealthChecker, "probe", lambda self: False)

    report = checker.wait_for_active(SequenceSource({"app": ["active"]}), ["app"])

    assert report.healthy
    assert report.probe_ok is False
    assert report.warnings == ["HTTP probe of http://127.0.0.1:9/ did not succeed."]


def test_probe_without_url_passes() -> None:
    """No probe URL means nothing to check."""
    assert HealthChecker(probe_url=None).probe() is True


def test_empty_service_set_is_not_healthy() -> None:
    """An empty service set never counts as healthy."""
    report = HealthChecker(retries=1).wait_for_active(SequenceSource({}), [])

    assert not report.healthy
