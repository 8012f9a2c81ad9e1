"""Pytest configuration and shared fixtures."""

from typing import Any

import pytest

from smibar.errors import RemoteCommandError
from smibar.models import GPURecord, GPUSnapshot


# Configure pytest-asyncio
pytest_plugins = ("pytest_asyncio",)


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedClient:
    """GPU query client that replays a list of outcomes.

    Each outcome is a GPUSnapshot (returned) or an Exception (raised). The
    last outcome repeats once the script runs out.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, int]] = []

    def query(self, target: str, port: int = 0) -> GPUSnapshot:
        self.calls.append((target, port))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingSink:
    """Event sink that keeps every emitted event in order."""

    def __init__(self):
        self.events: list[tuple[str, Any]] = []

    def emit(self, name: str, payload: Any) -> None:
        self.events.append((name, payload))

    def named(self, name: str) -> list[Any]:
        return [payload for n, payload in self.events if n == name]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def sample_snapshot():
    """Two-GPU snapshot as parsed from a typical workstation."""
    return GPUSnapshot(
        (
            GPURecord(
                index=0,
                name="NVIDIA GeForce RTX 4090",
                util=78,
                temp=66,
                mem_used=10240,
                mem_total=24576,
                fan_speed=45,
                power_draw=210,
                power_limit=450,
                driver_version="550.54.14",
                cuda_version="12.4",
            ),
            GPURecord(
                index=1,
                name="NVIDIA GeForce RTX 4090",
                util=3,
                temp=38,
                mem_used=512,
                mem_total=24576,
            ),
        )
    )


@pytest.fixture
def auth_error():
    return RemoteCommandError("ssh: gpuhost: Permission denied (publickey).")
