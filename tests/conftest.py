"""Shared fixtures."""
import asyncio

import pytest

from conveyor.core.config import Settings
from conveyor.core.logging import clear_context, configure_logging


@pytest.fixture(autouse=True, scope="session")
def quiet_logging():
    configure_logging(level="WARNING")


@pytest.fixture(autouse=True)
def _clear_log_context():
    yield
    clear_context()


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the developer's .env file."""
    return Settings(_env_file=None)


class Gate:
    """Lets a test hold operations mid-flight and release them together."""

    def __init__(self):
        self.event = asyncio.Event()
        self.entered = 0
        self.calls: list = []

    async def op(self, ctx, payload):
        self.entered += 1
        self.calls.append(payload)
        await self.event.wait()
        return payload

    def open(self) -> None:
        self.event.set()


@pytest.fixture
def gate() -> Gate:
    return Gate()
