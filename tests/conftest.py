"""
Shared pytest fixtures for skypack unit tests.
"""

import pytest

from tests.devices import FakeDevice


@pytest.fixture
def device():
    """A fake device that answers every request immediately."""
    with FakeDevice() as dev:
        yield dev


@pytest.fixture
def make_device():
    """Factory for fake devices with custom behaviour; all are stopped at teardown."""
    devices = []

    def _make(**kwargs) -> FakeDevice:
        dev = FakeDevice(**kwargs).start()
        devices.append(dev)
        return dev

    yield _make

    for dev in devices:
        dev.stop()
