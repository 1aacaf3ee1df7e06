"""Shared fixtures for wizlight_protocol tests."""

from __future__ import annotations

import pytest

from tests.helpers import start_fake_bulb


@pytest.fixture
async def fake_bulb():
    bulb = await start_fake_bulb()
    yield bulb
    bulb.transport.close()


@pytest.fixture
async def silent_bulb():
    bulb = await start_fake_bulb(silent=True)
    yield bulb
    bulb.transport.close()
