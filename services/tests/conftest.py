"""
Top-level test configuration for ipamsync.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

# Ensure test-friendly defaults
os.environ.setdefault("IPAMSYNC_CONFIG_FILE", "/nonexistent/ipamsync-test.yaml")
os.environ.setdefault("IPAMSYNC_JSON_LOGS", "false")
os.environ.setdefault("IPAMSYNC_LOG_LEVEL", "DEBUG")

from fake_ipam import FakeIPAM  # noqa: E402

from ipamsync.client.http import HTTPIPAMClient  # noqa: E402
from ipamsync.engine.reconciler import Reconciler  # noqa: E402

TEST_ENDPOINT = "http://ipam.test"
TEST_TOKEN = "test-token"


@pytest.fixture
def fake_ipam() -> FakeIPAM:
    return FakeIPAM()


@pytest_asyncio.fixture
async def client(fake_ipam: FakeIPAM) -> AsyncGenerator[HTTPIPAMClient]:
    """HTTP client wired to the in-memory IPAM service."""
    c = HTTPIPAMClient(TEST_ENDPOINT, TEST_TOKEN, transport=fake_ipam.transport())
    yield c
    await c.close()


@pytest.fixture
def reconciler(client: HTTPIPAMClient) -> Reconciler:
    return Reconciler(client)
