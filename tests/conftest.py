"""Shared test fixtures."""

from __future__ import annotations

import pytest

from tests.fakes import Responder, open_pool


@pytest.fixture(autouse=True)
def no_netrc(monkeypatch, tmp_path):
    """Keep the developer's ~/.netrc out of outgoing requests."""
    monkeypatch.setenv("NETRC", str(tmp_path / "absent.netrc"))


@pytest.fixture
def responder() -> Responder:
    return Responder()


@pytest.fixture
async def pool(responder: Responder):
    """Enabled pool service answering with ``responder``."""
    async with open_pool(responder) as service:
        yield service
