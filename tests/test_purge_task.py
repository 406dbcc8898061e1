"""
tests/test_purge_task.py -- Background purge loop started by the lifespan.

A failed pass, whatever the exception, is logged and the loop keeps running
until the task is cancelled.
"""

from __future__ import annotations

import asyncio
import logging
from types import SimpleNamespace

import pytest

from api.main import _purge_loop
from core.errors import Unavailable


def test_purge_loop_survives_failed_passes(caplog: pytest.LogCaptureFixture) -> None:
    outcomes = [RuntimeError("disk I/O error"), Unavailable(), (2, 1)]
    calls: list[int] = []

    def purge_expired():
        calls.append(1)
        outcome = outcomes[min(len(calls), len(outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    app = SimpleNamespace(state=SimpleNamespace(user_store=SimpleNamespace(purge_expired=purge_expired)))

    async def run() -> None:
        task = asyncio.create_task(_purge_loop(app, 0.001))
        while len(calls) < len(outcomes):
            await asyncio.sleep(0.005)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    with caplog.at_level(logging.INFO, logger="passgate.api"):
        asyncio.run(asyncio.wait_for(run(), timeout=5))

    assert "Purge pass failed" in caplog.text
    assert "credential store unavailable" in caplog.text
    assert "Purged 2 expired refresh token(s) and 1 MFA ticket(s)" in caplog.text
