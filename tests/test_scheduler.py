import asyncio

import pytest

from groupcast.config import Settings
from groupcast.core.scheduler import PeriodicTask


@pytest.mark.asyncio
async def test_periodic_task_survives_failures_and_stops():
    ticks = []

    async def tick():
        ticks.append(1)
        if len(ticks) == 1:
            raise RuntimeError("first pass fails")

    task = PeriodicTask("test", 0.01, tick)
    task.start()
    assert task.running
    for _ in range(100):
        if len(ticks) >= 3:
            break
        await asyncio.sleep(0.01)
    await task.stop()
    assert not task.running
    assert len(ticks) >= 3


def test_webhook_url_follows_public_base_url():
    assert Settings(public_base_url="").webhook_url is None
    assert Settings(public_base_url="https://a.test/").webhook_url == "https://a.test/webhooks/whapi"
