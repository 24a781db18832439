import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from groupcast.core.dispatch import DispatchEngine, rollup
from groupcast.domain.models import BroadcastStatus, RecipientResult, ScheduledBroadcast, SendSummary
from groupcast.persistence.repo import Repo


@pytest.fixture
def schedule(session_factory, clock):
    async def _schedule(user_id, recipients, minutes_ago=5, status=BroadcastStatus.pending, message="hello"):
        now = clock()
        b = ScheduledBroadcast(
            id=uuid.uuid4().hex, user_id=user_id, message=message, recipient_group_ids=recipients,
            send_at=now - timedelta(minutes=minutes_ago), status=status, created_at=now, updated_at=now,
        )
        async with session_factory() as s:
            repo = Repo(s)
            await repo.ensure_connection(user_id, now, 3)
            await repo.add_broadcast(b)
            await s.commit()
        return b.id

    return _schedule


async def get_broadcast(session_factory, broadcast_id):
    async with session_factory() as s:
        return await Repo(s).get_broadcast(broadcast_id)


async def deliveries(session_factory, user_id, broadcast_id=None):
    async with session_factory() as s:
        return await Repo(s).list_deliveries(user_id, limit=100, broadcast_id=broadcast_id)


def test_rollup():
    ok = RecipientResult(group_id="a", success=True)
    bad = RecipientResult(group_id="b", success=False)
    assert rollup(SendSummary(results=[ok, ok], sent=2, failed=0)) == BroadcastStatus.sent
    assert rollup(SendSummary(results=[ok, bad], sent=1, failed=1)) == BroadcastStatus.partial
    assert rollup(SendSummary(results=[bad], sent=0, failed=1)) == BroadcastStatus.failed


@pytest.mark.asyncio
async def test_partial_failure_records_every_recipient(dispatcher, gateway, seed_channel, schedule, session_factory):
    await seed_channel("u1")
    bid = await schedule("u1", ["g1", "g2", "g3"])
    gateway.send_failures = {"g2"}

    assert await dispatcher.run_due_broadcasts() == 1

    assert [to for to, _ in gateway.sent] == ["g1", "g2", "g3"]
    assert (await get_broadcast(session_factory, bid)).status == BroadcastStatus.partial
    records = await deliveries(session_factory, "u1", bid)
    assert len(records) == 3
    by_group = {r.recipient_group_id: r for r in records}
    assert by_group["g1"].status.value == "sent"
    assert by_group["g1"].remote_message_id
    assert by_group["g3"].status.value == "sent"
    assert by_group["g2"].status.value == "failed"
    assert "g2" in by_group["g2"].error_detail


@pytest.mark.asyncio
async def test_all_sent_and_all_failed(dispatcher, gateway, seed_channel, schedule, session_factory):
    await seed_channel("u1")
    ok_id = await schedule("u1", ["g1", "g2"], minutes_ago=10)
    bad_id = await schedule("u1", ["g3"], minutes_ago=5)
    gateway.send_failures = {"g3"}
    assert await dispatcher.run_due_broadcasts() == 2
    assert (await get_broadcast(session_factory, ok_id)).status == BroadcastStatus.sent
    assert (await get_broadcast(session_factory, bad_id)).status == BroadcastStatus.failed


@pytest.mark.asyncio
async def test_not_connected_fails_without_sending(dispatcher, gateway, seed_channel, schedule, session_factory):
    await seed_channel("u1", local_status="awaiting_pairing")
    bid = await schedule("u1", ["g1"])
    assert await dispatcher.run_due_broadcasts() == 1
    assert gateway.sent == []
    assert (await get_broadcast(session_factory, bid)).status == BroadcastStatus.failed
    assert await deliveries(session_factory, "u1") == []


@pytest.mark.asyncio
async def test_claim_is_compare_and_set(schedule, session_factory, clock):
    bid = await schedule("u1", ["g1"])
    async with session_factory() as s:
        assert await Repo(s).claim_broadcast(bid, clock()) is True
        await s.commit()
    async with session_factory() as s:
        assert await Repo(s).claim_broadcast(bid, clock()) is False


@pytest.mark.asyncio
async def test_concurrent_passes_send_once(settings, session_factory, gateway, clock, seed_channel, schedule):
    await seed_channel("u1")
    bid = await schedule("u1", ["g1", "g2", "g3"])
    a = DispatchEngine(settings, session_factory, gateway, clock=clock)
    b = DispatchEngine(settings, session_factory, gateway, clock=clock)

    counts = await asyncio.gather(a.run_due_broadcasts(), b.run_due_broadcasts())

    assert sum(counts) == 1
    assert sorted(to for to, _ in gateway.sent) == ["g1", "g2", "g3"]
    assert len(await deliveries(session_factory, "u1", bid)) == 3


@pytest.mark.asyncio
async def test_finished_broadcast_is_not_sent_again(dispatcher, gateway, seed_channel, schedule):
    await seed_channel("u1")
    await schedule("u1", ["g1"])
    assert await dispatcher.run_due_broadcasts() == 1
    assert await dispatcher.run_due_broadcasts() == 0
    assert len(gateway.sent) == 1


@pytest.mark.asyncio
async def test_cancelled_and_future_broadcasts_are_left_alone(dispatcher, gateway, seed_channel, schedule,
                                                              session_factory):
    await seed_channel("u1")
    cancelled = await schedule("u1", ["g1"], status=BroadcastStatus.cancelled)
    future = await schedule("u1", ["g2"], minutes_ago=-10)
    assert await dispatcher.run_due_broadcasts() == 0
    assert gateway.sent == []
    assert (await get_broadcast(session_factory, cancelled)).status == BroadcastStatus.cancelled
    assert (await get_broadcast(session_factory, future)).status == BroadcastStatus.pending


@pytest.mark.asyncio
async def test_oldest_first_and_batch_limit(settings, session_factory, gateway, clock, seed_channel, schedule):
    settings.dispatch_batch_size = 2
    await seed_channel("u1")
    newest = await schedule("u1", ["new"], minutes_ago=1)
    await schedule("u1", ["old"], minutes_ago=30)
    await schedule("u1", ["mid"], minutes_ago=15)
    dispatcher = DispatchEngine(settings, session_factory, gateway, clock=clock)

    assert await dispatcher.run_due_broadcasts() == 2

    assert [to for to, _ in gateway.sent] == ["old", "mid"]
    assert (await get_broadcast(session_factory, newest)).status == BroadcastStatus.pending


@pytest.mark.asyncio
async def test_unexpected_send_error_becomes_failed_delivery(dispatcher, gateway, seed_channel, schedule,
                                                             session_factory, monkeypatch):
    await seed_channel("u1")
    bid = await schedule("u1", ["g1", "g2"])
    original = gateway.send_message

    async def flaky(credential, to, body, media_ref=None, media_type=None):
        if to == "g1":
            raise RuntimeError("socket exploded")
        return await original(credential, to, body, media_ref, media_type)

    monkeypatch.setattr(gateway, "send_message", flaky)
    await dispatcher.run_due_broadcasts()

    assert (await get_broadcast(session_factory, bid)).status == BroadcastStatus.partial
    failed = [r for r in await deliveries(session_factory, "u1", bid) if r.status.value == "failed"]
    assert [r.error_detail for r in failed] == ["socket exploded"]


@pytest.mark.asyncio
async def test_lookup_error_marks_broadcast_failed_and_pass_continues(dispatcher, gateway, seed_channel, schedule,
                                                                      session_factory, monkeypatch):
    await seed_channel("u1")
    await seed_channel("u2", channel_id="CH-2")
    bad = await schedule("u1", ["g1"], minutes_ago=10)
    good = await schedule("u2", ["g2"], minutes_ago=5)
    original = Repo.get_connection

    async def broken(self, user_id):
        if user_id == "u1":
            raise RuntimeError("store unavailable")
        return await original(self, user_id)

    monkeypatch.setattr(Repo, "get_connection", broken)
    await dispatcher.run_due_broadcasts()
    monkeypatch.undo()

    assert (await get_broadcast(session_factory, bad)).status == BroadcastStatus.failed
    assert (await get_broadcast(session_factory, good)).status == BroadcastStatus.sent
    assert [to for to, _ in gateway.sent] == ["g2"]


@pytest.mark.asyncio
async def test_claim_error_marks_broadcast_failed_and_pass_continues(dispatcher, gateway, seed_channel, schedule,
                                                                     session_factory, monkeypatch):
    await seed_channel("u1")
    locked = await schedule("u1", ["g0"], minutes_ago=10)
    later = await schedule("u1", ["g1"], minutes_ago=5, message="m")
    original = Repo.claim_broadcast

    async def flaky_claim(self, broadcast_id, at):
        if broadcast_id == locked:
            raise OperationalError("UPDATE scheduled_broadcasts", {}, Exception("database is locked"))
        return await original(self, broadcast_id, at)

    monkeypatch.setattr(Repo, "claim_broadcast", flaky_claim)
    assert await dispatcher.run_due_broadcasts() == 1
    monkeypatch.undo()

    # never claimed, so the failure is recorded straight from pending
    assert (await get_broadcast(session_factory, locked)).status == BroadcastStatus.failed
    assert (await get_broadcast(session_factory, later)).status == BroadcastStatus.sent
    assert gateway.sent == [("g1", "m")]
    assert await deliveries(session_factory, "u1", locked) == []
