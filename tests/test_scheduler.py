import asyncio
import types

import pytest

from delivery_queue.errors import StoreUnavailableError
from delivery_queue.scheduler import TickScheduler


class DummyQueue:
    def __init__(self, fail_ticks=0):
        self.ticks = 0
        self.prunes = 0
        self.fail_ticks = fail_ticks
        self.tick_seen = asyncio.Event()

    async def process_tick(self):
        self.ticks += 1
        self.tick_seen.set()
        if self.ticks <= self.fail_ticks:
            raise StoreUnavailableError("database locked")

    async def prune_logs(self):
        self.prunes += 1
        return 0


class RecordingLogger:
    def __init__(self):
        self.exceptions = []

    def exception(self, msg, *args):
        self.exceptions.append(msg % args if args else msg)

    def info(self, *args, **kwargs):
        pass


async def wait_for_ticks(queue, count):
    while queue.ticks < count:
        queue.tick_seen.clear()
        await asyncio.wait_for(queue.tick_seen.wait(), timeout=2)


@pytest.mark.asyncio
async def test_runs_ticks_and_prunes_until_stopped():
    queue = DummyQueue()
    scheduler = TickScheduler(queue, tick_interval=0.01, prune_interval=60, logger=RecordingLogger())

    await scheduler.start()
    assert scheduler.running
    await wait_for_ticks(queue, 3)
    await scheduler.stop()

    assert not scheduler.running
    assert queue.prunes == 1
    ticks = queue.ticks
    await asyncio.sleep(0.05)
    assert queue.ticks == ticks


@pytest.mark.asyncio
async def test_failing_tick_does_not_stop_the_loop():
    queue = DummyQueue(fail_ticks=2)
    logger = RecordingLogger()
    scheduler = TickScheduler(queue, tick_interval=0.01, prune_interval=60, logger=logger)

    await scheduler.start()
    await wait_for_ticks(queue, 3)
    await scheduler.stop()

    assert queue.ticks >= 3
    assert len(logger.exceptions) == 2


@pytest.mark.asyncio
async def test_trigger_wakes_the_tick_loop():
    queue = DummyQueue()
    scheduler = TickScheduler(queue, tick_interval=60, prune_interval=60, logger=RecordingLogger())

    await scheduler.start()
    await wait_for_ticks(queue, 1)
    scheduler.trigger()
    await wait_for_ticks(queue, 2)
    await scheduler.stop()

    assert queue.ticks == 2


@pytest.mark.asyncio
async def test_start_twice_keeps_one_set_of_tasks():
    queue = DummyQueue()
    scheduler = TickScheduler(queue, tick_interval=60, prune_interval=60, logger=types.SimpleNamespace(
        info=lambda *a, **k: None, exception=lambda *a, **k: None
    ))

    await scheduler.start()
    tasks = list(scheduler._tasks)
    await scheduler.start()

    assert scheduler._tasks == tasks
    await scheduler.stop()
