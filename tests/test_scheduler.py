import pytest

from coordinator.scheduler import RampScheduler, RampState, partition

from conftest import FakeChannel


@pytest.mark.parametrize("total", [0, 1, 5, 8, 13, 500])
@pytest.mark.parametrize("n", [1, 2, 3, 7, 11])
def test_partition_sums_to_total(total, n):
    targets = partition(total, n)
    base, remainder = divmod(total, n)
    assert len(targets) == n
    assert sum(targets) == total
    assert set(targets) <= {base, base + 1}
    assert targets[:remainder] == [base + 1] * remainder
    assert targets[remainder:] == [base] * (n - remainder)


def test_partition_examples():
    assert partition(8, 3) == [3, 3, 2]
    assert partition(5, 3) == [2, 2, 1]
    assert partition(2, 3) == [1, 1, 0]


def test_partition_rejects_empty_node_set():
    with pytest.raises(ValueError):
        partition(5, 0)


def test_negative_targets_are_rejected(registry):
    with pytest.raises(ValueError):
        RampScheduler(registry, [1, -2])


class SleepRecorder:
    def __init__(self, hook=None):
        self.calls = []
        self.hook = hook

    async def __call__(self, seconds):
        self.calls.append(seconds)
        if self.hook is not None:
            self.hook(len(self.calls), seconds)


def _scheduler(registry, sequence, sleep):
    return RampScheduler(registry, sequence, interval=120, wait_backoff=5, start_delay=0, sleep=sleep)


@pytest.mark.asyncio
async def test_ship_splits_target_across_live_nodes(registry):
    channels = [FakeChannel() for _ in range(3)]
    for ch in channels:
        registry.admit(ch)
    scheduler = _scheduler(registry, [8, 5], SleepRecorder())

    targets = await scheduler.run_step(0)
    assert targets == {"node-1": 3, "node-2": 3, "node-3": 2}
    assert [ch.sent[-1] for ch in channels] == [
        {"type": "ramp", "clients": 3, "step": 0},
        {"type": "ramp", "clients": 3, "step": 0},
        {"type": "ramp", "clients": 2, "step": 0},
    ]

    targets = await scheduler.run_step(1)
    assert list(targets.values()) == [2, 2, 1]
    assert scheduler.current_step == 1
    assert scheduler.state is RampState.STEPPING


@pytest.mark.asyncio
async def test_run_walks_sequence_once_then_stops(registry):
    channel = FakeChannel()
    registry.admit(channel)
    sleep = SleepRecorder()
    scheduler = _scheduler(registry, [1, 2, 3], sleep)

    await scheduler.run()

    assert [m["step"] for m in channel.sent] == [0, 1, 2]
    assert [m["clients"] for m in channel.sent] == [1, 2, 3]
    assert sleep.calls == [120, 120, 120]
    assert scheduler.state is RampState.DONE


@pytest.mark.asyncio
async def test_start_delay_is_slept_first(registry):
    registry.admit(FakeChannel())
    sleep = SleepRecorder()
    scheduler = RampScheduler(registry, [1], interval=60, start_delay=5, sleep=sleep)
    await scheduler.run()
    assert sleep.calls == [5, 60]


@pytest.mark.asyncio
async def test_waits_for_first_node_without_skipping(registry):
    channel = FakeChannel()

    def hook(count, seconds):
        if count == 3:
            registry.admit(channel)

    sleep = SleepRecorder(hook)
    scheduler = _scheduler(registry, [1, 2], sleep)
    await scheduler.run()

    assert sleep.calls == [5, 5, 5, 120, 120]
    assert [m["step"] for m in channel.sent] == [0, 1]


@pytest.mark.asyncio
async def test_stalls_mid_sequence_when_all_nodes_leave(registry):
    first = FakeChannel()
    node = registry.admit(first)
    second = FakeChannel()
    states = []

    def hook(count, seconds):
        states.append(scheduler.state)
        if count == 4:
            # interval after step index 3: everyone leaves
            registry.remove(node)
        if count == 7:
            registry.admit(second)

    sleep = SleepRecorder(hook)
    scheduler = _scheduler(registry, [1, 2, 3, 5, 8], sleep)
    await scheduler.run()

    assert [m["step"] for m in first.sent] == [0, 1, 2, 3]
    assert second.sent == [{"type": "ramp", "clients": 8, "step": 4}]
    assert sleep.calls == [120, 120, 120, 120, 5, 5, 5, 120]
    assert RampState.WAITING_FOR_NODES in states
    assert scheduler.state is RampState.DONE


@pytest.mark.asyncio
async def test_dead_transport_counts_as_disconnect(registry):
    good = FakeChannel()
    registry.admit(FakeChannel(broken=True))
    registry.admit(good)
    scheduler = _scheduler(registry, [4], SleepRecorder())

    targets = await scheduler.run_step(0)

    assert targets == {"node-2": 2}
    assert good.sent == [{"type": "ramp", "clients": 2, "step": 0}]
    assert [n.id for n in registry.snapshot()] == ["node-2"]
