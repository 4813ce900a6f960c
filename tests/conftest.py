import pytest

from coordinator.registry import NodeRegistry


class FakeChannel:
    def __init__(self, broken=False):
        self.sent = []
        self.broken = broken

    def send(self, message):
        if self.broken:
            raise ConnectionError("socket already closed")
        self.sent.append(message)


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def registry(clock):
    return NodeRegistry(clock=clock)
