from funding_hedge.errors import NetworkError
from funding_hedge.time_sync import ServerClock


class Ticker:
    def __init__(self, start):
        self.value = start

    def __call__(self):
        return self.value


def test_sync_uses_request_midpoint():
    local = iter([1000, 1100])
    clock = ServerClock(lambda: 5050, local_ms=lambda: next(local), monotonic=lambda: 0.0)

    offset = clock.sync()

    assert offset == 5050 - 1050
    assert clock.offset_ms == 4000
    assert clock.synced


def test_initial_offset_used_until_first_sync():
    def failing():
        raise NetworkError("down")

    clock = ServerClock(failing, initial_offset_ms=-300, local_ms=lambda: 10_000)

    assert not clock.try_sync()
    assert clock.now_ms() == 9_700
    assert not clock.synced


def test_stale_offset_is_refreshed():
    calls = []
    mono = Ticker(0.0)

    def server_time():
        calls.append(1)
        return 2_000

    clock = ServerClock(server_time, refresh_interval_sec=60, local_ms=lambda: 1_000, monotonic=mono)

    clock.now_ms()
    clock.now_ms()
    assert len(calls) == 1

    mono.value = 61.0
    assert clock.now_ms() == 2_000
    assert len(calls) == 2

    clock.invalidate()
    assert clock.is_stale()
