import threading

import pytest

from funding_hedge.context import RunContext
from funding_hedge.errors import AuthError
from funding_hedge.scheduler import CancellationToken, PeriodicTask


def test_runs_until_max_runs():
    calls = []
    task = PeriodicTask("t", lambda: calls.append(1), interval_sec=0.001, max_runs=3)

    task.run()

    assert task.runs == 3
    assert len(calls) == 3


def test_failures_are_counted_and_loop_continues():
    def boom():
        raise RuntimeError("cycle failed")

    task = PeriodicTask("t", boom, interval_sec=0.001, max_runs=2)

    task.run()

    assert task.runs == 2
    assert task.failures == 2
    assert task.error is None


def test_auth_error_stops_task():
    def bad_credentials():
        raise AuthError("invalid api key")

    task = PeriodicTask("t", bad_credentials, interval_sec=0.001, max_runs=5)

    task.run()

    assert task.runs == 1
    assert isinstance(task.error, AuthError)
    assert task.token.cancelled


def test_cancel_interrupts_wait():
    started = threading.Event()
    task = PeriodicTask("t", started.set, interval_sec=60.0)

    task.start()
    assert started.wait(5.0)
    task.cancel()
    task.join(5.0)

    assert not task.running
    assert task.runs == 1


def test_shared_token_cancels_every_task():
    token = CancellationToken()
    a = PeriodicTask("a", lambda: None, interval_sec=60.0, token=token)
    b = PeriodicTask("b", lambda: None, interval_sec=60.0, token=token)

    token.cancel()
    a.run()
    b.run()

    assert a.runs == 0
    assert b.runs == 0


def test_invalid_interval():
    with pytest.raises(ValueError):
        PeriodicTask("t", lambda: None, interval_sec=0)


def test_run_context_close_joins_tasks():
    context = RunContext()
    task = context.register_task(PeriodicTask("t", lambda: None, interval_sec=60.0))
    task.start()

    context.close(timeout=5.0)

    assert context.closed
    assert not task.running
    context.close()
    with pytest.raises(RuntimeError):
        context.register_task(PeriodicTask("late", lambda: None, interval_sec=1.0))
