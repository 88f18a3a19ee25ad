import simpy

from tabtrack.core.debounce import Debouncer


def test_rapid_calls_collapse_to_last():
    env = simpy.Environment()
    seen: list[str] = []
    d = Debouncer(env, 0.3, seen.append)

    def driver():
        d("a")
        yield env.timeout(0.05)
        d("ab")
        yield env.timeout(0.05)
        d("abc")

    env.process(driver())
    env.run(until=2.0)

    assert seen == ["abc"]
    assert d.calls == 3
    assert d.fired == 1
    assert not d.pending


def test_calls_in_same_instant_collapse():
    env = simpy.Environment()
    seen: list[int] = []
    d = Debouncer(env, 0.5, seen.append)

    d(1)
    d(2)
    d(3)
    env.run(until=1.0)

    assert seen == [3]


def test_calls_spaced_beyond_window_all_fire():
    env = simpy.Environment()
    seen: list[str] = []
    d = Debouncer(env, 0.3, seen.append)

    def driver():
        d("x")
        yield env.timeout(0.5)
        d("y")

    env.process(driver())
    env.run(until=2.0)

    assert seen == ["x", "y"]


def test_quiet_period_restarts_on_each_call():
    env = simpy.Environment()
    fired_at: list[float] = []
    d = Debouncer(env, 0.3, lambda: fired_at.append(env.now))

    def driver():
        d()
        yield env.timeout(0.2)
        d()

    env.process(driver())
    env.run(until=2.0)

    assert fired_at == [0.5]


def test_cancel_and_flush():
    env = simpy.Environment()
    seen: list[str] = []
    d = Debouncer(env, 0.3, seen.append)

    d("dropped")
    d.cancel()
    env.run(until=1.0)
    assert seen == []

    d("now")
    assert d.flush() is None  # list.append returns None
    assert seen == ["now"]
    env.run(until=2.0)
    assert seen == ["now"]  # the timer did not fire it a second time
    assert d.flush() is None
