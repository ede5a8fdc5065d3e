from codeloop.core.scheduler import Scheduler, default_scheduler


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_first_request_does_not_wait() -> None:
    clock = FakeClock()
    scheduler = Scheduler(min_interval=2.0, clock=clock.time, sleep=clock.sleep)

    assert scheduler.wait_for_slot() == 0.0
    assert clock.sleeps == []


def test_waits_for_remaining_interval_since_request_was_issued() -> None:
    clock = FakeClock()
    scheduler = Scheduler(min_interval=2.0, clock=clock.time, sleep=clock.sleep)

    scheduler.mark_request()
    clock.now += 0.5
    waited = scheduler.wait_for_slot()

    assert waited == 1.5
    assert clock.sleeps == [1.5]


def test_no_wait_once_interval_elapsed() -> None:
    clock = FakeClock()
    scheduler = Scheduler(min_interval=2.0, clock=clock.time, sleep=clock.sleep)

    scheduler.mark_request()
    clock.now += 3.0

    assert scheduler.wait_for_slot() == 0.0


def test_defer_pushes_next_slot_forward() -> None:
    clock = FakeClock()
    scheduler = Scheduler(min_interval=2.0, clock=clock.time, sleep=clock.sleep)

    scheduler.defer(4.0)
    scheduler.wait_for_slot()

    assert clock.sleeps == [6.0]


def test_default_scheduler_is_shared() -> None:
    assert default_scheduler() is default_scheduler()
