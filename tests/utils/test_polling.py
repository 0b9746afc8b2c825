import pytest

from fhir_validator_service.utils.polling import poll_until


def test_poll_until_returns_true_once_probe_succeeds(fake_clock):
    answers = iter([False, False, True])

    assert poll_until(lambda: next(answers), timeout=30, interval=1, clock=fake_clock, sleep=fake_clock.sleep)
    assert fake_clock.sleeps == [1, 1]


def test_poll_until_gives_up_at_deadline(fake_clock):
    calls = []

    def probe():
        calls.append(fake_clock.now)
        return False

    ready = poll_until(probe, timeout=3, interval=1, clock=fake_clock, sleep=fake_clock.sleep)

    assert ready is False
    assert fake_clock.sleeps == [1, 1, 1]
    assert calls == [0, 1, 2, 3]


def test_poll_until_propagates_probe_errors(fake_clock):
    def probe():
        raise LookupError("engine gone")

    with pytest.raises(LookupError, match="engine gone"):
        poll_until(probe, timeout=10, interval=1, clock=fake_clock, sleep=fake_clock.sleep)
    assert fake_clock.sleeps == []
