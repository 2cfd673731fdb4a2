import threading
import time

import pytest

from fleet.single_flight import SingleFlight
from fleet.site_locks import SiteLocks


def test_single_flight_collapses_concurrent_calls():
    flight = SingleFlight()
    started = threading.Event()
    release = threading.Event()
    calls = []

    def slow():
        calls.append(1)
        started.set()
        release.wait(timeout=5)
        return 'uploaded'

    results = []
    leader = threading.Thread(target=lambda: results.append(flight.do('asset', slow)))
    leader.start()
    assert started.wait(timeout=5)

    followers = [threading.Thread(target=lambda: results.append(flight.do('asset', slow))) for _ in range(3)]
    for t in followers:
        t.start()
    time.sleep(0.05)
    release.set()

    for t in [leader, *followers]:
        t.join(timeout=5)

    assert calls == [1]
    assert results == ['uploaded'] * 4
    assert flight.do('asset', lambda: 'again') == 'again'
    assert calls == [1]


def test_single_flight_shares_errors_and_forgets_key():
    flight = SingleFlight()

    def boom():
        raise RuntimeError('scp failed')

    with pytest.raises(RuntimeError):
        flight.do('k', boom)

    assert flight.do('k', lambda: 42) == 42


def test_site_locks_are_exclusive_per_installation():
    locks = SiteLocks()

    assert locks.try_acquire('site-1')
    assert not locks.try_acquire('site-1')
    assert locks.try_acquire('site-2')
    assert locks.is_locked('site-1') and locks.is_locked('site-2')

    locks.release('site-1')
    assert locks.try_acquire('site-1')


def test_site_locks_acquire_waits_for_release():
    locks = SiteLocks()
    locks.try_acquire('site-1')

    threading.Timer(0.05, locks.release, args=('site-1',)).start()

    assert locks.acquire('site-1', timeout=5)
    assert locks.is_locked('site-1')


def test_site_locks_hold_times_out_when_busy():
    locks = SiteLocks()
    locks.try_acquire('site-1')

    with pytest.raises(TimeoutError):
        with locks.hold('site-1', timeout=0.01):
            pass

    locks.release('site-1')
    with locks.hold('site-1', timeout=0.01):
        assert locks.is_locked('site-1')
    assert not locks.is_locked('site-1')
