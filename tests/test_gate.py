"""
Tests for historian.gate — ConnectionGate permit pool.

Run with: python -m pytest tests/test_gate.py
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from historian.errors import CancelledOperation
from historian.gate import ConnectionGate


class TestConnectionGate:
    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            ConnectionGate(0)

    def test_acquire_release(self):
        gate = ConnectionGate(2)
        a = gate.acquire()
        b = gate.acquire()
        assert gate.in_use == 2
        gate.release(a)
        gate.release(b)
        assert gate.in_use == 0
        assert gate.peak_in_use == 2

    def test_double_release_rejected(self):
        gate = ConnectionGate(1)
        permit = gate.acquire()
        gate.release(permit)
        with pytest.raises(RuntimeError):
            gate.release(permit)
        assert gate.in_use == 0

    def test_foreign_permit_rejected(self):
        gate = ConnectionGate(1)
        other = ConnectionGate(1)
        permit = other.acquire()
        with pytest.raises(RuntimeError):
            gate.release(permit)

    def test_context_manager_releases_on_error(self):
        gate = ConnectionGate(1)
        with pytest.raises(KeyError):
            with gate.permit():
                raise KeyError("boom")
        assert gate.in_use == 0

    def test_concurrency_never_exceeds_capacity(self):
        capacity = 3
        gate = ConnectionGate(capacity)
        lock = threading.Lock()
        active = 0
        observed = []

        def work():
            nonlocal active
            with gate.permit():
                with lock:
                    active += 1
                    observed.append(active)
                time.sleep(0.01)
                with lock:
                    active -= 1

        with ThreadPoolExecutor(max_workers=12) as pool:
            for future in [pool.submit(work) for _ in range(36)]:
                future.result()

        assert max(observed) <= capacity
        assert gate.peak_in_use <= capacity
        assert gate.in_use == 0

    def test_blocked_acquire_proceeds_after_release(self):
        gate = ConnectionGate(1)
        held = gate.acquire()
        acquired = threading.Event()

        def waiter():
            with gate.permit():
                acquired.set()

        t = threading.Thread(target=waiter)
        t.start()
        assert not acquired.wait(0.1)
        gate.release(held)
        assert acquired.wait(2.0)
        t.join()

    def test_cancel_while_waiting(self):
        gate = ConnectionGate(1)
        held = gate.acquire()
        cancel = threading.Event()
        errors = []

        def waiter():
            try:
                gate.acquire(cancel)
            except CancelledOperation as e:
                errors.append(e)

        t = threading.Thread(target=waiter)
        t.start()
        time.sleep(0.1)
        cancel.set()
        t.join(2.0)
        assert not t.is_alive()
        assert len(errors) == 1
        # The cancelled waiter holds nothing
        assert gate.in_use == 1
        gate.release(held)
        assert gate.in_use == 0

    def test_already_cancelled_never_grants(self):
        gate = ConnectionGate(5)
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(CancelledOperation):
            gate.acquire(cancel)
        assert gate.in_use == 0
