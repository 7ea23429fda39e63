"""Per-hostname mutual exclusion with arrival ordering."""

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class _FairLock:
    """Ticket lock: holders are admitted strictly in the order they took a ticket."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._serving = 0

    @property
    def idle(self) -> bool:
        return self._next_ticket == self._serving

    def take_ticket(self) -> int:
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            return ticket

    def wait_turn(self, ticket: int) -> None:
        with self._cond:
            while ticket != self._serving:
                self._cond.wait()

    def release(self) -> None:
        with self._cond:
            self._serving += 1
            self._cond.notify_all()


class HostnameLocks:
    """One fair lock per full hostname, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, _FairLock] = {}

    @contextmanager
    def hold(self, hostname: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(hostname, _FairLock())
            ticket = lock.take_ticket()

        lock.wait_turn(ticket)
        try:
            yield
        finally:
            with self._guard:
                lock.release()
                if lock.idle:
                    self._locks.pop(hostname, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
