#!/usr/bin/env python3
# src/rwlock.py
"""
Shared/exclusive lock used to guard the node record map and the override latch.

Any number of readers may hold the lock at once; a writer holds it alone.
Waiting writers block new readers so watch-event application is not starved
by a steady stream of admission decisions.
"""

import threading
from contextlib import contextmanager


class SharedExclusiveLock:
    """Writer-preferring readers/writer lock. Not reentrant."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def shared(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def exclusive(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()
