#!/usr/bin/env python3
# src/interception.py
"""
Operator override for eviction interception.

The latch is flipped through the /callback endpoints once an operator has
judged a failure scenario safe. The mirrored NotReady node set is kept for
operator visibility only; decisions never read it.
"""

import logging
from typing import List, Set, Tuple

from rwlock import SharedExclusiveLock

logger = logging.getLogger("pod-eviction-protection.interception")


class InterceptionOverride:
    """Manual kill switch layered on top of automatic health tracking."""

    def __init__(self, intercepting: bool = False):
        self._lock = SharedExclusiveLock()
        self._intercepting = intercepting
        self._not_ready_nodes: Set[str] = set()

    def disable(self):
        """Stop intercepting and forget the mirrored NotReady nodes.

        The node monitor's own records are left alone; they keep tracking the
        cluster.
        """
        with self._lock.exclusive():
            self._intercepting = False
            self._not_ready_nodes = set()
        logger.info("Interception disabled via callback")

    def enable(self):
        with self._lock.exclusive():
            self._intercepting = True
        logger.info("Interception enabled via callback")

    def is_intercepting(self) -> bool:
        with self._lock.shared():
            return self._intercepting

    def status(self) -> Tuple[bool, List[str]]:
        with self._lock.shared():
            return self._intercepting, sorted(self._not_ready_nodes)

    def record_not_ready(self, node_name: str):
        with self._lock.exclusive():
            self._not_ready_nodes.add(node_name)

    def record_ready(self, node_name: str):
        with self._lock.exclusive():
            self._not_ready_nodes.discard(node_name)
