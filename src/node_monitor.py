#!/usr/bin/env python3
# src/node_monitor.py
"""
Node health tracking for pod eviction protection.

This module provides functionality for:
- Listing and watching cluster nodes
- Tracking when each node last went NotReady
- Counting NotReady nodes inside a node pool's time window
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from kubernetes import client, watch
from kubernetes.client.rest import ApiException
from prometheus_client import Gauge

from node_pools import NodePoolPolicy
from rwlock import SharedExclusiveLock

logger = logging.getLogger("pod-eviction-protection.monitor")

node_notready_count = Gauge(
    "node_notready_count", "Number of nodes in NotReady state"
)

WATCH_ERROR_BACKOFF = 5


class NodeMonitorStartupError(RuntimeError):
    """Raised when the initial node list cannot be applied."""


@dataclass(frozen=True)
class NodeUpserted:
    node: client.V1Node


@dataclass(frozen=True)
class NodeDeleted:
    node: client.V1Node


NodeEvent = Union[NodeUpserted, NodeDeleted]


@dataclass(frozen=True)
class NodeHealthRecord:
    name: str
    became_not_ready_at: datetime
    labels: Mapping[str, str] = field(default_factory=dict)


def parse_k8s_time(time_val) -> Optional[datetime]:
    """Parse Kubernetes timestamp (str or datetime) to timezone-aware datetime (UTC)."""
    if not time_val:
        return None
    if isinstance(time_val, datetime):
        return time_val if time_val.tzinfo else time_val.replace(tzinfo=timezone.utc)
    time_str = str(time_val)
    for fmt in ("%Y-%m-%dT%H:%M:%S.%fZ", "%Y-%m-%dT%H:%M:%SZ"):
        try:
            return datetime.strptime(time_str, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    try:
        parsed = datetime.fromisoformat(time_str)
    except ValueError:
        logger.warning(f"Could not parse timestamp: {time_str}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def ready_condition(node: client.V1Node) -> Optional[client.V1NodeCondition]:
    """Return the node's Ready condition, if it reports one."""
    status = node.status
    for condition in (status.conditions if status else None) or []:
        if condition.type == "Ready":
            return condition
    return None


def _node_name(node: client.V1Node) -> str:
    return node.metadata.name


def _node_labels(node: client.V1Node) -> Dict[str, str]:
    return dict(node.metadata.labels or {})


class NodeHealthTracker:
    """Keeps `node name -> became NotReady at` for every NotReady node."""

    def __init__(
        self,
        core_api: client.CoreV1Api,
        policy: NodePoolPolicy,
        override=None,
        watch_timeout_seconds: int = 60,
    ):
        self.api = core_api
        self.policy = policy
        self.override = override
        self.watch_timeout_seconds = watch_timeout_seconds

        self._records: Dict[str, NodeHealthRecord] = {}
        self._lock = SharedExclusiveLock()
        self._resource_version: Optional[str] = None
        self._synced = threading.Event()
        self._shutdown_event = threading.Event()
        self._watch: Optional[watch.Watch] = None
        self._watch_thread: Optional[threading.Thread] = None

    def start(self):
        """List all nodes, then keep watching them on a background thread.

        Returns once the initial list has been applied. Raises
        NodeMonitorStartupError if it cannot be.
        """
        try:
            self._resync()
        except Exception as e:
            raise NodeMonitorStartupError(f"failed to sync node cache: {e}") from e

        self._watch_thread = threading.Thread(
            target=self._watch_nodes, name="node-watch", daemon=True
        )
        self._watch_thread.start()
        logger.info("Started node watch thread")

    def stop(self, timeout: float = 5):
        """Signal shutdown and wait up to `timeout` for the watch thread.

        Recent kubernetes clients shut down the stream socket in Watch.stop(),
        which unblocks a read on a quiet cluster. If the thread is still alive after the join it is left
        behind; it is a daemon and does not hold the process open.
        """
        logger.info("Stopping node monitor")
        self._shutdown_event.set()
        if self._watch is not None:
            self._watch.stop()
        if self._watch_thread and self._watch_thread.is_alive():
            self._watch_thread.join(timeout=timeout)
            if self._watch_thread.is_alive():
                logger.warning(f"Node watch thread did not exit within {timeout}s, abandoning it")

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def apply(self, event: NodeEvent):
        if isinstance(event, NodeDeleted):
            self.on_node_removed(event.node)
        else:
            self.on_node_observed(event.node)

    def on_node_observed(self, node: client.V1Node):
        """Record or clear a node depending on its Ready condition."""
        name = _node_name(node)
        record = self._record_for(node)

        with self._lock.exclusive():
            if record is not None:
                changed = self._records.get(name) != record
                self._records[name] = record
                removed = False
            else:
                removed = self._records.pop(name, None) is not None
            tracked = len(self._records)

        if record is not None:
            if self.override is not None:
                self.override.record_not_ready(name)
            if changed:
                logger.info(
                    f"Added/Updated node {name} in NotReady nodes list with timestamp "
                    f"{record.became_not_ready_at.isoformat()}, current count: {tracked}"
                )
        elif removed:
            if self.override is not None:
                self.override.record_ready(name)
            logger.info(f"Removed node {name} from NotReady nodes list, current count: {tracked}")

    def on_node_removed(self, node: client.V1Node):
        """Drop a deleted node's record unconditionally."""
        name = _node_name(node)
        with self._lock.exclusive():
            removed = self._records.pop(name, None) is not None
            tracked = len(self._records)

        if self.override is not None:
            self.override.record_ready(name)
        if removed:
            logger.info(f"Node {name} deleted, removed from NotReady nodes list, current count: {tracked}")

    def replace_all(self, nodes: Iterable[client.V1Node]):
        """Apply a fresh full node list; nodes absent from it are forgotten."""
        fresh: Dict[str, NodeHealthRecord] = {}
        seen = set()
        for node in nodes:
            name = _node_name(node)
            seen.add(name)
            record = self._record_for(node)
            if record is not None:
                fresh[name] = record

        with self._lock.exclusive():
            previous = set(self._records)
            self._records = fresh

        if self.override is not None:
            for name in previous - set(fresh):
                self.override.record_ready(name)
            for name in fresh:
                self.override.record_not_ready(name)

        logger.info(
            f"Applied full node list: {len(seen)} node(s), {len(fresh)} NotReady: {sorted(fresh)}"
        )

    def is_not_ready(self, node_name: str) -> bool:
        with self._lock.shared():
            return node_name in self._records

    def snapshot(self) -> Dict[str, NodeHealthRecord]:
        with self._lock.shared():
            return dict(self._records)

    def evaluate(
        self,
        node_name: str,
        labels: Optional[Mapping[str, str]] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[int, int]:
        """Count NotReady nodes inside the window of `node_name`'s pool.

        The pool (threshold and window) comes from the node's labels, but the
        count covers every tracked node in the cluster, not only that pool.
        Returns (count, threshold).
        """
        now = now or datetime.now(timezone.utc)

        with self._lock.shared():
            if labels is None:
                record = self._records.get(node_name)
                labels = record.labels if record else {}
            count, threshold, window, pool = self._count_in_window(labels, now)

        self._report(node_name, count, threshold, window, pool)
        return count, threshold

    def assess(self, node_name: str, now: Optional[datetime] = None) -> Optional[Tuple[int, int]]:
        """Evaluate `node_name` only if it is tracked as NotReady.

        Membership and the count are read under one shared section, so a
        concurrent watch event cannot remove the node in between. Returns
        None for a node that is not tracked, else (count, threshold).
        """
        now = now or datetime.now(timezone.utc)

        with self._lock.shared():
            record = self._records.get(node_name)
            if record is None:
                return None
            count, threshold, window, pool = self._count_in_window(record.labels, now)

        self._report(node_name, count, threshold, window, pool)
        return count, threshold

    def _count_in_window(
        self, labels: Mapping[str, str], now: datetime
    ) -> Tuple[int, int, timedelta, str]:
        # Caller holds the shared lock.
        threshold, window, pool = self.policy.resolve(labels)

        count = 0
        for name, record in self._records.items():
            age = now - record.became_not_ready_at
            if age < window:
                count += 1
                logger.debug(f"Node {name} has been NotReady for {age} (within window of {window})")
            else:
                logger.debug(f"Node {name} has been NotReady for {age} (outside window of {window})")
        return count, threshold, window, pool

    def _report(self, node_name: str, count: int, threshold: int, window: timedelta, pool: str):
        node_notready_count.set(count)
        logger.info(
            f"Node {node_name} matched pool {pool}: {count} NotReady node(s) within {window}, "
            f"threshold: {threshold}"
        )

    def _record_for(self, node: client.V1Node) -> Optional[NodeHealthRecord]:
        """Build a record if the node is NotReady, else None."""
        condition = ready_condition(node)
        if condition is None or condition.status == "True":
            return None

        name = _node_name(node)
        logger.debug(
            f"Node {name} is NotReady: Status={condition.status}, Reason={condition.reason}, "
            f"Message={condition.message}, LastTransitionTime={condition.last_transition_time}"
        )
        became_not_ready_at = parse_k8s_time(condition.last_transition_time)
        if became_not_ready_at is None:
            logger.warning(f"Node {name} Ready condition has no transition time, using observation time")
            became_not_ready_at = datetime.now(timezone.utc)
        return NodeHealthRecord(name, became_not_ready_at, _node_labels(node))

    def _resync(self):
        node_list = self.api.list_node(_request_timeout=self.watch_timeout_seconds)
        self.replace_all(node_list.items)
        self._resource_version = node_list.metadata.resource_version if node_list.metadata else None
        self._synced.set()

    def _watch_nodes(self):
        """Watch node changes, resuming from the last resource version."""
        logger.info("Starting node watch")

        while not self._shutdown_event.is_set():
            try:
                if self._resource_version is None:
                    logger.info("Re-listing nodes to resynchronize")
                    self._resync()

                w = watch.Watch()
                self._watch = w
                for event in w.stream(
                    self.api.list_node,
                    resource_version=self._resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                ):
                    if self._shutdown_event.is_set():
                        break
                    if not self._handle_watch_event(event):
                        break

                w.stop()

            except ApiException as e:
                if self._shutdown_event.is_set():
                    break
                if e.status == 410:  # Resource version too old
                    logger.info("Node watch resource version expired, resynchronizing")
                    self._resource_version = None
                    continue
                logger.error(f"Node watch error: {e}")
                self._shutdown_event.wait(WATCH_ERROR_BACKOFF)

            except Exception as e:
                if self._shutdown_event.is_set():
                    break
                logger.error(f"Unexpected node watch error: {e}")
                self._shutdown_event.wait(WATCH_ERROR_BACKOFF)

        self._watch = None
        logger.info("Node watch stopped")

    def _handle_watch_event(self, event: Dict[str, Any]) -> bool:
        """Apply one raw watch event. Returns False when the stream must restart."""
        event_type = event["type"]
        obj = event["object"]

        if event_type == "ERROR":
            raw = event.get("raw_object") or {}
            code = raw.get("code") if isinstance(raw, dict) else None
            logger.warning(f"Node watch reported error: {raw}")
            if code == 410:
                self._resource_version = None
                return False
            return True

        if event_type != "BOOKMARK":
            typed = NodeDeleted(obj) if event_type == "DELETED" else NodeUpserted(obj)
            logger.debug(f"Received node event: {event_type} for {_node_name(obj)}")
            self.apply(typed)

        if obj.metadata and obj.metadata.resource_version:
            self._resource_version = obj.metadata.resource_version
        return True
