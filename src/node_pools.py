#!/usr/bin/env python3
# src/node_pools.py
"""
Node pool policy for pod eviction protection.

A node pool is a set of nodes matched by a Kubernetes label selector. Each
pool carries its own NotReady threshold and time window; nodes that match no
pool fall back to the cluster-wide defaults. Rules are loaded once at start-up
from the mounted ConfigMap and are read-only afterwards.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger("pod-eviction-protection.policy")

NODE_POOLS_FILE = "node-pools.json"

SELECTOR_OPERATORS = ("In", "NotIn", "Exists", "DoesNotExist")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}


class InvalidNodePoolError(ValueError):
    """Raised when a node pool rule or its label selector is malformed."""


def parse_duration(value: Any) -> timedelta:
    """Parse a window value into a timedelta.

    Numbers are seconds. Strings are either plain seconds ("300") or a
    duration such as "5m", "90s", "1h30m" or "500ms".
    """
    if isinstance(value, bool):
        raise InvalidNodePoolError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        try:
            return timedelta(seconds=value)
        except (ValueError, OverflowError):
            raise InvalidNodePoolError(f"invalid duration: {value!r}")
    if not isinstance(value, str) or not value.strip():
        raise InvalidNodePoolError(f"invalid duration: {value!r}")

    text = value.strip()
    if re.fullmatch(r"-?\d+(?:\.\d+)?", text):
        return timedelta(seconds=float(text))

    total = timedelta(0)
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise InvalidNodePoolError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise InvalidNodePoolError(f"invalid duration: {value!r}")
    return total


@dataclass(frozen=True)
class SelectorRequirement:
    key: str
    operator: str
    values: Tuple[str, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        if self.operator == "In":
            return self.key in labels and labels[self.key] in self.values
        if self.operator == "NotIn":
            return self.key not in labels or labels[self.key] not in self.values
        if self.operator == "Exists":
            return self.key in labels
        return self.key not in labels


@dataclass(frozen=True)
class LabelSelector:
    """A Kubernetes label selector. An empty selector matches every node."""

    match_labels: Tuple[Tuple[str, str], ...] = ()
    match_expressions: Tuple[SelectorRequirement, ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "LabelSelector":
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise InvalidNodePoolError("labelSelector must be an object")

        match_labels = data.get("matchLabels") or {}
        if not isinstance(match_labels, Mapping):
            raise InvalidNodePoolError("matchLabels must be an object")

        requirements = []
        for expr in data.get("matchExpressions") or []:
            if not isinstance(expr, Mapping):
                raise InvalidNodePoolError("matchExpressions entries must be objects")
            key = expr.get("key")
            operator = expr.get("operator")
            values = tuple(str(v) for v in expr.get("values") or ())
            if not key:
                raise InvalidNodePoolError("matchExpressions entry has no key")
            if operator not in SELECTOR_OPERATORS:
                raise InvalidNodePoolError(f"{operator!r} is not a valid label selector operator")
            if operator in ("In", "NotIn") and not values:
                raise InvalidNodePoolError(
                    f"values: must be specified when operator is {operator} (key {key})"
                )
            if operator in ("Exists", "DoesNotExist") and values:
                raise InvalidNodePoolError(
                    f"values: may not be specified when operator is {operator} (key {key})"
                )
            requirements.append(SelectorRequirement(str(key), operator, values))

        return cls(
            match_labels=tuple(sorted((str(k), str(v)) for k, v in match_labels.items())),
            match_expressions=tuple(requirements),
        )

    def matches(self, labels: Optional[Mapping[str, str]]) -> bool:
        labels = labels or {}
        for key, value in self.match_labels:
            if labels.get(key) != value:
                return False
        return all(req.matches(labels) for req in self.match_expressions)


@dataclass(frozen=True)
class NodePoolRule:
    selector: LabelSelector
    threshold: int
    window: timedelta
    name: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], index: int = 0) -> "NodePoolRule":
        if not isinstance(data, Mapping):
            raise InvalidNodePoolError("node pool entry must be an object")

        threshold = data.get("threshold")
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 0:
            raise InvalidNodePoolError(f"threshold must be a non-negative integer, got {threshold!r}")

        window = parse_duration(data.get("window"))
        if window <= timedelta(0):
            raise InvalidNodePoolError(f"window must be positive, got {data.get('window')!r}")

        return cls(
            selector=LabelSelector.from_dict(data.get("labelSelector")),
            threshold=threshold,
            window=window,
            name=str(data.get("name") or f"pool-{index}"),
        )


@dataclass(frozen=True)
class NodePoolPolicy:
    """Ordered node pool rules plus the cluster-wide fallback."""

    default_threshold: int = 3
    default_window: timedelta = timedelta(minutes=5)
    rules: Tuple[NodePoolRule, ...] = field(default_factory=tuple)

    def match(self, labels: Optional[Mapping[str, str]]) -> Optional[NodePoolRule]:
        """Return the first rule whose selector matches, or None."""
        for rule in self.rules:
            if rule.selector.matches(labels):
                return rule
        return None

    def resolve(self, labels: Optional[Mapping[str, str]]) -> Tuple[int, timedelta, str]:
        """Return (threshold, window, pool name) for a node's labels."""
        rule = self.match(labels)
        if rule is None:
            return self.default_threshold, self.default_window, "default"
        return rule.threshold, rule.window, rule.name


def load_node_pools(path: str) -> List[NodePoolRule]:
    """Load node pool rules from a JSON file.

    A missing or unparsable file yields no rules. Individual invalid rules are
    skipped so one typo does not disable every pool.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        logger.error(f"Failed to read node pools config file: {e}")
        return []
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse node pools config: {e}")
        return []

    if not isinstance(data, list):
        logger.error(f"Node pools config must be a JSON list, got {type(data).__name__}")
        return []

    rules = []
    for index, entry in enumerate(data):
        try:
            rules.append(NodePoolRule.from_dict(entry, index))
        except InvalidNodePoolError as e:
            logger.error(f"Invalid label selector in node pool config (entry {index}): {e}")
    logger.info(f"Loaded {len(rules)} node pool rule(s) from {path}")
    return rules


def load_policy(
    config_dir: str, default_threshold: int, default_window_seconds: int
) -> NodePoolPolicy:
    """Build the policy from the ConfigMap directory and the default settings."""
    rules = load_node_pools(os.path.join(config_dir, NODE_POOLS_FILE))
    policy = NodePoolPolicy(
        default_threshold=default_threshold,
        default_window=timedelta(seconds=default_window_seconds),
        rules=tuple(rules),
    )
    logger.info(
        f"Node pool policy ready: {len(policy.rules)} pool(s), default threshold={default_threshold}, "
        f"default window={policy.default_window}"
    )
    return policy


def describe(policy: NodePoolPolicy) -> List[Dict[str, Any]]:
    """Render the configured pools for start-up logging."""
    return [
        {
            "name": rule.name,
            "threshold": rule.threshold,
            "windowSeconds": rule.window.total_seconds(),
        }
        for rule in policy.rules
    ]
