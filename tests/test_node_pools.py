#!/usr/bin/env python3
# tests/test_node_pools.py
"""
Test suite for node pool policy loading and label selector matching.
"""

import json
import os
import shutil
import sys
import tempfile
import unittest
from datetime import timedelta

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import node_pools
from node_pools import (
    InvalidNodePoolError,
    LabelSelector,
    NodePoolPolicy,
    NodePoolRule,
    parse_duration,
)


class TestParseDuration(unittest.TestCase):
    """Test window value parsing."""

    def test_numbers_are_seconds(self):
        self.assertEqual(parse_duration(300), timedelta(minutes=5))
        self.assertEqual(parse_duration(1.5), timedelta(seconds=1.5))
        self.assertEqual(parse_duration("90"), timedelta(seconds=90))

    def test_duration_strings(self):
        self.assertEqual(parse_duration("5m"), timedelta(minutes=5))
        self.assertEqual(parse_duration("90s"), timedelta(seconds=90))
        self.assertEqual(parse_duration("1h30m"), timedelta(hours=1, minutes=30))
        self.assertEqual(parse_duration("500ms"), timedelta(milliseconds=500))

    def test_invalid_durations(self):
        for value in ("", "five minutes", "5x", "m5", None, True, [], "5m garbage"):
            with self.subTest(value=value):
                with self.assertRaises(InvalidNodePoolError):
                    parse_duration(value)


class TestLabelSelector(unittest.TestCase):
    """Test Kubernetes label selector semantics."""

    def setUp(self):
        self.labels = {"pool": "gpu", "zone": "a", "spot": "true"}

    def test_empty_selector_matches_everything(self):
        selector = LabelSelector.from_dict({})
        self.assertTrue(selector.matches(self.labels))
        self.assertTrue(selector.matches({}))
        self.assertTrue(LabelSelector.from_dict(None).matches(None))

    def test_match_labels(self):
        selector = LabelSelector.from_dict({"matchLabels": {"pool": "gpu", "zone": "a"}})
        self.assertTrue(selector.matches(self.labels))
        self.assertFalse(selector.matches({"pool": "gpu"}))
        self.assertFalse(selector.matches({"pool": "cpu", "zone": "a"}))

    def test_match_expression_operators(self):
        cases = [
            ({"key": "zone", "operator": "In", "values": ["a", "b"]}, True),
            ({"key": "zone", "operator": "In", "values": ["c"]}, False),
            ({"key": "missing", "operator": "In", "values": ["a"]}, False),
            ({"key": "zone", "operator": "NotIn", "values": ["c"]}, True),
            ({"key": "zone", "operator": "NotIn", "values": ["a"]}, False),
            ({"key": "missing", "operator": "NotIn", "values": ["a"]}, True),
            ({"key": "spot", "operator": "Exists"}, True),
            ({"key": "missing", "operator": "Exists"}, False),
            ({"key": "missing", "operator": "DoesNotExist"}, True),
            ({"key": "spot", "operator": "DoesNotExist"}, False),
        ]
        for expr, expected in cases:
            with self.subTest(expr=expr):
                selector = LabelSelector.from_dict({"matchExpressions": [expr]})
                self.assertEqual(selector.matches(self.labels), expected)

    def test_requirements_are_anded(self):
        selector = LabelSelector.from_dict(
            {
                "matchLabels": {"pool": "gpu"},
                "matchExpressions": [{"key": "zone", "operator": "In", "values": ["b"]}],
            }
        )
        self.assertFalse(selector.matches(self.labels))

    def test_invalid_selectors(self):
        invalid = [
            {"matchExpressions": [{"key": "zone", "operator": "Near", "values": ["a"]}]},
            {"matchExpressions": [{"key": "zone", "operator": "In", "values": []}]},
            {"matchExpressions": [{"key": "zone", "operator": "Exists", "values": ["a"]}]},
            {"matchExpressions": [{"operator": "Exists"}]},
            {"matchLabels": ["pool"]},
            "pool=gpu",
        ]
        for data in invalid:
            with self.subTest(data=data):
                with self.assertRaises(InvalidNodePoolError):
                    LabelSelector.from_dict(data)


class TestNodePoolPolicy(unittest.TestCase):
    """Test rule ordering and default fallback."""

    def setUp(self):
        self.gpu = NodePoolRule.from_dict(
            {"name": "gpu", "labelSelector": {"matchLabels": {"pool": "gpu"}}, "threshold": 1, "window": "2m"}
        )
        self.zone_a = NodePoolRule.from_dict(
            {"name": "zone-a", "labelSelector": {"matchLabels": {"zone": "a"}}, "threshold": 5, "window": 600}
        )
        self.policy = NodePoolPolicy(
            default_threshold=3, default_window=timedelta(minutes=5), rules=(self.gpu, self.zone_a)
        )

    def test_first_match_wins(self):
        """A node matching several pools takes the first configured one."""
        threshold, window, pool = self.policy.resolve({"pool": "gpu", "zone": "a"})
        self.assertEqual((threshold, window, pool), (1, timedelta(minutes=2), "gpu"))

        threshold, window, pool = self.policy.resolve({"pool": "cpu", "zone": "a"})
        self.assertEqual((threshold, window, pool), (5, timedelta(minutes=10), "zone-a"))

    def test_no_match_falls_back_to_defaults(self):
        self.assertIsNone(self.policy.match({"pool": "cpu"}))
        self.assertEqual(
            self.policy.resolve({"pool": "cpu"}), (3, timedelta(minutes=5), "default")
        )
        self.assertEqual(self.policy.resolve(None), (3, timedelta(minutes=5), "default"))

    def test_invalid_rules(self):
        invalid = [
            {"threshold": -1, "window": 60},
            {"threshold": "3", "window": 60},
            {"threshold": True, "window": 60},
            {"threshold": 3, "window": 0},
            {"threshold": 3},
        ]
        for data in invalid:
            with self.subTest(data=data):
                with self.assertRaises(InvalidNodePoolError):
                    NodePoolRule.from_dict(data)

    def test_unnamed_rule_gets_positional_name(self):
        rule = NodePoolRule.from_dict({"threshold": 2, "window": 60}, index=4)
        self.assertEqual(rule.name, "pool-4")


class TestLoadNodePools(unittest.TestCase):
    """Test loading rules from the mounted ConfigMap directory."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.config_file = os.path.join(self.temp_dir, node_pools.NODE_POOLS_FILE)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, content):
        with open(self.config_file, "w") as f:
            f.write(content if isinstance(content, str) else json.dumps(content))

    def test_load_valid_rules_in_order(self):
        self._write(
            [
                {"name": "gpu", "labelSelector": {"matchLabels": {"pool": "gpu"}}, "threshold": 1, "window": "1m"},
                {"name": "edge", "labelSelector": {"matchExpressions": [{"key": "edge", "operator": "Exists"}]},
                 "threshold": 2, "window": 120},
            ]
        )

        rules = node_pools.load_node_pools(self.config_file)

        self.assertEqual([r.name for r in rules], ["gpu", "edge"])
        self.assertEqual(rules[1].window, timedelta(minutes=2))

    def test_invalid_rule_is_skipped(self):
        self._write(
            [
                {"name": "broken", "labelSelector": {"matchExpressions": [{"key": "a", "operator": "Bogus"}]},
                 "threshold": 1, "window": 60},
                {"name": "ok", "threshold": 4, "window": 60},
            ]
        )

        with self.assertLogs("pod-eviction-protection.policy", level="ERROR"):
            rules = node_pools.load_node_pools(self.config_file)

        self.assertEqual([r.name for r in rules], ["ok"])

    def test_missing_file_yields_no_rules(self):
        with self.assertLogs("pod-eviction-protection.policy", level="ERROR"):
            rules = node_pools.load_node_pools(os.path.join(self.temp_dir, "absent.json"))
        self.assertEqual(rules, [])

    def test_malformed_file_yields_no_rules(self):
        for content in ("{not json", json.dumps({"threshold": 3})):
            with self.subTest(content=content):
                self._write(content)
                with self.assertLogs("pod-eviction-protection.policy", level="ERROR"):
                    self.assertEqual(node_pools.load_node_pools(self.config_file), [])

    def test_load_policy_uses_defaults(self):
        self._write([{"name": "gpu", "threshold": 1, "window": "1m"}])

        policy = node_pools.load_policy(self.temp_dir, 7, 90)

        self.assertEqual(policy.default_threshold, 7)
        self.assertEqual(policy.default_window, timedelta(seconds=90))
        self.assertEqual(len(policy.rules), 1)
        self.assertEqual(
            node_pools.describe(policy),
            [{"name": "gpu", "threshold": 1, "windowSeconds": 60.0}],
        )


if __name__ == "__main__":
    unittest.main()
