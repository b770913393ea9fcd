import sys
import os
import tempfile
import unittest
# Add src to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from detection.errors import RuleError
from detection.rules import load_rules_from_directory, parse_sigma_rule, parse_sigma_yaml

VALID_RULE = """
title: Failed Login
id: rule-1
status: stable
description: failed logons
author: soc
date: 2024/01/01
logsource:
  product: windows
  category: authentication
detection:
  selection:
    EventID: 4625
  condition: selection
level: high
tags:
  - attack.t1110
"""


class TestParseSigmaRule(unittest.TestCase):
    def test_valid_rule(self):
        rule = parse_sigma_yaml(VALID_RULE, file_path="failed.yml")
        self.assertEqual(rule.id, "rule-1")
        self.assertEqual(rule.title, "Failed Login")
        self.assertEqual(rule.level, "high")
        self.assertEqual(rule.status, "stable")
        self.assertEqual(rule.logsource.product, "windows")
        self.assertEqual(rule.tags, ("attack.t1110",))
        self.assertEqual(rule.condition, "selection")
        self.assertEqual(rule.selection_names, ("selection",))
        self.assertEqual(rule.file_path, "failed.yml")

    def test_detection_is_read_only(self):
        rule = parse_sigma_yaml(VALID_RULE)
        with self.assertRaises(TypeError):
            rule.detection["selection"] = {}

    def test_missing_title(self):
        with self.assertRaises(RuleError):
            parse_sigma_rule({"detection": {"condition": "a", "a": {}}, "level": "low"})

    def test_missing_condition(self):
        with self.assertRaises(RuleError):
            parse_sigma_rule({"title": "t", "detection": {"a": {}}, "level": "low"})

    def test_invalid_level(self):
        with self.assertRaises(RuleError):
            parse_sigma_rule({"title": "t", "detection": {"condition": "a", "a": {}}, "level": "urgent"})

    def test_not_a_mapping(self):
        with self.assertRaises(RuleError):
            parse_sigma_yaml("- just\n- a list\n")

    def test_invalid_yaml(self):
        with self.assertRaises(RuleError):
            parse_sigma_yaml("title: [unclosed")

    def test_defaults(self):
        doc = {"title": "No Id", "detection": {"condition": "a", "a": {}}, "level": "LOW", "status": "bogus"}
        rule = parse_sigma_rule(doc)
        self.assertTrue(rule.id.startswith("auto-"))
        self.assertEqual(rule.id, parse_sigma_rule(doc).id)
        self.assertEqual(rule.level, "low")
        self.assertEqual(rule.status, "experimental")

    def test_deprecated_status_kept(self):
        doc = {"title": "Old", "detection": {"condition": "a", "a": {}}, "level": "low", "status": "deprecated"}
        self.assertEqual(parse_sigma_rule(doc).status, "deprecated")


class TestLoadRulesFromDirectory(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = self.tmp.name
        os.makedirs(os.path.join(root, "nested"))
        with open(os.path.join(root, "b.yml"), "w") as f:
            f.write(VALID_RULE.replace("rule-1", "rule-b"))
        with open(os.path.join(root, "a.yaml"), "w") as f:
            f.write(VALID_RULE.replace("rule-1", "rule-a"))
        with open(os.path.join(root, "nested", "c.yml"), "w") as f:
            f.write(VALID_RULE.replace("rule-1", "rule-c"))
        with open(os.path.join(root, "broken.yml"), "w") as f:
            f.write("title: broken\n")
        with open(os.path.join(root, "notes.txt"), "w") as f:
            f.write("ignored")

    def tearDown(self):
        self.tmp.cleanup()

    def test_recursive_sorted_load(self):
        rules, errors = load_rules_from_directory(self.tmp.name)
        self.assertEqual([r.id for r in rules], ["rule-a", "rule-b", "rule-c"])
        self.assertEqual(len(errors), 1)
        self.assertIn("broken.yml", errors[0])

    def test_non_recursive(self):
        rules, _ = load_rules_from_directory(self.tmp.name, recursive=False)
        self.assertEqual([r.id for r in rules], ["rule-a", "rule-b"])

    def test_missing_directory(self):
        rules, errors = load_rules_from_directory(os.path.join(self.tmp.name, "nope"))
        self.assertEqual(rules, [])
        self.assertEqual(errors, [])


if __name__ == '__main__':
    unittest.main()
