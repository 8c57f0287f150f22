from __future__ import annotations

import unittest

from rules import SubstitutionRule, apply_rules, is_included, matches_any


class PatternFilterTest(unittest.TestCase):
    def test_regex_patterns_are_case_insensitive(self) -> None:
        self.assertTrue(matches_any("https://Example.com/page", [r"example\.COM"]))
        self.assertFalse(matches_any("https://other.org", [r"example\.com"]))

    def test_invalid_regex_falls_back_to_substring(self) -> None:
        self.assertTrue(matches_any("https://site.com/a[b", ["a[b"]))
        self.assertFalse(matches_any("https://site.com/", ["a[b"]))

    def test_blank_patterns_are_ignored(self) -> None:
        self.assertFalse(matches_any("anything", ["", "   "]))
        self.assertFalse(matches_any("anything", None))

    def test_empty_include_list_includes_everything(self) -> None:
        self.assertTrue(is_included("notes/a.md", []))
        self.assertTrue(is_included("notes/a.md", None))

    def test_include_list_filters(self) -> None:
        self.assertTrue(is_included("projects/plants.md", ["^projects/"]))
        self.assertFalse(is_included("journal/day.md", ["^projects/"]))

    def test_literal_include_matches_words(self) -> None:
        self.assertTrue(is_included("tagged #archive here", ["#archive"], literal=True))
        self.assertFalse(is_included("tagged #Archive here", ["#archive"], literal=True))
        self.assertFalse(is_included("a.b", ["a*b"], literal=True))


class UrlRewriteTest(unittest.TestCase):
    def test_literal_rules_replace_every_occurrence(self) -> None:
        rules = [SubstitutionRule("http://", "https://")]
        self.assertEqual(apply_rules("http://a.com/?r=http://b.com", rules), "https://a.com/?r=https://b.com")

    def test_regex_rules_apply_in_order(self) -> None:
        rules = [
            SubstitutionRule(r"\?utm_[^&]*$", "", regex=True),
            SubstitutionRule("m.example.com", "example.com"),
        ]
        self.assertEqual(apply_rules("https://m.example.com/page?utm_source=x", rules), "https://example.com/page")

    def test_invalid_regex_rule_is_skipped(self) -> None:
        rules = [SubstitutionRule("(", "x", regex=True), SubstitutionRule("a", "b")]
        self.assertEqual(apply_rules("https://a.com", rules), "https://b.com")

    def test_rules_round_trip_through_dicts(self) -> None:
        rule = SubstitutionRule.from_dict({"find": "x", "replace": None, "regex": True})
        self.assertEqual(rule, SubstitutionRule("x", "", True))
        self.assertEqual(rule.to_dict(), {"find": "x", "replace": "", "regex": True})


if __name__ == "__main__":
    unittest.main()
