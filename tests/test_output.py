"""Tests for the JSON and Markdown report writers."""

import json

import pytest

from conftest import rule
from khodkar.analysis.agent import ResultAggregator
from khodkar.analysis.errors import ConfigurationError
from khodkar.analysis.output import OutputFormatter


@pytest.fixture
def result():
    aggregator = ResultAggregator()
    rules = aggregator.aggregate({"businessRules": [
        rule("BR-001", title="Refund window", category="billing", priority="low"),
        rule("BR-002", title="Seat limit", category="Accounts", priority="medium", userFacing=False,
             sourceReferences=[{"filePath": "accounts/seats.py", "lineRange": "7"}]),
        rule("BR-003", title="Late fee", category="billing", priority="high", sourceReferences=[]),
    ]})
    return aggregator.build_result(rules, "2026-03-01T12:00:00+00:00")


class TestMarkdown:

    def test_header_and_summary(self, result):
        text = OutputFormatter().to_markdown(result)
        assert text.startswith("# Business Rules\n")
        assert "**Analysis Date**: 2026-03-01T12:00:00+00:00" in text
        assert "**Total Rules**: 3" in text
        assert "**High Priority**: 1" in text
        assert "**User-Facing**: 2" in text

    def test_grouped_by_category_and_priority(self, result):
        text = OutputFormatter().to_markdown(result)
        assert text.index("## Accounts") < text.index("## billing")
        # Within a category, high before low
        assert text.index("### Late fee") < text.index("### Refund window")
        assert "**Priority**: MEDIUM" in text
        assert "**User-Facing**: No" in text

    def test_sources_listed(self, result):
        text = OutputFormatter().to_markdown(result)
        assert "- `billing/refunds.py:10-24`" in text
        assert "- `accounts/seats.py:7`" in text

    def test_flat_listing(self, result):
        text = OutputFormatter(group_by_category=False, include_source_references=False).to_markdown(result)
        assert "## Late fee" in text
        assert "**Category**: billing" in text
        assert "**Sources**" not in text

    def test_no_rules(self):
        empty = ResultAggregator().build_result([])
        text = OutputFormatter().to_markdown(empty)
        assert "**Total Rules**: 0" in text
        assert "_No business rules were extracted._" in text


class TestJSON:

    def test_camel_case_document(self, result):
        data = json.loads(OutputFormatter().to_json(result))
        assert set(data) == {"analysisDate", "businessRules", "summary"}
        assert data["summary"]["totalRules"] == 3
        assert [r["id"] for r in data["businessRules"]] == ["BR-001", "BR-002", "BR-003"]
        assert data["businessRules"][1]["sourceReferences"][0] == {
            "filePath": "accounts/seats.py",
            "lineRange": {"start": 7, "end": 7},
        }

    def test_without_metadata_and_sources(self, result):
        formatter = OutputFormatter(include_metadata=False, include_source_references=False)
        data = json.loads(formatter.to_json(result))
        assert "analysisDate" not in data
        assert "sourceReferences" not in data["businessRules"][0]


class TestSave:

    def test_save_creates_parent_dirs(self, result, tmp_path):
        target = tmp_path / "out" / "rules.md"
        path = OutputFormatter().save(result, target, "markdown")
        assert path == target
        assert target.read_text(encoding="utf-8").startswith("# Business Rules")

    def test_unknown_format(self, result, tmp_path):
        with pytest.raises(ConfigurationError):
            OutputFormatter().save(result, tmp_path / "rules.xml", "xml")
        assert not (tmp_path / "rules.xml").exists()
