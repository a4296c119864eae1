"""
Business-rule report writer for Khodkar.
"""
from __future__ import annotations

import json
import logging
from collections import OrderedDict
from pathlib import Path

from .agent.models import AnalysisResult, BusinessRule
from .errors import ConfigurationError

logger = logging.getLogger("khodkar.output")

OUTPUT_FORMATS = ("json", "markdown")

_PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


class OutputFormatter:

    def __init__(
        self,
        include_metadata: bool = True,
        include_source_references: bool = True,
        group_by_category: bool = True,
        sort_by_priority: bool = True,
    ) -> None:
        self.include_metadata = include_metadata
        self.include_source_references = include_source_references
        self.group_by_category = group_by_category
        self.sort_by_priority = sort_by_priority

    def format(self, result: AnalysisResult, fmt: str) -> str:
        if fmt == "json":
            return self.to_json(result)
        if fmt == "markdown":
            return self.to_markdown(result)
        raise ConfigurationError(f"Unsupported output format '{fmt}'. Use one of: {', '.join(OUTPUT_FORMATS)}")

    def save(self, result: AnalysisResult, output_path: str | Path, fmt: str) -> Path:
        content = self.format(result, fmt)
        path = Path(output_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.info(f"Wrote {len(result.business_rules)} rules as {fmt} to {path}")
        return path

    # ── JSON ──

    def to_json(self, result: AnalysisResult) -> str:
        data = result.to_dict()
        if not self.include_metadata:
            data.pop("analysisDate", None)
        if not self.include_source_references:
            for rule in data["businessRules"]:
                rule.pop("sourceReferences", None)
        return json.dumps(data, indent=2, ensure_ascii=False) + "\n"

    # ── Markdown ──

    def to_markdown(self, result: AnalysisResult) -> str:
        summary = result.summary
        lines = ["# Business Rules", ""]

        if self.include_metadata:
            lines += [
                f"**Analysis Date**: {result.analysis_date}",
                f"**Total Rules**: {summary.total_rules}",
                f"**High Priority**: {summary.high_priority_rules}",
                f"**User-Facing**: {summary.user_facing_rules}",
                "",
            ]

        if not result.business_rules:
            lines += ["_No business rules were extracted._", ""]
            return "\n".join(lines)

        for category, rules in self._grouped(result.business_rules).items():
            if category is not None:
                lines += [f"## {category}", ""]
            for rule in rules:
                lines += self._rule_block(rule, heading="###" if category is not None else "##")

        return "\n".join(lines)

    def _grouped(self, rules: tuple[BusinessRule, ...]) -> OrderedDict[str | None, list[BusinessRule]]:
        ordered = list(rules)
        if self.sort_by_priority:
            ordered.sort(key=lambda r: _PRIORITY_ORDER[r.priority])

        groups: OrderedDict[str | None, list[BusinessRule]] = OrderedDict()
        if not self.group_by_category:
            groups[None] = ordered
            return groups
        for category in sorted({r.category for r in ordered}, key=str.lower):
            groups[category] = [r for r in ordered if r.category == category]
        return groups

    def _rule_block(self, rule: BusinessRule, heading: str) -> list[str]:
        block = [
            f"{heading} {rule.title}",
            "",
            f"**ID**: {rule.id}",
            f"**Priority**: {rule.priority.upper()}",
            f"**User-Facing**: {'Yes' if rule.user_facing else 'No'}",
        ]
        if not self.group_by_category:
            block.append(f"**Category**: {rule.category}")
        block += ["", rule.description, ""]

        if self.include_source_references and rule.source_references:
            block.append("**Sources**:")
            block += [f"- `{ref.label()}`" for ref in rule.source_references]
            block.append("")
        return block
