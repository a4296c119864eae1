from __future__ import annotations

import logging
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationInfo, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from .models import AnalysisResult, BusinessRule, LineRange, SourceReference

logger = logging.getLogger("khodkar.agent")

_RANGE_RE = re.compile(r"^\s*L?(\d+)\s*(?:[-:–]\s*L?(\d+))?\s*$")


def _parse_line_range(value: Any) -> Any:
    if value is None or isinstance(value, LineRange):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return {"start": value, "end": value}
    if isinstance(value, str):
        match = _RANGE_RE.match(value)
        if not match:
            raise ValueError(f"unrecognised line range {value!r}")
        start = int(match.group(1))
        end = int(match.group(2) or start)
        return {"start": start, "end": end}
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return {"start": value[0], "end": value[1]}
    if isinstance(value, dict) and "start" in value and "end" not in value:
        return {"start": value["start"], "end": value["start"]}
    return value


class _RawLineRange(BaseModel):
    start: int = Field(ge=1)
    end: int = Field(ge=1)

    @field_validator("end")
    @classmethod
    def _ordered(cls, end: int, info: ValidationInfo) -> int:
        start = info.data.get("start")
        if start is not None and end < start:
            raise ValueError(f"end ({end}) is before start ({start})")
        return end


class _RawReference(BaseModel):
    model_config = ConfigDict(extra="ignore")

    filePath: str
    lineRange: _RawLineRange | None = None

    @field_validator("filePath")
    @classmethod
    def _non_empty_path(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("lineRange", mode="before")
    @classmethod
    def _coerce_range(cls, value: Any) -> Any:
        return _parse_line_range(value)


class _RawRule(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    description: str
    category: str
    priority: Literal["low", "medium", "high"]
    userFacing: StrictBool
    sourceReferences: list[_RawReference] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("id", "title", "description", "category")
    @classmethod
    def _stripped_non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("priority", mode="before")
    @classmethod
    def _fold_priority(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    def to_rule(self) -> BusinessRule:
        refs: list[SourceReference] = []
        seen: set[tuple[str, int | None, int | None]] = set()
        for ref in self.sourceReferences:
            line_range = (
                LineRange(start=ref.lineRange.start, end=ref.lineRange.end)
                if ref.lineRange else None
            )
            key = (ref.filePath, line_range.start if line_range else None, line_range.end if line_range else None)
            if key in seen:
                continue
            seen.add(key)
            refs.append(SourceReference(file_path=ref.filePath, line_range=line_range))
        return BusinessRule(
            id=self.id,
            title=self.title,
            description=self.description,
            category=self.category,
            priority=self.priority,
            user_facing=self.userFacing,
            source_references=tuple(refs),
        )


class ResultAggregator:
    """Validates a structured emission and turns it into business rules.

    Aggregation is a pure function of its input: the same emission always
    yields the same rules in the same order. Duplicate ids keep the first
    occurrence. Counts claimed by the model are ignored.
    """

    def aggregate(self, emission: Any, strict: bool = True) -> list[BusinessRule]:
        """Validate ``emission`` into rules.

        With ``strict=False`` (partial results from an unfinished run) invalid
        entries are logged and skipped instead of failing the whole set.
        """
        if not strict and not (isinstance(emission, dict) and isinstance(emission.get("businessRules"), list)):
            logger.warning("Partial emission has no 'businessRules' array; no rules recovered")
            return []
        if not isinstance(emission, dict):
            raise ValidationError(
                "Final emission must be a JSON object",
                issues=[f"expected object, got {type(emission).__name__}"],
            )
        entries = emission.get("businessRules")
        if not isinstance(entries, list):
            raise ValidationError(
                "Final emission is missing the 'businessRules' array",
                issues=["businessRules: field required (array)"],
            )

        issues: list[str] = []
        rules: list[BusinessRule] = []
        seen_ids: set[str] = set()
        for index, entry in enumerate(entries):
            try:
                raw = _RawRule.model_validate(entry)
            except PydanticValidationError as e:
                entry_issues = _format_issues(e, index)
                if not strict:
                    logger.warning(f"Skipping invalid partial rule at index {index}: {'; '.join(entry_issues)}")
                    continue
                issues.extend(entry_issues)
                continue
            if raw.id in seen_ids:
                logger.info(f"Dropping duplicate business rule id {raw.id!r} at index {index}")
                continue
            seen_ids.add(raw.id)
            rules.append(raw.to_rule())

        if issues:
            raise ValidationError(
                f"Final emission failed validation ({len(issues)} issue(s))",
                issues=issues,
            )

        logger.info(f"Aggregated {len(rules)} business rules from {len(entries)} entries")
        return rules

    def build_result(self, rules: list[BusinessRule], analysis_date: str | None = None) -> AnalysisResult:
        if analysis_date is None:
            return AnalysisResult(business_rules=tuple(rules))
        return AnalysisResult(analysis_date=analysis_date, business_rules=tuple(rules))


def _format_issues(error: PydanticValidationError, index: int) -> list[str]:
    issues = []
    for err in error.errors():
        loc = "".join(
            f"[{part}]" if isinstance(part, int) else f".{part}"
            for part in err["loc"]
        )
        issues.append(f"businessRules[{index}]{loc}: {err['msg']}")
    return issues
