"""Pydantic-модели правил классификации.

Условие правила — типизированный вариант (field, operator, pattern), а не
произвольный JSON: правило с неизвестным полем/оператором или
некомпилируемым regex отклоняется при загрузке.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

from failsig.models.common import PrimaryClass
from failsig.models.evidence import NormalizedEvidence, utc_now


class ConditionField(str, Enum):
    """Поле evidence, к которому применяется условие."""

    MESSAGE = "message"
    STACK_TRACE = "stack_trace"
    COMBINED = "combined"
    ERROR_TYPE = "error_type"
    FILE_REFERENCE = "file_reference"
    ENVIRONMENT = "environment"
    FRAMEWORK = "framework"
    SUITE = "suite"
    BROWSER = "browser"
    TEST_NAME = "test_name"


class ConditionOperator(str, Enum):
    """Оператор сравнения значения поля с паттерном."""

    CONTAINS = "contains"
    REGEX = "regex"
    EQUALS = "equals"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"


_METADATA_FIELDS = {
    ConditionField.ENVIRONMENT: "environment",
    ConditionField.FRAMEWORK: "framework",
    ConditionField.SUITE: "suite",
    ConditionField.BROWSER: "browser",
    ConditionField.TEST_NAME: "test_name",
}


def field_values(evidence: NormalizedEvidence, field: ConditionField) -> list[str]:
    """Непустые значения поля evidence. Пустой список — поле отсутствует."""
    if field is ConditionField.MESSAGE:
        values = [evidence.message]
    elif field is ConditionField.STACK_TRACE:
        values = [evidence.stack_trace]
    elif field is ConditionField.COMBINED:
        values = [evidence.combined_text]
    elif field is ConditionField.ERROR_TYPE:
        values = [] if evidence.is_unknown else [evidence.error_type]
    elif field is ConditionField.FILE_REFERENCE:
        values = list(evidence.file_references)
    else:
        raw = evidence.metadata.get(_METADATA_FIELDS[field])
        values = [str(raw)] if raw is not None else []
    return [v for v in values if v]


class RuleCondition(BaseModel):
    """Одно условие правила. Все условия правила объединяются через AND."""

    model_config = ConfigDict(frozen=True)

    field: ConditionField
    operator: ConditionOperator
    pattern: str = Field(min_length=1)
    case_sensitive: bool = False

    _compiled: re.Pattern[str] | None = PrivateAttr(default=None)

    @model_validator(mode="after")
    def _compile_regex(self) -> RuleCondition:
        if self.operator is ConditionOperator.REGEX:
            flags = 0 if self.case_sensitive else re.IGNORECASE
            try:
                self._compiled = re.compile(self.pattern, flags)
            except re.error as exc:
                raise ValueError(f"invalid regex {self.pattern!r}: {exc}") from exc
        return self

    def matches(self, evidence: NormalizedEvidence) -> bool:
        """True, если хотя бы одно значение поля удовлетворяет условию.

        Отсутствующее поле никогда не совпадает.
        """
        return any(self._matches_value(v) for v in field_values(evidence, self.field))

    def _matches_value(self, value: str) -> bool:
        if self.operator is ConditionOperator.REGEX:
            if self._compiled is None:
                flags = 0 if self.case_sensitive else re.IGNORECASE
                self._compiled = re.compile(self.pattern, flags)
            return self._compiled.search(value) is not None

        pattern = self.pattern
        if not self.case_sensitive:
            value = value.casefold()
            pattern = pattern.casefold()

        if self.operator is ConditionOperator.CONTAINS:
            return pattern in value
        if self.operator is ConditionOperator.EQUALS:
            return value.strip() == pattern.strip()
        if self.operator is ConditionOperator.STARTS_WITH:
            return value.startswith(pattern)
        return value.endswith(pattern)


class ClassificationRule(BaseModel):
    """Правило классификации: условия → (primary_class, sub_class).

    Меньший priority проверяется раньше; при равенстве — меньший id.
    Правила не удаляются, только деактивируются (``is_active=False``).
    """

    id: int = Field(ge=1)
    name: str = Field(min_length=1)
    primary_class: PrimaryClass
    sub_class: str | None = None
    priority: int = 100
    base_confidence: float = Field(
        default=0.8, ge=0.0, le=1.0,
        description="Уверенность при максимально специфичном совпадении",
    )
    conditions: list[RuleCondition] = Field(min_length=1)
    suggested_fixes: list[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.priority, self.id)

    def matches(self, evidence: NormalizedEvidence) -> bool:
        return all(c.matches(evidence) for c in self.conditions)


class RuleMatch(BaseModel):
    """Результат работы RuleEngine.classify()."""

    primary_class: PrimaryClass
    sub_class: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    rule_id: int | None = None
    rule_name: str | None = None
    suggested_fixes: list[str] = Field(default_factory=list)
