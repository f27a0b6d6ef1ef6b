"""Pydantic-модели классификаций, дефект-групп и журнала аудита."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from failsig.models.common import AuditAction, PrimaryClass
from failsig.models.evidence import ensure_utc, utc_now


class Classification(BaseModel):
    """Классификация одного упавшего теста.

    Создаётся при первой оценке. Изменяется только через
    ReclassificationService (каждое изменение пишет запись аудита).
    """

    id: int | None = None
    failure_id: int
    primary_class: PrimaryClass
    sub_class: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    signature: str
    is_manual: bool = False
    matched_rule_id: int | None = None
    classified_by: str | None = Field(
        default=None,
        description="Автор ручной классификации (None — классифицировано правилом)",
    )
    rule_set_version: str | None = None
    evidence: dict[str, Any] = Field(default_factory=dict)
    suggested_fixes: list[str] = Field(default_factory=list)
    classified_at: datetime = Field(default_factory=utc_now)


class DefectGroup(BaseModel):
    """Долговременный агрегат всех падений с одной сигнатурой.

    Инварианты: occurrence_count == число DefectGroupMember;
    first_seen <= timestamp любого участника <= last_seen.
    """

    id: int | None = None
    signature: str
    project_id: int | None = None
    primary_class: PrimaryClass
    sub_class: str | None = None
    error_type: str | None = None
    representative_error: str = ""
    first_seen: datetime
    last_seen: datetime
    occurrence_count: int = Field(default=1, ge=0)
    is_resolved: bool = False

    @field_validator("first_seen", "last_seen")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class DefectGroupMember(BaseModel):
    """Связь группа ↔ упавший тест. Только добавление."""

    model_config = ConfigDict(frozen=True)

    group_id: int
    failure_id: int
    added_at: datetime = Field(default_factory=utc_now)


class AuditLogEntry(BaseModel):
    """Неизменяемая запись журнала аудита.

    ``classification_id`` пуст для действий над группой (resolved/reopened),
    ``group_id`` пуст для создания классификации без группы.
    """

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    classification_id: int | None = None
    group_id: int | None = None
    action: AuditAction
    old_primary_class: PrimaryClass | None = None
    new_primary_class: PrimaryClass | None = None
    old_sub_class: str | None = None
    new_sub_class: str | None = None
    actor: str | None = None
    note: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


# ------------------------------------------------------------------
# Листинг групп
# ------------------------------------------------------------------

GroupSortField = Literal["occurrence_count", "last_seen", "first_seen"]


class GroupFilters(BaseModel):
    """Фильтры для DefectGroupAggregator.list_groups()."""

    project_id: int | None = None
    primary_class: PrimaryClass | None = None
    sub_class: str | None = None
    is_resolved: bool | None = None
    since: datetime | None = Field(default=None, description="Группа видна, если last_seen >= since")
    until: datetime | None = Field(default=None, description="Группа видна, если first_seen <= until")
    search: str | None = Field(
        default=None,
        description="Подстрока (без учёта регистра) в representative_error или sub_class",
    )
    sort_by: GroupSortField = "occurrence_count"
    descending: bool = True
    limit: int | None = Field(default=None, ge=1)

    @field_validator("since", "until")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    def matches(self, group: DefectGroup) -> bool:
        """Проверить группу на соответствие фильтрам (без сортировки и лимита)."""
        if self.project_id is not None and group.project_id != self.project_id:
            return False
        if self.primary_class is not None and group.primary_class != self.primary_class:
            return False
        if self.sub_class is not None and group.sub_class != self.sub_class:
            return False
        if self.is_resolved is not None and group.is_resolved != self.is_resolved:
            return False
        if self.since is not None and group.last_seen < self.since:
            return False
        if self.until is not None and group.first_seen > self.until:
            return False
        if self.search:
            needle = self.search.lower()
            haystacks = (group.representative_error or "", group.sub_class or "")
            if not any(needle in h.lower() for h in haystacks):
                return False
        return True


class GroupSummary(BaseModel):
    """Сводка по отфильтрованным группам."""

    total_groups: int = 0
    total_occurrences: int = 0
    by_class: dict[str, int] = Field(default_factory=dict)


class GroupListing(BaseModel):
    """Ответ листинга групп: ``{groups: [...], summary: {...}}``."""

    groups: list[DefectGroup] = Field(default_factory=list)
    summary: GroupSummary = Field(default_factory=GroupSummary)


class ClassificationOutcome(BaseModel):
    """Результат обработки одного падения для API/UI-слоя."""

    failure_id: int
    classification_id: int | None = None
    primary_class: PrimaryClass
    sub_class: str | None = None
    confidence: float
    signature: str
    group_id: int | None = None
    is_manual: bool = False
