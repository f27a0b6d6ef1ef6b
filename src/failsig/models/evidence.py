"""Pydantic-модели входных данных о падении и нормализованного evidence."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

UNKNOWN_ERROR_TYPE = "unknown-error"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Наивное время считается UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class FailureInstance(BaseModel):
    """Упавший тест, полученный из ingestion-слоя.

    Поля намеренно Optional там, где ingestion может их не передать.
    Принимает как snake_case, так и camelCase ключи (``errorMessage``).
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    test_run_id: int | None = Field(None, alias="testRunId")
    project_id: int | None = Field(None, alias="projectId")
    test_name: str | None = Field(None, alias="testName")
    error_message: str | None = Field(None, alias="errorMessage")
    stack_trace: str | None = Field(None, alias="stackTrace")
    environment: str | None = None
    framework: str | None = None
    suite: str | None = None
    browser: str | None = None
    duration_ms: int | None = Field(None, alias="durationMs")
    timestamp: datetime | None = None

    def metadata(self) -> dict[str, Any]:
        """Метаданные теста/запуска для условий правил и снапшота evidence."""
        return {
            "environment": self.environment,
            "framework": self.framework,
            "suite": self.suite,
            "browser": self.browser,
            "test_name": self.test_name,
            "duration_ms": self.duration_ms,
        }

    def occurred_at(self) -> datetime:
        """Момент падения; без timestamp — текущее время (UTC)."""
        if self.timestamp is None:
            return utc_now()
        return ensure_utc(self.timestamp)


class NormalizedEvidence(BaseModel):
    """Канонические поля, извлечённые из текста ошибки и стек-трейса."""

    model_config = ConfigDict(frozen=True)

    error_type: str
    message: str = ""
    stack_trace: str = ""
    file_references: tuple[str, ...] = ()
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_unknown: bool = False

    @property
    def combined_text(self) -> str:
        """message + stack_trace одной строкой (поле ``combined`` в правилах)."""
        return f"{self.message} {self.stack_trace}".strip()
