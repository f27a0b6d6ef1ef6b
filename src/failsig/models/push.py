"""Модели для создания задач в трекере и журнала push-попыток."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from failsig.models.common import PushStatus
from failsig.models.evidence import utc_now


class IssuePayload(BaseModel):
    """Данные, передаваемые клиенту трекера."""

    signature: str
    summary: str
    description: str = ""
    labels: list[str] = Field(default_factory=list)
    group_id: int | None = None
    project_id: int | None = None


class IssueRef(BaseModel):
    """Ответ трекера: ключ и URL созданной/обновлённой задачи."""

    issue_key: str
    issue_url: str | None = None


class PushRecord(BaseModel):
    """Запись журнала push-попыток. Только добавление.

    Последняя запись по сигнатуре определяет решение о дедупликации.
    """

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    signature: str
    group_id: int | None = None
    project_id: int | None = None
    issue_key: str | None = None
    issue_url: str | None = None
    status: PushStatus
    error_message: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    actor: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
