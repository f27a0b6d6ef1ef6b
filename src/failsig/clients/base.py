"""Абстрактный интерфейс клиента трекера задач."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from failsig.models.push import IssuePayload, IssueRef


@runtime_checkable
class IssueTrackerClient(Protocol):
    """Протокол клиента внешнего трекера задач.

    Движок решает, когда вызывать клиента, и записывает результат;
    протокол обмена с трекером — забота реализации.
    """

    async def create_or_update_issue(self, payload: IssuePayload) -> IssueRef:
        """Создать задачу для сигнатуры или обновить существующую.

        Любое исключение считается неуспешным push.
        """
        ...
