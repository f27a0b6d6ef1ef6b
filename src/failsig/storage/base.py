"""Абстрактный интерфейс хранилища классификаций, групп и журналов.

Движок не управляет соединениями и схемой: он открывает транзакцию через
``DefectStore.transaction()`` и работает с ``StoreSession`` внутри неё.
Все изменения одной операции (группа + участник + аудит) выполняются в одной
транзакции. Уникальность сигнатуры группы обеспечивает хранилище.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Protocol, runtime_checkable

from failsig.exceptions import StorageError
from failsig.models.defects import (
    AuditLogEntry,
    Classification,
    DefectGroup,
    GroupFilters,
)
from failsig.models.push import PushRecord
from failsig.rules.models import ClassificationRule


def require_id(entity_id: int | None, entity: str) -> int:
    """id сохранённой сущности; None означает, что хранилище его не присвоило.

    Raises:
        StorageError: Хранилище вернуло сущность без id.
    """
    if entity_id is None:
        raise StorageError(f"Хранилище вернуло {entity} без id")
    return entity_id


@runtime_checkable
class StoreSession(Protocol):
    """Операции хранилища в рамках одной транзакции.

    Реализации:
    - PostgresStoreSession: psycopg-соединение с открытой транзакцией
    - InMemoryStoreSession: словари процесса (тесты, dry-run)
    """

    # --- Правила ---

    def get_active_rules(self) -> list[ClassificationRule]:
        """Активные правила классификации."""
        ...

    # --- Классификации ---

    def get_classification(
        self, classification_id: int, *, for_update: bool = False,
    ) -> Classification | None:
        ...

    def get_classification_for_failure(self, failure_id: int) -> Classification | None:
        ...

    def save_classification(self, classification: Classification) -> Classification:
        """INSERT (id is None) или UPDATE. Возвращает запись с id."""
        ...

    # --- Группы ---

    def get_group(self, signature: str, *, for_update: bool = False) -> DefectGroup | None:
        ...

    def get_group_by_id(self, group_id: int, *, for_update: bool = False) -> DefectGroup | None:
        ...

    def create_group(self, group: DefectGroup) -> DefectGroup:
        """Создать группу.

        Raises:
            ConflictError: Группа с такой сигнатурой уже существует.
        """
        ...

    def save_group(self, group: DefectGroup) -> DefectGroup:
        """Обновить существующую группу (по id)."""
        ...

    def add_group_member(self, group_id: int, failure_id: int, added_at: datetime) -> bool:
        """Добавить участника. False — участник уже был в группе."""
        ...

    def count_group_members(self, group_id: int) -> int:
        ...

    def list_groups(self, filters: GroupFilters) -> list[DefectGroup]:
        """Группы, прошедшие фильтры, отсортированные и обрезанные по limit."""
        ...

    # --- Аудит ---

    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        ...

    def list_audit_log(
        self,
        *,
        classification_id: int | None = None,
        group_id: int | None = None,
    ) -> list[AuditLogEntry]:
        """Записи аудита в порядке добавления."""
        ...

    # --- Push ---

    def save_push_record(self, record: PushRecord) -> PushRecord:
        """Добавить запись в журнал push-попыток (никогда не обновляет)."""
        ...

    def latest_push_record(self, signature: str) -> PushRecord | None:
        ...

    def list_push_records(self, signature: str) -> list[PushRecord]:
        ...


@runtime_checkable
class DefectStore(Protocol):
    """Фабрика транзакций хранилища."""

    def transaction(self) -> AbstractContextManager[StoreSession]:
        """Открыть транзакцию. Исключение внутри блока — откат.

        Raises:
            StorageError: Ошибка подключения/ввода-вывода.
        """
        ...
