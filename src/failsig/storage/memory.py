"""In-memory реализация хранилища (тесты, dry-run CLI).

Транзакции сериализуются блокировкой. Каждая запись сессии кладёт в журнал
отмены обратную операцию; при исключении внутри блока журнал проигрывается
в обратном порядке. Стоимость отката пропорциональна числу записей
транзакции, а не размеру хранилища.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from failsig.exceptions import ConflictError, NotFoundError
from failsig.models.defects import (
    AuditLogEntry,
    Classification,
    DefectGroup,
    DefectGroupMember,
    GroupFilters,
)
from failsig.models.push import PushRecord
from failsig.rules.models import ClassificationRule

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class _State:
    rules: dict[int, ClassificationRule] = field(default_factory=dict)
    classifications: dict[int, Classification] = field(default_factory=dict)
    classification_by_failure: dict[int, int] = field(default_factory=dict)
    groups: dict[int, DefectGroup] = field(default_factory=dict)
    group_by_signature: dict[str, int] = field(default_factory=dict)
    members: dict[int, dict[int, DefectGroupMember]] = field(default_factory=dict)
    audit_log: list[AuditLogEntry] = field(default_factory=list)
    push_records: list[PushRecord] = field(default_factory=list)
    next_ids: dict[str, int] = field(default_factory=dict)


def sort_groups(groups: list[DefectGroup], filters: GroupFilters) -> list[DefectGroup]:
    """Сортировка по filters.sort_by; при равенстве — по id для стабильности."""
    ordered = sorted(
        groups,
        key=lambda g: (getattr(g, filters.sort_by), -(g.id or 0)),
        reverse=filters.descending,
    )
    if filters.limit is not None:
        ordered = ordered[: filters.limit]
    return ordered


class InMemoryStoreSession:
    """Реализация StoreSession поверх словарей процесса."""

    def __init__(self, state: _State) -> None:
        self._state = state
        self._undo: list[Callable[[], None]] = []

    # --- Журнал отмены ---

    def _put(self, mapping: dict[Any, Any], key: Any, value: Any) -> None:
        previous = mapping.get(key, _MISSING)

        def undo() -> None:
            if previous is _MISSING:
                mapping.pop(key, None)
            else:
                mapping[key] = previous

        self._undo.append(undo)
        mapping[key] = value

    def _append(self, items: list[Any], item: Any) -> None:
        self._undo.append(items.pop)
        items.append(item)

    def _next_id(self, kind: str) -> int:
        value = self._state.next_ids.get(kind, 0) + 1
        self._put(self._state.next_ids, kind, value)
        return value

    def rollback(self) -> None:
        """Отменить все записи сессии в обратном порядке."""
        while self._undo:
            self._undo.pop()()

    # --- Правила ---

    def get_active_rules(self) -> list[ClassificationRule]:
        return [r.model_copy(deep=True) for r in self._state.rules.values() if r.is_active]

    def save_rule(self, rule: ClassificationRule) -> ClassificationRule:
        self._put(self._state.rules, rule.id, rule.model_copy(deep=True))
        return rule

    # --- Классификации ---

    def get_classification(
        self, classification_id: int, *, for_update: bool = False,  # noqa: ARG002
    ) -> Classification | None:
        found = self._state.classifications.get(classification_id)
        return found.model_copy(deep=True) if found else None

    def get_classification_for_failure(self, failure_id: int) -> Classification | None:
        cid = self._state.classification_by_failure.get(failure_id)
        return self.get_classification(cid) if cid is not None else None

    def save_classification(self, classification: Classification) -> Classification:
        if classification.id is None:
            classification = classification.model_copy(
                update={"id": self._next_id("classification")},
            )
        elif classification.id not in self._state.classifications:
            raise NotFoundError("Classification", classification.id)
        self._put(
            self._state.classifications, classification.id, classification.model_copy(deep=True),
        )
        self._put(
            self._state.classification_by_failure, classification.failure_id, classification.id,
        )
        return classification

    # --- Группы ---

    def get_group(self, signature: str, *, for_update: bool = False) -> DefectGroup | None:  # noqa: ARG002
        gid = self._state.group_by_signature.get(signature)
        return self.get_group_by_id(gid) if gid is not None else None

    def get_group_by_id(
        self, group_id: int, *, for_update: bool = False,  # noqa: ARG002
    ) -> DefectGroup | None:
        found = self._state.groups.get(group_id)
        return found.model_copy(deep=True) if found else None

    def create_group(self, group: DefectGroup) -> DefectGroup:
        if group.signature in self._state.group_by_signature:
            raise ConflictError(group.signature)
        group_id = self._next_id("group")
        group = group.model_copy(update={"id": group_id})
        self._put(self._state.groups, group_id, group.model_copy(deep=True))
        self._put(self._state.group_by_signature, group.signature, group_id)
        self._put(self._state.members, group_id, {})
        return group

    def save_group(self, group: DefectGroup) -> DefectGroup:
        if group.id is None or group.id not in self._state.groups:
            raise NotFoundError("DefectGroup", group.id)
        self._put(self._state.groups, group.id, group.model_copy(deep=True))
        return group

    def add_group_member(self, group_id: int, failure_id: int, added_at: datetime) -> bool:
        if group_id not in self._state.members:
            self._put(self._state.members, group_id, {})
        members = self._state.members[group_id]
        if failure_id in members:
            return False
        self._put(
            members,
            failure_id,
            DefectGroupMember(group_id=group_id, failure_id=failure_id, added_at=added_at),
        )
        return True

    def count_group_members(self, group_id: int) -> int:
        return len(self._state.members.get(group_id, {}))

    def list_groups(self, filters: GroupFilters) -> list[DefectGroup]:
        matched = [
            g.model_copy(deep=True)
            for g in self._state.groups.values()
            if filters.matches(g)
        ]
        return sort_groups(matched, filters)

    # --- Аудит ---

    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        entry = entry.model_copy(update={"id": self._next_id("audit")})
        self._append(self._state.audit_log, entry)
        return entry

    def list_audit_log(
        self,
        *,
        classification_id: int | None = None,
        group_id: int | None = None,
    ) -> list[AuditLogEntry]:
        return [
            e for e in self._state.audit_log
            if (classification_id is None or e.classification_id == classification_id)
            and (group_id is None or e.group_id == group_id)
        ]

    # --- Push ---

    def save_push_record(self, record: PushRecord) -> PushRecord:
        record = record.model_copy(update={"id": self._next_id("push")})
        self._append(self._state.push_records, record)
        return record

    def latest_push_record(self, signature: str) -> PushRecord | None:
        records = self.list_push_records(signature)
        return records[-1] if records else None

    def list_push_records(self, signature: str) -> list[PushRecord]:
        return [r for r in self._state.push_records if r.signature == signature]


class InMemoryDefectStore:
    """Реализация DefectStore в памяти процесса.

    Состояние живёт, пока жив экземпляр. Подходит для тестов и dry-run
    прогонов; для нескольких процессов нужен PostgresDefectStore.
    """

    def __init__(self, rules: list[ClassificationRule] | None = None) -> None:
        self._state = _State()
        self._lock = threading.RLock()
        for rule in rules or []:
            self._state.rules[rule.id] = rule.model_copy(deep=True)

    @contextmanager
    def transaction(self) -> Iterator[InMemoryStoreSession]:
        with self._lock:
            session = InMemoryStoreSession(self._state)
            try:
                yield session
            except BaseException:
                logger.debug("InMemoryStore: откат транзакции")
                session.rollback()
                raise
