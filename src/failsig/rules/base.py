"""Абстрактный интерфейс для источников правил классификации."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from failsig.rules.models import ClassificationRule


@runtime_checkable
class RuleProvider(Protocol):
    """Протокол источника правил.

    Реализации:
    - YamlRuleProvider: читает YAML-файлы из директории
    - StoreSession (PostgreSQL/in-memory): таблица classification_rules
    """

    def get_active_rules(self) -> list[ClassificationRule]:
        """Вернуть активные правила (порядок не гарантируется)."""
        ...
