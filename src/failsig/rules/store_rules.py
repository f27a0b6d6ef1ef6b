"""Источник правил из хранилища (таблица classification_rules)."""

from __future__ import annotations

import logging

from failsig.rules.models import ClassificationRule
from failsig.storage.base import DefectStore

logger = logging.getLogger(__name__)


class StoreRuleProvider:
    """Реализация RuleProvider поверх DefectStore.

    Каждый вызов читает правила заново в отдельной транзакции.
    """

    def __init__(self, store: DefectStore) -> None:
        self._store = store

    def get_active_rules(self) -> list[ClassificationRule]:
        with self._store.transaction() as tx:
            rules = tx.get_active_rules()
        logger.info("Правила загружены из хранилища: %d", len(rules))
        return rules
