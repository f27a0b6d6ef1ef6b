"""Файловый источник правил классификации на основе YAML."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from failsig.exceptions import ConfigurationError, RuleValidationError
from failsig.rules.models import ClassificationRule

logger = logging.getLogger(__name__)


class YamlRuleProvider:
    """Реализация RuleProvider, читающая .yaml/.yml файлы из директории.

    Каждый файл содержит одно правило (dict) или список правил. Невалидные
    правила (неизвестное поле/оператор, битый regex, нет условий) логируются
    и пропускаются — до классификации они не доходят. При повторе id
    остаётся первое правило.
    """

    def __init__(self, rules_path: str | Path) -> None:
        self._rules_path = Path(rules_path)
        self._rules: list[ClassificationRule] = []
        self._rejected: list[RuleValidationError] = []
        self._load()

    @property
    def rejected(self) -> list[RuleValidationError]:
        """Правила, отклонённые при загрузке."""
        return list(self._rejected)

    def _load(self) -> None:
        """Загрузить правила из директории (или одного файла).

        Raises:
            ConfigurationError: Нет прав на чтение директории правил.
        """
        if not self._rules_path.exists():
            logger.warning(
                "Директория правил не найдена: %s. Набор правил будет пустым.",
                self._rules_path,
            )
            return

        if self._rules_path.is_file():
            files = [self._rules_path]
        else:
            try:
                files = sorted(
                    p for p in self._rules_path.rglob("*")
                    if p.suffix in (".yaml", ".yml") and p.is_file()
                )
            except PermissionError as exc:
                raise ConfigurationError(
                    f"Нет прав доступа к директории правил: {self._rules_path}"
                ) from exc

        seen_ids: set[int] = set()
        for path in files:
            try:
                with open(path, encoding="utf-8") as f:
                    data = yaml.safe_load(f)
            except (yaml.YAMLError, OSError) as exc:
                logger.warning("Ошибка чтения файла правил %s: %s. Пропущен.", path, exc)
                continue

            if data is None:
                continue

            items = data if isinstance(data, list) else [data]
            for index, item in enumerate(items):
                ref = f"{path.name}[{index}]"
                try:
                    rule = ClassificationRule.model_validate(item)
                except ValidationError as exc:
                    error = RuleValidationError(ref, str(exc))
                    self._rejected.append(error)
                    logger.warning("Правило отклонено: %s", error)
                    continue

                if rule.id in seen_ids:
                    logger.warning(
                        "Дублирующийся id правила %d в %s. Оставлено первое.",
                        rule.id, path,
                    )
                    continue
                seen_ids.add(rule.id)
                self._rules.append(rule)
                logger.debug("Загружено правило #%d '%s' из %s", rule.id, rule.name, path)

        logger.info(
            "Правила загружены: %d (отклонено %d) из %s",
            len(self._rules), len(self._rejected), self._rules_path,
        )

    def get_all_rules(self) -> list[ClassificationRule]:
        """Все загруженные правила, включая неактивные."""
        return list(self._rules)

    def get_active_rules(self) -> list[ClassificationRule]:
        return [r for r in self._rules if r.is_active]
