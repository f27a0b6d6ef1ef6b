"""Детерминированный движок классификации по приоритетным правилам.

Порядок: активные правила сортируются по (priority, id); первое правило,
у которого совпали все условия, определяет классы. Уверенность — базовая
уверенность правила, умноженная на специфичность самого точного условия.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field

from failsig.models.common import PrimaryClass
from failsig.models.evidence import NormalizedEvidence
from failsig.rules.models import ClassificationRule, ConditionOperator, RuleMatch

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------

_SUB_CLASS_FIXES: dict[str, list[str]] = {
    "Wait_Timeout": [
        "Increase explicit wait timeout",
        "Add proper wait conditions (visibility, clickability)",
        "Implement retry mechanism for flaky elements",
    ],
    "Locator_Break": [
        "Use data-test-id attributes for stable selectors",
        "Add fallback locators in Page Object Model",
        "Update selectors to match current DOM structure",
    ],
    "Stale_Element": [
        "Re-find element before interaction",
        "Use fresh locators instead of cached elements",
        "Add wait for element to be refreshed",
    ],
}

_PRIMARY_CLASS_FIXES: dict[PrimaryClass, list[str]] = {
    PrimaryClass.ENVIRONMENT_ISSUE: [
        "Check network connectivity and DNS resolution",
        "Verify SSL certificates are valid",
        "Ensure test infrastructure is running",
        "Check for firewall or proxy issues",
    ],
    PrimaryClass.AUTOMATION_SCRIPT_ERROR: [
        "Update element locators if UI has changed",
        "Add explicit waits for dynamic elements",
        "Check for stale element references",
        "Verify test script logic and assertions",
    ],
    PrimaryClass.TEST_DATA_ISSUE: [
        "Refresh test data and fixtures",
        "Check user credentials and permissions",
        "Verify database state and constraints",
        "Update test data for current environment",
    ],
    PrimaryClass.APPLICATION_DEFECT: [
        "Check application logs for errors",
        "Verify API responses and status codes",
        "Test manually to confirm defect",
        "Create bug report with reproduction steps",
    ],
}

_DEFAULT_FIXES = ["Review error details and logs"]


def suggest_fixes(
    primary_class: PrimaryClass,
    sub_class: str | None = None,
    rule: ClassificationRule | None = None,
) -> list[str]:
    """Рекомендации по устранению: из правила, по sub_class или по primary_class."""
    if rule is not None and rule.suggested_fixes:
        return list(rule.suggested_fixes)
    if sub_class and sub_class in _SUB_CLASS_FIXES:
        return list(_SUB_CLASS_FIXES[sub_class])
    return list(_PRIMARY_CLASS_FIXES.get(primary_class, _DEFAULT_FIXES))


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


def _default_operator_weights() -> dict[ConditionOperator, float]:
    return {
        ConditionOperator.EQUALS: 1.0,
        ConditionOperator.STARTS_WITH: 0.95,
        ConditionOperator.ENDS_WITH: 0.95,
        ConditionOperator.REGEX: 0.9,
        ConditionOperator.CONTAINS: 0.85,
    }


@dataclass(frozen=True)
class EngineConfig:
    """Параметры вычисления уверенности."""

    operator_weights: dict[ConditionOperator, float] = field(
        default_factory=_default_operator_weights,
    )
    unknown_sub_class: str | None = None


def compute_rule_set_version(rules: list[ClassificationRule]) -> str:
    """Версия набора правил: digest от (id, priority, updated_at) активных правил."""
    parts = [
        f"{r.id}:{r.priority}:{r.updated_at.isoformat()}"
        for r in sorted(rules, key=lambda r: r.sort_key)
        if r.is_active
    ]
    payload = ";".join(parts)
    return hashlib.md5(payload.encode("utf-8"), usedforsecurity=False).hexdigest()[:12]


# ---------------------------------------------------------------------------
# RuleEngine
# ---------------------------------------------------------------------------


class RuleEngine:
    """Классифицирует evidence по упорядоченному набору правил.

    Чистое вычисление в памяти: не обращается к хранилищу и не держит
    блокировок. Набор правил фиксируется при создании экземпляра.
    """

    def __init__(
        self,
        rules: list[ClassificationRule],
        config: EngineConfig | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._rules = sorted(
            (r for r in rules if r.is_active),
            key=lambda r: r.sort_key,
        )
        self._version = compute_rule_set_version(self._rules)
        logger.debug(
            "RuleEngine: %d активных правил (из %d), version=%s",
            len(self._rules), len(rules), self._version,
        )

    @property
    def rules(self) -> list[ClassificationRule]:
        """Активные правила в порядке проверки."""
        return list(self._rules)

    @property
    def rule_set_version(self) -> str:
        return self._version

    def classify(self, evidence: NormalizedEvidence) -> RuleMatch:
        """Найти первое совпавшее правило.

        Returns:
            RuleMatch с классами правила или ``Unknown`` с уверенностью 0.0.
        """
        for rule in self._rules:
            if not self._rule_matches(rule, evidence):
                continue

            confidence = self.confidence_for(rule)
            logger.debug(
                "RuleEngine: правило #%d '%s' → %s/%s (confidence=%.4f)",
                rule.id, rule.name, rule.primary_class.value, rule.sub_class, confidence,
            )
            return RuleMatch(
                primary_class=rule.primary_class,
                sub_class=rule.sub_class,
                confidence=confidence,
                rule_id=rule.id,
                rule_name=rule.name,
                suggested_fixes=suggest_fixes(rule.primary_class, rule.sub_class, rule),
            )

        return RuleMatch(
            primary_class=PrimaryClass.UNKNOWN,
            sub_class=self._config.unknown_sub_class,
            confidence=0.0,
            suggested_fixes=suggest_fixes(PrimaryClass.UNKNOWN),
        )

    def confidence_for(self, rule: ClassificationRule) -> float:
        """base_confidence × вес самого специфичного оператора среди условий."""
        weights = self._config.operator_weights
        specificity = max(weights.get(c.operator, 0.0) for c in rule.conditions)
        return round(min(1.0, max(0.0, rule.base_confidence * specificity)), 4)

    @staticmethod
    def _rule_matches(rule: ClassificationRule, evidence: NormalizedEvidence) -> bool:
        try:
            return rule.matches(evidence)
        except Exception as exc:
            # Некорректное evidence не должно ронять классификацию
            logger.warning(
                "RuleEngine: ошибка проверки правила #%d '%s': %s. Считается несовпавшим.",
                rule.id, rule.name, exc,
            )
            return False
