"""Тесты RuleEngine: порядок правил, уверенность, Unknown."""

from __future__ import annotations

from datetime import timedelta

from conftest import BASE_TIME, make_rule
from failsig.models.common import PrimaryClass
from failsig.rules.engine import RuleEngine, compute_rule_set_version, suggest_fixes
from failsig.utils.evidence_normalizer import normalize_evidence

_TIMEOUT = normalize_evidence(
    "TimeoutError: waiting for locator('#submit')",
    "at login.spec.js:42\nat runner.js:10",
)


def _contains_rule(rule_id: int, priority: int, primary: PrimaryClass, **overrides):
    return make_rule(
        id=rule_id,
        name=f"rule-{rule_id}",
        priority=priority,
        primary_class=primary,
        sub_class=None,
        conditions=[{"field": "message", "operator": "contains", "pattern": "timeout"}],
        **overrides,
    )


def test_lower_priority_wins() -> None:
    rules = [
        _contains_rule(1, 50, PrimaryClass.APPLICATION_DEFECT),
        _contains_rule(2, 10, PrimaryClass.ENVIRONMENT_ISSUE),
    ]

    match = RuleEngine(rules).classify(_TIMEOUT)

    assert match.primary_class == PrimaryClass.ENVIRONMENT_ISSUE
    assert match.rule_id == 2


def test_equal_priority_tie_broken_by_id() -> None:
    rules = [
        _contains_rule(7, 10, PrimaryClass.APPLICATION_DEFECT),
        _contains_rule(3, 10, PrimaryClass.TEST_DATA_ISSUE),
    ]

    assert RuleEngine(rules).classify(_TIMEOUT).rule_id == 3
    assert RuleEngine(list(reversed(rules))).classify(_TIMEOUT).rule_id == 3


def test_inactive_rules_are_skipped() -> None:
    rules = [
        _contains_rule(1, 1, PrimaryClass.APPLICATION_DEFECT, is_active=False),
        _contains_rule(2, 5, PrimaryClass.ENVIRONMENT_ISSUE),
    ]

    assert RuleEngine(rules).classify(_TIMEOUT).rule_id == 2


def test_no_match_gives_unknown_with_zero_confidence() -> None:
    rule = make_rule(
        conditions=[{"field": "message", "operator": "contains", "pattern": "ECONNREFUSED"}],
    )

    match = RuleEngine([rule]).classify(_TIMEOUT)

    assert match.primary_class == PrimaryClass.UNKNOWN
    assert match.confidence == 0.0
    assert match.rule_id is None


def test_empty_rule_set_gives_unknown() -> None:
    assert RuleEngine([]).classify(_TIMEOUT).primary_class == PrimaryClass.UNKNOWN


def test_confidence_uses_most_specific_operator() -> None:
    contains_only = make_rule(
        base_confidence=0.8,
        conditions=[{"field": "message", "operator": "contains", "pattern": "timeout"}],
    )
    with_equals = make_rule(
        base_confidence=0.8,
        conditions=[
            {"field": "message", "operator": "contains", "pattern": "timeout"},
            {"field": "error_type", "operator": "equals", "pattern": "TimeoutError"},
        ],
    )

    assert RuleEngine([contains_only]).classify(_TIMEOUT).confidence == 0.68
    assert RuleEngine([with_equals]).classify(_TIMEOUT).confidence == 0.8


def test_confidence_within_bounds() -> None:
    rule = make_rule(base_confidence=1.0)
    confidence = RuleEngine([rule]).classify(_TIMEOUT).confidence
    assert 0.0 <= confidence <= 1.0


def test_match_carries_rule_fixes_or_defaults() -> None:
    with_fixes = make_rule(suggested_fixes=["Bump the wait"])
    assert RuleEngine([with_fixes]).classify(_TIMEOUT).suggested_fixes == ["Bump the wait"]

    match = RuleEngine([make_rule()]).classify(_TIMEOUT)
    assert match.suggested_fixes == suggest_fixes(PrimaryClass.AUTOMATION_SCRIPT_ERROR, "Wait_Timeout")
    assert "Increase explicit wait timeout" in match.suggested_fixes


def test_rule_set_version_changes_with_rules() -> None:
    rule = make_rule(updated_at=BASE_TIME)
    updated = make_rule(updated_at=BASE_TIME + timedelta(minutes=1))

    version = compute_rule_set_version([rule])

    assert version == RuleEngine([rule]).rule_set_version
    assert len(version) == 12
    assert version != compute_rule_set_version([updated])
    assert version != compute_rule_set_version([rule, make_rule(id=2)])


def test_classification_is_deterministic() -> None:
    engine = RuleEngine([make_rule(), _contains_rule(2, 1, PrimaryClass.ENVIRONMENT_ISSUE)])
    assert engine.classify(_TIMEOUT) == engine.classify(_TIMEOUT)
