"""Общие фабрики и фикстуры для тестов failsig."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from failsig.models.common import PrimaryClass
from failsig.models.defects import Classification, DefectGroup
from failsig.models.evidence import FailureInstance
from failsig.rules.models import ClassificationRule
from failsig.storage.memory import InMemoryDefectStore

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    """BASE_TIME + minutes."""
    return BASE_TIME + timedelta(minutes=minutes)


def make_failure(**overrides) -> FailureInstance:
    """Фабрика FailureInstance с разумными дефолтами."""
    defaults: dict = {
        "id": 1,
        "project_id": 10,
        "test_run_id": 100,
        "test_name": "login should succeed",
        "error_message": "TimeoutError: waiting for locator('#submit')",
        "stack_trace": "at login.spec.js:42\nat runner.js:10",
        "framework": "playwright",
        "environment": "staging",
        "timestamp": BASE_TIME,
    }
    defaults.update(overrides)
    return FailureInstance.model_validate(defaults)


def make_rule(**overrides) -> ClassificationRule:
    """Фабрика ClassificationRule с разумными дефолтами."""
    defaults: dict = {
        "id": 1,
        "name": "timeout",
        "primary_class": PrimaryClass.AUTOMATION_SCRIPT_ERROR,
        "sub_class": "Wait_Timeout",
        "priority": 10,
        "base_confidence": 0.8,
        "conditions": [
            {"field": "error_type", "operator": "equals", "pattern": "TimeoutError"},
        ],
    }
    defaults.update(overrides)
    return ClassificationRule.model_validate(defaults)


def make_classification(**overrides) -> Classification:
    """Фабрика Classification с разумными дефолтами."""
    defaults: dict = {
        "failure_id": 1,
        "primary_class": PrimaryClass.AUTOMATION_SCRIPT_ERROR,
        "sub_class": "Wait_Timeout",
        "confidence": 0.8,
        "signature": "abcdef012345",
        "matched_rule_id": 1,
    }
    defaults.update(overrides)
    return Classification.model_validate(defaults)


def make_group(**overrides) -> DefectGroup:
    """Фабрика DefectGroup с разумными дефолтами."""
    defaults: dict = {
        "signature": "abcdef012345",
        "project_id": 10,
        "primary_class": PrimaryClass.AUTOMATION_SCRIPT_ERROR,
        "sub_class": "Wait_Timeout",
        "error_type": "TimeoutError",
        "representative_error": "TimeoutError: waiting for locator('#submit')",
        "first_seen": BASE_TIME,
        "last_seen": BASE_TIME,
        "occurrence_count": 1,
    }
    defaults.update(overrides)
    return DefectGroup.model_validate(defaults)


@pytest.fixture
def store() -> InMemoryDefectStore:
    return InMemoryDefectStore(rules=[make_rule()])
