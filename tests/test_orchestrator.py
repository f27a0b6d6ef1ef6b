"""Тесты сборки зависимостей и прогона классификации."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import make_failure, make_group
from failsig.config import Settings
from failsig.exceptions import ConfigurationError, InputError
from failsig.models.push import IssuePayload, IssueRef
from failsig.orchestrator import (
    build_push_service,
    create_rule_provider,
    create_store,
    load_failures,
    process_failures,
    push_defect_groups,
)
from failsig.rules.yaml_rules import YamlRuleProvider
from failsig.storage.memory import InMemoryDefectStore

DEFAULT_RULES = str(Path(__file__).resolve().parent.parent / "rules")


@pytest.fixture
def settings(monkeypatch, tmp_path) -> Settings:
    monkeypatch.chdir(tmp_path)
    return Settings(rules_path=DEFAULT_RULES)


def test_create_store_memory_by_default(settings: Settings) -> None:
    assert isinstance(create_store(settings), InMemoryDefectStore)


def test_create_store_postgres_requires_dsn(settings: Settings) -> None:
    with pytest.raises(ConfigurationError):
        create_store(settings.model_copy(update={"store_backend": "postgres"}))


def test_rule_provider_postgres_requires_dsn(settings: Settings) -> None:
    with pytest.raises(ConfigurationError):
        create_rule_provider(
            settings.model_copy(update={"rules_backend": "postgres"}), InMemoryDefectStore(),
        )


def test_rule_provider_yaml(settings: Settings) -> None:
    provider = create_rule_provider(settings, InMemoryDefectStore())
    assert isinstance(provider, YamlRuleProvider)
    assert provider.get_active_rules()


def test_build_push_service_uses_settings(settings: Settings) -> None:
    service = build_push_service(
        settings.model_copy(update={"push_pending_timeout": 30}), InMemoryDefectStore(),
    )
    assert service._pending_timeout.total_seconds() == 30


# ---------------------------------------------------------------------------
# load_failures
# ---------------------------------------------------------------------------


def test_load_failures_accepts_list_and_wrapped(tmp_path) -> None:
    items = [{"id": 1, "errorMessage": "Error: x"}]
    plain = tmp_path / "plain.json"
    plain.write_text(json.dumps(items), encoding="utf-8")
    wrapped = tmp_path / "wrapped.json"
    wrapped.write_text(json.dumps({"failures": items}), encoding="utf-8")

    assert load_failures(plain) == items
    assert load_failures(wrapped) == items


@pytest.mark.parametrize("content", ["{not json", '{"items": []}', '"text"'])
def test_load_failures_rejects_bad_structure(tmp_path, content: str) -> None:
    path = tmp_path / "bad.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(InputError):
        load_failures(path)


def test_load_failures_missing_file(tmp_path) -> None:
    with pytest.raises(InputError):
        load_failures(tmp_path / "absent.json")


# ---------------------------------------------------------------------------
# process_failures
# ---------------------------------------------------------------------------


def test_process_failures_returns_touched_groups(settings: Settings) -> None:
    store = InMemoryDefectStore()
    failures = [
        make_failure(id=1, error_message="Error: connect ECONNREFUSED 127.0.0.1:5432", stack_trace=None),
        make_failure(id=2, error_message="Error: connect ECONNREFUSED 127.0.0.1:5432", stack_trace=None),
        make_failure(id=3),
    ]

    run = process_failures(failures, settings, store)

    assert run.batch.processed_count == 3
    assert run.groups.summary.total_groups == 2
    assert run.groups.summary.total_occurrences == 3
    assert run.groups.groups[0].occurrence_count == 2
    assert run.groups.groups[0].sub_class == "Connection_Refused"

    later = process_failures(
        [make_failure(id=4, error_message="Error: connect ECONNREFUSED db:5432", stack_trace=None)],
        settings,
        store,
    )
    assert [g.id for g in later.groups.groups] == [run.groups.groups[0].id]
    assert later.groups.groups[0].occurrence_count == 3


def test_process_failures_reports_suites_and_coverage(settings: Settings) -> None:
    failures = [
        make_failure(id=1, suite="db", error_message="Error: connect ECONNREFUSED 127.0.0.1:5432", stack_trace=None),
        make_failure(id=2, suite="db", error_message="Error: connect ECONNREFUSED 127.0.0.1:5432", stack_trace=None),
        make_failure(id=3, suite="ui"),
        {"errorMessage": "без id"},
    ]

    run = process_failures(failures, settings, InMemoryDefectStore())

    assert [(s.suite, s.failure_count) for s in run.suites] == [("db", 2), ("ui", 1)]
    assert run.suites[0].test_run_id == 100
    assert run.suites[0].top_sub_classes == [("Connection_Refused", 2)]
    assert run.coverage.total_failures == 4
    assert run.coverage.classified == 3
    assert run.coverage.unclassified == 1
    assert run.coverage.classified_percent == 75
    assert run.coverage.defect_groups == 2


# ---------------------------------------------------------------------------
# push_defect_groups
# ---------------------------------------------------------------------------


class _Tracker:
    def __init__(self) -> None:
        self.calls = 0

    async def create_or_update_issue(self, payload: IssuePayload) -> IssueRef:
        self.calls += 1
        return IssueRef(issue_key=f"DEF-{self.calls}")


@pytest.mark.asyncio
async def test_push_disabled_does_nothing(settings: Settings) -> None:
    tracker = _Tracker()

    result = await push_defect_groups([make_group(id=1)], settings, InMemoryDefectStore(), tracker)

    assert result is None
    assert tracker.calls == 0


@pytest.mark.asyncio
async def test_push_enabled_pushes_groups(settings: Settings) -> None:
    tracker = _Tracker()
    enabled = settings.model_copy(update={"push_enabled": True})

    result = await push_defect_groups([make_group(id=1)], enabled, InMemoryDefectStore(), tracker)

    assert result is not None
    assert result.pushed_count == 1
    assert tracker.calls == 1
