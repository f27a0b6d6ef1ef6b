"""Тесты ReclassificationService: ручная переклассификация и аудит."""

from __future__ import annotations

import pytest

from conftest import make_failure
from failsig.exceptions import InputError, NotFoundError
from failsig.models.common import AuditAction, PrimaryClass
from failsig.services.classification_service import FailureClassificationService
from failsig.services.reclassification_service import ReclassificationService
from failsig.storage.memory import InMemoryDefectStore


@pytest.fixture
def classified(store: InMemoryDefectStore):
    """Хранилище с одной автоматической классификацией и её группой."""
    service = FailureClassificationService(store)
    outcome = service.process_failure(make_failure(), service.load_engine())
    return ReclassificationService(store), outcome


def test_reclassify_updates_classification(classified) -> None:
    service, outcome = classified

    updated = service.reclassify(
        outcome.classification_id, PrimaryClass.APPLICATION_DEFECT, "Regression",
        actor="alice", note="real bug",
    )

    assert updated.primary_class == PrimaryClass.APPLICATION_DEFECT
    assert updated.sub_class == "Regression"
    assert updated.confidence == 1.0
    assert updated.is_manual is True
    assert updated.classified_by == "alice"
    assert updated.signature == outcome.signature


def test_reclassify_writes_exactly_one_audit_entry(classified) -> None:
    service, outcome = classified

    service.reclassify(outcome.classification_id, PrimaryClass.TEST_DATA_ISSUE, actor="bob")

    trail = service.get_audit_trail(classification_id=outcome.classification_id)
    assert [e.action for e in trail] == [AuditAction.CREATED, AuditAction.RECLASSIFIED]
    entry = trail[-1]
    assert entry.old_primary_class == PrimaryClass.AUTOMATION_SCRIPT_ERROR
    assert entry.old_sub_class == "Wait_Timeout"
    assert entry.new_primary_class == PrimaryClass.TEST_DATA_ISSUE
    assert entry.new_sub_class is None
    assert entry.actor == "bob"
    assert entry.group_id == outcome.group_id


def test_reclassify_relabels_group_without_moving(classified, store: InMemoryDefectStore) -> None:
    service, outcome = classified

    service.reclassify(outcome.classification_id, PrimaryClass.ENVIRONMENT_ISSUE, "DNS", actor="qa")

    with store.transaction() as tx:
        group = tx.get_group_by_id(outcome.group_id)
        assert tx.count_group_members(group.id) == 1
    assert group.signature == outcome.signature
    assert group.primary_class == PrimaryClass.ENVIRONMENT_ISSUE
    assert group.sub_class == "DNS"
    assert group.occurrence_count == 1


def test_reclassify_to_same_class_is_noop(classified) -> None:
    service, outcome = classified

    result = service.reclassify(
        outcome.classification_id, PrimaryClass.AUTOMATION_SCRIPT_ERROR, "Wait_Timeout", actor="qa",
    )

    assert result.is_manual is False
    trail = service.get_audit_trail(classification_id=outcome.classification_id)
    assert [e.action for e in trail] == [AuditAction.CREATED]


def test_reclassify_unknown_id_raises(store: InMemoryDefectStore) -> None:
    with pytest.raises(NotFoundError):
        ReclassificationService(store).reclassify(404, PrimaryClass.UNKNOWN, actor="qa")


def test_reclassify_requires_actor(classified) -> None:
    service, outcome = classified

    with pytest.raises(InputError):
        service.reclassify(outcome.classification_id, PrimaryClass.UNKNOWN, actor="  ")

    trail = service.get_audit_trail(classification_id=outcome.classification_id)
    assert len(trail) == 1


# ---------------------------------------------------------------------------
# Закрытие и переоткрытие групп
# ---------------------------------------------------------------------------


def test_resolve_and_reopen_group(classified) -> None:
    service, outcome = classified

    resolved = service.resolve_group(outcome.group_id, actor="lead", note="fixed in 1.2")
    assert resolved.is_resolved is True

    reopened = service.reopen_group(outcome.group_id, actor="lead")
    assert reopened.is_resolved is False

    trail = service.get_audit_trail(group_id=outcome.group_id)
    assert [e.action for e in trail] == [
        AuditAction.CREATED, AuditAction.RESOLVED, AuditAction.REOPENED,
    ]
    assert trail[1].classification_id is None
    assert trail[1].note == "fixed in 1.2"


def test_repeat_resolve_is_noop(classified) -> None:
    service, outcome = classified

    service.resolve_group(outcome.group_id, actor="lead")
    service.resolve_group(outcome.group_id, actor="lead")
    service.reopen_group(outcome.group_id, actor="lead")
    service.reopen_group(outcome.group_id, actor="lead")

    actions = [e.action for e in service.get_audit_trail(group_id=outcome.group_id)]
    assert actions.count(AuditAction.RESOLVED) == 1
    assert actions.count(AuditAction.REOPENED) == 1


def test_resolve_unknown_group_raises(store: InMemoryDefectStore) -> None:
    with pytest.raises(NotFoundError):
        ReclassificationService(store).resolve_group(999, actor="lead")
