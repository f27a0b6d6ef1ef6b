"""Сборка зависимостей движка по настройкам — используется CLI и внешними вызывающими."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from failsig.clients.base import IssueTrackerClient
from failsig.config import Settings
from failsig.exceptions import ConfigurationError, InputError
from failsig.models.defects import DefectGroup, GroupFilters, GroupListing
from failsig.models.evidence import FailureInstance
from failsig.rules.base import RuleProvider
from failsig.services.aggregation_service import (
    CoverageSummary,
    DefectGroupAggregator,
    SuiteRunBreakdown,
    build_suite_run_breakdown,
    summarize_coverage,
    summarize_groups,
)
from failsig.services.classification_service import BatchResult, FailureClassificationService
from failsig.services.issue_push_service import IssuePushResult, IssuePushService
from failsig.services.reclassification_service import ReclassificationService
from failsig.storage.base import DefectStore

logger = logging.getLogger(__name__)


@dataclass
class ClassificationRun:
    """Результат прогона классификации: итог пачки и затронутые группы."""

    batch: BatchResult
    groups: GroupListing
    suites: list[SuiteRunBreakdown]
    coverage: CoverageSummary


def create_store(settings: Settings) -> DefectStore:
    """Создать хранилище по ``settings.store_backend``.

    Raises:
        ConfigurationError: backend=postgres без FAILSIG_POSTGRES_DSN.
    """
    if settings.store_backend == "postgres":
        if not settings.postgres_dsn:
            raise ConfigurationError(
                "FAILSIG_POSTGRES_DSN обязателен при FAILSIG_STORE_BACKEND=postgres"
            )
        from failsig.storage.postgres import PostgresDefectStore

        logger.info("Хранилище: PostgreSQL")
        return PostgresDefectStore(settings.postgres_dsn)

    from failsig.storage.memory import InMemoryDefectStore

    logger.info("Хранилище: in-memory (данные не сохраняются между запусками)")
    return InMemoryDefectStore()


def create_rule_provider(settings: Settings, store: DefectStore) -> RuleProvider:
    """Источник правил по ``settings.rules_backend``.

    Raises:
        ConfigurationError: backend=postgres без FAILSIG_POSTGRES_DSN.
    """
    if settings.rules_backend == "postgres":
        if not settings.postgres_dsn:
            raise ConfigurationError(
                "FAILSIG_POSTGRES_DSN обязателен при FAILSIG_RULES_BACKEND=postgres"
            )
        from failsig.rules.store_rules import StoreRuleProvider
        from failsig.storage.postgres import PostgresDefectStore

        rules_store = store if isinstance(store, PostgresDefectStore) else PostgresDefectStore(
            settings.postgres_dsn,
        )
        return StoreRuleProvider(rules_store)

    from failsig.rules.yaml_rules import YamlRuleProvider

    return YamlRuleProvider(settings.rules_path)


def build_classification_service(
    settings: Settings,
    store: DefectStore,
    *,
    rule_provider: RuleProvider | None = None,
) -> FailureClassificationService:
    return FailureClassificationService(
        store,
        rule_provider=rule_provider or create_rule_provider(settings, store),
        aggregator=DefectGroupAggregator(store, conflict_retries=settings.conflict_retries),
        signature_frame_count=settings.signature_frame_count,
        error_type_max_length=settings.error_type_max_length,
        evidence_max_chars=settings.evidence_max_chars,
        conflict_retries=settings.conflict_retries,
    )


def build_reclassification_service(store: DefectStore) -> ReclassificationService:
    return ReclassificationService(store)


def build_push_service(settings: Settings, store: DefectStore) -> IssuePushService:
    return IssuePushService(
        store,
        concurrency=settings.push_concurrency,
        pending_timeout=settings.push_pending_timeout,
        labels_prefix=settings.push_labels_prefix,
    )


def load_failures(path: str | Path) -> list[dict[str, Any]]:
    """Прочитать JSON-файл с падениями: список объектов или ``{"failures": [...]}``.

    Raises:
        InputError: Файл не читается или имеет неверную структуру.
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except OSError as exc:
        raise InputError(f"Не удалось прочитать файл {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise InputError(f"Некорректный JSON в {path}: {exc}") from exc

    if isinstance(data, Mapping):
        data = data.get("failures")
    if not isinstance(data, list):
        raise InputError(
            f"{path}: ожидается список падений или объект с ключом 'failures'"
        )
    return data


def process_failures(
    failures: Iterable[FailureInstance | Mapping[str, Any]],
    settings: Settings,
    store: DefectStore,
    *,
    rule_provider: RuleProvider | None = None,
    cancel_event: threading.Event | None = None,
) -> ClassificationRun:
    """Классифицировать пачку падений и вернуть затронутые группы.

    Правила загружаются один раз на прогон.

    Raises:
        StorageError: Ошибка хранилища.
        ConfigurationError: Неверная конфигурация источника правил.
    """
    service = build_classification_service(settings, store, rule_provider=rule_provider)
    batch = service.process_batch(failures, cancel_event=cancel_event)

    touched = {o.group_id for o in batch.outcomes if o.group_id is not None}
    listing = DefectGroupAggregator(store).list_groups(GroupFilters())
    groups = [g for g in listing.groups if g.id in touched]
    by_failure = {o.failure_id: o for o in batch.outcomes}
    suites = build_suite_run_breakdown(
        (f, by_failure[f.id]) for f in batch.failures if f.id in by_failure
    )

    return ClassificationRun(
        batch=batch,
        groups=GroupListing(groups=groups, summary=summarize_groups(groups)),
        suites=suites,
        coverage=summarize_coverage(batch.total, batch.outcomes),
    )


async def push_defect_groups(
    groups: Iterable[DefectGroup],
    settings: Settings,
    store: DefectStore,
    tracker: IssueTrackerClient,
    *,
    actor: str | None = None,
    force: bool = False,
) -> IssuePushResult | None:
    """Создать задачи в трекере для групп, если push включён.

    Returns:
        IssuePushResult или None, если ``FAILSIG_PUSH_ENABLED`` выключен.
    """
    if not settings.push_enabled:
        logger.info("Push в трекер отключён (FAILSIG_PUSH_ENABLED=false), пропуск")
        return None

    service = build_push_service(settings, store)
    return await service.push_groups(groups, tracker, actor=actor, force=force)
