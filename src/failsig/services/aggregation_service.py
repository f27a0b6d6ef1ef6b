"""Агрегация падений в долговременные дефект-группы по сигнатуре."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar

from failsig.exceptions import ConflictError, StorageError
from failsig.models.common import PrimaryClass
from failsig.models.defects import (
    Classification,
    ClassificationOutcome,
    DefectGroup,
    GroupFilters,
    GroupListing,
    GroupSummary,
)
from failsig.models.evidence import FailureInstance, NormalizedEvidence
from failsig.storage.base import DefectStore, StoreSession, require_id
from failsig.utils.text_normalization import has_placeholder, is_truncated

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_in_transaction(
    store: DefectStore,
    operation: Callable[[StoreSession], T],
    *,
    retries: int = 3,
) -> T:
    """Выполнить operation в транзакции, повторяя её при ConflictError.

    Каждая попытка — новая транзакция: после конфликта группа уже
    существует, и повтор проходит по ветке обновления.

    Raises:
        StorageError: Конфликт не разрешился за ``retries`` повторов.
    """
    last_conflict: ConflictError | None = None
    for attempt in range(retries + 1):
        try:
            with store.transaction() as tx:
                return operation(tx)
        except ConflictError as exc:
            last_conflict = exc
            logger.info(
                "Конфликт создания группы %s (попытка %d из %d), повтор",
                exc.signature, attempt + 1, retries + 1,
            )
    raise StorageError(
        f"Не удалось разрешить конфликт за {retries + 1} попыток: {last_conflict}"
    ) from last_conflict


def is_more_representative(new: str, current: str) -> bool:
    """Лучше ли ``new`` описывает группу, чем ``current``.

    Предпочтение: непустое, не обрезанное, без плейсхолдеров; при равенстве
    по этим признакам — более длинное.
    """
    new = (new or "").strip()
    current = (current or "").strip()
    if not new:
        return False
    if not current:
        return True

    new_clean = not is_truncated(new) and not has_placeholder(new)
    current_clean = not is_truncated(current) and not has_placeholder(current)
    if new_clean != current_clean:
        return new_clean
    return len(new) > len(current)


def summarize_groups(groups: Iterable[DefectGroup]) -> GroupSummary:
    summary = GroupSummary()
    for group in groups:
        summary.total_groups += 1
        summary.total_occurrences += group.occurrence_count
        key = group.primary_class.value
        summary.by_class[key] = summary.by_class.get(key, 0) + 1
    return summary


# ------------------------------------------------------------------
# Агрегация без хранилища (превью, dry-run)
# ------------------------------------------------------------------


@dataclass
class GroupAggregate:
    """Группа, собранная из пачки падений без сохранения."""

    signature: str
    primary_class: PrimaryClass
    sub_class: str | None
    error_type: str | None
    representative_error: str
    first_seen: datetime
    last_seen: datetime
    failure_ids: list[int]

    @property
    def occurrence_count(self) -> int:
        return len(self.failure_ids)


def build_group_aggregates(
    items: Iterable[tuple[str, Classification, FailureInstance]],
) -> list[GroupAggregate]:
    """Сгруппировать (signature, classification, failure) по сигнатуре.

    Повтор одного failure_id в пределах группы не увеличивает счётчик.
    Класс группы берётся из первого вхождения. Результат отсортирован
    по числу вхождений (по убыванию), затем по first_seen.
    """
    aggregates: dict[str, GroupAggregate] = {}

    for signature, classification, failure in items:
        occurred_at = failure.occurred_at()
        message = (failure.error_message or "").strip()
        current = aggregates.get(signature)

        if current is None:
            aggregates[signature] = GroupAggregate(
                signature=signature,
                primary_class=classification.primary_class,
                sub_class=classification.sub_class,
                error_type=classification.evidence.get("error_type"),
                representative_error=message,
                first_seen=occurred_at,
                last_seen=occurred_at,
                failure_ids=[failure.id],
            )
            continue

        if failure.id in current.failure_ids:
            continue
        current.failure_ids.append(failure.id)
        current.first_seen = min(current.first_seen, occurred_at)
        current.last_seen = max(current.last_seen, occurred_at)
        if is_more_representative(message, current.representative_error):
            current.representative_error = message

    return sorted(
        aggregates.values(),
        key=lambda a: (-a.occurrence_count, a.first_seen),
    )


# ------------------------------------------------------------------
# Разрезы по наборам тестов и покрытие классификацией
# ------------------------------------------------------------------

UNKNOWN_SUITE = "Unknown Suite"
TOP_SUB_CLASSES = 5

Classified = Classification | ClassificationOutcome


@dataclass
class SuiteRunBreakdown:
    """Классы падений одного набора тестов в одном прогоне."""

    suite: str
    test_run_id: int | None
    failure_count: int
    counts: dict[str, int]
    top_sub_classes: list[tuple[str, int]]


def build_suite_run_breakdown(
    items: Iterable[tuple[FailureInstance, Classified]],
    *,
    top_n: int = TOP_SUB_CLASSES,
) -> list[SuiteRunBreakdown]:
    """Сгруппировать классифицированные падения по (suite, test_run_id).

    Для каждой пары считаются падения по primary class и ``top_n`` самых
    частых sub class. Повтор failure_id учитывается один раз. Результат
    отсортирован по числу падений (по убыванию), затем по suite и прогону.
    """
    seen: set[int] = set()
    counts: dict[tuple[str, int | None], dict[str, int]] = {}
    sub_counts: dict[tuple[str, int | None], dict[str, int]] = {}

    for failure, classification in items:
        if failure.id in seen:
            continue
        seen.add(failure.id)
        key = (failure.suite or UNKNOWN_SUITE, failure.test_run_id)
        by_class = counts.setdefault(key, {})
        primary = classification.primary_class.value
        by_class[primary] = by_class.get(primary, 0) + 1
        by_sub = sub_counts.setdefault(key, {})
        if classification.sub_class:
            by_sub[classification.sub_class] = by_sub.get(classification.sub_class, 0) + 1

    breakdown = [
        SuiteRunBreakdown(
            suite=suite,
            test_run_id=run_id,
            failure_count=sum(by_class.values()),
            counts=by_class,
            top_sub_classes=sorted(
                sub_counts[(suite, run_id)].items(), key=lambda kv: (-kv[1], kv[0]),
            )[:top_n],
        )
        for (suite, run_id), by_class in counts.items()
    ]
    return sorted(
        breakdown,
        key=lambda b: (-b.failure_count, b.suite, b.test_run_id if b.test_run_id is not None else -1),
    )


@dataclass(frozen=True)
class CoverageSummary:
    """Доля падений, получивших классификацию."""

    total_failures: int
    classified: int
    unclassified: int
    classified_percent: int
    defect_groups: int


def summarize_coverage(total_failures: int, classifications: Iterable[Classified]) -> CoverageSummary:
    """Покрытие классификацией: сколько из ``total_failures`` классифицировано.

    ``defect_groups``: число различных сигнатур среди классифицированных.
    Процент округляется до целого.
    """
    by_failure: dict[int, str] = {}
    for classification in classifications:
        by_failure.setdefault(classification.failure_id, classification.signature)

    classified = min(len(by_failure), total_failures)
    percent = int(classified * 100 / total_failures + 0.5) if total_failures > 0 else 0
    return CoverageSummary(
        total_failures=total_failures,
        classified=classified,
        unclassified=total_failures - classified,
        classified_percent=percent,
        defect_groups=len(set(by_failure.values())),
    )


# ------------------------------------------------------------------
# DefectGroupAggregator
# ------------------------------------------------------------------


class DefectGroupAggregator:
    """Поддерживает дефект-группы в хранилище.

    Сервис без состояния: вся координация — через транзакции хранилища
    и уникальность сигнатуры группы.
    """

    def __init__(self, store: DefectStore, *, conflict_retries: int = 3) -> None:
        self._store = store
        self._conflict_retries = conflict_retries

    def apply_occurrence(
        self,
        tx: StoreSession,
        signature: str,
        classification: Classification,
        failure: FailureInstance,
        evidence: NormalizedEvidence,
    ) -> DefectGroup:
        """Учесть падение в группе внутри транзакции вызывающего.

        Raises:
            ConflictError: Группу с этой сигнатурой только что создал
                конкурент. Вызывающий повторяет транзакцию.
        """
        occurred_at = failure.occurred_at()
        message = evidence.message

        group = tx.get_group(signature, for_update=True)
        if group is None:
            group = tx.create_group(
                DefectGroup(
                    signature=signature,
                    project_id=failure.project_id,
                    primary_class=classification.primary_class,
                    sub_class=classification.sub_class,
                    error_type=evidence.error_type,
                    representative_error=message,
                    first_seen=occurred_at,
                    last_seen=occurred_at,
                    occurrence_count=1,
                )
            )
            tx.add_group_member(require_id(group.id, "DefectGroup"), failure.id, occurred_at)
            logger.info(
                "Создана группа #%s (сигнатура %s, %s)",
                group.id, signature, group.primary_class.value,
            )
            return group

        if not tx.add_group_member(require_id(group.id, "DefectGroup"), failure.id, occurred_at):
            logger.debug(
                "Падение %d уже в группе #%s, счётчик не меняется",
                failure.id, group.id,
            )
            return group

        if group.is_resolved:
            logger.warning(
                "Новое падение %d в решённой группе #%s (сигнатура %s): возможна регрессия",
                failure.id, group.id, signature,
            )

        updates: dict[str, object] = {
            "occurrence_count": group.occurrence_count + 1,
            "first_seen": min(group.first_seen, occurred_at),
            "last_seen": max(group.last_seen, occurred_at),
        }
        if is_more_representative(message, group.representative_error):
            updates["representative_error"] = message

        group = tx.save_group(group.model_copy(update=updates))
        logger.debug(
            "Группа #%s: вхождений %d", group.id, group.occurrence_count,
        )
        return group

    def upsert_occurrence(
        self,
        signature: str,
        classification: Classification,
        failure: FailureInstance,
        evidence: NormalizedEvidence,
    ) -> DefectGroup:
        """apply_occurrence в собственной транзакции с повтором при конфликте."""
        return run_in_transaction(
            self._store,
            lambda tx: self.apply_occurrence(tx, signature, classification, failure, evidence),
            retries=self._conflict_retries,
        )

    def get_group(self, group_id: int) -> DefectGroup | None:
        with self._store.transaction() as tx:
            return tx.get_group_by_id(group_id)

    def list_groups(self, filters: GroupFilters | None = None) -> GroupListing:
        """Группы по фильтрам и сводка по всем прошедшим фильтр (до limit)."""
        filters = filters or GroupFilters()
        unlimited = filters.model_copy(update={"limit": None})

        with self._store.transaction() as tx:
            groups = tx.list_groups(unlimited)

        summary = summarize_groups(groups)
        if filters.limit is not None:
            groups = groups[: filters.limit]

        logger.debug(
            "Листинг групп: %d из %d", len(groups), summary.total_groups,
        )
        return GroupListing(groups=groups, summary=summary)
