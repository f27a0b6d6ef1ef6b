"""Пайплайн классификации: нормализация → сигнатура → правила → группа."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from failsig.exceptions import InputError
from failsig.models.common import AuditAction
from failsig.models.defects import AuditLogEntry, Classification, ClassificationOutcome
from failsig.models.evidence import FailureInstance, NormalizedEvidence
from failsig.rules.base import RuleProvider
from failsig.rules.engine import EngineConfig, RuleEngine
from failsig.rules.models import RuleMatch
from failsig.services.aggregation_service import DefectGroupAggregator, run_in_transaction
from failsig.storage.base import DefectStore, StoreSession, require_id
from failsig.utils.evidence_normalizer import (
    DEFAULT_ERROR_TYPE_MAX_LENGTH,
    DEFAULT_MAX_FILE_REFERENCES,
    normalize_evidence,
)
from failsig.utils.signature import compute_signature

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Итог обработки пачки падений."""

    total: int
    outcomes: list[ClassificationOutcome] = field(default_factory=list)
    failures: list[FailureInstance] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def processed_count(self) -> int:
        return len(self.outcomes)

    @property
    def failed_count(self) -> int:
        return len(self.failed)


def coerce_failure(raw: FailureInstance | Mapping[str, Any]) -> FailureInstance:
    """Привести входные данные к FailureInstance.

    Raises:
        InputError: Данные не проходят валидацию (нет id, неверные типы).
    """
    if isinstance(raw, FailureInstance):
        return raw
    try:
        return FailureInstance.model_validate(raw)
    except ValidationError as exc:
        raise InputError(f"Некорректные данные о падении: {exc}") from exc


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


def build_evidence_snapshot(
    evidence: NormalizedEvidence,
    match: RuleMatch,
    *,
    max_chars: int,
) -> dict[str, Any]:
    """Снапшот evidence для хранения вместе с классификацией."""
    return {
        "error_type": evidence.error_type,
        "message": _clip(evidence.message, max_chars),
        "stack_trace": _clip(evidence.stack_trace, max_chars),
        "file_references": list(evidence.file_references),
        "metadata": dict(evidence.metadata),
        "is_unknown": evidence.is_unknown,
        "matched_rule": match.rule_name,
    }


class FailureClassificationService:
    """Классифицирует падения и раскладывает их по дефект-группам.

    Нормализация, сигнатура и правила — чистые вычисления без блокировок.
    Запись классификации, аудита и группы — одна транзакция хранилища.
    """

    def __init__(
        self,
        store: DefectStore,
        *,
        rule_provider: RuleProvider | None = None,
        aggregator: DefectGroupAggregator | None = None,
        engine_config: EngineConfig | None = None,
        signature_frame_count: int = DEFAULT_MAX_FILE_REFERENCES,
        error_type_max_length: int = DEFAULT_ERROR_TYPE_MAX_LENGTH,
        evidence_max_chars: int = 4000,
        conflict_retries: int = 3,
    ) -> None:
        self._store = store
        self._rule_provider = rule_provider
        self._aggregator = aggregator or DefectGroupAggregator(
            store, conflict_retries=conflict_retries,
        )
        self._engine_config = engine_config
        self._frame_count = signature_frame_count
        self._error_type_max_length = error_type_max_length
        self._evidence_max_chars = evidence_max_chars
        self._conflict_retries = conflict_retries

    def load_engine(self) -> RuleEngine:
        """Загрузить активные правила и собрать RuleEngine.

        Без явного источника правила читаются из хранилища.
        """
        if self._rule_provider is not None:
            rules = self._rule_provider.get_active_rules()
        else:
            with self._store.transaction() as tx:
                rules = tx.get_active_rules()
        return RuleEngine(rules, self._engine_config)

    def analyze(self, failure: FailureInstance) -> tuple[NormalizedEvidence, str]:
        """Нормализовать evidence и вычислить сигнатуру (без I/O)."""
        evidence = normalize_evidence(
            failure.error_message,
            failure.stack_trace,
            metadata=failure.metadata(),
            max_file_references=self._frame_count,
            error_type_max_length=self._error_type_max_length,
        )
        return evidence, compute_signature(evidence)

    def process_failure(
        self,
        failure: FailureInstance,
        engine: RuleEngine,
    ) -> ClassificationOutcome:
        """Классифицировать одно падение и учесть его в группе.

        Повторная обработка того же failure_id не создаёт новую
        классификацию и не меняет счётчик группы. Ручная классификация
        не перезаписывается.
        """
        evidence, signature = self.analyze(failure)
        match = engine.classify(evidence)

        candidate = Classification(
            failure_id=failure.id,
            primary_class=match.primary_class,
            sub_class=match.sub_class,
            confidence=match.confidence,
            signature=signature,
            matched_rule_id=match.rule_id,
            rule_set_version=engine.rule_set_version,
            evidence=build_evidence_snapshot(evidence, match, max_chars=self._evidence_max_chars),
            suggested_fixes=match.suggested_fixes,
        )

        def persist(tx: StoreSession) -> ClassificationOutcome:
            existing = tx.get_classification_for_failure(failure.id)
            if existing is not None:
                logger.debug(
                    "Падение %d уже классифицировано (#%s), используется существующая запись",
                    failure.id, existing.id,
                )
                group = self._aggregator.apply_occurrence(
                    tx, existing.signature, existing, failure, evidence,
                )
                return self._outcome(existing, group.id)

            classification = tx.save_classification(candidate)
            group = self._aggregator.apply_occurrence(
                tx, signature, classification, failure, evidence,
            )
            tx.append_audit_log(
                AuditLogEntry(
                    classification_id=classification.id,
                    group_id=group.id,
                    action=AuditAction.CREATED,
                    new_primary_class=classification.primary_class,
                    new_sub_class=classification.sub_class,
                    note=f"rule #{match.rule_id}" if match.rule_id is not None else None,
                )
            )
            return self._outcome(classification, group.id)

        outcome = run_in_transaction(self._store, persist, retries=self._conflict_retries)
        logger.info(
            "Падение %d: %s/%s (confidence=%.2f, сигнатура %s, группа #%s)",
            failure.id, outcome.primary_class.value, outcome.sub_class,
            outcome.confidence, outcome.signature, outcome.group_id,
        )
        return outcome

    def process_batch(
        self,
        failures: Iterable[FailureInstance | Mapping[str, Any]],
        *,
        cancel_event: threading.Event | None = None,
        engine: RuleEngine | None = None,
    ) -> BatchResult:
        """Обработать пачку падений последовательно.

        Правила загружаются один раз на пачку. Отмена проверяется между
        падениями: уже сохранённые результаты остаются.

        Raises:
            StorageError: Ошибка хранилища прерывает пачку.
        """
        items = list(failures)
        result = BatchResult(total=len(items))
        engine = engine or self.load_engine()

        logger.info(
            "Обработка пачки: %d падений, правил %d (version=%s)",
            len(items), len(engine.rules), engine.rule_set_version,
        )

        for index, raw in enumerate(items):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(
                    "Обработка пачки отменена: обработано %d из %d",
                    index, len(items),
                )
                result.cancelled = True
                break

            try:
                failure = coerce_failure(raw)
                result.outcomes.append(self.process_failure(failure, engine))
                result.failures.append(failure)
            except InputError as exc:
                ref = _failure_ref(raw, index)
                logger.warning("Падение %s пропущено: %s", ref, exc)
                result.failed[ref] = str(exc)

        logger.info(
            "Пачка обработана: успешно %d, с ошибками %d, всего %d",
            result.processed_count, result.failed_count, result.total,
        )
        return result

    @staticmethod
    def _outcome(classification: Classification, group_id: int | None) -> ClassificationOutcome:
        return ClassificationOutcome(
            failure_id=classification.failure_id,
            classification_id=require_id(classification.id, "Classification"),
            primary_class=classification.primary_class,
            sub_class=classification.sub_class,
            confidence=classification.confidence,
            signature=classification.signature,
            group_id=group_id,
            is_manual=classification.is_manual,
        )


def _failure_ref(raw: FailureInstance | Mapping[str, Any], index: int) -> str:
    if isinstance(raw, FailureInstance):
        return str(raw.id)
    if isinstance(raw, Mapping) and raw.get("id") is not None:
        return str(raw["id"])
    return f"#{index}"
