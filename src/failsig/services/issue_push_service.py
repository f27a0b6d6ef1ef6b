"""Дедупликация создания задач в трекере по сигнатуре дефект-группы."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from failsig.clients.base import IssueTrackerClient
from failsig.exceptions import ExternalPushError
from failsig.models.common import PushStatus
from failsig.models.defects import DefectGroup
from failsig.models.evidence import utc_now
from failsig.models.push import IssuePayload, IssueRef, PushRecord
from failsig.storage.base import DefectStore

logger = logging.getLogger(__name__)

_HEADER = "[failsig] Автоматически обнаруженный дефект"
_SEPARATOR = "=" * 40
_SUMMARY_MAX_LENGTH = 120


@dataclass(frozen=True)
class IssuePushResult:
    """Результат операции push групп в трекер."""

    total_groups: int
    pushed_count: int
    failed_count: int
    skipped_count: int


def _label(value: str) -> str:
    return "-".join(value.lower().replace("_", " ").split())


def format_issue_payload(group: DefectGroup, *, labels_prefix: str = "auto-defect") -> IssuePayload:
    """Сформировать данные задачи для группы.

    Args:
        group: Дефект-группа.
        labels_prefix: Общая метка всех задач, созданных движком.

    Returns:
        IssuePayload с заголовком, описанием и метками.
    """
    first_line = (group.representative_error or "").strip().splitlines()
    headline = first_line[0] if first_line else (group.error_type or "unknown error")
    if len(headline) > _SUMMARY_MAX_LENGTH:
        headline = headline[: _SUMMARY_MAX_LENGTH - 3] + "..."

    class_label = group.primary_class.value
    if group.sub_class:
        class_label += f" / {group.sub_class}"

    parts: list[str] = [
        _HEADER,
        _SEPARATOR,
        "",
        f"Класс: {class_label}",
        f"Сигнатура: {group.signature}",
        f"Вхождений: {group.occurrence_count}",
        f"Первое падение: {group.first_seen.isoformat()}",
        f"Последнее падение: {group.last_seen.isoformat()}",
    ]
    if group.representative_error:
        parts.append("")
        parts.append("Ошибка:")
        parts.append(group.representative_error)

    labels = [labels_prefix, f"{labels_prefix}:{_label(group.primary_class.value)}"]
    if group.sub_class:
        labels.append(f"{labels_prefix}:{_label(group.sub_class)}")

    return IssuePayload(
        signature=group.signature,
        summary=f"[{group.primary_class.value}] {headline}",
        description="\n".join(parts),
        labels=labels,
        group_id=group.id,
        project_id=group.project_id,
    )


class IssuePushService:
    """Решает, нужно ли создавать задачу для сигнатуры, и ведёт журнал попыток.

    Журнал только дополняется. Решение принимается по последней записи:
    ``success`` и свежий ``pending`` блокируют повтор; ``failed`` и
    зависший ``pending`` считаются как «ещё не отправлено».
    Ошибки трекера записываются и не выбрасываются наружу.
    """

    def __init__(
        self,
        store: DefectStore,
        *,
        concurrency: int = 5,
        pending_timeout: float = 600,
        labels_prefix: str = "auto-defect",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._concurrency = concurrency
        self._pending_timeout = timedelta(seconds=pending_timeout)
        self._labels_prefix = labels_prefix
        self._clock = clock

    def should_push(self, signature: str) -> bool:
        with self._store.transaction() as tx:
            latest = tx.latest_push_record(signature)
        return self._decide(latest)

    def _decide(self, latest: PushRecord | None) -> bool:
        if latest is None or latest.status == PushStatus.FAILED:
            return True
        if latest.status == PushStatus.SUCCESS:
            return False
        # pending: другая попытка ещё идёт, если не зависла
        age = self._clock() - latest.created_at
        if age < self._pending_timeout:
            return False
        logger.warning(
            "Push: pending-запись для %s старше %s, считается зависшей",
            latest.signature, self._pending_timeout,
        )
        return True

    def record_push(
        self,
        signature: str,
        group_id: int | None,
        result: IssueRef | BaseException | None,
        *,
        actor: str | None = None,
        payload: IssuePayload | None = None,
        project_id: int | None = None,
    ) -> PushRecord:
        """Добавить запись в журнал push-попыток.

        Args:
            result: IssueRef — успех; исключение — неудача (текст сохраняется);
                None — попытка начата (pending).
        """
        if isinstance(result, IssueRef):
            status = PushStatus.SUCCESS
            issue_key, issue_url, error = result.issue_key, result.issue_url, None
        elif isinstance(result, BaseException):
            status = PushStatus.FAILED
            issue_key, issue_url, error = None, None, str(result) or type(result).__name__
        else:
            status = PushStatus.PENDING
            issue_key, issue_url, error = None, None, None

        record = PushRecord(
            signature=signature,
            group_id=group_id,
            project_id=project_id,
            issue_key=issue_key,
            issue_url=issue_url,
            status=status,
            error_message=error,
            payload=payload.model_dump() if payload else {},
            actor=actor,
            created_at=self._clock(),
        )
        with self._store.transaction() as tx:
            saved = tx.save_push_record(record)
        logger.debug("Push: %s → %s", signature, status.value)
        return saved

    def get_push_history(self, signature: str) -> list[PushRecord]:
        with self._store.transaction() as tx:
            return tx.list_push_records(signature)

    async def push_group(
        self,
        group: DefectGroup,
        tracker: IssueTrackerClient,
        *,
        actor: str | None = None,
        force: bool = False,
    ) -> PushRecord | None:
        """Отправить группу в трекер, если по сигнатуре ещё нет задачи.

        Returns:
            Итоговая запись журнала или None, если push не нужен.
        """
        payload = format_issue_payload(group, labels_prefix=self._labels_prefix)

        with self._store.transaction() as tx:
            latest = tx.latest_push_record(group.signature)
            if not force and not self._decide(latest):
                logger.info("Push: задача для %s уже существует или создаётся, пропуск", group.signature)
                return None
            tx.save_push_record(
                PushRecord(
                    signature=group.signature,
                    group_id=group.id,
                    project_id=group.project_id,
                    status=PushStatus.PENDING,
                    payload=payload.model_dump(),
                    actor=actor,
                    created_at=self._clock(),
                )
            )

        try:
            result: IssueRef | BaseException = await tracker.create_or_update_issue(payload)
        except Exception as exc:
            result = ExternalPushError(f"Трекер вернул ошибку для {group.signature}: {exc}")
            logger.warning("Push: не удалось создать задачу для %s: %s", group.signature, exc)

        record = self.record_push(
            group.signature, group.id, result,
            actor=actor, payload=payload, project_id=group.project_id,
        )
        if record.status == PushStatus.SUCCESS:
            logger.info("Push: %s → %s", group.signature, record.issue_key)
        return record

    async def push_groups(
        self,
        groups: Iterable[DefectGroup],
        tracker: IssueTrackerClient,
        *,
        actor: str | None = None,
        force: bool = False,
    ) -> IssuePushResult:
        """Отправить группы в трекер с ограничением параллелизма.

        Группы с одинаковой сигнатурой отправляются один раз.
        """
        unique: dict[str, DefectGroup] = {}
        for group in groups:
            unique.setdefault(group.signature, group)

        if not unique:
            return IssuePushResult(total_groups=0, pushed_count=0, failed_count=0, skipped_count=0)

        logger.info(
            "Push: отправка %d групп (параллелизм=%d)", len(unique), self._concurrency,
        )
        semaphore = asyncio.Semaphore(self._concurrency)

        async def push_one(group: DefectGroup) -> PushRecord | None:
            async with semaphore:
                return await self.push_group(group, tracker, actor=actor, force=force)

        records = await asyncio.gather(*(push_one(g) for g in unique.values()))

        pushed = sum(1 for r in records if r is not None and r.status == PushStatus.SUCCESS)
        failed = sum(1 for r in records if r is not None and r.status == PushStatus.FAILED)
        skipped = sum(1 for r in records if r is None)

        logger.info(
            "Push: завершено. Создано/обновлено: %d, ошибок: %d, пропущено: %d",
            pushed, failed, skipped,
        )
        return IssuePushResult(
            total_groups=len(unique),
            pushed_count=pushed,
            failed_count=failed,
            skipped_count=skipped,
        )
