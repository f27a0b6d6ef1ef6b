"""Ручная переклассификация, закрытие/переоткрытие групп и журнал аудита."""

from __future__ import annotations

import logging

from failsig.exceptions import InputError, NotFoundError
from failsig.models.common import AuditAction, PrimaryClass
from failsig.models.defects import AuditLogEntry, Classification, DefectGroup
from failsig.models.evidence import utc_now
from failsig.storage.base import DefectStore, StoreSession

logger = logging.getLogger(__name__)

MANUAL_CONFIDENCE = 1.0


def _require_actor(actor: str) -> str:
    actor = (actor or "").strip()
    if not actor:
        raise InputError("Не указан автор изменения (actor)")
    return actor


class ReclassificationService:
    """Изменения, вносимые человеком. Каждое изменение пишет запись аудита.

    Группировка остаётся по сигнатуре: переклассификация меняет класс
    группы падения, но не переносит падение в другую группу.
    """

    def __init__(self, store: DefectStore) -> None:
        self._store = store

    def reclassify(
        self,
        classification_id: int,
        new_primary_class: PrimaryClass,
        new_sub_class: str | None = None,
        *,
        actor: str,
        note: str | None = None,
    ) -> Classification:
        """Переклассифицировать падение вручную.

        Без изменений классов — no-op, запись аудита не создаётся.

        Raises:
            NotFoundError: Классификация не найдена.
            InputError: Не указан actor.
        """
        actor = _require_actor(actor)

        with self._store.transaction() as tx:
            current = tx.get_classification(classification_id, for_update=True)
            if current is None:
                raise NotFoundError("Classification", classification_id)

            if (
                current.primary_class == new_primary_class
                and current.sub_class == new_sub_class
            ):
                logger.info(
                    "Классификация #%d уже %s/%s, изменений нет",
                    classification_id, new_primary_class.value, new_sub_class,
                )
                return current

            updated = tx.save_classification(
                current.model_copy(
                    update={
                        "primary_class": new_primary_class,
                        "sub_class": new_sub_class,
                        "confidence": MANUAL_CONFIDENCE,
                        "is_manual": True,
                        "classified_by": actor,
                        "classified_at": utc_now(),
                    }
                )
            )
            group = self._relabel_group(tx, current.signature, new_primary_class, new_sub_class)
            tx.append_audit_log(
                AuditLogEntry(
                    classification_id=updated.id,
                    group_id=group.id if group else None,
                    action=AuditAction.RECLASSIFIED,
                    old_primary_class=current.primary_class,
                    new_primary_class=new_primary_class,
                    old_sub_class=current.sub_class,
                    new_sub_class=new_sub_class,
                    actor=actor,
                    note=note,
                )
            )

        logger.info(
            "Классификация #%d: %s/%s → %s/%s (%s)",
            classification_id, current.primary_class.value, current.sub_class,
            new_primary_class.value, new_sub_class, actor,
        )
        return updated

    @staticmethod
    def _relabel_group(
        tx: StoreSession,
        signature: str,
        primary_class: PrimaryClass,
        sub_class: str | None,
    ) -> DefectGroup | None:
        group = tx.get_group(signature, for_update=True)
        if group is None:
            logger.warning("Группа для сигнатуры %s не найдена, класс группы не изменён", signature)
            return None
        return tx.save_group(
            group.model_copy(update={"primary_class": primary_class, "sub_class": sub_class})
        )

    def resolve_group(self, group_id: int, *, actor: str, note: str | None = None) -> DefectGroup:
        """Пометить группу решённой. Повторное закрытие — no-op.

        Raises:
            NotFoundError: Группа не найдена.
        """
        return self._set_resolved(group_id, True, actor=actor, note=note)

    def reopen_group(self, group_id: int, *, actor: str, note: str | None = None) -> DefectGroup:
        """Явно переоткрыть решённую группу. Для открытой группы — no-op.

        Raises:
            NotFoundError: Группа не найдена.
        """
        return self._set_resolved(group_id, False, actor=actor, note=note)

    def _set_resolved(
        self,
        group_id: int,
        resolved: bool,
        *,
        actor: str,
        note: str | None,
    ) -> DefectGroup:
        actor = _require_actor(actor)
        action = AuditAction.RESOLVED if resolved else AuditAction.REOPENED

        with self._store.transaction() as tx:
            group = tx.get_group_by_id(group_id, for_update=True)
            if group is None:
                raise NotFoundError("DefectGroup", group_id)
            if group.is_resolved == resolved:
                logger.info("Группа #%d: состояние уже %s", group_id, action.value)
                return group

            group = tx.save_group(group.model_copy(update={"is_resolved": resolved}))
            tx.append_audit_log(
                AuditLogEntry(
                    group_id=group_id,
                    action=action,
                    old_primary_class=group.primary_class,
                    new_primary_class=group.primary_class,
                    old_sub_class=group.sub_class,
                    new_sub_class=group.sub_class,
                    actor=actor,
                    note=note,
                )
            )

        logger.info("Группа #%d: %s (%s)", group_id, action.value, actor)
        return group

    def get_audit_trail(
        self,
        *,
        classification_id: int | None = None,
        group_id: int | None = None,
    ) -> list[AuditLogEntry]:
        """Записи аудита по классификации и/или группе в порядке добавления."""
        with self._store.transaction() as tx:
            return tx.list_audit_log(
                classification_id=classification_id, group_id=group_id,
            )
