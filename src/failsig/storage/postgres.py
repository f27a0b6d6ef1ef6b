"""PostgreSQL-реализация хранилища классификаций, групп и журналов.

Использует синхронный psycopg3. Одна транзакция — одно соединение:
``transaction()`` открывает соединение, выполняет блок и делает COMMIT
(или ROLLBACK при исключении). Схема создаётся скриптом ``sql/setup_schema.py``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from pydantic import ValidationError

from failsig.exceptions import ConflictError, NotFoundError, StorageError
from failsig.models.common import AuditAction, PrimaryClass, PushStatus
from failsig.models.defects import (
    AuditLogEntry,
    Classification,
    DefectGroup,
    GroupFilters,
)
from failsig.models.push import PushRecord
from failsig.rules.models import ClassificationRule

logger = logging.getLogger(__name__)

_GROUP_COLUMNS = """
    id, signature_hash, project_id, primary_class, sub_class, error_type,
    representative_error, first_seen, last_seen, occurrence_count, is_resolved
"""
_CLASSIFICATION_COLUMNS = """
    id, failure_id, primary_class, sub_class, confidence, signature_hash,
    is_manually_classified, matched_rule_id, classified_by, rule_set_version,
    evidence_data, suggestions, classified_at
"""
_PUSH_COLUMNS = """
    id, signature_hash, group_id, project_id, issue_key, issue_url, status,
    error_message, payload_data, pushed_by, pushed_at
"""
_AUDIT_COLUMNS = """
    id, classification_id, group_id, action, old_primary_class, new_primary_class,
    old_sub_class, new_sub_class, changed_by, notes, changed_at
"""
_SORT_COLUMNS = {
    "occurrence_count": "occurrence_count",
    "last_seen": "last_seen",
    "first_seen": "first_seen",
}


# ------------------------------------------------------------------
# Row mapping
# ------------------------------------------------------------------


def _optional_class(value: str | None) -> PrimaryClass | None:
    return PrimaryClass(value) if value is not None else None


def _row_to_classification(row: dict[str, Any]) -> Classification:
    return Classification(
        id=row["id"],
        failure_id=row["failure_id"],
        primary_class=PrimaryClass(row["primary_class"]),
        sub_class=row["sub_class"],
        confidence=row["confidence"],
        signature=row["signature_hash"],
        is_manual=row["is_manually_classified"],
        matched_rule_id=row["matched_rule_id"],
        classified_by=row["classified_by"],
        rule_set_version=row["rule_set_version"],
        evidence=row["evidence_data"] or {},
        suggested_fixes=list(row["suggestions"] or []),
        classified_at=row["classified_at"],
    )


def _row_to_group(row: dict[str, Any]) -> DefectGroup:
    return DefectGroup(
        id=row["id"],
        signature=row["signature_hash"],
        project_id=row["project_id"],
        primary_class=PrimaryClass(row["primary_class"]),
        sub_class=row["sub_class"],
        error_type=row["error_type"],
        representative_error=row["representative_error"] or "",
        first_seen=row["first_seen"],
        last_seen=row["last_seen"],
        occurrence_count=row["occurrence_count"],
        is_resolved=row["is_resolved"],
    )


def _row_to_push(row: dict[str, Any]) -> PushRecord:
    return PushRecord(
        id=row["id"],
        signature=row["signature_hash"],
        group_id=row["group_id"],
        project_id=row["project_id"],
        issue_key=row["issue_key"],
        issue_url=row["issue_url"],
        status=PushStatus(row["status"]),
        error_message=row["error_message"],
        payload=row["payload_data"] or {},
        actor=row["pushed_by"],
        created_at=row["pushed_at"],
    )


def _row_to_audit(row: dict[str, Any]) -> AuditLogEntry:
    return AuditLogEntry(
        id=row["id"],
        classification_id=row["classification_id"],
        group_id=row["group_id"],
        action=AuditAction(row["action"]),
        old_primary_class=_optional_class(row["old_primary_class"]),
        new_primary_class=_optional_class(row["new_primary_class"]),
        old_sub_class=row["old_sub_class"],
        new_sub_class=row["new_sub_class"],
        actor=row["changed_by"],
        note=row["notes"],
        created_at=row["changed_at"],
    )


def build_group_query(filters: GroupFilters) -> tuple[str, list[Any]]:
    """Собрать SELECT для list_groups по фильтрам.

    Колонка сортировки берётся из белого списка, значения — параметрами.
    """
    clauses: list[str] = []
    params: list[Any] = []

    if filters.project_id is not None:
        clauses.append("project_id = %s")
        params.append(filters.project_id)
    if filters.primary_class is not None:
        clauses.append("primary_class = %s")
        params.append(filters.primary_class.value)
    if filters.sub_class is not None:
        clauses.append("sub_class = %s")
        params.append(filters.sub_class)
    if filters.is_resolved is not None:
        clauses.append("is_resolved = %s")
        params.append(filters.is_resolved)
    if filters.since is not None:
        clauses.append("last_seen >= %s")
        params.append(filters.since)
    if filters.until is not None:
        clauses.append("first_seen <= %s")
        params.append(filters.until)
    if filters.search:
        clauses.append(
            "(representative_error ILIKE %s OR COALESCE(sub_class, '') ILIKE %s)"
        )
        pattern = f"%{filters.search}%"
        params.extend([pattern, pattern])

    query = f"SELECT {_GROUP_COLUMNS} FROM failsig.defect_groups"
    if clauses:
        query += " WHERE " + " AND ".join(clauses)

    direction = "DESC" if filters.descending else "ASC"
    query += f" ORDER BY {_SORT_COLUMNS[filters.sort_by]} {direction}, id ASC"
    if filters.limit is not None:
        query += " LIMIT %s"
        params.append(filters.limit)
    return query, params


# ------------------------------------------------------------------
# Session
# ------------------------------------------------------------------


class PostgresStoreSession:
    """Реализация StoreSession поверх соединения с открытой транзакцией."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def _fetchone(self, query: str, params: tuple | list = ()) -> dict[str, Any] | None:
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, params)
            return cur.fetchone()

    def _insert_returning(self, query: str, params: tuple | list, table: str) -> dict[str, Any]:
        row = self._fetchone(query, params)
        if row is None:
            raise StorageError(f"INSERT в {table} не вернул строку")
        return row

    def _fetchall(self, query: str, params: tuple | list = ()) -> list[dict[str, Any]]:
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, params)
            return cur.fetchall()

    # --- Правила ---

    def get_active_rules(self) -> list[ClassificationRule]:
        rows = self._fetchall(
            """
            SELECT id, rule_name, primary_class, sub_class, priority, base_confidence,
                   conditions, suggested_fixes, is_active, created_at, updated_at
            FROM failsig.classification_rules
            WHERE is_active
            ORDER BY priority, id
            """
        )
        rules: list[ClassificationRule] = []
        for row in rows:
            try:
                rule = ClassificationRule(
                    id=row["id"],
                    name=row["rule_name"],
                    primary_class=row["primary_class"],
                    sub_class=row["sub_class"],
                    priority=row["priority"],
                    base_confidence=row["base_confidence"],
                    conditions=row["conditions"] or [],
                    suggested_fixes=list(row["suggested_fixes"] or []),
                    is_active=row["is_active"],
                    created_at=row["created_at"],
                    updated_at=row["updated_at"],
                )
            except ValidationError as exc:
                logger.warning(
                    "PostgresStore: правило #%s '%s' отклонено: %s",
                    row["id"], row["rule_name"], exc,
                )
                continue
            rules.append(rule)
        logger.debug("PostgresStore: загружено %d активных правил", len(rules))
        return rules

    # --- Классификации ---

    def get_classification(
        self, classification_id: int, *, for_update: bool = False,
    ) -> Classification | None:
        query = f"SELECT {_CLASSIFICATION_COLUMNS} FROM failsig.defect_classifications WHERE id = %s"
        if for_update:
            query += " FOR UPDATE"
        row = self._fetchone(query, (classification_id,))
        return _row_to_classification(row) if row else None

    def get_classification_for_failure(self, failure_id: int) -> Classification | None:
        row = self._fetchone(
            f"SELECT {_CLASSIFICATION_COLUMNS} FROM failsig.defect_classifications "
            "WHERE failure_id = %s",
            (failure_id,),
        )
        return _row_to_classification(row) if row else None

    def save_classification(self, classification: Classification) -> Classification:
        c = classification
        values = (
            c.failure_id, c.primary_class.value, c.sub_class, c.confidence, c.signature,
            c.is_manual, c.matched_rule_id, c.classified_by, c.rule_set_version,
            Jsonb(c.evidence), list(c.suggested_fixes), c.classified_at,
        )
        if c.id is None:
            row = self._insert_returning(
                f"""
                INSERT INTO failsig.defect_classifications
                    (failure_id, primary_class, sub_class, confidence, signature_hash,
                     is_manually_classified, matched_rule_id, classified_by, rule_set_version,
                     evidence_data, suggestions, classified_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {_CLASSIFICATION_COLUMNS}
                """,
                values,
                "defect_classifications",
            )
        else:
            row = self._fetchone(
                f"""
                UPDATE failsig.defect_classifications
                SET failure_id = %s, primary_class = %s, sub_class = %s, confidence = %s,
                    signature_hash = %s, is_manually_classified = %s, matched_rule_id = %s,
                    classified_by = %s, rule_set_version = %s, evidence_data = %s,
                    suggestions = %s, classified_at = %s
                WHERE id = %s
                RETURNING {_CLASSIFICATION_COLUMNS}
                """,
                (*values, c.id),
            )
            if row is None:
                raise NotFoundError("Classification", c.id)
        return _row_to_classification(row)

    # --- Группы ---

    def get_group(self, signature: str, *, for_update: bool = False) -> DefectGroup | None:
        query = f"SELECT {_GROUP_COLUMNS} FROM failsig.defect_groups WHERE signature_hash = %s"
        if for_update:
            query += " FOR UPDATE"
        row = self._fetchone(query, (signature,))
        return _row_to_group(row) if row else None

    def get_group_by_id(self, group_id: int, *, for_update: bool = False) -> DefectGroup | None:
        query = f"SELECT {_GROUP_COLUMNS} FROM failsig.defect_groups WHERE id = %s"
        if for_update:
            query += " FOR UPDATE"
        row = self._fetchone(query, (group_id,))
        return _row_to_group(row) if row else None

    def create_group(self, group: DefectGroup) -> DefectGroup:
        # ON CONFLICT DO NOTHING не прерывает транзакцию: конкурент уже
        # создал группу, вызывающий повторит операцию как обновление.
        row = self._fetchone(
            f"""
            INSERT INTO failsig.defect_groups
                (signature_hash, project_id, primary_class, sub_class, error_type,
                 representative_error, first_seen, last_seen, occurrence_count, is_resolved)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (signature_hash) DO NOTHING
            RETURNING {_GROUP_COLUMNS}
            """,
            (
                group.signature, group.project_id, group.primary_class.value, group.sub_class,
                group.error_type, group.representative_error, group.first_seen,
                group.last_seen, group.occurrence_count, group.is_resolved,
            ),
        )
        if row is None:
            raise ConflictError(group.signature)
        return _row_to_group(row)

    def save_group(self, group: DefectGroup) -> DefectGroup:
        row = self._fetchone(
            f"""
            UPDATE failsig.defect_groups
            SET project_id = %s, primary_class = %s, sub_class = %s, error_type = %s,
                representative_error = %s, first_seen = %s, last_seen = %s,
                occurrence_count = %s, is_resolved = %s
            WHERE id = %s
            RETURNING {_GROUP_COLUMNS}
            """,
            (
                group.project_id, group.primary_class.value, group.sub_class, group.error_type,
                group.representative_error, group.first_seen, group.last_seen,
                group.occurrence_count, group.is_resolved, group.id,
            ),
        )
        if row is None:
            raise NotFoundError("DefectGroup", group.id)
        return _row_to_group(row)

    def add_group_member(self, group_id: int, failure_id: int, added_at: datetime) -> bool:
        row = self._fetchone(
            """
            INSERT INTO failsig.defect_group_members (group_id, failure_id, added_at)
            VALUES (%s, %s, %s)
            ON CONFLICT (group_id, failure_id) DO NOTHING
            RETURNING group_id
            """,
            (group_id, failure_id, added_at),
        )
        return row is not None

    def count_group_members(self, group_id: int) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM failsig.defect_group_members WHERE group_id = %s",
            (group_id,),
        )
        return int(row["n"]) if row else 0

    def list_groups(self, filters: GroupFilters) -> list[DefectGroup]:
        query, params = build_group_query(filters)
        return [_row_to_group(row) for row in self._fetchall(query, params)]

    # --- Аудит ---

    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        row = self._insert_returning(
            f"""
            INSERT INTO failsig.defect_audit_log
                (classification_id, group_id, action, old_primary_class, new_primary_class,
                 old_sub_class, new_sub_class, changed_by, notes, changed_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {_AUDIT_COLUMNS}
            """,
            (
                entry.classification_id,
                entry.group_id,
                entry.action.value,
                entry.old_primary_class.value if entry.old_primary_class else None,
                entry.new_primary_class.value if entry.new_primary_class else None,
                entry.old_sub_class,
                entry.new_sub_class,
                entry.actor,
                entry.note,
                entry.created_at,
            ),
            "defect_audit_log",
        )
        return _row_to_audit(row)

    def list_audit_log(
        self,
        *,
        classification_id: int | None = None,
        group_id: int | None = None,
    ) -> list[AuditLogEntry]:
        clauses: list[str] = []
        params: list[Any] = []
        if classification_id is not None:
            clauses.append("classification_id = %s")
            params.append(classification_id)
        if group_id is not None:
            clauses.append("group_id = %s")
            params.append(group_id)
        query = f"SELECT {_AUDIT_COLUMNS} FROM failsig.defect_audit_log"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"
        return [_row_to_audit(row) for row in self._fetchall(query, params)]

    # --- Push ---

    def save_push_record(self, record: PushRecord) -> PushRecord:
        row = self._insert_returning(
            f"""
            INSERT INTO failsig.issue_pushes
                (signature_hash, group_id, project_id, issue_key, issue_url, status,
                 error_message, payload_data, pushed_by, pushed_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {_PUSH_COLUMNS}
            """,
            (
                record.signature, record.group_id, record.project_id, record.issue_key,
                record.issue_url, record.status.value, record.error_message,
                Jsonb(record.payload), record.actor, record.created_at,
            ),
            "issue_pushes",
        )
        return _row_to_push(row)

    def latest_push_record(self, signature: str) -> PushRecord | None:
        row = self._fetchone(
            f"""
            SELECT {_PUSH_COLUMNS} FROM failsig.issue_pushes
            WHERE signature_hash = %s
            ORDER BY pushed_at DESC, id DESC
            LIMIT 1
            """,
            (signature,),
        )
        return _row_to_push(row) if row else None

    def list_push_records(self, signature: str) -> list[PushRecord]:
        rows = self._fetchall(
            f"SELECT {_PUSH_COLUMNS} FROM failsig.issue_pushes "
            "WHERE signature_hash = %s ORDER BY pushed_at, id",
            (signature,),
        )
        return [_row_to_push(row) for row in rows]


# ------------------------------------------------------------------
# Store
# ------------------------------------------------------------------


class PostgresDefectStore:
    """Реализация DefectStore для PostgreSQL.

    Short-lived соединения: каждая транзакция открывает своё соединение.
    Пул соединений — забота вызывающего (вне движка).
    """

    def __init__(self, dsn: str, *, connect_timeout: int = 10) -> None:
        self._dsn = dsn
        self._connect_timeout = connect_timeout

    @contextmanager
    def transaction(self) -> Iterator[PostgresStoreSession]:
        try:
            conn = psycopg.connect(self._dsn, connect_timeout=self._connect_timeout)
        except psycopg.Error as exc:
            raise StorageError(f"Ошибка подключения к PostgreSQL: {exc}") from exc

        try:
            # Контекст соединения: COMMIT при успехе, ROLLBACK при исключении, close
            with conn:
                yield PostgresStoreSession(conn)
        except psycopg.Error as exc:
            raise StorageError(f"Ошибка PostgreSQL: {exc}") from exc
